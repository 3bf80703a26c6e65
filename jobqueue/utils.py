"""Small helpers shared by the queue and the worker."""

import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from jobqueue.constants import TRUNCATION_MARKER
from jobqueue.errors import EncodingError

# Returns the current time as a naive UTC datetime
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as a naive UTC datetime, matching the stored columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def truncate(text: str, max_length: int) -> str:
    """Cut text to max_length characters, appending a marker when cut."""
    if max_length <= 0:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + TRUNCATION_MARKER


def encode_payload(payload: Any) -> str:
    """
    Serialize a job payload to JSON text.

    Raises:
        EncodingError: If the payload is not JSON-serializable.
    """
    try:
        return json.dumps(payload, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Failed to encode job payload as JSON: {e}") from e


def decode_payload(raw: str | None) -> dict[str, Any] | list[Any]:
    """
    Decode a stored payload.

    Only objects and arrays come back as-is. Scalars, null and unreadable
    text decode to an empty dict.
    """
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, (dict, list)) else {}
