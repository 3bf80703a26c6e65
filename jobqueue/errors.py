"""
Exception hierarchy raised by the queue.

Lookups of unknown or already-finished ids are not errors: ack, fail and
release treat them as no-ops.
"""


class QueueError(Exception):
    """Base class for all queue errors."""


class ConfigurationError(QueueError):
    """The queue is disabled or misconfigured."""


class ValidationError(QueueError):
    """Invalid arguments passed to a queue operation."""


class EncodingError(QueueError):
    """The job payload could not be serialized."""


class StorageError(QueueError):
    """The backing store failed; the transaction was rolled back."""
