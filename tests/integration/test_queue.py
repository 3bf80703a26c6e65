"""
Integration tests for the queue's push/reserve/ack/fail/release lifecycle.
"""

from datetime import timedelta

import pytest

from jobqueue.config import QueueSettings
from jobqueue.constants import LAST_ERROR_MAX_LENGTH, TRUNCATION_MARKER, JobStatus
from jobqueue.db import Database
from jobqueue.errors import ConfigurationError, EncodingError, ValidationError
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.queue import JobQueue


class TestPush:
    """Tests for the producer side."""

    async def test_push_creates_pending_job(self, job_queue: JobQueue, clock, sample_payload):
        """Test a pushed job is pending, unattempted and immediately available."""
        job_id = await job_queue.push("sms.send", sample_payload, queue="sms", max_attempts=5)

        job = await job_queue.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.queue == "sms"
        assert job.kind == "sms.send"
        assert job.attempts == 0
        assert job.max_attempts == 5
        assert job.available_at == clock.now
        assert job.last_error is None

    async def test_push_defaults(self, job_queue: JobQueue):
        """Test default queue, payload and max attempts."""
        job_id = await job_queue.push("echo")

        job = await job_queue.get(job_id)
        assert job.queue == "default"
        assert job.payload == "{}"
        assert job.max_attempts == 3

    @pytest.mark.parametrize("max_attempts", [0, -2, None, "lots", float("inf"), float("nan")])
    async def test_push_invalid_max_attempts_uses_default(self, job_queue: JobQueue, max_attempts):
        """Test absent or invalid max_attempts clamps to 3."""
        job_id = await job_queue.push("echo", max_attempts=max_attempts)

        assert (await job_queue.get(job_id)).max_attempts == 3

    async def test_push_blank_queue_uses_default(self, job_queue: JobQueue):
        """Test an empty queue name falls back to the default queue."""
        job_id = await job_queue.push("echo", queue="")

        assert (await job_queue.get(job_id)).queue == "default"

    @pytest.mark.parametrize("kind", ["", "   "])
    async def test_push_empty_kind(self, job_queue: JobQueue, kind):
        """Test kind is required."""
        with pytest.raises(ValidationError):
            await job_queue.push(kind, {})

        assert (await job_queue.stats())["pending"] == 0

    async def test_push_rejects_overlong_names(self, job_queue: JobQueue):
        """Test column limits are enforced before insert."""
        with pytest.raises(ValidationError):
            await job_queue.push("k" * 121)
        with pytest.raises(ValidationError):
            await job_queue.push("echo", queue="q" * 41)

    @pytest.mark.parametrize("queue", [7, ["sms"], b"sms"])
    async def test_push_rejects_non_string_queue(self, job_queue: JobQueue, queue):
        """Test a queue name of the wrong type is a ValidationError."""
        with pytest.raises(ValidationError):
            await job_queue.push("echo", queue=queue)

    @pytest.mark.parametrize("kind", [None, 42, {"kind": "echo"}])
    async def test_push_rejects_non_string_kind(self, job_queue: JobQueue, kind):
        """Test a kind of the wrong type is a ValidationError."""
        with pytest.raises(ValidationError):
            await job_queue.push(kind)

        assert (await job_queue.stats())["pending"] == 0

    async def test_push_rejects_bad_delay(self, job_queue: JobQueue):
        """Test non-numeric delays are refused."""
        with pytest.raises(ValidationError):
            await job_queue.push("echo", delay_sec="later")

    async def test_push_unserializable_payload_inserts_nothing(self, job_queue: JobQueue):
        """Test EncodingError leaves the table untouched."""
        with pytest.raises(EncodingError):
            await job_queue.push("ai.run", {"callback": object()})

        assert sum((await job_queue.stats()).values()) == 0

    async def test_push_negative_delay_is_immediate(self, job_queue: JobQueue, clock):
        """Test negative delays count as zero."""
        job_id = await job_queue.push("echo", delay_sec=-30)

        assert (await job_queue.get(job_id)).available_at == clock.now


class TestReserve:
    """Tests for the lease manager."""

    async def test_reserve_leases_job(self, job_queue: JobQueue, clock, sample_payload):
        """Test reserve returns the decoded job and marks it reserved."""
        job_id = await job_queue.push("sms.send", sample_payload)

        job = await job_queue.reserve()

        assert job is not None
        assert job.id == job_id
        assert job.kind == "sms.send"
        assert job.payload == sample_payload
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.reserved_at == clock.now

        row = await job_queue.get(job_id)
        assert row.status == JobStatus.RESERVED
        assert row.reserved_at == clock.now

    @pytest.mark.parametrize("payload", [5, "text", True])
    async def test_reserve_scalar_payload_decodes_to_empty(self, job_queue: JobQueue, payload):
        """Test only JSON objects and arrays reach handlers as payloads."""
        await job_queue.push("echo", payload)

        job = await job_queue.reserve()

        assert job.payload == {}

    async def test_reserve_list_payload_kept(self, job_queue: JobQueue):
        """Test array payloads are returned as lists."""
        await job_queue.push("echo", [1, 2, 3])

        assert (await job_queue.reserve()).payload == [1, 2, 3]

    async def test_reserve_empty_queue(self, job_queue: JobQueue):
        """Test an empty queue yields None."""
        assert await job_queue.reserve() is None

    async def test_reserve_in_push_order(self, job_queue: JobQueue):
        """Test undelayed jobs come out in push order."""
        pushed = [await job_queue.push("echo", {"n": n}) for n in range(5)]

        reserved = []
        while (job := await job_queue.reserve()) is not None:
            reserved.append(job.id)

        assert reserved == pushed

    async def test_reserve_respects_queue(self, job_queue: JobQueue):
        """Test jobs in other queues are not returned."""
        woo_id = await job_queue.push("woo.push", queue="woo")

        assert await job_queue.reserve("ai") is None
        assert (await job_queue.reserve("woo")).id == woo_id

    async def test_delayed_job_invisible_until_due(self, job_queue: JobQueue, clock):
        """Test a 60s delay hides the job until 60 simulated seconds pass."""
        job_id = await job_queue.push("echo", delay_sec=60)

        assert await job_queue.reserve() is None

        clock.advance(59)
        assert await job_queue.reserve() is None

        clock.advance(1)
        job = await job_queue.reserve()
        assert job is not None
        assert job.id == job_id

    async def test_later_undelayed_job_overtakes_delayed(self, job_queue: JobQueue):
        """Test ordering only applies among eligible jobs."""
        await job_queue.push("echo", delay_sec=60)
        ready_id = await job_queue.push("echo")

        assert (await job_queue.reserve()).id == ready_id

    async def test_reserve_hard_limit_dead_letters(
        self,
        database: Database,
        clock,
        metrics: MetricsCollector,
    ):
        """Test a candidate already at dead_after_attempts is dead-lettered, not leased."""
        settings = QueueSettings(dead_after_attempts=2, sleep_when_empty_ms=0)
        queue = JobQueue(database, settings, clock=clock, metrics=metrics)
        job_id = await queue.push("echo", max_attempts=10)

        await queue.reserve()
        await queue.release(job_id, attempts=2)

        assert await queue.reserve() is None

        row = await queue.get(job_id)
        assert row.status == JobStatus.DEAD
        assert row.last_error == "Exceeded hard attempts limit (2)"
        assert row.finished_at == clock.now
        assert await queue.reserve() is None


class TestAck:
    """Tests for ack()."""

    async def test_ack_marks_done(self, job_queue: JobQueue, clock):
        """Test ack finishes the job and clears lease and error."""
        job_id = await job_queue.push("echo")
        await job_queue.reserve()

        assert await job_queue.ack(job_id) is True

        row = await job_queue.get(job_id)
        assert row.status == JobStatus.DONE
        assert row.reserved_at is None
        assert row.last_error is None
        assert row.finished_at == clock.now

    async def test_ack_is_idempotent(self, job_queue: JobQueue):
        """Test a second ack is harmless."""
        job_id = await job_queue.push("echo")
        await job_queue.reserve()

        assert await job_queue.ack(job_id) is True
        assert await job_queue.ack(job_id) is False
        assert (await job_queue.get(job_id)).status == JobStatus.DONE

    async def test_acked_job_never_returned(self, job_queue: JobQueue, clock):
        """Test a done job is not reserved again, even after the lease timeout."""
        job_id = await job_queue.push("echo")
        await job_queue.reserve()
        await job_queue.ack(job_id)

        clock.advance(3600)
        assert await job_queue.reserve() is None

    async def test_ack_unknown_id(self, job_queue: JobQueue):
        """Test unknown ids are a no-op."""
        assert await job_queue.ack(987654) is False


class TestFail:
    """Tests for fail()."""

    async def test_fail_schedules_retry_with_backoff(self, job_queue: JobQueue, clock):
        """Test the first failure of a 3-attempt job retries after 5s."""
        job_id = await job_queue.push("ai.run", max_attempts=3)
        await job_queue.reserve()

        assert await job_queue.fail(job_id, "rate limited") == JobStatus.PENDING

        row = await job_queue.get(job_id)
        assert row.status == JobStatus.PENDING
        assert row.attempts == 1
        assert row.reserved_at is None
        assert row.last_error == "rate limited"
        assert row.available_at == clock.now + timedelta(seconds=5)

    async def test_retry_not_visible_before_backoff(self, job_queue: JobQueue, clock):
        """Test the backoff delay hides the job."""
        job_id = await job_queue.push("ai.run")
        await job_queue.reserve()
        await job_queue.fail(job_id, "timeout")

        clock.advance(4)
        assert await job_queue.reserve() is None

        clock.advance(1)
        job = await job_queue.reserve()
        assert job.id == job_id
        assert job.attempts == 1

    async def test_fail_until_max_attempts_dead_letters(self, job_queue: JobQueue, clock):
        """Test repeated failures end in DEAD at max_attempts."""
        job_id = await job_queue.push("woo.push", max_attempts=3)
        outcomes = []

        for _ in range(3):
            job = await job_queue.reserve()
            assert job is not None and job.id == job_id
            outcomes.append(await job_queue.fail(job_id, "502 from store"))
            clock.advance(3600)

        assert outcomes == [JobStatus.PENDING, JobStatus.PENDING, JobStatus.DEAD]

        row = await job_queue.get(job_id)
        assert row.status == JobStatus.DEAD
        assert row.attempts == 3
        assert row.finished_at is not None
        assert await job_queue.reserve() is None

    async def test_backoff_grows_per_attempt(self, job_queue: JobQueue, clock):
        """Test the second retry waits 20s."""
        job_id = await job_queue.push("echo", max_attempts=5)
        await job_queue.reserve()
        await job_queue.fail(job_id, "first")
        clock.advance(5)
        await job_queue.reserve()
        await job_queue.fail(job_id, "second")

        row = await job_queue.get(job_id)
        assert row.attempts == 2
        assert row.available_at == clock.now + timedelta(seconds=20)

    async def test_fail_without_retry_dead_letters(self, job_queue: JobQueue, clock):
        """Test retry=False dead-letters regardless of remaining attempts."""
        job_id = await job_queue.push("sms.send", max_attempts=10)
        await job_queue.reserve()

        assert await job_queue.fail(job_id, "invalid phone number", retry=False) == JobStatus.DEAD

        row = await job_queue.get(job_id)
        assert row.status == JobStatus.DEAD
        assert row.attempts == 1
        assert row.last_error == "invalid phone number"
        assert row.finished_at == clock.now

    async def test_hard_ceiling_overrides_max_attempts(
        self,
        database: Database,
        clock,
        metrics: MetricsCollector,
    ):
        """Test dead_after_attempts caps a generous max_attempts."""
        settings = QueueSettings(dead_after_attempts=2)
        queue = JobQueue(database, settings, clock=clock, metrics=metrics)
        job_id = await queue.push("echo", max_attempts=20)

        await queue.reserve()
        assert await queue.fail(job_id, "one") == JobStatus.PENDING
        clock.advance(5)
        await queue.reserve()
        assert await queue.fail(job_id, "two") == JobStatus.DEAD

    async def test_fail_stores_truncated_error(self, job_queue: JobQueue):
        """Test long diagnostics are bounded."""
        job_id = await job_queue.push("echo")
        await job_queue.reserve()

        await job_queue.fail(job_id, "x" * (LAST_ERROR_MAX_LENGTH + 500))

        row = await job_queue.get(job_id)
        assert row.last_error == "x" * LAST_ERROR_MAX_LENGTH + TRUNCATION_MARKER

    async def test_fail_accepts_exception(self, job_queue: JobQueue):
        """Test exceptions are stored by message."""
        job_id = await job_queue.push("echo")
        await job_queue.reserve()

        await job_queue.fail(job_id, ConnectionError("connection refused"))

        assert (await job_queue.get(job_id)).last_error == "connection refused"

    async def test_fail_on_terminal_or_unknown_is_noop(self, job_queue: JobQueue):
        """Test fail never resurrects finished jobs."""
        job_id = await job_queue.push("echo")
        await job_queue.reserve()
        await job_queue.ack(job_id)

        assert await job_queue.fail(job_id, "late failure") is None
        assert await job_queue.fail(555555, "nobody") is None

        row = await job_queue.get(job_id)
        assert row.status == JobStatus.DONE
        assert row.attempts == 0


class TestRelease:
    """Tests for release()."""

    async def test_release_yields_without_failure(self, job_queue: JobQueue, clock):
        """Test a voluntary release keeps attempts and error untouched."""
        job_id = await job_queue.push("sms.campaign")
        await job_queue.reserve()

        assert await job_queue.release(job_id, delay_sec=30) is True

        row = await job_queue.get(job_id)
        assert row.status == JobStatus.PENDING
        assert row.attempts == 0
        assert row.last_error is None
        assert row.reserved_at is None
        assert row.available_at == clock.now + timedelta(seconds=30)

    async def test_release_overwrites_error_and_attempts(self, job_queue: JobQueue):
        """Test optional fields are written when supplied."""
        job_id = await job_queue.push("echo")
        await job_queue.reserve()

        await job_queue.release(job_id, 0, error="throttled", attempts=2)

        row = await job_queue.get(job_id)
        assert row.last_error == "throttled"
        assert row.attempts == 2

    async def test_release_rejects_bad_attempts(self, job_queue: JobQueue):
        """Test a non-numeric attempts value is a ValidationError."""
        job_id = await job_queue.push("echo")
        await job_queue.reserve()

        with pytest.raises(ValidationError):
            await job_queue.release(job_id, attempts="several")

        assert (await job_queue.get(job_id)).status == JobStatus.RESERVED

    async def test_release_dead_job_is_noop(self, job_queue: JobQueue):
        """Test terminal jobs stay terminal."""
        job_id = await job_queue.push("echo")
        await job_queue.reserve()
        await job_queue.fail(job_id, "fatal", retry=False)

        assert await job_queue.release(job_id) is False
        assert (await job_queue.get(job_id)).status == JobStatus.DEAD


class TestDisabledQueue:
    """Tests for the kill switch."""

    @pytest.fixture
    def disabled_queue(self, database: Database, clock, metrics: MetricsCollector) -> JobQueue:
        return JobQueue(database, QueueSettings(enabled=False), clock=clock, metrics=metrics)

    async def test_operations_fail_fast(self, disabled_queue: JobQueue):
        """Test every operation raises ConfigurationError."""
        assert disabled_queue.is_enabled is False

        with pytest.raises(ConfigurationError):
            await disabled_queue.push("echo")
        with pytest.raises(ConfigurationError):
            await disabled_queue.reserve()
        with pytest.raises(ConfigurationError):
            await disabled_queue.ack(1)
        with pytest.raises(ConfigurationError):
            await disabled_queue.fail(1, "x")
        with pytest.raises(ConfigurationError):
            await disabled_queue.release(1)


class TestStats:
    """Tests for inspection helpers."""

    async def test_stats_by_queue(self, job_queue: JobQueue, metrics: MetricsCollector):
        """Test counts per status and the depth gauge."""
        done_id = await job_queue.push("echo")
        await job_queue.push("echo")
        await job_queue.push("echo", queue="sms")
        await job_queue.reserve()
        await job_queue.ack(done_id)

        counts = await job_queue.stats("default")

        assert counts == {"pending": 1, "reserved": 0, "done": 1, "dead": 0}
        assert metrics.queue_depth.labels(queue="default", status="pending")._value.get() == 1
