"""Tests for the shared logger helpers."""

import asyncio
import logging

import pytest

from tubevault.infrastructure.observability import log_operation, log_worker_health

logger = logging.getLogger("tests.logger_template")


def _messages(caplog: pytest.LogCaptureFixture) -> list[str]:
    return [r.getMessage() for r in caplog.records if r.name == logger.name]


class TestLogOperation:
    """started/completed/failed/cancelled events."""

    @pytest.mark.asyncio
    async def test_completed(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO)

        async with log_operation(logger, "download_job", job_id="j1"):
            pass

        assert _messages(caplog) == ["download_job.started", "download_job.completed"]
        completed = caplog.records[-1]
        assert completed.job_id == "j1"
        assert completed.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_failed_reraises(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO)

        with pytest.raises(ValueError, match="bad url"):
            async with log_operation(logger, "download_job", job_id="j2"):
                raise ValueError("bad url")

        failed = caplog.records[-1]
        assert failed.getMessage() == "download_job.failed"
        assert failed.levelno == logging.ERROR
        assert failed.error == "bad url"
        assert failed.error_type == "ValueError"
        assert failed.exc_info is not None

    @pytest.mark.asyncio
    async def test_cancelled_is_info(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO)

        with pytest.raises(asyncio.CancelledError):
            async with log_operation(logger, "download_job", job_id="j3"):
                raise asyncio.CancelledError()

        cancelled = caplog.records[-1]
        assert cancelled.getMessage() == "download_job.cancelled"
        assert cancelled.levelno == logging.INFO


class TestLogWorkerHealth:
    """Worker health lines."""

    def test_fields(self, caplog: pytest.LogCaptureFixture) -> None:
        caplog.set_level(logging.INFO)

        log_worker_health(
            logger, "queue_maintenance", 60, 2, 123.9, extra_stats={"jobs_dispatched": 7}
        )

        record = caplog.records[-1]
        assert record.getMessage() == "worker.health"
        assert record.worker == "queue_maintenance"
        assert record.cycles_completed == 60
        assert record.errors_total == 2
        assert record.uptime_seconds == 123
        assert record.jobs_dispatched == 7
