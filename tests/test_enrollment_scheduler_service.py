import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.enrollment_scheduler_service import EnrollmentSchedulerService


@pytest.mark.asyncio
async def test_run_once_passes_batch_size(log_util):
    enrollment_service = MagicMock()
    enrollment_service.process_due = AsyncMock(return_value={"due": 0, "processed": 0, "skipped": 0, "errors": 0})
    scheduler = EnrollmentSchedulerService(log_util=log_util, enrollment_service=enrollment_service, batch_size=50)

    await scheduler.run_once()

    enrollment_service.process_due.assert_awaited_once_with(limit=50)


@pytest.mark.asyncio
async def test_loop_survives_errors_and_stops(log_util):
    enrollment_service = MagicMock()
    calls = []

    async def process_due(limit=None):
        calls.append(limit)
        if len(calls) == 1:
            raise RuntimeError("db down")
        return {"due": 0}

    enrollment_service.process_due = AsyncMock(side_effect=process_due)
    scheduler = EnrollmentSchedulerService(
        log_util=log_util,
        enrollment_service=enrollment_service,
        check_interval_seconds=0.01,
        workers=2
    )

    await scheduler.start()
    assert scheduler.running is True
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert scheduler.running is False
    assert enrollment_service.process_due.await_count >= 2
