"""
Enrollment Scheduler Service
Background service that advances due enrollments on a fixed interval.
"""
import asyncio
import traceback
from typing import Optional, List, Dict

from utils.log_utils import LogUtil
from services.enrollment_service import EnrollmentService


class EnrollmentSchedulerService:
    """
    Runs one or more worker loops that call process_due() every interval.
    Workers may overlap on the same enrollments; the enrollment service's
    compare-and-set writes make that safe.
    """

    def __init__(
        self,
        log_util: LogUtil,
        enrollment_service: EnrollmentService,
        check_interval_seconds: int = 20,
        workers: int = 1,
        batch_size: Optional[int] = None
    ):
        self.log_util = log_util
        self.enrollment_service = enrollment_service
        self.check_interval_seconds = check_interval_seconds
        self.workers = max(1, workers)
        self.batch_size = batch_size
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """
        Start the background scheduler tasks.
        """
        if self._running:
            self.log_util.warning(
                service_name="EnrollmentSchedulerService",
                message="Scheduler is already running"
            )
            return

        self._running = True
        self._tasks = [
            asyncio.create_task(self._scheduler_loop(worker_id))
            for worker_id in range(self.workers)
        ]
        self.log_util.info(
            service_name="EnrollmentSchedulerService",
            message=f"Enrollment scheduler started with {self.workers} worker(s), checking every {self.check_interval_seconds} seconds"
        )

    async def stop(self):
        """
        Stop the background scheduler tasks.
        """
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self.log_util.info(
            service_name="EnrollmentSchedulerService",
            message="Enrollment scheduler stopped"
        )

    async def run_once(self) -> Dict[str, int]:
        """
        One scheduling pass, used by the loop and the process-due endpoint.
        """
        return await self.enrollment_service.process_due(limit=self.batch_size)

    async def _scheduler_loop(self, worker_id: int):
        """
        Main scheduler loop. Any error in a pass is logged and the loop carries on.
        """
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self.check_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log_util.error(
                    service_name="EnrollmentSchedulerService",
                    message=f"Error in scheduler loop (worker {worker_id}): {str(e)}"
                )
                self.log_util.error(
                    service_name="EnrollmentSchedulerService",
                    message=f"Traceback: {traceback.format_exc()}"
                )
                # Wait before retrying to avoid tight error loop
                await asyncio.sleep(self.check_interval_seconds)
