"""
Job Execution Logger for scheduled and background work.

Tracks cron-driven jobs (automation queue draining, lifecycle trigger sweeps)
and background tasks with timing, counters and structured log records.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Awaitable, Dict, Optional

logger = logging.getLogger(__name__)


class JobExecutionMetrics:
    """Container for job execution metrics and timing information."""

    def __init__(self, job_name: str):
        self.job_name = job_name
        self.correlation_id: str = str(uuid.uuid4())[:8]
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.start_timestamp: Optional[float] = None
        self.execution_time_seconds: float = 0.0
        self.success: bool = False
        self.error: Optional[str] = None
        self.counters: Dict[str, int] = {}

    def start_execution(self):
        """Mark the start of job execution."""
        self.start_time = datetime.now(timezone.utc)
        self.start_timestamp = time.time()

        logger.info(
            f"JOB_START: {self.job_name}",
            extra={
                "job_name": self.job_name,
                "correlation_id": self.correlation_id,
                "start_time": self.start_time.isoformat(),
                "event_type": "job_start"
            }
        )

    def end_execution(self, success: bool = True, error: Optional[str] = None):
        """Mark the end of job execution with results."""
        self.end_time = datetime.now(timezone.utc)
        self.success = success
        self.error = error
        if self.start_timestamp is not None:
            self.execution_time_seconds = time.time() - self.start_timestamp

        log_level = logging.INFO if success else logging.ERROR
        logger.log(
            log_level,
            f"JOB_END: {self.job_name} | "
            f"Time: {self.execution_time_seconds:.3f}s | "
            f"Status: {'SUCCESS' if success else 'ERROR'} | "
            f"Counters: {self.counters}",
            extra={
                "job_name": self.job_name,
                "correlation_id": self.correlation_id,
                "execution_time_seconds": self.execution_time_seconds,
                "success": success,
                "error": error,
                "counters": self.counters,
                "event_type": "job_end"
            }
        )

    def increment(self, counter: str, amount: int = 1):
        """Increase a named counter."""
        self.counters[counter] = self.counters.get(counter, 0) + amount


@asynccontextmanager
async def track_job_execution(job_name: str) -> AsyncGenerator[JobExecutionMetrics, None]:
    """
    Async context manager for tracking a job with automatic timing.

    Usage:
        async with track_job_execution("process_pending_automations") as job:
            job.increment("sent")
    """
    metrics = JobExecutionMetrics(job_name)
    metrics.start_execution()

    try:
        yield metrics
        metrics.end_execution(success=True)
    except Exception as e:
        metrics.end_execution(success=False, error=f"{type(e).__name__}: {e}")
        raise


async def run_non_critical(awaitable: Awaitable[Any], description: str) -> Any:
    """
    Await a side effect that must never fail the calling request.

    Automation triggers and marketing syncs after a payment go through
    here; failures are logged and ``None`` is returned.
    """
    try:
        return await awaitable
    except Exception as e:
        logger.error(f"{description} failed: {type(e).__name__}: {e}")
        return None
