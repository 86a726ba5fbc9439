"""
Background jobs for the alert dispatch service.

═══════════════════════════════════════════════════════════════════════════
BACKGROUND TASKS
═══════════════════════════════════════════════════════════════════════════

1. INGESTION
   - Poll every configured source (weather fetcher) and ingest what it yields
   - Runs every INGESTION_INTERVAL_SECONDS (default hourly)

2. EXPIRY SWEEP
   - Mark alerts whose validity window has closed as expired
   - Purge terminal notification records past the retention window
   - Runs every SWEEP_INTERVAL_SECONDS (default 6 hours)

Both jobs can also be triggered manually (admin endpoints, tests). Every run
is recorded as a JobRun; a failing run is recorded as failed and the loop
carries on.

═══════════════════════════════════════════════════════════════════════════
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Dict, List, Optional

from geoalert.alerts.models import utc_now
from geoalert.core.config import settings
from geoalert.core.logging_config import get_log_context, set_log_context

if TYPE_CHECKING:
    from geoalert.alerts.alert_service import AlertService

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Job Run Model
# ═══════════════════════════════════════════════════════════════════════════

class JobStatus(str, Enum):
    """Status of a background job run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobRun:
    """One execution of a periodic job."""
    run_id: str
    job_type: str
    status: JobStatus
    trigger: str  # "schedule" | "manual"
    queued_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        elapsed = None
        if self.started_at:
            elapsed = ((self.completed_at or utc_now()) - self.started_at).total_seconds()
        return {
            "run_id": self.run_id,
            "job_type": self.job_type,
            "status": self.status.value,
            "trigger": self.trigger,
            "queued_at": self.queued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "elapsed_seconds": elapsed,
            "error": self.error,
            "result": self.result,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Job Manager
# ═══════════════════════════════════════════════════════════════════════════

class BackgroundJobManager:
    """
    Runs the ingestion and sweep jobs, on a timer and on demand.

    Usage:
        manager = BackgroundJobManager(service)
        await manager.start()          # loops only when ENABLE_SCHEDULER

        run = await manager.run_sweep()
        print(run.status, run.result)

        await manager.stop()
    """

    INGESTION = "ingestion"
    SWEEP = "expiry_sweep"

    def __init__(
        self,
        service: "AlertService",
        *,
        enabled: Optional[bool] = None,
        ingestion_interval: Optional[float] = None,
        sweep_interval: Optional[float] = None,
        history_size: int = 100,
    ) -> None:
        self._service = service
        self.enabled = settings.ENABLE_SCHEDULER if enabled is None else enabled
        self.ingestion_interval = ingestion_interval or settings.INGESTION_INTERVAL_SECONDS
        self.sweep_interval = sweep_interval or settings.SWEEP_INTERVAL_SECONDS
        self._runs: Deque[JobRun] = deque(maxlen=history_size)
        self._loops: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._loops)

    # ── Manual triggers ──

    async def run_ingestion(self, trigger: str = "manual") -> JobRun:
        async def job() -> Dict[str, Any]:
            return (await self._service.run_ingestion()).to_dict()

        return await self._execute(self.INGESTION, job, trigger)

    async def run_sweep(self, trigger: str = "manual") -> JobRun:
        async def job() -> Dict[str, Any]:
            return (await self._service.sweep_expired()).to_dict()

        return await self._execute(self.SWEEP, job, trigger)

    async def _execute(
        self,
        job_type: str,
        job: Callable[[], Awaitable[Dict[str, Any]]],
        trigger: str,
    ) -> JobRun:
        run = JobRun(
            run_id=str(uuid.uuid4())[:8],
            job_type=job_type,
            status=JobStatus.PENDING,
            trigger=trigger,
            queued_at=utc_now(),
        )
        self._runs.append(run)

        outer_context = get_log_context()
        set_log_context(job=job_type, run_id=run.run_id)
        run.status = JobStatus.RUNNING
        run.started_at = utc_now()
        try:
            run.result = await job()
            run.status = JobStatus.COMPLETED
        except asyncio.CancelledError:
            run.status = JobStatus.FAILED
            run.error = "cancelled"
            run.completed_at = utc_now()
            raise
        except Exception as e:
            logger.exception("Job %s (%s) failed", job_type, run.run_id)
            run.status = JobStatus.FAILED
            run.error = f"{type(e).__name__}: {e}"
        finally:
            set_log_context(**outer_context)
        run.completed_at = utc_now()

        logger.info(
            "Job %s (%s) %s in %.2fs",
            job_type, run.run_id, run.status.value,
            (run.completed_at - run.started_at).total_seconds(),
        )
        return run

    # ── History ──

    def list_runs(
        self, job_type: Optional[str] = None, status: Optional[JobStatus] = None,
    ) -> List[JobRun]:
        """Recorded runs, most recent first."""
        runs = list(self._runs)
        if job_type:
            runs = [r for r in runs if r.job_type == job_type]
        if status:
            runs = [r for r in runs if r.status == status]
        return list(reversed(runs))

    def last_run(self, job_type: str) -> Optional[JobRun]:
        runs = self.list_runs(job_type)
        return runs[0] if runs else None

    # ── Scheduler ──

    async def start(self) -> None:
        """Start both loops (no-op unless the scheduler is enabled)."""
        if not self.enabled:
            logger.info("Scheduler disabled; jobs run on demand only")
            return
        if self.running:
            return
        self._loops = [
            asyncio.create_task(self._loop(self.run_ingestion, self.ingestion_interval)),
            asyncio.create_task(self._loop(self.run_sweep, self.sweep_interval)),
        ]
        logger.info(
            "Scheduler started (ingestion every %ss, sweep every %ss)",
            self.ingestion_interval, self.sweep_interval,
        )

    async def stop(self) -> None:
        for task in self._loops:
            task.cancel()
        for task in self._loops:
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._loops:
            logger.info("Scheduler stopped")
        self._loops = []

    async def _loop(
        self, trigger_job: Callable[..., Awaitable[JobRun]], interval: float,
    ) -> None:
        """Run the job, then sleep ``interval`` seconds; forever."""
        while True:
            try:
                await trigger_job(trigger="schedule")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Scheduler error: %s", e)
            await asyncio.sleep(interval)
