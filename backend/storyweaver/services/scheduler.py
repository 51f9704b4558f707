import asyncio
from typing import Any, Dict, List, Optional

from storyweaver.core.config import (
    JOB_CLEANUP_INTERVAL_SEC,
    JOB_RETENTION_KEEP,
    WORKER_BATCH_SIZE,
    WORKER_MAX_CONCURRENT,
    WORKER_POLL_INTERVAL_SEC,
)
from storyweaver.core.logging import logger
from storyweaver.db import jobs_repo
from storyweaver.services.executor import JobExecutor
from storyweaver.websocket.manager import manager


class JobScheduler:
    """Polls the job store and dispatches pending jobs to the executor.

    The in-flight set is process-local: it bounds concurrency and prevents a
    job that shows up in two consecutive fetches from being dispatched twice
    by this process. It does not protect against a second process polling
    the same store.
    """

    def __init__(
        self,
        executor: Optional[JobExecutor] = None,
        poll_interval: float = WORKER_POLL_INTERVAL_SEC,
        batch_size: int = WORKER_BATCH_SIZE,
        max_concurrent: int = WORKER_MAX_CONCURRENT,
        retention_keep: int = JOB_RETENTION_KEEP,
        cleanup_interval: float = JOB_CLEANUP_INTERVAL_SEC,
    ) -> None:
        self.executor = executor or JobExecutor()
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_concurrent = max(1, max_concurrent)
        self.retention_keep = retention_keep
        self.cleanup_interval = cleanup_interval
        self.in_flight: set[str] = set()
        self._dispatches: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self.running:
            logger.warning("job scheduler already running")
            return
        self._loop_task = asyncio.create_task(self._poll_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        await manager.emit_log(
            "info",
            f"job scheduler started (max_concurrent={self.max_concurrent}, "
            f"batch_size={self.batch_size})",
        )

    async def stop(self) -> None:
        if not self.running:
            return
        for task in (self._loop_task, self._cleanup_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._loop_task, self._cleanup_task) if t is not None),
            return_exceptions=True,
        )
        self._loop_task = None
        self._cleanup_task = None
        await manager.emit_log("info", "job scheduler stopped")

    async def drain(self) -> None:
        while self._dispatches:
            await asyncio.gather(*list(self._dispatches), return_exceptions=True)

    async def tick(self) -> List[str]:
        if len(self.in_flight) >= self.max_concurrent:
            return []

        dispatched: List[str] = []
        for job in await jobs_repo.get_pending_jobs(self.batch_size):
            job_id = job["job_id"]
            if job_id in self.in_flight:
                continue
            if len(self.in_flight) >= self.max_concurrent:
                break
            self.in_flight.add(job_id)
            task = asyncio.create_task(self._dispatch(job_id))
            self._dispatches.add(task)
            task.add_done_callback(self._dispatches.discard)
            dispatched.append(job_id)
        return dispatched

    async def _dispatch(self, job_id: str) -> None:
        try:
            job = await jobs_repo.fetch_job(job_id)
            if not job or job["status"] != "pending":
                return
            await self.executor.execute(job)
        except Exception:
            logger.exception("dispatch of job %s failed", job_id)
        finally:
            self.in_flight.discard(job_id)

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as exc:
                await manager.emit_log("error", f"job scheduler error: {exc}")
            await asyncio.sleep(self.poll_interval)

    async def _cleanup_loop(self) -> None:
        while True:
            try:
                removed = await jobs_repo.cleanup_completed_jobs(self.retention_keep)
                if removed:
                    await manager.emit_log(
                        "info", f"retention sweep removed {removed} completed jobs"
                    )
            except Exception as exc:
                await manager.emit_log("error", f"retention sweep error: {exc}")
            await asyncio.sleep(self.cleanup_interval)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "in_flight": len(self.in_flight),
            "in_flight_job_ids": sorted(self.in_flight),
            "max_concurrent": self.max_concurrent,
            "batch_size": self.batch_size,
            "poll_interval_sec": self.poll_interval,
        }


scheduler = JobScheduler()
