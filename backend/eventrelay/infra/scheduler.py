"""APScheduler host for the periodic notification jobs."""

from __future__ import annotations

from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


class JobScheduler:
    """Runs coroutine jobs on fixed intervals inside the app's event loop.

    Jobs never overlap with themselves and missed runs collapse into one.
    """

    def __init__(self) -> None:
        self._scheduler = AsyncIOScheduler(timezone="UTC")

    @property
    def started(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def _add(self, job_id: str, func: Callable[[], object], trigger: IntervalTrigger) -> None:
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def schedule_every(self, job_id: str, func: Callable[[], object], *, seconds: float) -> None:
        self._add(job_id, func, IntervalTrigger(seconds=seconds))

    def schedule_hourly(self, job_id: str, func: Callable[[], object], *, hours: int = 1) -> None:
        self._add(job_id, func, IntervalTrigger(hours=hours))

    def job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]


__all__ = ["JobScheduler"]
