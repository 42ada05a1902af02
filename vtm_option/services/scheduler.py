"""
Single-process periodic dispatcher.

Every iteration reads the wall clock once and runs each job whose interval has
elapsed since its last run, one after another. A job's failure is logged and
never reaches the loop; its last_run still advances so it is retried on its
normal cadence rather than on every tick.
"""
import asyncio
import gc
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from vtm_option.services.metrics import job_duration, job_runs_counter

logger = logging.getLogger("scheduler")

JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class Job:
    name: str
    interval: float
    func: JobFunc
    last_run: float = 0.0
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None

    def is_due(self, now: float) -> bool:
        return now - self.last_run >= self.interval


async def run_gc():
    collected = gc.collect()
    logger.debug("Maintenance: gc collected %d objects", collected)


class Scheduler:
    def __init__(self, tick_seconds: float = 10.0,
                 maintenance_interval: float = 600.0,
                 maintenance: Optional[JobFunc] = None,
                 clock: Callable[[], float] = time.time):
        self.tick_seconds = tick_seconds
        self.jobs: List[Job] = []
        self.maintenance = Job("maintenance", maintenance_interval, maintenance or run_gc)
        self._clock = clock
        self._stop = asyncio.Event()
        self._running = False

    def add_job(self, name: str, interval: float, func: JobFunc) -> Job:
        if interval <= 0:
            raise ValueError(f"Job {name} interval must be positive")
        if any(j.name == name for j in self.jobs):
            raise ValueError(f"Job {name} already registered")
        job = Job(name, interval, func)
        self.jobs.append(job)
        return job

    async def _invoke(self, job: Job, now: float):
        started = time.monotonic()
        try:
            await job.func()
            job.last_error = None
            job_runs_counter.labels(job=job.name, outcome="ok").inc()
        except Exception as e:
            job.failures += 1
            job.last_error = str(e)
            job_runs_counter.labels(job=job.name, outcome="error").inc()
            logger.exception("%s error: %s", job.name, e)
        finally:
            job.runs += 1
            job.last_run = now
            job_duration.labels(job=job.name).observe(time.monotonic() - started)

    async def run_pending(self, now: Optional[float] = None) -> List[str]:
        """Run every due job once, sequentially. Returns the names that ran."""
        if now is None:
            now = self._clock()
        ran = []
        for job in self.jobs:
            if self._stop.is_set():
                break
            if job.is_due(now):
                await self._invoke(job, now)
                ran.append(job.name)
        if not self._stop.is_set() and self.maintenance.is_due(now):
            await self._invoke(self.maintenance, now)
        return ran

    async def run_forever(self):
        if self._running:
            logger.info("Scheduler already running")
            return
        self._running = True
        logger.info("Scheduler started: tick=%ss jobs=%s", self.tick_seconds,
                    ", ".join(f"{j.name}/{j.interval}s" for j in self.jobs))
        # First maintenance pass waits a full interval
        self.maintenance.last_run = self._clock()
        try:
            while not self._stop.is_set():
                await self.run_pending()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.tick_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("Scheduler stopped")

    def stop(self):
        self._stop.set()

    @property
    def running(self) -> bool:
        return self._running

    def status(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'tick_seconds': self.tick_seconds,
            'jobs': {
                j.name: {
                    'interval': j.interval,
                    'last_run': j.last_run,
                    'runs': j.runs,
                    'failures': j.failures,
                    'last_error': j.last_error,
                }
                for j in self.jobs + [self.maintenance]
            },
        }
