"""
Job scheduling for bacup.

Manages:
- The timing loop (an APScheduler interval job evaluating due jobs)
- Dispatch of every due firing onto its own worker thread
- The per-job execution lock: a firing that comes due while the previous
  one is still running is skipped, never queued
- Graceful shutdown with a bounded grace period
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from bacup.config import Config
from bacup.models import BackupDefinition, JobState, RunOutcome, RunResult, ScheduledJob
from bacup.schedule import InvalidSchedule, Schedule


logger = logging.getLogger(__name__)

Runner = Callable[[BackupDefinition, threading.Event], RunResult]

TICK_JOB_ID = 'bacup_tick'

# A monthly day exists at least once in any 12 consecutive months
MAX_MONTHLY_FALLBACKS = 12


def _start_of_next_month(instant: datetime) -> datetime:
    year, month = instant.year, instant.month + 1
    if month > 12:
        year, month = year + 1, 1
    return instant.replace(year=year, month=month, day=1, hour=0, minute=0, second=0, microsecond=0)


def resolve_next_fire(schedule: Schedule, reference: datetime) -> datetime:
    """
    Next fire instant for a running daemon.

    Unlike load time, a monthly day missing from the reference month is not
    fatal here: resolution restarts from the first instant of the following
    month.

    Args:
        schedule: Parsed schedule
        reference: Reference instant

    Returns:
        Timezone-aware UTC datetime

    Raises:
        InvalidSchedule: If no month within a year yields a fire instant
    """
    for _ in range(MAX_MONTHLY_FALLBACKS):
        try:
            return schedule.next_fire_time(reference)
        except InvalidSchedule as e:
            logger.warning(f"{e}; resolving from the start of the following month")
            reference = _start_of_next_month(reference)
    return schedule.next_fire_time(reference)


class JobScheduler:
    """
    Owns the daemon's jobs and drives them through Idle -> Due -> Running -> Idle.

    Only the timing loop sets a job's `running` flag and only the worker
    that ran the job clears it, so the flag needs no extra locking.
    """

    def __init__(self, jobs: List[ScheduledJob], runner: Runner,
                 tick_seconds: Optional[int] = None,
                 grace_period: Optional[float] = None):
        """
        Initialize the scheduler.

        Args:
            jobs: Jobs built from the loaded configuration
            runner: Executes one firing, e.g. bacup.backup.execute_backup
            tick_seconds: Granularity of the timing loop
            grace_period: Seconds in-flight runs get to finish on shutdown
        """
        self.jobs: Dict[str, ScheduledJob] = {job.name: job for job in jobs}
        self.runner = runner
        self.tick_seconds = tick_seconds or Config.TICK_SECONDS
        self.grace_period = grace_period if grace_period is not None else Config.SHUTDOWN_GRACE_SECONDS
        self.cancel_event = threading.Event()

        self._stopping = False
        # Held by tick() while dispatching and by stop() while flipping _stopping
        self._lock = threading.Lock()
        self._workers: Dict[str, threading.Thread] = {}
        self._scheduler = BackgroundScheduler(
            job_defaults={
                'coalesce': True,  # Combine missed ticks into one
                'max_instances': 1,  # Ticks never overlap
            },
            timezone='UTC'
        )

    def start(self):
        """
        Start the timing loop.

        The first tick runs immediately, then every `tick_seconds`.
        """
        if self._scheduler.running:
            logger.info("Scheduler already running")
            return

        self._scheduler.add_job(
            func=self.tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds, timezone='UTC'),
            id=TICK_JOB_ID,
            name='Backup timing loop',
            next_run_time=datetime.now(timezone.utc),
            replace_existing=True
        )
        self._scheduler.start()

        logger.info(f"Scheduler started with {len(self.jobs)} jobs (tick: {self.tick_seconds}s)")
        for job in self.jobs.values():
            logger.info(f"  - {job.name}: {job.definition.when} (next run: {job.next_fire.isoformat()})")

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """
        Evaluate every job once and dispatch the due ones.

        Args:
            now: Evaluation instant (defaults to the current time)

        Returns:
            Names of the jobs dispatched by this tick
        """
        now = now or datetime.now(timezone.utc)
        dispatched = []

        with self._lock:
            if self._stopping:
                return []
            for job in self.jobs.values():
                if now < job.next_fire:
                    continue

                if job.running:
                    self._skip(job, now)
                    continue

                job.state = JobState.DUE
                self._dispatch(job, now)
                dispatched.append(job.name)

        return dispatched

    def _skip(self, job: ScheduledJob, now: datetime):
        job.skipped += 1
        logger.warning(
            f"Skipping {job.name} due at {job.next_fire.isoformat()}: "
            f"previous run still in progress ({job.skipped} skipped so far)"
        )
        job.next_fire = resolve_next_fire(job.schedule, now)

    def _dispatch(self, job: ScheduledJob, now: datetime):
        job.running = True
        job.state = JobState.RUNNING
        job.next_fire = resolve_next_fire(job.schedule, now)

        logger.info(f"Dispatching {job.name} (next run: {job.next_fire.isoformat()})")
        worker = threading.Thread(
            target=self._run, args=(job,), name=f"bacup-{job.name}", daemon=True
        )
        self._workers[job.name] = worker
        worker.start()

    def _run(self, job: ScheduledJob) -> RunResult:
        """Worker body: run the pipeline, then release the job's lock."""
        started_at = datetime.now(timezone.utc)
        result = None
        try:
            result = self.runner(job.definition, self.cancel_event)
        except Exception as e:
            logger.exception(f"Backup job {job.name} crashed")
            result = RunResult(
                job_name=job.name,
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                outcome=RunOutcome.FAILURE,
                error=f"{type(e).__name__}: {e}"
            )
        finally:
            job.last_result = result
            try:
                job.next_fire = resolve_next_fire(job.schedule, datetime.now(timezone.utc))
            except InvalidSchedule as e:
                logger.error(f"Unable to reschedule {job.name}: {e}")
            job.state = JobState.IDLE
            job.running = False

        return result

    def run_job(self, name: str) -> RunResult:
        """
        Run one job immediately in the calling thread.

        Args:
            name: Job name

        Returns:
            RunResult of the run

        Raises:
            KeyError: If no job has that name
            RuntimeError: If the job is already running
        """
        job = self.jobs[name]
        if job.running:
            raise RuntimeError(f"Backup job {name} is already running")

        job.running = True
        job.state = JobState.RUNNING
        return self._run(job)

    def stop(self) -> List[str]:
        """
        Stop the timing loop and wind down in-flight runs.

        No new firing is dispatched once this is called. Running pipelines
        are asked to cancel at their next step boundary and get
        `grace_period` seconds to finish and clean up; any still busy after
        that are abandoned.

        Returns:
            Names of the jobs abandoned while still running
        """
        with self._lock:
            self._stopping = True
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Timing loop stopped")

        self.cancel_event.set()

        deadline = datetime.now(timezone.utc) + timedelta(seconds=self.grace_period)
        for worker in list(self._workers.values()):
            remaining = (deadline - datetime.now(timezone.utc)).total_seconds()
            worker.join(max(0.0, remaining))

        abandoned = [name for name, worker in self._workers.items() if worker.is_alive()]
        for name in abandoned:
            logger.error(f"Backup job {name} did not finish within {self.grace_period}s, abandoning it")

        return abandoned

    def is_running(self) -> bool:
        """Check if the timing loop is running."""
        return self._scheduler.running and not self._stopping

    def get_scheduled_jobs(self) -> list:
        """
        Get list of all scheduled jobs.

        Returns:
            List of dicts with job information
        """
        jobs = []

        for job in self.jobs.values():
            last = job.last_result
            jobs.append({
                'name': job.name,
                'when': job.definition.when,
                'state': job.state.value,
                'next_run': job.next_fire.isoformat(),
                'last_outcome': last.outcome.value if last else None,
                'skipped': job.skipped,
            })

        return jobs
