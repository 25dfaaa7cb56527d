"""
Snapshot job scheduler.

compute_next_run_at() is a pure function of the job's schedule and a
reference instant. JobScheduler runs the due jobs target by target and
always advances their bookkeeping, whether the targets succeeded or not.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from orchestrator.job_store import JobStoreError, YamlJobStore
from orchestrator.logging_utils import correlation_context, log_with_fields
from orchestrator.models import ScheduledJob, ScheduleType
from orchestrator.snapshots import SnapshotOutcome, SnapshotRunner
from orchestrator.synchronizer import HostDirectory

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_HOURS = 24
DEFAULT_HOUR = 2
DEFAULT_MINUTE = 0
DEFAULT_DAY_OF_WEEK = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: Optional[int], default: int, low: int, high: int) -> int:
    if value is None:
        return default
    return max(low, min(high, int(value)))


def _next_from(job: ScheduledJob, ref: datetime) -> datetime:
    config = job.schedule_config

    if job.schedule_type == ScheduleType.INTERVAL:
        hours = config.interval_hours if config.interval_hours is not None else DEFAULT_INTERVAL_HOURS
        return ref + timedelta(hours=max(1, hours))

    hour = _clamp(config.hour, DEFAULT_HOUR, 0, 23)
    minute = _clamp(config.minute, DEFAULT_MINUTE, 0, 59)
    candidate = ref.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if job.schedule_type == ScheduleType.DAILY:
        if candidate <= ref:
            candidate += timedelta(days=1)
        return candidate

    # Weekly; datetime.weekday() has Monday = 0, schedules use Sunday = 0
    target = _clamp(config.day_of_week, DEFAULT_DAY_OF_WEEK, 0, 6)
    today = (ref.weekday() + 1) % 7
    candidate += timedelta(days=(target - today) % 7)
    if candidate <= ref:
        candidate += timedelta(days=7)
    return candidate


def compute_next_run_at(job: ScheduledJob, now: datetime) -> datetime:
    """
    Next run of ``job`` after its last run (or after ``now`` if it never ran).

    All times are UTC. A result that is not after ``now`` (a job whose last
    run is long past) is recomputed from ``now``, so a job never becomes due
    again immediately.

    Example:
        daily at 02:00, computed at 2024-01-01T03:00Z -> 2024-01-02T02:00Z
    """
    now = now.astimezone(timezone.utc)
    ref = job.last_run_at or now
    next_run = _next_from(job, ref)
    if next_run <= now:
        next_run = _next_from(job, now)
    return next_run


@dataclass
class JobRunReport:
    job_id: str
    started_at: datetime
    outcomes: List[SnapshotOutcome] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    next_run_at: Optional[datetime] = None


class JobScheduler:
    """
    Runs due snapshot jobs.

    Targets are processed one after another. A target whose host is unknown
    or belongs to another owner than the job is skipped.
    """

    def __init__(
        self,
        jobs: YamlJobStore,
        hosts: HostDirectory,
        runner: SnapshotRunner,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.jobs = jobs
        self.hosts = hosts
        self.runner = runner
        self.clock = clock
        self._busy = threading.Lock()

    def set_next_run_at(self, job: ScheduledJob, now: Optional[datetime] = None) -> datetime:
        """Compute and persist the job's next run."""
        next_run = compute_next_run_at(job, now or self.clock())
        self.jobs.update(job.id, next_run_at=next_run)
        return next_run

    def tick(self) -> bool:
        """
        Run every due job once.

        Returns:
            False if the previous tick was still running
        """
        if not self._busy.acquire(blocking=False):
            logger.debug("Scheduler tick skipped: previous tick still running")
            return False
        try:
            self.run_due_jobs(self.clock())
            return True
        finally:
            self._busy.release()

    def run_due_jobs(self, now: datetime) -> List[JobRunReport]:
        reports = []
        for job in self.jobs.find_due_jobs(now):
            with correlation_context(job_id=job.id):
                try:
                    reports.append(self.run_job(job, now))
                except Exception as e:
                    logger.error(f"Job {job.id} failed: {e}", exc_info=True)
        return reports

    def run_job(self, job: ScheduledJob, now: datetime) -> JobRunReport:
        """
        Snapshot every target of ``job``, then advance last/next run.

        Raises:
            JobStoreError: If the bookkeeping cannot be saved
        """
        report = JobRunReport(job_id=job.id, started_at=now)
        logger.info(f"Running job {job.id} ({len(job.targets)} targets)")

        for target in job.targets:
            label = f"{target.host_id}/{target.container_name}"
            host = self.hosts.get_host(target.host_id)
            if host is None:
                logger.warning(f"Job {job.id}: unknown host {target.host_id}, target skipped")
                report.failures.append(f"{label}: unknown host")
                continue
            if host.owner != job.owner:
                logger.warning(f"Job {job.id}: host {host.id} belongs to another owner, target skipped")
                report.failures.append(f"{label}: owner mismatch")
                continue

            try:
                with correlation_context(host_id=host.id):
                    report.outcomes.append(
                        self.runner.run(host, target.container_name, job.retention)
                    )
            except Exception as e:
                logger.error(f"Job {job.id}: snapshot of {label} failed: {e}", exc_info=True)
                report.failures.append(f"{label}: {e}")

        ran = job.model_copy(update={'last_run_at': now})
        report.next_run_at = compute_next_run_at(ran, now)
        try:
            self.jobs.update(job.id, last_run_at=now, next_run_at=report.next_run_at)
        except JobStoreError:
            logger.error(f"Could not save run times of job {job.id}")
            raise

        log_with_fields(
            logger, logging.INFO if not report.failures else logging.WARNING,
            "Job run finished",
            targets=len(job.targets), failed=len(report.failures),
            next_run_at=report.next_run_at.isoformat()
        )
        return report
