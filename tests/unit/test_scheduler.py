"""
Unit tests for snapshot job scheduling.

Tests the scheduler's ability to:
- Compute next runs for interval, daily and weekly schedules (UTC)
- Run due jobs target by target with failure isolation
- Always advance last/next run, even when every target fails
"""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from orchestrator.connection_manager import HostConnectionError
from orchestrator.host_directory import YamlHostDirectory
from orchestrator.job_store import YamlJobStore
from orchestrator.models import Host, JobTarget, ScheduleConfig, ScheduledJob, ScheduleType
from orchestrator.scheduler import JobScheduler, compute_next_run_at
from orchestrator.snapshots import SnapshotRunner


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_job(
    job_id: str = "nightly",
    schedule_type: ScheduleType = ScheduleType.DAILY,
    targets: List[JobTarget] = None,
    last_run_at: datetime = None,
    next_run_at: datetime = None,
    enabled: bool = True,
    owner: str = "ops@example.com",
    **schedule,
) -> ScheduledJob:
    """Helper to create test ScheduledJob objects."""
    return ScheduledJob(
        id=job_id,
        owner=owner,
        schedule_type=schedule_type,
        schedule_config=ScheduleConfig(**schedule),
        targets=targets or [],
        last_run_at=last_run_at,
        next_run_at=next_run_at,
        enabled=enabled,
    )


class TestDaily:

    def test_after_todays_time(self):
        job = make_job(hour=2, minute=0)

        assert compute_next_run_at(job, utc(2024, 1, 1, 3, 0)) == utc(2024, 1, 2, 2, 0)

    def test_before_todays_time(self):
        job = make_job(hour=2, minute=0)

        assert compute_next_run_at(job, utc(2024, 1, 1, 1, 0)) == utc(2024, 1, 1, 2, 0)

    def test_exactly_at_time_rolls_over(self):
        job = make_job(hour=2, minute=0)

        assert compute_next_run_at(job, utc(2024, 1, 1, 2, 0)) == utc(2024, 1, 2, 2, 0)

    def test_defaults_to_two_am(self):
        assert compute_next_run_at(make_job(), utc(2024, 1, 1, 12, 0)) == utc(2024, 1, 2, 2, 0)

    def test_midnight_honored(self):
        job = make_job(hour=0, minute=30)

        assert compute_next_run_at(job, utc(2024, 1, 1, 3, 0)) == utc(2024, 1, 2, 0, 30)

    def test_out_of_range_clamped(self):
        job = make_job(hour=30, minute=-5)

        assert compute_next_run_at(job, utc(2024, 1, 1, 3, 0)) == utc(2024, 1, 1, 23, 0)

    def test_from_last_run(self):
        job = make_job(hour=2, last_run_at=utc(2024, 1, 1, 2, 0))

        assert compute_next_run_at(job, utc(2024, 1, 1, 2, 5)) == utc(2024, 1, 2, 2, 0)

    def test_stale_last_run_uses_now(self):
        """A job that has not run for weeks does not become due right away."""
        job = make_job(hour=2, last_run_at=utc(2023, 12, 1, 2, 0))

        assert compute_next_run_at(job, utc(2024, 1, 1, 3, 0)) == utc(2024, 1, 2, 2, 0)

    def test_other_timezone_converted(self):
        job = make_job(hour=2)

        result = compute_next_run_at(job, utc(2024, 1, 1, 3, 0).astimezone(timezone(timedelta(hours=5))))

        assert result == utc(2024, 1, 2, 2, 0)
        assert result.tzinfo == timezone.utc


class TestWeekly:
    # 2024-01-01 is a Monday

    def test_next_sunday(self):
        job = make_job(schedule_type=ScheduleType.WEEKLY, day_of_week=0, hour=2)

        assert compute_next_run_at(job, utc(2024, 1, 1, 3, 0)) == utc(2024, 1, 7, 2, 0)

    def test_later_same_day(self):
        job = make_job(schedule_type=ScheduleType.WEEKLY, day_of_week=1, hour=2)

        assert compute_next_run_at(job, utc(2024, 1, 1, 1, 0)) == utc(2024, 1, 1, 2, 0)

    def test_exactly_now_rolls_a_week(self):
        job = make_job(schedule_type=ScheduleType.WEEKLY, day_of_week=1, hour=2)

        assert compute_next_run_at(job, utc(2024, 1, 1, 2, 0)) == utc(2024, 1, 8, 2, 0)

    def test_earlier_today_rolls_a_week(self):
        job = make_job(schedule_type=ScheduleType.WEEKLY, day_of_week=1, hour=2)

        assert compute_next_run_at(job, utc(2024, 1, 1, 5, 0)) == utc(2024, 1, 8, 2, 0)

    def test_saturday(self):
        job = make_job(schedule_type=ScheduleType.WEEKLY, day_of_week=6, hour=4, minute=15)

        assert compute_next_run_at(job, utc(2024, 1, 1, 3, 0)) == utc(2024, 1, 6, 4, 15)


class TestInterval:

    def test_from_last_run(self):
        job = make_job(schedule_type=ScheduleType.INTERVAL, interval_hours=6,
                       last_run_at=utc(2024, 1, 1, 0, 0))

        assert compute_next_run_at(job, utc(2024, 1, 1, 1, 0)) == utc(2024, 1, 1, 6, 0)

    def test_never_ran(self):
        job = make_job(schedule_type=ScheduleType.INTERVAL, interval_hours=12)

        assert compute_next_run_at(job, utc(2024, 1, 1, 1, 0)) == utc(2024, 1, 1, 13, 0)

    def test_minimum_one_hour(self):
        job = make_job(schedule_type=ScheduleType.INTERVAL, interval_hours=0.25,
                       last_run_at=utc(2024, 1, 1, 0, 0))

        assert compute_next_run_at(job, utc(2024, 1, 1, 0, 30)) == utc(2024, 1, 1, 1, 0)

    def test_default_one_day(self):
        job = make_job(schedule_type=ScheduleType.INTERVAL)

        assert compute_next_run_at(job, utc(2024, 1, 1, 0, 0)) == utc(2024, 1, 2, 0, 0)


PS_OUTPUT = "a1b2c3d4e5f6|web|nginx|Up 3 hours|\n0123456789ab|db|postgres|Up 3 hours|\n"
NOW = utc(2024, 1, 1, 3, 0)


def make_scheduler(fake_executor, jobs, hosts=None):
    hosts = hosts or [
        Host(id="web-01", owner="ops@example.com", address="203.0.113.5"),
        Host(id="web-02", owner="ops@example.com", address="203.0.113.6"),
        Host(id="other", owner="someone@example.com", address="203.0.113.7"),
    ]
    fake_executor.on("docker ps -a --format", stdout=PS_OUTPUT)
    store = YamlJobStore.in_memory(jobs)
    scheduler = JobScheduler(
        jobs=store,
        hosts=YamlHostDirectory.from_hosts(hosts),
        runner=SnapshotRunner(fake_executor, clock=lambda: NOW),
        clock=lambda: NOW,
    )
    return scheduler, store


def commits(fake_executor, host_id=None):
    return [c for c in fake_executor.commands(host_id) if c.startswith("docker commit")]


class TestRunDueJobs:

    def test_runs_every_target(self, fake_executor):
        job = make_job(targets=[JobTarget(host_id="web-01", container_name="web"),
                                JobTarget(host_id="web-02", container_name="db")])
        scheduler, store = make_scheduler(fake_executor, [job])

        reports = scheduler.run_due_jobs(NOW)

        assert len(reports) == 1
        assert len(commits(fake_executor)) == 2
        saved = store.get_job("nightly")
        assert saved.last_run_at == NOW
        assert saved.next_run_at == utc(2024, 1, 2, 2, 0)

    def test_failed_target_does_not_stop_others(self, fake_executor):
        job = make_job(targets=[JobTarget(host_id="web-01", container_name="web"),
                                JobTarget(host_id="web-02", container_name="db")])
        scheduler, store = make_scheduler(fake_executor, [job])
        fake_executor.on("docker ps", host_id="web-01", error=HostConnectionError("web-01", "refused"))

        reports = scheduler.run_due_jobs(NOW)

        assert len(reports[0].failures) == 1
        assert len(commits(fake_executor, "web-02")) == 1
        assert store.get_job("nightly").next_run_at == utc(2024, 1, 2, 2, 0)

    def test_all_targets_failing_still_advances(self, fake_executor):
        """A broken job does not re-trigger on every tick."""
        job = make_job(targets=[JobTarget(host_id="web-01", container_name="web")])
        scheduler, store = make_scheduler(fake_executor, [job])
        fake_executor.on("docker commit", exit_code=1, stderr="boom")

        scheduler.run_due_jobs(NOW)

        assert store.find_due_jobs(NOW) == []
        assert store.get_job("nightly").last_run_at == NOW

    def test_not_due_and_disabled_skipped(self, fake_executor):
        target = [JobTarget(host_id="web-01", container_name="web")]
        jobs = [
            make_job("later", targets=target, next_run_at=NOW + timedelta(hours=1)),
            make_job("off", targets=target, enabled=False),
            make_job("due", targets=target, next_run_at=NOW),
        ]
        scheduler, store = make_scheduler(fake_executor, jobs)

        reports = scheduler.run_due_jobs(NOW)

        assert [r.job_id for r in reports] == ["due"]
        assert store.get_job("off").last_run_at is None

    def test_foreign_host_skipped(self, fake_executor):
        job = make_job(targets=[JobTarget(host_id="other", container_name="web")])
        scheduler, _ = make_scheduler(fake_executor, [job])

        reports = scheduler.run_due_jobs(NOW)

        assert commits(fake_executor) == []
        assert "owner mismatch" in reports[0].failures[0]

    def test_unknown_host_skipped(self, fake_executor):
        job = make_job(targets=[JobTarget(host_id="gone", container_name="web")])
        scheduler, store = make_scheduler(fake_executor, [job])

        reports = scheduler.run_due_jobs(NOW)

        assert "unknown host" in reports[0].failures[0]
        assert store.get_job("nightly").last_run_at == NOW

    def test_interval_job_next_run_from_now(self, fake_executor):
        job = make_job(schedule_type=ScheduleType.INTERVAL, interval_hours=6,
                       last_run_at=NOW - timedelta(days=3),
                       targets=[JobTarget(host_id="web-01", container_name="web")])
        scheduler, store = make_scheduler(fake_executor, [job])

        scheduler.run_due_jobs(NOW)

        assert store.get_job("nightly").next_run_at == NOW + timedelta(hours=6)


class TestSchedulerTick:

    def test_tick_runs_due_jobs(self, fake_executor):
        job = make_job(targets=[JobTarget(host_id="web-01", container_name="web")])
        scheduler, store = make_scheduler(fake_executor, [job])

        assert scheduler.tick() is True

        assert store.get_job("nightly").last_run_at == NOW

    def test_busy_tick_skipped(self, fake_executor):
        scheduler, _ = make_scheduler(fake_executor, [])
        scheduler._busy.acquire()
        try:
            assert scheduler.tick() is False
        finally:
            scheduler._busy.release()

    def test_set_next_run_at(self, fake_executor):
        scheduler, store = make_scheduler(fake_executor, [make_job(hour=4)])

        next_run = scheduler.set_next_run_at(store.get_job("nightly"))

        assert next_run == utc(2024, 1, 1, 4, 0)
        assert store.get_job("nightly").next_run_at == next_run

    def test_store_failure_logged_not_raised(self, fake_executor):
        job = make_job(targets=[JobTarget(host_id="web-01", container_name="web")])
        scheduler, store = make_scheduler(fake_executor, [job])

        def broken_update(job_id, **fields):
            raise RuntimeError("disk full")

        store.update = broken_update

        assert scheduler.run_due_jobs(NOW) == []


@pytest.mark.parametrize("day,expected_day", [(0, 7), (2, 2), (5, 5)])
def test_weekly_days(day, expected_day):
    job = make_job(schedule_type=ScheduleType.WEEKLY, day_of_week=day, hour=2)

    assert compute_next_run_at(job, utc(2024, 1, 1, 3, 0)).day == expected_day
