"""
Scheduled job store backed by a YAML file.

The whole file is rewritten on every update.
"""
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from orchestrator.models import JobsFile, ScheduledJob

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {'last_run_at', 'next_run_at', 'enabled', 'retention'}


class JobStoreError(Exception):
    """Error while loading or saving scheduled jobs."""
    pass


class YamlJobStore:
    """
    Scheduled jobs keyed by id, persisted to ``jobs_file``.

    Example:
        store = YamlJobStore("/var/lib/dockerfleet/jobs.yaml")
        store.load()
        for job in store.find_due_jobs(now):
            ...
            store.update(job.id, last_run_at=now, next_run_at=next_run)
    """

    def __init__(self, jobs_file: Optional[str]):
        self.jobs_file = Path(jobs_file) if jobs_file else None
        self._jobs: Dict[str, ScheduledJob] = {}
        self._lock = threading.Lock()

    @classmethod
    def in_memory(cls, jobs: List[ScheduledJob]) -> "YamlJobStore":
        """Store that never touches the disk."""
        store = cls(None)
        store._jobs = {job.id: job for job in jobs}
        return store

    def load(self) -> List[ScheduledJob]:
        """
        Read the jobs file.

        A missing file means no jobs yet.

        Raises:
            JobStoreError: If the file is invalid
        """
        if self.jobs_file is None:
            return self.list_jobs()

        if not self.jobs_file.exists():
            logger.warning(f"Jobs file does not exist yet: {self.jobs_file}")
            with self._lock:
                self._jobs = {}
            return []

        try:
            with open(self.jobs_file, 'r') as f:
                data = yaml.safe_load(f) or {}
            jobs = JobsFile(**data).jobs
        except yaml.YAMLError as e:
            raise JobStoreError(f"Invalid YAML in {self.jobs_file}: {e}")
        except ValidationError as e:
            raise JobStoreError(f"Invalid jobs file {self.jobs_file}: {e}")

        with self._lock:
            self._jobs = {job.id: job for job in jobs}

        logger.info(f"Loaded {len(jobs)} scheduled jobs from {self.jobs_file}")
        return jobs

    def list_jobs(self) -> List[ScheduledJob]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def find_due_jobs(self, now: datetime) -> List[ScheduledJob]:
        """Enabled jobs whose next run is unset or not after ``now``."""
        return [job for job in self.list_jobs() if job.is_due(now)]

    def update(self, job_id: str, **fields) -> ScheduledJob:
        """
        Change fields of a job and persist the file.

        Raises:
            JobStoreError: If the job is unknown, a field is not updatable
                or the file cannot be written
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise JobStoreError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobStoreError(f"Unknown job: {job_id}")
            updated = ScheduledJob(**{**job.model_dump(), **fields})
            self._jobs[job_id] = updated
            self._save_locked()
            return updated.model_copy(deep=True)

    def _save_locked(self) -> None:
        if self.jobs_file is None:
            return

        data = {
            'jobs': [job.model_dump(mode='json', exclude_none=True) for job in self._jobs.values()]
        }
        tmp_path = self.jobs_file.with_name(self.jobs_file.name + '.tmp')
        try:
            self.jobs_file.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, self.jobs_file)
        except OSError as e:
            raise JobStoreError(f"Failed to save jobs file {self.jobs_file}: {e}")

        logger.debug(f"Saved {len(self._jobs)} scheduled jobs to {self.jobs_file}")
