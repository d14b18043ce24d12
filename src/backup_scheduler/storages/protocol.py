from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

from backup_scheduler.domain.files import BackupFile
from backup_scheduler.domain.job import ScheduledJob
from backup_scheduler.domain.run import JobRun


class JobStore(Protocol):
    async def create_job(self, job: ScheduledJob) -> str:
        """Create a new scheduled job and return its ID."""
        ...

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        """Retrieve a scheduled job by its ID."""
        ...

    async def update_job(self, job: ScheduledJob) -> bool:
        """Update an existing job. Return True if successful, False otherwise."""
        ...

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job by its ID. Return True if successful, False otherwise."""
        ...

    async def list_jobs(self, limit: int = 100, offset: int = 0) -> List[ScheduledJob]:
        """List jobs with pagination."""
        ...

    async def list_enabled_jobs(self) -> List[ScheduledJob]:
        """List every enabled job."""
        ...

    async def create_run(self, run: JobRun) -> str:
        """Record a new run and return its ID."""
        ...

    async def finalize_run(self, run: JobRun) -> bool:
        """Persist the terminal status and metrics of a run."""
        ...

    async def get_run(self, run_id: str) -> Optional[JobRun]:
        """Retrieve a run by its ID."""
        ...

    async def list_runs(self, job_id: str, limit: int = 10) -> List[JobRun]:
        """List runs of a job ordered by started_at descending."""
        ...

    async def list_runs_between(self, start: datetime, end: datetime) -> List[JobRun]:
        """List runs started in [start, end)."""
        ...

    async def get_settings(self, keys: Iterable[str]) -> Dict[str, str]:
        """Return the stored values for the given keys. Missing keys are omitted."""
        ...

    async def set_settings(self, values: Dict[str, str]) -> None:
        """Insert or overwrite settings."""
        ...

    async def list_backup_files(self, database_id: Optional[str] = None) -> List[BackupFile]:
        """List the local backup files, optionally for one database."""
        ...
