from typing import Protocol

from backup_scheduler.domain.job import JobKind, ScheduledJob
from backup_scheduler.domain.run import RunMetrics


class JobExecutor(Protocol):
    """
    Protocol class for job executors.
    """

    async def run(self, job: ScheduledJob) -> RunMetrics:
        """
        Execute the given job.

        Args:
            job (ScheduledJob): The job to be executed.

        Returns:
            RunMetrics: What the run did.

        Raises:
            ExecutionError: If the underlying driver failed.
            PartialFailure: If some items of a batch failed.
        """
        ...

    @staticmethod
    def supported_kind() -> JobKind:
        """
        Return the job kind this executor runs.
        """
        ...
