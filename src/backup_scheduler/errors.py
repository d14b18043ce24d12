from typing import Optional

from backup_scheduler.domain.run import RunMetrics


class SchedulerError(Exception):
    """
    Base class for every error raised by the scheduling engine.
    """


class JobValidationError(SchedulerError, ValueError):
    """
    A job definition (cron expression, required fields, stagger parameters)
    was rejected before anything was armed.
    """


class ExecutionError(SchedulerError):
    """
    A driver, network or timeout failure during a run.
    """


class PartialFailure(SchedulerError):
    """
    A batch finished but some items failed. Carries the metrics of the
    work that did complete, including the per-item error list.
    """

    def __init__(self, message: str, metrics: Optional[RunMetrics] = None):
        super().__init__(message)
        self.metrics: RunMetrics = metrics or RunMetrics()


class FatalSchedulerError(SchedulerError):
    """
    A previously accepted schedule can no longer be evaluated; the job is
    left unarmed instead of being retried.
    """

    def __init__(self, job_id: str, reason: str):
        super().__init__(f"Job {job_id} cannot be scheduled: {reason}")
        self.job_id = job_id
        self.reason = reason
