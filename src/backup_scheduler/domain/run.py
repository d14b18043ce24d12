import uuid
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from .job import JobKind


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"


TERMINAL_STATUSES = frozenset({RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.PARTIAL})


class RunMetrics(BaseModel):
    """
    Quantitative outcome of one run, kept in history.
    """
    duration_seconds: float = 0.0
    size_bytes: Optional[int] = None
    bytes_moved: Optional[int] = None
    bytes_deduplicated: Optional[int] = None
    files_affected: Optional[int] = None
    errors: List[str] = Field(default_factory=list, description="Per-item errors for partially failed runs")
    details: Dict[str, Any] = Field(default_factory=dict)


class JobRun(BaseModel):
    """
    Represents one execution attempt of a ScheduledJob.
    """
    id: str = Field(default_factory=lambda: f"run_{uuid.uuid4().hex[:8]}", description="Unique run identifier")
    job_id: str = Field(..., description="The scheduled job this run belongs to")
    kind: JobKind
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metrics: RunMetrics = Field(default_factory=RunMetrics)

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(self, status: RunStatus, metrics: Optional[RunMetrics] = None, error_message: Optional[str] = None):
        """
        Move the run to a terminal status. A run can only be finished once.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError("Status must be one of success, failed or partial")
        if self.is_finished:
            raise ValueError(f"Run {self.id} is already finalized as {self.status.value}")
        self.status = status
        self.completed_at = datetime.now(timezone.utc)
        if metrics is not None:
            self.metrics = metrics
        self.error_message = error_message


class SkippedRun(BaseModel):
    """
    Result of an execution request that did not create a run.
    """
    job_id: str
    reason: str = "already running"
