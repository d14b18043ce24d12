"""
Backup Scheduling Engine

This package schedules and runs database backup and maintenance work.

Core Concepts:

ScheduledJob:
    A ScheduledJob is a cron-driven unit of work: a backup or maintenance job
    against one database, or one of the global jobs (remote sync, disk
    cleanup, daily summary). It defines the work but is not an execution.

JobRun:
    A JobRun represents a single execution of a ScheduledJob.
    At most one JobRun per job is running at any time; a request that
    arrives while the job is running is skipped, not queued.

Policies:
    The retention policy decides which local backup files are evicted, the
    bandwidth policy caps remote sync transfer rates by time of day.

Relationships:
    - A ScheduledJob can have many JobRun instances, each representing a single execution.
"""

from .scheduler import Scheduler, StaggeredJobsResult, SYSTEM_CLEANUP_ID, SYSTEM_SYNC_ID, SYSTEM_SUMMARY_ID

__all__ = ["Scheduler", "StaggeredJobsResult", "SYSTEM_CLEANUP_ID", "SYSTEM_SYNC_ID", "SYSTEM_SUMMARY_ID"]
