"""
Retention planning for local backup files.

Every FULL backup owns the DIFF backups taken on or after it and before
the next newer FULL of the same database (its generation chain). The
planner keeps the newest ``keep_full_count`` chains, trims each kept
chain to its newest ``keep_diff_per_full`` DIFFs and evicts everything
else. DIFFs with no FULL at or before them are orphans and are kept up to
``keep_orphan_diff``, evicting the oldest first.

Planning is pure: the same listing and policy always produce the same
plan. Deleting files is the caller's job.
"""
from collections import defaultdict
from typing import Dict, Iterable, List

from pydantic import BaseModel, Field

from backup_scheduler.domain.files import BYTES_PER_MB, BackupFile
from backup_scheduler.domain.job import BackupType
from backup_scheduler.domain.policy import RetentionPolicy


class BackupChain(BaseModel):
    full: BackupFile
    diffs: List[BackupFile] = Field(default_factory=list, description="Owned DIFFs, newest first")


class DatabaseChains(BaseModel):
    chains: List[BackupChain] = Field(default_factory=list, description="Chains, newest FULL first")
    orphans: List[BackupFile] = Field(default_factory=list, description="DIFFs without a FULL, newest first")
    logs: List[BackupFile] = Field(default_factory=list)


class DatabaseRetention(BaseModel):
    total_files: int = 0
    keep_files: int = 0
    delete_files: int = 0
    delete_size_mb: float = 0.0


class RetentionPlan(BaseModel):
    keep: List[BackupFile] = Field(default_factory=list)
    delete: List[BackupFile] = Field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.keep) + len(self.delete)

    @property
    def delete_size_bytes(self) -> int:
        return sum(f.size_bytes for f in self.delete)

    @property
    def delete_size_mb(self) -> float:
        return self.delete_size_bytes / BYTES_PER_MB

    @property
    def keep_size_mb(self) -> float:
        return sum(f.size_bytes for f in self.keep) / BYTES_PER_MB

    def by_database(self) -> Dict[str, DatabaseRetention]:
        summary: Dict[str, DatabaseRetention] = defaultdict(DatabaseRetention)
        for f in self.keep:
            entry = summary[f.database_id]
            entry.total_files += 1
            entry.keep_files += 1
        for f in self.delete:
            entry = summary[f.database_id]
            entry.total_files += 1
            entry.delete_files += 1
            entry.delete_size_mb += f.size_mb
        return dict(summary)


def _newest_first(files: Iterable[BackupFile]) -> List[BackupFile]:
    # Path breaks ties so equal timestamps still sort the same way every time.
    return sorted(files, key=lambda f: (f.created_at, f.path), reverse=True)


def _oldest_first(files: Iterable[BackupFile]) -> List[BackupFile]:
    return sorted(files, key=lambda f: (f.database_id, f.created_at, f.path))


def group_into_chains(files: Iterable[BackupFile]) -> Dict[str, DatabaseChains]:
    """
    Group a file listing per database into FULL chains, orphan DIFFs and logs.
    """
    by_database: Dict[str, List[BackupFile]] = defaultdict(list)
    for f in files:
        by_database[f.database_id].append(f)

    result: Dict[str, DatabaseChains] = {}
    for database_id, db_files in by_database.items():
        fulls = _newest_first(f for f in db_files if f.backup_type == BackupType.FULL)
        diffs = _newest_first(f for f in db_files if f.backup_type == BackupType.DIFF)
        logs = _newest_first(f for f in db_files if f.backup_type == BackupType.LOG)

        assigned = set()
        chains: List[BackupChain] = []
        for i, full in enumerate(fulls):
            newer = fulls[i - 1] if i > 0 else None
            owned = [
                d for d in diffs
                if d.path not in assigned
                and d.created_at >= full.created_at
                and (newer is None or d.created_at < newer.created_at)
            ]
            assigned.update(d.path for d in owned)
            chains.append(BackupChain(full=full, diffs=owned))

        orphans = [d for d in diffs if d.path not in assigned]
        result[database_id] = DatabaseChains(chains=chains, orphans=orphans, logs=logs)
    return result


def plan(files: Iterable[BackupFile], policy: RetentionPolicy) -> RetentionPlan:
    """
    Split a backup file listing into files to keep and files to delete.
    """
    keep: List[BackupFile] = []
    delete: List[BackupFile] = []

    for grouped in group_into_chains(files).values():
        for chain_index, chain in enumerate(grouped.chains):
            if chain_index < policy.keep_full_count:
                keep.append(chain.full)
                keep.extend(chain.diffs[:policy.keep_diff_per_full])
                delete.extend(chain.diffs[policy.keep_diff_per_full:])
            else:
                delete.append(chain.full)
                delete.extend(chain.diffs)

        keep.extend(grouped.orphans[:policy.keep_orphan_diff])
        delete.extend(grouped.orphans[policy.keep_orphan_diff:])
        keep.extend(grouped.logs)

    return RetentionPlan(keep=_oldest_first(keep), delete=_oldest_first(delete))
