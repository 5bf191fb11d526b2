"""
Backup engine for Fortress.

This module drives external backup tools on remote hosts:
- Command synthesis and output parsing (rsync, borg, restic)
- SSH and local sessions with streamed output
- Execution orchestration and log delivery
- Per-job runners with guaranteed teardown
"""

from .errors import (
    BackupEngineError, CommandExecutionFailed, ConnectionFailed, CredentialNotFound,
    DecryptionFailed, ListFailed, PruneFailed, SnapshotNotFound, UnsupportedOperation,
)
from .executor import BackupExecutor, ConnectionLease, TeardownOwner
from .logs import LogChannel
from .runners import (
    list_job_files, list_job_snapshots, run_backup_job, run_jobs_concurrently, run_restore_job,
)
from .tools import get_tool
from .types import (
    BackupJobConfig, BackupResult, ExecutionLog, FileEntry, LogType,
    RestoreJobConfig, RetentionPolicy, Snapshot, SSHConnectionConfig,
)

__all__ = [
    'BackupEngineError',
    'BackupExecutor',
    'BackupJobConfig',
    'BackupResult',
    'CommandExecutionFailed',
    'ConnectionFailed',
    'ConnectionLease',
    'CredentialNotFound',
    'DecryptionFailed',
    'ExecutionLog',
    'FileEntry',
    'ListFailed',
    'LogChannel',
    'LogType',
    'PruneFailed',
    'RestoreJobConfig',
    'RetentionPolicy',
    'SSHConnectionConfig',
    'Snapshot',
    'SnapshotNotFound',
    'TeardownOwner',
    'UnsupportedOperation',
    'get_tool',
    'list_job_files',
    'list_job_snapshots',
    'run_backup_job',
    'run_jobs_concurrently',
    'run_restore_job',
]
