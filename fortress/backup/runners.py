"""
Job runners - per-invocation entry points.

Each runner builds a fresh BackupExecutor, connects, delegates to one
operation and tears the connection down. The only exception is the
pull-mode backup, whose lease is handed back in BackupResult.lease.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from fortress.utils.masking import mask_sensitive_data
from . import operations
from .errors import ConnectionFailed
from .executor import BackupExecutor, ConnectionLease, TeardownOwner
from .logs import LogSink
from .types import BackupJobConfig, BackupResult, FileEntry, RestoreJobConfig, Snapshot, SSHConnectionConfig


logger = logging.getLogger(__name__)

CONNECTION_FAILED = "Failed to connect to SSH server"


def _connection_failed(executor: BackupExecutor) -> BackupResult:
    now = datetime.now(timezone.utc)
    return BackupResult(success=False, start_time=now, end_time=now,
                        errors=[CONNECTION_FAILED], logs=executor.logs)


@contextmanager
def _teardown(lease: ConnectionLease):
    """Release the lease on exit unless ownership was handed to the remote puller."""
    try:
        yield lease
    finally:
        if lease.owner == TeardownOwner.INITIATOR:
            lease.release()


def run_backup_job(ssh_config: SSHConnectionConfig, job_config: BackupJobConfig,
                   on_log: Optional[LogSink] = None, timeout: Optional[float] = None,
                   cancel_event: Optional[threading.Event] = None) -> BackupResult:
    """
    Run one backup job.

    Args:
        ssh_config: Connection parameters with resolved credentials
        job_config: Job to run
        on_log: Optional sink receiving ExecutionLog entries as they are emitted
        timeout: Per-command timeout in seconds
        cancel_event: Setting this event interrupts the running command

    Returns:
        BackupResult. A failed connection yields exactly one error entry.
    """
    executor = BackupExecutor(pull_mode=job_config.is_pull_mode, sink=on_log,
                              command_timeout=timeout, cancel_event=cancel_event)

    lease = executor.connect(ssh_config)
    if not lease:
        logger.warning(f"Backup {job_config.job_name}: could not connect to {ssh_config.host}")
        return _connection_failed(executor)

    with _teardown(lease):
        result = operations.execute_backup(executor, job_config, ssh_config)
        if lease.owner == TeardownOwner.REMOTE_PULLER:
            result.lease = lease

    logger.info(f"Backup {job_config.job_name} finished: success={result.success}")
    return result


def run_restore_job(ssh_config: SSHConnectionConfig, job_config: RestoreJobConfig,
                    on_log: Optional[LogSink] = None, timeout: Optional[float] = None,
                    cancel_event: Optional[threading.Event] = None) -> BackupResult:
    """Run one restore job. Always disconnects."""
    executor = BackupExecutor(sink=on_log, command_timeout=timeout, cancel_event=cancel_event)

    lease = executor.connect(ssh_config)
    if not lease:
        return _connection_failed(executor)

    with _teardown(lease):
        return operations.restore(executor, job_config)


def list_job_snapshots(ssh_config: SSHConnectionConfig, job_config: BackupJobConfig,
                       on_log: Optional[LogSink] = None) -> List[Snapshot]:
    """
    List a job's snapshots, newest first.

    Raises:
        ConnectionFailed: If the host cannot be reached
        ListFailed: If listing fails (UnsupportedOperation for rsync)
    """
    executor = BackupExecutor(sink=on_log)

    lease = executor.connect(ssh_config)
    if not lease:
        raise ConnectionFailed(CONNECTION_FAILED)

    with _teardown(lease):
        return operations.list_snapshots(executor, job_config)


def list_job_files(ssh_config: SSHConnectionConfig, job_config: BackupJobConfig,
                   snapshot_id: str, on_log: Optional[LogSink] = None) -> List[FileEntry]:
    """
    List the files in one snapshot.

    Raises:
        ConnectionFailed: If the host cannot be reached
        SnapshotNotFound: If the snapshot id is unknown
        ListFailed: For other listing failures
    """
    executor = BackupExecutor(sink=on_log)

    lease = executor.connect(ssh_config)
    if not lease:
        raise ConnectionFailed(CONNECTION_FAILED)

    with _teardown(lease):
        return operations.list_files(executor, job_config, snapshot_id)


def run_jobs_concurrently(jobs: Iterable[Tuple[SSHConnectionConfig, BackupJobConfig]],
                          max_workers: int = 4,
                          on_log: Optional[LogSink] = None) -> Dict[str, BackupResult]:
    """
    Run independent backup jobs in parallel, one executor per job.

    Returns:
        Mapping of job_id to BackupResult
    """
    jobs = list(jobs)
    results = {}

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='fortress-job') as pool:
        futures = {
            pool.submit(run_backup_job, ssh_config, job_config, on_log): (ssh_config, job_config)
            for ssh_config, job_config in jobs
        }
        for future, (ssh_config, job_config) in futures.items():
            try:
                results[job_config.job_id] = future.result()
            except Exception as e:
                message = mask_sensitive_data(str(e), ssh_config.secrets() + job_config.secrets())
                logger.error(f"Backup {job_config.job_name} raised: {message}")
                now = datetime.now(timezone.utc)
                results[job_config.job_id] = BackupResult(
                    success=False, start_time=now, end_time=now, errors=[message]
                )

    return results
