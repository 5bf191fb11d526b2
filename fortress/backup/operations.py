"""
Backup operations - execute backup, prune, list snapshots/files, restore.

Each operation builds its command through the tool implementation, runs it
on the executor's session and parses the tool output into structured results.
"""

import logging
import posixpath
from datetime import datetime, timezone
from typing import List, Optional

from fortress.config import Config
from .errors import (
    BackupEngineError, CommandExecutionFailed, ListFailed, PruneFailed, SnapshotNotFound,
)
from .executor import BackupExecutor
from .tools import BackupTool, build_sftp_mount, build_sftp_unmount, get_tool
from .types import (
    BackupJobConfig, BackupResult, DestinationType, FileEntry, LogType,
    RestoreJobConfig, Snapshot, SSHConnectionConfig, ToolName,
)


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _bind(executor: BackupExecutor, job: BackupJobConfig) -> BackupTool:
    """Attach the job's tool and secrets to the executor."""
    tool = get_tool(job.tool)
    executor.tool = tool
    executor.register_secret(*job.secrets())
    return tool


def mount_sftp(executor: BackupExecutor, job: BackupJobConfig) -> str:
    """
    Mount an sftp destination via sshfs on the backup host.

    Returns:
        Mount point path

    Raises:
        CommandExecutionFailed: If sshfs fails
    """
    mount_point = posixpath.join(Config.SFTP_MOUNT_ROOT, f'fortress_mnt_{job.job_id}')
    command = build_sftp_mount(job, mount_point)

    executor.log(LogType.INFO, f"Mounting SFTP destination: {command.describe()}")
    result = executor.run(command)
    if not result.ok:
        raise CommandExecutionFailed(
            executor.mask(f"Failed to mount SFTP destination: {result.stderr.strip()}"),
            exit_code=result.exit_code,
        )

    executor.log(LogType.SUCCESS, f"SFTP destination mounted at {mount_point}")
    return mount_point


def unmount_sftp(executor: BackupExecutor, mount_point: str):
    executor.log(LogType.INFO, f"Unmounting SFTP destination: {mount_point}")
    executor.run(build_sftp_unmount(mount_point))
    executor.log(LogType.INFO, "SFTP destination unmounted")


def prune_repository(executor: BackupExecutor, job: BackupJobConfig) -> bool:
    """
    Apply the job's retention policy.

    Returns:
        True if a prune ran, False when the job has no retention policy

    Raises:
        PruneFailed: If the prune command exits non-zero
    """
    tool = _bind(executor, job)
    command = tool.build_prune(job)
    if command is None:
        return False

    executor.log(LogType.INFO, "Applying retention policy")
    result = executor.run(command)
    if not result.ok:
        raise PruneFailed(executor.mask(
            f"Prune failed with exit code {result.exit_code}: {result.stderr.strip()}"
        ))

    executor.log(LogType.SUCCESS, "Retention policy applied")
    return True


def execute_backup(executor: BackupExecutor, job: BackupJobConfig,
                   ssh_config: Optional[SSHConnectionConfig] = None) -> BackupResult:
    """
    Execute a backup job on a connected executor.

    Exit code 0 is success. For borg/restic a successful backup is followed by
    a prune step; prune failures are kept as warnings and do not fail the backup.

    Returns:
        BackupResult (errors are recorded in the result, not raised)
    """
    start_time = _now()
    logs = executor.logs

    mount_point = None
    try:
        tool = _bind(executor, job)

        executor.log(LogType.INFO, f"Starting {job.tool.value} backup: {job.job_name}")
        executor.log(LogType.INFO, f"Source: {', '.join(job.source_paths)}")
        executor.log(LogType.INFO, f"Destination: {job.destination_path}")

        destination = None
        if (job.tool == ToolName.RSYNC and job.destination_type == DestinationType.SFTP
                and not executor.pull_mode):
            mount_point = mount_sftp(executor, job)
            destination = mount_point
            executor.log(LogType.INFO, f"Using mounted path: {destination}")

        command = tool.build_backup(job, ssh_config, pull_mode=executor.pull_mode,
                                    destination_path=destination)
        key_material = ssh_config.private_key if (executor.pull_mode and ssh_config) else None
        result = executor.run(command, key_material=key_material)

        if not result.ok:
            executor.log(LogType.ERROR, f"Backup failed with exit code {result.exit_code}")
            executor.add_error(f"Exit code: {result.exit_code}")
            if result.stderr.strip():
                executor.add_error(result.stderr.strip())
            return BackupResult(success=False, start_time=start_time, end_time=_now(),
                                errors=list(executor.errors), logs=logs)

        bytes_processed, files_processed = tool.parse_result(result)
        executor.log(LogType.SUCCESS, "Backup completed successfully!")
        executor.log(
            LogType.STATS,
            f"Processed {files_processed or 0} files, {(bytes_processed or 0) / 1e6:.2f} MB"
        )

        warnings = []
        try:
            prune_repository(executor, job)
        except PruneFailed as e:
            executor.log(LogType.ERROR, f"Warning: {e}")
            warnings.append(str(e))
        except BackupEngineError as e:
            # The backup itself already succeeded
            message = executor.mask(f"Prune failed: {e}")
            executor.log(LogType.ERROR, f"Warning: {message}")
            warnings.append(message)

        return BackupResult(
            success=True,
            start_time=start_time,
            end_time=_now(),
            bytes_processed=bytes_processed,
            files_processed=files_processed,
            errors=[],
            warnings=warnings,
            logs=logs,
        )

    except Exception as e:
        message = executor.mask(str(e))
        executor.log(LogType.ERROR, f"Backup execution error: {message}")
        executor.add_error(message)
        logger.warning(f"Backup {job.job_name} failed: {message}")
        return BackupResult(success=False, start_time=start_time, end_time=_now(),
                            errors=list(executor.errors), logs=logs)

    finally:
        if mount_point:
            try:
                unmount_sftp(executor, mount_point)
            except Exception as e:
                executor.log(LogType.ERROR, f"Failed to unmount {mount_point}: {executor.mask(str(e))}")


def list_snapshots(executor: BackupExecutor, job: BackupJobConfig) -> List[Snapshot]:
    """
    List snapshots in the job's repository, newest first.

    Raises:
        ListFailed: If the tool cannot list or the command exits non-zero
    """
    tool = _bind(executor, job)
    command = tool.build_snapshot_list(job)

    result = executor.run(command, stream_stdout=False)
    if not result.ok:
        raise ListFailed(executor.mask(
            f"Failed to list snapshots (exit code {result.exit_code}): {result.stderr.strip()}"
        ))

    snapshots = tool.parse_snapshot_list(result.stdout, job)
    executor.log(LogType.INFO, f"Found {len(snapshots)} snapshots")
    return snapshots


def list_files(executor: BackupExecutor, job: BackupJobConfig, snapshot_id: str) -> List[FileEntry]:
    """
    List the files contained in a snapshot.

    Raises:
        SnapshotNotFound: If the tool reports an unknown snapshot id
        ListFailed: For any other listing failure
    """
    tool = _bind(executor, job)
    command = tool.build_file_list(job, snapshot_id)

    result = executor.run(command, stream_stdout=False)
    if not result.ok:
        if tool.is_snapshot_missing(result.stderr):
            raise SnapshotNotFound(f"Snapshot not found: {snapshot_id}")
        raise ListFailed(executor.mask(
            f"Failed to list files (exit code {result.exit_code}): {result.stderr.strip()}"
        ))

    return tool.parse_file_list(result.stdout)


def restore(executor: BackupExecutor, job: RestoreJobConfig) -> BackupResult:
    """
    Restore a snapshot into job.restore_path.

    Any non-zero exit is a failure with the tool's stderr in errors.
    """
    start_time = _now()
    logs = executor.logs

    try:
        tool = _bind(executor, job)
        executor.log(LogType.INFO, f"Starting restore for snapshot: {job.snapshot_id}")
        executor.log(LogType.INFO, f"Target path: {job.restore_path}")

        command = tool.build_restore(job)
        result = executor.run(command)

    except Exception as e:
        message = executor.mask(str(e))
        executor.log(LogType.ERROR, f"Restore failed: {message}")
        logger.warning(f"Restore of {job.snapshot_id} for {job.job_name} failed: {message}")
        return BackupResult(success=False, start_time=start_time, end_time=_now(),
                            errors=[message], logs=logs)

    end_time = _now()

    if result.ok:
        executor.log(LogType.SUCCESS, "Restore completed successfully")
        return BackupResult(success=True, start_time=start_time, end_time=end_time, logs=logs)

    stderr = executor.mask(result.stderr.strip()) or f"Exit code: {result.exit_code}"
    executor.log(LogType.ERROR, f"Restore failed: {stderr}")
    return BackupResult(success=False, start_time=start_time, end_time=end_time,
                        errors=[stderr], logs=logs)
