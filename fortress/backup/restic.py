"""
restic command synthesis and output parsing.
"""

import json
import logging
import re
from typing import Dict, List, Optional, Tuple

from .errors import ListFailed
from .tools import (
    BackupTool, Command, SYSTEM_EXCLUDES, parse_size, quote_all, register_tool,
    split_lines,
)
from .types import (
    BackupJobConfig, CommandResult, DestinationType, FileEntry, LogType,
    RestoreJobConfig, Snapshot, SSHConnectionConfig, ToolName,
)


logger = logging.getLogger(__name__)

_PROCESSED = re.compile(r'processed\s+(\d+)\s+files?,\s+([\d.]+)\s*([KMGT]?i?B)', re.IGNORECASE)
_ADDED = re.compile(r'Added to the repo(?:sitory)?:\s+([\d.]+)\s*([KMGT]?i?B)', re.IGNORECASE)
_FILE_TYPES = {'file': 'file', 'dir': 'directory'}


class ResticTool(BackupTool):
    name = ToolName.RESTIC
    requires_password = True
    error_pattern = re.compile(r'^(?:Fatal:|error:|Error:|ERROR|unable to )|no matching ID found')
    stats_pattern = re.compile(
        r'^(?:Files:|Dirs:|Added to the repo|processed \d+ files|snapshot \w+ saved|Data Blobs:|Tree Blobs:)'
    )
    stderr_default = LogType.INFO

    def repository(self, job: BackupJobConfig) -> str:
        """Resolve the restic repository URI for the job's destination type."""
        path = job.destination_path
        dest = job.destination_type

        if dest == DestinationType.S3:
            if job.destination_endpoint:
                endpoint = re.sub(r'^https?://', '', job.destination_endpoint).rstrip('/')
                return f"s3:{endpoint}/{path}"
            return f"s3:s3.{job.destination_region or 'us-east-1'}.amazonaws.com/{path}"
        if dest == DestinationType.B2:
            return f"b2:{path}"
        if dest == DestinationType.SFTP:
            return path if path.startswith('sftp:') else f"sftp:{path}"
        if dest == DestinationType.GCS:
            return f"gs:{path}"
        if dest == DestinationType.AZURE:
            return f"azure:{path}"
        if dest == DestinationType.GDRIVE:
            return f"rclone:gdrive:{path}"
        if dest == DestinationType.ONEDRIVE:
            return f"rclone:onedrive:{path}"

        # nfs: a locally mounted path
        return path

    def environment(self, job: BackupJobConfig) -> Dict[str, str]:
        env = {'RESTIC_PASSWORD': self._require_password(job)}
        dest = job.destination_type
        access_key = job.destination_access_key or ''
        secret_key = job.destination_secret_key or ''

        if dest == DestinationType.S3:
            env['AWS_ACCESS_KEY_ID'] = access_key
            env['AWS_SECRET_ACCESS_KEY'] = secret_key
            if job.destination_region:
                env['AWS_DEFAULT_REGION'] = job.destination_region
        elif dest == DestinationType.B2:
            env['B2_ACCOUNT_ID'] = access_key
            env['B2_ACCOUNT_KEY'] = secret_key
        elif dest == DestinationType.GCS:
            env['GOOGLE_PROJECT_ID'] = access_key
            env['GOOGLE_APPLICATION_CREDENTIALS'] = secret_key
        elif dest == DestinationType.AZURE:
            env['AZURE_ACCOUNT_NAME'] = access_key
            env['AZURE_ACCOUNT_KEY'] = secret_key

        return env

    def build_backup(self, job: BackupJobConfig, ssh: Optional[SSHConnectionConfig] = None,
                     pull_mode: bool = False, destination_path: Optional[str] = None) -> Command:
        env = self.environment(job)
        repo = destination_path or self.repository(job)

        # Initialize only when the repository has no config yet
        init = (
            f"({quote_all(['restic', '-r', repo, 'cat', 'config'])} >/dev/null 2>&1 || "
            f"{quote_all(['restic', '-r', repo, 'init'])})"
        )

        backup = ['restic', '-r', repo, 'backup', *job.source_paths,
                  '--verbose', '--one-file-system', '--exclude-caches']
        backup += [f'--exclude={path}' for path in SYSTEM_EXCLUDES]

        return Command(
            line=f"{init} && {quote_all(backup)}",
            env=env,
            summary=f"restic backup {' '.join(job.source_paths)} -> {repo}",
        )

    def build_prune(self, job: BackupJobConfig) -> Optional[Command]:
        if job.retention is None:
            return None
        repo = self.repository(job)
        return Command(
            line=quote_all(['restic', '-r', repo, 'forget', '--prune', *job.retention.as_flags()]),
            env=self.environment(job),
            summary=f"restic forget --prune {repo}",
        )

    def build_snapshot_list(self, job: BackupJobConfig) -> Command:
        repo = self.repository(job)
        return Command(
            line=quote_all(['restic', '-r', repo, 'snapshots', '--json']),
            env=self.environment(job),
            summary=f"restic snapshots {repo}",
        )

    def build_file_list(self, job: BackupJobConfig, snapshot_id: str) -> Command:
        repo = self.repository(job)
        return Command(
            line=quote_all(['restic', '-r', repo, 'ls', '--json', snapshot_id]),
            env=self.environment(job),
            summary=f"restic ls {repo} {snapshot_id}",
        )

    def build_restore(self, job: RestoreJobConfig) -> Command:
        repo = self.repository(job)
        restore = ['restic', '-r', repo, 'restore', job.snapshot_id, '--target', job.restore_path]
        for path in job.include_paths:
            restore += ['--include', path]
        line = f"{quote_all(['mkdir', '-p', job.restore_path])} && {quote_all(restore)}"
        return Command(
            line=line,
            env=self.environment(job),
            summary=f"restic restore {job.snapshot_id} -> {job.restore_path}",
        )

    def parse_result(self, result: CommandResult) -> Tuple[Optional[int], Optional[int]]:
        bytes_processed, files_processed = super().parse_result(result)
        text = f"{result.stdout}\n{result.stderr}"

        processed = _PROCESSED.search(text)
        if processed:
            files_processed = int(processed.group(1))
            bytes_processed = parse_size(processed.group(2), processed.group(3))
        else:
            added = _ADDED.search(text)
            if added:
                bytes_processed = parse_size(added.group(1), added.group(2))

        return bytes_processed, files_processed

    def parse_snapshot_list(self, output: str, job: BackupJobConfig) -> List[Snapshot]:
        try:
            data = json.loads(output or '[]')
        except ValueError as e:
            raise ListFailed(f"Unexpected restic snapshots output: {e}")

        snapshots = [
            Snapshot(
                id=snap['id'],
                short_id=snap.get('short_id') or snap['id'][:8],
                time=snap.get('time', ''),
                paths=list(snap.get('paths') or []),
                hostname=snap.get('hostname') or 'unknown',
                username=snap.get('username'),
                tags=set(snap.get('tags') or []),
            )
            for snap in data or []
        ]

        # restic lists oldest first
        snapshots.reverse()
        return snapshots

    def parse_file_list(self, output: str) -> List[FileEntry]:
        files = []
        for line in split_lines(output):
            try:
                entry = json.loads(line)
            except ValueError:
                logger.debug("Skipping non-JSON restic ls line")
                continue

            # restic >= 0.17 uses message_type, older releases struct_type
            kind = entry.get('message_type') or entry.get('struct_type')
            if kind != 'node':
                continue

            mode = entry.get('mode')
            files.append(FileEntry(
                path=entry.get('path') or entry.get('name', ''),
                size=entry.get('size') or 0,
                mode=format(mode, 'o') if isinstance(mode, int) else mode,
                mtime=entry.get('mtime'),
                type=_FILE_TYPES.get(entry.get('type'), 'other'),
            ))
        return files

    def is_snapshot_missing(self, stderr: str) -> bool:
        return bool(re.search(r'no matching ID found|snapshot .* not found|invalid id', stderr, re.IGNORECASE))


restic_tool = register_tool(ResticTool())
