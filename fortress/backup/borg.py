"""
BorgBackup command synthesis and output parsing.
"""

import json
import logging
import posixpath
import re
from typing import Dict, List, Optional, Tuple

from fortress.config import Config
from .errors import ListFailed, UnsupportedDestination
from .tools import (
    BackupTool, Command, SYSTEM_EXCLUDES, parse_size, quote_all, register_tool,
    split_lines,
)
from .types import (
    CLOUD_DESTINATIONS, BackupJobConfig, CommandResult, DestinationType,
    FileEntry, LogType, RestoreJobConfig, Snapshot, SSHConnectionConfig, ToolName,
)


logger = logging.getLogger(__name__)

ARCHIVE_NAME_FORMAT = '{job_name}-{{now:%Y-%m-%d_%H:%M:%S}}'

_THIS_ARCHIVE = re.compile(r'This archive:\s+([\d.]+)\s*([kKMGT]?i?B)')
_NUMBER_OF_FILES = re.compile(r'Number of files:\s*(\d+)')
_FILE_TYPES = {'-': 'file', 'd': 'directory'}


class BorgTool(BackupTool):
    name = ToolName.BORG
    requires_password = True
    error_pattern = re.compile(
        r'^(?:Error|ERROR|Traceback|borg: error)|does not exist|passphrase supplied .* is incorrect|'
        r'Failed to create/acquire the lock'
    )
    stats_pattern = re.compile(
        r'^(?:This archive:|All archives:|Number of files:|Original size|Duration:|'
        r'Unique chunks|Chunk index:|Archive name:|Archive fingerprint:|Deleted data:)'
    )
    # borg writes progress and --stats to stderr
    stderr_default = LogType.INFO

    def repository(self, job: BackupJobConfig) -> str:
        """
        Resolve the repository location for a job.

        Raises:
            UnsupportedDestination: For cloud object stores, which borg cannot write to
        """
        if job.destination_type in CLOUD_DESTINATIONS:
            raise UnsupportedDestination(
                f"BorgBackup does not support direct backup to {job.destination_type.value.upper()}. "
                f"Please use Restic for cloud storage."
            )

        path = job.destination_path
        if job.destination_type == DestinationType.SFTP:
            if path.startswith('ssh://') or '@' in path or not job.destination_endpoint:
                return path
            return f"ssh://{job.destination_endpoint}/{path.lstrip('/')}"

        return path

    def environment(self, job: BackupJobConfig) -> Dict[str, str]:
        password = self._require_password(job)
        return {
            'BORG_PASSPHRASE': password,
            'BORG_NEW_PASSPHRASE': password,
            'TMPDIR': '/tmp',
            'BORG_CACHE_DIR': Config.BORG_CACHE_DIR,
        }

    def build_backup(self, job: BackupJobConfig, ssh: Optional[SSHConnectionConfig] = None,
                     pull_mode: bool = False, destination_path: Optional[str] = None) -> Command:
        env = self.environment(job)
        repo = destination_path or self.repository(job)
        archive = ARCHIVE_NAME_FORMAT.format(job_name=job.job_name)

        steps = [quote_all(['mkdir', '-p', Config.BORG_CACHE_DIR])]
        if job.destination_type == DestinationType.NFS:
            steps.append(quote_all(['mkdir', '-p', posixpath.dirname(repo.rstrip('/')) or '/']))

        # Initialize only when the repository does not exist yet
        steps.append(
            f"({quote_all(['borg', 'info', repo])} >/dev/null 2>&1 || "
            f"{quote_all(['borg', 'init', '--encryption=repokey-blake2', repo])})"
        )

        create = ['borg', 'create', '--stats', '--progress', '--one-file-system', '--exclude-caches',
                  '--exclude', repo]
        for path in SYSTEM_EXCLUDES:
            create += ['--exclude', path]
        create += [f'{repo}::{archive}', *job.source_paths]
        steps.append(quote_all(create))

        return Command(
            line=' && '.join(steps),
            env=env,
            summary=f"borg create {' '.join(job.source_paths)} -> {repo}",
        )

    def build_prune(self, job: BackupJobConfig) -> Optional[Command]:
        if job.retention is None:
            return None
        repo = self.repository(job)
        return Command(
            line=quote_all(['borg', 'prune', '--stats', repo, *job.retention.as_flags()]),
            env=self.environment(job),
            summary=f"borg prune {repo}",
        )

    def build_snapshot_list(self, job: BackupJobConfig) -> Command:
        repo = self.repository(job)
        return Command(
            line=quote_all(['borg', 'list', '--json', repo]),
            env=self.environment(job),
            summary=f"borg list {repo}",
        )

    def build_file_list(self, job: BackupJobConfig, snapshot_id: str) -> Command:
        repo = self.repository(job)
        return Command(
            line=quote_all(['borg', 'list', '--json-lines', f'{repo}::{snapshot_id}']),
            env=self.environment(job),
            summary=f"borg list {repo}::{snapshot_id}",
        )

    def build_restore(self, job: RestoreJobConfig) -> Command:
        repo = self.repository(job)
        # borg extract writes relative to the working directory
        extract = ['borg', 'extract', '--sparse', f'{repo}::{job.snapshot_id}']
        extract += [path.lstrip('/') for path in job.include_paths]
        line = (
            f"{quote_all(['mkdir', '-p', job.restore_path])} && "
            f"cd {quote_all([job.restore_path])} && {quote_all(extract)}"
        )
        return Command(
            line=line,
            env=self.environment(job),
            summary=f"borg extract {repo}::{job.snapshot_id} -> {job.restore_path}",
        )

    def parse_result(self, result: CommandResult) -> Tuple[Optional[int], Optional[int]]:
        bytes_processed, files_processed = super().parse_result(result)
        text = f"{result.stdout}\n{result.stderr}"

        size_match = _THIS_ARCHIVE.search(text)
        if size_match:
            bytes_processed = parse_size(size_match.group(1), size_match.group(2))

        files_match = _NUMBER_OF_FILES.search(text)
        if files_match:
            files_processed = int(files_match.group(1))

        return bytes_processed, files_processed

    def parse_snapshot_list(self, output: str, job: BackupJobConfig) -> List[Snapshot]:
        try:
            data = json.loads(output)
        except ValueError as e:
            raise ListFailed(f"Unexpected borg list output: {e}")

        snapshots = []
        for archive in data.get('archives', []):
            name = archive.get('name') or archive.get('archive')
            snapshots.append(Snapshot(
                id=name,
                short_id=(archive.get('id') or name)[:8],
                time=archive.get('time') or archive.get('start', ''),
                paths=list(job.source_paths),
                hostname=archive.get('hostname') or 'unknown',
                username=archive.get('username'),
            ))

        # borg lists oldest first
        snapshots.reverse()
        return snapshots

    def parse_file_list(self, output: str) -> List[FileEntry]:
        files = []
        for line in split_lines(output):
            try:
                entry = json.loads(line)
            except ValueError:
                logger.debug("Skipping non-JSON borg list line")
                continue
            files.append(FileEntry(
                path=entry.get('path', ''),
                size=entry.get('size') or 0,
                mode=entry.get('mode'),
                mtime=entry.get('mtime'),
                type=_FILE_TYPES.get(entry.get('type'), 'other'),
            ))
        return files

    def is_snapshot_missing(self, stderr: str) -> bool:
        return bool(re.search(r'Archive .* does not exist', stderr))


borg_tool = register_tool(BorgTool())
