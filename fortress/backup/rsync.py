"""
rsync command synthesis and output parsing.

Push mode runs rsync on the remote host toward the destination path.
Pull mode runs rsync on the controlling machine, sourcing from the remote
host over an embedded ssh transport that authenticates with a key file
substituted at dispatch time.
"""

import re
from typing import Optional, Tuple

from .tools import (
    BackupTool, Command, KEYFILE_PLACEHOLDER, SYSTEM_EXCLUDES, parse_size,
    quote_all, register_tool,
)
from .types import BackupJobConfig, CommandResult, LogType, SSHConnectionConfig, ToolName


BASE_FLAGS = ('-avz', '--stats', '--progress', '--one-file-system')

_TRANSFERRED_SIZE = re.compile(r'Total transferred file size:\s*([\d,]+(?:\.\d+)?)\s*([KMGT]?)\s*bytes', re.IGNORECASE)
_FILES_TRANSFERRED = re.compile(r'Number of (?:regular )?files transferred:\s*([\d,]+)', re.IGNORECASE)


def exclude_flags():
    return [f'--exclude={path}' for path in SYSTEM_EXCLUDES]


def ssh_transport(ssh: SSHConnectionConfig) -> str:
    return f'ssh -o StrictHostKeyChecking=no -p {int(ssh.port)} -i {KEYFILE_PLACEHOLDER}'


class RsyncTool(BackupTool):
    name = ToolName.RSYNC
    error_pattern = re.compile(r'^(?:rsync error|rsync:|ERROR|error\b)')
    stats_pattern = re.compile(r'^(?:Number of |Total (?:transferred )?file size|Total bytes|sent .* bytes)')
    stderr_default = LogType.ERROR

    def build_backup(self, job: BackupJobConfig, ssh: Optional[SSHConnectionConfig] = None,
                     pull_mode: bool = False, destination_path: Optional[str] = None) -> Command:
        """
        Build an rsync backup command.

        Args:
            job: Job configuration
            ssh: Remote host, required in pull mode to address the sources
            pull_mode: Run on the controlling machine and pull from the host
            destination_path: Override of job.destination_path (e.g. an sshfs mount point)
        """
        destination = destination_path or job.destination_path
        args = ['rsync', *BASE_FLAGS, *exclude_flags()]

        if pull_mode:
            if ssh is None:
                raise ValueError("Pull-mode rsync requires the remote host's SSH configuration")
            args += ['-e', ssh_transport(ssh)]
            sources = [f'{ssh.username}@{ssh.host}:{path}' for path in job.source_paths]
        else:
            sources = list(job.source_paths)

        line = quote_all(args + sources + [destination])
        mode = 'pull' if pull_mode else 'push'
        return Command(
            line=line,
            env={},
            summary=f"rsync ({mode}) {' '.join(sources)} -> {destination}",
        )

    def parse_result(self, result: CommandResult) -> Tuple[Optional[int], Optional[int]]:
        bytes_processed, files_processed = super().parse_result(result)

        size_match = _TRANSFERRED_SIZE.search(result.stdout)
        if size_match:
            bytes_processed = parse_size(size_match.group(1), size_match.group(2) or 'B')

        files_match = _FILES_TRANSFERRED.search(result.stdout)
        if files_match:
            files_processed = int(files_match.group(1).replace(',', ''))

        return bytes_processed, files_processed


rsync_tool = register_tool(RsyncTool())
