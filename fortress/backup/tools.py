"""
Backup tool interface.

Each supported tool (rsync, borg, restic) implements BackupTool: command
synthesis for every verb plus parsing of the tool's textual output. Command
builders are pure; they return a Command whose `line` is safe to show in a
process listing and whose `env` carries every secret.
"""

import re
import shlex
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import MissingRepositoryPassword, UnsupportedOperation
from .types import (
    BackupJobConfig, CommandResult, FileEntry, LogType, RestoreJobConfig,
    Snapshot, SSHConnectionConfig, ToolName,
)


# Virtual and bind-mounted filesystems that must never be traversed
SYSTEM_EXCLUDES = ('/mnt', '/media', '/run/media', '/run', '/proc', '/sys', '/dev')

# Substituted with a temporary key file path by the executor at dispatch time
KEYFILE_PLACEHOLDER = '%%KEYFILE%%'

PROGRESS_PATTERN = re.compile(r'\d+(?:\.\d+)?%|[\d.]+\s?[kKMGT]i?B/s|xfr#|to-chk=')

_UNIT_FACTORS = {
    'B': 1, 'BYTES': 1, 'BYTE': 1,
    'KB': 10 ** 3, 'MB': 10 ** 6, 'GB': 10 ** 9, 'TB': 10 ** 12,
    'KIB': 2 ** 10, 'MIB': 2 ** 20, 'GIB': 2 ** 30, 'TIB': 2 ** 40,
    'K': 10 ** 3, 'M': 10 ** 6, 'G': 10 ** 9, 'T': 10 ** 12,
}

_GENERIC_SIZE = re.compile(r'(\d+(?:\.\d+)?)\s*(GB|MB|KB|bytes)\b', re.IGNORECASE)
_GENERIC_FILES = re.compile(r'(\d+)\s*files?\b', re.IGNORECASE)


@dataclass(frozen=True)
class Command:
    """A synthesized shell command plus the environment it must run with."""
    line: str
    env: Dict[str, str] = field(default_factory=dict, repr=False)
    summary: str = ''

    def describe(self) -> str:
        """Loggable form: tool and paths only."""
        return self.summary or self.line.split(' ', 2)[0]


def quote_all(args) -> str:
    return ' '.join(shlex.quote(str(a)) for a in args)


def parse_size(value: str, unit: str) -> int:
    """Convert '1.5', 'GiB' style pairs to bytes."""
    number = float(value.replace(',', ''))
    factor = _UNIT_FACTORS.get(unit.upper(), 1)
    return int(number * factor)


def split_lines(text: str) -> List[str]:
    """Split tool output on newlines and carriage returns, dropping blanks."""
    return [line.strip() for line in re.split(r'[\r\n]+', text) if line.strip()]


class BackupTool:
    """
    Base class for tool-specific command synthesis and output parsing.

    Subclasses override the builders they support. Builders for verbs a
    tool cannot perform raise UnsupportedOperation.
    """

    name: ToolName = None
    requires_password = False

    # Tool-specific log classification
    error_pattern: re.Pattern = re.compile(r'^(?:error|ERROR|Error)\b')
    stats_pattern: Optional[re.Pattern] = None
    stderr_default = LogType.ERROR

    # Command synthesis

    def build_backup(self, job: BackupJobConfig, ssh: Optional[SSHConnectionConfig] = None,
                     pull_mode: bool = False, destination_path: Optional[str] = None) -> Command:
        raise NotImplementedError

    def build_prune(self, job: BackupJobConfig) -> Optional[Command]:
        """Return the prune command, or None when the job has no retention policy."""
        return None

    def build_snapshot_list(self, job: BackupJobConfig) -> Command:
        raise UnsupportedOperation(f"Snapshot listing not supported for {self.name.value}")

    def build_file_list(self, job: BackupJobConfig, snapshot_id: str) -> Command:
        raise UnsupportedOperation(f"File listing not supported for {self.name.value}")

    def build_restore(self, job: RestoreJobConfig) -> Command:
        raise UnsupportedOperation(f"Restore not supported for {self.name.value}")

    # Output parsing

    def parse_result(self, result: CommandResult) -> Tuple[Optional[int], Optional[int]]:
        """
        Extract (bytes_processed, files_processed) from backup output.

        Falls back to the generic '<n> <unit>' and '<n> files' patterns.
        """
        text = f"{result.stdout}\n{result.stderr}"
        bytes_processed = None
        files_processed = None

        size_match = _GENERIC_SIZE.search(text)
        if size_match:
            bytes_processed = parse_size(size_match.group(1), size_match.group(2))

        files_match = _GENERIC_FILES.search(text)
        if files_match:
            files_processed = int(files_match.group(1))

        return bytes_processed, files_processed

    def parse_snapshot_list(self, output: str, job: BackupJobConfig) -> List[Snapshot]:
        raise UnsupportedOperation(f"Snapshot listing not supported for {self.name.value}")

    def parse_file_list(self, output: str) -> List[FileEntry]:
        raise UnsupportedOperation(f"File listing not supported for {self.name.value}")

    def is_snapshot_missing(self, stderr: str) -> bool:
        return False

    def classify_line(self, stream: str, line: str) -> LogType:
        """
        Classify one output line into an ExecutionLog type.

        Args:
            stream: 'stdout' or 'stderr'
            line: Output line (already stripped)
        """
        if self.error_pattern.search(line):
            return LogType.ERROR
        if self.stats_pattern is not None and self.stats_pattern.search(line):
            return LogType.STATS
        if PROGRESS_PATTERN.search(line):
            return LogType.PROGRESS
        if stream == 'stderr':
            return self.stderr_default
        return LogType.INFO

    # Helpers

    def _require_password(self, job: BackupJobConfig) -> str:
        if not job.repo_password:
            raise MissingRepositoryPassword(
                f"{self.name.value} requires a repository password for encryption. "
                f"Please set a password in the job settings."
            )
        return job.repo_password


def build_sftp_mount(job: BackupJobConfig, mount_point: str) -> Command:
    """
    Mount an sftp destination with sshfs on the host that runs the backup.

    Raises:
        ValueError: If the destination is neither user@host:/path nor paired with an endpoint
    """
    if '@' in job.destination_path:
        target = job.destination_path
    elif job.destination_endpoint:
        target = f"{job.destination_endpoint}:{job.destination_path}"
    else:
        raise ValueError("SFTP destination requires either user@host:/path format or a configured endpoint")

    line = (
        f"{quote_all(['mkdir', '-p', mount_point])} && "
        f"{quote_all(['sshfs', '-o', 'StrictHostKeyChecking=no,reconnect,ServerAliveInterval=15', target, mount_point])}"
    )
    return Command(line=line, summary=f"sshfs {target} -> {mount_point}")


def build_sftp_unmount(mount_point: str) -> Command:
    mp = shlex.quote(mount_point)
    line = (
        f"fusermount -uz {mp} 2>/dev/null || umount -l {mp} 2>/dev/null || true; "
        f"rmdir {mp} 2>/dev/null || true"
    )
    return Command(line=line, summary=f"unmount {mount_point}")


_registry: Dict[ToolName, BackupTool] = {}


def register_tool(tool: BackupTool) -> BackupTool:
    _registry[tool.name] = tool
    return tool


def get_tool(name) -> BackupTool:
    """
    Factory lookup for a tool implementation.

    Args:
        name: ToolName or its string value

    Raises:
        ValueError: If the tool is not supported
    """
    try:
        key = ToolName(name)
    except ValueError:
        raise ValueError(f"Unsupported backup tool: {name}")

    # Implementations register themselves on import
    from . import rsync, borg, restic  # noqa: F401

    return _registry[key]
