"""
Data types shared by the backup engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


class ToolName(str, Enum):
    RSYNC = 'rsync'
    BORG = 'borg'
    RESTIC = 'restic'


class DestinationType(str, Enum):
    S3 = 's3'
    SFTP = 'sftp'
    NFS = 'nfs'
    B2 = 'b2'
    GCS = 'gcs'
    AZURE = 'azure'
    GDRIVE = 'gdrive'
    ONEDRIVE = 'onedrive'


CLOUD_DESTINATIONS = frozenset({
    DestinationType.S3, DestinationType.B2, DestinationType.GCS,
    DestinationType.AZURE, DestinationType.GDRIVE, DestinationType.ONEDRIVE,
})


class LogType(str, Enum):
    INFO = 'info'
    SUCCESS = 'success'
    ERROR = 'error'
    PROGRESS = 'progress'
    STATS = 'stats'
    SSH = 'ssh'
    CMD = 'cmd'


@dataclass(frozen=True)
class SSHConnectionConfig:
    """Connection parameters for one remote host. Secrets are excluded from repr."""
    host: str
    username: str
    port: int = 22
    private_key: Optional[str] = field(default=None, repr=False)
    passphrase: Optional[str] = field(default=None, repr=False)
    password: Optional[str] = field(default=None, repr=False)

    def secrets(self) -> List[str]:
        return [s for s in (self.private_key, self.passphrase, self.password) if s]


@dataclass(frozen=True)
class RetentionPolicy:
    keep_hourly: int = 0
    keep_daily: int = 0
    keep_weekly: int = 0
    keep_monthly: int = 0
    keep_yearly: int = 0

    def __post_init__(self):
        for name in ('keep_hourly', 'keep_daily', 'keep_weekly', 'keep_monthly', 'keep_yearly'):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 0:
                raise ValueError(f"Retention {name} must be a non-negative integer, got {value!r}")

    def as_flags(self) -> List[str]:
        """Map the policy 1:1 to --keep-* flags."""
        return [
            '--keep-hourly', str(self.keep_hourly),
            '--keep-daily', str(self.keep_daily),
            '--keep-weekly', str(self.keep_weekly),
            '--keep-monthly', str(self.keep_monthly),
            '--keep-yearly', str(self.keep_yearly),
        ]

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['RetentionPolicy']:
        if not data:
            return None
        return cls(
            keep_hourly=int(data.get('keepHourly', data.get('keep_hourly', 0)) or 0),
            keep_daily=int(data.get('keepDaily', data.get('keep_daily', 0)) or 0),
            keep_weekly=int(data.get('keepWeekly', data.get('keep_weekly', 0)) or 0),
            keep_monthly=int(data.get('keepMonthly', data.get('keep_monthly', 0)) or 0),
            keep_yearly=int(data.get('keepYearly', data.get('keep_yearly', 0)) or 0),
        )


@dataclass(frozen=True)
class BackupJobConfig:
    """One backup job invocation. Secrets are excluded from repr."""
    job_id: str
    job_name: str
    tool: ToolName
    source_paths: List[str]
    destination_type: DestinationType
    destination_path: str
    destination_endpoint: Optional[str] = None
    destination_region: Optional[str] = None
    destination_access_key: Optional[str] = field(default=None, repr=False)
    destination_secret_key: Optional[str] = field(default=None, repr=False)
    repo_password: Optional[str] = field(default=None, repr=False)
    retention: Optional[RetentionPolicy] = None

    def __post_init__(self):
        # Accept plain strings from callers
        object.__setattr__(self, 'tool', ToolName(self.tool))
        object.__setattr__(self, 'destination_type', DestinationType(self.destination_type))
        object.__setattr__(self, 'source_paths', list(self.source_paths))
        if isinstance(self.retention, dict):
            object.__setattr__(self, 'retention', RetentionPolicy.from_dict(self.retention))

    @property
    def is_pull_mode(self) -> bool:
        """rsync into an nfs destination runs on the controlling machine, pulling from the host."""
        return self.tool == ToolName.RSYNC and self.destination_type == DestinationType.NFS

    def secrets(self) -> List[str]:
        return [
            s for s in (self.repo_password, self.destination_access_key, self.destination_secret_key)
            if s
        ]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupJobConfig':
        """Build from an API-style (camelCase) job dict."""
        return cls(**_job_kwargs(data))


@dataclass(frozen=True)
class RestoreJobConfig(BackupJobConfig):
    snapshot_id: str = ''
    restore_path: str = ''
    include_paths: List[str] = field(default_factory=list)

    def __post_init__(self):
        super().__post_init__()
        if not self.snapshot_id:
            raise ValueError("Restore requires a snapshot id")
        if not self.restore_path:
            raise ValueError("Restore requires a restore path")
        object.__setattr__(self, 'include_paths', list(self.include_paths))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RestoreJobConfig':
        kwargs = _job_kwargs(data)
        kwargs['snapshot_id'] = data.get('snapshotId') or data.get('snapshot_id')
        kwargs['restore_path'] = data.get('restorePath') or data.get('restore_path')
        kwargs['include_paths'] = data.get('includePaths') or data.get('include_paths') or []
        return cls(**kwargs)


def _job_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
    def pick(camel, snake, default=None):
        value = data.get(camel)
        if value is None:
            value = data.get(snake, default)
        return value

    return {
        'job_id': str(pick('jobId', 'job_id', '')),
        'job_name': pick('jobName', 'job_name', ''),
        'tool': pick('tool', 'tool'),
        'source_paths': pick('sourcePaths', 'source_paths', []),
        'destination_type': pick('destinationType', 'destination_type'),
        'destination_path': pick('destinationPath', 'destination_path', ''),
        'destination_endpoint': pick('destinationEndpoint', 'destination_endpoint'),
        'destination_region': pick('destinationRegion', 'destination_region'),
        'destination_access_key': pick('destinationAccessKey', 'destination_access_key'),
        'destination_secret_key': pick('destinationSecretKey', 'destination_secret_key'),
        'repo_password': pick('repoPassword', 'repo_password'),
        'retention': RetentionPolicy.from_dict(pick('retention', 'retention')),
    }


@dataclass(frozen=True)
class Snapshot:
    id: str
    short_id: str
    time: str
    paths: List[str]
    hostname: str
    username: Optional[str] = None
    tags: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'shortId': self.short_id,
            'time': self.time,
            'paths': list(self.paths),
            'hostname': self.hostname,
            'username': self.username,
            'tags': sorted(self.tags),
        }


@dataclass(frozen=True)
class FileEntry:
    path: str
    size: int = 0
    mode: Optional[str] = None
    mtime: Optional[str] = None
    type: str = 'file'  # file, directory, other

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'size': self.size,
            'mode': self.mode,
            'mtime': self.mtime,
            'type': self.type,
        }


@dataclass(frozen=True)
class ExecutionLog:
    type: LogType
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.interrupted


@dataclass
class BackupResult:
    success: bool
    start_time: datetime
    end_time: datetime
    bytes_processed: Optional[int] = None
    files_processed: Optional[int] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    logs: List[ExecutionLog] = field(default_factory=list)
    # Set when teardown ownership was handed to the remote puller
    lease: Optional[Any] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'startTime': self.start_time.isoformat(),
            'endTime': self.end_time.isoformat(),
            'bytesProcessed': self.bytes_processed,
            'filesProcessed': self.files_processed,
            'errors': list(self.errors),
            'warnings': list(self.warnings),
            'logs': [entry.to_dict() for entry in self.logs],
        }
