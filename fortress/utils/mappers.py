"""
Record mappers - convert between API (camelCase) and database (snake_case) shapes.

JSON columns are stored as compact JSON text so that
to_db_job(to_api_job(record)) reproduces the record exactly. Keys without
a mapping pass through untouched.
"""

import json
from typing import Any, Dict, Iterable, Optional

from fortress.backup.types import BackupJobConfig, RestoreJobConfig


DEFAULT_SOURCE_PATHS = ['/home']

TOOL_ALIASES = {
    'BorgBackup': 'borg',
    'Restic': 'restic',
    'Rsync': 'rsync',
}

_JOB_ALIASES = (
    ('source_id', 'sourceId'),
    ('destination_id', 'destinationId'),
    ('repo_password', 'repoPassword'),
)
_JOB_JSON_FIELDS = ('retention', 'stats')

_SYSTEM_ALIASES = (
    ('last_seen', 'lastSeen'),
    ('ssh_key_id', 'sshKeyId'),
)


def _dumps(value) -> str:
    return json.dumps(value, separators=(',', ':'), ensure_ascii=False)


def _loads_if_text(value):
    if value and isinstance(value, str):
        return json.loads(value)
    return value


def _to_api_aliases(record: Dict[str, Any], aliases) -> Dict[str, Any]:
    for db_key, api_key in aliases:
        if db_key in record:
            record[api_key] = record.pop(db_key)
    return record


def _to_db_aliases(record: Dict[str, Any], aliases) -> Dict[str, Any]:
    for db_key, api_key in aliases:
        if api_key in record:
            value = record.pop(api_key)
            if value is not None or db_key not in record:
                record[db_key] = value
    return record


def to_api_job(job: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Database job record -> API job dict."""
    if not job:
        return None

    api = _to_api_aliases(dict(job), _JOB_ALIASES)

    source_path = api.pop('source_path', None)
    if isinstance(source_path, str) and source_path:
        api['sourcePaths'] = json.loads(source_path)
    elif 'sourcePaths' not in api:
        # Legacy rows used a plural column name
        api['sourcePaths'] = api.pop('source_paths', None) or list(DEFAULT_SOURCE_PATHS)

    for key in _JOB_JSON_FIELDS:
        if key in api:
            api[key] = _loads_if_text(api[key])

    return api


def to_db_job(job: Dict[str, Any]) -> Dict[str, Any]:
    """API job dict -> database job record."""
    record = _to_db_aliases(dict(job), _JOB_ALIASES)

    source_paths = record.pop('sourcePaths', None)
    if isinstance(source_paths, list):
        record['source_path'] = _dumps(source_paths)
    elif 'sourcePath' in record:
        record['source_path'] = record.pop('sourcePath')

    for key in _JOB_JSON_FIELDS:
        if isinstance(record.get(key), (dict, list)):
            record[key] = _dumps(record[key])

    return record


def to_api_system(system: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Database system record -> API system dict."""
    if not system:
        return None

    api = _to_api_aliases(dict(system), _SYSTEM_ALIASES)
    installed = api.pop('installed_tools', None)
    api['installedTools'] = json.loads(installed) if isinstance(installed, str) and installed else []
    return api


def to_db_system(system: Dict[str, Any]) -> Dict[str, Any]:
    """API system dict -> database system record."""
    record = _to_db_aliases(dict(system), _SYSTEM_ALIASES)
    installed = record.pop('installedTools', None)
    if isinstance(installed, list):
        record['installed_tools'] = _dumps(installed)
    return record


def _pick(record: Dict[str, Any], *keys, default=None):
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return default


def _job_kwargs(job: Dict[str, Any], location: Dict[str, Any], resolver=None) -> Dict[str, Any]:
    tool = _pick(job, 'tool', default='')
    repo_password = _pick(job, 'repoPassword', 'repo_password')
    if repo_password and resolver is not None:
        repo_password = resolver.decrypt_field(repo_password)

    return {
        'job_id': str(_pick(job, 'id', 'jobId', default='')),
        'job_name': '_'.join(str(_pick(job, 'name', 'jobName', default='')).split()),
        'tool': TOOL_ALIASES.get(tool, tool.lower()),
        'source_paths': _pick(job, 'sourcePaths') or list(DEFAULT_SOURCE_PATHS),
        'destination_type': _pick(location, 'type', 'destinationType'),
        'destination_path': _pick(location, 'path', 'destinationPath', default=''),
        'destination_endpoint': _pick(location, 'endpoint'),
        'destination_region': _pick(location, 'region'),
        'destination_access_key': _pick(location, 'access_key', 'accessKey'),
        'destination_secret_key': _pick(location, 'secret_key', 'secretKey'),
        'repo_password': repo_password,
        'retention': _loads_if_text(_pick(job, 'retention')),
    }


def job_config_from_record(job: Dict[str, Any], location: Dict[str, Any],
                           resolver=None) -> BackupJobConfig:
    """
    Build a BackupJobConfig from an API job dict and its destination location.

    Args:
        job: API-shaped job (see to_api_job)
        location: Destination location record
        resolver: SecretResolver used to decrypt a stored repoPassword
    """
    return BackupJobConfig(**_job_kwargs(job, location, resolver))


def restore_config_from_record(job: Dict[str, Any], location: Dict[str, Any],
                               snapshot_id: str, restore_path: str,
                               include_paths: Iterable[str] = (),
                               resolver=None) -> RestoreJobConfig:
    """Build a RestoreJobConfig for one snapshot of a stored job."""
    kwargs = _job_kwargs(job, location, resolver)
    return RestoreJobConfig(
        snapshot_id=snapshot_id,
        restore_path=restore_path,
        include_paths=list(include_paths),
        **kwargs
    )
