"""
Unit tests for engine data types (fortress/backup/types.py).
"""

from datetime import datetime, timezone

import pytest

from fortress.backup.types import (
    BackupJobConfig,
    BackupResult,
    CommandResult,
    DestinationType,
    ExecutionLog,
    LogType,
    RestoreJobConfig,
    RetentionPolicy,
    SSHConnectionConfig,
    ToolName,
)


class TestRetentionPolicy:

    def test_flags_map_one_to_one(self):
        policy = RetentionPolicy(keep_daily=7, keep_weekly=4)

        assert policy.as_flags() == [
            '--keep-hourly', '0', '--keep-daily', '7', '--keep-weekly', '4',
            '--keep-monthly', '0', '--keep-yearly', '0',
        ]

    @pytest.mark.parametrize('value', [-1, 1.5, '3'])
    def test_rejects_invalid_values(self, value):
        with pytest.raises(ValueError):
            RetentionPolicy(keep_daily=value)

    def test_from_dict_accepts_both_casings(self):
        assert RetentionPolicy.from_dict({'keepDaily': 7, 'keep_weekly': 2}) == \
            RetentionPolicy(keep_daily=7, keep_weekly=2)

    def test_from_empty_dict(self):
        assert RetentionPolicy.from_dict({}) is None
        assert RetentionPolicy.from_dict(None) is None


class TestJobConfig:

    def test_strings_coerced_to_enums(self):
        job = BackupJobConfig(job_id='j', job_name='n', tool='borg', source_paths=('/a',),
                              destination_type='sftp', destination_path='u@h:/repo')

        assert job.tool == ToolName.BORG
        assert job.destination_type == DestinationType.SFTP
        assert job.source_paths == ['/a']

    def test_unknown_tool_rejected(self):
        with pytest.raises(ValueError):
            BackupJobConfig(job_id='j', job_name='n', tool='tar', source_paths=['/a'],
                            destination_type='nfs', destination_path='/x')

    def test_pull_mode_only_for_rsync_to_nfs(self, rsync_job, rsync_pull_job, borg_job):
        assert rsync_pull_job.is_pull_mode is True
        assert rsync_job.is_pull_mode is False
        assert borg_job.is_pull_mode is False

    def test_from_dict(self):
        job = BackupJobConfig.from_dict({
            'jobId': 7, 'jobName': 'web', 'tool': 'restic', 'sourcePaths': ['/var/www'],
            'destinationType': 'b2', 'destinationPath': 'bucket:web', 'repoPassword': 'pw',
            'retention': {'keepDaily': 3},
        })

        assert job.job_id == '7'
        assert job.retention == RetentionPolicy(keep_daily=3)
        assert job.secrets() == ['pw']

    def test_repr_hides_secrets(self, restic_job, ssh_config):
        text = repr(restic_job) + repr(ssh_config)

        for secret in ('restic-repo-secret', 's3-secret-key-789', 'AKIATESTACCESSKEY', 'key-passphrase-123'):
            assert secret not in text

    def test_restore_requires_snapshot_and_path(self):
        with pytest.raises(ValueError):
            RestoreJobConfig(job_id='j', job_name='n', tool='restic', source_paths=['/a'],
                             destination_type='nfs', destination_path='/x', restore_path='/r')
        with pytest.raises(ValueError):
            RestoreJobConfig(job_id='j', job_name='n', tool='restic', source_paths=['/a'],
                             destination_type='nfs', destination_path='/x', snapshot_id='s')

    def test_restore_from_dict(self):
        job = RestoreJobConfig.from_dict({
            'jobId': 'j', 'jobName': 'n', 'tool': 'borg', 'sourcePaths': ['/a'],
            'destinationType': 'nfs', 'destinationPath': '/repo', 'repoPassword': 'pw',
            'snapshotId': 'n-2024', 'restorePath': '/tmp/r', 'includePaths': ['/a/b'],
        })

        assert job.snapshot_id == 'n-2024'
        assert job.include_paths == ['/a/b']


def test_ssh_config_secrets():
    config = SSHConnectionConfig(host='h', username='u', password='pw')
    assert config.secrets() == ['pw']


def test_command_result_ok():
    assert CommandResult('', '', 0).ok is True
    assert CommandResult('', '', 1).ok is False
    assert CommandResult('', '', 0, interrupted=True).ok is False


def test_backup_result_to_dict():
    started = datetime(2024, 3, 1, 2, 0, tzinfo=timezone.utc)
    log = ExecutionLog(type=LogType.STATS, message='Processed 3 files, 0.00 MB', timestamp=started)
    result = BackupResult(success=True, start_time=started, end_time=started, files_processed=3, logs=[log])

    data = result.to_dict()

    assert data['success'] is True
    assert data['startTime'] == '2024-03-01T02:00:00+00:00'
    assert data['filesProcessed'] == 3
    assert data['bytesProcessed'] is None
    assert data['logs'] == [{'type': 'stats', 'message': 'Processed 3 files, 0.00 MB',
                             'timestamp': '2024-03-01T02:00:00+00:00'}]
    assert 'lease' not in data
