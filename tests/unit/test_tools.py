"""
Unit tests for command synthesis (fortress/backup/tools.py, rsync.py, borg.py, restic.py).
"""

import shlex

import pytest

from fortress.backup.errors import MissingRepositoryPassword, UnsupportedDestination, UnsupportedOperation
from fortress.backup.tools import (
    KEYFILE_PLACEHOLDER,
    SYSTEM_EXCLUDES,
    build_sftp_mount,
    build_sftp_unmount,
    get_tool,
    parse_size,
)
from fortress.backup.types import BackupJobConfig, LogType, RestoreJobConfig, ToolName


def job(**overrides):
    values = dict(
        job_id='j1', job_name='job', tool='restic', source_paths=['/data'],
        destination_type='s3', destination_path='bucket/path', repo_password='x',
    )
    values.update(overrides)
    return BackupJobConfig(**values)


class TestGetTool:

    def test_get_tool_by_name(self):
        assert get_tool('rsync').name == ToolName.RSYNC
        assert get_tool(ToolName.BORG).name == ToolName.BORG
        assert get_tool('restic').name == ToolName.RESTIC

    def test_get_tool_unknown_raises(self):
        with pytest.raises(ValueError, match='Unsupported backup tool'):
            get_tool('duplicity')


class TestParseSize:

    @pytest.mark.parametrize('value,unit,expected', [
        ('1.5', 'GB', 1500000000),
        ('2', 'MiB', 2 * 1024 * 1024),
        ('1,024', 'B', 1024),
        ('10', 'kB', 10000),
    ])
    def test_parse_size(self, value, unit, expected):
        assert parse_size(value, unit) == expected


class TestRsyncCommands:

    @pytest.mark.parametrize('destination_type', ['sftp', 's3', 'b2', 'gcs', 'azure'])
    def test_push_contains_one_file_system_and_excludes(self, destination_type):
        rsync_job = job(tool='rsync', destination_type=destination_type, repo_password='hunter2')
        command = get_tool('rsync').build_backup(rsync_job)
        args = shlex.split(command.line)

        assert '--one-file-system' in args
        for path in SYSTEM_EXCLUDES:
            assert f'--exclude={path}' in args
        assert 'hunter2' not in command.line
        assert command.env == {}

    def test_push_argument_order(self, rsync_job):
        args = shlex.split(get_tool('rsync').build_backup(rsync_job).line)

        assert args[:5] == ['rsync', '-avz', '--stats', '--progress', '--one-file-system']
        assert args[-3:] == ['/home', '/etc', 'storage@nas.example.com:/backups/home']

    def test_push_destination_override(self, rsync_job):
        command = get_tool('rsync').build_backup(rsync_job, destination_path='/tmp/fortress_mnt_job-rsync')
        assert shlex.split(command.line)[-1] == '/tmp/fortress_mnt_job-rsync'

    def test_pull_uses_ssh_transport_and_keyfile_placeholder(self, rsync_pull_job, ssh_config):
        command = get_tool('rsync').build_backup(rsync_pull_job, ssh_config, pull_mode=True)
        args = shlex.split(command.line)

        transport = args[args.index('-e') + 1]
        assert transport == f'ssh -o StrictHostKeyChecking=no -p 2222 -i {KEYFILE_PLACEHOLDER}'
        assert 'backup@backup-host.example.com:/home' in args
        assert args[-1] == '/mnt/nfs/backups/home'
        assert ssh_config.passphrase not in command.line

    def test_pull_without_ssh_config_raises(self, rsync_pull_job):
        with pytest.raises(ValueError):
            get_tool('rsync').build_backup(rsync_pull_job, None, pull_mode=True)

    def test_rsync_has_no_listing_or_restore(self, rsync_job):
        tool = get_tool('rsync')

        with pytest.raises(UnsupportedOperation):
            tool.build_snapshot_list(rsync_job)
        with pytest.raises(UnsupportedOperation):
            tool.build_file_list(rsync_job, 'abc')
        assert tool.build_prune(rsync_job) is None

    def test_summary_omits_flags(self, rsync_job):
        summary = get_tool('rsync').build_backup(rsync_job).describe()
        assert summary == 'rsync (push) /home /etc -> storage@nas.example.com:/backups/home'


class TestBorgCommands:

    def test_backup_password_only_in_env(self, borg_job):
        command = get_tool('borg').build_backup(borg_job)

        assert 'borg-repo-secret' not in command.line
        assert command.env['BORG_PASSPHRASE'] == 'borg-repo-secret'
        assert command.env['BORG_NEW_PASSPHRASE'] == 'borg-repo-secret'
        assert 'BORG_CACHE_DIR' in command.env

    def test_backup_initializes_missing_repo_then_creates(self, borg_job):
        line = get_tool('borg').build_backup(borg_job).line

        assert 'borg info /mnt/nfs/borg/repo >/dev/null 2>&1 || borg init --encryption=repokey-blake2' in line
        assert 'borg create --stats --progress --one-file-system --exclude-caches' in line
        assert "'/mnt/nfs/borg/repo::nightly_borg-{now:%Y-%m-%d_%H:%M:%S}'" in line
        assert 'mkdir -p /mnt/nfs/borg' in line
        for path in SYSTEM_EXCLUDES:
            assert f'--exclude {path}' in line

    @pytest.mark.parametrize('destination_type', ['s3', 'b2', 'gcs', 'azure', 'gdrive', 'onedrive'])
    def test_cloud_destinations_unsupported(self, destination_type):
        borg_job = job(tool='borg', destination_type=destination_type)

        with pytest.raises(UnsupportedDestination, match='Please use Restic'):
            get_tool('borg').build_backup(borg_job)

    def test_sftp_repository_with_endpoint(self):
        borg_job = job(tool='borg', destination_type='sftp', destination_path='/srv/borg',
                       destination_endpoint='user@nas:2222')
        assert get_tool('borg').repository(borg_job) == 'ssh://user@nas:2222/srv/borg'

    def test_sftp_repository_verbatim(self):
        borg_job = job(tool='borg', destination_type='sftp', destination_path='user@nas:/srv/borg')
        assert get_tool('borg').repository(borg_job) == 'user@nas:/srv/borg'

    def test_missing_password_raises(self):
        borg_job = job(tool='borg', destination_type='nfs', destination_path='/repo', repo_password=None)

        with pytest.raises(MissingRepositoryPassword):
            get_tool('borg').build_backup(borg_job)

    def test_prune_maps_retention_flags(self, borg_job):
        args = shlex.split(get_tool('borg').build_prune(borg_job).line)

        assert args[:4] == ['borg', 'prune', '--stats', '/mnt/nfs/borg/repo']
        assert args[4:] == [
            '--keep-hourly', '0', '--keep-daily', '7', '--keep-weekly', '4',
            '--keep-monthly', '6', '--keep-yearly', '1',
        ]

    def test_backup_has_no_retention_flags(self, borg_job):
        assert '--keep-' not in get_tool('borg').build_backup(borg_job).line

    def test_prune_without_retention(self):
        borg_job = job(tool='borg', destination_type='nfs', destination_path='/repo')
        assert get_tool('borg').build_prune(borg_job) is None

    def test_restore_strips_leading_slash(self):
        restore = RestoreJobConfig(
            job_id='j', job_name='n', tool='borg', source_paths=['/srv'], destination_type='nfs',
            destination_path='/repo', repo_password='pw', snapshot_id='n-2024-01-01_00:00:00',
            restore_path='/restore', include_paths=['/srv/a'],
        )
        line = get_tool('borg').build_restore(restore).line

        assert line.startswith('mkdir -p /restore && cd /restore && borg extract --sparse')
        assert line.endswith('/repo::n-2024-01-01_00:00:00 srv/a')


class TestResticCommands:

    def test_example_scenario_password_only_in_env(self):
        """restic to s3 with repoPassword x: env has RESTIC_PASSWORD=x, argv never has x."""
        command = get_tool('restic').build_backup(job())

        assert command.env['RESTIC_PASSWORD'] == 'x'
        assert 'x' not in shlex.split(command.line)

    def test_s3_repository_default_endpoint(self, restic_job):
        assert get_tool('restic').repository(restic_job) == 's3:s3.eu-west-1.amazonaws.com/bucket/path'

    def test_s3_repository_custom_endpoint(self):
        restic_job = job(destination_endpoint='https://minio.local:9000/')
        assert get_tool('restic').repository(restic_job) == 's3:minio.local:9000/bucket/path'

    @pytest.mark.parametrize('destination_type,expected', [
        ('b2', 'b2:bucket/path'),
        ('sftp', 'sftp:bucket/path'),
        ('gcs', 'gs:bucket/path'),
        ('azure', 'azure:bucket/path'),
        ('gdrive', 'rclone:gdrive:bucket/path'),
        ('onedrive', 'rclone:onedrive:bucket/path'),
        ('nfs', 'bucket/path'),
    ])
    def test_repository_schemes(self, destination_type, expected):
        assert get_tool('restic').repository(job(destination_type=destination_type)) == expected

    def test_s3_credentials_in_env_only(self, restic_job):
        command = get_tool('restic').build_backup(restic_job)

        assert command.env['AWS_ACCESS_KEY_ID'] == 'AKIATESTACCESSKEY'
        assert command.env['AWS_SECRET_ACCESS_KEY'] == 's3-secret-key-789'
        assert command.env['AWS_DEFAULT_REGION'] == 'eu-west-1'
        assert 's3-secret-key-789' not in command.line
        assert 'AKIATESTACCESSKEY' not in command.line

    def test_b2_credentials(self):
        command = get_tool('restic').build_backup(job(
            destination_type='b2', destination_access_key='acct', destination_secret_key='key',
        ))
        assert command.env['B2_ACCOUNT_ID'] == 'acct'
        assert command.env['B2_ACCOUNT_KEY'] == 'key'

    def test_backup_flags(self, restic_job):
        line = get_tool('restic').build_backup(restic_job).line
        args = shlex.split(line)

        assert ' init) && restic' in line
        assert '--one-file-system' in args
        assert '--exclude-caches' in args
        assert '--exclude=/proc' in args

    def test_forget_prune(self, restic_job):
        args = shlex.split(get_tool('restic').build_prune(restic_job).line)
        assert args[3:5] == ['forget', '--prune']
        assert '--keep-daily' in args

    def test_restore_with_includes(self, restic_restore_job):
        args = shlex.split(get_tool('restic').build_restore(restic_restore_job).line)

        assert args[args.index('restore') + 1] == '4f8a2c1b'
        assert args[args.index('--target') + 1] == '/tmp/restore'
        assert args[args.index('--include') + 1] == '/data/reports'

    def test_listing_commands(self, restic_job):
        tool = get_tool('restic')

        assert shlex.split(tool.build_snapshot_list(restic_job).line)[-2:] == ['snapshots', '--json']
        assert shlex.split(tool.build_file_list(restic_job, 'abc123').line)[-3:] == ['ls', '--json', 'abc123']


class TestSftpMount:

    def test_mount_with_user_host_path(self, rsync_job):
        command = build_sftp_mount(rsync_job, '/tmp/fortress_mnt_job-rsync')

        assert 'mkdir -p /tmp/fortress_mnt_job-rsync' in command.line
        assert 'sshfs -o StrictHostKeyChecking=no,reconnect,ServerAliveInterval=15' in command.line
        assert 'storage@nas.example.com:/backups/home' in command.line

    def test_mount_with_endpoint(self):
        rsync_job = job(tool='rsync', destination_type='sftp', destination_path='/backups',
                        destination_endpoint='user@nas')
        assert 'user@nas:/backups' in build_sftp_mount(rsync_job, '/tmp/m').line

    def test_mount_without_target_raises(self):
        rsync_job = job(tool='rsync', destination_type='sftp', destination_path='/backups')

        with pytest.raises(ValueError):
            build_sftp_mount(rsync_job, '/tmp/m')

    def test_unmount_never_fails(self):
        line = build_sftp_unmount('/tmp/m').line
        assert 'fusermount -uz /tmp/m' in line
        assert line.endswith('|| true')


class TestClassifyLine:

    def test_rsync_progress(self):
        assert get_tool('rsync').classify_line('stdout', '1,234,567  45%  10.2MB/s  0:00:03') == LogType.PROGRESS

    def test_rsync_stats(self):
        assert get_tool('rsync').classify_line('stdout', 'Number of files: 12') == LogType.STATS

    def test_rsync_stderr_is_error(self):
        assert get_tool('rsync').classify_line('stderr', 'rsync: connection unexpectedly closed') == LogType.ERROR

    def test_borg_stderr_defaults_to_info(self):
        assert get_tool('borg').classify_line('stderr', 'Creating archive at "/repo::x"') == LogType.INFO

    def test_restic_fatal_is_error(self):
        assert get_tool('restic').classify_line('stderr', 'Fatal: unable to open config file') == LogType.ERROR
