"""
Unit tests for backup executor (bacup/backup/executor.py).

Tests BackupExecutor for orchestrating complete backup workflows.
"""

import gzip
import os
import tarfile
import threading

import pytest
from freezegun import freeze_time

from bacup.backup.executor import BackupExecutor, ShutdownCancelled, execute_backup
from bacup.backup.remotes import ConnectFailed, WriteFailed
from bacup.backup.services import FolderService, NoMatch, ServiceContent
from bacup.config import Config
from bacup.models import RunOutcome


def leftover_temp_dirs():
    return [name for name in os.listdir(Config.TEMP_DIR) if name.startswith('bacup_')]


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_executor_initialization(self, make_definition, stub_service, stub_remote):
        definition = make_definition()
        executor = BackupExecutor(definition, stub_service(), stub_remote())

        assert executor.definition == definition
        assert executor.temp_dir is None
        assert executor.result is None
        assert not executor.cancel_event.is_set()

    @freeze_time('2024-03-05 01:00:00')
    def test_compressed_directory_archive_name(self, make_definition, stub_service,
                                               stub_remote, temp_files):
        """Test a compressed path set is stored as <stamp>-<name>.tar.gz."""
        paths = sorted(str(p) for p in temp_files.rglob('*'))
        service = stub_service(content=ServiceContent(name='service1', paths=paths, root=str(temp_files)))
        remote = stub_remote()

        result = BackupExecutor(make_definition(compress=True), service, remote).execute()

        assert result.outcome == RunOutcome.SUCCESS
        assert result.stored == ['/backups/2024-03-05-01:00-service1.tar.gz']
        assert remote.calls == [('put', '/backups/2024-03-05-01:00-service1.tar.gz')]

    @freeze_time('2024-03-05 01:00:00')
    def test_directory_with_one_file_is_archived(self, make_definition, stub_remote, tmp_path):
        """Test a directory holding a single file is still stored as a tar.gz of the directory."""
        source = tmp_path / 'service1'
        source.mkdir()
        (source / 'only.txt').write_text('only')
        remote = stub_remote()

        result = BackupExecutor(make_definition(compress=True), FolderService('service1', str(source)),
                                remote).execute()

        assert result.stored == ['/backups/2024-03-05-01:00-service1.tar.gz']

    def test_compressed_archive_contents(self, make_definition, stub_service, stub_remote,
                                         tree_content, tmp_path):
        remote = stub_remote()

        BackupExecutor(make_definition(compress=True), stub_service(content=tree_content), remote).execute()

        archive = tmp_path / 'uploaded.tar.gz'
        archive.write_bytes(next(iter(remote.uploaded.values())))
        with tarfile.open(archive, 'r:gz') as tar:
            assert 'nested/test_file3.txt' in tar.getnames()

    @freeze_time('2024-03-05 01:00:00')
    def test_compressed_single_file(self, make_definition, stub_service,
                                    stub_remote, file_content, dump_file):
        remote = stub_remote()

        result = BackupExecutor(make_definition(compress=True), stub_service(content=file_content),
                                remote).execute()

        location = '/backups/2024-03-05-01:00-service1-dump.sql.gz'
        assert result.stored == [location]
        assert gzip.decompress(remote.uploaded[location]) == dump_file.read_bytes()

    def test_uncompressed_single_file_keeps_name(self, make_definition, stub_service,
                                                 stub_remote, file_content):
        remote = stub_remote()

        result = BackupExecutor(make_definition(), stub_service(content=file_content), remote).execute()

        assert result.outcome == RunOutcome.SUCCESS
        assert result.stored == ['/backups/service1-dump.sql']

    def test_uncompressed_path_set_keeps_layout(self, make_definition, stub_service,
                                                stub_remote, tree_content):
        remote = stub_remote()

        result = BackupExecutor(make_definition(), stub_service(content=tree_content), remote).execute()

        assert sorted(result.stored) == [
            '/backups/nested/test_file3.txt',
            '/backups/test_file1.txt',
            '/backups/test_file2.log',
        ]

    def test_incremental_sync(self, make_definition, stub_service, stub_remote, tree_content):
        remote = stub_remote()

        result = BackupExecutor(make_definition(incremental=True), stub_service(content=tree_content),
                                remote).execute()

        assert result.outcome == RunOutcome.SUCCESS
        assert remote.calls == [('incremental_sync', '/backups')]

    def test_acquisition_failure_makes_no_remote_calls(self, make_definition, stub_service, stub_remote):
        """Test a failed acquisition is a failure with zero remote calls."""
        service = stub_service(error=NoMatch('Pattern /srv/*.log matched no paths'))
        remote = stub_remote()

        result = BackupExecutor(make_definition(compress=True, keep_last=2), service, remote).execute()

        assert result.outcome == RunOutcome.FAILURE
        assert 'NoMatch' in result.error
        assert remote.calls == []
        assert service.cleanup_calls == 1
        assert leftover_temp_dirs() == []

    def test_put_failure_is_partial_and_cleans_up(self, make_definition, stub_service,
                                                  stub_remote, tree_content):
        """Test a failed put is partial and the temp directory is still removed."""
        service = stub_service(content=tree_content)
        remote = stub_remote(put_error=WriteFailed('No space left on device'))
        executor = BackupExecutor(make_definition(compress=True), service, remote)

        result = executor.execute()

        assert result.outcome == RunOutcome.PARTIAL
        assert 'WriteFailed' in result.error
        assert result.stored == []
        assert not os.path.exists(executor.temp_dir)
        assert service.cleanup_calls == 1

    def test_dump_removed_after_run(self, make_definition, stub_service, stub_remote):
        """Test dumps written into the run's temp directory do not outlive the run."""
        written = []

        def dump(temp_dir):
            path = os.path.join(temp_dir, 'db-dump.sql')
            with open(path, 'w') as f:
                f.write('dump')
            written.append(path)
            return ServiceContent(name='db-dump.sql', file_path=path)

        result = BackupExecutor(make_definition(compress=True), stub_service(content=dump),
                                stub_remote()).execute()

        assert result.outcome == RunOutcome.SUCCESS
        assert not os.path.exists(written[0])
        assert leftover_temp_dirs() == []

    def test_connect_failed_is_retried(self, make_definition, stub_service, stub_remote, file_content):
        remote = stub_remote(put_error=[ConnectFailed('reset'), None])

        result = BackupExecutor(make_definition(), stub_service(content=file_content), remote,
                                connect_retries=3, retry_delay=0).execute()

        assert result.outcome == RunOutcome.SUCCESS
        assert [c[0] for c in remote.calls] == ['put', 'put']

    def test_connect_failed_retries_exhausted(self, make_definition, stub_service, stub_remote, file_content):
        remote = stub_remote(put_error=ConnectFailed('unreachable'))

        result = BackupExecutor(make_definition(), stub_service(content=file_content), remote,
                                connect_retries=3, retry_delay=0).execute()

        assert result.outcome == RunOutcome.PARTIAL
        assert 'ConnectFailed' in result.error
        assert len(remote.calls) == 3

    def test_write_failed_is_not_retried(self, make_definition, stub_service, stub_remote, file_content):
        remote = stub_remote(put_error=WriteFailed('quota'))

        BackupExecutor(make_definition(), stub_service(content=file_content), remote,
                       connect_retries=3, retry_delay=0).execute()

        assert len(remote.calls) == 1

    def test_retention_after_put(self, make_definition, stub_service, stub_remote,
                                 tree_content, timestamped_objects):
        """Test the new archive counts as the newest and the 4 oldest go."""
        content = ServiceContent(name='service1', paths=tree_content.paths, root=tree_content.root)
        remote = stub_remote(objects=timestamped_objects)

        result = BackupExecutor(make_definition(compress=True, keep_last=2),
                                stub_service(content=content), remote).execute()

        assert result.outcome == RunOutcome.SUCCESS
        assert [c[0] for c in remote.calls][:2] == ['put', 'list']
        assert sorted(result.deleted) == [
            '/backups/2024-03-01-01:00-service1.tar.gz',
            '/backups/2024-03-02-01:00-service1.tar.gz',
            '/backups/2024-03-03-01:00-service1.tar.gz',
            '/backups/2024-03-04-01:00-service1.tar.gz',
        ]
        assert result.stored[0] in remote.objects
        assert '/backups/2024-03-05-01:00-service1.tar.gz' in remote.objects

    def test_retention_failure_is_partial_and_keeps_backup(self, make_definition, stub_service,
                                                           stub_remote, tree_content):
        remote = stub_remote(list_error=WriteFailed('listing denied'))

        result = BackupExecutor(make_definition(compress=True, keep_last=2),
                                stub_service(content=tree_content), remote).execute()

        assert result.outcome == RunOutcome.PARTIAL
        assert 'RetentionError' in result.error
        assert len(result.stored) == 1
        assert result.stored[0] in remote.objects

    def test_retention_listing_connect_failed_is_retried(self, make_definition, stub_service,
                                                         stub_remote, tree_content):
        remote = stub_remote(list_error=ConnectFailed('unreachable'))

        result = BackupExecutor(make_definition(compress=True, keep_last=2),
                                stub_service(content=tree_content), remote,
                                connect_retries=2, retry_delay=0).execute()

        assert result.outcome == RunOutcome.PARTIAL
        assert [c[0] for c in remote.calls] == ['put', 'list', 'list']

    def test_cancelled_before_start(self, make_definition, stub_service, stub_remote, file_content):
        cancel_event = threading.Event()
        cancel_event.set()
        service = stub_service(content=file_content)
        remote = stub_remote()

        result = BackupExecutor(make_definition(), service, remote, cancel_event).execute()

        assert result.outcome == RunOutcome.FAILURE
        assert result.error.startswith('ShutdownCancelled')
        assert service.acquire_calls == 0
        assert remote.calls == []

    def test_cancelled_after_acquisition(self, make_definition, stub_service, stub_remote, file_content):
        """Test shutdown during acquisition stops the run before any transfer."""
        cancel_event = threading.Event()

        def acquire_then_shutdown(temp_dir):
            cancel_event.set()
            return file_content

        remote = stub_remote()
        result = BackupExecutor(make_definition(), stub_service(content=acquire_then_shutdown),
                                remote, cancel_event).execute()

        assert result.outcome == RunOutcome.FAILURE
        assert 'ShutdownCancelled' in result.error
        assert remote.calls == []
        assert leftover_temp_dirs() == []

    def test_unexpected_error_is_contained(self, make_definition, stub_service, stub_remote):
        result = BackupExecutor(make_definition(), stub_service(error=RuntimeError('boom')),
                                stub_remote()).execute()

        assert result.outcome == RunOutcome.FAILURE
        assert 'boom' in result.error

    def test_result_timestamps_and_logs(self, make_definition, stub_service, stub_remote, file_content):
        result = BackupExecutor(make_definition(), stub_service(content=file_content), stub_remote()).execute()

        assert result.job_name == 'job1'
        assert result.finished_at >= result.started_at
        assert result.duration_seconds >= 0
        assert result.logs[0].endswith('Starting backup job: job1')
        assert all(line.startswith('[') for line in result.logs)

    def test_shutdown_cancelled_is_exception(self):
        assert issubclass(ShutdownCancelled, Exception)


class TestExecuteBackup:
    """Test the execute_backup helper used by the scheduler."""

    def test_execute_backup(self, make_definition, stub_service, stub_remote, file_content):
        cancel_event = threading.Event()
        result = execute_backup(make_definition(), stub_service(content=file_content), stub_remote(), cancel_event)
        assert result.outcome == RunOutcome.SUCCESS
