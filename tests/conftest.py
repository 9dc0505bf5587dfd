"""
Shared pytest fixtures for bacup tests.

This module provides fixtures for:
- Configuration records and backup definitions
- Stub service and remote handlers for pipeline tests
- Mock fixtures for external services (S3, SSH)
- SSH private keys (plain and passphrase protected)
- Temporary file fixtures
"""

import os
import threading
from unittest.mock import MagicMock, patch

import pytest
import boto3
import paramiko
from moto import mock_aws

from bacup.backup.remotes import Remote, join_remote
from bacup.backup.services import ServiceContent
from bacup.models import (
    FILESYSTEM_PATTERN,
    LOCAL_PATH,
    BackupDefinition,
    RemoteConfig,
    ServiceConfig,
)


class StubService:
    """
    Service handler returning prepared content.

    With `block=True` acquisition waits until `release` is set, so tests
    can hold a run in flight.
    """

    def __init__(self, content=None, error=None, block=False):
        self.content = content
        self.error = error
        self.block = block
        self.started = threading.Event()
        self.release = threading.Event()
        self.acquire_calls = 0
        self.cleanup_calls = 0

    def acquire(self, temp_dir):
        self.acquire_calls += 1
        self.started.set()
        if self.block:
            self.release.wait(10)
        if self.error is not None:
            raise self.error
        if callable(self.content):
            return self.content(temp_dir)
        return self.content

    def cleanup(self):
        self.cleanup_calls += 1


class StubRemote(Remote):
    """In-memory remote recording every call."""

    kind = LOCAL_PATH
    supports_incremental = True
    supports_retention = True

    def __init__(self, name='stub', objects=None, put_error=None, list_error=None,
                 delete_errors=None, sync_error=None):
        super().__init__(name)
        self.objects = list(objects or [])
        self.put_error = put_error
        self.list_error = list_error
        self.delete_errors = delete_errors or {}
        self.sync_error = sync_error
        self.calls = []
        self.uploaded = {}

    def put(self, local_path, remote_path, cancellation_check=None):
        self.calls.append(('put', remote_path))
        if self.put_error is not None:
            error = self.put_error.pop(0) if isinstance(self.put_error, list) else self.put_error
            if error is not None:
                raise error
        with open(local_path, 'rb') as f:
            self.uploaded[remote_path] = f.read()
        self.objects.append(remote_path)
        return remote_path

    def incremental_sync(self, paths, root, remote_dir):
        self.calls.append(('incremental_sync', remote_dir))
        if self.sync_error is not None:
            raise self.sync_error

    def list(self, prefix):
        self.calls.append(('list', prefix))
        if self.list_error is not None:
            raise self.list_error
        return [obj for obj in self.objects if obj.startswith(prefix.rstrip('/') + '/')]

    def delete(self, location):
        self.calls.append(('delete', location))
        if location in self.delete_errors:
            raise self.delete_errors[location]
        self.objects.remove(location)


@pytest.fixture
def stub_service():
    """StubService class, instantiate with content=..., error=... or block=True."""
    return StubService


@pytest.fixture
def stub_remote():
    """StubRemote class, instantiate with objects=... and the *_error arguments."""
    return StubRemote


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')

    nested_dir = data_dir / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return data_dir


@pytest.fixture
def dump_file(tmp_path):
    """A single dump file, as produced by a database service."""
    path = tmp_path / 'service1-dump.sql'
    path.write_text('CREATE TABLE t (id int);\n')
    return path


@pytest.fixture
def remote_dir(tmp_path):
    """Base directory for local-path remotes."""
    path = tmp_path / 'remote'
    path.mkdir()
    return path


@pytest.fixture
def make_definition():
    """Factory for BackupDefinition records with sensible defaults."""

    def _make(name='job1', when='daily 01:00', remote_path='/backups',
              compress=False, incremental=False, keep_last=None,
              service_kind=FILESYSTEM_PATTERN, service_name='service1',
              remote_kind=LOCAL_PATH, remote_name='remote1'):
        return BackupDefinition(
            name=name,
            what=ServiceConfig(kind=service_kind, name=service_name),
            where=RemoteConfig(kind=remote_kind, name=remote_name),
            when=when,
            remote_path=remote_path,
            compress=compress,
            incremental=incremental,
            keep_last=keep_last,
        )

    return _make


@pytest.fixture
def file_content(dump_file):
    """ServiceContent wrapping the single dump file."""
    return ServiceContent(name=dump_file.name, file_path=str(dump_file))


@pytest.fixture
def tree_content(temp_files):
    """ServiceContent for every path below the temp_files tree."""
    paths = sorted(str(p) for p in temp_files.rglob('*'))
    return ServiceContent(name=temp_files.name, paths=paths, root=str(temp_files))


@pytest.fixture
def timestamped_objects():
    """
    Five archive locations of service1 under /backups, listed out of order,
    plus objects retention must never touch.
    """
    stamps = ['2024-03-03-01:00', '2024-03-01-01:00', '2024-03-05-01:00',
              '2024-03-02-01:00', '2024-03-04-01:00']
    objects = [join_remote('/backups', f"{stamp}-service1.tar.gz") for stamp in stamps]
    objects.append('/backups/2024-03-01-01:00-other.tar.gz')
    objects.append('/backups/notes.txt')
    return objects


@pytest.fixture
def ssh_key(tmp_path):
    """Passphrase-less RSA private key file."""
    key = paramiko.RSAKey.generate(2048)
    path = tmp_path / 'id_rsa'
    key.write_private_key_file(str(path))
    return path


@pytest.fixture
def encrypted_ssh_key(tmp_path):
    """RSA private key file protected by a passphrase."""
    key = paramiko.RSAKey.generate(2048)
    path = tmp_path / 'id_rsa_encrypted'
    key.write_private_key_file(str(path), password='secret')
    return path


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('bacup.backup.remotes.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep tests away from the user's configuration and temp settings."""
    monkeypatch.delenv('CONF_FILE', raising=False)
    monkeypatch.setattr('bacup.config.Config.TEMP_DIR', str(tmp_path))
    monkeypatch.setattr('bacup.config.Config.RETRY_DELAY_SECONDS', 0)
    os.makedirs(tmp_path, exist_ok=True)
