"""
Shared pytest fixtures for dirbackup tests.

This module provides fixtures for:
- Configuration dicts and validated configs
- Source directories with sample files
- Fake notification transport and transfer client
- Mock fixtures for paramiko SSH/SFTP
"""

import os
import shutil
import posixpath
from unittest.mock import MagicMock, patch

import pytest

from dirbackup.config import BackupConfig
from dirbackup.models import TransferResult


@pytest.fixture
def source_dir(tmp_path):
    """Empty source directory."""
    path = tmp_path / 'source'
    path.mkdir()
    return path


@pytest.fixture
def work_dir(tmp_path):
    """Parent directory for transient working directories."""
    return tmp_path / 'work'


@pytest.fixture
def config_data(source_dir, work_dir):
    """Minimal valid configuration as parsed from JSON."""
    return {
        'source_dir': str(source_dir),
        'remote_dir': '/backups/daily',
        'host': 'sftp.example.com',
        'port': 22,
        'username': 'backup',
        'password': 'secret',
        'recipient': 'ops@example.com',
        'sender': 'backup@example.com',
        'work_dir': str(work_dir),
    }


@pytest.fixture
def backup_config(config_data):
    return BackupConfig.from_dict(config_data)


@pytest.fixture
def sample_files(source_dir):
    """
    Create sample files in the source directory.

    Creates:
    - a.txt (10 bytes)
    - b.txt (20 bytes)
    - nested/c.txt (should be skipped by selection)
    """
    (source_dir / 'a.txt').write_bytes(b'a' * 10)
    (source_dir / 'b.txt').write_bytes(b'b' * 20)

    nested = source_dir / 'nested'
    nested.mkdir()
    (nested / 'c.txt').write_text('nested content')

    return source_dir


class RecordingTransport:
    """Notification transport that keeps sent messages in memory."""

    def __init__(self, error=None):
        self.error = error
        self.messages = []

    def send(self, sender, recipient, subject, body):
        self.messages.append({
            'sender': sender,
            'recipient': recipient,
            'subject': subject,
            'body': body,
        })
        if self.error is not None:
            raise self.error


class LocalDirStorage:
    """
    Transfer client that copies archives into a local directory.

    The directory plays the role of the remote server so tests can inspect
    what landed there.
    """

    def __init__(self, root, error=None):
        self.root = root
        self.error = error
        self.calls = []

    def upload(self, local_path, remote_dir, progress=None):
        self.calls.append((local_path, remote_dir))
        if self.error is not None:
            raise self.error

        remote_path = posixpath.join(remote_dir, os.path.basename(local_path))
        dest = self.remote_file(remote_path)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        shutil.copyfile(local_path, dest)

        return TransferResult(remote_path=remote_path, remote_size=os.path.getsize(dest))

    def remote_file(self, remote_path):
        return os.path.join(str(self.root), *remote_path.strip('/').split('/'))


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def remote_storage(tmp_path):
    return LocalDirStorage(tmp_path / 'remote')


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Yields (ssh_client, sftp_client) mocks.
    """
    with patch('dirbackup.backup.storage.SSHClient') as mock_ssh_class:
        mock_ssh = MagicMock()
        mock_sftp = MagicMock()
        mock_ssh_class.return_value = mock_ssh
        mock_ssh.open_sftp.return_value = mock_sftp

        yield mock_ssh, mock_sftp


@pytest.fixture
def make_transport():
    """Factory for RecordingTransport instances."""
    return RecordingTransport


@pytest.fixture
def make_storage(tmp_path):
    """Factory for LocalDirStorage instances rooted in tmp_path/remote."""
    def factory(error=None):
        return LocalDirStorage(tmp_path / 'remote', error=error)
    return factory
