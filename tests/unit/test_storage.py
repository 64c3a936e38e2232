"""
Unit tests for SFTP storage (dirbackup/backup/storage.py).

Tests SFTPStorage upload, verification and session teardown with a mocked
paramiko client.
"""

import socket
from unittest.mock import MagicMock

import paramiko
import pytest

from dirbackup.backup.storage import SFTPStorage, build_remote_path
from dirbackup.errors import ConnectFailed, UploadFailed, VerifyFailed


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / 'backup-2024-01-15-09-05.zip'
    path.write_bytes(b'z' * 1024)
    return path


@pytest.fixture
def storage():
    return SFTPStorage(host='sftp.example.com', port=2222, username='backup', password='secret')


def _remote_stat(size):
    attrs = MagicMock()
    attrs.st_size = size
    return attrs


class TestBuildRemotePath:
    """Test remote path joining."""

    @pytest.mark.parametrize("remote_dir,expected", [
        ('/backups', '/backups/a.zip'),
        ('/backups/', '/backups/a.zip'),
        ('backups\\daily', 'backups/daily/a.zip'),
        ('C:\\backups\\daily\\', 'C:/backups/daily/a.zip'),
    ])
    def test_forward_slashes(self, remote_dir, expected):
        assert build_remote_path(remote_dir, 'a.zip') == expected


class TestSFTPStorageUpload:
    """Test SFTPStorage.upload."""

    def test_upload_success(self, storage, archive, mock_ssh_client):
        """Test a successful upload returns the remote path and size."""
        mock_ssh, mock_sftp = mock_ssh_client
        mock_sftp.stat.return_value = _remote_stat(1024)

        result = storage.upload(str(archive), '/backups/daily')

        assert result.success
        assert result.remote_path == '/backups/daily/backup-2024-01-15-09-05.zip'
        assert result.remote_size == 1024

        connect_kwargs = mock_ssh.connect.call_args[1]
        assert connect_kwargs['hostname'] == 'sftp.example.com'
        assert connect_kwargs['port'] == 2222
        assert connect_kwargs['username'] == 'backup'
        assert connect_kwargs['password'] == 'secret'

        put_args = mock_sftp.put.call_args
        assert put_args[0] == (str(archive), '/backups/daily/backup-2024-01-15-09-05.zip')
        mock_sftp.stat.assert_called_once_with('/backups/daily/backup-2024-01-15-09-05.zip')

        mock_sftp.close.assert_called_once()
        mock_ssh.close.assert_called_once()

    def test_upload_reports_progress(self, storage, archive, mock_ssh_client):
        """Test the put callback is forwarded to the progress observer."""
        _, mock_sftp = mock_ssh_client
        mock_sftp.stat.return_value = _remote_stat(1024)

        def fake_put(local, remote, callback=None, confirm=True):
            callback(512, 1024)
            callback(1024, 1024)

        mock_sftp.put.side_effect = fake_put
        events = []

        storage.upload(str(archive), '/backups', progress=lambda sent, total: events.append(sent))

        assert events == [512, 1024]

    def test_authentication_failure(self, storage, archive, mock_ssh_client):
        """Test auth errors raise ConnectFailed and close the client."""
        mock_ssh, mock_sftp = mock_ssh_client
        mock_ssh.connect.side_effect = paramiko.AuthenticationException("Auth failed")

        with pytest.raises(ConnectFailed, match="[Aa]uthentication"):
            storage.upload(str(archive), '/backups')

        mock_ssh.close.assert_called_once()
        mock_sftp.put.assert_not_called()

    @pytest.mark.parametrize("error", [
        paramiko.SSHException("Connection failed"),
        socket.timeout("timed out"),
        ConnectionRefusedError("refused"),
    ])
    def test_connection_failure(self, storage, archive, mock_ssh_client, error):
        """Test network errors raise ConnectFailed."""
        mock_ssh, _ = mock_ssh_client
        mock_ssh.connect.side_effect = error

        with pytest.raises(ConnectFailed):
            storage.upload(str(archive), '/backups')

        mock_ssh.close.assert_called_once()

    def test_open_sftp_failure(self, storage, archive, mock_ssh_client):
        """Test failure to open the SFTP channel raises ConnectFailed."""
        mock_ssh, _ = mock_ssh_client
        mock_ssh.open_sftp.side_effect = paramiko.SSHException("subsystem refused")

        with pytest.raises(ConnectFailed, match="SFTP channel"):
            storage.upload(str(archive), '/backups')

        mock_ssh.close.assert_called_once()

    def test_transfer_failure_reports_bytes(self, storage, archive, mock_ssh_client):
        """Test a dropped transfer carries the byte count seen so far."""
        mock_ssh, mock_sftp = mock_ssh_client

        def failing_put(local, remote, callback=None, confirm=True):
            callback(512, 1024)
            raise OSError("Connection reset by peer")

        mock_sftp.put.side_effect = failing_put

        with pytest.raises(UploadFailed) as exc_info:
            storage.upload(str(archive), '/backups')

        assert exc_info.value.bytes_transferred == 512
        assert '512 bytes' in str(exc_info.value)
        mock_sftp.close.assert_called_once()
        mock_ssh.close.assert_called_once()

    def test_transfer_failure_without_progress(self, storage, archive, mock_ssh_client):
        """Test byte count is None when no progress was reported."""
        _, mock_sftp = mock_ssh_client
        mock_sftp.put.side_effect = IOError("Permission denied")

        with pytest.raises(UploadFailed) as exc_info:
            storage.upload(str(archive), '/backups')

        assert exc_info.value.bytes_transferred is None

    def test_verify_size_mismatch(self, storage, archive, mock_ssh_client):
        """Test a short remote file raises VerifyFailed."""
        mock_ssh, mock_sftp = mock_ssh_client
        mock_sftp.stat.return_value = _remote_stat(1000)

        with pytest.raises(VerifyFailed, match="Size mismatch"):
            storage.upload(str(archive), '/backups')

        mock_sftp.close.assert_called_once()
        mock_ssh.close.assert_called_once()

    def test_verify_remote_missing(self, storage, archive, mock_ssh_client):
        """Test a missing remote file raises VerifyFailed."""
        _, mock_sftp = mock_ssh_client
        mock_sftp.stat.side_effect = FileNotFoundError("No such file")

        with pytest.raises(VerifyFailed, match="not found"):
            storage.upload(str(archive), '/backups')

    def test_local_file_missing(self, storage, tmp_path, mock_ssh_client):
        """Test a missing local archive fails before connecting."""
        mock_ssh, _ = mock_ssh_client

        with pytest.raises(UploadFailed, match="Local file not found"):
            storage.upload(str(tmp_path / 'missing.zip'), '/backups')

        mock_ssh.connect.assert_not_called()

    def test_teardown_failure_does_not_mask_success(self, storage, archive, mock_ssh_client):
        """Test close errors are logged and the result is still returned."""
        mock_ssh, mock_sftp = mock_ssh_client
        mock_sftp.stat.return_value = _remote_stat(1024)
        mock_sftp.close.side_effect = EOFError("channel closed")
        mock_ssh.close.side_effect = OSError("socket closed")

        result = storage.upload(str(archive), '/backups')

        assert result.remote_size == 1024
        mock_sftp.close.assert_called_once()
        mock_ssh.close.assert_called_once()

    def test_teardown_failure_does_not_mask_upload_error(self, storage, archive, mock_ssh_client):
        """Test the original cause survives a failing teardown."""
        mock_ssh, mock_sftp = mock_ssh_client
        mock_sftp.put.side_effect = OSError("Connection reset by peer")
        mock_ssh.close.side_effect = OSError("socket closed")

        with pytest.raises(UploadFailed, match="Connection reset"):
            storage.upload(str(archive), '/backups')

        mock_ssh.close.assert_called_once()


class TestSFTPStorageMisc:
    """Test construction helpers and connection test."""

    def test_from_config(self, backup_config):
        storage = SFTPStorage.from_config(backup_config)

        assert storage.host == 'sftp.example.com'
        assert storage.port == 22
        assert storage.username == 'backup'
        assert storage.timeout == 30

    def test_test_connection(self, storage, mock_ssh_client):
        mock_ssh, mock_sftp = mock_ssh_client

        assert storage.test_connection() is True
        mock_sftp.getcwd.assert_called_once()
        mock_ssh.close.assert_called_once()
