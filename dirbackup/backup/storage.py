"""
Remote storage for backup archives.

SFTPStorage uploads an archive to a directory on an SSH server:
{remote_dir}/{filename}

Each upload opens its own session and tears it down before returning.
"""

import os
import socket
import logging
import posixpath
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy, SFTPClient

from dirbackup.errors import ConnectFailed, UploadFailed, VerifyFailed
from dirbackup.models import TransferResult


logger = logging.getLogger(__name__)

# (bytes transferred, total bytes)
TransferCallback = Callable[[int, int], None]


def build_remote_path(remote_dir: str, filename: str) -> str:
    """
    Join a remote directory and a file name with forward slashes.

    Backslashes in the directory are normalized so the result is the same
    on every platform.
    """
    remote_dir = remote_dir.replace('\\', '/')
    return posixpath.join(remote_dir, filename)


class SFTPStorage:
    """
    Handler for uploading backups over SFTP.
    """

    def __init__(self, host: str, username: str, password: str, port: int = 22,
                 timeout: float = 30):
        """
        Initialize SFTP storage handler.

        Args:
            host: SSH hostname or IP
            username: SSH username
            password: SSH password
            port: SSH port (default 22)
            timeout: Connection timeout in seconds
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> 'SFTPStorage':
        return cls(
            host=config.host,
            port=config.port,
            username=config.username,
            password=config.password,
            timeout=config.timeout
        )

    def _connect(self) -> SSHClient:
        """
        Open an authenticated SSH connection.

        Raises:
            ConnectFailed: If the connection or authentication fails
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            ssh_client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False
            )
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise ConnectFailed(f"SSH authentication failed for {self.username}@{self.host}: {e}")
        except paramiko.SSHException as e:
            ssh_client.close()
            raise ConnectFailed(f"SSH connection failed to {self.host}:{self.port}: {e}")
        except (socket.error, OSError) as e:
            ssh_client.close()
            raise ConnectFailed(f"Failed to connect to {self.host}:{self.port}: {e}")

        return ssh_client

    @contextmanager
    def session(self) -> Iterator[SFTPClient]:
        """
        Open an SFTP session for the duration of a with block.

        The session is closed exactly once when the block exits, whatever
        the outcome. Errors while closing are logged and never replace an
        error raised inside the block.

        Raises:
            ConnectFailed: If the session cannot be opened
        """
        ssh_client = self._connect()

        try:
            sftp_client = ssh_client.open_sftp()
        except Exception as e:
            self._close(ssh_client, None)
            raise ConnectFailed(f"Failed to open SFTP channel on {self.host}: {e}")

        logger.info(f"SFTP session opened to {self.username}@{self.host}:{self.port}")
        try:
            yield sftp_client
        finally:
            self._close(ssh_client, sftp_client)

    def _close(self, ssh_client: SSHClient, sftp_client: Optional[SFTPClient]):
        """Close SFTP/SSH connections."""
        if sftp_client is not None:
            try:
                sftp_client.close()
            except Exception as e:
                logger.warning(f"Failed to close SFTP channel: {e}")

        try:
            ssh_client.close()
        except Exception as e:
            logger.warning(f"Failed to close SSH connection: {e}")
        else:
            logger.debug(f"SFTP session to {self.host} closed")

    def upload(self, local_path: str, remote_dir: str,
               progress: Optional[TransferCallback] = None) -> TransferResult:
        """
        Upload archive and verify its remote size.

        Args:
            local_path: Path to local archive file
            remote_dir: Remote directory to place the archive in
            progress: Optional callback with (bytes transferred, total bytes)

        Returns:
            TransferResult with remote path and size

        Raises:
            ConnectFailed: If the session cannot be opened
            UploadFailed: If the transfer fails
            VerifyFailed: If the remote object is missing or has the wrong size
        """
        if not os.path.exists(local_path):
            raise UploadFailed(f"Local file not found: {local_path}")

        local_size = os.path.getsize(local_path)
        remote_path = build_remote_path(remote_dir, os.path.basename(local_path))
        transferred = {'bytes': None}

        def on_progress(sent: int, total: int):
            transferred['bytes'] = sent
            if progress is not None:
                try:
                    progress(sent, total)
                except Exception as e:
                    logger.warning(f"Upload progress callback failed: {e}")

        with self.session() as sftp:
            logger.info(f"Uploading {local_path} to {self.host}:{remote_path} ({local_size} bytes)")
            try:
                sftp.put(local_path, remote_path, callback=on_progress, confirm=False)
            except Exception as e:
                raise UploadFailed(
                    f"SFTP upload to {remote_path} failed: {e}",
                    bytes_transferred=transferred['bytes']
                )

            remote_size = self._verify(sftp, remote_path, local_size)

        logger.info(f"Upload verified: {remote_path} ({remote_size} bytes)")
        return TransferResult(remote_path=remote_path, remote_size=remote_size)

    def _verify(self, sftp: SFTPClient, remote_path: str, expected_size: int) -> int:
        try:
            remote_size = sftp.stat(remote_path).st_size
        except FileNotFoundError:
            raise VerifyFailed(f"Remote file not found after upload: {remote_path}")
        except Exception as e:
            raise VerifyFailed(f"Failed to stat remote file {remote_path}: {e}")

        if remote_size != expected_size:
            raise VerifyFailed(
                f"Size mismatch for {remote_path}: local {expected_size} bytes, "
                f"remote {remote_size} bytes"
            )

        return remote_size

    def test_connection(self) -> bool:
        """
        Test SSH connection and SFTP access.

        Returns:
            True if a session could be opened

        Raises:
            ConnectFailed: If connection test fails
        """
        with self.session() as sftp:
            sftp.getcwd()
        return True
