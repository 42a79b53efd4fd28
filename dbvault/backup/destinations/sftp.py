"""
SFTP destination.

Uploads dumps to {root}/{data_source}/{YYYY}/{MM}/{run_id}/{filename} on a remote host.
Every operation opens its own SSH connection, so one destination instance can
be used from several delivery threads.
"""

import logging
import os
import posixpath
import stat as stat_module
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import paramiko
from paramiko import AutoAddPolicy, SSHClient

from .base import BackupDestination
from .local import stored_relative_path
from ..errors import DestinationConfigError, DestinationStoreError

logger = logging.getLogger(__name__)


class SftpDestination(BackupDestination):
    """Uploads dumps over SFTP."""

    type_name = 'sftp'
    download_is_temporary = True

    def __init__(
        self,
        destination_id: str,
        host: str,
        username: str,
        root: str = '.',
        port: int = 22,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        timeout: int = 30,
        download_dir: Optional[str] = None
    ):
        super().__init__(destination_id)
        if not host or not username:
            raise DestinationConfigError(f"SFTP destination {destination_id} needs host and username")
        if not password and not private_key:
            raise DestinationConfigError(f"SFTP destination {destination_id} needs a password or private_key")

        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.private_key_path = private_key
        self.root = root.rstrip('/') or '/'
        self.timeout = timeout
        self.download_dir = download_dir

    @property
    def disk(self) -> str:
        return f"{self.username}@{self.host}:{self.root}"

    def _connect_kwargs(self) -> dict:
        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': self.timeout
        }

        if self.password:
            connect_kwargs['password'] = self.password
        else:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise DestinationStoreError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)

        return connect_kwargs

    @contextmanager
    def _sftp(self):
        """
        Open an SFTP session for the duration of the block.

        Raises:
            DestinationStoreError: If connection fails
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            ssh_client.connect(**self._connect_kwargs())
            sftp_client = ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise DestinationStoreError(f"SSH authentication failed for {self.host}: {e}")
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise DestinationStoreError(f"SSH connection to {self.host} failed: {e}")

        try:
            yield sftp_client
        finally:
            sftp_client.close()
            ssh_client.close()

    def _remote_path(self, relative_path: str) -> str:
        return posixpath.join(self.root, relative_path)

    def _ensure_directory(self, sftp_client, remote_dir: str):
        parts = []
        current = remote_dir
        while current not in ('', '/', '.'):
            try:
                sftp_client.stat(current)
                break
            except FileNotFoundError:
                parts.append(current)
                current = posixpath.dirname(current)

        for directory in reversed(parts):
            sftp_client.mkdir(directory)

    def store(self, run, temp_path, filename, metadata):
        if not os.path.exists(temp_path):
            raise DestinationStoreError(f"Source file not found: {temp_path}")

        relative_path = stored_relative_path(run, filename)
        remote_path = self._remote_path(relative_path)

        with self._sftp() as sftp_client:
            try:
                self._ensure_directory(sftp_client, posixpath.dirname(remote_path))
                sftp_client.put(temp_path, remote_path, confirm=True)
            except PermissionError as e:
                raise DestinationStoreError(f"Permission denied writing {remote_path} on {self.host}: {e}")
            except (IOError, paramiko.SSHException) as e:
                raise DestinationStoreError(f"SFTP upload to {self.host} failed: {e}")

        return relative_path

    def delete_stored_file(self, stored_path):
        remote_path = self._remote_path(stored_path)

        with self._sftp() as sftp_client:
            try:
                sftp_client.remove(remote_path)
            except FileNotFoundError:
                logger.debug(f"{remote_path} already absent on {self.host}")
            except (IOError, paramiko.SSHException) as e:
                raise DestinationStoreError(f"SFTP delete on {self.host} failed: {e}")

    def download(self, record):
        """
        Fetch the remote copy into a new temporary file.

        The caller owns the returned file and must remove it once sent.
        Nothing is left behind when the transfer fails.
        """
        remote_path = self._remote_path(record.path)
        target_dir = self.download_dir or tempfile.gettempdir()
        os.makedirs(target_dir, exist_ok=True)
        fd, local_path = tempfile.mkstemp(prefix=f"{record.id}_", suffix=f"_{record.filename}", dir=target_dir)
        os.close(fd)

        try:
            with self._sftp() as sftp_client:
                try:
                    attributes = sftp_client.stat(remote_path)
                    if stat_module.S_ISDIR(attributes.st_mode):
                        raise FileNotFoundError(f"Not a file: {remote_path}")
                    sftp_client.get(remote_path, local_path)
                except FileNotFoundError:
                    raise FileNotFoundError(f"Remote file not found: {self.host}:{remote_path}")
                except (IOError, paramiko.SSHException) as e:
                    raise DestinationStoreError(f"SFTP download from {self.host} failed: {e}")
        except BaseException:
            _remove_quietly(local_path)
            raise

        return local_path

    def test_connection(self) -> bool:
        with self._sftp() as sftp_client:
            sftp_client.listdir(self.root)
        return True


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove partial download {path}: {e}")
