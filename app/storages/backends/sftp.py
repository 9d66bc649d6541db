"""SFTP folders.

Directories are real on an SFTP server but implicit in the folder contract:
a missing directory lists as empty and parent directories are created on
write. Every primitive network call is bounded by the retry driver.
"""

from __future__ import annotations

import logging
import posixpath
import stat
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import paramiko

from storages.cancellation import CancellationToken
from storages.errors import (
    ConfigurationError,
    NonRetryableClientError,
    ObjectNotFoundError,
    StorageError,
    TransientTransferError,
    with_context,
)
from storages.folder import Folder, StorageObject
from storages.paths import join_path
from storages.remote import RemoteCalls
from storages.settings import TransferConfig, TransferKeys, parse_int, parse_transfer_config
from storages.uploader import SequentialUploader

logger = logging.getLogger(__name__)

BACKEND = "SSH"

PORT = "SSH_PORT"
USERNAME = "SSH_USERNAME"
PASSWORD = "SSH_PASSWORD"
PRIVATE_KEY_PATH = "SSH_PRIVATE_KEY_PATH"
PRIVATE_KEY_PASSPHRASE = "SSH_PRIVATE_KEY_PASSPHRASE"
CONTEXT_TIMEOUT = "SSH_CONTEXT_TIMEOUT"
MAX_RETRIES = "SSH_MAX_RETRIES"
BASE_RETRY_DELAY = "SSH_BASE_RETRY_DELAY"
MAX_RETRY_DELAY = "SSH_MAX_RETRY_DELAY"
MAX_CHUNK_SIZE = "SSH_MAX_CHUNK_SIZE"

SETTINGS = [
    PORT,
    USERNAME,
    PASSWORD,
    PRIVATE_KEY_PATH,
    PRIVATE_KEY_PASSPHRASE,
    CONTEXT_TIMEOUT,
    MAX_RETRIES,
    BASE_RETRY_DELAY,
    MAX_RETRY_DELAY,
    MAX_CHUNK_SIZE,
]

TRANSFER_KEYS = TransferKeys(
    context_timeout=CONTEXT_TIMEOUT,
    max_retries=MAX_RETRIES,
    base_retry_delay=BASE_RETRY_DELAY,
    max_retry_delay=MAX_RETRY_DELAY,
    max_chunk_size=MAX_CHUNK_SIZE,
)

DEFAULT_PORT = 22
DEFAULT_MAX_CHUNK_SIZE = 20 << 20


@dataclass(frozen=True)
class SFTPConfig:
    """Configuration for an SFTP destination."""

    host: str
    port: int
    username: str
    base_path: str

    password: Optional[str] = field(default=None, repr=False)
    private_key_path: Optional[str] = None
    private_key_passphrase: Optional[str] = field(default=None, repr=False)
    transfer: TransferConfig = field(
        default_factory=lambda: TransferConfig(max_chunk_size=DEFAULT_MAX_CHUNK_SIZE)
    )


def translate_sftp_error(exc: Exception, *, message: str, path: Optional[str] = None) -> StorageError:
    """Map a paramiko/OS exception onto a storage error kind.

    Args:
        exc: Vendor exception.
        message: What was being attempted.
        path: Remote path involved.

    Returns:
        StorageError: NotFound for missing paths, permanent for permission and
        authentication failures, transient for everything else.
    """

    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, FileNotFoundError):
        return ObjectNotFoundError(message, backend=BACKEND, path=path)
    if isinstance(exc, (PermissionError, paramiko.AuthenticationException)):
        return NonRetryableClientError(message, backend=BACKEND, path=path)
    return TransientTransferError(message, backend=BACKEND, path=path)


def parse_sftp_config(prefix: str, settings: Mapping[str, str]) -> SFTPConfig:
    """Parse an "ssh://host[:port]/path" prefix and the SSH settings.

    Args:
        prefix: Storage prefix.
        settings: Settings map.

    Returns:
        SFTPConfig: Validated configuration.

    Raises:
        ConfigurationError: When the prefix or any setting is invalid.
    """

    parsed = urlparse(prefix)
    if not parsed.scheme or not parsed.hostname:
        raise ConfigurationError(f"missing url scheme and/or host in prefix {prefix!r}", backend=BACKEND)
    try:
        url_port = parsed.port
    except ValueError as exc:
        raise ConfigurationError(f"invalid port in prefix {prefix!r}", backend=BACKEND) from exc

    username = settings.get(USERNAME) or parsed.username or ""
    if not username:
        raise ConfigurationError(f"{USERNAME} is required", setting=USERNAME, backend=BACKEND)

    return SFTPConfig(
        host=parsed.hostname,
        port=parse_int(settings, PORT, url_port or DEFAULT_PORT, minimum=1),
        username=username,
        base_path=parsed.path or "/",
        password=settings.get(PASSWORD) or None,
        private_key_path=settings.get(PRIVATE_KEY_PATH) or None,
        private_key_passphrase=settings.get(PRIVATE_KEY_PASSPHRASE) or None,
        transfer=parse_transfer_config(settings, TRANSFER_KEYS, default_chunk_size=DEFAULT_MAX_CHUNK_SIZE),
    )


def connect_sftp(config: SFTPConfig) -> paramiko.SFTPClient:
    """Open an authenticated SFTP session.

    Args:
        config: SFTP configuration.

    Returns:
        paramiko.SFTPClient: Connected client; closing it does not close the transport.
    """

    transport = paramiko.Transport((config.host, config.port))

    if config.private_key_path:
        key = paramiko.RSAKey.from_private_key_file(
            config.private_key_path,
            password=config.private_key_passphrase,
        )
        transport.connect(username=config.username, pkey=key)
    else:
        transport.connect(username=config.username, password=config.password)

    return paramiko.SFTPClient.from_transport(transport)


def configure_folder(
    prefix: str,
    settings: Mapping[str, str],
    *,
    client_factory: Callable[[SFTPConfig], Any] = connect_sftp,
) -> "SFTPFolder":
    """Build an SFTP folder. Settings are validated before connecting."""

    config = parse_sftp_config(prefix, settings or {})
    address = f"{config.host}:{config.port}"
    try:
        client = client_factory(config)
    except StorageError:
        raise
    except Exception as exc:
        raise StorageError(f"Fail connect via sftp. Address: {address}", backend=BACKEND) from exc
    return SFTPFolder(client, config.base_path, transfer=config.transfer)


class SFTPFolder(Folder):
    """Folder on an SFTP server."""

    def __init__(
        self,
        client: Any,
        path: str,
        *,
        transfer: Optional[TransferConfig] = None,
        calls: Optional[RemoteCalls] = None,
    ) -> None:
        """Initialize the folder.

        Args:
            client: Connected `paramiko.SFTPClient` (or a compatible fake).
            path: Remote directory path.
            transfer: Transfer tuning.
            calls: Shared retry/translation helper.
        """

        self.client = client
        self.path = path
        self.transfer = transfer or TransferConfig(max_chunk_size=DEFAULT_MAX_CHUNK_SIZE)
        self._calls = calls or RemoteCalls(BACKEND, translate_sftp_error, self.transfer)

    def get_path(self) -> str:
        return self.path

    def _with_path(self, path: str) -> "SFTPFolder":
        return SFTPFolder(self.client, path, transfer=self.transfer, calls=self._calls)

    def close(self) -> None:
        """Close the SFTP session and its transport. Shared with every sub-folder."""

        channel = self.client.get_channel() if hasattr(self.client, "get_channel") else None
        self.client.close()
        if channel is not None:
            channel.get_transport().close()

    def _stat(self, path: str, token: Optional[CancellationToken] = None) -> Optional[Any]:
        try:
            return self._calls.run(
                self.client.stat, path, message="Fail check object existence", path=path, token=token
            )
        except ObjectNotFoundError:
            return None

    def list_folder(self) -> Tuple[List[StorageObject], List[Folder]]:
        """List files and directories directly under this folder.

        Returns:
            Tuple[List[StorageObject], List[Folder]]: Children; empty for a missing directory.
        """

        try:
            entries = self._calls.run(self.client.listdir_attr, self.path, message="Fail read folder", path=self.path)
        except ObjectNotFoundError:
            return [], []

        objects: List[StorageObject] = []
        sub_folders: List[Folder] = []
        for entry in entries:
            if stat.S_ISDIR(entry.st_mode or 0):
                sub_folders.append(self._with_path(join_path(self.path, entry.filename)))
                continue
            objects.append(
                StorageObject(
                    name=entry.filename,
                    last_modified=datetime.fromtimestamp(entry.st_mtime or 0, tz=timezone.utc),
                    size=entry.st_size or 0,
                )
            )
        return objects, sub_folders

    def delete_objects(self, object_relative_paths: Iterable[str]) -> None:
        for relative_path in object_relative_paths:
            path = join_path(self.path, relative_path)
            attr = self._stat(path)
            if attr is None:
                continue
            if stat.S_ISDIR(attr.st_mode or 0):
                logger.debug("Skip deleting directory %s", path)
                continue
            logger.debug("Delete %s", path)
            try:
                self._calls.run(self.client.remove, path, message="Fail delete object", path=path)
            except ObjectNotFoundError:
                continue

    def exists(self, object_relative_path: str) -> bool:
        attr = self._stat(join_path(self.path, object_relative_path))
        return attr is not None and not stat.S_ISDIR(attr.st_mode or 0)

    def get_sub_folder(self, sub_folder_relative_path: str) -> "SFTPFolder":
        return self._with_path(join_path(self.path, sub_folder_relative_path))

    def read_object(self, object_relative_path: str) -> BinaryIO:
        path = join_path(self.path, object_relative_path)
        return self._calls.run(self.client.open, path, "rb", message="Fail open file", path=path)

    def _ensure_dir(self, path: str, token: CancellationToken) -> None:
        """Create `path` and any missing parents.

        Args:
            path: Remote directory path.
            token: Cancellation signal of the calling operation.
        """

        parts = [p for p in path.strip("/").split("/") if p]
        current = "/" if path.startswith("/") else ""
        for part in parts:
            current = posixpath.join(current, part) if current else part
            if self._stat(current, token) is None:
                self._calls.run(self._mkdir, current, message="Fail to create directory", path=current, token=token)

    def _mkdir(self, path: str) -> None:
        try:
            self.client.mkdir(path)
        except OSError:
            # Another writer may have created it in the meantime.
            try:
                attr = self.client.stat(path)
            except OSError:
                attr = None
            if attr is None or not stat.S_ISDIR(attr.st_mode or 0):
                raise

    def put_object(self, name: str, content: BinaryIO) -> None:
        """Create parent directories and stream `content` into the remote file.

        Args:
            name: Object name relative to this folder.
            content: Readable binary stream.
        """

        path = join_path(self.path, name)
        logger.debug("Put %s into %s", name, self.path)
        token = self._calls.new_token()
        try:
            directory = posixpath.dirname(path)
            if directory:
                self._ensure_dir(directory, token)
            remote_file = self._calls.run(
                self.client.open, path, "wb", message="Fail to create file", path=path, token=token
            )
            uploader = SequentialUploader(
                self._calls.retrier,
                self.transfer.max_chunk_size,
                translate=self._calls.translator(message="Fail write content to file", path=path),
            )
            uploader.upload(path, content, remote_file, token)
        except StorageError as exc:
            raise with_context(exc, backend=BACKEND, path=path)
