"""Google Cloud Storage folders."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

import httpx
from google.api_core import exceptions as gcs_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import storage
from google.oauth2 import service_account

from storages.errors import (
    ConfigurationError,
    NonRetryableClientError,
    ObjectNotFoundError,
    StorageError,
    TransientTransferError,
    with_context,
)
from storages.folder import Folder, StorageObject
from storages.paths import (
    add_delimiter_to_path,
    get_path_from_prefix,
    join_path,
    parse_prefix_as_url,
    raw_join_path,
)
from storages.remote import RemoteCalls
from storages.settings import TransferConfig, TransferKeys, parse_bool, parse_transfer_config
from storages.uploader import Chunk, ComposeUploader, PartsTarget, SequentialUploader

logger = logging.getLogger(__name__)

BACKEND = "GCS"

CONTEXT_TIMEOUT = "GCS_CONTEXT_TIMEOUT"
NORMALIZE_PREFIX = "GCS_NORMALIZE_PREFIX"
MAX_RETRIES = "GCS_MAX_RETRIES"
BASE_RETRY_DELAY = "GCS_BASE_RETRY_DELAY"
MAX_RETRY_DELAY = "GCS_MAX_RETRY_DELAY"
MAX_CHUNK_SIZE = "GCS_MAX_CHUNK_SIZE"
UPLOAD_STRATEGY = "GCS_UPLOAD_STRATEGY"
SERVICE_ACCOUNT_JSON = "GCS_SERVICE_ACCOUNT_JSON"

SETTINGS = [
    CONTEXT_TIMEOUT,
    NORMALIZE_PREFIX,
    MAX_RETRIES,
    BASE_RETRY_DELAY,
    MAX_RETRY_DELAY,
    MAX_CHUNK_SIZE,
    UPLOAD_STRATEGY,
    SERVICE_ACCOUNT_JSON,
]

TRANSFER_KEYS = TransferKeys(
    context_timeout=CONTEXT_TIMEOUT,
    max_retries=MAX_RETRIES,
    base_retry_delay=BASE_RETRY_DELAY,
    max_retry_delay=MAX_RETRY_DELAY,
    max_chunk_size=MAX_CHUNK_SIZE,
)

# A compose call merges at most 32 sources, so chunks are large enough to
# cover objects up to 1600 MiB.
DEFAULT_MAX_CHUNK_SIZE = 50 << 20
MAX_COMPOSE_PARTS = 32

# Every request of a resumable upload but the last carries a multiple of 256 KiB.
UPLOAD_QUANTUM = 256 << 10
RESUME_INCOMPLETE = 308
HTTP_TIMEOUT = httpx.Timeout(300.0, connect=30.0)

SEQUENTIAL = "sequential"
COMPOSE = "compose"


@dataclass(frozen=True)
class GCSConfig:
    """Configuration for a GCS folder."""

    bucket: str
    path: str
    normalize_prefix: bool = True
    upload_strategy: str = SEQUENTIAL
    transfer: TransferConfig = field(
        default_factory=lambda: TransferConfig(max_chunk_size=DEFAULT_MAX_CHUNK_SIZE)
    )
    service_account_json: Optional[str] = None


def translate_gcs_error(exc: Exception, *, message: str, path: Optional[str] = None) -> StorageError:
    """Map a google-cloud-storage exception onto a storage error kind.

    Args:
        exc: Vendor exception.
        message: What was being attempted.
        path: Remote path involved.

    Returns:
        StorageError: NotFound, transient (408/429/5xx, transport) or permanent (other 4xx).
    """

    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, gcs_exceptions.NotFound):
        return ObjectNotFoundError(message, backend=BACKEND, path=path)
    code = getattr(exc, "code", None)
    if isinstance(exc, gcs_exceptions.TooManyRequests) or code == 408:
        return TransientTransferError(message, backend=BACKEND, path=path)
    if isinstance(exc, gcs_exceptions.ClientError) or (
        isinstance(exc, gcs_exceptions.GoogleAPICallError) and isinstance(code, int) and 400 <= code < 500
    ):
        return NonRetryableClientError(message, backend=BACKEND, path=path)
    if isinstance(exc, auth_exceptions.RefreshError):
        return NonRetryableClientError(message, backend=BACKEND, path=path)
    return TransientTransferError(message, backend=BACKEND, path=path)


def parse_gcs_config(prefix: str, settings: Mapping[str, str]) -> GCSConfig:
    """Parse a "gs://bucket/path" prefix and the GCS settings.

    Args:
        prefix: Storage prefix.
        settings: Settings map.

    Returns:
        GCSConfig: Validated configuration.

    Raises:
        ConfigurationError: When the prefix or any setting is invalid.
    """

    normalize_prefix = parse_bool(settings, NORMALIZE_PREFIX, True)
    try:
        if normalize_prefix:
            bucket, path = get_path_from_prefix(prefix)
        else:
            # Legacy mode: keep odd prefixes (e.g. doubled separators) intact.
            bucket, path = parse_prefix_as_url(prefix)
            if path.startswith("/"):
                path = path[1:]
    except ConfigurationError as exc:
        raise with_context(exc, backend=BACKEND, path=prefix)

    strategy = str(settings.get(UPLOAD_STRATEGY, SEQUENTIAL)).strip().lower()
    if strategy not in (SEQUENTIAL, COMPOSE):
        raise ConfigurationError(
            f"{UPLOAD_STRATEGY} must be '{SEQUENTIAL}' or '{COMPOSE}', got {strategy!r}",
            setting=UPLOAD_STRATEGY,
            backend=BACKEND,
        )

    transfer = parse_transfer_config(settings, TRANSFER_KEYS, default_chunk_size=DEFAULT_MAX_CHUNK_SIZE)
    if strategy == SEQUENTIAL and transfer.max_chunk_size % UPLOAD_QUANTUM:
        raise ConfigurationError(
            f"{MAX_CHUNK_SIZE} must be a multiple of {UPLOAD_QUANTUM} for sequential uploads",
            setting=MAX_CHUNK_SIZE,
            backend=BACKEND,
        )

    return GCSConfig(
        bucket=bucket,
        path=add_delimiter_to_path(path),
        normalize_prefix=normalize_prefix,
        upload_strategy=strategy,
        transfer=transfer,
        service_account_json=settings.get(SERVICE_ACCOUNT_JSON) or None,
    )


def create_gcs_client(config: GCSConfig) -> storage.Client:
    """Create a GCS client from a service account or application default credentials."""

    if config.service_account_json:
        try:
            info = json.loads(config.service_account_json)
        except ValueError as exc:
            raise ConfigurationError(
                f"{SERVICE_ACCOUNT_JSON} is not valid JSON", setting=SERVICE_ACCOUNT_JSON, backend=BACKEND
            ) from exc
        credentials = service_account.Credentials.from_service_account_info(info)
        return storage.Client(project=info.get("project_id"), credentials=credentials)
    return storage.Client()


def configure_folder(
    prefix: str,
    settings: Mapping[str, str],
    *,
    client_factory: Callable[[GCSConfig], Any] = create_gcs_client,
) -> "GCSFolder":
    """Build a GCS folder. Settings are validated before the client is created."""

    config = parse_gcs_config(prefix, settings or {})
    try:
        client = client_factory(config)
    except StorageError:
        raise
    except Exception as exc:
        raise StorageError("Unable to create client", backend=BACKEND, path=prefix) from exc

    return GCSFolder(
        client.bucket(config.bucket),
        config.path,
        normalize_prefix=config.normalize_prefix,
        transfer=config.transfer,
        upload_strategy=config.upload_strategy,
        http=httpx.Client(timeout=HTTP_TIMEOUT),
    )


class _GCSResumableWriter:
    """Chunk writer over one GCS resumable upload session.

    Bytes are sent with explicit offsets against the session URL, so a failed
    request is recovered by asking the session how much it persisted and
    resending from there. The most recent chunk is held back until the next
    one arrives, because only the last request may carry an unaligned size and
    the total length. Nothing is committed before `close`; `abort` cancels the
    session.
    """

    def __init__(self, http: httpx.Client, session_url: str) -> None:
        self._http = http
        self._url = session_url
        self._position = 0
        self._pending: Optional[bytes] = None
        self._pending_start = 0
        self._persisted = 0
        self._uncertain = False
        self._finished = False

    def seekable(self) -> bool:
        return True

    def seek(self, offset: int) -> None:
        self._position = offset

    def write(self, data: bytes) -> None:
        if self._pending is not None:
            if self._position != self._pending_start + len(self._pending):
                raise ValueError(
                    f"chunk at {self._position} does not follow the pending chunk at {self._pending_start}"
                )
            self._transmit(self._pending, self._pending_start, final=False)
        elif self._position != self._persisted:
            raise ValueError(f"chunk at {self._position} does not follow {self._persisted} persisted bytes")

        self._pending = bytes(data)
        self._pending_start = self._position
        self._position += len(data)

    def close(self) -> None:
        if self._finished:
            return
        if self._pending is None:
            self._transmit(b"", self._persisted, final=True)
        else:
            self._transmit(self._pending, self._pending_start, final=True)

    def abort(self) -> None:
        if self._finished:
            return
        response = self._http.delete(self._url)
        logger.debug("Cancelled upload session (HTTP %s)", response.status_code)

    def _transmit(self, data: bytes, start: int, *, final: bool) -> None:
        end = start + len(data)
        if self._uncertain:
            self._query_status()

        while not self._finished:
            skip = self._persisted - start
            if skip < 0 or skip > len(data):
                raise StorageError(
                    f"upload session persisted {self._persisted} bytes, outside chunk {start}-{end}"
                )
            if skip == len(data) and not final:
                return

            body = data[skip:]
            total = end if final else None
            before = self._persisted
            self._uncertain = True
            response = self._http.put(
                self._url,
                content=body,
                headers={"Content-Range": _content_range(self._persisted, len(body), total)},
            )
            self._handle(response)
            self._uncertain = False

            if not self._finished and self._persisted == before and body:
                raise TransientTransferError("upload session persisted no bytes")

    def _query_status(self) -> None:
        response = self._http.put(self._url, content=b"", headers={"Content-Range": "bytes */*"})
        self._handle(response)
        self._uncertain = False

    def _handle(self, response: httpx.Response) -> None:
        status = response.status_code
        if status in (200, 201):
            self._finished = True
            return
        if status == RESUME_INCOMPLETE:
            self._persisted = _persisted_bytes(response)
            return
        if status in (404, 410):
            raise NonRetryableClientError(f"upload session expired (HTTP {status})")
        raise gcs_exceptions.from_http_status(status, f"resumable upload failed: {response.text}")


def _content_range(start: int, length: int, total: Optional[int]) -> str:
    size = "*" if total is None else str(total)
    if length == 0:
        return f"bytes */{size}"
    return f"bytes {start}-{start + length - 1}/{size}"


def _persisted_bytes(response: httpx.Response) -> int:
    # "Range: bytes=0-N"; absent when nothing has been persisted yet.
    value = response.headers.get("Range")
    if not value:
        return 0
    return int(value.rpartition("-")[2]) + 1


class _GCSPartsTarget(PartsTarget):
    """Temporary part objects composed into the final object."""

    max_parts = MAX_COMPOSE_PARTS

    def __init__(self, bucket: Any, path: str) -> None:
        self._bucket = bucket
        self._path = path

    def part_name(self, index: int) -> str:
        return f"{self._path}.part_{index:04d}"

    def put_part(self, chunk: Chunk) -> Any:
        part = self._bucket.blob(self.part_name(chunk.index))
        part.upload_from_string(chunk.payload, retry=None)
        return part

    def compose(self, parts: Sequence[Any]) -> None:
        self._bucket.blob(self._path).compose(list(parts), retry=None)

    def delete_part(self, part: Any) -> None:
        try:
            part.delete(retry=None)
        except gcs_exceptions.NotFound:
            logger.debug("Temporary chunk %s is already gone", part.name)

    def put_empty(self) -> None:
        self._bucket.blob(self._path).upload_from_string(b"", retry=None)


class GCSFolder(Folder):
    """Folder in a GCS bucket.

    The bucket handle is shared with sub-folders; it is safe for concurrent use.
    """

    def __init__(
        self,
        bucket: Any,
        path: str,
        *,
        normalize_prefix: bool = True,
        transfer: Optional[TransferConfig] = None,
        upload_strategy: str = SEQUENTIAL,
        calls: Optional[RemoteCalls] = None,
        http: Optional[httpx.Client] = None,
    ) -> None:
        """Initialize the folder.

        Args:
            bucket: google-cloud-storage bucket handle (or a compatible fake).
            path: Folder path inside the bucket.
            normalize_prefix: Use the normalising path join; False keeps raw prefixes.
            transfer: Transfer tuning.
            upload_strategy: "sequential" or "compose".
            calls: Shared retry/translation helper; built from `transfer` when omitted.
            http: Client for upload session requests; session URLs carry their
                own authorization, so no credentials are attached.
        """

        self.bucket = bucket
        self.path = path
        self.normalize_prefix = normalize_prefix
        self.transfer = transfer or TransferConfig(max_chunk_size=DEFAULT_MAX_CHUNK_SIZE)
        self.upload_strategy = upload_strategy
        self._calls = calls or RemoteCalls(BACKEND, translate_gcs_error, self.transfer)
        self.http = http or httpx.Client(timeout=HTTP_TIMEOUT)

    def get_path(self) -> str:
        return self.path

    def _join(self, one: str, another: str) -> str:
        if self.normalize_prefix:
            return join_path(one, another)
        return raw_join_path(one, another)

    def list_folder(self) -> Tuple[List[StorageObject], List[Folder]]:
        """List objects and sub-folders directly under this folder.

        Returns:
            Tuple[List[StorageObject], List[Folder]]: Children of this folder.
        """

        prefix = add_delimiter_to_path(self.path)

        def list_children() -> Tuple[List[Any], List[str]]:
            iterator = self.bucket.list_blobs(prefix=prefix, delimiter="/", retry=None)
            blobs = list(iterator)
            return blobs, sorted(iterator.prefixes)

        blobs, prefixes = self._calls.run(list_children, message="Unable to iterate", path=self.path)

        objects: List[StorageObject] = []
        for blob in blobs:
            name = blob.name[len(prefix) :] if blob.name.startswith(prefix) else blob.name
            # GCS echoes the folder itself back as an object.
            if not name:
                continue
            objects.append(StorageObject(name=name, last_modified=blob.updated, size=blob.size or 0))

        sub_folders: List[Folder] = []
        for sub_prefix in prefixes:
            # Sometimes GCS returns a "//" folder; skip it.
            if sub_prefix == prefix + "/":
                continue
            sub_folders.append(self._with_path(sub_prefix))

        return objects, sub_folders

    def _with_path(self, path: str) -> "GCSFolder":
        return GCSFolder(
            self.bucket,
            path,
            normalize_prefix=self.normalize_prefix,
            transfer=self.transfer,
            upload_strategy=self.upload_strategy,
            calls=self._calls,
            http=self.http,
        )

    def delete_objects(self, object_relative_paths: Iterable[str]) -> None:
        for relative_path in object_relative_paths:
            if relative_path.endswith("/"):
                logger.debug("Skip deleting directory %s", relative_path)
                continue
            path = self._join(self.path, relative_path)
            logger.debug("Delete %s", path)
            try:
                self._calls.run(
                    self.bucket.blob(path).delete,
                    retry=None,
                    message="Unable to delete object",
                    path=path,
                )
            except ObjectNotFoundError:
                continue

    def exists(self, object_relative_path: str) -> bool:
        path = self._join(self.path, object_relative_path)
        blob = self._calls.run(self.bucket.get_blob, path, retry=None, message="Unable to stat object", path=path)
        return blob is not None

    def get_sub_folder(self, sub_folder_relative_path: str) -> "GCSFolder":
        return self._with_path(self._join(self.path, sub_folder_relative_path))

    def read_object(self, object_relative_path: str) -> BinaryIO:
        path = self._join(self.path, object_relative_path)
        blob = self._calls.run(self.bucket.get_blob, path, retry=None, message="Unable to stat object", path=path)
        if blob is None:
            raise ObjectNotFoundError(backend=BACKEND, path=path)
        return self._calls.call(blob.open, "rb", message="Unable to open object", path=path)

    def put_object(self, name: str, content: BinaryIO) -> None:
        """Upload `content` in chunks using the configured strategy.

        Args:
            name: Object name relative to this folder.
            content: Readable binary stream.
        """

        path = self._join(self.path, name)
        logger.debug("Put %s into %s", name, self.path)
        token = self._calls.new_token()
        translate = self._calls.translator(message="Unable to copy to object", path=path)

        try:
            if self.upload_strategy == COMPOSE:
                uploader = ComposeUploader(self._calls.retrier, self.transfer.max_chunk_size, translate=translate)
                uploader.upload(path, content, _GCSPartsTarget(self.bucket, path), token)
            else:
                uploader = SequentialUploader(self._calls.retrier, self.transfer.max_chunk_size, translate=translate)
                session_url = self._calls.run(
                    self.bucket.blob(path).create_resumable_upload_session,
                    retry=None,
                    message="Unable to create upload session",
                    path=path,
                    token=token,
                )
                uploader.upload(path, content, _GCSResumableWriter(self.http, session_url), token)
        except StorageError as exc:
            raise with_context(exc, backend=BACKEND, path=path)
