"""S3 folders.

Uploads use the compose-from-parts strategy bound to an S3 multipart upload:
every chunk is one `upload_part` call (independently retryable), and the
compose step is `complete_multipart_upload`. Parts are released by S3 itself
once the upload completes, and a failed upload is aborted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    ClientError,
    NoCredentialsError,
    ParamValidationError,
    PartialCredentialsError,
)

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
    partition_strings,
    raw_join_path,
)
from storages.remote import RemoteCalls
from storages.settings import TransferConfig, TransferKeys, parse_bool, parse_transfer_config
from storages.uploader import Chunk, ComposeUploader, PartsTarget

logger = logging.getLogger(__name__)

BACKEND = "S3"

ENDPOINT = "AWS_ENDPOINT"
REGION = "AWS_REGION"
FORCE_PATH_STYLE = "AWS_S3_FORCE_PATH_STYLE"
ACCESS_KEY_ID = "AWS_ACCESS_KEY_ID"
ACCESS_KEY = "AWS_ACCESS_KEY"
SECRET_ACCESS_KEY = "AWS_SECRET_ACCESS_KEY"
SECRET_KEY = "AWS_SECRET_KEY"
SESSION_TOKEN = "AWS_SESSION_TOKEN"
SSE = "S3_SSE"
SSE_C = "S3_SSE_C"
SSE_KMS_ID = "S3_SSE_KMS_ID"
STORAGE_CLASS = "S3_STORAGE_CLASS"
CA_CERT_FILE = "S3_CA_CERT_FILE"
MAX_PART_SIZE = "S3_MAX_PART_SIZE"
CONTEXT_TIMEOUT = "S3_CONTEXT_TIMEOUT"
NORMALIZE_PREFIX = "S3_NORMALIZE_PREFIX"
MAX_RETRIES = "S3_MAX_RETRIES"
BASE_RETRY_DELAY = "S3_BASE_RETRY_DELAY"
MAX_RETRY_DELAY = "S3_MAX_RETRY_DELAY"

SETTINGS = [
    ENDPOINT,
    REGION,
    FORCE_PATH_STYLE,
    ACCESS_KEY_ID,
    ACCESS_KEY,
    SECRET_ACCESS_KEY,
    SECRET_KEY,
    SESSION_TOKEN,
    SSE,
    SSE_C,
    SSE_KMS_ID,
    STORAGE_CLASS,
    CA_CERT_FILE,
    MAX_PART_SIZE,
    CONTEXT_TIMEOUT,
    NORMALIZE_PREFIX,
    MAX_RETRIES,
    BASE_RETRY_DELAY,
    MAX_RETRY_DELAY,
]

TRANSFER_KEYS = TransferKeys(
    context_timeout=CONTEXT_TIMEOUT,
    max_retries=MAX_RETRIES,
    base_retry_delay=BASE_RETRY_DELAY,
    max_retry_delay=MAX_RETRY_DELAY,
    max_chunk_size=MAX_PART_SIZE,
)

DEFAULT_MAX_PART_SIZE = 20 << 20
# Every part of a multipart upload but the last must be at least 5 MiB.
MIN_PART_SIZE = 5 << 20
DEFAULT_REGION = "us-east-1"
DEFAULT_STORAGE_CLASS = "STANDARD"
MAX_MULTIPART_PARTS = 10000
DELETE_BATCH_SIZE = 1000

_NOT_FOUND_CODES = ("NoSuchKey", "NotFound", "404")
_TRANSIENT_CODES = (
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
)


@dataclass(frozen=True)
class S3Config:
    """Configuration for an S3 folder."""

    bucket: str
    path: str
    region: str = DEFAULT_REGION
    endpoint: Optional[str] = None
    force_path_style: bool = False
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = field(default=None, repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    server_side_encryption: Optional[str] = None
    sse_customer_key: Optional[str] = field(default=None, repr=False)
    sse_kms_key_id: Optional[str] = None
    storage_class: str = DEFAULT_STORAGE_CLASS
    ca_cert_file: Optional[str] = None
    normalize_prefix: bool = True
    transfer: TransferConfig = field(
        default_factory=lambda: TransferConfig(max_chunk_size=DEFAULT_MAX_PART_SIZE)
    )

    def upload_args(self) -> Dict[str, str]:
        """Return the extra arguments sent with object-creating requests."""

        args: Dict[str, str] = {"StorageClass": self.storage_class}
        args.update(self.encryption_args())
        if self.server_side_encryption and not self.sse_customer_key:
            args["ServerSideEncryption"] = self.server_side_encryption
            if self.sse_kms_key_id:
                args["SSEKMSKeyId"] = self.sse_kms_key_id
        return args

    def encryption_args(self) -> Dict[str, str]:
        """Return the SSE-C arguments every part upload and read must repeat."""

        if not self.sse_customer_key:
            return {}
        return {"SSECustomerAlgorithm": "AES256", "SSECustomerKey": self.sse_customer_key}


def _error_code(exc: ClientError) -> Tuple[str, int]:
    response = getattr(exc, "response", None) or {}
    code = str(response.get("Error", {}).get("Code", ""))
    status = int(response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
    return code, status


def translate_s3_error(exc: Exception, *, message: str, path: Optional[str] = None) -> StorageError:
    """Map a boto3/botocore exception onto a storage error kind.

    4xx responses are permanent except for timeouts and throttling; 5xx
    responses and connection failures are transient.

    Args:
        exc: Vendor exception.
        message: What was being attempted.
        path: Remote path involved.

    Returns:
        StorageError: Translated error.
    """

    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, ClientError):
        code, status = _error_code(exc)
        if code in _NOT_FOUND_CODES or status == 404:
            return ObjectNotFoundError(message, backend=BACKEND, path=path)
        if code in _TRANSIENT_CODES or status in (408, 429) or status >= 500:
            return TransientTransferError(message, backend=BACKEND, path=path)
        return NonRetryableClientError(message, backend=BACKEND, path=path)
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError, ParamValidationError)):
        return NonRetryableClientError(message, backend=BACKEND, path=path)
    # Connection failures (BotoCoreError) and anything unrecognised.
    return TransientTransferError(message, backend=BACKEND, path=path)


def _first_setting(settings: Mapping[str, str], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = settings.get(key)
        if value:
            return value
    return None


def parse_s3_config(prefix: str, settings: Mapping[str, str]) -> S3Config:
    """Parse an "s3://bucket/path" prefix and the S3 settings.

    Args:
        prefix: Storage prefix.
        settings: Settings map.

    Returns:
        S3Config: Validated configuration.

    Raises:
        ConfigurationError: When the prefix or any setting is invalid, including
            a KMS key id without aws:kms encryption (or the reverse).
    """

    try:
        bucket, path = get_path_from_prefix(prefix)
    except ConfigurationError as exc:
        raise with_context(exc, backend=BACKEND, path=prefix)

    sse = settings.get(SSE) or None
    sse_kms_key_id = settings.get(SSE_KMS_ID) or None
    # Only aws:kms implies a KMS key id.
    if (sse == "aws:kms") == (sse_kms_key_id is None):
        raise ConfigurationError(f"{SSE_KMS_ID} must be set if using aws:kms encryption", setting=SSE_KMS_ID, backend=BACKEND)

    return S3Config(
        bucket=bucket,
        path=add_delimiter_to_path(path),
        region=settings.get(REGION) or DEFAULT_REGION,
        endpoint=settings.get(ENDPOINT) or None,
        force_path_style=parse_bool(settings, FORCE_PATH_STYLE, False),
        access_key_id=_first_setting(settings, [ACCESS_KEY_ID, ACCESS_KEY]),
        secret_access_key=_first_setting(settings, [SECRET_ACCESS_KEY, SECRET_KEY]),
        session_token=settings.get(SESSION_TOKEN) or None,
        server_side_encryption=sse,
        sse_customer_key=settings.get(SSE_C) or None,
        sse_kms_key_id=sse_kms_key_id,
        storage_class=settings.get(STORAGE_CLASS) or DEFAULT_STORAGE_CLASS,
        ca_cert_file=settings.get(CA_CERT_FILE) or None,
        normalize_prefix=parse_bool(settings, NORMALIZE_PREFIX, True),
        transfer=parse_transfer_config(
            settings, TRANSFER_KEYS, default_chunk_size=DEFAULT_MAX_PART_SIZE, min_chunk_size=MIN_PART_SIZE
        ),
    )


def create_s3_client(config: S3Config) -> Any:
    """Create a boto3 S3 client.

    The SDK's own retries are disabled; retries happen in `Retrier`.
    """

    session = boto3.session.Session(
        aws_access_key_id=config.access_key_id,
        aws_secret_access_key=config.secret_access_key,
        aws_session_token=config.session_token,
        region_name=config.region,
    )
    client_options: Dict[str, Any] = {"retries": {"total_max_attempts": 1}}
    if config.force_path_style:
        client_options["s3"] = {"addressing_style": "path"}

    return session.client(
        "s3",
        endpoint_url=config.endpoint,
        config=BotoConfig(**client_options),
        verify=config.ca_cert_file or None,
    )


def configure_folder(
    prefix: str,
    settings: Mapping[str, str],
    *,
    client_factory: Callable[[S3Config], Any] = create_s3_client,
) -> "S3Folder":
    """Build an S3 folder. Settings are validated before the client is created."""

    config = parse_s3_config(prefix, settings or {})
    try:
        client = client_factory(config)
    except StorageError:
        raise
    except Exception as exc:
        raise StorageError("Unable to create client", backend=BACKEND, path=prefix) from exc
    return S3Folder(client, config)


class _S3MultipartTarget(PartsTarget):
    """One multipart upload, created lazily with the first part."""

    max_parts = MAX_MULTIPART_PARTS

    def __init__(self, client: Any, config: S3Config, key: str) -> None:
        self._client = client
        self._config = config
        self._key = key
        self._upload_id: Optional[str] = None

    def _ensure_upload(self) -> str:
        if self._upload_id is None:
            response = self._client.create_multipart_upload(
                Bucket=self._config.bucket, Key=self._key, **self._config.upload_args()
            )
            self._upload_id = response["UploadId"]
        return self._upload_id

    def put_part(self, chunk: Chunk) -> Dict[str, Any]:
        upload_id = self._ensure_upload()
        part_number = chunk.index + 1
        response = self._client.upload_part(
            Bucket=self._config.bucket,
            Key=self._key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=chunk.payload,
            **self._config.encryption_args(),
        )
        return {"ETag": response["ETag"], "PartNumber": part_number}

    def compose(self, parts: Sequence[Any]) -> None:
        self._client.complete_multipart_upload(
            Bucket=self._config.bucket,
            Key=self._key,
            UploadId=self._ensure_upload(),
            MultipartUpload={"Parts": list(parts)},
        )

    def delete_part(self, part: Any) -> None:
        # Parts belong to the multipart upload and are released when it completes.
        return None

    def put_empty(self) -> None:
        self._client.put_object(
            Bucket=self._config.bucket, Key=self._key, Body=b"", **self._config.upload_args()
        )

    def abort(self, parts: Sequence[Any]) -> None:
        if self._upload_id is None:
            return
        logger.debug("Abort multipart upload of %s", self._key)
        self._client.abort_multipart_upload(
            Bucket=self._config.bucket, Key=self._key, UploadId=self._upload_id
        )


class S3Folder(Folder):
    """Folder in an S3 (or S3-compatible) bucket."""

    def __init__(
        self,
        client: Any,
        config: S3Config,
        path: Optional[str] = None,
        *,
        calls: Optional[RemoteCalls] = None,
    ) -> None:
        """Initialize the folder.

        Args:
            client: boto3 S3 client (or a compatible fake).
            config: Parsed configuration shared with sub-folders.
            path: Folder path; defaults to `config.path`.
            calls: Shared retry/translation helper.
        """

        self.client = client
        self.config = config
        self.path = config.path if path is None else path
        self._calls = calls or RemoteCalls(BACKEND, translate_s3_error, config.transfer)

    def get_path(self) -> str:
        return self.path

    def _join(self, one: str, another: str) -> str:
        if self.config.normalize_prefix:
            return join_path(one, another)
        return raw_join_path(one, another)

    def _with_path(self, path: str) -> "S3Folder":
        return S3Folder(self.client, self.config, path, calls=self._calls)

    def list_folder(self) -> Tuple[List[StorageObject], List[Folder]]:
        prefix = add_delimiter_to_path(self.path)

        def list_children() -> Tuple[List[Dict[str, Any]], List[str]]:
            contents: List[Dict[str, Any]] = []
            prefixes: List[str] = []
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix, Delimiter="/"):
                contents.extend(page.get("Contents", []) or [])
                prefixes.extend(p["Prefix"] for p in page.get("CommonPrefixes", []) or [])
            return contents, prefixes

        contents, prefixes = self._calls.run(list_children, message="Unable to iterate", path=self.path)

        objects: List[StorageObject] = []
        for item in contents:
            key = item["Key"]
            name = key[len(prefix) :] if key.startswith(prefix) else key
            if not name:
                continue
            objects.append(StorageObject(name=name, last_modified=item["LastModified"], size=int(item.get("Size", 0))))

        sub_folders: List[Folder] = [
            self._with_path(sub_prefix) for sub_prefix in prefixes if sub_prefix != prefix + "/"
        ]
        return objects, sub_folders

    def delete_objects(self, object_relative_paths: Iterable[str]) -> None:
        keys = [
            self._join(self.path, relative_path)
            for relative_path in object_relative_paths
            if not relative_path.endswith("/")
        ]
        for block in partition_strings(keys, DELETE_BATCH_SIZE):
            logger.debug("Delete %s object(s) from %s", len(block), self.path)
            self._calls.run(self._delete_block, block, message="Unable to delete objects", path=self.path)

    def _delete_block(self, keys: List[str]) -> None:
        response = self.client.delete_objects(
            Bucket=self.config.bucket,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
        )
        errors = [e for e in response.get("Errors", []) or [] if e.get("Code") not in _NOT_FOUND_CODES]
        if not errors:
            return
        details = ", ".join(f"{e.get('Key')}: {e.get('Code')}" for e in errors)
        if any(e.get("Code") in _TRANSIENT_CODES for e in errors):
            raise TransientTransferError(f"Unable to delete objects ({details})", backend=BACKEND)
        raise NonRetryableClientError(f"Unable to delete objects ({details})", backend=BACKEND)

    def exists(self, object_relative_path: str) -> bool:
        if object_relative_path.endswith("/"):
            return False
        path = self._join(self.path, object_relative_path)
        try:
            self._calls.run(
                self.client.head_object,
                Bucket=self.config.bucket,
                Key=path,
                message="Unable to stat object",
                path=path,
                **self.config.encryption_args(),
            )
        except ObjectNotFoundError:
            return False
        return True

    def get_sub_folder(self, sub_folder_relative_path: str) -> "S3Folder":
        return self._with_path(self._join(self.path, sub_folder_relative_path))

    def read_object(self, object_relative_path: str) -> BinaryIO:
        path = self._join(self.path, object_relative_path)
        response = self._calls.run(
            self.client.get_object,
            Bucket=self.config.bucket,
            Key=path,
            message="Unable to read object",
            path=path,
            **self.config.encryption_args(),
        )
        return response["Body"]

    def put_object(self, name: str, content: BinaryIO) -> None:
        """Upload `content` as a multipart upload of bounded parts.

        Args:
            name: Object name relative to this folder.
            content: Readable binary stream.
        """

        path = self._join(self.path, name)
        logger.debug("Put %s into %s", name, self.path)
        uploader = ComposeUploader(
            self._calls.retrier,
            self.config.transfer.max_chunk_size,
            translate=self._calls.translator(message="Unable to upload object", path=path),
        )
        try:
            uploader.upload(path, content, _S3MultipartTarget(self.client, self.config, path), self._calls.new_token())
        except StorageError as exc:
            raise with_context(exc, backend=BACKEND, path=path)
