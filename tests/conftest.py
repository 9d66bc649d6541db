"""Shared fixtures: in-memory stand-ins for the vendor clients."""

from __future__ import annotations

import dataclasses
import errno
import io
import posixpath
import stat
from collections import Counter
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import httpx
import pytest
from botocore.exceptions import ClientError
from google.api_core import exceptions as gcs_exceptions

from storages.retrier import Retrier, RetryPolicy
from storages.settings import TransferConfig

UPDATED = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class FailureInjector:
    """Raise queued exceptions for named operations, one per call."""

    def __init__(self) -> None:
        self.failures: Dict[str, List[BaseException]] = {}
        self.calls: Counter = Counter()

    def fail(self, op: str, *errors: BaseException) -> None:
        self.failures.setdefault(op, []).extend(errors)

    def hit(self, op: str) -> None:
        self.calls[op] += 1
        pending = self.failures.get(op)
        if pending:
            raise pending.pop(0)


# --- GCS ---------------------------------------------------------------------


class FakeBlob:
    def __init__(self, bucket: "FakeBucket", name: str) -> None:
        self.bucket = bucket
        self.name = name

    @property
    def size(self) -> int:
        return len(self.bucket.objects[self.name])

    @property
    def updated(self) -> datetime:
        return UPDATED

    def upload_from_string(self, data: bytes, retry: Any = None) -> None:
        self.bucket.hit("upload")
        self.bucket.objects[self.name] = bytes(data)

    def compose(self, sources: List["FakeBlob"], retry: Any = None) -> None:
        self.bucket.hit("compose")
        self.bucket.composed.append([s.name for s in sources])
        self.bucket.objects[self.name] = b"".join(self.bucket.objects[s.name] for s in sources)

    def delete(self, retry: Any = None) -> None:
        self.bucket.hit("delete")
        if self.name not in self.bucket.objects:
            raise gcs_exceptions.NotFound(f"No such object: {self.name}")
        del self.bucket.objects[self.name]

    def open(self, mode: str = "rb", **kwargs: Any) -> Any:
        return io.BytesIO(self.bucket.objects[self.name])

    def create_resumable_upload_session(self, retry: Any = None, **kwargs: Any) -> str:
        self.bucket.hit("create_session")
        return self.bucket.server.create_session(self.name)


class FakeUploadServer:
    """GCS resumable upload endpoint served through httpx.MockTransport.

    Queued faults apply to requests that carry bytes (status queries never
    fail): "drop" fails before anything is persisted, "partial" persists half
    of the body (256 KiB aligned) and then loses the connection, "lost"
    applies the request and loses the response, an int answers with that
    HTTP status.
    """

    QUANTUM = 256 << 10

    def __init__(self, bucket: "FakeBucket") -> None:
        self.bucket = bucket
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.faults: List[Any] = []
        self.ranges: List[str] = []
        self.cancelled: List[str] = []

    def create_session(self, name: str) -> str:
        url = f"https://storage.test/upload/session-{len(self.sessions) + 1}"
        self.sessions[url] = {"name": name, "data": bytearray(), "done": False}
        return url

    def handle(self, request: httpx.Request) -> httpx.Response:
        session = self.sessions.get(str(request.url))
        if session is None:
            return httpx.Response(404)
        if request.method == "DELETE":
            del self.sessions[str(request.url)]
            self.cancelled.append(session["name"])
            return httpx.Response(499)

        content_range = request.headers["Content-Range"]
        body = request.content
        self.ranges.append(content_range)
        if content_range == "bytes */*":
            return self._status(session)

        fault = self.faults.pop(0) if self.faults else None
        if fault == "drop":
            raise httpx.ConnectError("connection reset by peer", request=request)
        if isinstance(fault, int):
            return httpx.Response(fault, text="injected")
        if fault == "partial":
            keep = (len(body) // 2) // self.QUANTUM * self.QUANTUM
            session["data"].extend(body[:keep])
            raise httpx.ReadError("connection lost", request=request)

        response = self._apply(session, content_range, body)
        if fault == "lost":
            raise httpx.ReadError("response lost", request=request)
        return response

    def _apply(self, session: Dict[str, Any], content_range: str, body: bytes) -> httpx.Response:
        if session["done"]:
            return httpx.Response(200, json={"name": session["name"]})
        span, _, total = content_range[len("bytes ") :].partition("/")
        data = session["data"]
        if span != "*":
            start, _, end = span.partition("-")
            if int(start) != len(data) or int(end) - int(start) + 1 != len(body):
                return httpx.Response(400, text=f"bad range {content_range} at {len(data)}")
            if total == "*" and len(body) % self.QUANTUM:
                return httpx.Response(400, text="unaligned chunk")
            data.extend(body)
        if total != "*":
            if int(total) != len(data):
                return httpx.Response(400, text=f"total {total} != {len(data)}")
            session["done"] = True
            self.bucket.objects[session["name"]] = bytes(data)
            return httpx.Response(200, json={"name": session["name"]})
        return self._status(session)

    def _status(self, session: Dict[str, Any]) -> httpx.Response:
        if session["done"]:
            return httpx.Response(200, json={"name": session["name"]})
        persisted = len(session["data"])
        if not persisted:
            return httpx.Response(308)
        return httpx.Response(308, headers={"Range": f"bytes=0-{persisted - 1}"})


class FakeBlobIterator:
    def __init__(self, blobs: List[FakeBlob], prefixes: set) -> None:
        self._blobs = blobs
        self.prefixes = prefixes

    def __iter__(self):
        return iter(self._blobs)


class FakeBucket(FailureInjector):
    def __init__(self, name: str = "bucket") -> None:
        super().__init__()
        self.name = name
        self.objects: Dict[str, bytes] = {}
        self.composed: List[List[str]] = []
        self.server = FakeUploadServer(self)
        self.http = httpx.Client(transport=httpx.MockTransport(self.server.handle))

    def blob(self, name: str) -> FakeBlob:
        return FakeBlob(self, name)

    def get_blob(self, name: str, retry: Any = None) -> Optional[FakeBlob]:
        self.hit("get_blob")
        if name in self.objects:
            return FakeBlob(self, name)
        return None

    def list_blobs(self, prefix: str = "", delimiter: Optional[str] = None, retry: Any = None) -> FakeBlobIterator:
        self.hit("list_blobs")
        blobs: List[FakeBlob] = []
        prefixes: set = set()
        for name in sorted(self.objects):
            if not name.startswith(prefix):
                continue
            rest = name[len(prefix) :]
            if delimiter and delimiter in rest:
                prefixes.add(prefix + rest.split(delimiter, 1)[0] + delimiter)
                continue
            blobs.append(FakeBlob(self, name))
        return FakeBlobIterator(blobs, prefixes)


class FakeGCSClient:
    def __init__(self, bucket: FakeBucket) -> None:
        self._bucket = bucket
        self.requested: List[str] = []

    def bucket(self, name: str) -> FakeBucket:
        self.requested.append(name)
        return self._bucket


# --- S3 ----------------------------------------------------------------------


def client_error(code: str, status: int, operation: str = "Operation") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakePaginator:
    def __init__(self, client: "FakeS3Client") -> None:
        self._client = client

    def paginate(self, Bucket: str, Prefix: str = "", Delimiter: Optional[str] = None):
        self._client.hit("list_objects_v2")
        contents = []
        prefixes: set = set()
        for key in sorted(self._client.objects):
            if not key.startswith(Prefix):
                continue
            rest = key[len(Prefix) :]
            if Delimiter and Delimiter in rest:
                prefixes.add(Prefix + rest.split(Delimiter, 1)[0] + Delimiter)
                continue
            contents.append({"Key": key, "LastModified": UPDATED, "Size": len(self._client.objects[key])})
        yield {"Contents": contents, "CommonPrefixes": [{"Prefix": p} for p in sorted(prefixes)]}


class FakeS3Client(FailureInjector):
    def __init__(self) -> None:
        super().__init__()
        self.objects: Dict[str, bytes] = {}
        self.uploads: Dict[str, Dict[str, Any]] = {}
        self.aborted: List[str] = []
        self.delete_batches: List[List[str]] = []
        self.put_args: List[Dict[str, Any]] = []
        self._next_upload = 0

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "list_objects_v2"
        return FakePaginator(self)

    def head_object(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        self.hit("head_object")
        if Key not in self.objects:
            raise client_error("404", 404, "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def get_object(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        self.hit("get_object")
        if Key not in self.objects:
            raise client_error("NoSuchKey", 404, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def delete_objects(self, Bucket: str, Delete: Dict[str, Any]) -> Dict[str, Any]:
        self.hit("delete_objects")
        keys = [o["Key"] for o in Delete["Objects"]]
        self.delete_batches.append(keys)
        for key in keys:
            self.objects.pop(key, None)
        return {}

    def create_multipart_upload(self, Bucket: str, Key: str, **kwargs: Any) -> Dict[str, Any]:
        self.hit("create_multipart_upload")
        self._next_upload += 1
        upload_id = f"upload-{self._next_upload}"
        self.uploads[upload_id] = {"key": Key, "parts": {}, "args": kwargs, "order": []}
        return {"UploadId": upload_id}

    def upload_part(self, Bucket: str, Key: str, UploadId: str, PartNumber: int, Body: bytes, **kwargs: Any):
        self.hit("upload_part")
        upload = self.uploads[UploadId]
        upload["parts"][PartNumber] = bytes(Body)
        upload["order"].append(PartNumber)
        return {"ETag": f'"etag-{PartNumber}"'}

    def complete_multipart_upload(self, Bucket: str, Key: str, UploadId: str, MultipartUpload: Dict[str, Any]):
        self.hit("complete_multipart_upload")
        upload = self.uploads.pop(UploadId)
        self.objects[Key] = b"".join(upload["parts"][p["PartNumber"]] for p in MultipartUpload["Parts"])
        return {}

    def abort_multipart_upload(self, Bucket: str, Key: str, UploadId: str) -> Dict[str, Any]:
        self.aborted.append(UploadId)
        self.uploads.pop(UploadId, None)
        return {}

    def put_object(self, Bucket: str, Key: str, Body: bytes, **kwargs: Any) -> Dict[str, Any]:
        self.hit("put_object")
        self.put_args.append(kwargs)
        self.objects[Key] = bytes(Body)
        return {}


# --- SFTP --------------------------------------------------------------------


class FakeRemoteFile(io.BytesIO):
    """Remote file that commits on close; a failed write may land half its bytes."""

    def __init__(self, client: "FakeSFTPClient", path: str) -> None:
        super().__init__()
        self._client = client
        self._path = path

    def write(self, data: bytes) -> int:
        pending = self._client.failures.get("write")
        if pending:
            super().write(bytes(data[: len(data) // 2]))
            raise pending.pop(0)
        return super().write(data)

    def close(self) -> None:
        if not self.closed:
            self._client.files[self._path] = self.getvalue()
        super().close()


class FakeSFTPClient(FailureInjector):
    def __init__(self) -> None:
        super().__init__()
        self.dirs = {"/"}
        self.files: Dict[str, bytes] = {}
        self.closed = False

    @staticmethod
    def _norm(path: str) -> str:
        return path.rstrip("/") or "/"

    def _attr(self, path: str) -> SimpleNamespace:
        if path in self.dirs:
            return SimpleNamespace(
                filename=posixpath.basename(path), st_mode=stat.S_IFDIR | 0o755, st_size=4096, st_mtime=1704164645
            )
        return SimpleNamespace(
            filename=posixpath.basename(path),
            st_mode=stat.S_IFREG | 0o644,
            st_size=len(self.files[path]),
            st_mtime=1704164645,
        )

    def _missing(self, path: str) -> FileNotFoundError:
        return FileNotFoundError(errno.ENOENT, "No such file", path)

    def listdir_attr(self, path: str) -> List[SimpleNamespace]:
        self.hit("listdir_attr")
        path = self._norm(path)
        if path not in self.dirs:
            raise self._missing(path)
        children = [p for p in list(self.dirs) + list(self.files) if p != path and posixpath.dirname(p) == path]
        return [self._attr(p) for p in sorted(children)]

    def stat(self, path: str) -> SimpleNamespace:
        self.hit("stat")
        path = self._norm(path)
        if path not in self.dirs and path not in self.files:
            raise self._missing(path)
        return self._attr(path)

    def mkdir(self, path: str) -> None:
        self.hit("mkdir")
        path = self._norm(path)
        if posixpath.dirname(path) not in self.dirs:
            raise self._missing(path)
        if path in self.dirs or path in self.files:
            raise OSError("Failure")
        self.dirs.add(path)

    def remove(self, path: str) -> None:
        self.hit("remove")
        if path in self.dirs:
            raise OSError("Failure")
        if path not in self.files:
            raise self._missing(path)
        del self.files[path]

    def open(self, path: str, mode: str = "r") -> io.BytesIO:
        self.hit("open")
        if "w" in mode:
            if posixpath.dirname(path) not in self.dirs:
                raise self._missing(path)
            return FakeRemoteFile(self, path)
        if path not in self.files:
            raise self._missing(path)
        return io.BytesIO(self.files[path])

    def close(self) -> None:
        self.closed = True


# --- fixtures ----------------------------------------------------------------


@pytest.fixture
def fast_transfer() -> TransferConfig:
    """Transfer tuning with no backoff sleep and a tiny chunk size."""

    return TransferConfig(
        context_timeout=30.0,
        max_retries=3,
        base_retry_delay=0.0,
        max_retry_delay=0.0,
        max_chunk_size=4,
    )


@pytest.fixture
def fast_retrier() -> Retrier:
    return Retrier(RetryPolicy(max_retries=3, base_delay=0.0, max_delay=0.0))


@pytest.fixture
def gcs_bucket() -> FakeBucket:
    return FakeBucket()


@pytest.fixture
def gcs_transfer(fast_transfer: TransferConfig) -> TransferConfig:
    """Fast transfer tuning with chunks a resumable session accepts."""

    return dataclasses.replace(fast_transfer, max_chunk_size=FakeUploadServer.QUANTUM)


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def sftp_client() -> FakeSFTPClient:
    return FakeSFTPClient()
