"""Chunked uploads through the retry driver.

Two finalisation strategies are supported:

- `SequentialUploader` streams chunks, in order, into one open remote writer.
  A failed chunk is re-sent from the start of that chunk only.
- `ComposeUploader` stores every chunk as an independent part, composes the
  parts into the final object and then deletes the parts.

Reading the caller's stream is never retried: a broken local source cannot be
repaired by trying again.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Iterator, List, Optional, Sequence, TypeVar

from storages.cancellation import CancellationToken
from storages.errors import (
    LocalSourceError,
    OperationCancelledError,
    StorageError,
    TransientTransferError,
)
from storages import logging_config  # noqa: F401  (installs Logger.trace)
from storages.retrier import Retrier

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorTranslator = Callable[[Exception], StorageError]


@dataclass
class Chunk:
    """One bounded piece of an object body.

    Attributes:
        name: Object name, for diagnostics and part naming.
        index: 0-based position of the chunk within the object.
        data: Buffer holding the chunk; only the first `size` bytes are valid.
        size: Number of valid bytes in `data`.
        offset: Byte offset of the chunk's first byte within the object.
    """

    name: str
    index: int
    data: bytearray
    size: int
    offset: int = 0

    @property
    def payload(self) -> bytes:
        """Return the valid bytes of the chunk."""

        return bytes(memoryview(self.data)[: self.size])


def default_translate(exc: Exception) -> StorageError:
    """Treat an untranslated failure as transient."""

    return TransientTransferError(str(exc) or type(exc).__name__)


def read_chunk(stream: BinaryIO, buffer: bytearray) -> int:
    """Fill `buffer` from `stream`, stopping early only at end of stream.

    Args:
        stream: Readable binary stream.
        buffer: Destination buffer.

    Returns:
        int: Number of bytes read; 0 means the stream is exhausted.
    """

    view = memoryview(buffer)
    filled = 0
    while filled < len(buffer):
        data = stream.read(len(buffer) - filled)
        if not data:
            break
        view[filled : filled + len(data)] = data
        filled += len(data)
    return filled


class ChunkedUploader:
    """Shared chunking and error translation for both strategies."""

    def __init__(
        self,
        retrier: Retrier,
        max_chunk_size: int,
        *,
        translate: ErrorTranslator = default_translate,
    ) -> None:
        """Initialize the uploader.

        Args:
            retrier: Retry driver used for every remote call.
            max_chunk_size: Upper bound for a chunk's size in bytes.
            translate: Maps vendor exceptions to storage error kinds.
        """

        if max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        self.retrier = retrier
        self.max_chunk_size = max_chunk_size
        self._translate = translate

    def allocate_buffer(self) -> bytearray:
        return bytearray(self.max_chunk_size)

    def iter_chunks(self, name: str, content: BinaryIO) -> Iterator[Chunk]:
        """Yield the chunks of `content` in order.

        A fresh buffer is allocated for every chunk, so a yielded chunk stays
        valid after the next one is read.

        Args:
            name: Object name.
            content: Readable binary stream.

        Yields:
            Chunk: Non-empty chunks with contiguous indices starting at 0.

        Raises:
            LocalSourceError: When the stream fails to produce bytes.
        """

        index = 0
        offset = 0
        while True:
            buffer = self.allocate_buffer()
            try:
                size = read_chunk(content, buffer)
            except Exception as exc:
                logger.error("Unable to read content of %s, chunk %s: %s", name, index, exc)
                raise LocalSourceError(path=name, chunk_index=index) from exc

            if size == 0:
                return

            yield Chunk(name=name, index=index, data=buffer, size=size, offset=offset)
            index += 1
            offset += size

    def _call(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return func(*args)
        except StorageError:
            raise
        except Exception as exc:
            raise self._translate(exc) from exc


class SequentialUploader(ChunkedUploader):
    """Write chunks in order into a single remote writer (strategy A)."""

    def upload(
        self,
        name: str,
        content: BinaryIO,
        writer: Any,
        token: Optional[CancellationToken] = None,
    ) -> int:
        """Upload `content` through `writer` and close it.

        The writer is owned by this call: it is closed on success and released
        on every failure path. It is never re-opened between chunks. Releasing
        prefers the writer's `abort` so that nothing is committed under the
        final name; writers without one are closed.

        Args:
            name: Object name.
            content: Readable binary stream.
            writer: Open remote writer with `write` and `close`; `seekable`,
                `seek` and `abort` are used when present.
            token: Cancellation signal for every retried write and the close.

        Returns:
            int: Number of chunks uploaded.

        Raises:
            LocalSourceError: When `content` cannot be read.
            OperationCancelledError: When the token fires.
            StorageError: When a chunk exhausts its retries or the close fails.
        """

        token = token or CancellationToken()
        count = 0
        try:
            for chunk in self.iter_chunks(name, content):
                self.upload_chunk(writer, chunk, token)
                count += 1
        except Exception:
            self._release(writer, name)
            raise

        try:
            self.retrier.run(lambda: self._call(writer.close), token, description=f"close of {name}")
        except OperationCancelledError:
            self._release(writer, name)
            raise
        except StorageError as exc:
            self._release(writer, name)
            raise StorageError("Unable to close object", path=name) from exc

        logger.debug("Put %s done (%s chunk(s))", name, count)
        return count

    def upload_chunk(self, writer: Any, chunk: Chunk, token: CancellationToken) -> None:
        """Write one chunk, retrying from the chunk's first byte on failure."""

        seekable = _is_seekable(writer)
        payload = chunk.payload

        def write() -> None:
            logger.trace("Upload %s, chunk %s", chunk.name, chunk.index)  # type: ignore[attr-defined]
            if seekable:
                writer.seek(chunk.offset)
            try:
                writer.write(payload)
            except Exception as exc:
                logger.warning(
                    "Unable to copy an object chunk %s, part %s: %s", chunk.name, chunk.index, exc
                )
                raise

        self.retrier.run(
            lambda: self._call(write),
            token,
            description=f"upload of {chunk.name} chunk {chunk.index}",
        )

    def _release(self, writer: Any, name: str) -> None:
        abort = getattr(writer, "abort", None)
        try:
            if abort is not None:
                abort()
            else:
                writer.close()
        except Exception as exc:
            logger.warning("Unable to release object writer %s after a failed upload: %s", name, exc)


def _is_seekable(writer: Any) -> bool:
    seekable = getattr(writer, "seekable", None)
    return bool(seekable and seekable())


class PartsTarget(ABC):
    """Remote side of the compose-from-parts strategy for one object.

    Attributes:
        max_parts: Most parts a single compose may merge.
    """

    max_parts: int = 32

    @abstractmethod
    def put_part(self, chunk: Chunk) -> Any:
        """Store `chunk` as a new part with a fresh writer and return its handle."""

    @abstractmethod
    def compose(self, parts: Sequence[Any]) -> None:
        """Merge `parts`, in order, into the final object."""

    @abstractmethod
    def delete_part(self, part: Any) -> None:
        """Delete a part. An already-deleted part is not an error."""

    @abstractmethod
    def put_empty(self) -> None:
        """Create the final object with an empty body."""

    def abort(self, parts: Sequence[Any]) -> None:
        """Release backend resources after a failed upload. Parts may be left behind."""


class ComposeUploader(ChunkedUploader):
    """Upload chunks as independent parts and compose them (strategy B)."""

    def upload(
        self,
        name: str,
        content: BinaryIO,
        target: PartsTarget,
        token: Optional[CancellationToken] = None,
    ) -> int:
        """Upload `content` as parts of `target`, compose them and clean up.

        Args:
            name: Object name.
            content: Readable binary stream.
            target: Backend binding for parts and composition.
            token: Cancellation signal for every retried call.

        Returns:
            int: Number of parts uploaded.

        Raises:
            LocalSourceError: When `content` cannot be read.
            StorageError: When the object needs more parts than the target
                allows, a step exhausts its retries, or cleanup fails.
        """

        token = token or CancellationToken()
        parts: List[Any] = []
        try:
            for chunk in self.iter_chunks(name, content):
                if len(parts) >= target.max_parts:
                    raise StorageError(
                        f"Object needs more than {target.max_parts} parts; increase the chunk size",
                        path=name,
                    )
                parts.append(
                    self.retrier.run(
                        lambda c=chunk: self._call(target.put_part, c),
                        token,
                        description=f"upload of {name} part {chunk.index}",
                    )
                )

            if parts:
                self.retrier.run(
                    lambda: self._call(target.compose, parts),
                    token,
                    description=f"compose of {name}",
                )
            else:
                self.retrier.run(
                    lambda: self._call(target.put_empty),
                    token,
                    description=f"upload of empty {name}",
                )
        except Exception:
            try:
                target.abort(parts)
            except Exception as exc:
                logger.warning("Unable to abort the upload of %s: %s", name, exc)
            raise

        self.clean_up(name, target, parts, token)
        logger.debug("Put %s done (%s part(s))", name, len(parts))
        return len(parts)

    def clean_up(
        self,
        name: str,
        target: PartsTarget,
        parts: Sequence[Any],
        token: CancellationToken,
    ) -> None:
        """Delete temporary parts, each with its own retry budget.

        Every part is attempted even when an earlier deletion failed. The
        composed object is left in place either way.

        Raises:
            OperationCancelledError: When the token fires.
            StorageError: When at least one part could not be deleted.
        """

        failures: List[StorageError] = []
        for index, part in enumerate(parts):
            try:
                self.retrier.run(
                    lambda p=part: self._call(target.delete_part, p),
                    token,
                    description=f"deletion of {name} part {index}",
                )
            except OperationCancelledError:
                raise
            except StorageError as exc:
                logger.error("Unable to delete a temporary chunk %s of %s: %s", index, name, exc)
                failures.append(exc)

        if failures:
            raise StorageError(
                f"Unable to delete {len(failures)} temporary chunk(s)", path=name
            ) from failures[0]
