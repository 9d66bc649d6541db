"""Folder interface implemented by every storage backend."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Iterable, List, Tuple


@dataclass(frozen=True)
class StorageObject:
    """Metadata about a stored object, as seen by one listing.

    Attributes:
        name: Object name relative to the listed folder.
        last_modified: Last modification time reported by the backend.
        size: Size in bytes.
    """

    name: str
    last_modified: datetime
    size: int


class Folder(ABC):
    """Abstract base class for remote folders.

    A folder is a logical directory: object names are always resolved
    relative to `get_path()` by path joining. Implementations share
    nothing but this interface.
    """

    @abstractmethod
    def get_path(self) -> str:
        """Return the folder's path. No I/O."""

    @abstractmethod
    def list_folder(self) -> Tuple[List[StorageObject], List["Folder"]]:
        """List immediate children.

        A missing or empty remote directory yields `([], [])`.

        Returns:
            Tuple[List[StorageObject], List[Folder]]: Objects (names relative
            to this folder) and sub-folders.
        """

    @abstractmethod
    def exists(self, object_relative_path: str) -> bool:
        """Return True iff an object (not a directory) exists at the path.

        Raises:
            StorageError: For any failure other than "not found".
        """

    @abstractmethod
    def delete_objects(self, object_relative_paths: Iterable[str]) -> None:
        """Delete the named objects.

        Missing objects are not an error and directories are skipped.

        Args:
            object_relative_paths: Paths relative to this folder.
        """

    @abstractmethod
    def get_sub_folder(self, sub_folder_relative_path: str) -> "Folder":
        """Return a folder for the joined path, sharing this folder's connection. No I/O."""

    @abstractmethod
    def read_object(self, object_relative_path: str) -> BinaryIO:
        """Open a readable stream positioned at the start of the object.

        Raises:
            ObjectNotFoundError: When the object does not exist.
        """

    @abstractmethod
    def put_object(self, name: str, content: BinaryIO) -> None:
        """Store the whole of `content` under `name`.

        Args:
            name: Object name relative to this folder.
            content: Readable binary stream.

        Raises:
            LocalSourceError: When `content` fails to produce bytes.
            RetryExhaustedError: When a transfer step ran out of attempts.
            OperationCancelledError: When the folder's context timeout expired.
        """
