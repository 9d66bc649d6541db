"""Path helpers shared by every backend.

Two join modes exist. The normalising join collapses duplicate separators;
the raw join keeps unusual legacy prefixes byte-for-byte and only trims the
separators at the boundary.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple
from urllib.parse import urlparse

from storages.errors import ConfigurationError


def join_path(one: str, another: str) -> str:
    """Join two path segments, collapsing duplicate separators.

    A leading separator on `one` is kept; leading separators on `another` are not.

    Args:
        one: Left operand (usually a folder path).
        another: Right operand (usually a relative object name).

    Returns:
        str: Joined path.
    """

    segments = [part for part in f"{one}/{another}".split("/") if part]
    joined = "/".join(segments)
    if one.startswith("/"):
        return "/" + joined
    return joined


def raw_join_path(one: str, another: str) -> str:
    """Join two segments trimming only the separators at the boundary.

    Args:
        one: Left operand.
        another: Right operand.

    Returns:
        str: Joined path with any interior doubled separators preserved.
    """

    if not one:
        return another
    if not another:
        return one
    if one.endswith("/"):
        one = one[:-1]
    if another.startswith("/"):
        another = another[1:]
    return f"{one}/{another}"


def add_delimiter_to_path(path: str) -> str:
    """Return `path` with a trailing separator; the empty path stays empty."""

    if not path or path.endswith("/"):
        return path
    return path + "/"


def parse_prefix_as_url(prefix: str) -> Tuple[str, str]:
    """Split a storage prefix such as "s3://bucket/some/path" into host and path.

    Args:
        prefix: Storage prefix URL.

    Returns:
        Tuple[str, str]: (bucket or host, path) with the path as given.

    Raises:
        ConfigurationError: When the scheme or host is missing.
    """

    parsed = urlparse(prefix)
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(
            f"missing url scheme={parsed.scheme!r} and/or host={parsed.netloc!r} in prefix {prefix!r}"
        )
    return parsed.netloc, parsed.path


def get_path_from_prefix(prefix: str) -> Tuple[str, str]:
    """Split a storage prefix into bucket and a path without outer separators.

    Args:
        prefix: Storage prefix URL.

    Returns:
        Tuple[str, str]: (bucket, path).
    """

    bucket, path = parse_prefix_as_url(prefix)
    return bucket, path.strip("/")


def partition_strings(items: Sequence[str], block_size: int) -> List[List[str]]:
    """Split `items` into consecutive blocks of at most `block_size` entries."""

    return [list(items[i : i + block_size]) for i in range(0, len(items), block_size)]
