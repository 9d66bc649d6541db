"""Parsing of backend settings maps.

Settings arrive as a flat `Mapping[str, str]` (usually collected from the
environment by the caller). Everything is parsed and validated once, when a
folder is configured, so bad values fail before any network activity.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from storages.errors import ConfigurationError
from storages.retrier import (
    DEFAULT_BASE_RETRY_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY,
    RetryPolicy,
)

DEFAULT_CONTEXT_TIMEOUT = 60 * 60

_TRUE_VALUES = ("1", "t", "true", "y", "yes", "on")
_FALSE_VALUES = ("0", "f", "false", "n", "no", "off")


@dataclass(frozen=True)
class TransferConfig:
    """Tuning shared by every operation of one folder.

    Attributes:
        context_timeout: Seconds each folder operation may take in total.
        max_retries: Retries after the first attempt.
        base_retry_delay: First backoff delay in seconds.
        max_retry_delay: Backoff ceiling in seconds.
        max_chunk_size: Upload chunk size in bytes.
    """

    context_timeout: float = DEFAULT_CONTEXT_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    base_retry_delay: float = DEFAULT_BASE_RETRY_DELAY
    max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY
    max_chunk_size: int = 50 << 20

    def retry_policy(self) -> RetryPolicy:
        """Return the retry policy described by this config."""

        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_retry_delay,
            max_delay=self.max_retry_delay,
        )


@dataclass(frozen=True)
class TransferKeys:
    """Setting names a backend uses for the shared transfer tuning."""

    context_timeout: str
    max_retries: str
    base_retry_delay: str
    max_retry_delay: str
    max_chunk_size: Optional[str] = None


def parse_bool(settings: Mapping[str, str], key: str, default: bool) -> bool:
    """Parse a boolean setting.

    Args:
        settings: Settings map.
        key: Setting name.
        default: Value when the setting is absent.

    Returns:
        bool: Parsed value.

    Raises:
        ConfigurationError: When the value is not a recognised boolean.
    """

    raw = settings.get(key)
    if raw is None:
        return default
    value = str(raw).strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"failed to parse {key}: {raw!r} is not a boolean", setting=key)


def parse_int(settings: Mapping[str, str], key: str, default: int, *, minimum: int = 0) -> int:
    """Parse an integer setting that must be at least `minimum`."""

    raw = settings.get(key)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"failed to parse {key}: {raw!r} is not an integer", setting=key) from exc
    if value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}", setting=key)
    return value


def parse_float(settings: Mapping[str, str], key: str, default: float, *, minimum: float = 0.0) -> float:
    """Parse a numeric setting that must be at least `minimum`."""

    raw = settings.get(key)
    if raw is None:
        return default
    try:
        value = float(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"failed to parse {key}: {raw!r} is not a number", setting=key) from exc
    if value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}", setting=key)
    return value


def parse_transfer_config(
    settings: Mapping[str, str],
    keys: TransferKeys,
    *,
    default_chunk_size: int,
    min_chunk_size: int = 1,
) -> TransferConfig:
    """Build a TransferConfig from a settings map.

    Retry delays are given in milliseconds (base) and seconds (ceiling) to
    match how operators usually think about them.

    Args:
        settings: Settings map.
        keys: Setting names for this backend.
        default_chunk_size: Chunk size when the backend has no setting or it is unset.
        min_chunk_size: Smallest chunk size the backend accepts.

    Returns:
        TransferConfig: Parsed tuning.

    Raises:
        ConfigurationError: When any value fails to parse.
    """

    chunk_size = default_chunk_size
    if keys.max_chunk_size:
        chunk_size = parse_int(settings, keys.max_chunk_size, default_chunk_size, minimum=min_chunk_size)

    return TransferConfig(
        context_timeout=parse_float(settings, keys.context_timeout, DEFAULT_CONTEXT_TIMEOUT, minimum=0.001),
        max_retries=parse_int(settings, keys.max_retries, DEFAULT_MAX_RETRIES),
        base_retry_delay=parse_float(settings, keys.base_retry_delay, DEFAULT_BASE_RETRY_DELAY * 1000) / 1000,
        max_retry_delay=parse_float(settings, keys.max_retry_delay, DEFAULT_MAX_RETRY_DELAY),
        max_chunk_size=chunk_size,
    )
