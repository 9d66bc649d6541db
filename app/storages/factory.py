"""Folder factory.

This module centralizes the logic that turns a storage prefix such as
"s3://bucket/path" plus a settings map into a concrete folder instance.

Adding a new backend should generally only require:
- Implementing a new folder under `storages.backends.*`
- Registering its schemes in `_BACKENDS`
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from storages.backends import gcs, s3, sftp
from storages.errors import ConfigurationError
from storages.folder import Folder

_BACKENDS: Dict[str, Tuple[Callable[..., Folder], List[str]]] = {
    "s3": (s3.configure_folder, s3.SETTINGS),
    "gs": (gcs.configure_folder, gcs.SETTINGS),
    "ssh": (sftp.configure_folder, sftp.SETTINGS),
    "sftp": (sftp.configure_folder, sftp.SETTINGS),
}


def _scheme(prefix: str) -> str:
    scheme = urlparse(prefix).scheme.lower()
    if scheme not in _BACKENDS:
        raise ConfigurationError(f"Unsupported storage prefix: {prefix!r}")
    return scheme


def settings_for(prefix: str) -> List[str]:
    """Return the setting names the prefix's backend understands.

    Raises:
        ConfigurationError: When the prefix scheme is unsupported.
    """

    return list(_BACKENDS[_scheme(prefix)][1])


def configure_folder(
    prefix: str,
    settings: Optional[Mapping[str, str]] = None,
    *,
    client_factory: Optional[Callable[[Any], Any]] = None,
) -> Folder:
    """Instantiate a folder for a storage prefix.

    Args:
        prefix: Storage prefix ("s3://", "gs://", "ssh://" or "sftp://").
        settings: Backend settings.
        client_factory: Optional replacement for the backend's client bootstrap.

    Returns:
        Folder: Configured folder.

    Raises:
        ConfigurationError: When the prefix or settings are invalid.
        StorageError: When the client cannot be created.
    """

    configure, _ = _BACKENDS[_scheme(prefix)]
    kwargs: Dict[str, Any] = {}
    if client_factory is not None:
        kwargs["client_factory"] = client_factory
    return configure(prefix, settings or {}, **kwargs)
