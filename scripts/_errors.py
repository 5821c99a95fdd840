"""Errors raised by the plugin manager.

Every error aborts the current command. The CLI prints the message and exits
with status 1.
"""

from __future__ import annotations


class PluginManagerError(Exception):
    """Base class for plugin manager failures."""


class MissingDependencyError(PluginManagerError):
    """A required runtime capability (e.g. gzip support) is unavailable."""


class RegistryError(PluginManagerError):
    """The registry file is missing or does not match the registry schema."""


class NotFoundError(PluginManagerError):
    """Unknown plugin name or version."""


class DownloadError(PluginManagerError):
    """The tarball could not be fetched."""


class ExtractError(PluginManagerError):
    """The tarball is corrupt or does not hold exactly one top-level directory."""


class FilesystemError(PluginManagerError):
    """Moving, writing or copying plugin files failed."""


class HostRegistryError(PluginManagerError):
    """The host application's plugin ledger could not be read or written."""
