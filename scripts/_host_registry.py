"""Read-merge-write of the host application's ``installed_plugins.json``.

The file belongs to the host. Only the ``<plugin>@<marketplace>`` key written
here is replaced; every other key is carried through untouched.
"""

from __future__ import annotations

import datetime
import json
import os
import tempfile
import typing as t
from pathlib import Path

import pydantic
from _console import success, warn  # pyright: ignore[reportImplicitRelativeImport]
from _errors import HostRegistryError  # pyright: ignore[reportImplicitRelativeImport]
from _private_path import PrivatePath  # pyright: ignore[reportImplicitRelativeImport]

HOST_REGISTRY_PATH = Path.home() / ".claude" / "plugins" / "installed_plugins.json"


class HostRegistryRecord(pydantic.BaseModel):
    """One entry of the host ledger, serialized with the host's camelCase keys.

    Examples
    --------
    >>> record = HostRegistryRecord(
    ...     install_path="/cache/demo/1.2.0",
    ...     version="1.2.0",
    ...     installed_at="2026-01-01T00:00:00.000Z",
    ...     last_updated="2026-01-02T00:00:00.000Z",
    ... )
    >>> sorted(record.model_dump(by_alias=True))
    ['installPath', 'installedAt', 'isLocal', 'lastUpdated', 'scope', 'version']
    """

    model_config = pydantic.ConfigDict(populate_by_name=True)

    scope: str = "user"
    install_path: str = pydantic.Field(alias="installPath")
    version: str
    installed_at: str = pydantic.Field(alias="installedAt")
    last_updated: str = pydantic.Field(alias="lastUpdated")
    is_local: bool = pydantic.Field(default=True, alias="isLocal")


def registry_key(plugin_name: str, marketplace: str) -> str:
    """Return the host ledger key for a plugin.

    >>> registry_key("demo", "f5-distributed-cloud")
    'demo@f5-distributed-cloud'
    """
    return f"{plugin_name}@{marketplace}"


def format_timestamp(moment: datetime.datetime) -> str:
    """Format *moment* as UTC ISO-8601 with milliseconds and a ``Z`` suffix.

    >>> format_timestamp(datetime.datetime(2026, 3, 1, 12, 30, tzinfo=datetime.UTC))
    '2026-03-01T12:30:00.000Z'
    """
    utc = moment.astimezone(datetime.UTC)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def _previous_installed_at(entries: object) -> str | None:
    if not isinstance(entries, list) or not entries:
        return None
    first = t.cast("list[object]", entries)[0]
    if not isinstance(first, dict):
        return None
    value = t.cast("dict[str, object]", first).get("installedAt")
    return value if isinstance(value, str) and value else None


def _write_atomic(path: Path, text: str) -> None:
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".json.tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp_path, path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def update_host_registry(
    path: Path,
    marketplace: str,
    plugin_name: str,
    version: str,
    install_path: Path,
    *,
    now: datetime.datetime | None = None,
) -> HostRegistryRecord | None:
    """Record *plugin_name* at *version* in the host ledger at *path*.

    A missing ledger is not an error: a warning is printed and ``None`` is
    returned.

    Parameters
    ----------
    path : Path
        The host's ``installed_plugins.json``.
    marketplace : str
        Marketplace name, used to build the ledger key.
    plugin_name : str
        Plugin name.
    version : str
        Installed version.
    install_path : Path
        Directory the host should load the plugin from.
    now : datetime or None
        Timestamp for ``lastUpdated`` (and ``installedAt`` on first write).

    Returns
    -------
    HostRegistryRecord or None
        The record written, or None if the ledger does not exist.

    Raises
    ------
    HostRegistryError
        If the ledger is not a JSON object or cannot be written.
    """
    if not path.exists():
        warn(f"Host plugin registry not found at {PrivatePath(path)}")
        return None

    try:
        data = t.cast("object", json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError) as exc:
        msg = f"Cannot read host plugin registry {PrivatePath(path)}: {exc}"
        raise HostRegistryError(msg) from exc
    if not isinstance(data, dict):
        msg = f"Host plugin registry {PrivatePath(path)} is not a JSON object"
        raise HostRegistryError(msg)

    document = t.cast("dict[str, t.Any]", data)
    plugins = document.setdefault("plugins", {})
    if not isinstance(plugins, dict):
        msg = f"Host plugin registry {PrivatePath(path)}: 'plugins' is not an object"
        raise HostRegistryError(msg)

    key = registry_key(plugin_name, marketplace)
    stamp = format_timestamp(now or datetime.datetime.now(datetime.UTC))
    record = HostRegistryRecord(
        install_path=str(install_path),
        version=version,
        installed_at=_previous_installed_at(plugins.get(key)) or stamp,
        last_updated=stamp,
    )
    t.cast("dict[str, t.Any]", plugins)[key] = [record.model_dump(by_alias=True)]

    try:
        _write_atomic(path, json.dumps(document, indent=2) + "\n")
    except OSError as exc:
        msg = f"Cannot write host plugin registry {PrivatePath(path)}: {exc}"
        raise HostRegistryError(msg) from exc

    success(f"Updated host plugin registry for {plugin_name}")
    return record
