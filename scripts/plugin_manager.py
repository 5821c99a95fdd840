#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "httpx>=0.27",
#     "pydantic>=2.0",
#     "rich>=13.0",
#     "typer>=0.15",
# ]
# ///
"""Plugin manager for the F5 Distributed Cloud marketplace.

Installs plugins from the ``plugins.json`` registry by downloading and
extracting their tarballs into ``plugins/``, mirrors each install into the
Claude Code plugin cache, and can record it in Claude Code's
``installed_plugins.json``.

Layout written per plugin::

    <plugins-dir>/<name>/                      extracted contents + .version
    <cache-dir>/<marketplace>/<name>/<version>/ full copy of the above

Examples
--------
Install the latest version of a plugin:

    uv run scripts/plugin_manager.py install demo

Install a pinned version and register it with Claude Code:

    uv run scripts/plugin_manager.py install demo 1.1.0 --register

Bring every plugin in the registry up to date, reporting failures at the end:

    uv run scripts/plugin_manager.py sync --keep-going
"""

from __future__ import annotations

import contextlib
import dataclasses
import importlib.util
import shutil
import signal
import tarfile
import tempfile
import typing as t
from pathlib import Path, PurePosixPath

import httpx
import pydantic
import rich.markup
import rich.table
import typer
from _console import console, error, info, success  # pyright: ignore[reportImplicitRelativeImport]
from _errors import (  # pyright: ignore[reportImplicitRelativeImport]
    DownloadError,
    ExtractError,
    FilesystemError,
    MissingDependencyError,
    PluginManagerError,
)
from _host_registry import (  # pyright: ignore[reportImplicitRelativeImport]
    HOST_REGISTRY_PATH,
    update_host_registry,
)
from _private_path import PrivatePath  # pyright: ignore[reportImplicitRelativeImport]
from marketplace import (  # pyright: ignore[reportImplicitRelativeImport]
    MARKETPLACE_NAME,
    REGISTRY_PATH,
    REPO_ROOT,
    Registry,
    get_plugin,
    load_registry,
    resolve_version,
)

PLUGINS_DIR = REPO_ROOT / "plugins"
CACHE_DIR = Path.home() / ".claude" / "plugins" / "cache"
VERSION_FILE = ".version"
UNKNOWN_VERSION = "unknown"
DEFAULT_TIMEOUT = 60.0

app = typer.Typer(
    help="Plugin manager for the f5-distributed-cloud marketplace.",
    invoke_without_command=True,
)


class ManagerConfig(pydantic.BaseModel):
    """Every location and switch an operation needs.

    Examples
    --------
    >>> from pathlib import Path
    >>> config = ManagerConfig(
    ...     registry_path=Path("/srv/plugins.json"),
    ...     plugins_dir=Path("/srv/plugins"),
    ...     cache_root=Path("/cache"),
    ... )
    >>> config.cache_dir_for("demo", "1.2.0").as_posix()
    '/cache/f5-distributed-cloud/demo/1.2.0'
    >>> config.plugin_dir_for("demo").as_posix()
    '/srv/plugins/demo'
    """

    registry_path: Path = REGISTRY_PATH
    plugins_dir: Path = PLUGINS_DIR
    cache_root: Path = CACHE_DIR
    marketplace_name: str = MARKETPLACE_NAME
    host_registry_path: Path = HOST_REGISTRY_PATH
    register_host: bool = False
    download_timeout: float = pydantic.Field(default=DEFAULT_TIMEOUT, gt=0)

    def plugin_dir_for(self, name: str) -> Path:
        return self.plugins_dir / name

    def cache_dir_for(self, name: str, version: str) -> Path:
        return self.cache_root / self.marketplace_name / name / version


@dataclasses.dataclass(frozen=True)
class InstalledPlugin:
    """A plugin present in the local plugin directory."""

    name: str
    version: str
    install_path: Path
    cache_path: Path


@dataclasses.dataclass
class SyncReport:
    """Outcome of a sync run.

    Attributes
    ----------
    updated : list[InstalledPlugin]
        Plugins that were (re)installed.
    current : list[str]
        Plugins already at their latest version.
    failed : dict[str, str]
        Plugin name to error message, only filled with ``keep_going``.
    """

    updated: list[InstalledPlugin] = dataclasses.field(default_factory=list)
    current: list[str] = dataclasses.field(default_factory=list)
    failed: dict[str, str] = dataclasses.field(default_factory=dict)


class OutdatedRow(t.NamedTuple):
    name: str
    installed: str
    latest: str
    status: t.Literal["ok", "outdated", "missing"]


def check_deps() -> None:
    """Fail early if gzip support is missing from this interpreter."""
    if importlib.util.find_spec("zlib") is None:
        msg = "Required module not found: zlib (gzip support)"
        raise MissingDependencyError(msg)


def _make_client(config: ManagerConfig) -> httpx.Client:
    return httpx.Client(follow_redirects=True, timeout=config.download_timeout)


@contextlib.contextmanager
def _http_client(config: ManagerConfig, client: httpx.Client | None) -> t.Iterator[httpx.Client]:
    """Yield *client*, or a fresh one that is closed afterwards."""
    if client is not None:
        yield client
        return
    with _make_client(config) as fresh:
        yield fresh


# ---------------------------------------------------------------------------
# Version marker
# ---------------------------------------------------------------------------


def read_installed_version(config: ManagerConfig, name: str) -> str:
    """Return the installed version of *name*, or ``"unknown"``.

    A missing or empty marker reads as ``"unknown"``, which never matches a
    registry version, so such installs are always replaced on update.
    """
    marker = config.plugin_dir_for(name) / VERSION_FILE
    if not marker.is_file():
        return UNKNOWN_VERSION
    version = marker.read_text(encoding="utf-8").strip()
    return version or UNKNOWN_VERSION


def write_version_marker(plugin_dir: Path, version: str) -> None:
    (plugin_dir / VERSION_FILE).write_text(f"{version}\n", encoding="utf-8")


# ---------------------------------------------------------------------------
# Install pipeline
# ---------------------------------------------------------------------------


def download_tarball(url: str, dest: Path, *, client: httpx.Client) -> None:
    """Stream *url* to *dest*. Single attempt, no retry.

    Raises
    ------
    DownloadError
        On transport errors and non-2xx responses.
    """
    try:
        with client.stream("GET", url) as response:
            response.raise_for_status()
            with dest.open("wb") as fh:
                for chunk in response.iter_bytes():
                    fh.write(chunk)
    except httpx.HTTPError as exc:
        msg = f"Failed to download {url}: {exc}"
        raise DownloadError(msg) from exc
    except OSError as exc:
        msg = f"Cannot write {PrivatePath(dest)}: {exc}"
        raise FilesystemError(msg) from exc


def _top_level_names(members: list[tarfile.TarInfo]) -> set[str]:
    names: set[str] = set()
    for member in members:
        # The "data" filter strips leading slashes before extracting.
        parts = [p for p in PurePosixPath(member.name.lstrip("/")).parts if p not in ("", ".")]
        if parts:
            names.add(parts[0])
    return names


def extract_plugin_root(archive: Path, dest: Path) -> Path:
    """Extract a gzip tarball into *dest* and return its single top-level directory.

    Parameters
    ----------
    archive : Path
        The downloaded ``.tar.gz`` file.
    dest : Path
        Empty directory to extract into.

    Returns
    -------
    Path
        The plugin root (``dest/<top-level directory>``).

    Raises
    ------
    ExtractError
        If the archive is unreadable, unsafe, or does not contain exactly one
        top-level directory.
    MissingDependencyError
        If gzip decompression is unavailable.
    """
    try:
        with tarfile.open(archive, "r:gz") as tf:
            members = tf.getmembers()
            top_level = _top_level_names(members)
            if len(top_level) != 1:
                found = ", ".join(sorted(top_level)) or "nothing"
                msg = f"Archive must contain exactly one top-level directory, found: {found}"
                raise ExtractError(msg)
            tf.extractall(dest, filter="data")
    except tarfile.CompressionError as exc:
        msg = f"Cannot decompress {archive.name}: {exc}"
        raise MissingDependencyError(msg) from exc
    except (tarfile.TarError, EOFError) as exc:
        msg = f"Cannot extract {archive.name}: {exc}"
        raise ExtractError(msg) from exc
    except OSError as exc:
        msg = f"Cannot extract {archive.name}: {exc}"
        raise FilesystemError(msg) from exc

    top = top_level.pop()
    root = dest / top
    if top == ".." or root.resolve().parent != dest.resolve():
        msg = f"Archive top-level entry '{top}' is outside the extraction directory"
        raise ExtractError(msg)
    if not root.is_dir():
        msg = f"Archive top-level entry '{root.name}' is not a directory"
        raise ExtractError(msg)
    return root


def _swap_into_place(staged: Path, target: Path, scratch: Path) -> None:
    """Rename *staged* to *target*, parking any existing install in *scratch*.

    Both renames stay on one filesystem. If the second one fails the previous
    install is put back.
    """
    parked: Path | None = None
    try:
        if target.exists():
            parked = scratch / "previous"
            target.rename(parked)
        staged.rename(target)
    except OSError as exc:
        if parked is not None and parked.exists() and not target.exists():
            parked.rename(target)
        msg = f"Cannot move plugin into {PrivatePath(target)}: {exc}"
        raise FilesystemError(msg) from exc


def mirror_to_cache(config: ManagerConfig, name: str, version: str) -> Path:
    """Replace the cached copy of *name*@*version* with the current install."""
    source = config.plugin_dir_for(name)
    cache_dir = config.cache_dir_for(name, version)
    try:
        if cache_dir.exists():
            shutil.rmtree(cache_dir)
        cache_dir.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, cache_dir, symlinks=True)
    except OSError as exc:
        msg = f"Cannot mirror {name} into {PrivatePath(cache_dir)}: {exc}"
        raise FilesystemError(msg) from exc
    return cache_dir


def install_plugin(
    config: ManagerConfig,
    name: str,
    version: str | None = None,
    *,
    client: httpx.Client | None = None,
    registry: Registry | None = None,
) -> InstalledPlugin:
    """Download, extract and install *name*, replacing any existing install.

    Parameters
    ----------
    config : ManagerConfig
        Locations and switches.
    name : str
        Plugin name.
    version : str or None
        Version to install; defaults to the registry's ``latest``.
    client : httpx.Client or None
        HTTP client to download with. One is created if omitted.
    registry : Registry or None
        Already loaded registry. Loaded from ``config.registry_path`` if omitted.

    Returns
    -------
    InstalledPlugin
        The new install.
    """
    registry = registry or load_registry(config.registry_path)
    resolved = resolve_version(registry, name, version)
    plugin_dir = config.plugin_dir_for(name)

    info(f"Installing {name}@{resolved.version}...")
    try:
        config.plugins_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        msg = f"Cannot create {PrivatePath(config.plugins_dir)}: {exc}"
        raise FilesystemError(msg) from exc

    # Scratch lives next to the install so the final rename is atomic.
    try:
        scratch_dir = tempfile.TemporaryDirectory(prefix=f".{name}-", dir=config.plugins_dir)
    except OSError as exc:
        msg = f"Cannot create scratch directory in {PrivatePath(config.plugins_dir)}: {exc}"
        raise FilesystemError(msg) from exc

    with scratch_dir as tmp:
        scratch = Path(tmp)
        archive = scratch / "plugin.tar.gz"
        extract_dir = scratch / "extracted"
        try:
            extract_dir.mkdir()
        except OSError as exc:
            msg = f"Cannot create {PrivatePath(extract_dir)}: {exc}"
            raise FilesystemError(msg) from exc

        info(f"Downloading from {resolved.tarball}")
        with _http_client(config, client) as http:
            download_tarball(resolved.tarball, archive, client=http)

        info("Extracting...")
        root = extract_plugin_root(archive, extract_dir)
        try:
            write_version_marker(root, resolved.version)
        except OSError as exc:
            msg = f"Cannot write version marker for {name}: {exc}"
            raise FilesystemError(msg) from exc
        _swap_into_place(root, plugin_dir, scratch)

    cache_dir = mirror_to_cache(config, name, resolved.version)
    success(f"Installed {name}@{resolved.version} to {PrivatePath(plugin_dir)}")
    success(f"Cached at {PrivatePath(cache_dir)}")

    if config.register_host:
        update_host_registry(
            config.host_registry_path,
            config.marketplace_name,
            name,
            resolved.version,
            cache_dir,
        )

    return InstalledPlugin(
        name=name,
        version=resolved.version,
        install_path=plugin_dir,
        cache_path=cache_dir,
    )


# ---------------------------------------------------------------------------
# Update / sync
# ---------------------------------------------------------------------------


def update_plugin(
    config: ManagerConfig,
    name: str,
    *,
    client: httpx.Client | None = None,
    registry: Registry | None = None,
) -> InstalledPlugin | None:
    """Install the latest version of *name* unless it is already installed.

    Returns
    -------
    InstalledPlugin or None
        The new install, or None if *name* was already at the latest version.
    """
    registry = registry or load_registry(config.registry_path)
    latest = get_plugin(registry, name).latest
    current = read_installed_version(config, name)

    if current == latest:
        info(f"{name} is already at latest version ({latest})")
        return None

    info(f"Updating {name} from {current} to {latest}")
    return install_plugin(config, name, latest, client=client, registry=registry)


def sync_plugins(
    config: ManagerConfig,
    *,
    keep_going: bool = False,
    client: httpx.Client | None = None,
) -> SyncReport:
    """Update every plugin in the registry, one after another.

    Parameters
    ----------
    config : ManagerConfig
        Locations and switches.
    keep_going : bool
        If False the first failure propagates and the sync stops. If True
        failures are collected in `SyncReport.failed` and the sync continues.
    client : httpx.Client or None
        HTTP client shared by all downloads.
    """
    registry = load_registry(config.registry_path)
    report = SyncReport()
    info("Syncing all plugins to latest versions...")

    with _http_client(config, client) as http:
        for name in sorted(registry.plugins):
            try:
                installed = update_plugin(config, name, client=http, registry=registry)
            except PluginManagerError as exc:
                if not keep_going:
                    raise
                error(rich.markup.escape(f"{name}: {exc}"))
                report.failed[name] = str(exc)
                continue
            if installed is None:
                report.current.append(name)
            else:
                report.updated.append(installed)

    return report


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


def list_available(registry: Registry) -> list[tuple[str, str, str]]:
    """Return ``(name, latest, description)`` in registry order."""
    return [(name, entry.latest, entry.description) for name, entry in registry.plugins.items()]


def list_installed(config: ManagerConfig) -> list[InstalledPlugin]:
    """Return every plugin directory under ``plugins_dir`` with its marker version.

    Hidden directories (in-flight scratch space) are skipped.
    """
    if not config.plugins_dir.is_dir():
        return []
    installed: list[InstalledPlugin] = []
    for plugin_dir in sorted(config.plugins_dir.iterdir()):
        if not plugin_dir.is_dir() or plugin_dir.name.startswith("."):
            continue
        version = read_installed_version(config, plugin_dir.name)
        installed.append(
            InstalledPlugin(
                name=plugin_dir.name,
                version=version,
                install_path=plugin_dir,
                cache_path=config.cache_dir_for(plugin_dir.name, version),
            )
        )
    return installed


def check_outdated(config: ManagerConfig, registry: Registry | None = None) -> list[OutdatedRow]:
    """Compare installed version markers with the registry's latest versions."""
    registry = registry or load_registry(config.registry_path)
    rows: list[OutdatedRow] = []
    for name, entry in registry.plugins.items():
        if not config.plugin_dir_for(name).is_dir():
            rows.append(OutdatedRow(name, "-", entry.latest, "missing"))
            continue
        current = read_installed_version(config, name)
        status: t.Literal["ok", "outdated"] = "ok" if current == entry.latest else "outdated"
        rows.append(OutdatedRow(name, current, entry.latest, status))
    return rows


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _raise_on_sigterm(signum: int, _frame: object) -> None:
    # Unwinds through the scratch directory context managers.
    raise SystemExit(128 + signum)


@contextlib.contextmanager
def _exit_on_error() -> t.Iterator[None]:
    """Print a `PluginManagerError` and exit with status 1."""
    try:
        yield
    except PluginManagerError as exc:
        error(rich.markup.escape(str(exc)))
        raise SystemExit(1) from exc


def _config(ctx: typer.Context, *, register: bool = False) -> ManagerConfig:
    config = t.cast("ManagerConfig", ctx.obj)
    if register:
        return config.model_copy(update={"register_host": True})
    return config


@app.callback()
def _main(  # pyright: ignore[reportUnusedFunction]
    ctx: typer.Context,
    registry: t.Annotated[
        Path, typer.Option("--registry", help="Registry JSON file.")
    ] = REGISTRY_PATH,
    plugins_dir: t.Annotated[
        Path, typer.Option("--plugins-dir", help="Directory plugins are installed into.")
    ] = PLUGINS_DIR,
    cache_dir: t.Annotated[
        Path,
        typer.Option("--cache-dir", envvar="CLAUDE_PLUGINS_CACHE", help="Claude plugin cache."),
    ] = CACHE_DIR,
    marketplace: t.Annotated[
        str,
        typer.Option("--marketplace", help="Marketplace name used for cache and registry keys."),
    ] = MARKETPLACE_NAME,
    host_registry: t.Annotated[
        Path, typer.Option("--host-registry", help="Claude Code installed_plugins.json.")
    ] = HOST_REGISTRY_PATH,
    timeout: t.Annotated[
        float, typer.Option("--timeout", help="Download timeout in seconds.")
    ] = DEFAULT_TIMEOUT,
) -> None:
    """Plugin manager for the f5-distributed-cloud marketplace."""
    with _exit_on_error():
        check_deps()
    ctx.obj = ManagerConfig(
        registry_path=registry,
        plugins_dir=plugins_dir,
        cache_root=cache_dir,
        marketplace_name=marketplace,
        host_registry_path=host_registry,
        download_timeout=timeout,
    )
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


RegisterOption = t.Annotated[
    bool, typer.Option("--register", help="Also record the install in Claude Code's registry.")
]


@app.command()
def install(
    ctx: typer.Context,
    name: t.Annotated[str, typer.Argument(help="Plugin name.")],
    version: t.Annotated[
        str | None, typer.Argument(help="Version to install (default: latest).")
    ] = None,
    register: RegisterOption = False,
) -> None:
    """Install a plugin."""
    with _exit_on_error():
        install_plugin(_config(ctx, register=register), name, version)


@app.command()
def update(
    ctx: typer.Context,
    name: t.Annotated[str, typer.Argument(help="Plugin name.")],
    register: RegisterOption = False,
) -> None:
    """Update a plugin to the latest version."""
    with _exit_on_error():
        update_plugin(_config(ctx, register=register), name)


@app.command(name="list")
def list_(ctx: typer.Context) -> None:
    """List available and installed plugins."""
    config = _config(ctx)
    with _exit_on_error():
        registry = load_registry(config.registry_path)

    info("Available plugins in registry:")
    available = rich.table.Table(show_header=True, box=None, pad_edge=False)
    available.add_column("Plugin", style="green")
    available.add_column("Latest", style="yellow")
    available.add_column("Description")
    for name, latest, description in list_available(registry):
        available.add_row(
            rich.markup.escape(name),
            f"v{rich.markup.escape(latest)}",
            rich.markup.escape(description),
        )
    console.print(available)
    console.print()

    if not config.plugins_dir.is_dir():
        return
    info("Installed plugins:")
    installed = rich.table.Table(show_header=True, box=None, pad_edge=False)
    installed.add_column("Plugin", style="green")
    installed.add_column("Version", style="yellow")
    for plugin in list_installed(config):
        installed.add_row(rich.markup.escape(plugin.name), f"v{rich.markup.escape(plugin.version)}")
    console.print(installed)


@app.command()
def sync(
    ctx: typer.Context,
    *,
    keep_going: t.Annotated[
        bool,
        typer.Option("--keep-going", help="Continue past failures and report them at the end."),
    ] = False,
    register: RegisterOption = False,
) -> None:
    """Sync all plugins to their latest versions."""
    with _exit_on_error():
        report = sync_plugins(_config(ctx, register=register), keep_going=keep_going)

    if not report.failed:
        success("All plugins synced")
        return

    table = rich.table.Table(title="Sync Report")
    table.add_column("Status", style="bold")
    table.add_column("Plugin")
    table.add_column("Detail")
    for plugin in report.updated:
        table.add_row("[green]updated[/green]", plugin.name, f"v{plugin.version}")
    for name in report.current:
        table.add_row("[blue]current[/blue]", name, "")
    for name, message in report.failed.items():
        table.add_row("[red]failed[/red]", name, rich.markup.escape(message))
    console.print(table)
    console.print(f"\n[red bold]{len(report.failed)} plugin(s) failed to sync.[/red bold]")
    raise SystemExit(1)


@app.command()
def outdated(ctx: typer.Context) -> None:
    """Compare installed versions with the registry."""
    with _exit_on_error():
        rows = check_outdated(_config(ctx))

    table = rich.table.Table(title="Version Comparison")
    table.add_column("Plugin")
    table.add_column("Installed")
    table.add_column("Latest")
    table.add_column("Status")
    styles = {
        "ok": "[green]OK[/green]",
        "outdated": "[yellow]OUTDATED[/yellow]",
        "missing": "[dim]not installed[/dim]",
    }
    for row in rows:
        table.add_row(
            rich.markup.escape(row.name),
            rich.markup.escape(row.installed),
            rich.markup.escape(row.latest),
            styles[row.status],
        )
    console.print(table)

    if any(row.status == "outdated" for row in rows):
        console.print("\n[yellow]Outdated plugins found. Run 'sync' to update.[/yellow]")
    else:
        console.print("\n[green]All installed plugins are current.[/green]")


@app.command(name="help")
def help_(ctx: typer.Context) -> None:
    """Show this message."""
    parent = ctx.parent or ctx
    console.print(parent.get_help())


def main() -> None:
    """Run the CLI with SIGTERM unwinding through scratch cleanup."""
    signal.signal(signal.SIGTERM, _raise_on_sigterm)
    app()


if __name__ == "__main__":
    main()
