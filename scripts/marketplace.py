#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.12"
# dependencies = [
#     "pydantic>=2.0",
#     "rich>=13.0",
#     "typer>=0.15",
# ]
# ///
"""Marketplace registry for the F5 Distributed Cloud plugins.

Loads and validates ``plugins.json``, the registry of installable plugins, and
resolves a plugin name (and optional version) to a tarball URL.

Examples
--------
Lint the registry:

    uv run scripts/marketplace.py lint

Lint another registry file:

    uv run scripts/marketplace.py lint --registry path/to/plugins.json
"""

from __future__ import annotations

import json
import re
import typing as t
from pathlib import Path
from urllib.parse import urlparse

import pydantic
import rich.markup
import typer
from _console import console  # pyright: ignore[reportImplicitRelativeImport]
from _errors import NotFoundError, RegistryError  # pyright: ignore[reportImplicitRelativeImport]
from _private_path import PrivatePath  # pyright: ignore[reportImplicitRelativeImport]

RESERVED_MARKETPLACE_NAMES = frozenset(
    {
        "claude-code-marketplace",
        "claude-code-plugins",
        "claude-plugins-official",
        "anthropic-marketplace",
        "anthropic-plugins",
        "agent-skills",
        "life-sciences",
    }
)
"""Names explicitly reserved by the Claude Code plugin system."""

_PLUGIN_RELATED_WORDS = frozenset({"plugin", "plugins", "marketplace", "tools", "extensions"})

_PLUGIN_NAME_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")

TARBALL_SUFFIXES = (".tar.gz", ".tgz")

REPO_ROOT = Path(__file__).resolve().parent.parent
REGISTRY_PATH = REPO_ROOT / "plugins.json"
MARKETPLACE_NAME = "f5-distributed-cloud"

app = typer.Typer(
    help="Marketplace registry tools for f5-distributed-cloud.",
    invoke_without_command=True,
)


@app.callback()
def _main(ctx: typer.Context) -> None:  # pyright: ignore[reportUnusedFunction]
    """Marketplace registry tools for f5-distributed-cloud."""
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


class VersionEntry(pydantic.BaseModel):
    """A single published version of a plugin.

    Extra metadata next to ``tarball`` is kept as-is.

    Examples
    --------
    >>> v = VersionEntry(tarball="https://example/demo-1.2.0.tar.gz", sha="abc")
    >>> v.tarball
    'https://example/demo-1.2.0.tar.gz'
    >>> v.model_extra
    {'sha': 'abc'}
    """

    model_config = pydantic.ConfigDict(extra="allow")

    tarball: str


class PluginEntry(pydantic.BaseModel):
    """A plugin entry in the registry.

    Examples
    --------
    >>> entry = PluginEntry(
    ...     latest="1.2.0",
    ...     description="x",
    ...     versions={"1.2.0": VersionEntry(tarball="https://example/demo-1.2.0.tar.gz")},
    ... )
    >>> entry.installable
    True
    >>> PluginEntry(latest="2.0.0", versions={}).installable
    False
    """

    latest: str
    description: str = ""
    versions: dict[str, VersionEntry] = pydantic.Field(default_factory=dict)

    @property
    def installable(self) -> bool:
        return self.latest in self.versions


class Registry(pydantic.BaseModel):
    """Top-level registry document (``plugins.json``).

    ``plugins`` keeps document order, which is the order ``list`` reports.
    """

    model_config = pydantic.ConfigDict(extra="allow")

    plugins: dict[str, PluginEntry] = pydantic.Field(default_factory=dict)


class ResolvedVersion(t.NamedTuple):
    """A concrete plugin version and the tarball it is published as."""

    name: str
    version: str
    tarball: str


def load_registry(path: Path) -> Registry:
    """Load and validate a registry file.

    Parameters
    ----------
    path : Path
        Path to ``plugins.json``.

    Returns
    -------
    Registry
        The parsed and validated registry.

    Raises
    ------
    RegistryError
        If the file is missing, not JSON, or does not match the schema.
    """
    if not path.exists():
        msg = f"Registry not found: {PrivatePath(path)}"
        raise RegistryError(msg)
    try:
        raw = t.cast("object", json.loads(path.read_text(encoding="utf-8")))
        return Registry.model_validate(raw)
    except json.JSONDecodeError as exc:
        msg = f"Registry {PrivatePath(path)} is not valid JSON: {exc}"
        raise RegistryError(msg) from exc
    except pydantic.ValidationError as exc:
        msg = f"Registry {PrivatePath(path)} is invalid: {exc}"
        raise RegistryError(msg) from exc


def get_plugin(registry: Registry, name: str) -> PluginEntry:
    """Return the registry entry for *name* or raise `NotFoundError`."""
    entry = registry.plugins.get(name)
    if entry is None:
        msg = f"Plugin not found: {name}"
        raise NotFoundError(msg)
    return entry


def resolve_version(registry: Registry, name: str, version: str | None = None) -> ResolvedVersion:
    """Resolve *name* and an optional *version* to a tarball URL.

    Parameters
    ----------
    registry : Registry
        Loaded registry.
    name : str
        Plugin name.
    version : str or None
        Explicit version. Defaults to the plugin's ``latest``.

    Returns
    -------
    ResolvedVersion
        The concrete version and its tarball URL.

    Raises
    ------
    NotFoundError
        If the plugin or the version is not in the registry.

    Examples
    --------
    >>> registry = Registry.model_validate(
    ...     {
    ...         "plugins": {
    ...             "demo": {
    ...                 "latest": "1.2.0",
    ...                 "description": "x",
    ...                 "versions": {
    ...                     "1.1.0": {"tarball": "https://example/demo-1.1.0.tar.gz"},
    ...                     "1.2.0": {"tarball": "https://example/demo-1.2.0.tar.gz"},
    ...                 },
    ...             }
    ...         }
    ...     }
    ... )
    >>> resolve_version(registry, "demo").version
    '1.2.0'
    >>> resolve_version(registry, "demo", "1.1.0").tarball
    'https://example/demo-1.1.0.tar.gz'
    >>> resolve_version(registry, "ghost")
    Traceback (most recent call last):
        ...
    _errors.NotFoundError: Plugin not found: ghost
    >>> resolve_version(registry, "demo", "9.9.9")
    Traceback (most recent call last):
        ...
    _errors.NotFoundError: Version not found: demo@9.9.9
    >>> resolve_version(registry, "demo", "")
    Traceback (most recent call last):
        ...
    _errors.NotFoundError: Version not found: demo@
    """
    entry = get_plugin(registry, name)
    resolved = entry.latest if version is None else version
    version_entry = entry.versions.get(resolved)
    if version_entry is None:
        msg = f"Version not found: {name}@{resolved}"
        raise NotFoundError(msg)
    return ResolvedVersion(name=name, version=resolved, tarball=version_entry.tarball)


def validate_marketplace_name(name: str) -> list[str]:
    """Check a marketplace name against reserved name restrictions.

    Examples
    --------
    >>> validate_marketplace_name("claude-plugins-official")
    ["Marketplace name 'claude-plugins-official' is reserved"]
    >>> errs = validate_marketplace_name("anthropic-tools-v2")
    >>> len(errs) == 1 and "anthropic" in errs[0]
    True
    >>> validate_marketplace_name("f5-distributed-cloud")
    []
    """
    if name in RESERVED_MARKETPLACE_NAMES:
        return [f"Marketplace name '{name}' is reserved"]

    for word in ("anthropic", "official"):
        if word in name:
            return [
                f"Marketplace name '{name}' impersonates an official marketplace"
                f" (contains '{word}')"
            ]

    if "claude" in name:
        for word in sorted(_PLUGIN_RELATED_WORDS):
            if word in name:
                return [
                    f"Marketplace name '{name}' impersonates an official"
                    f" marketplace (contains 'claude' with '{word}')"
                ]

    return []


def validate_tarball_url(url: str) -> str | None:
    """Return an error message if *url* is not an http(s) gzip tarball URL.

    Examples
    --------
    >>> validate_tarball_url("https://example/demo-1.2.0.tar.gz") is None
    True
    >>> validate_tarball_url("ftp://example/demo.tar.gz")
    "unsupported URL scheme 'ftp'"
    >>> validate_tarball_url("https://example/demo.zip")
    'not a .tar.gz/.tgz archive'
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return f"unsupported URL scheme '{parsed.scheme}'"
    if not parsed.path.endswith(TARBALL_SUFFIXES):
        return "not a .tar.gz/.tgz archive"
    return None


def lint_registry(registry: Registry) -> tuple[list[str], list[str]]:
    """Check registry entries for problems that would break installs.

    Returns
    -------
    tuple[list[str], list[str]]
        (errors, warnings).

    Examples
    --------
    >>> registry = Registry.model_validate(
    ...     {"plugins": {"Demo": {"latest": "2.0.0", "versions": {}}}}
    ... )
    >>> errors, warnings = lint_registry(registry)
    >>> errors
    ["[Demo] latest version '2.0.0' has no entry in versions"]
    >>> warnings
    ['[Demo] name is not lowercase kebab-case', '[Demo] missing description']
    """
    errors: list[str] = []
    warnings: list[str] = []

    for name, entry in registry.plugins.items():
        if not _PLUGIN_NAME_RE.match(name):
            warnings.append(f"[{name}] name is not lowercase kebab-case")
        if not entry.description:
            warnings.append(f"[{name}] missing description")
        if not entry.installable:
            errors.append(f"[{name}] latest version '{entry.latest}' has no entry in versions")
        for version, version_entry in entry.versions.items():
            problem = validate_tarball_url(version_entry.tarball)
            if problem is not None:
                errors.append(f"[{name}@{version}] tarball {problem}")

    return errors, warnings


@app.command()
def lint(
    registry_path: t.Annotated[
        Path, typer.Option("--registry", help="Path to the registry JSON file.")
    ] = REGISTRY_PATH,
    marketplace: t.Annotated[
        str, typer.Option("--marketplace", help="Marketplace name to validate.")
    ] = MARKETPLACE_NAME,
) -> None:
    """Validate the registry file and every plugin entry in it."""
    console.print("[bold]Validating registry...[/bold]")
    try:
        registry = load_registry(registry_path)
    except RegistryError as exc:
        console.print(f"[red]Error:[/red] {rich.markup.escape(str(exc))}")
        raise SystemExit(1) from exc
    console.print(f"  Registry: [green]OK[/green] ({len(registry.plugins)} plugins)")

    errors = validate_marketplace_name(marketplace)
    entry_errors, warnings = lint_registry(registry)
    errors.extend(entry_errors)

    console.print()
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {rich.markup.escape(warning)}")

    if errors:
        for err in errors:
            console.print(f"[red]Error:[/red] {rich.markup.escape(err)}")
        console.print(f"\n[red bold]{len(errors)} error(s) found.[/red bold]")
        raise SystemExit(1)

    console.print("[green bold]0 errors found.[/green bold]")


if __name__ == "__main__":
    app()
