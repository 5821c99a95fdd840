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
"""E2E plugin lifecycle tests for the plugin manager.

Runs ``plugin_manager.py`` as a subprocess against a throwaway registry whose
tarballs are served from a local HTTP server:
install -> update (no-op) -> update (stale) -> list -> sync -> register -> errors.

Sandboxing: every path (registry, plugins, cache, host registry) lives in a
temp directory and ``HOME`` points there too, so nothing touches the real
user config.

Examples
--------
Run the lifecycle:

    uv run scripts/e2e.py

Keep the sandbox for inspection:

    uv run scripts/e2e.py --keep
"""

from __future__ import annotations

import functools
import http.server
import io
import json
import os
import shutil
import subprocess
import sys
import tarfile
import tempfile
import threading
import typing as t
from pathlib import Path

import rich.console
import typer
from _private_path import PrivatePath  # pyright: ignore[reportImplicitRelativeImport]

SCRIPTS_DIR = Path(__file__).resolve().parent
MANAGER = SCRIPTS_DIR / "plugin_manager.py"
MARKETPLACE_NAME = "f5-distributed-cloud"
VERSIONS = ["1.1.0", "1.2.0"]

app = typer.Typer(help="E2E plugin lifecycle tests for the plugin manager.")
console = rich.console.Console()

TestCase = tuple[str, t.Callable[[], None]]


class TestFailureError(Exception):
    """Raised when a test assertion fails."""


class Sandbox(t.NamedTuple):
    root: Path
    registry: Path
    plugins: Path
    cache: Path
    host_registry: Path


def _build_tarball(top: str, version: str) -> bytes:
    buf = io.BytesIO()
    files = {
        f"{top}/README.md": f"# demo {version}\n",
        f"{top}/.claude-plugin/plugin.json": json.dumps({"name": "demo", "version": version}),
    }
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _serve(directory: Path) -> http.server.ThreadingHTTPServer:
    """Serve *directory* on an ephemeral localhost port in a daemon thread."""

    class QuietHandler(http.server.SimpleHTTPRequestHandler):
        def log_message(self, format: str, *args: t.Any) -> None:  # noqa: A002
            pass

    handler = functools.partial(QuietHandler, directory=str(directory))
    server = http.server.ThreadingHTTPServer(("127.0.0.1", 0), handler)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server


def _make_sandbox(root: Path, base_url: str) -> Sandbox:
    dist = root / "dist"
    versions: dict[str, dict[str, str]] = {}
    for version in VERSIONS:
        name = f"demo-{version}.tar.gz"
        _ = (dist / name).write_bytes(_build_tarball(f"demo-{version}", version))
        versions[version] = {"tarball": f"{base_url}/{name}"}

    registry = root / "plugins.json"
    data = {
        "plugins": {
            "demo": {"latest": VERSIONS[-1], "description": "Demo plugin", "versions": versions},
        }
    }
    _ = registry.write_text(json.dumps(data, indent=2), encoding="utf-8")

    host_registry = root / ".claude" / "plugins" / "installed_plugins.json"
    host_registry.parent.mkdir(parents=True)
    _ = host_registry.write_text(json.dumps({"version": 2, "plugins": {}}), encoding="utf-8")

    return Sandbox(
        root=root,
        registry=registry,
        plugins=root / "plugins",
        cache=root / ".claude" / "plugins" / "cache",
        host_registry=host_registry,
    )


def _run_manager(args: list[str], sandbox: Sandbox) -> subprocess.CompletedProcess[str]:
    """Run ``plugin_manager.py`` with every location pointed into *sandbox*."""
    env = {**os.environ, "HOME": str(sandbox.root), "NO_COLOR": "1", "COLUMNS": "200"}
    env.pop("CLAUDE_PLUGINS_CACHE", None)
    cmd = [
        sys.executable,
        str(MANAGER),
        "--registry",
        str(sandbox.registry),
        "--plugins-dir",
        str(sandbox.plugins),
        "--cache-dir",
        str(sandbox.cache),
        "--host-registry",
        str(sandbox.host_registry),
        *args,
    ]
    return subprocess.run(  # noqa: S603
        cmd,
        capture_output=True,
        text=True,
        env=env,
        timeout=120,
        check=False,
    )


def _assert(condition: bool, msg: str) -> None:
    """Assert *condition* is truthy, raising `TestFailureError` on failure."""
    if not condition:
        raise TestFailureError(msg)


def _marker(sandbox: Sandbox) -> str:
    path = sandbox.plugins / "demo" / ".version"
    return path.read_text(encoding="utf-8").strip() if path.exists() else "(missing)"


def _pass(label: str) -> None:
    console.print(f"  [green]✔[/green] {label}")


def _fail(label: str, detail: str) -> None:
    console.print(f"  [red]✘[/red] {label}")
    console.print(f"    [dim]{detail}[/dim]")


def _run_test(label: str, fn: t.Callable[[], None]) -> bool:
    """Run a single test, print pass/fail, return success bool."""
    try:
        fn()
        _pass(label)
    except TestFailureError as exc:
        _fail(label, str(exc))
        return False
    except subprocess.TimeoutExpired:
        _fail(label, "Command timed out (120s)")
        return False
    return True


# ---------------------------------------------------------------------------
# Test case builders
# ---------------------------------------------------------------------------


def _test_install(sandbox: Sandbox) -> list[TestCase]:
    """Build install test cases."""
    tests: list[TestCase] = []

    def _install_latest() -> None:
        r = _run_manager(["install", "demo"], sandbox)
        _assert(r.returncode == 0, f"exit {r.returncode}: {r.stdout}{r.stderr}")
        _assert(_marker(sandbox) == "1.2.0", f".version is {_marker(sandbox)}")
        cached = sandbox.cache / MARKETPLACE_NAME / "demo" / "1.2.0" / "README.md"
        _assert(cached.exists(), f"{PrivatePath(cached)} missing")

    tests.append(("install demo (latest)", _install_latest))

    def _install_ghost() -> None:
        r = _run_manager(["install", "ghost"], sandbox)
        _assert(r.returncode == 1, f"expected exit 1, got {r.returncode}")
        _assert("Plugin not found: ghost" in r.stdout, f"Unexpected output: {r.stdout}")
        _assert(not (sandbox.plugins / "ghost").exists(), "ghost directory was created")

    tests.append(("install ghost fails", _install_ghost))

    return tests


def _test_update(sandbox: Sandbox) -> list[TestCase]:
    """Build update test cases."""
    tests: list[TestCase] = []

    def _update_current() -> None:
        before = (sandbox.plugins / "demo" / ".version").stat().st_mtime_ns
        r = _run_manager(["update", "demo"], sandbox)
        _assert(r.returncode == 0, f"exit {r.returncode}: {r.stdout}{r.stderr}")
        _assert("already at latest version" in r.stdout, f"Unexpected output: {r.stdout}")
        after = (sandbox.plugins / "demo" / ".version").stat().st_mtime_ns
        _assert(before == after, ".version was rewritten")

    tests.append(("update demo (already current)", _update_current))

    def _update_stale() -> None:
        r = _run_manager(["install", "demo", "1.1.0"], sandbox)
        _assert(r.returncode == 0, f"install 1.1.0: exit {r.returncode}: {r.stdout}{r.stderr}")
        _assert(_marker(sandbox) == "1.1.0", f".version is {_marker(sandbox)}")
        r = _run_manager(["update", "demo"], sandbox)
        _assert(r.returncode == 0, f"update: exit {r.returncode}: {r.stdout}{r.stderr}")
        _assert(_marker(sandbox) == "1.2.0", f".version is {_marker(sandbox)}")

    tests.append(("update demo (stale marker)", _update_stale))

    def _update_missing_marker() -> None:
        (sandbox.plugins / "demo" / ".version").unlink()
        r = _run_manager(["update", "demo"], sandbox)
        _assert(r.returncode == 0, f"exit {r.returncode}: {r.stdout}{r.stderr}")
        _assert(_marker(sandbox) == "1.2.0", f".version is {_marker(sandbox)}")

    tests.append(("update demo (missing marker)", _update_missing_marker))

    return tests


def _test_list_and_sync(sandbox: Sandbox) -> list[TestCase]:
    """Build list/sync test cases."""
    tests: list[TestCase] = []

    def _list() -> None:
        r = _run_manager(["list"], sandbox)
        _assert(r.returncode == 0, f"exit {r.returncode}: {r.stdout}{r.stderr}")
        _assert("Demo plugin" in r.stdout, f"registry entry missing: {r.stdout}")
        _assert("Installed plugins" in r.stdout, f"installed section missing: {r.stdout}")

    tests.append(("list", _list))

    def _sync() -> None:
        r = _run_manager(["sync"], sandbox)
        _assert(r.returncode == 0, f"exit {r.returncode}: {r.stdout}{r.stderr}")
        _assert("already at latest version" in r.stdout, f"Unexpected output: {r.stdout}")
        _assert("All plugins synced" in r.stdout, f"Unexpected output: {r.stdout}")

    tests.append(("sync (all current)", _sync))

    return tests


def _test_register(sandbox: Sandbox) -> list[TestCase]:
    """Build host registry test cases."""
    tests: list[TestCase] = []
    key = f"demo@{MARKETPLACE_NAME}"

    def _records() -> list[dict[str, t.Any]]:
        data = t.cast("dict[str, t.Any]", json.loads(sandbox.host_registry.read_text()))
        return t.cast("list[dict[str, t.Any]]", data["plugins"][key])

    def _register() -> None:
        r = _run_manager(["install", "demo", "1.1.0", "--register"], sandbox)
        _assert(r.returncode == 0, f"exit {r.returncode}: {r.stdout}{r.stderr}")
        first = _records()[0]
        r = _run_manager(["update", "demo", "--register"], sandbox)
        _assert(r.returncode == 0, f"exit {r.returncode}: {r.stdout}{r.stderr}")
        records = _records()
        _assert(len(records) == 1, f"expected one record, got {records}")
        _assert(records[0]["version"] == "1.2.0", f"version {records[0]['version']}")
        _assert(
            records[0]["installedAt"] == first["installedAt"],
            f"installedAt changed: {first['installedAt']} -> {records[0]['installedAt']}",
        )

    tests.append(("register keeps installedAt", _register))

    return tests


# ---------------------------------------------------------------------------
# Suite runner
# ---------------------------------------------------------------------------


def _run_suite(root: Path) -> tuple[int, int]:
    """Run the full lifecycle inside *root*.

    Returns
    -------
    tuple[int, int]
        (passed, total) counts.
    """
    (root / "dist").mkdir()
    server = _serve(root / "dist")
    try:
        host, port = server.server_address[:2]
        sandbox = _make_sandbox(root, f"http://{host!s}:{port}")
        console.print(f"\n[bold]Sandbox: {PrivatePath(root)}[/bold]")

        tests: list[TestCase] = []
        tests.extend(_test_install(sandbox))
        tests.extend(_test_update(sandbox))
        tests.extend(_test_list_and_sync(sandbox))
        tests.extend(_test_register(sandbox))

        passed = sum(_run_test(name, fn) for name, fn in tests)
        return passed, len(tests)
    finally:
        server.shutdown()
        server.server_close()


@app.command()
def main(
    keep: t.Annotated[bool, typer.Option(help="Keep the sandbox directory afterwards.")] = False,
) -> None:
    """Run the E2E plugin lifecycle against plugin_manager.py."""
    console.print("[bold]E2E Plugin Manager Lifecycle Tests[/bold]")
    console.print("=" * 40)

    root = Path(tempfile.mkdtemp(prefix="plugin-manager-e2e-"))
    try:
        passed, total = _run_suite(root)
    finally:
        if not keep:
            shutil.rmtree(root, ignore_errors=True)

    console.print()
    if passed == total:
        console.print(f"[green bold]{passed}/{total} tests passed[/green bold]")
    else:
        console.print(f"[red bold]{total - passed}/{total} tests failed[/red bold]")
        raise SystemExit(1)


if __name__ == "__main__":
    app()
