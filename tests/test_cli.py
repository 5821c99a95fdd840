"""Tests for the plugin manager command line."""

from __future__ import annotations

import importlib.util
import signal
import typing as t

import httpx
import plugin_manager
import pytest
from conftest import DEMO_URL, FakeServer
from plugin_manager import ManagerConfig, app
from typer.testing import CliRunner

runner = CliRunner()


@pytest.fixture(autouse=True)
def fake_http(server: FakeServer, monkeypatch: pytest.MonkeyPatch) -> None:
    def make_client(config: ManagerConfig) -> httpx.Client:
        return server.client()

    monkeypatch.setattr(plugin_manager, "_make_client", make_client)


@pytest.fixture
def invoke(config: ManagerConfig) -> t.Callable[..., t.Any]:
    base = [
        "--registry",
        str(config.registry_path),
        "--plugins-dir",
        str(config.plugins_dir),
        "--cache-dir",
        str(config.cache_root),
        "--host-registry",
        str(config.host_registry_path),
    ]

    def _invoke(*args: str) -> t.Any:
        return runner.invoke(app, [*base, *args])

    return _invoke


class TestInstallCommand:
    """Tests for `install`."""

    def test_install_latest(self, invoke: t.Callable[..., t.Any], config: ManagerConfig) -> None:
        result = invoke("install", "demo")
        assert result.exit_code == 0, result.output
        assert "Installed demo@1.2.0" in result.output
        assert (config.plugins_dir / "demo" / ".version").read_text().strip() == "1.2.0"
        assert (config.cache_root / "f5-distributed-cloud" / "demo" / "1.2.0").is_dir()

    def test_install_version(self, invoke: t.Callable[..., t.Any], config: ManagerConfig) -> None:
        result = invoke("install", "demo", "1.1.0")
        assert result.exit_code == 0, result.output
        assert (config.plugins_dir / "demo" / ".version").read_text().strip() == "1.1.0"

    def test_install_ghost(self, invoke: t.Callable[..., t.Any], config: ManagerConfig) -> None:
        result = invoke("install", "ghost")
        assert result.exit_code == 1
        assert "Plugin not found: ghost" in result.output
        assert not config.plugins_dir.exists()

    def test_download_failure(
        self, invoke: t.Callable[..., t.Any], server: FakeServer
    ) -> None:
        del server.files[DEMO_URL]
        result = invoke("install", "demo")
        assert result.exit_code == 1
        assert "Failed to download" in result.output

    def test_register_missing_host_registry_warns(
        self, invoke: t.Callable[..., t.Any], config: ManagerConfig
    ) -> None:
        config.host_registry_path.unlink()
        result = invoke("install", "demo", "--register")
        assert result.exit_code == 0, result.output
        assert "Host plugin registry not found" in result.output

    def test_unwritable_cache(self, invoke: t.Callable[..., t.Any], config: ManagerConfig) -> None:
        config.cache_root.write_text("not a directory")
        result = invoke("install", "demo")
        assert result.exit_code == 1
        assert "Cannot mirror demo" in result.output
        assert "Traceback" not in result.output

    def test_missing_gzip_support(
        self,
        invoke: t.Callable[..., t.Any],
        config: ManagerConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        real_find_spec = importlib.util.find_spec

        def find_spec(name: str, *args: t.Any, **kwargs: t.Any) -> t.Any:
            if name == "zlib":
                return None
            return real_find_spec(name, *args, **kwargs)

        monkeypatch.setattr(plugin_manager.importlib.util, "find_spec", find_spec)
        result = invoke("install", "demo")
        assert result.exit_code == 1
        assert "zlib" in result.output
        assert not config.plugins_dir.exists()

    def test_missing_name_is_usage_error(self, invoke: t.Callable[..., t.Any]) -> None:
        result = invoke("install")
        assert result.exit_code == 2


class TestUpdateCommand:
    """Tests for `update`."""

    def test_already_current(self, invoke: t.Callable[..., t.Any], config: ManagerConfig) -> None:
        assert invoke("install", "demo").exit_code == 0
        marker = config.plugins_dir / "demo" / ".version"
        before = marker.stat().st_mtime_ns

        result = invoke("update", "demo")

        assert result.exit_code == 0, result.output
        assert "already at latest version" in result.output
        assert marker.stat().st_mtime_ns == before
        assert marker.read_text().strip() == "1.2.0"

    def test_update_from_old(self, invoke: t.Callable[..., t.Any], config: ManagerConfig) -> None:
        assert invoke("install", "demo", "1.1.0").exit_code == 0
        result = invoke("update", "demo")
        assert result.exit_code == 0, result.output
        assert "Updating demo from 1.1.0 to 1.2.0" in result.output

    def test_update_ghost(self, invoke: t.Callable[..., t.Any]) -> None:
        result = invoke("update", "ghost")
        assert result.exit_code == 1


class TestSyncCommand:
    """Tests for `sync`."""

    def test_sync(self, invoke: t.Callable[..., t.Any], config: ManagerConfig) -> None:
        result = invoke("sync")
        assert result.exit_code == 0, result.output
        assert "All plugins synced" in result.output
        assert (config.plugins_dir / "tools" / ".version").exists()

    def test_sync_fail_fast(self, invoke: t.Callable[..., t.Any], server: FakeServer) -> None:
        del server.files[DEMO_URL]
        result = invoke("sync")
        assert result.exit_code == 1
        assert "All plugins synced" not in result.output

    def test_sync_keep_going(
        self, invoke: t.Callable[..., t.Any], server: FakeServer, config: ManagerConfig
    ) -> None:
        del server.files[DEMO_URL]
        result = invoke("sync", "--keep-going")
        assert result.exit_code == 1
        assert "1 plugin(s) failed to sync" in result.output
        assert (config.plugins_dir / "tools" / ".version").exists()


class TestListCommands:
    """Tests for `list`, `outdated` and `help`."""

    def test_list(self, invoke: t.Callable[..., t.Any]) -> None:
        assert invoke("install", "demo").exit_code == 0
        result = invoke("list")
        assert result.exit_code == 0, result.output
        assert "Available plugins in registry" in result.output
        assert "Tooling" in result.output
        assert "Installed plugins" in result.output
        assert "v1.2.0" in result.output

    def test_list_without_plugins_dir(self, invoke: t.Callable[..., t.Any]) -> None:
        result = invoke("list")
        assert result.exit_code == 0, result.output
        assert "Installed plugins" not in result.output

    def test_list_bad_registry(self, invoke: t.Callable[..., t.Any], config: ManagerConfig) -> None:
        config.registry_path.write_text("nope")
        result = invoke("list")
        assert result.exit_code == 1
        assert "not valid JSON" in result.output

    def test_outdated(self, invoke: t.Callable[..., t.Any]) -> None:
        assert invoke("install", "demo", "1.1.0").exit_code == 0
        result = invoke("outdated")
        assert result.exit_code == 0, result.output
        assert "OUTDATED" in result.output

    def test_help(self, invoke: t.Callable[..., t.Any]) -> None:
        result = invoke("help")
        assert result.exit_code == 0
        assert "install" in result.output
        assert "sync" in result.output

    def test_unknown_command(self, invoke: t.Callable[..., t.Any]) -> None:
        result = invoke("frobnicate")
        assert result.exit_code == 2


def test_no_command_prints_help() -> None:
    result = runner.invoke(app, [])
    assert result.exit_code == 0
    assert "Plugin manager" in result.output


def test_sigterm_handler_left_alone(invoke: t.Callable[..., t.Any]) -> None:
    before = signal.getsignal(signal.SIGTERM)
    result = invoke("list")
    assert result.exit_code == 0, result.output
    assert signal.getsignal(signal.SIGTERM) == before
