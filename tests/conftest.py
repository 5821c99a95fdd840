"""Shared test fixtures."""

from __future__ import annotations

import io
import json
import tarfile
import typing as t
from pathlib import Path

import _console
import httpx
import pytest
from plugin_manager import ManagerConfig

DEMO_URL = "https://example/demo-1.2.0.tar.gz"
DEMO_OLD_URL = "https://example/demo-1.1.0.tar.gz"
TOOLS_URL = "https://example/tools-0.3.0.tar.gz"


def make_tarball(files: dict[str, str], *, dirs: t.Iterable[str] = ()) -> bytes:
    """Build a gzip tarball in memory from ``{archive path: text}``."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tf.addfile(info)
        for name, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def plugin_tarball(top: str, version: str) -> bytes:
    """A GitHub-style archive: one ``<repo>-<version>/`` directory."""
    return make_tarball(
        {
            f"{top}/README.md": f"# {top} {version}\n",
            f"{top}/.claude-plugin/plugin.json": json.dumps({"name": top, "version": version}),
            f"{top}/commands/hello.md": "---\ndescription: hello\n---\n",
        },
        dirs=[top],
    )


class FakeServer:
    """Serves tarballs from memory through `httpx.MockTransport`."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.requests: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        body = self.files.get(url)
        if body is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=body)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler), follow_redirects=True)


@pytest.fixture
def server() -> FakeServer:
    fake = FakeServer()
    fake.files[DEMO_URL] = plugin_tarball("demo-1.2.0", "1.2.0")
    fake.files[DEMO_OLD_URL] = plugin_tarball("demo-1.1.0", "1.1.0")
    fake.files[TOOLS_URL] = plugin_tarball("tools-0.3.0", "0.3.0")
    return fake


@pytest.fixture
def client(server: FakeServer) -> t.Iterator[httpx.Client]:
    with server.client() as c:
        yield c


@pytest.fixture
def registry_data() -> dict[str, t.Any]:
    return {
        "plugins": {
            "demo": {
                "latest": "1.2.0",
                "description": "x",
                "versions": {
                    "1.1.0": {"tarball": DEMO_OLD_URL},
                    "1.2.0": {"tarball": DEMO_URL},
                },
            },
            "tools": {
                "latest": "0.3.0",
                "description": "Tooling",
                "versions": {"0.3.0": {"tarball": TOOLS_URL}},
            },
        }
    }


@pytest.fixture
def registry_file(tmp_path: Path, registry_data: dict[str, t.Any]) -> Path:
    path = tmp_path / "plugins.json"
    path.write_text(json.dumps(registry_data), encoding="utf-8")
    return path


@pytest.fixture
def host_registry_file(tmp_path: Path) -> Path:
    path = tmp_path / "home" / "installed_plugins.json"
    path.parent.mkdir(parents=True)
    path.write_text(
        json.dumps({"version": 2, "plugins": {"other@elsewhere": [{"version": "9.0.0"}]}}),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def config(tmp_path: Path, registry_file: Path, host_registry_file: Path) -> ManagerConfig:
    return ManagerConfig(
        registry_path=registry_file,
        plugins_dir=tmp_path / "plugins",
        cache_root=tmp_path / "cache",
        host_registry_path=host_registry_file,
    )


def snapshot(root: Path) -> dict[str, tuple[int, int]]:
    """Map every path under *root* to (mtime_ns, size) to detect mutation."""
    if not root.exists():
        return {}
    return {
        str(p.relative_to(root)): (p.stat().st_mtime_ns, p.stat().st_size)
        for p in sorted(root.rglob("*"))
    }


@pytest.fixture(autouse=True)
def unwrapped_console(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep status lines on one line so assertions can match long paths."""
    monkeypatch.setattr(_console.console, "soft_wrap", True)
