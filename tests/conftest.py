from __future__ import annotations

import asyncio
import itertools
import json
import os
import sys
from pathlib import Path
from typing import Optional

import pytest
from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_SRC = (_PROJECT_ROOT / "src").resolve()
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

load_dotenv(_PROJECT_ROOT / ".env", override=False)

from hostcore.config import HostcoreConfig  # noqa: E402
from hostcore.deployer import CommandResult  # noqa: E402
from hostcore.errors import AcquisitionFailure  # noqa: E402


REPO = "https://github.com/acme/shop"

EXPRESS_MANIFEST = {
    "name": "shop",
    "dependencies": {"express": "4.18.0"},
    "scripts": {"start": "node server.js", "build": "tsc"},
}

_pids = itertools.count(40000)


class FakeProcess:
    """Stand-in for a supervised child process."""

    def __init__(self, exit_on_signal: bool = True):
        self.pid = next(_pids)
        self.returncode: Optional[int] = None
        self.signals: list[int] = []
        self.exit_on_signal = exit_on_signal
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if self.exit_on_signal:
            self.exit(-int(sig))

    def exit(self, code: int = 0) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()


class FakeLauncher:
    """Records launches instead of spawning anything."""

    def __init__(self, exit_on_signal: bool = True, fail_with: Optional[Exception] = None):
        self.exit_on_signal = exit_on_signal
        self.fail_with = fail_with
        self.calls: list[dict] = []
        self.processes: list[FakeProcess] = []

    async def __call__(self, argv, *, cwd, env, stdout, stderr) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append({"argv": list(argv), "cwd": Path(cwd), "env": dict(env)})
        process = FakeProcess(exit_on_signal=self.exit_on_signal)
        self.processes.append(process)
        return process


class FakeCloner:
    """Writes a package.json instead of running git."""

    def __init__(self, manifest: Optional[dict] = None, fail: bool = False):
        self.manifest = manifest or EXPRESS_MANIFEST
        self.fail = fail
        self.calls: list[tuple] = []

    async def __call__(self, ref, dest: Path) -> None:
        self.calls.append((ref, dest))
        dest.mkdir(parents=True)
        if self.fail:
            (dest / ".git").mkdir()
            raise AcquisitionFailure("Failed to clone repository: not found")
        (dest / "package.json").write_text(json.dumps(self.manifest))


class FakeRunner:
    """Install/build runner that fails when ``fail_on`` is in the argv."""

    def __init__(self, fail_on: Optional[str] = None):
        self.fail_on = fail_on
        self.calls: list[list[str]] = []

    async def __call__(self, argv, cwd, timeout) -> CommandResult:
        self.calls.append(list(argv))
        if self.fail_on and self.fail_on in argv:
            return CommandResult(returncode=2, output="error TS2304: Cannot find name")
        return CommandResult(returncode=0, output="ok")


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def config(tmp_path) -> HostcoreConfig:
    cfg = HostcoreConfig(
        apps_root=tmp_path / "sites",
        uploads_dir=tmp_path / "uploads",
        data_dir=tmp_path / "data",
        route_config_dir=tmp_path / "nginx",
        log_dir=tmp_path / "logs",
        port_min=43100,
        port_max=43199,
        base_domain="apps.example.com",
        restart_grace=0.0,
        stop_timeout=0.5,
    )
    cfg.ensure_directories()
    return cfg


async def settle(rounds: int = 5) -> None:
    """Let pending watcher tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("HOSTCORE_"):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch
