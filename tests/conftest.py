"""Shared test fixtures for nvidia-optimizer tests."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from nvidia_optimizer.config import Settings
from nvidia_optimizer.errors import PackageOperationFailedError
from nvidia_optimizer.system.checks import GpuFact, SystemSnapshot
from nvidia_optimizer.system.locks import LockMonitor
from nvidia_optimizer.utils.system import AptManager


class FakeApt:
    """In-memory stand-in for AptManager.

    ``packages`` is what dpkg reports as installed; install/purge update it
    so tests can check the final package state.
    """

    def __init__(self, packages=None, fail_on=None):
        self.packages = set(packages or [])
        self.fail_on = fail_on
        self.calls: list[tuple] = []

    def _maybe_fail(self, op, args):
        if self.fail_on == op:
            raise PackageOperationFailedError(f"apt-get {op} {' '.join(args)}", 100)

    def install(self, *packages, target_release=None):
        self.calls.append(("install", packages, target_release))
        self._maybe_fail("install", packages)
        self.packages.update(packages)

    def purge(self, *packages):
        self.calls.append(("purge", packages))
        self._maybe_fail("purge", packages)
        self.packages.difference_update(packages)

    def autoremove(self, purge=False):
        self.calls.append(("autoremove", purge))

    def installed(self, *patterns):
        self.calls.append(("installed", patterns))
        prefixes = [p.rstrip("*") for p in patterns]
        return sorted(p for p in self.packages if any(p.startswith(x) for x in prefixes))

    def ops(self):
        return [c[0] for c in self.calls if c[0] != "installed"]


class FakeRunner:
    """Records commands passed to run_command and pretends they succeed."""

    def __init__(self, fail_on=None):
        self.commands: list = []
        self.fail_on = fail_on

    def __call__(self, cmd, shell=True, check=True, capture_output=False, **kwargs):
        self.commands.append(cmd)
        name = cmd if isinstance(cmd, str) else cmd[0]
        if self.fail_on and self.fail_on in name:
            if check:
                raise subprocess.CalledProcessError(1, cmd)
            return subprocess.CompletedProcess(cmd, 1)
        return subprocess.CompletedProcess(cmd, 0)

    def names(self):
        return [c if isinstance(c, str) else c[0] for c in self.commands]


@pytest.fixture(autouse=True)
def _reset_apt_cache():
    AptManager.reset_cache()
    yield
    AptManager.reset_cache()


@pytest.fixture
def root(tmp_path) -> Path:
    path = tmp_path / "root"
    path.mkdir()
    return path


@pytest.fixture
def settings(root, tmp_path) -> Settings:
    return Settings(root=str(root), work_dir=str(tmp_path / "work"),
                    log_file=str(tmp_path / "nvidia-optimizer.log"))


@pytest.fixture
def snapshot() -> SystemSnapshot:
    return SystemSnapshot(
        gpu=GpuFact(True, "01:00.0 VGA compatible controller: NVIDIA Corporation AD104 [GeForce RTX 4070]"),
        kernel_version="6.12.38+deb13-amd64",
        session_type="x11",
        secure_boot_enabled=False,
        distro_codename="trixie",
        distro_major=13,
        arch="amd64",
    )


@pytest.fixture
def idle_lock(settings) -> LockMonitor:
    """A LockMonitor that never sees apt/dpkg running."""
    return LockMonitor(settings, is_running=lambda name: False,
                       sleep=lambda s: None, kill=lambda name: None,
                       recover=lambda: None)


@pytest.fixture
def write(root):
    """Write a file at a system path below the test root."""

    def _write(system_path: str, content: str) -> Path:
        path = root / system_path.lstrip("/")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path

    return _write


@pytest.fixture
def debian_sources(write):
    """APT sources with contrib and non-free enabled."""
    return write(
        "/etc/apt/sources.list",
        "deb http://deb.debian.org/debian trixie main contrib non-free non-free-firmware\n",
    )
