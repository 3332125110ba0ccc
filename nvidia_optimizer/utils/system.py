"""System utilities for command execution and package management"""

import os
import subprocess

from ..errors import PackageOperationFailedError
from .logging import log_info, log_error

# Package name globs owned by the vendor driver.
VENDOR_PACKAGE_PATTERNS = ("nvidia-*", "libnvidia-*", "xserver-xorg-video-nvidia*")

# dpkg status words that still leave something to purge.
_PURGEABLE_STATES = ("installed", "config-files", "half-installed",
                     "half-configured", "unpacked")


def run_command(cmd, shell=True, check=True, capture_output=False, env=None):
    """
    Execute a system command with logging

    Args:
        cmd: Command to execute (string or list)
        shell: Whether to use shell
        check: Whether to raise exception on failure
        capture_output: Whether to capture and return output
        env: Optional environment for the child process

    Returns:
        CompletedProcess object or output string if capture_output=True.
        With check=False a failed command returns None (or the captured
        output, which may be empty).
    """
    log_info(f"Running: {cmd if isinstance(cmd, str) else ' '.join(cmd)}")

    try:
        if capture_output:
            result = subprocess.run(cmd, shell=shell, check=check,
                                    capture_output=True, text=True,
                                    stdin=subprocess.DEVNULL, env=env)
            return result.stdout.strip()
        else:
            result = subprocess.run(cmd, shell=shell, check=check,
                                    stdin=subprocess.DEVNULL, env=env)
            return result
    except subprocess.CalledProcessError:
        log_error(f"Command failed: {cmd}")
        if check:
            raise
        return None
    except FileNotFoundError:
        log_error(f"Command not found: {cmd}")
        if check:
            raise
        return None


def query_command(cmd):
    """Run a read-only probe command quietly.

    Returns:
        Stripped stdout, or None if the command is missing or fails.
    """
    try:
        result = subprocess.run(cmd, shell=isinstance(cmd, str),
                                capture_output=True, text=True,
                                stdin=subprocess.DEVNULL)
    except OSError:
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


class AptManager:
    """Manages apt operations with caching

    Every failure is raised as PackageOperationFailedError; nothing is
    retried.
    """

    _update_done: bool = False

    def __init__(self, runner=subprocess.run):
        self._runner = runner

    @classmethod
    def reset_cache(cls):
        """Reset the update cache so the next update() call re-runs apt-get update.

        Call this after adding new repositories so packages from
        those repos can be discovered.
        """
        cls._update_done = False

    def _apt(self, args):
        env = os.environ.copy()
        env['DEBIAN_FRONTEND'] = 'noninteractive'
        cmd = ["apt-get", *args]
        text = ' '.join(cmd)
        log_info(f"Running: {text}")
        try:
            result = self._runner(cmd, env=env, stdin=subprocess.DEVNULL)
        except OSError as exc:
            log_error(f"Cannot run apt-get: {exc}")
            raise PackageOperationFailedError(text) from exc
        if result.returncode != 0:
            log_error(f"Command failed: {text}")
            raise PackageOperationFailedError(text, result.returncode)

    def update(self):
        """Update apt cache if not already done"""
        if not AptManager._update_done:
            self._apt(["update"])
            AptManager._update_done = True

    def install(self, *packages, target_release=None):
        """Install packages using apt, optionally from another release (-t)"""
        self.update()
        args = ["install", "-y"]
        if target_release:
            args += ["-t", target_release]
        self._apt(args + list(packages))

    def purge(self, *packages):
        """Remove packages together with their configuration files"""
        if packages:
            self._apt(["purge", "-y", *packages])

    def autoremove(self, purge: bool = False):
        """Remove unnecessary packages"""
        self._apt(["autoremove", "--purge", "-y"] if purge else ["autoremove", "-y"])

    def installed(self, *patterns):
        """List packages matching the globs that dpkg still tracks.

        Includes removed-but-not-purged packages (config files left), since
        those are still something to purge.  Names are arch-qualified for
        foreign-architecture copies (e.g. libnvidia-glcore:i386).
        """
        cmd = ["dpkg-query", "-W", "-f=${binary:Package} ${Status}\n", *patterns]
        try:
            result = self._runner(cmd, capture_output=True, text=True,
                                  stdin=subprocess.DEVNULL)
        except OSError as exc:
            log_error(f"Cannot run dpkg-query: {exc}")
            raise PackageOperationFailedError("dpkg-query -W " + " ".join(patterns)) from exc
        # dpkg-query exits 1 when a pattern matches nothing
        packages: list[str] = []
        for line in (result.stdout or "").splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[-1] in _PURGEABLE_STATES:
                packages.append(parts[0])
        return packages


def get_os_info(path='/etc/os-release'):
    """Get OS information from /etc/os-release"""
    try:
        with open(path, 'r') as f:
            lines = f.readlines()

        info = {}
        for line in lines:
            if '=' in line:
                key, value = line.strip().split('=', 1)
                info[key] = value.strip('"')

        return info
    except OSError:
        return {}
