"""APT/dpkg lock monitor.

We do not own the package manager lock, we can only watch for apt/dpkg
processes, wait for them, and as a last resort kill them and clear the
lock files they leave behind.  What happens on timeout is decided by an
escalation policy object so the legacy "kill without asking" behaviour and
the confirming behaviour share one code path.
"""

import os
import subprocess
import time
from dataclasses import dataclass, field

from .. import config
from ..errors import (
    ArtifactIOError, LockTimeoutError, LockUserAbortedError, PackageOperationFailedError,
)
from ..utils.logging import log_info, log_warn, log_step, log_success
from ..utils.prompts import prompt_yes_no


# ---------------------------------------------------------------------------
# Escalation policies
# ---------------------------------------------------------------------------

class EscalationPolicy:
    """Decides what happens once the wait for apt/dpkg times out.

    Subclasses answer two questions.  Returning None from approve_kill()
    means "no decision", which makes the monitor fail with a timeout.
    """

    name = "none"

    def approve_kill(self, processes, waited):
        return None

    def approve_lock_removal(self, paths):
        return False


class SilentEscalation(EscalationPolicy):
    """Kill stuck processes and delete lock files without asking."""

    name = "silent"

    def approve_kill(self, processes, waited):
        return True

    def approve_lock_removal(self, paths):
        return True


class ConfirmedEscalation(EscalationPolicy):
    """Ask the operator before killing processes or deleting locks."""

    name = "confirmed"

    def __init__(self, confirm=prompt_yes_no):
        self._confirm = confirm

    def approve_kill(self, processes, waited):
        return self._confirm(
            f"{', '.join(processes)} still running after {waited}s. "
            f"Force-terminate (kill -9)?",
            default='n',
        )

    def approve_lock_removal(self, paths):
        log_warn("Deleting lock files while apt/dpkg is genuinely active "
                 "can corrupt the package database.")
        return self._confirm(
            f"Stale lock file(s) found: {', '.join(paths)}. Delete them?",
            default='n',
        )


# ---------------------------------------------------------------------------
# Process and filesystem access
# ---------------------------------------------------------------------------

def _pgrep(name):
    """True if a process with exactly this name is running"""
    try:
        result = subprocess.run(["pgrep", "-x", name],
                                capture_output=True, stdin=subprocess.DEVNULL)
    except OSError:
        return False
    return result.returncode == 0


def _pkill(name):
    try:
        subprocess.run(["pkill", "-9", "-x", name],
                       capture_output=True, stdin=subprocess.DEVNULL)
    except OSError as exc:
        log_warn(f"Could not signal {name}: {exc}")


def _recover_dpkg():
    """Finish any dpkg transaction interrupted by a kill"""
    cmd = ["dpkg", "--configure", "-a"]
    log_info(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, stdin=subprocess.DEVNULL)
    except OSError as exc:
        raise PackageOperationFailedError(" ".join(cmd)) from exc
    if result.returncode != 0:
        raise PackageOperationFailedError(" ".join(cmd), result.returncode)


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

@dataclass
class LockState:
    process_running: bool = False
    waited_seconds: int = 0


@dataclass
class LockReport:
    """Outcome of a successful acquire_exclusive_access() call"""
    waited_seconds: int = 0
    killed: list[str] = field(default_factory=list)
    removed_locks: list[str] = field(default_factory=list)


class LockMonitor:
    """Waits for apt/dpkg to finish before this run touches packages.

    The process probe, killer, sleeper and filesystem hooks are injectable
    so the whole wait/escalate cycle can run without a real package manager.
    """

    def __init__(self, settings=None, is_running=_pgrep, kill=_pkill,
                 sleep=time.sleep, recover=_recover_dpkg,
                 processes=config.PACKAGE_MANAGER_PROCESSES,
                 lock_files=config.LOCK_FILES):
        self.settings = settings or config.Settings()
        self._is_running = is_running
        self._kill = kill
        self._sleep = sleep
        self._recover = recover
        self.processes = tuple(processes)
        self.lock_files = [self.settings.path(p) for p in lock_files]

    def active_processes(self):
        return [name for name in self.processes if self._is_running(name)]

    def acquire_exclusive_access(self, timeout_seconds=None, policy=None):
        """Block until no package manager process is running.

        Lock files are only inspected when apt/dpkg was seen running.

        Returns:
            LockReport describing waiting, kills and removed lock files.

        Raises:
            LockTimeoutError: timeout reached and the policy made no decision
            LockUserAbortedError: the operator declined forced termination
            PackageOperationFailedError: dpkg recovery after a kill failed
            ArtifactIOError: an approved lock file could not be removed
        """
        if timeout_seconds is None:
            timeout_seconds = self.settings.lock_timeout
        policy = policy or ConfirmedEscalation()
        interval = self.settings.poll_interval

        log_step("Checking for running apt/dpkg processes...")
        report = LockReport()
        state = LockState()
        found = False

        while True:
            active = self.active_processes()
            state.process_running = bool(active)
            if not active:
                break
            found = True
            if state.waited_seconds >= timeout_seconds:
                self._escalate(policy, active, state.waited_seconds, report)
                break
            log_info(f"Waiting for package manager to finish "
                     f"({', '.join(active)}, {state.waited_seconds}s)...")
            self._sleep(interval)
            state.waited_seconds += interval

        report.waited_seconds = state.waited_seconds
        if found:
            log_success("Package manager processes finished or terminated")
            # dpkg keeps its lock files between runs; only a run we saw can leave them stale
            self._clear_stale_locks(policy, report)
        else:
            log_success("No active package manager detected")
        return report

    def _escalate(self, policy, active, waited, report):
        log_warn(f"Timeout reached after {waited}s, package manager still busy")
        decision = policy.approve_kill(active, waited)
        if decision is None:
            raise LockTimeoutError(waited, active)
        if not decision:
            raise LockUserAbortedError(
                f"declined to terminate {', '.join(active)}")

        for name in active:
            log_warn(f"Killing stuck process: {name}")
            self._kill(name)
            report.killed.append(name)
        if "dpkg" in report.killed:
            log_info("Recovering interrupted dpkg transaction...")
            self._recover()

    def _clear_stale_locks(self, policy, report):
        present = [p for p in self.lock_files if os.path.exists(p)]
        if not present:
            return
        if not policy.approve_lock_removal(present):
            log_info("Leaving lock files in place")
            return
        for path in present:
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise ArtifactIOError(path, exc) from exc
            report.removed_locks.append(path)
            log_info(f"Removed stale lock: {path}")
