"""NVIDIA driver state transitions.

A Reconciler moves the system to one DriverTarget through a fixed
sequence of states:

    PROBING -> LOCK_WAIT -> [PURGING, INSTALLING_DEPS, INSTALLING_DRIVER,
                             CONFIGURING_ARTIFACTS, VERIFYING] -> DONE

Each target runs a subset of the bracketed states (see _PLANS).  Any
OptimizerError moves the machine to FAILED.  Changes already made are
kept: packages purged before a failed install stay purged and files
already written stay written.
"""

import enum
import glob
import os
import shutil
import subprocess
from dataclasses import dataclass, field

from .. import config
from ..errors import OptimizerError, BackportsUnavailableError, PackageOperationFailedError
from ..system.checks import probe, require_repo_components, suite_enabled
from ..system.locks import LockMonitor, ConfirmedEscalation
from ..utils.logging import log_info, log_warn, log_error, log_step, log_success
from ..utils.system import run_command, query_command, AptManager, VENDOR_PACKAGE_PATTERNS
from . import artifacts
from .artifacts import ConfigWriter
from .installer import resolve_driver_version, download_installer, run_installer

STABLE_PACKAGES = ("nvidia-driver", "firmware-misc-nonfree")
NOUVEAU_PACKAGES = ("xserver-xorg-video-nouveau",)
BUILD_PACKAGES = ("build-essential", "dkms")

_RUN_UNINSTALLER = "/usr/bin/nvidia-uninstall"
_MODULE_REMNANTS = "/lib/modules/{kernel}/kernel/drivers/video/nvidia*"
_MODPROBE_REMNANTS = "/etc/modprobe.d/nvidia*"


class DriverTarget(enum.Enum):
    STABLE_REPO = "stable"
    BACKPORTS = "backports"
    OPEN_SOURCE = "nouveau"
    REMOVED = "removed"
    ADVANCED_RUN_INSTALLER = "run-installer"


class ReconcileState(enum.Enum):
    PROBING = "probing"
    LOCK_WAIT = "lock_wait"
    PURGING = "purging"
    INSTALLING_DEPS = "installing_deps"
    INSTALLING_DRIVER = "installing_driver"
    CONFIGURING_ARTIFACTS = "configuring_artifacts"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


S = ReconcileState

_VENDOR_PLAN = (S.PURGING, S.INSTALLING_DEPS, S.INSTALLING_DRIVER,
                S.CONFIGURING_ARTIFACTS, S.VERIFYING)

_PLANS = {
    DriverTarget.STABLE_REPO: _VENDOR_PLAN,
    DriverTarget.BACKPORTS: _VENDOR_PLAN,
    DriverTarget.ADVANCED_RUN_INSTALLER: _VENDOR_PLAN,
    DriverTarget.OPEN_SOURCE: (S.PURGING, S.INSTALLING_DRIVER, S.CONFIGURING_ARTIFACTS),
    DriverTarget.REMOVED: (S.PURGING, S.CONFIGURING_ARTIFACTS),
}

# Targets that install from Debian's contrib/non-free components
_NEEDS_REPO_COMPONENTS = {
    DriverTarget.STABLE_REPO,
    DriverTarget.BACKPORTS,
    DriverTarget.ADVANCED_RUN_INSTALLER,
}

# X11 driver each target selects; None removes the snippet
_XORG_DRIVER = {
    DriverTarget.STABLE_REPO: "nvidia",
    DriverTarget.BACKPORTS: "nvidia",
    DriverTarget.ADVANCED_RUN_INSTALLER: "nvidia",
    DriverTarget.OPEN_SOURCE: "nouveau",
    DriverTarget.REMOVED: None,
}


@dataclass
class ReconcileResult:
    target: DriverTarget
    state: ReconcileState = ReconcileState.PROBING
    history: list[ReconcileState] = field(default_factory=list)
    error: OptimizerError | None = None
    advisories: list[str] = field(default_factory=list)
    resolved_version: str | None = None

    @property
    def ok(self) -> bool:
        return self.state is ReconcileState.DONE


class Reconciler:
    """Converges the system to one DriverTarget.  Single use."""

    def __init__(self, target, settings=None, snapshot=None, apt=None,
                 lock_monitor=None, writer=None, policy=None,
                 runner=run_command, query=query_command, probe_fn=probe,
                 resolve_version=resolve_driver_version):
        self.target = target
        self.settings = settings or config.Settings()
        self.snapshot = snapshot
        self.apt = apt or AptManager()
        self.lock_monitor = lock_monitor or LockMonitor(self.settings)
        self.writer = writer or ConfigWriter(self.settings)
        self.policy = policy or ConfirmedEscalation()
        self._runner = runner
        self._query = query
        self._probe = probe_fn
        self._resolve_version = resolve_version
        self.result = ReconcileResult(target)
        self._started = False
        self._steps = {
            S.PURGING: self._purge,
            S.INSTALLING_DEPS: self._install_dependencies,
            S.INSTALLING_DRIVER: self._install_driver,
            S.CONFIGURING_ARTIFACTS: self._configure_artifacts,
            S.VERIFYING: self._verify,
        }

    # ------------------------------------------------------------------
    # Driver loop
    # ------------------------------------------------------------------

    def run(self) -> ReconcileResult:
        if self._started:
            raise RuntimeError("A Reconciler runs exactly once; create a new one")
        self._started = True

        try:
            self._enter(S.PROBING)
            self._preflight()
            self._enter(S.LOCK_WAIT)
            self.lock_monitor.acquire_exclusive_access(self.settings.lock_timeout, self.policy)
            for state in _PLANS[self.target]:
                self._enter(state)
                self._steps[state]()
            self._enter(S.DONE)
        except OptimizerError as exc:
            self.result.error = exc
            failed_in = self.result.state
            self._enter(S.FAILED)
            log_error(f"{failed_in.value}: {exc}")
            if exc.hint:
                log_info(f"Hint: {exc.hint}")
        return self.result

    def _enter(self, state):
        self.result.state = state
        self.result.history.append(state)

    def _advise(self, message):
        log_warn(message)
        self.result.advisories.append(message)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _preflight(self):
        if self.snapshot is None:
            self.snapshot = self._probe(self.settings)
        self.result.advisories.extend(self.snapshot.advisories)
        if self.target in _NEEDS_REPO_COMPONENTS:
            require_repo_components(self.settings)

    def _purge(self):
        log_step("Removing existing NVIDIA driver packages...")
        self._uninstall_run_driver()

        packages = self.apt.installed(*VENDOR_PACKAGE_PATTERNS)
        if packages:
            log_info(f"Purging {len(packages)} package(s): {', '.join(packages)}")
            self.apt.purge(*packages)
        else:
            log_info("No NVIDIA packages installed, nothing to purge")

        if self.target is DriverTarget.REMOVED:
            self._remove_remnants()
            self.apt.autoremove(purge=True)

    def _uninstall_run_driver(self):
        """Remove a driver previously installed by the .run installer"""
        uninstaller = self.settings.path(_RUN_UNINSTALLER)
        if not os.path.exists(uninstaller):
            return
        log_info("Driver from the NVIDIA .run installer found, uninstalling it...")
        try:
            result = self._runner([uninstaller, "--silent"], shell=False, check=False)
        except OSError as exc:
            self._advise(f"Could not run nvidia-uninstall: {exc}")
            return
        if result is None or result.returncode != 0:
            self._advise("nvidia-uninstall reported an error; leftover files may remain")

    def _remove_remnants(self):
        """Best-effort removal of leftover module directories and modprobe files"""
        kernel = self.snapshot.kernel_version
        patterns = [_MODULE_REMNANTS.format(kernel=kernel), _MODPROBE_REMNANTS]
        for pattern in patterns:
            for path in glob.glob(self.settings.path(pattern)):
                try:
                    if os.path.isdir(path) and not os.path.islink(path):
                        shutil.rmtree(path)
                    else:
                        os.remove(path)
                    log_info(f"Removed {path}")
                except OSError as exc:
                    self._advise(f"Could not remove {path}: {exc}")

    def _install_dependencies(self):
        log_step("Installing build toolchain, kernel headers and DKMS...")
        headers = f"linux-headers-{self.snapshot.kernel_version}"
        self.apt.install(*BUILD_PACKAGES, headers)

    def _install_driver(self):
        if self.target is DriverTarget.STABLE_REPO:
            log_step("Installing stable Debian NVIDIA driver...")
            self.apt.install(*STABLE_PACKAGES)

        elif self.target is DriverTarget.BACKPORTS:
            suite = f"{self.snapshot.distro_codename}-backports"
            log_step(f"Installing NVIDIA driver from {suite}...")
            if not suite_enabled(suite, self.settings):
                raise BackportsUnavailableError(suite, "no APT source references it")
            try:
                self.apt.install(*STABLE_PACKAGES, target_release=suite)
            except PackageOperationFailedError as exc:
                raise BackportsUnavailableError(suite, "apt could not install from it") from exc

        elif self.target is DriverTarget.OPEN_SOURCE:
            log_step("Installing open-source nouveau driver...")
            self.apt.install(*NOUVEAU_PACKAGES)

        elif self.target is DriverTarget.ADVANCED_RUN_INSTALLER:
            log_step("Installing latest official NVIDIA driver (.run installer)...")
            version, advisory = self._resolve_version(self.settings)
            self.result.resolved_version = version
            if advisory:
                self.result.advisories.append(advisory)
            path = download_installer(self.settings, version,
                                      self.snapshot.installer_arch, runner=self._runner)
            run_installer(path, runner=self._runner)

    def _configure_artifacts(self):
        log_step("Updating driver configuration files...")
        driver = _XORG_DRIVER[self.target]

        if self.target is DriverTarget.OPEN_SOURCE:
            self.writer.remove(artifacts.BLACKLIST)
        elif driver == "nvidia":
            self.writer.write(artifacts.BLACKLIST, artifacts.blacklist_content())

        if driver is None:
            self.writer.remove(artifacts.XORG_DRIVER)
            self.writer.patch_legacy_xorg_conf("modesetting")
        else:
            self.writer.write(artifacts.XORG_DRIVER, artifacts.xorg_driver_content(driver))
            self.writer.patch_legacy_xorg_conf(driver)

        # Once per run, after every blacklist decision above
        self._regenerate_initramfs()

    def _regenerate_initramfs(self):
        log_info("Regenerating initramfs...")
        cmd = ["update-initramfs", "-u"]
        try:
            self._runner(cmd, shell=False)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise PackageOperationFailedError(" ".join(cmd),
                                              getattr(exc, "returncode", None)) from exc

    def _verify(self):
        log_step("Performing post-installation checks...")
        version = self._query(["modinfo", "-F", "version", "nvidia"])
        if version:
            log_success(f"NVIDIA kernel module {version} is built for this kernel")
        else:
            self._advise("nvidia kernel module not found for the running kernel; "
                         "check 'dkms status' after reboot")