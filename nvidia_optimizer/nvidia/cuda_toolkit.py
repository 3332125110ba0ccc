"""Host CUDA Toolkit installation via NVIDIA APT repository.

Imports NVIDIA's signing key, adds the CUDA repository for this Debian
release and architecture, installs ``cuda-toolkit`` and puts nvcc on the
PATH for login shells through /etc/profile.d/cuda.sh.
"""

import os
import subprocess

from .. import config
from ..errors import ArtifactIOError, PackageOperationFailedError
from ..system.locks import LockMonitor, ConfirmedEscalation
from ..utils.logging import log_info, log_step, log_success
from ..utils.system import run_command, AptManager
from . import artifacts
from .artifacts import ConfigWriter

CUDA_PACKAGE = "cuda-toolkit"

# Signing key shipped in every debianNN repository directory
_CUDA_KEY_NAME = "3bf863cc.pub"

# NVIDIA names the arm64 server repository "sbsa"
_REPO_ARCH = {"amd64": "x86_64", "arm64": "sbsa"}


def cuda_repo_url(settings, snapshot):
    """Repository directory for this Debian release, e.g. .../debian12/x86_64/"""
    return (f"{settings.cuda_repo_base}/debian{snapshot.distro_major}/"
            f"{_REPO_ARCH[snapshot.arch]}/")


def _import_signing_key(settings, repo_url, runner):
    keyring = settings.path(config.CUDA_KEYRING)
    for directory in (os.path.dirname(keyring), settings.work_dir):
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as exc:
            raise ArtifactIOError(directory, exc) from exc
    key_file = os.path.join(settings.work_dir, _CUDA_KEY_NAME)

    log_info("Importing NVIDIA CUDA repository signing key...")
    for cmd in (["wget", "-qO", key_file, f"{repo_url}{_CUDA_KEY_NAME}"],
                ["gpg", "--dearmor", "--yes", "-o", keyring, key_file]):
        try:
            runner(cmd, shell=False)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise PackageOperationFailedError(" ".join(cmd),
                                              getattr(exc, "returncode", None)) from exc

    # Clean up
    try:
        os.unlink(key_file)
    except OSError:
        pass


def install_cuda_toolkit(snapshot, settings=None, apt=None, lock_monitor=None,
                         writer=None, policy=None, runner=run_command):
    """Install the NVIDIA CUDA Toolkit on the host.

    Main entry point called from the CLI menu.  Errors propagate as
    OptimizerError; nothing written before a failure is undone.
    """
    settings = settings or config.Settings()
    apt = apt or AptManager()
    lock_monitor = lock_monitor or LockMonitor(settings)
    writer = writer or ConfigWriter(settings)

    log_step("CUDA Toolkit Installation")
    if not snapshot.driver_version:
        log_info("No working NVIDIA driver detected; CUDA needs one at runtime")

    lock_monitor.acquire_exclusive_access(settings.lock_timeout,
                                          policy or ConfirmedEscalation())

    repo_url = cuda_repo_url(settings, snapshot)
    _import_signing_key(settings, repo_url, runner)

    source = artifacts.cuda_source_content(snapshot.arch, snapshot.distro_codename, repo_url)
    if writer.write(artifacts.CUDA_SOURCE, source) is artifacts.WriteResult.WRITTEN:
        # Force apt to re-read sources
        AptManager.reset_cache()

    log_info(f"Installing {CUDA_PACKAGE}...")
    apt.install(CUDA_PACKAGE)

    writer.write(artifacts.CUDA_PROFILE, artifacts.cuda_profile_content())

    log_success("CUDA Toolkit installed")
    log_info("CUDA path:   /usr/local/cuda")
    log_info("Note: Open a new shell or run 'source /etc/profile.d/cuda.sh' to use nvcc")
