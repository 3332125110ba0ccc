"""Runtime settings: file locations, timeouts and download endpoints."""

import os
from dataclasses import dataclass

# Used when the vendor "latest version" endpoint is unreachable.  This is a
# pinned compatibility escape hatch and goes stale as new drivers ship;
# bump it together with the Debian release notes.
FALLBACK_DRIVER_VERSION = "580.95.05"

LOG_FILE = "/var/log/nvidia-optimizer.log"

# Artifact locations on the target system.
BLACKLIST_CONF = "/etc/modprobe.d/blacklist-nouveau.conf"
XORG_SNIPPET = "/etc/X11/xorg.conf.d/10-gpu-driver.conf"
XORG_CONF = "/etc/X11/xorg.conf"
CUDA_PROFILE_SCRIPT = "/etc/profile.d/cuda.sh"
CUDA_SOURCE_LIST = "/etc/apt/sources.list.d/nvidia-cuda.list"
CUDA_KEYRING = "/usr/share/keyrings/nvidia-cuda-archive-keyring.gpg"

# APT/dpkg lock files, in the order apt takes them.
LOCK_FILES = (
    "/var/lib/dpkg/lock-frontend",
    "/var/cache/apt/archives/lock",
    "/var/lib/dpkg/lock",
)
PACKAGE_MANAGER_PROCESSES = ("apt", "apt-get", "dpkg")

APT_SOURCES_LIST = "/etc/apt/sources.list"
APT_SOURCES_DIR = "/etc/apt/sources.list.d"

DRIVER_VERSION_URL = "https://api.nvidia.com/v1/driver-latest-version/linux"
INSTALLER_URL_TEMPLATE = (
    "https://us.download.nvidia.com/XFree86/Linux-{arch}/{version}/"
    "NVIDIA-Linux-{arch}-{version}.run"
)
CUDA_REPO_BASE = "https://developer.download.nvidia.com/compute/cuda/repos"


@dataclass(frozen=True)
class Settings:
    """Settings for one run.

    ``root`` prefixes every system path so the whole tool can operate on a
    scratch directory instead of ``/``.
    """
    root: str = "/"
    log_file: str = LOG_FILE
    lock_timeout: int = 60
    poll_interval: int = 3
    fallback_driver_version: str = FALLBACK_DRIVER_VERSION
    driver_version_url: str = DRIVER_VERSION_URL
    installer_url_template: str = INSTALLER_URL_TEMPLATE
    cuda_repo_base: str = CUDA_REPO_BASE
    http_timeout: int = 15
    work_dir: str = os.path.expanduser("~/nvidia-install")

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Build settings, honouring NVIDIA_OPTIMIZER_* overrides."""
        environ = os.environ if environ is None else environ
        overrides = {}
        if environ.get("NVIDIA_OPTIMIZER_LOG"):
            overrides["log_file"] = environ["NVIDIA_OPTIMIZER_LOG"]
        timeout = environ.get("NVIDIA_OPTIMIZER_LOCK_TIMEOUT", "").strip()
        if timeout.isdigit():
            overrides["lock_timeout"] = int(timeout)
        return cls(**overrides)

    def path(self, system_path: str) -> str:
        """Map an absolute system path below ``root``."""
        if self.root in ("", "/"):
            return system_path
        return os.path.join(self.root, system_path.lstrip("/"))
