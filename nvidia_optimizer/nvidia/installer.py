"""Official NVIDIA .run installer.

The version to install comes from NVIDIA's "latest driver" endpoint.  When
that lookup fails we fall back to config.FALLBACK_DRIVER_VERSION, a
hard-coded release that will eventually be outdated.  The fallback is
reported as an advisory so the operator knows which version they got.
"""

import json
import os
import re
import subprocess
import urllib.request

from .. import config
from ..errors import PackageOperationFailedError
from ..utils.logging import log_info, log_warn, log_success
from ..utils.system import run_command

_VERSION_RE = re.compile(r'"version"\s*:\s*"([0-9][0-9.]+)"')
_VALID_VERSION = re.compile(r'^[0-9]+\.[0-9]+(\.[0-9]+)?$')

INSTALLER_FLAGS = ("--dkms", "--no-cc-version-check", "--silent")


def fetch_latest_version(url, timeout=15):
    """Ask NVIDIA for the newest Linux driver version.

    Returns:
        Version string, or None if the endpoint gave nothing usable.

    Raises:
        OSError / ValueError on network or decoding failures.
    """
    req = urllib.request.Request(url, headers={"User-Agent": "nvidia-optimizer/1.0"})
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        body = resp.read().decode("utf-8", errors="replace")

    version = None
    try:
        data = json.loads(body)
        if isinstance(data, dict):
            version = data.get("version")
    except json.JSONDecodeError:
        pass
    if not version:
        match = _VERSION_RE.search(body)
        version = match.group(1) if match else None
    if version and _VALID_VERSION.match(str(version)):
        return str(version)
    return None


def resolve_driver_version(settings=None, fetch=fetch_latest_version):
    """Pick the driver version for the .run installer.

    Returns:
        (version, advisory) where advisory is None for a live lookup and a
        message when the fallback version was used.
    """
    settings = settings or config.Settings()
    try:
        version = fetch(settings.driver_version_url, settings.http_timeout)
    except (OSError, ValueError) as exc:
        log_warn(f"Could not fetch latest NVIDIA driver version: {exc}")
        version = None

    if version:
        log_success(f"Latest NVIDIA driver version detected: {version}")
        return version, None

    fallback = settings.fallback_driver_version
    advisory = (f"Could not fetch latest version online, using fallback {fallback} "
                f"(pinned release, may be outdated)")
    log_warn(advisory)
    return fallback, advisory


def installer_url(settings, version, arch):
    return settings.installer_url_template.format(version=version, arch=arch)


def download_installer(settings, version, arch, runner=run_command):
    """Download NVIDIA-Linux-<arch>-<version>.run into the work directory"""
    target = os.path.join(settings.work_dir, f"NVIDIA-Linux-{arch}-{version}.run")
    url = installer_url(settings, version, arch)
    log_info(f"Downloading {os.path.basename(target)}...")
    try:
        os.makedirs(settings.work_dir, exist_ok=True)
        runner(["wget", "-O", target, url], shell=False)
        os.chmod(target, 0o755)
    except (subprocess.CalledProcessError, OSError) as exc:
        raise PackageOperationFailedError(f"wget {url}",
                                          getattr(exc, "returncode", None)) from exc
    return target


def run_installer(path, runner=run_command):
    """Run the self-extracting installer with DKMS integration"""
    cmd = [path, *INSTALLER_FLAGS]
    try:
        runner(cmd, shell=False)
    except (subprocess.CalledProcessError, OSError) as exc:
        raise PackageOperationFailedError(" ".join(cmd),
                                          getattr(exc, "returncode", None)) from exc
    log_success(f"{os.path.basename(path)} finished")
