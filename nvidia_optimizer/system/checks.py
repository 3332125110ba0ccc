"""System checks and validation

probe() gathers every fact the driver actions need into one immutable
SystemSnapshot.  Each sub-probe tolerates a missing tool or file; only a
missing NVIDIA GPU or an unsupported architecture stops the run here.
The APT component check is separate (require_repo_components) because
removal does not need it.
"""

import glob
import os
import re
from dataclasses import dataclass, field

from .. import config
from ..errors import NoGpuError, MissingRepoComponentsError, UnsupportedArchitectureError
from ..utils.logging import log_info, log_warn, log_step
from ..utils.system import query_command, get_os_info

# Components a Debian source needs for nvidia-driver and its firmware.
REQUIRED_COMPONENTS = ("contrib", "non-free")

_DISPLAY_CLASS = re.compile(r'VGA|3D|Display', re.IGNORECASE)
_VERSION_PATTERN = re.compile(r'^[0-9]+\.[0-9]+')

_MACHINE_TO_ARCH = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


@dataclass(frozen=True)
class GpuFact:
    vendor_match: bool
    description: str


@dataclass(frozen=True)
class SystemSnapshot:
    """Read-only facts about the machine, taken once per run"""
    gpu: GpuFact
    kernel_version: str
    session_type: str
    secure_boot_enabled: bool
    distro_codename: str
    distro_major: int
    arch: str
    driver_version: str | None = None
    repo_components_ok: bool = True
    pretty_name: str = "Unknown OS"
    advisories: tuple[str, ...] = field(default=())

    @property
    def installer_arch(self) -> str:
        """Architecture name used in NVIDIA download paths"""
        return "x86_64" if self.arch == "amd64" else "aarch64"


# ---------------------------------------------------------------------------
# Sub-probes
# ---------------------------------------------------------------------------

def detect_gpu(lspci_output: str | None) -> GpuFact:
    """Pick the NVIDIA display-class entries out of an lspci listing"""
    matches = []
    for line in (lspci_output or "").splitlines():
        if _DISPLAY_CLASS.search(line) and "nvidia" in line.lower():
            matches.append(line.strip())
    return GpuFact(vendor_match=bool(matches), description="\n".join(matches))


def detect_arch(query=query_command) -> str:
    """Debian architecture name, mapped from uname -m if dpkg is unavailable"""
    arch = query(["dpkg", "--print-architecture"])
    if not arch:
        arch = query(["uname", "-m"]) or "unknown"
    arch = arch.strip()
    if arch not in _MACHINE_TO_ARCH:
        raise UnsupportedArchitectureError(arch)
    return _MACHINE_TO_ARCH[arch]


def detect_driver_version(query=query_command) -> str | None:
    """Driver version from nvidia-smi, or None if it is absent or broken"""
    output = query(["nvidia-smi", "--query-gpu=driver_version", "--format=csv,noheader"])
    if output:
        version = output.splitlines()[0].strip()
        if _VERSION_PATTERN.match(version):
            return version
    return None


def detect_secure_boot(query=query_command) -> bool:
    output = query(["mokutil", "--sb-state"])
    return bool(output) and "SecureBoot enabled" in output


def _distro_major(os_info) -> int:
    match = re.match(r'(\d+)', os_info.get('VERSION_ID', ''))
    return int(match.group(1)) if match else 0


def probe(settings=None, query=query_command, environ=None) -> SystemSnapshot:
    """Collect a SystemSnapshot.

    Raises:
        NoGpuError: no NVIDIA display device on the PCI bus
        UnsupportedArchitectureError: neither amd64 nor arm64
    """
    settings = settings or config.Settings()
    environ = os.environ if environ is None else environ
    advisories: list[str] = []

    log_step("Gathering System Information")

    gpu = detect_gpu(query("lspci"))
    if not gpu.vendor_match:
        raise NoGpuError()
    log_info("NVIDIA GPU detected:")
    for line in gpu.description.splitlines():
        log_info(f"  {line}")

    kernel = query(["uname", "-r"]) or "unknown"
    session = environ.get("XDG_SESSION_TYPE") or "unknown"
    if "liquorix" in kernel:
        log_info("Liquorix kernel detected")
    if session == "wayland":
        advisories.append("Wayland session: the NVIDIA driver needs "
                          "nvidia-drm.modeset=1 for Wayland compositors")

    driver_version = detect_driver_version(query)
    if driver_version:
        log_info(f"Current NVIDIA driver: {driver_version}")
    else:
        log_info("No NVIDIA driver currently installed (or nvidia-smi not working)")

    secure_boot = detect_secure_boot(query)
    if secure_boot:
        advisories.append("Secure Boot is enabled: unsigned kernel modules may "
                          "fail to load until the DKMS key is enrolled (mokutil --import)")

    missing = missing_repo_components(settings)
    if missing:
        log_info(f"APT sources lack: {', '.join(missing)}")

    os_info = get_os_info(settings.path("/etc/os-release"))
    snapshot = SystemSnapshot(
        gpu=gpu,
        kernel_version=kernel,
        session_type=session,
        secure_boot_enabled=secure_boot,
        distro_codename=os_info.get('VERSION_CODENAME', 'unknown'),
        distro_major=_distro_major(os_info),
        arch=detect_arch(query),
        driver_version=driver_version,
        repo_components_ok=not missing,
        pretty_name=os_info.get('PRETTY_NAME', 'Unknown OS'),
        advisories=tuple(advisories),
    )

    for advisory in snapshot.advisories:
        log_warn(advisory)
    return snapshot


# ---------------------------------------------------------------------------
# APT sources
# ---------------------------------------------------------------------------

def _source_files(settings):
    files = []
    main_list = settings.path(config.APT_SOURCES_LIST)
    if os.path.isfile(main_list):
        files.append(main_list)
    sources_dir = settings.path(config.APT_SOURCES_DIR)
    files.extend(sorted(glob.glob(os.path.join(sources_dir, "*.list"))))
    files.extend(sorted(glob.glob(os.path.join(sources_dir, "*.sources"))))
    return files


def _one_line_entries(text):
    """Suite and component tokens of each active 'deb' line"""
    for line in text.splitlines():
        line = line.split('#', 1)[0].strip()
        if not line.startswith(("deb ", "deb-src ")):
            continue
        # Drop the [arch=... signed-by=...] option block
        line = re.sub(r'\[[^\]]*\]', ' ', line)
        tokens = line.split()
        # type, uri, suite, components...
        yield set(tokens[2:])


def _deb822_entries(text):
    """Suite and component tokens of each enabled deb822 stanza"""
    for stanza in re.split(r'\n\s*\n', text):
        fields = {}
        for line in stanza.splitlines():
            if line.lstrip().startswith('#') or ':' not in line:
                continue
            key, value = line.split(':', 1)
            fields[key.strip().lower()] = value.strip()
        if not fields or fields.get('enabled', 'yes').lower() == 'no':
            continue
        yield set(fields.get('suites', '').split()) | set(fields.get('components', '').split())


def source_tokens(settings=None):
    """Union of the suites and components across all APT source files"""
    settings = settings or config.Settings()
    tokens: set[str] = set()
    for path in _source_files(settings):
        try:
            with open(path, 'r') as fh:
                text = fh.read()
        except OSError as exc:
            log_warn(f"Cannot read {path}: {exc}")
            continue
        entries = _deb822_entries(text) if path.endswith(".sources") else _one_line_entries(text)
        for entry in entries:
            tokens |= entry
    return tokens


def missing_repo_components(settings=None) -> list[str]:
    tokens = source_tokens(settings)
    return [c for c in REQUIRED_COMPONENTS if c not in tokens]


def require_repo_components(settings=None) -> None:
    """Raise MissingRepoComponentsError unless contrib and non-free are enabled"""
    missing = missing_repo_components(settings)
    if missing:
        raise MissingRepoComponentsError(missing)
    log_info(f"APT components present: {', '.join(REQUIRED_COMPONENTS)}")


def suite_enabled(suite, settings=None) -> bool:
    """Whether any APT source references ``suite`` (e.g. trixie-backports)"""
    return suite in source_tokens(settings)


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------

def display_snapshot(snapshot: SystemSnapshot) -> None:
    """Display system information in a formatted way"""
    print("\n" + "=" * 60)
    print("                    SYSTEM INFORMATION")
    print("=" * 60)

    print(f"\n  Operating System: {snapshot.pretty_name}")
    print(f"  Codename:         {snapshot.distro_codename} ({snapshot.distro_major})")
    print(f"  Architecture:     {snapshot.arch}")
    print(f"  Kernel:           {snapshot.kernel_version}")
    print(f"  Session:          {snapshot.session_type}")
    for i, line in enumerate(snapshot.gpu.description.splitlines()):
        label = "GPU:" if i == 0 else ""
        print(f"  {label:<18}{line}")
    print(f"  NVIDIA Driver:    {snapshot.driver_version or 'not installed'}")
    print(f"  Secure Boot:      {'enabled' if snapshot.secure_boot_enabled else 'disabled or unknown'}")
    print(f"  contrib/non-free: {'enabled' if snapshot.repo_components_ok else 'missing'}")

    print("\n" + "=" * 60)
