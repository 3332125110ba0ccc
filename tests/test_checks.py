"""Tests for nvidia_optimizer.system.checks: System Probe and APT sources."""

from __future__ import annotations

import pytest

from nvidia_optimizer.errors import (
    MissingRepoComponentsError,
    NoGpuError,
    UnsupportedArchitectureError,
)
from nvidia_optimizer.system.checks import (
    detect_arch,
    detect_gpu,
    missing_repo_components,
    probe,
    require_repo_components,
    suite_enabled,
)

LSPCI = """\
00:02.0 VGA compatible controller: Intel Corporation Raptor Lake-S GT1 [UHD Graphics 770] (rev 04)
01:00.0 VGA compatible controller: NVIDIA Corporation AD104 [GeForce RTX 4070] (rev a1)
01:00.1 Audio device: NVIDIA Corporation AD104 High Definition Audio Controller (rev a1)
"""

OS_RELEASE = """\
PRETTY_NAME="Debian GNU/Linux 13 (trixie)"
NAME="Debian GNU/Linux"
VERSION_ID="13"
VERSION_CODENAME=trixie
ID=debian
"""


def _query(responses):
    """Fake query_command keyed by the first word of the command."""

    def query(cmd):
        key = cmd if isinstance(cmd, str) else cmd[0]
        return responses.get(key)

    return query


BASE_RESPONSES = {
    "lspci": LSPCI,
    "uname": "6.12.38+deb13-amd64",
    "dpkg": "amd64",
}


# ---------------------------------------------------------------------------
# GPU
# ---------------------------------------------------------------------------

class TestDetectGpu:
    def test_matches_only_nvidia_display_entries(self):
        fact = detect_gpu(LSPCI)
        assert fact.vendor_match is True
        assert fact.description == (
            "01:00.0 VGA compatible controller: NVIDIA Corporation AD104 [GeForce RTX 4070] (rev a1)"
        )

    def test_3d_controller_counts(self):
        fact = detect_gpu("03:00.0 3D controller: NVIDIA Corporation GA100 [A100 PCIe 40GB]")
        assert fact.vendor_match is True

    def test_case_insensitive_vendor(self):
        assert detect_gpu("01:00.0 VGA compatible controller: nvidia corp thing").vendor_match

    @pytest.mark.parametrize("output", [None, "", "00:02.0 VGA compatible controller: Intel Corporation UHD"])
    def test_no_match(self, output):
        assert detect_gpu(output).vendor_match is False


class TestDetectArch:
    def test_dpkg_architecture(self):
        assert detect_arch(_query({"dpkg": "arm64"})) == "arm64"

    def test_falls_back_to_uname(self):
        assert detect_arch(_query({"uname": "x86_64"})) == "amd64"

    def test_unsupported(self):
        with pytest.raises(UnsupportedArchitectureError):
            detect_arch(_query({"dpkg": "armhf"}))


# ---------------------------------------------------------------------------
# probe()
# ---------------------------------------------------------------------------

class TestProbe:
    @pytest.fixture(autouse=True)
    def _os_release(self, write):
        write("/etc/os-release", OS_RELEASE)

    def test_full_snapshot(self, settings):
        responses = dict(BASE_RESPONSES, **{
            "nvidia-smi": "550.163.01",
            "mokutil": "SecureBoot disabled",
        })
        snap = probe(settings, query=_query(responses), environ={"XDG_SESSION_TYPE": "x11"})

        assert snap.gpu.vendor_match
        assert snap.kernel_version == "6.12.38+deb13-amd64"
        assert snap.session_type == "x11"
        assert snap.driver_version == "550.163.01"
        assert snap.secure_boot_enabled is False
        assert snap.distro_codename == "trixie"
        assert snap.distro_major == 13
        assert snap.arch == "amd64"
        assert snap.installer_arch == "x86_64"
        assert snap.repo_components_ok is False
        assert snap.advisories == ()

    def test_missing_tools_are_not_fatal(self, settings):
        snap = probe(settings, query=_query(BASE_RESPONSES), environ={})

        assert snap.session_type == "unknown"
        assert snap.driver_version is None
        assert snap.secure_boot_enabled is False

    def test_no_gpu_is_fatal(self, settings):
        responses = dict(BASE_RESPONSES, lspci="00:02.0 VGA compatible controller: Intel")
        with pytest.raises(NoGpuError):
            probe(settings, query=_query(responses), environ={})

    def test_secure_boot_and_wayland_are_advisories(self, settings):
        responses = dict(BASE_RESPONSES, mokutil="SecureBoot enabled")
        snap = probe(settings, query=_query(responses), environ={"XDG_SESSION_TYPE": "wayland"})

        assert snap.secure_boot_enabled is True
        assert len(snap.advisories) == 2
        assert any("Secure Boot" in a for a in snap.advisories)
        assert any("Wayland" in a for a in snap.advisories)

    def test_repo_components_recorded(self, settings, debian_sources):
        assert probe(settings, query=_query(BASE_RESPONSES), environ={}).repo_components_ok is True

    def test_broken_nvidia_smi_output_is_ignored(self, settings):
        responses = dict(BASE_RESPONSES, **{
            "nvidia-smi": "Failed to initialize NVML: Driver/library version mismatch",
        })
        assert probe(settings, query=_query(responses), environ={}).driver_version is None


# ---------------------------------------------------------------------------
# APT components
# ---------------------------------------------------------------------------

class TestRepoComponents:
    def test_both_present_in_one_line(self, settings, debian_sources):
        assert missing_repo_components(settings) == []
        require_repo_components(settings)

    def test_no_sources_at_all(self, settings):
        with pytest.raises(MissingRepoComponentsError) as excinfo:
            require_repo_components(settings)
        assert excinfo.value.missing == ["contrib", "non-free"]
        assert excinfo.value.hint

    def test_non_free_firmware_is_not_non_free(self, settings, write):
        write("/etc/apt/sources.list",
              "deb http://deb.debian.org/debian trixie main contrib non-free-firmware\n")
        assert missing_repo_components(settings) == ["non-free"]

    def test_markers_split_across_files_in_any_order(self, settings, write):
        write("/etc/apt/sources.list", "deb http://deb.debian.org/debian trixie non-free main\n")
        write("/etc/apt/sources.list.d/extra.list",
              "deb [arch=amd64] http://deb.debian.org/debian trixie-updates contrib\n")
        assert missing_repo_components(settings) == []

    def test_commented_lines_do_not_count(self, settings, write):
        write("/etc/apt/sources.list",
              "deb http://deb.debian.org/debian trixie main\n"
              "# deb http://deb.debian.org/debian trixie contrib non-free\n"
              "deb http://deb.debian.org/debian trixie main contrib # non-free\n")
        assert missing_repo_components(settings) == ["non-free"]

    def test_deb822_sources(self, settings, write):
        write("/etc/apt/sources.list.d/debian.sources",
              "Types: deb\n"
              "URIs: http://deb.debian.org/debian\n"
              "Suites: trixie trixie-updates\n"
              "Components: main non-free-firmware non-free contrib\n"
              "Signed-By: /usr/share/keyrings/debian-archive-keyring.gpg\n")
        assert missing_repo_components(settings) == []

    def test_disabled_deb822_stanza_is_ignored(self, settings, write):
        write("/etc/apt/sources.list.d/debian.sources",
              "Types: deb\n"
              "URIs: http://deb.debian.org/debian\n"
              "Suites: trixie\n"
              "Components: main\n"
              "\n"
              "Enabled: no\n"
              "Types: deb\n"
              "URIs: http://deb.debian.org/debian\n"
              "Suites: trixie\n"
              "Components: contrib non-free\n")
        assert missing_repo_components(settings) == ["contrib", "non-free"]


class TestSuiteEnabled:
    def test_backports_line(self, settings, write):
        write("/etc/apt/sources.list.d/backports.list",
              "deb http://deb.debian.org/debian trixie-backports main contrib non-free\n")
        assert suite_enabled("trixie-backports", settings) is True

    def test_absent(self, settings, debian_sources):
        assert suite_enabled("trixie-backports", settings) is False
