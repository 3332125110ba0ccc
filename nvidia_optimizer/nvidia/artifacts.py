"""Configuration files managed by NVIDIA Optimizer.

Writes are idempotent: a file is only touched when its content would
change, and an existing file is copied to ``<path>.backup.<timestamp>``
before it is replaced.  Backups are never overwritten.
"""

import enum
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from datetime import datetime

from .. import config
from ..errors import ArtifactIOError
from ..utils.logging import log_info, log_warn


class WriteResult(enum.Enum):
    WRITTEN = "written"
    UNCHANGED = "unchanged"


class RemoveResult(enum.Enum):
    REMOVED = "removed"
    ALREADY_ABSENT = "already_absent"


@dataclass(frozen=True)
class ConfigArtifact:
    """A small managed file.

    ``presence_only`` artifacts are written once and then left alone, even
    if their content differs from what we would write.
    """
    name: str
    path: str
    mode: int = 0o644
    backup: bool = True
    presence_only: bool = False


BLACKLIST = ConfigArtifact("nouveau blacklist", config.BLACKLIST_CONF)
XORG_DRIVER = ConfigArtifact("X11 driver selection", config.XORG_SNIPPET)
CUDA_PROFILE = ConfigArtifact("CUDA environment", config.CUDA_PROFILE_SCRIPT,
                              presence_only=True)
CUDA_SOURCE = ConfigArtifact("CUDA APT source", config.CUDA_SOURCE_LIST)


# ---------------------------------------------------------------------------
# Content builders
# ---------------------------------------------------------------------------

def blacklist_content() -> str:
    return "blacklist nouveau\noptions nouveau modeset=0\n"


def xorg_driver_content(driver: str) -> str:
    return (
        'Section "Device"\n'
        '    Identifier "GPU0"\n'
        f'    Driver "{driver}"\n'
        'EndSection\n'
    )


def cuda_profile_content() -> str:
    return (
        '# CUDA Toolkit environment (managed by nvidia-optimizer)\n'
        'if [ -d /usr/local/cuda/bin ]; then\n'
        '    export PATH="/usr/local/cuda/bin${PATH:+:$PATH}"\n'
        'fi\n'
        'if [ -d /usr/local/cuda/lib64 ]; then\n'
        '    export LD_LIBRARY_PATH="/usr/local/cuda/lib64${LD_LIBRARY_PATH:+:$LD_LIBRARY_PATH}"\n'
        'fi\n'
    )


def cuda_source_content(arch: str, codename: str, repo_url: str,
                        keyring: str = config.CUDA_KEYRING) -> str:
    return (
        f"# NVIDIA CUDA repository for Debian {codename} (managed by nvidia-optimizer)\n"
        f"deb [arch={arch} signed-by={keyring}] {repo_url} /\n"
    )


# ---------------------------------------------------------------------------
# Writer
# ---------------------------------------------------------------------------

class ConfigWriter:
    """Applies ConfigArtifacts below ``settings.root``"""

    def __init__(self, settings=None, clock=datetime.now):
        self.settings = settings or config.Settings()
        self._clock = clock

    def path(self, artifact: ConfigArtifact) -> str:
        return self.settings.path(artifact.path)

    def read(self, artifact: ConfigArtifact) -> str | None:
        path = self.path(artifact)
        try:
            with open(path, 'r') as fh:
                return fh.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ArtifactIOError(path, exc) from exc

    def exists(self, artifact: ConfigArtifact) -> bool:
        return os.path.exists(self.path(artifact))

    def write(self, artifact: ConfigArtifact, content: str) -> WriteResult:
        """Make ``artifact`` hold ``content``.

        Raises:
            ArtifactIOError: the file could not be read, backed up or written
        """
        path = self.path(artifact)
        current = self.read(artifact)

        if current is not None and (artifact.presence_only or current == content):
            log_info(f"{artifact.name} already up to date: {path}")
            return WriteResult.UNCHANGED

        try:
            if current is not None and artifact.backup:
                backup_path = self._backup(path)
                log_info(f"Created backup: {backup_path}")
            self._atomic_write(path, content, artifact.mode)
        except OSError as exc:
            raise ArtifactIOError(path, exc) from exc

        log_info(f"Wrote {artifact.name}: {path}")
        return WriteResult.WRITTEN

    def remove(self, artifact: ConfigArtifact) -> RemoveResult:
        path = self.path(artifact)
        try:
            os.remove(path)
        except FileNotFoundError:
            return RemoveResult.ALREADY_ABSENT
        except OSError as exc:
            raise ArtifactIOError(path, exc) from exc
        log_info(f"Removed {artifact.name}: {path}")
        return RemoveResult.REMOVED

    def _backup(self, path: str) -> str:
        # Second resolution; a counter keeps same-second backups apart
        stamp = self._clock().strftime("%Y%m%d_%H%M%S")
        backup_path = f"{path}.backup.{stamp}"
        counter = 1
        while os.path.exists(backup_path):
            backup_path = f"{path}.backup.{stamp}.{counter}"
            counter += 1
        shutil.copy2(path, backup_path)
        return backup_path

    @staticmethod
    def _atomic_write(path: str, content: str, mode: int) -> None:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".nvidia-optimizer.")
        try:
            with os.fdopen(fd, 'w') as fh:
                fh.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

    def patch_legacy_xorg_conf(self, driver: str) -> bool:
        """Repoint a hand-written /etc/X11/xorg.conf away from ``Driver "nvidia"``.

        Returns:
            True if the file was rewritten.
        """
        path = self.settings.path(config.XORG_CONF)
        if driver == "nvidia" or not os.path.isfile(path):
            return False
        try:
            with open(path, 'r') as fh:
                content = fh.read()
            pattern = re.compile(r'Driver\s*"nvidia"')
            if not pattern.search(content):
                return False
            log_warn(f"NVIDIA driver still active in {path}")
            backup_path = self._backup(path)
            log_info(f"Created backup: {backup_path}")
            mode = os.stat(path).st_mode & 0o777
            self._atomic_write(path, pattern.sub(f'Driver "{driver}"', content), mode)
        except OSError as exc:
            raise ArtifactIOError(path, exc) from exc
        log_info(f'xorg.conf patched: Driver "{driver}"')
        return True
