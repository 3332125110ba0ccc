"""Error types raised by NVIDIA Optimizer.

Every fatal condition is an OptimizerError subclass.  The CLI catches the
base class, prints the message and exits non-zero.  Nothing here rolls
back mutations that were already applied when the error was raised.
"""


class OptimizerError(Exception):
    """Base class for fatal errors; ``hint`` is an optional remediation."""

    def __init__(self, message: str, hint: str | None = None):
        super().__init__(message)
        self.hint = hint


# ---------------------------------------------------------------------------
# Pre-flight
# ---------------------------------------------------------------------------

class ProbeError(OptimizerError):
    """A system precondition is not met."""


class NoGpuError(ProbeError):
    def __init__(self):
        super().__init__("No NVIDIA GPU detected (lspci shows no NVIDIA display device)")


class MissingRepoComponentsError(ProbeError):
    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(
            f"APT sources are missing required component(s): {', '.join(self.missing)}",
            hint="Add 'contrib non-free' to the Components of your Debian "
                 "entries in /etc/apt/sources.list (or the .sources files), "
                 "then run apt-get update",
        )


class UnsupportedArchitectureError(ProbeError):
    def __init__(self, arch: str):
        self.arch = arch
        super().__init__(f"Unsupported CPU architecture: {arch} (need amd64 or arm64)")


# ---------------------------------------------------------------------------
# Package manager lock
# ---------------------------------------------------------------------------

class LockError(OptimizerError):
    """The package manager lock could not be obtained."""


class LockTimeoutError(LockError):
    def __init__(self, waited: int, processes: list[str]):
        self.waited = waited
        self.processes = list(processes)
        super().__init__(
            f"Package manager still busy after {waited}s ({', '.join(self.processes)})"
        )


class LockUserAbortedError(LockError):
    def __init__(self, reason: str):
        super().__init__(f"Aborted by operator: {reason}")


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

class ReconcileError(OptimizerError):
    """A step of the driver state transition failed."""


class BackportsUnavailableError(ReconcileError):
    def __init__(self, suite: str, detail: str = ""):
        self.suite = suite
        message = f"The {suite} channel is not available"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(
            message,
            hint=f"Enable it by adding a line such as 'deb http://deb.debian.org/debian "
                 f"{suite} main contrib non-free non-free-firmware' to "
                 f"/etc/apt/sources.list.d/backports.list, run apt-get update, "
                 f"then try again",
        )


class PackageOperationFailedError(ReconcileError):
    def __init__(self, command: str, returncode: int | None = None):
        self.command = command
        self.returncode = returncode
        status = f" (exit status {returncode})" if returncode is not None else ""
        super().__init__(f"Package operation failed{status}: {command}")


# ---------------------------------------------------------------------------
# Files and terminal
# ---------------------------------------------------------------------------

class ArtifactIOError(OptimizerError):
    def __init__(self, path: str, cause: OSError):
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot update {path}: {cause}")


class PromptUnavailableError(OptimizerError):
    def __init__(self, prompt: str):
        super().__init__(
            f"No interactive terminal to answer: {prompt!r}",
            hint="Run nvidia-optimizer from an interactive root shell",
        )
