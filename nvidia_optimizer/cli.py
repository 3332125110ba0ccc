"""NVIDIA Optimizer - Command Line Interface

Entry point for the nvidia-optimizer CLI command and python3 -m nvidia_optimizer.
Presents one menu, runs the selected action once and exits: 0 when the
system reached the selected state, 1 otherwise.
"""

import os
import sys
import traceback

from nvidia_optimizer.config import Settings
from nvidia_optimizer.errors import OptimizerError
from nvidia_optimizer.utils.logging import (
    log_error, log_info, log_step, log_success, log_warn, start_transcript, stop_transcript,
)
from nvidia_optimizer.utils.prompts import prompt_choice, prompt_yes_no
from nvidia_optimizer.system.checks import probe, display_snapshot
from nvidia_optimizer.nvidia.drivers import DriverTarget, Reconciler
from nvidia_optimizer.nvidia.cuda_toolkit import install_cuda_toolkit


# ---------------------------------------------------------------------------
# Menu (stable numbering: 1-4 match the original shell tool)
# ---------------------------------------------------------------------------

ACTION_CUDA_TOOLKIT = "cuda_toolkit"

MENU: list[tuple[str, object]] = [
    ("Install stable Debian NVIDIA driver", DriverTarget.STABLE_REPO),
    ("Install latest official NVIDIA driver (.run installer)", DriverTarget.ADVANCED_RUN_INSTALLER),
    ("Enable open-source nouveau driver", DriverTarget.OPEN_SOURCE),
    ("Remove NVIDIA driver and clean system", DriverTarget.REMOVED),
    ("Install NVIDIA driver from Debian backports", DriverTarget.BACKPORTS),
    ("Install CUDA Toolkit (NVIDIA repository)", ACTION_CUDA_TOOLKIT),
]


def show_banner() -> None:
    """Display application banner."""
    banner = """
╔══════════════════════════════════════════════════════════════╗
║                 NVIDIA Optimizer for Debian                  ║
║           Driver, nouveau and CUDA state management          ║
╚══════════════════════════════════════════════════════════════╝
"""
    print(banner)


def select_action():
    """Show the menu and return the chosen MENU action, or None if invalid."""
    print("\n" + "-" * 60)
    print(" Choose your action:")
    print("-" * 60)
    for i, (label, _action) in enumerate(MENU, 1):
        print(f"  {i}. {label}")
    print("-" * 60)

    index = prompt_choice("Enter choice", [label for label, _ in MENU])
    if index is None:
        return None
    return MENU[index][1]


def run_action(action, snapshot, settings) -> bool:
    """Execute one menu action.  Returns True on success."""
    if action == ACTION_CUDA_TOOLKIT:
        install_cuda_toolkit(snapshot, settings)
        return True

    result = Reconciler(action, settings, snapshot=snapshot).run()
    if result.resolved_version:
        log_info(f"Driver version: {result.resolved_version}")
    for advisory in result.advisories:
        log_warn(f"Note: {advisory}")
    return result.ok


def show_summary(settings) -> None:
    """Show post-installation summary and next steps."""
    print("\n" + "=" * 60)
    log_success("All tasks completed successfully.")
    print(f"  Log file:      {settings.log_file}")
    print("  Reboot system: sudo reboot")
    print("  Verify driver: nvidia-smi")
    print("=" * 60)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    """Main process."""
    settings = Settings.from_env()
    try:
        # Check if running as root
        if os.geteuid() != 0:
            log_error("This script must be run as root (sudo).")
            sys.exit(1)

        start_transcript(settings.log_file)
        show_banner()

        snapshot = probe(settings)
        display_snapshot(snapshot)

        action = select_action()
        if action is None:
            log_error("Invalid choice.")
            sys.exit(1)

        label = next(text for text, item in MENU if item == action)
        log_step(f"Running: {label}")
        if not run_action(action, snapshot, settings):
            log_error(f"Failed. Full transcript: {settings.log_file}")
            sys.exit(1)

        show_summary(settings)
        if action != ACTION_CUDA_TOOLKIT and prompt_yes_no("Would you like to reboot now?", default='n'):
            os.system("reboot")

    except KeyboardInterrupt:
        print()
        log_info("Cancelled.")
        sys.exit(1)
    except OptimizerError as e:
        log_error(str(e))
        if e.hint:
            log_info(f"Hint: {e.hint}")
        sys.exit(1)
    except Exception as e:
        log_error(f"Installation failed: {str(e)}")
        log_error(f"Traceback: {traceback.format_exc()}")
        sys.exit(1)
    finally:
        stop_transcript()


if __name__ == "__main__":
    main()
