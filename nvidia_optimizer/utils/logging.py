"""Logging utilities for NVIDIA Optimizer

Console output is colored and tagged.  Once start_transcript() has been
called every line is also appended, uncolored and timestamped, to the
run log file so a full transcript survives any outcome.
"""

import os
from datetime import datetime


class Colors:
    """ANSI color codes for terminal output"""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[1;31m'
    GREEN = '\033[1;32m'
    YELLOW = '\033[1;33m'
    BLUE = '\033[1;34m'
    CYAN = '\033[1;36m'


_transcript = None


def start_transcript(path):
    """Append all further log output to ``path``.

    Returns:
        bool: True if the transcript file could be opened
    """
    global _transcript
    stop_transcript()
    try:
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        _transcript = open(path, "a", encoding="utf-8")
    except OSError as exc:
        log_warn(f"Cannot write log file {path}: {exc}")
        return False
    _record("----", f"nvidia-optimizer run started (pid {os.getpid()})")
    return True


def stop_transcript():
    """Close the transcript file if one is open"""
    global _transcript
    if _transcript is not None:
        _transcript.close()
        _transcript = None


def _record(tag, message):
    if _transcript is None:
        return
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    _transcript.write(f"{stamp} {tag} {message}\n")
    _transcript.flush()


def log_info(message):
    """Log info message in green"""
    print(f"{Colors.GREEN}[INFO]  {message}{Colors.RESET}")
    _record("[INFO] ", message)


def log_warn(message):
    """Log warning message in yellow"""
    print(f"{Colors.YELLOW}[WARN]  {message}{Colors.RESET}")
    _record("[WARN] ", message)


def log_error(message):
    """Log error message in red"""
    print(f"{Colors.RED}[ERROR] {message}{Colors.RESET}")
    _record("[ERROR]", message)


def log_prompt(message):
    """Log prompt message in cyan"""
    print(f"{Colors.CYAN}[INPUT] {message}{Colors.RESET}", end='', flush=True)
    _record("[INPUT]", message)


def log_step(message):
    """Log step message in blue with newline before"""
    print(f"\n{Colors.BLUE}[STEP]  {message}{Colors.RESET}")
    _record("[STEP] ", message)


def log_success(message):
    """Log success message in bold green"""
    print(f"{Colors.BOLD}{Colors.GREEN}✓ {message}{Colors.RESET}")
    _record("[OK]   ", message)
