"""Interactive prompt utilities

Every prompt requires a terminal on stdin.  Without one (or on EOF) the
prompt raises PromptUnavailableError instead of waiting forever.
"""

import sys

from ..errors import PromptUnavailableError
from .logging import log_prompt, log_error


def _read_answer(prompt):
    """Read one line from an interactive stdin"""
    if not sys.stdin or not sys.stdin.isatty():
        raise PromptUnavailableError(prompt)
    try:
        return input().strip()
    except EOFError:
        raise PromptUnavailableError(prompt) from None


def prompt_yes_no(prompt, default='y'):
    """
    Interactive yes/no prompt

    Args:
        prompt: Question to ask
        default: Default answer ('y' or 'n')

    Returns:
        bool: True for yes, False for no
    """
    hint = "[Y/n]" if default == 'y' else "[y/N]"
    while True:
        log_prompt(f"{prompt} {hint}: ")
        response = _read_answer(prompt)
        response = response or default

        if response.lower() in ['y', 'yes']:
            return True
        elif response.lower() in ['n', 'no']:
            return False
        else:
            log_error("Please answer yes or no.")


def prompt_choice(prompt, choices, default=None):
    """
    Interactive multiple choice prompt

    Args:
        prompt: Question to ask
        choices: List of choices
        default: Default choice index (0-based)

    Returns:
        int: Index of selected choice, or None for an invalid answer
    """
    if default is not None:
        log_prompt(f"{prompt} [1-{len(choices)}, default: {default + 1}]: ")
    else:
        log_prompt(f"{prompt} [1-{len(choices)}]: ")

    response = _read_answer(prompt)

    if not response and default is not None:
        return default

    try:
        choice_num = int(response)
    except ValueError:
        log_error(f"Invalid choice: {response!r}")
        return None
    if 1 <= choice_num <= len(choices):
        return choice_num - 1
    log_error(f"Please enter a number between 1 and {len(choices)}")
    return None
