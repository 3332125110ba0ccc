"""Tests for nvidia_optimizer.utils.prompts."""

from __future__ import annotations

import io

import pytest

from nvidia_optimizer.errors import PromptUnavailableError
from nvidia_optimizer.utils import prompts


class FakeTty(io.StringIO):
    def isatty(self):
        return True


@pytest.fixture
def answers(monkeypatch):
    def _answers(*lines):
        monkeypatch.setattr("sys.stdin", FakeTty("".join(f"{line}\n" for line in lines)))

    return _answers


def test_no_terminal_raises(monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO("y\n"))
    with pytest.raises(PromptUnavailableError):
        prompts.prompt_yes_no("Kill dpkg?")


def test_eof_raises(answers):
    answers()
    with pytest.raises(PromptUnavailableError):
        prompts.prompt_choice("Enter choice", ["a", "b"])


@pytest.mark.parametrize("reply,default,expected", [
    ("y", "n", True),
    ("NO", "y", False),
    ("", "y", True),
    ("", "n", False),
])
def test_yes_no(answers, reply, default, expected):
    answers(reply)
    assert prompts.prompt_yes_no("Continue?", default=default) is expected


def test_yes_no_asks_again(answers):
    answers("maybe", "yes")
    assert prompts.prompt_yes_no("Continue?") is True


@pytest.mark.parametrize("reply,expected", [("1", 0), ("4", 3), ("0", None), ("7", None), ("x", None)])
def test_choice(answers, reply, expected):
    answers(reply)
    assert prompts.prompt_choice("Enter choice", ["a", "b", "c", "d"]) == expected


def test_choice_default(answers):
    answers("")
    assert prompts.prompt_choice("Enter choice", ["a", "b"], default=1) == 1
