"""Shared fixtures for terminal tests."""

import shlex
import sys
from pathlib import Path

from sandbox_terminal.terminal.config import TerminalConfig
from sandbox_terminal.terminal.policy import DEFAULT_ALLOWED_COMMANDS

PYTHON = shlex.quote(sys.executable)

# Commands the tests need on top of the default allowlist
TEST_ALLOWED_COMMANDS = [*DEFAULT_ALLOWED_COMMANDS, "sleep", sys.executable]


def make_config(config_dir, **overrides) -> TerminalConfig:
    """A config rooted in ``config_dir`` that also allows ``sleep`` and this interpreter."""
    overrides.setdefault("allowed_commands", TEST_ALLOWED_COMMANDS)
    return TerminalConfig(config_dir=Path(config_dir), overrides=overrides)


def python_command(code: str, *args: str) -> str:
    """Command line running ``code`` with the current interpreter."""
    return " ".join([PYTHON, "-c", shlex.quote(code), *(shlex.quote(a) for a in args)])
