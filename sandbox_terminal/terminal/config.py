"""
Configuration management for the terminal service.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

from .policy import (
    DEFAULT_ALLOWED_COMMANDS,
    DEFAULT_BLOCKED_COMMANDS,
    DEFAULT_BLOCKED_PATTERNS,
    DEFAULT_DANGEROUS_COMMANDS,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "SANDBOX_TERMINAL_"

# Settings that may be overridden from the environment (SANDBOX_TERMINAL_<KEY>)
_INT_KEYS = (
    "max_sessions",
    "idle_timeout_ms",
    "default_timeout_ms",
    "max_timeout_ms",
    "max_output_entries",
    "kill_grace_ms",
    "max_captured_chars",
)


class TerminalConfig:
    """Manages terminal service configuration and persistence."""

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        overrides: Optional[dict[str, Any]] = None,
    ):
        """
        Initialize terminal configuration.

        Args:
            config_dir: Directory to store the config (default: ~/.sandbox_terminal)
            overrides: Values applied on top of the loaded config; not persisted
        """
        if config_dir is None:
            config_dir = Path.home() / ".sandbox_terminal"

        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "terminal_config.json"
        self.env_file = self.config_dir / ".env"

        # Default configuration
        self._config = {
            "max_sessions": 10,
            "idle_timeout_ms": 30 * 60 * 1000,
            "default_timeout_ms": 30_000,
            "max_timeout_ms": 120_000,
            "max_output_entries": 1000,
            # SIGKILL follows SIGTERM after this grace period
            "kill_grace_ms": 2000,
            # Trailing characters of stdout/stderr kept in a result
            "max_captured_chars": 1_000_000,
            "allowed_commands": list(DEFAULT_ALLOWED_COMMANDS),
            "dangerous_commands": list(DEFAULT_DANGEROUS_COMMANDS),
            "blocked_commands": list(DEFAULT_BLOCKED_COMMANDS),
            "blocked_patterns": list(DEFAULT_BLOCKED_PATTERNS),
        }
        self._overrides: dict[str, Any] = {}

        self._load()
        self._apply_env_overrides()
        if overrides:
            self._overrides.update(overrides)

    def _load(self):
        """Load configuration from disk."""
        if self.config_file.exists():
            try:
                with open(self.config_file) as f:
                    loaded = json.load(f)
                    self._config.update(loaded)
            except Exception as e:
                logger.warning(f"Failed to load terminal config: {e}")

    def _apply_env_overrides(self):
        """Apply SANDBOX_TERMINAL_* variables, reading the config dir's .env first."""
        if self.env_file.exists():
            load_dotenv(self.env_file, override=False)

        for key in _INT_KEYS:
            raw = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
            if raw is None:
                continue
            try:
                self._overrides[key] = int(raw)
            except ValueError:
                logger.warning(f"Ignoring non-integer {ENV_PREFIX}{key.upper()}={raw!r}")

    def save(self):
        """Save configuration to disk."""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w") as f:
                json.dump(self._config, f, indent=2)
        except Exception as e:
            logger.error(f"Failed to save terminal config: {e}")

    def _get(self, key: str):
        if key in self._overrides:
            return self._overrides[key]
        return self._config.get(key)

    def _set(self, key: str, value):
        self._overrides.pop(key, None)
        self._config[key] = value
        self.save()

    @property
    def max_sessions(self) -> int:
        """Maximum number of concurrent sessions."""
        return self._get("max_sessions")

    @max_sessions.setter
    def max_sessions(self, value: int):
        if value < 1:
            raise ValueError("max_sessions must be at least 1")
        self._set("max_sessions", value)

    @property
    def idle_timeout_ms(self) -> int:
        """Idle window after which a session is destroyed."""
        return self._get("idle_timeout_ms")

    @idle_timeout_ms.setter
    def idle_timeout_ms(self, value: int):
        self._set("idle_timeout_ms", value)

    @property
    def default_timeout_ms(self) -> int:
        """Command timeout used when the caller does not request one."""
        return self._get("default_timeout_ms")

    @default_timeout_ms.setter
    def default_timeout_ms(self, value: int):
        self._set("default_timeout_ms", value)

    @property
    def max_timeout_ms(self) -> int:
        """Upper bound on any command timeout."""
        return self._get("max_timeout_ms")

    @max_timeout_ms.setter
    def max_timeout_ms(self, value: int):
        self._set("max_timeout_ms", value)

    @property
    def max_output_entries(self) -> int:
        return self._get("max_output_entries")

    @max_output_entries.setter
    def max_output_entries(self, value: int):
        self._set("max_output_entries", value)

    @property
    def kill_grace_ms(self) -> int:
        return self._get("kill_grace_ms")

    @kill_grace_ms.setter
    def kill_grace_ms(self, value: int):
        self._set("kill_grace_ms", value)

    @property
    def max_captured_chars(self) -> int:
        return self._get("max_captured_chars")

    @max_captured_chars.setter
    def max_captured_chars(self, value: int):
        self._set("max_captured_chars", value)

    @property
    def allowed_commands(self) -> list[str]:
        """Get the command allowlist."""
        return list(self._get("allowed_commands") or [])

    def add_allowed_command(self, command: str):
        """Add a command to the allowlist."""
        self._add_to_list("allowed_commands", command)

    def remove_allowed_command(self, command: str):
        """Remove a command from the allowlist."""
        self._remove_from_list("allowed_commands", command)

    @property
    def dangerous_commands(self) -> list[str]:
        """Get the commands that need safety confirmation."""
        return list(self._get("dangerous_commands") or [])

    def add_dangerous_command(self, command: str):
        self._add_to_list("dangerous_commands", command)

    def remove_dangerous_command(self, command: str):
        self._remove_from_list("dangerous_commands", command)

    @property
    def blocked_commands(self) -> list[str]:
        """Get the command blocklist."""
        return list(self._get("blocked_commands") or [])

    def add_blocked_command(self, command: str):
        self._add_to_list("blocked_commands", command)

    def remove_blocked_command(self, command: str):
        self._remove_from_list("blocked_commands", command)

    @property
    def blocked_patterns(self) -> list[str]:
        """Get the full-line regex patterns that are always rejected."""
        return list(self._get("blocked_patterns") or [])

    def _update_list(self, key: str, update):
        # Persist against the stored list; an instance override is edited in place
        stored = list(self._config.get(key) or [])
        updated = update(stored)
        if updated != stored:
            self._config[key] = updated
            self.save()
        if key in self._overrides:
            self._overrides[key] = update(list(self._overrides[key] or []))

    def _add_to_list(self, key: str, value: str):
        self._update_list(key, lambda values: values if value in values else [*values, value])

    def _remove_from_list(self, key: str, value: str):
        self._update_list(key, lambda values: [v for v in values if v != value])

    def get_status(self) -> dict:
        """Get current configuration as a dictionary."""
        return {
            "max_sessions": self.max_sessions,
            "idle_timeout_ms": self.idle_timeout_ms,
            "default_timeout_ms": self.default_timeout_ms,
            "max_timeout_ms": self.max_timeout_ms,
            "max_output_entries": self.max_output_entries,
            "kill_grace_ms": self.kill_grace_ms,
            "max_captured_chars": self.max_captured_chars,
            "allowed_commands_count": len(self.allowed_commands),
            "dangerous_commands_count": len(self.dangerous_commands),
            "blocked_commands_count": len(self.blocked_commands),
            "blocked_patterns": self.blocked_patterns,
        }
