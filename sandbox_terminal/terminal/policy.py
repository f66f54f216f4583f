"""
Admission control for terminal commands.

Every command is classified before anything is spawned. Precedence is strict:
Blocked > RequiresConfirmation > Allowed, and the allowlist is a closed
world. A confirmed dangerous command still has to pass the allowlist.
"""

import logging
import os
import re
import shlex
from typing import Iterable, Literal, Optional

from pydantic import BaseModel

from .errors import (
    InvalidCommandError,
    PolicyBlockedError,
    PolicyNotAllowlistedError,
    PolicyRequiresConfirmationError,
)

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_COMMANDS = [
    # Basic system commands
    "ls", "cat", "echo", "pwd", "whoami", "which", "head", "tail", "grep",
    "find", "wc", "sort", "uniq", "du", "df", "free", "uname", "lscpu",
    "ps", "top", "tree", "file", "stat", "date", "uptime", "env", "printenv",
    # Interpreters and compilers
    "node", "python", "python3", "java", "javac", "gcc", "g++", "clang", "clang++",
    "rustc", "go", "php", "ruby", "perl", "lua", "bash", "sh", "zsh",
    # Package managers
    "npm", "pip", "pip3", "composer", "gem", "cargo", "yarn", "pnpm",
    # Build and version control
    "make", "cmake", "mvn", "gradle", "ant", "sbt", "lein", "mix",
    "git", "svn", "hg", "bzr",
    # File operations
    "mkdir", "touch", "ln", "diff", "patch", "tar", "zip", "unzip", "gzip", "gunzip",
    # Text processing
    "sed", "awk", "cut", "tr", "column", "expand", "unexpand", "fmt", "fold",
    # Development utilities
    "jq", "yq", "xmllint", "tidy", "prettier", "eslint", "tsc",
    # Monitoring
    "lsof", "netstat", "ss", "ping", "traceroute",
    "htop", "iotop", "iftop", "nload", "dstat",
]  # fmt: skip

# Commands that can lose data; they run only with explicit safety confirmation
DEFAULT_DANGEROUS_COMMANDS = ["rm", "mv", "cp", "chmod"]

DEFAULT_BLOCKED_COMMANDS = [
    # System administration
    "sudo", "su", "passwd", "adduser", "deluser", "usermod",
    "systemctl", "service", "crontab", "iptables", "ufw", "firewalld",
    # Destructive system calls
    "dd", "fdisk", "mkfs", "mount", "umount", "fsck", "parted",
    "reboot", "shutdown", "halt", "poweroff",
    # Raw network tools
    "nc", "netcat", "telnet", "ftp", "sftp", "scp", "rsync", "ssh",
    "nmap", "strace", "ltrace", "kubectl", "helm",
    # Privilege escalation
    "doas", "pbexec", "runuser",
]  # fmt: skip

# Full-line patterns rejected regardless of the base command (remote package execution)
DEFAULT_BLOCKED_PATTERNS = [
    r"^npx\s+",
    r"^pnpm\s+dlx\b",
    r"^yarn\s+dlx\b",
]

# Package-manager invocations that mutate the project; allowed, but logged
_PACKAGE_MUTATION_RE = re.compile(
    r"^(npm|pnpm|yarn)\s+(install|exec|ci|update|add|remove|uninstall|link|init|audit\s+fix)\b"
    r"|^(pip|pip3)\s+(install|uninstall)\b"
)

Verdict = Literal[
    "allowed", "requires_confirmation", "blocked", "not_allowlisted", "invalid_format"
]


class ClassificationResult(BaseModel):
    verdict: Verdict
    base_command: str | None = None
    reason: str | None = None
    safety_level: str | None = None

    @property
    def allowed(self) -> bool:
        return self.verdict == "allowed"

    @property
    def requires_confirmation(self) -> bool:
        return self.verdict == "requires_confirmation"

    def raise_for_verdict(self):
        """Raise the policy error matching a rejected verdict."""
        if self.verdict == "allowed":
            return
        if self.verdict == "invalid_format":
            raise InvalidCommandError(self.reason)
        if self.verdict == "requires_confirmation":
            raise PolicyRequiresConfirmationError(
                self.reason, self.base_command, self.safety_level or "high"
            )
        if self.verdict == "not_allowlisted":
            raise PolicyNotAllowlistedError(self.reason, self.base_command)
        raise PolicyBlockedError(self.reason, self.base_command)


def tokenize(command: str) -> list[str]:
    """Split a command into shell words without invoking a shell.

    Raises:
        ValueError: On unbalanced quotes.
    """
    return shlex.split(command)


class CommandClassifier:
    """Three-tier command classifier (blocklist, dangerous-list, allowlist)."""

    def __init__(
        self,
        allowed_commands: Optional[Iterable[str]] = None,
        dangerous_commands: Optional[Iterable[str]] = None,
        blocked_commands: Optional[Iterable[str]] = None,
        blocked_patterns: Optional[Iterable[str]] = None,
    ):
        self._allowed = list(
            DEFAULT_ALLOWED_COMMANDS if allowed_commands is None else allowed_commands
        )
        self._dangerous = list(
            DEFAULT_DANGEROUS_COMMANDS
            if dangerous_commands is None
            else dangerous_commands
        )
        self._blocked = list(
            DEFAULT_BLOCKED_COMMANDS if blocked_commands is None else blocked_commands
        )
        self._patterns = [
            re.compile(p)
            for p in (
                DEFAULT_BLOCKED_PATTERNS if blocked_patterns is None else blocked_patterns
            )
        ]

    @classmethod
    def from_config(cls, config) -> "CommandClassifier":
        return cls(
            allowed_commands=config.allowed_commands,
            dangerous_commands=config.dangerous_commands,
            blocked_commands=config.blocked_commands,
            blocked_patterns=config.blocked_patterns,
        )

    @property
    def allowed_commands(self) -> list[str]:
        return list(self._allowed)

    @property
    def dangerous_commands(self) -> list[str]:
        return list(self._dangerous)

    @property
    def blocked_commands(self) -> list[str]:
        return list(self._blocked)

    def _is_blocked(self, base_command: str) -> bool:
        # /usr/bin/sudo is as blocked as sudo
        return (
            base_command in self._blocked
            or os.path.basename(base_command) in self._blocked
        )

    def _is_dangerous(self, base_command: str) -> bool:
        return (
            base_command in self._dangerous
            or os.path.basename(base_command) in self._dangerous
        )

    def classify(self, command, safety_confirmed: bool = False) -> ClassificationResult:
        """
        Decide whether a command may run.

        Args:
            command: Raw command text
            safety_confirmed: Caller explicitly accepted the data-loss risk

        Returns:
            ClassificationResult; never raises
        """
        if not isinstance(command, str) or not command.strip():
            return ClassificationResult(
                verdict="invalid_format", reason="Invalid command format"
            )

        trimmed = command.strip()
        try:
            args = tokenize(trimmed)
        except ValueError as e:
            return ClassificationResult(
                verdict="invalid_format", reason=f"Invalid command format: {e}"
            )
        if not args:
            return ClassificationResult(
                verdict="invalid_format", reason="Invalid command format"
            )

        base = args[0]

        for pattern in self._patterns:
            if pattern.search(trimmed):
                logger.warning(f"Blocked command pattern matched: {trimmed}")
                return ClassificationResult(
                    verdict="blocked",
                    base_command=base,
                    reason="Remote package execution is blocked for security",
                )

        if self._is_blocked(base):
            logger.warning(f"Blocked command attempted: {base}")
            return ClassificationResult(
                verdict="blocked",
                base_command=base,
                reason=f"Command '{base}' is blocked for security",
            )

        if self._is_dangerous(base):
            if not safety_confirmed:
                logger.warning(
                    f"Dangerous command requires safety confirmation: {base}"
                )
                return ClassificationResult(
                    verdict="requires_confirmation",
                    base_command=base,
                    reason=(
                        f"Command '{base}' requires safety confirmation "
                        "due to potential data loss risk"
                    ),
                    safety_level="high",
                )
            logger.info(f"Dangerous command confirmed by caller: {base}")

        if _PACKAGE_MUTATION_RE.search(trimmed):
            logger.info(f"Package manager mutation requested: {trimmed}")

        if base not in self._allowed:
            logger.warning(f"Command not in allowlist: {base}")
            return ClassificationResult(
                verdict="not_allowlisted",
                base_command=base,
                reason=f"Command '{base}' is not in the allowed commands list",
            )

        return ClassificationResult(verdict="allowed", base_command=base)

    def is_command_allowed(self, command) -> bool:
        """Boolean shortcut; dangerous commands count as not allowed."""
        return self.classify(command).allowed
