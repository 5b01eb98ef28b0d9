"""Shell tool execution for ``tool:`` inputs and outputs.

Commands are checked against a denylist (always enforced) and an allowlist
before they run. Only the base command name is checked.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from agentic_workflow.core.config import ToolConfig
from agentic_workflow.errors import ToolExecutionError, ToolPermissionError
from agentic_workflow.workflow.models import ToolListConfig

logger = logging.getLogger(__name__)

TOOL_PREFIX = "tool:"
STDIN_PIPE = "STDIN|"
STDOUT_PIPE = "STDOUT|"

DEFAULT_DENYLIST = frozenset(
    {
        "rm", "rmdir", "mv", "dd", "shred", "mkfs", "fdisk", "parted",
        "sudo", "su", "doas", "pkexec",
        "chmod", "chown", "chgrp", "chattr", "setfacl",
        "nc", "netcat", "ncat", "nmap", "masscan", "hping3",
        "kill", "killall", "pkill",
        "bash", "sh", "zsh", "fish", "csh", "tcsh", "ksh", "dash",
        "apt", "apt-get", "yum", "dnf", "pacman", "brew",
        "pip", "npm", "yarn", "gem", "cargo", "go",
        "wget", "curl", "ssh", "scp", "sftp", "rsync", "ftp", "telnet", "rsh",
        "passwd", "tar", "zip", "unzip", "gzip", "gunzip",
        "mount", "umount", "losetup", "crontab", "at",
        "systemctl", "service", "init", "reboot", "shutdown", "halt", "poweroff",
    }
)  # fmt: skip

DEFAULT_ALLOWLIST = frozenset(
    {
        "ls", "cat", "head", "tail", "wc", "sort", "uniq", "grep", "awk", "sed",
        "cut", "tr", "diff", "comm", "join", "paste", "column", "fold", "fmt", "nl",
        "pr", "tee", "xargs", "jq", "yq", "date", "cal", "echo", "printf", "tac",
        "rev", "file", "stat", "du", "df", "which", "whereis", "type", "basename",
        "dirname", "realpath", "readlink", "env", "printenv", "pwd", "id", "whoami",
        "hostname", "uname", "base64", "md5sum", "sha256sum", "sha1sum", "xxd", "od",
        "hexdump", "find", "ps", "pgrep",
    }
)  # fmt: skip


def is_tool_input(value: str) -> bool:
    return value.strip().startswith(TOOL_PREFIX)


def is_tool_output(value: str) -> bool:
    value = value.strip()
    return value.startswith(TOOL_PREFIX) or value.startswith(STDOUT_PIPE)


def parse_tool_input(value: str) -> tuple[str, bool]:
    """Return ``(command, uses_stdin)`` for a ``tool: ...`` input.

    Raises:
        ValueError: If the value is not a tool input or names no command.
    """
    value = value.strip()
    if not value.startswith(TOOL_PREFIX):
        raise ValueError("invalid tool input format: must start with 'tool:'")
    command = value.removeprefix(TOOL_PREFIX).strip()
    if not command:
        raise ValueError("empty tool command")
    return command, command.startswith(STDIN_PIPE)


def parse_tool_output(value: str) -> str:
    """Return the command a ``tool: ...`` or ``STDOUT|...`` output pipes into."""
    value = value.strip()
    for prefix in (TOOL_PREFIX, STDOUT_PIPE):
        if value.startswith(prefix):
            command = value.removeprefix(prefix).strip()
            if not command:
                raise ValueError("empty tool output command")
            return command
    raise ValueError("invalid tool output format: must start with 'tool:' or 'STDOUT|'")


def base_command(command: str) -> str:
    command = command.strip()
    for prefix in (STDIN_PIPE, STDOUT_PIPE):
        command = command.removeprefix(prefix).strip()
    parts = command.split()
    if not parts:
        return ""
    return parts[0].rsplit("/", 1)[-1]


@dataclass(frozen=True, slots=True)
class ToolPolicy:
    allowlist: frozenset[str]
    denylist: frozenset[str]
    timeout: int

    @staticmethod
    def merge(global_config: ToolConfig, step_config: ToolListConfig | None) -> ToolPolicy:
        """Merge step-level settings over the global ones.

        A non-empty step allowlist replaces the global one; denylists accumulate.
        """
        allow = list(global_config.allowlist)
        deny = set(DEFAULT_DENYLIST) | set(global_config.denylist)
        timeout = global_config.timeout
        if step_config is not None:
            if step_config.allowlist:
                allow = list(step_config.allowlist)
            deny |= set(step_config.denylist)
            if step_config.timeout > 0:
                timeout = step_config.timeout
        return ToolPolicy(
            allowlist=frozenset(allow) if allow else DEFAULT_ALLOWLIST,
            denylist=frozenset(deny),
            timeout=timeout,
        )

    def check(self, command: str) -> None:
        """Raise ToolPermissionError unless ``command`` may run."""
        name = base_command(command)
        if name in self.denylist:
            logger.warning(f"Blocked denylisted command: {name}", extra={"command": command})
            raise ToolPermissionError(command, f"command '{name}' is in the denylist")
        if name not in self.allowlist:
            raise ToolPermissionError(command, f"command '{name}' is not in the allowlist")


class ToolExecutor(Protocol):
    def execute(self, command: str, stdin: str, policy: ToolPolicy) -> str:
        """Run ``command`` and return its stdout, or raise a tool error."""
        ...


@dataclass
class SubprocessToolExecutor:
    """Runs permitted commands through ``sh -c``."""

    working_dir: Path | None = None
    env: dict[str, str] | None = field(default=None)

    def execute(self, command: str, stdin: str, policy: ToolPolicy) -> str:
        policy.check(command)

        actual = command.strip()
        use_stdin = actual.startswith(STDIN_PIPE)
        if use_stdin:
            actual = actual.removeprefix(STDIN_PIPE).strip()

        logger.debug(f"Executing tool command: {actual}")
        try:
            result = subprocess.run(
                ["sh", "-c", actual],
                input=stdin if use_stdin else None,
                capture_output=True,
                text=True,
                cwd=self.working_dir,
                env=self.env,
                timeout=policy.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ToolExecutionError(
                f"command '{actual}' timed out after {policy.timeout} seconds"
            ) from e
        except OSError as e:
            raise ToolExecutionError(f"command '{actual}' could not be started: {e}") from e

        if result.returncode != 0:
            raise ToolExecutionError(
                f"command '{actual}' exited with {result.returncode} (stderr: {result.stderr.strip()})"
            )
        return result.stdout
