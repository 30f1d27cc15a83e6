"""Subprocess execution for nightfix.

Runs argv lists (never shell strings) with a wall-clock timeout and an
optional cancel event, captures stdout/stderr, and kills the whole
process group when either fires.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from nightfix.core.exceptions import (
    CommandCancelledError,
    CommandNotAllowedError,
    ShellTimeoutError,
    ToolError,
)
from nightfix.security.policy import SecurityPolicy

logger = logging.getLogger("nightfix.tools.shell")

DEFAULT_TIMEOUT = 120  # seconds
MAX_OUTPUT_BYTES = 1_048_576
POLL_INTERVAL = 0.1


@dataclass
class ShellResult:
    """Structured result from a subprocess."""
    command: str
    return_code: int
    stdout: str
    stderr: str
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.return_code == 0


def run_command(
    command: list[str],
    cwd: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT,
    env: Optional[dict[str, str]] = None,
    security_policy: Optional[SecurityPolicy] = None,
    cancel_event: Optional[threading.Event] = None,
    max_output_bytes: int = MAX_OUTPUT_BYTES,
) -> ShellResult:
    """Execute a command with timeout, cancellation and output capture.

    Args:
        command: Executable followed by its arguments.
        cwd: Working directory for the command.
        timeout: Max seconds before killing the process.
        env: Extra environment variables (filtered by the policy when given).
        security_policy: Optional template allowlist and root confinement.
        cancel_event: When set, the process group is killed.

    Returns:
        ShellResult with return code, stdout, stderr.

    Raises:
        CommandNotAllowedError: Command or cwd rejected by the policy.
        ShellTimeoutError: Command exceeded timeout.
        CommandCancelledError: cancel_event was set while running.
        ToolError: Command can't be started.
    """
    if isinstance(command, str) or not command:
        raise CommandNotAllowedError("Commands must be non-empty argument lists")

    cmd_str = " ".join(command)
    logger.debug("Running: %s (cwd=%s, timeout=%.1fs)", cmd_str, cwd, timeout)

    if security_policy is not None:
        _enforce_policy(command=command, cwd=cwd, security_policy=security_policy)

    run_env = _build_env(env=env, security_policy=security_policy)

    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            command,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            env=run_env,
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise ToolError(f"Command not found: {e}") from e
    except OSError as e:
        raise ToolError(f"Failed to run command: {e}") from e

    deadline = started + timeout
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel_event is not None and cancel_event.is_set():
                _kill_process_group(proc)
                logger.warning("Command cancelled: %s", cmd_str)
                raise CommandCancelledError(f"Command cancelled: {cmd_str}")
            if time.monotonic() >= deadline:
                _kill_process_group(proc)
                logger.warning("Command timed out after %.1fs: %s", timeout, cmd_str)
                raise ShellTimeoutError(f"Command timed out after {timeout:.1f}s: {cmd_str}")

    duration = time.monotonic() - started
    stdout = _truncate_output(stdout or "", max_output_bytes)
    stderr = _truncate_output(stderr or "", max_output_bytes)
    logger.debug(
        "Command finished: rc=%d stdout=%d chars stderr=%d chars in %.2fs",
        proc.returncode, len(stdout), len(stderr), duration,
    )
    return ShellResult(
        command=cmd_str,
        return_code=proc.returncode,
        stdout=stdout,
        stderr=stderr,
        duration_seconds=duration,
    )


def _enforce_policy(
    command: list[str],
    cwd: Optional[str],
    security_policy: SecurityPolicy,
) -> None:
    if not security_policy.is_command_allowed(command):
        raise CommandNotAllowedError(
            f"Command not allowed by security policy: {Path(command[0]).name}"
        )
    if cwd and not security_policy.is_path_allowed(cwd):
        raise CommandNotAllowedError(f"Working directory outside allowed roots: {cwd}")


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()
    try:
        proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        logger.error("Process %d did not exit after SIGKILL", proc.pid)


def _truncate_output(text: str, max_bytes: int = MAX_OUTPUT_BYTES) -> str:
    if len(text.encode("utf-8")) <= max_bytes:
        return text

    encoded = text.encode("utf-8")[:max_bytes]
    truncated = encoded.decode("utf-8", errors="ignore")
    return truncated + "\n... [output truncated]"


def _build_env(
    env: Optional[dict[str, str]],
    security_policy: Optional[SecurityPolicy],
) -> dict[str, str]:
    if security_policy is None:
        base_env = dict(os.environ)
        if env:
            base_env.update(env)
        return base_env
    return security_policy.build_subprocess_env(extra_env=env)
