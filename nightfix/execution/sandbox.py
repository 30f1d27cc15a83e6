"""Sandboxed test execution for nightfix.

Runs an artifact's declared test command against a given directory and
turns the outcome into a TestRunResult. Assertion failures are ordinary
COMPLETED results; only crashes, timeouts and cancellations are
EXECUTION_FAILED.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Optional

from nightfix.core.exceptions import (
    CommandCancelledError,
    CommandNotAllowedError,
    ShellTimeoutError,
    ToolError,
)
from nightfix.core.models import (
    ExecutionFailureKind,
    ExecutionStatus,
    TestOutcome,
    TestRunResult,
)
from nightfix.execution.output_parser import parse_test_output
from nightfix.security.policy import SecurityPolicy, redact_secrets
from nightfix.tools.shell import MAX_OUTPUT_BYTES, run_command

logger = logging.getLogger("nightfix.execution.sandbox")


class TestExecutionSandbox:
    """Time-boxed, template-restricted test runner.

    The sandbox never writes to the directory it is given; the caller
    decides whether that is the canonical tree or a scratch copy.
    """

    __test__ = False

    def __init__(
        self,
        security_policy: SecurityPolicy,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
        env: Optional[dict[str, str]] = None,
    ):
        self.security_policy = security_policy
        self.max_output_bytes = max_output_bytes
        self.env = env or {}

    def check_command(self, command: list[str]) -> None:
        """Raise CommandNotAllowedError unless command matches a template."""
        if not self.security_policy.is_command_allowed(command):
            raise CommandNotAllowedError(
                f"Test command does not match an approved template: {command!r}"
            )

    def run(
        self,
        target_path: str | Path,
        command: list[str],
        timeout_ms: int,
        attempt: int = 0,
        cancel_event: Optional[threading.Event] = None,
    ) -> TestRunResult:
        """Execute the test command in target_path.

        Raises:
            CommandNotAllowedError: before any process starts, when the
                command or directory is outside policy.
        """
        self.check_command(command)
        path = Path(target_path)
        started = time.monotonic()
        logger.info("Running tests in %s (attempt %d)", path, attempt)

        try:
            shell = run_command(
                command,
                cwd=str(path),
                timeout=timeout_ms / 1000.0,
                env=self.env,
                security_policy=self.security_policy,
                cancel_event=cancel_event,
                max_output_bytes=self.max_output_bytes,
            )
        except CommandNotAllowedError:
            raise
        except ShellTimeoutError as e:
            return _execution_failed(attempt, ExecutionFailureKind.TIMEOUT, str(e), started)
        except CommandCancelledError as e:
            return _execution_failed(attempt, ExecutionFailureKind.CANCELLED, str(e), started)
        except ToolError as e:
            return _execution_failed(attempt, ExecutionFailureKind.CRASH, str(e), started)

        raw_output = redact_secrets(shell.stdout + ("\n" + shell.stderr if shell.stderr else ""))
        parsed = parse_test_output(shell.stdout, shell.stderr)
        duration_ms = int((time.monotonic() - started) * 1000)

        if parsed.parse_error:
            status = ExecutionStatus.COMPLETED
            kind = None
            if shell.return_code != 0:
                status = ExecutionStatus.EXECUTION_FAILED
                kind = ExecutionFailureKind.CRASH
            logger.warning(
                "Could not parse test output in %s (rc=%d)", path, shell.return_code,
            )
            return TestRunResult(
                attempt=attempt,
                duration_ms=duration_ms,
                raw_output=raw_output,
                return_code=shell.return_code,
                execution_status=status,
                failure_kind=kind,
                parse_error=True,
            )

        result = TestRunResult(
            attempt=attempt,
            outcomes=parsed.outcomes,
            failure_details={k: redact_secrets(v) for k, v in parsed.failure_details.items()},
            passed=parsed.count(TestOutcome.PASSED),
            failed=parsed.count(TestOutcome.FAILED),
            skipped=parsed.count(TestOutcome.SKIPPED),
            duration_ms=duration_ms,
            raw_output=raw_output,
            return_code=shell.return_code,
        )
        logger.info(
            "Tests in %s: %d passed, %d failed, %d skipped (%.1f%%)",
            path, result.passed, result.failed, result.skipped, result.pass_rate,
        )
        return result


def _execution_failed(
    attempt: int,
    kind: ExecutionFailureKind,
    message: str,
    started: float,
) -> TestRunResult:
    logger.warning("Test execution failed (%s): %s", kind.value, message)
    return TestRunResult(
        attempt=attempt,
        duration_ms=int((time.monotonic() - started) * 1000),
        raw_output=message,
        execution_status=ExecutionStatus.EXECUTION_FAILED,
        failure_kind=kind,
    )
