"""Tests for nightfix/execution/sandbox.py — real runs of a fake test runner."""

import sys
import threading

import pytest

from nightfix.core.config import CommandTemplate
from nightfix.core.exceptions import CommandNotAllowedError
from nightfix.core.models import ExecutionFailureKind, ExecutionStatus
from nightfix.execution.sandbox import TestExecutionSandbox
from nightfix.security.policy import SecurityPolicy
from tests.conftest import RUNNER_NAME, TEST_COMMAND, make_project, outcomes_for


class TestCompletedRuns:
    def test_all_passing(self, sandbox, tmp_path):
        project = make_project(tmp_path, "vault", outcomes_for(3))
        result = sandbox.run(project, TEST_COMMAND, timeout_ms=10_000)
        assert result.execution_status == ExecutionStatus.COMPLETED
        assert result.passed == 3
        assert result.all_passing
        assert result.return_code == 0

    def test_assertion_failures_are_completed(self, sandbox, tmp_path):
        project = make_project(tmp_path, "vault", outcomes_for(4, failing={1, 3}))
        result = sandbox.run(project, TEST_COMMAND, timeout_ms=10_000, attempt=2)
        assert result.execution_status == ExecutionStatus.COMPLETED
        assert result.attempt == 2
        assert result.passed == 2
        assert result.failed == 2
        assert result.failing_tests == {"t1", "t3"}
        assert "AssertionError" in result.failure_details["t1"]
        assert result.pass_rate == 50.0

    def test_does_not_write_to_target(self, sandbox, tmp_path):
        project = make_project(tmp_path, "vault", outcomes_for(2))
        before = sorted(p.name for p in project.iterdir())
        sandbox.run(project, TEST_COMMAND, timeout_ms=10_000)
        assert sorted(p.name for p in project.iterdir()) == before

    def test_output_redacted(self, sandbox, tmp_path):
        project = make_project(tmp_path, "vault", outcomes_for(1))
        (project / RUNNER_NAME).write_text("print('PASSED t0')\nprint('key sk-ant-supersecret99')\n")
        result = sandbox.run(project, TEST_COMMAND, timeout_ms=10_000)
        assert "sk-ant-supersecret99" not in result.raw_output
        assert "[REDACTED_API_KEY]" in result.raw_output


class TestExecutionFailures:
    def test_timeout(self, sandbox, tmp_path):
        project = make_project(tmp_path, "vault", outcomes_for(1), delay_seconds=10)
        result = sandbox.run(project, TEST_COMMAND, timeout_ms=300)
        assert result.execution_status == ExecutionStatus.EXECUTION_FAILED
        assert result.failure_kind == ExecutionFailureKind.TIMEOUT
        assert not result.all_passing

    def test_cancelled(self, sandbox, tmp_path):
        project = make_project(tmp_path, "vault", outcomes_for(1), delay_seconds=10)
        cancel = threading.Event()
        cancel.set()
        result = sandbox.run(project, TEST_COMMAND, timeout_ms=10_000, cancel_event=cancel)
        assert result.failure_kind == ExecutionFailureKind.CANCELLED

    def test_crash_with_unparseable_output(self, sandbox, tmp_path):
        project = make_project(tmp_path, "vault", outcomes_for(1))
        (project / RUNNER_NAME).write_text("raise SystemExit('HH8: invalid hardhat config')\n")
        result = sandbox.run(project, TEST_COMMAND, timeout_ms=10_000)
        assert result.execution_status == ExecutionStatus.EXECUTION_FAILED
        assert result.failure_kind == ExecutionFailureKind.CRASH
        assert result.parse_error
        assert "HH8" in result.raw_output

    def test_unparseable_but_clean_exit(self, sandbox, tmp_path):
        project = make_project(tmp_path, "vault", outcomes_for(1))
        (project / RUNNER_NAME).write_text("print('nothing recognisable')\n")
        result = sandbox.run(project, TEST_COMMAND, timeout_ms=10_000)
        assert result.execution_status == ExecutionStatus.COMPLETED
        assert result.parse_error
        assert not result.all_passing

    def test_missing_executable_is_crash(self, tmp_path):
        sandbox = TestExecutionSandbox(SecurityPolicy(
            command_templates=[CommandTemplate(executable="no-such-runner-xyz")],
        ))
        result = sandbox.run(tmp_path, ["no-such-runner-xyz"], timeout_ms=5_000)
        assert result.failure_kind == ExecutionFailureKind.CRASH


class TestPolicy:
    def test_command_outside_templates(self, sandbox, tmp_path):
        with pytest.raises(CommandNotAllowedError):
            sandbox.run(tmp_path, [sys.executable, "-c", "print(1)"], timeout_ms=5_000)

    def test_check_command(self, sandbox):
        sandbox.check_command(TEST_COMMAND)
        with pytest.raises(CommandNotAllowedError):
            sandbox.check_command(["npm", "test"])

    def test_same_named_binary_outside_path_never_runs(self, tmp_path, monkeypatch):
        impostor = tmp_path / "elsewhere" / "npx"
        impostor.parent.mkdir()
        impostor.write_text("#!/bin/sh\ntouch ran.txt\n")
        impostor.chmod(0o755)
        monkeypatch.setenv("PATH", str(tmp_path / "empty"))
        sandbox = TestExecutionSandbox(SecurityPolicy(
            command_templates=[CommandTemplate(executable="npx", args=["hardhat", "test"])],
        ))
        project = make_project(tmp_path, "vault", outcomes_for(1))

        with pytest.raises(CommandNotAllowedError):
            sandbox.run(project, [str(impostor), "hardhat", "test"], timeout_ms=5_000)
        assert not (project / "ran.txt").exists()
