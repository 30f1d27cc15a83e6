"""Sandboxed test execution and runner output parsing."""

from nightfix.execution.output_parser import ParsedOutput, parse_test_output
from nightfix.execution.sandbox import TestExecutionSandbox

__all__ = ["ParsedOutput", "TestExecutionSandbox", "parse_test_output"]
