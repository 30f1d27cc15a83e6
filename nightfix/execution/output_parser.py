"""Test runner output parsing.

Turns raw runner output into per-test outcomes. Understands the mocha
JSON reporter (hardhat uses mocha), mocha's default spec reporter, and
pytest result lines. Anything else yields ``parse_error``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from nightfix.core.models import TestOutcome

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

_MOCHA_PASS = re.compile(r"^\s*(?:✔|✓|√)\s+(.+?)(?:\s+\(\d+\s*m?s\))?\s*$")
_MOCHA_FAIL = re.compile(r"^\s*(\d+)\)\s+(.+?)\s*:?\s*$")
_MOCHA_PENDING = re.compile(r"^\s*-\s+(.+?)\s*$")
_MOCHA_SUMMARY = re.compile(r"^\s*(\d+)\s+(passing|failing|pending)\b", re.MULTILINE)

_PYTEST_LINE = re.compile(r"^(PASSED|FAILED|ERROR|SKIPPED|XFAIL|XPASS)\s+(\S+)(?:\s+-\s+(.*))?$")


@dataclass
class ParsedOutput:
    outcomes: dict[str, TestOutcome] = field(default_factory=dict)
    failure_details: dict[str, str] = field(default_factory=dict)
    parse_error: bool = False

    def count(self, outcome: TestOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)


def parse_test_output(stdout: str, stderr: str = "") -> ParsedOutput:
    """Parse runner output, trying structured formats first."""
    text = _ANSI.sub("", stdout)

    parsed = _parse_mocha_json(text)
    if parsed is not None:
        return parsed

    if _MOCHA_SUMMARY.search(text):
        return _parse_mocha_spec(text)

    combined = text + "\n" + _ANSI.sub("", stderr)
    parsed = _parse_pytest(combined)
    if parsed.outcomes:
        return parsed

    return ParsedOutput(parse_error=True)


def _find_json_object(text: str) -> Optional[dict[str, Any]]:
    start = text.find("{")
    while start != -1:
        try:
            value, _ = json.JSONDecoder().raw_decode(text[start:])
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def _parse_mocha_json(text: str) -> Optional[ParsedOutput]:
    data = _find_json_object(text)
    if data is None or "stats" not in data or not isinstance(data.get("tests", data.get("passes")), list):
        return None

    result = ParsedOutput()
    for key, outcome in (
        ("passes", TestOutcome.PASSED),
        ("failures", TestOutcome.FAILED),
        ("pending", TestOutcome.SKIPPED),
    ):
        for test in data.get(key) or []:
            if not isinstance(test, dict):
                continue
            test_id = str(test.get("fullTitle") or test.get("title") or "").strip()
            if not test_id:
                continue
            result.outcomes[test_id] = outcome
            if outcome == TestOutcome.FAILED:
                err = test.get("err") or {}
                message = err.get("message") if isinstance(err, dict) else None
                result.failure_details[test_id] = str(message or "")
    return result


def _parse_mocha_spec(text: str) -> ParsedOutput:
    """Parse mocha's spec reporter.

    Passing tests are listed with a check mark; failing tests are numbered
    both inline and in the failure section, where the number is followed by
    the suite path and the error message.
    """
    result = ParsedOutput()
    lines = text.splitlines()
    suites: list[tuple[int, str]] = []
    failure_section = False
    failure_titles: dict[str, str] = {}
    current_failure: Optional[str] = None
    detail_lines: list[str] = []

    for line in lines:
        if not line.strip():
            continue
        if _MOCHA_SUMMARY.match(line):
            failure_section = True
            continue

        if failure_section:
            match = _MOCHA_FAIL.match(line)
            if match:
                if current_failure is not None:
                    result.failure_details[current_failure] = "\n".join(detail_lines).strip()
                current_failure = failure_titles.get(match.group(1))
                detail_lines = []
            elif current_failure is not None and not line.strip().startswith("at "):
                detail_lines.append(line.strip())
            continue

        indent = len(line) - len(line.lstrip())
        match = _MOCHA_PASS.match(line)
        if match:
            result.outcomes[_qualify(suites, indent, match.group(1))] = TestOutcome.PASSED
            continue
        match = _MOCHA_FAIL.match(line)
        if match:
            test_id = _qualify(suites, indent, match.group(2))
            result.outcomes[test_id] = TestOutcome.FAILED
            failure_titles[match.group(1)] = test_id
            continue
        match = _MOCHA_PENDING.match(line)
        if match:
            result.outcomes[_qualify(suites, indent, match.group(1))] = TestOutcome.SKIPPED
            continue

        # Mocha indents suites; flush-left lines are compiler/runner chatter.
        if indent < 2:
            continue
        while suites and suites[-1][0] >= indent:
            suites.pop()
        suites.append((indent, line.strip()))

    if current_failure is not None:
        result.failure_details[current_failure] = "\n".join(detail_lines).strip()
    for test_id, outcome in result.outcomes.items():
        if outcome == TestOutcome.FAILED:
            result.failure_details.setdefault(test_id, "")

    if not result.outcomes:
        result.parse_error = True
    return result


def _qualify(suites: list[tuple[int, str]], indent: int, title: str) -> str:
    parents = [name for level, name in suites if level < indent]
    return " ".join([*parents, title.strip()])


def _parse_pytest(text: str) -> ParsedOutput:
    result = ParsedOutput()
    for line in text.splitlines():
        match = _PYTEST_LINE.match(line.strip())
        if not match:
            continue
        status, test_id, message = match.groups()
        if status in ("PASSED", "XPASS"):
            result.outcomes[test_id] = TestOutcome.PASSED
        elif status in ("FAILED", "ERROR"):
            result.outcomes[test_id] = TestOutcome.FAILED
            result.failure_details[test_id] = (message or "").strip()
        else:
            result.outcomes[test_id] = TestOutcome.SKIPPED
    return result
