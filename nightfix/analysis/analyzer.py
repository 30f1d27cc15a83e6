"""Failure analyzer for nightfix.

Composes a size-bounded prompt from a target's failing tests, objectives,
context documents and source files, asks the model for a patch through
KeyRotationClient, and validates the reply into a PatchProposal.
"""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Optional, Sequence

from nightfix.analysis.proposal_schema import ProposalPayload, parse_proposal
from nightfix.core.config import AnalyzerConfig, PromptLoader
from nightfix.core.exceptions import (
    AllCredentialsExhausted,
    LLMCancelledError,
    AnalysisUnavailable,
    NoProposalAvailable,
    ProtectedConstantViolation,
)
from nightfix.core.models import (
    ContractTarget,
    ExecutionStatus,
    PatchProposal,
    RiskClass,
    TestRunResult,
)
from nightfix.llm.key_rotation import KeyRotationClient
from nightfix.tools.file_ops import collect_sources, read_optional

logger = logging.getLogger("nightfix.analysis")

TRUNCATION_MARKER = "\n... [truncated]"

# Always offered to the model when present in the artifact root.
DEFAULT_CONTEXT_FILES = ("CONTRACT-OBJECTIVES.md",)


class PromptBudget:
    """Character allowance derived from a token budget."""

    def __init__(self, token_budget: int, chars_per_token: int = 4):
        self.remaining = max(0, token_budget) * max(1, chars_per_token)

    def take(self, text: str) -> str:
        """Return as much of text as fits and charge it to the budget."""
        if len(text) <= self.remaining:
            self.remaining -= len(text)
            return text
        cut = max(0, self.remaining - len(TRUNCATION_MARKER))
        self.remaining = 0
        return text[:cut] + TRUNCATION_MARKER

    def fits(self, text: str) -> bool:
        return len(text) <= self.remaining


class FailureAnalyzer:
    """Turns a failing TestRunResult into a validated PatchProposal.

    Injected dependencies:
        rotation_client: KeyRotationClient shared by every worker.
        config: AnalyzerConfig with the prompt token budget.
        prompt_loader: Resolves config/prompts/analyzer_system.txt.
        model: Model id; None uses the client's default.
    """

    # Hardcoded fallback if config/prompts/analyzer_system.txt doesn't exist
    _DEFAULT_SYSTEM_PROMPT = (
        "You analyze failing smart contract tests and propose one unified diff that fixes them. "
        'Reply with only a JSON object: {"diff": str, "rationale": str, '
        '"risk_class": "test-only"|"artifact-minor"|"artifact-structural"}. '
        "Never change protected constants. Reply with an empty diff if no fix is possible."
    )

    def __init__(
        self,
        rotation_client: KeyRotationClient,
        config: Optional[AnalyzerConfig] = None,
        prompt_loader: Optional[PromptLoader] = None,
        model: Optional[str] = None,
    ):
        self.rotation_client = rotation_client
        self.config = config or AnalyzerConfig()
        self._prompt_loader = prompt_loader or PromptLoader()
        self.model = model

    def analyze(
        self,
        target: ContractTarget,
        latest_result: TestRunResult,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PatchProposal:
        """Ask the model for a patch addressing latest_result's failures.

        Raises:
            AnalysisUnavailable: No credential could serve the request, or
                cancel_event was set while waiting for one.
            MalformedProposal: The reply did not match the proposal schema.
            NoProposalAvailable: The model returned an empty diff.
            ProtectedConstantViolation: The diff changes a protected constant.
        """
        prompt = self.build_prompt(target, latest_result)
        system = self._prompt_loader.load("analyzer_system.txt", self._DEFAULT_SYSTEM_PROMPT)
        logger.info(
            "Analyzing %d failing test(s) for '%s' (%d prompt chars)",
            len(latest_result.failing_tests), target.name, len(prompt),
        )

        try:
            response = self.rotation_client.complete(
                prompt, system=system, model=self.model,
                timeout_seconds=timeout_seconds, cancel_event=cancel_event,
            )
        except AllCredentialsExhausted as e:
            raise AnalysisUnavailable(f"No model credential available: {e}") from e
        except LLMCancelledError as e:
            raise AnalysisUnavailable(f"Analysis cancelled: {e}") from e

        payload = parse_proposal(response.content)
        if not payload.diff.strip():
            raise NoProposalAvailable(payload.rationale or "Model returned an empty diff")

        touched = find_protected_changes(payload.diff, target.protected_constants)
        if touched:
            logger.warning(
                "Rejected proposal for '%s': touches protected constant(s) %s",
                target.name, ", ".join(touched),
            )
            raise ProtectedConstantViolation(touched)

        return _to_proposal(target, latest_result, payload, response.model or self.model)

    def build_prompt(self, target: ContractTarget, latest_result: TestRunResult) -> str:
        """Compose the user prompt within the configured token budget.

        Sections are added in priority order: failing tests, objectives,
        context files, sources. Whole files are used while they fit, the
        first one that does not is truncated, and the rest are named only.
        """
        budget = PromptBudget(self.config.prompt_token_budget, self.config.chars_per_token)
        root = Path(target.path)
        parts: list[str] = []

        parts.append(budget.take(f"# Target: {target.name}\n"))
        parts.append(budget.take(_failing_section(latest_result)))

        if target.objectives:
            lines = ["\n## Objectives (highest priority first)"]
            lines.extend(f"{i}. {objective}" for i, objective in enumerate(target.objectives, 1))
            parts.append(budget.take("\n".join(lines) + "\n"))

        if target.protected_constants:
            parts.append(budget.take(
                "\n## Protected constants (must not change)\n"
                + ", ".join(target.protected_constants) + "\n"
            ))

        context: list[tuple[str, str]] = []
        for name in [*target.context_files, *DEFAULT_CONTEXT_FILES]:
            if any(name == seen for seen, _ in context):
                continue
            text = read_optional(root / name)
            if text is not None:
                context.append((name, text))
        if context:
            parts.append(budget.take("\n## Context\n"))
            parts.extend(_budgeted_files(context, budget))

        sources = collect_sources(root, target.source_globs, self.config.max_source_files)
        if sources:
            parts.append(budget.take("\n## Source files\n"))
            parts.extend(_budgeted_files(sources, budget))

        return "".join(parts)


def find_protected_changes(diff: str, protected: Sequence[str]) -> list[str]:
    """Protected names that appear on added or removed lines of a diff."""
    if not protected:
        return []
    changed = [
        line[1:]
        for line in diff.splitlines()
        if line[:1] in ("+", "-") and not line.startswith(("+++", "---"))
    ]
    hits = set()
    for name in protected:
        pattern = re.compile(rf"(?<![A-Za-z0-9_]){re.escape(name)}(?![A-Za-z0-9_])")
        if any(pattern.search(line) for line in changed):
            hits.add(name)
    return sorted(hits)


def _failing_section(result: TestRunResult) -> str:
    lines = ["\n## Failing tests"]
    if result.execution_status == ExecutionStatus.EXECUTION_FAILED or result.parse_error:
        lines.append("The test run did not produce parseable results. Raw output tail:")
        lines.append(result.raw_output[-4000:])
    for test_id in sorted(result.failing_tests):
        message = result.failure_details.get(test_id, "").strip()
        lines.append(f"- {test_id}" + (f"\n  {message}" if message else ""))
    lines.append(f"\nCurrent result: {result.passed}/{result.total} passing ({result.pass_rate}%)")
    return "\n".join(lines) + "\n"


def _budgeted_files(files: list[tuple[str, str]], budget: PromptBudget) -> list[str]:
    parts: list[str] = []
    omitted: list[str] = []
    truncated = False
    for name, text in files:
        block = f"\n### {name}\n```\n{text}\n```\n"
        if truncated or budget.remaining == 0:
            omitted.append(name)
            continue
        if not budget.fits(block):
            truncated = True
        parts.append(budget.take(block))
    if omitted:
        # Names are listed even past the budget.
        parts.append("\nAlso in the project (omitted for size): " + ", ".join(omitted) + "\n")
    return parts


def _to_proposal(
    target: ContractTarget,
    result: TestRunResult,
    payload: ProposalPayload,
    model: Optional[str],
) -> PatchProposal:
    return PatchProposal(
        target_id=target.id,
        source_result_id=result.id,
        diff=payload.diff if payload.diff.endswith("\n") else payload.diff + "\n",
        rationale=payload.rationale,
        risk_class=RiskClass(payload.risk_class),
        model=model,
    )
