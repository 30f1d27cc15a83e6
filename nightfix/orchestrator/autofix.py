"""Auto-fix controller for nightfix.

Applies one PatchProposal to a scratch copy of the artifact, verifies it
with the sandbox, and promotes the scratch tree over the canonical one
only when the verification is a strict improvement with no regressions.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from nightfix.core.exceptions import PatchApplyError, PromotionError, RegressionDetected
from nightfix.core.models import (
    ContractTarget,
    ExecutionStatus,
    PatchOutcome,
    PatchProposal,
    TargetStatus,
    TestRunResult,
)
from nightfix.execution.sandbox import TestExecutionSandbox
from nightfix.tools.file_ops import DEFAULT_LINKED_DIRS, promote_tree, scratch_copy
from nightfix.tools.git_ops import apply_patch

logger = logging.getLogger("nightfix.orchestrator.autofix")


@dataclass
class FixAttempt:
    """What happened to one proposal."""
    proposal_id: str
    outcome: PatchOutcome
    verification: Optional[TestRunResult] = None
    files_changed: list[str] = field(default_factory=list)
    regressed_tests: list[str] = field(default_factory=list)
    detail: str = ""

    @property
    def promoted(self) -> bool:
        return self.outcome == PatchOutcome.PROMOTED


def regressed_tests(pre: TestRunResult, post: TestRunResult) -> list[str]:
    """Tests that passed before the patch and do not pass after it."""
    return sorted(pre.passing_tests - post.passing_tests)


def evaluate_promotion(pre: TestRunResult, post: TestRunResult) -> PatchOutcome:
    """Apply the promotion law to a baseline and a verification result.

    Promote iff the post-patch pass count strictly exceeds the baseline's
    and every baseline-passing test still passes. A verification run that
    did not complete counts as a regression.
    """
    if post.execution_status != ExecutionStatus.COMPLETED:
        return PatchOutcome.REGRESSED
    if regressed_tests(pre, post):
        return PatchOutcome.REGRESSED
    if post.passed > pre.passed:
        return PatchOutcome.PROMOTED
    return PatchOutcome.NEUTRAL


def _check_regressions(pre: TestRunResult, post: TestRunResult) -> None:
    if post.execution_status != ExecutionStatus.COMPLETED:
        kind = post.failure_kind.value if post.failure_kind else "unknown"
        raise RegressionDetected([f"<verification run {kind}>"])
    lost = regressed_tests(pre, post)
    if lost:
        raise RegressionDetected(lost)


class AutoFixController:
    """Scratch-copy, apply, verify, promote-or-discard.

    Injected dependencies:
        sandbox: TestExecutionSandbox used for verification runs.
        linked_dirs: Dependency folders shared into scratch copies by symlink.
        test_timeout_ms: Wall-clock limit for each verification run.
    """

    def __init__(
        self,
        sandbox: TestExecutionSandbox,
        linked_dirs: Sequence[str] = DEFAULT_LINKED_DIRS,
        test_timeout_ms: int = 10 * 60 * 1000,
    ):
        self.sandbox = sandbox
        self.linked_dirs = tuple(linked_dirs)
        self.test_timeout_ms = test_timeout_ms

    def try_fix(
        self,
        target: ContractTarget,
        proposal: PatchProposal,
        baseline: TestRunResult,
        cancel_event: Optional[threading.Event] = None,
        on_state: Optional[Callable[[TargetStatus], None]] = None,
        test_timeout_ms: Optional[int] = None,
    ) -> FixAttempt:
        """Try one proposal against the target's canonical tree.

        Consumes exactly one attempt whatever the outcome. The verification
        result is appended to target.history; it becomes the new baseline
        only when the patch is promoted.
        """
        target.attempts += 1
        attempt_no = target.attempts
        canonical = Path(target.path)

        with scratch_copy(canonical, self.linked_dirs) as work:
            patch_path = work.parent / f"{proposal.id}.patch"
            patch_path.write_text(proposal.diff, encoding="utf-8")

            try:
                files = apply_patch(work, patch_path)
            except PatchApplyError as e:
                logger.warning("Proposal %s for '%s' does not apply: %s", proposal.id, target.name, e)
                return self._finish(proposal, FixAttempt(
                    proposal_id=proposal.id, outcome=PatchOutcome.NEUTRAL, detail=str(e),
                ))
            proposal.applied = True

            if on_state is not None:
                on_state(TargetStatus.VERIFYING)
            post = self.sandbox.run(
                work, target.test_command, test_timeout_ms or self.test_timeout_ms,
                attempt=attempt_no, cancel_event=cancel_event,
            )
            target.history.append(post)

            try:
                _check_regressions(baseline, post)
            except RegressionDetected as e:
                logger.warning(
                    "Proposal %s for '%s' regressed %d test(s); discarded",
                    proposal.id, target.name, len(e.regressed_tests),
                )
                return self._finish(proposal, FixAttempt(
                    proposal_id=proposal.id,
                    outcome=PatchOutcome.REGRESSED,
                    verification=post,
                    files_changed=files,
                    regressed_tests=list(e.regressed_tests),
                    detail=str(e),
                ))

            outcome = evaluate_promotion(baseline, post)
            if outcome != PatchOutcome.PROMOTED:
                logger.info(
                    "Proposal %s for '%s' did not improve on %d passing; discarded",
                    proposal.id, target.name, baseline.passed,
                )
                return self._finish(proposal, FixAttempt(
                    proposal_id=proposal.id, outcome=outcome, verification=post, files_changed=files,
                ))

            if cancel_event is not None and cancel_event.is_set():
                return self._finish(proposal, FixAttempt(
                    proposal_id=proposal.id,
                    outcome=PatchOutcome.NEUTRAL,
                    verification=post,
                    files_changed=files,
                    detail="Cancelled before promotion",
                ))

            try:
                promote_tree(work, canonical, self.linked_dirs)
            except PromotionError as e:
                logger.error("Promotion of %s into '%s' failed: %s", proposal.id, target.name, e)
                return self._finish(proposal, FixAttempt(
                    proposal_id=proposal.id,
                    outcome=PatchOutcome.NEUTRAL,
                    verification=post,
                    files_changed=files,
                    detail=str(e),
                ))

        target.baseline_result_id = post.id
        logger.info(
            "Promoted proposal %s for '%s': %d -> %d passing",
            proposal.id, target.name, baseline.passed, post.passed,
        )
        return self._finish(proposal, FixAttempt(
            proposal_id=proposal.id, outcome=PatchOutcome.PROMOTED, verification=post, files_changed=files,
        ))

    @staticmethod
    def _finish(proposal: PatchProposal, attempt: FixAttempt) -> FixAttempt:
        proposal.outcome = attempt.outcome
        return attempt
