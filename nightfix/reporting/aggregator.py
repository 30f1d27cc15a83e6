"""Session report aggregation.

summarize() is a pure function of stored session state: no I/O and no
clock reads, so the same RunSession always yields the same report.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from nightfix.core.models import (
    ContractTarget,
    FailureReason,
    RunSession,
    SessionStatus,
    TargetStatus,
    TestRunResult,
)

GRADE_THRESHOLDS = ((90.0, "A"), (80.0, "B"), (70.0, "C"), (60.0, "D"))
READINESS_THRESHOLDS = (
    (85.0, "READY"),
    (70.0, "NEEDS_MINOR_FIXES"),
    (50.0, "NEEDS_MAJOR_FIXES"),
)


class TargetSummary(BaseModel):
    target_id: str
    name: str
    status: TargetStatus
    failure_reason: Optional[FailureReason] = None
    final_pass_rate: float = 0.0
    passed: int = 0
    total: int = 0
    attempts: int = 0
    patches_promoted: int = 0
    proposals_rejected: int = 0
    unresolved_failures: list[str] = Field(default_factory=list)
    elapsed_seconds: Optional[float] = None
    grade: str = "F"


class SessionReport(BaseModel):
    session_id: str
    status: SessionStatus
    targets: list[TargetSummary] = Field(default_factory=list)
    aggregate_pass_rate: float = 0.0
    done_count: int = 0
    failed_count: int = 0
    ready: bool = False
    readiness: str = "NOT_READY"
    grade_distribution: dict[str, int] = Field(default_factory=dict)
    patches_promoted: int = 0
    elapsed_seconds: Optional[float] = None


def score_to_grade(pass_rate: float) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if pass_rate >= threshold:
            return grade
    return "F"


def readiness_label(pass_rate: float) -> str:
    for threshold, label in READINESS_THRESHOLDS:
        if pass_rate >= threshold:
            return label
    return "NOT_READY"


def final_result(target: ContractTarget) -> Optional[TestRunResult]:
    """The result describing the canonical tree, falling back to the last run."""
    return target.baseline_result or target.latest_result


def summarize_target(target: ContractTarget) -> TargetSummary:
    result = final_result(target)
    pass_rate = result.pass_rate if result else 0.0
    elapsed = None
    if target.started_at and target.finished_at:
        elapsed = round((target.finished_at - target.started_at).total_seconds(), 3)
    return TargetSummary(
        target_id=target.id,
        name=target.name,
        status=target.status,
        failure_reason=target.failure_reason,
        final_pass_rate=pass_rate,
        passed=result.passed if result else 0,
        total=result.total if result else 0,
        attempts=target.attempts,
        patches_promoted=target.promoted_count,
        proposals_rejected=target.rejected_proposals,
        unresolved_failures=sorted(result.failing_tests) if result else [],
        elapsed_seconds=elapsed,
        grade=score_to_grade(pass_rate),
    )


def summarize(session: RunSession) -> SessionReport:
    """Build the per-target and per-session summary of a RunSession."""
    summaries = [summarize_target(t) for t in session.ordered_targets()]

    passed = sum(s.passed for s in summaries)
    total = sum(s.total for s in summaries)
    aggregate = round(passed * 100.0 / total, 2) if total else 0.0

    distribution = {grade: 0 for _, grade in GRADE_THRESHOLDS}
    distribution["F"] = 0
    for summary in summaries:
        distribution[summary.grade] += 1

    elapsed = None
    if session.started_at and session.finished_at:
        elapsed = round((session.finished_at - session.started_at).total_seconds(), 3)

    done = sum(1 for s in summaries if s.status == TargetStatus.DONE)
    return SessionReport(
        session_id=session.id,
        status=session.status,
        targets=summaries,
        aggregate_pass_rate=aggregate,
        done_count=done,
        failed_count=sum(1 for s in summaries if s.status == TargetStatus.FAILED),
        ready=bool(summaries) and done == len(summaries),
        readiness=readiness_label(aggregate),
        grade_distribution=distribution,
        patches_promoted=sum(s.patches_promoted for s in summaries),
        elapsed_seconds=elapsed,
    )
