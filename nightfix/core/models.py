"""All Pydantic data models for nightfix.

Defines the data contracts shared by the scheduler, the sandbox, the
analyzer, the auto-fix controller, the state stores and the report
aggregator. Every persisted record and every event has a model here.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"


class TargetStatus(str, enum.Enum):
    PENDING = "PENDING"
    TESTING = "TESTING"
    ANALYZING = "ANALYZING"
    PATCHING = "PATCHING"
    VERIFYING = "VERIFYING"
    DONE = "DONE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (TargetStatus.DONE, TargetStatus.FAILED)


class FailureReason(str, enum.Enum):
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"
    ANALYSIS_UNAVAILABLE = "ANALYSIS_UNAVAILABLE"
    ATTEMPTS_EXHAUSTED = "ATTEMPTS_EXHAUSTED"
    NO_PROPOSAL = "NO_PROPOSAL"
    PROPOSALS_REJECTED = "PROPOSALS_REJECTED"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ExecutionStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"
    EXECUTION_FAILED = "EXECUTION_FAILED"


class ExecutionFailureKind(str, enum.Enum):
    TIMEOUT = "timeout"
    CRASH = "crash"
    CANCELLED = "cancelled"


class TestOutcome(str, enum.Enum):
    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RiskClass(str, enum.Enum):
    TEST_ONLY = "test-only"
    ARTIFACT_MINOR = "artifact-minor"
    ARTIFACT_STRUCTURAL = "artifact-structural"


class PatchOutcome(str, enum.Enum):
    PROMOTED = "promoted"
    REGRESSED = "regressed"
    NEUTRAL = "neutral"


class CredentialStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID = "INVALID"
    EXHAUSTED = "EXHAUSTED"


class EventType(str, enum.Enum):
    SESSION_STARTED = "SessionStarted"
    TARGET_STATE_CHANGED = "TargetStateChanged"
    PATCH_PROMOTED = "PatchPromoted"
    SESSION_COMPLETED = "SessionCompleted"


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

class ManifestEntry(BaseModel):
    """One artifact as declared in the static manifest."""
    name: str
    path: str
    test_command: list[str]
    objectives: list[str] = Field(default_factory=list)  # highest priority first
    protected_constants: list[str] = Field(default_factory=list)
    source_globs: list[str] = Field(default_factory=lambda: ["contracts/**/*.sol", "*.sol"])
    context_files: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Test results and proposals
# ---------------------------------------------------------------------------

class TestRunResult(BaseModel):
    __test__ = False

    id: str = Field(default_factory=_new_id)
    attempt: int = 0
    timestamp: datetime = Field(default_factory=_now)
    outcomes: dict[str, TestOutcome] = Field(default_factory=dict)
    failure_details: dict[str, str] = Field(default_factory=dict)
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0
    raw_output: str = ""
    return_code: Optional[int] = None
    execution_status: ExecutionStatus = ExecutionStatus.COMPLETED
    failure_kind: Optional[ExecutionFailureKind] = None
    parse_error: bool = False

    @property
    def total(self) -> int:
        return self.passed + self.failed

    @property
    def pass_rate(self) -> float:
        """Percentage of executed (non-skipped) tests that passed."""
        if self.total == 0:
            return 0.0
        return round(self.passed * 100.0 / self.total, 2)

    @property
    def all_passing(self) -> bool:
        return (
            self.execution_status == ExecutionStatus.COMPLETED
            and self.total > 0
            and self.failed == 0
        )

    @property
    def passing_tests(self) -> set[str]:
        return {tid for tid, outcome in self.outcomes.items() if outcome == TestOutcome.PASSED}

    @property
    def failing_tests(self) -> set[str]:
        return {tid for tid, outcome in self.outcomes.items() if outcome == TestOutcome.FAILED}


class PatchProposal(BaseModel):
    id: str = Field(default_factory=_new_id)
    target_id: str
    source_result_id: str
    diff: str
    rationale: str
    risk_class: RiskClass
    applied: bool = False
    outcome: Optional[PatchOutcome] = None
    model: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class ContractTarget(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    path: str
    test_command: list[str]
    objectives: list[str] = Field(default_factory=list)
    protected_constants: list[str] = Field(default_factory=list)
    source_globs: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)
    status: TargetStatus = TargetStatus.PENDING
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    attempts: int = 0
    rejected_proposals: int = 0
    history: list[TestRunResult] = Field(default_factory=list)
    baseline_result_id: Optional[str] = None
    proposals: list[PatchProposal] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_manifest(cls, entry: ManifestEntry) -> "ContractTarget":
        return cls(
            name=entry.name,
            path=entry.path,
            test_command=list(entry.test_command),
            objectives=list(entry.objectives),
            protected_constants=list(entry.protected_constants),
            source_globs=list(entry.source_globs),
            context_files=list(entry.context_files),
        )

    @property
    def latest_result(self) -> Optional[TestRunResult]:
        return self.history[-1] if self.history else None

    @property
    def baseline_result(self) -> Optional[TestRunResult]:
        """Result that reflects the canonical tree.

        Verification runs of rejected patches stay in history for the
        report but never become the baseline.
        """
        if self.baseline_result_id is None:
            return None
        for result in reversed(self.history):
            if result.id == self.baseline_result_id:
                return result
        return None

    @property
    def promoted_count(self) -> int:
        return sum(1 for p in self.proposals if p.outcome == PatchOutcome.PROMOTED)


class RunConfig(BaseModel):
    """Per-session knobs passed to BatchScheduler.start()."""
    max_concurrency: int = 3
    max_fix_attempts: int = 5
    max_proposal_rejections: int = 3
    global_timeout_ms: int = 8 * 60 * 60 * 1000
    test_timeout_ms: int = 10 * 60 * 1000
    model_timeout_ms: int = 120 * 1000


class RunSession(BaseModel):
    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_now)
    target_ids: list[str] = Field(default_factory=list)
    targets: dict[str, ContractTarget] = Field(default_factory=dict)
    status: SessionStatus = SessionStatus.QUEUED
    config: RunConfig = Field(default_factory=RunConfig)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_reason: Optional[FailureReason] = None

    def ordered_targets(self) -> list[ContractTarget]:
        return [self.targets[tid] for tid in self.target_ids]


# ---------------------------------------------------------------------------
# Credentials and events
# ---------------------------------------------------------------------------

class CredentialSnapshot(BaseModel):
    """Redacted view of one APICredential."""
    handle: str
    status: CredentialStatus
    rate_limited_until: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    consecutive_failures: int = 0


class ProcessingEvent(BaseModel):
    event_type: EventType
    session_id: str
    target_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)
    payload: dict[str, Any] = Field(default_factory=dict)
