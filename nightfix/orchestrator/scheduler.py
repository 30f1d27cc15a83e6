"""Batch scheduler for nightfix.

Runs every target of a session through its lifecycle:

    PENDING -> TESTING -> (failing) ANALYZING -> PATCHING -> VERIFYING -> ...
            -> DONE (100% pass) | FAILED(reason)

Each session gets one supervisor thread that feeds a bounded worker pool
and enforces the global timeout. Workers mutate a private copy of their
target and commit it to the session under the session lock; every commit
is checkpointed to the StateStore. A target the supervisor has already
forced to a terminal status cannot be overwritten by a late worker, so
a cancelled or timed-out session completes without joining its workers.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Optional, Sequence

from nightfix.analysis.analyzer import FailureAnalyzer
from nightfix.core.config import parse_manifest, validate_manifest, validate_run_config
from nightfix.core.exceptions import (
    AllCredentialsExhausted,
    AnalysisUnavailable,
    CommandNotAllowedError,
    ConfigError,
    DatabaseError,
    MalformedProposal,
    NoProposalAvailable,
    ProtectedConstantViolation,
    SessionNotFoundError,
)
from nightfix.core.models import (
    ContractTarget,
    EventType,
    ExecutionFailureKind,
    ExecutionStatus,
    FailureReason,
    ManifestEntry,
    RunConfig,
    RunSession,
    SessionStatus,
    TargetStatus,
)
from nightfix.db.state_store import StateStore
from nightfix.execution.sandbox import TestExecutionSandbox
from nightfix.llm.key_rotation import CredentialPool
from nightfix.observability.events import EventStream
from nightfix.orchestrator.autofix import AutoFixController

logger = logging.getLogger("nightfix.orchestrator.scheduler")

SessionHook = Callable[[RunSession], None]

_POLL_SECONDS = 0.2


def _now() -> datetime:
    return datetime.now(UTC)


class _TargetClosed(Exception):
    """The committed target is already terminal; the worker must stop."""


@dataclass
class _SessionRuntime:
    session: RunSession
    snapshot: RunSession
    lock: threading.Lock = field(default_factory=threading.Lock)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done_event: threading.Event = field(default_factory=threading.Event)
    stop_reason: Optional[FailureReason] = None
    supervisor: Optional[threading.Thread] = None


class BatchScheduler:
    """Drives RunSessions through the test, analyze, patch, verify loop.

    Injected dependencies:
        sandbox: TestExecutionSandbox for initial runs.
        analyzer: FailureAnalyzer producing PatchProposals.
        autofix: AutoFixController applying and verifying proposals.
        state_store: Where checkpoints go after every transition.
        events: EventStream for SessionStarted/TargetStateChanged/... events.
        credential_pool: Checked at start; an empty pool aborts the session.
    """

    def __init__(
        self,
        sandbox: TestExecutionSandbox,
        analyzer: FailureAnalyzer,
        autofix: AutoFixController,
        state_store: StateStore,
        events: Optional[EventStream] = None,
        credential_pool: Optional[CredentialPool] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sandbox = sandbox
        self.analyzer = analyzer
        self.autofix = autofix
        self.state_store = state_store
        self.events = events or EventStream()
        self.credential_pool = credential_pool
        self.completion_hooks: list[SessionHook] = []
        self._clock = clock
        self._sessions: dict[str, _SessionRuntime] = {}
        self._registry_lock = threading.Lock()

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def start(
        self,
        manifest: Sequence[ManifestEntry | dict[str, Any]],
        config: Optional[RunConfig] = None,
    ) -> str:
        """Validate inputs, create a session and start processing it.

        Returns immediately with the session id.

        Raises:
            ConfigError: Empty or invalid manifest or run config.
            AllCredentialsExhausted: The credential pool is empty.
        """
        config = config or RunConfig()
        entries = self._validate(manifest, config)

        targets = [ContractTarget.from_manifest(entry) for entry in entries]
        session = RunSession(
            target_ids=[t.id for t in targets],
            targets={t.id: t for t in targets},
            config=config,
        )
        runtime = self._register(session)
        with runtime.lock:
            self._checkpoint(runtime)
        logger.info("Session %s created with %d target(s)", session.id, len(targets))
        self._launch(runtime)
        return session.id

    def resume(self, session_id: str) -> str:
        """Continue a checkpointed session after a restart.

        Terminal targets are left alone; in-flight ones go back to PENDING
        with their attempts and history intact. The global timeout restarts.
        """
        with self._registry_lock:
            existing = self._sessions.get(session_id)
        if existing is not None and not existing.done_event.is_set():
            raise ConfigError(f"Session {session_id} is already running")

        session = self.state_store.load(session_id)
        if session.status == SessionStatus.COMPLETED:
            logger.info("Session %s already completed; nothing to resume", session_id)
            runtime = self._register(session)
            runtime.done_event.set()
            return session_id

        self._validate_pool()
        session.status = SessionStatus.QUEUED
        session.cancel_reason = None
        for target in session.ordered_targets():
            if not target.status.is_terminal:
                target.status = TargetStatus.PENDING
        runtime = self._register(session)
        with runtime.lock:
            self._checkpoint(runtime)
        logger.info("Resuming session %s", session_id)
        self._launch(runtime)
        return session_id

    def get_status(self, session_id: str) -> RunSession:
        """Deep copy of the last checkpointed state. Pure read."""
        runtime = self._runtime(session_id, required=False)
        if runtime is not None:
            with runtime.lock:
                return runtime.snapshot.model_copy(deep=True)
        return self.state_store.load(session_id)

    def cancel(self, session_id: str, reason: FailureReason = FailureReason.CANCELLED) -> None:
        """Stop a running session; its non-terminal targets end FAILED(reason)."""
        runtime = self._runtime(session_id)
        with runtime.lock:
            if runtime.session.status == SessionStatus.COMPLETED:
                return
            if runtime.stop_reason is None:
                runtime.stop_reason = reason
                runtime.session.cancel_reason = reason
        logger.warning("Cancelling session %s (%s)", session_id, reason.value)
        runtime.cancel_event.set()

    def wait(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the session completes. Returns False on timeout."""
        runtime = self._runtime(session_id, required=False)
        if runtime is None:
            return self.state_store.load(session_id).status == SessionStatus.COMPLETED
        return runtime.done_event.wait(timeout)

    def add_completion_hook(self, hook: SessionHook) -> None:
        self.completion_hooks.append(hook)

    # -------------------------------------------------------------------
    # Validation and registry
    # -------------------------------------------------------------------

    def _validate(
        self,
        manifest: Sequence[ManifestEntry | dict[str, Any]],
        config: RunConfig,
    ) -> list[ManifestEntry]:
        if not manifest:
            raise ConfigError("Manifest is empty")
        if all(isinstance(item, ManifestEntry) for item in manifest):
            entries = list(manifest)
            validate_manifest(entries)
        else:
            entries = parse_manifest(list(manifest))
        validate_run_config(config)
        for entry in entries:
            try:
                self.sandbox.check_command(entry.test_command)
            except CommandNotAllowedError as e:
                raise ConfigError(f"Target '{entry.name}': {e}") from e
        self._validate_pool()
        return entries

    def _validate_pool(self) -> None:
        if self.credential_pool is not None and len(self.credential_pool) == 0:
            raise AllCredentialsExhausted(["credential pool is empty"])

    def _register(self, session: RunSession) -> _SessionRuntime:
        runtime = _SessionRuntime(session=session, snapshot=session.model_copy(deep=True))
        with self._registry_lock:
            self._sessions[session.id] = runtime
        return runtime

    def _runtime(self, session_id: str, required: bool = True) -> Optional[_SessionRuntime]:
        with self._registry_lock:
            runtime = self._sessions.get(session_id)
        if runtime is None and required:
            raise SessionNotFoundError(session_id)
        return runtime

    def _launch(self, runtime: _SessionRuntime) -> None:
        runtime.supervisor = threading.Thread(
            target=self._supervise,
            args=(runtime,),
            name=f"nightfix-supervisor-{runtime.session.id[:8]}",
            daemon=True,
        )
        runtime.supervisor.start()

    # -------------------------------------------------------------------
    # Supervisor
    # -------------------------------------------------------------------

    def _supervise(self, runtime: _SessionRuntime) -> None:
        session_id = runtime.session.id
        config = runtime.session.config
        deadline = self._clock() + config.global_timeout_ms / 1000.0

        with runtime.lock:
            runtime.session.status = SessionStatus.RUNNING
            runtime.session.started_at = runtime.session.started_at or _now()
            self._checkpoint(runtime)
            pending = [t.id for t in runtime.session.ordered_targets() if not t.status.is_terminal]

        executor = ThreadPoolExecutor(
            max_workers=config.max_concurrency,
            thread_name_prefix=f"nightfix-{session_id[:8]}",
        )
        try:
            self.events.emit(EventType.SESSION_STARTED, session_id, targets=len(runtime.session.target_ids))
            remaining = {executor.submit(self._process_target, runtime, tid) for tid in pending}
            while remaining:
                left = deadline - self._clock()
                if left <= 0:
                    logger.warning(
                        "Session %s hit its global timeout with %d target(s) in flight",
                        session_id, len(remaining),
                    )
                    self._stop(runtime, FailureReason.TIMEOUT)
                    break
                if runtime.cancel_event.is_set():
                    self._stop(runtime, runtime.stop_reason or FailureReason.CANCELLED)
                    break
                _, remaining = wait(remaining, timeout=min(left, _POLL_SECONDS))
        finally:
            # Stragglers only hold closed targets; their commits are refused.
            executor.shutdown(wait=False, cancel_futures=True)
            self._complete(runtime)

    def _stop(self, runtime: _SessionRuntime, reason: FailureReason) -> None:
        """Force every non-terminal target to FAILED(reason), then kill workers."""
        forced: list[tuple[str, TargetStatus]] = []
        with runtime.lock:
            if runtime.stop_reason is None:
                runtime.stop_reason = reason
                runtime.session.cancel_reason = reason
            reason = runtime.stop_reason
            for target in runtime.session.ordered_targets():
                if target.status.is_terminal:
                    continue
                forced.append((target.id, target.status))
                target.status = TargetStatus.FAILED
                target.failure_reason = reason
                target.failure_detail = f"Session stopped: {reason.value}"
                target.finished_at = _now()
            self._checkpoint(runtime)
        runtime.cancel_event.set()
        for target_id, previous in forced:
            self._emit_state(runtime, target_id, previous, TargetStatus.FAILED, reason)

    def _complete(self, runtime: _SessionRuntime) -> None:
        with runtime.lock:
            leftover = [t for t in runtime.session.ordered_targets() if not t.status.is_terminal]
        if leftover:
            self._stop(runtime, runtime.stop_reason or FailureReason.INTERNAL_ERROR)

        with runtime.lock:
            runtime.session.status = SessionStatus.COMPLETED
            runtime.session.finished_at = _now()
            self._checkpoint(runtime)
            final = runtime.session.model_copy(deep=True)

        done = sum(1 for t in final.ordered_targets() if t.status == TargetStatus.DONE)
        logger.info(
            "Session %s completed: %d done, %d failed",
            final.id, done, len(final.target_ids) - done,
        )
        self.events.emit(
            EventType.SESSION_COMPLETED, final.id,
            done=done, failed=len(final.target_ids) - done,
        )
        for hook in list(self.completion_hooks):
            try:
                hook(final)
            except Exception:
                logger.exception("Completion hook failed for session %s", final.id)
        runtime.done_event.set()

    # -------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------

    def _process_target(self, runtime: _SessionRuntime, target_id: str) -> None:
        with runtime.lock:
            committed = runtime.session.targets[target_id]
            if committed.status.is_terminal:
                return
            target = committed.model_copy(deep=True)

        try:
            self._run_lifecycle(runtime, target)
        except _TargetClosed:
            logger.debug("Target '%s' was closed by the supervisor", target.name)
        except Exception as e:
            logger.exception("Unexpected error processing '%s'", target.name)
            try:
                self._finish(runtime, target, TargetStatus.FAILED, FailureReason.INTERNAL_ERROR, str(e))
            except _TargetClosed:
                pass

    def _run_lifecycle(self, runtime: _SessionRuntime, target: ContractTarget) -> None:
        config = runtime.session.config
        if target.started_at is None:
            target.started_at = _now()

        baseline = target.baseline_result
        if baseline is None:
            if runtime.cancel_event.is_set():
                self._fail_stopped(runtime, target)
                return
            self._transition(runtime, target, TargetStatus.TESTING)
            result = self.sandbox.run(
                target.path, target.test_command, config.test_timeout_ms,
                attempt=target.attempts, cancel_event=runtime.cancel_event,
            )
            target.history.append(result)
            if result.execution_status != ExecutionStatus.COMPLETED:
                self._fail_execution(runtime, target, result.failure_kind, result.raw_output)
                return
            if result.parse_error or result.total == 0:
                # A usable baseline reports at least one test.
                detail = "Unparseable runner output" if result.parse_error else "Runner reported no tests"
                self._finish(
                    runtime, target, TargetStatus.FAILED, FailureReason.EXECUTION_FAILED,
                    f"{detail}: {result.raw_output[-500:]}",
                )
                return
            target.baseline_result_id = result.id
            baseline = result
            self._commit(runtime, target)

        consecutive_rejections = 0
        while True:
            if runtime.cancel_event.is_set():
                self._fail_stopped(runtime, target)
                return
            if baseline.all_passing:
                self._finish(runtime, target, TargetStatus.DONE)
                return
            if target.attempts >= config.max_fix_attempts:
                self._finish(
                    runtime, target, TargetStatus.FAILED, FailureReason.ATTEMPTS_EXHAUSTED,
                    f"{baseline.passed}/{baseline.total} passing after {target.attempts} attempt(s)",
                )
                return

            self._transition(runtime, target, TargetStatus.ANALYZING)
            try:
                proposal = self.analyzer.analyze(
                    target, baseline,
                    timeout_seconds=config.model_timeout_ms / 1000.0,
                    cancel_event=runtime.cancel_event,
                )
            except AnalysisUnavailable as e:
                if runtime.cancel_event.is_set():
                    self._fail_stopped(runtime, target)
                    return
                self._finish(runtime, target, TargetStatus.FAILED, FailureReason.ANALYSIS_UNAVAILABLE, str(e))
                return
            except NoProposalAvailable as e:
                self._finish(runtime, target, TargetStatus.FAILED, FailureReason.NO_PROPOSAL, str(e))
                return
            except ProtectedConstantViolation as e:
                # Rejected before patching; does not consume an attempt.
                target.rejected_proposals += 1
                consecutive_rejections += 1
                if consecutive_rejections >= config.max_proposal_rejections:
                    self._finish(
                        runtime, target, TargetStatus.FAILED, FailureReason.PROPOSALS_REJECTED, str(e),
                    )
                    return
                self._commit(runtime, target)
                continue
            except MalformedProposal as e:
                logger.warning("Malformed proposal for '%s': %s", target.name, e)
                target.attempts += 1
                consecutive_rejections = 0
                self._commit(runtime, target)
                continue

            consecutive_rejections = 0
            target.proposals.append(proposal)
            self._transition(runtime, target, TargetStatus.PATCHING)
            attempt = self.autofix.try_fix(
                target,
                proposal,
                baseline,
                cancel_event=runtime.cancel_event,
                on_state=lambda status: self._transition(runtime, target, status),
                test_timeout_ms=config.test_timeout_ms,
            )
            self._commit(runtime, target)
            if attempt.promoted and attempt.verification is not None:
                self.events.emit(
                    EventType.PATCH_PROMOTED, runtime.session.id, target.id,
                    proposal_id=proposal.id,
                    passed_before=baseline.passed,
                    passed_after=attempt.verification.passed,
                    total=attempt.verification.total,
                )
                baseline = attempt.verification

    # -------------------------------------------------------------------
    # Commits and transitions
    # -------------------------------------------------------------------

    def _commit(self, runtime: _SessionRuntime, target: ContractTarget) -> TargetStatus:
        """Publish the worker's copy of target; returns the previous status."""
        with runtime.lock:
            current = runtime.session.targets[target.id]
            if current.status.is_terminal:
                raise _TargetClosed(target.id)
            runtime.session.targets[target.id] = target.model_copy(deep=True)
            self._checkpoint(runtime)
            return current.status

    def _transition(self, runtime: _SessionRuntime, target: ContractTarget, status: TargetStatus) -> None:
        target.status = status
        previous = self._commit(runtime, target)
        if previous != status:
            logger.info("Target '%s': %s -> %s", target.name, previous.value, status.value)
            self._emit_state(runtime, target.id, previous, status)

    def _finish(
        self,
        runtime: _SessionRuntime,
        target: ContractTarget,
        status: TargetStatus,
        reason: Optional[FailureReason] = None,
        detail: Optional[str] = None,
    ) -> None:
        target.status = status
        target.failure_reason = reason if status == TargetStatus.FAILED else None
        target.failure_detail = detail
        target.finished_at = _now()
        previous = self._commit(runtime, target)
        if status == TargetStatus.DONE:
            logger.info("Target '%s' done after %d attempt(s)", target.name, target.attempts)
        else:
            logger.warning(
                "Target '%s' failed (%s): %s", target.name, reason.value if reason else "?", detail or "",
            )
        self._emit_state(runtime, target.id, previous, status, reason)

    def _fail_stopped(self, runtime: _SessionRuntime, target: ContractTarget) -> None:
        reason = runtime.stop_reason or FailureReason.CANCELLED
        self._finish(runtime, target, TargetStatus.FAILED, reason, f"Session stopped: {reason.value}")

    def _fail_execution(
        self,
        runtime: _SessionRuntime,
        target: ContractTarget,
        kind: Optional[ExecutionFailureKind],
        output: str,
    ) -> None:
        if kind == ExecutionFailureKind.CANCELLED:
            self._fail_stopped(runtime, target)
            return
        reason = FailureReason.TIMEOUT if kind == ExecutionFailureKind.TIMEOUT else FailureReason.EXECUTION_FAILED
        self._finish(runtime, target, TargetStatus.FAILED, reason, output[-500:])

    def _emit_state(
        self,
        runtime: _SessionRuntime,
        target_id: str,
        previous: TargetStatus,
        status: TargetStatus,
        reason: Optional[FailureReason] = None,
    ) -> None:
        payload: dict[str, Any] = {"from": previous.value, "to": status.value}
        if reason is not None:
            payload["reason"] = reason.value
        self.events.emit(EventType.TARGET_STATE_CHANGED, runtime.session.id, target_id, **payload)

    def _checkpoint(self, runtime: _SessionRuntime) -> None:
        # Caller holds runtime.lock. The snapshot only advances once saved.
        candidate = runtime.session.model_copy(deep=True)
        try:
            self.state_store.save(candidate)
        except DatabaseError as e:
            logger.error("Checkpoint of session %s failed: %s", runtime.session.id, e)
            return
        runtime.snapshot = candidate
