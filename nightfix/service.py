"""External interface for nightfix.

OvernightProcessor is what callers (the CLI, a scheduler daemon, a web
front end) talk to. It starts sessions, serves status snapshots, exposes
the event stream to notifiers and hands every finalized SessionReport to
registered publishers.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError

from nightfix.core.config import load_manifest
from nightfix.core.exceptions import ConfigError
from nightfix.core.factory import ComponentBundle, ComponentFactory
from nightfix.core.models import CredentialSnapshot, ManifestEntry, RunConfig, RunSession
from nightfix.observability.events import EventSubscriber
from nightfix.reporting.aggregator import SessionReport, summarize

logger = logging.getLogger("nightfix.service")

ReportPublisher = Callable[[SessionReport], None]
ManifestInput = Path | str | Sequence[ManifestEntry | dict[str, Any]]


class OvernightProcessor:
    """Entry point for overnight processing sessions."""

    def __init__(self, bundle: ComponentBundle, report_dir: Optional[Path] = None):
        self.bundle = bundle
        self.scheduler = bundle.scheduler
        self.report_dir = Path(report_dir or bundle.config.reporting.report_dir)
        self.publishers: list[ReportPublisher] = []
        self.scheduler.add_completion_hook(self._on_session_completed)

    @classmethod
    def from_config(cls, config_dir: Optional[Path] = None, env: Optional[str] = None) -> "OvernightProcessor":
        return cls(ComponentFactory.create(config_dir=config_dir, env=env))

    def start_overnight_processing(
        self,
        manifest: ManifestInput,
        config: RunConfig | dict[str, Any] | None = None,
    ) -> str:
        """Start a session and return its id without waiting for it.

        Raises:
            ConfigError: Invalid manifest or run config.
            AllCredentialsExhausted: The credential pool is empty.
        """
        if isinstance(manifest, (str, Path)):
            manifest = load_manifest(Path(manifest))
        run_config = self._run_config(config)
        session_id = self.scheduler.start(manifest, run_config)
        logger.info("Overnight processing started: session %s", session_id)
        return session_id

    def get_processing_status(self, session_id: str) -> RunSession:
        """Last durably committed state of a session. Safe to poll."""
        return self.scheduler.get_status(session_id)

    def get_report(self, session_id: str) -> SessionReport:
        return summarize(self.scheduler.get_status(session_id))

    def cancel_processing(self, session_id: str) -> None:
        self.scheduler.cancel(session_id)

    def resume_processing(self, session_id: str) -> str:
        return self.scheduler.resume(session_id)

    def wait_for_completion(self, session_id: str, timeout: Optional[float] = None) -> bool:
        return self.scheduler.wait(session_id, timeout)

    def subscribe(self, callback: EventSubscriber) -> None:
        """Register a notifier for SessionStarted/TargetStateChanged/... events."""
        self.bundle.events.subscribe(callback)

    def add_publisher(self, publisher: ReportPublisher) -> None:
        """Register an archiver that receives each finalized SessionReport."""
        self.publishers.append(publisher)

    def credential_status(self) -> list[CredentialSnapshot]:
        return self.bundle.credential_pool.snapshot()

    def reset_credentials(self) -> int:
        """Process-wide reset of EXHAUSTED credentials."""
        return self.bundle.credential_pool.reset_exhausted()

    def close(self) -> None:
        ComponentFactory.close(self.bundle)

    def _run_config(self, config: RunConfig | dict[str, Any] | None) -> RunConfig:
        if config is None:
            return self.bundle.config.run.model_copy()
        if isinstance(config, RunConfig):
            return config
        merged = {**self.bundle.config.run.model_dump(), **config}
        try:
            return RunConfig(**merged)
        except ValidationError as e:
            raise ConfigError(f"Invalid run config: {e}") from e

    def _on_session_completed(self, session: RunSession) -> None:
        report = summarize(session)
        self.report_dir.mkdir(parents=True, exist_ok=True)
        path = self.report_dir / f"{session.id}.json"
        path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        logger.info(
            "Session %s report written to %s (%s, %.1f%%)",
            session.id, path, report.readiness, report.aggregate_pass_rate,
        )
        for publisher in list(self.publishers):
            try:
                publisher(report)
            except Exception:
                logger.exception("Report publisher failed for session %s", session.id)
