"""Component factory for nightfix.

Creates and wires every infrastructure component (state store, LLM
client, credential pool, sandbox, analyzer, auto-fix controller) so the
scheduler receives fully-initialized dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from nightfix.analysis.analyzer import FailureAnalyzer
from nightfix.core.config import AppConfig, PromptLoader, load_config
from nightfix.db.engine import DatabaseEngine
from nightfix.db.state_store import FileStateStore, PostgresStateStore, StateStore
from nightfix.execution.sandbox import TestExecutionSandbox
from nightfix.llm.client import OpenRouterClient
from nightfix.llm.key_rotation import CredentialPool, KeyRotationClient
from nightfix.observability.events import EventStream
from nightfix.orchestrator.autofix import AutoFixController
from nightfix.orchestrator.scheduler import BatchScheduler
from nightfix.security.policy import SecurityPolicy

logger = logging.getLogger("nightfix.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The credential pool lives as long as the bundle and is shared by every
    session the scheduler runs.
    """

    config: AppConfig
    state_store: StateStore
    llm_client: OpenRouterClient
    credential_pool: CredentialPool
    rotation_client: KeyRotationClient
    security_policy: SecurityPolicy
    sandbox: TestExecutionSandbox
    analyzer: FailureAnalyzer
    autofix: AutoFixController
    events: EventStream
    scheduler: BatchScheduler
    db_engine: Optional[DatabaseEngine] = None


class ComponentFactory:
    """Factory for creating and wiring nightfix infrastructure.

    Usage:
        bundle = ComponentFactory.create(config_dir=Path("config"))
        session_id = bundle.scheduler.start(manifest, bundle.config.run)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        config: Optional[AppConfig] = None,
        initialize_schema: bool = True,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test", "production").
            config: Pre-built AppConfig; skips the YAML cascade when given.
            initialize_schema: Whether to run schema.sql when using PostgreSQL.

        Raises:
            AllCredentialsExhausted: No API keys are configured.
        """
        logger.info("Initializing components...")

        # --- Config ---
        if config is None:
            config = load_config(config_dir=config_dir, env=env)
        prompts_dir = (config_dir / "prompts") if config_dir is not None else None

        # --- State store ---
        state_store, db_engine = ComponentFactory.create_state_store(config, initialize_schema)

        # --- LLM ---
        credential_pool = CredentialPool.from_config(config.credentials)
        llm_client = OpenRouterClient(
            config=config.llm,
            timeout_seconds=config.run.model_timeout_ms / 1000.0,
        )
        rotation_client = KeyRotationClient(
            pool=credential_pool,
            llm_client=llm_client,
            transient_retries=config.credentials.transient_retries,
            backoff_seconds=config.credentials.backoff_seconds,
        )
        logger.info(
            "LLM client configured (base_url=%s, %d credential(s))",
            config.llm.base_url, len(credential_pool),
        )

        # --- Execution ---
        security_policy = SecurityPolicy.from_config(config.sandbox)
        sandbox = TestExecutionSandbox(
            security_policy=security_policy,
            max_output_bytes=config.sandbox.max_output_bytes,
        )
        analyzer = FailureAnalyzer(
            rotation_client=rotation_client,
            config=config.analyzer,
            prompt_loader=PromptLoader(prompts_dir),
            model=config.llm.model,
        )
        autofix = AutoFixController(
            sandbox=sandbox,
            linked_dirs=config.sandbox.linked_dirs,
            test_timeout_ms=config.run.test_timeout_ms,
        )

        events = EventStream(
            jsonl_path=Path(config.observability.events_jsonl_path)
            if config.observability.events_jsonl_path else None,
        )
        scheduler = BatchScheduler(
            sandbox=sandbox,
            analyzer=analyzer,
            autofix=autofix,
            state_store=state_store,
            events=events,
            credential_pool=credential_pool,
        )

        logger.info("All components initialized")
        return ComponentBundle(
            config=config,
            state_store=state_store,
            llm_client=llm_client,
            credential_pool=credential_pool,
            rotation_client=rotation_client,
            security_policy=security_policy,
            sandbox=sandbox,
            analyzer=analyzer,
            autofix=autofix,
            events=events,
            scheduler=scheduler,
            db_engine=db_engine,
        )

    @staticmethod
    def create_state_store(
        config: AppConfig,
        initialize_schema: bool = True,
    ) -> tuple[StateStore, Optional[DatabaseEngine]]:
        """Build the configured StateStore (and its engine, for PostgreSQL)."""
        if config.database.backend == "postgresql":
            db_engine = DatabaseEngine(config.database)
            if initialize_schema:
                db_engine.initialize_schema()
            logger.info("Using PostgreSQL state store")
            return PostgresStateStore(db_engine), db_engine
        logger.info("Using file state store at %s", config.database.state_dir)
        return FileStateStore(Path(config.database.state_dir)), None

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        bundle.rotation_client.close()
        if bundle.db_engine is not None:
            bundle.db_engine.close()
        logger.info("All components shut down")
