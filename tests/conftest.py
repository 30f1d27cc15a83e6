"""Shared fixtures for nightfix tests.

All tests use REAL dependencies: real subprocesses, real git, real files.
The only replaced layer is the network, via httpx.MockTransport.
Tests requiring external services use skip markers when unavailable.
"""

from __future__ import annotations

import difflib
import json
import os
import sys
from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest
from dotenv import load_dotenv

# Load .env from project root so DATABASE_URL etc. are available
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from nightfix.analysis.analyzer import FailureAnalyzer
from nightfix.core.config import (
    AnalyzerConfig,
    AppConfig,
    CommandTemplate,
    CredentialConfig,
    DatabaseConfig,
    ObservabilityConfig,
    PromptLoader,
    ReportingConfig,
    SandboxConfig,
)
from nightfix.db.state_store import FileStateStore
from nightfix.execution.sandbox import TestExecutionSandbox
from nightfix.llm.client import OpenRouterClient
from nightfix.llm.key_rotation import CredentialPool, KeyRotationClient
from nightfix.observability.events import EventStream
from nightfix.orchestrator.autofix import AutoFixController
from nightfix.orchestrator.scheduler import BatchScheduler
from nightfix.security.policy import SecurityPolicy


# ---------------------------------------------------------------------------
# Service availability checks
# ---------------------------------------------------------------------------

def _get_db_config() -> DatabaseConfig:
    """Build a DatabaseConfig from environment or defaults."""
    db_url = os.getenv("DATABASE_URL")
    if db_url and db_url.startswith("postgresql://"):
        from urllib.parse import urlparse
        parsed = urlparse(db_url)
        return DatabaseConfig(
            backend="postgresql",
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            dbname=(parsed.path[1:] if parsed.path and len(parsed.path) > 1 else "nightfix"),
            user=parsed.username or "nightfix",
            password=parsed.password or "nightfix",
        )
    return DatabaseConfig(backend="postgresql")


def _postgres_available() -> bool:
    """Check if PostgreSQL is reachable."""
    try:
        import psycopg
        conn = psycopg.connect(_get_db_config().connection_string, connect_timeout=5)
        conn.close()
        return True
    except Exception:
        return False


requires_postgres = pytest.mark.skipif(
    not _postgres_available(),
    reason="PostgreSQL not available",
)


# ---------------------------------------------------------------------------
# Fake test projects
# ---------------------------------------------------------------------------

# Reads results.txt ("name=pass|fail" per line, '#' comments) and prints
# pytest-style result lines. Patches change behaviour by editing results.txt.
RUNNER_SCRIPT = """\
import pathlib
import sys
import time

delay = pathlib.Path("delay.txt")
if delay.exists():
    time.sleep(float(delay.read_text()))

failed = 0
for line in pathlib.Path("results.txt").read_text().splitlines():
    line = line.strip()
    if not line or line.startswith("#"):
        continue
    name, _, outcome = line.partition("=")
    if outcome == "pass":
        print(f"PASSED {name}")
    else:
        failed += 1
        print(f"FAILED {name} - AssertionError: expected pass")
sys.exit(1 if failed else 0)
"""

RUNNER_NAME = "run_tests.py"
TEST_COMMAND = [sys.executable, RUNNER_NAME]


def results_text(outcomes: dict[str, str]) -> str:
    return "".join(f"{name}={outcome}\n" for name, outcome in outcomes.items())


def outcomes_for(total: int, failing: set[int] = frozenset()) -> dict[str, str]:
    return {f"t{i}": ("fail" if i in failing else "pass") for i in range(total)}


def make_project(
    root: Path,
    name: str,
    outcomes: dict[str, str],
    delay_seconds: Optional[float] = None,
    extra_files: Optional[dict[str, str]] = None,
) -> Path:
    """Create a fake artifact directory driven by results.txt."""
    project = root / name
    project.mkdir(parents=True)
    (project / RUNNER_NAME).write_text(RUNNER_SCRIPT)
    (project / "results.txt").write_text(results_text(outcomes))
    if delay_seconds is not None:
        (project / "delay.txt").write_text(str(delay_seconds))
    for rel, text in (extra_files or {}).items():
        path = project / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    return project


def unified_diff(rel_path: str, before: str, after: str) -> str:
    """A git-apply compatible diff turning before into after."""
    lines = difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{rel_path}",
        tofile=f"b/{rel_path}",
    )
    return "".join(lines)


def runner_policy(**kwargs) -> SecurityPolicy:
    """Policy that only allows the fake runner under this interpreter."""
    return SecurityPolicy(
        command_templates=[CommandTemplate(executable=sys.executable, args=[RUNNER_NAME])],
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Model replies over httpx.MockTransport
# ---------------------------------------------------------------------------

def chat_response(content: str, model: str = "test/model") -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "choices": [{"message": {"content": content}}],
            "model": model,
            "usage": {"total_tokens": 42},
        },
    )


def proposal_reply(diff: str, rationale: str = "fix", risk_class: str = "artifact-minor") -> httpx.Response:
    return chat_response(json.dumps({"diff": diff, "rationale": rationale, "risk_class": risk_class}))


def user_prompt(request: httpx.Request) -> str:
    body = json.loads(request.content)
    return next(m["content"] for m in body["messages"] if m["role"] == "user")


def llm_with_transport(handler: Callable[[httpx.Request], httpx.Response]) -> OpenRouterClient:
    """OpenRouterClient whose network layer is replaced by handler."""
    client = OpenRouterClient(timeout_seconds=5)
    client._client = httpx.Client(transport=httpx.MockTransport(handler), timeout=httpx.Timeout(5))
    return client


def rotation_client(
    handler: Callable[[httpx.Request], httpx.Response],
    keys: Optional[list[str]] = None,
) -> KeyRotationClient:
    pool = CredentialPool(keys or ["sk-test-key-aaaa1111"])
    return KeyRotationClient(pool, llm_with_transport(handler), sleep=lambda _: None)


def build_scheduler(
    tmp_path: Path,
    handler: Callable[[httpx.Request], httpx.Response],
    keys: Optional[list[str]] = None,
    events: Optional[EventStream] = None,
) -> BatchScheduler:
    """Fully wired scheduler over the fake runner and a mocked model."""
    rotation = rotation_client(handler, keys)
    sandbox = TestExecutionSandbox(runner_policy())
    analyzer = FailureAnalyzer(
        rotation,
        config=AnalyzerConfig(prompt_token_budget=4000),
        prompt_loader=PromptLoader(tmp_path / "no-prompts"),
    )
    return BatchScheduler(
        sandbox=sandbox,
        analyzer=analyzer,
        autofix=AutoFixController(sandbox),
        state_store=FileStateStore(tmp_path / "state"),
        events=events,
        credential_pool=rotation.pool,
    )


def never_called(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"Unexpected model request to {request.url}")


def runner_app_config(tmp_path: Path, keys: Optional[list[str]] = None) -> AppConfig:
    """AppConfig whose sandbox runs the fake runner and writes under tmp_path."""
    return AppConfig(
        database=DatabaseConfig(state_dir=str(tmp_path / "state")),
        credentials=CredentialConfig(
            api_keys=["sk-test-key-aaaa1111"] if keys is None else keys,
            transient_retries=0,
        ),
        sandbox=SandboxConfig(
            command_templates=[CommandTemplate(executable=sys.executable, args=[RUNNER_NAME])],
        ),
        reporting=ReportingConfig(report_dir=str(tmp_path / "reports")),
        observability=ObservabilityConfig(events_jsonl_path=str(tmp_path / "events.jsonl")),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def db_config() -> DatabaseConfig:
    return _get_db_config()


@pytest.fixture
def db_engine(db_config):
    """Real PostgreSQL engine: creates schema, yields, cleans up."""
    from nightfix.db.engine import DatabaseEngine
    engine = DatabaseEngine(db_config)
    engine.initialize_schema()
    yield engine
    engine.close()


@pytest.fixture
def sandbox() -> TestExecutionSandbox:
    return TestExecutionSandbox(runner_policy())
