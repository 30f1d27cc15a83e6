"""Configuration loader for nightfix.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then environment-specific overrides, then environment variables.
Also loads and validates target manifests.
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from nightfix.core.exceptions import ConfigError
from nightfix.core.models import ManifestEntry, RunConfig


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class DatabaseConfig(BaseModel):
    backend: str = "file"  # "file" or "postgresql"
    state_dir: str = "artifacts/state"
    host: str = "localhost"
    port: int = 5432
    dbname: str = "nightfix"
    user: str = "nightfix"
    password: str = "nightfix"

    @property
    def connection_string(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.dbname}"


class LLMConfig(BaseModel):
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "anthropic/claude-sonnet-4"
    default_temperature: float = 0.2
    default_max_tokens: int = 4096


class CredentialConfig(BaseModel):
    api_keys: list[str] = Field(default_factory=list)
    rate_limit_cooldown_seconds: float = 60.0
    transient_retries: int = 2
    backoff_seconds: float = 2.0
    exhaustion_threshold: int = 3
    max_requests_per_minute: int = 50


class CommandTemplate(BaseModel):
    """An approved executable plus the fixed leading arguments it must use."""
    executable: str
    args: list[str] = Field(default_factory=list)


class SandboxConfig(BaseModel):
    command_templates: list[CommandTemplate] = Field(
        default_factory=lambda: [
            CommandTemplate(executable="npx", args=["hardhat", "test"]),
            CommandTemplate(executable="npm", args=["test"]),
            CommandTemplate(executable="forge", args=["test"]),
            CommandTemplate(executable="pytest"),
        ]
    )
    allowed_roots: list[str] = Field(default_factory=list)
    sanitize_env: bool = True
    safe_env_vars: list[str] = Field(
        default_factory=lambda: [
            "PATH",
            "HOME",
            "TERM",
            "LANG",
            "LC_ALL",
            "LC_CTYPE",
            "USER",
            "TMPDIR",
            "VIRTUAL_ENV",
            "PYTHONPATH",
        ]
    )
    allowed_env_prefixes: list[str] = Field(
        default_factory=lambda: ["NODE_", "NPM_", "HARDHAT_", "FOUNDRY_", "TEST_", "LOG_"]
    )
    max_output_bytes: int = 1_048_576
    linked_dirs: list[str] = Field(default_factory=lambda: ["node_modules"])


class AnalyzerConfig(BaseModel):
    prompt_token_budget: int = 24_000
    chars_per_token: int = 4
    max_source_files: int = 20


class ReportingConfig(BaseModel):
    report_dir: str = "artifacts/reports"


class ObservabilityConfig(BaseModel):
    events_jsonl_path: str = "artifacts/events.jsonl"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    run: RunConfig = Field(default_factory=RunConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _credential_keys_from_env() -> list[str]:
    """NIGHTFIX_API_KEYS (comma separated) wins over CLAUDE_API_KEY_1..N."""
    joined = os.getenv("NIGHTFIX_API_KEYS", "")
    keys = [k.strip() for k in joined.split(",") if k.strip()]
    if keys:
        return keys

    index = 1
    while True:
        value = os.getenv(f"CLAUDE_API_KEY_{index}")
        if not value:
            break
        keys.append(value.strip())
        index += 1
    return keys


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: default.yaml -> {env}.yaml -> env vars (DATABASE_URL, API keys)
    """
    if config_dir is None:
        config_dir = Path(__file__).parent.parent.parent / "config"

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    db_url = os.getenv("DATABASE_URL")
    if db_url and db_url.startswith("postgresql://"):
        from urllib.parse import urlparse
        parsed = urlparse(db_url)
        database = merged.setdefault("database", {})
        database["backend"] = "postgresql"
        if parsed.hostname:
            database["host"] = parsed.hostname
        if parsed.port:
            database["port"] = parsed.port
        if parsed.username:
            database["user"] = parsed.username
        if parsed.password:
            database["password"] = parsed.password
        if parsed.path and len(parsed.path) > 1:
            database["dbname"] = parsed.path[1:]

    env_keys = _credential_keys_from_env()
    if env_keys:
        merged.setdefault("credentials", {})["api_keys"] = env_keys

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

def _normalize_command(raw: Any) -> Any:
    # A string command is tokenized, never handed to a shell.
    if isinstance(raw, str):
        return shlex.split(raw)
    return raw


def parse_manifest(data: Any, base_dir: Optional[Path] = None) -> list[ManifestEntry]:
    """Validate raw manifest data (a list or a mapping with ``targets``)."""
    if isinstance(data, dict):
        data = data.get("targets")
    if not isinstance(data, list) or not data:
        raise ConfigError("Manifest must contain a non-empty list of targets")

    entries: list[ManifestEntry] = []
    for index, raw in enumerate(data):
        if isinstance(raw, ManifestEntry):
            entries.append(raw)
            continue
        if not isinstance(raw, dict):
            raise ConfigError(f"Manifest target #{index} is not a mapping")
        item = dict(raw)
        item["test_command"] = _normalize_command(item.get("test_command"))
        if base_dir is not None and "path" in item and not Path(item["path"]).is_absolute():
            item["path"] = str((base_dir / item["path"]).resolve())
        try:
            entries.append(ManifestEntry(**item))
        except ValidationError as e:
            raise ConfigError(f"Invalid manifest target #{index}: {e}") from e

    validate_manifest(entries)
    return entries


def validate_manifest(entries: list[ManifestEntry]) -> None:
    if not entries:
        raise ConfigError("Manifest is empty")

    seen: set[str] = set()
    for entry in entries:
        if not entry.name.strip():
            raise ConfigError("Manifest target has an empty name")
        if entry.name in seen:
            raise ConfigError(f"Duplicate manifest target: {entry.name}")
        seen.add(entry.name)
        if not entry.test_command or not all(isinstance(a, str) and a for a in entry.test_command):
            raise ConfigError(f"Target '{entry.name}' has an empty test command")
        if not Path(entry.path).is_dir():
            raise ConfigError(f"Target '{entry.name}' path is not a directory: {entry.path}")


def load_manifest(path: Path) -> list[ManifestEntry]:
    """Load a YAML manifest; relative target paths resolve against its folder."""
    if not path.exists():
        raise ConfigError(f"Manifest not found: {path}")
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in manifest {path}: {e}") from e
    return parse_manifest(data, base_dir=path.parent.resolve())


def validate_run_config(config: RunConfig) -> None:
    if config.max_concurrency < 1:
        raise ConfigError("max_concurrency must be at least 1")
    if config.max_fix_attempts < 0:
        raise ConfigError("max_fix_attempts must not be negative")
    if config.max_proposal_rejections < 1:
        raise ConfigError("max_proposal_rejections must be at least 1")
    if config.global_timeout_ms <= max(config.test_timeout_ms, config.model_timeout_ms):
        raise ConfigError(
            "global_timeout_ms must be strictly larger than test_timeout_ms and model_timeout_ms"
        )


# ---------------------------------------------------------------------------
# Prompt loader
# ---------------------------------------------------------------------------

class PromptLoader:
    """Loads prompt templates from config/prompts/ directory.

    Falls back to hardcoded defaults if the file doesn't exist, allowing
    prompt iteration without code changes.
    """

    def __init__(self, prompts_dir: Optional[Path] = None):
        if prompts_dir is None:
            prompts_dir = Path(__file__).parent.parent.parent / "config" / "prompts"
        self.prompts_dir = prompts_dir

    def load(self, name: str, default: str = "") -> str:
        path = self.prompts_dir / name
        if path.exists():
            return path.read_text().strip()
        return default
