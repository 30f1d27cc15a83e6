"""Execution policy for sandboxed test runs.

Provides:
- Command template allowlisting over argv lists (no shell strings); the
  executable must be the declared binary, not just share its name
- Working-directory confinement to allowed roots
- Environment sanitization with allowed variable prefixes
- Secret redaction for captured output
"""

from __future__ import annotations

import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from nightfix.core.config import CommandTemplate, SandboxConfig

SCRATCH_PREFIX = "nightfix-"

_FORBIDDEN_FRAGMENTS = ("`", "$(", "${", ";", "&&", "||", "|", ">", "<", "\n", "\r", "\x00")

_SECRET_PATTERNS = (
    (re.compile(r"sk-ant-[A-Za-z0-9_-]+"), "[REDACTED_API_KEY]"),
    (re.compile(r"sk-or-[A-Za-z0-9_-]+"), "[REDACTED_API_KEY]"),
    (re.compile(r"github_pat_[A-Za-z0-9_]+"), "[REDACTED_GITHUB_TOKEN]"),
    (re.compile(r"gh[pousr]_[A-Za-z0-9]{20,}"), "[REDACTED_GITHUB_TOKEN]"),
    (re.compile(r"\b[0-9]{8,10}:[A-Za-z0-9_-]{35}\b"), "[REDACTED_BOT_TOKEN]"),
)


@dataclass
class SecurityPolicy:
    """Policy applied to every sandboxed subprocess."""

    command_templates: list[CommandTemplate] = field(default_factory=list)
    allowed_roots: list[Path] = field(default_factory=list)
    sanitize_env: bool = True
    safe_env_vars: list[str] = field(default_factory=lambda: ["PATH", "HOME", "LANG"])
    allowed_env_prefixes: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: SandboxConfig) -> "SecurityPolicy":
        return cls(
            command_templates=list(config.command_templates),
            allowed_roots=[Path(r).expanduser().resolve() for r in config.allowed_roots],
            sanitize_env=config.sanitize_env,
            safe_env_vars=list(config.safe_env_vars),
            allowed_env_prefixes=list(config.allowed_env_prefixes),
        )

    def matching_template(self, argv: list[str]) -> CommandTemplate | None:
        """Return the template argv conforms to, or None."""
        if not argv:
            return None
        if any(frag in arg for arg in argv for frag in _FORBIDDEN_FRAGMENTS):
            return None

        for template in self.command_templates:
            if not self._same_executable(template.executable, argv[0]):
                continue
            prefix = template.args
            if argv[1:1 + len(prefix)] == prefix:
                return template
        return None

    def _same_executable(self, declared: str, requested: str) -> bool:
        """Whether requested names the binary a template declares.

        An absolute template path must be requested by that path. A bare
        template name is accepted as is (resolved on PATH at spawn), or as
        the path it resolves to on the sandbox PATH; any other file of the
        same name is rejected.
        """
        if Path(declared).is_absolute():
            return Path(requested).is_absolute() and _same_file(requested, declared)
        if requested == declared:
            return "/" not in declared
        if "/" not in requested or "/" in declared:
            return False
        found = shutil.which(declared, path=self.build_subprocess_env().get("PATH"))
        return found is not None and _same_file(requested, found)

    def is_command_allowed(self, argv: list[str]) -> bool:
        return self.matching_template(argv) is not None

    def is_path_allowed(self, path: str | Path) -> bool:
        """A working directory must resolve inside one of the allowed roots.

        With no roots configured every existing directory is allowed.
        Scratch copies made by nightfix under the temp dir are always allowed.
        """
        if "\x00" in str(path):
            return False
        resolved = Path(path).expanduser().resolve()
        if not self.allowed_roots or _is_scratch_path(resolved):
            return True
        return any(_starts_with_path(resolved, root) for root in self.allowed_roots)

    def build_subprocess_env(self, extra_env: dict[str, str] | None = None) -> dict[str, str]:
        """Build execution env with optional sanitization."""
        if self.sanitize_env:
            env = {k: os.environ[k] for k in self.safe_env_vars if k in os.environ}
            for key, value in os.environ.items():
                if any(key.startswith(prefix) for prefix in self.allowed_env_prefixes):
                    env[key] = value
        else:
            env = dict(os.environ)

        if extra_env:
            for key, value in extra_env.items():
                if self.sanitize_env and not any(
                    key.startswith(prefix) for prefix in self.allowed_env_prefixes
                ):
                    continue
                env[key] = value.replace("`", "").replace("$(", "")

        return env


def redact_secrets(text: str) -> str:
    """Strip API keys and tokens from captured process output."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _same_file(a: str, b: str) -> bool:
    return Path(a).resolve() == Path(b).resolve()


def _starts_with_path(path: Path, prefix: Path) -> bool:
    try:
        path.relative_to(prefix)
        return True
    except ValueError:
        return False


def _is_scratch_path(path: Path) -> bool:
    try:
        rel = path.relative_to(Path(tempfile.gettempdir()).resolve())
    except ValueError:
        return False
    return bool(rel.parts) and rel.parts[0].startswith(SCRATCH_PREFIX)
