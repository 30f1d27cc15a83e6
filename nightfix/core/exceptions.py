"""Custom exception hierarchy for nightfix.

All exceptions inherit from NightfixError so callers can catch broadly
or narrowly as needed. Only ConfigError (and an empty credential pool at
session start) aborts a whole session; everything else is contained at the
target level by the scheduler.
"""


class NightfixError(Exception):
    """Base exception for all nightfix errors."""


# ---------------------------------------------------------------------------
# Database / state store
# ---------------------------------------------------------------------------

class DatabaseError(NightfixError):
    """Failed database operation."""


class SchemaInitError(DatabaseError):
    """Failed to initialize database schema."""


class ConnectionError(DatabaseError):
    """Failed to connect to database."""


class SessionNotFoundError(NightfixError):
    """No run session with the requested id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")


# ---------------------------------------------------------------------------
# LLM
# ---------------------------------------------------------------------------

class LLMError(NightfixError):
    """Failed LLM operation."""


class RateLimitError(LLMError):
    """Hit API rate limit."""

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class AuthenticationError(LLMError):
    """Invalid API key or unauthorized."""


class TransientLLMError(LLMError):
    """Network failure or server error worth retrying."""


class LLMCancelledError(LLMError):
    """The caller stopped waiting for the model."""


class ResponseParseError(LLMError):
    """Failed to parse LLM response."""


class CredentialError(LLMError):
    """Credential pool failure."""


class AllCredentialsExhausted(CredentialError):
    """Every credential in the pool is rate-limited, invalid or exhausted."""

    def __init__(self, details: list[str] | None = None):
        self.details = details or []
        message = "All credentials exhausted"
        if self.details:
            message += ": " + "; ".join(self.details)
        super().__init__(message)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------

class AnalysisError(NightfixError):
    """Failure analysis could not produce a usable proposal."""


class AnalysisUnavailable(AnalysisError):
    """The model is unreachable (credential pool exhausted)."""


class MalformedProposal(AnalysisError):
    """Model output did not match the proposal schema."""


class NoProposalAvailable(AnalysisError):
    """The model returned no further fix for the failing tests."""


class ProtectedConstantViolation(AnalysisError):
    """A proposal changes a declared protected constant."""

    def __init__(self, constants: list[str]):
        self.constants = constants
        super().__init__(f"Proposal modifies protected constant(s): {', '.join(constants)}")


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(NightfixError):
    """Tool execution failure."""


class ShellTimeoutError(ToolError):
    """Shell command exceeded timeout."""


class CommandCancelledError(ToolError):
    """Command was killed because its session was cancelled."""


class CommandNotAllowedError(ToolError):
    """Command does not match any approved template."""


class GitOperationError(ToolError):
    """Git operation failed."""


class PatchApplyError(GitOperationError):
    """A proposal diff does not apply to the scratch copy."""


class PromotionError(ToolError):
    """Writing a verified scratch copy over the canonical tree failed."""


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class RegressionDetected(NightfixError):
    """A verified patch made previously passing tests fail."""

    def __init__(self, regressed_tests: list[str]):
        self.regressed_tests = regressed_tests
        super().__init__(f"Patch regressed {len(regressed_tests)} test(s)")


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(NightfixError):
    """Invalid or missing configuration."""
