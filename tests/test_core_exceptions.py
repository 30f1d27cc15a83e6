"""Tests for nightfix/core/exceptions.py — exception hierarchy."""

import pytest

from nightfix.core.exceptions import (
    AllCredentialsExhausted,
    AnalysisError,
    AnalysisUnavailable,
    AuthenticationError,
    CommandCancelledError,
    CommandNotAllowedError,
    ConfigError,
    ConnectionError,
    CredentialError,
    DatabaseError,
    GitOperationError,
    LLMError,
    MalformedProposal,
    NightfixError,
    NoProposalAvailable,
    PatchApplyError,
    PromotionError,
    ProtectedConstantViolation,
    RateLimitError,
    RegressionDetected,
    ResponseParseError,
    SchemaInitError,
    SessionNotFoundError,
    ShellTimeoutError,
    ToolError,
    TransientLLMError,
)


class TestExceptionHierarchy:
    def test_base_exception(self):
        with pytest.raises(NightfixError):
            raise NightfixError("test")

    def test_database_errors(self):
        assert issubclass(DatabaseError, NightfixError)
        assert issubclass(SchemaInitError, DatabaseError)
        assert issubclass(ConnectionError, DatabaseError)

    def test_llm_errors(self):
        for cls in (RateLimitError, AuthenticationError, TransientLLMError, ResponseParseError, CredentialError):
            assert issubclass(cls, LLMError)
        assert issubclass(AllCredentialsExhausted, CredentialError)

    def test_analysis_errors(self):
        for cls in (AnalysisUnavailable, MalformedProposal, NoProposalAvailable, ProtectedConstantViolation):
            assert issubclass(cls, AnalysisError)

    def test_tool_errors(self):
        for cls in (ShellTimeoutError, CommandCancelledError, CommandNotAllowedError, GitOperationError, PromotionError):
            assert issubclass(cls, ToolError)
        assert issubclass(PatchApplyError, GitOperationError)

    def test_config_error(self):
        assert issubclass(ConfigError, NightfixError)

    def test_catch_broad(self):
        with pytest.raises(NightfixError):
            raise MalformedProposal("bad json")


class TestExceptionPayloads:
    def test_rate_limit_retry_after(self):
        assert RateLimitError(retry_after=12.5).retry_after == 12.5
        assert RateLimitError().retry_after is None

    def test_all_credentials_exhausted_details(self):
        e = AllCredentialsExhausted(["...aaaa: rate limited", "...bbbb: authentication failed"])
        assert e.details == ["...aaaa: rate limited", "...bbbb: authentication failed"]
        assert "rate limited" in str(e)

    def test_protected_constant_names(self):
        e = ProtectedConstantViolation(["TIER_2_ENTRY_FEE"])
        assert e.constants == ["TIER_2_ENTRY_FEE"]
        assert "TIER_2_ENTRY_FEE" in str(e)

    def test_regression_tests(self):
        e = RegressionDetected(["t1", "t2"])
        assert e.regressed_tests == ["t1", "t2"]
        assert "2 test" in str(e)

    def test_session_not_found(self):
        e = SessionNotFoundError("abc")
        assert e.session_id == "abc"
        assert "abc" in str(e)
