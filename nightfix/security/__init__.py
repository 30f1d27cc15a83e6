"""Sandbox execution policy."""

from nightfix.security.policy import SecurityPolicy, redact_secrets

__all__ = ["SecurityPolicy", "redact_secrets"]
