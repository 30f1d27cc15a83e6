"""Tests for nightfix/security/policy.py."""

import tempfile
from pathlib import Path

import pytest

from nightfix.core.config import CommandTemplate, SandboxConfig
from nightfix.security.policy import SCRATCH_PREFIX, SecurityPolicy, redact_secrets

HARDHAT = CommandTemplate(executable="npx", args=["hardhat", "test"])
NPM = CommandTemplate(executable="npm", args=["test"])


class TestCommandTemplates:
    def test_exact_match(self):
        policy = SecurityPolicy(command_templates=[HARDHAT])
        assert policy.is_command_allowed(["npx", "hardhat", "test"])

    def test_extra_args_allowed_after_prefix(self):
        policy = SecurityPolicy(command_templates=[HARDHAT])
        assert policy.is_command_allowed(["npx", "hardhat", "test", "test/Vault.js"])

    def test_wrong_args_rejected(self):
        policy = SecurityPolicy(command_templates=[HARDHAT])
        assert not policy.is_command_allowed(["npx", "hardhat", "node"])
        assert not policy.is_command_allowed(["npx"])

    def test_unknown_executable_rejected(self):
        policy = SecurityPolicy(command_templates=[HARDHAT, NPM])
        assert not policy.is_command_allowed(["rm", "-rf", "/"])

    def test_empty_rejected(self):
        assert not SecurityPolicy(command_templates=[NPM]).is_command_allowed([])

    @pytest.mark.parametrize("arg", ["a;b", "$(whoami)", "`id`", "x|y", "a && b", "out>file", "${HOME}"])
    def test_metacharacters_rejected(self, arg):
        policy = SecurityPolicy(command_templates=[HARDHAT])
        assert not policy.is_command_allowed(["npx", "hardhat", "test", arg])

    def test_no_templates_rejects_everything(self):
        assert not SecurityPolicy().is_command_allowed(["npm", "test"])


def _fake_binary(directory: Path, name: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text("#!/bin/sh\ntouch ran.txt\n")
    path.chmod(0o755)
    return path


class TestExecutableIdentity:
    def test_path_of_template_name_on_path(self, tmp_path, monkeypatch):
        npm = _fake_binary(tmp_path / "bin", "npm")
        monkeypatch.setenv("PATH", str(tmp_path / "bin"))
        policy = SecurityPolicy(command_templates=[NPM])
        assert policy.matching_template([str(npm), "test"]) == NPM

    def test_same_name_elsewhere_rejected(self, tmp_path, monkeypatch):
        _fake_binary(tmp_path / "bin", "npx")
        other = _fake_binary(tmp_path / "elsewhere", "npx")
        monkeypatch.setenv("PATH", str(tmp_path / "bin"))
        policy = SecurityPolicy(command_templates=[HARDHAT])
        assert not policy.is_command_allowed([str(other), "hardhat", "test"])

    def test_same_name_with_nothing_on_path_rejected(self, tmp_path, monkeypatch):
        other = _fake_binary(tmp_path / "elsewhere", "npx")
        monkeypatch.setenv("PATH", str(tmp_path / "empty"))
        policy = SecurityPolicy(command_templates=[HARDHAT])
        assert not policy.is_command_allowed([str(other), "hardhat", "test"])
        assert policy.is_command_allowed(["npx", "hardhat", "test"])

    def test_relative_path_rejected(self):
        policy = SecurityPolicy(command_templates=[HARDHAT])
        assert not policy.is_command_allowed(["./npx", "hardhat", "test"])
        assert not policy.is_command_allowed(["node_modules/.bin/npx", "hardhat", "test"])

    def test_absolute_template_requires_that_path(self, tmp_path):
        forge = _fake_binary(tmp_path / "opt", "forge")
        other = _fake_binary(tmp_path / "elsewhere", "forge")
        template = CommandTemplate(executable=str(forge), args=["test"])
        policy = SecurityPolicy(command_templates=[template])
        assert policy.matching_template([str(forge), "test"]) == template
        assert not policy.is_command_allowed([str(other), "test"])
        assert not policy.is_command_allowed(["forge", "test"])


class TestAllowedRoots:
    def test_no_roots_allows_any(self, tmp_path):
        assert SecurityPolicy().is_path_allowed(tmp_path)

    def test_inside_and_outside(self, tmp_path):
        inside = tmp_path / "artifacts" / "vault"
        inside.mkdir(parents=True)
        policy = SecurityPolicy(allowed_roots=[(tmp_path / "artifacts").resolve()])
        assert policy.is_path_allowed(inside)
        assert not policy.is_path_allowed("/etc")

    def test_traversal_resolved(self, tmp_path):
        root = tmp_path / "artifacts"
        root.mkdir()
        policy = SecurityPolicy(allowed_roots=[root.resolve()])
        assert not policy.is_path_allowed(root / ".." / ".." / "etc")

    def test_scratch_paths_always_allowed(self):
        policy = SecurityPolicy(allowed_roots=[Path("/nonexistent-root")])
        with tempfile.TemporaryDirectory(prefix=SCRATCH_PREFIX) as tmp:
            assert policy.is_path_allowed(Path(tmp) / "vault")

    def test_other_temp_dirs_not_allowed(self):
        policy = SecurityPolicy(allowed_roots=[Path("/nonexistent-root")])
        with tempfile.TemporaryDirectory(prefix="other-") as tmp:
            assert not policy.is_path_allowed(tmp)

    def test_null_byte(self):
        assert not SecurityPolicy().is_path_allowed("/tmp/\x00evil")


class TestEnvironment:
    def test_sanitized(self, monkeypatch):
        monkeypatch.setenv("PATH", "/usr/bin")
        monkeypatch.setenv("NIGHTFIX_API_KEYS", "sk-secret")
        monkeypatch.setenv("HARDHAT_NETWORK", "local")
        policy = SecurityPolicy(allowed_env_prefixes=["HARDHAT_"])
        env = policy.build_subprocess_env()
        assert env["PATH"] == "/usr/bin"
        assert env["HARDHAT_NETWORK"] == "local"
        assert "NIGHTFIX_API_KEYS" not in env

    def test_extra_env_filtered(self):
        policy = SecurityPolicy(allowed_env_prefixes=["CI"])
        env = policy.build_subprocess_env({"CI": "1$(id)", "SECRET": "x"})
        assert env["CI"] == "1id)"
        assert "SECRET" not in env

    def test_unsanitized_passes_through(self, monkeypatch):
        monkeypatch.setenv("SOMETHING_ELSE", "yes")
        env = SecurityPolicy(sanitize_env=False).build_subprocess_env({"EXTRA": "1"})
        assert env["SOMETHING_ELSE"] == "yes"
        assert env["EXTRA"] == "1"


class TestFromConfig:
    def test_from_config(self, tmp_path):
        policy = SecurityPolicy.from_config(SandboxConfig(allowed_roots=[str(tmp_path)]))
        assert policy.allowed_roots == [tmp_path.resolve()]
        assert policy.is_command_allowed(["npx", "hardhat", "test"])


class TestRedaction:
    def test_api_keys(self):
        text = "key=sk-ant-abc123_DEF and sk-or-v1-xyz"
        out = redact_secrets(text)
        assert "sk-ant-abc123" not in out
        assert "sk-or-v1" not in out
        assert out.count("[REDACTED_API_KEY]") == 2

    def test_github_token(self):
        out = redact_secrets("token ghp_" + "a" * 30)
        assert "[REDACTED_GITHUB_TOKEN]" in out

    def test_plain_text_untouched(self):
        assert redact_secrets("3 passing, 1 failing") == "3 passing, 1 failing"
