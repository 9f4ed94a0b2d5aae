"""Tests for configuration loading and validation."""

import dataclasses
from pathlib import Path

import pytest

from autofix.config import DEFAULT_PROTECTED_PATHS, RemediationPolicy, Settings, load_settings


class TestSettingsValidate:
    def test_valid_settings(self, test_settings):
        errors = test_settings.validate()
        assert errors == []

    def test_missing_key_for_configured_provider(self):
        s = Settings(providers=["anthropic", "openai"], anthropic_api_key="sk-ant-test", openai_api_key="")
        errors = s.validate()
        assert any("OPENAI_API_KEY" in e for e in errors)

    def test_litellm_needs_no_key(self):
        s = Settings(providers=["litellm"])
        assert s.validate() == []

    def test_unknown_provider(self):
        s = Settings(providers=["anthropic", "skynet"], anthropic_api_key="sk-ant-test")
        errors = s.validate()
        assert any("skynet" in e for e in errors)

    def test_empty_provider_list(self):
        s = Settings(providers=[])
        errors = s.validate()
        assert any("AUTOFIX_PROVIDERS" in e for e in errors)

    def test_bad_anthropic_key_format(self):
        s = Settings(providers=["anthropic"], anthropic_api_key="bad-key")
        errors = s.validate()
        assert any("sk-ant-" in e for e in errors)

    def test_bad_caps(self):
        s = Settings(
            providers=["litellm"],
            max_total_attempts=0,
            max_attempts_per_provider=0,
            max_concurrent_runs=0,
            worker_count=0,
        )
        errors = s.validate()
        for name in ("MAX_TOTAL_ATTEMPTS", "MAX_ATTEMPTS_PER_PROVIDER", "MAX_CONCURRENT_RUNS", "WORKER_COUNT"):
            assert any(name in e for e in errors)

    def test_bad_coverage_threshold(self):
        s = Settings(providers=["litellm"], min_coverage=150.0)
        errors = s.validate()
        assert any("MIN_COVERAGE" in e for e in errors)

    def test_bad_validation_timeout(self):
        s = Settings(providers=["litellm"], validation_timeout_seconds=0)
        errors = s.validate()
        assert any("VALIDATION_TIMEOUT_SECONDS" in e for e in errors)


class TestPolicy:
    def test_policy_carries_caps(self):
        s = Settings(max_total_attempts=5, max_attempts_per_provider=3, max_concurrent_runs=7)
        policy = s.policy()
        assert isinstance(policy, RemediationPolicy)
        assert policy.max_total_attempts == 5
        assert policy.max_attempts_per_provider == 3
        assert policy.max_concurrent_runs == 7

    def test_policy_is_frozen(self):
        policy = RemediationPolicy()
        with pytest.raises(dataclasses.FrozenInstanceError):
            policy.max_total_attempts = 10

    def test_api_key_for(self):
        s = Settings(gemini_api_key="g-key", deepseek_api_key="d-key")
        assert s.api_key_for("gemini") == "g-key"
        assert s.api_key_for("deepseek") == "d-key"
        assert s.api_key_for("unknown") == ""


class TestLoadSettings:
    def test_defaults(self, monkeypatch):
        for var in ("AUTOFIX_PROVIDERS", "MAX_TOTAL_ATTEMPTS", "PROTECTED_PATHS", "PR_LABELS", "DRAFT_PR"):
            monkeypatch.delenv(var, raising=False)
        monkeypatch.setattr("autofix.config.load_dotenv", lambda: None)
        s = load_settings()
        assert s.providers == ["anthropic"]
        assert s.max_total_attempts == 3
        assert s.protected_paths == DEFAULT_PROTECTED_PATHS
        assert s.pr_labels == ["autofix"]
        assert s.draft_pr is False

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setattr("autofix.config.load_dotenv", lambda: None)
        monkeypatch.setenv("AUTOFIX_PROVIDERS", "openai, gemini ,anthropic")
        monkeypatch.setenv("MAX_TOTAL_ATTEMPTS", "4")
        monkeypatch.setenv("REFINE_ADVANCES_PROVIDER", "yes")
        monkeypatch.setenv("DRAFT_PR", "true")
        monkeypatch.setenv("PR_LABELS", "autofix,bot")
        monkeypatch.setenv("MIN_COVERAGE", "80.5")
        monkeypatch.setenv("DB_PATH", "/tmp/x.db")
        s = load_settings()
        assert s.providers == ["openai", "gemini", "anthropic"]
        assert s.max_total_attempts == 4
        assert s.refine_advances_provider is True
        assert s.draft_pr is True
        assert s.pr_labels == ["autofix", "bot"]
        assert s.min_coverage == 80.5
        assert s.db_path == Path("/tmp/x.db")
