"""Configuration loaded from environment variables / .env file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

KNOWN_PROVIDERS = ("anthropic", "openai", "gemini", "deepseek", "litellm")

DEFAULT_PROTECTED_PATHS = [
    ".github/workflows/*",
    ".github/actions/*",
    ".gitlab-ci.yml",
    ".circleci/*",
    ".git/*",
    ".env",
    ".env.*",
    "*.pem",
    "*.key",
    "*secret*",
    "*credential*",
]


def _bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


def _list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.environ.get(name, default).split(",") if item.strip()]


@dataclass(frozen=True)
class RemediationPolicy:
    """Caps and timeouts handed explicitly to the coordinator."""

    max_total_attempts: int = 3
    max_attempts_per_provider: int = 2
    max_concurrent_runs: int = 2
    refine_advances_provider: bool = False
    provider_timeout_seconds: float = 120.0
    provider_backoff_seconds: float = 1.0
    validation_timeout_seconds: float = 900.0


@dataclass
class Settings:
    # Backend priority order is the fallback policy
    providers: list[str] = field(default_factory=lambda: ["anthropic"])

    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    deepseek_api_key: str = ""
    deepseek_model: str = "deepseek-chat"
    litellm_api_key: str = ""
    litellm_model: str = "gpt-4o"
    litellm_base_url: str = "http://localhost:4000"
    llm_max_tokens: int = 8192
    llm_temperature: float = 0.1
    thinking_budget: int = 0

    # Orchestration
    max_total_attempts: int = 3
    max_attempts_per_provider: int = 2
    refine_advances_provider: bool = False
    provider_timeout_seconds: float = 120.0
    provider_backoff_seconds: float = 1.0

    # Dispatcher
    max_concurrent_runs: int = 2
    worker_count: int = 4
    queue_size: int = 100

    # Collector
    collector_max_attempts: int = 5
    collector_backoff_seconds: float = 1.0

    # Validation
    validation_timeout_seconds: float = 900.0
    build_command: str = ""
    test_command: str = ""
    coverage_command: str = ""
    min_coverage: float = 0.0
    clone_url_template: str = "https://github.com/{repository}.git"

    # Publishing
    target_branch: str = ""  # empty = branch of the failing run
    draft_pr: bool = False
    pr_labels: list[str] = field(default_factory=lambda: ["autofix"])
    protected_paths: list[str] = field(default_factory=lambda: list(DEFAULT_PROTECTED_PATHS))

    # Front end
    github_repository: str = ""
    poll_interval_seconds: int = 300

    # Persistence / alerts / logging
    db_path: Path = Path("data/autofix.db")
    slack_webhook_url: str = ""
    log_level: str = "INFO"

    def validate(self) -> list[str]:
        """Validate configuration. Returns list of error strings (empty = valid)."""
        errors = []

        if not self.providers:
            errors.append("AUTOFIX_PROVIDERS is empty; at least one backend is required")
        for name in self.providers:
            if name not in KNOWN_PROVIDERS:
                errors.append(f"Unknown provider '{name}' (expected one of: {', '.join(KNOWN_PROVIDERS)})")
            elif name != "litellm" and not self.api_key_for(name):
                errors.append(f"{name.upper()}_API_KEY is not set but '{name}' is in AUTOFIX_PROVIDERS")

        key = self.anthropic_api_key
        if "anthropic" in self.providers and key and not key.startswith("sk-ant-"):
            errors.append("ANTHROPIC_API_KEY does not look valid (should start with 'sk-ant-')")

        if self.max_total_attempts < 1:
            errors.append(f"MAX_TOTAL_ATTEMPTS must be >= 1, got {self.max_total_attempts}")
        if self.max_attempts_per_provider < 1:
            errors.append(f"MAX_ATTEMPTS_PER_PROVIDER must be >= 1, got {self.max_attempts_per_provider}")
        if self.max_concurrent_runs < 1:
            errors.append(f"MAX_CONCURRENT_RUNS must be >= 1, got {self.max_concurrent_runs}")
        if self.worker_count < 1:
            errors.append(f"WORKER_COUNT must be >= 1, got {self.worker_count}")
        if not (0.0 <= self.min_coverage <= 100.0):
            errors.append(f"MIN_COVERAGE must be 0-100, got {self.min_coverage}")
        if self.validation_timeout_seconds <= 0:
            errors.append(f"VALIDATION_TIMEOUT_SECONDS must be > 0, got {self.validation_timeout_seconds}")

        return errors

    def api_key_for(self, provider: str) -> str:
        return {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "gemini": self.gemini_api_key,
            "deepseek": self.deepseek_api_key,
            "litellm": self.litellm_api_key,
        }.get(provider, "")

    def policy(self) -> RemediationPolicy:
        return RemediationPolicy(
            max_total_attempts=self.max_total_attempts,
            max_attempts_per_provider=self.max_attempts_per_provider,
            max_concurrent_runs=self.max_concurrent_runs,
            refine_advances_provider=self.refine_advances_provider,
            provider_timeout_seconds=self.provider_timeout_seconds,
            provider_backoff_seconds=self.provider_backoff_seconds,
            validation_timeout_seconds=self.validation_timeout_seconds,
        )


def load_settings() -> Settings:
    load_dotenv()

    return Settings(
        providers=_list("AUTOFIX_PROVIDERS", "anthropic"),
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
        anthropic_model=os.environ.get("ANTHROPIC_MODEL", "claude-sonnet-4-5-20250929"),
        openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
        openai_model=os.environ.get("OPENAI_MODEL", "gpt-4o"),
        gemini_api_key=os.environ.get("GEMINI_API_KEY", ""),
        gemini_model=os.environ.get("GEMINI_MODEL", "gemini-2.0-flash"),
        deepseek_api_key=os.environ.get("DEEPSEEK_API_KEY", ""),
        deepseek_model=os.environ.get("DEEPSEEK_MODEL", "deepseek-chat"),
        litellm_api_key=os.environ.get("LITELLM_API_KEY", ""),
        litellm_model=os.environ.get("LITELLM_MODEL", "gpt-4o"),
        litellm_base_url=os.environ.get("LITELLM_BASE_URL", "http://localhost:4000"),
        llm_max_tokens=int(os.environ.get("LLM_MAX_TOKENS", "8192")),
        llm_temperature=float(os.environ.get("LLM_TEMPERATURE", "0.1")),
        thinking_budget=int(os.environ.get("THINKING_BUDGET", "0")),
        max_total_attempts=int(os.environ.get("MAX_TOTAL_ATTEMPTS", "3")),
        max_attempts_per_provider=int(os.environ.get("MAX_ATTEMPTS_PER_PROVIDER", "2")),
        refine_advances_provider=_bool("REFINE_ADVANCES_PROVIDER", "false"),
        provider_timeout_seconds=float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "120")),
        provider_backoff_seconds=float(os.environ.get("PROVIDER_BACKOFF_SECONDS", "1")),
        max_concurrent_runs=int(os.environ.get("MAX_CONCURRENT_RUNS", "2")),
        worker_count=int(os.environ.get("WORKER_COUNT", "4")),
        queue_size=int(os.environ.get("QUEUE_SIZE", "100")),
        collector_max_attempts=int(os.environ.get("COLLECTOR_MAX_ATTEMPTS", "5")),
        collector_backoff_seconds=float(os.environ.get("COLLECTOR_BACKOFF_SECONDS", "1")),
        validation_timeout_seconds=float(os.environ.get("VALIDATION_TIMEOUT_SECONDS", "900")),
        build_command=os.environ.get("BUILD_COMMAND", ""),
        test_command=os.environ.get("TEST_COMMAND", ""),
        coverage_command=os.environ.get("COVERAGE_COMMAND", ""),
        min_coverage=float(os.environ.get("MIN_COVERAGE", "0")),
        clone_url_template=os.environ.get("CLONE_URL_TEMPLATE", "https://github.com/{repository}.git"),
        target_branch=os.environ.get("TARGET_BRANCH", ""),
        draft_pr=_bool("DRAFT_PR", "false"),
        pr_labels=_list("PR_LABELS", "autofix"),
        protected_paths=_list("PROTECTED_PATHS", ",".join(DEFAULT_PROTECTED_PATHS)),
        github_repository=os.environ.get("GITHUB_REPOSITORY", ""),
        poll_interval_seconds=int(os.environ.get("POLL_INTERVAL_SECONDS", "300")),
        db_path=Path(os.environ.get("DB_PATH", "data/autofix.db")),
        slack_webhook_url=os.environ.get("SLACK_WEBHOOK_URL", ""),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )
