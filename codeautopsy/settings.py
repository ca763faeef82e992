from __future__ import annotations

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CODEAUTOPSY_", extra="ignore")

    github_mode: str = "mock"  # mock|real
    github_token: str | None = None
    github_api_base: str = "https://api.github.com"
    github_timeout_s: float = 15.0
    # Shared secret for X-Hub-Signature-256. Unset = signature check skipped.
    github_webhook_secret: str | None = None

    audit_log_path: str = "var/audit/codeautopsy_audit.jsonl"
    db_path: str = "var/db/codeautopsy.sqlite3"
    mock_github_dir: str = ".mock_github"
    # Mock mode reads source files from this local checkout.
    mock_repo_root: str = "."
    public_base_url: str = "http://localhost:8088"

    # -------- Publish decision --------
    # At or above: open a PR. Below (but at/above the floor): open an issue for manual review.
    min_confidence_for_pr: float = 0.85
    # Below the floor the executor skips publishing altogether.
    min_confidence_for_issue: float = 0.5

    # -------- Safety gate --------
    max_attempts_per_hour: int = 5
    # Comma separated substrings; matched against the normalized, lower-cased file path.
    protected_paths: str = "config,secrets,.github/workflows,.env"

    # -------- AI diagnosis / fix generation (OpenAI-compatible chat API) --------
    llm_api_key: str | None = None
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "google/gemini-2.5-flash"
    llm_fix_model: str | None = None  # defaults to llm_model
    # Large files and harder error kinds (TypeError, linker errors, ...) go to this model when set.
    llm_complex_model: str | None = None
    # Second model pass that reviews each generated fix before it is scored.
    llm_ai_validation: bool = True
    llm_max_tokens: int = 4096
    llm_timeout_s: float = 60.0
    # Logs longer than this are cut to their tail before the full AI diagnosis call.
    ai_max_log_chars: int = 50_000
    ai_verify_context_lines: int = 20

    # -------- Job queue (dramatiq) --------
    # Unset: in-process StubBroker and rate limit backend, good for a single dev process only.
    redis_url: str | None = None
    queue_name: str = "codeautopsy"
    # 2 retries = 3 attempts; the delay doubles from min_backoff up to max_backoff.
    queue_max_retries: int = 2
    queue_min_backoff_ms: int = 2_000
    queue_max_backoff_ms: int = 60_000
    # Global admission throttle, independent of per-repo limits.
    queue_rate_max_jobs: int = 5
    queue_rate_window_s: int = 60
    # A throttled job goes back to the broker for this long.
    queue_throttle_defer_ms: int = 5_000
    # Finished ledger rows older than this are dropped by POST /queue/clean.
    queue_clean_grace_s: float = 3600.0
    workers: int = 2
    workers_enabled: bool = False

    # -------- Notifications --------
    slack_webhook_url: str | None = None
    discord_webhook_url: str | None = None
    notify_timeout_s: float = 10.0

    def protected_path_list(self) -> List[str]:
        return [p.strip().lower() for p in (self.protected_paths or "").split(",") if p.strip()]
