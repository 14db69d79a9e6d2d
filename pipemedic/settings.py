from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PIPEMEDIC_", extra="ignore")

    # Repository collaborator
    gitlab_mode: str = "mock"  # mock|real
    gitlab_base_url: str = "https://gitlab.com"
    gitlab_token: str | None = None
    gitlab_project_id: str | None = None
    gitlab_default_ref: str = "main"
    gitlab_timeout_s: float = 20.0
    mock_gitlab_dir: str = ".mock_gitlab"

    # AI providers, tried in this order. Providers without credentials are skipped.
    ai_provider_order: str = "deepseek,gemini"
    ai_timeout_s: float = 60.0
    ai_max_tokens: int = 4096

    deepseek_api_key: str | None = None
    deepseek_base_url: str = "https://api.deepseek.com/v1"
    deepseek_model: str = "deepseek-chat"

    gemini_api_key: str | None = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1"
    gemini_model: str = "gemini-2.0-flash"

    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "openai/gpt-4o-mini"

    groq_api_key: str | None = None
    groq_base_url: str = "https://api.groq.com/openai/v1"
    groq_model: str = "openai/gpt-oss-120b"

    # Per-section character budgets for prompts (prefix kept, suffix dropped).
    prompt_logs_max_chars: int = 15000
    prompt_ci_max_chars: int = 10000
    prompt_file_max_chars: int = 6000
    prompt_metadata_max_chars: int = 5000
    prompt_max_files: int = 12

    # Repository snapshot used as patch context
    snapshot_max_files: int = 1000
    snapshot_max_file_bytes: int = 200_000
    snapshot_default_files: int = 12

    # Self-heal loop
    retry_ceiling: int = 3
    remediation_branch_prefix: str = "incident-fix-"
    # On a green remediation pipeline, drop other open incidents with the same category + error snippet.
    dedupe_on_resolve: bool = True

    # Open the change request as soon as a patch validates and applies cleanly.
    auto_create_change_request: bool = True

    db_path: str = "var/db/incidents.sqlite3"
    audit_log_path: str = "var/audit/pipemedic_audit.jsonl"

    def provider_order(self) -> list[str]:
        return [p.strip().lower() for p in (self.ai_provider_order or "").split(",") if p.strip()]
