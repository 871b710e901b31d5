"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings

# Largest ``_count`` the gateway's FHIR backend accepts for one page.
SERVER_MAX_PAGE_SIZE = 1000


class Settings(BaseSettings):
    """WellWallet configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Default to loopback: the tool server has no auth layer of its own.
    wellwallet_host: str = "127.0.0.1"
    wellwallet_port: int = 8001
    wellwallet_log_level: str = "info"
    wellwallet_allow_insecure_bind: bool = False

    # Remote FHIR gateway (JSON-RPC over HTTP, SSE-framed responses)
    gateway_url: str = "http://127.0.0.1:8000/mcp"
    gateway_api_key: str = ""
    gateway_protocol_version: str = "2025-06-18"
    gateway_timeout_seconds: float = 30.0
    gateway_retry_attempts: int = 3
    gateway_backoff_base_seconds: float = 0.5
    gateway_degraded_failure_limit: int = 5

    # Bulk sync
    sync_page_size: int = 100
    sync_max_pages: int = 50
    sync_progress_buffer: int = 32

    # Storage (local record cache)
    db_path: str = "~/.wellwallet/records.db"
    encryption_key: str = ""

    # Query interpretation
    query_interpreter: Literal["keyword", "llm"] = "keyword"
    llm_provider: Literal["anthropic", "openai", "mock"] = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250929"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"

    @property
    def effective_page_size(self) -> int:
        """Page size clamped to ``1..SERVER_MAX_PAGE_SIZE``."""
        return max(1, min(self.sync_page_size, SERVER_MAX_PAGE_SIZE))


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
