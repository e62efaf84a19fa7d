"""strategy_agent/config.py

Runtime configuration for the strategy orchestration service.

Configure via environment variables (or a ``.env`` file):
  PLANNER_BACKEND              - ``openai`` (OpenAI-compatible) or ``ollama``
  PLANNER_BASE_URL             - planner endpoint
  PLANNER_API_KEY              - bearer token for OpenAI-compatible endpoints
  PLANNER_MODEL                - planner model tag
  MAX_ITERATIONS               - planner rounds per request (default 6)
  SUPPORTING_DATA_TTL_SECONDS  - market-analysis freshness (default 900)
  APPROVAL_TIMEOUT_SECONDS     - wait for a human decision on a tool call
"""

from __future__ import annotations

# Standard Library
import logging

# Third-Party Libraries
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class OrchestratorSettings(BaseSettings):
    """Runtime configuration loaded from environment variables / .env file.

    Attributes:
        planner_backend: Which planner client to build (``openai`` or
            ``ollama``).
        planner_base_url: Base URL of the planner endpoint.
        planner_api_key: Bearer token sent to OpenAI-compatible endpoints.
        planner_model: Model tag used for planning.
        planner_timeout_seconds: Upper bound on a single planner call.
        planner_temperature: Sampling temperature for planner calls.
        planner_max_tokens: Token cap for planner calls.
        max_iterations: Maximum plan/act/observe rounds per request.
        history_limit: Number of prior turns supplied to the planner.
        history_max_conversations: Conversations the in-memory history
            store keeps before evicting the least recently used.
        supporting_data_ttl_seconds: Age at which cached market analysis
            is stale.
        default_timeframe: Candle granularity used when none can be derived.
        validator_min_trades: Minimum quick-simulation trades before the
            planner is told to revise the plan.
        approval_timeout_seconds: How long an approval request may stay
            pending.
        approval_history_size: Resolved approval records kept for lookups.
        log_level: Root logging level.
        api_host: Bind host for the HTTP boundary.
        api_port: Bind port for the HTTP boundary.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    planner_backend: str = Field(
        "openai",
        description="Planner client: 'openai' (chat completions) or 'ollama'.",
    )
    planner_base_url: str = Field(
        "https://openrouter.ai/api/v1",
        description="OpenAI-compatible base URL, or the Ollama host.",
    )
    planner_api_key: str = Field(
        "",
        description="Bearer token for the OpenAI-compatible endpoint.",
    )
    planner_model: str = Field(
        "openai/gpt-4o-mini",
        description="Model tag used by the planner.",
    )
    planner_timeout_seconds: float = Field(
        60.0,
        description="Upper bound on a single planner call.",
    )
    planner_temperature: float = Field(
        0.6, description="Planner sampling temperature."
    )
    planner_max_tokens: int = Field(
        1200, description="Planner completion token cap."
    )
    max_iterations: int = Field(
        6,
        ge=1,
        description="Maximum plan/act/observe rounds before summarising.",
    )
    history_limit: int = Field(
        20,
        description="Prior conversation turns passed to the planner.",
    )
    history_max_conversations: int = Field(
        1_000,
        ge=1,
        description="Conversations kept by the in-memory history store.",
    )
    supporting_data_ttl_seconds: float = Field(
        15 * 60,
        description="Cached market analysis at or beyond this age is stale.",
    )
    default_timeframe: str = Field(
        "1h",
        description="Candle timeframe used when none can be derived.",
    )
    validator_min_trades: int = Field(
        3,
        description="Fewer quick-simulation trades trigger an advisory.",
    )
    approval_timeout_seconds: float = Field(
        300.0,
        description="Seconds a tool call waits for a human decision.",
    )
    approval_history_size: int = Field(
        500,
        ge=1,
        description="Resolved approval records retained for lookups.",
    )
    log_level: str = Field("INFO", description="Root logging level.")
    api_host: str = Field("0.0.0.0", description="HTTP bind host.")
    api_port: int = Field(8300, description="HTTP bind port.")


cfg: OrchestratorSettings = OrchestratorSettings()


def configure_logging(level: str | None = None) -> None:
    """Apply the service-wide logging format.

    Args:
        level: Level name; defaults to ``cfg.log_level``.
    """
    logging.basicConfig(
        level=getattr(logging, (level or cfg.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )
