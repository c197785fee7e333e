"""Configuration management for the orchestration runtime."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ToolFailurePolicy(Enum):
    """What the turn loop does when a tool call fails."""

    FEED_BACK = "feed_back"
    ABORT = "abort"


@dataclass(frozen=True)
class OpenAIConfig:
    """OpenAI / Azure OpenAI service configuration.

    ``endpoint`` selects the Azure client; without it the public API is used.
    """

    api_key: str
    endpoint: Optional[str] = None
    api_version: str = "2024-02-15-preview"
    model: str = "gpt-4o"
    max_concurrent: int = 50
    temperature: float = 0.2


@dataclass(frozen=True)
class OrchestratorSettings:
    """Safety limits and timing budgets for request execution."""

    max_turns: int = 15
    max_delegation_depth: int = 5
    request_timeout: float = 120.0
    model_timeout: Optional[float] = 60.0
    model_max_attempts: int = 3
    model_backoff: float = 0.5
    max_tool_concurrency: int = 8
    session_ttl: float = 3600.0
    sweep_interval: float = 60.0
    min_plan_steps: int = 3
    max_plan_steps: int = 7
    tool_failure_policy: ToolFailurePolicy = ToolFailurePolicy.FEED_BACK

    @classmethod
    def from_env(cls) -> OrchestratorSettings:
        defaults = cls()
        model_timeout = os.getenv("CONDUCTOR_MODEL_TIMEOUT")
        return cls(
            max_turns=int(os.getenv("CONDUCTOR_MAX_TURNS", defaults.max_turns)),
            max_delegation_depth=int(
                os.getenv("CONDUCTOR_MAX_DELEGATION_DEPTH", defaults.max_delegation_depth)
            ),
            request_timeout=float(os.getenv("CONDUCTOR_REQUEST_TIMEOUT", defaults.request_timeout)),
            model_timeout=float(model_timeout) if model_timeout else defaults.model_timeout,
            model_max_attempts=int(os.getenv("CONDUCTOR_MODEL_MAX_ATTEMPTS", defaults.model_max_attempts)),
            model_backoff=float(os.getenv("CONDUCTOR_MODEL_BACKOFF", defaults.model_backoff)),
            max_tool_concurrency=int(
                os.getenv("CONDUCTOR_MAX_TOOL_CONCURRENCY", defaults.max_tool_concurrency)
            ),
            session_ttl=float(os.getenv("CONDUCTOR_SESSION_TTL", defaults.session_ttl)),
            sweep_interval=float(os.getenv("CONDUCTOR_SWEEP_INTERVAL", defaults.sweep_interval)),
            tool_failure_policy=ToolFailurePolicy(
                os.getenv("CONDUCTOR_TOOL_FAILURE_POLICY", defaults.tool_failure_policy.value)
            ),
        )


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    openai: Optional[OpenAIConfig] = None
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    environment: str = "development"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        api_key = os.getenv("AZURE_OPENAI_KEY") or os.getenv("OPENAI_API_KEY")

        openai_config = None
        if api_key:
            openai_config = OpenAIConfig(
                api_key=api_key,
                endpoint=os.getenv("AZURE_OPENAI_ENDPOINT"),
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-15-preview"),
                model=os.getenv("CONDUCTOR_MODEL", os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o")),
                max_concurrent=int(os.getenv("OPENAI_MAX_CONCURRENT", "50")),
                temperature=float(os.getenv("CONDUCTOR_TEMPERATURE", "0.2")),
            )

        return cls(
            openai=openai_config,
            orchestrator=OrchestratorSettings.from_env(),
            environment=os.getenv("ENVIRONMENT", "development"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


# Global config instance
config = Config.from_env()
