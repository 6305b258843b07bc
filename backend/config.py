"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Sitesmith
backend. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
import os
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        openai_api_key: API key exported to LiteLLM for OpenAI models.
        gatherer_model: Model for the business-info gatherer agent.
        code_model: Model for the code-generation agent.
        title_model: Model for the single-shot fragment title agent.
        response_model: Model for the single-shot user response agent.
        llm_fallback_model: Model to try once after the primary exhausts retries.
        llm_max_retries: Retries on transient LLM failures.
        llm_request_timeout_seconds: Timeout for one LLM API request.
        code_agent_temperature: Sampling temperature for the code agent.
        max_network_iterations: Hard cap on agent runs per network execution.
        max_tool_rounds_per_turn: LLM/tool round trips allowed in one agent run.
        graph_recursion_limit: LangGraph super-step limit per invocation.
        history_window: Number of stored messages seeded into a new run.
        tool_timeout_seconds: Timeout for a single sandbox command.
        question_timeout_seconds: How long a question waits for an answer.
        question_expiry_check_interval_seconds: Interval of the expiry sweep.
        sandbox_image: Docker image for sandbox containers.
        sandbox_workdir: Directory the generated app lives in.
        sandbox_preview_port: Port the app's dev server listens on.
        sandbox_public_host: Host name used to build preview URLs.
        sandbox_timeout_seconds: Idle timeout applied to every sandbox.
        sandbox_reap_interval_seconds: Interval of the idle sandbox reaper.
        max_concurrent_sandboxes: Maximum number of live sandbox containers.
        credits_per_period: Runs a user may start per credit window.
        credit_period_seconds: Length of the credit window.
        database_path: SQLite file for projects, messages and runs.
        checkpoint_path: SQLite file for LangGraph workflow checkpoints.
        enable_debug_routes: Expose the question-state debug endpoints.
        backend_port: Port for the FastAPI server.
        frontend_port: Port for the frontend (for CORS).
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    openai_api_key: str = ""
    # Model names must include provider prefix for LiteLLM (e.g., openai/)
    gatherer_model: str = "openai/gpt-4o"
    code_model: str = "openai/gpt-4.1"
    title_model: str = "openai/gpt-4o"
    response_model: str = "openai/gpt-4o"
    llm_fallback_model: str | None = None
    llm_max_retries: int = 3
    llm_request_timeout_seconds: int = 120
    code_agent_temperature: float = 0.1

    # Agent Network Limits
    max_network_iterations: int = 15
    max_tool_rounds_per_turn: int = 12
    graph_recursion_limit: int = 250
    history_window: int = 5
    tool_timeout_seconds: int = 60

    # Human-in-the-loop Questions
    question_timeout_seconds: int = 24 * 60 * 60
    question_expiry_check_interval_seconds: float = 60.0

    # Sandbox Configuration
    sandbox_image: str = "sitesmith-nextjs-sandbox:latest"
    sandbox_workdir: str = "/home/user"
    sandbox_preview_port: int = 3000
    sandbox_public_host: str = "localhost"
    sandbox_timeout_seconds: int = 30 * 60
    sandbox_reap_interval_seconds: float = 60.0
    max_concurrent_sandboxes: int = 20

    # Credits
    credits_per_period: int = 5
    credit_period_seconds: int = 30 * 24 * 60 * 60

    # Database Configuration
    database_path: str = "./data/sitesmith.db"
    checkpoint_path: str = "./data/checkpoints.db"

    # Server Configuration
    enable_debug_routes: bool = False
    backend_port: int = 8000
    frontend_port: int = 3000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Export the OpenAI key to os.environ for LiteLLM discovery."""
        if self.openai_api_key:
            os.environ.setdefault("OPENAI_API_KEY", self.openai_api_key)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)
