"""Centralized configuration for the Booking Concierge.

Every component receives a :class:`Settings` instance at construction time;
nothing below the composition root reads the environment directly.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/booking-concierge/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SSM_PREFIX = "/booking-concierge"


# ── Secret resolution ────────────────────────────────────────────────

def _on_aws() -> bool:
    return bool(os.getenv("AWS_EXECUTION_ENV"))


def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415  only needed when a parameter name is set

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"{SSM_PREFIX}/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _on_aws():
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store {SSM_PREFIX}/{name} (AWS)."
    )


def _safe_int(name: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid integer for {name}: {raw!r}") from None


def _safe_float(name: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(f"Invalid float for {name}: {raw!r}") from None


# ── Settings ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Settings:
    """Everything the concierge needs at start-up, resolved once."""

    anthropic_api_key: str
    model_name: str = "claude-sonnet-4-5"
    llm_temperature: float = 0.1
    llm_max_tokens: int = 1024
    llm_max_retries: int = 2

    # Store
    store_backend: str = "memory"
    dynamodb_table: str = "booking-concierge"

    # Conversation policy
    max_interactions: int = 10
    stickiness_minutes: int = 30
    tool_error_budget: int = 2
    history_window: int = 20
    context_messages: int = 6
    max_graph_steps: int = 12
    request_timeout_seconds: float = 25.0

    # Server
    server_host: str = "0.0.0.0"
    server_port: int = 8000
    cors_origins: list[str] = field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"],
    )


def load_settings() -> Settings:
    """Build :class:`Settings` from the environment (and SSM on AWS)."""
    store_backend = os.getenv("STORE_BACKEND", "memory").lower()
    if store_backend not in ("memory", "dynamodb"):
        raise ValueError(f"Invalid STORE_BACKEND: {store_backend!r}")

    settings = Settings(
        anthropic_api_key=_require_env("ANTHROPIC_API_KEY"),
        model_name=os.getenv("MODEL_NAME", "claude-sonnet-4-5"),
        llm_temperature=_safe_float("LLM_TEMPERATURE", "0.1"),
        llm_max_tokens=_safe_int("LLM_MAX_TOKENS", "1024"),
        llm_max_retries=_safe_int("LLM_MAX_RETRIES", "2"),
        store_backend=store_backend,
        dynamodb_table=os.getenv("DYNAMODB_TABLE", "booking-concierge"),
        max_interactions=_safe_int("MAX_INTERACTIONS", "10"),
        stickiness_minutes=_safe_int("STICKINESS_MINUTES", "30"),
        tool_error_budget=_safe_int("TOOL_ERROR_BUDGET", "2"),
        history_window=_safe_int("HISTORY_WINDOW", "20"),
        context_messages=_safe_int("CONTEXT_MESSAGES", "6"),
        max_graph_steps=_safe_int("MAX_GRAPH_STEPS", "12"),
        request_timeout_seconds=_safe_float("REQUEST_TIMEOUT_SECONDS", "25"),
        server_host=os.getenv("SERVER_HOST", "0.0.0.0"),
        server_port=_safe_int("SERVER_PORT", "8000"),
        cors_origins=os.getenv(
            "CORS_ORIGINS",
            "http://localhost:3000,http://localhost:5173",
        ).split(","),
    )
    logger.debug(
        "Settings loaded - model: %s, store: %s", settings.model_name, settings.store_backend,
    )
    return settings
