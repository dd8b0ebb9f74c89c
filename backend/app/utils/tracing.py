"""LangSmith tracing for phase model calls. A no-op when LANGSMITH_API_KEY is unset."""

from __future__ import annotations

from typing import Any

import structlog
from langsmith import wrappers

from app.config import settings

_log = structlog.get_logger("tracing")


def wrap_anthropic(client: Any) -> Any:
    """Wrap an Anthropic client so every messages.create call is traced."""
    if not settings.langsmith_api_key.strip():
        return client
    try:
        return wrappers.wrap_anthropic(client)
    except Exception as exc:
        _log.error(
            "langsmith_wrap_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            reason="langsmith wrapping failed; continuing without tracing",
        )
        return client
