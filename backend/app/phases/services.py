"""Collaborators shared by every phase of one run, and system prompt loading."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import anthropic
import httpx

from app.models.contracts import PhaseName
from app.phases.runner import ProgressSink
from app.tools.executor import ToolExecutor
from app.tools.inventory import InventoryStore
from app.utils.cancellation import CancellationToken
from app.utils.retry import RetryPolicy

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

_system_prompt_cache: dict[str, str] = {}


def load_system_prompt(phase: PhaseName) -> str:
    """Load app/prompts/{phase}_system.md once per process."""
    if phase not in _system_prompt_cache:
        _system_prompt_cache[phase] = (PROMPTS_DIR / f"{phase}_system.md").read_text().strip()
    return _system_prompt_cache[phase]


@dataclass
class PhaseServices:
    client: anthropic.AsyncAnthropic
    executor: ToolExecutor
    cancel_token: CancellationToken
    progress: ProgressSink
    run_id: str
    inventory: InventoryStore
    http_client: httpx.AsyncClient
    brave_api_key: str = ""
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
