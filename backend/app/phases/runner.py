"""Phase runner: one bounded tool-use conversation with Claude.

The model is offered the phase's real tools plus a single "output" tool. Real
tool calls requested in one turn run concurrently; an output tool call ends
the loop and its input becomes the phase result. When the loop ends without
one (timeout, loop cap, prose answer), the result is recovered from the final
response if possible.

Cancellation is checked before every model call and before every tool batch.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import anthropic
import structlog

from app.config import settings
from app.models.contracts import PhaseName, ProgressEvent, ProgressStatus, TokenUsage, ToolCallLog
from app.tools.executor import ToolExecutor
from app.utils.cancellation import CancellationToken
from app.utils.json_extract import extract_json_object
from app.utils.retry import RetryPolicy, with_retry

log = structlog.get_logger("phase_runner")

OUTPUT_RECEIVED = "Results received successfully."

TOOL_PROGRESS_MESSAGES: dict[str, str] = {
    "search_building_codes": "Searching national building codes...",
    "search_local_codes": "Looking up local building codes...",
    "search_project_videos": "Finding tutorial videos...",
    "search_local_stores": "Checking local store prices...",
    "check_user_inventory": "Checking your inventory...",
    "calculate_wire_size": "Calculating wire requirements...",
    "web_search": "Searching the web...",
    "web_fetch": "Fetching page content...",
}

ProgressSink = Callable[[ProgressEvent], None]


class PhaseOutputError(Exception):
    """The phase ended without any structured output."""


class MissingPhaseOutputError(Exception):
    """A phase was started before the output it depends on exists."""


@dataclass(frozen=True)
class PhaseLimits:
    max_tool_loops: int = 10
    timeout_s: float = 120.0
    max_tokens: int = 4096
    model: str | None = None


@dataclass(frozen=True)
class ProgressWindow:
    """The slice [base, base + span] of the 0-100 progress bar owned by a phase."""

    base: int
    span: int

    @property
    def end(self) -> int:
        return self.base + self.span

    def tool_call(self, loop: int, max_loops: int) -> int:
        pct = round(self.base + self.span * loop / (max_loops * 0.7))
        return min(pct, self.end - 5)

    def thinking(self) -> int:
        return round(self.base + self.span * 0.8)


@dataclass
class PhaseResult:
    output: dict[str, Any]
    tool_calls: list[ToolCallLog] = field(default_factory=list)
    duration_ms: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    loops: int = 0


def tool_progress_message(name: str) -> str:
    return TOOL_PROGRESS_MESSAGES.get(name, f"Running {name}...")


def _block_param(block: Any) -> dict[str, Any] | None:
    """Convert a response content block into a request message block."""
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return None


def _usage_of(response: Any) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        input_tokens=int(getattr(usage, "input_tokens", 0) or 0),
        output_tokens=int(getattr(usage, "output_tokens", 0) or 0),
    )


def _fallback_output(response: Any, output_tool_name: str) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == output_tool_name:
            return dict(block.input or {})
    for block in response.content:
        if block.type == "text" and "{" in block.text:
            parsed = extract_json_object(block.text)
            if parsed is not None:
                return parsed
    return None


async def _run_tool(
    executor: ToolExecutor,
    block: Any,
    *,
    phase: PhaseName,
    run_id: str,
) -> tuple[str, ToolCallLog]:
    started = time.monotonic()
    tool_input = dict(block.input or {})
    error: str | None = None
    try:
        result = await executor.execute(block.name, tool_input)
    except Exception as exc:
        error = str(exc) or type(exc).__name__
        result = f"Error executing {block.name}: {error}"
        log.error("tool_failed", phase=phase, run_id=run_id, tool=block.name, error=error)

    duration_ms = int((time.monotonic() - started) * 1000)
    log.info(
        "tool_executed",
        phase=phase,
        run_id=run_id,
        tool=block.name,
        duration_ms=duration_ms,
        success=error is None,
    )
    entry = ToolCallLog(
        tool=block.name,
        input=tool_input,
        duration_ms=duration_ms,
        success=error is None,
        error=error,
    )
    return result, entry


async def run_phase(
    *,
    phase: PhaseName,
    system_prompt: str,
    user_prompt: str,
    tools: list[dict[str, Any]],
    output_tool_name: str,
    client: anthropic.AsyncAnthropic,
    executor: ToolExecutor,
    limits: PhaseLimits,
    window: ProgressWindow,
    cancel_token: CancellationToken,
    progress: ProgressSink,
    run_id: str,
    retry_policy: RetryPolicy | None = None,
) -> PhaseResult:
    """Drive one phase's tool-use loop to a structured output.

    Raises RunCancelledError when the token is cancelled at a checkpoint and
    PhaseOutputError when no structured output can be recovered.
    """
    policy = retry_policy or RetryPolicy()
    model = limits.model or settings.anthropic_model
    started = time.monotonic()
    tool_calls: list[ToolCallLog] = []
    usage = TokenUsage()
    captured: dict[str, Any] | None = None

    def emit(status: ProgressStatus, message: str, pct: int, detail: str | None = None) -> None:
        progress(
            ProgressEvent(
                run_id=run_id,
                phase=phase,
                phase_status=status,
                message=message,
                detail=detail,
                overall_progress=pct,
            )
        )

    def timed_out() -> bool:
        return time.monotonic() - started > limits.timeout_s

    messages: list[dict[str, Any]] = [{"role": "user", "content": user_prompt}]

    async def call_model() -> Any:
        cancel_token.raise_if_cancelled()
        return await with_retry(
            lambda: client.messages.create(
                model=model,
                max_tokens=limits.max_tokens,
                system=system_prompt,
                tools=tools,
                messages=messages,
            ),
            policy,
            label=f"{phase}_phase",
        )

    emit("started", f"Starting {phase} phase...", window.base)

    response = await call_model()
    usage = usage + _usage_of(response)
    log.info("phase_initial_call", phase=phase, run_id=run_id, stop_reason=response.stop_reason)

    loops = 0
    while response.stop_reason in ("tool_use", "max_tokens") and loops < limits.max_tool_loops:
        if timed_out():
            log.warning("phase_timeout", phase=phase, run_id=run_id, loops=loops)
            break
        loops += 1

        assistant_content: list[dict[str, Any]] = []
        tool_results: list[dict[str, Any]] = []
        output_blocks = []
        real_blocks = []
        for block in response.content:
            if block.type == "tool_use":
                (output_blocks if block.name == output_tool_name else real_blocks).append(block)
            elif block.type == "text":
                assistant_content.append({"type": "text", "text": block.text})

        for block in output_blocks:
            captured = dict(block.input or {})
            assistant_content.append(_block_param(block))  # type: ignore[arg-type]
            tool_results.append(
                {"type": "tool_result", "tool_use_id": block.id, "content": OUTPUT_RECEIVED}
            )

        if real_blocks:
            cancel_token.raise_if_cancelled()
            names = [block.name for block in real_blocks]
            emit(
                "tool_call",
                (
                    f"Running {len(real_blocks)} lookups in parallel..."
                    if len(real_blocks) > 1
                    else tool_progress_message(real_blocks[0].name)
                ),
                window.tool_call(loops, limits.max_tool_loops),
                detail=", ".join(names),
            )

            outcomes = await asyncio.gather(
                *(_run_tool(executor, block, phase=phase, run_id=run_id) for block in real_blocks)
            )
            for block, (result, entry) in zip(real_blocks, outcomes, strict=True):
                tool_calls.append(entry)
                assistant_content.append(_block_param(block))  # type: ignore[arg-type]
                tool_results.append(
                    {"type": "tool_result", "tool_use_id": block.id, "content": result}
                )

        if captured is not None:
            break

        if not real_blocks and not output_blocks:
            # Out of output budget with nothing actionable
            partial = [p for p in (_block_param(b) for b in response.content) if p is not None]
            if partial:
                messages.append({"role": "assistant", "content": partial})
            messages.append(
                {
                    "role": "user",
                    "content": (
                        f"You ran out of output space. Call {output_tool_name} now "
                        "with the structured data. Be concise."
                    ),
                }
            )
        else:
            messages.append({"role": "assistant", "content": assistant_content})
            messages.append({"role": "user", "content": tool_results})

        emit("thinking", f"Analyzing {phase} results...", window.thinking())

        if timed_out():
            log.warning("phase_timeout", phase=phase, run_id=run_id, loops=loops)
            break

        response = await call_model()
        usage = usage + _usage_of(response)
        log.info(
            "phase_followup_call",
            phase=phase,
            run_id=run_id,
            loop=loops,
            stop_reason=response.stop_reason,
        )

    output = captured if captured is not None else _fallback_output(response, output_tool_name)
    if output is None:
        raise PhaseOutputError(
            f"Phase {phase} did not produce structured output after {loops} tool loops"
        )

    duration_ms = int((time.monotonic() - started) * 1000)
    emit("completed", f"{phase.capitalize()} phase complete", window.end)
    log.info(
        "phase_completed",
        phase=phase,
        run_id=run_id,
        duration_ms=duration_ms,
        tool_call_count=len(tool_calls),
        loops=loops,
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
    )
    return PhaseResult(
        output=output,
        tool_calls=tool_calls,
        duration_ms=duration_ms,
        token_usage=usage,
        loops=loops,
    )
