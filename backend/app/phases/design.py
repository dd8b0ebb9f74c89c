"""Design phase: ordered steps, priced materials, tools, timeline and videos."""

from __future__ import annotations

from typing import Any

import structlog

from app.models.contracts import (
    DesignMaterial,
    DesignOutput,
    DesignTool,
    DesignVideo,
    ProjectStep,
    RunContext,
)
from app.phases.coercion import (
    as_dict_list,
    as_flag,
    as_float,
    as_int,
    as_optional_str,
    as_required,
    as_str,
    as_str_list,
)
from app.phases.runner import (
    MissingPhaseOutputError,
    PhaseLimits,
    PhaseResult,
    ProgressWindow,
    run_phase,
)
from app.phases.services import PhaseServices, load_system_prompt
from app.tools import definitions

log = structlog.get_logger("design_phase")

OUTPUT_TOOL = "submit_design_results"
WINDOW = ProgressWindow(base=25, span=25)
LIMITS = PhaseLimits(max_tool_loops=4, timeout_s=75, max_tokens=8192)

_STEP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "order": {"type": "number"},
        "title": {"type": "string"},
        "description": {"type": "string"},
        "estimated_time": {"type": "string"},
        "skill_level": {"type": "string"},
        "safety_notes": {"type": "array", "items": {"type": "string"}},
        "inspection_required": {"type": "boolean"},
    },
    "required": ["order", "title", "description", "estimated_time", "skill_level"],
}

_MATERIAL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "quantity": {"type": "string"},
        "category": {"type": "string"},
        "estimated_price": {"type": "number", "description": "Per-unit price in dollars"},
        "required": {"type": "boolean"},
        "notes": {"type": "string"},
    },
    "required": ["name", "quantity", "category", "estimated_price", "required"],
}

_TOOL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "category": {"type": "string"},
        "required": {"type": "boolean"},
        "estimated_price": {"type": "number"},
        "notes": {"type": "string"},
    },
    "required": ["name", "category", "required"],
}

_VIDEO_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "url": {"type": "string"},
        "channel": {"type": "string"},
        "description": {"type": "string"},
    },
    "required": ["title", "url", "channel", "description"],
}

SUBMIT_DESIGN_RESULTS: dict[str, Any] = {
    "name": OUTPUT_TOOL,
    "description": "Submit the project design as structured data. Call this when the design is complete.",
    "input_schema": {
        "type": "object",
        "properties": {
            "approach": {"type": "string", "description": "Recommended approach with rationale"},
            "steps": {"type": "array", "description": "Ordered step-by-step plan", "items": _STEP_SCHEMA},
            "materials": {"type": "array", "description": "Complete materials list", "items": _MATERIAL_SCHEMA},
            "tools": {"type": "array", "description": "Required and nice-to-have tools", "items": _TOOL_SCHEMA},
            "estimated_duration": {
                "type": "string",
                "description": 'Total estimated duration (e.g., "2-3 weekends")',
            },
            "skill_level": {"type": "string", "description": "Overall skill level required"},
            "videos": {"type": "array", "description": "Recommended tutorial videos", "items": _VIDEO_SCHEMA},
            "alternative_approaches": {
                "type": "string",
                "description": "Other ways to accomplish this project",
            },
        },
        "required": [
            "approach",
            "steps",
            "materials",
            "tools",
            "estimated_duration",
            "skill_level",
            "videos",
        ],
    },
}

TOOLS: list[dict[str, Any]] = [
    definitions.SEARCH_PROJECT_VIDEOS,
    definitions.CALCULATE_WIRE_SIZE,
    definitions.WEB_SEARCH,
    SUBMIT_DESIGN_RESULTS,
]


def build_user_prompt(context: RunContext) -> str:
    research = context.research
    if research is None:
        raise MissingPhaseOutputError("design phase requires research output")

    prefs = context.preferences
    timeframe = f"**Timeframe:** {prefs.timeframe}\n" if prefs.timeframe else ""
    warnings = "\n".join(f"- {w}" for w in research.safety_warnings)
    pro_warning = (
        f"**WARNING: Professional Required**: {research.pro_required_reason or 'see research findings'}\n\n"
        if research.pro_required
        else ""
    )

    return f"""Design a complete project plan for the following DIY project.

**Project:** {context.project_description}
**Location:** {context.location.city}, {context.location.state}
**Experience Level:** {prefs.experience_level}
**Budget Preference:** {prefs.budget_level}
{timeframe}
## Research Findings

### Building Codes
{research.building_codes}

### Local Codes
{research.local_codes}

### Permit Requirements
{research.permit_requirements}

### Best Practices
{research.best_practices}

### Common Pitfalls
{research.common_pitfalls}

### Safety Warnings
{warnings}

{pro_warning}---

Based on this research, design a complete project plan with step-by-step instructions, a full materials list with realistic prices, tool requirements, and timeline. Search for tutorial videos for the key techniques. When done, call {OUTPUT_TOOL}."""


def _coerce_step(raw: dict[str, Any]) -> ProjectStep:
    notes = raw.get("safety_notes")
    return ProjectStep(
        order=as_int(raw.get("order")),
        title=as_str(raw.get("title")),
        description=as_str(raw.get("description")),
        estimated_time=as_str(raw.get("estimated_time")),
        skill_level=as_str(raw.get("skill_level"), "beginner"),
        safety_notes=as_str_list(notes) if isinstance(notes, list) else None,
        inspection_required=as_flag(raw.get("inspection_required")),
    )


def coerce_material(raw: dict[str, Any]) -> DesignMaterial:
    return DesignMaterial(
        name=as_str(raw.get("name")),
        quantity=as_str(raw.get("quantity"), "1"),
        category=as_str(raw.get("category"), "general"),
        estimated_price=as_float(raw.get("estimated_price")),
        required=as_required(raw.get("required")),
        notes=as_optional_str(raw.get("notes")),
    )


def coerce_tool(raw: dict[str, Any]) -> DesignTool:
    price = as_float(raw.get("estimated_price"))
    return DesignTool(
        name=as_str(raw.get("name")),
        category=as_str(raw.get("category"), "general"),
        required=as_required(raw.get("required")),
        estimated_price=price or None,
        notes=as_optional_str(raw.get("notes")),
    )


def _coerce_video(raw: dict[str, Any]) -> DesignVideo:
    return DesignVideo(
        title=as_str(raw.get("title")),
        url=as_str(raw.get("url")),
        channel=as_str(raw.get("channel")),
        description=as_str(raw.get("description")),
    )


def coerce_design(raw: dict[str, Any]) -> DesignOutput:
    materials = [coerce_material(dict(m)) for m in as_dict_list(raw.get("materials"), field="materials")]
    tools = [coerce_tool(dict(t)) for t in as_dict_list(raw.get("tools"), field="tools")]

    unnamed = sum(1 for m in materials if not m.name) + sum(1 for t in tools if not t.name)
    if unnamed:
        log.warning("design_unnamed_items_dropped", count=unnamed)

    return DesignOutput(
        approach=as_str(raw.get("approach")),
        steps=[_coerce_step(dict(s)) for s in as_dict_list(raw.get("steps"), field="steps")],
        materials=[m for m in materials if m.name],
        tools=[t for t in tools if t.name],
        estimated_duration=as_str(raw.get("estimated_duration"), "TBD"),
        skill_level=as_str(raw.get("skill_level"), "intermediate"),
        videos=[_coerce_video(dict(v)) for v in as_dict_list(raw.get("videos"), field="videos")],
        alternative_approaches=as_optional_str(raw.get("alternative_approaches")),
    )


async def run_design_phase(
    context: RunContext, services: PhaseServices
) -> tuple[DesignOutput, PhaseResult]:
    user_prompt = build_user_prompt(context)
    result = await run_phase(
        phase="design",
        system_prompt=load_system_prompt("design"),
        user_prompt=user_prompt,
        tools=TOOLS,
        output_tool_name=OUTPUT_TOOL,
        client=services.client,
        executor=services.executor,
        limits=LIMITS,
        window=WINDOW,
        cancel_token=services.cancel_token,
        progress=services.progress,
        run_id=services.run_id,
        retry_policy=services.retry_policy,
    )
    return coerce_design(result.output), result
