"""Research phase: codes, permits, safety and whether a licensed pro is required."""

from __future__ import annotations

from typing import Any

from app.models.contracts import ResearchOutput, RunContext
from app.phases.coercion import as_flag, as_optional_str, as_str, as_str_list
from app.phases.runner import PhaseLimits, PhaseResult, ProgressWindow, run_phase
from app.phases.services import PhaseServices, load_system_prompt
from app.tools import definitions

OUTPUT_TOOL = "submit_research_results"
WINDOW = ProgressWindow(base=0, span=25)
LIMITS = PhaseLimits(max_tool_loops=10, timeout_s=120, max_tokens=4096)

SUBMIT_RESEARCH_RESULTS: dict[str, Any] = {
    "name": OUTPUT_TOOL,
    "description": (
        "Submit the research findings as structured data. Call this as soon as you have "
        "gathered enough information."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "building_codes": {
                "type": "string",
                "description": "National building code findings relevant to this project",
            },
            "local_codes": {
                "type": "string",
                "description": "Local building code findings for the specified city/state",
            },
            "permit_requirements": {
                "type": "string",
                "description": "Required permits, estimated costs, and how to apply",
            },
            "best_practices": {
                "type": "string",
                "description": "Professional best practices for this type of project",
            },
            "common_pitfalls": {
                "type": "string",
                "description": "Common mistakes DIYers make on this project type",
            },
            "safety_warnings": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Explicit safety warnings and cautions",
            },
            "pro_required": {
                "type": "boolean",
                "description": "Whether this project legally requires licensed professional work",
            },
            "pro_required_reason": {
                "type": "string",
                "description": "If pro_required is true, explain why",
            },
        },
        "required": [
            "building_codes",
            "local_codes",
            "permit_requirements",
            "best_practices",
            "common_pitfalls",
            "safety_warnings",
            "pro_required",
        ],
    },
}

TOOLS: list[dict[str, Any]] = [
    definitions.SEARCH_BUILDING_CODES,
    definitions.SEARCH_LOCAL_CODES,
    definitions.WEB_SEARCH,
    definitions.WEB_FETCH,
    SUBMIT_RESEARCH_RESULTS,
]


def build_user_prompt(context: RunContext) -> str:
    loc = context.location
    zip_part = f" ({loc.zip_code})" if loc.zip_code else ""
    return f"""Research the following DIY project:

**Project:** {context.project_description}
**Location:** {loc.city}, {loc.state}{zip_part}
**DIYer Experience Level:** {context.preferences.experience_level}

Please research:
1. National building codes (NEC, IRC, IBC) that apply to this project
2. Local building codes and amendments for {loc.city}, {loc.state}
3. Permit requirements for this project in this location
4. Best practices from professional contractors
5. Common pitfalls and mistakes for this type of project
6. Safety warnings and whether any part requires a licensed professional

When done, call {OUTPUT_TOOL} with your structured findings."""


def coerce_research(raw: dict[str, Any]) -> ResearchOutput:
    return ResearchOutput(
        building_codes=as_str(raw.get("building_codes")),
        local_codes=as_str(raw.get("local_codes")),
        permit_requirements=as_str(raw.get("permit_requirements")),
        best_practices=as_str(raw.get("best_practices")),
        common_pitfalls=as_str(raw.get("common_pitfalls")),
        safety_warnings=as_str_list(raw.get("safety_warnings")),
        pro_required=as_flag(raw.get("pro_required")),
        pro_required_reason=as_optional_str(raw.get("pro_required_reason")),
    )


async def run_research_phase(
    context: RunContext, services: PhaseServices
) -> tuple[ResearchOutput, PhaseResult]:
    result = await run_phase(
        phase="research",
        system_prompt=load_system_prompt("research"),
        user_prompt=build_user_prompt(context),
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
    return coerce_research(result.output), result
