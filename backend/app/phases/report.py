"""Report phase: turn research, design and sourcing into the final markdown report.

The model writes the sections; anything it leaves out or mangles is filled in
from the deterministic builder, so a report always carries all five section
types exactly once. With REPORT_MODE=deterministic the model is skipped.
"""

from __future__ import annotations

import time
from typing import Any

import structlog

from app.config import settings
from app.models.contracts import (
    SECTION_TYPES,
    ProgressEvent,
    ReportOutput,
    ReportSection,
    RunContext,
)
from app.phases import report_builder
from app.phases.coercion import as_dict_list, as_float, as_int, as_str, choice
from app.phases.runner import (
    MissingPhaseOutputError,
    PhaseLimits,
    PhaseResult,
    ProgressWindow,
    run_phase,
)
from app.phases.services import PhaseServices, load_system_prompt

log = structlog.get_logger("report_phase")

OUTPUT_TOOL = "submit_report_results"
WINDOW = ProgressWindow(base=85, span=15)
LIMITS = PhaseLimits(max_tool_loops=2, timeout_s=60, max_tokens=4096)

SUBMIT_REPORT_RESULTS: dict[str, Any] = {
    "name": OUTPUT_TOOL,
    "description": "Submit the final project report as structured data.",
    "input_schema": {
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "Report title"},
            "summary": {"type": "string", "description": "Two or three sentence executive summary"},
            "total_cost": {"type": "number", "description": "Total estimated cost after inventory savings"},
            "sections": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "title": {"type": "string"},
                        "content": {"type": "string", "description": "Markdown content"},
                        "order": {"type": "number"},
                        "type": {"type": "string", "enum": list(SECTION_TYPES)},
                    },
                    "required": ["id", "title", "content", "order", "type"],
                },
            },
        },
        "required": ["title", "summary", "total_cost", "sections"],
    },
}

TOOLS: list[dict[str, Any]] = [SUBMIT_REPORT_RESULTS]


def _require_inputs(context: RunContext) -> None:
    missing = [
        name
        for name, value in (
            ("research", context.research),
            ("design", context.design),
            ("sourcing", context.sourcing),
        )
        if value is None
    ]
    if missing:
        raise MissingPhaseOutputError(f"report phase requires {', '.join(missing)} output")


def build_user_prompt(context: RunContext) -> str:
    _require_inputs(context)
    research, design, sourcing = context.research, context.design, context.sourcing
    assert research is not None and design is not None and sourcing is not None

    steps = "\n".join(
        f"{s.order}. {s.title} ({s.estimated_time}, {s.skill_level})"
        + (" [inspection required]" if s.inspection_required else "")
        + f"\n   {s.description}"
        + (f"\n   Safety: {'; '.join(s.safety_notes)}" if s.safety_notes else "")
        for s in design.steps
    )
    materials = "\n".join(
        f"- {m.name} ({m.quantity}, {m.category}): "
        f"${m.best_price or m.estimated_price:.2f}/unit"
        + (f" at {m.best_store}" if m.best_store else "")
        + f", confidence {m.price_confidence}"
        for m in sourcing.priced_materials
    )
    tools = "\n".join(
        f"- {t.name} ({'required' if t.required else 'nice-to-have'})"
        + (f", ~${t.estimated_price:.2f}" if t.estimated_price else "")
        for t in design.tools
    )
    owned = "\n".join(f"- {o.material_name} (owned as {o.owned_as})" for o in sourcing.owned_items)
    videos = "\n".join(f"- {v.title}: {v.url} ({v.channel})" for v in design.videos)
    warnings = "\n".join(f"- {w}" for w in research.safety_warnings)
    pro = (
        f"**PROFESSIONAL REQUIRED:** {research.pro_required_reason or 'yes'}\n\n"
        if research.pro_required
        else ""
    )

    return f"""Compile the final project report for this DIY project.

**Project:** {context.project_description}
**Location:** {context.location.city}, {context.location.state}
**Budget Preference:** {context.preferences.budget_level}
**Experience Level:** {context.preferences.experience_level}

## Research
### Building Codes
{research.building_codes}

### Local Codes
{research.local_codes}

### Permits
{research.permit_requirements}

### Best Practices
{research.best_practices}

### Common Pitfalls
{research.common_pitfalls}

### Safety Warnings
{warnings or "None listed."}

{pro}## Design
**Approach:** {design.approach}
**Estimated Duration:** {design.estimated_duration}
**Skill Level:** {design.skill_level}

### Steps
{steps or "None listed."}

### Tools
{tools or "None listed."}

### Videos
{videos or "None found."}

## Sourcing
### Priced Materials
{materials or "None listed."}

### Already Owned
{owned or "Nothing."}

**Materials Total:** ${sourcing.materials_total:.2f}
**Tools Total:** ${sourcing.tools_total:.2f}
**Total Estimate:** ${sourcing.total_estimate:.2f}
**Savings From Inventory:** ${sourcing.savings_from_inventory:.2f}

---

Write five sections with types overview, plan, materials, cost and resources, in that order. When done, call {OUTPUT_TOOL}."""


def _coerce_section(raw: dict[str, Any], index: int) -> ReportSection:
    section_type = choice(raw.get("type"), SECTION_TYPES, "overview")
    return ReportSection(
        id=as_str(raw.get("id"), section_type),
        title=as_str(raw.get("title"), section_type.capitalize()),
        content=as_str(raw.get("content")),
        order=as_int(raw.get("order"), index + 1),
        type=section_type,  # type: ignore[arg-type]
    )


def coerce_report(raw: dict[str, Any], context: RunContext) -> ReportOutput:
    _require_inputs(context)
    assert context.sourcing is not None
    sections = [
        _coerce_section(dict(s), i) for i, s in enumerate(as_dict_list(raw.get("sections"), field="sections"))
    ]
    return ReportOutput(
        id="",
        title=as_str(raw.get("title")) or report_builder.report_title(context.project_description),
        sections=sections,
        summary=as_str(raw.get("summary")),
        total_cost=as_float(raw.get("total_cost")) or context.sourcing.total_estimate,
    )


def complete_report(report: ReportOutput, context: RunContext) -> ReportOutput:
    """Ensure each section type appears once, in order, with the pro callout if needed."""
    assert context.research is not None
    seen: set[str] = set()
    sections: list[ReportSection] = []
    for section in sorted(report.sections, key=lambda s: s.order):
        if section.type in seen:
            log.info("report_duplicate_section_dropped", section_type=section.type)
            continue
        seen.add(section.type)
        sections.append(section)

    missing = [t for t in SECTION_TYPES if t not in seen]
    if missing:
        log.info("report_sections_filled", missing=missing)
        sections += [report_builder.SECTION_BUILDERS[t](context) for t in missing]

    # Canonical type order wins over whatever numbering the model used
    sections.sort(key=lambda s: SECTION_TYPES.index(s.type))
    sections = [s.model_copy(update={"order": i}) for i, s in enumerate(sections, start=1)]

    research = context.research
    if research.pro_required:
        for i, section in enumerate(sections):
            if section.type == "overview" and "Professional Required" not in section.content:
                callout = report_builder.pro_callout(research)
                sections[i] = section.model_copy(update={"content": f"{callout}\n\n{section.content}"})

    summary = report.summary or report_builder.build_summary(context, report.total_cost)
    return report.model_copy(update={"sections": sections, "summary": summary})


def _deterministic(context: RunContext, services: PhaseServices) -> tuple[ReportOutput, PhaseResult]:
    started = time.monotonic()
    services.progress(
        ProgressEvent(
            run_id=services.run_id,
            phase="report",
            phase_status="started",
            message="Starting report phase...",
            overall_progress=WINDOW.base,
        )
    )
    report = report_builder.build_report(context)
    services.progress(
        ProgressEvent(
            run_id=services.run_id,
            phase="report",
            phase_status="completed",
            message="Report phase complete",
            overall_progress=WINDOW.end,
        )
    )
    duration_ms = int((time.monotonic() - started) * 1000)
    log.info("report_built_deterministically", run_id=services.run_id, duration_ms=duration_ms)
    return report, PhaseResult(output=report.model_dump(mode="json"), duration_ms=duration_ms)


async def run_report_phase(
    context: RunContext, services: PhaseServices
) -> tuple[ReportOutput, PhaseResult]:
    _require_inputs(context)
    if settings.report_mode == "deterministic":
        services.cancel_token.raise_if_cancelled()
        return _deterministic(context, services)

    result = await run_phase(
        phase="report",
        system_prompt=load_system_prompt("report"),
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
    return complete_report(coerce_report(result.output, context), context), result
