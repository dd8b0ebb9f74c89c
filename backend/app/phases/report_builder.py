"""Deterministic report rendering from research, design and sourcing outputs.

Used directly when REPORT_MODE=deterministic, and section by section to fill
in anything the report model left out.
"""

from __future__ import annotations

import math
from collections.abc import Callable

from app.models.contracts import (
    DesignOutput,
    DesignTool,
    ReportOutput,
    ReportSection,
    ResearchOutput,
    RunContext,
    SectionType,
    SourcingOutput,
)
from app.phases.coercion import parse_quantity
from app.phases.runner import MissingPhaseOutputError

CONTINGENCY_RATE = 0.10
DEFAULT_PRO_REASON = "This project requires licensed professional work."
PRO_CALLOUT_MARKER = "**Professional Required:**"


def pro_callout(research: ResearchOutput) -> str:
    return f"> {PRO_CALLOUT_MARKER} {research.pro_required_reason or DEFAULT_PRO_REASON}"


def report_title(project_description: str) -> str:
    return f"{project_description} — Project Plan"


def _money(value: float) -> str:
    return f"${value:,.2f}"


def _owned_names(sourcing: SourcingOutput) -> set[str]:
    return {o.material_name.lower() for o in sourcing.owned_items}


def _require(context: RunContext) -> tuple[ResearchOutput, DesignOutput, SourcingOutput]:
    if context.research is None or context.design is None or context.sourcing is None:
        raise MissingPhaseOutputError("report requires research, design and sourcing output")
    return context.research, context.design, context.sourcing


# === Sections ===


def build_overview(context: RunContext) -> ReportSection:
    research, design, _ = _require(context)
    loc = context.location
    prefs = context.preferences

    lines = ["### Project Summary", design.approach, ""]
    lines += [
        "### Applicable Codes & Permits",
        f"**Building Codes:** {research.building_codes}",
        "",
        f"**Local Codes ({loc.city}, {loc.state}):** {research.local_codes}",
        "",
        f"**Permits:** {research.permit_requirements}",
        "",
    ]
    if research.pro_required:
        lines += [pro_callout(research), ""]

    lines.append("### Safety Warnings")
    if research.safety_warnings:
        lines += [f"- {w}" for w in research.safety_warnings]
    else:
        lines.append("- Follow standard safety practices for this type of project.")
    lines.append("")

    lines += [
        "### Project Details",
        f"- **Skill Level:** {design.skill_level}",
        f"- **Estimated Duration:** {design.estimated_duration}",
        f"- **Budget Tier:** {prefs.budget_level}",
    ]
    if prefs.timeframe:
        lines.append(f"- **Your Timeframe:** {prefs.timeframe}")

    return ReportSection(
        id="overview",
        title="Project Overview",
        content="\n".join(lines) + "\n",
        order=1,
        type="overview",
    )


def build_plan(context: RunContext) -> ReportSection:
    _, design, _ = _require(context)
    lines: list[str] = []
    for step in sorted(design.steps, key=lambda s: s.order):
        lines += [
            f"### Step {step.order}: {step.title}",
            step.description,
            "",
            f"- **Time:** {step.estimated_time}",
            f"- **Skill Level:** {step.skill_level}",
        ]
        if step.safety_notes:
            lines.append(f"- **Safety:** {'; '.join(step.safety_notes)}")
        if step.inspection_required:
            lines.append("- **Inspection Required**: Schedule before proceeding to next step.")
        lines.append("")

    return ReportSection(
        id="plan",
        title="Step-by-Step Plan",
        content="\n".join(lines),
        order=2,
        type="plan",
    )


def _tool_line(tool: DesignTool, owned: set[str]) -> str:
    price = f" ~{_money(tool.estimated_price)}" if tool.estimated_price else ""
    notes = f": {tool.notes}" if tool.notes else ""
    if tool.name.lower() in owned:
        return f"- ~~**{tool.name}**{price}{notes}~~ (already owned)"
    return f"- **{tool.name}**{price}{notes}"


def build_materials(context: RunContext) -> ReportSection:
    _, design, sourcing = _require(context)
    owned = _owned_names(sourcing)

    by_category: dict[str, list] = {}
    for material in design.materials:
        by_category.setdefault(material.category, []).append(material)

    lines: list[str] = []
    for category, materials in by_category.items():
        lines.append(f"### {category.capitalize()}")
        for m in materials:
            optional = "" if m.required else " (optional)"
            notes = f": {m.notes}" if m.notes else ""
            body = f"**{m.name}** ({m.quantity}) @ {_money(m.estimated_price)}{optional}{notes}"
            if m.name.lower() in owned:
                lines.append(f"- ~~{body}~~ (already owned)")
            else:
                lines.append(f"- {body}")
        lines.append("")

    lines.append("### Tools")
    required = [t for t in design.tools if t.required]
    optional_tools = [t for t in design.tools if not t.required]
    if required:
        lines.append("**Required:**")
        lines += [_tool_line(t, owned) for t in required]
        lines.append("")
    if optional_tools:
        lines.append("**Nice-to-Have:**")
        lines += [_tool_line(t, owned) for t in optional_tools]
        lines.append("")

    return ReportSection(
        id="materials",
        title="Materials & Tools",
        content="\n".join(lines),
        order=3,
        type="materials",
    )


def build_cost(context: RunContext) -> ReportSection:
    _, design, sourcing = _require(context)

    materials_subtotal = sum(m.estimated_price * parse_quantity(m.quantity) for m in design.materials)
    tools_subtotal = sum(t.estimated_price or 0.0 for t in design.tools if t.required and t.estimated_price)
    subtotal = materials_subtotal + tools_subtotal
    contingency = subtotal * CONTINGENCY_RATE
    savings = sourcing.savings_from_inventory
    grand_total = subtotal + contingency - savings

    lines = [
        "### Cost Breakdown",
        f"- **Materials Subtotal:** {_money(materials_subtotal)}",
        f"- **Tools Subtotal:** {_money(tools_subtotal)}",
    ]
    if savings > 0:
        lines.append(f"- **Savings from Your Inventory:** -{_money(savings)}")
    lines += [
        f"- **Contingency (10%):** {_money(contingency)}",
        f"- **Grand Total:** {_money(grand_total)}",
        "",
        "### Category Breakdown",
    ]

    category_totals: dict[str, float] = {}
    for m in design.materials:
        category_totals[m.category] = category_totals.get(m.category, 0.0) + m.estimated_price * parse_quantity(
            m.quantity
        )
    for category, total in sorted(category_totals.items(), key=lambda kv: kv[1], reverse=True):
        lines.append(f"- **{category.capitalize()}:** {_money(total)}")

    if sourcing.store_summary:
        lines += ["", "### Store Shopping Guide"]
        for store in sourcing.store_summary:
            items = [m.name for m in sourcing.priced_materials if m.best_store == store.store]
            what = f": {', '.join(items)}" if items else ""
            lines.append(
                f"- **{store.store}:** {store.item_count} items, ~{_money(store.total_price)}{what}"
            )

    return ReportSection(
        id="cost",
        title="Cost Estimate",
        content="\n".join(lines) + "\n",
        order=4,
        type="cost",
    )


def build_resources(context: RunContext) -> ReportSection:
    research, design, _ = _require(context)
    lines: list[str] = []

    if design.videos:
        lines.append("### Tutorial Videos")
        lines += [f"- [{v.title}]({v.url}) by {v.channel}: {v.description}" for v in design.videos]
        lines.append("")

    lines += ["### Suggested Timeline", f"**Estimated Duration:** {design.estimated_duration}", ""]
    steps = design.steps
    if steps:
        per_weekend = max(2, math.ceil(len(steps) / 4))
        for weekend, start in enumerate(range(0, len(steps), per_weekend), start=1):
            names = ", ".join(s.title for s in steps[start : start + per_weekend])
            lines.append(f"- **Weekend {weekend}:** {names}")
        lines.append("")

    lines.append("### Pro Tips")
    if research.best_practices:
        lines += [research.best_practices, ""]
    if research.common_pitfalls:
        lines += ["### Common Mistakes to Avoid", research.common_pitfalls, ""]
    if design.alternative_approaches:
        lines += ["### Alternative Approaches", design.alternative_approaches]

    return ReportSection(
        id="resources",
        title="Resources & Timeline",
        content="\n".join(lines) + "\n",
        order=5,
        type="resources",
    )


SECTION_BUILDERS: dict[SectionType, Callable[[RunContext], ReportSection]] = {
    "overview": build_overview,
    "plan": build_plan,
    "materials": build_materials,
    "cost": build_cost,
    "resources": build_resources,
}


def build_summary(context: RunContext, total_cost: float) -> str:
    _, design, sourcing = _require(context)
    summary = (
        f"This plan covers your {context.project_description} project with {len(design.steps)} steps, "
        f"{len(design.materials)} materials, and {len(design.tools)} tools. "
        f"Estimated cost: {_money(total_cost)}. "
        f"Skill level: {design.skill_level}. Duration: {design.estimated_duration}."
    )
    if sourcing.savings_from_inventory > 0:
        summary += f" You save {_money(sourcing.savings_from_inventory)} from items you already own."
    return summary


def build_report(context: RunContext) -> ReportOutput:
    """Render the full five-section report without a model call."""
    _, _, sourcing = _require(context)
    total_cost = sourcing.total_estimate
    return ReportOutput(
        id="",
        title=report_title(context.project_description),
        sections=[builder(context) for builder in SECTION_BUILDERS.values()],
        summary=build_summary(context, total_cost),
        total_cost=total_cost,
    )
