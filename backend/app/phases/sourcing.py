"""Sourcing phase: real prices, owned-item matches and the project totals.

The model's answer is only a starting point. After coercion the phase matches
every design item against the user's inventory itself, refines unverified
prices with a live lookup, and recomputes all totals from the priced list, so
a missing or wrong total from the model never reaches the report.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from app.models.contracts import (
    PRICE_CONFIDENCE,
    DesignOutput,
    InventoryItem,
    OwnedItem,
    PricedMaterial,
    RunContext,
    SourcingOutput,
    StoreSummary,
)
from app.phases.coercion import (
    as_dict_list,
    as_float,
    as_int,
    as_optional_str,
    as_required,
    as_str,
    choice,
    parse_quantity,
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
from app.tools.inventory import find_owned_item
from app.utils.fuzzy_match import is_same_item
from app.utils.pricing import lookup_material_prices, validate_prices

log = structlog.get_logger("sourcing_phase")

OUTPUT_TOOL = "submit_sourcing_results"
WINDOW = ProgressWindow(base=50, span=35)
LIMITS = PhaseLimits(max_tool_loops=6, timeout_s=75, max_tokens=4096)

SUBMIT_SOURCING_RESULTS: dict[str, Any] = {
    "name": OUTPUT_TOOL,
    "description": "Submit the sourcing analysis as structured data. Call this when sourcing is complete.",
    "input_schema": {
        "type": "object",
        "properties": {
            "priced_materials": {
                "type": "array",
                "description": "Materials with real prices from stores",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "quantity": {"type": "string"},
                        "category": {"type": "string"},
                        "estimated_price": {"type": "number", "description": "Per-unit price"},
                        "best_price": {"type": "number", "description": "Best price found at stores"},
                        "best_store": {"type": "string", "description": "Store with best price"},
                        "product_url": {"type": "string", "description": "URL to the product page"},
                        "required": {"type": "boolean"},
                        "price_confidence": {"type": "string", "enum": list(PRICE_CONFIDENCE)},
                    },
                    "required": [
                        "name",
                        "quantity",
                        "category",
                        "estimated_price",
                        "required",
                        "price_confidence",
                    ],
                },
            },
            "owned_items": {
                "type": "array",
                "description": "Items the user already owns (from inventory)",
                "items": {
                    "type": "object",
                    "properties": {
                        "material_name": {"type": "string", "description": "Name from the design list"},
                        "owned_as": {"type": "string", "description": "Name in the user's inventory"},
                        "category": {"type": "string"},
                    },
                    "required": ["material_name", "owned_as", "category"],
                },
            },
            "store_summary": {
                "type": "array",
                "description": "Summary per store (how many items available, total cost)",
                "items": {
                    "type": "object",
                    "properties": {
                        "store": {"type": "string"},
                        "item_count": {"type": "number"},
                        "total_price": {"type": "number"},
                    },
                    "required": ["store", "item_count", "total_price"],
                },
            },
            "total_estimate": {"type": "number", "description": "Total estimated cost for all materials"},
            "savings_from_inventory": {
                "type": "number",
                "description": "Estimated savings from items the user already owns",
            },
        },
        "required": [
            "priced_materials",
            "owned_items",
            "store_summary",
            "total_estimate",
            "savings_from_inventory",
        ],
    },
}

TOOLS: list[dict[str, Any]] = [
    definitions.CHECK_USER_INVENTORY,
    definitions.SEARCH_LOCAL_STORES,
    SUBMIT_SOURCING_RESULTS,
]


def build_user_prompt(context: RunContext) -> str:
    design = context.design
    if design is None:
        raise MissingPhaseOutputError("sourcing phase requires design output")

    materials_table = "\n".join(
        f"{i}. {m.name}: qty {m.quantity}, category {m.category}, "
        f"est. ${m.estimated_price:g}/unit, {'required' if m.required else 'optional'}"
        for i, m in enumerate(design.materials, start=1)
    )
    tools_table = "\n".join(
        f"{i}. {t.name}: {t.category}, {'required' if t.required else 'nice-to-have'}"
        + (f", est. ${t.estimated_price:g}" if t.estimated_price else "")
        for i, t in enumerate(design.tools, start=1)
    )

    return f"""Find real prices and optimize the shopping list for this DIY project.

**Project:** {context.project_description}
**Location:** {context.location.city}, {context.location.state}
**Budget Preference:** {context.preferences.budget_level}

## Materials Needed (from design phase)
{materials_table or "None listed."}

## Tools Needed
{tools_table or "None listed."}

---

**Instructions:**
1. Check the user's inventory to see what they already own.
2. Search local stores for ONLY the top 3-4 most expensive materials. Use ONE search per material; do not repeat searches.
3. For all other items, use the design phase price estimates directly.
4. Compile the shopping list and call {OUTPUT_TOOL}.

Be efficient. Only search the 3-4 highest-cost items and call {OUTPUT_TOOL} as soon as you have enough data."""


# === Coercion ===


def _coerce_priced(raw: dict[str, Any]) -> PricedMaterial:
    best_price = as_float(raw.get("best_price"))
    return PricedMaterial(
        name=as_str(raw.get("name")),
        quantity=as_str(raw.get("quantity"), "1"),
        category=as_str(raw.get("category"), "general"),
        estimated_price=as_float(raw.get("estimated_price")),
        best_price=best_price or None,
        best_store=as_optional_str(raw.get("best_store")),
        product_url=as_optional_str(raw.get("product_url")),
        required=as_required(raw.get("required")),
        price_confidence=choice(raw.get("price_confidence"), PRICE_CONFIDENCE, "low"),  # type: ignore[arg-type]
    )


def coerce_sourcing(raw: dict[str, Any]) -> SourcingOutput:
    """Coerce the model's raw submission. Missing numbers become 0."""
    return SourcingOutput(
        priced_materials=[
            _coerce_priced(dict(m))
            for m in as_dict_list(raw.get("priced_materials"), field="priced_materials")
        ],
        owned_items=[
            OwnedItem(
                material_name=as_str(o.get("material_name")),
                owned_as=as_str(o.get("owned_as")),
                category=as_str(o.get("category"), "general"),
            )
            for o in as_dict_list(raw.get("owned_items"), field="owned_items")
        ],
        store_summary=[
            StoreSummary(
                store=as_str(s.get("store")),
                item_count=as_int(s.get("item_count")),
                total_price=as_float(s.get("total_price")),
            )
            for s in as_dict_list(raw.get("store_summary"), field="store_summary")
        ],
        total_estimate=as_float(raw.get("total_estimate")),
        savings_from_inventory=as_float(raw.get("savings_from_inventory")),
    )


# === Post-processing ===


def match_owned_items(
    design: DesignOutput,
    inventory: Sequence[InventoryItem],
    reported: Sequence[OwnedItem] = (),
) -> list[OwnedItem]:
    """Merge the model's owned-item claims with our own inventory matching."""
    owned = [o for o in reported if o.material_name]
    if not inventory:
        return owned

    candidates = [(m.name, m.category) for m in design.materials]
    candidates += [(t.name, t.category) for t in design.tools]
    for name, category in candidates:
        match = find_owned_item(name, inventory)
        if match is None:
            continue
        if any(is_same_item(o.material_name, name) for o in owned):
            continue
        owned.append(OwnedItem(material_name=name, owned_as=match.item_name, category=category))
    return owned


def _is_owned(name: str, owned: Sequence[OwnedItem]) -> bool:
    return any(is_same_item(o.material_name, name) for o in owned)


def seed_from_design(design: DesignOutput) -> list[PricedMaterial]:
    """Priced list built from design estimates when the model returned none."""
    return [
        PricedMaterial(
            name=m.name,
            quantity=m.quantity,
            category=m.category,
            estimated_price=m.estimated_price,
            required=m.required,
            price_confidence="medium",
        )
        for m in design.materials
    ]


async def refine_prices(
    materials: list[PricedMaterial],
    owned: Sequence[OwnedItem],
    *,
    api_key: str,
    http_client: httpx.AsyncClient | None,
) -> list[PricedMaterial]:
    """Look up live prices for unverified, non-owned materials."""
    targets = [
        i
        for i, m in enumerate(materials)
        if m.price_confidence != "high" and not _is_owned(m.name, owned)
    ]
    if not targets or not api_key:
        return materials

    rows = [
        {
            "name": materials[i].name,
            "quantity": materials[i].quantity,
            "estimated_price": materials[i].estimated_price,
        }
        for i in targets
    ]
    updated = await lookup_material_prices(rows, api_key=api_key, http_client=http_client)
    if not updated:
        return materials

    refined = list(materials)
    for i, row in zip(targets, rows, strict=True):
        original = materials[i]
        looked_up = float(row["estimated_price"])
        if looked_up == original.estimated_price:
            continue
        check = validate_prices(looked_up, original.estimated_price or None)
        refined[i] = original.model_copy(
            update={
                "best_price": looked_up,
                "best_store": row.get("best_store") or original.best_store,
                "price_confidence": check.confidence,
                "price_note": check.warning,
            }
        )
    log.info("sourcing_prices_refined", requested=len(targets), updated=updated)
    return refined


def _summarize_stores(materials: Sequence[PricedMaterial]) -> list[StoreSummary]:
    totals: dict[str, StoreSummary] = {}
    for m in materials:
        if not m.best_store:
            continue
        unit = m.best_price or m.estimated_price
        entry = totals.setdefault(m.best_store, StoreSummary(store=m.best_store))
        entry.item_count += 1
        entry.total_price = round(entry.total_price + unit * parse_quantity(m.quantity), 2)
    return list(totals.values())


def compute_savings(
    owned: Sequence[OwnedItem],
    design: DesignOutput,
    priced: Sequence[PricedMaterial],
) -> float:
    savings = 0.0
    for item in owned:
        name = item.material_name.lower()
        material = next((m for m in design.materials if m.name.lower() == name), None)
        if material is not None:
            savings += material.estimated_price * parse_quantity(material.quantity)
            continue
        priced_match = next((m for m in priced if m.name.lower() == name), None)
        if priced_match is not None:
            savings += priced_match.estimated_price * parse_quantity(priced_match.quantity)
            continue
        tool = next((t for t in design.tools if t.name.lower() == name), None)
        if tool is not None and tool.estimated_price:
            savings += tool.estimated_price
    return savings


async def finalize_sourcing(
    sourcing: SourcingOutput,
    design: DesignOutput,
    inventory: Sequence[InventoryItem],
    *,
    api_key: str = "",
    http_client: httpx.AsyncClient | None = None,
) -> SourcingOutput:
    """Apply owned-item matching, live price refinement and recomputed totals."""
    owned = match_owned_items(design, inventory, sourcing.owned_items)
    priced = sourcing.priced_materials or seed_from_design(design)
    priced = await refine_prices(priced, owned, api_key=api_key, http_client=http_client)

    materials_total = sum(
        (m.best_price or m.estimated_price) * parse_quantity(m.quantity)
        for m in priced
        if not _is_owned(m.name, owned)
    )
    tools_total = sum(
        t.estimated_price or 0.0
        for t in design.tools
        if t.required and t.estimated_price and not _is_owned(t.name, owned)
    )
    savings = compute_savings(owned, design, priced)

    if sourcing.total_estimate and abs(sourcing.total_estimate - (materials_total + tools_total)) > 1:
        log.info(
            "sourcing_total_recomputed",
            model_total=sourcing.total_estimate,
            computed_total=round(materials_total + tools_total, 2),
        )

    return SourcingOutput(
        priced_materials=priced,
        owned_items=owned,
        store_summary=sourcing.store_summary or _summarize_stores(priced),
        materials_total=round(materials_total, 2),
        tools_total=round(tools_total, 2),
        total_estimate=round(materials_total + tools_total, 2),
        savings_from_inventory=round(savings, 2),
    )


async def run_sourcing_phase(
    context: RunContext, services: PhaseServices
) -> tuple[SourcingOutput, PhaseResult]:
    if context.research is None:
        raise MissingPhaseOutputError("sourcing phase requires research output")
    user_prompt = build_user_prompt(context)
    assert context.design is not None  # checked by build_user_prompt

    result = await run_phase(
        phase="sourcing",
        system_prompt=load_system_prompt("sourcing"),
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

    services.cancel_token.raise_if_cancelled()
    inventory = await services.inventory.list_items()
    sourcing = await finalize_sourcing(
        coerce_sourcing(result.output),
        context.design,
        inventory,
        api_key=services.brave_api_key,
        http_client=services.http_client,
    )
    return sourcing, result
