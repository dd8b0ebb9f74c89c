"""User inventory access and owned-item matching.

The planner only reads inventory. InventoryStore is the seam a persistent
store plugs into; runs started over HTTP use InMemoryInventoryStore seeded
from the request body.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol

from app.models.contracts import InventoryItem
from app.utils.fuzzy_match import is_same_item

CATEGORY_LABELS: dict[str, str] = {
    "power_tools": "⚡ Power Tools",
    "hand_tools": "🔧 Hand Tools",
    "measuring": "📏 Measuring",
    "safety": "🦺 Safety Gear",
    "electrical": "💡 Electrical",
    "plumbing": "🔩 Plumbing",
    "painting": "🎨 Painting",
    "fasteners": "🔩 Fasteners",
    "materials": "📦 Materials",
    "general": "📋 General",
}

EMPTY_INVENTORY_MESSAGE = (
    "User's inventory is empty. They will need to purchase all required items."
)

# Names in one group refer to interchangeable tools
ALIAS_GROUPS: tuple[tuple[str, ...], ...] = (
    ("drill", "cordless drill", "power drill", "drill driver", "impact driver"),
    ("saw", "circular saw", "miter saw", "mitre saw", "table saw", "reciprocating saw", "jigsaw"),
    ("sander", "orbital sander", "belt sander", "palm sander", "random orbit sander"),
    ("hammer", "claw hammer", "framing hammer", "ball peen hammer"),
    ("screwdriver", "screwdriver set", "phillips screwdriver", "flathead screwdriver"),
    ("wrench", "adjustable wrench", "pipe wrench", "socket wrench", "crescent wrench"),
    ("pliers", "needle nose pliers", "channel lock pliers", "slip joint pliers", "lineman pliers"),
    ("tape measure", "measuring tape", "tape"),
    ("level", "spirit level", "laser level", "torpedo level"),
    ("safety glasses", "safety goggles", "protective eyewear", "eye protection"),
    ("wire strippers", "wire stripper", "wire cutter", "wire cutters"),
    ("stud finder", "stud sensor", "wall scanner"),
    ("voltage tester", "circuit tester", "non-contact voltage tester", "multimeter"),
)


class InventoryStore(Protocol):
    async def list_items(self, categories: Sequence[str] | None = None) -> list[InventoryItem]: ...


class InMemoryInventoryStore:
    def __init__(self, items: Iterable[InventoryItem] = ()) -> None:
        self._items = sorted(items, key=lambda i: (i.category, i.item_name.lower()))

    async def list_items(self, categories: Sequence[str] | None = None) -> list[InventoryItem]:
        if not categories:
            return list(self._items)
        wanted = set(categories)
        return [item for item in self._items if item.category in wanted]


def format_inventory(items: Sequence[InventoryItem]) -> str:
    """Render inventory grouped by category for the model."""
    if not items:
        return EMPTY_INVENTORY_MESSAGE

    grouped: dict[str, list[InventoryItem]] = {}
    for item in items:
        grouped.setdefault(item.category, []).append(item)

    lines = [f"**User's Current Inventory ({len(items)} items):**", ""]
    for category, group in grouped.items():
        lines.append(f"{CATEGORY_LABELS.get(category, category)}:")
        for item in group:
            qty = f" (x{item.quantity})" if item.quantity > 1 else ""
            cond = f" [{item.condition}]" if item.condition != "good" else ""
            lines.append(f"  - {item.item_name}{qty}{cond}")
        lines.append("")
    return "\n".join(lines)


def _in_alias_group(name: str, group: tuple[str, ...]) -> bool:
    return any(alias in name or name in alias for alias in group)


def find_owned_item(name: str, inventory: Sequence[InventoryItem]) -> InventoryItem | None:
    """Return the inventory item that covers `name`, if any.

    Per inventory item, tries exact match, then containment either way, then
    shared tool alias group, then fuzzy similarity.
    """
    wanted = name.lower().strip()
    if not wanted:
        return None

    for item in inventory:
        owned = item.item_name.lower().strip()
        if not owned:
            continue
        if wanted == owned or wanted in owned or owned in wanted:
            return item
        for group in ALIAS_GROUPS:
            if _in_alias_group(wanted, group) and _in_alias_group(owned, group):
                return item
        if is_same_item(wanted, owned):
            return item
    return None
