"""Copper wire gauge calculator (NEC 310.16 residential table, 3% voltage drop)."""

from __future__ import annotations

from dataclasses import dataclass

# (AWG, ampacity in amps), smallest wire first
NEC_AMPACITY: tuple[tuple[int, int], ...] = (
    (14, 15),
    (12, 20),
    (10, 30),
    (8, 40),
    (6, 55),
    (4, 70),
    (3, 85),
    (2, 95),
    (1, 110),
)

# Ohms per 1000 ft, copper at 75C
WIRE_RESISTANCE: dict[int, float] = {
    14: 3.14,
    12: 1.98,
    10: 1.24,
    8: 0.778,
    6: 0.491,
    4: 0.308,
    3: 0.245,
    2: 0.194,
    1: 0.154,
}

MAX_DROP_PCT = 3.0
DEFAULT_VOLTAGE = 120.0


@dataclass(frozen=True)
class WireSizing:
    amperage: float
    distance_ft: float
    voltage: float
    awg_by_ampacity: int
    awg: int
    ampacity: int
    drop_volts: float
    drop_pct: float

    @property
    def upsized(self) -> bool:
        return self.awg != self.awg_by_ampacity


def _drop(amperage: float, awg: int, round_trip_ft: float) -> float:
    return amperage * WIRE_RESISTANCE[awg] * round_trip_ft / 1000


def size_wire(amperage: float, distance_ft: float, voltage: float | None = None) -> WireSizing | None:
    """Pick the smallest gauge that carries the load within the drop limit.

    Returns None when the load exceeds the largest gauge in the table.
    """
    volts = voltage or DEFAULT_VOLTAGE
    by_ampacity = next((awg for awg, amps in NEC_AMPACITY if amps >= amperage), None)
    if by_ampacity is None:
        return None

    round_trip = distance_ft * 2
    selected = by_ampacity
    for awg, _ in NEC_AMPACITY:
        if awg > selected:
            continue
        selected = awg
        if _drop(amperage, awg, round_trip) / volts * 100 <= MAX_DROP_PCT:
            break

    drop = _drop(amperage, selected, round_trip)
    return WireSizing(
        amperage=amperage,
        distance_ft=distance_ft,
        voltage=volts,
        awg_by_ampacity=by_ampacity,
        awg=selected,
        ampacity=dict(NEC_AMPACITY)[selected],
        drop_volts=drop,
        drop_pct=drop / volts * 100,
    )


def _num(value: float) -> str:
    return f"{value:g}"


def describe_wire_size(amperage: float, distance_ft: float, voltage: float | None = None) -> str:
    """Markdown summary of size_wire() for the model."""
    sizing = size_wire(amperage, distance_ft, voltage)
    if sizing is None:
        return (
            f"Amperage of {_num(amperage)}A exceeds residential wire table (max 110A for 1 AWG). "
            "Consult an electrician for larger service conductors."
        )

    lines = [
        "**Wire Size Calculation (per NEC 310.16)**",
        "",
        f"**Circuit:** {_num(sizing.amperage)}A at {_num(sizing.voltage)}V, {_num(sizing.distance_ft)} ft run",
        f"**Recommended:** {sizing.awg} AWG copper wire",
        "",
        "**Details:**",
        f"- Ampacity rating: {sizing.ampacity}A",
        f"- Voltage drop: {sizing.drop_volts:.2f}V ({sizing.drop_pct:.1f}%) over {_num(sizing.distance_ft)} ft",
        f"- NEC max recommended: {_num(MAX_DROP_PCT)}% ({sizing.voltage * MAX_DROP_PCT / 100:.1f}V)",
    ]
    if sizing.drop_pct > MAX_DROP_PCT:
        lines += [
            "",
            f"**Warning:** Even with {sizing.awg} AWG, voltage drop exceeds {_num(MAX_DROP_PCT)}%. "
            "Consider a shorter run or consult an electrician.",
        ]
    if sizing.upsized:
        lines += [
            "",
            f"**Note:** Wire was upsized from {sizing.awg_by_ampacity} AWG to {sizing.awg} AWG "
            f"to meet voltage drop requirements at {_num(sizing.distance_ft)} ft.",
        ]
    lines += ["", "**Always verify with your local building department and a licensed electrician.**"]
    return "\n".join(lines)
