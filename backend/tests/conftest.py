"""Shared fixtures: API client, fresh in-memory state and sample phase outputs."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from app.api import deps
from app.config import settings
from app.main import app
from app.models.contracts import (
    DesignMaterial,
    DesignOutput,
    DesignTool,
    DesignVideo,
    Location,
    OwnedItem,
    PricedMaterial,
    ProjectStep,
    ReportOutput,
    ResearchOutput,
    RunContext,
    SourcingOutput,
    StoreSummary,
    TokenUsage,
)
from app.phases.runner import PhaseResult
from app.workflows.events import RunEventBroker
from app.workflows.planning_run import PlanningRunCoordinator
from app.workflows.run_store import RunStore


@pytest.fixture(autouse=True)
def reset_api_state():
    """Every test starts with an empty run store, broker and coordinator."""
    deps.reset_state()
    app.dependency_overrides.clear()
    yield
    deps.reset_state()
    app.dependency_overrides.clear()


@pytest.fixture
async def client():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def research_output() -> ResearchOutput:
    return ResearchOutput(
        building_codes="NEC 210.8 requires GFCI protection for bathroom receptacles.",
        local_codes="Austin adopts the 2023 NEC with local amendments.",
        permit_requirements="Electrical permit required, about $75.",
        best_practices="Turn off the breaker and verify with a tester.",
        common_pitfalls="Reversing line and load terminals.",
        safety_warnings=["Verify power is off before touching conductors"],
        pro_required=False,
    )


@pytest.fixture
def design_output() -> DesignOutput:
    return DesignOutput(
        approach="Replace the existing receptacle with a GFCI unit.",
        steps=[
            ProjectStep(
                order=1,
                title="Shut off power",
                description="Switch off the breaker.",
                estimated_time="10 min",
                skill_level="beginner",
                safety_notes=["Test with a voltage tester"],
            ),
            ProjectStep(
                order=2,
                title="Install GFCI",
                description="Wire line and load terminals.",
                estimated_time="30 min",
                skill_level="intermediate",
                inspection_required=True,
            ),
        ],
        materials=[
            DesignMaterial(name="GFCI outlet", quantity="2", category="electrical", estimated_price=20.0),
            DesignMaterial(name="Wire nuts", quantity="1 pack", category="electrical", estimated_price=5.0),
            DesignMaterial(name="Wall plate", quantity="2", category="hardware", estimated_price=2.5),
        ],
        tools=[
            DesignTool(name="Voltage tester", category="electrical", required=True, estimated_price=15.0),
            DesignTool(name="Screwdriver", category="hand tools", required=True, estimated_price=8.0),
            DesignTool(name="Wire stripper", category="electrical", required=False, estimated_price=12.0),
        ],
        estimated_duration="1 afternoon",
        skill_level="beginner",
        videos=[
            DesignVideo(
                title="How to install a GFCI",
                url="https://youtube.com/watch?v=abc",
                channel="This Old House",
                description="Step by step GFCI install",
            )
        ],
        alternative_approaches="Install a GFCI breaker at the panel instead.",
    )


@pytest.fixture
def sourcing_output() -> SourcingOutput:
    return SourcingOutput(
        priced_materials=[
            PricedMaterial(
                name="GFCI outlet",
                quantity="2",
                category="electrical",
                estimated_price=20.0,
                best_price=18.97,
                best_store="Home Depot",
                price_confidence="high",
            ),
            PricedMaterial(name="Wire nuts", quantity="1 pack", category="electrical", estimated_price=5.0),
            PricedMaterial(name="Wall plate", quantity="2", category="hardware", estimated_price=2.5),
        ],
        owned_items=[OwnedItem(material_name="Screwdriver", owned_as="Screwdriver set", category="hand tools")],
        store_summary=[StoreSummary(store="Home Depot", item_count=1, total_price=37.94)],
        materials_total=47.94,
        tools_total=15.0,
        total_estimate=62.94,
        savings_from_inventory=8.0,
    )


class FakePhases:
    """Phase runners returning canned outputs, with per-phase call counts and hooks.

    `failures[phase]` is raised once by that phase; `gates[phase]` holds the
    phase until set, after which it checks the cancel token.
    """

    def __init__(self, research_output, design_output, sourcing_output) -> None:
        self.outputs = {
            "research": research_output,
            "design": design_output,
            "sourcing": sourcing_output,
            "report": ReportOutput(id="", title="GFCI Plan", summary="All done", total_cost=62.94),
        }
        self.calls: dict[str, int] = {name: 0 for name in self.outputs}
        self.contexts: dict[str, RunContext] = {}
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}

    def runner(self, phase: str):
        async def run(context, services):
            self.calls[phase] += 1
            self.contexts[phase] = context
            gate = self.gates.get(phase)
            if gate is not None:
                await gate.wait()
                services.cancel_token.raise_if_cancelled()
            error = self.failures.pop(phase, None)
            if error is not None:
                raise error
            usage = TokenUsage(input_tokens=1000, output_tokens=100)
            return self.outputs[phase], PhaseResult(output={}, token_usage=usage, duration_ms=5)

        return run

    def runners(self) -> dict:
        return {phase: self.runner(phase) for phase in self.outputs}


def _fake_services(run, token, progress, inventory):
    services = MagicMock()
    services.cancel_token = token
    services.progress = progress
    services.run_id = run.id
    return services


@pytest.fixture
def phases(research_output, design_output, sourcing_output) -> FakePhases:
    return FakePhases(research_output, design_output, sourcing_output)


@pytest.fixture
def make_coordinator(phases):
    """Build a coordinator over fresh in-memory state that runs the fake phases."""

    def make(config=settings) -> PlanningRunCoordinator:
        return PlanningRunCoordinator(
            RunStore(), RunEventBroker(), _fake_services, phase_runners=phases.runners(), config=config
        )

    return make


@pytest.fixture
def base_context() -> RunContext:
    return RunContext(
        run_id="run-1",
        project_description="Replace a bathroom outlet with a GFCI",
        location=Location(city="Austin", state="TX"),
    )


@pytest.fixture
def full_context(base_context, research_output, design_output, sourcing_output) -> RunContext:
    return base_context.model_copy(
        update={"research": research_output, "design": design_output, "sourcing": sourcing_output}
    )
