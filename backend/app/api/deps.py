"""Process-wide singletons for the API layer.

The store, broker and coordinator are created lazily on first use. Tests swap
them out with `reset_state()` or FastAPI dependency overrides.
"""

from __future__ import annotations

from collections.abc import Sequence

import anthropic
import httpx

from app.config import settings
from app.models.contracts import InventoryItem, Run
from app.phases.runner import ProgressSink
from app.phases.services import PhaseServices
from app.tools.executor import DefaultToolExecutor
from app.tools.inventory import InMemoryInventoryStore
from app.utils.cancellation import CancellationToken
from app.utils.search import BraveSearch
from app.utils.tracing import wrap_anthropic
from app.workflows.events import RunEventBroker
from app.workflows.planning_run import PlanningRunCoordinator
from app.workflows.run_store import RunStore

_store: RunStore | None = None
_broker: RunEventBroker | None = None
_coordinator: PlanningRunCoordinator | None = None
_http_client: httpx.AsyncClient | None = None
_anthropic_client: anthropic.AsyncAnthropic | None = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(follow_redirects=True)
    return _http_client


def get_anthropic_client() -> anthropic.AsyncAnthropic:
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = wrap_anthropic(anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key))
    return _anthropic_client


def build_phase_services(
    run: Run,
    token: CancellationToken,
    progress: ProgressSink,
    inventory: Sequence[InventoryItem],
) -> PhaseServices:
    """Wire the real Anthropic, Brave and inventory collaborators for one run."""
    http_client = get_http_client()
    inventory_store = InMemoryInventoryStore(inventory)
    search = BraveSearch(http_client, settings.brave_search_api_key)
    return PhaseServices(
        client=get_anthropic_client(),
        executor=DefaultToolExecutor(search, inventory_store, run.location),
        cancel_token=token,
        progress=progress,
        run_id=run.id,
        inventory=inventory_store,
        http_client=http_client,
        brave_api_key=settings.brave_search_api_key,
    )


def get_store() -> RunStore:
    global _store
    if _store is None:
        _store = RunStore()
    return _store


def get_broker() -> RunEventBroker:
    global _broker
    if _broker is None:
        _broker = RunEventBroker()
    return _broker


def get_coordinator() -> PlanningRunCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = PlanningRunCoordinator(get_store(), get_broker(), build_phase_services)
    return _coordinator


def set_coordinator(coordinator: PlanningRunCoordinator) -> None:
    global _coordinator, _store
    _coordinator = coordinator
    _store = coordinator.store


def reset_state() -> None:
    global _store, _broker, _coordinator
    _store = None
    _broker = None
    _coordinator = None


async def close_clients() -> None:
    global _http_client, _anthropic_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
    _anthropic_client = None
