"""Planner contract models.

Every phase output, run record, stream event and API body lives here so the
phases, the coordinator and the HTTP layer agree on one shape. Field names are
snake_case on the wire.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


# === Shared Types ===

PhaseName = Literal["research", "design", "sourcing", "report"]
PHASE_ORDER: tuple[PhaseName, ...] = ("research", "design", "sourcing", "report")

RunStatus = Literal["pending", "running", "completed", "error", "cancelled"]
PhaseStatus = Literal["pending", "running", "completed", "error", "skipped"]
ProgressStatus = Literal["started", "tool_call", "thinking", "completed", "error"]

BudgetLevel = Literal["budget", "mid-range", "premium"]
ExperienceLevel = Literal["beginner", "intermediate", "advanced"]
PriceConfidence = Literal["high", "medium", "low"]
PRICE_CONFIDENCE: tuple[PriceConfidence, ...] = ("high", "medium", "low")
SectionType = Literal["overview", "plan", "materials", "cost", "resources"]
SECTION_TYPES: tuple[SectionType, ...] = ("overview", "plan", "materials", "cost", "resources")


class Location(BaseModel):
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=50)
    zip_code: str | None = Field(default=None, max_length=10)


class Preferences(BaseModel):
    budget_level: BudgetLevel = "mid-range"
    experience_level: ExperienceLevel = "intermediate"
    timeframe: str | None = None


class InventoryItem(BaseModel):
    """One thing the user already owns."""

    item_name: str = Field(min_length=1)
    category: str = "general"
    quantity: int = Field(default=1, ge=1)
    condition: str = "good"


# === Research ===


class ResearchOutput(BaseModel):
    building_codes: str = ""
    local_codes: str = ""
    permit_requirements: str = ""
    best_practices: str = ""
    common_pitfalls: str = ""
    safety_warnings: list[str] = []
    pro_required: bool = False
    pro_required_reason: str | None = None


# === Design ===


class ProjectStep(BaseModel):
    order: int = 0
    title: str = ""
    description: str = ""
    estimated_time: str = ""
    skill_level: str = "beginner"
    safety_notes: list[str] | None = None
    inspection_required: bool = False


class DesignMaterial(BaseModel):
    name: str
    quantity: str = "1"
    category: str = "general"
    estimated_price: float = 0.0  # per unit
    required: bool = True
    notes: str | None = None


class DesignTool(BaseModel):
    name: str
    category: str = "general"
    required: bool = True
    estimated_price: float | None = None
    notes: str | None = None


class DesignVideo(BaseModel):
    title: str = ""
    url: str = ""
    channel: str = ""
    description: str = ""


class DesignOutput(BaseModel):
    approach: str = ""
    steps: list[ProjectStep] = []
    materials: list[DesignMaterial] = []
    tools: list[DesignTool] = []
    estimated_duration: str = "TBD"
    skill_level: str = "intermediate"
    videos: list[DesignVideo] = []
    alternative_approaches: str | None = None


# === Sourcing ===


class PricedMaterial(BaseModel):
    name: str
    quantity: str = "1"
    category: str = "general"
    estimated_price: float = 0.0
    best_price: float | None = None
    best_store: str | None = None
    product_url: str | None = None
    required: bool = True
    price_confidence: PriceConfidence = "low"
    price_note: str | None = None


class OwnedItem(BaseModel):
    material_name: str
    owned_as: str
    category: str = "general"


class StoreSummary(BaseModel):
    store: str
    item_count: int = 0
    total_price: float = 0.0


class SourcingOutput(BaseModel):
    priced_materials: list[PricedMaterial] = []
    owned_items: list[OwnedItem] = []
    store_summary: list[StoreSummary] = []
    materials_total: float = 0.0
    tools_total: float = 0.0
    total_estimate: float = 0.0
    savings_from_inventory: float = 0.0


# === Report ===


class ReportSection(BaseModel):
    id: str
    title: str
    content: str  # markdown
    order: int
    type: SectionType = "overview"


class ReportOutput(BaseModel):
    id: str
    title: str
    sections: list[ReportSection] = []
    summary: str = ""
    total_cost: float = 0.0
    generated_at: datetime = Field(default_factory=utc_now)


# === Run Records ===


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class ToolCallLog(BaseModel):
    tool: str
    input: dict = {}
    duration_ms: int = 0
    success: bool = True
    error: str | None = None


class PhaseRecord(BaseModel):
    """Execution record of one phase within a run.

    Once completed it is only touched again for retry bookkeeping.
    """

    phase: PhaseName
    status: PhaseStatus = "pending"
    input_snapshot: dict | None = None
    output_snapshot: dict | None = None
    tool_calls: list[ToolCallLog] = []
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    retry_count: int = 0
    duration_ms: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class Run(BaseModel):
    id: str
    project_description: str
    location: Location
    preferences: Preferences = Field(default_factory=Preferences)
    status: RunStatus = "pending"
    current_phase: PhaseName | None = None
    error_message: str | None = None
    report_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class ReportRecord(BaseModel):
    """A generated report. Content is immutable; sharing only toggles the token."""

    id: str
    run_id: str
    report: ReportOutput
    version: int = 1
    share_token: str | None = None
    share_enabled: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class RunContext(BaseModel):
    """Read-only snapshot handed to each phase.

    The coordinator derives the next snapshot with model_copy(update=...)
    after a phase completes; phases never modify it.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    project_description: str
    location: Location
    preferences: Preferences = Field(default_factory=Preferences)
    inventory: tuple[InventoryItem, ...] = ()
    research: ResearchOutput | None = None
    design: DesignOutput | None = None
    sourcing: SourcingOutput | None = None
    report: ReportOutput | None = None


# === Stream Events ===


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    run_id: str
    phase: PhaseName
    phase_status: ProgressStatus
    message: str
    detail: str | None = None
    overall_progress: int = Field(ge=0, le=100)


class ApiCost(BaseModel):
    total_tokens: int
    estimated_cost: float


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    run_id: str
    report_id: str
    summary: str
    total_cost: float
    report: ReportOutput | None = None
    api_cost: ApiCost | None = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    run_id: str
    phase: PhaseName | None = None
    message: str
    recoverable: bool


class HeartbeatEvent(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"
    run_id: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    run_id: str


RunEvent = Annotated[
    ProgressEvent | CompleteEvent | ErrorEvent | HeartbeatEvent | DoneEvent,
    Field(discriminator="type"),
]


# === API Request/Response ===


class StartRunRequest(BaseModel):
    project_description: str = Field(min_length=10, max_length=2000)
    location: Location
    preferences: Preferences = Field(default_factory=Preferences)
    inventory: list[InventoryItem] = []


class RunDetailResponse(BaseModel):
    run: Run
    phases: list[PhaseRecord]
    report: ReportOutput | None = None


class ActionResponse(BaseModel):
    success: bool
    message: str


class ShareResponse(BaseModel):
    share_token: str
    share_enabled: bool


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool = False
