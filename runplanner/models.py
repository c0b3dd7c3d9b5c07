from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .config import settings


class RunStatus(str, Enum):
    PLANNED = "planned"
    IMPOSING = "imposing"
    APPROVED = "approved"
    PRINTING = "printing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def parse_run_status(raw: Optional[str]) -> Optional[RunStatus]:
    """Map a persisted status string onto the known vocabulary, None when unrecognized."""
    if raw is None:
        return None
    try:
        return RunStatus(raw)
    except ValueError:
        return None


class Item(BaseModel):
    id: str
    required_quantity: int = Field(..., gt=0)
    needs_rotation: bool = False
    print_asset_ref: Optional[str] = None
    name: Optional[str] = None

    class Config:
        extra = "forbid"
        frozen = True


class Bleeds(BaseModel):
    left: float = Field(0.0, ge=0)
    right: float = Field(0.0, ge=0)
    top: float = Field(0.0, ge=0)
    bottom: float = Field(0.0, ge=0)

    class Config:
        extra = "forbid"
        frozen = True


class DielineGeometry(BaseModel):
    roll_width: float
    label_width: float
    label_height: float
    columns_across: int
    rows_around: int
    h_gap: float = Field(0.0, ge=0)
    v_gap: float = Field(0.0, ge=0)
    corner_radius: Optional[float] = Field(None, ge=0)
    bleeds: Bleeds = Bleeds()

    class Config:
        extra = "forbid"
        frozen = True


class SlotConfig(BaseModel):
    total_slots: int
    labels_per_frame: int
    labels_per_slot_per_frame: int
    frame_pitch_mm: float

    class Config:
        extra = "forbid"
        frozen = True


class SlotAssignment(BaseModel):
    slot_index: int = Field(..., ge=0)
    item_id: str
    quantity_in_slot: int = Field(..., gt=0)
    needs_rotation: bool = False

    class Config:
        extra = "forbid"


class RollSplit(BaseModel):
    strategy: Literal["fill_first", "even"]
    rolls: List[int]

    class Config:
        extra = "forbid"


class ProposedRun(BaseModel):
    run_number: int
    slot_assignments: List[SlotAssignment]
    frames: int
    meters: float
    labels_per_output_roll: int
    needs_rewinding: bool = False
    roll_splits: List[RollSplit] = []

    class Config:
        extra = "forbid"


class LayoutOption(BaseModel):
    id: str
    strategy: Optional[str] = None
    runs: List[ProposedRun]
    total_meters: float
    total_frames: int
    total_waste_meters: float
    material_efficiency_score: float
    print_efficiency_score: float
    labor_efficiency_score: float
    overall_score: float
    estimated_minutes: int = 0
    reasoning: str = ""

    class Config:
        extra = "forbid"


WEIGHT_KEYS = ("material", "print", "labor")


class OptimizationWeights(BaseModel):
    material: float = Field(settings.weight_material, ge=0)
    print: float = Field(settings.weight_print, ge=0)
    labor: float = Field(settings.weight_labor, ge=0)

    class Config:
        extra = "forbid"
        frozen = True

    def rebalance(self, key: str, value: float) -> "OptimizationWeights":
        """Pin one weight and rescale the other two so all three sum to 1."""
        if key not in WEIGHT_KEYS:
            raise ValueError(f"unknown weight {key!r}")
        value = min(1.0, max(0.0, value))
        remaining = 1.0 - value
        others = [k for k in WEIGHT_KEYS if k != key]
        other_sum = sum(getattr(self, k) for k in others)
        values = {key: value}
        for k in others:
            if other_sum > 0:
                values[k] = getattr(self, k) / other_sum * remaining
            else:
                values[k] = remaining / len(others)
        return OptimizationWeights(**values)


class RunError(BaseModel):
    run_number: int
    run_id: str
    message: str
    skipped: bool = False

    class Config:
        extra = "forbid"


class BatchImposeProgress(BaseModel):
    current_index: int = 0
    total: int = 0
    current_run_number: int = 0
    status: Literal["idle", "imposing", "complete", "error"] = "idle"
    errors: List[RunError] = []
    completed_run_ids: List[str] = []

    class Config:
        extra = "forbid"


class RunRecord(BaseModel):
    id: str
    order_id: str
    run_number: int
    status: str = RunStatus.PLANNED.value
    slot_assignments: List[SlotAssignment]
    meters: Optional[float] = None
    frames: Optional[int] = None
    imposed_url: Optional[str] = None
    imposed_with_dielines_url: Optional[str] = None
    error_annotation: Optional[str] = None

    class Config:
        extra = "forbid"


class ImpositionSlot(BaseModel):
    slot_index: int
    item_id: str
    quantity: int
    needs_rotation: bool
    asset_url: str

    class Config:
        extra = "forbid"


class ImpositionRequest(BaseModel):
    run_id: str
    order_id: str
    dieline_geometry: DielineGeometry
    slot_assignments: List[ImpositionSlot]
    include_dielines: bool = True
    meters_to_print: float = 0.0

    class Config:
        extra = "forbid"


class ImpositionProcessing(BaseModel):
    status: Literal["processing"] = "processing"


class ImpositionCompleted(BaseModel):
    status: Literal["completed"] = "completed"
    imposed_url: Optional[str] = None
    imposed_with_dielines_url: Optional[str] = None


class ImpositionBusy(BaseModel):
    status: Literal["busy"] = "busy"


class ImpositionRejected(BaseModel):
    status: Literal["rejected"] = "rejected"
    error: str


class ImpositionOther(BaseModel):
    status: str
    raw: Dict[str, Any] = {}


ImpositionResponse = Union[
    ImpositionProcessing,
    ImpositionCompleted,
    ImpositionBusy,
    ImpositionRejected,
    ImpositionOther,
]


def parse_imposition_response(data: Dict[str, Any]) -> ImpositionResponse:
    status = data.get("status")
    if status == "processing":
        return ImpositionProcessing()
    if status in ("completed", "complete"):
        return ImpositionCompleted(
            imposed_url=data.get("imposed_url") or data.get("imposed_pdf_url"),
            imposed_with_dielines_url=data.get("imposed_with_dielines_url")
            or data.get("imposed_pdf_with_dielines_url"),
        )
    if status in ("busy", "vps_busy"):
        return ImpositionBusy()
    if data.get("success") is False or status in ("rejected", "failed", "error"):
        return ImpositionRejected(error=str(data.get("error") or "Imposition rejected"))
    return ImpositionOther(status=str(status), raw=data)


class SuggestionConstraints(BaseModel):
    max_overrun: float = Field(..., ge=0)

    class Config:
        extra = "forbid"


class SuggestionRequest(BaseModel):
    items: List[Item]
    dieline: DielineGeometry
    constraints: SuggestionConstraints

    class Config:
        extra = "forbid"


class SuggestedRun(BaseModel):
    run_number: Optional[int] = None
    slot_assignments: List[SlotAssignment]

    class Config:
        extra = "ignore"


class SuggestionResponse(BaseModel):
    runs: List[SuggestedRun]
    overall_reasoning: str = ""
    estimated_waste_percent: Optional[float] = None

    class Config:
        extra = "ignore"


class Artifacts(BaseModel):
    svg: str

    class Config:
        extra = "forbid"


class PlanRequest(BaseModel):
    items: List[Item]
    dieline: Optional[DielineGeometry] = None
    weights: Optional[OptimizationWeights] = None
    max_overrun: Optional[float] = Field(None, ge=0)
    qty_per_roll: Optional[int] = Field(None, gt=0)

    class Config:
        extra = "forbid"


class PlanResponse(BaseModel):
    status: Literal["ok"]
    slot_config: SlotConfig
    theoretical_min_frames: int
    theoretical_min_meters: float
    options: List[LayoutOption]
    selected_id: Optional[str] = None
    artifacts: Artifacts

    class Config:
        extra = "forbid"


class MergeRequest(BaseModel):
    plan: PlanRequest
    candidates: List[LayoutOption]
    selected_id: Optional[str] = None
    suggestion: SuggestionResponse

    class Config:
        extra = "forbid"


class SuggestRequest(BaseModel):
    plan: PlanRequest
    candidates: List[LayoutOption]
    selected_id: Optional[str] = None

    class Config:
        extra = "forbid"


class MergeResponse(BaseModel):
    status: Literal["ok"]
    options: List[LayoutOption]
    selected_id: Optional[str] = None
    notice: Optional[str] = None

    class Config:
        extra = "forbid"


class ImposeRequest(BaseModel):
    runs: List[RunRecord] = Field(..., min_length=1)
    items: List[Item]
    dieline: DielineGeometry
    force: bool = False
    include_dielines: bool = True

    class Config:
        extra = "forbid"


class BatchImposeResult(BaseModel):
    progress: BatchImposeProgress
    skipped_run_ids: List[str] = []
    cancelled: bool = False

    class Config:
        extra = "forbid"


class ErrorResponse(BaseModel):
    status: Literal["error"]
    error_code: str
    message: str
    details: Optional[dict] = None

    class Config:
        extra = "forbid"
