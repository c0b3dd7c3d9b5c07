"""Layout metrics: frames, meters and waste against the theoretical minimum."""

from dataclasses import dataclass
import math
from typing import Dict, List, Optional, Sequence

from .config import settings
from .geometry import meters_for_frames
from .models import Item, LayoutOption, ProposedRun, SlotConfig


@dataclass(frozen=True)
class LayoutMetrics:
    total_meters: float
    total_frames: int
    total_waste_meters: float
    theoretical_min_frames: int
    theoretical_min_meters: float
    run_count: int
    rewinding_runs: int


def theoretical_min_frames(items: Sequence[Item], config: SlotConfig) -> int:
    total = sum(item.required_quantity for item in items)
    return math.ceil(total / config.labels_per_frame)


def theoretical_min_meters(items: Sequence[Item], config: SlotConfig) -> float:
    return meters_for_frames(theoretical_min_frames(items, config), config)


def measure_layout(runs: Sequence[ProposedRun], items: Sequence[Item], config: SlotConfig) -> LayoutMetrics:
    min_frames = theoretical_min_frames(items, config)
    min_meters = meters_for_frames(min_frames, config)
    total_meters = sum(run.meters for run in runs)
    return LayoutMetrics(
        total_meters=total_meters,
        total_frames=sum(run.frames for run in runs),
        total_waste_meters=max(0.0, total_meters - min_meters),
        theoretical_min_frames=min_frames,
        theoretical_min_meters=min_meters,
        run_count=len(runs),
        rewinding_runs=sum(1 for run in runs if run.needs_rewinding),
    )


def assigned_quantities(runs: Sequence[ProposedRun]) -> Dict[str, int]:
    totals: Dict[str, int] = {}
    for run in runs:
        for slot in run.slot_assignments:
            totals[slot.item_id] = totals.get(slot.item_id, 0) + slot.quantity_in_slot
    return totals


def slot_problems(run: ProposedRun, total_slots: int) -> List[str]:
    """Slot grid violations of one run against the dieline's column count."""
    errors: List[str] = []
    if len(run.slot_assignments) > total_slots:
        errors.append(
            f"run {run.run_number}: uses {len(run.slot_assignments)} slots but the dieline has {total_slots}"
        )
    seen = set()
    for slot in run.slot_assignments:
        if not 0 <= slot.slot_index < total_slots:
            errors.append(f"run {run.run_number}: slot {slot.slot_index} is outside 0..{total_slots - 1}")
        elif slot.slot_index in seen:
            errors.append(f"run {run.run_number}: slot {slot.slot_index} assigned more than once")
        seen.add(slot.slot_index)
    return errors


def validate_layout(
    runs: Sequence[ProposedRun],
    items: Sequence[Item],
    total_slots: Optional[int] = None,
) -> List[str]:
    """Problems of a run set; an empty list means every item is covered exactly.

    With ``total_slots`` each run is also checked against the slot grid.
    """
    errors: List[str] = []
    totals = assigned_quantities(runs)
    known = set()
    for item in items:
        known.add(item.id)
        label = item.name or item.id
        assigned = totals.get(item.id, 0)
        if assigned < item.required_quantity:
            errors.append(f"{label}: missing {item.required_quantity - assigned} labels")
        elif assigned > item.required_quantity:
            errors.append(f"{label}: over-assigned by {assigned - item.required_quantity} labels")
    for item_id in totals:
        if item_id not in known:
            errors.append(f"{item_id}: not an item of this order")
    for run in runs:
        seen = set()
        for slot in run.slot_assignments:
            if slot.item_id in seen:
                errors.append(f"run {run.run_number}: item {slot.item_id} occupies more than one slot")
            seen.add(slot.item_id)
        if total_slots is not None:
            errors.extend(slot_problems(run, total_slots))
    return errors


def estimate_production_time(runs: Sequence[ProposedRun]) -> int:
    """Minutes of press time: setup, changeovers between runs and printing."""
    if not runs:
        return 0
    total_frames = sum(run.frames for run in runs)
    changeovers = max(0, len(runs) - 1) * settings.changeover_minutes
    printing = total_frames * settings.seconds_per_frame / 60
    return math.ceil(settings.setup_time_minutes + changeovers + printing)


def format_layout_summary(option: LayoutOption) -> str:
    return (
        f"{len(option.runs)} run(s), {option.total_meters:.1f}m total, "
        f"{option.total_waste_meters:.1f}m waste, "
        f"{round(option.overall_score * 100)}% score"
    )
