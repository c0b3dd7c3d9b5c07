from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .config import settings
from .errors import ValidationError
from .geometry import derive_slot_config, validate_dieline
from .metrics import estimate_production_time, measure_layout
from .models import (
    Artifacts,
    DielineGeometry,
    Item,
    LayoutOption,
    OptimizationWeights,
    PlanRequest,
    PlanResponse,
    ProposedRun,
    SlotConfig,
)
from .packing import propose_candidates
from .scoring import DEFAULT_POLICY, ScoringPolicy, rank_options, score_layout
from .svg import render_svg


logger = logging.getLogger(__name__)

STRATEGY_NOTES = {
    "ganged": "Items with similar quantities ganged into shared runs",
    "balanced": "Quantities split across runs so ganged slots print the same length",
    "individual": "Each item on its own run for full quantity control",
}


def _validate_inputs(items: Sequence[Item], dieline: Optional[DielineGeometry]) -> None:
    if not items:
        raise ValidationError("items must not be empty")
    if len(items) > settings.max_items:
        raise ValidationError("items length exceeds limit")
    ids = [item.id for item in items]
    if len(set(ids)) != len(ids):
        raise ValidationError("item ids must be unique")
    if dieline is None:
        raise ValidationError("dieline is required")
    validate_dieline(dieline)


def generate_reasoning(runs: Sequence[ProposedRun], items: Sequence[Item], material: float, strategy: Optional[str] = None) -> str:
    total_labels = sum(item.required_quantity for item in items)
    total_meters = sum(run.meters for run in runs)
    total_frames = sum(run.frames for run in runs)

    parts: List[str] = []
    if strategy in STRATEGY_NOTES:
        parts.append(STRATEGY_NOTES[strategy])
    plural = "" if len(runs) == 1 else "s"
    parts.append(f"{len(runs)} run{plural} printing {total_labels:,} labels")
    parts.append(f"{total_meters:.1f}m of substrate ({total_frames} frames)")

    if material >= 0.9:
        parts.append("Excellent material utilization")
    elif material >= 0.75:
        parts.append("Good material efficiency")
    else:
        parts.append("Some material waste expected")

    rewinding = sum(1 for run in runs if run.needs_rewinding)
    if rewinding:
        parts.append(f"{rewinding} run{'' if rewinding == 1 else 's'} need rewinding")
    return ". ".join(parts) + "."


def build_layout_option(
    option_id: str,
    runs: List[ProposedRun],
    items: Sequence[Item],
    config: SlotConfig,
    weights: OptimizationWeights,
    policy: ScoringPolicy = DEFAULT_POLICY,
    qty_per_roll: Optional[int] = None,
    strategy: Optional[str] = None,
    reasoning: Optional[str] = None,
) -> LayoutOption:
    """Measure and score one run set; every candidate goes through here."""
    metrics = measure_layout(runs, items, config)
    option = LayoutOption(
        id=option_id,
        strategy=strategy,
        runs=runs,
        total_meters=metrics.total_meters,
        total_frames=metrics.total_frames,
        total_waste_meters=metrics.total_waste_meters,
        material_efficiency_score=0.0,
        print_efficiency_score=0.0,
        labor_efficiency_score=0.0,
        overall_score=0.0,
        estimated_minutes=estimate_production_time(runs),
    )
    option = score_layout(option, weights, policy, qty_per_roll)
    if reasoning is None:
        reasoning = generate_reasoning(runs, items, option.material_efficiency_score, strategy)
    return option.model_copy(update={"reasoning": reasoning})


def generate_layout_options(
    items: Sequence[Item],
    dieline: DielineGeometry,
    weights: Optional[OptimizationWeights] = None,
    max_overrun: Optional[float] = None,
    qty_per_roll: Optional[int] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
    deadline: Optional[float] = None,
) -> List[LayoutOption]:
    """Ranked local candidates, best first. Empty when nothing can be packed."""
    weights = weights or OptimizationWeights()
    if max_overrun is None:
        max_overrun = settings.default_max_overrun
    config = derive_slot_config(dieline)

    proposals = propose_candidates(
        items, config, max_overrun, qty_per_roll, settings.roll_tolerance, deadline=deadline
    )
    options = [
        build_layout_option(
            str(idx),
            runs,
            items,
            config,
            weights,
            policy,
            qty_per_roll,
            strategy=name,
        )
        for idx, (name, runs) in enumerate(proposals, start=1)
    ]
    return rank_options(options)


def plan_layouts(
    req: PlanRequest,
    policy: ScoringPolicy = DEFAULT_POLICY,
    deadline: Optional[float] = None,
) -> PlanResponse:
    _validate_inputs(req.items, req.dieline)
    dieline = req.dieline
    config = derive_slot_config(dieline)

    options = generate_layout_options(
        req.items,
        dieline,
        weights=req.weights,
        max_overrun=req.max_overrun,
        qty_per_roll=req.qty_per_roll,
        policy=policy,
        deadline=deadline,
    )
    selected = options[0] if options else None
    logger.info(
        "planned %d candidate layouts for %d items, best=%s",
        len(options),
        len(req.items),
        selected.id if selected else None,
    )

    metrics = measure_layout([], req.items, config)
    return PlanResponse(
        status="ok",
        slot_config=config,
        theoretical_min_frames=metrics.theoretical_min_frames,
        theoretical_min_meters=metrics.theoretical_min_meters,
        options=options,
        selected_id=selected.id if selected else None,
        artifacts=Artifacts(svg=render_svg(selected, dieline)),
    )
