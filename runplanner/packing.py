"""Run proposer: packs item quantities into slots across production runs.

Every strategy keeps two rules. Each item occupies at most one slot per run,
and across all runs an item's slot quantities add up to exactly its required
quantity. A run prints for as many frames as its heaviest slot needs, so the
lighter slots overrun; an item only joins a run when that overrun stays within
``max_overrun`` on top of the unavoidable rounding to a whole frame.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import settings
from .errors import TimeoutError
from .geometry import frames_for_quantity, is_degenerate, meters_for_frames
from .models import Item, ProposedRun, SlotAssignment, SlotConfig
from .rolls import needs_rewinding, plan_roll_splits


logger = logging.getLogger(__name__)

OVERRUN_EPSILON = 1e-9


@dataclass
class _Entry:
    item: Item
    quantity: int


def produced_per_slot(frames: int, config: SlotConfig) -> int:
    return frames * config.labels_per_slot_per_frame


def slot_fits(quantity: int, frames: int, config: SlotConfig, max_overrun: float) -> bool:
    """Whether a slot of ``quantity`` labels may print for ``frames`` frames."""
    produced = produced_per_slot(frames, config)
    own = produced_per_slot(frames_for_quantity(quantity, config), config)
    allowed = max(float(own), quantity * (1.0 + max_overrun))
    return produced <= allowed + OVERRUN_EPSILON


def build_run(
    run_number: int,
    assignments: List[SlotAssignment],
    config: SlotConfig,
    qty_per_roll: Optional[int] = None,
    roll_tolerance: int = settings.roll_tolerance,
) -> ProposedRun:
    """Derive frames, meters and roll checks for one run from its slots."""
    heaviest = max((a.quantity_in_slot for a in assignments), default=0)
    frames = frames_for_quantity(heaviest, config)
    per_roll = produced_per_slot(frames, config)
    return ProposedRun(
        run_number=run_number,
        slot_assignments=assignments,
        frames=frames,
        meters=meters_for_frames(frames, config),
        labels_per_output_roll=per_roll,
        needs_rewinding=needs_rewinding(per_roll, qty_per_roll, roll_tolerance),
        roll_splits=plan_roll_splits(per_roll, qty_per_roll, roll_tolerance),
    )


def _sorted_by_quantity(items: Sequence[Item]) -> List[Item]:
    order = {item.id: idx for idx, item in enumerate(items)}
    return sorted(items, key=lambda it: (-it.required_quantity, order[it.id]))


def ganged_runs(items: Sequence[Item], config: SlotConfig, max_overrun: float) -> List[List[_Entry]]:
    """First-fit decreasing: whole items ganged with others of similar quantity."""
    runs: List[List[_Entry]] = []
    for item in _sorted_by_quantity(items):
        qty = item.required_quantity
        for run in runs:
            if len(run) >= config.total_slots:
                continue
            # the head of each run is its heaviest slot
            frames = frames_for_quantity(run[0].quantity, config)
            if slot_fits(qty, frames, config, max_overrun):
                run.append(_Entry(item, qty))
                break
        else:
            runs.append([_Entry(item, qty)])
    return runs


def balanced_runs(items: Sequence[Item], config: SlotConfig, max_overrun: float) -> List[List[_Entry]]:
    """Quantity splitting: each run prints the smallest ganged quantity for every slot.

    Larger items fill their slot exactly and carry the remainder to a later
    run, so overrun is limited to rounding the smallest slot to a whole frame.
    """
    remaining: Dict[str, int] = {item.id: item.required_quantity for item in items}
    by_id = {item.id: item for item in items}
    order = {item.id: idx for idx, item in enumerate(items)}
    runs: List[List[_Entry]] = []

    while any(qty > 0 for qty in remaining.values()):
        active = sorted(
            (item_id for item_id, qty in remaining.items() if qty > 0),
            key=lambda item_id: (-remaining[item_id], order[item_id]),
        )
        gang = active[: config.total_slots]
        target = min(remaining[item_id] for item_id in gang)
        cap = produced_per_slot(frames_for_quantity(target, config), config)

        run: List[_Entry] = []
        for item_id in gang:
            qty = min(remaining[item_id], cap)
            remaining[item_id] -= qty
            run.append(_Entry(by_id[item_id], qty))
        runs.append(run)
    return runs


def individual_runs(items: Sequence[Item], config: SlotConfig, max_overrun: float) -> List[List[_Entry]]:
    return [[_Entry(item, item.required_quantity)] for item in items]


Strategy = Callable[[Sequence[Item], SlotConfig, float], List[List[_Entry]]]

STRATEGIES: List[Tuple[str, Strategy]] = [
    ("ganged", ganged_runs),
    ("balanced", balanced_runs),
    ("individual", individual_runs),
]


def _to_runs(
    grouped: List[List[_Entry]],
    config: SlotConfig,
    qty_per_roll: Optional[int],
    roll_tolerance: int,
) -> List[ProposedRun]:
    runs: List[ProposedRun] = []
    for idx, entries in enumerate(grouped, start=1):
        assignments = [
            SlotAssignment(
                slot_index=slot,
                item_id=entry.item.id,
                quantity_in_slot=entry.quantity,
                needs_rotation=entry.item.needs_rotation,
            )
            for slot, entry in enumerate(entries)
        ]
        runs.append(build_run(idx, assignments, config, qty_per_roll, roll_tolerance))
    return runs


def _run_set_key(runs: List[ProposedRun]) -> Tuple:
    return tuple(
        tuple(sorted((a.item_id, a.quantity_in_slot) for a in run.slot_assignments))
        for run in runs
    )


def propose_runs(
    items: Sequence[Item],
    config: SlotConfig,
    max_overrun: float = settings.default_max_overrun,
    qty_per_roll: Optional[int] = None,
    roll_tolerance: int = settings.roll_tolerance,
    strategy: str = "ganged",
) -> List[ProposedRun]:
    """Runs for a single named strategy; empty for no items or a degenerate config."""
    if not items or is_degenerate(config):
        return []
    strategies = dict(STRATEGIES)
    if strategy not in strategies:
        raise ValueError(f"unknown packing strategy {strategy!r}")
    grouped = strategies[strategy](items, config, max_overrun)
    return _to_runs(grouped, config, qty_per_roll, roll_tolerance)


def propose_candidates(
    items: Sequence[Item],
    config: SlotConfig,
    max_overrun: float = settings.default_max_overrun,
    qty_per_roll: Optional[int] = None,
    roll_tolerance: int = settings.roll_tolerance,
    deadline: Optional[float] = None,
) -> List[Tuple[str, List[ProposedRun]]]:
    """Run sets from every strategy, dropping ones identical to an earlier strategy.

    ``deadline`` is a ``time.monotonic()`` instant checked before each strategy.
    """
    if not items or is_degenerate(config):
        return []

    candidates: List[Tuple[str, List[ProposedRun]]] = []
    seen = set()
    for name, fn in STRATEGIES:
        if deadline is not None and time.monotonic() > deadline:
            raise TimeoutError()
        runs = _to_runs(fn(items, config, max_overrun), config, qty_per_roll, roll_tolerance)
        key = _run_set_key(runs)
        if key in seen:
            logger.debug("strategy %s duplicates an earlier candidate", name)
            continue
        seen.add(key)
        candidates.append((name, runs))
    return candidates
