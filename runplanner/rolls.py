"""Finished-roll checks: rewinding detection and roll split plans."""

from typing import List, Optional

from .models import RollSplit


def needs_rewinding(labels_per_roll: int, qty_per_roll: Optional[int], tolerance: int) -> bool:
    """True when a produced roll falls short of the requested finished roll."""
    if qty_per_roll is None:
        return False
    return labels_per_roll < qty_per_roll - tolerance


def _fill_first(total: int, qty_per_roll: int, tolerance: int) -> List[int]:
    rolls: List[int] = []
    remaining = total
    while remaining > 0:
        count = min(qty_per_roll, remaining)
        rolls.append(count)
        remaining -= count
    # a tiny tail roll is wound onto the previous one
    if len(rolls) >= 2 and rolls[-1] <= tolerance:
        tail = rolls.pop()
        rolls[-1] += tail
    return rolls


def _even(total: int, roll_count: int) -> List[int]:
    base, extra = divmod(total, roll_count)
    return [base + (1 if i < extra else 0) for i in range(roll_count)]


def plan_roll_splits(labels_per_roll: int, qty_per_roll: Optional[int], tolerance: int) -> List[RollSplit]:
    """Split plans for an output roll longer than the requested finished roll.

    Returns an empty list when no split is needed. The even plan keeps the
    fill-first roll count and is only offered when it differs from it.
    """
    if qty_per_roll is None or qty_per_roll <= 0:
        return []
    if labels_per_roll <= qty_per_roll + tolerance:
        return []

    fill_first = _fill_first(labels_per_roll, qty_per_roll, tolerance)
    splits = [RollSplit(strategy="fill_first", rolls=fill_first)]

    even = _even(labels_per_roll, len(fill_first))
    if even[0] != fill_first[0]:
        splits.append(RollSplit(strategy="even", rolls=even))
    return splits
