"""Slot configuration derived from a dieline's physical parameters."""

import math
from typing import List

from .errors import ValidationError
from .models import DielineGeometry, SlotConfig


def derive_slot_config(dieline: DielineGeometry) -> SlotConfig:
    """One slot is one column across the roll, repeated rows_around times per frame."""
    return SlotConfig(
        total_slots=dieline.columns_across,
        labels_per_frame=dieline.columns_across * dieline.rows_around,
        labels_per_slot_per_frame=dieline.rows_around,
        frame_pitch_mm=dieline.label_height + dieline.v_gap,
    )


def meters_for_frames(frames: int, config: SlotConfig) -> float:
    return frames * config.frame_pitch_mm / 1000


def frames_for_quantity(quantity: int, config: SlotConfig) -> int:
    return math.ceil(quantity / config.labels_per_slot_per_frame)


def is_degenerate(config: SlotConfig) -> bool:
    return config.labels_per_frame <= 0 or config.labels_per_slot_per_frame <= 0


def dieline_problems(dieline: DielineGeometry) -> List[str]:
    problems: List[str] = []
    for name in ("roll_width", "label_width", "label_height"):
        if getattr(dieline, name) <= 0:
            problems.append(f"dieline.{name} must be positive")
    for name in ("columns_across", "rows_around"):
        if getattr(dieline, name) <= 0:
            problems.append(f"dieline.{name} must be at least 1")
    return problems


def validate_dieline(dieline: DielineGeometry) -> None:
    problems = dieline_problems(dieline)
    if problems:
        raise ValidationError("Invalid dieline geometry", details={"errors": problems})
