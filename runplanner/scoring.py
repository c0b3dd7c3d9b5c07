"""Multi-objective scoring of candidate layouts.

Sub-scores are material (waste against the theoretical minimum), print
(press setups per run) and labor (changeovers per run, minus a penalty for
runs that need manual rewinding). The overall score is their weighted sum.
Weights are compared across candidates only, so they need not sum to 1.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .config import settings
from .models import LayoutOption, OptimizationWeights


@dataclass(frozen=True)
class ScoringPolicy:
    print_run_decay: float = settings.print_run_decay
    labor_run_decay: float = settings.labor_run_decay
    rewind_penalty: float = settings.rewind_penalty

    @classmethod
    def from_settings(cls) -> "ScoringPolicy":
        return cls(
            print_run_decay=settings.print_run_decay,
            labor_run_decay=settings.labor_run_decay,
            rewind_penalty=settings.rewind_penalty,
        )


DEFAULT_POLICY = ScoringPolicy()


def material_efficiency(waste_meters: float, total_meters: float) -> float:
    if total_meters <= 0:
        return 0.0
    return max(0.0, 1.0 - waste_meters / total_meters)


def print_efficiency(run_count: int, policy: ScoringPolicy = DEFAULT_POLICY) -> float:
    return 1.0 / (1.0 + policy.print_run_decay * run_count)


def labor_efficiency(
    run_count: int,
    rewinding_fraction: float = 0.0,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> float:
    score = 1.0 / (1.0 + policy.labor_run_decay * run_count)
    if rewinding_fraction > 0:
        score = max(0.0, score - policy.rewind_penalty * rewinding_fraction)
    return score


def overall_score(material: float, print_: float, labor: float, weights: OptimizationWeights) -> float:
    return weights.material * material + weights.print * print_ + weights.labor * labor


def score_layout(
    option: LayoutOption,
    weights: OptimizationWeights,
    policy: ScoringPolicy = DEFAULT_POLICY,
    qty_per_roll: Optional[int] = None,
) -> LayoutOption:
    """Return a copy of ``option`` with all four scores recomputed."""
    run_count = len(option.runs)
    rewinding_fraction = 0.0
    if qty_per_roll is not None and run_count > 0:
        rewinding_fraction = sum(1 for run in option.runs if run.needs_rewinding) / run_count

    material = material_efficiency(option.total_waste_meters, option.total_meters)
    print_ = print_efficiency(run_count, policy)
    labor = labor_efficiency(run_count, rewinding_fraction, policy)
    return option.model_copy(
        update={
            "material_efficiency_score": material,
            "print_efficiency_score": print_,
            "labor_efficiency_score": labor,
            "overall_score": overall_score(material, print_, labor, weights),
        }
    )


def rank_options(options: Sequence[LayoutOption]) -> List[LayoutOption]:
    """Highest score first; equal scores keep a stable order by id."""
    return sorted(options, key=lambda opt: (-opt.overall_score, opt.id))
