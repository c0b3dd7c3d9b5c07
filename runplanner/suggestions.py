"""
External layout suggestions.

An out-of-process optimizer proposes a run list in the slot-assignment
shape. The proposal is rebuilt through the same metrics and scoring as the
local candidates and merged into the ranked list under the reserved id
``ai-computed``. Any failure of the suggestion source leaves the local
candidates untouched.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import pydantic
import requests

from .config import settings
from .errors import RateLimitError, RemoteAPIError, RemoteServiceError, RemoteTimeoutError
from .geometry import derive_slot_config
from .metrics import validate_layout
from .models import (
    DielineGeometry,
    Item,
    LayoutOption,
    OptimizationWeights,
    ProposedRun,
    SlotAssignment,
    SuggestionConstraints,
    SuggestionRequest,
    SuggestionResponse,
)
from .packing import build_run
from .planner import build_layout_option
from .scoring import DEFAULT_POLICY, ScoringPolicy, rank_options

logger = logging.getLogger(__name__)

AI_OPTION_ID = "ai-computed"

RATE_LIMIT_NOTICE = "Layout suggestions are temporarily unavailable (rate limit or quota). Showing local layouts."
FAILURE_NOTICE = "Layout suggestion failed. Showing local layouts only."


class SuggestionService(ABC):
    """Abstract source of externally computed layouts."""

    @abstractmethod
    async def suggest(self, request: SuggestionRequest) -> SuggestionResponse:
        """Return a proposed run list.

        Raises:
            RateLimitError: If the service refuses for rate or quota reasons.
            RemoteTimeoutError: If the service does not answer in time.
            RemoteAPIError: For any other failure or an unreadable answer.
        """
        ...


class HttpSuggestionService(SuggestionService):
    """Suggestion service reached over HTTP with requests."""

    def __init__(
        self,
        base_url: str = settings.suggestion_url,
        api_key: str = settings.api_key,
        timeout_s: float = settings.suggestion_timeout_s,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _check_response(self, resp: requests.Response) -> None:
        if resp.status_code == 429:
            raise RateLimitError("Suggestion rate limit exceeded")
        if resp.status_code == 402:
            raise RateLimitError("Suggestion credits exhausted")
        if resp.status_code >= 400:
            raise RemoteAPIError(f"Suggestion service error {resp.status_code}: {resp.text[:200]}")

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.post(
                f"{self.base_url}/v1/suggest",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout_s,
            )
        except requests.Timeout as exc:
            raise RemoteTimeoutError(f"Suggestion service timed out after {self.timeout_s}s") from exc
        except requests.RequestException as exc:
            raise RemoteAPIError(f"Suggestion service unreachable: {exc}") from exc
        self._check_response(resp)
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteAPIError("Suggestion service returned invalid JSON") from exc

    async def suggest(self, request: SuggestionRequest) -> SuggestionResponse:
        data = await asyncio.to_thread(self._post, request.model_dump(mode="json"))
        # some deployments wrap the payload as {"success": true, "suggestion": {...}}
        if isinstance(data, dict) and isinstance(data.get("suggestion"), dict):
            data = data["suggestion"]
        try:
            return SuggestionResponse.model_validate(data)
        except pydantic.ValidationError as exc:
            raise RemoteAPIError(f"Malformed suggestion: {exc.error_count()} errors") from exc


@dataclass
class MergeOutcome:
    options: List[LayoutOption]
    selected_id: Optional[str]
    notice: Optional[str] = None
    merged: bool = False


def rebuild_suggestion(
    suggestion: SuggestionResponse,
    items: Sequence[Item],
    dieline: DielineGeometry,
    weights: OptimizationWeights,
    policy: ScoringPolicy = DEFAULT_POLICY,
    qty_per_roll: Optional[int] = None,
) -> LayoutOption:
    """Recompute frames, meters and scores for an external run list.

    Empty runs are dropped and the rest renumbered from 1.

    Raises:
        RemoteAPIError: If the proposal does not cover every item exactly or
            does not fit the dieline's slot grid.
    """
    config = derive_slot_config(dieline)
    rotation = {item.id: item.needs_rotation for item in items}
    runs: List[ProposedRun] = []
    for proposed in suggestion.runs:
        if not proposed.slot_assignments:
            continue
        assignments = [
            SlotAssignment(
                slot_index=slot.slot_index,
                item_id=slot.item_id,
                quantity_in_slot=slot.quantity_in_slot,
                needs_rotation=slot.needs_rotation or rotation.get(slot.item_id, False),
            )
            for slot in proposed.slot_assignments
        ]
        runs.append(build_run(len(runs) + 1, assignments, config, qty_per_roll, settings.roll_tolerance))

    problems = validate_layout(runs, items, config.total_slots)
    if not runs:
        problems.append("suggestion contains no runs")
    if problems:
        raise RemoteAPIError("Suggestion rejected: " + "; ".join(problems))

    reasoning = suggestion.overall_reasoning or None
    if reasoning and suggestion.estimated_waste_percent is not None:
        reasoning = f"{reasoning} (estimated waste {suggestion.estimated_waste_percent:.1f}%)"
    return build_layout_option(
        AI_OPTION_ID,
        runs,
        items,
        config,
        weights,
        policy,
        qty_per_roll,
        strategy="suggested",
        reasoning=reasoning,
    )


def merge_suggestion(
    candidates: Sequence[LayoutOption],
    selected_id: Optional[str],
    external: LayoutOption,
) -> MergeOutcome:
    """Insert ``external`` replacing any earlier suggestion and re-rank.

    The suggestion becomes the selection when it scores at least as high as
    the current selection; ties go to the suggestion.
    """
    local = [opt for opt in candidates if opt.id != AI_OPTION_ID]
    options = rank_options(local + [external])

    current = next((opt for opt in local if opt.id == selected_id), None)
    if current is None or external.overall_score >= current.overall_score:
        selected = AI_OPTION_ID
    else:
        selected = current.id
    return MergeOutcome(options=options, selected_id=selected, merged=True)


def apply_suggestion(
    suggestion: SuggestionResponse,
    candidates: Sequence[LayoutOption],
    selected_id: Optional[str],
    items: Sequence[Item],
    dieline: DielineGeometry,
    weights: OptimizationWeights,
    policy: ScoringPolicy = DEFAULT_POLICY,
    qty_per_roll: Optional[int] = None,
) -> MergeOutcome:
    try:
        external = rebuild_suggestion(suggestion, items, dieline, weights, policy, qty_per_roll)
    except RemoteAPIError as exc:
        logger.warning("discarding external suggestion: %s", exc)
        return MergeOutcome(options=list(candidates), selected_id=selected_id, notice=FAILURE_NOTICE)
    return merge_suggestion(candidates, selected_id, external)


async def fetch_and_merge(
    service: SuggestionService,
    candidates: Sequence[LayoutOption],
    selected_id: Optional[str],
    items: Sequence[Item],
    dieline: DielineGeometry,
    weights: Optional[OptimizationWeights] = None,
    max_overrun: Optional[float] = None,
    qty_per_roll: Optional[int] = None,
    policy: ScoringPolicy = DEFAULT_POLICY,
) -> MergeOutcome:
    """Ask the suggestion service and fold its answer in; degrade to local candidates on failure."""
    weights = weights or OptimizationWeights()
    if max_overrun is None:
        max_overrun = settings.default_max_overrun
    request = SuggestionRequest(
        items=list(items),
        dieline=dieline,
        constraints=SuggestionConstraints(max_overrun=max_overrun),
    )
    try:
        suggestion = await service.suggest(request)
    except RateLimitError as exc:
        logger.warning("suggestion service rate limited: %s", exc)
        return MergeOutcome(options=list(candidates), selected_id=selected_id, notice=RATE_LIMIT_NOTICE)
    except RemoteServiceError as exc:
        logger.warning("suggestion service failed: %s", exc)
        return MergeOutcome(options=list(candidates), selected_id=selected_id, notice=FAILURE_NOTICE)

    return apply_suggestion(
        suggestion, candidates, selected_id, items, dieline, weights, policy, qty_per_roll
    )
