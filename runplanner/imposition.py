"""
Batch imposition of production runs against a remote imposition service.

Runs are submitted strictly one at a time. A submission either completes
synchronously or is accepted for asynchronous processing, in which case the
run's persisted status is polled until it is approved, reset to planned
(rejected) or the polling budget runs out. Failures are written back onto the
run record and counted; enough consecutive failures trip a circuit breaker
that skips the rest of the queue.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import requests

from .assets import AssetResolver, TTLCache, passthrough_signer
from .config import settings
from .errors import ConstraintError, RemoteAPIError, RemoteServiceError, RemoteTimeoutError
from .models import (
    BatchImposeProgress,
    BatchImposeResult,
    DielineGeometry,
    ImpositionBusy,
    ImpositionCompleted,
    ImpositionRejected,
    ImpositionRequest,
    ImpositionResponse,
    ImpositionSlot,
    Item,
    RunError,
    RunRecord,
    RunStatus,
    parse_imposition_response,
    parse_run_status,
)
from .store import RunStore

logger = logging.getLogger(__name__)

ABORT_MESSAGE = "Skipped: batch aborted after consecutive failures"


@dataclass(frozen=True)
class ImposePolicy:
    submit_timeout_s: float = settings.submit_timeout_s
    poll_interval_s: float = settings.poll_interval_s
    max_poll_duration_s: float = settings.max_poll_duration_s
    busy_max_retries: int = settings.busy_max_retries
    busy_retry_delay_s: float = settings.busy_retry_delay_s
    inter_run_delay_s: float = settings.inter_run_delay_s
    max_consecutive_failures: int = settings.max_consecutive_failures

    @classmethod
    def from_settings(cls) -> "ImposePolicy":
        return cls(
            submit_timeout_s=settings.submit_timeout_s,
            poll_interval_s=settings.poll_interval_s,
            max_poll_duration_s=settings.max_poll_duration_s,
            busy_max_retries=settings.busy_max_retries,
            busy_retry_delay_s=settings.busy_retry_delay_s,
            inter_run_delay_s=settings.inter_run_delay_s,
            max_consecutive_failures=settings.max_consecutive_failures,
        )


class ImpositionService(ABC):
    """Remote service that lays out a run's artwork into the press slot grid."""

    @abstractmethod
    async def submit(self, request: ImpositionRequest) -> ImpositionResponse:
        """Submit one run.

        Raises:
            RemoteTimeoutError: If the transport times out.
            RemoteAPIError: If the service cannot be reached.
        """
        ...


class HttpImpositionService(ImpositionService):
    """Imposition service reached over HTTP with requests."""

    def __init__(
        self,
        base_url: str = settings.imposition_url,
        api_key: str = settings.api_key,
        timeout_s: float = settings.submit_timeout_s,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def _post(self, payload: Dict[str, Any]) -> ImpositionResponse:
        try:
            resp = self.session.post(
                f"{self.base_url}/imposition/labels",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout_s,
            )
        except requests.Timeout as exc:
            raise RemoteTimeoutError(f"Imposition service timed out after {self.timeout_s}s") from exc
        except requests.RequestException as exc:
            raise RemoteAPIError(f"Imposition service unreachable: {exc}") from exc

        if resp.status_code == 503:
            return ImpositionBusy()
        if resp.status_code >= 400:
            return ImpositionRejected(error=f"Imposition service error {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteAPIError("Imposition service returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise RemoteAPIError("Imposition service returned an unexpected payload")
        return parse_imposition_response(data)

    async def submit(self, request: ImpositionRequest) -> ImpositionResponse:
        return await asyncio.to_thread(self._post, request.model_dump(mode="json"))


class RunFailed(Exception):
    """One run could not be imposed; the message is shown to the operator."""
    pass


def default_resolver() -> AssetResolver:
    return AssetResolver(passthrough_signer, TTLCache(settings.asset_url_ttl_s, settings.asset_cache_size))


class BatchImposer:
    """Drives the runs of one order through the imposition service, one at a time.

    One instance serves one batch; ``reset()`` must be called before reusing
    it after a batch has finished, and it clears any pending cancel.
    ``cancel()`` is honoured at the next run boundary, including before the
    first run.
    """

    def __init__(
        self,
        service: ImpositionService,
        store: RunStore,
        resolver: Optional[AssetResolver] = None,
        policy: Optional[ImposePolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_progress: Optional[Callable[[BatchImposeProgress], None]] = None,
    ):
        self.service = service
        self.store = store
        self.resolver = resolver or default_resolver()
        self.policy = policy or ImposePolicy.from_settings()
        self._sleep = sleep
        self._clock = clock
        self._on_progress = on_progress
        self._abort = False
        self.progress = BatchImposeProgress()

    @property
    def is_imposing(self) -> bool:
        return self.progress.status == "imposing"

    def cancel(self) -> None:
        self._abort = True

    def reset(self) -> None:
        self._abort = False
        self.progress = BatchImposeProgress()

    def _emit(self) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(self.progress.model_copy(deep=True))
        except Exception:
            logger.exception("progress callback failed")

    async def impose(
        self,
        order_id: str,
        runs: Sequence[RunRecord],
        items: Sequence[Item],
        dieline: DielineGeometry,
        force: bool = False,
        include_dielines: bool = True,
    ) -> BatchImposeResult:
        if self.progress.status != "idle":
            raise ConstraintError("previous batch has not been reset")

        targets = await self._select_targets(runs, force)
        if not targets:
            logger.info("no runs to impose for order %s", order_id)
            self.progress = BatchImposeProgress(status="complete")
            self._emit()
            return BatchImposeResult(progress=self.progress.model_copy(deep=True))

        logger.info(
            "starting imposition batch for order %s: %s",
            order_id,
            ", ".join(f"#{run.run_number} ({run.id})" for run in targets),
        )
        self.progress = BatchImposeProgress(
            total=len(targets),
            current_run_number=targets[0].run_number,
            status="imposing",
        )
        self._emit()

        items_by_id = {item.id: item for item in items}
        consecutive = 0
        attempted = 0
        skipped: List[str] = []
        cancelled = False

        for idx, run in enumerate(targets):
            if self._abort:
                logger.info("batch cancelled before run %d/%d", idx + 1, len(targets))
                cancelled = True
                break

            self.progress.current_index = idx
            self.progress.current_run_number = run.run_number
            attempted += 1
            logger.info("run %d/%d: #%d (%s)", idx + 1, len(targets), run.run_number, run.id)

            try:
                await self._impose_run(order_id, run, items_by_id, dieline, include_dielines)
            except RunFailed as exc:
                consecutive += 1
                await self._record_failure(run, str(exc))
            except Exception as exc:
                logger.exception("unexpected failure imposing run #%d", run.run_number)
                consecutive += 1
                await self._record_failure(run, str(exc) or exc.__class__.__name__)
            else:
                consecutive = 0
                self.progress.completed_run_ids.append(run.id)
                logger.info("run #%d imposed", run.run_number)

            self.progress.current_index = idx + 1
            self._emit()

            if consecutive >= self.policy.max_consecutive_failures:
                rest = targets[idx + 1:]
                logger.error(
                    "%d consecutive failures, skipping %d remaining runs", consecutive, len(rest)
                )
                for pending in rest:
                    self.progress.errors.append(
                        RunError(run_number=pending.run_number, run_id=pending.id, message=ABORT_MESSAGE, skipped=True)
                    )
                    skipped.append(pending.id)
                    await self._annotate(pending.id, ABORT_MESSAGE)
                break

            if idx < len(targets) - 1:
                await self._sleep(self.policy.inter_run_delay_s)

        self.progress.current_index = attempted + len(skipped)
        self.progress.status = "error" if self.progress.errors else "complete"
        self._emit()
        logger.info(
            "batch finished for order %s: %d imposed, %d failed or skipped",
            order_id,
            len(self.progress.completed_run_ids),
            len(self.progress.errors),
        )
        return BatchImposeResult(
            progress=self.progress.model_copy(deep=True),
            skipped_run_ids=skipped,
            cancelled=cancelled,
        )

    async def _select_targets(self, runs: Sequence[RunRecord], force: bool) -> List[RunRecord]:
        ordered = sorted(runs, key=lambda run: run.run_number)
        if not force:
            return [run for run in ordered if run.status == RunStatus.PLANNED.value]
        for run in ordered:
            if run.status != RunStatus.PLANNED.value:
                try:
                    await self.store.reset_run(run.id)
                except RemoteServiceError as exc:
                    logger.warning("could not reset run %s: %s", run.id, exc)
                except Exception:
                    logger.exception("unexpected failure resetting run %s", run.id)
        return ordered

    def build_request(
        self,
        order_id: str,
        run: RunRecord,
        items_by_id: Dict[str, Item],
        dieline: DielineGeometry,
        include_dielines: bool = True,
    ) -> ImpositionRequest:
        slots: List[ImpositionSlot] = []
        for assignment in run.slot_assignments:
            item = items_by_id.get(assignment.item_id)
            if item is None:
                raise RunFailed(f"Item {assignment.item_id} is not part of this order")
            if not item.print_asset_ref:
                raise RunFailed(f"Item {item.name or item.id} has no print-ready artwork")
            slots.append(
                ImpositionSlot(
                    slot_index=assignment.slot_index,
                    item_id=assignment.item_id,
                    quantity=assignment.quantity_in_slot,
                    needs_rotation=assignment.needs_rotation,
                    asset_url=self.resolver.resolve(item.print_asset_ref),
                )
            )
        return ImpositionRequest(
            run_id=run.id,
            order_id=order_id,
            dieline_geometry=dieline,
            slot_assignments=slots,
            include_dielines=include_dielines,
            meters_to_print=run.meters or 0.0,
        )

    async def _impose_run(
        self,
        order_id: str,
        run: RunRecord,
        items_by_id: Dict[str, Item],
        dieline: DielineGeometry,
        include_dielines: bool,
    ) -> None:
        request = self.build_request(order_id, run, items_by_id, dieline, include_dielines)
        response = await self._submit_with_busy_retry(request, run.run_number)

        if isinstance(response, ImpositionCompleted):
            try:
                await self.store.mark_approved(run.id, response.imposed_url, response.imposed_with_dielines_url)
            except RemoteServiceError as exc:
                logger.warning("run %s completed but could not be marked approved: %s", run.id, exc)
            return
        if isinstance(response, ImpositionRejected):
            raise RunFailed(response.error)

        # processing, or a status this client does not know: the persisted run decides
        await self._wait_for_completion(run.id)

    async def _submit(self, request: ImpositionRequest) -> ImpositionResponse:
        timeout = self.policy.submit_timeout_s
        try:
            return await asyncio.wait_for(self.service.submit(request), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise RunFailed(f"Imposition request timed out after {timeout:g}s") from exc
        except RemoteServiceError as exc:
            raise RunFailed(str(exc)) from exc

    async def _submit_with_busy_retry(self, request: ImpositionRequest, run_number: int) -> ImpositionResponse:
        attempts = self.policy.busy_max_retries + 1
        for attempt in range(attempts):
            if attempt > 0:
                logger.info(
                    "run #%d: service busy, retry %d/%d in %gs",
                    run_number,
                    attempt,
                    self.policy.busy_max_retries,
                    self.policy.busy_retry_delay_s,
                )
                await self._sleep(self.policy.busy_retry_delay_s)
            response = await self._submit(request)
            if not isinstance(response, ImpositionBusy):
                return response
        raise RunFailed(f"Imposition service busy after {attempts} attempts")

    async def _wait_for_completion(self, run_id: str) -> None:
        start = self._clock()
        polls = 0
        while self._clock() - start < self.policy.max_poll_duration_s:
            await self._sleep(self.policy.poll_interval_s)
            polls += 1
            try:
                raw = await self.store.get_status(run_id)
            except RemoteServiceError as exc:
                logger.warning("poll #%d for %s failed: %s", polls, run_id, exc)
                continue

            status = parse_run_status(raw)
            logger.debug("poll #%d for %s: status=%s", polls, run_id, raw)
            if status is RunStatus.APPROVED:
                return
            if status is RunStatus.PLANNED:
                raise RunFailed("Imposition rejected by the remote service")

        logger.error("polling timed out for %s after %d polls", run_id, polls)
        raise RunFailed(f"Imposition timed out after {self.policy.max_poll_duration_s:g}s of polling")

    async def _record_failure(self, run: RunRecord, message: str) -> None:
        logger.warning("run #%d failed: %s", run.run_number, message)
        self.progress.errors.append(RunError(run_number=run.run_number, run_id=run.id, message=message))
        try:
            await self.store.mark_failed(run.id, message)
        except RemoteServiceError as exc:
            logger.error("could not persist failure for run %s: %s", run.id, exc)
        except Exception:
            logger.exception("unexpected failure persisting failure for run %s", run.id)

    async def _annotate(self, run_id: str, message: str) -> None:
        try:
            await self.store.annotate(run_id, message)
        except RemoteServiceError as exc:
            logger.error("could not annotate run %s: %s", run_id, exc)
        except Exception:
            logger.exception("unexpected failure annotating run %s", run_id)


class BatchJobs:
    """Background imposition batches keyed by order id, at most one live batch per order."""

    def __init__(self):
        self._imposers: Dict[str, BatchImposer] = {}
        self._tasks: Dict[str, "asyncio.Task[BatchImposeResult]"] = {}

    def is_running(self, order_id: str) -> bool:
        task = self._tasks.get(order_id)
        return task is not None and not task.done()

    def start(
        self,
        order_id: str,
        imposer: BatchImposer,
        runs: Sequence[RunRecord],
        items: Sequence[Item],
        dieline: DielineGeometry,
        force: bool = False,
        include_dielines: bool = True,
    ) -> BatchImposeResult:
        """Schedule a batch on the running loop and return its first snapshot."""
        if self.is_running(order_id):
            raise ConstraintError(f"An imposition batch is already running for order {order_id}")
        task = asyncio.create_task(
            imposer.impose(order_id, runs, items, dieline, force=force, include_dielines=include_dielines)
        )
        task.add_done_callback(lambda done: self._finished(order_id, done))
        self._imposers[order_id] = imposer
        self._tasks[order_id] = task
        return self.snapshot(order_id)

    def _finished(self, order_id: str, task: "asyncio.Task[BatchImposeResult]") -> None:
        if task.cancelled():
            logger.warning("imposition task for order %s was cancelled", order_id)
        elif task.exception() is not None:
            logger.error("imposition task for order %s failed", order_id, exc_info=task.exception())

    def snapshot(self, order_id: str) -> Optional[BatchImposeResult]:
        """Final result once the batch is done, otherwise the live progress."""
        imposer = self._imposers.get(order_id)
        if imposer is None:
            return None
        task = self._tasks[order_id]
        if task.done() and not task.cancelled() and task.exception() is None:
            return task.result()
        return BatchImposeResult(progress=imposer.progress.model_copy(deep=True))

    def cancel(self, order_id: str) -> Optional[BatchImposeResult]:
        imposer = self._imposers.get(order_id)
        if imposer is None:
            return None
        if self.is_running(order_id):
            imposer.cancel()
        return self.snapshot(order_id)
