"""Tests for the batch imposition orchestrator."""
import asyncio

import pytest
import requests

from conftest import make_items
from runplanner.assets import AssetResolver, TTLCache
from runplanner.errors import ConstraintError, RemoteAPIError, RemoteTimeoutError
from runplanner.imposition import ABORT_MESSAGE, BatchImposer, HttpImpositionService, ImposePolicy, ImpositionService
from runplanner.models import (
    ImpositionBusy,
    ImpositionCompleted,
    ImpositionOther,
    ImpositionProcessing,
    ImpositionRejected,
    Item,
    RunRecord,
    SlotAssignment,
)
from runplanner.store import InMemoryRunStore

POLICY = ImposePolicy(
    submit_timeout_s=5,
    poll_interval_s=2,
    max_poll_duration_s=10,
    busy_max_retries=3,
    busy_retry_delay_s=5,
    inter_run_delay_s=1,
    max_consecutive_failures=3,
)


class FakeClock:
    """Monotonic clock that only moves when the imposer sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedService(ImpositionService):
    """Returns (or raises) scripted responses in order; the last one repeats."""

    def __init__(self, *script):
        self.script = list(script)
        self.requests = []

    async def submit(self, request):
        self.requests.append(request)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, BaseException):
            raise step
        return step


class HangingService(ImpositionService):

    async def submit(self, request):
        await asyncio.sleep(10)


class ScriptedStore(InMemoryRunStore):
    """In-memory store whose polled status follows a per-run script."""

    def __init__(self, runs, statuses=None):
        super().__init__(runs)
        self.statuses = {run_id: list(values) for run_id, values in (statuses or {}).items()}
        self.resets = []

    async def get_status(self, run_id):
        pending = self.statuses.get(run_id)
        if pending:
            return pending.pop(0) if len(pending) > 1 else pending[0]
        return await super().get_status(run_id)

    async def reset_run(self, run_id):
        self.resets.append(run_id)
        await super().reset_run(run_id)


class BrokenStore(ScriptedStore):
    """Store whose writes fail with errors outside the remote error family."""

    def __init__(self, runs, statuses=None, failing=("mark_failed", "annotate", "reset_run")):
        super().__init__(runs, statuses)
        self.failing = set(failing)

    async def mark_failed(self, run_id, message):
        if "mark_failed" in self.failing:
            raise RuntimeError("db down")
        await super().mark_failed(run_id, message)

    async def annotate(self, run_id, message):
        if "annotate" in self.failing:
            raise RuntimeError("db down")
        await super().annotate(run_id, message)

    async def reset_run(self, run_id):
        if "reset_run" in self.failing:
            raise RuntimeError("db down")
        await super().reset_run(run_id)


def make_run(number, status="planned", item_id="item-1", quantity=100, **extra):
    return RunRecord(
        id=f"run-{number}",
        order_id="order-1",
        run_number=number,
        status=status,
        slot_assignments=[SlotAssignment(slot_index=0, item_id=item_id, quantity_in_slot=quantity)],
        meters=1.325,
        frames=25,
        **extra,
    )


def done(url="https://files.local/run.pdf"):
    return ImpositionCompleted(imposed_url=url, imposed_with_dielines_url=url.replace(".pdf", "-dl.pdf"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def items():
    return make_items(100, 200)


def impose(service, store, runs, items, dieline, clock, policy=POLICY, **kwargs):
    imposer = BatchImposer(service, store, policy=policy, sleep=clock.sleep, clock=clock, **kwargs)
    result = asyncio.run(imposer.impose("order-1", runs, items, dieline))
    return imposer, result


class TestSynchronousCompletion:

    def test_run_approved_with_urls(self, items, dieline, clock):
        runs = [make_run(1)]
        store = ScriptedStore(runs)
        service = ScriptedService(done())
        _, result = impose(service, store, runs, items, dieline, clock)

        assert result.progress.status == "complete"
        assert result.progress.completed_run_ids == ["run-1"]
        assert result.progress.errors == []
        record = store.records["run-1"]
        assert record.status == "approved"
        assert record.imposed_url == "https://files.local/run.pdf"
        assert record.imposed_with_dielines_url == "https://files.local/run-dl.pdf"

    def test_request_payload(self, items, dieline, clock):
        runs = [make_run(1, item_id="item-2", quantity=200)]
        service = ScriptedService(done())
        impose(service, ScriptedStore(runs), runs, items, dieline, clock)

        request = service.requests[0]
        assert request.run_id == "run-1"
        assert request.order_id == "order-1"
        assert request.meters_to_print == 1.325
        assert request.dieline_geometry == dieline
        slot = request.slot_assignments[0]
        assert (slot.item_id, slot.quantity, slot.asset_url) == ("item-2", 200, "artwork/item-2.pdf")

    def test_runs_imposed_in_run_number_order(self, items, dieline, clock):
        runs = [make_run(3), make_run(1), make_run(2)]
        service = ScriptedService(done())
        _, result = impose(service, ScriptedStore(runs), runs, items, dieline, clock)
        assert [r.run_id for r in service.requests] == ["run-1", "run-2", "run-3"]
        assert result.progress.completed_run_ids == ["run-1", "run-2", "run-3"]
        # one pause between consecutive runs
        assert clock.sleeps == [1, 1]


class TestPolling:

    def test_processing_then_approved(self, items, dieline, clock):
        runs = [make_run(1)]
        store = ScriptedStore(runs, {"run-1": ["imposing", "imposing", "approved"]})
        _, result = impose(ScriptedService(ImpositionProcessing()), store, runs, items, dieline, clock)
        assert result.progress.completed_run_ids == ["run-1"]
        assert clock.sleeps == [2, 2, 2]

    def test_reset_to_planned_is_rejection(self, items, dieline, clock):
        runs = [make_run(1)]
        store = ScriptedStore(runs, {"run-1": ["imposing", "planned"]})
        _, result = impose(ScriptedService(ImpositionProcessing()), store, runs, items, dieline, clock)
        assert result.progress.status == "error"
        assert result.progress.errors[0].message == "Imposition rejected by the remote service"
        record = store.records["run-1"]
        assert record.status == "planned"
        assert record.error_annotation == "[IMPO ERROR] Imposition rejected by the remote service"

    def test_polling_times_out(self, items, dieline, clock):
        runs = [make_run(1)]
        store = ScriptedStore(runs, {"run-1": ["imposing"]})
        _, result = impose(ScriptedService(ImpositionProcessing()), store, runs, items, dieline, clock)
        assert result.progress.errors[0].message == "Imposition timed out after 10s of polling"
        assert clock.sleeps == [2, 2, 2, 2, 2]

    def test_unknown_response_status_falls_back_to_polling(self, items, dieline, clock):
        runs = [make_run(1)]
        store = ScriptedStore(runs, {"run-1": ["queued-somewhere", "approved"]})
        service = ScriptedService(ImpositionOther(status="queued"))
        _, result = impose(service, store, runs, items, dieline, clock)
        assert result.progress.completed_run_ids == ["run-1"]


class TestRejectionAndTransport:

    def test_immediate_rejection(self, items, dieline, clock):
        runs = [make_run(1)]
        store = ScriptedStore(runs)
        _, result = impose(ScriptedService(ImpositionRejected(error="Artwork unreadable")), store, runs, items, dieline, clock)
        assert result.progress.errors[0].message == "Artwork unreadable"
        assert store.records["run-1"].error_annotation == "[IMPO ERROR] Artwork unreadable"

    def test_transport_error(self, items, dieline, clock):
        runs = [make_run(1)]
        service = ScriptedService(RemoteAPIError("Imposition service unreachable"))
        _, result = impose(service, ScriptedStore(runs), runs, items, dieline, clock)
        assert result.progress.errors[0].message == "Imposition service unreachable"

    def test_submit_timeout(self, items, dieline, clock):
        runs = [make_run(1)]
        policy = ImposePolicy(submit_timeout_s=0.01, max_consecutive_failures=3, inter_run_delay_s=0)
        _, result = impose(HangingService(), ScriptedStore(runs), runs, items, dieline, clock, policy=policy)
        assert result.progress.errors[0].message == "Imposition request timed out after 0.01s"

    def test_unexpected_error_contained(self, items, dieline, clock):
        runs = [make_run(1), make_run(2)]
        service = ScriptedService(KeyError("imposed_url"), done())
        _, result = impose(service, ScriptedStore(runs), runs, items, dieline, clock)
        assert len(result.progress.errors) == 1
        assert result.progress.completed_run_ids == ["run-2"]


class TestBusyRetry:

    def test_busy_then_completed(self, items, dieline, clock):
        runs = [make_run(1)]
        service = ScriptedService(ImpositionBusy(), ImpositionBusy(), done())
        _, result = impose(service, ScriptedStore(runs), runs, items, dieline, clock)
        assert result.progress.completed_run_ids == ["run-1"]
        assert len(service.requests) == 3
        assert clock.sleeps == [5, 5]

    def test_busy_exhausted(self, items, dieline, clock):
        runs = [make_run(1)]
        service = ScriptedService(ImpositionBusy())
        _, result = impose(service, ScriptedStore(runs), runs, items, dieline, clock)
        assert len(service.requests) == 4
        assert result.progress.errors[0].message == "Imposition service busy after 4 attempts"


class TestCircuitBreaker:

    def test_consecutive_failures_skip_remaining(self, items, dieline, clock):
        runs = [make_run(n) for n in range(1, 6)]
        store = ScriptedStore(runs)
        service = ScriptedService(ImpositionRejected(error="bad"))
        policy = ImposePolicy(max_consecutive_failures=2, inter_run_delay_s=0)
        _, result = impose(service, store, runs, items, dieline, clock, policy=policy)

        assert len(service.requests) == 2
        assert result.skipped_run_ids == ["run-3", "run-4", "run-5"]
        assert result.progress.status == "error"
        assert result.progress.current_index == 5
        skipped = [err for err in result.progress.errors if err.skipped]
        assert [err.run_id for err in skipped] == ["run-3", "run-4", "run-5"]
        assert all(err.message == ABORT_MESSAGE for err in skipped)
        assert store.records["run-4"].error_annotation == f"[IMPO ERROR] {ABORT_MESSAGE}"
        assert store.records["run-4"].status == "planned"

    def test_success_resets_failure_count(self, items, dieline, clock):
        runs = [make_run(n) for n in range(1, 5)]
        rejected = ImpositionRejected(error="bad")
        service = ScriptedService(rejected, done(), rejected, done())
        policy = ImposePolicy(max_consecutive_failures=2, inter_run_delay_s=0)
        _, result = impose(service, ScriptedStore(runs), runs, items, dieline, clock, policy=policy)
        assert len(service.requests) == 4
        assert result.skipped_run_ids == []
        assert result.progress.completed_run_ids == ["run-2", "run-4"]


class TestTargets:

    def test_only_planned_runs_without_force(self, items, dieline, clock):
        runs = [make_run(1, status="approved"), make_run(2)]
        service = ScriptedService(done())
        _, result = impose(service, ScriptedStore(runs), runs, items, dieline, clock)
        assert [r.run_id for r in service.requests] == ["run-2"]
        assert result.progress.total == 1

    def test_force_resets_and_reimposes(self, items, dieline, clock):
        runs = [make_run(1, status="approved", imposed_url="old.pdf"), make_run(2)]
        store = ScriptedStore(runs)
        service = ScriptedService(done())
        imposer = BatchImposer(service, store, policy=POLICY, sleep=clock.sleep, clock=clock)
        result = asyncio.run(imposer.impose("order-1", runs, items, dieline, force=True))
        assert store.resets == ["run-1"]
        assert [r.run_id for r in service.requests] == ["run-1", "run-2"]
        assert result.progress.completed_run_ids == ["run-1", "run-2"]

    def test_nothing_to_do(self, items, dieline, clock):
        runs = [make_run(1, status="completed")]
        service = ScriptedService(done())
        _, result = impose(service, ScriptedStore(runs), runs, items, dieline, clock)
        assert result.progress.status == "complete"
        assert result.progress.total == 0
        assert service.requests == []

    def test_unknown_item_fails_without_submitting(self, items, dieline, clock):
        runs = [make_run(1, item_id="item-9")]
        service = ScriptedService(done())
        _, result = impose(service, ScriptedStore(runs), runs, items, dieline, clock)
        assert service.requests == []
        assert result.progress.errors[0].message == "Item item-9 is not part of this order"

    def test_missing_artwork(self, dieline, clock):
        runs = [make_run(1)]
        items = [Item(id="item-1", required_quantity=100, name="Label 1")]
        _, result = impose(ScriptedService(done()), ScriptedStore(runs), runs, items, dieline, clock)
        assert result.progress.errors[0].message == "Item Label 1 has no print-ready artwork"


class TestLifecycle:

    def test_progress_snapshots(self, items, dieline, clock):
        runs = [make_run(1), make_run(2)]
        snapshots = []
        impose(ScriptedService(done()), ScriptedStore(runs), runs, items, dieline, clock, on_progress=snapshots.append)
        assert [s.status for s in snapshots] == ["imposing", "imposing", "imposing", "complete"]
        assert [s.current_index for s in snapshots] == [0, 1, 2, 2]
        assert snapshots[0].total == 2
        assert snapshots[1].completed_run_ids == ["run-1"]

    def test_cancel_stops_at_next_run(self, items, dieline, clock):
        runs = [make_run(n) for n in range(1, 4)]
        service = ScriptedService(done())
        holder = {}

        def on_progress(snapshot):
            if snapshot.current_index == 1:
                holder["imposer"].cancel()

        imposer = BatchImposer(service, ScriptedStore(runs), policy=POLICY, sleep=clock.sleep, clock=clock, on_progress=on_progress)
        holder["imposer"] = imposer
        result = asyncio.run(imposer.impose("order-1", runs, items, dieline))
        assert result.cancelled is True
        assert len(service.requests) == 1
        assert result.progress.completed_run_ids == ["run-1"]

    def test_cancel_before_start(self, items, dieline, clock):
        runs = [make_run(1), make_run(2)]
        service = ScriptedService(done())
        imposer = BatchImposer(service, ScriptedStore(runs), policy=POLICY, sleep=clock.sleep, clock=clock)
        imposer.cancel()
        result = asyncio.run(imposer.impose("order-1", runs, items, dieline))
        assert result.cancelled is True
        assert service.requests == []

    def test_reset_required_between_batches(self, items, dieline, clock):
        runs = [make_run(1)]
        imposer, _ = impose(ScriptedService(done()), ScriptedStore(runs), runs, items, dieline, clock)
        assert imposer.is_imposing is False
        with pytest.raises(ConstraintError):
            asyncio.run(imposer.impose("order-1", runs, items, dieline))
        imposer.reset()
        result = asyncio.run(imposer.impose("order-1", runs, items, dieline))
        assert result.progress.status == "complete"

    def test_asset_urls_cached_across_runs(self, items, dieline, clock):
        runs = [make_run(1), make_run(2)]
        signed = []

        def signer(ref):
            signed.append(ref)
            return f"https://cdn.local/{ref}?sig=1"

        resolver = AssetResolver(signer, TTLCache(60, clock=clock))
        service = ScriptedService(done())
        impose(service, ScriptedStore(runs), runs, items, dieline, clock, resolver=resolver)
        assert signed == ["artwork/item-1.pdf"]
        assert service.requests[1].slot_assignments[0].asset_url == "https://cdn.local/artwork/item-1.pdf?sig=1"


class TestStoreFailures:

    def test_failure_write_error_keeps_batch_going(self, items, dieline, clock):
        runs = [make_run(1), make_run(2)]
        store = BrokenStore(runs, failing=("mark_failed",))
        service = ScriptedService(ImpositionRejected(error="bad"), done())
        imposer, result = impose(service, store, runs, items, dieline, clock)

        assert result.progress.status == "error"
        assert result.progress.errors[0].message == "bad"
        assert result.progress.completed_run_ids == ["run-2"]
        assert imposer.is_imposing is False

    def test_imposer_reusable_after_write_errors(self, items, dieline, clock):
        runs = [make_run(1)]
        store = BrokenStore(runs, failing=("mark_failed",))
        imposer, _ = impose(ScriptedService(ImpositionRejected(error="bad")), store, runs, items, dieline, clock)
        imposer.service = ScriptedService(done())
        imposer.reset()
        result = asyncio.run(imposer.impose("order-1", runs, items, dieline))
        assert result.progress.status == "complete"

    def test_annotation_error_while_skipping(self, items, dieline, clock):
        runs = [make_run(n) for n in range(1, 4)]
        store = BrokenStore(runs)
        policy = ImposePolicy(max_consecutive_failures=1, inter_run_delay_s=0)
        _, result = impose(ScriptedService(ImpositionRejected(error="bad")), store, runs, items, dieline, clock, policy=policy)
        assert result.skipped_run_ids == ["run-2", "run-3"]
        assert result.progress.status == "error"

    def test_reset_error_in_force_mode(self, items, dieline, clock):
        runs = [make_run(1, status="approved"), make_run(2)]
        store = BrokenStore(runs, failing=("reset_run",))
        service = ScriptedService(done())
        imposer = BatchImposer(service, store, policy=POLICY, sleep=clock.sleep, clock=clock)
        result = asyncio.run(imposer.impose("order-1", runs, items, dieline, force=True))
        assert [r.run_id for r in service.requests] == ["run-1", "run-2"]
        assert result.progress.status == "complete"

    def test_progress_callback_error(self, items, dieline, clock):
        runs = [make_run(1), make_run(2)]

        def on_progress(snapshot):
            raise RuntimeError("listener gone")

        _, result = impose(ScriptedService(done()), ScriptedStore(runs), runs, items, dieline, clock, on_progress=on_progress)
        assert result.progress.completed_run_ids == ["run-1", "run-2"]


class FakeResponse:

    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.urls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.response


class TestHttpImpositionService:

    @pytest.fixture
    def request_model(self, items, dieline, clock):
        imposer = BatchImposer(ScriptedService(done()), ScriptedStore([]), policy=POLICY)
        return imposer.build_request("order-1", make_run(1), {i.id: i for i in items}, dieline)

    def _submit(self, session, request_model):
        service = HttpImpositionService("http://impo.local", "key", 5, session=session)
        return asyncio.run(service.submit(request_model))

    def test_busy_status_code(self, request_model):
        assert isinstance(self._submit(FakeSession(FakeResponse(503)), request_model), ImpositionBusy)

    def test_error_status_is_rejection(self, request_model):
        response = self._submit(FakeSession(FakeResponse(500, text="crash")), request_model)
        assert isinstance(response, ImpositionRejected)
        assert "500" in response.error

    def test_completed_alias(self, request_model):
        session = FakeSession(FakeResponse(payload={"status": "complete", "imposed_pdf_url": "a.pdf"}))
        response = self._submit(session, request_model)
        assert isinstance(response, ImpositionCompleted)
        assert response.imposed_url == "a.pdf"
        assert session.urls == ["http://impo.local/imposition/labels"]

    def test_unsuccessful_payload(self, request_model):
        response = self._submit(FakeSession(FakeResponse(payload={"success": False, "error": "no"})), request_model)
        assert isinstance(response, ImpositionRejected)
        assert response.error == "no"

    def test_processing(self, request_model):
        response = self._submit(FakeSession(FakeResponse(payload={"status": "processing"})), request_model)
        assert isinstance(response, ImpositionProcessing)

    def test_timeout(self, request_model):
        with pytest.raises(RemoteTimeoutError):
            self._submit(FakeSession(error=requests.Timeout()), request_model)
