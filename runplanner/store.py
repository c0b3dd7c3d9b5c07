"""Persistence seams used by the imposition orchestrator and the HTTP surface."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

import requests

from .config import settings
from .errors import RemoteAPIError, RemoteTimeoutError
from .models import LayoutOption, RunRecord, RunStatus

logger = logging.getLogger(__name__)

ERROR_PREFIX = "[IMPO ERROR]"


def error_annotation(message: str) -> str:
    return f"{ERROR_PREFIX} {message}"


class RunStore(ABC):
    """Persisted run records keyed by run id."""

    @abstractmethod
    async def get_status(self, run_id: str) -> Optional[str]:
        """Current lifecycle status string, or None when the record cannot be read."""
        ...

    @abstractmethod
    async def mark_failed(self, run_id: str, message: str) -> None:
        """Annotate the failure and put the run back to planned for re-submission."""
        ...

    @abstractmethod
    async def mark_approved(
        self,
        run_id: str,
        imposed_url: Optional[str] = None,
        imposed_with_dielines_url: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def annotate(self, run_id: str, message: str) -> None:
        """Attach an error annotation without touching the status."""
        ...

    @abstractmethod
    async def reset_run(self, run_id: str) -> None:
        """Back to planned with any produced artifact cleared."""
        ...


class InMemoryRunStore(RunStore):
    def __init__(self, runs: Iterable[RunRecord] = ()):
        self.records: Dict[str, RunRecord] = {run.id: run for run in runs}

    def _update(self, run_id: str, **changes: Any) -> None:
        record = self.records.get(run_id)
        if record is None:
            logger.warning("run %s not found in store", run_id)
            return
        self.records[run_id] = record.model_copy(update=changes)

    def put(self, run: RunRecord) -> None:
        self.records[run.id] = run

    async def get_status(self, run_id: str) -> Optional[str]:
        record = self.records.get(run_id)
        return record.status if record is not None else None

    async def mark_failed(self, run_id: str, message: str) -> None:
        self._update(run_id, status=RunStatus.PLANNED.value, error_annotation=error_annotation(message))

    async def mark_approved(self, run_id, imposed_url=None, imposed_with_dielines_url=None) -> None:
        changes: Dict[str, Any] = {"status": RunStatus.APPROVED.value, "error_annotation": None}
        if imposed_url is not None:
            changes["imposed_url"] = imposed_url
        if imposed_with_dielines_url is not None:
            changes["imposed_with_dielines_url"] = imposed_with_dielines_url
        self._update(run_id, **changes)

    async def annotate(self, run_id: str, message: str) -> None:
        self._update(run_id, error_annotation=error_annotation(message))

    async def reset_run(self, run_id: str) -> None:
        self._update(
            run_id,
            status=RunStatus.PLANNED.value,
            imposed_url=None,
            imposed_with_dielines_url=None,
        )


class HttpRunStore(RunStore):
    """Run records held by the order backend, reached over REST with requests."""

    def __init__(
        self,
        base_url: str = settings.backend_url,
        api_key: str = settings.api_key,
        timeout_s: float = 15.0,
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

    def _request(self, method: str, run_id: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = self.session.request(
                method,
                f"{self.base_url}/runs/{run_id}",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout_s,
            )
        except requests.Timeout as exc:
            raise RemoteTimeoutError(f"Run backend timed out for {run_id}") from exc
        except requests.RequestException as exc:
            raise RemoteAPIError(f"Run backend unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise RemoteAPIError(f"Run backend error {resp.status_code}: {resp.text[:200]}")
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteAPIError("Run backend returned invalid JSON") from exc

    async def _patch(self, run_id: str, payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._request, "PATCH", run_id, payload)

    async def get_status(self, run_id: str) -> Optional[str]:
        data = await asyncio.to_thread(self._request, "GET", run_id)
        status = data.get("status")
        return status if isinstance(status, str) else None

    async def mark_failed(self, run_id: str, message: str) -> None:
        await self._patch(
            run_id,
            {"status": RunStatus.PLANNED.value, "error_annotation": error_annotation(message)},
        )

    async def mark_approved(self, run_id, imposed_url=None, imposed_with_dielines_url=None) -> None:
        payload: Dict[str, Any] = {"status": RunStatus.APPROVED.value, "error_annotation": None}
        if imposed_url is not None:
            payload["imposed_url"] = imposed_url
        if imposed_with_dielines_url is not None:
            payload["imposed_with_dielines_url"] = imposed_with_dielines_url
        await self._patch(run_id, payload)

    async def annotate(self, run_id: str, message: str) -> None:
        await self._patch(run_id, {"error_annotation": error_annotation(message)})

    async def reset_run(self, run_id: str) -> None:
        await self._patch(
            run_id,
            {
                "status": RunStatus.PLANNED.value,
                "imposed_url": None,
                "imposed_with_dielines_url": None,
            },
        )


class SavedLayoutStore:
    """The layout an operator chose for an order, kept verbatim for reuse."""

    def __init__(self):
        self._layouts: Dict[str, LayoutOption] = {}

    def save(self, order_id: str, option: LayoutOption) -> LayoutOption:
        self._layouts[order_id] = option
        return option

    def get(self, order_id: str) -> Optional[LayoutOption]:
        return self._layouts.get(order_id)

    def clear(self, order_id: str) -> bool:
        return self._layouts.pop(order_id, None) is not None
