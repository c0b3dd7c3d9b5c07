import asyncio
import logging
import sys
import time
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings
from .errors import ApiError, ConstraintError, InternalError, NotFoundError, TimeoutError, ValidationError, error_payload
from .geometry import validate_dieline
from .imposition import BatchImposer, BatchJobs, HttpImpositionService
from .models import (
    BatchImposeResult,
    ErrorResponse,
    ImposeRequest,
    LayoutOption,
    MergeRequest,
    MergeResponse,
    OptimizationWeights,
    PlanRequest,
    PlanResponse,
    SuggestRequest,
)
from .planner import plan_layouts
from .store import HttpRunStore, SavedLayoutStore
from .suggestions import HttpSuggestionService, apply_suggestion, fetch_and_merge


logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.service_name, version=settings.service_version)
JOB_SEMAPHORE = asyncio.Semaphore(settings.max_concurrent_jobs)
SAVED_LAYOUTS = SavedLayoutStore()
IMPOSE_JOBS = BatchJobs()


@app.middleware("http")
async def limit_body(request: Request, call_next):
    if request.method in {"POST", "PUT", "PATCH"}:
        limit = settings.max_body_bytes
        content_length = request.headers.get("content-length")
        if content_length is not None:
            try:
                if int(content_length) > limit:
                    err = ConstraintError("Request body too large")
                    return JSONResponse(status_code=err.status_code, content=error_payload(err))
            except ValueError:
                pass
        body = await request.body()
        if len(body) > limit:
            err = ConstraintError("Request body too large")
            return JSONResponse(status_code=err.status_code, content=error_payload(err))
        request._body = body
    return await call_next(request)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=error_payload(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    err = ValidationError("Request validation failed", details={"errors": jsonable_encoder(exc.errors())})
    return JSONResponse(status_code=err.status_code, content=error_payload(err))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s", request.url.path)
    err = InternalError()
    return JSONResponse(status_code=err.status_code, content=error_payload(err))


@app.get("/health/live")
async def health_live():
    return {"status": "ok"}


@app.get("/health/ready")
async def health_ready():
    return {"status": "ok"}


@app.get("/version")
async def version() -> Dict[str, Any]:
    deps: Dict[str, str] = {}
    for name in ("fastapi", "pydantic", "requests"):
        try:
            module = __import__(name)
            deps[name] = getattr(module, "__version__", "unknown")
        except ImportError:
            deps[name] = "unknown"

    return {
        "service": {"name": settings.service_name, "version": settings.service_version},
        "python": sys.version,
        "dependencies": deps,
    }


@app.post(
    "/v1/layouts",
    response_model=PlanResponse,
    responses={408: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def plan_endpoint(payload: PlanRequest):
    limit_s = settings.plan_time_limit_ms / 1000
    deadline = time.monotonic() + limit_s
    try:
        return await asyncio.wait_for(_plan_job(payload, deadline), timeout=limit_s)
    except asyncio.TimeoutError:
        raise TimeoutError()


async def _plan_job(payload: PlanRequest, deadline: float) -> PlanResponse:
    # queueing for a job slot counts against the time limit
    async with JOB_SEMAPHORE:
        return await asyncio.to_thread(plan_layouts, payload, deadline=deadline)


def _checked_plan(plan: PlanRequest) -> PlanRequest:
    if not plan.items:
        raise ValidationError("items must not be empty")
    if plan.dieline is None:
        raise ValidationError("dieline is required")
    validate_dieline(plan.dieline)
    return plan


@app.post("/v1/layouts/merge", response_model=MergeResponse, responses={422: {"model": ErrorResponse}})
async def merge_endpoint(payload: MergeRequest):
    plan = _checked_plan(payload.plan)
    outcome = apply_suggestion(
        payload.suggestion,
        payload.candidates,
        payload.selected_id,
        plan.items,
        plan.dieline,
        plan.weights or OptimizationWeights(),
        qty_per_roll=plan.qty_per_roll,
    )
    return MergeResponse(
        status="ok",
        options=outcome.options,
        selected_id=outcome.selected_id,
        notice=outcome.notice,
    )


@app.post("/v1/layouts/suggest", response_model=MergeResponse, responses={422: {"model": ErrorResponse}})
async def suggest_endpoint(payload: SuggestRequest):
    plan = _checked_plan(payload.plan)
    outcome = await fetch_and_merge(
        HttpSuggestionService(),
        payload.candidates,
        payload.selected_id,
        plan.items,
        plan.dieline,
        weights=plan.weights,
        max_overrun=plan.max_overrun,
        qty_per_roll=plan.qty_per_roll,
    )
    return MergeResponse(
        status="ok",
        options=outcome.options,
        selected_id=outcome.selected_id,
        notice=outcome.notice,
    )


@app.put("/v1/orders/{order_id}/saved-layout", response_model=LayoutOption)
async def save_layout(order_id: str, payload: LayoutOption):
    return SAVED_LAYOUTS.save(order_id, payload)


@app.get("/v1/orders/{order_id}/saved-layout", response_model=LayoutOption, responses={404: {"model": ErrorResponse}})
async def get_saved_layout(order_id: str):
    option = SAVED_LAYOUTS.get(order_id)
    if option is None:
        raise NotFoundError(f"No saved layout for order {order_id}")
    return option


@app.delete("/v1/orders/{order_id}/saved-layout")
async def clear_saved_layout(order_id: str):
    return {"status": "ok", "cleared": SAVED_LAYOUTS.clear(order_id)}


def new_imposer() -> BatchImposer:
    return BatchImposer(HttpImpositionService(), HttpRunStore())


@app.post(
    "/v1/orders/{order_id}/impose",
    status_code=202,
    response_model=BatchImposeResult,
    responses={400: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def impose_endpoint(order_id: str, payload: ImposeRequest):
    validate_dieline(payload.dieline)
    return IMPOSE_JOBS.start(
        order_id,
        new_imposer(),
        payload.runs,
        payload.items,
        payload.dieline,
        force=payload.force,
        include_dielines=payload.include_dielines,
    )


@app.get("/v1/orders/{order_id}/impose", response_model=BatchImposeResult, responses={404: {"model": ErrorResponse}})
async def impose_progress(order_id: str):
    result = IMPOSE_JOBS.snapshot(order_id)
    if result is None:
        raise NotFoundError(f"No imposition batch for order {order_id}")
    return result


@app.delete("/v1/orders/{order_id}/impose", response_model=BatchImposeResult, responses={404: {"model": ErrorResponse}})
async def cancel_impose(order_id: str):
    result = IMPOSE_JOBS.cancel(order_id)
    if result is None:
        raise NotFoundError(f"No imposition batch for order {order_id}")
    return result
