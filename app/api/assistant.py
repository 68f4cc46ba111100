"""API endpoints for the planner/executor assistant."""

import asyncio
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from app.chains.execute_plan import execute, validate_execute_options
from app.chains.plan_request import plan_with_quota_check, validate_planner_input
from app.core.config import get_settings
from app.core.embeddings import embed_query
from app.core.exceptions import QuotaError
from app.core.llm_client import LLMClient
from app.core.logging import get_logger
from app.core.quota import QuotaEnforcer
from app.core.schemas_assistant import AssistantRequest, AssistantResponse, PlannerOutput
from app.core.usage_meter import UsageMeter
from app.core.web_search import get_shared_web_search
from app.db.document_chunks import bm25_search, vector_search
from app.db.supabase_client import is_supabase_configured
from app.db.usage import SupabaseUsageStore
from app.graphs.assistant_graph import AssistantDeps, apply_task_rules, run_assistant

logger = get_logger(__name__)

router = APIRouter()

DEFAULT_RETRY_AFTER_SECONDS = 60


class AnswerResponse(BaseModel):
    """Response body for /ai/answer."""

    plan: PlannerOutput
    response: AssistantResponse


class BatchItemResult(BaseModel):
    """Outcome of one /ai/batch item; failures never affect other items."""

    id: str
    success: bool
    plan: PlannerOutput | None = None
    response: AssistantResponse | None = None
    error: str | None = None
    message: str | None = None
    details: list[str] | None = None
    resetsAt: str | None = None


class BatchSummary(BaseModel):
    total: int
    succeeded: int
    failed: int


class BatchResponse(BaseModel):
    """Response body for /ai/batch."""

    results: list[BatchItemResult]
    summary: BatchSummary


# =======================
# Dependencies
# =======================


@lru_cache(maxsize=1)
def get_assistant_deps() -> AssistantDeps:
    """
    Process-wide collaborators for both stages.

    Usage rows and quota sums go to Supabase when it is configured; without
    it the quota check fails closed unless QUOTA_SOFT_FAIL is set.
    """
    settings = get_settings()
    store = SupabaseUsageStore() if is_supabase_configured() else None
    if store is None:
        logger.warning("Supabase not configured; usage is not persisted")

    web = get_shared_web_search(settings)
    return AssistantDeps(
        client=LLMClient(settings, usage_meter=UsageMeter(settings, store)),
        settings=settings,
        quota=QuotaEnforcer(settings, store),
        web_search=web.search_results if web.enabled else None,
        bm25_query=bm25_search if store is not None else None,
        vector_query=vector_search if store is not None else None,
        embed=embed_query,
    )


def retry_after_seconds(resets_at_iso: str | None, now: datetime | None = None) -> int:
    """Seconds until the quota window resets, at least 1."""
    if not resets_at_iso:
        return DEFAULT_RETRY_AFTER_SECONDS
    try:
        resets_at = datetime.fromisoformat(resets_at_iso)
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS
    if resets_at.tzinfo is None:
        resets_at = resets_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(1, int((resets_at - now).total_seconds()))


def quota_error_response(error: QuotaError) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content=error.to_dict(),
        headers={"Retry-After": str(retry_after_seconds(error.resets_at_iso))},
    )


# =======================
# Endpoints
# =======================


@router.post("/ai/plan", response_model=PlannerOutput)
async def create_plan(
    payload: dict[str, Any] = Body(...),
    deps: AssistantDeps = Depends(get_assistant_deps),
) -> Any:
    """
    Run Stage A only and return the structured plan.

    Args:
        payload: Planner input (assistant, input, tenant_id, user_id, extra)
        deps: Shared LLM client, quota enforcer and settings

    Returns:
        PlannerOutput; a fallback plan when the model call fails

    Raises:
        HTTPException 400: If the payload is invalid
        HTTPException 429: If the planner preflight exceeds quota
    """
    ok, planner_input, errors = validate_planner_input(payload)
    if not ok:
        raise HTTPException(status_code=400, detail={"error": "invalid_request", "details": errors})

    try:
        return await plan_with_quota_check(
            planner_input, client=deps.client, quota=deps.quota, settings=deps.settings
        )
    except QuotaError as e:
        return quota_error_response(e)


@router.post("/ai/answer", response_model=AnswerResponse)
async def create_answer(
    payload: dict[str, Any] = Body(...),
    deps: AssistantDeps = Depends(get_assistant_deps),
) -> Any:
    """
    Answer a request end to end.

    When the payload carries a `plan` (from a previous /ai/plan call) the
    task rules and Stage B run on it; otherwise the full planner -> executor
    graph runs.

    Raises:
        HTTPException 400: If the request or the supplied plan is invalid
        HTTPException 429: If quota is exceeded
    """
    payload = dict(payload)
    raw_plan = payload.pop("plan", None)

    ok, planner_input, errors = validate_planner_input(payload)
    if not ok:
        raise HTTPException(status_code=400, detail={"error": "invalid_request", "details": errors})
    request = AssistantRequest(**planner_input.model_dump())

    try:
        if raw_plan is None:
            plan, response = await run_assistant(request, deps)
            return AnswerResponse(plan=plan, response=response)

        try:
            plan = PlannerOutput.model_validate(raw_plan)
        except ValidationError as e:
            raise HTTPException(
                status_code=400,
                detail={"error": "invalid_plan", "details": [err["msg"] for err in e.errors()]},
            ) from e

        valid, option_errors = validate_execute_options(
            plan, request, request.tenant_id, request.user_id
        )
        if not valid:
            raise HTTPException(
                status_code=400, detail={"error": "invalid_request", "details": option_errors}
            )

        plan, _ = apply_task_rules(plan, request)

        response = await execute(
            plan,
            request,
            request.tenant_id,
            request.user_id,
            client=deps.client,
            settings=deps.settings,
            quota=deps.quota,
            web_search=deps.web_search,
            bm25_query=deps.bm25_query,
            vector_query=deps.vector_query,
            embed=deps.embed,
            on_usage=deps.on_usage,
        )
        return AnswerResponse(plan=plan, response=response)
    except QuotaError as e:
        return quota_error_response(e)


async def answer_batch_item(index: int, item: Any, deps: AssistantDeps) -> BatchItemResult:
    """
    Plan and execute one batch item, mapping every failure into its result.

    Args:
        index: Position in the batch; the id when the item carries none
        item: Planner input payload plus an optional `id`
        deps: Shared collaborators

    Returns:
        BatchItemResult with either plan + response or an error code
    """
    if not isinstance(item, dict):
        return BatchItemResult(
            id=str(index), success=False, error="invalid_request", details=["item must be an object"]
        )

    payload = dict(item)
    item_id = str(payload.pop("id", index))

    ok, planner_input, errors = validate_planner_input(payload)
    if not ok:
        return BatchItemResult(id=item_id, success=False, error="invalid_request", details=errors)
    request = AssistantRequest(**planner_input.model_dump())

    try:
        plan, response = await run_assistant(request, deps)
    except QuotaError as e:
        logger.warning(
            f"Batch item {item_id} denied: {e.message}",
            extra={"tenant_id": request.tenant_id, "user_id": request.user_id},
        )
        return BatchItemResult(
            id=item_id,
            success=False,
            error="quota_exceeded",
            message=e.message,
            resetsAt=e.resets_at_iso,
        )
    except Exception as e:
        logger.error(
            f"Batch item {item_id} failed: {e}",
            extra={"tenant_id": request.tenant_id, "user_id": request.user_id},
        )
        return BatchItemResult(
            id=item_id, success=False, error="processing_failed", message=str(e) or "Processing failed"
        )

    return BatchItemResult(id=item_id, success=True, plan=plan, response=response)


@router.post("/ai/batch", response_model=BatchResponse)
async def create_batch(
    payload: dict[str, Any] = Body(...),
    deps: AssistantDeps = Depends(get_assistant_deps),
) -> BatchResponse:
    """
    Run planner -> executor for several requests concurrently.

    Body: {"items": [{"id": ..., "assistant": ..., "input": ..., "tenant_id": ...,
    "user_id": ..., "extra": ...}, ...]}. Each item succeeds or fails on its
    own; quota denials surface per item rather than as a 429.

    Raises:
        HTTPException 400: Missing/empty items, or more than MAX_BATCH_SIZE
    """
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_request", "message": "Missing or empty items array"},
        )

    settings = deps.settings or get_settings()
    if len(items) > settings.MAX_BATCH_SIZE:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "batch_too_large",
                "message": f"Batch size exceeds maximum of {settings.MAX_BATCH_SIZE} items",
            },
        )

    logger.info(f"Processing batch of {len(items)} items")
    results = await asyncio.gather(
        *(answer_batch_item(index, item, deps) for index, item in enumerate(items))
    )

    succeeded = sum(1 for r in results if r.success)
    return BatchResponse(
        results=list(results),
        summary=BatchSummary(total=len(results), succeeded=succeeded, failed=len(results) - succeeded),
    )


@router.get("/ai/usage")
async def get_usage(
    tenant_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
    deps: AssistantDeps = Depends(get_assistant_deps),
) -> dict[str, Any]:
    """
    Today's token usage against the daily quotas.

    Raises:
        HTTPException 500: If the usage store cannot be read
    """
    try:
        return await deps.quota.get_current_quota_usage(tenant_id, user_id)
    except Exception as e:
        logger.error(f"Failed to read quota usage: {e}", extra={"tenant_id": tenant_id})
        raise HTTPException(status_code=500, detail="Failed to read usage") from e
