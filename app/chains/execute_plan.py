"""Stage B executor: run retrieval, web search and finance, then generate the answer.

Flow:
1. Quota preflight (QuotaError propagates to the caller)
2. Parallel preparation (retrieval, web search, finance), each failure-isolated
3. Message assembly with sanitized context blocks
4. Tool-calling model call (web_search / finance_calc)
5. Section parsing and citation-to-source mapping
6. Policy validation, disclaimer and warning banner
7. Usage callback
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Callable

from pydantic import ValidationError

from app.chains.answer_formatter import (
    ExecutorContext,
    build_executor_messages,
    build_rag_sources,
    build_web_sources,
    parse_executor_response,
    validate_sections,
)
from app.chains.assistant_prompts import VALIDATION_BANNER
from app.core.config import Settings, get_settings
from app.core.exceptions import QuotaError
from app.core.finance import build_financial_model
from app.core.finance_tool import build_finance_tool
from app.core.llm_client import LLMClient, Telemetry, get_shared_client
from app.core.logging import get_logger
from app.core.metrics import timer
from app.core.policy import ValidationContext, validate_output
from app.core.quota import QuotaEnforcer
from app.core.quota_guard import preflight_quota_guard
from app.core.retrieval import (
    BM25QueryFn,
    EmbeddingFn,
    HybridRetrievalOptions,
    HybridRetrievalResult,
    VectorQueryFn,
    retrieve_hybrid,
)
from app.core.schemas_assistant import (
    FINANCE_ASSISTANTS,
    AssistantExtra,
    AssistantRequest,
    AssistantResponse,
    FinanceExtra,
    FinancialInputs,
    FinancialModel,
    PlannerOutput,
    ResponseMetadata,
    UsageMetric,
)
from app.core.search_providers import WebSearchResult
from app.core.usage_meter import to_tool_invocations
from app.core.web_search import MAX_QUERY_LENGTH, WebSearchFn, build_web_search_tool, get_shared_web_search

logger = get_logger(__name__)

EXECUTOR_TEMPERATURE = 0.4
# RRF scores sit well below the default 0.01 fusion threshold
RETRIEVAL_SCORE_THRESHOLD = 0.001
SLOW_PREP_MS = 5_000

OnUsage = Callable[[UsageMetric], Any]


def parse_financial_extra(
    extra: AssistantExtra | dict[str, Any] | None,
) -> FinancialInputs | None:
    """
    Financial inputs carried in a request's `extra`.

    Raw dicts are read as a FinanceExtra: inputs nested under
    "financial_inputs" or at the top level, snake_case or camelCase. Returns
    None when there are no inputs or the payload does not validate.
    """
    if isinstance(extra, dict):
        try:
            extra = FinanceExtra.model_validate(extra)
        except ValidationError as e:
            logger.warning(f"Invalid financial inputs in request extra: {e}")
            return None
    if isinstance(extra, FinanceExtra):
        return extra.financial_inputs
    return None


def validate_execute_options(
    plan: PlannerOutput | None,
    request: AssistantRequest | None,
    tenant_id: str | None,
    user_id: str | None,
) -> tuple[bool, list[str]]:
    errors = []
    if plan is None:
        errors.append("plan is required")
    if request is None:
        errors.append("request is required")
    if not tenant_id or not tenant_id.strip():
        errors.append("tenant_id is required and cannot be empty")
    if not user_id or not user_id.strip():
        errors.append("user_id is required and cannot be empty")
    return not errors, errors


# =============================================================================
# Preparation
# =============================================================================


async def _prepare_retrieval(
    plan: PlannerOutput,
    request: AssistantRequest,
    tenant_id: str,
    settings: Settings,
    bm25_query: BM25QueryFn | None,
    vector_query: VectorQueryFn | None,
    embed: EmbeddingFn | None,
) -> HybridRetrievalResult | None:
    if not plan.requires_retrieval:
        return None
    if not (bm25_query and vector_query and embed):
        logger.warning(
            "RAG retrieval required but query functions not provided",
            extra={"tenant_id": tenant_id},
        )
        return None

    try:
        with timer("Executor - retrieval", tenant_id, slow_ms=SLOW_PREP_MS):
            return await retrieve_hybrid(
                tenant_id,
                request.input,
                bm25_query,
                vector_query,
                embed,
                HybridRetrievalOptions(
                    top_k=settings.RETRIEVAL_FINAL_K,
                    context_max_tokens=settings.CONTEXT_TOKEN_LIMIT,
                    score_threshold=RETRIEVAL_SCORE_THRESHOLD,
                ),
            )
    except Exception as e:
        logger.error(f"RAG retrieval failed: {e}", extra={"tenant_id": tenant_id})
        return None


async def _prepare_web_search(
    plan: PlannerOutput,
    request: AssistantRequest,
    tenant_id: str,
    user_id: str,
    settings: Settings,
    web_search: WebSearchFn | None,
) -> list[WebSearchResult]:
    if not plan.requires_web_search or web_search is None:
        return []

    query = " ".join(plan.query_terms) if plan.query_terms else request.input
    try:
        with timer("Executor - web search", tenant_id, slow_ms=SLOW_PREP_MS):
            results = await web_search(
                query[:MAX_QUERY_LENGTH], settings.WEBSEARCH_MAX_RESULTS, tenant_id, user_id
            )
        logger.info(f"Web search returned {len(results)} results", extra={"tenant_id": tenant_id})
        return list(results)
    except Exception as e:
        logger.error(f"Web search failed: {e}", extra={"tenant_id": tenant_id})
        return []


async def _prepare_finance(
    plan: PlannerOutput,
    request: AssistantRequest,
    tenant_id: str,
) -> FinancialModel | None:
    if request.assistant not in FINANCE_ASSISTANTS and not plan.metrics_needed:
        return None

    inputs = parse_financial_extra(request.extra)
    if inputs is None:
        logger.info("No valid financial inputs, skipping finance model", extra={"tenant_id": tenant_id})
        return None

    try:
        with timer("Executor - finance", tenant_id):
            return build_financial_model(inputs)
    except Exception as e:
        logger.error(f"Finance computation failed: {e}", extra={"tenant_id": tenant_id})
        return None


def _default_web_search(settings: Settings) -> WebSearchFn | None:
    if not settings.WEBSEARCH_ENABLED:
        return None
    return get_shared_web_search(settings).search_results


async def _emit(on_usage: OnUsage | None, metric: UsageMetric) -> None:
    if on_usage is None:
        return
    try:
        outcome = on_usage(metric)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as e:
        logger.error(f"on_usage callback failed: {e}")


# =============================================================================
# Execute
# =============================================================================


async def execute(
    plan: PlannerOutput,
    request: AssistantRequest,
    tenant_id: str,
    user_id: str,
    *,
    client: LLMClient | None = None,
    settings: Settings | None = None,
    quota: QuotaEnforcer | None = None,
    web_search: WebSearchFn | None = None,
    bm25_query: BM25QueryFn | None = None,
    vector_query: VectorQueryFn | None = None,
    embed: EmbeddingFn | None = None,
    on_usage: OnUsage | None = None,
) -> AssistantResponse:
    """
    Execute an assistant request against a plan (Stage B).

    Args:
        plan: Planner output (read-only)
        request: Original request
        tenant_id: Tenant the request is billed to
        user_id: User the request is billed to
        client: LLM client (the shared client for settings if omitted)
        settings: App settings
        quota: Quota enforcer for the preflight check
        web_search: async (query, n, tenant_id, user_id) -> results; defaults
            to the configured provider when web search is enabled
        bm25_query: async (tenant_id, query, limit) -> results
        vector_query: async (tenant_id, embedding, limit) -> results
        embed: async (text) -> embedding
        on_usage: Called once with the UsageMetric of the model call

    Returns:
        AssistantResponse. Internal failures yield an "Error" section with
        zero tokens and cost rather than raising.

    Raises:
        QuotaError: Planned usage would exceed a quota or per-request cap
    """
    settings = settings or get_settings()
    start = time.monotonic()
    model = settings.MODEL_ESCALATION if plan.escalate_model else settings.MODEL_MINI
    log_extra = {"tenant_id": tenant_id, "user_id": user_id}

    logger.info(f"Executing {request.assistant} with model {model}", extra=log_extra)

    await preflight_quota_guard(
        plan,
        tenant_id=tenant_id,
        user_id=user_id,
        input_length=len(request.input),
        quota=quota or QuotaEnforcer(settings),
    )

    if web_search is None:
        web_search = _default_web_search(settings)

    try:
        retrieval, web_results, finance_model = await asyncio.gather(
            _prepare_retrieval(plan, request, tenant_id, settings, bm25_query, vector_query, embed),
            _prepare_web_search(plan, request, tenant_id, user_id, settings, web_search),
            _prepare_finance(plan, request, tenant_id),
        )

        context = ExecutorContext(
            chunks=retrieval.chunks if retrieval else [],
            packed=retrieval.packed if retrieval else None,
            web_results=web_results,
            finance_model=finance_model,
        )
        messages = build_executor_messages(request, plan, context)

        tools: list[dict[str, Any]] = []
        handlers: dict[str, Any] = {}
        if plan.requires_web_search and web_search is not None:
            spec, handler = build_web_search_tool(
                web_search, tenant_id, user_id, settings.WEBSEARCH_MAX_RESULTS
            )
            tools.append(spec)
            handlers["web_search"] = handler
        if finance_model is not None:
            spec, handler = build_finance_tool()
            tools.append(spec)
            handlers["finance_calc"] = handler

        client = client or get_shared_client(settings)
        with timer("Executor - model call", tenant_id, log_level="info"):
            result = await client.chat_with_tools(
                messages,
                tools=tools or None,
                handlers=handlers or None,
                model=model,
                max_output_tokens=settings.MAX_TOKENS_EXECUTOR,
                temperature=EXECUTOR_TEMPERATURE,
                telemetry=Telemetry(
                    tenant_id=tenant_id,
                    user_id=user_id,
                    assistant=request.assistant,
                    meta={
                        "stage": "executor",
                        "escalated": plan.escalate_model,
                        "has_retrieval": plan.requires_retrieval,
                        "has_web_search": plan.requires_web_search,
                        "has_finance": finance_model is not None,
                    },
                ),
            )

        parsed = parse_executor_response(
            result.text, context, fallback_all_sources=settings.CITATION_FALLBACK_ALL_SOURCES
        )
        if parsed.dropped_markers:
            logger.warning(
                f"Dropped {len(parsed.dropped_markers)} unmapped citation marker(s)",
                extra={**log_extra, "dropped_citation_markers": parsed.dropped_markers},
            )

        sections_ok, missing = validate_sections(parsed.sections, plan.sections)
        if not sections_ok:
            logger.warning(f"Missing required sections: {missing}", extra=log_extra)

        response = AssistantResponse(
            assistant=request.assistant,
            sections=parsed.sections,
            sources=parsed.sources,
            raw_model_output=parsed.raw_output,
            metadata=ResponseMetadata(
                model=result.model,
                tokens_used=result.tokens_in + result.tokens_out,
                latency_ms=result.latency_ms,
                cost=result.cost_cents / 100,
            ),
        )

        response = _apply_policy(response, plan, context, settings)

        counts = dict(result.tool_invocations)
        counts["web_search"] = counts.get("web_search", 0) + (1 if web_results else 0)
        counts["retrieval"] = 1 if retrieval else 0
        await _emit(
            on_usage,
            UsageMetric(
                model=result.model,
                tokens_in=result.tokens_in,
                tokens_out=result.tokens_out,
                cost_cents=result.cost_cents,
                latency_ms=int((time.monotonic() - start) * 1000),
                tool_invocations=to_tool_invocations(counts),
            ),
        )
        return response

    except QuotaError:
        raise
    except Exception as e:
        logger.error(f"Executor failed: {e}", extra=log_extra, exc_info=True)
        return AssistantResponse(
            assistant=request.assistant,
            sections={"Error": f"Failed to generate response: {e}"},
            sources=[],
            raw_model_output="",
            metadata=ResponseMetadata(
                model=model,
                tokens_used=0,
                latency_ms=int((time.monotonic() - start) * 1000),
                cost=0,
            ),
        )


def _apply_policy(
    response: AssistantResponse,
    plan: PlannerOutput,
    context: ExecutorContext,
    settings: Settings,
) -> AssistantResponse:
    """Append the disclaimer and prepend the warning banner on policy errors."""
    policy = validate_output(
        response,
        ValidationContext(
            assistant=response.assistant,
            rag_sources=build_rag_sources(context),
            web_sources=build_web_sources(context.web_results),
            finance_model=context.finance_model,
            requires_retrieval=plan.requires_retrieval,
            requires_web_search=plan.requires_web_search,
            required_sections=plan.sections,
        ),
        settings,
    )

    sections = dict(response.sections)
    if policy.appended_disclaimer:
        sections["Disclaimer"] = policy.appended_disclaimer

    if not policy.valid and sections:
        logger.warning(
            f"Policy validation errors: {[i.code for i in policy.errors]}",
            extra={"assistant": response.assistant},
        )
        first = next(iter(sections))
        sections[first] = VALIDATION_BANNER + sections[first]

    return response.model_copy(update={"sections": sections})
