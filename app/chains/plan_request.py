"""Stage A planner: turn a free-text request into a structured PlannerOutput.

Heuristics are derived first (cheap, deterministic) and handed to the mini
model as hints. Any LLM failure falls back to a plan built from the same
heuristics, so planning never raises except for quota denial.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from app.chains.assistant_prompts import get_planner_developer_prompt, get_planner_system_prompt
from app.core.config import Settings, get_settings
from app.core.exceptions import QuotaError
from app.core.llm import format_validation_error
from app.core.llm_client import LLMClient, Telemetry, get_shared_client
from app.core.logging import get_logger
from app.core.planner_heuristics import (
    SOURCES_SECTION,
    HeuristicsStrategy,
    RegexHeuristics,
    with_sources_section,
)
from app.core.quota import QuotaEnforcer
from app.core.quota_guard import preflight_planner_check
from app.core.schemas_assistant import Heuristics, PlannerInput, PlannerOutput

logger = get_logger(__name__)

PLANNER_SCHEMA_NAME = "PlannerOutput"
PLANNER_SCHEMA_DESCRIPTION = "Structured plan for Business Track AI executor"
PLANNER_TEMPERATURE = 0.3
PLANNER_CACHE_TAG = "planner:v1"


def build_planner_user_message(planner_input: PlannerInput, heuristics: Heuristics) -> str:
    """JSON payload of the request plus heuristic hints."""
    payload: dict[str, Any] = {
        "assistant": planner_input.assistant,
        "input": planner_input.input,
        "tenant_id": planner_input.tenant_id,
        "user_id": planner_input.user_id,
    }
    if planner_input.extra is not None:
        payload["extra"] = planner_input.extra.model_dump(exclude_none=True)
    payload["heuristics"] = {
        "suggested_query_terms": heuristics.query_terms,
        "suggested_requires_retrieval": heuristics.requires_retrieval,
        "suggested_requires_web_search": heuristics.requires_web_search,
    }
    return json.dumps(payload, indent=2, default=str)


def build_planner_messages(planner_input: PlannerInput, heuristics: Heuristics) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": get_planner_system_prompt(1)},
        {"role": "developer", "content": get_planner_developer_prompt(1)},
        {"role": "user", "content": build_planner_user_message(planner_input, heuristics)},
    ]


def build_fallback_plan(planner_input: PlannerInput, heuristics: Heuristics) -> PlannerOutput:
    """Plan built purely from heuristics. Never escalates."""
    return PlannerOutput(
        task=planner_input.assistant,
        requires_retrieval=heuristics.requires_retrieval,
        requires_web_search=heuristics.requires_web_search,
        query_terms=list(heuristics.query_terms),
        sections=list(heuristics.sections) or [SOURCES_SECTION],
        metrics_needed=list(heuristics.metrics_needed),
        escalate_model=False,
    )


def ensure_sources_section(plan: PlannerOutput) -> PlannerOutput:
    """Force "Sources" into sections when retrieval or web search is required."""
    needed = plan.requires_retrieval or plan.requires_web_search
    sections = with_sources_section(plan.sections, needed)
    if sections == plan.sections:
        return plan
    return plan.model_copy(update={"sections": sections})


async def plan(
    planner_input: PlannerInput,
    client: LLMClient | None = None,
    settings: Settings | None = None,
    heuristics: HeuristicsStrategy | None = None,
) -> PlannerOutput:
    """
    Plan an assistant request (Stage A).

    Args:
        planner_input: Validated request envelope
        client: LLM client (created from settings if omitted)
        settings: App settings
        heuristics: Strategy for deriving hints and the fallback plan

    Returns:
        PlannerOutput; the heuristic fallback when the model call fails
    """
    settings = settings or get_settings()
    strategy = heuristics or RegexHeuristics()
    hints = strategy.derive(planner_input)

    try:
        client = client or get_shared_client(settings)
        result = await client.chat_structured(
            PlannerOutput,
            build_planner_messages(planner_input, hints),
            schema_name=PLANNER_SCHEMA_NAME,
            description=PLANNER_SCHEMA_DESCRIPTION,
            model=settings.MODEL_MINI,
            max_output_tokens=settings.MAX_TOKENS_PLANNER,
            temperature=PLANNER_TEMPERATURE,
            cache_tag=PLANNER_CACHE_TAG,
            telemetry=Telemetry(
                tenant_id=planner_input.tenant_id,
                user_id=planner_input.user_id,
                assistant=planner_input.assistant,
                meta={"stage": "planner"},
            ),
        )
        planned = ensure_sources_section(result.data)
        logger.info(
            f"Planned {planner_input.assistant}: retrieval={planned.requires_retrieval} "
            f"web_search={planned.requires_web_search} sections={len(planned.sections)}",
            extra={"tenant_id": planner_input.tenant_id, "user_id": planner_input.user_id},
        )
        return planned
    except Exception as e:
        logger.warning(
            f"Planner LLM failed, using heuristic fallback plan: {e}",
            extra={"tenant_id": planner_input.tenant_id, "user_id": planner_input.user_id},
        )
        return build_fallback_plan(planner_input, hints)


async def plan_with_quota_check(
    planner_input: PlannerInput,
    client: LLMClient | None = None,
    quota: QuotaEnforcer | None = None,
    settings: Settings | None = None,
    heuristics: HeuristicsStrategy | None = None,
) -> PlannerOutput:
    """
    Planner quota preflight, then `plan`.

    Raises:
        QuotaError: Planned usage would exceed a quota or per-request cap
    """
    settings = settings or get_settings()
    quota = quota or QuotaEnforcer(settings)
    try:
        await preflight_planner_check(
            tenant_id=planner_input.tenant_id,
            user_id=planner_input.user_id,
            input_length=len(planner_input.input),
            quota=quota,
        )
    except QuotaError as e:
        logger.error(
            f"Planner quota preflight failed: {e}",
            extra={"tenant_id": planner_input.tenant_id, "user_id": planner_input.user_id},
        )
        raise

    return await plan(planner_input, client=client, settings=settings, heuristics=heuristics)


def validate_planner_input(data: Any) -> tuple[bool, PlannerInput | None, list[str]]:
    """Validate a raw payload. Returns (ok, input or None, "path: message" errors)."""
    try:
        return True, PlannerInput.model_validate(data), []
    except ValidationError as e:
        return False, None, format_validation_error(e).split("; ")
