"""Preflight quota checks run before the planner and executor stages."""

from app.core.config import Settings, get_settings
from app.core.quota import QuotaEnforcer
from app.core.schemas_assistant import PlannerOutput
from app.core.usage_meter import estimate_usage


def is_quota_enforcement_enabled(settings: Settings | None = None) -> bool:
    settings = settings or get_settings()
    return not settings.DISABLE_QUOTA_ENFORCEMENT


async def preflight_quota_guard(
    plan: PlannerOutput,
    tenant_id: str,
    user_id: str,
    input_length: int,
    quota: QuotaEnforcer,
) -> None:
    """
    Pessimistic executor estimate checked against quotas.

    Model is the escalation model when the plan escalates; context tokens are
    the full CONTEXT_TOKEN_LIMIT when retrieval is planned.

    Raises:
        QuotaError: Quota or per-request cap would be exceeded
    """
    settings = quota.settings
    if not is_quota_enforcement_enabled(settings):
        return

    model = settings.MODEL_ESCALATION if plan.escalate_model else settings.MODEL_MINI
    estimate = estimate_usage(
        model=model,
        input_length=input_length,
        context_tokens=settings.CONTEXT_TOKEN_LIMIT if plan.requires_retrieval else 0,
        max_output_tokens=settings.MAX_TOKENS_EXECUTOR,
    )
    await quota.assert_quotas_ok(
        tenant_id=tenant_id,
        user_id=user_id,
        planned_tokens=estimate["estimated_tokens"],
        planned_cost_cents=estimate["estimated_cost_cents"],
    )


async def preflight_planner_check(
    tenant_id: str,
    user_id: str,
    input_length: int,
    quota: QuotaEnforcer,
) -> None:
    """
    Planner estimate (mini model, no context) checked against quotas.

    Raises:
        QuotaError: Quota or per-request cap would be exceeded
    """
    settings = quota.settings
    if not is_quota_enforcement_enabled(settings):
        return

    estimate = estimate_usage(
        model=settings.MODEL_MINI,
        input_length=input_length,
        context_tokens=0,
        max_output_tokens=settings.MAX_TOKENS_PLANNER,
    )
    await quota.assert_quotas_ok(
        tenant_id=tenant_id,
        user_id=user_id,
        planned_tokens=estimate["estimated_tokens"],
        planned_cost_cents=estimate["estimated_cost_cents"],
    )
