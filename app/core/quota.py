"""Quota enforcement: daily per-user/per-tenant tokens and per-request caps.

The quota window is the UTC calendar day; quotas reset at the next UTC
midnight. Store errors fail closed unless QUOTA_SOFT_FAIL is set.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from app.core.config import Settings, get_settings
from app.core.exceptions import QuotaError
from app.core.logging import get_logger
from app.core.usage_meter import UsageStore

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def start_of_day_utc(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def next_midnight_utc(now: datetime) -> datetime:
    return start_of_day_utc(now) + timedelta(days=1)


@dataclass
class QuotaCheckResult:
    ok: bool
    reason: str | None = None
    resets_at_iso: str | None = None
    current_usage: dict[str, Any] = field(default_factory=dict)


class QuotaEnforcer:
    """Checks planned usage against daily quotas and per-request caps."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: UsageStore | None = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self._now = now

    def _window(self) -> tuple[str, str]:
        """(since_iso, resets_at_iso) for the current UTC day."""
        now = self._now()
        return start_of_day_utc(now).isoformat(), next_midnight_utc(now).isoformat()

    async def check_quotas(
        self,
        tenant_id: str,
        user_id: str,
        planned_tokens: int,
        planned_cost_cents: float,
    ) -> QuotaCheckResult:
        """
        Check, in order: user daily tokens, tenant daily tokens, per-request
        tokens, per-request cost. Limits are exceeded only when strictly
        greater than the configured value.
        """
        s = self.settings
        since_iso, resets_at_iso = self._window()

        try:
            if self.store is None:
                raise RuntimeError("No usage store configured")

            user_tokens = await self.store.sum_tokens_by_user(user_id, since_iso)
            if user_tokens + planned_tokens > s.DAILY_TOKEN_QUOTA_PER_USER:
                return QuotaCheckResult(
                    ok=False,
                    reason=(
                        f"User daily token quota exceeded. Used {user_tokens} of "
                        f"{s.DAILY_TOKEN_QUOTA_PER_USER} tokens today. "
                        f"Request would add {planned_tokens} tokens."
                    ),
                    resets_at_iso=resets_at_iso,
                    current_usage={"tokens": user_tokens, "cost_cents": 0},
                )

            tenant_tokens = await self.store.sum_tokens_by_tenant(tenant_id, since_iso)
            if tenant_tokens + planned_tokens > s.DAILY_TOKEN_QUOTA_PER_TENANT:
                return QuotaCheckResult(
                    ok=False,
                    reason=(
                        f"Tenant daily token quota exceeded. Used {tenant_tokens} of "
                        f"{s.DAILY_TOKEN_QUOTA_PER_TENANT} tokens today. "
                        f"Request would add {planned_tokens} tokens."
                    ),
                    resets_at_iso=resets_at_iso,
                    current_usage={"tokens": tenant_tokens, "cost_cents": 0},
                )
        except Exception as e:
            logger.error(
                f"Quota check failed: {e}",
                extra={"tenant_id": tenant_id, "user_id": user_id},
            )
            if s.QUOTA_SOFT_FAIL:
                logger.warning("Quota check failed (soft-fail enabled), allowing request")
                return QuotaCheckResult(ok=True)
            return QuotaCheckResult(
                ok=False,
                reason=f"Quota check failed due to system error: {e}",
            )

        if planned_tokens > s.MAX_TOKENS_PER_REQUEST:
            return QuotaCheckResult(
                ok=False,
                reason=(
                    f"Request exceeds maximum tokens per request. Planned {planned_tokens} "
                    f"tokens, limit is {s.MAX_TOKENS_PER_REQUEST}."
                ),
            )

        if planned_cost_cents > s.MAX_COST_PER_REQUEST_CENTS:
            return QuotaCheckResult(
                ok=False,
                reason=(
                    f"Request exceeds maximum cost per request. Planned cost is "
                    f"{planned_cost_cents} cents, limit is {s.MAX_COST_PER_REQUEST_CENTS} cents."
                ),
            )

        return QuotaCheckResult(
            ok=True,
            resets_at_iso=resets_at_iso,
            current_usage={"tokens": user_tokens, "cost_cents": 0},
        )

    async def assert_quotas_ok(
        self,
        tenant_id: str,
        user_id: str,
        planned_tokens: int,
        planned_cost_cents: float,
    ) -> None:
        """
        Raises:
            QuotaError: When any quota or cap would be exceeded
        """
        result = await self.check_quotas(tenant_id, user_id, planned_tokens, planned_cost_cents)
        if not result.ok:
            logger.warning(
                f"Quota denied: {result.reason}",
                extra={"tenant_id": tenant_id, "user_id": user_id},
            )
            raise QuotaError(
                result.reason or "Quota exceeded",
                resets_at_iso=result.resets_at_iso,
                current_usage=result.current_usage,
            )

    def enforce_per_request_caps(self, tokens: int, cost_cents: float) -> QuotaCheckResult:
        """Check actual usage against per-request caps without hitting the store."""
        s = self.settings
        if tokens > s.MAX_TOKENS_PER_REQUEST:
            return QuotaCheckResult(
                ok=False,
                reason=(
                    f"Request exceeds maximum tokens per request. Used {tokens} tokens, "
                    f"limit is {s.MAX_TOKENS_PER_REQUEST}."
                ),
            )
        if cost_cents > s.MAX_COST_PER_REQUEST_CENTS:
            return QuotaCheckResult(
                ok=False,
                reason=(
                    f"Request exceeds maximum cost per request. Cost is {cost_cents} cents, "
                    f"limit is {s.MAX_COST_PER_REQUEST_CENTS} cents."
                ),
            )
        return QuotaCheckResult(ok=True)

    def assert_per_request_caps_ok(self, tokens: int, cost_cents: float) -> None:
        result = self.enforce_per_request_caps(tokens, cost_cents)
        if not result.ok:
            raise QuotaError(result.reason or "Request caps exceeded")

    async def get_current_quota_usage(self, tenant_id: str, user_id: str) -> dict[str, Any]:
        """Today's usage and remaining allowance for a user and their tenant."""
        if self.store is None:
            raise RuntimeError("No usage store configured")

        s = self.settings
        since_iso, resets_at_iso = self._window()
        user_tokens, tenant_tokens = await asyncio.gather(
            self.store.sum_tokens_by_user(user_id, since_iso),
            self.store.sum_tokens_by_tenant(tenant_id, since_iso),
        )
        return {
            "user": {
                "tokens_used": user_tokens,
                "tokens_remaining": max(0, s.DAILY_TOKEN_QUOTA_PER_USER - user_tokens),
                "quota_limit": s.DAILY_TOKEN_QUOTA_PER_USER,
            },
            "tenant": {
                "tokens_used": tenant_tokens,
                "tokens_remaining": max(0, s.DAILY_TOKEN_QUOTA_PER_TENANT - tenant_tokens),
                "quota_limit": s.DAILY_TOKEN_QUOTA_PER_TENANT,
            },
            "resets_at_iso": resets_at_iso,
        }
