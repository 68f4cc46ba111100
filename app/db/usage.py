"""Usage log persistence and the daily token sums used for quota checks.

supabase-py is synchronous; every call runs in a worker thread so the event
loop is never blocked.
"""

import asyncio
from typing import Any

from supabase import Client

from app.core.logging import get_logger
from app.core.schemas_assistant import UsageRow
from app.db.supabase_client import get_supabase

logger = get_logger(__name__)

USAGE_TABLE = "usage_logs"
SUM_TOKENS_RPC = "sum_usage_tokens"


class SupabaseUsageStore:
    """UsageStore backed by the `usage_logs` table."""

    def __init__(self, client: Client | None = None):
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def record_usage(self, row: UsageRow) -> None:
        """
        Append a usage row.

        Raises:
            Exception: If the insert fails
        """
        payload = row.model_dump(mode="json")

        def _insert() -> Any:
            return self.client.table(USAGE_TABLE).insert(payload).execute()

        try:
            await asyncio.to_thread(_insert)
            logger.debug(
                f"Recorded usage: {row.total_tokens} tokens, {row.cost_cents}¢",
                extra={"tenant_id": row.tenant_id, "user_id": row.user_id},
            )
        except Exception as e:
            logger.error(
                f"Failed to record usage: {e}",
                extra={"tenant_id": row.tenant_id, "user_id": row.user_id},
            )
            raise

    async def _sum_tokens(self, column: str, value: str, since_iso: str) -> int:
        def _call() -> Any:
            return self.client.rpc(
                SUM_TOKENS_RPC,
                {"filter_column": column, "filter_value": value, "since": since_iso},
            ).execute()

        response = await asyncio.to_thread(_call)
        data = response.data
        if isinstance(data, list):
            data = data[0] if data else 0
        if isinstance(data, dict):
            data = next(iter(data.values()), 0)
        return int(data or 0)

    async def sum_tokens_by_user(self, user_id: str, since_iso: str) -> int:
        """Total tokens (in + out) recorded for a user since `since_iso`."""
        return await self._sum_tokens("user_id", user_id, since_iso)

    async def sum_tokens_by_tenant(self, tenant_id: str, since_iso: str) -> int:
        """Total tokens (in + out) recorded for a tenant since `since_iso`."""
        return await self._sum_tokens("tenant_id", tenant_id, since_iso)

