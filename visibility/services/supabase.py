from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any

from supabase import Client, create_client

from visibility.config import settings
from visibility.services import logger as log_service


def get_client() -> Client:
    if not settings.supabase_url or not settings.supabase_service_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set for the supabase store")
    return create_client(settings.supabase_url, settings.supabase_service_key)


_client: Client | None = None


def client() -> Client:
    global _client
    if _client is None:
        _client = get_client()
    return _client


async def _execute(query: Any, *, operation: str, table: str) -> Any:
    """Run blocking Supabase query execution in a worker thread."""
    try:
        result = await asyncio.to_thread(query.execute)
    except Exception as exc:
        log_service.log_db_operation(operation, table, "error", error=str(exc))
        raise
    log_service.log_db_operation(operation, table, "success")
    return result


class SupabaseAnalysisStore:
    """Analysis records kept in the Supabase tables described by ``schema.sql``."""

    def __init__(self, supabase_client: Client | None = None):
        self._client = supabase_client

    @property
    def db(self) -> Client:
        return self._client or client()

    # --- Analyses ---

    async def create_analysis(self, data: dict[str, Any]) -> dict[str, Any]:
        result = await _execute(self.db.table("analyses").insert(data), operation="insert", table="analyses")
        return result.data[0]

    async def get_analysis(self, analysis_id: str) -> dict[str, Any] | None:
        result = await _execute(
            self.db.table("analyses").select("*").eq("id", analysis_id),
            operation="select",
            table="analyses",
        )
        return result.data[0] if result.data else None

    async def update_analysis(self, analysis_id: str, **fields: Any) -> None:
        await _execute(
            self.db.table("analyses").update(fields).eq("id", analysis_id),
            operation="update",
            table="analyses",
        )

    async def claim_analysis(self, analysis_id: str, expected_status: str, **fields: Any) -> bool:
        # The status filter makes the check and the write one statement; no rows back means we lost.
        result = await _execute(
            self.db.table("analyses").update(fields).eq("id", analysis_id).eq("status", expected_status),
            operation="claim",
            table="analyses",
        )
        return bool(result.data)

    # --- Topics ---

    async def create_topic(self, data: dict[str, Any]) -> dict[str, Any]:
        result = await _execute(self.db.table("topics").insert(data), operation="insert", table="topics")
        return result.data[0]

    async def get_topics(self, analysis_id: str) -> list[dict[str, Any]]:
        result = await _execute(
            self.db.table("topics").select("*").eq("analysis_id", analysis_id).order("topic_order"),
            operation="select",
            table="topics",
        )
        return result.data or []

    async def update_topic(self, topic_id: str, **fields: Any) -> None:
        await _execute(
            self.db.table("topics").update(fields).eq("id", topic_id),
            operation="update",
            table="topics",
        )

    # --- Queries ---

    async def create_queries(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows:
            return []
        result = await _execute(self.db.table("queries").insert(rows), operation="insert", table="queries")
        return result.data or []

    async def get_queries(self, analysis_id: str) -> list[dict[str, Any]]:
        result = await _execute(
            self.db.table("queries")
            .select("*")
            .eq("analysis_id", analysis_id)
            .order("created_at")
            .order("query_order"),
            operation="select",
            table="queries",
        )
        return result.data or []

    async def update_query(self, query_id: str, **fields: Any) -> None:
        await _execute(
            self.db.table("queries").update(fields).eq("id", query_id),
            operation="update",
            table="queries",
        )

    async def mark_queries(self, query_ids: list[str], status: str) -> None:
        if not query_ids:
            return
        await _execute(
            self.db.table("queries").update({"status": status}).in_("id", query_ids),
            operation="update",
            table="queries",
        )

    async def count_queries_by_status(self, analysis_id: str) -> dict[str, int]:
        result = await _execute(
            self.db.table("queries").select("status").eq("analysis_id", analysis_id),
            operation="select",
            table="queries",
        )
        return dict(Counter(row.get("status") or "pending" for row in result.data or []))

    # --- Competitors & sources ---

    async def upsert_competitors(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        await _execute(
            self.db.table("competitors").upsert(rows, on_conflict="analysis_id,brand_name"),
            operation="upsert",
            table="competitors",
        )

    async def upsert_sources(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        await _execute(
            self.db.table("sources").upsert(rows, on_conflict="analysis_id,url"),
            operation="upsert",
            table="sources",
        )

    async def get_competitors(self, analysis_id: str) -> list[dict[str, Any]]:
        result = await _execute(
            self.db.table("competitors")
            .select("*")
            .eq("analysis_id", analysis_id)
            .order("mention_count", desc=True),
            operation="select",
            table="competitors",
        )
        return result.data or []

    async def get_sources(self, analysis_id: str) -> list[dict[str, Any]]:
        result = await _execute(
            self.db.table("sources")
            .select("*")
            .eq("analysis_id", analysis_id)
            .order("citation_count", desc=True),
            operation="select",
            table="sources",
        )
        return result.data or []
