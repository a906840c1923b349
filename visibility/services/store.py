from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

from visibility.config import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AnalysisStore(Protocol):
    async def create_analysis(self, data: dict[str, Any]) -> dict[str, Any]: ...
    async def get_analysis(self, analysis_id: str) -> dict[str, Any] | None: ...
    async def update_analysis(self, analysis_id: str, **fields: Any) -> None: ...
    async def claim_analysis(self, analysis_id: str, expected_status: str, **fields: Any) -> bool: ...
    async def create_topic(self, data: dict[str, Any]) -> dict[str, Any]: ...
    async def get_topics(self, analysis_id: str) -> list[dict[str, Any]]: ...
    async def update_topic(self, topic_id: str, **fields: Any) -> None: ...
    async def create_queries(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]: ...
    async def get_queries(self, analysis_id: str) -> list[dict[str, Any]]: ...
    async def update_query(self, query_id: str, **fields: Any) -> None: ...
    async def mark_queries(self, query_ids: list[str], status: str) -> None: ...
    async def count_queries_by_status(self, analysis_id: str) -> dict[str, int]: ...
    async def upsert_competitors(self, rows: list[dict[str, Any]]) -> None: ...
    async def upsert_sources(self, rows: list[dict[str, Any]]) -> None: ...
    async def get_competitors(self, analysis_id: str) -> list[dict[str, Any]]: ...
    async def get_sources(self, analysis_id: str) -> list[dict[str, Any]]: ...


class InMemoryAnalysisStore:
    """Process-local store with the same row shapes as the Supabase tables."""

    def __init__(self) -> None:
        self.analyses: dict[str, dict[str, Any]] = {}
        self.topics: dict[str, dict[str, Any]] = {}
        self.queries: dict[str, dict[str, Any]] = {}
        self.competitors: dict[tuple[str, str], dict[str, Any]] = {}
        self.sources: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._sequence = 0

    def _insert(self, table: dict[str, dict[str, Any]], data: dict[str, Any]) -> dict[str, Any]:
        self._sequence += 1
        row = {"id": str(uuid.uuid4()), "created_at": utc_now(), "_seq": self._sequence, **data}
        table[row["id"]] = row
        return _public(row)

    async def create_analysis(self, data: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            return self._insert(self.analyses, {"status": "pending", "progress": 0, **data})

    async def get_analysis(self, analysis_id: str) -> dict[str, Any] | None:
        row = self.analyses.get(str(analysis_id))
        return _public(row) if row else None

    async def update_analysis(self, analysis_id: str, **fields: Any) -> None:
        async with self._lock:
            if analysis_id in self.analyses:
                self.analyses[analysis_id].update(fields)

    async def claim_analysis(self, analysis_id: str, expected_status: str, **fields: Any) -> bool:
        """Apply ``fields`` only while the analysis is still in ``expected_status``."""
        async with self._lock:
            row = self.analyses.get(analysis_id)
            if row is None or row.get("status") != expected_status:
                return False
            row.update(fields)
            return True

    async def create_topic(self, data: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            return self._insert(self.topics, data)

    async def get_topics(self, analysis_id: str) -> list[dict[str, Any]]:
        rows = [row for row in self.topics.values() if row.get("analysis_id") == analysis_id]
        rows.sort(key=lambda row: (row.get("topic_order", 0), row["_seq"]))
        return [_public(row) for row in rows]

    async def update_topic(self, topic_id: str, **fields: Any) -> None:
        async with self._lock:
            if topic_id in self.topics:
                self.topics[topic_id].update(fields)

    async def create_queries(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        async with self._lock:
            return [self._insert(self.queries, {"status": "pending", **row}) for row in rows]

    async def get_queries(self, analysis_id: str) -> list[dict[str, Any]]:
        rows = [row for row in self.queries.values() if row.get("analysis_id") == analysis_id]
        rows.sort(key=lambda row: row["_seq"])
        return [_public(row) for row in rows]

    async def update_query(self, query_id: str, **fields: Any) -> None:
        async with self._lock:
            if query_id in self.queries:
                self.queries[query_id].update(fields)

    async def mark_queries(self, query_ids: list[str], status: str) -> None:
        async with self._lock:
            for query_id in query_ids:
                if query_id in self.queries:
                    self.queries[query_id]["status"] = status

    async def count_queries_by_status(self, analysis_id: str) -> dict[str, int]:
        return dict(
            Counter(
                row.get("status", "pending")
                for row in self.queries.values()
                if row.get("analysis_id") == analysis_id
            )
        )

    async def upsert_competitors(self, rows: list[dict[str, Any]]) -> None:
        async with self._lock:
            _upsert(self.competitors, rows, "brand_name")

    async def upsert_sources(self, rows: list[dict[str, Any]]) -> None:
        async with self._lock:
            _upsert(self.sources, rows, "url")

    async def get_competitors(self, analysis_id: str) -> list[dict[str, Any]]:
        rows = [dict(row) for (aid, _), row in self.competitors.items() if aid == analysis_id]
        return sorted(rows, key=lambda row: row.get("mention_count", 0), reverse=True)

    async def get_sources(self, analysis_id: str) -> list[dict[str, Any]]:
        rows = [dict(row) for (aid, _), row in self.sources.items() if aid == analysis_id]
        return sorted(rows, key=lambda row: row.get("citation_count", 0), reverse=True)


def _public(row: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in row.items() if not key.startswith("_")}


def _upsert(
    table: dict[tuple[str, str], dict[str, Any]],
    rows: Iterable[dict[str, Any]],
    key_field: str,
) -> None:
    for row in rows:
        key = (row["analysis_id"], row[key_field])
        existing = table.get(key)
        table[key] = {**existing, **row} if existing else {"id": str(uuid.uuid4()), **row}


_store: AnalysisStore | None = None


def get_store() -> AnalysisStore:
    global _store
    if _store is None:
        backend = settings.store_backend.lower().strip()
        if backend == "supabase":
            from visibility.services.supabase import SupabaseAnalysisStore

            _store = SupabaseAnalysisStore()
        elif backend == "memory":
            _store = InMemoryAnalysisStore()
        else:
            raise ValueError(f"Unsupported STORE_BACKEND: {settings.store_backend}")
    return _store
