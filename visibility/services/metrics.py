"""Aggregate per-query results into analysis, topic, competitor and source metrics.

Only completed queries contribute. Failed queries carry no answer and would
otherwise drag every percentage down.
"""
from __future__ import annotations

import math
from collections import defaultdict
from typing import Any, Iterable, Mapping
from urllib.parse import urlparse

from loguru import logger

from visibility.models.analysis import Query, QueryStatus
from visibility.services.store import AnalysisStore, utc_now


def compute_progress(status_counts: Mapping[str, int]) -> int:
    """Percent of queries in a terminal state, rounded half up."""
    total = sum(status_counts.values())
    if total <= 0:
        return 0
    terminal = status_counts.get(QueryStatus.COMPLETED.value, 0) + status_counts.get(QueryStatus.FAILED.value, 0)
    return min(100, math.floor(terminal * 100 / total + 0.5))


def completed_only(queries: Iterable[Query]) -> list[Query]:
    return [query for query in queries if query.status == QueryStatus.COMPLETED]


def _mentioned(queries: list[Query]) -> list[Query]:
    return [query for query in queries if query.focused_brand_rank > 0]


def overall_visibility(queries: list[Query]) -> float:
    if not queries:
        return 0.0
    return len(_mentioned(queries)) / len(queries) * 100


def average_rank(queries: list[Query]) -> float:
    mentioned = _mentioned(queries)
    if not mentioned:
        return 0.0
    return sum(query.focused_brand_rank for query in mentioned) / len(mentioned)


def weighted_visibility(queries: list[Query]) -> float:
    if not queries:
        return 0.0
    return sum(query.visibility for query in queries) / len(queries)


def extract_domain(url: str) -> str:
    text = (url or "").strip()
    try:
        hostname = urlparse(text).hostname
    except ValueError:
        hostname = None
    if not hostname:
        return text
    return hostname[4:] if hostname.startswith("www.") else hostname


def competitor_stats(queries: list[Query]) -> list[dict[str, Any]]:
    """Every brand named across the answers, the focus institution included."""
    positions: dict[str, list[int]] = defaultdict(list)
    for query in queries:
        for index, brand in enumerate(query.brands_mentioned):
            if brand.strip():
                positions[brand].append(index + 1)

    total = len(queries)
    stats = [
        {
            "brand_name": brand,
            "mention_count": len(ranks),
            "mention_percentage": len(ranks) / total * 100 if total else 0.0,
            "average_rank": sum(ranks) / len(ranks),
        }
        for brand, ranks in positions.items()
    ]
    stats.sort(key=lambda row: row["mention_count"], reverse=True)
    return stats


def source_stats(queries: list[Query]) -> list[dict[str, Any]]:
    counts: dict[str, int] = defaultdict(int)
    for query in queries:
        for url in query.websites_cited:
            domain = extract_domain(url)
            if domain:
                counts[domain] += 1
    stats = [
        {"url": domain, "domain": domain, "citation_count": count}
        for domain, count in counts.items()
    ]
    stats.sort(key=lambda row: row["citation_count"], reverse=True)
    return stats


def topic_stats(topic_queries: list[Query]) -> dict[str, Any]:
    unique_urls = {url for query in topic_queries for url in query.websites_cited}
    return {
        "visibility_percentage": overall_visibility(topic_queries),
        "average_rank": average_rank(topic_queries),
        "total_citations": len(unique_urls),
        "queries_with_mention": len(_mentioned(topic_queries)),
    }


async def calculate_all_metrics(store: AnalysisStore, analysis_id: str) -> dict[str, Any]:
    """Recompute and persist every aggregate for an analysis; returns the analysis totals."""
    rows = await store.get_queries(analysis_id)
    all_queries = [Query.from_row(row) for row in rows]
    queries = completed_only(all_queries)

    totals = {
        "overall_visibility_score": overall_visibility(queries),
        "weighted_visibility_score": weighted_visibility(queries),
        "average_rank": average_rank(queries),
        "total_queries": len(all_queries),
        "queries_mentioned": len(_mentioned(queries)),
        "updated_at": utc_now(),
    }
    await store.update_analysis(analysis_id, **totals)

    competitors = competitor_stats(queries)
    if competitors:
        await store.upsert_competitors([{**row, "analysis_id": analysis_id} for row in competitors])

    sources = source_stats(queries)
    if sources:
        await store.upsert_sources([{**row, "analysis_id": analysis_id} for row in sources])

    by_topic: dict[str, list[Query]] = defaultdict(list)
    for query in queries:
        if query.topic_id:
            by_topic[query.topic_id].append(query)
    for topic in await store.get_topics(analysis_id):
        await store.update_topic(str(topic["id"]), **topic_stats(by_topic.get(str(topic["id"]), [])))

    logger.info(
        f"Metrics for {analysis_id}: visibility={totals['overall_visibility_score']:.1f}% "
        f"avg_rank={totals['average_rank']:.2f} competitors={len(competitors)} sources={len(sources)}"
    )
    return totals
