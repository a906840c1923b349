from __future__ import annotations

import pytest

from visibility.models.analysis import Query, QueryStatus
from visibility.services import metrics


def _query(rank: int, brands=(), sites=(), status=QueryStatus.COMPLETED, topic_id="t1", visibility=None) -> Query:
    return Query(
        id=f"q{rank}-{len(brands)}-{len(sites)}",
        analysis_id="a1",
        query_text="q",
        topic_id=topic_id,
        status=status,
        brands_mentioned=list(brands),
        focused_brand_rank=rank,
        visibility=visibility if visibility is not None else (100 if rank == 1 else (50 if rank else 0)),
        websites_cited=list(sites),
    )


def test_compute_progress_counts_completed_and_failed():
    assert metrics.compute_progress({"completed": 3, "failed": 1, "pending": 4}) == 50
    assert metrics.compute_progress({"completed": 1, "processing": 2}) == 33
    assert metrics.compute_progress({"completed": 1, "pending": 1, "processing": 6}) == 13
    assert metrics.compute_progress({}) == 0


def test_overall_visibility_and_average_rank():
    queries = [_query(1), _query(3), _query(0), _query(0)]
    assert metrics.overall_visibility(queries) == 50.0
    assert metrics.average_rank(queries) == 2.0
    assert metrics.weighted_visibility(queries) == 37.5
    assert metrics.average_rank([_query(0)]) == 0.0
    assert metrics.overall_visibility([]) == 0.0


def test_competitor_stats_counts_positions():
    queries = [
        _query(1, brands=["Focus", "Rival"]),
        _query(0, brands=["Rival", "Other"]),
    ]
    stats = metrics.competitor_stats(queries)
    assert stats[0] == {
        "brand_name": "Rival",
        "mention_count": 2,
        "mention_percentage": 100.0,
        "average_rank": 1.5,
    }
    assert {row["brand_name"] for row in stats} == {"Rival", "Focus", "Other"}


def test_extract_domain_strips_www():
    assert metrics.extract_domain("https://www.shiksha.com/mba") == "shiksha.com"
    assert metrics.extract_domain("http://careers360.com") == "careers360.com"
    assert metrics.extract_domain("not a url") == "not a url"


def test_source_stats_group_by_domain():
    queries = [
        _query(1, sites=["https://www.a.com/x", "https://a.com/y"]),
        _query(0, sites=["https://b.org"]),
    ]
    stats = metrics.source_stats(queries)
    assert stats[0] == {"url": "a.com", "domain": "a.com", "citation_count": 2}
    assert stats[1]["citation_count"] == 1


def test_topic_stats_counts_unique_citations():
    queries = [_query(2, sites=["https://a.com", "https://b.com"]), _query(0, sites=["https://a.com"])]
    stats = metrics.topic_stats(queries)
    assert stats == {
        "visibility_percentage": 50.0,
        "average_rank": 2.0,
        "total_citations": 2,
        "queries_with_mention": 1,
    }


@pytest.mark.asyncio
async def test_calculate_all_metrics_ignores_failed_queries(store):
    analysis = await store.create_analysis({"institution_name": "Focus"})
    topic = await store.create_topic({"analysis_id": analysis["id"], "topic_name": "T", "topic_order": 1})
    rows = await store.create_queries(
        [
            {"analysis_id": analysis["id"], "topic_id": topic["id"], "query_text": "q1"},
            {"analysis_id": analysis["id"], "topic_id": topic["id"], "query_text": "q2"},
            {"analysis_id": analysis["id"], "topic_id": topic["id"], "query_text": "q3"},
        ]
    )
    await store.update_query(
        rows[0]["id"],
        status="completed",
        brands_mentioned=["Focus", "Rival"],
        focused_brand_rank=1,
        visibility=100,
        websites_cited=["https://www.rival.edu"],
    )
    await store.update_query(
        rows[1]["id"],
        status="completed",
        brands_mentioned=["Rival"],
        focused_brand_rank=0,
        visibility=0,
        websites_cited=[],
    )
    await store.update_query(rows[2]["id"], status="failed", error_message="boom")

    totals = await metrics.calculate_all_metrics(store, analysis["id"])

    assert totals["overall_visibility_score"] == 50.0
    assert totals["total_queries"] == 3
    assert totals["queries_mentioned"] == 1
    saved = await store.get_analysis(analysis["id"])
    assert saved["average_rank"] == 1.0
    competitors = await store.get_competitors(analysis["id"])
    assert competitors[0]["brand_name"] == "Rival"
    assert competitors[0]["mention_count"] == 2
    sources = await store.get_sources(analysis["id"])
    assert sources == [
        {**sources[0], "url": "rival.edu", "domain": "rival.edu", "citation_count": 1, "analysis_id": analysis["id"]}
    ]
    topics = await store.get_topics(analysis["id"])
    assert topics[0]["queries_with_mention"] == 1


@pytest.mark.asyncio
async def test_calculate_all_metrics_tolerates_no_completed_queries(store):
    analysis = await store.create_analysis({"institution_name": "Focus"})
    await store.create_queries([{"analysis_id": analysis["id"], "query_text": "q", "status": "failed"}])
    totals = await metrics.calculate_all_metrics(store, analysis["id"])
    assert totals["overall_visibility_score"] == 0.0
    assert await store.get_competitors(analysis["id"]) == []
