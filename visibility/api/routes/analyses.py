from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger

from visibility.agents.orchestrator import AnalysisOrchestrator
from visibility.llm_client import LLMConfigurationError, LLMError
from visibility.models.analysis import Query
from visibility.models.schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    CancelResponse,
    CompetitorReport,
    ProgressResponse,
    QueryReport,
    ReportResponse,
    SourceReport,
    TopicReport,
)

router = APIRouter(prefix="/api", tags=["analyses"])

_orchestrator: AnalysisOrchestrator | None = None


def get_orchestrator() -> AnalysisOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = AnalysisOrchestrator()
    return _orchestrator


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze(
    request: AnalyzeRequest,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    """Generate queries for an institution and start processing them in the background."""
    if not request.institution_name.strip():
        raise HTTPException(status_code=400, detail="Institution name is required")

    try:
        analysis_id = await orchestrator.start_analysis(request.institution_name)
    except LLMConfigurationError as exc:
        logger.error(f"Analysis not started, provider misconfigured: {exc}")
        raise HTTPException(status_code=500, detail="Text-generation provider is not configured") from exc
    except LLMError as exc:
        logger.error(f"Topic generation failed for '{request.institution_name}': {exc}")
        raise HTTPException(status_code=502, detail=f"Failed to generate queries: {exc}") from exc

    analysis = await orchestrator.store.get_analysis(analysis_id) or {}
    return AnalyzeResponse(
        analysis_id=analysis_id,
        total_queries=int(analysis.get("total_queries") or 0),
        message="Analysis started",
    )


@router.get("/progress/{analysis_id}", response_model=ProgressResponse)
async def progress(
    analysis_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    snapshot = await orchestrator.get_progress(analysis_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return ProgressResponse(
        id=snapshot.id,
        status=snapshot.status.value,
        progress=snapshot.progress,
        is_complete=snapshot.is_complete,
        is_failed=snapshot.is_failed,
        completed_at=snapshot.completed_at,
        is_cancelled=snapshot.is_cancelled,
        cancelled_at=snapshot.cancelled_at,
    )


@router.post("/analyze/{analysis_id}/cancel", response_model=CancelResponse)
async def cancel(
    analysis_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    if await orchestrator.store.get_analysis(analysis_id) is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return CancelResponse(analysis_id=analysis_id, cancelled=orchestrator.cancel(analysis_id))


@router.get("/report/{analysis_id}", response_model=ReportResponse)
async def report(
    analysis_id: str,
    orchestrator: AnalysisOrchestrator = Depends(get_orchestrator),
):
    """Full report: analysis totals, topics with their queries, competitors and sources."""
    store = orchestrator.store
    analysis = await store.get_analysis(analysis_id)
    if analysis is None:
        raise HTTPException(status_code=404, detail="Analysis not found")

    queries = [Query.from_row(row) for row in await store.get_queries(analysis_id)]
    by_topic: dict[str, list[QueryReport]] = {}
    for query in queries:
        by_topic.setdefault(query.topic_id or "", []).append(
            QueryReport(
                id=query.id,
                query_text=query.query_text,
                status=query.status.value,
                answer=query.answer,
                brands_mentioned=query.brands_mentioned,
                focused_brand_rank=query.focused_brand_rank,
                visibility=query.visibility,
                websites_cited=query.websites_cited,
                error_message=query.error_message,
            )
        )

    topics = [
        TopicReport(
            id=str(row["id"]),
            topic_name=row.get("topic_name") or "",
            topic_order=int(row.get("topic_order") or 0),
            total_queries=int(row.get("total_queries") or 0),
            visibility_percentage=float(row.get("visibility_percentage") or 0),
            average_rank=float(row.get("average_rank") or 0),
            total_citations=int(row.get("total_citations") or 0),
            queries_with_mention=int(row.get("queries_with_mention") or 0),
            queries=by_topic.get(str(row["id"]), []),
        )
        for row in await store.get_topics(analysis_id)
    ]
    competitors = [
        CompetitorReport(
            brand_name=row["brand_name"],
            mention_count=int(row.get("mention_count") or 0),
            mention_percentage=float(row.get("mention_percentage") or 0),
            average_rank=float(row.get("average_rank") or 0),
        )
        for row in await store.get_competitors(analysis_id)
    ]
    sources = [
        SourceReport(
            url=row["url"],
            domain=row.get("domain"),
            citation_count=int(row.get("citation_count") or 0),
        )
        for row in await store.get_sources(analysis_id)
    ]
    return ReportResponse(analysis=analysis, topics=topics, competitors=competitors, sources=sources)
