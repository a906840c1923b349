from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class AnalyzeRequest(BaseModel):
    institution_name: str = Field(..., min_length=1, max_length=300)


class AnalyzeResponse(BaseModel):
    analysis_id: str
    total_queries: int
    message: str


class ProgressResponse(BaseModel):
    id: str
    status: str
    progress: int
    is_complete: bool
    is_failed: bool
    completed_at: str | None = None
    is_cancelled: bool = False
    cancelled_at: str | None = None


class CancelResponse(BaseModel):
    analysis_id: str
    cancelled: bool


class QueryReport(BaseModel):
    id: str
    query_text: str
    status: str
    answer: str | None = None
    brands_mentioned: list[str] = []
    focused_brand_rank: int = 0
    visibility: int = 0
    websites_cited: list[str] = []
    error_message: str | None = None


class TopicReport(BaseModel):
    id: str
    topic_name: str
    topic_order: int = 0
    total_queries: int = 0
    visibility_percentage: float = 0.0
    average_rank: float = 0.0
    total_citations: int = 0
    queries_with_mention: int = 0
    queries: list[QueryReport] = []


class CompetitorReport(BaseModel):
    brand_name: str
    mention_count: int
    mention_percentage: float
    average_rank: float


class SourceReport(BaseModel):
    url: str
    domain: str | None = None
    citation_count: int


class ReportResponse(BaseModel):
    analysis: dict[str, Any]
    topics: list[TopicReport]
    competitors: list[CompetitorReport]
    sources: list[SourceReport]
