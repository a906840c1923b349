from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class AnalysisStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AnalysisStatus.COMPLETED, AnalysisStatus.FAILED)


class QueryStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueryStatus.COMPLETED, QueryStatus.FAILED)


class MatchStrategy(StrEnum):
    EXACT = "exact"
    SUBSTRING = "substring"
    CITY_STRIPPED = "city_stripped"
    ACRONYM = "acronym"
    SIMILARITY = "similarity"
    NONE = "none"


class Confidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


@dataclass(slots=True)
class Query:
    id: str
    analysis_id: str
    query_text: str
    topic_id: str | None = None
    query_order: int = 0
    focused_brand: str = ""
    include_institution_mention: bool = False
    status: QueryStatus = QueryStatus.PENDING
    answer: str | None = None
    brands_mentioned: list[str] = field(default_factory=list)
    focused_brand_rank: int = 0
    visibility: int = 0
    websites_cited: list[str] = field(default_factory=list)
    canonical_brand: str | None = None
    error_message: str | None = None
    processed_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Query":
        return cls(
            id=str(row["id"]),
            analysis_id=str(row.get("analysis_id") or ""),
            query_text=row.get("query_text") or "",
            topic_id=str(row["topic_id"]) if row.get("topic_id") else None,
            query_order=int(row.get("query_order") or 0),
            focused_brand=row.get("focused_brand") or "",
            include_institution_mention=bool(row.get("include_institution_mention")),
            status=QueryStatus(row.get("status") or QueryStatus.PENDING),
            answer=row.get("answer"),
            brands_mentioned=_str_list(row.get("brands_mentioned")),
            focused_brand_rank=int(row.get("focused_brand_rank") or 0),
            visibility=_parse_visibility(row.get("visibility")),
            websites_cited=_str_list(row.get("websites_cited")),
            canonical_brand=row.get("canonical_brand"),
            error_message=row.get("error_message"),
            processed_at=row.get("processed_at"),
        )


def _parse_visibility(value: Any) -> int:
    # Older rows store visibility as a "50%" string.
    if value is None:
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip().rstrip("%")
    try:
        return int(float(text))
    except ValueError:
        return 0


@dataclass(slots=True)
class Analysis:
    id: str
    institution_name: str
    status: AnalysisStatus = AnalysisStatus.PENDING
    progress: int = 0
    location: str | None = None
    institution_type: str | None = None
    total_queries: int = 0
    completed_at: str | None = None
    cancelled_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Analysis":
        return cls(
            id=str(row["id"]),
            institution_name=row.get("institution_name") or "",
            status=AnalysisStatus(row.get("status") or AnalysisStatus.PENDING),
            progress=int(row.get("progress") or 0),
            location=row.get("location"),
            institution_type=row.get("institution_type"),
            total_queries=int(row.get("total_queries") or 0),
            completed_at=row.get("completed_at"),
            cancelled_at=row.get("cancelled_at"),
        )


@dataclass(slots=True)
class Batch:
    batch_id: int
    queries: list[Query]


@dataclass(slots=True)
class AnswerPayload:
    answer: str = ""
    brands_mentioned: list[str] = field(default_factory=list)
    websites_cited: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MatchResult:
    rank: int
    strategy: MatchStrategy = MatchStrategy.NONE
    matched_name: str | None = None

    @property
    def found(self) -> bool:
        return self.rank > 0


@dataclass(slots=True)
class ValidationVerdict:
    found: bool
    matched_name: str | None = None
    position: int | None = None
    confidence: Confidence = Confidence.LOW
    reasoning: str = ""


@dataclass(slots=True)
class RankResult:
    rank: int
    weight: int
    matched_name: str | None = None
    confidence: Confidence = Confidence.LOW
    reasoning: str = ""


@dataclass(slots=True)
class QueryResult:
    """Terminal outcome for one query, written to the store in a single update."""

    query_id: str
    status: QueryStatus
    answer: str
    brands_mentioned: list[str] = field(default_factory=list)
    focused_brand_rank: int = 0
    visibility: int = 0
    websites_cited: list[str] = field(default_factory=list)
    error_message: str | None = None
    processed_at: str | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "answer": self.answer,
            "brands_mentioned": list(self.brands_mentioned),
            "focused_brand_rank": self.focused_brand_rank,
            "visibility": self.visibility,
            "websites_cited": list(self.websites_cited),
            "error_message": self.error_message,
            "processed_at": self.processed_at,
        }


@dataclass(slots=True)
class TopicData:
    topic: str
    prompts: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TopicPlan:
    institution_name: str
    location: str | None = None
    institution_type: str | None = None
    topics: list[TopicData] = field(default_factory=list)

    @property
    def total_queries(self) -> int:
        return sum(len(topic.prompts) for topic in self.topics)


@dataclass(slots=True)
class ProgressSnapshot:
    id: str
    status: AnalysisStatus
    progress: int
    completed_at: str | None = None
    cancelled_at: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.status == AnalysisStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == AnalysisStatus.FAILED

    @property
    def is_cancelled(self) -> bool:
        """A cancelled run keeps status processing; pollers stop on this flag."""
        return self.cancelled_at is not None
