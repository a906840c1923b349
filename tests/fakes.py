from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

from visibility.models.analysis import AnswerPayload, Confidence, RankResult
from visibility.services.store import InMemoryAnalysisStore


class ScriptedAnswerAgent:
    """Answer agent double keyed by query text; tracks concurrency."""

    def __init__(
        self,
        answers: dict[str, AnswerPayload | Exception] | None = None,
        *,
        default: AnswerPayload | None = None,
        delay: float = 0.0,
    ):
        self.answers = answers or {}
        self.default = default or AnswerPayload(answer="- nothing relevant", brands_mentioned=[], websites_cited=[])
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_answer(
        self,
        query_text: str,
        *,
        focus_brand: str = "",
        include_institution_mention: bool = False,
        location: str | None = None,
    ) -> AnswerPayload:
        self.calls.append(
            {
                "query_text": query_text,
                "focus_brand": focus_brand,
                "include_institution_mention": include_institution_mention,
                "location": location,
            }
        )
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            outcome = self.answers.get(query_text, self.default)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


class FixedRankResolver:
    """Rank resolver double returning the focus name's list index, or a fixed failure."""

    def __init__(self, weight_for_rank=None):
        self.weight_for_rank = weight_for_rank or (lambda rank: 0 if rank == 0 else (100 if rank == 1 else 50))
        self.calls: list[tuple[list[str], str]] = []

    async def resolve_rank(self, brands_mentioned, focus_name):
        brands = list(brands_mentioned)
        self.calls.append((brands, focus_name))
        rank = brands.index(focus_name) + 1 if focus_name in brands else 0
        return RankResult(
            rank=rank,
            weight=self.weight_for_rank(rank),
            matched_name=focus_name if rank else None,
            confidence=Confidence.HIGH,
        )


def chat_response(content: str | None) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=20),
    )


def fake_openai_client(create) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


async def seed_analysis(
    store: InMemoryAnalysisStore,
    query_texts: list[str],
    *,
    institution_name: str = "Example University",
    location: str | None = None,
    status: str = "pending",
) -> str:
    analysis = await store.create_analysis(
        {
            "institution_name": institution_name,
            "location": location,
            "status": status,
            "total_queries": len(query_texts),
        }
    )
    topic = await store.create_topic(
        {
            "analysis_id": analysis["id"],
            "topic_name": "Admissions",
            "topic_order": 1,
            "total_queries": len(query_texts),
        }
    )
    await store.create_queries(
        [
            {
                "analysis_id": analysis["id"],
                "topic_id": topic["id"],
                "query_text": text,
                "query_order": index + 1,
                "focused_brand": institution_name,
                "include_institution_mention": False,
            }
            for index, text in enumerate(query_texts)
        ]
    )
    return analysis["id"]
