"""Fan queries out to the answer and validation agents in bounded rounds of batches.

A round holds at most ``concurrent_batches`` batches and the next round starts
only after every batch in the current one has settled. Each query's outcome is
written to the store as soon as it is known, so progress is observable while
a round is still running.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Sequence

from loguru import logger

from visibility.config import PipelineConfig
from visibility.models.analysis import (
    AnswerPayload,
    Batch,
    Query,
    QueryResult,
    QueryStatus,
    RankResult,
)
from visibility.services import logger as log_service
from visibility.services.metrics import compute_progress
from visibility.services.store import AnalysisStore, utc_now

FAILED_ANSWER = "Failed to process this query due to an error."


class AnswerFetcher(Protocol):
    async def fetch_answer(
        self,
        query_text: str,
        *,
        focus_brand: str = "",
        include_institution_mention: bool = False,
        location: str | None = None,
    ) -> AnswerPayload: ...


class RankResolver(Protocol):
    async def resolve_rank(self, brands_mentioned: Sequence[str], focus_name: str) -> RankResult: ...


class BatchExhaustedError(Exception):
    def __init__(self, batch_id: int, attempts: int, message: str):
        super().__init__(f"Batch {batch_id} failed after {attempts} attempts: {message}")
        self.batch_id = batch_id
        self.attempts = attempts


@dataclass(slots=True)
class ExecutionSummary:
    total_batches: int = 0
    rounds: int = 0
    failed_batches: list[int] = field(default_factory=list)
    cancelled: bool = False
    progress: int = 0


def create_batches(queries: Sequence[Query], batch_size: int) -> list[Batch]:
    """Split queries into consecutive order-preserving batches with 1-based ids."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [
        Batch(batch_id=index // batch_size + 1, queries=list(queries[index : index + batch_size]))
        for index in range(0, len(queries), batch_size)
    ]


class BatchExecutor:
    def __init__(
        self,
        store: AnalysisStore,
        answer_agent: AnswerFetcher,
        validation_agent: RankResolver,
        config: PipelineConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.answer_agent = answer_agent
        self.validation_agent = validation_agent
        self.config = config or PipelineConfig.from_settings()
        self._sleep = sleep

    async def execute(
        self,
        analysis_id: str,
        focus_brand: str,
        queries: Sequence[Query],
        *,
        location: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionSummary:
        batches = create_batches(queries, self.config.batch_size)
        round_size = self.config.concurrent_batches
        total_rounds = (len(batches) + round_size - 1) // round_size
        summary = ExecutionSummary(total_batches=len(batches))

        analysis = await self.store.get_analysis(analysis_id)
        summary.progress = int((analysis or {}).get("progress") or 0)

        logger.info(
            f"Executing {len(queries)} queries for {analysis_id}: "
            f"{len(batches)} batches, {total_rounds} rounds of up to {round_size}"
        )

        for start in range(0, len(batches), round_size):
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                logger.warning(f"Analysis {analysis_id} cancelled before round {summary.rounds + 1}/{total_rounds}")
                break

            round_batches = batches[start : start + round_size]
            summary.rounds += 1
            outcomes = await asyncio.gather(
                *(
                    self.run_batch(analysis_id, focus_brand, batch, location=location)
                    for batch in round_batches
                ),
                return_exceptions=True,
            )
            for batch, outcome in zip(round_batches, outcomes):
                if isinstance(outcome, BaseException):
                    summary.failed_batches.append(batch.batch_id)
                    logger.error(f"[Batch {batch.batch_id}] settled with failure: {outcome}")

            summary.progress = await self.update_progress(analysis_id, floor=summary.progress)
            logger.info(f"Round {summary.rounds}/{total_rounds} done for {analysis_id}: {summary.progress}%")

        return summary

    async def update_progress(self, analysis_id: str, *, floor: int = 0) -> int:
        counts = await self.store.count_queries_by_status(analysis_id)
        progress = max(compute_progress(counts), floor)
        await self.store.update_analysis(analysis_id, progress=progress, updated_at=utc_now())
        return progress

    async def run_batch(
        self,
        analysis_id: str,
        focus_brand: str,
        batch: Batch,
        *,
        location: str | None = None,
    ) -> None:
        """Run one batch, retrying the whole batch with linear backoff if dispatch raises.

        On exhaustion every query in the batch is marked failed with the last
        error and ``BatchExhaustedError`` is raised.
        """
        max_attempts = self.config.max_batch_retries
        last_error: BaseException | None = None

        await self.store.mark_queries([q.id for q in batch.queries], QueryStatus.PROCESSING.value)
        log_service.log_batch_event(analysis_id, batch.batch_id, "started", queries=len(batch.queries))

        for attempt in range(1, max_attempts + 1):
            try:
                await self._dispatch(batch, focus_brand, location)
            except Exception as exc:
                last_error = exc
                logger.warning(f"[Batch {batch.batch_id}] attempt {attempt}/{max_attempts} failed: {exc}")
                if attempt < max_attempts:
                    await self._sleep(self.config.batch_retry_base_delay * attempt)
                continue
            log_service.log_batch_event(analysis_id, batch.batch_id, "completed", attempts=attempt)
            return

        message = str(last_error) or type(last_error).__name__
        processed_at = utc_now()
        # Earlier attempts may have saved results for some queries; reset them all.
        await asyncio.gather(
            *(
                self.store.update_query(
                    q.id,
                    **QueryResult(
                        query_id=q.id,
                        status=QueryStatus.FAILED,
                        answer=FAILED_ANSWER,
                        error_message=message,
                        processed_at=processed_at,
                    ).to_row(),
                )
                for q in batch.queries
            )
        )
        log_service.log_batch_event(analysis_id, batch.batch_id, "failed", attempts=max_attempts, error=message)
        raise BatchExhaustedError(batch.batch_id, max_attempts, message) from last_error

    async def _dispatch(self, batch: Batch, focus_brand: str, location: str | None) -> list[QueryResult]:
        # Let every query settle before surfacing the first dispatch error.
        outcomes = await asyncio.gather(
            *(self._process_and_persist(q, focus_brand, location) for q in batch.queries),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return list(outcomes)

    async def _process_and_persist(self, query: Query, focus_brand: str, location: str | None) -> QueryResult:
        result = await self.process_query(query, focus_brand, location=location)
        await self.store.update_query(query.id, **result.to_row())
        return result

    async def process_query(
        self,
        query: Query,
        focus_brand: str,
        *,
        location: str | None = None,
    ) -> QueryResult:
        """Fetch, parse and rank one query. Errors become a failed result instead of propagating."""
        try:
            payload = await self.answer_agent.fetch_answer(
                query.query_text,
                focus_brand=query.focused_brand or focus_brand,
                include_institution_mention=query.include_institution_mention,
                location=location,
            )
            ranked = await self.validation_agent.resolve_rank(payload.brands_mentioned, focus_brand)
        except Exception as exc:
            logger.error(f"Query {query.id} failed: {exc}")
            return QueryResult(
                query_id=query.id,
                status=QueryStatus.FAILED,
                answer=FAILED_ANSWER,
                error_message=str(exc) or type(exc).__name__,
                processed_at=utc_now(),
            )

        return QueryResult(
            query_id=query.id,
            status=QueryStatus.COMPLETED,
            answer=payload.answer,
            brands_mentioned=payload.brands_mentioned,
            focused_brand_rank=ranked.rank,
            visibility=ranked.weight,
            websites_cited=payload.websites_cited,
            processed_at=utc_now(),
        )
