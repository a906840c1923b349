from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable

from loguru import logger

from visibility.agents.answer_agent import AnswerAgent
from visibility.agents.topic_agent import TopicAgent
from visibility.agents.validation_agent import ValidationAgent
from visibility.config import PipelineConfig
from visibility.models.analysis import Analysis, AnalysisStatus, ProgressSnapshot, Query, TopicPlan
from visibility.services import logger as log_service
from visibility.services.batch_executor import AnswerFetcher, BatchExecutor, RankResolver
from visibility.services.metrics import calculate_all_metrics, compute_progress
from visibility.services.store import AnalysisStore, get_store, utc_now


class AnalysisNotFoundError(LookupError):
    pass


class PipelineError(RuntimeError):
    pass


class PipelineSupervisor:
    """Own background pipeline tasks so they are neither garbage collected nor silently lost."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    def start(
        self,
        analysis_id: str,
        run: Callable[[asyncio.Event], Awaitable[object]],
    ) -> asyncio.Task:
        if analysis_id in self._tasks:
            raise PipelineError(f"Analysis {analysis_id} is already running")
        cancel_event = asyncio.Event()
        task = asyncio.create_task(run(cancel_event), name=f"analysis-{analysis_id}")
        self._tasks[analysis_id] = task
        self._cancel_events[analysis_id] = cancel_event
        task.add_done_callback(lambda done: self._on_done(analysis_id, done))
        return task

    def _on_done(self, analysis_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(analysis_id, None)
        self._cancel_events.pop(analysis_id, None)
        if task.cancelled():
            logger.warning(f"Background run for analysis {analysis_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error(f"Background run for analysis {analysis_id} failed: {exc}")
            log_service.log_event(
                event_type="analysis_failed",
                message="Background pipeline failed",
                analysis_id=analysis_id,
                error=str(exc),
            )

    def is_running(self, analysis_id: str) -> bool:
        return analysis_id in self._tasks

    def cancel(self, analysis_id: str) -> bool:
        """Stop dispatching new rounds for a run; in-flight batches finish on their own."""
        event = self._cancel_events.get(analysis_id)
        if event is None:
            return False
        event.set()
        return True

    async def wait(self, analysis_id: str) -> None:
        task = self._tasks.get(analysis_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for event in self._cancel_events.values():
            event.set()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class AnalysisOrchestrator:
    """Create analyses, run their query pipeline in the background and report progress."""

    def __init__(
        self,
        store: AnalysisStore | None = None,
        answer_agent: AnswerFetcher | None = None,
        validation_agent: RankResolver | None = None,
        topic_agent: TopicAgent | None = None,
        config: PipelineConfig | None = None,
        *,
        supervisor: PipelineSupervisor | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.config = config or PipelineConfig.from_settings()
        self.store = store or get_store()
        self.answer_agent = answer_agent or AnswerAgent()
        self.validation_agent = validation_agent or ValidationAgent(
            policy=self.config.visibility_policy,
            mode=self.config.rank_validation_mode,
        )
        self.topic_agent = topic_agent or TopicAgent()
        self.supervisor = supervisor or PipelineSupervisor()
        self.rng = rng or random.Random()
        self.executor = BatchExecutor(
            self.store,
            self.answer_agent,
            self.validation_agent,
            self.config,
            sleep=sleep,
        )

    async def start_analysis(self, institution_name: str) -> str:
        """Generate queries, persist the analysis and start its pipeline without waiting for it."""
        name = (institution_name or "").strip()
        if not name:
            raise ValueError("Institution name is required")

        plan = await self.topic_agent.generate(name)
        analysis_id = await self.create_analysis(plan)
        self.supervisor.start(analysis_id, lambda event: self.run_pipeline(analysis_id, cancel_event=event))
        log_service.log_event(
            event_type="analysis_started",
            message="Analysis queued",
            analysis_id=analysis_id,
            institution=plan.institution_name,
            total_queries=plan.total_queries,
        )
        return analysis_id

    async def create_analysis(self, plan: TopicPlan) -> str:
        analysis = await self.store.create_analysis(
            {
                "institution_name": plan.institution_name,
                "institution_type": plan.institution_type,
                "location": plan.location,
                "topics": [{"topic": t.topic, "prompts": list(t.prompts)} for t in plan.topics],
                "status": AnalysisStatus.PENDING.value,
                "total_queries": plan.total_queries,
                "progress": 0,
            }
        )
        analysis_id = str(analysis["id"])

        forced = 0
        for topic_order, topic in enumerate(plan.topics, start=1):
            topic_row = await self.store.create_topic(
                {
                    "analysis_id": analysis_id,
                    "topic_name": topic.topic,
                    "topic_order": topic_order,
                    "total_queries": len(topic.prompts),
                }
            )
            rows = []
            for query_order, prompt in enumerate(topic.prompts, start=1):
                include_mention = self.rng.random() < self.config.forced_mention_rate
                forced += int(include_mention)
                rows.append(
                    {
                        "analysis_id": analysis_id,
                        "topic_id": str(topic_row["id"]),
                        "query_text": prompt,
                        "query_order": query_order,
                        "focused_brand": plan.institution_name,
                        "include_institution_mention": include_mention,
                        "status": "pending",
                    }
                )
            await self.store.create_queries(rows)

        logger.info(
            f"Created analysis {analysis_id} for '{plan.institution_name}': "
            f"{len(plan.topics)} topics, {plan.total_queries} queries, {forced} with forced mention"
        )
        return analysis_id

    async def get_progress(self, analysis_id: str) -> ProgressSnapshot | None:
        row = await self.store.get_analysis(analysis_id)
        if row is None:
            return None
        analysis = Analysis.from_row(row)
        return ProgressSnapshot(
            id=analysis.id,
            status=analysis.status,
            progress=analysis.progress,
            completed_at=analysis.completed_at,
            cancelled_at=analysis.cancelled_at,
        )

    def cancel(self, analysis_id: str) -> bool:
        return self.supervisor.cancel(analysis_id)

    async def run_pipeline(self, analysis_id: str, *, cancel_event: asyncio.Event | None = None) -> bool:
        """Process every query of a pending analysis.

        Returns False when the analysis was not pending, another worker claimed
        it first, or the run was cancelled. A cancelled run keeps status
        ``processing`` with its real partial progress and gets ``cancelled_at``
        stamped. Unhandled errors mark the analysis ``failed`` and are re-raised.
        """
        row = await self.store.get_analysis(analysis_id)
        if row is None:
            raise AnalysisNotFoundError(f"Analysis {analysis_id} not found")
        analysis = Analysis.from_row(row)
        if analysis.status != AnalysisStatus.PENDING:
            logger.warning(f"Analysis {analysis_id} is already {analysis.status.value}; not reprocessing")
            return False
        claimed = await self.store.claim_analysis(
            analysis_id,
            AnalysisStatus.PENDING.value,
            status=AnalysisStatus.PROCESSING.value,
            updated_at=utc_now(),
        )
        if not claimed:
            logger.warning(f"Analysis {analysis_id} was claimed by another run; not reprocessing")
            return False

        try:
            queries = [Query.from_row(q) for q in await self.store.get_queries(analysis_id)]
            if not queries:
                raise PipelineError(f"No queries found for analysis {analysis_id}")

            summary = await self.executor.execute(
                analysis_id,
                analysis.institution_name,
                queries,
                location=analysis.location,
                cancel_event=cancel_event,
            )
            await calculate_all_metrics(self.store, analysis_id)

            if summary.cancelled:
                cancelled_at = utc_now()
                await self.store.update_analysis(analysis_id, cancelled_at=cancelled_at, updated_at=cancelled_at)
                logger.warning(f"Analysis {analysis_id} stopped at {summary.progress}% after cancellation")
                log_service.log_event(
                    event_type="analysis_cancelled",
                    message="Analysis cancelled",
                    analysis_id=analysis_id,
                    progress=summary.progress,
                )
                return False

            progress = max(compute_progress(await self.store.count_queries_by_status(analysis_id)), summary.progress)
            await self.store.update_analysis(
                analysis_id,
                status=AnalysisStatus.COMPLETED.value,
                progress=progress,
                completed_at=utc_now(),
                updated_at=utc_now(),
            )
        except Exception as exc:
            logger.error(f"Analysis {analysis_id} failed: {exc}")
            try:
                await self.store.update_analysis(
                    analysis_id,
                    status=AnalysisStatus.FAILED.value,
                    updated_at=utc_now(),
                )
            except Exception as update_exc:
                logger.error(f"Could not mark analysis {analysis_id} failed: {update_exc}")
            raise

        log_service.log_event(
            event_type="analysis_completed",
            message="Analysis completed",
            analysis_id=analysis_id,
            failed_batches=summary.failed_batches,
            progress=progress,
        )
        return True
