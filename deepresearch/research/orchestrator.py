from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from loguru import logger

from deepresearch.config import settings
from deepresearch.errors import (
    InvalidStatusTransitionError,
    NotificationError,
    TaskAlreadyClaimedError,
    TaskNotFoundError,
)
from deepresearch.models.research import (
    DEFAULT_PIPELINE,
    ResearchStatus,
    SearchResult,
    Step,
    StepType,
    Task,
)
from deepresearch.research.executor import StepExecutor
from deepresearch.services import logger as log_service
from deepresearch.services.task_store import TaskStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PipelineState:
    """Outputs accumulated while one task's stages run."""

    query: str
    search_results: list[SearchResult] = field(default_factory=list)
    analysis: str = ""
    summary: str = ""

    def result(self) -> dict[str, Any]:
        return {
            "searchResults": [r.model_dump() for r in self.search_results],
            "analysis": self.analysis,
            "summary": self.summary,
        }


def summary_preview(summary: str, limit: int) -> str:
    if len(summary) <= limit:
        return summary
    return f"{summary[:limit]}..."


class ResearchOrchestrator:
    """Drives a research task through its stages.

    Flow:
      1. Claim the task (pending -> running); a second run of the same task
         loses the claim and is rejected.
      2. For each stage in order: create the step as running, execute it,
         mark it done with the stage output. The output feeds the next stage.
      3. Mark the task done with ``{searchResults, analysis, summary}``.

    Any error after the claim marks the current step and the task failed.
    Every store write is mirrored into the update channel by the store.
    """

    SUPPORTED_STAGES = frozenset(
        {StepType.WEB_SEARCH, StepType.CONTENT_ANALYSIS, StepType.SUMMARY_GENERATION}
    )

    def __init__(
        self,
        store: TaskStore,
        executor: StepExecutor,
        *,
        pipeline: Sequence[StepType] = DEFAULT_PIPELINE,
        preview_chars: int | None = None,
    ):
        unsupported = [s for s in pipeline if s not in self.SUPPORTED_STAGES]
        if unsupported:
            raise ValueError(f"Unsupported pipeline stages: {', '.join(unsupported)}")
        self.store = store
        self.executor = executor
        self.pipeline = tuple(pipeline)
        self.preview_chars = preview_chars or settings.summary_preview_chars

    async def run(self, task_id: str) -> Task:
        """Run a pending task to completion and return its final record.

        Stage failures do not raise; they are reported through the returned
        task's ``failed`` status and ``error``. Raises ``TaskNotFoundError``
        or ``TaskAlreadyClaimedError`` when the task cannot be started.
        """
        task = await self._start(task_id)
        state = PipelineState(query=task.query)

        try:
            for order, step_type in enumerate(self.pipeline, start=1):
                await self._run_stage(task, order, step_type, state)
            task = await self._complete(task_id, state)
        except Exception as e:
            logger.exception(f"Research task {task_id} failed: {e}")
            return await self._fail(task_id, e)

        log_service.log_event(
            event_type="research_completed",
            message="Research completed",
            task_id=task_id,
            sources=len(state.search_results),
        )
        return task

    async def _start(self, task_id: str) -> Task:
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        try:
            started = await self.store.set_task_status(
                task_id,
                ResearchStatus.RUNNING,
                started_at=_utcnow(),
                message=f'Starting deep research for "{task.query}"',
            )
        except InvalidStatusTransitionError as e:
            raise TaskAlreadyClaimedError(task_id, e.current) from e
        except NotificationError as e:
            # The claim is committed; carry on and let the stages announce progress.
            logger.warning(f"Start of task {task_id} was not recorded in history: {e}")
            started = await self.store.get_task(task_id)
            if started is None:
                raise TaskNotFoundError(task_id) from e

        log_service.log_event(
            event_type="research_started",
            message="Research started",
            task_id=task_id,
            query=task.query[:100],
        )
        return started

    async def _run_stage(
        self,
        task: Task,
        order: int,
        step_type: StepType,
        state: PipelineState,
    ) -> Step:
        start_data = {"query": task.query, "start_time": _utcnow().isoformat()}
        step = await self.store.create_step(
            task.id,
            order,
            step_type,
            ResearchStatus.RUNNING,
            start_data,
            message=self._start_message(step_type, task.query),
        )

        output = await self._execute(step_type, state)
        return await self.store.set_step_status(
            step.id,
            ResearchStatus.DONE,
            data={**start_data, **output, "completed_time": _utcnow().isoformat()},
            completed_at=_utcnow(),
            message=self._done_message(step_type, state),
        )

    async def _execute(self, step_type: StepType, state: PipelineState) -> dict[str, Any]:
        if step_type == StepType.WEB_SEARCH:
            outcome = await self.executor.run_web_search(state.query)
            state.search_results = outcome.results
            return {
                "results": [r.model_dump() for r in outcome.results],
                "fallback": outcome.fallback,
            }
        if step_type == StepType.CONTENT_ANALYSIS:
            state.analysis = await self.executor.run_content_analysis(state.query, state.search_results)
            return {"analysis": state.analysis}
        if step_type == StepType.SUMMARY_GENERATION:
            state.summary = await self.executor.run_summary_generation(state.query, state.analysis)
            return {"summary": state.summary}
        raise ValueError(f"Unsupported stage: {step_type}")

    async def _complete(self, task_id: str, state: PipelineState) -> Task:
        try:
            return await self.store.set_task_status(
                task_id,
                ResearchStatus.DONE,
                result=state.result(),
                completed_at=_utcnow(),
                message="Deep research completed successfully",
                event_data={"summary": summary_preview(state.summary, self.preview_chars)},
            )
        except NotificationError as e:
            # The task is already done in the store; only the announcement was lost.
            logger.error(f"Failed to record completion update for task {task_id}: {e}")
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def _fail_step(self, step: Step, error: str) -> None:
        try:
            await self.store.set_step_status(
                step.id,
                ResearchStatus.FAILED,
                error=error,
                completed_at=_utcnow(),
            )
        except Exception as e:
            logger.error(f"Could not mark step {step.order} of task {step.task_id} failed: {e}")

    async def _fail(self, task_id: str, error: Exception) -> Task:
        message = str(error) or error.__class__.__name__
        try:
            current = await self.store.get_latest_step(task_id)
        except Exception as e:
            logger.error(f"Could not load the active step of task {task_id}: {e}")
            current = None
        if current is not None and not current.status.is_terminal:
            await self._fail_step(current, message)

        try:
            return await self.store.set_task_status(
                task_id,
                ResearchStatus.FAILED,
                error=message,
                completed_at=_utcnow(),
                message="Deep research failed",
            )
        except NotificationError as e:
            logger.error(f"Failed to record failure update for task {task_id}: {e}")

        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    @staticmethod
    def _start_message(step_type: StepType, query: str) -> str:
        if step_type == StepType.WEB_SEARCH:
            return f'Searching the web for information about "{query}"'
        if step_type == StepType.CONTENT_ANALYSIS:
            return "Analyzing content from search results"
        return "Generating comprehensive summary"

    @staticmethod
    def _done_message(step_type: StepType, state: PipelineState) -> str:
        if step_type == StepType.WEB_SEARCH:
            return f'Found {len(state.search_results)} relevant sources about "{state.query}"'
        if step_type == StepType.CONTENT_ANALYSIS:
            return "Completed content analysis"
        return "Completed summary generation"
