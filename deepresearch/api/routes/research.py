from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from deepresearch.api.deps import get_services
from deepresearch.container import ResearchServices
from deepresearch.errors import ConversationNotFoundError, ResearchError
from deepresearch.models.research import Task
from deepresearch.models.schemas import (
    ResearchListResponse,
    ResearchRequest,
    ResearchResponse,
    StepsResponse,
)
from deepresearch.research.orchestrator import ResearchOrchestrator
from deepresearch.services import logger as log_service

router = APIRouter(prefix="/api/research", tags=["research"])


async def run_research_task(orchestrator: ResearchOrchestrator, task_id: str) -> None:
    """Background entry point; the task record carries the outcome."""
    try:
        task = await orchestrator.run(task_id)
    except ResearchError as e:
        log_service.log_event(
            event_type="research_not_started",
            message="Research task could not be started",
            task_id=task_id,
            error=str(e),
        )
        return
    except Exception as e:
        logger.exception(f"Unhandled error while running research task {task_id}: {e}")
        return
    log_service.log_event(
        event_type="research_finished",
        message=f"Research finished as {task.status.value}",
        task_id=task_id,
    )


@router.post("", response_model=Task)
async def create_research(
    request: ResearchRequest,
    background_tasks: BackgroundTasks,
    services: ResearchServices = Depends(get_services),
):
    """Create a research task and start it in the background."""
    try:
        task = await services.store.create_task(request.query, request.chat_id, request.user_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    background_tasks.add_task(run_research_task, services.orchestrator, task.id)
    return task


@router.get("", response_model=ResearchResponse)
async def get_research(
    id: str | None = None,
    services: ResearchServices = Depends(get_services),
):
    """Current task state; replayed events are included only while it is running."""
    if not id:
        raise HTTPException(status_code=400, detail="Missing research ID")
    view = await services.gateway.fetch_task_by_id(id)
    return {"research": view}


@router.get("/chat/{chat_id}", response_model=ResearchListResponse)
async def get_research_for_chat(
    chat_id: str,
    services: ResearchServices = Depends(get_services),
):
    """All tasks of a chat, newest first."""
    views = await services.gateway.fetch_tasks_by_conversation(chat_id)
    return {"research": views}


@router.get("/{task_id}/steps", response_model=StepsResponse)
async def get_research_steps(
    task_id: str,
    services: ResearchServices = Depends(get_services),
):
    snapshot = await services.gateway.get_snapshot(task_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Research not found")
    return StepsResponse(task_id=task_id, steps=snapshot.steps)


@router.get("/{task_id}/stream")
async def stream_research(
    task_id: str,
    services: ResearchServices = Depends(get_services),
):
    """SSE endpoint: catch-up history followed by live updates until the task ends."""
    if await services.store.get_task(task_id) is None:
        raise HTTPException(status_code=404, detail="Research not found")

    async def event_generator():
        async for event in services.gateway.stream(task_id):
            yield event.format()

    return EventSourceResponse(event_generator())
