from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from deepresearch.models.research import Step, Task


# --- Requests ---


class ResearchRequest(BaseModel):
    query: str = Field(min_length=1)
    chat_id: str
    user_id: str


# --- Responses ---


class TaskView(Task):
    """Task as served to viewers, with replayed events while it is running."""
    events: list[dict[str, Any]] = []


class ResearchResponse(BaseModel):
    research: TaskView | None


class ResearchListResponse(BaseModel):
    research: list[TaskView]


class StepsResponse(BaseModel):
    task_id: str
    steps: list[Step]
