from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, Field, field_validator, model_validator


class ResearchStatus(StrEnum):
    """Lifecycle shared by tasks and steps."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ResearchStatus.DONE, ResearchStatus.FAILED})

# Status a record must currently hold for a move into the key status.
TASK_TRANSITIONS: dict[ResearchStatus, frozenset[ResearchStatus]] = {
    ResearchStatus.PENDING: frozenset(),
    ResearchStatus.RUNNING: frozenset({ResearchStatus.PENDING}),
    ResearchStatus.DONE: frozenset({ResearchStatus.RUNNING}),
    ResearchStatus.FAILED: frozenset({ResearchStatus.RUNNING}),
}

STEP_TRANSITIONS: dict[ResearchStatus, frozenset[ResearchStatus]] = {
    ResearchStatus.PENDING: frozenset(),
    ResearchStatus.RUNNING: frozenset({ResearchStatus.PENDING}),
    ResearchStatus.DONE: frozenset({ResearchStatus.PENDING, ResearchStatus.RUNNING}),
    ResearchStatus.FAILED: frozenset({ResearchStatus.PENDING, ResearchStatus.RUNNING}),
}


class StepType(StrEnum):
    WEB_SEARCH = "web_search"
    WEBSITE_VISIT = "website_visit"
    CONTENT_ANALYSIS = "content_analysis"
    SUMMARY_GENERATION = "summary_generation"


DEFAULT_PIPELINE: tuple[StepType, ...] = (
    StepType.WEB_SEARCH,
    StepType.CONTENT_ANALYSIS,
    StepType.SUMMARY_GENERATION,
)


class SearchResult(BaseModel):
    """A single source returned by the search collaborator."""
    title: str = ""
    content: str = ""
    url: str = ""


# --- Step payloads, discriminated by `type` ---


class SearchStepData(BaseModel):
    type: Literal["web_search"] = "web_search"
    query: str = ""
    start_time: str | None = None
    results: list[SearchResult] = []
    fallback: bool = False
    completed_time: str | None = None


class WebsiteVisitStepData(BaseModel):
    type: Literal["website_visit"] = "website_visit"
    query: str = ""
    start_time: str | None = None
    url: str = ""
    content: str = ""
    completed_time: str | None = None


class AnalysisStepData(BaseModel):
    type: Literal["content_analysis"] = "content_analysis"
    query: str = ""
    start_time: str | None = None
    analysis: str = ""
    completed_time: str | None = None


class SummaryStepData(BaseModel):
    type: Literal["summary_generation"] = "summary_generation"
    query: str = ""
    start_time: str | None = None
    summary: str = ""
    completed_time: str | None = None


StepData = Annotated[
    Union[SearchStepData, WebsiteVisitStepData, AnalysisStepData, SummaryStepData],
    Field(discriminator="type"),
]


def _stringify_id(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    return value


RecordId = Annotated[str, BeforeValidator(_stringify_id)]


class Task(BaseModel):
    """One research request and its aggregate state."""
    id: RecordId
    chat_id: RecordId
    user_id: RecordId
    query: str
    status: ResearchStatus = ResearchStatus.PENDING
    result: dict[str, Any] = {}
    metadata: dict[str, Any] = {}
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @field_validator("result", "metadata", mode="before")
    @classmethod
    def _empty_dict_for_null(cls, value: Any) -> Any:
        return value if value is not None else {}

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class Step(BaseModel):
    """One ordered stage of a task's pipeline."""
    id: RecordId
    task_id: RecordId
    order: int
    type: StepType
    status: ResearchStatus = ResearchStatus.PENDING
    data: StepData
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="before")
    @classmethod
    def _tag_untyped_data(cls, values: Any) -> Any:
        # Rows written without a discriminator take it from the step type.
        if not isinstance(values, dict):
            return values
        data = values.get("data")
        step_type = values.get("type")
        if step_type is None:
            return values
        if data is None:
            data = {}
        if isinstance(data, dict) and "type" not in data:
            values = {**values, "data": {**data, "type": str(step_type)}}
        return values


def build_step_data(step_type: StepType, payload: dict[str, Any]) -> BaseModel:
    """Validate a raw payload into the variant that matches ``step_type``."""
    variants: dict[StepType, type[BaseModel]] = {
        StepType.WEB_SEARCH: SearchStepData,
        StepType.WEBSITE_VISIT: WebsiteVisitStepData,
        StepType.CONTENT_ANALYSIS: AnalysisStepData,
        StepType.SUMMARY_GENERATION: SummaryStepData,
    }
    return variants[step_type].model_validate({**payload, "type": step_type.value})
