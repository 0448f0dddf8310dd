from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any


class EventType(StrEnum):
    STATUS_UPDATE = "status_update"
    STEP_CREATED = "step_created"
    STEP_UPDATE = "step_update"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UpdateEvent:
    """A progress notification about one research task.

    The wire form is a flat JSON object with camelCase keys; optional fields
    are omitted when unset.
    """

    type: EventType
    task_id: str
    status: str
    timestamp: str = field(default_factory=utc_timestamp)
    message: str | None = None
    error: str | None = None
    data: dict[str, Any] | None = None
    step_id: str | None = None
    step_type: str | None = None
    step_order: int | None = None

    @property
    def is_terminal_status(self) -> bool:
        return self.type == EventType.STATUS_UPDATE and self.status in ("done", "failed")

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "type": self.type.value,
            "taskId": self.task_id,
            "status": self.status,
            "timestamp": self.timestamp,
        }
        if self.type != EventType.STATUS_UPDATE:
            wire["stepId"] = self.step_id
            wire["stepType"] = self.step_type
            wire["stepOrder"] = self.step_order
        if self.message:
            wire["message"] = self.message
        if self.error:
            wire["error"] = self.error
        if self.data:
            wire["data"] = self.data
        return wire

    def dumps(self) -> str:
        return json.dumps(self.to_wire())

    @classmethod
    def from_wire(cls, payload: dict[str, Any], task_id: str | None = None) -> "UpdateEvent":
        if not isinstance(payload, dict):
            raise ValueError(f"Update payload must be a JSON object, got {type(payload).__name__}")
        return cls(
            type=EventType(payload["type"]),
            task_id=payload.get("taskId") or task_id or "",
            status=payload.get("status", ""),
            timestamp=payload.get("timestamp") or utc_timestamp(),
            message=payload.get("message"),
            error=payload.get("error"),
            data=payload.get("data"),
            step_id=payload.get("stepId"),
            step_type=payload.get("stepType"),
            step_order=payload.get("stepOrder"),
        )

    @classmethod
    def loads(cls, raw: str | bytes, task_id: str | None = None) -> "UpdateEvent":
        return cls.from_wire(json.loads(raw), task_id=task_id)

    def format(self) -> dict[str, str]:
        """Render as an sse-starlette message."""
        return {"event": self.type.value, "data": self.dumps()}
