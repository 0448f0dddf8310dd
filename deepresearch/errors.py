"""Domain errors raised by the research store and orchestrator."""
from __future__ import annotations


class ResearchError(Exception):
    """Base class for research pipeline errors."""


class ConversationNotFoundError(ResearchError):
    """A task was requested for a chat that does not exist."""

    def __init__(self, chat_id: str):
        super().__init__(f"Chat with ID {chat_id} does not exist")
        self.chat_id = chat_id


class TaskNotFoundError(ResearchError):
    def __init__(self, task_id: str):
        super().__init__(f"Research task {task_id} not found")
        self.task_id = task_id


class StepNotFoundError(ResearchError):
    def __init__(self, step_id: str):
        super().__init__(f"Research step {step_id} not found")
        self.step_id = step_id


class InvalidStatusTransitionError(ResearchError):
    """The record is not in a status from which the requested one is reachable."""

    def __init__(self, record_id: str, current: str | None, target: str):
        super().__init__(f"Cannot move {record_id} from {current} to {target}")
        self.record_id = record_id
        self.current = current
        self.target = target


class StepOrderError(ResearchError):
    """A step was created out of sequence or while its predecessor is still active."""


class TaskAlreadyClaimedError(ResearchError):
    """Another orchestration already moved the task out of pending."""

    def __init__(self, task_id: str, status: str | None = None):
        super().__init__(f"Research task {task_id} is already {status or 'claimed'}")
        self.task_id = task_id
        self.status = status


class NotificationError(ResearchError):
    """The store write succeeded but recording its update event failed."""
