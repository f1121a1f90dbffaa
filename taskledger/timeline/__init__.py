"""
Timeline Store: tasks, sessions, queue order and external hand-offs.
"""

from .models import EventKind, ExternalRecord, Lifecycle, Session, Task, TaskEvent
from .store import TimelineStore

__all__ = [
    "EventKind",
    "ExternalRecord",
    "Lifecycle",
    "Session",
    "Task",
    "TaskEvent",
    "TimelineStore",
]
