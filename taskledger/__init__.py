"""
taskledger - a personal task-and-time ledger core.

Tasks, the sessions timed against them, a single work queue and external
hand-offs, kept consistent by an invariant guard. Workflow stages are
derived on demand; recurring tasks respawn when finished.
"""

from taskledger.config import LedgerSettings, load_settings
from taskledger.errors import (
    ConfirmationRequired,
    InvariantViolation,
    LedgerError,
    NoOpenSession,
    NoOverlap,
    NotFound,
    TaskNotFound,
    ValidationError,
)
from taskledger.ledger import Ledger
from taskledger.respawn import RespawnOutcome, RespawnStatus, next_occurrence
from taskledger.sessions import ChangeKind, CloseOutcome, CloseResult, SessionChange
from taskledger.stages import (
    SideEffect,
    SideEffectKind,
    Stage,
    TaskFacts,
    TransitionResult,
    classify_stage,
)
from taskledger.timeline import Lifecycle, Session, Task

__version__ = "0.1.0"

__all__ = [
    "ChangeKind",
    "CloseOutcome",
    "CloseResult",
    "ConfirmationRequired",
    "InvariantViolation",
    "Ledger",
    "LedgerError",
    "LedgerSettings",
    "Lifecycle",
    "NoOpenSession",
    "NoOverlap",
    "NotFound",
    "RespawnOutcome",
    "RespawnStatus",
    "Session",
    "SessionChange",
    "SideEffect",
    "SideEffectKind",
    "Stage",
    "Task",
    "TaskFacts",
    "TaskNotFound",
    "TransitionResult",
    "ValidationError",
    "classify_stage",
    "load_settings",
    "next_occurrence",
]
