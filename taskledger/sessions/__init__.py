"""
Session Interval Engine: interval algebra and history corrections.
"""

from .engine import CloseOutcome, CloseResult, IntervalEngine, confirmation_token
from .intervals import ChangeKind, Cut, SessionChange, classify_cut, plan_removal, subtract

__all__ = [
    "ChangeKind",
    "CloseOutcome",
    "CloseResult",
    "Cut",
    "IntervalEngine",
    "SessionChange",
    "classify_cut",
    "confirmation_token",
    "plan_removal",
    "subtract",
]
