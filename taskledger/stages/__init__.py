"""
Stage Classifier & Invariant Guard.
"""

from .classifier import Stage, TaskFacts, classify, classify_stage
from .guard import InvariantGuard, SideEffect, SideEffectKind, TransitionResult
from .invariants import ALL_INVARIANTS, assert_invariants, check_invariants

__all__ = [
    "ALL_INVARIANTS",
    "InvariantGuard",
    "SideEffect",
    "SideEffectKind",
    "Stage",
    "TaskFacts",
    "TransitionResult",
    "assert_invariants",
    "check_invariants",
    "classify",
    "classify_stage",
]
