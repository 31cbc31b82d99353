"""
Models package for normalized provider outcomes and generation results.
"""

from .generation_result import AttemptRecord, GenerationError, GenerationResult
from .outcome import InvocationOutcome, NormalizedError, OutcomeKind

__all__ = [
    "AttemptRecord",
    "GenerationError",
    "GenerationResult",
    "InvocationOutcome",
    "NormalizedError",
    "OutcomeKind",
]
