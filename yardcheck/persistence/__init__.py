"""Database models and run history management."""

from yardcheck.persistence.models import PhaseRecord, Run
from yardcheck.persistence.state_manager import DatabaseError, RunInfo, StateManager


__all__ = [
    "DatabaseError",
    "PhaseRecord",
    "Run",
    "RunInfo",
    "StateManager",
]
