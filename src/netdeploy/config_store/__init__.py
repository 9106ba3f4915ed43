"""Persisted pipeline state: baselines, jobs, faults and drift reports."""
from .store import Baseline, StateStore, DEFAULT_STATE_DIR

__all__ = [
    "Baseline",
    "StateStore",
    "DEFAULT_STATE_DIR",
]
