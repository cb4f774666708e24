"""Durable storage for hub state."""

from .atomic import AtomicStore
from .state import StateStore

__all__ = ["AtomicStore", "StateStore"]
