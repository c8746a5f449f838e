"""
State management module for persistent storage of capital data.
"""

from .store import StateStore

__all__ = [
    "StateStore",
]
