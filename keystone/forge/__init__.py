"""
Forge module for the Keystone project.

This module applies scheduled plans through resource providers and persists
the confirmed results in the versioned state store.
"""

from .executor import ExecutionConfig, PlanExecutor, RetryManager
from .state import StateManager

__all__ = [
    "ExecutionConfig",
    "PlanExecutor",
    "RetryManager",
    "StateManager",
]
