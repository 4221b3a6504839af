"""
Assembly module for the Keystone project.

This module contains the diffing and scheduling logic that turns a desired
resource graph and the stored state into an ordered plan of execution waves.
"""

from .differ import (
    compute_destroy_operations,
    compute_plan_operations,
    diff_attributes,
)
from .planner import build_operation_graph, schedule_operations
from ..models import OperationType, Plan, PlanOperation

__all__ = [
    # Differ exports
    "compute_plan_operations",
    "compute_destroy_operations",
    "diff_attributes",
    # Planner exports
    "build_operation_graph",
    "schedule_operations",
    "OperationType",
    "Plan",
    "PlanOperation",
]
