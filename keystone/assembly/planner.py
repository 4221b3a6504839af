"""
Planner module for ordering plan operations into execution waves.

Creates, updates and replacements follow dependency order: an operation waits
for every changing resource it consumes. Destroys follow the reverse order: a
resource is destroyed only after every changing resource that depended on it
(according to the stored state) has been destroyed or updated away.
"""

import logging
from typing import Dict, List, Mapping

import networkx as nx

from ..errors import CyclicPlanError
from ..intake.graph import ResourceGraph
from ..models import OperationType, Plan, PlanOperation

logger = logging.getLogger(__name__)


def build_operation_graph(
    operations: Mapping[str, PlanOperation], graph: ResourceGraph
) -> nx.DiGraph:
    """
    Ordering constraints between actionable operations.

    Edges point from the operation that must finish first to the operation
    that waits for it.
    """
    order = nx.DiGraph()
    order.add_nodes_from(operations)

    for resource_id, operation in operations.items():
        if operation.action == OperationType.DESTROY:
            for other_id, other in operations.items():
                if other_id == resource_id or other.prior is None:
                    continue
                if resource_id in other.prior.dependencies:
                    order.add_edge(other_id, resource_id)
        elif resource_id in graph:
            for dependency in graph.dependencies(resource_id):
                if dependency in operations:
                    order.add_edge(dependency, resource_id)

    return order


def schedule_operations(operations: List[PlanOperation], graph: ResourceGraph) -> Plan:
    """
    Group operations into waves safe to run concurrently.

    Args:
        operations: Output of the differ
        graph: Desired resource graph the operations were computed from

    Returns:
        Plan whose later waves depend only on earlier ones

    Raises:
        CyclicPlanError: If the operations cannot be ordered
    """
    actionable: Dict[str, PlanOperation] = {
        operation.resource_id: operation for operation in operations if operation.is_actionable
    }
    unchanged = [operation for operation in operations if not operation.is_actionable]

    order = build_operation_graph(actionable, graph)
    try:
        generations = [sorted(generation) for generation in nx.topological_generations(order)]
    except nx.NetworkXUnfeasible:
        cycle = [edge[0] for edge in nx.find_cycle(order)]
        raise CyclicPlanError(cycle) from None

    waves = [[actionable[resource_id] for resource_id in generation] for generation in generations]
    dependencies = {resource_id: sorted(order.predecessors(resource_id)) for resource_id in actionable}

    logger.info(f"Scheduled {len(actionable)} operations into {len(waves)} waves")
    for index, wave in enumerate(waves, start=1):
        logger.debug(f"Wave {index}: {[operation.get_summary() for operation in wave]}")

    return Plan(waves=waves, dependencies=dependencies, unchanged=unchanged)
