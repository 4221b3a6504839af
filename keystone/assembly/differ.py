"""
Differ module for computing plan operations.

This module compares the desired resource graph against the stored state and
classifies every resource as create, update, replace, destroy or no-op. The
comparison is attribute-level and value-level; references are resolved from
stored values when their producer is unchanged, and deferred otherwise.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..intake.graph import ResourceGraph
from ..models import OperationType, PlanOperation, Reference, ResourceNode, StateEntry, resolve_value
from ..providers.base import ProviderRegistry

logger = logging.getLogger(__name__)


class _DeferredValue(Exception):
    """Raised by lookups whose producer changes in the same apply."""


def compute_plan_operations(
    graph: ResourceGraph,
    current_state: Mapping[str, StateEntry],
    registry: ProviderRegistry,
) -> List[PlanOperation]:
    """
    Compare the desired graph with the current state.

    Nodes are visited producers first so that a consumer knows whether each
    of its producers is unchanged before resolving references to it.

    Args:
        graph: Desired resource graph
        current_state: Stored entries keyed by resource id
        registry: Providers supplying immutable-attribute policies

    Returns:
        List[PlanOperation]: One operation per declared or stored resource
    """
    logger.info("Computing plan operations")
    operations: Dict[str, PlanOperation] = {}

    for address in graph.topological_order():
        node = graph.get(address)
        operations[address] = _diff_node(node, current_state.get(address), operations, current_state, registry)

    for resource_id in sorted(set(current_state) - set(operations)):
        prior = current_state[resource_id]
        operations[resource_id] = PlanOperation(
            resource_id=resource_id,
            resource_type=prior.resource_type,
            action=OperationType.DESTROY,
            prior=prior,
        )

    result = list(operations.values())
    changes = sum(1 for operation in result if operation.is_actionable)
    logger.info(f"Computed {changes} changes across {len(result)} resources")
    return result


def compute_destroy_operations(current_state: Mapping[str, StateEntry]) -> List[PlanOperation]:
    """Destroy every stored resource."""
    return [
        PlanOperation(
            resource_id=resource_id,
            resource_type=entry.resource_type,
            action=OperationType.DESTROY,
            prior=entry,
        )
        for resource_id, entry in sorted(current_state.items())
    ]


def diff_attributes(
    desired: Mapping[str, Any], current: Mapping[str, Any], ignore: Iterable[str] = ()
) -> List[str]:
    """
    Names of attributes whose values differ.

    An attribute present on one side only compares against None.
    """
    keys = (set(desired) | set(current)) - set(ignore)
    return sorted(key for key in keys if desired.get(key) != current.get(key))


def resolve_planned_attributes(
    node: ResourceNode, lookup
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Resolve node attributes with a lookup that may defer.

    Returns:
        Planned attribute values (deferred ones keep their expressions) and
        the names of deferred attributes
    """
    planned: Dict[str, Any] = {}
    deferred: List[str] = []
    for key, value in node.attributes.items():
        try:
            planned[key] = resolve_value(value, lookup)
        except _DeferredValue:
            planned[key] = value
            deferred.append(key)
    return planned, sorted(deferred)


def _changes_values(operation: PlanOperation) -> bool:
    """Whether applying operation may change the values consumers see."""
    if operation.action == OperationType.UPDATE:
        return bool(operation.changed_attributes or operation.deferred_attributes)
    return operation.is_actionable


def _diff_node(
    node: ResourceNode,
    prior: Optional[StateEntry],
    operations: Mapping[str, PlanOperation],
    current_state: Mapping[str, StateEntry],
    registry: ProviderRegistry,
) -> PlanOperation:
    def lookup(reference: Reference) -> Any:
        producer = operations[reference.address]
        entry = current_state.get(reference.address)
        if entry is None or _changes_values(producer):
            raise _DeferredValue(str(reference))
        return entry.values().get(reference.attribute)

    planned, deferred = resolve_planned_attributes(node, lookup)

    if prior is None:
        logger.debug(f"{node.address}: create")
        return PlanOperation(
            resource_id=node.address,
            resource_type=node.type,
            action=OperationType.CREATE,
            node=node,
            deferred_attributes=deferred,
            planned_attributes=planned,
        )

    changed = diff_attributes(planned, prior.attributes, ignore=deferred)
    schema = registry.schema(node.type)
    forcing = [name for name in changed if name in schema.immutable]
    # Destroy ordering reads the stored dependencies
    dependencies_changed = node.dependency_addresses() != sorted(prior.dependencies)

    if forcing:
        action = OperationType.REPLACE
    elif changed or deferred or dependencies_changed:
        action = OperationType.UPDATE
    else:
        action = OperationType.NO_OP

    logger.debug(
        f"{node.address}: {action.value} (changed={changed}, deferred={deferred}, "
        f"dependencies_changed={dependencies_changed})"
    )
    return PlanOperation(
        resource_id=node.address,
        resource_type=node.type,
        action=action,
        node=node,
        prior=prior,
        changed_attributes=changed,
        deferred_attributes=deferred,
        replace_attributes=forcing,
        planned_attributes=planned,
        dependencies_changed=dependencies_changed,
    )
