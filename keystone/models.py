"""
Centralized Pydantic models for the Keystone reconciler.

This module contains the core data models used throughout the pipeline:
- Desired-state declarations (ResourceNode, Reference, Template) from intake
- Plan operations and execution waves from assembly
- State entries and the persisted snapshot used by forge
- Execution results and apply reports
"""

import json
import re
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

STATE_FORMAT_VERSION = 1
DEPOSED_SEPARATOR = "#deposed-"

# Matches ${type.name.attribute} and ${var.name}
REFERENCE_PATTERN = re.compile(
    r"\$\{\s*([a-zA-Z_][a-zA-Z0-9_-]*)\.([a-zA-Z_][a-zA-Z0-9_-]*)(?:\.([a-zA-Z_][a-zA-Z0-9_-]*))?\s*\}"
)


# =============================================================================
# Core Enums
# =============================================================================

class OperationType(str, Enum):
    """Kinds of plan operations."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NO_OP = "no_op"


class ExecutionStatus(str, Enum):
    """Outcome of a single plan operation."""
    SUCCESS = "success"
    NO_OP = "no_op"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# =============================================================================
# Desired-State Models
# =============================================================================

class Reference(BaseModel):
    """Pointer from a consuming attribute to a producer's attribute."""
    model_config = ConfigDict(frozen=True)

    address: str
    attribute: str

    def __str__(self) -> str:
        return f"{self.address}.{self.attribute}"


class Template(BaseModel):
    """String value with one or more embedded references."""
    model_config = ConfigDict(frozen=True)

    template: str
    references: Tuple[Reference, ...]

    def render(self, lookup: Callable[[Reference], Any]) -> str:
        """Substitute every embedded reference with the value from lookup."""

        def _substitute(match: re.Match) -> str:
            reference = Reference(
                address=f"{match.group(1)}.{match.group(2)}",
                attribute=match.group(3),
            )
            return stringify(lookup(reference))

        return REFERENCE_PATTERN.sub(_substitute, self.template)

    def __str__(self) -> str:
        return self.template


class Lifecycle(BaseModel):
    """Lifecycle flags of a resource declaration."""
    model_config = ConfigDict(frozen=True)

    create_before_destroy: bool = False


class ResourceNode(BaseModel):
    """A declared resource; immutable within one planning cycle."""
    model_config = ConfigDict(frozen=True)

    type: str
    name: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    def references(self) -> List[Reference]:
        """All references found in the attribute values, in declaration order."""
        return list(iter_references(self.attributes))

    def dependency_addresses(self) -> List[str]:
        """Addresses this node consumes through references or depends_on."""
        return sorted({reference.address for reference in self.references()} | set(self.depends_on))


class OutputDeclaration(BaseModel):
    """Document-level output value."""
    model_config = ConfigDict(frozen=True)

    name: str
    value: Any = None
    description: Optional[str] = None
    sensitive: bool = False


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested inside value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Template):
        yield from value.references
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """
    Replace every Reference and Template inside value with concrete data.

    Args:
        value: Attribute value, possibly nested
        lookup: Returns the value of a reference; its exceptions propagate

    Returns:
        A copy of value without any Reference or Template
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Template):
        return value.render(lookup)
    if isinstance(value, dict):
        return {key: resolve_value(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, lookup) for item in value]
    return value


def stringify(value: Any) -> str:
    """Render a value for string interpolation."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


# =============================================================================
# State Models
# =============================================================================

class StateEntry(BaseModel):
    """Last applied record of one resource."""
    resource_id: str
    resource_type: str
    provider_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    deposed: bool = False  # Superseded object whose deletion failed
    version: int = 0
    updated_at: datetime = Field(default_factory=datetime.now)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v):
        """Validate version is non-negative."""
        if v < 0:
            raise ValueError("Version must be non-negative")
        return v

    def values(self) -> Dict[str, Any]:
        """Attribute and output values addressable by references."""
        return {**self.attributes, **self.outputs}

    @property
    def address(self) -> str:
        """Declared address; differs from resource_id for deposed objects."""
        return self.resource_id.split(DEPOSED_SEPARATOR, 1)[0]


def deposed_key(resource_id: str, provider_id: str) -> str:
    """State key under which a superseded object of resource_id is kept."""
    return f"{resource_id}{DEPOSED_SEPARATOR}{provider_id}"


class StateSnapshot(BaseModel):
    """Complete persisted state."""
    format_version: int = STATE_FORMAT_VERSION
    lineage: str = Field(default_factory=lambda: uuid.uuid4().hex)
    serial: int = 0
    resources: Dict[str, StateEntry] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    sensitive_outputs: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.now)

    def update_timestamp(self):
        """Update the last modified timestamp."""
        self.updated_at = datetime.now()


# =============================================================================
# Plan Models
# =============================================================================

class PlanOperation(BaseModel):
    """One planned change bound to a single resource id."""
    resource_id: str
    resource_type: str
    action: OperationType
    node: Optional[ResourceNode] = None
    prior: Optional[StateEntry] = None
    changed_attributes: List[str] = Field(default_factory=list)
    deferred_attributes: List[str] = Field(default_factory=list)
    replace_attributes: List[str] = Field(default_factory=list)
    planned_attributes: Dict[str, Any] = Field(default_factory=dict)
    dependencies_changed: bool = False  # Stored dependencies need a refresh

    @property
    def is_actionable(self) -> bool:
        return self.action != OperationType.NO_OP

    def get_summary(self) -> str:
        """Human-readable one line summary."""
        if self.action == OperationType.CREATE:
            return f"Create {self.resource_id}"
        if self.action == OperationType.DESTROY:
            return f"Destroy {self.resource_id}"
        if self.action == OperationType.REPLACE:
            return f"Replace {self.resource_id} (forced by: {', '.join(self.replace_attributes)})"
        if self.action == OperationType.UPDATE:
            fields = self.changed_attributes + self.deferred_attributes
            if not fields and self.dependencies_changed:
                return f"Refresh dependencies of {self.resource_id}"
            return f"Update {self.resource_id} (fields: {', '.join(fields)})"
        return f"No change for {self.resource_id}"


class Plan(BaseModel):
    """Ordered execution waves produced by the scheduler."""
    waves: List[List[PlanOperation]] = Field(default_factory=list)
    dependencies: Dict[str, List[str]] = Field(default_factory=dict)
    unchanged: List[PlanOperation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def operations(self) -> List[PlanOperation]:
        """Actionable operations in execution order."""
        return [operation for wave in self.waves for operation in wave]

    @property
    def is_empty(self) -> bool:
        return not self.waves

    def count_by_action(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in OperationType}
        for operation in self.operations + self.unchanged:
            counts[operation.action.value] += 1
        return counts


# =============================================================================
# Execution Models
# =============================================================================

class ExecutionResult(BaseModel):
    """Outcome of one plan operation."""
    resource_id: str
    action: OperationType
    status: ExecutionStatus
    outputs: Dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    attempts: int = 0
    execution_time: float = 0.0

    def is_success(self) -> bool:
        """Check if the operation left the resource converged."""
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.NO_OP)


class ApplyReport(BaseModel):
    """Every operation outcome of one apply run."""
    results: List[ExecutionResult] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    sensitive_outputs: List[str] = Field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.cancelled and all(result.is_success() for result in self.results)

    def by_status(self, status: ExecutionStatus) -> List[ExecutionResult]:
        return [result for result in self.results if result.status == status]

    def get_result(self, resource_id: str) -> Optional[ExecutionResult]:
        for result in self.results:
            if result.resource_id == resource_id:
                return result
        return None


__all__ = [
    # Enums
    'OperationType', 'ExecutionStatus',

    # Desired-state models
    'Reference', 'Template', 'Lifecycle', 'ResourceNode', 'OutputDeclaration',
    'iter_references', 'resolve_value', 'stringify', 'REFERENCE_PATTERN',

    # State models
    'StateEntry', 'StateSnapshot', 'STATE_FORMAT_VERSION', 'DEPOSED_SEPARATOR', 'deposed_key',

    # Plan models
    'PlanOperation', 'Plan',

    # Execution models
    'ExecutionResult', 'ApplyReport',
]
