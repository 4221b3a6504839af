"""
Keystone errors.

Plan-time errors (parsing, graph building, scheduling) abort before any
provider call is made. Apply-time errors are scoped to a single resource.
"""

from typing import List, Optional


class KeystoneError(Exception):
    """Base exception for all Keystone errors."""
    pass


class ConfigurationError(KeystoneError):
    """Errors in configuration."""
    pass


class ParseError(KeystoneError):
    """Malformed desired-state document."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        self.message = message
        self.file_path = file_path

        error_msg = f"Parse error: {message}"
        if file_path:
            error_msg += f" in file '{file_path}'"

        super().__init__(error_msg)


# =============================================================================
# Graph errors
# =============================================================================

class GraphError(KeystoneError):
    """Base class for errors raised while building the resource graph."""
    pass


class UnresolvedReferenceError(GraphError):
    """A reference points at an undeclared resource, variable or attribute."""

    def __init__(self, message: str, source: Optional[str] = None, target: Optional[str] = None):
        self.source = source
        self.target = target
        super().__init__(message)


class CyclicDependencyError(GraphError):
    """The declared resources reference each other in a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        path = " → ".join(cycle + cycle[:1])
        super().__init__(f"Dependency cycle detected: {path}")


class DuplicateResourceError(GraphError):
    """Two declarations share the same (type, name) pair."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Resource '{address}' is declared more than once")


class UnknownResourceTypeError(GraphError):
    """No provider is registered for a declared resource type."""

    def __init__(self, resource_type: str):
        self.resource_type = resource_type
        super().__init__(f"No provider registered for resource type '{resource_type}'")


class SchemaViolationError(GraphError):
    """A declaration does not match its provider schema."""
    pass


class CyclicPlanError(KeystoneError):
    """Plan operations cannot be ordered; indicates a graph builder defect."""

    def __init__(self, operations: List[str]):
        self.operations = operations
        super().__init__(f"Cannot order plan operations: {', '.join(operations)}")


# =============================================================================
# State errors
# =============================================================================

class StateError(KeystoneError):
    """Base class for state store errors."""
    pass


class VersionConflictError(StateError):
    """The stored version of an entry does not match the expected version."""

    def __init__(self, resource_id: str, expected_version: int, actual_version: int):
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Version conflict on '{resource_id}': expected {expected_version}, "
            f"found {actual_version}"
        )


class StateEntryNotFoundError(StateError):
    """No state entry exists for the requested resource id."""

    def __init__(self, resource_id: str):
        self.resource_id = resource_id
        super().__init__(f"No state entry for '{resource_id}'")


class StateFormatError(StateError):
    """The persisted state file cannot be read by this version."""
    pass


class OrphanedObjectError(StateError):
    """A created object could neither be recorded in state nor deleted again."""

    def __init__(self, resource_id: str, provider_id: str, reason: str):
        self.resource_id = resource_id
        self.provider_id = provider_id
        super().__init__(f"Object '{provider_id}' of '{resource_id}' is not tracked in state: {reason}")


# =============================================================================
# Provider errors
# =============================================================================

class ProviderError(KeystoneError):
    """Error reported by a resource provider for a single operation."""

    retryable = False

    def __init__(self, message: str, code: Optional[str] = None, retryable: Optional[bool] = None):
        self.code = code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


class RetryableProviderError(ProviderError):
    """Transient provider error; the operation may succeed if retried."""

    retryable = True


class TerminalProviderError(ProviderError):
    """Provider error that retrying cannot fix."""

    retryable = False
