"""
Resource graph builder.

Turns a parsed Document into a ResourceGraph: typed ResourceNodes plus
directed edges for every attribute reference and explicit ``depends_on``.
Edges point from the consuming resource to the producing resource, so the
producers of a node are its successors in the underlying networkx graph.
"""

import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

import networkx as nx

from ..errors import (
    CyclicDependencyError,
    DuplicateResourceError,
    SchemaViolationError,
    UnresolvedReferenceError,
)
from ..models import REFERENCE_PATTERN, Lifecycle, OutputDeclaration, Reference, ResourceNode, Template, stringify
from ..providers.base import ProviderRegistry
from .parser import Document, ResourceDeclaration, VariableDeclaration

logger = logging.getLogger(__name__)

META_ARGUMENTS = {"depends_on", "lifecycle"}
UNSUPPORTED_META_ARGUMENTS = {"count", "for_each", "provider"}


class ResourceGraph:
    """Acyclic graph of declared resources and their references."""

    def __init__(self):
        self._graph = nx.DiGraph()
        self.outputs: Dict[str, OutputDeclaration] = {}

    def add_node(self, node: ResourceNode) -> None:
        if node.address in self._graph:
            raise DuplicateResourceError(node.address)
        self._graph.add_node(node.address, node=node)

    def add_edge(self, consumer: str, producer: str, attribute: Optional[str] = None) -> None:
        """Record that consumer depends on producer (through attribute, if any)."""
        if self._graph.has_edge(consumer, producer):
            data = self._graph.edges[consumer, producer]
        else:
            self._graph.add_edge(consumer, producer, attributes=set())
            data = self._graph.edges[consumer, producer]
        if attribute is not None:
            data["attributes"].add(attribute)

    @property
    def nodes(self) -> Dict[str, ResourceNode]:
        return {address: data["node"] for address, data in self._graph.nodes(data=True)}

    def get(self, address: str) -> ResourceNode:
        return self._graph.nodes[address]["node"]

    def __contains__(self, address: object) -> bool:
        return address in self._graph

    def __len__(self) -> int:
        return self._graph.number_of_nodes()

    def __iter__(self) -> Iterator[ResourceNode]:
        for address in self.topological_order():
            yield self.get(address)

    def dependencies(self, address: str) -> Set[str]:
        """Resources that address consumes."""
        return set(self._graph.successors(address))

    def dependents(self, address: str) -> Set[str]:
        """Resources that consume address."""
        return set(self._graph.predecessors(address))

    def edges(self) -> List[Tuple[str, str, Set[str]]]:
        """(consumer, producer, referenced attributes) for every edge."""
        return sorted(
            (consumer, producer, set(data["attributes"]))
            for consumer, producer, data in self._graph.edges(data=True)
        )

    def find_cycle(self) -> Optional[List[str]]:
        """Addresses along one dependency cycle, or None when acyclic."""
        try:
            cycle_edges = nx.find_cycle(self._graph)
        except nx.NetworkXNoCycle:
            return None
        return [consumer for consumer, _producer, *_ in cycle_edges]

    def topological_order(self) -> List[str]:
        """Addresses with every producer before its consumers, ties broken by name."""
        return list(nx.lexicographical_topological_sort(self._graph.reverse(copy=False)))


class GraphBuilder:
    """
    Builds a ResourceGraph from a Document.

    Args:
        registry: Providers whose schemas validate declarations and references
        variables: Variable values overriding document defaults
    """

    def __init__(self, registry: ProviderRegistry, variables: Optional[Mapping[str, Any]] = None):
        self.registry = registry
        self.variable_overrides = dict(variables or {})

    def build(self, document: Document) -> ResourceGraph:
        """
        Build and validate the resource graph.

        Raises:
            DuplicateResourceError: If a (type, name) pair is declared twice
            UnknownResourceTypeError: If no provider handles a declared type
            SchemaViolationError: If a declaration breaks its provider schema
            UnresolvedReferenceError: If a reference or depends_on target is undeclared
            CyclicDependencyError: If the references form a cycle
        """
        variables = self._resolve_variables(document.variables)

        declarations: Dict[str, ResourceDeclaration] = {}
        for declaration in document.resources:
            if declaration.address in declarations:
                raise DuplicateResourceError(declaration.address)
            self.registry.get(declaration.type)
            declarations[declaration.address] = declaration

        graph = ResourceGraph()
        pending_edges: List[Tuple[str, str, Optional[str]]] = []

        for address, declaration in declarations.items():
            node = self._build_node(declaration, declarations, variables)
            graph.add_node(node)
            for reference in node.references():
                pending_edges.append((address, reference.address, reference.attribute))
            for dependency in node.depends_on:
                pending_edges.append((address, dependency, None))

        for consumer, producer, attribute in pending_edges:
            graph.add_edge(consumer, producer, attribute)

        for name, output in document.outputs.items():
            value = self._convert(output.value, f"output.{name}", declarations, variables)
            graph.outputs[name] = OutputDeclaration(
                name=name,
                value=value,
                description=output.description,
                sensitive=output.sensitive,
            )

        cycle = graph.find_cycle()
        if cycle:
            raise CyclicDependencyError(cycle)

        logger.info(f"Built resource graph with {len(graph)} nodes and {len(pending_edges)} references")
        return graph

    def _resolve_variables(self, declared: Mapping[str, VariableDeclaration]) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for name, variable in declared.items():
            if name in self.variable_overrides:
                values[name] = _coerce(self.variable_overrides[name], variable.type, name)
            elif variable.has_default:
                values[name] = variable.default
        for name in self.variable_overrides:
            if name not in declared:
                logger.warning(f"Value given for undeclared variable '{name}' is ignored")
        return values

    def _build_node(
        self,
        declaration: ResourceDeclaration,
        declarations: Mapping[str, ResourceDeclaration],
        variables: Mapping[str, Any],
    ) -> ResourceNode:
        address = declaration.address
        schema = self.registry.schema(declaration.type)
        body = declaration.body

        unsupported = sorted(UNSUPPORTED_META_ARGUMENTS & set(body))
        if unsupported:
            raise SchemaViolationError(f"{address}: '{unsupported[0]}' is not supported")

        attributes: Dict[str, Any] = {}
        for key, value in body.items():
            if key in META_ARGUMENTS:
                continue
            if key in schema.outputs or not schema.accepts(key):
                raise SchemaViolationError(f"{address}: '{key}' is not a settable attribute of {declaration.type}")
            attributes[key] = self._convert(value, address, declarations, variables)

        missing = [name for name in schema.required if name not in attributes]
        if missing:
            raise SchemaViolationError(f"{address}: missing required attribute(s) {', '.join(missing)}")

        return ResourceNode(
            type=declaration.type,
            name=declaration.name,
            attributes=attributes,
            depends_on=tuple(self._depends_on(body.get("depends_on", []), address, declarations)),
            lifecycle=self._lifecycle(body.get("lifecycle"), address),
        )

    def _depends_on(self, value: Any, address: str, declarations: Mapping[str, ResourceDeclaration]) -> List[str]:
        if not isinstance(value, list):
            raise SchemaViolationError(f"{address}: depends_on must be a list")
        targets = []
        for item in value:
            target = str(item).strip()
            if target.startswith("${") and target.endswith("}"):
                target = target[2:-1].strip()
            if target not in declarations:
                raise UnresolvedReferenceError(
                    f"{address}: depends_on references undeclared resource '{target}'",
                    source=address, target=target,
                )
            targets.append(target)
        return sorted(set(targets))

    def _lifecycle(self, value: Any, address: str) -> Lifecycle:
        if value is None:
            return Lifecycle()
        if isinstance(value, list) and len(value) == 1:
            value = value[0]
        if not isinstance(value, dict):
            raise SchemaViolationError(f"{address}: malformed lifecycle block")
        unknown = set(value) - set(Lifecycle.model_fields)
        if unknown:
            raise SchemaViolationError(f"{address}: unsupported lifecycle flag(s) {', '.join(sorted(unknown))}")
        return Lifecycle(**value)

    def _convert(
        self,
        value: Any,
        source: str,
        declarations: Mapping[str, ResourceDeclaration],
        variables: Mapping[str, Any],
    ) -> Any:
        """Turn reference expressions inside value into Reference and Template objects."""
        if isinstance(value, dict):
            return {key: self._convert(item, source, declarations, variables) for key, item in value.items()}
        if isinstance(value, list):
            return [self._convert(item, source, declarations, variables) for item in value]
        if not isinstance(value, str) or "${" not in value:
            return value

        whole = REFERENCE_PATTERN.fullmatch(value.strip())
        if whole and whole.group(1) == "var" and whole.group(3) is None:
            return self._variable(whole.group(2), source, variables)

        def _substitute_variable(match) -> str:
            if match.group(1) == "var" and match.group(3) is None:
                return stringify(self._variable(match.group(2), source, variables))
            return match.group(0)

        text = REFERENCE_PATTERN.sub(_substitute_variable, value)
        references = []
        for match in REFERENCE_PATTERN.finditer(text):
            references.append(self._reference(match, source, declarations))

        if not references:
            return text
        whole = REFERENCE_PATTERN.fullmatch(text.strip())
        if whole:
            return references[0]
        return Template(template=text, references=tuple(references))

    def _variable(self, name: str, source: str, variables: Mapping[str, Any]) -> Any:
        if name not in variables:
            raise UnresolvedReferenceError(
                f"{source}: variable '{name}' is undeclared or has no value",
                source=source, target=f"var.{name}",
            )
        return variables[name]

    def _reference(self, match, source: str, declarations: Mapping[str, ResourceDeclaration]) -> Reference:
        address = f"{match.group(1)}.{match.group(2)}"
        attribute = match.group(3)
        if attribute is None:
            raise UnresolvedReferenceError(
                f"{source}: reference '{match.group(0)}' does not name an attribute",
                source=source, target=address,
            )
        declaration = declarations.get(address)
        if declaration is None:
            raise UnresolvedReferenceError(
                f"{source}: reference to undeclared resource '{address}'",
                source=source, target=address,
            )
        if not self.registry.schema(declaration.type).exposes(attribute):
            raise UnresolvedReferenceError(
                f"{source}: '{declaration.type}' has no attribute '{attribute}'",
                source=source, target=f"{address}.{attribute}",
            )
        return Reference(address=address, attribute=attribute)


def _coerce(value: Any, declared_type: Optional[str], name: str) -> Any:
    """Convert a command-line string to the variable's declared type."""
    if not isinstance(value, str) or declared_type in (None, "string", "any"):
        return value
    if declared_type == "number":
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                raise SchemaViolationError(f"Variable '{name}' expects a number, got '{value}'") from None
    if declared_type == "bool":
        lowered = value.lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no"):
            return False
        raise SchemaViolationError(f"Variable '{name}' expects a bool, got '{value}'")
    return value
