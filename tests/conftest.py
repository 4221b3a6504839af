"""
Pytest configuration and fixtures for Keystone tests.
"""

import asyncio
import json
import tempfile
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from keystone.errors import ProviderError, TerminalProviderError
from keystone.forge import StateManager
from keystone.intake import GraphBuilder, Parser
from keystone.models import StateEntry, resolve_value
from keystone.providers import CreateResult, ProviderRegistry, ProviderSchema, ResourceProvider, UpdateResult


class FakeProvider(ResourceProvider):
    """Scripted provider recording every call in a shared journal.

    The schema is open: any attribute is accepted and exposed. Journal
    entries are (operation, type, name) where name is the "name" attribute.
    """

    def __init__(
        self,
        type_name: str,
        journal: List[Tuple[str, str, str]],
        immutable: Tuple[str, ...] = (),
        retryable_codes: Tuple[str, ...] = (),
        delay: float = 0.0,
    ):
        self.schema = ProviderSchema(
            type_name=type_name,
            outputs=["id", "arn"],
            immutable=list(immutable),
            retryable_codes=list(retryable_codes),
        )
        self.journal = journal
        self.delay = delay
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.started: Dict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._failures: Dict[Tuple[str, Optional[str]], deque] = defaultdict(deque)
        self._counter = 0

    def fail(self, operation: str, error: ProviderError, name: Optional[str] = None, times: int = 1) -> None:
        """Make the next `times` calls of operation (for name, or any name) raise error."""
        for _ in range(times):
            self._failures[(operation, name)].append(error)

    async def _call(self, operation: str, name: str) -> None:
        self.journal.append((operation, self.type_name, name))
        self.started[name].set()
        if self.delay:
            await asyncio.sleep(self.delay)
        for key in ((operation, name), (operation, None)):
            if self._failures[key]:
                raise self._failures[key].popleft()

    async def create(self, attributes: Dict[str, Any]) -> CreateResult:
        await self._call("create", attributes.get("name", ""))
        self._counter += 1
        object_id = f"{self.type_name}-{self._counter}"
        self.objects[object_id] = dict(attributes)
        return CreateResult(id=object_id, outputs={"arn": f"arn:fake:{object_id}"})

    async def update(
        self, id: str, old_attributes: Dict[str, Any], changed_attributes: Dict[str, Any]
    ) -> UpdateResult:
        await self._call("update", old_attributes.get("name", ""))
        if id not in self.objects:
            raise TerminalProviderError(f"{id} does not exist", code="NotFound")
        self.objects[id].update(changed_attributes)
        return UpdateResult(outputs={"arn": f"arn:fake:{id}"})

    async def delete(self, id: str, attributes: Dict[str, Any]) -> None:
        await self._call("delete", attributes.get("name", ""))
        self.objects.pop(id, None)


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def journal():
    """Shared record of provider calls, in call order."""
    return []


@pytest.fixture
def thing_provider(journal):
    return FakeProvider("thing", journal)


@pytest.fixture
def box_provider(journal):
    """Provider whose "zone" attribute forces replacement."""
    return FakeProvider("box", journal, immutable=("zone",), retryable_codes=("Throttling",))


@pytest.fixture
def registry(thing_provider, box_provider):
    return ProviderRegistry([thing_provider, box_provider])


@pytest.fixture
def state_manager(temp_dir):
    return StateManager(temp_dir / "state.joblib")


@pytest.fixture
def parse_json():
    """Parse a JSON-shaped document given as a dict."""

    def _parse(data: Dict[str, Any]):
        return Parser().parse_string(json.dumps(data), format="json")

    return _parse


@pytest.fixture
def build_graph(registry, parse_json):
    """Build a resource graph from a JSON-shaped document."""

    def _build(data: Dict[str, Any], variables: Optional[Dict[str, Any]] = None):
        return GraphBuilder(registry, variables).build(parse_json(data))

    return _build


@pytest.fixture
def chain_document():
    """Three things where a consumes b and b consumes c; attributes can be overridden."""

    def _document(**overrides) -> Dict[str, Any]:
        resources = {
            "a": {"name": "a", "upstream": "${thing.b.arn}"},
            "b": {"name": "b", "upstream": "${thing.c.id}"},
            "c": {"name": "c", "size": 1},
        }
        for name, attributes in overrides.items():
            resources[name].update(attributes)
        return {"resource": {"thing": resources}}

    return _document


@pytest.fixture
def applied_state():
    """State as if every node of a graph had been applied with resolved values."""

    def _state(graph, provider_ids: Optional[Dict[str, str]] = None) -> Dict[str, StateEntry]:
        provider_ids = provider_ids or {}
        state: Dict[str, StateEntry] = {}

        def lookup(reference):
            return state[reference.address].values()[reference.attribute]

        for address in graph.topological_order():
            node = graph.get(address)
            provider_id = provider_ids.get(address, f"{address}-id")
            state[address] = StateEntry(
                resource_id=address,
                resource_type=node.type,
                provider_id=provider_id,
                attributes=resolve_value(node.attributes, lookup),
                outputs={"id": provider_id, "arn": f"arn:{provider_id}"},
                dependencies=node.dependency_addresses(),
                version=1,
            )
        return state

    return _state
