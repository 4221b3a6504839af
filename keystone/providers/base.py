"""Provider capability interface and registry.

Every resource type is backed by a ResourceProvider exposing an attribute
schema and the create/update/delete lifecycle of remote objects. The set of
resource types is open: providers are registered at runtime or discovered
through the ``keystone.providers`` entry-point group.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from importlib.metadata import entry_points
from typing import Any, Dict, Iterable, Iterator, List

from pydantic import BaseModel, Field, model_validator

from ..errors import ConfigurationError, ProviderError, UnknownResourceTypeError

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "keystone.providers"


class ProviderSchema(BaseModel):
    """Attribute schema of one resource type.

    Attributes:
        type_name: Resource type handled by the provider
        attributes: Accepted input attributes; empty means any attribute is accepted
        required: Input attributes that must be declared
        outputs: Output-only attributes assigned by the provider
        immutable: Input attributes whose change forces replacement
        retryable_codes: Provider error codes that are safe to retry
    """
    type_name: str
    attributes: List[str] = Field(default_factory=list)
    required: List[str] = Field(default_factory=list)
    outputs: List[str] = Field(default_factory=lambda: ["id"])
    immutable: List[str] = Field(default_factory=list)
    retryable_codes: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_attribute_sets(self):
        """Required and immutable attributes must be declared inputs."""
        if self.is_open:
            return self
        declared = set(self.attributes)
        for name in self.required + self.immutable:
            if name not in declared:
                raise ValueError(f"'{name}' is not a declared attribute of {self.type_name}")
        overlap = declared & set(self.outputs)
        if overlap:
            raise ValueError(f"Attributes cannot also be outputs: {sorted(overlap)}")
        return self

    @property
    def is_open(self) -> bool:
        return not self.attributes

    def accepts(self, attribute: str) -> bool:
        """Whether attribute may be declared as an input."""
        return self.is_open or attribute in self.attributes

    def exposes(self, attribute: str) -> bool:
        """Whether attribute may be the target of a reference."""
        return self.accepts(attribute) or attribute in self.outputs

    def is_retryable(self, error: ProviderError) -> bool:
        """Classify a provider error as transient."""
        return error.retryable or (error.code is not None and error.code in self.retryable_codes)


@dataclass
class CreateResult:
    """Result of creating a remote object."""
    id: str
    outputs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UpdateResult:
    """Result of updating a remote object in place."""
    outputs: Dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """Lifecycle of remote objects of one resource type.

    Implementations raise ProviderError (or one of its subclasses) on failure.
    Any other exception is treated as a terminal failure of the operation.
    """

    schema: ProviderSchema

    @property
    def type_name(self) -> str:
        return self.schema.type_name

    @abstractmethod
    async def create(self, attributes: Dict[str, Any]) -> CreateResult:
        """Create a remote object from fully resolved attributes."""

    @abstractmethod
    async def update(
        self, id: str, old_attributes: Dict[str, Any], changed_attributes: Dict[str, Any]
    ) -> UpdateResult:
        """Apply changed attributes to an existing object."""

    @abstractmethod
    async def delete(self, id: str, attributes: Dict[str, Any]) -> None:
        """Delete an existing object."""


class ProviderRegistry:
    """Maps resource types to their providers."""

    def __init__(self, providers: Iterable[ResourceProvider] = ()):
        self._providers: Dict[str, ResourceProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ResourceProvider, replace: bool = False) -> None:
        type_name = provider.type_name
        if type_name in self._providers and not replace:
            raise ConfigurationError(f"A provider for '{type_name}' is already registered")
        self._providers[type_name] = provider
        logger.debug(f"Registered provider for {type_name}: {provider.__class__.__name__}")

    def get(self, type_name: str) -> ResourceProvider:
        try:
            return self._providers[type_name]
        except KeyError:
            raise UnknownResourceTypeError(type_name) from None

    def schema(self, type_name: str) -> ProviderSchema:
        return self.get(type_name).schema

    def types(self) -> List[str]:
        return sorted(self._providers)

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._providers

    def __iter__(self) -> Iterator[ResourceProvider]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """
        Register providers advertised by installed distributions.

        Each entry point must resolve to a ResourceProvider instance, or a
        callable returning one provider or an iterable of providers.

        Returns:
            Number of providers registered
        """
        count = 0
        for entry_point in entry_points(group=group):
            loaded = entry_point.load()
            if callable(loaded) and not isinstance(loaded, ResourceProvider):
                loaded = loaded()
            providers = [loaded] if isinstance(loaded, ResourceProvider) else list(loaded)
            for provider in providers:
                self.register(provider, replace=True)
                count += 1
            logger.info(f"Loaded {len(providers)} provider(s) from entry point '{entry_point.name}'")
        return count
