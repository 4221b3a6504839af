"""Resource providers for Keystone."""

from .base import (
    CreateResult,
    ProviderRegistry,
    ProviderSchema,
    ResourceProvider,
    UpdateResult,
)
from .simulated import SIMULATED_SCHEMAS, SimulatedCloud, SimulatedProvider, simulated_registry

__all__ = [
    "CreateResult",
    "ProviderRegistry",
    "ProviderSchema",
    "ResourceProvider",
    "UpdateResult",
    "SIMULATED_SCHEMAS",
    "SimulatedCloud",
    "SimulatedProvider",
    "simulated_registry",
]
