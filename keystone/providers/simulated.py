"""In-memory simulated cloud provider.

Stands in for the remote services of a small serverless web stack: a virtual
network with public/private subnets and gateways, a static-site bucket behind
a CDN distribution, a function behind an HTTP gateway, a key-value table and
log retention. Objects live in a SimulatedCloud shared by all providers, and
failures can be injected per type and operation.
"""

import asyncio
import hashlib
import logging
import uuid
from collections import defaultdict, deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Tuple

import joblib

from ..errors import ProviderError, TerminalProviderError
from .base import CreateResult, ProviderRegistry, ProviderSchema, ResourceProvider, UpdateResult

logger = logging.getLogger(__name__)


SIMULATED_SCHEMAS: List[ProviderSchema] = [
    ProviderSchema(
        type_name="network",
        attributes=["cidr_block", "enable_dns", "tags"],
        required=["cidr_block"],
        outputs=["id", "arn"],
        immutable=["cidr_block"],
    ),
    ProviderSchema(
        type_name="subnet",
        attributes=["network_id", "cidr_block", "availability_zone", "public", "tags"],
        required=["network_id", "cidr_block"],
        outputs=["id", "arn"],
        immutable=["network_id", "cidr_block", "availability_zone"],
    ),
    ProviderSchema(
        type_name="internet_gateway",
        attributes=["network_id", "tags"],
        required=["network_id"],
        outputs=["id"],
        immutable=["network_id"],
    ),
    ProviderSchema(
        type_name="nat_gateway",
        attributes=["subnet_id", "tags"],
        required=["subnet_id"],
        outputs=["id", "public_ip"],
        immutable=["subnet_id"],
        retryable_codes=["Throttling"],
    ),
    ProviderSchema(
        type_name="route_table",
        attributes=["network_id", "routes", "subnet_ids", "tags"],
        required=["network_id"],
        outputs=["id"],
        immutable=["network_id"],
    ),
    ProviderSchema(
        type_name="bucket",
        attributes=["name", "website", "versioning", "tags"],
        required=["name"],
        outputs=["id", "arn", "domain_name"],
        immutable=["name"],
    ),
    ProviderSchema(
        type_name="cdn_distribution",
        attributes=["origin_domain", "default_root_object", "price_class", "aliases", "enabled"],
        required=["origin_domain"],
        outputs=["id", "arn", "domain_name"],
        retryable_codes=["Throttling"],
    ),
    ProviderSchema(
        type_name="role",
        attributes=["name", "assume_policy", "policies"],
        required=["name"],
        outputs=["id", "arn"],
        immutable=["name"],
    ),
    ProviderSchema(
        type_name="function",
        attributes=[
            "name", "runtime", "handler", "source_hash", "role_arn",
            "memory_size", "timeout", "environment", "subnet_ids",
        ],
        required=["name", "runtime", "handler", "role_arn"],
        outputs=["id", "arn", "invoke_arn", "version"],
        immutable=["name"],
        retryable_codes=["ResourceConflict", "Throttling"],
    ),
    ProviderSchema(
        type_name="http_gateway",
        attributes=["name", "protocol", "target_arn", "stage", "cors_origins"],
        required=["name", "target_arn"],
        outputs=["id", "endpoint"],
        immutable=["protocol"],
    ),
    ProviderSchema(
        type_name="table",
        attributes=["name", "hash_key", "range_key", "billing_mode", "ttl_attribute", "tags"],
        required=["name", "hash_key"],
        outputs=["id", "arn", "stream_arn"],
        immutable=["name", "hash_key", "range_key"],
    ),
    ProviderSchema(
        type_name="log_group",
        attributes=["name", "retention_days"],
        required=["name"],
        outputs=["id", "arn"],
        immutable=["name"],
    ),
]


class SimulatedCloud:
    """Object store shared by simulated providers.

    Args:
        latency: Seconds each call sleeps, to exercise concurrency
        path: Optional joblib file the objects are loaded from and saved to,
            so that separate CLI runs see the same simulated cloud
    """

    def __init__(self, latency: float = 0.0, path: Optional[Path] = None):
        self.latency = latency
        self.path = Path(path) if path else None
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self._failures: Dict[Tuple[str, str], Deque[ProviderError]] = defaultdict(deque)
        if self.path is not None and self.path.exists():
            self.objects = joblib.load(self.path)
            logger.debug(f"Loaded {len(self.objects)} simulated objects from {self.path}")

    def save(self) -> None:
        """Persist the objects to path, if one was given."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.path.with_suffix(".tmp")
        joblib.dump(self.objects, temp_file)
        temp_file.replace(self.path)

    def inject_failure(self, type_name: str, operation: str, error: ProviderError, times: int = 1) -> None:
        """Make the next `times` calls of operation on type_name raise error."""
        for _ in range(times):
            self._failures[(type_name, operation)].append(error)

    async def call(self, operation: str, type_name: str, object_id: str) -> None:
        """Record a call, wait for the simulated latency, raise injected failures."""
        self.calls.append((operation, type_name, object_id))
        if self.latency:
            await asyncio.sleep(self.latency)
        pending = self._failures.get((type_name, operation))
        if pending:
            raise pending.popleft()

    def objects_of_type(self, type_name: str) -> Dict[str, Dict[str, Any]]:
        return {
            object_id: data for object_id, data in self.objects.items()
            if data["type"] == type_name
        }


class SimulatedProvider(ResourceProvider):
    """Provider storing objects of one type in a SimulatedCloud."""

    def __init__(self, schema: ProviderSchema, cloud: SimulatedCloud):
        self.schema = schema
        self.cloud = cloud

    def _new_id(self) -> str:
        prefix = "".join(part[0] for part in self.type_name.split("_"))
        return f"{prefix}-{uuid.uuid4().hex[:12]}"

    def _generate_outputs(self, object_id: str, version: int) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {}
        for name in self.schema.outputs:
            if name == "id":
                outputs[name] = object_id
            elif name == "arn":
                outputs[name] = f"arn:sim:{self.type_name}:{object_id}"
            elif name == "invoke_arn":
                outputs[name] = f"arn:sim:invoke:{object_id}/invocations"
            elif name == "stream_arn":
                outputs[name] = f"arn:sim:{self.type_name}:{object_id}/stream"
            elif name == "domain_name":
                outputs[name] = f"{object_id}.{self.type_name.replace('_', '-')}.sim.internal"
            elif name == "endpoint":
                outputs[name] = f"https://{object_id}.execute.sim.internal"
            elif name == "public_ip":
                digest = hashlib.sha256(object_id.encode()).digest()
                outputs[name] = f"203.0.113.{digest[0] % 254 + 1}"
            elif name == "version":
                outputs[name] = version
            else:
                outputs[name] = f"{name}-{object_id}"
        return outputs

    async def create(self, attributes: Dict[str, Any]) -> CreateResult:
        object_id = self._new_id()
        await self.cloud.call("create", self.type_name, object_id)
        outputs = self._generate_outputs(object_id, version=1)
        self.cloud.objects[object_id] = {
            "type": self.type_name,
            "attributes": dict(attributes),
            "outputs": outputs,
        }
        logger.debug(f"Created {self.type_name} {object_id}")
        return CreateResult(id=object_id, outputs=outputs)

    async def update(
        self, id: str, old_attributes: Dict[str, Any], changed_attributes: Dict[str, Any]
    ) -> UpdateResult:
        await self.cloud.call("update", self.type_name, id)
        stored = self.cloud.objects.get(id)
        if stored is None:
            raise TerminalProviderError(f"{self.type_name} {id} does not exist", code="NotFound")
        stored["attributes"].update(changed_attributes)
        if "version" in stored["outputs"]:
            stored["outputs"]["version"] += 1
        logger.debug(f"Updated {self.type_name} {id}: {sorted(changed_attributes)}")
        return UpdateResult(outputs=dict(stored["outputs"]))

    async def delete(self, id: str, attributes: Dict[str, Any]) -> None:
        await self.cloud.call("delete", self.type_name, id)
        if self.cloud.objects.pop(id, None) is None:
            logger.warning(f"{self.type_name} {id} was already gone")
        else:
            logger.debug(f"Deleted {self.type_name} {id}")


def simulated_registry(cloud: Optional[SimulatedCloud] = None) -> ProviderRegistry:
    """Registry holding a simulated provider for every catalog schema."""
    cloud = cloud or SimulatedCloud()
    return ProviderRegistry(SimulatedProvider(schema, cloud) for schema in SIMULATED_SCHEMAS)
