"""
Executor module for applying a plan against resource providers.

Waves run strictly one after another; the operations of a wave run
concurrently. Each operation resolves its references from the state committed
by earlier waves, calls its provider with bounded exponential backoff for
retryable errors, and commits the confirmed result to the state store. A
failure only affects the operations that depend on the failed resource.
"""

import asyncio
import logging
import time
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..assembly.differ import diff_attributes
from ..errors import (
    KeystoneError,
    OrphanedObjectError,
    ProviderError,
    RetryableProviderError,
    StateEntryNotFoundError,
    UnresolvedReferenceError,
    VersionConflictError,
)
from ..models import (
    ApplyReport,
    ExecutionResult,
    ExecutionStatus,
    OperationType,
    Plan,
    PlanOperation,
    Reference,
    ResourceNode,
    StateEntry,
    deposed_key,
    resolve_value,
)
from ..providers.base import CreateResult, ProviderRegistry, ProviderSchema, ResourceProvider
from ..settings import KeystoneSettings
from .state import StateManager

logger = logging.getLogger(__name__)


@dataclass
class ExecutionConfig:
    """Retry, concurrency and timeout limits of the executor."""
    max_attempts: int = 3
    retry_delay_base: float = 0.5  # Base delay for exponential backoff
    retry_delay_max: float = 8.0  # Maximum retry delay
    parallel_limit: int = 10  # Maximum concurrent operations within a wave
    operation_timeout: Optional[float] = None  # Per provider call

    @classmethod
    def from_settings(cls, settings: KeystoneSettings) -> "ExecutionConfig":
        return cls(
            max_attempts=settings.max_attempts,
            retry_delay_base=settings.retry_delay_base,
            retry_delay_max=settings.retry_delay_max,
            parallel_limit=settings.parallel_limit,
            operation_timeout=settings.operation_timeout,
        )


class RetryManager:
    """Manages retry logic with exponential backoff."""

    def __init__(self, max_attempts: int, base_delay: float, max_delay: float):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given (1-based) attempt using exponential backoff."""
        delay = self.base_delay * (2 ** (attempt - 1))
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int, error: ProviderError, schema: ProviderSchema) -> bool:
        """Retry only errors the provider classifies as transient, within the attempt budget."""
        if attempt >= self.max_attempts:
            return False
        return schema.is_retryable(error)


class _OperationContext:
    """Mutable bookkeeping of one running operation."""

    def __init__(self, operation: PlanOperation):
        self.operation = operation
        self.attempts = 0

    @property
    def resource_id(self) -> str:
        return self.operation.resource_id


class PlanExecutor:
    """
    Applies plan waves through the provider registry.

    Args:
        registry: Providers for every resource type in the plan
        state_manager: Store receiving confirmed results
        config: Retry, concurrency and timeout limits
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        state_manager: StateManager,
        config: Optional[ExecutionConfig] = None,
    ):
        self.registry = registry
        self.state_manager = state_manager
        self.config = config or ExecutionConfig()
        self.retry_manager = RetryManager(
            self.config.max_attempts,
            self.config.retry_delay_base,
            self.config.retry_delay_max,
        )

    async def execute(self, plan: Plan, cancel_event: Optional[asyncio.Event] = None) -> ApplyReport:
        """
        Execute every wave of the plan.

        Args:
            plan: Scheduled plan
            cancel_event: When set, in-flight operations are cancelled and no
                further wave starts

        Returns:
            ApplyReport with one result per planned operation
        """
        report = ApplyReport()
        results: Dict[str, ExecutionResult] = {}
        blocked: Set[str] = set()
        semaphore = asyncio.Semaphore(self.config.parallel_limit)

        logger.info(f"Executing {len(plan.operations)} operations in {len(plan.waves)} waves")

        for index, wave in enumerate(plan.waves, start=1):
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                for operation in wave:
                    results[operation.resource_id] = self._result(
                        operation, ExecutionStatus.CANCELLED,
                        error_message="Apply cancelled before this wave started",
                        error_type="Cancelled",
                    )
                    blocked.add(operation.resource_id)
                continue

            runnable = []
            for operation in wave:
                failed = [
                    dependency for dependency in plan.dependencies.get(operation.resource_id, [])
                    if dependency in blocked
                ]
                if failed:
                    logger.warning(f"Skipping {operation.resource_id}: dependency failed ({', '.join(failed)})")
                    results[operation.resource_id] = self._result(
                        operation, ExecutionStatus.SKIPPED,
                        error_message=f"Dependency failed: {', '.join(failed)}",
                        error_type="DependencyFailed",
                    )
                    blocked.add(operation.resource_id)
                else:
                    runnable.append(operation)

            logger.info(f"Executing wave {index}/{len(plan.waves)} with {len(runnable)} operations")
            for result in await self._run_wave(runnable, semaphore, cancel_event):
                results[result.resource_id] = result
                if not result.is_success():
                    blocked.add(result.resource_id)

            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True

        report.results = [results[operation.resource_id] for operation in plan.operations]
        report.results.extend(
            self._result(operation, ExecutionStatus.NO_OP) for operation in plan.unchanged
        )
        report.completed_at = datetime.now()

        succeeded = sum(1 for result in report.results if result.is_success())
        logger.info(f"Completed execution. Success rate: {succeeded}/{len(report.results)}")
        return report

    async def _run_wave(
        self,
        operations: List[PlanOperation],
        semaphore: asyncio.Semaphore,
        cancel_event: Optional[asyncio.Event],
    ) -> List[ExecutionResult]:
        """Run operations concurrently; cancel in-flight ones when cancel_event is set."""
        if not operations:
            return []

        tasks = [
            asyncio.create_task(self._run_guarded(operation, semaphore), name=operation.resource_id)
            for operation in operations
        ]
        watcher = asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None

        try:
            pending = set(tasks)
            while pending:
                wait_on = (pending | {watcher}) if watcher is not None else pending
                done, _ = await asyncio.wait(wait_on, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                if watcher is not None and watcher in done:
                    if pending:
                        logger.warning(f"Cancellation requested, aborting {len(pending)} in-flight operations")
                    for task in pending:
                        task.cancel()
                    break
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        results = []
        for operation, outcome in zip(operations, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                results.append(self._result(
                    operation, ExecutionStatus.CANCELLED,
                    error_message="Cancelled while in flight",
                    error_type="Cancelled",
                ))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)
        return results

    async def _run_guarded(self, operation: PlanOperation, semaphore: asyncio.Semaphore) -> ExecutionResult:
        async with semaphore:
            return await self._run_operation(operation)

    async def _run_operation(self, operation: PlanOperation) -> ExecutionResult:
        """Run one operation and convert its errors into a failed result."""
        context = _OperationContext(operation)
        start_time = time.monotonic()
        logger.info(f"Starting {operation.get_summary()}")

        try:
            if operation.action == OperationType.CREATE:
                status, outputs = await self._create(context)
            elif operation.action == OperationType.UPDATE:
                status, outputs = await self._update(context)
            elif operation.action == OperationType.REPLACE:
                status, outputs = await self._replace(context, self._resolve(operation.node))
            elif operation.action == OperationType.DESTROY:
                status, outputs = await self._destroy(context)
            else:
                status, outputs = ExecutionStatus.NO_OP, {}
        except KeystoneError as e:
            logger.error(f"{operation.action.value} {operation.resource_id} failed: {e}")
            return self._result(
                operation, ExecutionStatus.FAILED,
                error_message=str(e),
                error_type=type(e).__name__,
                attempts=context.attempts,
                execution_time=time.monotonic() - start_time,
            )
        except Exception as e:
            logger.exception(f"Unexpected error during {operation.action.value} {operation.resource_id}")
            return self._result(
                operation, ExecutionStatus.FAILED,
                error_message=f"{type(e).__name__}: {e}",
                error_type=type(e).__name__,
                attempts=context.attempts,
                execution_time=time.monotonic() - start_time,
            )

        logger.info(f"Finished {operation.action.value} {operation.resource_id}: {status.value}")
        return self._result(
            operation, status,
            outputs=outputs,
            attempts=context.attempts,
            execution_time=time.monotonic() - start_time,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    async def _create(self, context: _OperationContext):
        node = self._node(context.operation)
        attributes = self._resolve(node)
        provider = self.registry.get(node.type)
        self._check_version(context)
        created = await self._call(context, provider, provider.create, attributes)
        entry = await self._commit_created(context, provider, node, created, attributes)
        return ExecutionStatus.SUCCESS, entry.outputs

    async def _update(self, context: _OperationContext):
        operation = context.operation
        node = self._node(operation)
        prior = operation.prior
        attributes = self._resolve(node)
        provider = self.registry.get(node.type)

        changed = diff_attributes(attributes, prior.attributes)
        if not changed:
            if node.dependency_addresses() == sorted(prior.dependencies):
                logger.info(f"{operation.resource_id}: resolved attributes are unchanged")
                return ExecutionStatus.NO_OP, prior.outputs
            # Nothing to send to the provider, only the recorded edges moved
            logger.info(f"{operation.resource_id}: refreshing stored dependencies")
            entry = self._new_entry(node, prior.provider_id, prior.attributes, prior.outputs)
            entry = self._commit(context, entry)
            return ExecutionStatus.SUCCESS, entry.outputs

        forcing = [name for name in changed if name in provider.schema.immutable]
        if forcing:
            logger.info(f"{operation.resource_id}: {', '.join(forcing)} changed, replacing")
            return await self._replace(context, attributes)

        self._check_version(context)
        updated = await self._call(
            context, provider, provider.update,
            prior.provider_id, prior.attributes, {name: attributes.get(name) for name in changed},
        )
        entry = self._new_entry(node, prior.provider_id, attributes, {**prior.outputs, **updated.outputs})
        entry = self._commit(context, entry)
        return ExecutionStatus.SUCCESS, entry.outputs

    async def _replace(self, context: _OperationContext, attributes: Dict[str, Any]):
        operation = context.operation
        node = self._node(operation)
        prior = operation.prior
        provider = self.registry.get(node.type)
        self._check_version(context)

        if node.lifecycle.create_before_destroy:
            created = await self._call(context, provider, provider.create, attributes)
            entry = await self._commit_created(context, provider, node, created, attributes)
            try:
                await self._call(context, provider, provider.delete, prior.provider_id, prior.attributes)
            except (Exception, asyncio.CancelledError):
                # Keep the old object tracked so a later plan destroys it
                self._depose(prior)
                raise
            return ExecutionStatus.SUCCESS, entry.outputs

        await self._call(context, provider, provider.delete, prior.provider_id, prior.attributes)
        try:
            created = await self._call(context, provider, provider.create, attributes)
        except (Exception, asyncio.CancelledError):
            # The old object is gone and no new one exists
            self._commit(context, None)
            raise
        entry = await self._commit_created(context, provider, node, created, attributes)
        return ExecutionStatus.SUCCESS, entry.outputs

    async def _destroy(self, context: _OperationContext):
        prior = context.operation.prior
        provider = self.registry.get(prior.resource_type)
        self._check_version(context)
        await self._call(context, provider, provider.delete, prior.provider_id, prior.attributes)
        self._commit(context, None)
        return ExecutionStatus.SUCCESS, {}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _call(
        self,
        context: _OperationContext,
        provider: ResourceProvider,
        method: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        """Call a provider method, retrying transient errors with backoff."""
        timeout = self.config.operation_timeout
        attempt = 0
        while True:
            attempt += 1
            context.attempts += 1
            try:
                if timeout is not None:
                    return await asyncio.wait_for(method(*args), timeout)
                return await method(*args)
            except asyncio.TimeoutError:
                error: ProviderError = RetryableProviderError(
                    f"{method.__name__} timed out after {timeout}s", code="Timeout"
                )
            except ProviderError as e:
                error = e

            if not self.retry_manager.should_retry(attempt, error, provider.schema):
                raise error
            delay = self.retry_manager.calculate_delay(attempt)
            logger.warning(
                f"{context.resource_id}: {method.__name__} failed ({error}), "
                f"attempt {attempt}/{self.config.max_attempts}, retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    def _resolve(self, node: ResourceNode) -> Dict[str, Any]:
        """Resolve node attributes from state committed by earlier waves."""

        def lookup(reference: Reference) -> Any:
            try:
                entry = self.state_manager.get(reference.address)
            except StateEntryNotFoundError:
                raise UnresolvedReferenceError(
                    f"{node.address}: '{reference.address}' has no applied state",
                    source=node.address, target=str(reference),
                ) from None
            return entry.values().get(reference.attribute)

        return resolve_value(node.attributes, lookup)

    def _commit(self, context: _OperationContext, entry: Optional[StateEntry]) -> Optional[StateEntry]:
        prior = context.operation.prior
        expected_version = prior.version if prior is not None else 0
        return self.state_manager.commit_apply(context.resource_id, entry, expected_version)

    def _check_version(self, context: _OperationContext) -> None:
        """Fail before any provider call when another writer has moved the entry."""
        prior = context.operation.prior
        expected_version = prior.version if prior is not None else 0
        actual_version = self.state_manager.version(context.resource_id)
        if actual_version != expected_version:
            raise VersionConflictError(context.resource_id, expected_version, actual_version)

    async def _commit_created(
        self,
        context: _OperationContext,
        provider: ResourceProvider,
        node: ResourceNode,
        created: CreateResult,
        attributes: Dict[str, Any],
    ) -> StateEntry:
        """Commit a new object; delete it again when the commit loses a race."""
        try:
            return self._commit(context, self._new_entry(node, created.id, attributes, created.outputs))
        except VersionConflictError as conflict:
            logger.warning(f"{context.resource_id}: {conflict}, deleting new object {created.id}")
            try:
                await self._call(context, provider, provider.delete, created.id, attributes)
            except ProviderError as e:
                raise OrphanedObjectError(context.resource_id, created.id, f"{conflict}; delete failed: {e}") from e
            raise

    def _depose(self, prior: StateEntry) -> None:
        """Keep a superseded object in state under its deposed key."""
        key = deposed_key(prior.resource_id, prior.provider_id)
        logger.warning(f"{prior.resource_id}: old object {prior.provider_id} is still tracked as {key}")
        self.state_manager.commit_apply(key, prior.model_copy(update={"deposed": True}), expected_version=0)

    @staticmethod
    def _node(operation: PlanOperation) -> ResourceNode:
        if operation.node is None:
            raise KeystoneError(f"{operation.action.value} {operation.resource_id} has no declaration")
        return operation.node

    @staticmethod
    def _new_entry(node: ResourceNode, provider_id: str, attributes: Dict[str, Any], outputs: Dict[str, Any]) -> StateEntry:
        return StateEntry(
            resource_id=node.address,
            resource_type=node.type,
            provider_id=provider_id,
            attributes=attributes,
            outputs={**outputs, "id": outputs.get("id", provider_id)},
            dependencies=node.dependency_addresses(),
        )

    @staticmethod
    def _result(operation: PlanOperation, status: ExecutionStatus, **kwargs: Any) -> ExecutionResult:
        return ExecutionResult(
            resource_id=operation.resource_id,
            action=operation.action,
            status=status,
            **kwargs,
        )
