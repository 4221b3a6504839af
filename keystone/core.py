"""
Keystone Core - Dependency-graph-driven infrastructure reconciliation.

Plan Pipeline: Parse documents → Build resource graph → Diff against state → Schedule waves
Apply Pipeline: Plan → Execute waves through providers → Commit state → Resolve outputs
Destroy Pipeline: Destroy every stored resource in reverse dependency order
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .assembly import compute_destroy_operations, compute_plan_operations, schedule_operations
from .errors import StateEntryNotFoundError
from .forge import ExecutionConfig, PlanExecutor, StateManager
from .intake import Document, GraphBuilder, Parser, ResourceGraph
from .models import ApplyReport, ExecutionResult, ExecutionStatus, Plan, Reference, StateEntry, resolve_value
from .providers import ProviderRegistry, SimulatedCloud, simulated_registry
from .settings import KeystoneSettings, get_settings

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class KeystoneCore:
    """Main coordinator for the Keystone pipeline."""

    def __init__(
        self,
        registry: Optional[ProviderRegistry] = None,
        state_file: Optional[PathLike] = None,
        variables: Optional[Mapping[str, Any]] = None,
        settings: Optional[KeystoneSettings] = None,
        parallel_limit: Optional[int] = None,
    ):
        """
        Initialize KeystoneCore.

        Args:
            registry: Resource providers; defaults to the simulated cloud plus
                providers installed under the keystone.providers entry points
            state_file: State file path (overrides settings/.env)
            variables: Values for document variables
            settings: Settings to use instead of the global ones
            parallel_limit: Concurrent operations per wave (overrides settings/.env)
        """
        self.settings = settings or get_settings()
        self.state_file = Path(state_file or self.settings.state_file)
        self.variables = dict(variables or {})

        self._cloud: Optional[SimulatedCloud] = None
        if registry is None:
            self._cloud = SimulatedCloud(path=self.state_file.parent / "simulated_cloud.joblib")
            registry = simulated_registry(self._cloud)
            registry.load_entry_points()
        self.registry = registry

        self.state_manager = StateManager(self.state_file, self.settings.backup_dir)

        self.execution_config = ExecutionConfig.from_settings(self.settings)
        if parallel_limit is not None:
            self.execution_config.parallel_limit = parallel_limit

        logger.info(f"KeystoneCore initialized with {len(self.registry)} resource types")

    # =========================================================================
    # Plan
    # =========================================================================

    def load_document(self, paths: Iterable[PathLike]) -> Document:
        """Parse and merge every document of paths."""
        document = Parser().parse_paths(paths)
        logger.info(f"Loaded {len(document.resources)} resource declarations")
        return document

    def build_graph(self, document: Document) -> ResourceGraph:
        return GraphBuilder(self.registry, self.variables).build(document)

    def plan(self, paths: Iterable[PathLike]) -> Plan:
        """
        Plan mode: compute the ordered operations without calling providers.

        Raises:
            KeystoneError: On any plan-time error (parse, reference, cycle,
                duplicate, schema, ordering)
        """
        graph = self.build_graph(self.load_document(paths))
        return self._plan_graph(graph)

    def plan_destroy(self) -> Plan:
        """Plan the destruction of every stored resource."""
        operations = compute_destroy_operations(self.state_manager.load())
        return schedule_operations(operations, ResourceGraph())

    def _plan_graph(self, graph: ResourceGraph) -> Plan:
        operations = compute_plan_operations(graph, self.state_manager.load(), self.registry)
        return schedule_operations(operations, graph)

    # =========================================================================
    # Apply / Destroy
    # =========================================================================

    async def apply(
        self, paths: Iterable[PathLike], cancel_event: Optional[asyncio.Event] = None
    ) -> ApplyReport:
        """
        Full pipeline: plan → execute → commit → resolve outputs.

        A version conflict means another writer committed while this apply
        ran; the state is re-loaded and re-diffed up to conflict_retries times.

        Args:
            paths: Document files or directories
            cancel_event: Cancels the run when set

        Returns:
            ApplyReport covering every planned operation
        """
        logger.info("Starting Keystone apply pipeline")
        graph = self.build_graph(self.load_document(paths))
        plan = self._plan_graph(graph)

        self._backup()
        executor = PlanExecutor(self.registry, self.state_manager, self.execution_config)

        results: Dict[str, ExecutionResult] = {}
        attempt = 0
        try:
            while True:
                report = await executor.execute(plan, cancel_event)
                _merge_results(results, report.results)

                conflicts = [
                    result.resource_id for result in report.results
                    if result.error_type == "VersionConflictError"
                ]
                if not conflicts or report.cancelled or attempt >= self.settings.conflict_retries:
                    break
                attempt += 1
                logger.warning(
                    f"State changed underneath {', '.join(conflicts)}; "
                    f"re-planning (attempt {attempt}/{self.settings.conflict_retries})"
                )
                plan = self._plan_graph(graph)
        finally:
            self._save_cloud()

        report.results = list(results.values())
        report.outputs = self._resolve_outputs(graph)
        report.sensitive_outputs = sorted(name for name, output in graph.outputs.items() if output.sensitive)
        self.state_manager.set_outputs(report.outputs, report.sensitive_outputs)

        logger.info("Keystone apply pipeline complete")
        return report

    async def destroy(self, cancel_event: Optional[asyncio.Event] = None) -> ApplyReport:
        """Destroy pipeline: remove every resource recorded in state."""
        logger.info("Starting Keystone destroy pipeline")
        plan = self.plan_destroy()

        self._backup()
        executor = PlanExecutor(self.registry, self.state_manager, self.execution_config)
        try:
            report = await executor.execute(plan, cancel_event)
        finally:
            self._save_cloud()

        if report.success:
            self.state_manager.set_outputs({})

        logger.info("Keystone destroy pipeline complete")
        return report

    # =========================================================================
    # State inspection
    # =========================================================================

    def state_entries(self) -> List[StateEntry]:
        entries = self.state_manager.load()
        return [entries[resource_id] for resource_id in sorted(entries)]

    def stored_outputs(self) -> Dict[str, Any]:
        return dict(self.state_manager.snapshot.outputs)

    def stored_sensitive_outputs(self) -> List[str]:
        return list(self.state_manager.snapshot.sensitive_outputs)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _resolve_outputs(self, graph: ResourceGraph) -> Dict[str, Any]:
        """Resolve document outputs from committed state; unresolvable outputs are left out."""

        def lookup(reference: Reference) -> Any:
            return self.state_manager.get(reference.address).values().get(reference.attribute)

        outputs: Dict[str, Any] = {}
        for name, output in graph.outputs.items():
            try:
                outputs[name] = resolve_value(output.value, lookup)
            except StateEntryNotFoundError as e:
                logger.warning(f"Output '{name}' is unavailable: {e}")
        return outputs

    def _backup(self) -> None:
        if self.settings.state_backups:
            backup = self.state_manager.create_backup()
            if backup:
                logger.info(f"State backed up to {backup}")

    def _save_cloud(self) -> None:
        if self._cloud is not None:
            self._cloud.save()


def _merge_results(merged: Dict[str, ExecutionResult], results: List[ExecutionResult]) -> None:
    """Keep the first real outcome of a resource across re-planned runs."""
    for result in results:
        previous = merged.get(result.resource_id)
        if previous is not None and previous.status == ExecutionStatus.SUCCESS and result.status == ExecutionStatus.NO_OP:
            continue
        merged[result.resource_id] = result
