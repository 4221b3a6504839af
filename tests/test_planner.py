"""
Unit tests for the plan scheduler.
"""

import pytest

from keystone.assembly import compute_destroy_operations, compute_plan_operations, schedule_operations
from keystone.errors import CyclicPlanError
from keystone.intake import ResourceGraph
from keystone.models import OperationType, PlanOperation, StateEntry


def wave_ids(plan):
    return [[operation.resource_id for operation in wave] for wave in plan.waves]


class TestScheduleOperations:
    """Test wave ordering."""

    def test_create_chain_runs_producers_first(self, build_graph, chain_document, registry):
        """Test a -> b -> c is created c, then b, then a."""
        graph = build_graph(chain_document())
        plan = schedule_operations(compute_plan_operations(graph, {}, registry), graph)

        assert wave_ids(plan) == [["thing.c"], ["thing.b"], ["thing.a"]]
        assert plan.dependencies == {"thing.a": ["thing.b"], "thing.b": ["thing.c"], "thing.c": []}

    def test_destroy_chain_runs_consumers_first(self, build_graph, chain_document, applied_state):
        """Test a -> b -> c is destroyed a, then b, then c."""
        state = applied_state(build_graph(chain_document()))
        plan = schedule_operations(compute_destroy_operations(state), ResourceGraph())

        assert wave_ids(plan) == [["thing.a"], ["thing.b"], ["thing.c"]]

    def test_independent_resources_share_a_wave(self, build_graph, registry):
        graph = build_graph({"resource": {"thing": {
            "web": {"name": "web", "db": "${thing.db.id}", "cache": "${thing.cache.id}"},
            "db": {"name": "db"},
            "cache": {"name": "cache"},
        }}})
        plan = schedule_operations(compute_plan_operations(graph, {}, registry), graph)

        assert wave_ids(plan) == [["thing.cache", "thing.db"], ["thing.web"]]

    def test_unchanged_operations_are_not_scheduled(self, build_graph, chain_document, registry, applied_state):
        state = applied_state(build_graph(chain_document()))
        graph = build_graph(chain_document(a={"extra": True}))

        plan = schedule_operations(compute_plan_operations(graph, state, registry), graph)

        assert wave_ids(plan) == [["thing.a"]]
        assert sorted(op.resource_id for op in plan.unchanged) == ["thing.b", "thing.c"]
        assert plan.dependencies == {"thing.a": []}
        assert plan.count_by_action()["no_op"] == 2

    def test_destroy_waits_for_dependent_update(self, build_graph, registry, applied_state):
        """Test a producer is destroyed only after its consumer stops using it."""
        old = build_graph({"resource": {"thing": {
            "app": {"name": "app", "db": "${thing.old_db.id}"},
            "old_db": {"name": "old_db"},
        }}})
        state = applied_state(old)
        new = build_graph({"resource": {"thing": {
            "app": {"name": "app", "db": "${thing.new_db.id}"},
            "new_db": {"name": "new_db"},
        }}})

        plan = schedule_operations(compute_plan_operations(new, state, registry), new)

        assert wave_ids(plan) == [["thing.new_db"], ["thing.app"], ["thing.old_db"]]
        actions = {op.resource_id: op.action for op in plan.operations}
        assert actions["thing.old_db"] == OperationType.DESTROY
        assert actions["thing.app"] == OperationType.UPDATE

    def test_empty_plan(self, build_graph, chain_document, registry, applied_state):
        graph = build_graph(chain_document())
        plan = schedule_operations(compute_plan_operations(graph, applied_state(graph), registry), graph)

        assert plan.is_empty
        assert plan.operations == []

    def test_cyclic_stored_dependencies(self):
        """Test corrupt stored dependencies surface as a plan error."""

        def destroy(resource_id, depends_on):
            return PlanOperation(
                resource_id=resource_id,
                resource_type="thing",
                action=OperationType.DESTROY,
                prior=StateEntry(
                    resource_id=resource_id,
                    resource_type="thing",
                    provider_id=f"{resource_id}-id",
                    dependencies=[depends_on],
                ),
            )

        operations = [destroy("thing.a", "thing.b"), destroy("thing.b", "thing.a")]

        with pytest.raises(CyclicPlanError) as exc_info:
            schedule_operations(operations, ResourceGraph())
        assert sorted(exc_info.value.operations) == ["thing.a", "thing.b"]
