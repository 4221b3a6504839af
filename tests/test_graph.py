"""
Unit tests for the resource graph builder.
"""

import pytest

from keystone.errors import (
    CyclicDependencyError,
    DuplicateResourceError,
    SchemaViolationError,
    UnknownResourceTypeError,
    UnresolvedReferenceError,
)
from keystone.intake import GraphBuilder, Parser
from keystone.models import Reference, Template
from keystone.providers import simulated_registry


class TestGraphBuilder:
    """Test graph construction from documents."""

    def test_edges_match_references(self, build_graph, chain_document):
        """Test every reference yields exactly one consumer -> producer edge."""
        graph = build_graph(chain_document())

        assert graph.edges() == [
            ("thing.a", "thing.b", {"arn"}),
            ("thing.b", "thing.c", {"id"}),
        ]
        assert graph.dependencies("thing.a") == {"thing.b"}
        assert graph.dependents("thing.c") == {"thing.b"}

    def test_topological_order_puts_producers_first(self, build_graph, chain_document):
        graph = build_graph(chain_document())
        assert graph.topological_order() == ["thing.c", "thing.b", "thing.a"]

    def test_whole_reference_and_template(self, build_graph):
        graph = build_graph({"resource": {"thing": {
            "db": {"name": "db"},
            "app": {
                "name": "app",
                "db_arn": "${thing.db.arn}",
                "url": "postgres://${thing.db.id}/main",
                "env": {"DB": ["${thing.db.id}"]},
            },
        }}})

        app = graph.get("thing.app")
        assert app.attributes["db_arn"] == Reference(address="thing.db", attribute="arn")
        assert isinstance(app.attributes["url"], Template)
        assert app.attributes["env"]["DB"][0] == Reference(address="thing.db", attribute="id")
        assert graph.edges() == [("thing.app", "thing.db", {"arn", "id"})]

    def test_depends_on_adds_edge(self, build_graph):
        graph = build_graph({"resource": {"thing": {
            "a": {"name": "a", "depends_on": ["thing.b"]},
            "b": {"name": "b"},
        }}})
        assert graph.get("thing.a").depends_on == ("thing.b",)
        assert graph.edges() == [("thing.a", "thing.b", set())]

    def test_variables_substituted(self, build_graph):
        document = {
            "variable": {"env": {"default": "dev"}, "size": {"type": "number", "default": 1}},
            "resource": {"thing": {"a": {"name": "a-${var.env}", "size": "${var.size}"}}},
        }

        graph = build_graph(document)
        assert graph.get("thing.a").attributes == {"name": "a-dev", "size": 1}

        graph = build_graph(document, variables={"env": "prod", "size": "3"})
        assert graph.get("thing.a").attributes == {"name": "a-prod", "size": 3}

    def test_lifecycle_flag(self, build_graph):
        graph = build_graph({"resource": {"box": {
            "b": {"name": "b", "lifecycle": [{"create_before_destroy": True}]},
        }}})
        assert graph.get("box.b").lifecycle.create_before_destroy is True

    def test_outputs_converted(self, build_graph, chain_document):
        document = chain_document()
        document["output"] = {"c_id": {"value": "${thing.c.id}"}}
        graph = build_graph(document)
        assert graph.outputs["c_id"].value == Reference(address="thing.c", attribute="id")


class TestGraphBuilderErrors:
    """Test graph validation failures."""

    def test_cycle_detected(self, build_graph, chain_document):
        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph(chain_document(c={"upstream": "${thing.a.id}"}))

        assert sorted(exc_info.value.cycle) == ["thing.a", "thing.b", "thing.c"]
        assert "Dependency cycle detected" in str(exc_info.value)

    def test_mutual_references_list_both_nodes(self, build_graph):
        with pytest.raises(CyclicDependencyError) as exc_info:
            build_graph({"resource": {"thing": {
                "a": {"peer": "${thing.b.arn}"},
                "b": {"peer": "${thing.a.arn}"},
            }}})
        assert sorted(exc_info.value.cycle) == ["thing.a", "thing.b"]

    def test_self_reference_is_a_cycle(self, build_graph):
        with pytest.raises(CyclicDependencyError):
            build_graph({"resource": {"thing": {"a": {"name": "a", "me": "${thing.a.id}"}}}})

    def test_unresolved_reference(self, build_graph):
        with pytest.raises(UnresolvedReferenceError) as exc_info:
            build_graph({"resource": {"thing": {"a": {"upstream": "${thing.missing.id}"}}}})
        assert exc_info.value.source == "thing.a"
        assert exc_info.value.target == "thing.missing"

    def test_reference_without_attribute(self, build_graph):
        with pytest.raises(UnresolvedReferenceError):
            build_graph({"resource": {"thing": {"a": {}, "b": {"upstream": "${thing.a}"}}}})

    def test_undeclared_depends_on(self, build_graph):
        with pytest.raises(UnresolvedReferenceError):
            build_graph({"resource": {"thing": {"a": {"depends_on": ["thing.ghost"]}}}})

    def test_undeclared_variable(self, build_graph):
        with pytest.raises(UnresolvedReferenceError, match="var"):
            build_graph({"resource": {"thing": {"a": {"name": "${var.nope}"}}}})

    def test_variable_without_value(self, build_graph):
        with pytest.raises(UnresolvedReferenceError):
            build_graph({
                "variable": {"region": {}},
                "resource": {"thing": {"a": {"name": "${var.region}"}}},
            })

    def test_output_with_unresolved_reference(self, build_graph):
        with pytest.raises(UnresolvedReferenceError):
            build_graph({"output": {"x": {"value": "${thing.ghost.id}"}}})

    def test_duplicate_across_documents(self, registry):
        parser = Parser()
        first = parser.parse_string('resource "thing" "a" {\n  name = "one"\n}\n')
        second = parser.parse_string('resource "thing" "a" {\n  name = "two"\n}\n')

        with pytest.raises(DuplicateResourceError, match="thing.a"):
            GraphBuilder(registry).build(first.merge(second))

    def test_unknown_resource_type(self, build_graph):
        with pytest.raises(UnknownResourceTypeError, match="gizmo"):
            build_graph({"resource": {"gizmo": {"a": {}}}})

    def test_unsupported_meta_argument(self, build_graph):
        with pytest.raises(SchemaViolationError, match="count"):
            build_graph({"resource": {"thing": {"a": {"count": 2}}}})


class TestSchemaValidation:
    """Test declarations against a closed provider schema."""

    @pytest.fixture
    def builder(self):
        return GraphBuilder(simulated_registry())

    def _document(self, body):
        return Parser().parse_string(
            '{"resource": {"network": {"main": ' + body + '}}}', format="json"
        )

    def test_missing_required_attribute(self, builder):
        with pytest.raises(SchemaViolationError, match="cidr_block"):
            builder.build(self._document('{"enable_dns": true}'))

    def test_undeclared_attribute(self, builder):
        with pytest.raises(SchemaViolationError, match="colour"):
            builder.build(self._document('{"cidr_block": "10.0.0.0/16", "colour": "blue"}'))

    def test_output_is_not_settable(self, builder):
        with pytest.raises(SchemaViolationError, match="arn"):
            builder.build(self._document('{"cidr_block": "10.0.0.0/16", "arn": "x"}'))

    def test_reference_to_unknown_attribute(self, builder):
        document = Parser().parse_string(
            '{"resource": {'
            '"network": {"main": {"cidr_block": "10.0.0.0/16"}},'
            '"subnet": {"a": {"network_id": "${network.main.endpoint}", "cidr_block": "10.0.1.0/24"}}'
            '}}',
            format="json",
        )
        with pytest.raises(UnresolvedReferenceError, match="endpoint"):
            builder.build(document)
