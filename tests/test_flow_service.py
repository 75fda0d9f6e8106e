"""
Flow lifecycle service tests.

    - draft creation and editing
    - activation validates the graph and keeps one active flow per pipeline
    - deactivation / deletion guards against bound batches
"""

import pytest

from refinery.core.exceptions import (
    ConflictError,
    GraphError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from refinery.models.flow import Flow
from refinery.services import batch_service, flow_service

NODES = [
    {"id": "receiving", "type": "station", "template_id": "station_receiving"},
    {"id": "casting", "type": "station", "template_id": "station_casting"},
]
EDGES = [{"id": "e1", "source": "receiving", "target": "casting"}]


def _create(version="1.0", pipeline="gold", nodes=NODES, edges=EDGES):
    return flow_service.create_flow({
        "name": f"{pipeline} {version}",
        "version": version,
        "pipeline": pipeline,
        "nodes": nodes,
        "edges": edges,
    }, created_by="admin-1")


class TestCreateUpdate:
    def test_create_draft(self, templates):
        flow = _create()
        assert flow.status == "draft"
        assert flow.flow_key == "gold_flow"
        assert [n.node_key for n in flow.nodes] == ["receiving", "casting"]
        assert flow.edges[0].source == "receiving"
        assert flow.created_by == "admin-1"

    def test_required_fields(self):
        with pytest.raises(ValidationError, match="version is required"):
            flow_service.create_flow({"name": "x", "pipeline": "gold"})

    def test_unknown_pipeline(self):
        with pytest.raises(ValidationError, match="Invalid pipeline"):
            _create(pipeline="tin")

    def test_invalid_node_type(self):
        with pytest.raises(ValidationError, match="invalid type"):
            _create(nodes=[{"id": "a", "type": "gateway", "template_id": "t"}], edges=[])

    def test_duplicate_node_id(self):
        nodes = [NODES[0], dict(NODES[0])]
        with pytest.raises(ValidationError, match="Duplicate node id"):
            _create(nodes=nodes, edges=[])

    def test_duplicate_version_conflicts(self):
        _create()
        with pytest.raises(ConflictError):
            _create()

    def test_update_replaces_graph(self):
        flow = _create()
        nodes = NODES + [{"id": "shipping", "type": "station", "template_id": "station_packaging"}]
        edges = EDGES + [{"id": "e2", "source": "casting", "target": "shipping"}]
        flow = flow_service.update_flow(flow.id, {"nodes": nodes, "edges": edges, "name": "Gold v1"})
        assert flow.name == "Gold v1"
        assert [n.node_key for n in flow.nodes] == ["receiving", "casting", "shipping"]
        assert len(flow.edges) == 2

    def test_update_refused_when_active(self):
        flow = _create()
        flow_service.activate_flow(flow.id)
        with pytest.raises(InvalidTransition, match="only draft"):
            flow_service.update_flow(flow.id, {"name": "renamed"})

    def test_get_missing(self):
        with pytest.raises(NotFoundError):
            flow_service.get_flow(999)


class TestActivation:
    def test_activate_sets_active(self):
        flow = flow_service.activate_flow(_create().id)
        assert flow.status == "active"
        assert flow.activated_at is not None
        assert flow_service.get_active_flow("gold").id == flow.id

    def test_second_activation_archives_first(self):
        first = flow_service.activate_flow(_create("1.0").id)
        second = flow_service.activate_flow(_create("2.0").id)
        first = flow_service.get_flow(first.id)
        assert first.status == "archived"
        assert first.archived_at is not None
        assert second.status == "active"
        active = flow_service.list_flows(pipeline="gold", status="active")
        assert [f.id for f in active] == [second.id]

    def test_other_pipelines_untouched(self):
        gold = flow_service.activate_flow(_create(pipeline="gold").id)
        silver = flow_service.activate_flow(_create(pipeline="silver").id)
        assert flow_service.get_flow(gold.id).status == "active"
        assert silver.status == "active"

    def test_activate_is_idempotent(self):
        flow = flow_service.activate_flow(_create().id)
        assert flow_service.activate_flow(flow.id).status == "active"

    def test_branching_flow_cannot_activate(self):
        nodes = NODES + [{"id": "assay", "type": "station", "template_id": "station_assay"}]
        edges = EDGES + [{"id": "e2", "source": "receiving", "target": "assay"}]
        flow = _create(nodes=nodes, edges=edges)
        with pytest.raises(GraphError, match="Branching"):
            flow_service.activate_flow(flow.id)
        assert flow_service.get_flow(flow.id).status == "draft"

    def test_empty_flow_cannot_activate(self):
        flow = _create(nodes=[], edges=[])
        with pytest.raises(GraphError):
            flow_service.activate_flow(flow.id)

    def test_reactivate_archived(self):
        first = flow_service.activate_flow(_create("1.0").id)
        second = flow_service.activate_flow(_create("2.0").id)
        flow_service.activate_flow(first.id)
        assert flow_service.get_flow(second.id).status == "archived"
        assert flow_service.get_active_flow("gold").id == first.id


class TestDeactivateDelete:
    def test_deactivate_back_to_draft(self):
        flow = flow_service.activate_flow(_create().id)
        flow = flow_service.deactivate_flow(flow.id)
        assert flow.status == "draft"
        assert flow_service.get_active_flow("gold") is None

    def test_deactivate_refused_with_unfinished_batches(self):
        flow = flow_service.activate_flow(_create().id)
        batch_service.create_batch("B-1", "gold")
        with pytest.raises(InvalidTransition, match="unfinished"):
            flow_service.deactivate_flow(flow.id)
        assert flow_service.count_unfinished_batches(flow.id) == 1

    def test_archive_active(self):
        flow = flow_service.activate_flow(_create().id)
        assert flow_service.archive_flow(flow.id).status == "archived"

    def test_archive_draft_refused(self):
        with pytest.raises(InvalidTransition):
            flow_service.archive_flow(_create().id)

    def test_delete_draft(self):
        flow = _create()
        flow_service.delete_flow(flow.id)
        assert Flow.query.count() == 0

    def test_delete_active_refused(self):
        flow = flow_service.activate_flow(_create().id)
        with pytest.raises(InvalidTransition, match="only draft"):
            flow_service.delete_flow(flow.id)
