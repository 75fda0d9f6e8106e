"""
Flow lifecycle service.

Business logic for:
    - CRUD:           create / update (draft only) / delete (draft, unused)
    - Lifecycle:      draft → active → archived, active → draft, archived → active
    - Activation:     linear-graph validation + one active Flow per pipeline
    - Lookup:         active flow for a pipeline, filtered listing

Services own the transaction: every mutating function commits on success
and rolls back on a domain error.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from refinery.core.exceptions import (
    ConflictError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from refinery.models import db
from refinery.models.batch import ACTIVE_STATUSES, Batch
from refinery.models.flow import (
    NODE_TYPES,
    PIPELINES,
    Flow,
    FlowEdge,
    FlowNode,
    validate_flow_transition,
)
from refinery.services import flow_graph
from refinery.utils.helpers import parse_datetime, rollback_on_error

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


def _validate_pipeline(pipeline):
    if pipeline not in PIPELINES:
        raise ValidationError(
            f"Invalid pipeline '{pipeline}'",
            details={"allowed": sorted(PIPELINES)},
        )


def _build_graph(flow, nodes, edges):
    """Replace the nodes and edges of ``flow`` from request dicts."""
    flow.nodes = []
    flow.edges = []
    if flow.id is not None:
        # Old rows must be gone before re-inserting the same node keys
        db.session.flush()
    seen = set()
    for i, raw in enumerate(nodes or []):
        key = raw.get("id") or raw.get("node_key")
        if not key:
            raise ValidationError(f"Node #{i} is missing an id")
        if key in seen:
            raise ValidationError(f"Duplicate node id '{key}'")
        seen.add(key)
        node_type = raw.get("type") or raw.get("node_type")
        if node_type not in NODE_TYPES:
            raise ValidationError(
                f"Node '{key}' has invalid type '{node_type}'",
                details={"allowed": sorted(NODE_TYPES)},
            )
        if not raw.get("template_id"):
            raise ValidationError(f"Node '{key}' is missing template_id")
        position = raw.get("position") or {}
        flow.nodes.append(FlowNode(
            node_key=key,
            node_type=node_type,
            template_id=raw["template_id"],
            position_x=position.get("x", 0.0),
            position_y=position.get("y", 0.0),
            selected_sops=list(raw.get("selected_sops") or []),
            sort_order=i,
        ))
    for i, raw in enumerate(edges or []):
        source, target = raw.get("source"), raw.get("target")
        if not source or not target:
            raise ValidationError(f"Edge #{i} needs both source and target")
        flow.edges.append(FlowEdge(
            edge_key=raw.get("id") or f"e_{source}_{target}",
            source=source,
            target=target,
            sort_order=i,
        ))


# ── Read ─────────────────────────────────────────────────────────────────────


def get_flow(flow_id):
    flow = db.session.get(Flow, flow_id)
    if flow is None:
        raise NotFoundError(resource="Flow", resource_id=flow_id)
    return flow


def get_active_flow(pipeline):
    """Return the active Flow for ``pipeline`` or None."""
    return db.session.execute(
        select(Flow).where(Flow.pipeline == pipeline, Flow.status == "active")
    ).scalars().first()


def require_active_flow(pipeline):
    _validate_pipeline(pipeline)
    flow = get_active_flow(pipeline)
    if flow is None:
        raise NotFoundError(resource="Active flow for pipeline", resource_id=pipeline)
    return flow


def list_flows(pipeline=None, status=None):
    stmt = select(Flow)
    if pipeline:
        stmt = stmt.where(Flow.pipeline == pipeline)
    if status:
        stmt = stmt.where(Flow.status == status)
    stmt = stmt.order_by(Flow.pipeline, Flow.flow_key, Flow.created_at.desc())
    return db.session.execute(stmt).scalars().all()


def count_unfinished_batches(flow_id):
    return db.session.execute(
        select(func.count(Batch.id)).where(
            Batch.flow_id == flow_id,
            Batch.status.in_(("created",) + ACTIVE_STATUSES),
        )
    ).scalar() or 0


# ── Write ────────────────────────────────────────────────────────────────────


@rollback_on_error
def create_flow(data, created_by="system"):
    """Create a draft Flow from a request body.

    Required: ``name``, ``version``, ``pipeline``. ``flow_key`` defaults to
    ``<pipeline>_flow``. Graph structure is validated only on activation.
    """
    for key in ("name", "version", "pipeline"):
        if not data.get(key):
            raise ValidationError(f"{key} is required")
    _validate_pipeline(data["pipeline"])
    flow_key = data.get("flow_key") or f"{data['pipeline']}_flow"
    version = str(data["version"])

    exists = db.session.execute(
        select(Flow.id).where(Flow.flow_key == flow_key, Flow.version == version)
    ).first()
    if exists:
        raise ConflictError("Flow", "version", f"{flow_key}@{version}")

    flow = Flow(
        flow_key=flow_key,
        version=version,
        name=data["name"],
        pipeline=data["pipeline"],
        status="draft",
        effective_date=parse_datetime(data.get("effective_date")),
        created_by=created_by,
    )
    _build_graph(flow, data.get("nodes"), data.get("edges"))
    db.session.add(flow)
    db.session.commit()
    logger.info("Flow created: %s@%s [%s]", flow.flow_key, flow.version, flow.pipeline)
    return flow


@rollback_on_error
def update_flow(flow_id, data):
    """Edit a draft Flow. Non-draft flows are structurally frozen."""
    flow = get_flow(flow_id)
    if flow.status != "draft":
        raise InvalidTransition("update", flow.status, "only draft flows may be edited")

    if "name" in data and data["name"]:
        flow.name = data["name"]
    if "effective_date" in data:
        flow.effective_date = parse_datetime(data["effective_date"])
    if "version" in data and str(data["version"]) != flow.version:
        clash = db.session.execute(
            select(Flow.id).where(
                Flow.flow_key == flow.flow_key,
                Flow.version == str(data["version"]),
                Flow.id != flow.id,
            )
        ).first()
        if clash:
            raise ConflictError("Flow", "version", f"{flow.flow_key}@{data['version']}")
        flow.version = str(data["version"])
    if "nodes" in data or "edges" in data:
        nodes = data.get("nodes", [n.to_dict() for n in flow.nodes])
        edges = data.get("edges", [e.to_dict() for e in flow.edges])
        _build_graph(flow, nodes, edges)

    db.session.commit()
    logger.info("Flow updated: %s@%s", flow.flow_key, flow.version)
    return flow


@rollback_on_error
def activate_flow(flow_id):
    """Activate ``flow_id`` and archive whichever flow was active for its pipeline.

    Both changes land in one commit so the pipeline never has two active flows.
    """
    flow = get_flow(flow_id)
    if flow.status == "active":
        return flow
    if not validate_flow_transition(flow.status, "active"):
        raise InvalidTransition("activate", flow.status, "flow cannot be activated")
    flow_graph.validate_linear_flow(flow)

    now = _utcnow()
    demoted = db.session.execute(
        select(Flow).where(
            Flow.pipeline == flow.pipeline,
            Flow.status == "active",
            Flow.id != flow.id,
        )
    ).scalars().all()
    for other in demoted:
        other.status = "archived"
        other.archived_at = now
        logger.info("Flow archived: %s@%s superseded", other.flow_key, other.version)

    flow.status = "active"
    flow.activated_at = now
    flow.archived_at = None
    db.session.commit()
    logger.info("Flow activated: %s@%s [%s]", flow.flow_key, flow.version, flow.pipeline)
    return flow


@rollback_on_error
def deactivate_flow(flow_id):
    """Move an active flow back to draft. Refused while batches still run on it."""
    flow = get_flow(flow_id)
    if not validate_flow_transition(flow.status, "draft"):
        raise InvalidTransition("deactivate", flow.status, "only active flows can be deactivated")
    running = count_unfinished_batches(flow.id)
    if running:
        raise InvalidTransition(
            "deactivate", flow.status,
            f"{running} unfinished batch(es) are bound to this flow",
        )
    flow.status = "draft"
    flow.activated_at = None
    db.session.commit()
    logger.info("Flow deactivated: %s@%s", flow.flow_key, flow.version)
    return flow


@rollback_on_error
def archive_flow(flow_id):
    flow = get_flow(flow_id)
    if not validate_flow_transition(flow.status, "archived"):
        raise InvalidTransition("archive", flow.status, "only active flows can be archived")
    flow.status = "archived"
    flow.archived_at = _utcnow()
    db.session.commit()
    logger.info("Flow archived: %s@%s", flow.flow_key, flow.version)
    return flow


@rollback_on_error
def delete_flow(flow_id):
    """Delete a draft flow that no batch references."""
    flow = get_flow(flow_id)
    if flow.status != "draft":
        raise InvalidTransition("delete", flow.status, "only draft flows may be deleted")
    bound = db.session.execute(
        select(func.count(Batch.id)).where(Batch.flow_id == flow.id)
    ).scalar() or 0
    if bound:
        raise InvalidTransition("delete", flow.status, f"{bound} batch(es) reference this flow")
    db.session.delete(flow)
    db.session.commit()
    logger.info("Flow deleted: %s@%s", flow.flow_key, flow.version)
