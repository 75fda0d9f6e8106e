"""
Refinery Batch Tracker
Flow domain models.

Models:
    - Flow:      versioned process template for one pipeline category
    - FlowNode:  a station or check step inside a Flow
    - FlowEdge:  directed source → target connection between two nodes

Architecture:
    Flow ──1:N──▶ FlowNode   (ordered by sort_order)
    Flow ──1:N──▶ FlowEdge   (ordered by sort_order; "first outgoing edge"
                              means lowest sort_order)

Lifecycle states:
    Flow:  draft → active → archived  |  active → draft (deactivate)
           archived → active (re-activate an older version)

Invariant: at most one ``active`` Flow per pipeline. Enforced by
``flow_service.activate_flow``, which demotes the previous active Flow in
the same commit.
"""

from datetime import datetime, timezone

from refinery.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PIPELINES = {"copper", "silver", "gold", "pgm"}

FLOW_STATUSES = {"draft", "active", "archived"}

NODE_TYPES = {"station", "check"}


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

FLOW_TRANSITIONS = {
    "draft":    ["active"],
    "active":   ["archived", "draft"],
    "archived": ["active"],
}


def validate_flow_transition(old_status, new_status):
    """Return True if Flow status transition is valid."""
    return new_status in FLOW_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# 1. Flow
# ═════════════════════════════════════════════════════════════════════════════


class Flow(db.Model):
    """
    A versioned directed graph of stations and checks for one pipeline.

    ``flow_key`` is the stable identity shared by every version of the same
    process; ``version`` is free text and unique per ``flow_key``.
    """

    __tablename__ = "flows"
    __table_args__ = (
        db.UniqueConstraint("flow_key", "version", name="uq_flows_key_version"),
        db.Index("idx_flows_pipeline_status", "pipeline", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    flow_key = db.Column(db.String(64), nullable=False, index=True)
    version = db.Column(db.String(40), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    pipeline = db.Column(
        db.String(20), nullable=False,
        comment="copper | silver | gold | pgm",
    )
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | active | archived",
    )
    effective_date = db.Column(db.DateTime(timezone=True), nullable=True)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.String(100), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    nodes = db.relationship(
        "FlowNode", back_populates="flow",
        cascade="all, delete-orphan",
        order_by="FlowNode.sort_order",
        lazy="selectin",
    )
    edges = db.relationship(
        "FlowEdge", back_populates="flow",
        cascade="all, delete-orphan",
        order_by="FlowEdge.sort_order",
        lazy="selectin",
    )

    def to_dict(self, include_graph=True):
        d = {
            "id": self.id,
            "flow_key": self.flow_key,
            "version": self.version,
            "name": self.name,
            "pipeline": self.pipeline,
            "status": self.status,
            "effective_date": self.effective_date.isoformat() if self.effective_date else None,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "node_count": len(self.nodes),
            "edge_count": len(self.edges),
        }
        if include_graph:
            d["nodes"] = [n.to_dict() for n in self.nodes]
            d["edges"] = [e.to_dict() for e in self.edges]
        return d

    def __repr__(self):
        return f"<Flow {self.id}: {self.flow_key}@{self.version} [{self.pipeline}/{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. FlowNode
# ═════════════════════════════════════════════════════════════════════════════


class FlowNode(db.Model):
    """A single station or check step. ``node_key`` is unique within its Flow."""

    __tablename__ = "flow_nodes"
    __table_args__ = (
        db.UniqueConstraint("flow_id", "node_key", name="uq_flow_nodes_flow_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(
        db.Integer, db.ForeignKey("flows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    node_key = db.Column(db.String(64), nullable=False)
    node_type = db.Column(
        db.String(20), nullable=False,
        comment="station | check",
    )
    template_id = db.Column(
        db.String(64), nullable=False,
        comment="References StationTemplate.template_id or CheckTemplate.template_id",
    )
    position_x = db.Column(db.Float, default=0.0)
    position_y = db.Column(db.Float, default=0.0)
    selected_sops = db.Column(db.JSON, default=list)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    flow = db.relationship("Flow", back_populates="nodes")

    def to_dict(self):
        return {
            "id": self.node_key,
            "type": self.node_type,
            "template_id": self.template_id,
            "position": {"x": self.position_x or 0.0, "y": self.position_y or 0.0},
            "selected_sops": list(self.selected_sops or []),
        }

    def __repr__(self):
        return f"<FlowNode {self.node_key} ({self.node_type}:{self.template_id})>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. FlowEdge
# ═════════════════════════════════════════════════════════════════════════════


class FlowEdge(db.Model):
    """Directed connection between two node keys of the same Flow."""

    __tablename__ = "flow_edges"

    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(
        db.Integer, db.ForeignKey("flows.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    edge_key = db.Column(db.String(64), nullable=False)
    source = db.Column(db.String(64), nullable=False, comment="FlowNode.node_key")
    target = db.Column(db.String(64), nullable=False, comment="FlowNode.node_key")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    flow = db.relationship("Flow", back_populates="edges")

    def to_dict(self):
        return {"id": self.edge_key, "source": self.source, "target": self.target}

    def __repr__(self):
        return f"<FlowEdge {self.source} → {self.target}>"
