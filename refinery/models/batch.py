"""
Refinery Batch Tracker
Batch domain models.

Models:
    - Batch:         one physical batch traversing a Flow
    - BatchEvent:    immutable, append-only record of one action on a batch
    - BatchFlag:     exception raised against a batch (pending until approved)
    - RecoveryPour:  output pour recorded by an export / recovery step

Architecture:
    Flow ◀──N:1── Batch            (non-owning; bound at creation)
    Batch ──1:N──▶ BatchEvent      (owned, ordered by sequence)
    Batch ──1:N──▶ BatchFlag       (owned, ordered by position)
    Batch ──1:N──▶ RecoveryPour    (owned, one per output node)

Lifecycle states:
    Batch:  created → in_progress → completed
            in_progress ⇄ flagged   (flagged never goes straight to completed)

There is no separate audit table: ``batch_events`` is the audit trail.
"""

from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.orm import object_session

from refinery.core.exceptions import ImmutableEventError
from refinery.models import db


# ── Constants ────────────────────────────────────────────────────────────────

BATCH_STATUSES = {"created", "in_progress", "flagged", "completed"}

BATCH_PRIORITIES = {"normal", "high"}

EVENT_TYPES = {
    "batch_created",
    "batch_started",
    "station_started",
    "station_completed",
    "step_completed",
    "mass_check",
    "signature_captured",
    "photo_taken",
    "exception_flagged",
    "exception_approved",
    "priority_changed",
    "batch_completed",
}

# Informational events callers may append without a status change
RECORDABLE_EVENT_TYPES = {
    "station_started",
    "station_completed",
    "mass_check",
    "signature_captured",
    "photo_taken",
}

FLAG_TYPES = {
    "out_of_tolerance",
    "equipment_issue",
    "quality_concern",
    "safety_incident",
    "other",
}

ACTIVE_STATUSES = ("in_progress", "flagged")


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

BATCH_TRANSITIONS = {
    "created":     ["in_progress"],
    "in_progress": ["in_progress", "flagged", "completed"],
    "flagged":     ["flagged", "in_progress"],
    "completed":   [],
}


def validate_batch_transition(old_status, new_status):
    """Return True if Batch status transition is valid."""
    return new_status in BATCH_TRANSITIONS.get(old_status, [])


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. Batch
# ═════════════════════════════════════════════════════════════════════════════


class Batch(db.Model):
    """
    One physical unit of material tracked through a Flow.

    ``version`` is an optimistic-concurrency counter: every UPDATE is issued
    with ``WHERE version = <read version>`` and bumps it, so a stale writer
    gets ``StaleDataError`` instead of silently overwriting.
    """

    __tablename__ = "batches"
    __table_args__ = (
        db.Index("idx_batches_status_priority", "status", "priority"),
        db.Index("idx_batches_pipeline_status", "pipeline", "status"),
        db.Index("idx_batches_completed_at", "completed_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_number = db.Column(db.String(64), nullable=False, unique=True, index=True)

    flow_id = db.Column(
        db.Integer, db.ForeignKey("flows.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    flow_version = db.Column(db.String(40), nullable=False)
    pipeline = db.Column(db.String(20), nullable=False, index=True)

    status = db.Column(
        db.String(20), nullable=False, default="created",
        comment="created | in_progress | flagged | completed",
    )
    priority = db.Column(db.String(10), nullable=False, default="normal")

    # Flow progress
    current_node_id = db.Column(db.String(64), nullable=True)
    current_station = db.Column(
        db.String(64), nullable=True,
        comment="template_id of the current node",
    )
    completed_node_ids = db.Column(db.JSON, nullable=False, default=list)

    # Weight tracking
    initial_weight = db.Column(db.Float, nullable=True)
    received_weight_g = db.Column(db.Float, nullable=True)
    fine_content_percent = db.Column(db.Float, nullable=True)
    fine_grams_received = db.Column(db.Float, nullable=True)
    expected_output_g = db.Column(db.Float, nullable=True)
    actual_output_g = db.Column(db.Float, nullable=True)
    output_weight_g = db.Column(db.Float, nullable=True)
    loss_gain_g = db.Column(db.Float, nullable=True)
    loss_gain_percent = db.Column(db.Float, nullable=True)

    # Recovery tracking
    first_time_recovery_g = db.Column(db.Float, nullable=True)
    total_recovery_g = db.Column(db.Float, nullable=True)
    overall_recovery_percent = db.Column(db.Float, nullable=True)

    # Timing
    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=True)
    melting_received_at = db.Column(db.DateTime(timezone=True), nullable=True)
    first_export_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ftt_hours = db.Column(db.Float, nullable=True)

    # Receiving metadata
    supplier = db.Column(db.String(200), nullable=True)
    drill_number = db.Column(db.String(64), nullable=True)
    destination = db.Column(db.String(200), nullable=True)

    created_by = db.Column(db.String(100), nullable=False, default="system")
    created_by_name = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    flow = db.relationship("Flow", lazy="joined")
    events = db.relationship(
        "BatchEvent", back_populates="batch",
        cascade="save-update, merge",
        order_by="BatchEvent.sequence",
        lazy="selectin",
    )
    flags = db.relationship(
        "BatchFlag", back_populates="batch",
        cascade="all, delete-orphan",
        order_by="BatchFlag.position",
        lazy="selectin",
    )
    recovery_pours = db.relationship(
        "RecoveryPour", back_populates="batch",
        cascade="all, delete-orphan",
        order_by="RecoveryPour.pour_number",
        lazy="selectin",
    )

    @property
    def pending_flags(self):
        """Flags without an approval. Derived on read, never stored."""
        return [f for f in self.flags if f.approved_by is None]

    def to_dict(self, include_events=True):
        d = {
            "id": self.id,
            "batch_number": self.batch_number,
            "flow_id": self.flow_id,
            "flow_version": self.flow_version,
            "pipeline": self.pipeline,
            "status": self.status,
            "priority": self.priority,
            "current_node_id": self.current_node_id,
            "current_station": self.current_station,
            "completed_node_ids": list(self.completed_node_ids or []),
            "initial_weight": self.initial_weight,
            "received_weight_g": self.received_weight_g,
            "fine_content_percent": self.fine_content_percent,
            "fine_grams_received": self.fine_grams_received,
            "expected_output_g": self.expected_output_g,
            "actual_output_g": self.actual_output_g,
            "output_weight_g": self.output_weight_g,
            "loss_gain_g": self.loss_gain_g,
            "loss_gain_percent": self.loss_gain_percent,
            "first_time_recovery_g": self.first_time_recovery_g,
            "total_recovery_g": self.total_recovery_g,
            "overall_recovery_percent": self.overall_recovery_percent,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_minutes": self.duration_minutes,
            "melting_received_at": _iso(self.melting_received_at),
            "first_export_at": _iso(self.first_export_at),
            "ftt_hours": self.ftt_hours,
            "supplier": self.supplier,
            "drill_number": self.drill_number,
            "destination": self.destination,
            "created_by": self.created_by,
            "created_by_name": self.created_by_name,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
            "flags": [f.to_dict() for f in self.flags],
            "pending_flag_count": len(self.pending_flags),
            "recovery_pours": [p.to_dict() for p in self.recovery_pours],
        }
        if include_events:
            d["events"] = [e.to_dict() for e in self.events]
        return d

    def __repr__(self):
        return f"<Batch {self.id}: {self.batch_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. BatchEvent
# ═════════════════════════════════════════════════════════════════════════════


class BatchEvent(db.Model):
    """
    Immutable record of one action on a batch.

    Rows are never updated or deleted once flushed; see the mapper guards
    below. ``data`` holds the dict form of a typed payload
    (``refinery.services.event_log``).
    """

    __tablename__ = "batch_events"
    __table_args__ = (
        db.UniqueConstraint("batch_id", "sequence", name="uq_batch_events_sequence"),
        db.Index("idx_batch_events_type", "event_type"),
        db.Index("idx_batch_events_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(
        db.Integer, db.ForeignKey("batches.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    event_id = db.Column(db.String(40), nullable=False, unique=True)
    sequence = db.Column(db.Integer, nullable=False)
    event_type = db.Column(db.String(40), nullable=False)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    user_id = db.Column(db.String(100), nullable=False)
    user_name = db.Column(db.String(150), nullable=True)
    station = db.Column(db.String(64), nullable=True)
    step = db.Column(db.String(64), nullable=True)
    data = db.Column(db.JSON, nullable=False, default=dict)
    warning = db.Column(db.String(500), nullable=True)

    batch = db.relationship("Batch", back_populates="events")

    def to_dict(self):
        return {
            "event_id": self.event_id,
            "sequence": self.sequence,
            "type": self.event_type,
            "timestamp": _iso(self.timestamp),
            "user_id": self.user_id,
            "user_name": self.user_name,
            "station": self.station,
            "step": self.step,
            "data": dict(self.data or {}),
            "warning": self.warning,
        }

    def __repr__(self):
        return f"<BatchEvent {self.event_id}: {self.event_type} #{self.sequence}>"


@event.listens_for(BatchEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    """Refuse any column change on a persisted event."""
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise ImmutableEventError(f"Event {target.event_id} is immutable and cannot be updated")


@event.listens_for(BatchEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise ImmutableEventError(f"Event {target.event_id} is immutable and cannot be deleted")


# ═════════════════════════════════════════════════════════════════════════════
# 3. BatchFlag
# ═════════════════════════════════════════════════════════════════════════════


class BatchFlag(db.Model):
    """
    Exception raised against a batch.

    Only ``approved_by`` / ``approved_at`` / ``approval_notes`` change after
    creation, exactly once, via ``batch_service.approve_exception``.
    """

    __tablename__ = "batch_flags"
    __table_args__ = (
        db.UniqueConstraint("batch_id", "position", name="uq_batch_flags_position"),
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(
        db.Integer, db.ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    position = db.Column(db.Integer, nullable=False, comment="0-based flag index within the batch")
    flag_type = db.Column(
        db.String(30), nullable=False,
        comment="out_of_tolerance | equipment_issue | quality_concern | safety_incident | other",
    )
    reason = db.Column(db.Text, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    flagged_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    flagged_by = db.Column(db.String(100), nullable=False)
    approved_by = db.Column(db.String(100), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approval_notes = db.Column(db.Text, nullable=True)

    batch = db.relationship("Batch", back_populates="flags")

    @property
    def is_pending(self):
        return self.approved_by is None

    def to_dict(self):
        return {
            "index": self.position,
            "type": self.flag_type,
            "reason": self.reason,
            "notes": self.notes,
            "flagged_at": _iso(self.flagged_at),
            "flagged_by": self.flagged_by,
            "approved_by": self.approved_by,
            "approved_at": _iso(self.approved_at),
            "approval_notes": self.approval_notes,
            "status": "pending" if self.is_pending else "approved",
        }

    def __repr__(self):
        return f"<BatchFlag {self.batch_id}#{self.position}: {self.flag_type}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. RecoveryPour
# ═════════════════════════════════════════════════════════════════════════════


class RecoveryPour(db.Model):
    """Output pour produced by one node. One row per (batch, node)."""

    __tablename__ = "recovery_pours"
    __table_args__ = (
        db.UniqueConstraint("batch_id", "node_id", name="uq_recovery_pours_node"),
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(
        db.Integer, db.ForeignKey("batches.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    node_id = db.Column(db.String(64), nullable=False)
    pour_number = db.Column(db.Integer, nullable=False)
    weight_g = db.Column(db.Float, nullable=False)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    batch = db.relationship("Batch", back_populates="recovery_pours")

    def to_dict(self):
        return {
            "pour_number": self.pour_number,
            "node_id": self.node_id,
            "weight_g": self.weight_g,
            "timestamp": _iso(self.timestamp),
        }

    def __repr__(self):
        return f"<RecoveryPour {self.batch_id}#{self.pour_number}: {self.weight_g}g>"
