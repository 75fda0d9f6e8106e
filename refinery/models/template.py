"""
Refinery Batch Tracker
Station / check template catalog models.

The catalog is owned by an upstream collaborator; these tables mirror the
metadata the batch core needs (name, SOP steps, check type, tolerance).

Models:
    - StationTemplate:  processing station (melting, casting, refining, ...)
    - CheckTemplate:    quality check (mass check, signature, photo, ...)
"""

from datetime import datetime, timezone

from refinery.models import db


CHECK_TYPES = {"instruction", "checklist", "mass_check", "signature", "photo"}

TOLERANCE_UNITS = {"g", "%"}


def _utcnow():
    return datetime.now(timezone.utc)


class StationTemplate(db.Model):
    """A processing station referenced by ``FlowNode.template_id``."""

    __tablename__ = "station_templates"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    estimated_duration_min = db.Column(db.Integer, nullable=True)
    sop_steps = db.Column(db.JSON, default=list)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    kind = "station"

    def to_dict(self):
        return {
            "template_id": self.template_id,
            "kind": self.kind,
            "name": self.name,
            "description": self.description,
            "estimated_duration_min": self.estimated_duration_min,
            "sop_steps": list(self.sop_steps or []),
        }

    def __repr__(self):
        return f"<StationTemplate {self.template_id}: {self.name}>"


class CheckTemplate(db.Model):
    """A quality check; ``mass_check`` templates carry a tolerance."""

    __tablename__ = "check_templates"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    check_type = db.Column(
        db.String(20), nullable=False,
        comment="instruction | checklist | mass_check | signature | photo",
    )
    description = db.Column(db.Text, default="")
    tolerance = db.Column(db.Float, nullable=True)
    tolerance_unit = db.Column(db.String(2), nullable=True, comment="g | %")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    kind = "check"

    def to_dict(self):
        return {
            "template_id": self.template_id,
            "kind": self.kind,
            "name": self.name,
            "check_type": self.check_type,
            "description": self.description,
            "tolerance": self.tolerance,
            "tolerance_unit": self.tolerance_unit,
        }

    def __repr__(self):
        return f"<CheckTemplate {self.template_id}: {self.name} ({self.check_type})>"
