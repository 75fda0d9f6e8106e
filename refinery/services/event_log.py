"""
Append-only batch event log.

Every action on a batch is recorded as a ``BatchEvent`` row. Rows are never
updated or deleted (mapper guards in ``refinery.models.batch``); derived
timing such as time-at-station is always recomputed from the log.

Event data is modelled as a tagged union keyed by event type:

    mass_check           → MassCheckPayload
    signature_captured   → SignaturePayload
    exception_flagged    → ExceptionPayload
    exception_approved   → ApprovalPayload
    priority_changed     → PriorityChangePayload
    everything else      → KeyValuePayload  (generic step data)
    unparseable          → UnstructuredPayload
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from refinery.core.exceptions import ValidationError
from refinery.models.batch import EVENT_TYPES, BatchEvent
from refinery.utils.helpers import as_utc

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


def _number(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ═════════════════════════════════════════════════════════════════════════════
# Payload variants
# ═════════════════════════════════════════════════════════════════════════════


@dataclass
class MassCheckPayload:
    """Weighing result, optionally compared against an expected mass."""
    measured_mass: float
    expected_mass: float | None = None
    tolerance: float | None = None
    tolerance_unit: str | None = None
    variance_g: float | None = None
    variance_percent: float | None = None
    within_tolerance: bool | None = None
    fine_content_percent: float | None = None
    check_template_id: str | None = None
    notes: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "MassCheckPayload":
        measured = _number(
            data.get("measured_mass", data.get("mass", data.get("weight")))
        )
        if measured is None:
            raise ValueError("measured_mass is required")
        within = data.get("within_tolerance")
        return cls(
            measured_mass=measured,
            expected_mass=_number(data.get("expected_mass")),
            tolerance=_number(data.get("tolerance")),
            tolerance_unit=data.get("tolerance_unit"),
            variance_g=_number(data.get("variance_g")),
            variance_percent=_number(data.get("variance_percent")),
            within_tolerance=bool(within) if within is not None else None,
            fine_content_percent=_number(data.get("fine_content_percent")),
            check_template_id=data.get("check_template_id"),
            notes=data.get("notes"),
        )

    def apply_tolerance(self, tolerance=None, unit=None) -> "MassCheckPayload":
        """Fill variance fields against ``expected_mass``.

        ``tolerance`` is absolute grams for unit ``g`` and a percentage of
        the expected mass for unit ``%``. Without an expected mass nothing
        can be derived.
        """
        if tolerance is not None:
            self.tolerance = tolerance
            self.tolerance_unit = unit or self.tolerance_unit or "g"
        if self.expected_mass is None:
            return self
        self.variance_g = self.measured_mass - self.expected_mass
        self.variance_percent = (
            self.variance_g / self.expected_mass * 100 if self.expected_mass else 0.0
        )
        if self.tolerance is not None:
            if self.tolerance_unit == "%":
                self.within_tolerance = abs(self.variance_percent) <= self.tolerance
            else:
                self.within_tolerance = abs(self.variance_g) <= self.tolerance
        return self

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class SignaturePayload:
    signer_name: str
    signature_ref: str | None = None
    role: str | None = None
    notes: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "SignaturePayload":
        signer = data.get("signer_name") or data.get("signed_by")
        if not signer:
            raise ValueError("signer_name is required")
        return cls(
            signer_name=str(signer),
            signature_ref=data.get("signature_ref") or data.get("signature"),
            role=data.get("role"),
            notes=data.get("notes"),
        )

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class ExceptionPayload:
    flag_index: int
    exception_type: str
    reason: str
    notes: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "ExceptionPayload":
        return cls(
            flag_index=int(data["flag_index"]),
            exception_type=str(data["exception_type"]),
            reason=str(data["reason"]),
            notes=data.get("notes"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ApprovalPayload:
    flag_index: int
    exception_type: str
    notes: str | None = None
    pending_remaining: int = 0
    status_after: str = "in_progress"

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalPayload":
        return cls(
            flag_index=int(data["flag_index"]),
            exception_type=str(data["exception_type"]),
            notes=data.get("notes"),
            pending_remaining=int(data.get("pending_remaining", 0)),
            status_after=str(data.get("status_after", "in_progress")),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class PriorityChangePayload:
    old_priority: str
    new_priority: str

    @classmethod
    def from_dict(cls, data: dict) -> "PriorityChangePayload":
        return cls(
            old_priority=str(data["old_priority"]),
            new_priority=str(data["new_priority"]),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class KeyValuePayload:
    """Free-form step data keyed by field name."""
    values: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "KeyValuePayload":
        return cls(values={str(k): v for k, v in data.items()})

    def to_dict(self) -> dict:
        return dict(self.values)


@dataclass
class UnstructuredPayload:
    """Fallback for data that matches no known shape."""
    raw: Any = None
    reason: str | None = None

    def to_dict(self) -> dict:
        d = {"raw": self.raw}
        if self.reason:
            d["unparsed_reason"] = self.reason
        return d


PAYLOAD_TYPES = {
    "mass_check": MassCheckPayload,
    "signature_captured": SignaturePayload,
    "exception_flagged": ExceptionPayload,
    "exception_approved": ApprovalPayload,
    "priority_changed": PriorityChangePayload,
}


def parse_payload(event_type: str, data):
    """Return the typed payload for ``data``.

    Known event types that fail to parse, and non-dict data, fall back to
    ``UnstructuredPayload`` so nothing the operator entered is lost.
    """
    if data is None:
        data = {}
    if isinstance(data, (MassCheckPayload, SignaturePayload, ExceptionPayload,
                         ApprovalPayload, PriorityChangePayload, KeyValuePayload,
                         UnstructuredPayload)):
        return data
    if not isinstance(data, dict):
        return UnstructuredPayload(raw=data, reason="not an object")

    payload_cls = PAYLOAD_TYPES.get(event_type)
    if payload_cls is None:
        return KeyValuePayload.from_dict(data)
    try:
        return payload_cls.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        logger.debug("Payload for %s did not parse: %s", event_type, exc)
        return UnstructuredPayload(raw=data, reason=str(exc))


# ═════════════════════════════════════════════════════════════════════════════
# Append
# ═════════════════════════════════════════════════════════════════════════════


def append_event(batch, event_type, user, *, station=None, step=None,
                 data=None, warning=None, timestamp=None):
    """Append one event to ``batch.events``.

    Does not flush or commit; the caller owns the transaction.

    Args:
        batch: Batch being mutated.
        event_type: One of ``EVENT_TYPES``.
        user: Object exposing ``id`` and ``name`` (``refinery.auth.CurrentUser``).

    Raises:
        ValidationError: unknown event type.
    """
    if event_type not in EVENT_TYPES:
        raise ValidationError(
            f"Unknown event type '{event_type}'",
            details={"allowed": sorted(EVENT_TYPES)},
        )
    payload = parse_payload(event_type, data)
    sequence = max((e.sequence for e in batch.events), default=0) + 1
    event = BatchEvent(
        event_id=f"evt_{uuid.uuid4().hex}",
        sequence=sequence,
        event_type=event_type,
        timestamp=timestamp or _utcnow(),
        user_id=str(getattr(user, "id", None) or "system"),
        user_name=getattr(user, "name", None),
        station=station,
        step=step,
        data=payload.to_dict(),
        warning=warning,
    )
    batch.events.append(event)
    logger.debug(
        "Event %s #%d %s on batch %s", event.event_id, sequence, event_type, batch.batch_number,
    )
    return event


# ═════════════════════════════════════════════════════════════════════════════
# Derived reads
# ═════════════════════════════════════════════════════════════════════════════


def station_runs(events):
    """Collapse ``events`` into contiguous runs at the same station.

    Returns a list of ``(station, first_timestamp, last_timestamp)`` in
    sequence order. Events without a station count as ``"unknown"``.
    """
    runs = []
    for event in sorted(events, key=lambda e: e.sequence):
        station = event.station or "unknown"
        ts = as_utc(event.timestamp)
        if runs and runs[-1][0] == station:
            runs[-1] = (station, runs[-1][1], ts)
        else:
            runs.append((station, ts, ts))
    return runs


def last_event(events, event_type):
    for event in sorted(events, key=lambda e: e.sequence, reverse=True):
        if event.event_type == event_type:
            return event
    return None


def time_at_current_station(batch, now=None):
    """Hours since the batch arrived at its current node.

    Measured from the last ``step_completed`` event, or from ``started_at``
    when no step has completed yet. None for never-started batches.
    """
    now = as_utc(now or _utcnow())
    last_step = last_event(batch.events, "step_completed")
    since = as_utc(last_step.timestamp) if last_step else as_utc(batch.started_at)
    if since is None:
        return None
    return (now - since).total_seconds() / 3600
