"""
Batch traversal service.

Business logic for:
    - Creation:           bind to the pipeline's active Flow at its start node
    - State machine:      created → in_progress → completed, in_progress ⇄ flagged
    - Step completion:    history, event, per-step analytics, advance / finalize
    - Exceptions:         flag (layered) and approval under the configured policy
    - Informational log:  mass checks, signatures, photos, priority changes
    - Read side:          batch detail joined with current / next node

Every mutating operation is one load → version check → mutate → commit
cycle. The batch row is version-guarded (``Batch.version``); a writer that
read an older version gets VersionConflictError and must reload. Domain
errors roll the session back so the batch is left exactly as stored.

Analytics failures are logged and never block a state transition.
"""

import logging
from datetime import datetime, timezone

from flask import current_app, has_app_context
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from refinery.auth import SYSTEM_USER
from refinery.core.exceptions import (
    AnalyticsError,
    ConflictError,
    GraphError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from refinery.models import db
from refinery.models.batch import (
    BATCH_PRIORITIES,
    BATCH_STATUSES,
    FLAG_TYPES,
    RECORDABLE_EVENT_TYPES,
    Batch,
    BatchFlag,
    validate_batch_transition,
)
from refinery.models.template import CheckTemplate
from refinery.services import analytics_calculator, event_log, flow_graph, flow_service, template_catalog
from refinery.services.event_log import (
    ApprovalPayload,
    ExceptionPayload,
    MassCheckPayload,
    PriorityChangePayload,
    SignaturePayload,
)
from refinery.utils.helpers import as_utc, rollback_on_error

logger = logging.getLogger(__name__)

APPROVAL_POLICIES = {"any", "all"}


def _utcnow():
    return datetime.now(timezone.utc)


def _approval_policy(override=None):
    policy = override
    if policy is None and has_app_context():
        policy = current_app.config.get("EXCEPTION_APPROVAL_POLICY", "any")
    policy = (policy or "any").lower()
    if policy not in APPROVAL_POLICIES:
        raise ValidationError(
            f"Unknown approval policy '{policy}'",
            details={"allowed": sorted(APPROVAL_POLICIES)},
        )
    return policy


# ── Load / persist ───────────────────────────────────────────────────────────


def _load(batch_id, expected_version=None):
    batch = db.session.get(Batch, batch_id)
    if batch is None:
        raise NotFoundError(resource="Batch", resource_id=batch_id)
    if expected_version is not None and int(expected_version) != batch.version:
        raise VersionConflictError(batch.id, int(expected_version), batch.version)
    # Collections load while the batch is still clean; a lazy load on a dirty
    # batch would autoflush it outside the version-guarded commit.
    for collection in (batch.events, batch.flags, batch.recovery_pours,
                       batch.flow.nodes, batch.flow.edges):
        len(collection)
    return batch


def _commit(batch, now):
    """Persist ``batch``; the version-guarded UPDATE rejects stale writers."""
    batch_id, read_version = batch.id, batch.version
    batch.updated_at = now
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        stored = db.session.execute(
            select(Batch.version).where(Batch.id == batch_id)
        ).scalar()
        logger.warning(
            "Version conflict on batch id=%s: read %s, stored %s", batch_id, read_version, stored,
        )
        raise VersionConflictError(batch_id, read_version, stored) from exc


def _set_status(batch, new_status, action):
    old = batch.status
    if old == new_status and new_status not in ("in_progress", "flagged"):
        return
    if not validate_batch_transition(old, new_status):
        raise InvalidTransition(action, old, f"cannot move from {old} to {new_status}")
    batch.status = new_status
    if old != new_status:
        logger.info("Batch %s: %s → %s (%s)", batch.batch_number, old, new_status, action)


def _start(batch, user, now):
    """Move a created batch (or an in-progress one, idempotently) to in_progress."""
    _set_status(batch, "in_progress", "start")
    if batch.started_at is None:
        batch.started_at = now
    event_log.append_event(
        batch, "batch_started", user,
        station=batch.current_station, step=batch.current_node_id, timestamp=now,
    )


def _reject_completed(batch, action):
    if batch.status == "completed":
        raise InvalidTransition(action, batch.status, "batch already completed")


# ── Creation ─────────────────────────────────────────────────────────────────


@rollback_on_error
def create_batch(batch_number, pipeline, user=None, initial_weight=None,
                 priority="normal", **metadata):
    """Create a batch bound to the active Flow of ``pipeline``.

    Raises:
        ValidationError: missing number or bad priority.
        ConflictError: batch number already used.
        NotFoundError: no active flow for the pipeline.
        GraphError: the active flow has no single start node.
    """
    user = user or SYSTEM_USER
    batch_number = (batch_number or "").strip()
    if not batch_number:
        raise ValidationError("batch_number is required")
    priority = priority or "normal"
    if priority not in BATCH_PRIORITIES:
        raise ValidationError(
            f"Invalid priority '{priority}'",
            details={"allowed": sorted(BATCH_PRIORITIES)},
        )
    exists = db.session.execute(
        select(Batch.id).where(Batch.batch_number == batch_number)
    ).first()
    if exists:
        raise ConflictError("Batch", "batch_number", batch_number)

    flow = flow_service.require_active_flow(pipeline)
    start = flow_graph.resolve_start_node(flow)
    now = _utcnow()

    batch = Batch(
        batch_number=batch_number,
        flow_id=flow.id,
        flow=flow,
        flow_version=flow.version,
        pipeline=pipeline,
        status="created",
        priority=priority,
        current_node_id=start.node_key,
        current_station=start.template_id,
        completed_node_ids=[],
        initial_weight=initial_weight,
        supplier=metadata.get("supplier"),
        drill_number=metadata.get("drill_number"),
        destination=metadata.get("destination"),
        created_by=user.id,
        created_by_name=user.name,
        created_at=now,
        updated_at=now,
    )
    db.session.add(batch)
    event_log.append_event(
        batch, "batch_created", user,
        station=start.template_id, step=start.node_key, timestamp=now,
        data={
            "batch_number": batch_number,
            "pipeline": pipeline,
            "flow_key": flow.flow_key,
            "flow_version": flow.version,
            "initial_weight": initial_weight,
            "priority": priority,
        },
    )
    db.session.commit()
    logger.info(
        "Batch created: %s [%s] on flow %s@%s at %s",
        batch.batch_number, pipeline, flow.flow_key, flow.version, start.node_key,
    )
    return batch


# ── State machine ────────────────────────────────────────────────────────────


@rollback_on_error
def start_batch(batch_id, user=None, expected_version=None):
    """Start a created batch. Idempotent for in-progress batches."""
    user = user or SYSTEM_USER
    batch = _load(batch_id, expected_version)
    _reject_completed(batch, "start")
    if batch.status == "flagged":
        raise InvalidTransition(
            "start", batch.status, "batch is flagged; approve pending exceptions first",
        )
    now = _utcnow()
    _start(batch, user, now)
    _commit(batch, now)
    return batch


@rollback_on_error
def complete_step(batch_id, user=None, step_data=None, expected_version=None):
    """Complete the batch's current node and advance it.

    The next node is resolved before anything changes, so a broken graph
    rejects the call with the batch untouched. A current node that has
    disappeared from the bound flow is tolerated and recorded as a warning
    on the step event. The batch completes only once every node of the flow
    has been completed; without an outgoing edge it otherwise resumes at the
    first unvisited node.
    """
    user = user or SYSTEM_USER
    batch = _load(batch_id, expected_version)
    _reject_completed(batch, "complete_step")

    flow = batch.flow
    node_id = batch.current_node_id
    node = flow_graph.find_node(flow, node_id)
    next_node = flow_graph.resolve_next_node(flow, node_id)
    resumed = False
    if next_node is None:
        visited = set(batch.completed_node_ids or []) | {node_id}
        next_node = flow_graph.first_unvisited_node(flow, visited)
        resumed = next_node is not None
    if next_node is None and batch.status == "flagged":
        raise InvalidTransition(
            "complete_step", batch.status,
            "batch is flagged; approve pending exceptions before completing the final step",
        )

    now = _utcnow()
    if batch.status == "created":
        _start(batch, user, now)

    if node_id not in (batch.completed_node_ids or []):
        batch.completed_node_ids = list(batch.completed_node_ids or []) + [node_id]

    warning = None
    template_id = node.template_id if node is not None else batch.current_station
    if node is None:
        warning = (
            f"Node '{node_id}' is not part of flow {flow.flow_key}@{batch.flow_version}; "
            "step recorded without graph validation"
        )
    if resumed:
        remaining = [
            n.node_key for n in flow.nodes
            if n.node_key not in batch.completed_node_ids
        ]
        resume_note = (
            f"No outgoing edge from '{node_id}' and {len(remaining)} node(s) remain "
            f"({', '.join(remaining)}); resuming at '{next_node.node_key}'"
        )
        warning = f"{warning}; {resume_note}" if warning else resume_note
    if warning:
        logger.warning("Batch %s: %s", batch.batch_number, warning)

    event_log.append_event(
        batch, "step_completed", user,
        station=template_id, step=node_id, data=step_data, warning=warning, timestamp=now,
    )

    try:
        analytics_calculator.update_on_step_completion(batch, node_id, template_id, step_data, now)
    except AnalyticsError:
        logger.exception("Step analytics failed for batch %s at %s", batch.batch_number, node_id)

    if next_node is not None:
        batch.current_node_id = next_node.node_key
        batch.current_station = next_node.template_id
        logger.info("Batch %s: %s → %s", batch.batch_number, node_id, next_node.node_key)
    else:
        _finish(batch, user, now)

    _commit(batch, now)
    return batch


def _finish(batch, user, now):
    _set_status(batch, "completed", "complete_step")
    batch.completed_at = now
    started = as_utc(batch.started_at) or now
    batch.duration_minutes = round((now - started).total_seconds() / 60)
    last_station, last_node = batch.current_station, batch.current_node_id
    batch.current_node_id = None
    batch.current_station = None
    try:
        analytics_calculator.finalize(batch)
    except AnalyticsError:
        logger.exception("Terminal analytics failed for batch %s", batch.batch_number)
    event_log.append_event(
        batch, "batch_completed", user,
        station=last_station, step=last_node, timestamp=now,
        data={
            "duration_minutes": batch.duration_minutes,
            "completed_node_ids": list(batch.completed_node_ids),
            "overall_recovery_percent": batch.overall_recovery_percent,
            "loss_gain_g": batch.loss_gain_g,
        },
    )


# ── Exception sub-machine ────────────────────────────────────────────────────


def has_pending_flags(batch):
    return any(f.is_pending for f in batch.flags)


@rollback_on_error
def flag_batch(batch_id, user=None, exception_type="other", reason="", notes=None,
               station=None, step=None, expected_version=None):
    """Raise an exception against a batch. Flags layer; status is forced to flagged."""
    user = user or SYSTEM_USER
    if exception_type not in FLAG_TYPES:
        raise ValidationError(
            f"Invalid exception type '{exception_type}'",
            details={"allowed": sorted(FLAG_TYPES)},
        )
    if not (reason or "").strip():
        raise ValidationError("reason is required")

    batch = _load(batch_id, expected_version)
    _reject_completed(batch, "flag")
    now = _utcnow()
    if batch.status == "created":
        _start(batch, user, now)

    position = len(batch.flags)
    batch.flags.append(BatchFlag(
        position=position,
        flag_type=exception_type,
        reason=reason.strip(),
        notes=notes,
        flagged_at=now,
        flagged_by=user.id,
    ))
    event_log.append_event(
        batch, "exception_flagged", user,
        station=station or batch.current_station,
        step=step or batch.current_node_id,
        timestamp=now,
        data=ExceptionPayload(
            flag_index=position, exception_type=exception_type,
            reason=reason.strip(), notes=notes,
        ),
    )
    _set_status(batch, "flagged", "flag")
    _commit(batch, now)
    logger.info(
        "Batch %s flagged #%d (%s) by %s", batch.batch_number, position, exception_type, user.id,
    )
    return batch


@rollback_on_error
def approve_exception(batch_id, user=None, flag_index=None, notes=None,
                      expected_version=None, policy=None):
    """Approve one flag and apply the approval policy.

    ``flag_index`` defaults to the most recent flag. Under policy ``any``
    the batch returns to in_progress on every approval; under ``all`` it
    stays flagged while any flag is still pending.
    """
    user = user or SYSTEM_USER
    policy = _approval_policy(policy)
    batch = _load(batch_id, expected_version)
    if batch.status != "flagged":
        raise InvalidTransition("approve_exception", batch.status, "batch is not flagged")
    if not batch.flags:
        raise NotFoundError(resource="Flag", resource_id=f"{batch.batch_number}#-")

    index = len(batch.flags) - 1 if flag_index is None else int(flag_index)
    if index < 0 or index >= len(batch.flags):
        raise NotFoundError(resource="Flag", resource_id=f"{batch.batch_number}#{index}")
    flag = batch.flags[index]
    if not flag.is_pending:
        raise InvalidTransition(
            "approve_exception", batch.status,
            f"flag {index} already approved by {flag.approved_by}",
        )

    now = _utcnow()
    flag.approved_by = user.id
    flag.approved_at = now
    flag.approval_notes = notes

    remaining = len(batch.pending_flags)
    new_status = "flagged" if policy == "all" and remaining else "in_progress"
    _set_status(batch, new_status, "approve_exception")
    event_log.append_event(
        batch, "exception_approved", user,
        station=batch.current_station, step=batch.current_node_id, timestamp=now,
        data=ApprovalPayload(
            flag_index=index, exception_type=flag.flag_type, notes=notes,
            pending_remaining=remaining, status_after=new_status,
        ),
    )
    _commit(batch, now)
    logger.info(
        "Batch %s flag #%d approved by %s (policy=%s, pending=%d, status=%s)",
        batch.batch_number, index, user.id, policy, remaining, new_status,
    )
    return batch


# ── Informational mutations ──────────────────────────────────────────────────


@rollback_on_error
def change_priority(batch_id, user=None, priority="normal", expected_version=None):
    user = user or SYSTEM_USER
    if priority not in BATCH_PRIORITIES:
        raise ValidationError(
            f"Invalid priority '{priority}'",
            details={"allowed": sorted(BATCH_PRIORITIES)},
        )
    batch = _load(batch_id, expected_version)
    _reject_completed(batch, "change_priority")
    if batch.priority == priority:
        return batch
    now = _utcnow()
    old = batch.priority
    batch.priority = priority
    event_log.append_event(
        batch, "priority_changed", user,
        station=batch.current_station, step=batch.current_node_id, timestamp=now,
        data=PriorityChangePayload(old_priority=old, new_priority=priority),
    )
    _commit(batch, now)
    logger.info("Batch %s priority %s → %s", batch.batch_number, old, priority)
    return batch


def _mass_check_payload(batch, data):
    try:
        payload = MassCheckPayload.from_dict(data or {})
    except ValueError as exc:
        raise ValidationError(f"Invalid mass check: {exc}") from exc

    template_id = payload.check_template_id or batch.current_station
    template = template_catalog.get_template(template_id)
    if isinstance(template, CheckTemplate) and template.check_type == "mass_check":
        payload.check_template_id = template.template_id
        if payload.tolerance is None:
            return payload.apply_tolerance(template.tolerance, template.tolerance_unit)
    return payload.apply_tolerance()


@rollback_on_error
def record_event(batch_id, user=None, event_type=None, data=None, station=None,
                 step=None, expected_version=None):
    """Append an informational event without changing status.

    ``mass_check`` data gets variance and tolerance verdict computed against
    the check template's tolerance.
    """
    user = user or SYSTEM_USER
    if event_type not in RECORDABLE_EVENT_TYPES:
        raise ValidationError(
            f"Event type '{event_type}' cannot be recorded directly",
            details={"allowed": sorted(RECORDABLE_EVENT_TYPES)},
        )
    batch = _load(batch_id, expected_version)
    _reject_completed(batch, "record_event")

    payload = data
    if event_type == "mass_check":
        payload = _mass_check_payload(batch, data)
    elif event_type == "signature_captured":
        try:
            payload = SignaturePayload.from_dict(data or {})
        except ValueError as exc:
            raise ValidationError(f"Invalid signature: {exc}") from exc

    now = _utcnow()
    event = event_log.append_event(
        batch, event_type, user,
        station=station or batch.current_station,
        step=step or batch.current_node_id,
        data=payload, timestamp=now,
    )
    _commit(batch, now)
    return event


# ── Read side ────────────────────────────────────────────────────────────────


def get_batch(batch_id, now=None):
    """Batch detail with its resolved current and next node."""
    batch = _load(batch_id)
    data = batch.to_dict()
    current = flow_graph.find_node(batch.flow, batch.current_node_id)
    next_node = None
    if batch.status != "completed" and batch.current_node_id:
        try:
            next_node = flow_graph.resolve_next_node(batch.flow, batch.current_node_id)
            if next_node is None:
                visited = set(batch.completed_node_ids or []) | {batch.current_node_id}
                next_node = flow_graph.first_unvisited_node(batch.flow, visited)
        except GraphError:
            logger.warning("Batch %s: next node unresolvable", batch.batch_number)
    data["current_node"] = current.to_dict() if current else None
    data["next_node"] = next_node.to_dict() if next_node else None
    data["is_terminal_step"] = batch.status != "completed" and next_node is None
    data["time_at_current_station_hours"] = (
        event_log.time_at_current_station(batch, now)
        if batch.status in ("in_progress", "flagged") else None
    )
    data["ftt_recovery_percent"] = analytics_calculator.ftt_recovery_percent(batch)
    return data


def list_batches(status=None, pipeline=None, priority=None, limit=50, offset=0):
    """Filtered batch page, high priority first. Returns (items, total)."""
    if status and status not in BATCH_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'", details={"allowed": sorted(BATCH_STATUSES)},
        )
    stmt = select(Batch)
    if status:
        stmt = stmt.where(Batch.status == status)
    if pipeline:
        stmt = stmt.where(Batch.pipeline == pipeline)
    if priority:
        stmt = stmt.where(Batch.priority == priority)
    total = db.session.execute(
        select(func.count()).select_from(stmt.subquery())
    ).scalar() or 0
    stmt = stmt.order_by(Batch.priority.asc(), Batch.created_at.desc(), Batch.id.desc())
    items = db.session.execute(stmt.limit(limit).offset(offset)).scalars().all()
    return items, total
