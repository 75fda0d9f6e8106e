"""
Batch blueprint.

Endpoints:
    GET   /api/v1/batches                          — list (?status=&pipeline=&priority=&limit=&offset=)
    GET   /api/v1/batches/<id>                     — detail + current / next node
    POST  /api/v1/batches                          — create                (operator)
    POST  /api/v1/batches/<id>/start               — start                 (operator)
    POST  /api/v1/batches/<id>/complete-step       — complete current node (operator)
    POST  /api/v1/batches/<id>/flag                — raise exception       (operator)
    POST  /api/v1/batches/<id>/approve-exception   — approve a flag        (supervisor)
    PATCH /api/v1/batches/<id>/priority            — change priority       (admin)
    POST  /api/v1/batches/<id>/events              — mass check, signature, photo, ... (operator)

Every mutation accepts an optional ``expected_version``; a stale value is
answered with 409 and the caller must reload.
"""

import logging

from flask import Blueprint, jsonify, request

from refinery.auth import get_current_user, require_role
from refinery.blueprints import pagination_args, register_domain_error_handlers
from refinery.services import batch_service
from refinery.utils.errors import E, api_error

logger = logging.getLogger(__name__)

batch_bp = Blueprint("batch_bp", __name__, url_prefix="/api/v1")
register_domain_error_handlers(batch_bp)


def _json_body():
    """Return (body, error). An absent body is an empty dict."""
    if not request.data:
        return {}, None
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "JSON object body is required")
    return data, None


def _expected_version(data):
    """Return (version, error) from the body's optional ``expected_version``."""
    raw = data.get("expected_version")
    if raw is None:
        return None, None
    if isinstance(raw, bool):
        return None, api_error(E.VALIDATION_INVALID, "expected_version must be an integer")
    try:
        return int(raw), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, "expected_version must be an integer")


def _detail(batch):
    return jsonify(batch_service.get_batch(batch.id))


# ── Read ─────────────────────────────────────────────────────────────────────


@batch_bp.route("/batches", methods=["GET"])
def list_batches():
    limit, offset = pagination_args()
    items, total = batch_service.list_batches(
        status=request.args.get("status"),
        pipeline=request.args.get("pipeline"),
        priority=request.args.get("priority"),
        limit=limit,
        offset=offset,
    )
    include_events = request.args.get("include_events", "false").lower() in ("1", "true", "yes")
    return jsonify({
        "items": [b.to_dict(include_events=include_events) for b in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    }), 200


@batch_bp.route("/batches/<int:batch_id>", methods=["GET"])
def get_batch(batch_id):
    return jsonify(batch_service.get_batch(batch_id)), 200


# ── Lifecycle ────────────────────────────────────────────────────────────────


@batch_bp.route("/batches", methods=["POST"])
@require_role("operator")
def create_batch():
    """Create a batch on the pipeline's active flow.

    Body: {batch_number, pipeline, initial_weight?, priority?,
           supplier?, drill_number?, destination?}
    """
    data, err = _json_body()
    if err:
        return err
    batch_number = (data.get("batch_number") or "").strip()
    if not batch_number:
        return api_error(E.VALIDATION_REQUIRED, "batch_number is required")
    pipeline = (data.get("pipeline") or "").strip()
    if not pipeline:
        return api_error(E.VALIDATION_REQUIRED, "pipeline is required")
    initial_weight = data.get("initial_weight")
    if initial_weight is not None:
        try:
            initial_weight = float(initial_weight)
        except (TypeError, ValueError):
            return api_error(E.VALIDATION_INVALID, "initial_weight must be a number")

    batch = batch_service.create_batch(
        batch_number,
        pipeline,
        get_current_user(),
        initial_weight=initial_weight,
        priority=data.get("priority") or "normal",
        supplier=data.get("supplier"),
        drill_number=data.get("drill_number"),
        destination=data.get("destination"),
    )
    return _detail(batch), 201


@batch_bp.route("/batches/<int:batch_id>/start", methods=["POST"])
@require_role("operator")
def start_batch(batch_id):
    data, err = _json_body()
    if err:
        return err
    version, err = _expected_version(data)
    if err:
        return err
    batch = batch_service.start_batch(batch_id, get_current_user(), expected_version=version)
    return _detail(batch), 200


@batch_bp.route("/batches/<int:batch_id>/complete-step", methods=["POST"])
@require_role("operator")
def complete_step(batch_id):
    """Complete the current node.

    Body: {step_data?: {...}, expected_version?}
    """
    data, err = _json_body()
    if err:
        return err
    version, err = _expected_version(data)
    if err:
        return err
    step_data = data.get("step_data")
    if step_data is not None and not isinstance(step_data, dict):
        return api_error(E.VALIDATION_INVALID, "step_data must be an object")
    batch = batch_service.complete_step(
        batch_id, get_current_user(), step_data=step_data, expected_version=version,
    )
    return _detail(batch), 200


@batch_bp.route("/batches/<int:batch_id>/flag", methods=["POST"])
@require_role("operator")
def flag_batch(batch_id):
    """Raise an exception.

    Body: {exception_type, reason, notes?, station?, step?, expected_version?}
    """
    data, err = _json_body()
    if err:
        return err
    version, err = _expected_version(data)
    if err:
        return err
    exception_type = data.get("exception_type") or data.get("type")
    if not exception_type:
        return api_error(E.VALIDATION_REQUIRED, "exception_type is required")
    reason = (data.get("reason") or "").strip()
    if not reason:
        return api_error(E.VALIDATION_REQUIRED, "reason is required")
    batch = batch_service.flag_batch(
        batch_id,
        get_current_user(),
        exception_type=exception_type,
        reason=reason,
        notes=data.get("notes"),
        station=data.get("station"),
        step=data.get("step"),
        expected_version=version,
    )
    return _detail(batch), 200


@batch_bp.route("/batches/<int:batch_id>/approve-exception", methods=["POST"])
@require_role("supervisor")
def approve_exception(batch_id):
    """Approve a flag (default: the latest).

    Body: {flag_index?, notes?, expected_version?}
    """
    data, err = _json_body()
    if err:
        return err
    version, err = _expected_version(data)
    if err:
        return err
    flag_index = data.get("flag_index")
    if flag_index is not None:
        if isinstance(flag_index, bool):
            return api_error(E.VALIDATION_INVALID, "flag_index must be an integer")
        try:
            flag_index = int(flag_index)
        except (TypeError, ValueError):
            return api_error(E.VALIDATION_INVALID, "flag_index must be an integer")
    batch = batch_service.approve_exception(
        batch_id,
        get_current_user(),
        flag_index=flag_index,
        notes=data.get("notes"),
        expected_version=version,
    )
    return _detail(batch), 200


@batch_bp.route("/batches/<int:batch_id>/priority", methods=["PATCH"])
@require_role("admin")
def change_priority(batch_id):
    data, err = _json_body()
    if err:
        return err
    version, err = _expected_version(data)
    if err:
        return err
    priority = data.get("priority")
    if not priority:
        return api_error(E.VALIDATION_REQUIRED, "priority is required")
    batch = batch_service.change_priority(
        batch_id, get_current_user(), priority, expected_version=version,
    )
    return _detail(batch), 200


@batch_bp.route("/batches/<int:batch_id>/events", methods=["POST"])
@require_role("operator")
def record_event(batch_id):
    """Append an informational event.

    Body: {type, data?, station?, step?, expected_version?}
    """
    data, err = _json_body()
    if err:
        return err
    version, err = _expected_version(data)
    if err:
        return err
    event_type = data.get("type") or data.get("event_type")
    if not event_type:
        return api_error(E.VALIDATION_REQUIRED, "type is required")
    payload = data.get("data")
    if payload is not None and not isinstance(payload, dict):
        return api_error(E.VALIDATION_INVALID, "data must be an object")
    event = batch_service.record_event(
        batch_id,
        get_current_user(),
        event_type=event_type,
        data=payload,
        station=data.get("station"),
        step=data.get("step"),
        expected_version=version,
    )
    return jsonify(event.to_dict()), 201
