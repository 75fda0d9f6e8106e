"""
Flow blueprint.

Endpoints:
    GET    /api/v1/flows                       — list (?pipeline=&status=)
    GET    /api/v1/flows/<id>                  — detail with nodes / edges
    GET    /api/v1/flows/active/<pipeline>     — the pipeline's active flow
    POST   /api/v1/flows                       — create draft          (admin)
    PATCH  /api/v1/flows/<id>                  — edit draft            (admin)
    POST   /api/v1/flows/<id>/activate         — activate, archive old (admin)
    POST   /api/v1/flows/<id>/deactivate       — back to draft         (admin)
    DELETE /api/v1/flows/<id>                  — delete unused draft   (admin)
    GET    /api/v1/templates                   — catalog (?kind=station|check)
    GET    /api/v1/templates/<template_id>     — one station / check template

Service layer owns all business logic and commits.
"""

import logging

from flask import Blueprint, jsonify, request

from refinery.auth import get_current_user, require_role
from refinery.blueprints import register_domain_error_handlers
from refinery.core.exceptions import NotFoundError
from refinery.services import flow_service, template_catalog
from refinery.utils.errors import E, api_error

logger = logging.getLogger(__name__)

flow_bp = Blueprint("flow_bp", __name__, url_prefix="/api/v1")
register_domain_error_handlers(flow_bp)


@flow_bp.route("/flows", methods=["GET"])
def list_flows():
    flows = flow_service.list_flows(
        pipeline=request.args.get("pipeline"),
        status=request.args.get("status"),
    )
    include_graph = request.args.get("include_graph", "false").lower() in ("1", "true", "yes")
    return jsonify({
        "items": [f.to_dict(include_graph=include_graph) for f in flows],
        "total": len(flows),
    }), 200


@flow_bp.route("/flows/<int:flow_id>", methods=["GET"])
def get_flow(flow_id):
    flow = flow_service.get_flow(flow_id)
    data = flow.to_dict()
    data["unfinished_batches"] = flow_service.count_unfinished_batches(flow.id)
    return jsonify(data), 200


@flow_bp.route("/flows/active/<pipeline>", methods=["GET"])
def get_active_flow(pipeline):
    flow = flow_service.get_active_flow(pipeline)
    if flow is None:
        raise NotFoundError(resource="Active flow for pipeline", resource_id=pipeline)
    return jsonify(flow.to_dict()), 200


@flow_bp.route("/flows", methods=["POST"])
@require_role("admin")
def create_flow():
    """Create a draft flow.

    Body: {name, version, pipeline, flow_key?, effective_date?,
           nodes: [{id, type, template_id, position?, selected_sops?}],
           edges: [{id?, source, target}]}
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "JSON object body is required")
    for key in ("nodes", "edges"):
        if key in data and not isinstance(data[key], list):
            return api_error(E.VALIDATION_INVALID, f"{key} must be a list")
    flow = flow_service.create_flow(data, created_by=get_current_user().id)
    return jsonify(flow.to_dict()), 201


@flow_bp.route("/flows/<int:flow_id>", methods=["PATCH"])
@require_role("admin")
def update_flow(flow_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_INVALID, "JSON object body is required")
    flow = flow_service.update_flow(flow_id, data)
    return jsonify(flow.to_dict()), 200


@flow_bp.route("/flows/<int:flow_id>/activate", methods=["POST"])
@require_role("admin")
def activate_flow(flow_id):
    flow = flow_service.activate_flow(flow_id)
    return jsonify(flow.to_dict()), 200


@flow_bp.route("/flows/<int:flow_id>/deactivate", methods=["POST"])
@require_role("admin")
def deactivate_flow(flow_id):
    flow = flow_service.deactivate_flow(flow_id)
    return jsonify(flow.to_dict()), 200


@flow_bp.route("/flows/<int:flow_id>", methods=["DELETE"])
@require_role("admin")
def delete_flow(flow_id):
    flow_service.delete_flow(flow_id)
    return jsonify({"deleted": True, "id": flow_id}), 200


# ── Template catalog (read-only) ─────────────────────────────────────────────


@flow_bp.route("/templates", methods=["GET"])
def list_templates():
    kind = request.args.get("kind")
    if kind not in (None, "station", "check"):
        return api_error(E.VALIDATION_INVALID, "kind must be 'station' or 'check'")
    items = template_catalog.list_templates(kind)
    return jsonify({"items": [t.to_dict() for t in items], "total": len(items)}), 200


@flow_bp.route("/templates/<template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(template_catalog.require_template(template_id).to_dict()), 200
