"""JSON error envelope shared by every API response that reports a failure.

    {"error": "<what failed and why>", "code": "ERR_...", "details": {...}}

``details`` is present only when there is something structured to add:
the batch's current status, the offending graph nodes, or the expected
and stored batch versions.
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes, grouped by the HTTP status they answer with."""

    # 400: malformed request
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # 401 / 403: identity
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # 409: duplicate, illegal transition, stale version
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_VERSION = "ERR_CONFLICT_VERSION"

    # 415: state-changing request without a JSON body
    UNSUPPORTED_MEDIA = "ERR_UNSUPPORTED_MEDIA"

    # 422: well-formed but breaks a business rule
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"
    GRAPH_INVALID = "ERR_GRAPH_INVALID"

    # 500
    INTERNAL = "ERR_INTERNAL"


STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_VERSION: 409,
    E.UNSUPPORTED_MEDIA: 415,
    E.VALIDATION_CONSTRAINT: 422,
    E.GRAPH_INVALID: 422,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a Flask view or hook.

    The status comes from ``STATUS_BY_CODE`` unless ``status`` overrides it;
    an unmapped code answers 400.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or STATUS_BY_CODE.get(code, 400)
