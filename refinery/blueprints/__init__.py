"""
Refinery Batch Tracker
Blueprint registry helpers.
"""

import logging

from flask import request
from werkzeug.exceptions import HTTPException

from refinery.core.exceptions import (
    ConflictError,
    GraphError,
    ImmutableEventError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
    VersionConflictError,
)
from refinery.utils.errors import E, api_error
from refinery.utils.helpers import parse_int

logger = logging.getLogger(__name__)


def pagination_args(default_limit=50, max_limit=500):
    """Read limit/offset query params.

    Query params:
        limit  — max items (default 50, capped at max_limit)
        offset — starting position (default 0)
    """
    limit = parse_int(request.args.get("limit"), default_limit, minimum=1, maximum=max_limit)
    offset = parse_int(request.args.get("offset"), 0, minimum=0)
    return limit, offset


def register_domain_error_handlers(bp):
    """Map the domain exception taxonomy to JSON error envelopes on ``bp``.

    Flask resolves the most specific handler, so InvalidTransition and
    GraphError win over their ValidationError base.
    """

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(InvalidTransition)
    def _handle_invalid_transition(error: InvalidTransition):
        return api_error(E.CONFLICT_STATE, str(error), details=error.details)

    @bp.errorhandler(GraphError)
    def _handle_graph(error: GraphError):
        return api_error(E.GRAPH_INVALID, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_CONSTRAINT, str(error), details=error.details)

    @bp.errorhandler(VersionConflictError)
    def _handle_version_conflict(error: VersionConflictError):
        return api_error(
            E.CONFLICT_VERSION, str(error),
            details={"expected_version": error.expected, "current_version": error.actual},
        )

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(ImmutableEventError)
    def _handle_immutable(error: ImmutableEventError):
        logger.error("Immutable event violation at %s: %s", request.endpoint, error)
        return api_error(E.INTERNAL, "Event log is append-only")

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
