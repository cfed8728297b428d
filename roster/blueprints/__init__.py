"""
Roster Governance Engine
Blueprint registry and shared view helpers.
"""

import logging

from flask import jsonify, request

from roster.core.exceptions import FatalError, RosterError
from roster.utils.errors import service_error

logger = logging.getLogger(__name__)


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  - max items (default 200, capped at max_limit)
        offset - starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.order_by(None).count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def respond(result, err, status=200):
    """Translate a service ``(result, error)`` tuple into a JSON response."""
    if err:
        return service_error(err)
    return jsonify(result), status


def register_error_handlers(bp):
    """Map the roster exception hierarchy onto JSON responses for *bp*."""

    @bp.errorhandler(FatalError)
    def _handle_fatal(error: FatalError):
        logger.error("Storage failure in %s endpoint=%s: %s", bp.name, request.endpoint, error)
        return jsonify(error.to_dict()), 503

    @bp.errorhandler(RosterError)
    def _handle_roster_error(error: RosterError):
        return jsonify(error.to_dict()), error.status

    return bp
