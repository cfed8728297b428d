"""Standardised API error responses.

Usage
-----
    from roster.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Delta not found")
    return api_error(E.VALIDATION_REQUIRED, "justification is required")
    return api_error(E.CONFLICT_STATE, "Delta already resolved", details={"current": d})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    ALREADY_RESOLVED = "ERR_ALREADY_RESOLVED"
    NOT_ACTIONABLE = "ERR_NOT_ACTIONABLE"
    STALE_PREVIEW = "ERR_STALE_PREVIEW"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500 / 503
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_STATE: 409,
    E.ALREADY_RESOLVED: 409,
    E.NOT_ACTIONABLE: 409,
    E.STALE_PREVIEW: 409,
    E.FORBIDDEN: 403,
    E.DATABASE: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (current state, field errors, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


def service_error(err: dict):
    """Translate a service-layer error dict into a JSON response.

    Service functions return ``(None, {"error", "code", "status", ...})``;
    everything beyond the message, code and status travels as ``details``.
    """
    err = dict(err)
    message = err.pop("error", "Request failed")
    code = err.pop("code", E.INTERNAL)
    status = err.pop("status", None)
    return api_error(code, message, status=status, details=err or None)
