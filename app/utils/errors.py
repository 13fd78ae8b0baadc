"""Standardised API error responses.

Usage
-----
    from app.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Decision not found")
    return api_error(E.VALIDATION_REQUIRED, "version is required")
    return api_error(E.CONFLICT_VERSION, "Stale version", details={"expected": 3})

``register_error_handlers(app)`` maps every engine exception to one of
these responses, so blueprints only build errors for malformed requests.
"""

from __future__ import annotations

import logging

from flask import jsonify

from app.core.exceptions import (
    ConflictError,
    EngineError,
    ExternalServiceError,
    ImmutableRecordError,
    InvalidTransitionError,
    NotFoundError,
    NotYourTurnError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention: ERR_ prefix for every code.
    """

    # Malformed request – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business-rule validation – HTTP 422
    VALIDATION_CONSTRAINT = "ERR_VALIDATION_CONSTRAINT"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_VERSION = "ERR_CONFLICT_VERSION"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    NOT_YOUR_TURN = "ERR_NOT_YOUR_TURN"
    IMMUTABLE = "ERR_IMMUTABLE_RECORD"

    # Collaborators – HTTP 502
    EXTERNAL_SERVICE = "ERR_EXTERNAL_SERVICE"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_CONSTRAINT: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_VERSION: 409,
    E.CONFLICT_STATE: 409,
    E.NOT_YOUR_TURN: 409,
    E.IMMUTABLE: 409,
    E.EXTERNAL_SERVICE: 502,
    E.INTERNAL: 500,
}

# Most specific first: lookups walk this list in order.
_EXCEPTION_CODES: list[tuple[type[Exception], str]] = [
    (ValidationError, E.VALIDATION_CONSTRAINT),
    (NotFoundError, E.NOT_FOUND),
    (ConflictError, E.CONFLICT_VERSION),
    (InvalidTransitionError, E.CONFLICT_STATE),
    (NotYourTurnError, E.NOT_YOUR_TURN),
    (ImmutableRecordError, E.IMMUTABLE),
    (ExternalServiceError, E.EXTERNAL_SERVICE),
]


def error_code_for(exc: Exception) -> str:
    """Machine-readable code for an exception (used in bulk error lists)."""
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return code
    return E.INTERNAL


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
        Extra structured payload (field errors, versions, etc.).

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


def _details_for(exc: EngineError) -> dict | None:
    if isinstance(exc, ValidationError):
        return exc.details or None
    if isinstance(exc, ConflictError) and exc.expected_version is not None:
        return {"expected_version": exc.expected_version, "actual_version": exc.actual_version}
    if isinstance(exc, InvalidTransitionError):
        return {"action": exc.action, "current_status": exc.current_status}
    if isinstance(exc, NotYourTurnError):
        return {"signer_id": exc.signer_id, "state": exc.state}
    return None


def register_error_handlers(app) -> None:
    """Translate engine exceptions raised anywhere in a request to JSON."""

    @app.errorhandler(EngineError)
    def _handle_engine_error(exc: EngineError):
        code = error_code_for(exc)
        if isinstance(exc, ExternalServiceError):
            logger.error("Collaborator failure: %s", exc)
        return api_error(code, str(exc), details=_details_for(exc))

    @app.errorhandler(404)
    def _not_found(_e):
        return api_error(E.NOT_FOUND, "Resource not found")

    @app.errorhandler(405)
    def _method_not_allowed(_e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(429)
    def _rate_limited(_e):
        return api_error(E.VALIDATION_INVALID, "Rate limit exceeded", status=429)

    @app.errorhandler(500)
    def _internal(_e):
        return api_error(E.INTERNAL, "Internal server error")
