"""
Decision & Approval Workflow Engine
Blueprint helpers shared by the API modules.

Identity comes from the edge: an auth gateway in front of the engine
authenticates the caller and forwards X-User-Id / X-User-Name /
X-User-Email.  The engine records that identity; it never authenticates.
"""

from flask import request

from app.core.actor import SYSTEM_ACTOR_ID, Actor


class BadRequest(Exception):
    """Malformed request body or query string (HTTP 400)."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


def client_ip() -> str | None:
    """Return real client IP, honouring X-Forwarded-For from load balancers.

    The first entry in the comma-delimited list is the originating client;
    falls back to remote_addr if the header is absent.
    """
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.remote_addr


def current_actor() -> Actor:
    """Actor for the current request (``system`` when no identity is forwarded)."""
    return Actor(
        id=(request.headers.get("X-User-Id") or "").strip() or SYSTEM_ACTOR_ID,
        name=(request.headers.get("X-User-Name") or "").strip() or None,
        email=(request.headers.get("X-User-Email") or "").strip() or None,
        ip_address=client_ip(),
    )


def json_body() -> dict:
    """Request JSON object; anything else is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    return data


def require_field(data: dict, field: str, kind=None):
    if field not in data or data[field] is None:
        raise BadRequest(f"{field} is required", field)
    value = data[field]
    if kind is None:
        return value
    # bool is an int subclass; a JSON true is never a version number.
    if not isinstance(value, kind) or (isinstance(value, bool) and kind is not bool):
        raise BadRequest(f"{field} has the wrong type", field)
    return value


def optional_version(data: dict):
    """``version`` from the body if present; must be an integer."""
    if data.get("version") is None:
        return None
    return require_field(data, "version", int)


def paginate_items(items: list, default_limit=200, max_limit=1000) -> tuple[list, int]:
    """Apply limit/offset pagination to an already-loaded list.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = len(items)
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return items[offset:offset + limit], total
