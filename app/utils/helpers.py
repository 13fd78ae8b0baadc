"""Shared utility functions for services and blueprints.

parse_date:          date input → date (None on empty, ValueError on bad input)
parse_datetime:      ISO datetime → aware UTC datetime
ensure_utc:          attach UTC to naive datetimes read back from SQLite
versioned_write:     write block + commit; version or unique-key races become ConflictError
"""
import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConflictError
from app.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value):
    """Return *value* as an aware UTC datetime (None passes through).

    SQLite drops tzinfo on round-trip even for DateTime(timezone=True)
    columns; stored values are always UTC, so naive means UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty input and raises ValueError for unparseable
    input.  Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY.") from exc


def parse_datetime(value):
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into aware UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError("Invalid timestamp. Use ISO-8601, e.g. 2026-01-31T09:30:00Z.") from exc


# ── Database write helper ────────────────────────────────────────────────────

@contextmanager
def versioned_write(resource: str, resource_id: str | None):
    """Run a block of session writes and commit it under the version guard.

    Rows mapped with ``version_id_col`` emit ``UPDATE … WHERE version = :seen``
    at the first flush that touches them, which may be inside the block
    (an audit write, a queue advance) rather than at commit.  A stale
    guard (StaleDataError) or a lost race on a unique key (IntegrityError)
    anywhere in the block rolls the session back and becomes ConflictError;
    the caller must re-read.  Any other exception rolls back and propagates.

    Usage:
        with versioned_write("Decision", decision.id):
            decision.status = target
            write_audit(...)
    """
    try:
        yield
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning(
            "Version conflict on write",
            extra={"resource": resource, "resource_id": resource_id},
        )
        raise ConflictError(resource, resource_id) from None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning(
            "Unique key conflict on write: %s", exc.orig,
            extra={"resource": resource, "resource_id": resource_id},
        )
        raise ConflictError(resource, resource_id) from None
    except Exception:
        db.session.rollback()
        raise
