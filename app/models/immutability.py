"""
ORM-level immutability for append-only records.

AuditEntry, DecisionComment, DecisionVersion and SignatureCapture are
written once and never changed.  SQLAlchemy fires ``before_update`` and
``before_delete`` mapper events before any SQL is emitted; the listeners
below raise ImmutableRecordError there, so the flush (and the enclosing
transaction) is aborted and the row is untouched.

Bulk ``query.update()`` / raw SQL bypass mapper events; no service in this
package issues those against the protected tables.
"""

import logging

from sqlalchemy import event

from app.core.exceptions import ImmutableRecordError
from app.models.approval import SignatureCapture
from app.models.audit import AuditEntry
from app.models.decision import DecisionComment, DecisionVersion

logger = logging.getLogger(__name__)

PROTECTED_MODELS = (AuditEntry, DecisionComment, DecisionVersion, SignatureCapture)


def _block_update(mapper, connection, target):
    logger.error(
        "Immutability violation blocked",
        extra={"entity_type": type(target).__name__, "entity_id": str(target.id), "operation": "UPDATE"},
    )
    raise ImmutableRecordError(type(target).__name__, str(target.id), "update")


def _block_delete(mapper, connection, target):
    logger.error(
        "Immutability violation blocked",
        extra={"entity_type": type(target).__name__, "entity_id": str(target.id), "operation": "DELETE"},
    )
    raise ImmutableRecordError(type(target).__name__, str(target.id), "delete")


def register_immutability_listeners():
    """Attach the guards once; safe to call from every create_app()."""
    for model in PROTECTED_MODELS:
        if not event.contains(model, "before_update", _block_update):
            event.listen(model, "before_update", _block_update)
        if not event.contains(model, "before_delete", _block_delete):
            event.listen(model, "before_delete", _block_delete)
