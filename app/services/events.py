"""
Engine change events.

Services publish a signal after each successful commit so that any caller
(a UI push channel, a cache, a notification worker) can react without the
engine holding UI-shaped state.  Signals are never sent from inside an
open state-change transaction.

Usage:
    from app.services import events

    @events.decision_changed.connect
    def _on_decision(sender, **payload):
        ...
"""

from __future__ import annotations

import logging

from blinker import Namespace

logger = logging.getLogger(__name__)

_signals = Namespace()

decision_changed = _signals.signal("decision-changed")
signer_advanced = _signals.signal("signer-advanced")
approval_completed = _signals.signal("approval-completed")
reminder_issued = _signals.signal("reminder-issued")


def publish(signal, sender: str, **payload) -> None:
    """Send *signal*; a failing subscriber is logged and does not propagate.

    The state change has already been committed at this point, so a
    subscriber error must not surface as a failed operation.
    """
    for receiver, _result in _send_isolated(signal, sender, payload):
        logger.debug("Event %s delivered to %r", signal.name, receiver)


def _send_isolated(signal, sender, payload):
    results = []
    for receiver in signal.receivers_for(sender):
        try:
            results.append((receiver, receiver(sender, **payload)))
        except Exception:
            logger.exception(
                "Event subscriber failed",
                extra={"event_type": signal.name, "sender": sender},
            )
    return results
