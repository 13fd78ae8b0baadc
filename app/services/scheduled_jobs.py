"""
Scheduled Jobs.

Concrete job implementations triggered by an external scheduler.

Jobs:
    - reminder_sweep: stamps reminder_sent_at on pending signers that are
      due within REMINDER_LEAD_HOURS (or overdue) and notifies them
"""

from __future__ import annotations

import logging
from typing import Any

from app.services import approval_workflow
from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("reminder_sweep")
def reminder_sweep(app) -> dict[str, Any]:
    """Remind pending signers that are due soon or overdue."""
    return approval_workflow.run_reminder_sweep()
