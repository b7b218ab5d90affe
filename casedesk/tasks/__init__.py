"""Scheduled tasks for CaseDesk.

This package contains scheduled jobs that run periodically to handle:
- Expiry of unpaid consultation holds
- Regeneration of invoices that failed at confirmation time
"""

from casedesk.tasks.hold_reaper import run_hold_reaper_task

__all__ = [
    "run_hold_reaper_task",
]
