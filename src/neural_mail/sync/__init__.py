"""Mailbox synchronization.

This package reconciles server-side mailbox state into the local header cache
and schedules periodic refreshes.
"""

from .engine import ReconcilePlan, SyncEngine, plan_reconciliation
from .scheduler import SyncScheduler

__all__ = ["ReconcilePlan", "SyncEngine", "SyncScheduler", "plan_reconciliation"]
