# /flowbot/jobs/session_jobs.py

"""
Periodic engine jobs run by the scheduler process.

- resume_due_sessions: re-enters sessions parked on a delay node whose
  `resume_at` has passed.
- sweep_pending_webhook_records: consumes webhook execution records still
  `pending` after the grace period (the request-time background task was
  lost, e.g. the worker restarted).
- expire_stale_sessions: marks sessions idle past the session timeout as
  `timeout`.

Every job receives the AppContext explicitly and returns a count so the
scheduler can log it.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from flowbot.dependencies.context import AppContext
from flowbot.models.execution import WebhookRecordStatus
from flowbot.services.store import sessions_due_predicate
from flowbot.utils.errors import FlowbotError

logger = logging.getLogger(__name__)


async def resume_due_sessions(ctx: AppContext, now: Optional[datetime] = None, limit: int = 200) -> int:
    now = now or datetime.now(timezone.utc)
    due = await ctx.store.find_sessions(sessions_due_predicate(now), sort_desc="resume_at", limit=limit)
    resumed = 0
    for session in due:
        try:
            outcome = await ctx.executor.resume_delayed(session.id, now=now)
        except FlowbotError as e:
            # AddressBusy and friends: retried on the next tick
            logger.warning(f"Could not resume session {session.id}: {e}")
            continue
        if outcome is not None:
            resumed += 1
    if resumed:
        logger.info(f"Resumed {resumed} delayed session(s).")
    return resumed


async def sweep_pending_webhook_records(ctx: AppContext, now: Optional[datetime] = None, limit: int = 100) -> int:
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(seconds=ctx.settings.webhook_sweep_grace_seconds)
    pending = await ctx.store.find_webhook_records({"status": "pending", "created_at": {"$lte": cutoff}}, limit=limit)
    consumed = 0
    for record in pending:
        logger.info(f"Sweeping pending webhook record {record.id} (created {record.created_at.isoformat()})")
        try:
            swept = await ctx.executor.consume_webhook_record(record.id)
        except Exception as e:
            # Store failure on this record; the rest of the batch still runs
            logger.error(f"Sweeping webhook record {record.id} failed: {e}", exc_info=True)
            continue
        if swept is not None and swept.status != WebhookRecordStatus.PENDING:
            consumed += 1
    return consumed


async def expire_stale_sessions(ctx: AppContext, now: Optional[datetime] = None) -> int:
    return await ctx.executor.expire_stale_sessions(now=now)
