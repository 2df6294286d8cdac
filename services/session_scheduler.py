"""
APScheduler-based periodic sweep of expired conversation sessions.

Sessions live in process memory, so something has to drop the ones nobody has touched for the
expiry window. This module runs `ConversationStore.clean_expired_sessions` on an interval trigger
(every five minutes by default) using APScheduler's asyncio scheduler, which shares FastAPI's
event loop. Because the job runs on the loop and the sweep itself never awaits, it cannot
interleave with a request halfway through a store update; sessions with a request in flight are
skipped by the store. The job logs a one-line summary and never raises, so a failing sweep
cannot take the web application down.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from services.conversation_store import ConversationStore


def run_sweep_job(store: ConversationStore, logger: logging.Logger) -> int:
    """
    Execute one expiry sweep and log a concise summary; never raise exceptions.

    Returns:
        int: Number of sessions removed (0 when the sweep failed).
    """
    try:
        removed = store.clean_expired_sessions()
        logger.info("session_sweep summary: removed=%s remaining=%s", removed, len(store))
        return removed
    except Exception as exc:
        logger.warning("session_sweep failed: %s", exc)
        return 0


def start_session_sweeper(app, store: ConversationStore, interval_s: float = 300) -> None:
    """
    Start the periodic sweep and store the scheduler on the app state.

    Must be called from within a running event loop (e.g. the FastAPI lifespan).
    """
    scheduler = AsyncIOScheduler()
    logger = logging.getLogger(__name__)
    scheduler.add_job(
        run_sweep_job,
        trigger=IntervalTrigger(seconds=interval_s),
        args=[store, logger],
        id="session_expiry_sweep",
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    setattr(app.state, "session_scheduler", scheduler)


def shutdown_session_sweeper(app) -> None:
    """
    Stop the sweep scheduler if it was started; swallow exceptions.
    """
    scheduler = getattr(app.state, "session_scheduler", None)
    if scheduler is None:
        return
    try:
        scheduler.shutdown(wait=False)
    except Exception:
        return
