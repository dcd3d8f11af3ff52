"""APScheduler integration."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .config import settings

logger = logging.getLogger("uvicorn.error")

_scheduler: BackgroundScheduler | None = None


def prune_rate_limiter(lifecycle) -> int:
    removed = lifecycle.state.rate_limiter.prune()
    if removed:
        logger.info("Pruned %d idle rate-limit identifiers", removed)
    return removed


def reconcile_local_state(lifecycle) -> int:
    applied = lifecycle.reconcile()
    if applied:
        logger.info("Reconciled %d queued writes into the event store", applied)
    return applied


def start_scheduler(lifecycle) -> BackgroundScheduler:
    global _scheduler
    if _scheduler and _scheduler.running:
        return _scheduler
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        prune_rate_limiter,
        "interval",
        args=[lifecycle],
        seconds=settings.limiter_prune_interval.total_seconds(),
        id="rate-limit-prune",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.add_job(
        reconcile_local_state,
        "interval",
        args=[lifecycle],
        seconds=settings.reconcile_interval.total_seconds(),
        id="reconcile",
        max_instances=1,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    return scheduler


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        _scheduler = None
