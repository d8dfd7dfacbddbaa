"""Scheduled sweep of identities no photo references any more."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from identity_engine.config import Settings
from identity_engine.coordinator import ResolutionCoordinator
from identity_engine.errors import IdentityEngineError

logger = logging.getLogger(__name__)

_scheduler: BackgroundScheduler | None = None


def sweep_orphaned_identities(coordinator: ResolutionCoordinator) -> set[str]:
    """Check every identity against the photo repository and delete orphans."""
    candidate_ids = [identity.identity_id for identity in coordinator.list_identities()]
    if not candidate_ids:
        return set()
    try:
        deleted = coordinator.collect_orphans(candidate_ids)
    except IdentityEngineError as e:
        logger.warning("Orphan sweep failed: %s", e)
        return set()
    if deleted:
        logger.info("cleanup.orphans_deleted count=%s ids=%s", len(deleted), ",".join(sorted(deleted)))
    return deleted


def setup_scheduler(coordinator: ResolutionCoordinator, interval_hours: int = 24) -> BackgroundScheduler:
    """Create and start APScheduler running the orphan sweep on an interval."""
    global _scheduler
    _scheduler = BackgroundScheduler()
    _scheduler.add_job(
        sweep_orphaned_identities,
        "interval",
        hours=interval_hours,
        args=[coordinator],
        id="sweep_orphaned_identities",
    )
    _scheduler.start()
    logger.info("Scheduler started: orphan sweep every %s hours", interval_hours)
    return _scheduler


def start_orphan_sweep(settings: Settings, coordinator: ResolutionCoordinator) -> BackgroundScheduler | None:
    """Start the periodic sweep unless ENABLE_ORPHAN_SWEEP is off."""
    if not settings.orphan_sweep_enabled:
        logger.info("Orphan sweep disabled by configuration")
        return None
    if coordinator.photo_repository is None:
        # Without reference counts every identity would look orphaned.
        logger.warning("Orphan sweep not started: no photo repository is configured")
        return None
    return setup_scheduler(coordinator, interval_hours=settings.orphan_sweep_interval_hours)


def shutdown_scheduler() -> None:
    """Shut down the scheduler cleanly."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")
