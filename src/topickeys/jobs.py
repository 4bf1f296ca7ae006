"""Scheduled jobs for topickeys.

Encrypt consistency:
- Run periodically from the API server (TOPICKEYS_CONSISTENCY_INTERVAL),
  on demand via CLI, or through POST /admin/jobs/encrypt-consistency
- For every encrypted topic, align participant records to the server key
  store: a user holding a key becomes a participant, a participant without
  a key is removed
- Key records are never created or deleted here; invites and access removal
  own them

Mismatches are normal (invite and removal race with each other and with
this job), so they are repaired quietly. A storage failure on one topic is
logged and the remaining topics are still processed.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from . import db
from .config import ServerSettings
from .metrics import metrics

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Repairs applied to one topic."""

    topic_id: int
    added: set[int] = field(default_factory=set)
    removed: set[int] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def reconcile_topic(topic_id: int, conn: sqlite3.Connection | None = None) -> ReconcileResult:
    """Align one topic's participant records to its key holders.

    Args:
        topic_id: An encrypted topic
        conn: Optional database connection (uses global if not provided)

    Returns:
        The participant records added and removed
    """
    keyholders = db.keys_for_topic(topic_id, conn=conn)
    participants = db.participants_of(topic_id, conn=conn)
    result = ReconcileResult(topic_id=topic_id)

    # The two sets are disjoint so the order of repairs does not matter
    for user_id in sorted(keyholders - participants):
        if db.add_participant(topic_id, user_id, conn=conn):
            result.added.add(user_id)

    for user_id in sorted(participants - keyholders):
        if db.remove_participant(topic_id, user_id, conn=conn):
            result.removed.add(user_id)

    if result.changed:
        logger.debug(
            f"Topic {topic_id}: added {sorted(result.added)}, removed {sorted(result.removed)}"
        )
    return result


def _reconcile_in_worker(topic_id: int) -> ReconcileResult:
    # Worker threads open their own connection; close it so threads don't leak handles
    try:
        return reconcile_topic(topic_id)
    finally:
        db.close_db()


def encrypt_consistency(conn: sqlite3.Connection | None = None, workers: int = 1) -> None:
    """Restore keyholders == participants for every encrypted topic.

    Safe to re-run: a second pass with no intervening changes does nothing.

    Args:
        conn: Optional database connection (uses global if not provided).
              An explicit connection forces a single-threaded pass.
        workers: Number of threads reconciling topics in parallel. Ignored
            on the shared in-memory database, which is reconciled serially.
    """
    topic_ids = db.list_encrypted_topic_ids(conn=conn)
    added = removed = failed = 0

    if workers > 1 and conn is None and db.is_using_shared_memory():
        logger.info("Shared in-memory database; reconciling topics serially")
        workers = 1

    def _tally(topic_id: int, outcome: ReconcileResult | BaseException) -> None:
        nonlocal added, removed, failed
        if isinstance(outcome, sqlite3.Error):
            failed += 1
            logger.error(f"Consistency check failed for topic {topic_id}", exc_info=outcome)
            return
        if isinstance(outcome, BaseException):
            raise outcome
        added += len(outcome.added)
        removed += len(outcome.removed)

    if conn is not None or workers <= 1:
        for topic_id in topic_ids:
            try:
                outcome = reconcile_topic(topic_id, conn=conn)
            except sqlite3.Error:
                logger.exception(f"Consistency check failed for topic {topic_id}")
                failed += 1
                continue
            _tally(topic_id, outcome)
    else:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="consistency") as pool:
            futures = {topic_id: pool.submit(_reconcile_in_worker, topic_id) for topic_id in topic_ids}
        for topic_id, future in futures.items():
            exc = future.exception()
            _tally(topic_id, exc if exc is not None else future.result())

    metrics.increment("reconcile_added", added)
    metrics.increment("reconcile_removed", removed)
    metrics.increment("reconcile_failed", failed)
    logger.info(
        f"Encrypt consistency: {len(topic_ids)} topics, "
        f"{added} participants added, {removed} removed, {failed} failed"
    )


# --- Background schedule ---


# Signals the periodic consistency task to stop
_shutdown_event: asyncio.Event | None = None


def schedule_consistency_job(settings: ServerSettings | None = None) -> asyncio.Task | None:
    """Run encrypt_consistency periodically as a background task.

    Called during application startup. The interval and worker count come
    from TOPICKEYS_CONSISTENCY_INTERVAL and TOPICKEYS_CONSISTENCY_WORKERS; an
    interval of 0 disables the schedule.

    Returns:
        The background task, or None if not scheduled
    """
    global _shutdown_event
    settings = settings or ServerSettings.from_env()

    if settings.consistency_interval <= 0:
        logger.info("Encrypt consistency schedule disabled")
        return None

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("No event loop available for the encrypt consistency schedule")
        return None

    _shutdown_event = asyncio.Event()
    shutdown = _shutdown_event

    async def _run_periodically():
        logger.info(f"Encrypt consistency scheduled every {settings.consistency_interval}s")
        while not shutdown.is_set():
            try:
                # Wait for the interval or the shutdown signal
                await asyncio.wait_for(shutdown.wait(), timeout=settings.consistency_interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await loop.run_in_executor(
                    None, _run_scheduled_pass, settings.consistency_workers
                )
            except Exception as e:
                # Keep the schedule alive; the next pass retries
                logger.error(f"Scheduled encrypt consistency failed: {e}")

    return loop.create_task(_run_periodically())


def _run_scheduled_pass(workers: int) -> None:
    try:
        encrypt_consistency(workers=workers)
    finally:
        db.close_db()


def stop_consistency_job() -> None:
    """Signal the periodic consistency task to stop."""
    if _shutdown_event is not None:
        _shutdown_event.set()
