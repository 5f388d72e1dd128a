"""Cadence policy and the background loop that runs due passes."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

from shared.db_models import Connection
from shared.db_operations import DatabaseOperations

logger = logging.getLogger(__name__)

SYNC_INTERVALS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(hours=24),
}


def compute_next_sync_at(connection: Connection, now: datetime) -> Optional[datetime]:
    """Next scheduled pass for the connection, or None when it only syncs manually."""
    if not connection.auto_sync:
        return None
    interval = SYNC_INTERVALS.get(connection.sync_frequency)
    if interval is None:
        return None
    return now + interval


async def run_due_passes(
    orchestrator: "SyncOrchestrator",
    db_ops: DatabaseOperations,
    now: Optional[datetime] = None
) -> Dict[str, dict]:
    """
    Run one pass for every auto-sync connection whose next pass is due.

    Drive connections run a pull pass, calendar connections a bidirectional
    pass. A failing connection does not stop the others.

    Returns:
        Mapping of connection id to the pass result (or error)
    """
    now = now or datetime.utcnow()
    outcomes = {}

    for connection in db_ops.get_connections_due_for_sync(now):
        key = str(connection.id)
        if orchestrator.guard.is_running(connection.id):
            logger.info(f"Connection {key} already syncing, skipping scheduled pass")
            continue

        try:
            if connection.kind == "calendar":
                result = await orchestrator.run_bidirectional_pass(connection.id)
            else:
                result = await orchestrator.run_sync_pass(connection.id)
            outcomes[key] = result.to_dict()
        except Exception as e:
            logger.error(f"Scheduled pass failed for connection {key}: {e}", exc_info=True)
            outcomes[key] = {"success": False, "error": str(e)}

    return outcomes


async def run_periodically(interval_seconds: int, job: Callable[[], Awaitable], name: str):
    """Run a coroutine function forever, every interval_seconds, until cancelled."""
    logger.info(f"Starting periodic job {name} every {interval_seconds}s")
    while True:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Periodic job {name} failed: {e}", exc_info=True)
        await asyncio.sleep(interval_seconds)
