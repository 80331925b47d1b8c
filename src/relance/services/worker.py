from __future__ import annotations

import logging
import threading

from relance.services.engine import CampaignEngine
from relance.store.sqlite import PersistenceError

logger = logging.getLogger(__name__)


def run_forever(
    engine: CampaignEngine,
    interval_seconds: float,
    stop_event: threading.Event | None = None,
    max_cycles: int | None = None,
) -> int:
    """Run a cycle immediately, then once per interval until stopped."""
    stop_event = stop_event or threading.Event()
    cycles = 0
    logger.info("Starting campaign worker (every %ss)", interval_seconds)
    while not stop_event.is_set():
        try:
            engine.run_cycle()
        except PersistenceError as exc:
            logger.error("Campaign cycle error: %s", exc)
        except Exception:
            logger.exception("Unexpected campaign cycle failure")
        cycles += 1
        if max_cycles is not None and cycles >= max_cycles:
            break
        stop_event.wait(interval_seconds)
    logger.info("Stopping campaign worker after %d cycles", cycles)
    return cycles
