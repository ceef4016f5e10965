from __future__ import annotations

import asyncio
from typing import Callable, Dict

from identity_engine.logging import get_logger

logger = get_logger(__name__)


class Maintenance:
    """Periodic reaping of expired identity state.

    Each sweep is independent; one failing table does not stop the others.
    """

    def __init__(self, *, vault, federated, rate_limiter, security_log, sessions) -> None:
        self._sweeps: Dict[str, Callable[[], int]] = {
            "tokens": vault.cleanup,
            "pending_registrations": federated.cleanup_expired,
            "rate_limits": rate_limiter.cleanup,
            "security_log": security_log.cleanup,
            "sessions": sessions.cleanup,
        }

    def run_once(self) -> Dict[str, int]:
        removed: Dict[str, int] = {}
        for name, sweep in self._sweeps.items():
            try:
                removed[name] = sweep()
            except Exception as exc:
                logger.warning("maintenance_sweep_failed", sweep=name, error=str(exc))
                removed[name] = -1
        logger.info("maintenance_complete", **removed)
        return removed

    async def run_forever(self, interval_seconds: int) -> None:
        """Background loop for the HTTP app lifespan."""

        interval = max(interval_seconds, 60)
        try:
            while True:
                await asyncio.to_thread(self.run_once)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("maintenance_task_cancelled")
