"""
Resource monitoring for relay processes.

Periodically samples CPU and memory of each live ffmpeg process tree and
removes run history older than the retention period.
"""

import asyncio
import logging
from typing import Optional

from .config import Config
from .history import HistoryRecorder
from .supervisor import RelaySupervisor

logger = logging.getLogger(__name__)


class ResourceMonitor:
    """Monitors resource usage of the relay processes."""

    def __init__(self, supervisor: RelaySupervisor, config: Config, history: Optional[HistoryRecorder] = None):
        self._supervisor = supervisor
        self._config = config
        self._history = history
        self._running = False
        self._task = None
        self._current: dict[str, dict] = {}

    async def start(self):
        """Start the monitoring loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Resource monitor started")

    async def stop(self):
        """Stop the monitoring loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Resource monitor stopped")

    async def _monitor_loop(self):
        """Main monitoring loop."""
        while self._running:
            try:
                await self._collect_metrics()
                await self._cleanup_old_data()
            except Exception as e:
                logger.error(f"Error in monitor loop: {e}")

            await asyncio.sleep(self._config.monitor_interval)

    async def _collect_metrics(self):
        """Sample every live process tree."""
        current = {}
        for slot_name in self._supervisor.live_handles():
            try:
                stats = await asyncio.to_thread(self._supervisor.process_stats, slot_name)
                if stats:
                    current[slot_name] = stats
                    logger.debug(
                        f"Metrics for {slot_name}: CPU={stats['cpu_percent']:.1f}%, "
                        f"MEM={stats['memory_mb']:.1f}MB"
                    )
            except Exception as e:
                logger.error(f"Error collecting metrics for {slot_name}: {e}")
        self._current = current

    async def _cleanup_old_data(self):
        """Remove old run records and log entries."""
        if self._history is None:
            return
        try:
            deleted = await asyncio.to_thread(self._history.cleanup, self._config.log_retention_days)
            if deleted:
                logger.debug(f"Cleaned up {deleted} old history rows")
        except Exception as e:
            logger.error(f"Error cleaning up old data: {e}")

    def get_current_metrics(self, slot_name: str) -> Optional[dict]:
        """Last sampled resource usage for a slot, if its process is live."""
        return self._current.get(slot_name)
