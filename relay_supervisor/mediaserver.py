"""
Companion media server management.

The local relay slot publishes into an nginx-rtmp server. When
MEDIA_SERVER_EXEC is set, the supervisor launches it at startup and stops it
at shutdown. Reachability is checked against the server's HTTP stat endpoint.
"""

import logging
import os
import signal
import subprocess
from typing import Optional

import httpx

from .config import Config

logger = logging.getLogger(__name__)


class MediaServer:
    """The nginx-rtmp process the local slot publishes to."""

    def __init__(self, config: Config):
        self.config = config
        self._process: Optional[subprocess.Popen] = None

    def start(self) -> bool:
        """Launch the configured command. Returns False if it is not configured or fails."""
        command = self.config.media_server_exec
        if not command:
            logger.info("No media server command configured, assuming it is managed externally")
            return False
        if self._process is not None and self._process.poll() is None:
            return True

        try:
            self._process = subprocess.Popen(
                ["sh", "-c", command],
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
            logger.info(f"Started media server with PID {self._process.pid}")
            return True
        except OSError as e:
            logger.error(f"Failed to start media server: {e}")
            return False

    def stop(self, timeout: float = 10) -> None:
        if self._process is None or self._process.poll() is not None:
            return
        try:
            os.killpg(os.getpgid(self._process.pid), signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Media server did not stop gracefully, forcing kill")
            try:
                os.killpg(os.getpgid(self._process.pid), signal.SIGKILL)
            except ProcessLookupError:
                pass
            self._process.wait(timeout=5)
        logger.info("Stopped media server")

    @property
    def pid(self) -> Optional[int]:
        if self._process is not None and self._process.poll() is None:
            return self._process.pid
        return None

    async def is_reachable(self) -> bool:
        """Check the media server's HTTP stat endpoint."""
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(self.config.media_server_stat_url, timeout=5.0)
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Media server not reachable at {self.config.media_server_stat_url}: {e}")
            return False
