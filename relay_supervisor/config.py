"""
Configuration for the relay supervisor.

Loads settings from environment variables with sensible defaults.
All persistent data is stored in ~/.relay-supervisor/ unless RELAY_DATA_DIR
points elsewhere.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    """Relay supervisor configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("RELAY_DATA_DIR", str(Path.home() / ".relay-supervisor")))
    state_path: Path = None
    db_path: Path = None
    logs_dir: Path = None
    supervisor_log: Path = None

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Server
    host: str = os.environ.get("RELAY_HOST", "0.0.0.0")
    port: int = int(os.environ.get("RELAY_PORT", "3000"))

    # ffmpeg
    ffmpeg_bin: str = os.environ.get("FFMPEG_BIN", "ffmpeg")
    local_stream_url: str = os.environ.get("LOCAL_STREAM_URL", "rtmp://127.0.0.1:1935/live/stream")

    # Companion media server (nginx-rtmp)
    media_server_exec: str = os.environ.get("MEDIA_SERVER_EXEC", "")
    media_server_stat_url: str = os.environ.get("MEDIA_SERVER_STAT_URL", "http://127.0.0.1:8080/stat")

    # Process management
    restart_delay: float = float(os.environ.get("RESTART_DELAY", "5"))
    max_restart_attempts: int = int(os.environ.get("MAX_RESTART_ATTEMPTS", "3"))
    stable_run_seconds: float = float(os.environ.get("STABLE_RUN_SECONDS", "30"))
    start_timeout: float = float(os.environ.get("START_TIMEOUT", "30"))
    stop_timeout: float = float(os.environ.get("STOP_TIMEOUT", "10"))
    command_lock_timeout: float = float(os.environ.get("COMMAND_LOCK_TIMEOUT", "0.5"))
    progress_persist_interval: float = float(os.environ.get("PROGRESS_PERSIST_INTERVAL", "0"))

    # Events
    subscriber_queue_size: int = int(os.environ.get("SUBSCRIBER_QUEUE_SIZE", "100"))

    # Monitoring
    monitor_interval: int = int(os.environ.get("MONITOR_INTERVAL", "60"))
    log_retention_days: int = int(os.environ.get("LOG_RETENTION_DAYS", "7"))

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.data_dir = Path(self.data_dir)
        if self.state_path is None:
            self.state_path = self.data_dir / "state.json"
        if self.db_path is None:
            self.db_path = self.data_dir / "history.db"
        if self.logs_dir is None:
            self.logs_dir = self.data_dir / "logs"
        if self.supervisor_log is None:
            self.supervisor_log = self.data_dir / "supervisor.log"

        # Create directories
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)


config = Config()
