"""
Run history recording.

Writes a RunRecord per ffmpeg run and keeps ffmpeg's diagnostic lines that
are not progress stats. Failures here are logged and never affect the relay.
"""

import logging
import shlex
from datetime import datetime, timedelta
from typing import Optional

from peewee import PeeweeException

from .models import LogEntry, RunRecord

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000


def detect_level(line: str) -> str:
    """Guess a log level from the content of an ffmpeg line."""
    lower = line.lower()
    if "error" in lower or "failed" in lower or "invalid" in lower:
        return "error"
    if "warning" in lower or "warn" in lower:
        return "warning"
    return "info"


class HistoryRecorder:
    """Persists run history through the peewee models."""

    def run_started(self, slot: str, argv: list[str], attempt: int, pid: Optional[int]) -> Optional[int]:
        try:
            record = RunRecord.create(slot=slot, command=shlex.join(argv), attempt=attempt, pid=pid)
            return record.id
        except PeeweeException as e:
            logger.error(f"Error recording run start for {slot}: {e}")
            return None

    def run_ended(self, run_id: Optional[int], exit_code: Optional[int], outcome: str) -> None:
        if run_id is None:
            return
        try:
            RunRecord.update(ended_at=datetime.now(), exit_code=exit_code, outcome=outcome).where(
                RunRecord.id == run_id
            ).execute()
        except PeeweeException as e:
            logger.error(f"Error recording run end for run {run_id}: {e}")

    def spawn_failed(self, slot: str, argv: list[str], attempt: int, error: str) -> None:
        try:
            record = RunRecord.create(
                slot=slot,
                command=shlex.join(argv),
                attempt=attempt,
                ended_at=datetime.now(),
                outcome="spawn_failed",
            )
            LogEntry.create(run=record, slot=slot, level="error", message=error[:MAX_MESSAGE_LENGTH])
        except PeeweeException as e:
            logger.error(f"Error recording spawn failure for {slot}: {e}")

    def log_line(self, run_id: Optional[int], slot: str, line: str) -> None:
        try:
            LogEntry.create(
                run=run_id,
                slot=slot,
                level=detect_level(line),
                message=line[:MAX_MESSAGE_LENGTH],
            )
        except PeeweeException as e:
            logger.error(f"Error recording log line for {slot}: {e}")

    def runs(self, slot: str, limit: int = 50) -> list[dict]:
        query = RunRecord.select().where(RunRecord.slot == slot).order_by(RunRecord.started_at.desc(), RunRecord.id.desc()).limit(limit)
        return [record.to_dict() for record in query]

    def logs(self, slot: str, limit: int = 100, level: Optional[str] = None) -> list[dict]:
        query = LogEntry.select().where(LogEntry.slot == slot)
        if level:
            query = query.where(LogEntry.level == level)
        query = query.order_by(LogEntry.timestamp.desc(), LogEntry.id.desc()).limit(limit)
        return [entry.to_dict() for entry in query]

    def cleanup(self, retention_days: int) -> int:
        """Delete history older than retention_days. Returns rows removed."""
        cutoff = datetime.now() - timedelta(days=retention_days)
        deleted = LogEntry.delete().where(LogEntry.timestamp < cutoff).execute()
        deleted += RunRecord.delete().where(
            (RunRecord.started_at < cutoff) & (RunRecord.ended_at.is_null(False))
        ).execute()
        return deleted
