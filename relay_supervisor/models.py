"""
Database models for run history.

Uses Peewee ORM with SQLite. Stores one record per ffmpeg run and the
non-progress lines ffmpeg wrote to stderr during it.
"""

import os
from datetime import datetime

from peewee import (
    AutoField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    ForeignKeyField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

database = DatabaseProxy()


def initialize_db(db_path) -> None:
    """Initialize database connection and create tables."""
    db_path = str(db_path)
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    db = SqliteDatabase(
        db_path,
        pragmas={
            "journal_mode": "wal",
            "cache_size": -64 * 1000,
            "foreign_keys": 1,
            "busy_timeout": 5000,
        },
    )
    database.initialize(db)
    database.create_tables([RunRecord, LogEntry], safe=True)


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class RunRecord(BaseModel):
    """One ffmpeg run of a slot."""

    id = AutoField()
    slot = CharField(index=True)
    command = TextField()
    attempt = IntegerField(default=0)  # 0 for a run started by a command, n for the n-th retry
    pid = IntegerField(null=True)
    started_at = DateTimeField(default=datetime.now, index=True)
    ended_at = DateTimeField(null=True)
    exit_code = IntegerField(null=True)
    outcome = CharField(null=True)  # stopped, crashed, spawn_failed

    class Meta:
        table_name = "run_records"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "slot": self.slot,
            "command": self.command,
            "attempt": self.attempt,
            "pid": self.pid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "exit_code": self.exit_code,
            "outcome": self.outcome,
            "duration_seconds": (self.ended_at - self.started_at).total_seconds()
            if self.ended_at and self.started_at
            else None,
        }


class LogEntry(BaseModel):
    """A diagnostic line from ffmpeg's stderr."""

    id = AutoField()
    run = ForeignKeyField(RunRecord, backref="logs", on_delete="CASCADE", null=True)
    slot = CharField(index=True)
    level = CharField(default="info")  # info, warning, error
    message = TextField()
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "log_entries"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "slot": self.slot,
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
