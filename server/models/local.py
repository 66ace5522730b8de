"""Client-side embedded store models.

These tables live in the client's own SQLite file, never in the server
database: a key-value table for small flags (visitor id, token, theme) and
the offline request queue.
"""

import time
from typing import Optional, Dict
from sqlmodel import SQLModel, Field, Column, JSON


class LocalEntry(SQLModel, table=True):
    """Small persisted key-value flag."""

    __tablename__ = "local_entries"

    key: str = Field(primary_key=True, max_length=255)
    value: str = Field(max_length=100000)
    updated_at: float = Field(default_factory=time.time)


class QueuedRequest(SQLModel, table=True):
    """A mutating HTTP request deferred while offline."""

    __tablename__ = "offline_queue"

    id: str = Field(primary_key=True, max_length=64)
    url: str = Field(max_length=2000)
    method: str = Field(max_length=10)
    headers: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    body: Optional[str] = Field(default=None)
    timestamp: float = Field(default_factory=time.time, index=True)
    retry_count: int = Field(default=0)
    next_attempt_at: float = Field(default=0.0)
    last_error: Optional[str] = Field(default=None, max_length=2000)
    dead: bool = Field(default=False, index=True)


LOCAL_TABLES = (LocalEntry.__table__, QueuedRequest.__table__)
LOCAL_TABLE_NAMES = frozenset(t.name for t in LOCAL_TABLES)
