"""Embedded client-side store: key-value flags and the offline request queue.

Backed by its own SQLite file (or memory) through the same async SQLModel
stack as the server, but only the local tables are created here.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, select

from core.logging import get_logger
from models.local import LOCAL_TABLES, LocalEntry, QueuedRequest

logger = get_logger(__name__)


class LocalStore:
    def __init__(self, url: str = "sqlite+aiosqlite:///:memory:"):
        self.url = url
        self.engine = None
        self.async_session = None

    async def startup(self) -> None:
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in self.url:
            kwargs["poolclass"] = StaticPool
        self.engine = create_async_engine(self.url, future=True, **kwargs)
        self.async_session = async_sessionmaker(bind=self.engine, class_=AsyncSession, expire_on_commit=False)
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all, tables=list(LOCAL_TABLES))
        logger.debug("Local store ready", url=self.url)

    async def shutdown(self) -> None:
        if self.engine:
            await self.engine.dispose()
            self.engine = None

    async def __aenter__(self) -> "LocalStore":
        await self.startup()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.shutdown()

    @asynccontextmanager
    async def session(self):
        if not self.async_session:
            raise RuntimeError("Local store not initialized")
        async with self.async_session() as session:
            yield session

    # ------------------------------------------------------------------
    # Key-value flags
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        async with self.session() as session:
            entry = await session.get(LocalEntry, key)
            return entry.value if entry else None

    async def set(self, key: str, value: str) -> None:
        async with self.session() as session:
            await session.merge(LocalEntry(key=key, value=value))
            await session.commit()

    async def delete(self, *keys: str) -> int:
        async with self.session() as session:
            result = await session.execute(delete(LocalEntry).where(LocalEntry.key.in_(keys)))
            await session.commit()
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Offline queue
    # ------------------------------------------------------------------

    async def add_request(self, request: QueuedRequest) -> QueuedRequest:
        async with self.session() as session:
            session.add(request)
            await session.commit()
            await session.refresh(request)
            return request

    async def list_requests(self, dead: bool = False, due_before: Optional[float] = None) -> List[QueuedRequest]:
        """Queued requests in submission order."""
        async with self.session() as session:
            stmt = select(QueuedRequest).where(QueuedRequest.dead == dead)
            if due_before is not None:
                stmt = stmt.where(QueuedRequest.next_attempt_at <= due_before)
            result = await session.execute(stmt.order_by(QueuedRequest.timestamp))
            return list(result.scalars().all())

    async def count_requests(self, dead: bool = False) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count()).select_from(QueuedRequest).where(QueuedRequest.dead == dead)
            )
            return int(result.scalar_one())

    async def update_request(self, request_id: str, fields: Dict[str, Any]) -> None:
        async with self.session() as session:
            await session.execute(update(QueuedRequest).where(QueuedRequest.id == request_id).values(**fields))
            await session.commit()

    async def reset_requests(self, request_ids: Iterable[str]) -> None:
        async with self.session() as session:
            await session.execute(
                update(QueuedRequest)
                .where(QueuedRequest.id.in_(list(request_ids)))
                .values(dead=False, retry_count=0, next_attempt_at=0.0)
            )
            await session.commit()

    async def remove_request(self, request_id: str) -> bool:
        async with self.session() as session:
            result = await session.execute(delete(QueuedRequest).where(QueuedRequest.id == request_id))
            await session.commit()
            return (result.rowcount or 0) > 0

    async def clear_requests(self) -> int:
        async with self.session() as session:
            result = await session.execute(delete(QueuedRequest))
            await session.commit()
            return result.rowcount or 0
