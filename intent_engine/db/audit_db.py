from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from .models import AuditEntry


class AuditDB:
    """Simple async database helper for audit persistence."""

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine) as session:
            yield session

    async def add_entry(self, action: str, details: dict[str, Any]) -> AuditEntry:
        entry = AuditEntry(
            action=action,
            workflow_id=details.get("workflow_id"),
            organization_id=details.get("organization_id"),
            actor_id=details.get("actor_id"),
            details=details,
        )
        async with self.session() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)
        return entry

    async def list_entries(
        self, workflow_id: Optional[str] = None, action: Optional[str] = None
    ) -> list[AuditEntry]:
        statement = select(AuditEntry)
        if workflow_id is not None:
            statement = statement.where(AuditEntry.workflow_id == workflow_id)
        if action is not None:
            statement = statement.where(AuditEntry.action == action)
        statement = statement.order_by(AuditEntry.recorded_at)
        async with self.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def dispose(self) -> None:
        await self.engine.dispose()
