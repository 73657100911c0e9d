"""
Durable state store.

One row per resource address, committed individually so that a crash
mid-apply leaves state consistent with exactly the resources that were
actually provisioned. Exclusive access for an apply is a lock row.
"""

from __future__ import annotations

import asyncio
import os
import socket
from collections import defaultdict
from contextlib import asynccontextmanager
from types import MappingProxyType
from typing import AsyncIterator, Mapping

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitelayer.core.errors import StateLockError
from sitelayer.db.models import Base, ResourceStateModel, StateLockModel
from sitelayer.db.session import create_engine, create_session_factory, is_memory_url
from sitelayer.state.models import ResourceStatus, StateRecord

logger = structlog.get_logger()

LOCK_ID = "apply"


def default_lock_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class StateStore:
    """Repository for per-address resource state."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self._engine = create_engine(url, echo=echo)
        self._sessions: async_sessionmaker[AsyncSession] = create_session_factory(self._engine)
        self._address_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # A shared in-memory connection cannot interleave transactions
        self._serial_lock: asyncio.Lock | None = asyncio.Lock() if is_memory_url(url) else None
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if they do not exist."""
        if self._initialized:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def close(self) -> None:
        await self._engine.dispose()

    async def load(self) -> dict[str, StateRecord]:
        """Return the last-persisted state; empty on first run."""
        await self.initialize()
        async with self._session() as session:
            result = await session.execute(select(ResourceStateModel))
            return {row.address: _to_record(row) for row in result.scalars().all()}

    async def get(self, address: str) -> StateRecord | None:
        await self.initialize()
        async with self._session() as session:
            row = await session.get(ResourceStateModel, address)
            return _to_record(row) if row is not None else None

    @asynccontextmanager
    async def begin_transaction(self, holder: str | None = None) -> AsyncIterator[StateTransaction]:
        """Acquire exclusive access for one apply.

        Raises:
            StateLockError: another apply holds the lock
        """
        await self.initialize()
        holder = holder or default_lock_holder()
        await self._acquire_lock(holder)
        logger.info("state_lock_acquired", holder=holder)
        try:
            records = await self.load()
            yield StateTransaction(self, records)
        finally:
            await self._release_lock(holder)
            logger.info("state_lock_released", holder=holder)

    async def force_unlock(self) -> str | None:
        """Remove a stale lock. Returns the previous holder, if any."""
        await self.initialize()
        async with self._session() as session, session.begin():
            row = await session.get(StateLockModel, LOCK_ID)
            if row is None:
                return None
            holder = row.holder
            await session.delete(row)
        logger.warning("state_lock_forced", holder=holder)
        return holder

    async def write(self, record: StateRecord) -> None:
        """Upsert one record, durable when this returns."""
        async with self._address_locks[record.address], self._serialized():
            async with self._session() as session, session.begin():
                row = await session.get(ResourceStateModel, record.address)
                if row is None:
                    row = ResourceStateModel(address=record.address)
                    session.add(row)
                row.kind = record.kind
                row.attributes = dict(record.last_applied_attributes)
                row.resolved = dict(record.resolved_attributes)
                row.outputs = dict(record.outputs)
                row.provider_id = record.provider_id
                row.status = record.status.value
                row.dependencies = list(record.dependencies)
                row.deposed_id = record.deposed_id
                row.updated_at = record.updated_at
        logger.debug("state_committed", address=record.address, status=record.status.value)

    async def delete(self, address: str) -> None:
        async with self._address_locks[address], self._serialized():
            async with self._session() as session, session.begin():
                await session.execute(
                    delete(ResourceStateModel).where(ResourceStateModel.address == address)
                )
        logger.debug("state_removed", address=address)

    def _session(self) -> AsyncSession:
        return self._sessions()

    @asynccontextmanager
    async def _serialized(self) -> AsyncIterator[None]:
        if self._serial_lock is None:
            yield
            return
        async with self._serial_lock:
            yield

    async def _acquire_lock(self, holder: str) -> None:
        try:
            async with self._serialized():
                async with self._session() as session, session.begin():
                    session.add(StateLockModel(id=LOCK_ID, holder=holder))
        except IntegrityError:
            async with self._session() as session:
                row = await session.get(StateLockModel, LOCK_ID)
            if row is None:  # released between the insert and the read
                return await self._acquire_lock(holder)
            raise StateLockError(row.holder, row.acquired_at) from None

    async def _release_lock(self, holder: str) -> None:
        async with self._serialized():
            async with self._session() as session, session.begin():
                await session.execute(
                    delete(StateLockModel).where(
                        StateLockModel.id == LOCK_ID, StateLockModel.holder == holder
                    )
                )


class StateTransaction:
    """Scoped handle for mutating state during one apply.

    Keeps a view of the records committed so far so the executor can
    resolve references without re-reading the database.
    """

    def __init__(self, store: StateStore, records: Mapping[str, StateRecord]) -> None:
        self._store = store
        self._records: dict[str, StateRecord] = dict(records)

    @property
    def records(self) -> Mapping[str, StateRecord]:
        return MappingProxyType(self._records)

    def get(self, address: str) -> StateRecord | None:
        return self._records.get(address)

    async def commit(self, record: StateRecord) -> None:
        """Persist ``record``. Called only after the provider call it reflects succeeded."""
        await self._store.write(record)
        self._records[record.address] = record

    async def remove(self, address: str) -> None:
        await self._store.delete(address)
        self._records.pop(address, None)

    async def taint(self, address: str) -> StateRecord | None:
        record = self._records.get(address)
        if record is None:
            return None
        tainted = record.evolve(status=ResourceStatus.tainted)
        await self.commit(tainted)
        return tainted


def _to_record(row: ResourceStateModel) -> StateRecord:
    return StateRecord(
        address=row.address,
        kind=row.kind,
        last_applied_attributes=dict(row.attributes or {}),
        resolved_attributes=dict(row.resolved or {}),
        outputs=dict(row.outputs or {}),
        provider_id=row.provider_id,
        status=ResourceStatus(row.status),
        dependencies=list(row.dependencies or []),
        deposed_id=row.deposed_id,
        updated_at=row.updated_at,
    )
