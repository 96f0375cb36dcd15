"""
Outbox writer: the enqueue call business code paths use.

Usage:
    async with transactional_outbox(session_factory) as outbox:
        outbox.session.add(order)
        await outbox.enqueue("zoho_sync_order", {"order_id": order.order_id, ...})

Both rows commit together when the block exits, or neither does.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from salesops.config.settings import Settings, settings
from salesops.v1.core.registries import JobRegistry, job_registry
from salesops.v1.outbox.store import JobStore

logger = logging.getLogger(__name__)


class OutboxWriter:
    """Enqueue jobs inside the caller's open transaction."""

    def __init__(
        self,
        session: AsyncSession,
        config: Settings = settings,
        registry: JobRegistry = job_registry,
    ):
        self.session = session
        self.registry = registry
        self.store = JobStore(
            max_attempts=config.outbox_max_attempts,
            last_error_max_length=config.outbox_last_error_max_length,
        )

    async def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any] | BaseModel,
        scheduled_for: datetime | None = None,
    ) -> UUID:
        """
        Add a pending job to the current transaction.

        Payloads for registered job types are validated here so a malformed
        job fails the business write instead of dead-lettering later.
        Raises ValueError on an invalid payload.
        """
        if job_type in self.registry:
            handler = self.registry.get(job_type)
            try:
                model = handler.payload_model.model_validate(
                    payload.model_dump() if isinstance(payload, BaseModel) else payload
                )
            except ValidationError as e:
                raise ValueError(f"Invalid payload for {job_type}: {e}") from e
            payload = model.model_dump(mode="json", exclude_none=True)

        return await self.store.enqueue(self.session, job_type, payload, scheduled_for)


async def enqueue(
    session: AsyncSession,
    job_type: str,
    payload: dict[str, Any] | BaseModel,
    scheduled_for: datetime | None = None,
) -> UUID:
    """Enqueue a job in ``session``'s transaction; the caller commits."""
    return await OutboxWriter(session).enqueue(job_type, payload, scheduled_for)


@asynccontextmanager
async def transactional_outbox(
    session_factory: async_sessionmaker[AsyncSession],
    config: Settings = settings,
    registry: JobRegistry = job_registry,
) -> AsyncIterator[OutboxWriter]:
    """Open a transaction and yield a writer bound to it."""
    async with session_factory() as session:
        async with session.begin():
            yield OutboxWriter(session, config=config, registry=registry)
