"""PostgreSQL conversation store.

Outside ``transaction()`` every call opens its own session and commits.
Inside it, calls share the bound session and the commit happens once when
the block exits cleanly.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession

from src.orderflow.conversation.schemas import (
    ConversationRecord,
    ConversationState,
    HistoryMessage,
    OrderRecord,
    StoreRecord,
)
from src.orderflow.conversation.store import ConversationStore
from src.orderflow.core.database import as_uuid
from src.orderflow.models.commerce import OrderModel
from src.orderflow.models.conversation import ConversationModel, MessageModel
from src.orderflow.models.store import StoreModel

logger = structlog.get_logger(__name__)


def _store_record(row: StoreModel) -> StoreRecord:
    return StoreRecord(
        id=str(row.id),
        name=row.name,
        status=row.status,
        seller_id=str(row.seller_id) if row.seller_id else None,
        meta=row.meta or {},
    )


def _order_record(row: OrderModel) -> OrderRecord:
    return OrderRecord(
        id=str(row.id),
        store_id=str(row.store_id),
        external_id=row.external_id,
        status=row.status,
        customer_id=str(row.customer_id) if row.customer_id else None,
        customer_phone=row.customer_phone,
        raw_payload=row.raw_payload or {},
    )


def _conversation_record(row: ConversationModel) -> ConversationRecord:
    return ConversationRecord(
        id=str(row.id),
        store_id=str(row.store_id),
        order_id=str(row.order_id) if row.order_id else None,
        status=row.status,
        meta=row.meta or {},
    )


class PostgresConversationStore(ConversationStore):
    """Conversation store backed by the async SQLAlchemy engine.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        session: Session of an open transaction; set by ``transaction()``.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        session: AsyncSession | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._bound = session

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._bound is not None:
            yield self._bound
            return
        async for session in self._session_factory():
            yield session
            await session.commit()
            return

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[ConversationStore, None]:
        if self._bound is not None:
            yield self
            return
        async for session in self._session_factory():
            async with session.begin():
                yield PostgresConversationStore(self._session_factory, session=session)
            return

    # ── Stores & Orders ─────────────────────────────────────────────────────

    async def get_store(self, store_id: str) -> StoreRecord | None:
        sid = as_uuid(store_id)
        if sid is None:
            return None
        async with self._session() as session:
            row = await session.get(StoreModel, sid)
            return _store_record(row) if row is not None else None

    async def list_active_stores(self) -> list[StoreRecord]:
        async with self._session() as session:
            rows = await session.execute(
                select(StoreModel).where(StoreModel.status == "active").order_by(StoreModel.created_at)
            )
            return [_store_record(r) for r in rows.scalars().all()]

    async def get_order(self, order_id: str, store_id: str) -> OrderRecord | None:
        oid, sid = as_uuid(order_id), as_uuid(store_id)
        if oid is None or sid is None:
            return None
        async with self._session() as session:
            row = (
                await session.execute(
                    select(OrderModel).where(OrderModel.id == oid, OrderModel.store_id == sid)
                )
            ).scalar_one_or_none()
            return _order_record(row) if row is not None else None

    async def list_unprocessed_orders(self, store_id: str, limit: int) -> list[OrderRecord]:
        async with self._session() as session:
            rows = await session.execute(
                select(OrderModel)
                .where(
                    OrderModel.store_id == as_uuid(store_id),
                    or_(
                        OrderModel.status.is_(None),
                        OrderModel.status == "",
                        OrderModel.status == "new",
                    ),
                )
                .order_by(OrderModel.created_at)
                .limit(limit)
            )
            return [_order_record(r) for r in rows.scalars().all()]

    async def mark_order_new(self, order_id: str) -> None:
        async with self._session() as session:
            await session.execute(
                update(OrderModel)
                .where(OrderModel.id == as_uuid(order_id))
                .where(or_(OrderModel.status.is_(None), func.trim(OrderModel.status) == ""))
                .values(status="new", updated_at=func.now())
            )

    async def apply_decision(
        self,
        order_id: str,
        status: str,
        decision_by: str,
        decision_result: dict[str, Any],
        reason: str | None = None,
    ) -> None:
        async with self._session() as session:
            await session.execute(
                update(OrderModel)
                .where(OrderModel.id == as_uuid(order_id))
                .values(
                    status=status,
                    decision_by=decision_by,
                    decision_result=decision_result,
                    decision_reason=reason,
                    updated_at=func.now(),
                )
            )

    # ── Conversations ───────────────────────────────────────────────────────

    async def get_conversation(self, conversation_id: str, store_id: str) -> ConversationRecord | None:
        cid, sid = as_uuid(conversation_id), as_uuid(store_id)
        if cid is None or sid is None:
            return None
        async with self._session() as session:
            row = (
                await session.execute(
                    select(ConversationModel).where(
                        ConversationModel.id == cid, ConversationModel.store_id == sid
                    )
                )
            ).scalar_one_or_none()
            return _conversation_record(row) if row is not None else None

    async def get_or_create_conversation(
        self, store_id: str, order_id: str, customer_id: str | None
    ) -> ConversationRecord:
        sid, oid = as_uuid(store_id), as_uuid(order_id)
        async with self._session() as session:
            row = (
                await session.execute(
                    select(ConversationModel)
                    .where(ConversationModel.store_id == sid, ConversationModel.order_id == oid)
                    .order_by(ConversationModel.created_at)
                    .limit(1)
                )
            ).scalar_one_or_none()
            if row is None:
                row = ConversationModel(
                    store_id=sid,
                    order_id=oid,
                    customer_id=as_uuid(customer_id),
                    origin="whatsapp",
                    status="open",
                    meta={"state": ConversationState.INIT.value},
                )
                session.add(row)
                await session.flush()
                logger.info("conversation_created", store_id=store_id, order_id=order_id, conversation_id=str(row.id))
            return _conversation_record(row)

    async def merge_metadata(
        self,
        conversation_id: str,
        patch: dict[str, Any],
        status: str | None = None,
    ) -> None:
        merged = func.coalesce(ConversationModel.meta, literal({}, JSONB)).op("||")(
            literal(patch, JSONB)
        )
        values: dict[str, Any] = {"meta": merged, "updated_at": func.now()}
        if status is not None:
            values["status"] = status
        async with self._session() as session:
            await session.execute(
                update(ConversationModel)
                .where(ConversationModel.id == as_uuid(conversation_id))
                .values(**values)
            )

    # ── Messages ────────────────────────────────────────────────────────────

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        async with self._session() as session:
            session.add(
                MessageModel(
                    conversation_id=as_uuid(conversation_id),
                    role=role,
                    content=content,
                    meta=meta or {},
                )
            )
            await session.flush()

    async def has_messages(self, conversation_id: str) -> bool:
        async with self._session() as session:
            found = (
                await session.execute(
                    select(MessageModel.id)
                    .where(MessageModel.conversation_id == as_uuid(conversation_id))
                    .limit(1)
                )
            ).first()
            return found is not None

    async def recent_messages(self, conversation_id: str, limit: int) -> list[HistoryMessage]:
        async with self._session() as session:
            rows = await session.execute(
                select(MessageModel.role, MessageModel.content)
                .where(
                    MessageModel.conversation_id == as_uuid(conversation_id),
                    MessageModel.role.in_(("user", "assistant")),
                )
                .order_by(MessageModel.created_at.desc())
                .limit(limit)
            )
            latest = [HistoryMessage(role=r.role, content=r.content) for r in rows.all()]
            return list(reversed(latest))
