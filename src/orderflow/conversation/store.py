"""Conversation store abstract base class.

Every read and write the orchestrator performs goes through this interface.
``transaction()`` yields a store bound to one database transaction; the
orchestrator runs initial pings and plan application inside it, so state
writes and the outbound send that accompanies them commit together.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any

from src.orderflow.conversation.schemas import (
    ConversationRecord,
    HistoryMessage,
    OrderRecord,
    StoreRecord,
)


class ConversationStore(ABC):
    """Persistence boundary of the conversation orchestrator.

    Methods:
        transaction: Unit of work sharing one transaction.
        get_store / list_active_stores: Store lookups.
        get_order / list_unprocessed_orders / mark_order_new / apply_decision:
            Order reads and the status/decision writes.
        get_conversation / get_or_create_conversation / merge_metadata:
            Conversation rows and their JSONB state.
        add_message / has_messages / recent_messages: Message log.
    """

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[ConversationStore]:
        ...

    # ── Stores & Orders ─────────────────────────────────────────────────────

    @abstractmethod
    async def get_store(self, store_id: str) -> StoreRecord | None:
        ...

    @abstractmethod
    async def list_active_stores(self) -> list[StoreRecord]:
        ...

    @abstractmethod
    async def get_order(self, order_id: str, store_id: str) -> OrderRecord | None:
        ...

    @abstractmethod
    async def list_unprocessed_orders(self, store_id: str, limit: int) -> list[OrderRecord]:
        """Orders whose status is null, blank or ``new``, oldest first."""
        ...

    @abstractmethod
    async def mark_order_new(self, order_id: str) -> None:
        """Set status ``new`` only when it is null or blank."""
        ...

    @abstractmethod
    async def apply_decision(
        self,
        order_id: str,
        status: str,
        decision_by: str,
        decision_result: dict[str, Any],
        reason: str | None = None,
    ) -> None:
        """Set order status and decision fields from a plan.

        ``reason`` is written to ``decision_reason`` when given.
        """
        ...

    # ── Conversations ───────────────────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str, store_id: str) -> ConversationRecord | None:
        ...

    @abstractmethod
    async def get_or_create_conversation(
        self, store_id: str, order_id: str, customer_id: str | None
    ) -> ConversationRecord:
        """Find the order's conversation or open one in state ``init``."""
        ...

    @abstractmethod
    async def merge_metadata(
        self,
        conversation_id: str,
        patch: dict[str, Any],
        status: str | None = None,
    ) -> None:
        """Shallow-merge ``patch`` into metadata; optionally set row status."""
        ...

    # ── Messages ────────────────────────────────────────────────────────────

    @abstractmethod
    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        meta: dict[str, Any] | None = None,
    ) -> None:
        ...

    @abstractmethod
    async def has_messages(self, conversation_id: str) -> bool:
        ...

    @abstractmethod
    async def recent_messages(self, conversation_id: str, limit: int) -> list[HistoryMessage]:
        """Last ``limit`` messages in chronological order."""
        ...
