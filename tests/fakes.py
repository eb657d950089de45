"""In-memory stores and stub collaborators shared by the test modules.

Provides:
- InMemoryIngestStore: IngestStore with staged chunk writes, committed only
  when the chunk transaction exits cleanly, plus scripted lock contention
- InMemoryConversationStore: ConversationStore over plain dicts
- RecordingChannel: outbound adapter recording every send
- StubPlanner: returns a fixed plan and records its inputs
- StubFetcher: returns a fixed table for any source
"""

from __future__ import annotations

import itertools
from contextlib import asynccontextmanager
from typing import Any

from src.orderflow.conversation.schemas import (
    ConversationRecord,
    HistoryMessage,
    LLMPlan,
    OrderRecord,
    StoreRecord,
)
from src.orderflow.conversation.store import ConversationStore
from src.orderflow.ingestion.schemas import (
    OrderUpsert,
    ProductUpsert,
    SourceConfig,
    StoreContext,
    TabularData,
    UpsertOutcome,
    UpsertResult,
)
from src.orderflow.ingestion.store import ChunkWriter, IngestStore
from src.orderflow.services.whatsapp import NOT_CONFIGURED, DeliveryResult

_ORDER_MERGE = ("status", "total_amount", "currency", "customer_name", "customer_phone", "customer_email", "city")
_PRODUCT_MERGE = ("title", "price", "quantity", "description")


# ── Ingestion Fakes ─────────────────────────────────────────────────────────


class _StagedWriter(ChunkWriter):
    """Writes into copies of the store's tables; ``commit`` publishes them."""

    def __init__(self, store: InMemoryIngestStore) -> None:
        self._store = store
        self.orders = {k: dict(v) for k, v in store.orders.items()}
        self.products = {k: dict(v) for k, v in store.products.items()}
        self.cursor_moves: list[tuple[str, int]] = []

    def _upsert(self, table: dict, key: tuple, record: dict, merge_cols: tuple[str, ...]) -> UpsertResult:
        existing = table.get(key)
        if existing is None:
            new_id = f"id-{next(self._store.ids)}"
            table[key] = {"id": new_id, **record}
            return UpsertResult(outcome=UpsertOutcome.INSERTED, id=new_id)

        merged = dict(existing)
        for col in merge_cols:
            if record.get(col) is not None:
                merged[col] = record[col]
        merged["raw_payload"] = record["raw_payload"]
        if merged == existing:
            return UpsertResult(outcome=UpsertOutcome.UNCHANGED)
        table[key] = merged
        return UpsertResult(outcome=UpsertOutcome.UPDATED, id=existing["id"])

    async def upsert_order(self, order: OrderUpsert) -> UpsertResult:
        if order.external_id in self._store.failing_keys:
            raise RuntimeError(f"constraint violation on {order.external_id}")
        self._store.order_writes.append(order)
        return self._upsert(
            self.orders, (order.store_id, order.external_id), order.model_dump(), _ORDER_MERGE
        )

    async def upsert_product(self, product: ProductUpsert) -> UpsertResult:
        return self._upsert(
            self.products, (product.store_id, product.sku), product.model_dump(), _PRODUCT_MERGE
        )

    async def advance_cursor(self, source_id: str, processed_through: int) -> None:
        self.cursor_moves.append((source_id, processed_through))

    def commit(self) -> None:
        self._store.orders = self.orders
        self._store.products = self.products
        for source_id, target in self.cursor_moves:
            for ctx in self._store.contexts.values():
                if ctx.source is not None and ctx.source.id == source_id:
                    ctx.source.last_processed_row = max(ctx.source.last_processed_row, target)


class InMemoryIngestStore(IngestStore):
    """Ingest store over dicts.

    Attributes:
        locked_transactions: 1-based chunk transaction numbers that find the
            advisory lock busy.
        failing_keys: Order external ids whose upsert raises.
    """

    def __init__(self) -> None:
        self.contexts: dict[str, StoreContext] = {}
        self.orders: dict[tuple[str, str], dict[str, Any]] = {}
        self.products: dict[tuple[str, str], dict[str, Any]] = {}
        self.order_writes: list[OrderUpsert] = []
        self.locked_transactions: set[int] = set()
        self.failing_keys: set[str] = set()
        self.transactions = 0
        self.resets: list[str] = []
        self.ids = itertools.count(1)

    def add_store(
        self,
        store_id: str = "store-1",
        status: str = "active",
        cursor: int = 0,
        with_source: bool = True,
        column_mapping: dict[str, Any] | None = None,
    ) -> StoreContext:
        source = None
        if with_source:
            source = SourceConfig(
                id=f"src-{store_id}",
                url="https://docs.google.com/spreadsheets/d/abc123/edit#gid=0",
                last_processed_row=cursor,
                column_mapping=column_mapping,
            )
        ctx = StoreContext(store_id=store_id, seller_id="seller-1", name="Test Store", status=status, source=source)
        self.contexts[store_id] = ctx
        return ctx

    def cursor(self, store_id: str = "store-1") -> int:
        return self.contexts[store_id].source.last_processed_row

    async def get_store_context(self, store_id: str) -> StoreContext | None:
        ctx = self.contexts.get(store_id)
        return ctx.model_copy(deep=True) if ctx is not None else None

    async def reset_cursor(self, source_id: str) -> None:
        self.resets.append(source_id)
        for ctx in self.contexts.values():
            if ctx.source is not None and ctx.source.id == source_id:
                ctx.source.last_processed_row = 0

    async def list_ingestible_store_ids(self) -> list[str]:
        return [
            sid for sid, ctx in self.contexts.items()
            if ctx.active and ctx.source is not None and ctx.source.enabled
        ]

    @asynccontextmanager
    async def chunk_transaction(self, store_id: str):
        self.transactions += 1
        if self.transactions in self.locked_transactions:
            yield None
            return
        writer = _StagedWriter(self)
        yield writer
        writer.commit()


class StubFetcher:
    """Returns the same table for URL and upload sources."""

    def __init__(self, table: TabularData) -> None:
        self.table = table
        self.calls: list[tuple[str, Any]] = []

    async def fetch_url(self, url: str, sheet: str | None = None, **_: Any) -> TabularData:
        self.calls.append(("url", url))
        return self.table

    async def load(self, source: Any, sheet: str | None = None) -> TabularData:
        self.calls.append(("load", source))
        return self.table


def make_table(headers: list[str], rows: list[list[Any]]) -> TabularData:
    return TabularData(headers=headers, rows=[dict(zip(headers, r)) for r in rows])


# ── Conversation Fakes ──────────────────────────────────────────────────────


class InMemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self.stores: dict[str, StoreRecord] = {}
        self.orders: dict[str, OrderRecord] = {}
        self.conversations: dict[str, ConversationRecord] = {}
        self.messages: list[dict[str, Any]] = []
        self.decisions: list[dict[str, Any]] = []
        self.transactions = 0
        self._ids = itertools.count(1)

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield self

    async def get_store(self, store_id: str) -> StoreRecord | None:
        return self.stores.get(store_id)

    async def list_active_stores(self) -> list[StoreRecord]:
        return [s for s in self.stores.values() if s.status == "active"]

    async def get_order(self, order_id: str, store_id: str) -> OrderRecord | None:
        order = self.orders.get(order_id)
        return order if order is not None and order.store_id == store_id else None

    async def list_unprocessed_orders(self, store_id: str, limit: int) -> list[OrderRecord]:
        pending = [
            o for o in self.orders.values()
            if o.store_id == store_id and (o.status or "").strip() in ("", "new")
        ]
        return pending[:limit]

    async def mark_order_new(self, order_id: str) -> None:
        if not (self.orders[order_id].status or "").strip():
            self.orders[order_id] = self.orders[order_id].model_copy(update={"status": "new"})

    async def apply_decision(
        self,
        order_id: str,
        status: str,
        decision_by: str,
        decision_result: dict[str, Any],
        reason: str | None = None,
    ) -> None:
        self.orders[order_id] = self.orders[order_id].model_copy(update={"status": status})
        self.decisions.append(
            {
                "order_id": order_id,
                "status": status,
                "decision_by": decision_by,
                "result": decision_result,
                "reason": reason,
            }
        )

    async def get_conversation(self, conversation_id: str, store_id: str) -> ConversationRecord | None:
        convo = self.conversations.get(conversation_id)
        return convo.model_copy(deep=True) if convo is not None and convo.store_id == store_id else None

    async def get_or_create_conversation(
        self, store_id: str, order_id: str, customer_id: str | None
    ) -> ConversationRecord:
        for convo in self.conversations.values():
            if convo.store_id == store_id and convo.order_id == order_id:
                return convo.model_copy(deep=True)
        convo = ConversationRecord(
            id=f"conv-{next(self._ids)}", store_id=store_id, order_id=order_id, meta={"state": "init"}
        )
        self.conversations[convo.id] = convo
        return convo.model_copy(deep=True)

    async def merge_metadata(
        self, conversation_id: str, patch: dict[str, Any], status: str | None = None
    ) -> None:
        convo = self.conversations[conversation_id]
        update: dict[str, Any] = {"meta": {**convo.meta, **patch}}
        if status is not None:
            update["status"] = status
        self.conversations[conversation_id] = convo.model_copy(update=update)

    async def add_message(
        self, conversation_id: str, role: str, content: str, meta: dict[str, Any] | None = None
    ) -> None:
        self.messages.append(
            {"conversation_id": conversation_id, "role": role, "content": content, "meta": meta or {}}
        )

    async def has_messages(self, conversation_id: str) -> bool:
        return any(m["conversation_id"] == conversation_id for m in self.messages)

    async def recent_messages(self, conversation_id: str, limit: int) -> list[HistoryMessage]:
        rows = [
            m for m in self.messages
            if m["conversation_id"] == conversation_id and m["role"] in ("user", "assistant")
        ]
        return [HistoryMessage(role=m["role"], content=m["content"]) for m in rows[-limit:]]

    def messages_for(self, conversation_id: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m["conversation_id"] == conversation_id]


class RecordingChannel:
    """Outbound adapter double; unconfigured instances behave as no-ops."""

    def __init__(self, configured: bool = True) -> None:
        self.configured = configured
        self.sent: list[dict[str, Any]] = []

    def _result(self) -> DeliveryResult:
        if not self.configured:
            return DeliveryResult(ok=False, error=NOT_CONFIGURED, configured=False)
        return DeliveryResult(ok=True, id=f"wamid.{len(self.sent)}")

    async def send_text(self, to: str, body: str) -> DeliveryResult:
        self.sent.append({"kind": "text", "to": to, "body": body})
        return self._result()

    async def send_choices(self, to: str, title: str, choices: list) -> DeliveryResult:
        self.sent.append({"kind": "choices", "to": to, "title": title, "choices": choices})
        return self._result()


class StubPlanner:
    def __init__(self, plan: LLMPlan) -> None:
        self.plan_to_return = plan
        self.calls: list[dict[str, Any]] = []

    async def plan(self, store_name, locale, history, conversation_id=None) -> LLMPlan:
        self.calls.append(
            {"store_name": store_name, "locale": locale, "history": history, "conversation_id": conversation_id}
        )
        return self.plan_to_return
