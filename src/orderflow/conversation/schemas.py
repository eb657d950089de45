"""Schemas for the order confirmation dialogue.

Covers the state machine vocabulary stored in conversation metadata, the
structured plan returned by the LLM planner, the job outcome signalled back
to the queue, and the read models the orchestrator works with.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class ConversationState(str, Enum):
    """``metadata.state`` of a conversation."""

    INIT = "init"
    AWAIT_CHOICE = "await_choice"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    ADDRESS_CHANGE = "address_change"
    CLOSED = "closed"


class PlanAction(str, Enum):
    ASK_CHOICE = "ASK_CHOICE"
    CONFIRM = "CONFIRM"
    CANCEL = "CANCEL"
    ASK_MORE_INFO = "ASK_MORE_INFO"
    REQUEST_LOCATION = "REQUEST_LOCATION"
    ACK_LOCATION = "ACK_LOCATION"
    CLOSE = "CLOSE"


class Locale(str, Enum):
    """Conversation language; ``ary`` is Moroccan Darija."""

    FR = "fr"
    EN = "en"
    AR = "ar"
    ARY = "ary"


class JobOutcome(str, Enum):
    """What the queue should do with a conversation job record."""

    REMOVE = "remove"
    KEEP = "keep"


_PLAN_STATUSES = ("processing", "completed", "cancelled")


class LLMPlan(BaseModel):
    """One dialogue turn decision.

    Attributes:
        action: What to do next.
        message: Short reply to send to the customer (may be empty).
        status: Order status to apply on CONFIRM, when the model names one.
        need: Missing items the model is asking for.
        address_text: Free-text address the customer supplied, if any.
    """

    action: PlanAction
    message: str = ""
    status: Literal["processing", "completed", "cancelled"] | None = None
    need: list[str] = Field(default_factory=list)
    address_text: str | None = None

    @field_validator("action", mode="before")
    @classmethod
    def _upper_action(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    @field_validator("message", mode="before")
    @classmethod
    def _message_text(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, value: Any) -> str | None:
        if isinstance(value, str) and value.strip().lower() in _PLAN_STATUSES:
            return value.strip().lower()
        return None

    @field_validator("need", mode="before")
    @classmethod
    def _need_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(v) for v in value]


# ── Read Models ─────────────────────────────────────────────────────────────


class StoreRecord(BaseModel):
    id: str
    name: str = ""
    status: str = "active"
    seller_id: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


class OrderRecord(BaseModel):
    id: str
    store_id: str
    external_id: str
    status: str | None = None
    customer_id: str | None = None
    customer_phone: str | None = None
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    def destination(self) -> str | None:
        """Customer phone from the source row snapshot, else the order column."""
        raw = self.raw_payload or {}
        customer = raw.get("customer") if isinstance(raw.get("customer"), dict) else {}
        for value in (
            raw.get("customer_phone"),
            raw.get("phone"),
            customer.get("phone"),
            self.customer_phone,
        ):
            if value is not None and str(value).strip():
                return str(value).strip()
        return None


class ConversationRecord(BaseModel):
    """A conversation row; ``meta`` carries the state machine fields."""

    id: str
    store_id: str
    order_id: str | None = None
    status: str = "open"
    meta: dict[str, Any] = Field(default_factory=dict)

    @property
    def state(self) -> str | None:
        return self.meta.get("state")

    @property
    def preferred_locale(self) -> Locale | None:
        try:
            return Locale(self.meta.get("preferred_locale"))
        except ValueError:
            return None

    @property
    def address_needed(self) -> bool:
        return bool(self.meta.get("address_needed"))

    @property
    def address_ok(self) -> bool:
        return bool(self.meta.get("address_ok"))

    @property
    def closed(self) -> bool:
        return self.status == "closed"


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
