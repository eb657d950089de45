"""Conversation orchestrator: the per-order confirmation state machine.

States (``conversations.metadata.state``)::

    init -> await_choice -> confirmed | cancelled | address_change -> closed
    address_change -> await_choice once a location arrives

``handle`` dispatches one conversation job and returns a ``JobOutcome``.
Only a clear outcome (CONFIRM with the address requirement met) removes a
job; everything else, CANCEL included, keeps the record for later action.
Errors are contained per job and KEEP, except a missing destination phone,
which propagates so the queue retries and dead letters it. A failed scan
REMOVEs so the next scheduled tick can enqueue it again.
"""

from __future__ import annotations

import time
from typing import Any

import structlog

from src.orderflow.conversation.locale import (
    cancelled_text,
    choices,
    confirmed_text,
    default_prompt,
    detect_locale,
    greeting,
    locale_from_store,
    location_request_text,
)
from src.orderflow.conversation.planner import LLMPlanner
from src.orderflow.conversation.schemas import (
    ConversationRecord,
    ConversationState,
    JobOutcome,
    LLMPlan,
    Locale,
    OrderRecord,
    PlanAction,
    StoreRecord,
)
from src.orderflow.conversation.store import ConversationStore
from src.orderflow.core.logging import mask_phone
from src.orderflow.errors import MissingDestinationError
from src.orderflow.jobs.schemas import FollowupJob, IncomingJob, InitJob, ScanJob
from src.orderflow.services.whatsapp import DeliveryResult, WhatsAppChannel

logger = structlog.get_logger(__name__)

_CONFIRMED_ORDER_STATUSES = ("processing", "completed")
_DEFAULT_STORE_NAME = "our store"


def is_clear_outcome(action: PlanAction, meta: dict[str, Any]) -> bool:
    """True only for CONFIRM with no address requirement or an address on file."""
    if action is not PlanAction.CONFIRM:
        return False
    return not meta.get("address_needed") or bool(meta.get("address_ok"))


def already_confirmed(convo: ConversationRecord, order: OrderRecord) -> bool:
    """A closed, confirmed conversation whose order already moved on."""
    return (
        convo.closed
        and convo.state == ConversationState.CONFIRMED.value
        and (order.status or "") in _CONFIRMED_ORDER_STATUSES
        and is_clear_outcome(PlanAction.CONFIRM, convo.meta)
    )


def _has_location(payload: dict[str, Any] | None) -> bool:
    return bool(payload and payload.get("location"))


def _confirm_status(plan: LLMPlan) -> str:
    return plan.status if plan.status in _CONFIRMED_ORDER_STATUSES else "processing"


class ConversationOrchestrator:
    """Drive order confirmation conversations from queue jobs.

    Args:
        store: Conversation persistence boundary.
        planner: LLM planner producing one plan per inbound turn.
        channel: Outbound WhatsApp adapter (no-op when unconfigured).
        history_limit: Trailing messages passed to the planner.
        scan_batch: Unprocessed orders examined per store per scan.
    """

    def __init__(
        self,
        store: ConversationStore,
        planner: LLMPlanner,
        channel: WhatsAppChannel,
        history_limit: int = 20,
        scan_batch: int = 100,
    ) -> None:
        self._store = store
        self._planner = planner
        self._channel = channel
        self._history_limit = history_limit
        self._scan_batch = scan_batch

    async def handle(self, job: ScanJob | InitJob | IncomingJob | FollowupJob) -> JobOutcome:
        started = time.perf_counter()
        try:
            match job:
                case ScanJob():
                    return await self.scan()
                case InitJob(store_id=store_id, order_id=order_id):
                    return await self.start(store_id, order_id)
                case IncomingJob():
                    return await self.incoming(job)
                case FollowupJob(conversation_id=conversation_id):
                    logger.info("conversation_followup_noop", conversation_id=conversation_id)
                    return JobOutcome.KEEP
                case _:
                    logger.warning("conversation_unknown_job_kind", job_kind=getattr(job, "kind", None))
                    return JobOutcome.KEEP
        except MissingDestinationError:
            raise
        except Exception as exc:
            logger.error(
                "conversation_job_unhandled_error",
                job_kind=getattr(job, "kind", None),
                error=str(exc),
                exc_info=True,
            )
            return JobOutcome.REMOVE if isinstance(job, ScanJob) else JobOutcome.KEEP
        finally:
            logger.debug(
                "conversation_job_finished",
                job_kind=getattr(job, "kind", None),
                dur_ms=int((time.perf_counter() - started) * 1000),
            )

    # ── Scan / Init ─────────────────────────────────────────────────────────

    async def scan(self) -> JobOutcome:
        """Start conversations for unprocessed orders of every active store."""
        stores = await self._store.list_active_stores()
        pinged = 0
        for store in stores:
            orders = await self._store.list_unprocessed_orders(store.id, self._scan_batch)
            for order in orders:
                try:
                    if await self._open_and_ping(store, order):
                        pinged += 1
                except MissingDestinationError as exc:
                    logger.warning(
                        "conversation_scan_order_skipped",
                        store_id=store.id,
                        order_id=order.id,
                        reason=exc.code,
                    )
        logger.info("conversation_scan_completed", stores=len(stores), pinged=pinged)
        return JobOutcome.REMOVE

    async def start(self, store_id: str, order_id: str) -> JobOutcome:
        """Open the order's conversation and send the three-choice prompt."""
        order = await self._store.get_order(order_id, store_id)
        if order is None:
            logger.warning("conversation_init_order_missing", store_id=store_id, order_id=order_id)
            return JobOutcome.KEEP
        store = await self._store.get_store(store_id) or StoreRecord(id=store_id, name=_DEFAULT_STORE_NAME)
        await self._open_and_ping(store, order)
        return JobOutcome.KEEP

    async def _open_and_ping(self, store: StoreRecord, order: OrderRecord) -> bool:
        async with self._store.transaction() as tx:
            if not (order.status or "").strip():
                await tx.mark_order_new(order.id)
            convo = await tx.get_or_create_conversation(store.id, order.id, order.customer_id)
            if convo.closed or await tx.has_messages(convo.id):
                logger.debug("conversation_already_started", conversation_id=convo.id, order_id=order.id)
                return False
            await self._initial_ping(tx, store, order, convo)
            return True

    async def _initial_ping(
        self,
        tx: ConversationStore,
        store: StoreRecord,
        order: OrderRecord,
        convo: ConversationRecord,
    ) -> DeliveryResult:
        to = order.destination()
        if not to:
            raise MissingDestinationError("order_missing_phone", order_id=order.id, store_id=order.store_id)

        locale = convo.preferred_locale or locale_from_store(store.meta)
        body = greeting(locale, store.name or _DEFAULT_STORE_NAME, order.external_id)
        result = await self._channel.send_choices(to, body, choices(locale))

        patch: dict[str, Any] = {
            "state": ConversationState.AWAIT_CHOICE.value,
            "order_id": order.id,
            "channel": "noop" if result.noop else "whatsapp",
            "to": to,
            "delivery_ok": result.ok,
            "last_outbound_id": result.id,
        }
        if result.error:
            patch["delivery_error"] = result.error
        await tx.merge_metadata(convo.id, patch)
        await tx.add_message(convo.id, "assistant", "[system] sent choices", {"channel": patch["channel"]})

        logger.info(
            "conversation_initial_ping",
            conversation_id=convo.id,
            order_id=order.id,
            to=mask_phone(to),
            delivered=result.ok,
            noop=result.noop,
        )
        return result

    # ── Incoming ────────────────────────────────────────────────────────────

    async def incoming(self, job: IncomingJob) -> JobOutcome:
        """Record an inbound message, plan the next turn and apply it."""
        convo = await self._store.get_conversation(job.conversation_id, job.store_id)
        if convo is None:
            logger.warning(
                "conversation_missing_on_incoming",
                store_id=job.store_id,
                conversation_id=job.conversation_id,
            )
            return JobOutcome.KEEP

        patch: dict[str, Any] = {}
        if _has_location(job.payload):
            patch["address_ok"] = True
            if convo.state == ConversationState.ADDRESS_CHANGE.value:
                patch["state"] = ConversationState.AWAIT_CHOICE.value
            logger.info("conversation_address_ok_marked", conversation_id=convo.id)

        text = (job.text or "").strip()
        detected = detect_locale(text)
        if detected is not None and detected is not convo.preferred_locale:
            patch["preferred_locale"] = detected.value
            logger.info(
                "conversation_preferred_language_updated",
                conversation_id=convo.id,
                preferred_locale=detected.value,
            )

        if patch:
            await self._store.merge_metadata(convo.id, patch)
            convo = convo.model_copy(update={"meta": {**convo.meta, **patch}})
        if text:
            await self._store.add_message(
                convo.id, "user", text, {"origin": "whatsapp", "from": mask_phone(job.sender)}
            )

        order = await self._store.get_order(convo.order_id, job.store_id) if convo.order_id else None
        if order is None:
            logger.warning(
                "conversation_incoming_order_missing",
                store_id=job.store_id,
                conversation_id=convo.id,
            )
            return JobOutcome.KEEP

        if already_confirmed(convo, order):
            logger.info(
                "conversation_already_closed_clear_remove",
                conversation_id=convo.id,
                order_id=order.id,
            )
            return JobOutcome.REMOVE

        store = await self._store.get_store(job.store_id) or StoreRecord(id=job.store_id, name=_DEFAULT_STORE_NAME)
        locale = convo.preferred_locale or locale_from_store(store.meta)
        history = await self._store.recent_messages(convo.id, self._history_limit)
        plan = await self._planner.plan(store.name or _DEFAULT_STORE_NAME, locale, history, convo.id)

        outcome = await self.apply_plan(convo, order, locale, plan, fallback_to=job.sender)
        logger.info(
            "conversation_incoming_done",
            conversation_id=convo.id,
            order_id=order.id,
            action=plan.action.value,
            decision=outcome.value,
        )
        return outcome

    # ── Plan Application ────────────────────────────────────────────────────

    async def apply_plan(
        self,
        convo: ConversationRecord,
        order: OrderRecord,
        locale: Locale,
        plan: LLMPlan,
        fallback_to: str | None = None,
    ) -> JobOutcome:
        """Apply one plan's effects in a single transaction.

        The outbound reply is sent inside the transaction, so a slow send
        holds the commit.
        """
        to = order.destination() or convo.meta.get("to") or fallback_to
        meta = dict(convo.meta)

        async with self._store.transaction() as tx:
            match plan.action:
                case PlanAction.CONFIRM:
                    await tx.apply_decision(
                        order.id,
                        _confirm_status(plan),
                        "ai",
                        {"source": "whatsapp", "decision": "confirm", "status": "confirmed"},
                        reason=plan.message or plan.action.value,
                    )
                    await self._reply(tx, convo.id, to, plan.message or confirmed_text(locale))
                    meta["state"] = ConversationState.CONFIRMED.value
                    await tx.merge_metadata(convo.id, {"state": meta["state"]}, status="closed")
                    logger.info("conversation_closed_confirmed", conversation_id=convo.id)
                    return JobOutcome.REMOVE if is_clear_outcome(plan.action, meta) else JobOutcome.KEEP

                case PlanAction.CANCEL:
                    await tx.apply_decision(
                        order.id,
                        "cancelled",
                        "ai",
                        {"source": "whatsapp", "decision": "cancel", "status": "cancelled"},
                        reason=plan.message or plan.action.value,
                    )
                    await self._reply(tx, convo.id, to, plan.message or cancelled_text(locale))
                    await tx.merge_metadata(
                        convo.id, {"state": ConversationState.CANCELLED.value}, status="closed"
                    )
                    logger.info("conversation_closed_cancelled", conversation_id=convo.id)
                    return JobOutcome.KEEP

                case PlanAction.REQUEST_LOCATION:
                    await self._reply(tx, convo.id, to, plan.message or location_request_text(locale))
                    await tx.merge_metadata(
                        convo.id,
                        {"state": ConversationState.ADDRESS_CHANGE.value, "address_needed": True},
                    )
                    logger.info("conversation_request_location", conversation_id=convo.id)
                    return JobOutcome.KEEP

                case _:
                    await self._reply(tx, convo.id, to, plan.message or default_prompt(locale))
                    return JobOutcome.KEEP

    async def _reply(self, tx: ConversationStore, conversation_id: str, to: str | None, body: str) -> None:
        if not to:
            raise MissingDestinationError("conversation_missing_phone", conversation_id=conversation_id)
        result = await self._channel.send_text(to, body)
        await tx.add_message(
            conversation_id,
            "assistant",
            body,
            {"delivery_ok": result.ok, "channel": "noop" if result.noop else "whatsapp", "id": result.id},
        )
        if not result.ok and not result.noop:
            logger.warning("conversation_reply_not_delivered", conversation_id=conversation_id, error=result.error)
