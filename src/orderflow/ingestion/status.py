"""Status normalizer: free-text order status -> one allowed status.

Resolution order:

1. Fast path: the case-folded raw value is already allowed (fixpoint)
2. Memo hit for ``(raw, allowed-set signature)``
3. Multi-language canonical table (FR / EN / Darija transliterations)
4. Optional AI classifier, accepted only when it returns an allowed member
5. Deterministic "prefer common status" projection

Step 5 always yields a value, so a status never fails a row. The allowed
set itself comes from an ``AllowedStatusProvider``: a static configured
tuple, or the orders CHECK constraint introspected from Postgres.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable, Iterable
from typing import Any

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.orderflow.config import DEFAULT_ALLOWED_STATUSES
from src.orderflow.core.cache import MemoCache
from src.orderflow.ingestion.normalize import norm_text
from src.orderflow.services.llm import LLMService, extract_json_object

logger = structlog.get_logger(__name__)

# Keys are norm_text() forms, so accents and punctuation are already gone.
STATUS_CANON_MAP: dict[str, str] = {
    # confirmed
    "confirme": "confirmed",
    "confirmer": "confirmed",
    "confirmee": "confirmed",
    "confirmed": "confirmed",
    "valide": "confirmed",
    "approved": "confirmed",
    "ok": "confirmed",
    "mconfirmi": "confirmed",
    "tconfirma": "confirmed",
    # delivered
    "livre": "delivered",
    "livrer": "delivered",
    "livree": "delivered",
    "delivered": "delivered",
    "recu": "delivered",
    "wslat": "delivered",
    "wsl": "delivered",
    # canceled
    "annule": "canceled",
    "annuler": "canceled",
    "annulee": "canceled",
    "cancel": "canceled",
    "cancelled": "canceled",
    "canceled": "canceled",
    "refuse": "canceled",
    "mlghi": "canceled",
    "tlgha": "canceled",
    # shipped
    "expedie": "shipped",
    "expedier": "shipped",
    "expediee": "shipped",
    "envoye": "shipped",
    "shipped": "shipped",
    "tsifet": "shipped",
    # pending / new / processing
    "en attente": "pending",
    "attente": "pending",
    "pending": "pending",
    "unconfirmed": "pending",
    "non confirme": "pending",
    "en cours": "processing",
    "processing": "processing",
    "nouveau": "new",
    "nouvelle": "new",
    "new": "new",
    "jdid": "new",
    # paid
    "paye": "paid",
    "payee": "paid",
    "paid": "paid",
    # returned
    "retour": "returned",
    "retourne": "returned",
    "returned": "returned",
    # failed
    "echec": "failed",
    "echoue": "failed",
    "failed": "failed",
}

_PREFERENCES: dict[str, tuple[str, ...]] = {
    "confirmed": ("processing", "completed", "new"),
    "shipped": ("processing", "completed", "new"),
    "paid": ("processing", "completed", "new"),
    "delivered": ("completed", "processing", "new"),
    "canceled": ("cancelled", "refunded", "new"),
    "returned": ("refunded", "cancelled", "completed", "new"),
    "failed": ("cancelled", "new"),
    "pending": ("pending", "new"),
    "processing": ("processing", "new"),
    "new": ("new",),
}


def prefer_allowed(canon: str, allowed: tuple[str, ...]) -> str:
    """Project a canonical status onto the closest common allowed value."""
    preferences = _PREFERENCES.get(canon, (canon, "new", "pending"))
    for option in preferences:
        if option in allowed:
            return option
    return allowed[0] if allowed else "new"


def canonical_status(raw: Any) -> str:
    """Canonical-table form of a raw value; unknown values keep their normalized text."""
    key = norm_text(raw)
    return STATUS_CANON_MAP.get(key, key)


def allowed_signature(allowed: Iterable[str]) -> str:
    return ",".join(sorted(allowed))


# ── Allowed Status Providers ────────────────────────────────────────────────


class AllowedStatusProvider(ABC):
    """Source of the allowed order status vocabulary."""

    @abstractmethod
    async def get_allowed(self) -> tuple[str, ...]:
        ...


class StaticAllowedStatuses(AllowedStatusProvider):
    """Configured vocabulary (``INGEST_ALLOWED_STATUSES`` or the defaults)."""

    def __init__(self, statuses: Iterable[str] = DEFAULT_ALLOWED_STATUSES) -> None:
        self._statuses = tuple(s.strip().lower() for s in statuses if s and s.strip())

    async def get_allowed(self) -> tuple[str, ...]:
        return self._statuses


_CHECK_LITERAL = re.compile(r"'([^']+)'::(?:text|character varying)")

_CONSTRAINT_SQL = text(
    """
    SELECT pg_get_constraintdef(c.oid) AS def
    FROM pg_constraint c
    JOIN pg_class t ON t.oid = c.conrelid
    JOIN pg_namespace n ON n.oid = t.relnamespace
    WHERE t.relname = 'orders'
      AND n.nspname = current_schema()
      AND c.contype = 'c'
      AND pg_get_constraintdef(c.oid) ILIKE '%status%'
    """
)


def parse_check_constraint(definition: str | None) -> tuple[str, ...]:
    """Extract quoted literals from a ``status IN (...)`` constraint definition."""
    if not definition:
        return ()
    values = [m.group(1).strip().lower() for m in _CHECK_LITERAL.finditer(definition)]
    return tuple(dict.fromkeys(v for v in values if v))


class SchemaAllowedStatuses(AllowedStatusProvider):
    """Introspect the orders CHECK constraint, memoized per process.

    Falls back to ``fallback`` when the constraint is missing or the query
    fails, so an unreachable catalog never blocks ingestion.

    Args:
        session_factory: Async generator yielding AsyncSession instances.
        cache: Memo shared across runs; clear it after a schema change.
        fallback: Vocabulary used when introspection yields nothing.
    """

    _CACHE_KEY = "orders_allowed_statuses"

    def __init__(
        self,
        session_factory: Callable[[], AsyncGenerator[AsyncSession, None]],
        cache: MemoCache,
        fallback: Iterable[str] = DEFAULT_ALLOWED_STATUSES,
    ) -> None:
        self._session_factory = session_factory
        self._cache = cache
        self._fallback = tuple(fallback)

    async def get_allowed(self) -> tuple[str, ...]:
        cached = self._cache.get(self._CACHE_KEY)
        if cached:
            return cached

        values: tuple[str, ...] = ()
        try:
            async for session in self._session_factory():
                result = await session.execute(_CONSTRAINT_SQL)
                values = parse_check_constraint(result.scalar())
        except Exception as exc:
            logger.warning("orders_status_introspect_failed", error=str(exc))

        if not values:
            values = self._fallback
        self._cache.set(self._CACHE_KEY, values)
        logger.info("orders_introspect", allowed_statuses=list(values))
        return values


# ── AI Classifier ───────────────────────────────────────────────────────────

_STATUS_SYSTEM_PROMPT = (
    "You are a status normalizer for e-commerce orders.\n"
    "Map any input status to one of the allowed canonical statuses.\n"
    'Return ONLY a JSON object: { "status": "<canonical_status>" }\n'
    "Never invent statuses. Pick the closest match from the allowed list."
)


class StatusClassifier:
    """Ask the LLM to pick an allowed status for a raw value.

    Returns None on any failure; the caller falls back deterministically.
    """

    def __init__(self, llm: LLMService) -> None:
        self._llm = llm

    async def classify(self, raw: str, allowed: tuple[str, ...]) -> str | None:
        user = json.dumps(
            {
                "task": "Normalize this order status",
                "raw_status": raw,
                "allowed_statuses": list(allowed),
                "rules": [
                    'Match semantically (e.g., "confirmé" -> "confirmed", "livré" -> "delivered")',
                    "Handle French, English, Arabic transliterations",
                    "Handle typos and variations",
                    "If uncertain, prefer: confirmed > processing > pending > new",
                ],
            },
            ensure_ascii=False,
        )
        try:
            reply = await self._llm.chat(
                [
                    {"role": "system", "content": _STATUS_SYSTEM_PROMPT},
                    {"role": "user", "content": user},
                ],
                model="fast",
                max_tokens=50,
                temperature=0.0,
                purpose="status",
                json_mode=True,
            )
            status = extract_json_object(reply).get("status")
        except Exception as exc:
            logger.warning("status_classifier_failed", raw=raw, error=str(exc))
            return None
        if not isinstance(status, str):
            return None
        return status.strip().lower() or None


# ── Normalizer ──────────────────────────────────────────────────────────────


class StatusNormalizer:
    """Map raw statuses onto a fixed allowed vocabulary.

    Args:
        allowed: Allowed statuses for the destination schema.
        cache: Process-wide memo keyed by ``(raw, signature)``.
        classifier: Optional AI classifier; None keeps the pure table path.
    """

    def __init__(
        self,
        allowed: Iterable[str],
        cache: MemoCache | None = None,
        classifier: StatusClassifier | None = None,
    ) -> None:
        self.allowed = tuple(allowed) or DEFAULT_ALLOWED_STATUSES
        self.signature = allowed_signature(self.allowed)
        self._cache = cache if cache is not None else MemoCache()
        self._classifier = classifier

    async def normalize(self, raw: Any) -> str:
        value = "new" if raw is None else str(raw).strip().lower() or "new"
        if value in self.allowed:
            return value

        cache_key = (value, self.signature)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        canon = canonical_status(value)
        if canon in self.allowed:
            result = canon
        else:
            result = None
            if self._classifier is not None:
                suggested = await self._classifier.classify(value, self.allowed)
                if suggested in self.allowed:
                    result = suggested
                elif suggested is not None:
                    logger.info("status_classifier_rejected", raw=value, suggested=suggested)
            if result is None:
                result = prefer_allowed(canon, self.allowed)

        self._cache.set(cache_key, result)
        return result
