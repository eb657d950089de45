"""Column mapper: arbitrary spreadsheet headers -> canonical field names.

Resolution order, highest precedence first:

1. Caller override (``MappingOverride.fields`` / ``unique_key``)
2. AI suggestion (optional; only consulted when heuristic coverage is weak)
3. Heuristic match against multilingual candidate lists
4. Entity fallback lists, used to backfill any canonical field still unmapped

Header matching is accent- and case-insensitive: a candidate first matches a
header exactly after ``norm_text``, then by substring containment. The
heuristic path is deterministic for a given header list and is a complete,
valid mapping on its own; the AI step only ever adds precision.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

import structlog

from src.orderflow.core.redis import RedisJSONCache
from src.orderflow.ingestion.normalize import norm_text
from src.orderflow.ingestion.schemas import AISuggestion, ColumnMapping, Entity, MappingOverride
from src.orderflow.services.llm import LLMService, extract_json_object

logger = structlog.get_logger(__name__)

# ── Candidate Lists ─────────────────────────────────────────────────────────

HEURISTIC_CANDIDATES: dict[Entity, dict[str, list[str]]] = {
    Entity.ORDERS: {
        "order_id": [
            "order id", "order", "id", "external id", "external key", "reference", "ref",
            "order number", "order no", "invoice", "invoice number", "receipt",
            "commande", "n° commande", "num commande", "numero commande", "numéro commande",
            "ref commande", "facture", "bon de commande",
            "num", "numero", "numéro", "n°", "no", "cmd", "ord", "réf",
        ],
        "status": [
            "status", "order status", "state", "order state", "confirmation",
            "confirmation status", "delivery status", "shipment status",
            "statut", "état", "etat", "statut commande", "statut confirmation",
            "statut livraison", "statut paiement", "état commande",
            "halat", "hala", "wad3iya", "wadi3a",
        ],
        "total_amount": [
            "total", "amount", "total amount", "sum", "price", "total price", "order total",
            "grand total", "subtotal", "cost",
            "prix", "montant", "montant total", "total ttc", "prix total", "somme", "coût", "cout",
            "dh", "mad", "eur", "usd",
        ],
        "created_at": [
            "created at", "created", "date", "ordered at", "order date", "purchase date",
            "date ordered", "timestamp", "time",
            "date commande", "date de commande", "date achat", "date d achat", "date creation",
            "date création", "commande le", "créé le", "cree le", "commandé le",
            "datetime", "date time", "date heure",
        ],
        "customer_email": [
            "email", "e-mail", "mail", "customer email", "buyer email", "contact email",
            "email address", "courriel", "adresse email", "adresse mail", "email client",
            "imail", "baryd", "bareed",
        ],
        "customer_phone": [
            "phone", "phone number", "mobile", "mobile number", "contact number", "cell", "tel",
            "telephone", "téléphone", "numero de telephone", "numéro de téléphone", "tél", "gsm",
            "portable", "tel client", "telephone client",
            "tilifoun", "hatif", "raqm",
        ],
        "customer_name": [
            "name", "customer", "buyer", "full name", "customer name", "buyer name",
            "nom", "client", "nom client", "nom complet", "prenom", "prénom",
            "nom et prénom", "nom prenom", "acheteur",
            "ism", "esm", "isem", "3amil", "zaboun",
        ],
        "city": [
            "city", "town", "location", "address", "delivery city", "shipping city",
            "ville", "commune", "localite", "localité", "adresse", "lieu", "ville livraison",
            "ville de livraison", "madina", "mdina", "balad",
        ],
    },
    Entity.PRODUCTS: {
        "sku": [
            "sku", "product sku", "id", "product id", "code", "item code", "ref", "reference",
            "article", "référence",
        ],
        "title": [
            "title", "name", "product name", "libelle", "libellé", "designation", "désignation",
        ],
        "price": ["price", "unit price", "amount", "prix", "montant", "total"],
        "quantity": [
            "qty", "quantity", "qte", "quantite", "quantité", "stock", "inventory", "inv", "qté",
        ],
        "description": ["description", "desc", "details", "detail", "déscription"],
    },
}

FALLBACK_CANDIDATES: dict[Entity, dict[str, list[str]]] = {
    Entity.ORDERS: {
        "order_id": [
            "order id", "order", "external id", "ref", "reference",
            "commande", "cmd", "numero", "n°", "order number",
        ],
        "status": [
            "status", "state", "order status", "statut", "état", "etat",
            "statut confirmation", "statut livraison",
        ],
        "total_amount": ["total", "amount", "total amount", "sum", "price", "prix", "montant"],
        "created_at": [
            "created at", "created", "date", "ordered at", "order date",
            "date de commande", "commande le",
        ],
        "customer_name": ["full name", "name", "customer", "buyer", "nom", "nom complet"],
        "customer_phone": ["phone", "tel", "telephone", "téléphone", "portable", "gsm"],
        "customer_email": ["email", "e-mail", "courriel"],
    },
    Entity.PRODUCTS: {
        "sku": [
            "sku", "product sku", "id", "product id", "code", "item code", "reference", "ref",
        ],
        "title": ["title", "name", "product name", "nom", "désignation", "designation"],
        "price": ["price", "unit price", "amount", "prix", "montant"],
        "quantity": ["qty", "quantity", "stock", "inventory", "qte", "quantite", "quantité"],
        "description": ["description", "desc", "details"],
    },
}

UNIQUE_KEY_CANDIDATES: dict[Entity, tuple[list[str], str]] = {
    Entity.ORDERS: (["order_id", "id", "external_id", "external_key", "number"], "order_id"),
    Entity.PRODUCTS: (["sku", "id", "product_id"], "sku"),
}

# Fields whose presence decides whether the heuristic result is good enough
CORE_FIELDS: dict[Entity, list[str]] = {
    Entity.ORDERS: ["order_id", "status", "total_amount", "customer_phone"],
    Entity.PRODUCTS: ["sku", "title", "price"],
}
MIN_CORE_COVERAGE = 0.5

# Shorter candidates ("n°", "id", "dh") only ever match a header exactly
MIN_SUBSTRING_LEN = 3

# Column-name fragments treated as PII in AI samples
_PII_FRAGMENTS = ("phone", "tel", "telephone", "téléphone", "email", "e-mail", "courriel", "gsm")
_MAX_SAMPLE_CELL = 120


# ── Matching ────────────────────────────────────────────────────────────────


def fuzzy_pick(headers: list[str], candidates: list[str]) -> str | None:
    """Pick the header best matching any candidate.

    All candidates are tried for an exact normalized match before any is
    tried as a substring, so ``"order id"`` beats ``"order"`` matching
    ``"Order date"``. Returns the original header text.
    """
    if not headers:
        return None
    normalized_headers = [norm_text(h) for h in headers]
    normalized_candidates = [c for c in (norm_text(c) for c in candidates) if c]

    for cand in normalized_candidates:
        if cand in normalized_headers:
            return headers[normalized_headers.index(cand)]
    for cand in normalized_candidates:
        if len(cand) < MIN_SUBSTRING_LEN:
            continue
        for i, header in enumerate(normalized_headers):
            if cand in header:
                return headers[i]
    return None


def _pick_fields(headers: list[str], table: dict[str, list[str]]) -> dict[str, str]:
    usable = [h for h in headers if str(h).strip()]
    fields: dict[str, str] = {}
    for field, candidates in table.items():
        hit = fuzzy_pick(usable, candidates)
        if hit:
            fields[field] = hit
    return fields


def heuristic_fields(headers: list[str], entity: Entity) -> dict[str, str]:
    return _pick_fields(headers, HEURISTIC_CANDIDATES[entity])


def fallback_fields(headers: list[str], entity: Entity) -> dict[str, str]:
    return _pick_fields(headers, FALLBACK_CANDIDATES[entity])


def resolve_field_map(fields: dict[str, Any], headers: list[str]) -> dict[str, str]:
    """Collapse list-valued entries to one header and drop blanks.

    For a list, the first entry that is literally a header wins, otherwise
    the list is fuzzy-matched.
    """
    out: dict[str, str] = {}
    for dst, src in fields.items():
        if isinstance(src, list):
            choice = next((s for s in src if s in headers), None) or fuzzy_pick(headers, src)
            if choice:
                out[dst] = choice
        elif isinstance(src, str) and src.strip():
            out[dst] = src
    return out


def merge_field_maps(*layers: dict[str, Any] | None) -> dict[str, Any]:
    """Merge mapping layers given lowest precedence first."""
    out: dict[str, Any] = {}
    for layer in layers:
        for key, value in (layer or {}).items():
            if isinstance(value, str) and value.strip():
                out[key] = value
            elif isinstance(value, list) and value:
                out[key] = value
    return out


def coverage_is_weak(fields: dict[str, str], entity: Entity) -> bool:
    """True when the unique-key field or most core fields are missing."""
    core = CORE_FIELDS[entity]
    if core[0] not in fields:
        return True
    covered = sum(1 for f in core if f in fields)
    return covered / len(core) < MIN_CORE_COVERAGE


def default_unique_key(fields: dict[str, str], entity: Entity) -> str:
    candidates, default = UNIQUE_KEY_CANDIDATES[entity]
    return next((k for k in candidates if fields.get(k)), default)


# ── AI Suggestion ───────────────────────────────────────────────────────────


def sanitize_sample_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    """Redact PII-looking columns and truncate long cells."""
    out: list[dict[str, str]] = []
    for row in rows:
        clean: dict[str, str] = {}
        for key, value in (row or {}).items():
            lowered = str(key).lower()
            if any(fragment in lowered for fragment in _PII_FRAGMENTS):
                clean[key] = "[redacted]"
                continue
            s = "" if value is None else str(value)
            clean[key] = s if len(s) <= _MAX_SAMPLE_CELL else s[: _MAX_SAMPLE_CELL - 1] + "…"
        out.append(clean)
    return out


def mapping_cache_key(entity: Entity, headers: list[str]) -> str:
    """Stable cache key from the sorted header set; never includes row values."""
    digest = hashlib.sha256("|".join(sorted(headers)).encode("utf-8")).hexdigest()[:32]
    return f"ingest:ai:{entity.value}:{digest}"


_MAPPING_SYSTEM_PROMPT = (
    "You are a data-mapping assistant. You receive spreadsheet headers and a few "
    "sample rows and must return a JSON object describing how to map those columns "
    "into our database fields. Only return valid JSON."
)

_TARGET_FIELDS: dict[Entity, list[str]] = {
    Entity.ORDERS: [
        "order_id", "external_id", "external_key", "number", "created_at", "status",
        "total_amount", "customer_name", "customer_phone", "customer_email", "city", "address",
    ],
    Entity.PRODUCTS: ["sku", "title", "price", "quantity", "description"],
}


def build_mapping_prompt(entity: Entity, headers: list[str], rows: list[dict[str, Any]]) -> str:
    return "\n".join([
        f"Entity: {entity.value}",
        f"Spreadsheet headers (exact): {json.dumps(headers, ensure_ascii=False)}",
        f"Sample rows: {json.dumps(sanitize_sample_rows(rows), ensure_ascii=False)}",
        "Target fields you may map (choose only those that exist/are useful): "
        + ", ".join(_TARGET_FIELDS[entity]),
        "",
        "Return JSON of the form:",
        '{ "fields": { "<db_field>": "<header_name>" }, "uniqueKey": "<one_of_db_fields_or_null>", "confidence": 0.0 }',
        "",
        "Rules:",
        "- Only include headers that actually exist in the spreadsheet.",
        "- Prefer a single best header per db_field (no arrays).",
        '- If you cannot find a good unique key, set "uniqueKey" to null.',
        "- Respond with JSON only.",
    ])


def parse_ai_suggestion(raw: dict[str, Any], headers: list[str]) -> AISuggestion:
    """Keep only string fields that name a real header."""
    header_set = set(headers)
    proposed = raw.get("fields") or raw.get("mapping") or {}
    fields = {
        str(k): v for k, v in proposed.items() if isinstance(v, str) and v in header_set
    } if isinstance(proposed, dict) else {}

    unique_key = raw.get("uniqueKey")
    if not isinstance(unique_key, str) or not unique_key.strip():
        unique_key = None

    try:
        confidence = float(raw.get("confidence"))
    except (TypeError, ValueError):
        confidence = None

    return AISuggestion(fields=fields, unique_key=unique_key, confidence=confidence)


class AIMappingSuggester:
    """Ask the LLM for a column mapping, memoized per header set in Redis.

    Args:
        llm: LLM service providing ``chat``.
        cache: Optional JSON cache; absent means every call hits the model.
        sample_rows: Number of (sanitized) rows shown to the model.
    """

    def __init__(
        self,
        llm: LLMService,
        cache: RedisJSONCache | None = None,
        sample_rows: int = 6,
    ) -> None:
        self._llm = llm
        self._cache = cache
        self._sample_rows = max(1, min(8, sample_rows))

    async def suggest(
        self,
        entity: Entity,
        headers: list[str],
        rows: list[dict[str, Any]],
    ) -> AISuggestion:
        key = mapping_cache_key(entity, headers)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached:
                logger.debug("ingest_ai_mapping_cache_hit", entity=entity.value)
                return AISuggestion.model_validate(cached)

        prompt = build_mapping_prompt(entity, headers, rows[: self._sample_rows])
        text = await self._llm.chat(
            [
                {"role": "system", "content": _MAPPING_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            model="fast",
            max_tokens=600,
            temperature=0.0,
            purpose="mapping",
            json_mode=True,
        )
        suggestion = parse_ai_suggestion(extract_json_object(text), headers)

        if self._cache is not None:
            await self._cache.set(key, suggestion.model_dump())
        return suggestion


# ── Column Mapper ───────────────────────────────────────────────────────────


class ColumnMapper:
    """Compose override, AI, heuristic and fallback layers into one mapping.

    Args:
        suggester: Optional AI suggester. None keeps the mapper purely
            heuristic (the degraded but always-valid mode).
    """

    def __init__(self, suggester: AIMappingSuggester | None = None) -> None:
        self._suggester = suggester

    async def build(
        self,
        headers: list[str],
        rows: list[dict[str, Any]],
        entity: Entity = Entity.ORDERS,
        override: MappingOverride | None = None,
    ) -> ColumnMapping:
        """Resolve ``{unique_key, fields}`` for a header set.

        Args:
            headers: Sheet headers in source order.
            rows: Rows used only as AI samples (never required).
            entity: Target entity.
            override: Caller-supplied fields/unique key, highest precedence.

        Returns:
            ColumnMapping whose field values are all real headers.
        """
        heuristic = heuristic_fields(headers, entity)

        ai: AISuggestion | None = None
        if self._suggester is not None and coverage_is_weak(heuristic, entity):
            try:
                ai = await self._suggester.suggest(entity, headers, rows)
                logger.info(
                    "ingest_ai_mapping_ok",
                    entity=entity.value,
                    ai_confidence=ai.confidence,
                    ai_fields=sorted(ai.fields),
                )
            except Exception as exc:
                logger.warning("ingest_ai_mapping_failed", entity=entity.value, error=str(exc))

        merged = merge_field_maps(
            heuristic,
            ai.fields if ai else None,
            override.fields if override else None,
        )
        for field, header in fallback_fields(headers, entity).items():
            merged.setdefault(field, header)

        fields = {
            dst: src for dst, src in resolve_field_map(merged, headers).items() if src in headers
        }

        unique_key = (override.unique_key if override else None) or (ai.unique_key if ai else None)
        if not unique_key:
            unique_key = default_unique_key(fields, entity)

        return ColumnMapping(unique_key=unique_key, fields=fields)
