"""Locale resolution and localized copy for the confirmation dialogue.

The store locale (``stores.metadata.lang|language|locale``) is the default.
Each inbound message runs a light detector; when it is confident and
disagrees with the conversation's ``preferred_locale`` the conversation
switches. An inconclusive message never resets a stored locale.
"""

from __future__ import annotations

import re
from typing import Any

from src.orderflow.conversation.schemas import Locale
from src.orderflow.services.whatsapp import Choice

_ARABIC_SCRIPT = re.compile(r"[\u0600-\u06FF]")
_DARIJA_ARABIC = re.compile(r"(واش|بغيت|مزيان|شكرا|فين|عافاك|واخا|دابا)")
_DARIJA_LATIN = re.compile(
    r"\b(wach|bghit|mzyan|mzyane|safi|z3ma|choukran|chokran|3afak|wakha|daba|nlgi|nlghi|nakd|bzaf)\b",
    re.IGNORECASE,
)
_FRENCH = re.compile(
    r"\b(bonjour|salut|merci|oui|je|commande|confirme[rz]?|annule[rz]?|plus d'?info|fran(ç|c)ais)\b",
    re.IGNORECASE,
)
_ENGLISH = re.compile(r"\b(hi|hello|yes|thanks|confirm|cancel|more info|english)\b", re.IGNORECASE)


def detect_locale(text: str | None) -> Locale | None:
    """Best-effort locale of one message, or None when nothing is conclusive."""
    t = (text or "").strip()
    if not t:
        return None
    if _ARABIC_SCRIPT.search(t):
        return Locale.ARY if _DARIJA_ARABIC.search(t) else Locale.AR
    if _DARIJA_LATIN.search(t):
        return Locale.ARY
    if _FRENCH.search(t):
        return Locale.FR
    if _ENGLISH.search(t):
        return Locale.EN
    return None


def locale_from_store(store_meta: dict[str, Any] | None) -> Locale:
    meta = store_meta or {}
    lang = str(meta.get("lang") or meta.get("language") or meta.get("locale") or "").strip().lower()
    if lang.startswith("fr"):
        return Locale.FR
    if re.search(r"ary|darija|moroccan|\bma\b|morocco", lang):
        return Locale.ARY
    if lang.startswith("ar"):
        return Locale.AR
    return Locale.EN


def _arabic(locale: Locale) -> bool:
    return locale in (Locale.AR, Locale.ARY)


# ── Localized Copy ──────────────────────────────────────────────────────────


def greeting(locale: Locale, store_name: str, order_ref: str) -> str:
    """Initial question plus the language hint suffix."""
    if locale is Locale.FR:
        title = f"Bonjour 👋 c'est {store_name}. Confirmez-vous la commande {order_ref} ?"
        hint = "Répondez avec votre langue préférée (Français / العربية / English)."
    elif _arabic(locale):
        title = f"سلام! هادي {store_name}. واش كتأكد الطلب {order_ref}؟"
        hint = "جاوبنا باللغة اللي كتفضل (العربية / الدارجة / Français / English)."
    else:
        title = f"Hi! This is {store_name}. Do you confirm order {order_ref}?"
        hint = "Reply with your preferred language (English / Français / العربية)."
    return f"{title}\n\n{hint}"


def choices(locale: Locale) -> list[Choice]:
    if locale is Locale.FR:
        titles = ("✅ Confirmer", "❌ Annuler", "❓ Plus d’info")
    elif _arabic(locale):
        titles = ("✅ نأكد", "❌ نلغي", "❓ مزيد المعلومات")
    else:
        titles = ("✅ Confirm", "❌ Cancel", "❓ More info")
    return [Choice(id=cid, title=title) for cid, title in zip(("confirm", "cancel", "more"), titles)]


def default_prompt(locale: Locale) -> str:
    if locale is Locale.FR:
        return "Merci de choisir : ✅ Confirmer, ❌ Annuler, ou ❓ Plus d’info."
    if _arabic(locale):
        return "اختار من فضلك: ✅ نأكد، ❌ نلغي، ولا ❓ مزيد المعلومات."
    return "Please choose: ✅ Confirm, ❌ Cancel, or ❓ More info."


def confirmed_text(locale: Locale) -> str:
    if locale is Locale.FR:
        return "Merci ! Votre commande est confirmée ✅"
    if _arabic(locale):
        return "شكرا! الطلب ديالك تأكد ✅"
    return "Thanks! Your order is confirmed ✅"


def cancelled_text(locale: Locale) -> str:
    if locale is Locale.FR:
        return "Compris. Votre commande a été annulée."
    if _arabic(locale):
        return "مفهوم. تم إلغاء طلبك."
    return "Understood. Your order has been cancelled."


def location_request_text(locale: Locale) -> str:
    if locale is Locale.FR:
        return "Merci de partager votre position pour mettre à jour votre adresse."
    if _arabic(locale):
        return "عافاك شارك الموقع ديالك باش نحدّثو العنوان."
    return "Please share your live location to update your address."
