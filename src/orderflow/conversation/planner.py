"""LLM planner: conversation history -> structured next-action plan.

The model is asked for a short reply and a JSON plan. The first JSON object
in the reply is extracted and validated as ``LLMPlan``. Any failure (no
provider, timeout, no JSON, invalid shape) yields the locale's default
"please choose" prompt as an ASK_MORE_INFO plan; ``plan`` never raises.
"""

from __future__ import annotations

import time

import structlog
from pydantic import ValidationError

from src.orderflow.conversation.locale import default_prompt
from src.orderflow.conversation.schemas import HistoryMessage, LLMPlan, Locale, PlanAction
from src.orderflow.services.llm import LLMService, extract_json_object

logger = structlog.get_logger(__name__)


def build_system_prompt(store_name: str, locale: Locale) -> str:
    return " ".join([
        f"You are the order assistant for {store_name}.",
        f"Keep messages VERY short (1–2 sentences). Use the user's language ({locale.value}).",
        "Always drive to a decision: confirm, cancel, or ask for exactly one missing item.",
        "Never discuss policies. If address changes are requested, ask for the live location.",
        "When you decide, produce a JSON plan with fields: action, message, status?, need?, address_text?",
        "action is one of ASK_CHOICE, CONFIRM, CANCEL, ASK_MORE_INFO, REQUEST_LOCATION.",
    ])


def fallback_plan(locale: Locale) -> LLMPlan:
    return LLMPlan(action=PlanAction.ASK_MORE_INFO, message=default_prompt(locale), need=["other"])


class LLMPlanner:
    """Produce one ``LLMPlan`` per inbound turn.

    Args:
        llm: LLM service providing ``chat``.
        max_tokens: Reply token cap; plans are one or two sentences plus JSON.
        temperature: Sampling temperature.
    """

    def __init__(self, llm: LLMService, max_tokens: int = 200, temperature: float = 0.2) -> None:
        self._llm = llm
        self._max_tokens = max_tokens
        self._temperature = temperature

    async def plan(
        self,
        store_name: str,
        locale: Locale,
        history: list[HistoryMessage],
        conversation_id: str | None = None,
    ) -> LLMPlan:
        started = time.perf_counter()
        messages = [{"role": "system", "content": build_system_prompt(store_name, locale)}]
        messages.extend({"role": m.role, "content": m.content} for m in history)

        logger.debug(
            "llm_plan_request",
            conversation_id=conversation_id,
            history_len=len(history),
            locale=locale.value,
        )
        try:
            reply = await self._llm.chat(
                messages,
                model="fast",
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                purpose="plan",
            )
            plan = LLMPlan.model_validate(extract_json_object(reply))
        except (ValueError, ValidationError) as exc:
            logger.warning(
                "llm_plan_parse_failed_fallback",
                conversation_id=conversation_id,
                parse_error=str(exc)[:200],
                dur_ms=int((time.perf_counter() - started) * 1000),
            )
            return fallback_plan(locale)
        except Exception as exc:
            logger.warning(
                "llm_plan_call_failed_fallback",
                conversation_id=conversation_id,
                error=str(exc),
                dur_ms=int((time.perf_counter() - started) * 1000),
            )
            return fallback_plan(locale)

        logger.info(
            "llm_plan_parsed",
            conversation_id=conversation_id,
            action=plan.action.value,
            dur_ms=int((time.perf_counter() - started) * 1000),
        )
        return plan
