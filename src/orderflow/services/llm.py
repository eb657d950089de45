"""LLM chat capability via LiteLLM Router.

Provides the single ``chat(messages, ...) -> text`` capability consumed by
the conversation planner, the AI column mapper and the AI status
classifier:
- Claude as the primary model, GPT-4o family as fallback, both behind the
  "reasoning" and "fast" router groups
- Prompt injection detection and sanitization of customer-authored turns
- Router-level timeout and retries so a stalled provider cannot hold a
  worker slot indefinitely
"""

from __future__ import annotations

import json
import re

import structlog
from litellm import Router

from src.orderflow.config import get_settings
from src.orderflow.core.monitoring import track_llm_call
from src.orderflow.errors import LLMUnavailableError

logger = structlog.get_logger(__name__)

# ── Prompt Injection Detection ────────────────────────────────────────────────

# Patterns that indicate prompt injection attempts
_INJECTION_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "instruction_override",
        re.compile(
            r"ignore\s+(all\s+)?previous\s+instructions|"
            r"disregard\s+(all\s+)?(your\s+)?instructions|"
            r"forget\s+(all\s+)?(your\s+)?instructions|"
            r"override\s+(all\s+)?(your\s+)?instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "system_prompt_exfiltration",
        re.compile(
            r"(reveal|show|display|output|print|repeat)\s+(your\s+)?(system\s+prompt|instructions|prompt)|"
            r"repeat\s+everything\s+above|"
            r"what\s+are\s+your\s+instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "role_hijacking",
        re.compile(
            r"you\s+are\s+now\s+|"
            r"pretend\s+(to\s+be|you\s+are)|"
            r"from\s+now\s+on\s+you\s+are|"
            r"assume\s+the\s+role\s+of",
            re.IGNORECASE,
        ),
    ),
    (
        "control_characters",
        re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]{3,}"),
    ),
]


def detect_prompt_injection(text: str) -> tuple[bool, str | None]:
    """Check text for common prompt injection patterns.

    Args:
        text: The text to analyze.

    Returns:
        Tuple of (is_injection, pattern_name) where pattern_name identifies
        which pattern matched, or None if no injection detected.
    """
    for pattern_name, pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            logger.warning(
                "prompt_injection_detected",
                pattern=pattern_name,
                text_preview=text[:100],
            )
            return True, pattern_name
    return False, None


def sanitize_messages(messages: list[dict]) -> list[dict]:
    """Sanitize non-system messages before they reach the model.

    System messages are trusted and passed through untouched. Other turns
    have matched injection patterns replaced with ``[removed]``.
    """
    sanitized = []
    for msg in messages:
        if msg.get("role") == "system":
            sanitized.append(msg)
            continue

        content = msg.get("content", "")
        if not content:
            sanitized.append(msg)
            continue

        is_injection, pattern_name = detect_prompt_injection(content)
        if is_injection:
            cleaned = content
            for _, pattern in _INJECTION_PATTERNS:
                cleaned = pattern.sub("[removed]", cleaned)
            logger.warning(
                "prompt_injection_sanitized",
                role=msg.get("role"),
                pattern=pattern_name,
                original_length=len(content),
                cleaned_length=len(cleaned),
            )
            sanitized.append({**msg, "content": cleaned})
        else:
            sanitized.append(msg)

    return sanitized


# ── Response Parsing ─────────────────────────────────────────────────────────

_JSON_DECODER = json.JSONDecoder()


def extract_json_object(text: str) -> dict:
    """Return the first JSON object embedded in an LLM reply.

    Strips markdown code fences, then decodes starting at each ``{`` in turn
    so leading prose and trailing chatter are both tolerated.

    Args:
        text: Raw LLM response text.

    Returns:
        The decoded object.

    Raises:
        ValueError: If no JSON object can be decoded.
    """
    cleaned = re.sub(r"^```(?:json)?\s*\n?", "", (text or "").strip())
    cleaned = re.sub(r"\n?```\s*$", "", cleaned.strip())
    for match in re.finditer(r"\{", cleaned):
        try:
            value, _end = _JSON_DECODER.raw_decode(cleaned, match.start())
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    raise ValueError(f"No JSON object found in LLM response: {text[:200]!r}")


# ── LLM Service ──────────────────────────────────────────────────────────────


class LLMService:
    """LLM provider abstraction with LiteLLM Router.

    Registers Claude and OpenAI deployments under the "reasoning" and
    "fast" groups. When neither key is configured the router is None and
    ``available`` is False; callers are expected to degrade (heuristic
    mapping, deterministic status fallback, scripted prompts).
    """

    def __init__(self) -> None:
        settings = get_settings()

        model_list = []

        if settings.ANTHROPIC_API_KEY:
            model_list.append({
                "model_name": "reasoning",
                "litellm_params": {
                    "model": "anthropic/claude-sonnet-4-20250514",
                    "api_key": settings.ANTHROPIC_API_KEY,
                },
            })
            model_list.append({
                "model_name": "fast",
                "litellm_params": {
                    "model": "anthropic/claude-3-5-haiku-20241022",
                    "api_key": settings.ANTHROPIC_API_KEY,
                },
            })

        if settings.OPENAI_API_KEY:
            model_list.append({
                "model_name": "reasoning",
                "litellm_params": {
                    "model": "openai/gpt-4o",
                    "api_key": settings.OPENAI_API_KEY,
                },
            })
            model_list.append({
                "model_name": "fast",
                "litellm_params": {
                    "model": "openai/gpt-4o-mini",
                    "api_key": settings.OPENAI_API_KEY,
                },
            })

        if not model_list:
            logger.warning("llm_unconfigured", reason="no provider API keys")
            self.router = None
            return

        self.router = Router(
            model_list=model_list,
            num_retries=settings.LLM_MAX_RETRIES,
            timeout=settings.LLM_TIMEOUT,
            allowed_fails=3,
            cooldown_time=30,
        )

    @property
    def available(self) -> bool:
        return self.router is not None

    async def chat(
        self,
        messages: list[dict],
        model: str = "fast",
        max_tokens: int = 200,
        temperature: float = 0.2,
        purpose: str = "plan",
        json_mode: bool = False,
    ) -> str:
        """Run a chat completion and return the reply text.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Router group name ("reasoning" or "fast").
            max_tokens: Maximum tokens in the response.
            temperature: Sampling temperature (0-2).
            purpose: Metrics label for the caller (plan, mapping, status).
            json_mode: Ask the provider for a JSON object response.

        Returns:
            The assistant message content ("" when the provider returns none).

        Raises:
            LLMUnavailableError: If no LLM API keys are configured.
        """
        if not self.router:
            raise LLMUnavailableError("No LLM API keys configured")

        safe_messages = sanitize_messages(messages)
        extra: dict = {}
        if json_mode:
            extra["response_format"] = {"type": "json_object"}

        async with track_llm_call(model, purpose):
            response = await self.router.acompletion(
                model=model,
                messages=safe_messages,
                max_tokens=max_tokens,
                temperature=temperature,
                metadata={"purpose": purpose},
                **extra,
            )

        content = response.choices[0].message.content or ""
        logger.debug(
            "llm_chat_completed",
            purpose=purpose,
            model=getattr(response, "model", model),
            length=len(content),
        )
        return content


# ── Singleton ─────────────────────────────────────────────────────────────────

_llm_service: LLMService | None = None


def get_llm_service() -> LLMService:
    """Get or create the LLM service singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
