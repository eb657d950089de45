"""Per-order confirmation dialogue over WhatsApp.

Exports:
    ConversationOrchestrator: State machine handling scan/init/incoming/followup jobs.
    LLMPlanner: History -> structured next-action plan, never raising.
    LLMPlan: Validated plan returned by the planner.
    JobOutcome: REMOVE or KEEP signalled back to the queue.
"""

from __future__ import annotations

from src.orderflow.conversation.schemas import JobOutcome, LLMPlan

__all__ = [
    "ConversationOrchestrator",
    "JobOutcome",
    "LLMPlan",
    "LLMPlanner",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load orchestrator and planner to avoid circular imports with jobs."""
    if name == "ConversationOrchestrator":
        from src.orderflow.conversation.orchestrator import ConversationOrchestrator

        return ConversationOrchestrator
    if name == "LLMPlanner":
        from src.orderflow.conversation.planner import LLMPlanner

        return LLMPlanner
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
