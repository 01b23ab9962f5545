import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import pytest
from langchain_core.messages import BaseMessage

from counsel_bot.config import GenerationSettings, OrchestratorSettings
from counsel_bot.models import (
    ConversationContext,
    ConversationState,
    HistoryMessage,
    Origin,
    RiskLevel,
    Role,
    StateTransition,
    TurnMetadata,
)
from counsel_bot.orchestrator import MessageOrchestrator
from counsel_bot.responses import AnalysisResponse, CommunicatorResponse, FinishingResponse, SummaryMetrics
from counsel_bot.tasks import BackgroundTaskManager

S = ConversationState


# -------------------------
# Bedrock stand-in
# -------------------------
@dataclass
class ChatCall:
    messages: List[BaseMessage]
    max_tokens: int
    temperature: float
    model_id: str
    json_prefill: bool


class FakeChat:
    """
    Deterministic stub for counsel_bot.llm.bedrock_chat.

    Replays ``script`` in order: strings are returned, exceptions are raised.
    Once the script runs out, ``default`` is returned.
    """

    def __init__(self, *script: Any, default: Optional[str] = None) -> None:
        self.calls: List[ChatCall] = []
        self.script: List[Any] = list(script)
        self.default = default if default is not None else communicator_json()

    def __call__(
        self,
        messages: Sequence[BaseMessage],
        max_tokens: int = 1000,
        temperature: float = 0.9,
        model_id: str = "",
        json_prefill: bool = False,
    ) -> str:
        self.calls.append(ChatCall(list(messages), max_tokens, temperature, model_id, json_prefill))
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, BaseException):
            raise item
        return item


def communicator_json(**overrides: Any) -> str:
    payload = {
        "text": "COMM_REPLY",
        "reason": "keep talking",
        "suggestedNextState": "GATHERING_INFO",
        "stateReason": "still learning",
        "urgency": "LOW",
        "emotionalTone": "calm",
        "riskFactors": [],
        "engagementLevel": "HIGH",
    }
    payload.update(overrides)
    return json.dumps(payload)


# -------------------------
# Generation client stand-in
# -------------------------
def communicator(text: str = "COMM_REPLY", **kw: Any) -> CommunicatorResponse:
    kw.setdefault("reason", "keep talking")
    kw.setdefault("suggested_next_state", S.GATHERING_INFO)
    kw.setdefault("urgency", RiskLevel.LOW)
    kw.setdefault("engagement_level", "HIGH")
    return CommunicatorResponse(text=text, **kw)


def analysis(text: str = "ANALYSIS", **kw: Any) -> AnalysisResponse:
    kw.setdefault("reason", "clinical reasoning")
    kw.setdefault("prompt", "1. Ask how they slept\n2. Suggest a breathing exercise")
    kw.setdefault("next_state", S.GUIDANCE_DELIVERY)
    kw.setdefault("state_reason", "plan is ready")
    kw.setdefault("risk_level", RiskLevel.LOW)
    return AnalysisResponse(text=text, **kw)


def finishing(text: str = "FINISHING", **kw: Any) -> FinishingResponse:
    kw.setdefault("reason", "session complete")
    kw.setdefault("recommendations", "Keep a mood journal")
    kw.setdefault("next_steps", "Check in next week")
    kw.setdefault(
        "summary_metrics",
        SummaryMetrics(progress_made=7, engagement_quality=8, risk_trend="IMPROVING"),
    )
    return FinishingResponse(text=text, **kw)


@dataclass
class GenerateCall:
    role: str
    history: List[HistoryMessage]
    prompt: str
    use_high_tier: bool


class FakeGenerator:
    """
    Stand-in for GenerationClient.

    Responses are queued per role (communicator / psychologist / finishing);
    queued exceptions are raised. Empty queues fall back to ``defaults``.
    A role listed in ``hold`` waits on that event before answering.
    """

    def __init__(self) -> None:
        self.calls: List[GenerateCall] = []
        self.queues: Dict[str, List[Any]] = {"communicator": [], "psychologist": [], "finishing": []}
        self.defaults: Dict[str, Any] = {
            "communicator": communicator(),
            "psychologist": analysis(),
            "finishing": finishing(),
        }
        self.hold: Dict[str, asyncio.Event] = {}

    def queue(self, role: str, *items: Any) -> None:
        self.queues[role].extend(items)

    async def generate(self, history, prompt, use_high_tier: bool = False):
        self.calls.append(GenerateCall(prompt.role, list(history), prompt.text, use_high_tier))
        if prompt.role in self.hold:
            await self.hold[prompt.role].wait()
        q = self.queues[prompt.role]
        item = q.pop(0) if q else self.defaults[prompt.role]
        if isinstance(item, BaseException):
            raise item
        return item

    @property
    def roles(self) -> List[str]:
        return [c.role for c in self.calls]


# -------------------------
# Context helpers
# -------------------------
T0 = 1_700_000_000.0


def new_context(state: ConversationState = S.INITIAL, **kw: Any) -> ConversationContext:
    kw.setdefault("session_started_at", T0)
    kw.setdefault("updated_at", T0)
    ctx = ConversationContext(user_id=kw.pop("user_id", "u1"), **kw)
    if state is not S.INITIAL:
        enter_state(ctx, state, T0)
    return ctx


def enter_state(ctx: ConversationContext, state: ConversationState, ts: float) -> None:
    """Put ``ctx`` into ``state`` the way the orchestrator does: with a transition note."""
    transition = StateTransition(ctx.state, state, "test setup", ctx.risk_level)
    ctx.append(
        HistoryMessage(
            text=f"State changed from {ctx.state.value} to {state.value}",
            origin=Origin.ASSISTANT,
            role=Role.SYSTEM,
            timestamp=ts,
            metadata=TurnMetadata(state_transition=transition),
        )
    )
    ctx.state = state


def add_user(ctx: ConversationContext, text: str, ts: float) -> HistoryMessage:
    turn = HistoryMessage(text=text, origin=Origin.USER, role=Role.USER, timestamp=ts)
    ctx.append(turn)
    return turn


def add_analysis(ctx: ConversationContext, ts: float, recommended=S.GUIDANCE_DELIVERY, risk=None) -> HistoryMessage:
    turn = HistoryMessage(
        text="ANALYSIS",
        origin=Origin.PSYCHOLOGIST,
        role=Role.SYSTEM,
        timestamp=ts,
        metadata=TurnMetadata(risk_level=risk, recommended_state=recommended, recommendation_reason="ready"),
    )
    ctx.append(turn)
    return turn


# -------------------------
# Fixtures
# -------------------------
@pytest.fixture()
def fake_generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture()
def orchestrator_settings() -> OrchestratorSettings:
    return OrchestratorSettings()


@pytest.fixture()
def generation_settings() -> GenerationSettings:
    return GenerationSettings(
        low_tier_model_id="low-model",
        high_tier_model_id="high-model",
        timeout_s=5.0,
    )


@pytest.fixture()
def make_orchestrator(fake_generator):
    """Build an orchestrator around the fake generator; keyword args override settings."""

    def _make(**overrides: Any) -> MessageOrchestrator:
        settings = OrchestratorSettings(**overrides)
        return MessageOrchestrator(
            generator=fake_generator,
            tasks=BackgroundTaskManager(timeout_s=settings.background_task_timeout_s),
            settings=settings,
        )

    return _make
