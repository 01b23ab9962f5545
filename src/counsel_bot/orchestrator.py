"""
Per-turn message pipeline.

Flow (one LangGraph run per inbound user turn):

    START -> resync -> stall_check -> gate
    gate --blocked--> END                      (placeholder reply, no generation)
    gate --continue--> communicator
    communicator --analysis suggested--> immediate_analysis --done--> END
    communicator / immediate_analysis (not applied) --> harvest -> risk
    risk --HIGH/CRITICAL--> escalate -> END
    risk --closing--> closing -> END
    risk --otherwise--> regular -> END

Anything that escapes the graph puts the conversation into ERROR_RECOVERY and
asks the communicator for an apology; if that call fails too, the error goes
to the caller.
"""

from __future__ import annotations

import logging
import operator
import time
from dataclasses import dataclass, field
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, TypedDict

from langgraph.graph import END, START, StateGraph

from .config import OrchestratorSettings
from .models import (
    BLOCKING_STATES,
    ActiveGuidance,
    ConversationContext,
    ConversationState,
    HistoryMessage,
    Origin,
    RiskLevel,
    Role,
    StateTransition,
    TurnMetadata,
    last_analysis,
    last_transition,
)
from .prompts import (
    CLOSING_NOTE,
    COMMUNICATOR,
    FINISHING,
    FOLLOW_UP_NOTE,
    PSYCHOLOGIST,
    RECOVERY_NOTE,
    waiting_text,
)
from .repository import SessionRepository
from .responses import AnalysisResponse, CommunicatorResponse, FinishingResponse
from .state_machine import StateMachine, is_legal
from .tasks import BackgroundTaskManager, TaskStatus, TaskType

logger = logging.getLogger(__name__)

S = ConversationState

ReplySink = Callable[[str, List[str]], Awaitable[None]]


@dataclass
class ProcessedResponse:
    messages: List[str]
    risk_level: RiskLevel
    transition: Optional[StateTransition] = None
    should_end_session: bool = False
    blocked: bool = False
    metrics: Dict[str, Any] = field(default_factory=dict)


# -------------------------
# Graph state
# -------------------------
class TurnState(TypedDict, total=False):
    context: ConversationContext
    turn: HistoryMessage
    now: float
    blocked: bool
    communicator: CommunicatorResponse
    immediate_applied: bool
    risk: RiskLevel
    follow_ups: Annotated[List[str], operator.add]
    transitions: Annotated[List[StateTransition], operator.add]
    reply: str
    final: CommunicatorResponse
    finishing: FinishingResponse
    should_end_session: bool


# -------------------------
# Branches
# -------------------------
def branch_after_gate(state: TurnState) -> Literal["blocked", "continue"]:
    return "blocked" if state.get("blocked") else "continue"


def branch_after_communicator(state: TurnState) -> Literal["immediate", "harvest"]:
    suggested = state["communicator"].suggested_next_state
    if suggested in (S.ANALYSIS_NEEDED, S.PENDING_ANALYSIS):
        return "immediate"
    return "harvest"


def branch_after_immediate(state: TurnState) -> Literal["done", "harvest"]:
    return "done" if state.get("immediate_applied") else "harvest"


def branch_after_risk(state: TurnState) -> Literal["escalate", "closing", "regular"]:
    if state["risk"] in (RiskLevel.HIGH, RiskLevel.CRITICAL):
        return "escalate"
    context = state["context"]
    if context.state is S.SESSION_CLOSING:
        return "closing"
    if state["communicator"].suggested_next_state is S.SESSION_CLOSING and is_legal(context.state, S.SESSION_CLOSING):
        return "closing"
    return "regular"


# -------------------------
# Orchestrator
# -------------------------
class MessageOrchestrator:
    def __init__(
        self,
        generator,
        tasks: BackgroundTaskManager,
        state_machine: Optional[StateMachine] = None,
        settings: Optional[OrchestratorSettings] = None,
        repository: Optional[SessionRepository] = None,
        reply_sink: Optional[ReplySink] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or OrchestratorSettings()
        self.generator = generator
        self.tasks = tasks
        self.state_machine = state_machine or StateMachine(
            risk_window=self.settings.risk_window,
            risk_factor_threshold=self.settings.risk_factor_threshold,
            risk_max_drop=self.settings.risk_max_drop,
        )
        self.repository = repository
        self.reply_sink = reply_sink
        self._clock = clock
        self.graph = self._build_graph()

    # -------------------------
    # Inbound interface
    # -------------------------
    async def handle_turn(
        self,
        conversation_id: str,
        text: str,
        timestamp: Optional[float] = None,
    ) -> ProcessedResponse:
        """Persist the user turn, process it, persist again, deliver the replies.

        The user turn is stored before processing starts, so a fatal error
        (re-raised to the caller) never loses it.
        """
        if self.repository is None:
            raise RuntimeError("handle_turn needs a session repository")

        now = self._clock() if timestamp is None else timestamp
        context = await self.repository.find_by_user_id(conversation_id)
        if context is None:
            context = await self.repository.create(conversation_id)
            context.history_limit = self.settings.history_limit

        turn = HistoryMessage(text=text, origin=Origin.USER, role=Role.USER, timestamp=now)
        context.append(turn)
        await self.repository.update(context)

        try:
            result = await self.process(context, turn)
        finally:
            await self.repository.update(context)

        if self.reply_sink is not None:
            await self.reply_sink(conversation_id, result.messages)
        return result

    async def process(self, context: ConversationContext, turn: HistoryMessage) -> ProcessedResponse:
        """Run the pipeline for ``turn``, which must already be the newest entry in history."""
        started = time.monotonic()
        logger.info(
            "Processing turn",
            extra={
                "conversation_id": context.user_id,
                "state": context.state.value,
                "risk_level": context.risk_level.value,
            },
        )
        context.is_thinking = True
        try:
            try:
                final = await self.graph.ainvoke({"context": context, "turn": turn, "now": turn.timestamp})
            except Exception as exc:
                logger.exception(
                    "Turn failed, entering error recovery",
                    extra={"conversation_id": context.user_id, "state": context.state.value},
                )
                return await self._recover(context, turn.timestamp, exc)
        finally:
            context.is_thinking = False

        result = self._build_response(context, final)
        logger.info(
            "Turn processed (%d message(s)%s)",
            len(result.messages),
            ", blocked" if result.blocked else "",
            extra={
                "conversation_id": context.user_id,
                "state": context.state.value,
                "risk_level": context.risk_level.value,
                "duration_ms": round((time.monotonic() - started) * 1000),
            },
        )
        return result

    # -------------------------
    # Build graph
    # -------------------------
    def _build_graph(self):
        g = StateGraph(TurnState)

        g.add_node("resync", self._resync_node)
        g.add_node("stall_check", self._stall_node)
        g.add_node("gate", self._gate_node)
        g.add_node("communicator", self._communicator_node)
        g.add_node("immediate_analysis", self._immediate_node)
        g.add_node("harvest", self._harvest_node)
        g.add_node("risk", self._risk_node)
        g.add_node("escalate", self._escalate_node)
        g.add_node("closing", self._closing_node)
        g.add_node("regular", self._regular_node)

        g.add_edge(START, "resync")
        g.add_edge("resync", "stall_check")
        g.add_edge("stall_check", "gate")
        g.add_conditional_edges("gate", branch_after_gate, {"blocked": END, "continue": "communicator"})
        g.add_conditional_edges(
            "communicator",
            branch_after_communicator,
            {"immediate": "immediate_analysis", "harvest": "harvest"},
        )
        g.add_conditional_edges(
            "immediate_analysis",
            branch_after_immediate,
            {"done": END, "harvest": "harvest"},
        )
        g.add_edge("harvest", "risk")
        g.add_conditional_edges(
            "risk",
            branch_after_risk,
            {"escalate": "escalate", "closing": "closing", "regular": "regular"},
        )
        for leaf in ("escalate", "closing", "regular"):
            g.add_edge(leaf, END)

        return g.compile()

    # -------------------------
    # Nodes
    # -------------------------
    async def _resync_node(self, state: TurnState) -> Dict[str, Any]:
        context = state["context"]
        found = last_transition(context.history)
        if found is not None:
            recorded = found[1].transition.to_state
            if recorded is not context.state:
                logger.warning(
                    "State desync: context says %s, history says %s; using history",
                    context.state.value,
                    recorded.value,
                    extra={"conversation_id": context.user_id},
                )
                context.state = recorded
        return {"blocked": False}

    async def _stall_node(self, state: TurnState) -> Dict[str, Any]:
        context, now = state["context"], state["now"]
        if context.state not in BLOCKING_STATES:
            return {"blocked": False}

        transitions: List[StateTransition] = self._absorb_completed(context, now)
        if context.state not in BLOCKING_STATES or self._has_newer_analysis(context):
            return {"transitions": transitions}

        elapsed = now - self._entered_at(context)
        if elapsed <= self.settings.stall_timeout_s:
            return {"transitions": transitions}

        stalled = context.state
        reason = f"Recovered from {stalled.value} after {elapsed:.0f}s without an analysis result"
        transition = self.state_machine.attempt_transition(
            context, S.GUIDANCE_DELIVERY, reason, context.risk_level, honor_risk=False
        )
        if transition is None:
            transition = self.state_machine.force(context, S.ERROR_RECOVERY, reason)
        self._record(context, transition, now)
        context.last_analysis_at = now
        logger.warning(
            "Stalled in %s for %.0fs, moved to %s",
            stalled.value,
            elapsed,
            context.state.value,
            extra={"conversation_id": context.user_id, "state": context.state.value},
        )
        return {"transitions": [*transitions, transition]}

    async def _gate_node(self, state: TurnState) -> Dict[str, Any]:
        context, turn, now = state["context"], state["turn"], state["now"]
        if context.state not in BLOCKING_STATES or not turn.is_user:
            return {"blocked": False}

        if self._has_newer_analysis(context):
            found = last_analysis(context.history)
            transition = self._apply_recommendation(context, found[1], now)
            return {"blocked": False, "transitions": [transition] if transition else []}

        elapsed = now - self._entered_at(context)
        logger.info(
            "Holding user turn while analysis is in flight (%.0fs)",
            elapsed,
            extra={"conversation_id": context.user_id, "state": context.state.value},
        )
        return {"blocked": True, "reply": waiting_text(elapsed, self.settings.short_wait_window_s)}

    async def _communicator_node(self, state: TurnState) -> Dict[str, Any]:
        context = state["context"]
        response = await self.generator.generate(context.history, COMMUNICATOR.for_context(context))
        return {"communicator": response}

    async def _immediate_node(self, state: TurnState) -> Dict[str, Any]:
        context, now = state["context"], state["now"]
        response: CommunicatorResponse = state["communicator"]

        entered = self.state_machine.attempt_transition(
            context,
            S.PENDING_ANALYSIS,
            response.state_reason or response.reason,
            context.risk_level,
        )
        if entered is None:
            return {"immediate_applied": False}
        self._record(context, entered, now)
        transitions = [entered]

        analysis = await self.generator.generate(
            context.history, PSYCHOLOGIST.for_context(context), use_high_tier=True
        )
        context.last_analysis_at = now
        turn = self._append_analysis(context, analysis, now)
        recommended = self._apply_recommendation(context, turn, now)
        if recommended is not None:
            transitions.append(recommended)

        final = await self.generator.generate(
            context.history, COMMUNICATOR.for_context(context).bind(FOLLOW_UP_NOTE)
        )
        self._append_reply(context, final, now, context.risk_level)
        return {
            "immediate_applied": True,
            "transitions": transitions,
            "final": final,
            "reply": final.text,
        }

    async def _harvest_node(self, state: TurnState) -> Dict[str, Any]:
        context, now = state["context"], state["now"]
        follow_ups: List[str] = []
        transitions: List[StateTransition] = []

        for analysis in self._collect_completed(context):
            turn = self._append_analysis(context, analysis, now)
            transition = self._apply_recommendation(context, turn, now)
            if transition is not None:
                transitions.append(transition)
            follow_up = await self.generator.generate(
                context.history, COMMUNICATOR.for_context(context).bind(FOLLOW_UP_NOTE)
            )
            self._append_reply(context, follow_up, now, context.risk_level)
            follow_ups.append(follow_up.text)

        return {"follow_ups": follow_ups, "transitions": transitions}

    async def _risk_node(self, state: TurnState) -> Dict[str, Any]:
        context, now = state["context"], state["now"]
        response: CommunicatorResponse = state["communicator"]
        # the reply is not in history yet; count its risk factors anyway
        provisional = self._reply_turn(response, now, response.urgency)
        risk = self.state_machine.assess_risk(
            context.risk_level,
            [*context.history, provisional],
            response.urgency,
            inbound=state["turn"] if state["turn"].is_user else None,
        )
        if risk in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            logger.warning(
                "Risk assessed as %s",
                risk.value,
                extra={"conversation_id": context.user_id, "risk_level": risk.value},
            )
        return {"risk": risk}

    async def _escalate_node(self, state: TurnState) -> Dict[str, Any]:
        context, now, risk = state["context"], state["now"], state["risk"]
        response: CommunicatorResponse = state["communicator"]

        forced = self.state_machine.attempt_transition(
            context,
            response.suggested_next_state or context.state,
            f"Risk escalated to {risk.value}",
            risk,
        )
        transitions = []
        if forced is not None:
            self._record(context, forced, now)
            transitions.append(forced)

        analysis = await self.generator.generate(
            context.history, PSYCHOLOGIST.for_context(context), use_high_tier=True
        )
        context.last_analysis_at = now
        # the recommendation is applied on the next user turn, when the gate sees this analysis
        self._append_analysis(context, analysis, now)

        final = await self.generator.generate(
            context.history, COMMUNICATOR.for_context(context).bind(FOLLOW_UP_NOTE)
        )
        self._append_reply(context, final, now, risk)
        return {"transitions": transitions, "final": final, "reply": final.text}

    async def _closing_node(self, state: TurnState) -> Dict[str, Any]:
        context, now, risk = state["context"], state["now"], state["risk"]
        response: CommunicatorResponse = state["communicator"]

        if context.ended:
            self._append_reply(context, response, now, risk)
            return {"final": response, "reply": response.text, "should_end_session": True}

        transitions = []
        if context.state is not S.SESSION_CLOSING:
            closing = self.state_machine.attempt_transition(
                context, S.SESSION_CLOSING, response.state_reason or response.reason, risk
            )
            if closing is not None:
                self._record(context, closing, now)
                transitions.append(closing)

        finishing = await self.generator.generate(
            context.history, FINISHING.for_context(context), use_high_tier=True
        )
        context.append(
            HistoryMessage(
                text=self._finishing_note(finishing),
                origin=Origin.ASSISTANT,
                role=Role.SYSTEM,
                timestamp=now,
            )
        )

        final = await self.generator.generate(
            context.history, COMMUNICATOR.for_context(context).bind(CLOSING_NOTE)
        )
        self._append_reply(context, final, now, risk)
        context.ended_at = now
        logger.info("Session closed", extra={"conversation_id": context.user_id})
        return {
            "transitions": transitions,
            "final": final,
            "finishing": finishing,
            "reply": final.text,
            "should_end_session": True,
        }

    async def _regular_node(self, state: TurnState) -> Dict[str, Any]:
        context, now, risk = state["context"], state["now"], state["risk"]
        response: CommunicatorResponse = state["communicator"]

        transitions = []
        if response.suggested_next_state is not None:
            transition = self.state_machine.attempt_transition(
                context,
                response.suggested_next_state,
                response.state_reason or response.reason,
                risk,
            )
            if transition is not None:
                self._record(context, transition, now)
                transitions.append(transition)
        context.risk_level = risk

        guidance = context.active_guidance
        if guidance is not None:
            if response.current_action_step is not None:
                guidance.current_step = response.current_action_step
            if response.step_progress:
                guidance.step_progress = response.step_progress

        self._append_reply(context, response, now, risk)

        if self._should_schedule_analysis(context, response, now):
            self._schedule_analysis(context, now)

        return {"transitions": transitions, "final": response, "reply": response.text}

    # -------------------------
    # Failure branch
    # -------------------------
    async def _recover(self, context: ConversationContext, now: float, error: Exception) -> ProcessedResponse:
        transition = self.state_machine.force(
            context, S.ERROR_RECOVERY, f"Unhandled {type(error).__name__} while processing turn"
        )
        self._record(context, transition, now)
        # deliberately not guarded: a failure here is fatal for this turn
        response = await self.generator.generate(
            context.history, COMMUNICATOR.for_context(context).bind(RECOVERY_NOTE)
        )
        self._append_reply(context, response, now, context.risk_level)
        return ProcessedResponse(
            messages=[response.text],
            risk_level=context.risk_level,
            transition=transition,
            metrics=self._metrics(response, None),
        )

    # -------------------------
    # Background analysis
    # -------------------------
    def _should_schedule_analysis(
        self,
        context: ConversationContext,
        response: CommunicatorResponse,
        now: float,
    ) -> bool:
        s = self.settings
        if not s.background_enabled:
            return False
        if len(context.active_background_tasks) >= s.max_background_tasks:
            return False
        if context.state in BLOCKING_STATES:
            return True

        since = float("inf") if context.last_analysis_at is None else now - context.last_analysis_at
        if context.substantive_user_turns(s.substantive_turn_min_chars) < s.early_turn_threshold:
            return since >= s.early_analysis_cooldown_s
        if since < s.analysis_cooldown_s:
            return False
        return (
            response.suggested_next_state is S.ANALYSIS_NEEDED
            or response.engagement_level == "LOW"
            or bool(response.risk_factors)
            or context.state is S.GATHERING_INFO
            or context.active_guidance is None
        )

    def _schedule_analysis(self, context: ConversationContext, now: float) -> Optional[str]:
        if not self.settings.background_enabled:
            return None
        if len(context.active_background_tasks) >= self.settings.max_background_tasks:
            return None
        snapshot = list(context.history)
        prompt = PSYCHOLOGIST.for_context(context)

        async def run_analysis() -> AnalysisResponse:
            return await self.generator.generate(snapshot, prompt, use_high_tier=True)

        task_id = self.tasks.schedule(TaskType.ANALYSIS, context.user_id, run_analysis)
        context.active_background_tasks.add(task_id)
        context.last_analysis_at = now
        return task_id

    def _collect_completed(self, context: ConversationContext) -> List[AnalysisResponse]:
        """Pop settled tasks off the conversation; return the successful analyses, oldest first."""
        settled = []
        for task_id in list(context.active_background_tasks):
            task = self.tasks.get(task_id)
            if task is None:
                # swept before anyone harvested it
                context.active_background_tasks.discard(task_id)
                continue
            if task.status.settled:
                settled.append(task)

        results: List[AnalysisResponse] = []
        for task in sorted(settled, key=lambda t: t.started_at):
            context.active_background_tasks.discard(task.id)
            self.tasks.discard(task.id)
            if task.status is TaskStatus.FAILED:
                logger.warning(
                    "Dropping failed background analysis: %s",
                    task.error,
                    extra={"conversation_id": context.user_id, "task_id": task.id},
                )
                continue
            results.append(task.result)
        return results

    def _absorb_completed(self, context: ConversationContext, now: float) -> List[StateTransition]:
        transitions = []
        for analysis in self._collect_completed(context):
            turn = self._append_analysis(context, analysis, now)
            transition = self._apply_recommendation(context, turn, now)
            if transition is not None:
                transitions.append(transition)
        return transitions

    # -------------------------
    # History helpers
    # -------------------------
    def _entered_at(self, context: ConversationContext) -> float:
        found = last_transition(context.history)
        return found[1].timestamp if found else context.session_started_at

    def _has_newer_analysis(self, context: ConversationContext) -> bool:
        analysis = last_analysis(context.history)
        if analysis is None:
            return False
        entry = last_transition(context.history)
        return entry is None or analysis[0] > entry[0]

    def _record(self, context: ConversationContext, transition: StateTransition, now: float) -> None:
        if transition.from_state is transition.to_state:
            return
        context.append(
            HistoryMessage(
                text=(
                    f"State changed from {transition.from_state.value} "
                    f"to {transition.to_state.value}: {transition.reason}"
                ),
                origin=Origin.ASSISTANT,
                role=Role.SYSTEM,
                timestamp=now,
                metadata=TurnMetadata(risk_level=transition.risk_level, state_transition=transition),
            )
        )
        logger.info(
            "Transition %s -> %s%s",
            transition.from_state.value,
            transition.to_state.value,
            " (forced by risk)" if transition.forced_by_risk else "",
            extra={
                "conversation_id": context.user_id,
                "state": transition.to_state.value,
                "risk_level": transition.risk_level.value,
            },
        )

    def _append_analysis(self, context: ConversationContext, analysis: AnalysisResponse, now: float) -> HistoryMessage:
        risk = None
        if analysis.risk_level is not None:
            risk = self.state_machine.damp(context.risk_level, analysis.risk_level)
        text = analysis.text
        if analysis.prompt.strip():
            text = f"{text}\n\nAction plan:\n{analysis.prompt.strip()}"
        turn = HistoryMessage(
            text=text,
            origin=Origin.PSYCHOLOGIST,
            role=Role.SYSTEM,
            timestamp=now,
            metadata=TurnMetadata(
                risk_level=risk,
                recommended_state=analysis.next_state,
                recommendation_reason=analysis.state_reason or analysis.reason,
            ),
        )
        context.append(turn)
        self._merge_guidance(context, analysis)
        return turn

    @staticmethod
    def _merge_guidance(context: ConversationContext, analysis: AnalysisResponse) -> None:
        if analysis.prompt.strip():
            context.active_guidance = ActiveGuidance(
                action_plan=analysis.prompt.strip(),
                current_step=1,
                safety_recommendations=list(analysis.safety_recommendations),
                therapeutic_plan=analysis.therapeutic_plan or "",
            )
            return
        guidance = context.active_guidance
        if guidance is None:
            return
        for rec in analysis.safety_recommendations:
            if rec not in guidance.safety_recommendations:
                guidance.safety_recommendations.append(rec)
        if analysis.therapeutic_plan:
            guidance.therapeutic_plan = analysis.therapeutic_plan

    def _apply_recommendation(
        self,
        context: ConversationContext,
        analysis_turn: HistoryMessage,
        now: float,
    ) -> Optional[StateTransition]:
        meta = analysis_turn.metadata
        if meta.recommended_state is None:
            return None
        transition = self.state_machine.attempt_transition(
            context,
            meta.recommended_state,
            meta.recommendation_reason or "Analysis recommendation",
            meta.risk_level or context.risk_level,
        )
        if transition is None:
            return None
        self._record(context, transition, now)
        if transition.from_state is not transition.to_state and transition.to_state in BLOCKING_STATES:
            # a fresh blocking state needs something in flight to unblock it
            self._schedule_analysis(context, now)
        return transition

    @staticmethod
    def _reply_turn(response: CommunicatorResponse, now: float, risk: Optional[RiskLevel]) -> HistoryMessage:
        return HistoryMessage(
            text=response.text,
            origin=Origin.ASSISTANT,
            role=Role.ASSISTANT,
            timestamp=now,
            metadata=TurnMetadata(
                risk_level=risk,
                emotional_tone=response.emotional_tone or None,
                risk_factors=tuple(response.risk_factors),
            ),
        )

    def _append_reply(
        self,
        context: ConversationContext,
        response: CommunicatorResponse,
        now: float,
        risk: Optional[RiskLevel],
    ) -> None:
        context.append(self._reply_turn(response, now, risk))

    @staticmethod
    def _finishing_note(finishing: FinishingResponse) -> str:
        parts = [f"Session summary: {finishing.text}"]
        if finishing.recommendations:
            parts.append(f"Recommendations: {finishing.recommendations}")
        if finishing.next_steps:
            parts.append(f"Next steps: {finishing.next_steps}")
        return "\n".join(parts)

    # -------------------------
    # Output
    # -------------------------
    @staticmethod
    def _metrics(response: Optional[CommunicatorResponse], finishing: Optional[FinishingResponse]) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {}
        if response is not None:
            metrics["engagement_level"] = response.engagement_level
            metrics["emotional_tone"] = response.emotional_tone or None
        if finishing is not None:
            metrics["session_action"] = finishing.action
            if finishing.summary_metrics is not None:
                metrics["session_progress"] = finishing.summary_metrics.progress_made
                metrics["engagement_quality"] = finishing.summary_metrics.engagement_quality
                metrics["risk_trend"] = finishing.summary_metrics.risk_trend
        return metrics

    def _build_response(self, context: ConversationContext, final: Dict[str, Any]) -> ProcessedResponse:
        messages = list(final.get("follow_ups") or [])
        if final.get("reply"):
            messages.append(final["reply"])
        transitions = final.get("transitions") or []
        return ProcessedResponse(
            messages=messages,
            risk_level=context.risk_level,
            transition=transitions[-1] if transitions else None,
            should_end_session=bool(final.get("should_end_session")),
            blocked=bool(final.get("blocked")),
            metrics=self._metrics(final.get("final"), final.get("finishing")),
        )
