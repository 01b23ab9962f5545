"""
Conversation state machine and risk assessment.

Neither part calls the generation service. ``attempt_transition`` mutates only
``context.state`` and ``context.risk_level``; ``assess_risk`` is pure.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .keywords import CRITICAL_KEYWORDS
from .models import (
    RISK_ORDER,
    ConversationContext,
    ConversationState,
    HistoryMessage,
    RiskLevel,
    Role,
    StateTransition,
    last_transition,
)

logger = logging.getLogger(__name__)

S = ConversationState

LEGAL_SUCCESSORS: Mapping[ConversationState, Tuple[ConversationState, ...]] = {
    S.INITIAL: (S.GATHERING_INFO, S.PENDING_ANALYSIS),
    S.GATHERING_INFO: (S.ANALYSIS_NEEDED, S.PENDING_ANALYSIS, S.DEEP_ANALYSIS, S.SESSION_CLOSING),
    S.ANALYSIS_NEEDED: (S.PENDING_ANALYSIS, S.GUIDANCE_DELIVERY, S.DEEP_ANALYSIS),
    S.PENDING_ANALYSIS: (S.GUIDANCE_DELIVERY, S.DEEP_ANALYSIS, S.GATHERING_INFO),
    S.DEEP_ANALYSIS: (S.GUIDANCE_DELIVERY, S.SESSION_CLOSING),
    S.GUIDANCE_DELIVERY: (S.GATHERING_INFO, S.PENDING_ANALYSIS, S.SESSION_CLOSING),
    S.SESSION_CLOSING: (),
    S.ERROR_RECOVERY: tuple(S),
}

RISK_FORCED_STATES: Mapping[RiskLevel, Optional[ConversationState]] = {
    RiskLevel.CRITICAL: S.DEEP_ANALYSIS,
    RiskLevel.HIGH: S.PENDING_ANALYSIS,
    RiskLevel.MEDIUM: None,
    RiskLevel.LOW: None,
}


def is_legal(current: ConversationState, target: ConversationState) -> bool:
    return target is S.ERROR_RECOVERY or target in LEGAL_SUCCESSORS[current]


def damp(current: RiskLevel, suggested: RiskLevel, max_drop: int = 1) -> RiskLevel:
    """Accept ``suggested`` but never more than ``max_drop`` levels below ``current``."""
    floor = max(0, current.rank - max_drop)
    return RISK_ORDER[max(suggested.rank, floor)]


@dataclass
class StateMetrics:
    state_changes: int
    current_state_duration_s: float
    average_state_duration_s: float


class StateMachine:
    def __init__(
        self,
        risk_window: int = 5,
        risk_factor_threshold: int = 3,
        risk_max_drop: int = 1,
        critical_keywords: Optional[Sequence[str]] = None,
    ):
        self.risk_window = risk_window
        self.risk_factor_threshold = risk_factor_threshold
        self.risk_max_drop = risk_max_drop
        self.critical_keywords = [k.lower() for k in (critical_keywords or CRITICAL_KEYWORDS)]

    # -------------------------
    # Transitions
    # -------------------------
    def attempt_transition(
        self,
        context: ConversationContext,
        suggested_state: ConversationState,
        reason: str,
        risk_level: RiskLevel,
        *,
        honor_risk: bool = True,
    ) -> Optional[StateTransition]:
        """Apply a transition if it is legal or dictated by risk; otherwise return None.

        ``honor_risk=False`` ignores the risk-forced table (used by stall recovery,
        where re-entering the stalled state would defeat the purpose).
        """
        forced = RISK_FORCED_STATES[risk_level] if honor_risk else None
        target = forced or suggested_state
        current = context.state

        if forced is None and not is_legal(current, target):
            logger.info(
                "Rejected transition %s -> %s (%s)",
                current.value,
                target.value,
                reason,
                extra={"conversation_id": context.user_id, "state": current.value},
            )
            return None

        if forced is not None and forced is not suggested_state:
            reason = f"Risk level {risk_level.value} forced {forced.value}: {reason}"

        transition = StateTransition(
            from_state=current,
            to_state=target,
            reason=reason,
            risk_level=risk_level,
            forced_by_risk=forced is not None,
        )
        context.state = target
        context.risk_level = risk_level
        return transition

    def force(
        self,
        context: ConversationContext,
        state: ConversationState,
        reason: str,
    ) -> StateTransition:
        """Set ``state`` unconditionally; keeps the current risk level."""
        transition = StateTransition(
            from_state=context.state,
            to_state=state,
            reason=reason,
            risk_level=context.risk_level,
        )
        context.state = state
        return transition

    # -------------------------
    # Risk
    # -------------------------
    def damp(self, current: RiskLevel, suggested: RiskLevel) -> RiskLevel:
        return damp(current, suggested, self.risk_max_drop)

    def has_critical_keyword(self, text: str) -> bool:
        lowered = text.lower()
        return any(k in lowered for k in self.critical_keywords)

    def assess_risk(
        self,
        current: RiskLevel,
        history: Sequence[HistoryMessage],
        suggested: Optional[RiskLevel] = None,
        inbound: Optional[HistoryMessage] = None,
    ) -> RiskLevel:
        """Risk over the last ``risk_window`` conversational turns.

        Internal turns (transition notes, analyses) do not take up window
        slots. ``inbound`` is always scanned, however much followed it.

        Critical keyword in a user turn -> CRITICAL.
        ``risk_factor_threshold`` or more accumulated risk factors -> HIGH.
        Otherwise the suggested level, damped against ``current``.
        """
        spoken = [m for m in history if m.role is not Role.SYSTEM]
        window = spoken[-self.risk_window:] if self.risk_window > 0 else []
        if inbound is not None and not any(m is inbound for m in window):
            window.insert(0, inbound)

        if any(m.is_user and self.has_critical_keyword(m.text) for m in window):
            return RiskLevel.CRITICAL

        factor_count = sum(len(m.metadata.risk_factors) for m in window)
        if factor_count >= self.risk_factor_threshold:
            return RiskLevel.HIGH

        if suggested is None:
            return current
        return self.damp(current, suggested)

    # -------------------------
    # Introspection
    # -------------------------
    def metrics(self, context: ConversationContext, now: float) -> StateMetrics:
        changes: List[HistoryMessage] = [m for m in context.history if m.transition is not None]
        found = last_transition(context.history)
        entered_at = found[1].timestamp if found else context.session_started_at
        elapsed = max(0.0, now - context.session_started_at)
        return StateMetrics(
            state_changes=len(changes),
            current_state_duration_s=max(0.0, now - entered_at),
            average_state_duration_s=elapsed / (len(changes) + 1),
        )

    @staticmethod
    def visits(context: ConversationContext) -> Dict[ConversationState, int]:
        return dict(Counter(m.transition.to_state for m in context.history if m.transition is not None))
