# counsel_bot/models.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Set, Tuple


class ConversationState(str, Enum):
    INITIAL = "INITIAL"
    GATHERING_INFO = "GATHERING_INFO"
    ANALYSIS_NEEDED = "ANALYSIS_NEEDED"
    PENDING_ANALYSIS = "PENDING_ANALYSIS"
    DEEP_ANALYSIS = "DEEP_ANALYSIS"
    GUIDANCE_DELIVERY = "GUIDANCE_DELIVERY"
    SESSION_CLOSING = "SESSION_CLOSING"
    ERROR_RECOVERY = "ERROR_RECOVERY"


# User turns are intercepted with a placeholder while one of these is active.
BLOCKING_STATES = frozenset({ConversationState.PENDING_ANALYSIS, ConversationState.DEEP_ANALYSIS})


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return RISK_ORDER.index(self)


RISK_ORDER: Tuple[RiskLevel, ...] = (
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
    RiskLevel.CRITICAL,
)


class Origin(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    PSYCHOLOGIST = "psychologist"


class Role(str, Enum):
    """Role tag used when the history is formatted for the generation service."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class StateTransition:
    from_state: ConversationState
    to_state: ConversationState
    reason: str
    risk_level: RiskLevel
    forced_by_risk: bool = False


@dataclass(frozen=True)
class TurnMetadata:
    risk_level: Optional[RiskLevel] = None
    emotional_tone: Optional[str] = None
    risk_factors: Tuple[str, ...] = ()
    state_transition: Optional[StateTransition] = None
    # analysis turns only
    recommended_state: Optional[ConversationState] = None
    recommendation_reason: Optional[str] = None


@dataclass(frozen=True)
class HistoryMessage:
    text: str
    origin: Origin
    role: Role
    timestamp: float
    metadata: TurnMetadata = field(default_factory=TurnMetadata)

    @property
    def is_user(self) -> bool:
        return self.origin is Origin.USER

    @property
    def is_analysis(self) -> bool:
        return self.origin is Origin.PSYCHOLOGIST

    @property
    def transition(self) -> Optional[StateTransition]:
        return self.metadata.state_transition


@dataclass
class ActiveGuidance:
    action_plan: str
    current_step: int = 0
    step_progress: str = ""
    safety_recommendations: List[str] = field(default_factory=list)
    therapeutic_plan: str = ""


@dataclass
class ConversationContext:
    """Aggregate root for one user's session."""

    user_id: str
    history: List[HistoryMessage] = field(default_factory=list)
    state: ConversationState = ConversationState.INITIAL
    risk_level: RiskLevel = RiskLevel.LOW
    is_thinking: bool = False
    session_started_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    last_analysis_at: Optional[float] = None
    active_background_tasks: Set[str] = field(default_factory=set)
    active_guidance: Optional[ActiveGuidance] = None
    ended_at: Optional[float] = None
    history_limit: int = 100

    def append(self, turn: HistoryMessage) -> None:
        self.history.append(turn)
        overflow = len(self.history) - self.history_limit
        if overflow > 0:
            del self.history[:overflow]

    def substantive_user_turns(self, min_chars: int) -> int:
        return sum(1 for m in self.history if m.is_user and len(m.text.strip()) > min_chars)

    @property
    def ended(self) -> bool:
        return self.ended_at is not None


# -------------------------
# History scans
# -------------------------
def find_last(
    history: Sequence[HistoryMessage],
    predicate: Callable[[HistoryMessage], bool],
) -> Optional[Tuple[int, HistoryMessage]]:
    """Return ``(index, turn)`` of the newest turn matching ``predicate``, or None."""
    for idx in range(len(history) - 1, -1, -1):
        if predicate(history[idx]):
            return idx, history[idx]
    return None


def last_transition(history: Sequence[HistoryMessage]) -> Optional[Tuple[int, HistoryMessage]]:
    return find_last(history, lambda m: m.transition is not None)


def last_analysis(history: Sequence[HistoryMessage]) -> Optional[Tuple[int, HistoryMessage]]:
    return find_last(history, lambda m: m.is_analysis)
