"""
Structured responses for each generation role.

Every role shares ``text`` and ``reason``; the rest is role-specific. The JSON
the model returns uses camelCase keys, the Python side uses snake_case.
"""

from __future__ import annotations

from typing import Any, ClassVar, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import ConversationState, RiskLevel


def _coerce_enum(enum_cls, value: Any):
    """Map loose model output onto an enum member; unknown values become None."""
    if value is None or isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().upper().replace(" ", "_")
        try:
            return enum_cls(key)
        except ValueError:
            return None
    return None


class BaseResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    role: ClassVar[str] = "base"
    text: str
    reason: str


class CommunicatorResponse(BaseResponse):
    role: ClassVar[str] = "communicator"
    suggested_next_state: Optional[ConversationState] = None
    state_reason: str = ""
    urgency: Optional[RiskLevel] = None
    emotional_tone: str = ""
    risk_factors: List[str] = Field(default_factory=list)
    engagement_level: Optional[Literal["LOW", "MEDIUM", "HIGH"]] = None
    current_action_step: Optional[int] = None
    step_progress: Optional[str] = None

    @field_validator("suggested_next_state", mode="before")
    @classmethod
    def _state(cls, v):
        return _coerce_enum(ConversationState, v)

    @field_validator("urgency", mode="before")
    @classmethod
    def _urgency(cls, v):
        return _coerce_enum(RiskLevel, v)

    @field_validator("engagement_level", mode="before")
    @classmethod
    def _engagement(cls, v):
        if isinstance(v, str) and v.strip().upper() in ("LOW", "MEDIUM", "HIGH"):
            return v.strip().upper()
        return None

    @field_validator("risk_factors", mode="before")
    @classmethod
    def _factors(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return v


class AnalysisResponse(BaseResponse):
    """Psychologist (analysis role) output: risk, next state and an action plan."""

    role: ClassVar[str] = "psychologist"
    prompt: str = ""
    action: Literal["FINISH_SESSION", "APPOINT_NEXT_SESSION", "COMMUNICATE"] = "COMMUNICATE"
    next_state: Optional[ConversationState] = None
    state_reason: str = ""
    risk_level: Optional[RiskLevel] = None
    therapeutic_plan: Optional[str] = None
    safety_recommendations: List[str] = Field(default_factory=list)

    @field_validator("next_state", mode="before")
    @classmethod
    def _state(cls, v):
        return _coerce_enum(ConversationState, v)

    @field_validator("risk_level", mode="before")
    @classmethod
    def _risk(cls, v):
        return _coerce_enum(RiskLevel, v)

    @field_validator("action", mode="before")
    @classmethod
    def _action(cls, v):
        if isinstance(v, str) and v.strip().upper() in ("FINISH_SESSION", "APPOINT_NEXT_SESSION", "COMMUNICATE"):
            return v.strip().upper()
        return "COMMUNICATE"

    @field_validator("safety_recommendations", mode="before")
    @classmethod
    def _recs(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return v


class SummaryMetrics(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    progress_made: float = 0.0
    engagement_quality: float = 0.0
    risk_trend: Literal["IMPROVING", "STABLE", "WORSENING"] = "STABLE"

    @field_validator("risk_trend", mode="before")
    @classmethod
    def _trend(cls, v):
        if isinstance(v, str) and v.strip().upper() in ("IMPROVING", "STABLE", "WORSENING"):
            return v.strip().upper()
        return "STABLE"


class FinishingResponse(BaseResponse):
    role: ClassVar[str] = "finishing"
    recommendations: str = ""
    next_steps: str = ""
    action: Literal["FINISH_SESSION", "APPOINT_NEXT_SESSION"] = "FINISH_SESSION"
    summary_metrics: Optional[SummaryMetrics] = None

    @field_validator("recommendations", "next_steps", mode="before")
    @classmethod
    def _flatten(cls, v):
        # models sometimes answer with a bullet list
        if isinstance(v, list):
            return "\n".join(str(item) for item in v)
        return "" if v is None else v

    @field_validator("action", mode="before")
    @classmethod
    def _action(cls, v):
        if isinstance(v, str) and v.strip().upper() == "APPOINT_NEXT_SESSION":
            return "APPOINT_NEXT_SESSION"
        return "FINISH_SESSION"
