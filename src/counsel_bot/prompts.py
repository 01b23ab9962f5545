from __future__ import annotations

from dataclasses import dataclass, replace
from typing import List, Type

from .config import PROMPTS_DIR
from .models import ConversationContext
from .responses import AnalysisResponse, BaseResponse, CommunicatorResponse, FinishingResponse


def load_prompt(name: str) -> str:
    path = PROMPTS_DIR / name
    if not path.exists():
        raise FileNotFoundError(f"Prompt file not found: {path}")
    return path.read_text(encoding="utf-8").strip()


@dataclass(frozen=True)
class RolePrompt:
    """System prompt for one generation role plus the schema its output must match."""

    role: str
    text: str
    schema: Type[BaseResponse]

    def bind(self, extra: str) -> "RolePrompt":
        if not extra.strip():
            return self
        return replace(self, text=f"{self.text}\n\n{extra.strip()}")

    def for_context(self, context: ConversationContext) -> "RolePrompt":
        return self.bind(render_context(context))


def render_context(context: ConversationContext) -> str:
    """Per-turn block appended to the system prompt: state, risk and active guidance."""
    lines: List[str] = [
        "CURRENT SESSION",
        f"- state: {context.state.value}",
        f"- risk level: {context.risk_level.value}",
    ]
    guidance = context.active_guidance
    if guidance is not None:
        lines.append("")
        lines.append("ACTIVE GUIDANCE")
        lines.append(f"- current step: {guidance.current_step}")
        if guidance.step_progress:
            lines.append(f"- step progress: {guidance.step_progress}")
        lines.append("- action plan:")
        lines.append(guidance.action_plan)
        if guidance.therapeutic_plan:
            lines.append(f"- therapeutic plan: {guidance.therapeutic_plan}")
        if guidance.safety_recommendations:
            lines.append("- safety recommendations:")
            lines.extend(f"  * {r}" for r in guidance.safety_recommendations)
    return "\n".join(lines)


def _role(role: str, filename: str, schema: Type[BaseResponse]) -> RolePrompt:
    return RolePrompt(role=role, text=load_prompt(filename), schema=schema)


COMMUNICATOR = _role("communicator", "communicator.txt", CommunicatorResponse)
PSYCHOLOGIST = _role("psychologist", "psychologist.txt", AnalysisResponse)
FINISHING = _role("finishing", "finishing.txt", FinishingResponse)

WAIT_SHORT_TEXT = load_prompt("wait_short.txt")
WAIT_LONG_TEXT = load_prompt("wait_long.txt")

# Appended when the communicator is asked to phrase an outcome rather than answer a new user turn.
FOLLOW_UP_NOTE = (
    "The specialist has just added new guidance (see the latest [internal] note). "
    "Continue the conversation with the user based on it."
)
CLOSING_NOTE = (
    "The session is ending. Using the latest [internal] summary, say goodbye warmly, "
    "recap the key recommendations in plain words and mention the next steps."
)
RECOVERY_NOTE = (
    "Something went wrong on our side while handling the user's last message. "
    "Apologise briefly and continue the conversation naturally."
)


def waiting_text(elapsed_s: float, short_window_s: float) -> str:
    return WAIT_SHORT_TEXT if elapsed_s < short_window_s else WAIT_LONG_TEXT
