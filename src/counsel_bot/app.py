from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional

from .config import Settings, load_settings
from .generation import GenerationClient
from .logging import setup_logging
from .orchestrator import MessageOrchestrator
from .repository import InMemorySessionRepository
from .state_machine import StateMachine
from .tasks import BackgroundTaskManager

logger = logging.getLogger(__name__)

BANNER = """Counsel Bot (LangGraph + AWS Bedrock)

Flow:
  resync → stall check → gate → communicator → (analysis | harvest → risk) → reply

Commands: /start  /reset  /status  /help  quit
"""

HELP_TEXT = """/start   start a new session
/reset   forget this session and start over
/status  show session state, risk level and background work
/help    this message
quit     leave"""

WELCOME_TEXT = "Hi, I'm here to listen. What's on your mind today?"
FAILURE_TEXT = "Sorry, something went wrong on my side. Please try sending that again."


async def print_replies(conversation_id: str, messages: List[str]) -> None:
    for text in messages:
        print("\nbot:", text, "\n")


def build_orchestrator(settings: Settings) -> MessageOrchestrator:
    o = settings.orchestrator
    return MessageOrchestrator(
        generator=GenerationClient(settings.generation),
        tasks=BackgroundTaskManager(timeout_s=o.background_task_timeout_s, sweep_interval_s=o.sweep_interval_s),
        state_machine=StateMachine(
            risk_window=o.risk_window,
            risk_factor_threshold=o.risk_factor_threshold,
            risk_max_drop=o.risk_max_drop,
        ),
        settings=o,
        repository=InMemorySessionRepository(history_limit=o.history_limit),
        reply_sink=print_replies,
    )


async def status_text(orchestrator: MessageOrchestrator, conversation_id: str) -> str:
    context = await orchestrator.repository.find_by_user_id(conversation_id)
    if context is None:
        return "No active session. Send a message or /start to begin."

    now = time.time()
    metrics = orchestrator.state_machine.metrics(context, now)
    running = [t for t in orchestrator.tasks.tasks_for(conversation_id) if not t.status.settled]
    lines = [
        f"state:            {context.state.value}",
        f"risk level:       {context.risk_level.value}",
        f"session length:   {int(now - context.session_started_at) // 60} min",
        f"messages:         {len(context.history)}",
        f"state changes:    {metrics.state_changes}",
        f"in current state: {metrics.current_state_duration_s:.0f}s",
        f"background tasks: {len(running)} running, {len(context.active_background_tasks)} outstanding",
    ]
    visits = orchestrator.state_machine.visits(context)
    if visits:
        lines.append("visited:          " + ", ".join(f"{s.value} x{n}" for s, n in visits.items()))
    if context.active_guidance is not None:
        lines.append(f"guidance step:    {context.active_guidance.current_step}")
    if context.ended:
        lines.append("session ended; /start to begin a new one")
    return "\n".join(lines)


async def handle_command(orchestrator: MessageOrchestrator, conversation_id: str, command: str) -> Optional[str]:
    repo = orchestrator.repository
    if command in ("/start", "/reset"):
        await repo.delete(conversation_id)
        await repo.create(conversation_id)
        return WELCOME_TEXT if command == "/start" else "Session reset. " + WELCOME_TEXT
    if command == "/status":
        return await status_text(orchestrator, conversation_id)
    if command == "/help":
        return HELP_TEXT
    return None


async def chat_turn(orchestrator: MessageOrchestrator, conversation_id: str, text: str) -> None:
    try:
        await orchestrator.handle_turn(conversation_id, text)
    except Exception:
        # user turn is already persisted; only the reply was lost
        logger.exception("Turn failed", extra={"conversation_id": conversation_id})
        print("\nbot:", FAILURE_TEXT, "\n")


async def run(settings: Settings) -> None:
    orchestrator = build_orchestrator(settings)
    conversation_id = settings.thread_id
    orchestrator.tasks.start()
    print(BANNER)

    try:
        while True:
            try:
                user = (await asyncio.to_thread(input, "you: ")).strip()
            except (EOFError, KeyboardInterrupt):
                print("\nbye.")
                return

            if user.lower() in {"q", "quit", "exit"}:
                print("bye.")
                return
            if not user:
                continue

            if user.startswith("/"):
                reply = await handle_command(orchestrator, conversation_id, user.split()[0].lower())
                print("\nbot:", reply or f"Unknown command {user}. Try /help.", "\n")
                continue

            await chat_turn(orchestrator, conversation_id, user)
    finally:
        await orchestrator.tasks.stop()


def main():
    settings = load_settings()
    setup_logging(settings.log_level, json_output=settings.log_json)
    asyncio.run(run(settings))


if __name__ == "__main__":
    main()
