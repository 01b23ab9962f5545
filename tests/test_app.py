import pytest

from counsel_bot.app import FAILURE_TEXT, HELP_TEXT, WELCOME_TEXT, chat_turn, handle_command, status_text
from counsel_bot.models import ConversationState, Origin
from counsel_bot.orchestrator import MessageOrchestrator
from counsel_bot.repository import InMemorySessionRepository
from counsel_bot.tasks import BackgroundTaskManager

from conftest import communicator


@pytest.fixture()
def orchestrator(fake_generator):
    return MessageOrchestrator(
        generator=fake_generator,
        tasks=BackgroundTaskManager(),
        repository=InMemorySessionRepository(),
    )


@pytest.mark.asyncio
async def test_status_without_session(orchestrator):
    assert "No active session" in await status_text(orchestrator, "cli")


@pytest.mark.asyncio
async def test_start_reset_and_status(orchestrator, fake_generator):
    assert await handle_command(orchestrator, "cli", "/start") == WELCOME_TEXT

    fake_generator.queue("communicator", communicator("hi!"))
    await orchestrator.handle_turn("cli", "hello")
    status = await handle_command(orchestrator, "cli", "/status")
    assert ConversationState.GATHERING_INFO.value in status
    assert "state changes:    1" in status
    assert f"{ConversationState.GATHERING_INFO.value} x1" in status

    reply = await handle_command(orchestrator, "cli", "/reset")
    assert reply.startswith("Session reset.")
    context = await orchestrator.repository.find_by_user_id("cli")
    assert context.history == []
    assert context.state is ConversationState.INITIAL

    for task in orchestrator.tasks.tasks_for("cli"):
        await orchestrator.tasks.wait_for(task.id)


@pytest.mark.asyncio
async def test_help_and_unknown(orchestrator):
    assert await handle_command(orchestrator, "cli", "/help") == HELP_TEXT
    assert await handle_command(orchestrator, "cli", "/nope") is None


@pytest.mark.asyncio
async def test_failed_turn_shows_retry_message(orchestrator, fake_generator, capsys):
    fake_generator.queue("communicator", ValueError("bug in a node"), ValueError("bug again"))

    await chat_turn(orchestrator, "cli", "are you there?")

    assert FAILURE_TEXT in capsys.readouterr().out
    context = await orchestrator.repository.find_by_user_id("cli")
    assert any(m.text == "are you there?" and m.origin is Origin.USER for m in context.history)
