# counsel_bot/repository.py
from __future__ import annotations

import time
from typing import Dict, Optional, Protocol

from .models import ConversationContext


class SessionRepository(Protocol):
    """Where conversation contexts live between turns."""

    async def create(self, user_id: str) -> ConversationContext: ...

    async def find_by_user_id(self, user_id: str) -> Optional[ConversationContext]: ...

    async def update(self, context: ConversationContext) -> None: ...

    async def delete(self, user_id: str) -> None: ...


class InMemorySessionRepository:
    """Process-lifetime store; contents are lost on restart."""

    def __init__(self, history_limit: int = 100):
        self.history_limit = history_limit
        self._sessions: Dict[str, ConversationContext] = {}

    async def create(self, user_id: str) -> ConversationContext:
        now = time.time()
        context = ConversationContext(
            user_id=user_id,
            session_started_at=now,
            updated_at=now,
            history_limit=self.history_limit,
        )
        self._sessions[user_id] = context
        return context

    async def find_by_user_id(self, user_id: str) -> Optional[ConversationContext]:
        return self._sessions.get(user_id)

    async def update(self, context: ConversationContext) -> None:
        context.updated_at = time.time()
        self._sessions[context.user_id] = context

    async def delete(self, user_id: str) -> None:
        self._sessions.pop(user_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
