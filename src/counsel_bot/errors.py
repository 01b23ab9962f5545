"""
Error types raised by the generation client and the background task manager.

Illegal state transitions and history/state desynchronisation are not errors
here: the state machine returns ``None`` and the orchestrator resyncs and logs.
"""

from typing import Any, Dict, Optional


class CounselBotError(Exception):
    """Base error carrying a retry hint and structured context for logs."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.context = context or {}
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message} (caused by {type(self.cause).__name__}: {self.cause})"
        return self.message


# -------------------------
# Generation
# -------------------------
class GenerationError(CounselBotError):
    pass


class RemoteFailure(GenerationError):
    """Network error, timeout or error status from the generation service."""

    def __init__(self, message: str, *, retryable: bool = True, **kwargs):
        super().__init__(message, retryable=retryable, **kwargs)


class CircuitOpenError(RemoteFailure):
    """The circuit breaker is open; the call was not attempted."""

    def __init__(self, message: str = "Generation circuit is open", **kwargs):
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)


class MalformedResponse(GenerationError):
    """Output could not be parsed or failed schema validation. Never retried."""

    def __init__(self, message: str, *, raw: str = "", **kwargs):
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)
        self.raw = raw


# -------------------------
# Background tasks
# -------------------------
class TaskError(CounselBotError):
    pass


class TaskTimeout(TaskError):
    def __init__(self, task_id: str, timeout_s: float, **kwargs):
        super().__init__(
            f"Task {task_id} did not settle within {timeout_s:g}s",
            context={"task_id": task_id, "timeout_s": timeout_s},
            **kwargs,
        )
        self.task_id = task_id


class TaskNotFound(TaskError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found", context={"task_id": task_id})
        self.task_id = task_id
