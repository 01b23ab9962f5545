"""
Resilient client for the text-generation roles.

One ``generate`` call = format history -> blocking Bedrock call in a worker
thread raced against a timeout -> retry with doubling backoff -> parse and
validate against the role's schema.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Type

from botocore.exceptions import BotoCoreError, ClientError
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import ValidationError

from .circuit import CircuitBreaker
from .config import GenerationSettings
from .errors import CircuitOpenError, MalformedResponse, RemoteFailure
from .llm import bedrock_chat
from .models import HistoryMessage, Origin, Role
from .prompts import RolePrompt
from .responses import BaseResponse

logger = logging.getLogger(__name__)

# Bedrock error codes that will not get better by retrying.
NON_RETRYABLE_CODES = frozenset(
    {
        "ValidationException",
        "AccessDeniedException",
        "ResourceNotFoundException",
        "UnrecognizedClientException",
        "ModelNotReadyException",
    }
)

INTERNAL_PREFIX = "[internal]"
OPENING_NUDGE = "(The user has just opened the conversation.)"
CONTINUE_NUDGE = "(Continue the conversation.)"

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


# -------------------------
# History formatting
# -------------------------
def _format_turn(turn: HistoryMessage) -> BaseMessage:
    if turn.origin is Origin.USER:
        return HumanMessage(content=turn.text)
    if turn.origin is Origin.PSYCHOLOGIST or turn.role is Role.SYSTEM:
        # internal notes are context for the model, never spoken by it
        return HumanMessage(content=f"{INTERNAL_PREFIX} {turn.text}")
    return AIMessage(content=turn.text)


def format_history(history: Sequence[HistoryMessage]) -> List[BaseMessage]:
    """Map turns onto LangChain messages; the result starts and ends on a human turn."""
    msgs: List[BaseMessage] = [_format_turn(t) for t in history]
    if not msgs or not isinstance(msgs[0], HumanMessage):
        msgs.insert(0, HumanMessage(content=OPENING_NUDGE))
    if not isinstance(msgs[-1], HumanMessage):
        msgs.append(HumanMessage(content=CONTINUE_NUDGE))
    return msgs


# -------------------------
# Parsing
# -------------------------
def _strip_wrapping(raw: str) -> str:
    """Drop code fences and any prose around the outermost JSON object."""
    text = _FENCE_RE.sub("", raw).strip()
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return text
    return text[start:end + 1]


def _load_json(raw: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw.strip())
    except json.JSONDecodeError:
        try:
            data = json.loads(_strip_wrapping(raw))
        except json.JSONDecodeError as exc:
            raise MalformedResponse("Response is not valid JSON", raw=raw, cause=exc) from exc
    if not isinstance(data, dict):
        raise MalformedResponse(f"Expected a JSON object, got {type(data).__name__}", raw=raw)
    return data


def parse_response(raw: str, schema: Type[BaseResponse]) -> BaseResponse:
    data = _load_json(raw)
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        raise MalformedResponse(
            f"{schema.role} response failed validation",
            raw=raw,
            context={"errors": exc.errors(include_url=False)},
            cause=exc,
        ) from exc


# -------------------------
# Client
# -------------------------
class GenerationClient:
    def __init__(
        self,
        settings: Optional[GenerationSettings] = None,
        chat: Callable[..., str] = bedrock_chat,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or GenerationSettings()
        self._chat = chat
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self.settings.circuit_failure_threshold,
            reset_timeout_s=self.settings.circuit_reset_s,
        )
        self._sleep = sleep

    def _tier(self, use_high_tier: bool) -> Dict[str, Any]:
        s = self.settings
        if use_high_tier:
            return {
                "model_id": s.high_tier_model_id,
                "temperature": s.high_tier_temperature,
                "max_tokens": s.high_tier_max_tokens,
            }
        return {
            "model_id": s.low_tier_model_id,
            "temperature": s.low_tier_temperature,
            "max_tokens": s.low_tier_max_tokens,
        }

    async def _call_once(self, messages: List[BaseMessage], params: Dict[str, Any]) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._chat, messages, json_prefill=True, **params),
                timeout=self.settings.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            # the worker thread keeps running; its answer is simply dropped
            raise RemoteFailure(
                f"Generation timed out after {self.settings.timeout_s:g}s", cause=exc
            ) from exc
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            raise RemoteFailure(
                f"Bedrock returned {code or 'an error'}",
                retryable=code not in NON_RETRYABLE_CODES,
                context={"code": code},
                cause=exc,
            ) from exc
        except (BotoCoreError, OSError) as exc:
            raise RemoteFailure("Bedrock request failed", cause=exc) from exc
        except RemoteFailure:
            raise
        except Exception as exc:
            # e.g. an unreadable response envelope
            raise RemoteFailure("Bedrock call raised unexpectedly", cause=exc) from exc

    async def generate(
        self,
        history: Sequence[HistoryMessage],
        prompt: RolePrompt,
        use_high_tier: bool = False,
    ) -> BaseResponse:
        """Generate one structured response for ``prompt.role``.

        Raises:
            CircuitOpenError: the breaker is open, nothing was sent.
            RemoteFailure: the call failed and retries were exhausted (or the
                failure was not retryable).
            MalformedResponse: the service answered but the output did not
                parse or validate. Never retried.
        """
        messages = [SystemMessage(content=prompt.text), *format_history(history)]
        params = self._tier(use_high_tier)
        max_retries = self.settings.max_retries
        last_error: Optional[RemoteFailure] = None

        for attempt in range(max_retries + 1):
            if not self.breaker.allow_request():
                raise CircuitOpenError(
                    context={"role": prompt.role, "cooldown_s": self.breaker.remaining_cooldown()}
                )

            started = time.monotonic()
            try:
                raw = await self._call_once(messages, params)
            except RemoteFailure as exc:
                self.breaker.record_failure()
                last_error = exc
                if not exc.retryable:
                    raise
                if attempt == max_retries:
                    break
                delay = self.settings.backoff_base_s * (2 ** attempt)
                logger.warning(
                    "%s generation failed (%s); retrying in %.1fs",
                    prompt.role,
                    exc,
                    delay,
                    extra={"attempt": attempt + 1},
                )
                await self._sleep(delay)
                continue

            self.breaker.record_success()
            logger.debug(
                "%s generation succeeded",
                prompt.role,
                extra={"attempt": attempt + 1, "duration_ms": round((time.monotonic() - started) * 1000)},
            )
            return parse_response(raw, prompt.schema)

        raise RemoteFailure(
            f"{prompt.role} generation failed after {max_retries + 1} attempts",
            retryable=False,
            context={"role": prompt.role, "attempts": max_retries + 1},
            cause=last_error,
        )
