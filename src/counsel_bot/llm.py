# counsel_bot/llm.py
from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

import boto3
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .config import AWS_PROFILE, AWS_REGION, HIGH_TIER_MODEL_ID


@lru_cache(maxsize=None)
def bedrock_client(region: str = AWS_REGION, profile: Optional[str] = AWS_PROFILE):
    """Create (once per region/profile) a Bedrock runtime client."""
    if profile:
        session = boto3.Session(profile_name=profile, region_name=region)
        return session.client("bedrock-runtime", region_name=region)
    return boto3.client("bedrock-runtime", region_name=region)


def _append(convo: List[Dict[str, str]], role: str, content: str) -> None:
    # Anthropic requires strictly alternating user/assistant turns
    if convo and convo[-1]["role"] == role:
        convo[-1]["content"] = f"{convo[-1]['content']}\n\n{content}"
    else:
        convo.append({"role": role, "content": content})


def bedrock_chat(
    messages: Sequence[BaseMessage],
    max_tokens: int = 1000,
    temperature: float = 0.9,
    model_id: str = HIGH_TIER_MODEL_ID,
    json_prefill: bool = False,
) -> str:
    """
    Bedrock Anthropic Messages API call using LangChain BaseMessage objects.

    IMPORTANT:
    - system prompt must be top-level "system"
    - messages list must include ONLY roles "user" and "assistant"
    - with json_prefill the assistant turn is primed with "{" so the model
      answers with a bare JSON object; the brace is put back on the result
    """
    system_parts: List[str] = []
    convo: List[Dict[str, str]] = []

    for m in messages:
        content = m.content if isinstance(m.content, str) else str(m.content)
        if isinstance(m, SystemMessage):
            system_parts.append(content)
        elif isinstance(m, HumanMessage):
            _append(convo, "user", content)
        elif isinstance(m, AIMessage):
            _append(convo, "assistant", content)
        else:
            # fallback: treat unknown as assistant text
            _append(convo, "assistant", content)

    if json_prefill:
        _append(convo, "assistant", "{")

    system_text = "\n\n".join([s for s in system_parts if s.strip()]).strip()

    body: Dict[str, Any] = {
        "anthropic_version": "bedrock-2023-05-31",
        "max_tokens": max_tokens,
        "temperature": temperature,
        "messages": convo,
    }
    if system_text:
        body["system"] = system_text

    resp = bedrock_client().invoke_model(
        modelId=model_id,
        accept="application/json",
        contentType="application/json",
        body=json.dumps(body),
    )
    data = json.loads(resp["body"].read())

    out = []
    for block in data.get("content", []):
        if block.get("type") == "text":
            out.append(block.get("text", ""))
    text = "".join(out).strip()
    if json_prefill and not text.startswith("{"):
        text = "{" + text
    return text
