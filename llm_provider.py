"""
llm_provider.py — Model Provider boundary and model routing.

The orchestration loop speaks a provider-neutral conversation:

    {"role": "system" | "user", "content": str}
    {"role": "assistant", "content": str, "tool_calls": [{"id", "name", "arguments"}]}
    {"role": "tool", "tool_call_id": str, "content": str}

AnthropicProvider translates that to the Messages API and back.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

import anthropic
from anthropic import AsyncAnthropic

logger = logging.getLogger("seo-agent")

CLAUDE_MODEL = os.getenv("CLAUDE_MODEL", "claude-sonnet-4-6")
CLAUDE_FAST_MODEL = os.getenv("CLAUDE_FAST_MODEL", "claude-haiku-4-5")
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "1200"))
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.3"))
LLM_RETRIES = int(os.getenv("LLM_RETRIES", "2"))


# ---------------------------------------------------------------------------
# Provider-neutral types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    arguments: Any  # raw payload from the model: a mapping or JSON text

    def to_message_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class ModelTurn:
    content: str = ""
    tool_invocations: tuple[ToolInvocation, ...] = field(default_factory=tuple)
    model: Optional[str] = None


class ModelProviderError(Exception):
    """The model call failed; the request cannot continue."""

    status_code = 502


class ModelProviderTimeout(ModelProviderError):
    status_code = 504


class ModelProvider(Protocol):
    async def complete(self, messages: Sequence[dict], tools: Sequence[dict], model: str) -> ModelTurn: ...


# ---------------------------------------------------------------------------
# Model routing
# ---------------------------------------------------------------------------

class IntentClassifier(Protocol):
    def predict(self, message: str, offered: Sequence[str]) -> Optional[str]: ...


class KeywordIntentClassifier:
    """Cheap substring heuristic guessing which capability the user is after."""

    _RULES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
        (("generate", "article"), ("CONTENT_generate_article", "generate_article")),
        (("connect", "gsc"), ("connect_gsc",)),
        (("sync",), ("GSC_sync_data", "sync_gsc_data")),
        (("update",), ("GSC_sync_data", "sync_gsc_data")),
        (("audit",), ("audit_site",)),
        (("check",), ("audit_site", "SEO_analyze_technical")),
    )

    def predict(self, message: str, offered: Sequence[str]) -> Optional[str]:
        msg = message.lower()
        for words, candidates in self._RULES:
            if all(w in msg for w in words):
                for name in candidates:
                    if not offered or name in offered:
                        return name
                return candidates[0]
        return None


QUALITY_INTENTS = frozenset({"CONTENT_generate_article", "generate_article", "create_content_strategy"})


def pick_model(intent: Optional[str]) -> str:
    """Longform content generation gets the stronger model; everything else the fast one."""
    if intent in QUALITY_INTENTS:
        return CLAUDE_MODEL
    return CLAUDE_FAST_MODEL


# ---------------------------------------------------------------------------
# Anthropic adapter
# ---------------------------------------------------------------------------

def _coerce_input(arguments: Any) -> dict:
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str):
        try:
            parsed = json.loads(arguments or "{}")
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def to_anthropic_messages(messages: Sequence[dict]) -> tuple[str, list[dict]]:
    """Split out the system prompt and convert the rest to Messages API format."""
    system_parts: list[str] = []
    out: list[dict] = []

    def push(role: str, blocks: list[dict]) -> None:
        if not blocks:
            return
        if out and out[-1]["role"] == role:
            out[-1]["content"].extend(blocks)
        else:
            out.append({"role": role, "content": blocks})

    for msg in messages:
        role = msg.get("role")
        content = msg.get("content") or ""
        if role == "system":
            if content:
                system_parts.append(content)
        elif role == "user":
            push("user", [{"type": "text", "text": content}] if content else [])
        elif role == "assistant":
            blocks: list[dict] = [{"type": "text", "text": content}] if content else []
            for call in msg.get("tool_calls") or []:
                blocks.append({
                    "type": "tool_use",
                    "id": call["id"],
                    "name": call["name"],
                    "input": _coerce_input(call.get("arguments")),
                })
            push("assistant", blocks)
        elif role == "tool" and msg.get("tool_call_id"):
            is_error = False
            try:
                is_error = json.loads(content).get("success") is False
            except (json.JSONDecodeError, AttributeError):
                pass
            push("user", [{
                "type": "tool_result",
                "tool_use_id": msg["tool_call_id"],
                "content": content,
                "is_error": is_error,
            }])

    return "\n\n".join(system_parts), out


def from_anthropic_response(response: Any, model: str) -> ModelTurn:
    texts: list[str] = []
    calls: list[ToolInvocation] = []
    for block in response.content:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            calls.append(ToolInvocation(id=block.id, name=block.name, arguments=block.input))
    return ModelTurn(content="".join(texts).strip(), tool_invocations=tuple(calls), model=model)


class AnthropicProvider:
    """Model Provider backed by Claude tool use."""

    def __init__(
        self,
        client: Optional[AsyncAnthropic] = None,
        max_tokens: int = LLM_MAX_TOKENS,
        temperature: float = LLM_TEMPERATURE,
        retries: int = LLM_RETRIES,
        timeout: Optional[float] = None,
    ):
        if client is None:
            # Retries are handled here so the SDK must not retry on its own
            client_kwargs: dict = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            client = AsyncAnthropic(**client_kwargs)
        self.client = client
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.retries = max(1, retries)

    async def complete(self, messages: Sequence[dict], tools: Sequence[dict], model: str) -> ModelTurn:
        system, converted = to_anthropic_messages(messages)
        kwargs: dict = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "system": system,
            "messages": converted,
        }
        if tools:
            kwargs["tools"] = list(tools)
            kwargs["tool_choice"] = {"type": "auto"}

        last_error: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                response = await self.client.messages.create(**kwargs)
                return from_anthropic_response(response, model)

            except anthropic.APITimeoutError as e:
                raise ModelProviderTimeout(f"Model call timed out ({model})") from e

            except (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.InternalServerError) as e:
                last_error = e
                is_rate_limit = isinstance(e, anthropic.RateLimitError)
                wait = 5 if is_rate_limit else 2 * attempt
                logger.warning(
                    f"Claude call attempt {attempt}/{self.retries} failed "
                    f"({'rate limit' if is_rate_limit else type(e).__name__}), retrying in {wait} s: {e}"
                )
                if attempt < self.retries:
                    await asyncio.sleep(wait)

            except anthropic.APIError as e:
                raise ModelProviderError(f"Model provider error: {e}") from e

        logger.error(f"Claude call failed after {self.retries} attempts: {last_error}")
        raise ModelProviderError(f"Model provider unavailable: {last_error}")
