"""
orchestrator.py — Multi-turn tool-calling loop.

One request is driven by one Orchestrator.run() call:

    AwaitingModel -> AwaitingToolResults -> AwaitingModel -> ... -> Done

The loop stops when the model answers without tool calls, when the turn
limit is reached, or when the wall-clock budget is spent.  Budget exhaustion
is not an error: the caller still gets the best answer gathered so far plus
every tool result.  Only a model-provider failure aborts the request.

Loop state is an immutable value; every turn produces a new LoopState.
"""

import asyncio
import json
import logging
import math
import os
import re
import time
import uuid
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Sequence

from activity import ActivityRecord, ActivityRecorder, NullActivityRecorder, args_fingerprint
from capabilities import get_capability, get_tool_schemas
from executor import ResultEnvelope
from llm_provider import (
    IntentClassifier,
    KeywordIntentClassifier,
    ModelProvider,
    ModelProviderError,
    ModelProviderTimeout,
    ModelTurn,
    ToolInvocation,
    pick_model,
)
from validation import ValidationFailure, explain_failure, validate_arguments

logger = logging.getLogger("seo-agent")

MAX_TOOL_STEPS = int(os.getenv("LLM_MAX_TOOL_STEPS", "5"))
MAX_RUNTIME_SECONDS = float(os.getenv("LLM_MAX_RUNTIME_SECONDS", "30"))
MODEL_CALL_TIMEOUT_SECONDS = float(os.getenv("LLM_CALL_TIMEOUT_SECONDS", "15"))
HISTORY_TOKEN_BUDGET = int(os.getenv("LLM_HISTORY_TOKEN_BUDGET", "6000"))

MAX_STEPS_CONTENT = "Completed after maximum tool steps."
DEADLINE_CONTENT = "I ran out of time before finishing. Here is what I completed so far."
EMPTY_ANSWER_CONTENT = "Done."

INVALID_ARGS_ERROR = "Invalid function arguments format"
UNAUTHORIZED_SITE_ERROR = "Unauthorized site access"
PAGE_URL_FIELDS = ("target_url", "page_url")

_ROLES = {"user", "assistant", "tool", "system"}


@dataclass(frozen=True)
class LoopLimits:
    max_steps: int = MAX_TOOL_STEPS
    max_runtime_s: float = MAX_RUNTIME_SECONDS
    model_call_timeout_s: float = MODEL_CALL_TIMEOUT_SECONDS
    history_token_budget: int = HISTORY_TOKEN_BUDGET

    def __post_init__(self):
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if self.model_call_timeout_s >= self.max_runtime_s:
            raise ValueError("model_call_timeout_s must be shorter than max_runtime_s")
        if self.history_token_budget < 0:
            raise ValueError("history_token_budget must not be negative")


# ---------------------------------------------------------------------------
# Request / result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrchestrationRequest:
    system_prompt: str
    user_message: str
    user_token: str
    history: tuple[dict, ...] = ()
    site_url: Optional[str] = None
    available_tools: Optional[tuple[str, ...]] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


@dataclass(frozen=True)
class OrchestrationResult:
    content: str
    tool_results: dict
    steps: int
    model: Optional[str]
    stop_reason: str

    def to_response(self) -> dict:
        return {
            "success": True,
            "content": self.content,
            "toolResults": self.tool_results,
            "steps": self.steps,
            "model": self.model,
        }


@dataclass(frozen=True)
class LoopState:
    started_at: float
    steps: int = 0
    turn_messages: tuple[dict, ...] = ()
    tool_results: Mapping[str, dict] = field(default_factory=lambda: MappingProxyType({}))
    last_content: str = ""
    model: Optional[str] = None

    def elapsed(self, now: float) -> float:
        return now - self.started_at

    def with_model(self, model: str) -> "LoopState":
        return replace(self, model=model)

    def with_turn(
        self,
        assistant_message: dict,
        tool_messages: Sequence[dict],
        results: Mapping[str, dict],
    ) -> "LoopState":
        merged = dict(self.tool_results)
        merged.update(results)
        return replace(
            self,
            steps=self.steps + 1,
            turn_messages=self.turn_messages + (assistant_message, *tool_messages),
            tool_results=MappingProxyType(merged),
            last_content=assistant_message.get("content") or self.last_content,
        )


# ---------------------------------------------------------------------------
# History bounding
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Approximate token count: about four characters per token. Not a tokenizer."""
    return math.ceil(len(text) / 4)


def estimate_message_tokens(message: Mapping[str, Any]) -> int:
    return estimate_tokens(json.dumps(message, default=str))


def trim_history(history: Sequence[dict], max_tokens: int) -> list[dict]:
    """Keep the most recent messages whose estimated size fits in max_tokens.

    The kept window is always a contiguous suffix of history.  Tool results
    whose assistant message fell outside the window are dropped too, so the
    model never sees an orphan result.
    """
    total = 0
    kept: list[dict] = []
    for message in reversed(history):
        cost = estimate_message_tokens(message)
        if total + cost > max_tokens:
            break
        total += cost
        kept.append(message)
    kept.reverse()

    while kept and kept[0].get("role") == "tool":
        kept.pop(0)
    return kept


def normalize_message(message: Mapping[str, Any]) -> Optional[dict]:
    """Coerce a client-supplied history message into the neutral shape."""
    role = message.get("role")
    if role not in _ROLES:
        return None
    out: dict = {"role": role, "content": message.get("content") or ""}
    if role == "assistant" and message.get("tool_calls"):
        calls = []
        for call in message["tool_calls"]:
            # Accept both {"name", "arguments"} and OpenAI-style {"function": {...}}
            fn = call.get("function") or {}
            calls.append({
                "id": call.get("id"),
                "name": call.get("name") or fn.get("name"),
                "arguments": call.get("arguments", fn.get("arguments")),
            })
        out["tool_calls"] = [c for c in calls if c["id"] and c["name"]]
    if role == "tool":
        if not message.get("tool_call_id"):
            return None
        out["tool_call_id"] = message["tool_call_id"]
    return out


def drop_orphan_tool_messages(history: Sequence[dict]) -> list[dict]:
    """Pair tool calls with their results.

    Tool messages not answering the immediately preceding assistant turn are
    removed, and so are tool calls that never received a result.
    """
    out: list[dict] = []
    open_ids: set[str] = set()
    answered: set[str] = set()
    for message in history:
        role = message["role"]
        if role == "tool":
            if message["tool_call_id"] in open_ids:
                open_ids.discard(message["tool_call_id"])
                answered.add(message["tool_call_id"])
                out.append(message)
            continue
        open_ids = {c["id"] for c in message.get("tool_calls", [])} if role == "assistant" else set()
        out.append(message)

    paired: list[dict] = []
    for message in out:
        if message["role"] == "assistant" and message.get("tool_calls"):
            calls = [c for c in message["tool_calls"] if c["id"] in answered]
            if not calls and not message["content"]:
                continue
            message = {**message, "tool_calls": calls} if calls else {"role": "assistant", "content": message["content"]}
        paired.append(message)
    return paired


def prepare_history(raw_history: Sequence[Mapping[str, Any]]) -> tuple[dict, ...]:
    normalized = [m for m in (normalize_message(m) for m in raw_history) if m is not None]
    # The system prompt is supplied separately
    normalized = [m for m in normalized if m["role"] != "system"]
    return tuple(drop_orphan_tool_messages(normalized))


def build_conversation(
    system_prompt: str,
    history: Sequence[dict],
    user_message: str,
    max_history_tokens: int,
    turn_messages: Sequence[dict] = (),
) -> list[dict]:
    """System prompt, trimmed prior history, the newest user message, then this request's turns.

    Messages produced during the current request are never trimmed; they
    consume the history budget first.
    """
    turn_cost = sum(estimate_message_tokens(m) for m in turn_messages)
    trimmed = trim_history(history, max(0, max_history_tokens - turn_cost))
    return [
        {"role": "system", "content": system_prompt},
        *trimmed,
        {"role": "user", "content": user_message},
        *turn_messages,
    ]


# ---------------------------------------------------------------------------
# Site ownership
# ---------------------------------------------------------------------------

def normalize_site_url(url: str) -> str:
    url = url.strip().lower()
    url = url.removeprefix("sc-domain:")
    url = re.sub(r"^https?://", "", url)
    url = url.removeprefix("www.")
    return url.rstrip("/")


def site_matches(target: Optional[str], authorized: Optional[str]) -> bool:
    """True unless both sites are known and differ after normalization."""
    if not target or not authorized:
        return True
    return normalize_site_url(target) == normalize_site_url(authorized)



def page_on_site(page_url: Optional[str], authorized: Optional[str]) -> bool:
    """True unless both are known and the page's host is not the authorized site's host."""
    if not page_url or not authorized:
        return True
    host = normalize_site_url(page_url).split("/", 1)[0]
    return host == normalize_site_url(authorized).split("/", 1)[0]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def _unique_ids(invocations: Sequence[ToolInvocation], taken: Mapping[str, Any]) -> list[ToolInvocation]:
    """Make invocation ids unique within the request so no result is overwritten."""
    seen = set(taken)
    out = []
    for inv in invocations:
        inv_id = inv.id or "call"
        candidate, n = inv_id, 1
        while candidate in seen:
            n += 1
            candidate = f"{inv_id}_{n}"
        seen.add(candidate)
        out.append(inv if candidate == inv.id else replace(inv, id=candidate))
    return out


class Orchestrator:
    """Drives one conversation through the model and the capability executor."""

    def __init__(
        self,
        provider: ModelProvider,
        executor,
        recorder: Optional[ActivityRecorder] = None,
        classifier: Optional[IntentClassifier] = None,
        limits: Optional[LoopLimits] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.executor = executor
        self.recorder = recorder or NullActivityRecorder()
        self.classifier = classifier or KeywordIntentClassifier()
        self.limits = limits or LoopLimits()
        self.clock = clock

    async def run(self, request: OrchestrationRequest) -> OrchestrationResult:
        rid = request.request_id
        if request.available_tools:
            tools = get_tool_schemas(names=list(request.available_tools))
        else:
            tools = get_tool_schemas()
        offered = frozenset(t["name"] for t in tools)

        intent = self.classifier.predict(request.user_message, sorted(offered))
        state = LoopState(started_at=self.clock())
        logger.info(f"[{rid}] Orchestration starting ({len(tools)} tools offered, intent={intent})")

        while state.steps < self.limits.max_steps:
            if state.elapsed(self.clock()) > self.limits.max_runtime_s:
                logger.warning(f"[{rid}] Runtime limit exceeded after {state.steps} steps")
                return self._finish(state, "deadline", DEADLINE_CONTENT)

            # Routing happens before the call; only the opening turn follows the intent hint
            model = pick_model(intent if state.steps == 0 else None)
            state = state.with_model(model)
            messages = build_conversation(
                request.system_prompt,
                request.history,
                request.user_message,
                self.limits.history_token_budget,
                state.turn_messages,
            )
            turn = await self._call_model(rid, messages, tools, model)

            if not turn.tool_invocations:
                logger.info(f"[{rid}] Final answer after {state.steps} steps ({model})")
                return OrchestrationResult(
                    content=turn.content or EMPTY_ANSWER_CONTENT,
                    tool_results=dict(state.tool_results),
                    steps=state.steps,
                    model=model,
                    stop_reason="completed",
                )

            invocations = _unique_ids(turn.tool_invocations, state.tool_results)
            logger.info(f"[{rid}] Step {state.steps + 1}: {', '.join(i.name for i in invocations)}")

            # Every invocation settles before the next model call
            outcomes = await asyncio.gather(
                *(self._run_invocation(request, inv, offered) for inv in invocations),
                return_exceptions=True,
            )
            envelopes = [
                o if isinstance(o, ResultEnvelope) else ResultEnvelope.fail(f"{type(o).__name__}: {o}")
                for o in outcomes
            ]

            assistant_message = {
                "role": "assistant",
                "content": turn.content,
                "tool_calls": [inv.to_message_dict() for inv in invocations],
            }
            tool_messages = [
                {
                    "role": "tool",
                    "tool_call_id": inv.id,
                    "content": json.dumps(env.to_dict(), default=str),
                }
                for inv, env in zip(invocations, envelopes)
            ]
            results = {inv.id: env.to_dict() for inv, env in zip(invocations, envelopes)}
            state = state.with_turn(assistant_message, tool_messages, results)

        logger.warning(f"[{rid}] Maximum tool steps ({self.limits.max_steps}) reached")
        return self._finish(state, "max_steps", MAX_STEPS_CONTENT)

    def _finish(self, state: LoopState, reason: str, fallback: str) -> OrchestrationResult:
        return OrchestrationResult(
            content=state.last_content or fallback,
            tool_results=dict(state.tool_results),
            steps=state.steps,
            model=state.model,
            stop_reason=reason,
        )

    async def _call_model(self, rid: str, messages: list[dict], tools: list[dict], model: str) -> ModelTurn:
        timeout = self.limits.model_call_timeout_s
        try:
            return await asyncio.wait_for(self.provider.complete(messages, tools, model), timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"[{rid}] Model call timed out after {timeout}s ({model})")
            raise ModelProviderTimeout(f"Model call timed out after {timeout:g}s") from e
        except ModelProviderError:
            raise
        except Exception as e:
            logger.error(f"[{rid}] Model call failed: {type(e).__name__}: {e}", exc_info=True)
            raise ModelProviderError(f"Model provider failed: {e}") from e

    async def _run_invocation(
        self,
        request: OrchestrationRequest,
        inv: ToolInvocation,
        offered: frozenset[str],
    ) -> ResultEnvelope:
        rid = request.request_id
        try:
            raw_args = inv.arguments
            if isinstance(raw_args, (str, bytes)):
                try:
                    raw_args = json.loads(raw_args or "{}")
                except json.JSONDecodeError:
                    logger.error(f"[{rid}] Invalid arguments JSON for {inv.name}")
                    return ResultEnvelope.fail(INVALID_ARGS_ERROR)
            if raw_args is not None and not isinstance(raw_args, Mapping):
                logger.error(f"[{rid}] Non-object arguments for {inv.name}")
                return ResultEnvelope.fail(INVALID_ARGS_ERROR)

            if get_capability(inv.name) is not None and inv.name not in offered:
                logger.error(f"[{rid}] {inv.name} was not offered for this request")
                return ResultEnvelope.fail(f"Function not available: {inv.name}")

            validation = validate_arguments(inv.name, raw_args)
            if isinstance(validation, ValidationFailure):
                logger.error(f"[{rid}] Argument validation failed: {validation.message}")
                return ResultEnvelope.fail(
                    f"Validation error: {validation.message}",
                    data={
                        "errors": [e.to_dict() for e in validation.errors],
                        "explanation": explain_failure(validation, request.user_message),
                    },
                )

            args = validation.args
            target_site = getattr(args, "site_url", None)
            pages = [getattr(args, f, None) for f in PAGE_URL_FIELDS]
            if not site_matches(target_site, request.site_url) or not all(
                page_on_site(p, request.site_url) for p in pages
            ):
                logger.error(
                    f"[{rid}] Site URL mismatch for {inv.name}: {[target_site, *pages]!r} vs {request.site_url!r}"
                )
                return ResultEnvelope.fail(UNAUTHORIZED_SITE_ERROR)

            started = self.clock()
            try:
                result = await self.executor.execute(validation.capability, args)
            except Exception as e:
                logger.error(f"[{rid}] Tool execution failed: {inv.name}: {type(e).__name__}: {e}")
                result = ResultEnvelope.fail(str(e) or type(e).__name__)
            elapsed_ms = int((self.clock() - started) * 1000)

            args_dict = args.model_dump(mode="json")
            logger.info(
                f"[{rid}] Tool executed: {inv.name} in {elapsed_ms}ms "
                f"(success={result.success}, args={args_fingerprint(args_dict)})"
            )
            self._record(request, inv.name, args_dict, result, elapsed_ms)
            return result

        except Exception as e:
            logger.error(f"[{rid}] Invocation {inv.id} ({inv.name}) failed: {type(e).__name__}: {e}", exc_info=True)
            return ResultEnvelope.fail(str(e) or type(e).__name__)

    def _record(
        self,
        request: OrchestrationRequest,
        name: str,
        args: dict,
        result: ResultEnvelope,
        elapsed_ms: int,
    ) -> None:
        try:
            self.recorder.record(ActivityRecord(
                user_token=request.user_token,
                capability=name,
                args=args,
                result=result.to_dict(),
                site_url=request.site_url,
                execution_time_ms=elapsed_ms,
            ))
        except Exception as e:
            logger.error(f"[{request.request_id}] Activity recording failed for {name}: {e}")
