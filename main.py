# =============================================================================
# SEO Agent — FastAPI Backend
# =============================================================================
# LLM tool-orchestration service for the SEOAgent dashboard.
#
# The dashboard posts a conversation; the model may call platform capabilities
# (GSC sync, article generation, technical checks, ...) for up to a bounded
# number of turns before it answers.
#
# Run:  python main.py
# Test: curl http://localhost:8000/health
# =============================================================================

import asyncio
import logging
import os
import time
from collections import defaultdict
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

load_dotenv()                       # reads .env into os.environ before the modules below

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger("seo-agent")

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
ACTIVITY_SINK = os.getenv("ACTIVITY_SINK", "db").lower()

if not ANTHROPIC_API_KEY:
    logger.warning("⚠️  ANTHROPIC_API_KEY is not set, model calls will fail")

from activity import (                                        # noqa: E402
    ActivityRecord,
    BestEffortRecorder,
    DatabaseActivityRecorder,
    HttpActivityRecorder,
    NullActivityRecorder,
    ACTIVITY_WEBHOOK_URL,
)
from capabilities import REGISTRY, get_descriptor, get_tool_schemas, tools_for_setup  # noqa: E402
from database import SessionLocal, init_db                    # noqa: E402
from executor import SEOAGENT_API_URL, CapabilityExecutor     # noqa: E402
from llm_provider import (                                    # noqa: E402
    CLAUDE_FAST_MODEL,
    CLAUDE_MODEL,
    AnthropicProvider,
    ModelProvider,
    ModelProviderError,
)
from orchestrator import (                                    # noqa: E402
    LoopLimits,
    OrchestrationRequest,
    Orchestrator,
    prepare_history,
)

if ACTIVITY_SINK == "http" and not ACTIVITY_WEBHOOK_URL:
    logger.warning("⚠️  ACTIVITY_SINK=http but ACTIVITY_WEBHOOK_URL is not set, activity will be dropped")

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SEO Agent API",
    version="1.0.0",
    description="LLM tool orchestration for the SEOAgent platform",
)

ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    if ACTIVITY_SINK == "db":
        init_db()
        logger.info("Database tables ready")


@app.on_event("shutdown")
async def shutdown_event():
    recorder = get_recorder()
    if isinstance(recorder, BestEffortRecorder):
        await recorder.drain()


# ---------------------------------------------------------------------------
# Simple in-memory rate limiter (per IP, one-minute window)
# ---------------------------------------------------------------------------

_rate_buckets: dict[str, list[float]] = defaultdict(list)
RATE_LIMIT = int(os.getenv("RATE_LIMIT_PER_MIN", "30"))


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    if request.url.path.startswith(("/health", "/info", "/docs", "/openapi")):
        return await call_next(request)

    ip = request.client.host if request.client else "unknown"
    now = time.time()
    _rate_buckets[ip] = [t for t in _rate_buckets[ip] if now - t < 60]

    if len(_rate_buckets[ip]) >= RATE_LIMIT:
        # Middleware runs outside the exception handlers, so answer directly
        return JSONResponse(status_code=429, content={"error": "Rate limit exceeded, try again in a minute"})

    _rate_buckets[ip].append(now)
    return await call_next(request)


# =============================================================================
# Dependencies
# =============================================================================

@lru_cache(maxsize=1)
def get_provider() -> ModelProvider:
    return AnthropicProvider()


@lru_cache(maxsize=1)
def get_recorder():
    if ACTIVITY_SINK == "db":
        return DatabaseActivityRecorder()
    if ACTIVITY_SINK == "http" and ACTIVITY_WEBHOOK_URL:
        return HttpActivityRecorder()
    return NullActivityRecorder()


def get_executor_factory() -> Callable[[str], Any]:
    return CapabilityExecutor


def get_limits() -> LoopLimits:
    return LoopLimits()


def get_session_factory():
    return SessionLocal


# =============================================================================
# Request / response models
# =============================================================================

class ChatMessage(BaseModel):
    role: str
    content: Optional[str] = ""
    tool_calls: Optional[list[dict]] = None
    tool_call_id: Optional[str] = None


class LLMRequest(BaseModel):
    # Required fields are checked in the handler so the caller gets the 400 body it expects
    systemPrompt: str = ""
    history: list[ChatMessage] = Field(default_factory=list)
    userMessage: Optional[str] = None
    userToken: Optional[str] = None
    siteUrl: Optional[str] = None
    availableTools: Optional[list[str]] = None


class ActivityRequest(BaseModel):
    userToken: Optional[str] = None
    functionName: Optional[str] = None
    functionArgs: dict = Field(default_factory=dict)
    result: dict = Field(default_factory=dict)
    siteUrl: Optional[str] = None
    executionTimeMs: Optional[int] = None


# =============================================================================
# Orchestration endpoint
# =============================================================================

@app.post("/api/llm")
async def llm_endpoint(
    body: LLMRequest,
    provider: ModelProvider = Depends(get_provider),
    recorder=Depends(get_recorder),
    executor_factory: Callable[[str], Any] = Depends(get_executor_factory),
    limits: LoopLimits = Depends(get_limits),
):
    """Run the tool loop for one user message and return the final answer."""
    if not body.userToken or not body.userMessage:
        return JSONResponse(status_code=400, content={"error": "Missing required fields"})

    request = OrchestrationRequest(
        system_prompt=body.systemPrompt,
        user_message=body.userMessage,
        user_token=body.userToken,
        history=prepare_history([m.model_dump(exclude_none=True) for m in body.history]),
        site_url=body.siteUrl,
        available_tools=tuple(body.availableTools) if body.availableTools else None,
    )
    orchestrator = Orchestrator(
        provider=provider,
        executor=executor_factory(body.userToken),
        recorder=recorder,
        limits=limits,
    )

    try:
        result = await orchestrator.run(request)
    except ModelProviderError as e:
        logger.error(f"[{request.request_id}] Model provider failure: {e}")
        return JSONResponse(status_code=e.status_code, content={"success": False, "error": str(e)})
    except Exception as e:
        logger.error(f"[{request.request_id}] Orchestration failed: {type(e).__name__}: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    logger.info(
        f"[{request.request_id}] Completed: steps={result.steps} "
        f"tools={len(result.tool_results)} stop={result.stop_reason}"
    )
    return result.to_response()


# =============================================================================
# Capability catalogue & activity
# =============================================================================

@app.get("/agent/capabilities")
async def list_capabilities(category: Optional[str] = None, gsc_connected: Optional[bool] = None):
    """Catalogue of tools; ``gsc_connected`` narrows it to what a site can use at its setup stage."""
    categories = [category] if category else None
    names = tools_for_setup(gsc_connected) if gsc_connected is not None else None
    tools = get_tool_schemas(categories=categories, names=names)
    capabilities = []
    for tool in tools:
        descriptor = get_descriptor(tool["name"])
        capabilities.append({
            **tool,
            "category": descriptor.category,
            "requires_setup": descriptor.requires_setup,
            "output_shape": dict(descriptor.output_shape) if descriptor.output_shape else None,
        })
    return {"capabilities": capabilities, "count": len(tools)}


@app.post("/agent/record-activity")
async def record_activity(body: ActivityRequest, session_factory=Depends(get_session_factory)):
    """Persist an activity record sent by another service."""
    if not body.userToken or not body.functionName:
        raise HTTPException(400, "Missing required fields")

    record = ActivityRecord(
        user_token=body.userToken,
        capability=body.functionName,
        args=body.functionArgs,
        result=body.result,
        site_url=body.siteUrl,
        execution_time_ms=body.executionTimeMs,
    )
    recorder = DatabaseActivityRecorder(session_factory)
    try:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, recorder.write_sync, record)
    except Exception as e:
        logger.error(f"Failed to record activity for {body.functionName}: {e}", exc_info=True)
        raise HTTPException(500, "Failed to record activity")

    return {"success": True}


# =============================================================================
# Health & info
# =============================================================================

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "timestamp": datetime.now().isoformat(),
        "api_key_set": bool(ANTHROPIC_API_KEY),
        "activity_sink": ACTIVITY_SINK,
    }


@app.get("/info")
async def info():
    limits = get_limits()
    return {
        "name": "SEO Agent API",
        "version": "1.0.0",
        "models": {"quality": CLAUDE_MODEL, "fast": CLAUDE_FAST_MODEL},
        "backend": SEOAGENT_API_URL,
        "capabilities": len(REGISTRY),
        "limits": {
            "max_steps": limits.max_steps,
            "max_runtime_s": limits.max_runtime_s,
            "model_call_timeout_s": limits.model_call_timeout_s,
            "history_token_budget": limits.history_token_budget,
        },
        "endpoints": {
            "llm": "POST /api/llm",
            "capabilities": "GET /agent/capabilities",
            "record_activity": "POST /agent/record-activity",
            "health": "GET /health",
        },
    }


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
