"""
activity.py — Activity Recorder: best-effort sinks for executed tool calls.

record() is fire-and-forget.  It schedules the write on the running event
loop and returns immediately; a failed write is logged and dropped, never
surfaced to the orchestration loop or the HTTP caller.
"""

import asyncio
import base64
import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx
from sqlalchemy.orm import sessionmaker

from database import AgentAction, AgentEvent, AgentIdea, SessionLocal

logger = logging.getLogger("seo-agent")

ACTIVITY_WEBHOOK_URL = os.getenv("ACTIVITY_WEBHOOK_URL", "")


@dataclass(frozen=True)
class ActivityRecord:
    user_token: str
    capability: str
    args: dict
    result: dict
    site_url: Optional[str] = None
    execution_time_ms: Optional[int] = None

    @property
    def success(self) -> bool:
        return bool(self.result.get("success"))


class ActivityRecorder(Protocol):
    def record(self, record: ActivityRecord) -> None: ...


def args_fingerprint(args: Any) -> str:
    """Short, stable fingerprint of tool arguments for log lines."""
    raw = json.dumps(args, sort_keys=True, default=str).encode()
    return base64.b64encode(raw).decode()[:8]


# ---------------------------------------------------------------------------
# Action / idea bookkeeping
# ---------------------------------------------------------------------------

_ACTION_TYPES = {
    "sync_gsc_data": "data_sync",
    "GSC_sync_data": "data_sync",
    "generate_article": "content_creation",
    "CONTENT_generate_article": "content_creation",
    "CONTENT_optimize_existing": "content_optimization",
    "SEO_analyze_technical": "technical_analysis",
    "SEO_apply_fixes": "technical_fix",
    "SEO_crawl_website": "crawl_planning",
    "SITEMAP_generate_submit": "sitemap",
    "CMS_wordpress_publish": "publishing",
    "CMS_strapi_publish": "publishing",
    "audit_site": "site_audit",
}

_ACTION_TITLES = {
    "sync_gsc_data": lambda a: f"Sync GSC data for {a.get('site_url') or 'website'}",
    "GSC_sync_data": lambda a: f"Sync GSC data for {a.get('site_url') or 'website'}",
    "generate_article": lambda a: f"Generate article: {a.get('specific_topic') or 'SEO content'}",
    "CONTENT_generate_article": lambda a: (
        f"Generate article: {a.get('specific_topic') or a.get('topic') or 'SEO content'}"
    ),
    "SEO_analyze_technical": lambda a: f"Technical SEO check for {a.get('site_url') or 'website'}",
    "audit_site": lambda a: f"Site audit for {a.get('site_url') or 'website'}",
}


def should_create_action(capability: str) -> bool:
    return capability in _ACTION_TYPES


def action_type(capability: str) -> str:
    return _ACTION_TYPES.get(capability, "general")


def action_title(capability: str, args: dict) -> str:
    generator = _ACTION_TITLES.get(capability)
    return generator(args) if generator else f"Execute {capability.replace('_', ' ')}"


def ice_score(args: dict) -> int:
    """Rough Impact/Confidence/Ease score when the model did not supply one."""
    if args.get("ice_score"):
        try:
            return min(100, max(1, int(args["ice_score"])))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric ice_score: {args['ice_score']!r}")
    score = 50
    if args.get("evidence"):
        score += 20
    if len(str(args.get("hypothesis") or "")) > 100:
        score += 15
    if args.get("site_url"):
        score += 10
    return min(100, max(0, score))


# ---------------------------------------------------------------------------
# Recorders
# ---------------------------------------------------------------------------

class NullActivityRecorder:
    def record(self, record: ActivityRecord) -> None:
        return None


class BestEffortRecorder:
    """Base class for fire-and-forget sinks. Subclasses implement write()."""

    def __init__(self) -> None:
        self._pending: set[asyncio.Task] = set()

    def record(self, record: ActivityRecord) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._safe_write(record))
        except RuntimeError:
            logger.warning(f"No running event loop, activity for {record.capability} dropped")
            return
        # Keep a strong reference until the write finishes
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _safe_write(self, record: ActivityRecord) -> None:
        try:
            await self.write(record)
        except Exception as e:
            logger.error(f"Failed to record activity for {record.capability}: {type(e).__name__}: {e}")

    async def write(self, record: ActivityRecord) -> None:
        raise NotImplementedError

    async def drain(self) -> None:
        """Wait for outstanding writes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class DatabaseActivityRecorder(BestEffortRecorder):
    """Writes agent_events (+ agent_actions / agent_ideas) rows."""

    def __init__(self, session_factory: sessionmaker = SessionLocal) -> None:
        super().__init__()
        self.session_factory = session_factory

    async def write(self, record: ActivityRecord) -> None:
        # Blocking DB write runs in the thread pool so the event loop stays free
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.write_sync, record)

    def write_sync(self, record: ActivityRecord) -> None:
        now = datetime.utcnow()
        site_url = record.site_url or record.args.get("site_url") or "unknown"
        db = self.session_factory()
        try:
            db.add(AgentEvent(
                id=str(uuid.uuid4()),
                user_token=record.user_token,
                event_type="function_called",
                event_data=json.dumps({
                    "function_name": record.capability,
                    "arguments": record.args,
                    "result": record.result,
                    "execution_time_ms": record.execution_time_ms,
                    "site_url": record.site_url,
                    "success": record.success,
                }, default=str).replace("\x00", ""),
                created_at=now,
            ))
            db.commit()
            logger.info(f"Recorded function call: {record.capability} (success={record.success})")

            # Derived rows must never take the event down with them.
            if should_create_action(record.capability):
                try:
                    db.add(AgentAction(
                        id=str(uuid.uuid4()),
                        user_token=record.user_token,
                        site_url=site_url,
                        action_type=action_type(record.capability),
                        title=action_title(record.capability, record.args)[:255],
                        description=f"Agent executed: {record.capability}",
                        parameters=json.dumps(record.args, default=str),
                        status="completed" if record.success else "failed",
                        result_data=json.dumps(record.result, default=str),
                        created_at=now,
                        completed_at=now if record.success else None,
                    ))
                    db.commit()
                except Exception as e:
                    db.rollback()
                    logger.error(f"Failed to create action for {record.capability}: {e}")

            if record.capability == "create_idea" and record.success:
                try:
                    db.add(AgentIdea(
                        id=str(uuid.uuid4()),
                        user_token=record.user_token,
                        site_url=site_url,
                        title=str(record.args.get("title") or "Generated Idea")[:255],
                        description=str(record.args.get("hypothesis") or ""),
                        hypothesis=str(record.args.get("hypothesis") or ""),
                        evidence=json.dumps(record.args.get("evidence") or {}, default=str),
                        status="open",
                        ice_score=ice_score(record.args),
                        created_at=now,
                    ))
                    db.commit()
                except Exception as e:
                    db.rollback()
                    logger.error(f"Failed to create idea: {e}")
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class HttpActivityRecorder(BestEffortRecorder):
    """Posts each record to an activity endpoint (e.g. POST /agent/record-activity)."""

    def __init__(
        self,
        url: str = ACTIVITY_WEBHOOK_URL,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def write(self, record: ActivityRecord) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as http:
            resp = await http.post(self.url, json=record_to_payload(record))
            resp.raise_for_status()


def record_to_payload(record: ActivityRecord) -> dict:
    data = asdict(record)
    return {
        "userToken": data["user_token"],
        "functionName": data["capability"],
        "functionArgs": data["args"],
        "result": data["result"],
        "siteUrl": data["site_url"],
        "executionTimeMs": data["execution_time_ms"],
    }
