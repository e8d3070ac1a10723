import asyncio
import os

import pytest

# Keep tests off the real database, webhook and API before any module is imported
os.environ.setdefault("ACTIVITY_SINK", "none")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_seo_agent.db")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from database import init_db, make_engine  # noqa: E402
from executor import ResultEnvelope  # noqa: E402
from llm_provider import ModelTurn, ToolInvocation  # noqa: E402


class ScriptedProvider:
    """Model provider that replays a fixed list of turns and records every call."""

    def __init__(self, turns, delay: float = 0.0):
        self.turns = list(turns)
        self.delay = delay
        self.calls = []

    async def complete(self, messages, tools, model):
        self.calls.append({"messages": list(messages), "tools": list(tools), "model": model})
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.turns:
            return ModelTurn(content="Done talking.")
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        return turn


class LoopingProvider:
    """Always asks for the same tool, never answers."""

    def __init__(self, name="get_site_status", arguments=None, content=""):
        self.name = name
        self.arguments = arguments or {"site_url": "https://mysite.com"}
        self.content = content
        self.calls = 0

    async def complete(self, messages, tools, model):
        self.calls += 1
        return ModelTurn(
            content=self.content,
            tool_invocations=(ToolInvocation(f"call_{self.calls}", self.name, self.arguments),),
        )


class StubExecutor:
    """Executor returning canned envelopes per capability name."""

    def __init__(self, results=None, raises=None, delays=None):
        self.results = results or {}
        self.raises = raises or {}
        self.delays = delays or {}
        self.calls = []

    async def execute(self, capability, args):
        self.calls.append((capability.value, args))
        if capability.value in self.delays:
            await asyncio.sleep(self.delays[capability.value])
        if capability.value in self.raises:
            raise self.raises[capability.value]
        return self.results.get(capability.value, ResultEnvelope.ok({"capability": capability.value}))


class ListRecorder:
    def __init__(self):
        self.records = []

    def record(self, record):
        self.records.append(record)


def turn(*invocations, content=""):
    return ModelTurn(content=content, tool_invocations=tuple(invocations))


def call(call_id, name, arguments):
    return ToolInvocation(call_id, name, arguments)


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'activity.db'}")
    init_db(bind=engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)
