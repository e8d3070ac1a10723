"""Endpoint tests for the FastAPI app."""
import pytest
from fastapi.testclient import TestClient

import main
from conftest import ListRecorder, ScriptedProvider, StubExecutor, call, turn
from database import AgentEvent
from llm_provider import ModelProviderError, ModelProviderTimeout, ModelTurn
from orchestrator import LoopLimits


@pytest.fixture
def harness():
    state = {
        "provider": ScriptedProvider([ModelTurn(content="Hello from the agent.")]),
        "executor": StubExecutor(),
        "recorder": ListRecorder(),
    }
    main.app.dependency_overrides[main.get_provider] = lambda: state["provider"]
    main.app.dependency_overrides[main.get_recorder] = lambda: state["recorder"]
    main.app.dependency_overrides[main.get_executor_factory] = lambda: (lambda token: state["executor"])
    main.app.dependency_overrides[main.get_limits] = lambda: LoopLimits()
    main._rate_buckets.clear()
    yield state
    main.app.dependency_overrides.clear()
    main._rate_buckets.clear()


@pytest.fixture
def client(harness):
    return TestClient(main.app)


def _body(**kw):
    body = {
        "systemPrompt": "You are an SEO assistant.",
        "history": [],
        "userMessage": "How is my site?",
        "userToken": "tok_123",
        "siteUrl": "https://mysite.com",
    }
    body.update(kw)
    return body


class TestLLMEndpoint:
    def test_plain_answer(self, client):
        resp = client.post("/api/llm", json=_body())
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["content"] == "Hello from the agent."
        assert data["steps"] == 0
        assert data["toolResults"] == {}

    @pytest.mark.parametrize("missing", ["userToken", "userMessage"])
    def test_missing_required_fields(self, client, missing):
        body = _body()
        del body[missing]
        resp = client.post("/api/llm", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing required fields"}

    def test_tool_turn_results_returned(self, client, harness):
        harness["provider"] = ScriptedProvider([
            turn(call("c1", "generate_article", {"specific_topic": "cats"})),
            ModelTurn(content="Article drafted."),
        ])
        resp = client.post("/api/llm", json=_body(userMessage="Generate an article about cats"))
        data = resp.json()
        assert resp.status_code == 200
        assert data["steps"] == 1
        assert data["toolResults"]["c1"]["success"] is True
        assert [r.capability for r in harness["recorder"].records] == ["generate_article"]

    def test_unauthorized_site_in_tool_results(self, client, harness):
        harness["provider"] = ScriptedProvider([
            turn(call("c1", "audit_site", {"site_url": "other-site.com"})),
            ModelTurn(content="That site is not yours."),
        ])
        data = client.post("/api/llm", json=_body()).json()
        assert data["toolResults"]["c1"] == {"success": False, "error": "Unauthorized site access"}
        assert harness["executor"].calls == []

    def test_available_tools_limits_catalogue(self, client, harness):
        client.post("/api/llm", json=_body(availableTools=["get_site_status", "not_a_tool"]))
        tools = harness["provider"].calls[0]["tools"]
        assert [t["name"] for t in tools] == ["get_site_status"]

    def test_history_passed_through(self, client, harness):
        history = [
            {"role": "user", "content": "earlier question"},
            {"role": "assistant", "content": "earlier answer"},
        ]
        client.post("/api/llm", json=_body(history=history))
        contents = [m["content"] for m in harness["provider"].calls[0]["messages"]]
        assert contents == ["You are an SEO assistant.", "earlier question", "earlier answer", "How is my site?"]

    def test_provider_failure_is_502(self, client, harness):
        harness["provider"] = ScriptedProvider([ModelProviderError("Model provider unavailable")])
        resp = client.post("/api/llm", json=_body())
        assert resp.status_code == 502
        assert resp.json() == {"success": False, "error": "Model provider unavailable"}

    def test_provider_timeout_is_504(self, client, harness):
        harness["provider"] = ScriptedProvider([ModelProviderTimeout("Model call timed out")])
        resp = client.post("/api/llm", json=_body())
        assert resp.status_code == 504
        assert resp.json()["success"] is False
        assert "toolResults" not in resp.json()

    def test_rate_limit(self, client, monkeypatch):
        monkeypatch.setattr(main, "RATE_LIMIT", 2)
        codes = [client.post("/api/llm", json=_body()).status_code for _ in range(3)]
        assert codes[-1] == 429


class TestCatalogueEndpoint:
    def test_lists_all(self, client):
        data = client.get("/agent/capabilities").json()
        assert data["count"] == 21
        entry = next(c for c in data["capabilities"] if c["name"] == "GSC_sync_data")
        assert entry["category"] == "analytics"
        assert entry["requires_setup"] is True

    def test_filter_by_category(self, client):
        data = client.get("/agent/capabilities", params={"category": "setup"}).json()
        assert [c["name"] for c in data["capabilities"]] == ["connect_gsc"]

    def test_setup_stage_before_gsc(self, client):
        data = client.get("/agent/capabilities", params={"gsc_connected": "false"}).json()
        names = {c["name"] for c in data["capabilities"]}
        assert names == {"get_site_status", "create_idea", "connect_gsc", "generate_article"}
        assert data["count"] == 4

    def test_setup_stage_after_gsc(self, client):
        data = client.get("/agent/capabilities", params={"gsc_connected": "true"}).json()
        names = {c["name"] for c in data["capabilities"]}
        assert "connect_gsc" not in names
        assert {"sync_gsc_data", "audit_site"} <= names

    def test_output_shape_listed(self, client):
        data = client.get("/agent/capabilities").json()
        by_name = {c["name"]: c for c in data["capabilities"]}
        assert "issues" in by_name["SEO_analyze_technical"]["output_shape"]
        assert by_name["GSC_sync_data"]["output_shape"] is None


class TestRecordActivityEndpoint:
    def test_persists_event(self, client, session_factory):
        main.app.dependency_overrides[main.get_session_factory] = lambda: session_factory
        resp = client.post("/agent/record-activity", json={
            "userToken": "tok_123",
            "functionName": "audit_site",
            "functionArgs": {"site_url": "https://mysite.com"},
            "result": {"success": True},
        })
        assert resp.status_code == 200
        db = session_factory()
        try:
            assert db.query(AgentEvent).count() == 1
        finally:
            db.close()

    def test_bad_idea_fields_still_record_event(self, client, session_factory):
        main.app.dependency_overrides[main.get_session_factory] = lambda: session_factory
        resp = client.post("/agent/record-activity", json={
            "userToken": "tok_123",
            "functionName": "create_idea",
            "functionArgs": {"site_url": "https://mysite.com", "title": ["not", "text"], "ice_score": "high"},
            "result": {"success": True},
        })
        assert resp.status_code == 200
        db = session_factory()
        try:
            assert db.query(AgentEvent).count() == 1
        finally:
            db.close()

    def test_missing_fields(self, client):
        resp = client.post("/agent/record-activity", json={"functionName": "audit_site"})
        assert resp.status_code == 400


class TestHealth:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"

    def test_info(self, client):
        data = client.get("/info").json()
        assert data["capabilities"] == 21
        assert data["limits"]["max_steps"] >= 1
