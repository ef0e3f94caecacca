from __future__ import annotations

import asyncio
import importlib
import json
from types import SimpleNamespace

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.config import settings

chat_api = importlib.import_module("app.api.chat")


def _make_client() -> TestClient:
    app = FastAPI()
    app.include_router(chat_api.router, prefix="/api/chat")
    return TestClient(app)


class _FakeMessage:
    def __init__(self, content=None, tool_calls=None):
        self.content = content
        self.tool_calls = tool_calls

    def model_dump(self, exclude_none=False):
        dumped = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            dumped["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.function.name, "arguments": call.function.arguments},
                }
                for call in self.tool_calls
            ]
        if exclude_none:
            dumped = {key: value for key, value in dumped.items() if value is not None}
        return dumped


class _FakeCompletions:
    def __init__(self, messages):
        self._messages = list(messages)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        message = self._messages.pop(0)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _tool_call(call_id, name, arguments):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def _install_fake_model(monkeypatch, messages):
    completions = _FakeCompletions(messages)
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(chat_api, "_client", lambda: SimpleNamespace(chat=SimpleNamespace(completions=completions)))
    return completions


def test_chat_requires_api_key(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")

    with _make_client() as client:
        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == 500
    assert response.json()["error"] == "OPENAI_API_KEY is not configured"


def test_chat_rejects_empty_conversation(monkeypatch):
    monkeypatch.setattr(settings, "OPENAI_API_KEY", "sk-test")

    with _make_client() as client:
        response = client.post("/api/chat", json={"messages": []})

    assert response.status_code == 422


def test_chat_runs_tool_calls_until_answer(website_id, monkeypatch):
    completions = _install_fake_model(monkeypatch, [
        _FakeMessage(tool_calls=[_tool_call("call_1", "get-websites", "{}")]),
        _FakeMessage(content="You have one website: Test Site."),
    ])

    with _make_client() as client:
        response = client.post(
            "/api/chat", json={"messages": [{"role": "user", "content": "Which sites do I track?"}]}
        )

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "You have one website: Test Site."
    assert body["toolCalls"] == [{"name": "get-websites", "ok": True}]
    assert body["steps"] == 2

    second_request = completions.calls[1]["messages"]
    assert second_request[0]["role"] == "system"
    assert second_request[2]["tool_calls"][0]["id"] == "call_1"
    tool_message = second_request[3]
    assert tool_message["role"] == "tool"
    assert tool_message["tool_call_id"] == "call_1"
    assert json.loads(tool_message["content"])["result"]["websites"][0]["id"] == website_id


def test_chat_stops_after_max_steps(monkeypatch):
    monkeypatch.setattr(settings, "CHAT_MAX_STEPS", 2)
    _install_fake_model(monkeypatch, [
        _FakeMessage(tool_calls=[_tool_call("call_1", "no-such-tool", "{}")]),
        _FakeMessage(tool_calls=[_tool_call("call_2", "no-such-tool", "{}")]),
    ])

    with _make_client() as client:
        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "loop"}]})

    assert response.status_code == 200
    body = response.json()
    assert body["steps"] == 2
    assert body["toolCalls"] == [{"name": "no-such-tool", "ok": False}, {"name": "no-such-tool", "ok": False}]


def test_run_tool_reports_bad_calls():
    unknown = asyncio.run(chat_api.run_tool("no-such-tool", "{}"))
    bad_json = asyncio.run(chat_api.run_tool("get-websites", "{not json"))
    not_object = asyncio.run(chat_api.run_tool("get-websites", "[1, 2]"))

    assert unknown == {"error": "Unknown tool: no-such-tool"}
    assert bad_json == {"error": "Tool arguments were not valid JSON"}
    assert not_object == {"error": "Tool arguments must be a JSON object"}


def test_run_tool_returns_validation_details():
    payload = asyncio.run(chat_api.run_tool("check-event-drop-chain", json.dumps({"steps": ["a", "b"]})))

    assert payload["error"] == "Invalid tool input"
    missing = {tuple(item["loc"]) for item in payload["details"]}
    assert ("from",) in missing
    assert ("to",) in missing


def test_run_tool_fills_in_conversation_website(website_id):
    other = "0b7d2c9e-4f61-4c55-9d0e-3c1a2b4d5e6f"
    payload = asyncio.run(chat_api.run_tool(
        "get-unique-button-click-users",
        json.dumps({"event_name": "cta_click", "date_from": "2025-07-01", "date_to": "2025-07-01"}),
        website_id=other,
    ))

    assert payload["result"]["uniqueUsers"] == 0
    assert payload["result"]["eventName"] == "cta_click"
