from __future__ import annotations

import httpx
import pytest

from models.selector import ModelSelector
from shared.errors import ModelError
from shared.models import Message, ModelPolicy

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "searchTasks",
            "description": "SEARCH tasks (read-only).",
            "parameters": {"type": "object", "properties": {"overdue": {"type": "boolean"}}},
        },
    }
]


class DummyResponse:
    def __init__(self, payload: dict):
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self) -> dict:
        return self._payload


class DummyClient:
    def __init__(self, payload: dict | None = None, error: Exception | None = None):
        self.payload = payload or {}
        self.error = error
        self.calls: list[dict] = []

    def post(self, path, json=None, headers=None, timeout=None):
        self.calls.append(
            {
                "path": path,
                "json": json,
                "headers": headers or {},
                "timeout": timeout,
            }
        )
        if self.error is not None:
            raise self.error
        return DummyResponse(self.payload)

    def close(self) -> None:
        return None


def _policy(**overrides) -> ModelPolicy:
    return ModelPolicy(model_name="test-model", timeout_seconds=5.0, **overrides)


def _messages() -> list[Message]:
    return [
        Message(role="system", content="You are a workspace assistant."),
        Message(role="user", content="what is overdue?"),
    ]


def test_model_selector_auto_detects_anthropic_provider(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "auto")
    monkeypatch.setenv("MODEL_BASE_URL", "https://api.anthropic.com")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    selector = ModelSelector(base_url="http://localhost:11434")
    assert selector.provider == "anthropic"
    selector.close()


def test_model_selector_auto_detects_openai_and_ollama(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "auto")
    monkeypatch.setenv("MODEL_BASE_URL", "https://llm.internal/v1")
    openai = ModelSelector()
    monkeypatch.setenv("MODEL_BASE_URL", "")
    ollama = ModelSelector(base_url="http://localhost:11434")

    assert openai.provider == "openai_compatible"
    assert ollama.provider == "ollama"
    openai.close()
    ollama.close()


def test_model_selector_anthropic_tool_use_roundtrip(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "anthropic")
    monkeypatch.setenv("MODEL_BASE_URL", "https://api.anthropic.com")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    selector = ModelSelector()
    fake_client = DummyClient(
        {
            "content": [
                {"type": "text", "text": "Looking that up."},
                {"type": "tool_use", "id": "toolu_1", "name": "searchTasks", "input": {"overdue": True}},
            ]
        }
    )
    selector._client = fake_client

    out = selector.complete_sync(_messages(), TOOLS, _policy())

    assert out.text == "Looking that up."
    assert [(c.tool, c.arguments, c.call_id) for c in out.tool_calls] == [("searchTasks", {"overdue": True}, "toolu_1")]
    call = fake_client.calls[0]
    assert call["path"] == "/v1/messages"
    assert call["headers"].get("x-api-key") == "test-key"
    assert call["json"]["system"] == "You are a workspace assistant."
    assert call["json"]["messages"] == [{"role": "user", "content": "what is overdue?"}]
    assert call["json"]["tools"][0]["input_schema"]["properties"] == {"overdue": {"type": "boolean"}}
    selector.close()


def test_model_selector_anthropic_groups_tool_results(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "anthropic")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    selector = ModelSelector(base_url="https://api.anthropic.com")
    fake_client = DummyClient({"content": [{"type": "text", "text": "Done."}]})
    selector._client = fake_client
    assistant = Message(
        role="assistant",
        tool_calls=[
            {"id": "c1", "type": "function", "function": {"name": "searchTasks", "arguments": "{}"}},
            {"id": "c2", "type": "function", "function": {"name": "searchDocs", "arguments": "{\"query\": \"q1\"}"}},
        ],
    )

    selector.complete_sync(
        [*_messages(), assistant, Message(role="tool", tool_call_id="c1", content="[]"), Message(role="tool", tool_call_id="c2", content="[]")],
        TOOLS,
        _policy(),
    )

    sent = fake_client.calls[0]["json"]["messages"]
    assert [m["role"] for m in sent] == ["user", "assistant", "user"]
    assert sent[1]["content"][1]["input"] == {"query": "q1"}
    assert [block["tool_use_id"] for block in sent[2]["content"]] == ["c1", "c2"]
    selector.close()


def test_model_selector_openai_tool_calls_parse_json_arguments(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "openai_compatible")
    monkeypatch.setenv("MODEL_BASE_URL", "https://api.openai.com")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    selector = ModelSelector()
    fake_client = DummyClient(
        {
            "choices": [
                {
                    "message": {
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_9",
                                "type": "function",
                                "function": {"name": "createTaskItem", "arguments": "{\"title\": \"Ship\"}"},
                            }
                        ],
                    }
                }
            ]
        }
    )
    selector._client = fake_client

    out = selector.complete_sync(_messages(), TOOLS, _policy())

    assert out.text is None
    assert out.tool_calls[0].tool == "createTaskItem"
    assert out.tool_calls[0].arguments == {"title": "Ship"}
    assert out.tool_calls[0].call_id == "call_9"
    payload = fake_client.calls[0]["json"]
    assert fake_client.calls[0]["path"] == "/v1/chat/completions"
    assert payload["tool_choice"] == "auto"
    assert payload["messages"][0] == {"role": "system", "content": "You are a workspace assistant."}
    selector.close()


def test_model_selector_raises_model_error_after_retries(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "ollama")
    monkeypatch.setenv("MODEL_BASE_URL", "")
    selector = ModelSelector(base_url="http://localhost:11434")
    fake_client = DummyClient(error=httpx.ConnectError("connection refused"))
    selector._client = fake_client

    with pytest.raises(ModelError) as info:
        selector.complete_sync(_messages(), None, _policy(max_retries=2))

    assert len(fake_client.calls) == 2
    assert "refused" not in info.value.user_message
    selector.close()


def test_model_selector_rejects_malformed_tool_arguments(monkeypatch):
    monkeypatch.setenv("MODEL_PROVIDER", "ollama")
    monkeypatch.setenv("MODEL_BASE_URL", "")
    selector = ModelSelector()
    selector._client = DummyClient(
        {"message": {"tool_calls": [{"function": {"name": "searchTasks", "arguments": "not json"}}]}}
    )

    with pytest.raises(ModelError):
        selector.complete_sync(_messages(), TOOLS, _policy())
    selector.close()
