import asyncio
import json

import httpx
import pytest

from autosurveyagent.core import decision_source
from autosurveyagent.core.decision_source import (
    DecisionRequest,
    DecisionSourceError,
    list_providers,
    request_decision,
)
from autosurveyagent.core.state_parser import DecisionParseError, parse_decision_text

DECISION_JSON = json.dumps(
    {
        "action": "select_single",
        "selections": [{"label": "Yes"}],
        "confidence": 0.9,
        "reason": "instructions say yes",
    }
)


def _request(provider: str = "openai", **kwargs) -> DecisionRequest:
    return DecisionRequest(
        system_prompt="system",
        user_prompt="user",
        provider=provider,
        api_key=kwargs.pop("api_key", "sk-test"),
        **kwargs,
    )


def _mock_httpx(monkeypatch, handler):
    real_client = httpx.AsyncClient
    transport = httpx.MockTransport(handler)

    def factory(**kwargs):
        return real_client(transport=transport, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", factory)


# ---------- parsing ----------


def test_parse_plain_fenced_and_embedded_json():
    assert parse_decision_text(DECISION_JSON).selection_labels() == ["Yes"]
    fenced = f"```json\n{DECISION_JSON}\n```"
    assert parse_decision_text(fenced).action == "select_single"
    embedded = f"Sure! Here is the decision: {DECISION_JSON} Good luck."
    assert parse_decision_text(embedded).confidence == 0.9


def test_parse_accepts_string_selections():
    raw = json.dumps(
        {"action": "select_multi", "selections": ["A", "B"], "confidence": 0.5, "reason": "r"}
    )
    assert parse_decision_text(raw).selection_labels() == ["A", "B"]


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "no json here",
        "[1, 2, 3]",
        json.dumps({"action": "click_next", "confidence": 2, "reason": "x"}),
        json.dumps({"action": "teleport", "confidence": 0.5, "reason": "x"}),
        json.dumps({"action": "click_next", "confidence": 0.5}),
    ],
)
def test_parse_rejects_invalid_output(raw):
    with pytest.raises(DecisionParseError):
        parse_decision_text(raw)


# ---------- request_decision ----------


def test_missing_api_key_fails():
    with pytest.raises(DecisionSourceError, match="Missing provider API key"):
        asyncio.run(request_decision(_request(api_key="")))


def test_unknown_provider_fails():
    with pytest.raises(DecisionSourceError, match="Unsupported LLM provider"):
        asyncio.run(request_decision(_request(provider="carrier-pigeon")))


def test_schema_violation_becomes_decision_source_error(monkeypatch):
    async def fake_fetch(request, on_log):
        return '{"action": "click_next"}'

    monkeypatch.setitem(decision_source.PROVIDERS, "openai", fake_fetch)
    with pytest.raises(DecisionSourceError, match="schema validation"):
        asyncio.run(request_decision(_request()))


def test_anthropic_request_shape(monkeypatch):
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"content": [{"type": "text", "text": DECISION_JSON}]})

    _mock_httpx(monkeypatch, handler)
    decision = asyncio.run(request_decision(_request(provider="anthropic")))

    assert decision.selection_labels() == ["Yes"]
    assert seen["url"] == decision_source.ANTHROPIC_URL
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["model"] == "claude-3-5-haiku-latest"
    assert seen["body"]["system"] == "system"
    assert seen["body"]["messages"] == [{"role": "user", "content": "user"}]


def test_anthropic_non_200_fails(monkeypatch):
    _mock_httpx(monkeypatch, lambda request: httpx.Response(500, text="overloaded"))
    with pytest.raises(DecisionSourceError, match=r"Anthropic request failed \(500\)"):
        asyncio.run(request_decision(_request(provider="anthropic")))


def test_google_request_shape(monkeypatch):
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": DECISION_JSON}]}}]},
        )

    _mock_httpx(monkeypatch, handler)
    decision = asyncio.run(
        request_decision(_request(provider="google", model="gemini-2.0-flash"))
    )

    assert decision.action == "select_single"
    assert seen["url"].path.endswith("/models/gemini-2.0-flash:generateContent")
    assert seen["url"].params["key"] == "sk-test"
    assert seen["body"]["systemInstruction"] == {"parts": [{"text": "system"}]}
    assert seen["body"]["generationConfig"]["responseMimeType"] == "application/json"


def test_google_empty_candidates_fail(monkeypatch):
    _mock_httpx(monkeypatch, lambda request: httpx.Response(200, json={"candidates": []}))
    with pytest.raises(DecisionSourceError, match="Google returned empty content"):
        asyncio.run(request_decision(_request(provider="google")))


def test_transport_error_is_wrapped(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    _mock_httpx(monkeypatch, handler)
    with pytest.raises(DecisionSourceError, match="anthropic HTTP error"):
        asyncio.run(request_decision(_request(provider="anthropic")))


class _FakeCompletions:
    def __init__(self, owner):
        self._owner = owner

    async def create(self, **kwargs):
        self._owner.calls.append(kwargs)
        message = type("Message", (), {"content": DECISION_JSON})()
        choice = type("Choice", (), {"message": message})()
        return type("Completion", (), {"choices": [choice]})()


class _FakeAsyncOpenAI:
    instances: list["_FakeAsyncOpenAI"] = []

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.calls: list[dict] = []
        self.closed = False
        self.chat = type("Chat", (), {})()
        self.chat.completions = _FakeCompletions(self)
        _FakeAsyncOpenAI.instances.append(self)

    async def close(self):
        self.closed = True


def test_openai_compatible_provider_uses_base_url(monkeypatch):
    _FakeAsyncOpenAI.instances = []
    monkeypatch.setattr(decision_source, "AsyncOpenAI", _FakeAsyncOpenAI)

    decision = asyncio.run(
        request_decision(_request(provider="deepseek", model="deepseek-reasoner", timeout_ms=5000))
    )

    assert decision.action == "select_single"
    client = _FakeAsyncOpenAI.instances[0]
    assert client.kwargs["base_url"] == "https://api.deepseek.com"
    assert client.kwargs["timeout"] == 5.0
    assert client.kwargs["max_retries"] == 0
    assert client.calls[0]["model"] == "deepseek-reasoner"
    assert client.calls[0]["response_format"] == {"type": "json_object"}
    assert client.calls[0]["messages"][0] == {"role": "system", "content": "system"}
    assert client.closed is True


def test_list_providers():
    providers = {p["provider"]: p for p in list_providers()}
    assert set(providers) == {
        "openai",
        "anthropic",
        "google",
        "deepseek",
        "groq",
        "openrouter",
        "xai",
    }
    assert providers["openai"]["default_model"] == "gpt-4o-mini"
    assert "gpt-4o" in providers["openai"]["models"]
