import pytest

from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from chat_core.domain.message import LLMMessage
from chat_core.domain.models import ChatMessage, ChatRequest, ChatStreamChoice, ChatStreamChunk
from chat_core.providers import create_provider
from chat_core.providers.chat_completions import ChatCompletionsClient
from chat_core.providers.invoker import ProviderModelInvoker
from chat_core.providers.registry import KIMI_CONFIG


class SettingsStub:
    default_provider = "glm"
    kimi_api_key = "k"
    http_timeout = 1.0
    kimi_base_url = "https://api.moonshot.cn/v1"
    glm_api_key = None
    glm_base_url = "https://open.bigmodel.cn/api/paas/v4"


def _fake_async_client(lines, status_code=200, body=b"", captured=None):
    class FakeResponse:
        def __init__(self):
            self.status_code = status_code

        async def aiter_lines(self):
            for line in lines:
                yield line

        async def aread(self):
            return body

    class StreamContext:
        async def __aenter__(self):
            return FakeResponse()

        async def __aexit__(self, *args):
            return False

    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        def stream(self, method, url, json=None, headers=None):
            if captured is not None:
                captured.update({"method": method, "url": url, "payload": json, "headers": headers})
            return StreamContext()

    return Client


def test_create_provider_by_name():
    assert create_provider(SettingsStub()).name == "glm"
    assert create_provider(SettingsStub(), "KIMI").name == "kimi"
    with pytest.raises(KeyError):
        create_provider(SettingsStub(), "nope")


@pytest.mark.asyncio
async def test_chat_stream_parses_sse(monkeypatch):
    client = ChatCompletionsClient(KIMI_CONFIG, SettingsStub())
    req = ChatRequest(provider="kimi", model="chat", messages=[ChatMessage(role="user", content="hi")])
    stream_lines = [
        'data: {"choices": [{"index": 0, "delta": {"content": "hel"}}]}',
        "",
        ": keep-alive",
        'data: {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}], "usage": {"prompt_tokens": 1, "completion_tokens": 2, "total_tokens": 3}}',
        "data: [DONE]",
    ]
    captured = {}
    monkeypatch.setattr("httpx.AsyncClient", _fake_async_client(stream_lines, captured=captured))
    chunks = [c async for c in client.chat_stream(req)]
    assert [c.text for c in chunks] == ["hel", "lo"]
    assert chunks[1].usage.total_tokens == 3
    assert captured["url"] == "https://api.moonshot.cn/v1/chat/completions"
    assert captured["payload"]["model"] == "kimi-k2-turbo-preview"
    assert captured["payload"]["stream"] is True
    assert captured["headers"]["Authorization"] == "Bearer k"


@pytest.mark.asyncio
async def test_chat_stream_error_statuses(monkeypatch):
    client = ChatCompletionsClient(KIMI_CONFIG, SettingsStub())
    req = ChatRequest(provider="kimi", model="chat", messages=[ChatMessage(role="user", content="hi")])

    monkeypatch.setattr("httpx.AsyncClient", _fake_async_client([], status_code=429))
    with pytest.raises(RateLimitError):
        [c async for c in client.chat_stream(req)]

    monkeypatch.setattr("httpx.AsyncClient", _fake_async_client([], status_code=500, body=b"boom"))
    with pytest.raises(ApiError) as ei:
        [c async for c in client.chat_stream(req)]
    assert ei.value.http_status == 500
    assert ei.value.message == "boom"


@pytest.mark.asyncio
async def test_chat_stream_requires_api_key():
    from chat_core.providers.registry import GLM_CONFIG

    client = ChatCompletionsClient(GLM_CONFIG, SettingsStub())
    req = ChatRequest(provider="glm", model="chat", messages=[])
    with pytest.raises(ValidationError):
        [c async for c in client.chat_stream(req)]


def _chunk(text):
    return ChatStreamChunk(
        provider="fake",
        model="chat",
        choices=[ChatStreamChoice(index=0, delta=ChatMessage(role="assistant", content=text))],
    )


class FlakyProvider:
    name = "fake"

    def __init__(self, failures, fail_after_first=False):
        self.failures = list(failures)
        self.fail_after_first = fail_after_first
        self.requests = []

    async def chat_stream(self, req):
        self.requests.append(req)
        if self.failures and not self.fail_after_first:
            raise self.failures.pop(0)
        yield _chunk("a")
        if self.failures and self.fail_after_first:
            raise self.failures.pop(0)
        yield _chunk("b")


@pytest.mark.asyncio
async def test_invoker_maps_messages_and_yields_text():
    provider = FlakyProvider([])
    invoker = ProviderModelInvoker(provider, model="chat", temperature=0.2)
    out = [t async for t in invoker.invoke([LLMMessage(role="user", processed_text="q\n\n<note_context>")])]
    assert out == ["a", "b"]
    req = provider.requests[0]
    assert req.messages[0].content == "q\n\n<note_context>"
    assert req.temperature == 0.2


@pytest.mark.asyncio
async def test_invoker_retries_before_first_fragment(monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr("chat_core.providers.invoker.asyncio.sleep", fake_sleep)
    provider = FlakyProvider([RateLimitError(code="RATE_LIMIT", message="slow"), NetworkError(code="NETWORK_ERROR", message="x")])
    invoker = ProviderModelInvoker(provider, max_retries=2, retry_backoff=0.5)
    out = [t async for t in invoker.invoke([])]
    assert out == ["a", "b"]
    assert sleeps == [0.5, 1.0]


@pytest.mark.asyncio
async def test_invoker_gives_up_after_max_retries(monkeypatch):
    async def fake_sleep(delay):
        return None

    monkeypatch.setattr("chat_core.providers.invoker.asyncio.sleep", fake_sleep)
    provider = FlakyProvider([RateLimitError(code="RATE_LIMIT", message="slow")] * 3)
    invoker = ProviderModelInvoker(provider, max_retries=2)
    with pytest.raises(RateLimitError):
        [t async for t in invoker.invoke([])]
    assert len(provider.requests) == 3


@pytest.mark.asyncio
async def test_invoker_does_not_retry_after_output():
    provider = FlakyProvider([NetworkError(code="NETWORK_ERROR", message="dropped")], fail_after_first=True)
    invoker = ProviderModelInvoker(provider, max_retries=3)
    out = []
    with pytest.raises(NetworkError):
        async for t in invoker.invoke([]):
            out.append(t)
    assert out == ["a"]
    assert len(provider.requests) == 1
