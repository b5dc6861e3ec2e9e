import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from app.agents.invoker import (
    ModelInvocationError,
    ModelInvoker,
    ModelRateLimitError,
    ModelTimeoutError,
)
from app.agents.prompts import ChatMessage
from app.agents.providers import (
    EchoChatProvider,
    ModelRegistry,
    OpenAIChatProvider,
    ProviderCredentials,
    ProviderRegistry,
    build_chat_provider,
)
from conftest import ScriptedChatProvider

MESSAGES = [ChatMessage("system", "sys"), ChatMessage("user", "שלום")]


def test_invoke_merges_agent_and_provider_parameters():
    provider = ScriptedChatProvider("היי")
    invoker = ModelInvoker(provider, ModelRegistry("gpt-4"))

    text = asyncio.run(invoker.invoke("gpt-4o", MESSAGES, temperature=0.2))

    assert text == "היי"
    call = provider.calls[0]
    assert call["model"] == "gpt-4o"
    assert call["temperature"] == 0.2
    assert call["max_tokens"] == 1024


def test_unknown_model_falls_back_to_default():
    provider = ScriptedChatProvider("ok")
    invoker = ModelInvoker(provider, ModelRegistry("gpt-4"))

    asyncio.run(invoker.invoke("no-such-model", MESSAGES))

    assert provider.calls[0]["model"] == "gpt-4"


def test_empty_completion_is_retryable():
    invoker = ModelInvoker(ScriptedChatProvider("   "))
    with pytest.raises(ModelInvocationError) as excinfo:
        asyncio.run(invoker.invoke("gpt-4", MESSAGES))
    assert excinfo.value.retryable


def test_timeout_and_unexpected_errors_are_normalized():
    invoker = ModelInvoker(ScriptedChatProvider(asyncio.TimeoutError(), ValueError("boom")))

    with pytest.raises(ModelTimeoutError) as timeout:
        asyncio.run(invoker.invoke("gpt-4", MESSAGES))
    assert timeout.value.retryable

    with pytest.raises(ModelInvocationError) as other:
        asyncio.run(invoker.invoke("gpt-4", MESSAGES))
    assert not other.value.retryable


def _openai_provider(error):
    async def create(**kwargs):
        raise error

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return OpenAIChatProvider(ProviderCredentials("openai", "sk-test", {}), client=client)


def _response(status, headers=None):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    return httpx.Response(status, headers=headers or {}, request=request)


def test_openai_rate_limit_carries_retry_after():
    error = openai.RateLimitError(
        "slow down", response=_response(429, {"retry-after": "2"}), body=None
    )
    with pytest.raises(ModelRateLimitError) as excinfo:
        asyncio.run(
            _openai_provider(error).complete("gpt-4", MESSAGES, temperature=0.7, max_tokens=10)
        )
    assert excinfo.value.retry_after == 2.0
    assert excinfo.value.retryable


def test_openai_server_errors_are_retryable_client_errors_are_not():
    server = openai.InternalServerError("down", response=_response(503), body=None)
    client = openai.BadRequestError("bad", response=_response(400), body=None)

    with pytest.raises(ModelInvocationError) as retryable:
        asyncio.run(
            _openai_provider(server).complete("gpt-4", MESSAGES, temperature=0.7, max_tokens=10)
        )
    assert retryable.value.retryable
    assert retryable.value.status_code == 503

    with pytest.raises(ModelInvocationError) as fatal:
        asyncio.run(
            _openai_provider(client).complete("gpt-4", MESSAGES, temperature=0.7, max_tokens=10)
        )
    assert not fatal.value.retryable


def test_openai_timeout_maps_to_timeout_error():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    error = openai.APITimeoutError(request=request)
    with pytest.raises(ModelTimeoutError):
        asyncio.run(
            _openai_provider(error).complete("gpt-4", MESSAGES, temperature=0.7, max_tokens=10)
        )


def test_echo_provider_replies_in_hebrew():
    reply = asyncio.run(
        EchoChatProvider().complete("gpt-4", MESSAGES, temperature=0, max_tokens=100)
    )
    assert reply == "קיבלתי את הודעתך: שלום"


def test_build_chat_provider_without_key_uses_echo(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert isinstance(build_chat_provider(), EchoChatProvider)

    registry = ProviderRegistry({"openai": {"api_key": "sk-test"}})
    assert isinstance(build_chat_provider(registry), OpenAIChatProvider)
