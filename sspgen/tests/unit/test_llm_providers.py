from __future__ import annotations

import json

import httpx
import pytest

from sspgen.core.config import Settings
from sspgen.core.errors import (
    GenerationTransportError,
    ProviderAuthError,
    ProviderConfigError,
)
from sspgen.providers.llm.factory import get_llm_provider
from sspgen.providers.llm.fake import FakeLLMProvider
from sspgen.providers.llm.gemini_vertex import GeminiVertexProvider
from sspgen.providers.llm.openai_chat import OpenAIChatProvider
from sspgen.services.telemetry import external_call_summary


MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def _settings(**overrides) -> Settings:
    values = {"openai_api_key": "sk-test", "openai_base_url": "https://llm.test/v1"}
    values.update(overrides)
    return Settings(**values)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_openai_provider_sends_json_mode_request() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"narrative": "ok"}'}}]})

    async with _client(handler) as client:
        provider = OpenAIChatProvider(settings=_settings(), client=client)
        content = await provider.complete(MESSAGES, temperature=0.2, max_tokens=100, json_output=True)

    assert content == '{"narrative": "ok"}'
    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["response_format"] == {"type": "json_object"}
    assert seen["body"]["model"] == "gpt-4o-mini"
    assert seen["body"]["messages"] == MESSAGES
    assert external_call_summary(60)["llm.openai"]["calls"] == 1


@pytest.mark.asyncio
async def test_openai_provider_missing_choices_returns_none() -> None:
    async with _client(lambda request: httpx.Response(200, json={"choices": []})) as client:
        provider = OpenAIChatProvider(settings=_settings(), client=client)
        assert await provider.complete(MESSAGES, temperature=0.2, max_tokens=10, json_output=True) is None


@pytest.mark.asyncio
async def test_openai_provider_maps_auth_errors() -> None:
    async with _client(lambda request: httpx.Response(401, json={"error": "bad key"})) as client:
        provider = OpenAIChatProvider(settings=_settings(), client=client)
        with pytest.raises(ProviderAuthError):
            await provider.complete(MESSAGES, temperature=0.2, max_tokens=10, json_output=True)


@pytest.mark.asyncio
async def test_openai_provider_maps_server_errors_with_status() -> None:
    async with _client(lambda request: httpx.Response(503, text="unavailable")) as client:
        provider = OpenAIChatProvider(settings=_settings(), client=client)
        with pytest.raises(GenerationTransportError) as excinfo:
            await provider.complete(MESSAGES, temperature=0.2, max_tokens=10, json_output=True)
    assert excinfo.value.status_code == 503
    assert str(excinfo.value) == "OpenAI error: 503"
    assert external_call_summary(60)["llm.openai"]["failures"] == 1


@pytest.mark.asyncio
async def test_openai_provider_maps_transport_failures() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        provider = OpenAIChatProvider(settings=_settings(), client=client)
        with pytest.raises(GenerationTransportError, match="OpenAI request failed") as excinfo:
            await provider.complete(MESSAGES, temperature=0.2, max_tokens=10, json_output=True)
    assert excinfo.value.status_code is None


@pytest.mark.asyncio
async def test_openai_provider_requires_api_key() -> None:
    provider = OpenAIChatProvider(settings=_settings(openai_api_key=None))
    with pytest.raises(ProviderConfigError):
        await provider.complete(MESSAGES, temperature=0.2, max_tokens=10, json_output=True)


@pytest.mark.asyncio
async def test_vertex_provider_missing_config() -> None:
    provider = GeminiVertexProvider(
        settings=_settings(google_cloud_project=None, google_cloud_location=None)
    )
    with pytest.raises(ProviderConfigError, match="GOOGLE_CLOUD_PROJECT"):
        await provider.complete(MESSAGES, temperature=0.2, max_tokens=10, json_output=True)


def test_vertex_provider_keeps_system_prompt_first() -> None:
    provider = GeminiVertexProvider(settings=_settings())
    prompt = provider._format_messages(
        [{"role": "user", "content": "question"}, {"role": "system", "content": "rules"}]
    )
    assert prompt.splitlines() == ["SYSTEM: rules", "USER: question"]


def test_factory_selects_configured_provider() -> None:
    assert isinstance(get_llm_provider(_settings(llm_provider="fake")), FakeLLMProvider)
    assert isinstance(get_llm_provider(_settings(llm_provider="OpenAI")), OpenAIChatProvider)
    assert isinstance(get_llm_provider(_settings(llm_provider="vertex")), GeminiVertexProvider)
    with pytest.raises(ProviderConfigError, match="Unsupported LLM provider"):
        get_llm_provider(_settings(llm_provider="bedrock"))


@pytest.mark.asyncio
async def test_fake_provider_records_calls() -> None:
    provider = FakeLLMProvider(response='{"narrative": "x"}')
    content = await provider.complete(MESSAGES, temperature=0.1, max_tokens=5, json_output=True)
    assert content == '{"narrative": "x"}'
    assert provider.calls[0]["temperature"] == 0.1
    assert provider.calls[0]["json_output"] is True
