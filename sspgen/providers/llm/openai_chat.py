from __future__ import annotations

import logging
import time

import httpx

from sspgen.core.config import Settings, get_settings
from sspgen.core.errors import GenerationTransportError, ProviderAuthError, ProviderConfigError
from sspgen.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class OpenAIChatProvider:
    name = "openai"

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    async def _post(self, url: str, payload: dict, headers: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=headers)
        # Providers are built per request; scope the client to the call so it is always closed.
        timeout_s = self._settings.generation_timeout_ms / 1000.0
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            return await client.post(url, json=payload, headers=headers)

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        json_output: bool,
    ) -> str | None:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for the OpenAI provider")

        payload: dict = {
            "model": self._settings.openai_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_output:
            payload["response_format"] = {"type": "json_object"}
        url = f"{self._settings.openai_base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {api_key}"}

        start = time.monotonic()
        try:
            response = await self._post(url, payload, headers)
        except httpx.HTTPError as exc:
            record_external_call(
                integration="llm.openai",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("openai_request_failed model=%s error=%s", self._settings.openai_model, exc)
            raise GenerationTransportError(f"OpenAI request failed: {exc}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code in {401, 403}:
            record_external_call(integration="llm.openai", latency_ms=latency_ms, success=False)
            raise ProviderAuthError("OpenAI auth error: check OPENAI_API_KEY.")
        if response.status_code >= 400:
            record_external_call(integration="llm.openai", latency_ms=latency_ms, success=False)
            raise GenerationTransportError(
                f"OpenAI error: {response.status_code}",
                status_code=response.status_code,
            )

        record_external_call(integration="llm.openai", latency_ms=latency_ms, success=True)
        try:
            body = response.json()
        except ValueError:
            return response.text or None
        if not isinstance(body, dict):
            return None
        choices = body.get("choices") or []
        if not choices:
            return None
        message = choices[0].get("message") or {}
        return message.get("content")
