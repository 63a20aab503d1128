from __future__ import annotations

from sspgen.core.config import Settings, get_settings
from sspgen.core.errors import ProviderConfigError
from sspgen.providers.llm.base import LLMProvider
from sspgen.providers.llm.fake import FakeLLMProvider
from sspgen.providers.llm.gemini_vertex import GeminiVertexProvider
from sspgen.providers.llm.openai_chat import OpenAIChatProvider


def get_llm_provider(settings: Settings | None = None) -> LLMProvider:
    settings = settings or get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "openai":
        return OpenAIChatProvider(settings=settings)
    if provider == "vertex":
        return GeminiVertexProvider(settings=settings)

    raise ProviderConfigError(f"Unsupported LLM provider: {provider}")
