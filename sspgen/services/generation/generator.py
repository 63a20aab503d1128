from __future__ import annotations

import asyncio
from dataclasses import dataclass
import json
import logging
import re
from typing import Any

from sspgen.core.config import Settings, get_settings
from sspgen.core.errors import (
    GenerationEmptyError,
    GenerationMalformedError,
    GenerationTimeoutError,
    GenerationTransportError,
    ProviderAuthError,
    ProviderConfigError,
)
from sspgen.providers.llm.base import LLMProvider
from sspgen.services.generation.context import SystemProfile
from sspgen.services.generation.controls import get_control
from sspgen.services.resilience import CircuitBreaker, RetryPolicy, retry_async


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a compliance analyst drafting System Security Plan content. "
    "Write a formal, audit-ready implementation narrative for the named NIST SP 800-53 control, "
    "describing how the system implements it based only on the intake answers provided. "
    "Respond with a single JSON object with exactly these keys: "
    '"narrative" (string), "evidence" (array of strings naming artifacts an assessor can review), '
    'and "citations" (array of strings referencing the authoritative sources used).'
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float
    max_tokens: int
    retry_policy: RetryPolicy
    require_narrative: bool = False
    placeholder: str = "No narrative was generated for this control."

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> GenerationConfig:
        settings = settings or get_settings()
        return cls(
            temperature=settings.generation_temperature,
            max_tokens=settings.generation_max_tokens,
            retry_policy=RetryPolicy(
                timeout_ms=settings.generation_timeout_ms,
                max_attempts=settings.generation_retry_max_attempts,
                backoff_ms=settings.generation_retry_backoff_ms,
            ),
            require_narrative=settings.narrative_require_text,
            placeholder=settings.narrative_placeholder,
        )


@dataclass(frozen=True)
class NarrativeResult:
    narrative: str
    evidence: list[str]
    citations: list[str]


def build_messages(system: SystemProfile, intake: dict[str, Any], control_id: str) -> list[dict[str, str]]:
    control = get_control(control_id)
    intake_json = json.dumps(intake, indent=2, sort_keys=True, default=str)
    content = (
        f"System name: {system.name}\n"
        f"Impact level: {system.impact_level}\n"
        f"Control: {control.control_id} ({control.title})\n"
        f"Control requirement: {control.description}\n\n"
        f"Intake answers:\n{intake_json}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": content},
    ]


def _coerce_string_list(value: Any, field_name: str) -> list[str]:
    # Auxiliary fields are optional; only a wrong container type is fatal.
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [item if isinstance(item, str) else json.dumps(item, default=str) for item in value if item is not None]
    raise GenerationMalformedError(f"Generated {field_name} must be a list of strings")


def parse_narrative_payload(
    content: str | None,
    *,
    placeholder: str,
    require_narrative: bool = False,
) -> NarrativeResult:
    if content is None or not content.strip():
        raise GenerationEmptyError("Narrative generation returned no content")
    text = content.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group(1)
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise GenerationMalformedError("Narrative generation returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise GenerationMalformedError("Narrative generation returned JSON that is not an object")

    narrative = payload.get("narrative")
    if not isinstance(narrative, str) or not narrative.strip():
        if require_narrative:
            raise GenerationMalformedError("Narrative generation returned no narrative text")
        narrative = placeholder
    return NarrativeResult(
        narrative=narrative.strip(),
        evidence=_coerce_string_list(payload.get("evidence"), "evidence"),
        citations=_coerce_string_list(payload.get("citations"), "citations"),
    )


def _is_transient(exc: Exception) -> bool:
    # Parse failures and auth/config errors repeat on retry; only transport/timeouts are retried.
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, GenerationTransportError):
        return exc.status_code is None or exc.status_code >= 500 or exc.status_code == 429
    return False


class NarrativeGenerator:
    def __init__(
        self,
        provider: LLMProvider,
        config: GenerationConfig,
        *,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._provider = provider
        self._config = config
        self._breaker = breaker

    @property
    def provider_name(self) -> str:
        return getattr(self._provider, "name", self._provider.__class__.__name__)

    async def _call_provider(self, messages: list[dict[str, str]]) -> str | None:
        async def _call() -> str | None:
            return await self._provider.complete(
                messages,
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
                json_output=True,
            )

        breaker = self._breaker
        if breaker is not None:
            await breaker.before_call()
        try:
            content = await retry_async(_call, policy=self._config.retry_policy, retryable=_is_transient)
        except TimeoutError as exc:
            if breaker is not None:
                await breaker.record_failure()
            raise GenerationTimeoutError(
                f"Narrative generation timed out after {self._config.retry_policy.timeout_ms}ms"
            ) from exc
        except GenerationTransportError as exc:
            if breaker is not None:
                # A client rejection still means the provider answered.
                if _is_transient(exc):
                    await breaker.record_failure()
                else:
                    await breaker.record_success()
            raise
        except (ProviderAuthError, ProviderConfigError, asyncio.CancelledError):
            # No health signal; a half-open trial must still be handed back.
            if breaker is not None:
                await breaker.release_trial()
            raise
        except Exception:
            if breaker is not None:
                await breaker.record_failure()
            raise
        if breaker is not None:
            await breaker.record_success()
        return content

    async def generate(self, system: SystemProfile, intake: dict[str, Any], control_id: str) -> NarrativeResult:
        messages = build_messages(system, intake, control_id)
        logger.info(
            "narrative_generate_start system_id=%s control_id=%s provider=%s",
            system.id,
            control_id,
            self.provider_name,
        )
        content = await self._call_provider(messages)
        result = parse_narrative_payload(
            content,
            placeholder=self._config.placeholder,
            require_narrative=self._config.require_narrative,
        )
        if result.narrative == self._config.placeholder:
            logger.warning("narrative_placeholder_used system_id=%s control_id=%s", system.id, control_id)
        return result
