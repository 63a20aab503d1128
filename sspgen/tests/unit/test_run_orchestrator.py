from __future__ import annotations

import asyncio
import json

import pytest
from sqlalchemy import select

from sspgen.core.errors import (
    BadRequestError,
    GenerationMalformedError,
    GenerationTimeoutError,
    GenerationTransportError,
    IntegrationUnavailableError,
    NotFoundError,
    PersistenceError,
    ProviderAuthError,
    RunFailedError,
    UnauthorizedError,
)
from sspgen.domain.models import Run, Section
from sspgen.persistence.db import SessionLocal
from sspgen.providers.llm.fake import DEFAULT_FAKE_RESPONSE, FakeLLMProvider
from sspgen.services.generation.generator import GenerationConfig, NarrativeGenerator
from sspgen.services.generation.orchestrator import RunOrchestrator, build_orchestrator
from sspgen.services.generation.run_store import RunStore
from sspgen.services.generation.section_store import SectionStore
from sspgen.services.resilience import CircuitBreaker, CircuitBreakerConfig, RetryPolicy
from sspgen.tests.utils.auth import create_test_system
from sspgen.tests.utils.db import broken_session_factory


OWNER = "owner-1"


def _config(**overrides) -> GenerationConfig:
    values = {
        "temperature": 0.2,
        "max_tokens": 200,
        "retry_policy": RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1),
    }
    values.update(overrides)
    return GenerationConfig(**values)


def _orchestrator(provider, *, config: GenerationConfig | None = None, breaker=None, **stores) -> RunOrchestrator:
    generator = NarrativeGenerator(provider, config or _config(), breaker=breaker)
    return RunOrchestrator(generator=generator, **stores)


async def _runs() -> list[Run]:
    async with SessionLocal() as session:
        return list((await session.execute(select(Run))).scalars().all())


async def _sections() -> list[Section]:
    async with SessionLocal() as session:
        return list((await session.execute(select(Section))).scalars().all())


class _FlakyProvider:
    name = "flaky"

    def __init__(self, failures: list[Exception], response: str) -> None:
        self._failures = list(failures)
        self._response = response
        self.calls = 0

    async def complete(self, messages, *, temperature, max_tokens, json_output):
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return self._response


class _HangingProvider:
    name = "hanging"

    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def complete(self, messages, *, temperature, max_tokens, json_output):
        self.started.set()
        await asyncio.Event().wait()


class _FinalizeFailsRunStore(RunStore):
    async def finalize(self, run_id: str):
        return await RunStore(broken_session_factory).finalize(run_id)


class _FailWriteFailsRunStore(RunStore):
    async def fail(self, run_id: str, message: str):
        return await RunStore(broken_session_factory).fail(run_id, message)


class _CancelledFinalizeRunStore(RunStore):
    async def finalize(self, run_id: str):
        raise asyncio.CancelledError()


async def _half_open_breaker(name: str) -> CircuitBreaker:
    now = {"t": 0.0}
    breaker = CircuitBreaker(
        name,
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=30, half_open_trials=1),
        time_source=lambda: now["t"],
    )
    await breaker.record_failure()
    # Cool-down elapsed; the next before_call moves to half_open.
    now["t"] = 31.0
    return breaker


@pytest.mark.asyncio
async def test_generate_default_control_completes_run() -> None:
    system_id = await create_test_system(owner_id=OWNER, intake={"mfa": True})
    provider = FakeLLMProvider()

    outcome = await _orchestrator(provider).generate(principal_id=OWNER, system_id=system_id)

    assert outcome.status == "completed"
    assert outcome.control_id == "AC-2"
    assert outcome.citations == ["NIST SP 800-53 Rev. 5", "FedRAMP AC-2 Control"]
    assert outcome.write_failures == ()
    runs = await _runs()
    assert len(runs) == 1
    assert runs[0].id == outcome.run_id
    assert runs[0].status == "completed"
    sections = await _sections()
    assert len(sections) == 1
    assert sections[0].id == outcome.section_id
    assert sections[0].narrative == outcome.narrative
    assert sections[0].evidence == outcome.evidence
    # The provider saw the intake answers and asked for JSON output.
    assert '"mfa": true' in provider.calls[0]["messages"][1]["content"]
    assert provider.calls[0]["json_output"] is True


@pytest.mark.asyncio
async def test_explicit_control_is_normalized() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    outcome = await _orchestrator(FakeLLMProvider()).generate(
        principal_id=OWNER, system_id=system_id, control_id="ia-2"
    )
    assert outcome.control_id == "IA-2"
    assert (await _runs())[0].control_id == "IA-2"


@pytest.mark.asyncio
async def test_validation_failures_create_no_run() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    orchestrator = _orchestrator(FakeLLMProvider())

    with pytest.raises(UnauthorizedError):
        await orchestrator.generate(principal_id=None, system_id=system_id)
    with pytest.raises(BadRequestError, match="system_id"):
        await orchestrator.generate(principal_id=OWNER, system_id="  ")
    with pytest.raises(BadRequestError, match="Unsupported control_id"):
        await orchestrator.generate(principal_id=OWNER, system_id=system_id, control_id="XX-1")
    with pytest.raises(NotFoundError):
        await orchestrator.generate(principal_id=OWNER, system_id="does-not-exist")
    with pytest.raises(NotFoundError):
        await orchestrator.generate(principal_id="other-owner", system_id=system_id)

    assert await _runs() == []


@pytest.mark.asyncio
async def test_malformed_output_fails_run_without_sections() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    orchestrator = _orchestrator(FakeLLMProvider(response="not json at all"))

    with pytest.raises(RunFailedError) as excinfo:
        await orchestrator.generate(principal_id=OWNER, system_id=system_id)

    error = excinfo.value
    assert isinstance(error.cause, GenerationMalformedError)
    assert error.__cause__ is error.cause
    assert error.write_failures == ()
    runs = await _runs()
    assert len(runs) == 1
    assert runs[0].id == error.run_id
    assert runs[0].status == "failed"
    assert runs[0].error_message == str(error)
    assert await _sections() == []


@pytest.mark.asyncio
async def test_transport_error_message_matches_recorded_diagnostic() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    cause = GenerationTransportError("OpenAI error: 400", status_code=400)
    orchestrator = _orchestrator(FakeLLMProvider(error=cause))

    with pytest.raises(RunFailedError) as excinfo:
        await orchestrator.generate(principal_id=OWNER, system_id=system_id)

    assert excinfo.value.cause is cause
    assert str(excinfo.value) == "OpenAI error: 400"
    run = (await _runs())[0]
    assert run.status == "failed"
    assert run.error_message == "OpenAI error: 400"


@pytest.mark.asyncio
async def test_transient_failure_is_retried_to_success() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    provider = _FlakyProvider(
        [GenerationTransportError("OpenAI error: 503", status_code=503)],
        json.dumps({"narrative": "Recovered", "evidence": [], "citations": []}),
    )

    outcome = await _orchestrator(provider).generate(principal_id=OWNER, system_id=system_id)

    assert provider.calls == 2
    assert outcome.status == "completed"
    assert outcome.narrative == "Recovered"


@pytest.mark.asyncio
async def test_timeout_fails_run_with_timeout_error() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    provider = _HangingProvider()
    config = _config(retry_policy=RetryPolicy(timeout_ms=20, max_attempts=1, backoff_ms=1))

    with pytest.raises(RunFailedError) as excinfo:
        await _orchestrator(provider, config=config).generate(principal_id=OWNER, system_id=system_id)

    assert isinstance(excinfo.value.cause, GenerationTimeoutError)
    run = (await _runs())[0]
    assert run.status == "failed"
    assert run.error_message == "Narrative generation timed out after 20ms"


@pytest.mark.asyncio
async def test_open_breaker_fails_run_without_calling_provider() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    breaker = CircuitBreaker(
        "llm.fake",
        config=CircuitBreakerConfig(failure_threshold=1, open_seconds=60, half_open_trials=1),
    )
    await breaker.record_failure()
    provider = FakeLLMProvider()

    with pytest.raises(RunFailedError) as excinfo:
        await _orchestrator(provider, breaker=breaker).generate(principal_id=OWNER, system_id=system_id)

    assert isinstance(excinfo.value.cause, IntegrationUnavailableError)
    assert provider.calls == []
    assert (await _runs())[0].status == "failed"


@pytest.mark.asyncio
async def test_section_write_failure_fails_run() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    orchestrator = _orchestrator(
        FakeLLMProvider(),
        section_store=SectionStore(broken_session_factory),
    )

    with pytest.raises(RunFailedError) as excinfo:
        await orchestrator.generate(principal_id=OWNER, system_id=system_id)

    assert isinstance(excinfo.value.cause, PersistenceError)
    run = (await _runs())[0]
    assert run.status == "failed"
    assert run.error_message.startswith("Failed to persist section for run")


@pytest.mark.asyncio
async def test_finalize_failure_still_returns_narrative() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    orchestrator = _orchestrator(FakeLLMProvider(), run_store=_FinalizeFailsRunStore())

    outcome = await orchestrator.generate(principal_id=OWNER, system_id=system_id)

    assert outcome.status == "running"
    assert outcome.narrative
    assert [failure.operation for failure in outcome.write_failures] == ["finalize"]
    assert (await _runs())[0].status == "running"


@pytest.mark.asyncio
async def test_fail_write_failure_is_attached_to_primary_error() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    orchestrator = _orchestrator(
        FakeLLMProvider(response=None),
        run_store=_FailWriteFailsRunStore(),
    )

    with pytest.raises(RunFailedError) as excinfo:
        await orchestrator.generate(principal_id=OWNER, system_id=system_id)

    error = excinfo.value
    assert str(error) == "Narrative generation returned no content"
    assert [failure.operation for failure in error.write_failures] == ["fail"]
    assert (await _runs())[0].status == "running"


@pytest.mark.asyncio
async def test_cancelled_generation_marks_run_failed() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    provider = _HangingProvider()
    config = _config(retry_policy=RetryPolicy(timeout_ms=60000, max_attempts=1, backoff_ms=1))
    task = asyncio.create_task(
        _orchestrator(provider, config=config).generate(principal_id=OWNER, system_id=system_id)
    )
    await provider.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    run = (await _runs())[0]
    assert run.status == "failed"
    assert run.error_message == "Run cancelled before completion"


@pytest.mark.asyncio
async def test_create_run_leaves_run_running() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    run_id = await _orchestrator(FakeLLMProvider()).create_run(principal_id=OWNER, system_id=system_id)
    runs = await _runs()
    assert [run.id for run in runs] == [run_id]
    assert runs[0].status == "running"


@pytest.mark.asyncio
async def test_build_orchestrator_uses_configured_provider(monkeypatch) -> None:
    monkeypatch.setenv("LLM_PROVIDER", "fake")
    system_id = await create_test_system(owner_id=OWNER)
    outcome = await build_orchestrator().generate(principal_id=OWNER, system_id=system_id)
    assert outcome.status == "completed"
    assert outcome.citations[-1] == "FedRAMP AC-2 Control"


@pytest.mark.asyncio
async def test_empty_output_fails_run_without_sections() -> None:
    system_id = await create_test_system(owner_id=OWNER)

    with pytest.raises(RunFailedError) as excinfo:
        await _orchestrator(FakeLLMProvider(response="")).generate(principal_id=OWNER, system_id=system_id)

    assert str(excinfo.value) == "Narrative generation returned no content"
    run = (await _runs())[0]
    assert run.status == "failed"
    assert run.error_message == "Narrative generation returned no content"
    assert await _sections() == []


@pytest.mark.asyncio
async def test_half_open_breaker_closes_after_successful_generation() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    breaker = await _half_open_breaker("llm.recovering")
    assert breaker.state == "open"

    outcome = await _orchestrator(FakeLLMProvider(), breaker=breaker).generate(
        principal_id=OWNER, system_id=system_id
    )

    assert outcome.status == "completed"
    assert breaker.state == "closed"


@pytest.mark.asyncio
async def test_auth_error_during_half_open_trial_does_not_wedge_breaker() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    breaker = await _half_open_breaker("llm.misconfigured")

    with pytest.raises(RunFailedError) as excinfo:
        await _orchestrator(
            FakeLLMProvider(error=ProviderAuthError("Provider rejected credentials")),
            breaker=breaker,
        ).generate(principal_id=OWNER, system_id=system_id)
    assert isinstance(excinfo.value.cause, ProviderAuthError)
    assert breaker.state == "half_open"

    outcome = await _orchestrator(FakeLLMProvider(), breaker=breaker).generate(
        principal_id=OWNER, system_id=system_id
    )
    assert outcome.status == "completed"
    assert breaker.state == "closed"


@pytest.mark.asyncio
async def test_cancellation_during_half_open_trial_releases_it() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    breaker = await _half_open_breaker("llm.cancelled")
    provider = _HangingProvider()
    config = _config(retry_policy=RetryPolicy(timeout_ms=60000, max_attempts=1, backoff_ms=1))
    task = asyncio.create_task(
        _orchestrator(provider, config=config, breaker=breaker).generate(principal_id=OWNER, system_id=system_id)
    )
    await provider.started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    outcome = await _orchestrator(FakeLLMProvider(), breaker=breaker).generate(
        principal_id=OWNER, system_id=system_id
    )
    assert outcome.status == "completed"
    assert breaker.state == "closed"


@pytest.mark.asyncio
async def test_client_rejections_do_not_open_breaker() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    breaker = CircuitBreaker(
        "llm.rejecting",
        config=CircuitBreakerConfig(failure_threshold=5, open_seconds=60, half_open_trials=1),
    )
    provider = _FlakyProvider(
        [GenerationTransportError("Bad request", status_code=400) for _ in range(5)],
        DEFAULT_FAKE_RESPONSE,
    )
    orchestrator = _orchestrator(
        provider,
        config=_config(retry_policy=RetryPolicy(timeout_ms=1000, max_attempts=1, backoff_ms=1)),
        breaker=breaker,
    )

    for _ in range(5):
        with pytest.raises(RunFailedError):
            await orchestrator.generate(principal_id=OWNER, system_id=system_id)
    assert breaker.state == "closed"

    outcome = await orchestrator.generate(principal_id=OWNER, system_id=system_id)
    assert outcome.status == "completed"
    assert provider.calls == 6


@pytest.mark.asyncio
async def test_server_errors_open_breaker_at_threshold() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    breaker = CircuitBreaker(
        "llm.failing",
        config=CircuitBreakerConfig(failure_threshold=3, open_seconds=60, half_open_trials=1),
    )
    provider = _FlakyProvider(
        [GenerationTransportError("Upstream unavailable", status_code=503) for _ in range(3)],
        DEFAULT_FAKE_RESPONSE,
    )
    orchestrator = _orchestrator(
        provider,
        config=_config(retry_policy=RetryPolicy(timeout_ms=1000, max_attempts=1, backoff_ms=1)),
        breaker=breaker,
    )

    for _ in range(3):
        with pytest.raises(RunFailedError):
            await orchestrator.generate(principal_id=OWNER, system_id=system_id)
    assert breaker.state == "open"

    with pytest.raises(RunFailedError) as excinfo:
        await orchestrator.generate(principal_id=OWNER, system_id=system_id)
    assert isinstance(excinfo.value.cause, IntegrationUnavailableError)
    assert provider.calls == 3


@pytest.mark.asyncio
async def test_cancellation_during_finalize_marks_run_failed() -> None:
    system_id = await create_test_system(owner_id=OWNER)
    orchestrator = _orchestrator(FakeLLMProvider(), run_store=_CancelledFinalizeRunStore())

    with pytest.raises(asyncio.CancelledError):
        await orchestrator.generate(principal_id=OWNER, system_id=system_id)

    run = (await _runs())[0]
    assert run.status == "failed"
    assert run.error_message == "Run cancelled before completion"
    assert await _sections() == []
