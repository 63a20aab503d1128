from __future__ import annotations

import logging
import time

from sspgen.core.config import Settings, get_settings
from sspgen.core.errors import GenerationTransportError, ProviderAuthError, ProviderConfigError
from sspgen.services.telemetry import record_external_call

logger = logging.getLogger(__name__)


class GeminiVertexProvider:
    name = "vertex"

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def _format_messages(self, messages: list[dict[str, str]]) -> str:
        # Preserve roles and keep system guidance at the top of the prompt.
        system_lines: list[str] = []
        other_lines: list[str] = []
        for msg in messages:
            role = msg.get("role", "user")
            content = msg.get("content", "")
            line = f"{role.upper()}: {content}"
            if role == "system":
                system_lines.append(line)
            else:
                other_lines.append(line)
        return "\n".join(system_lines + other_lines)

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._settings.gemini_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("GEMINI_MODEL")
        if missing:
            raise ProviderConfigError(
                f"Vertex config missing: set {', '.join(missing)} in .env."
            )
        return project, location, model

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        json_output: bool,
    ) -> str | None:
        project, location, model_name = self._validate_config()

        try:
            from vertexai import init
            from vertexai.generative_models import GenerativeModel
            from google.auth.exceptions import DefaultCredentialsError, RefreshError
            from google.api_core.exceptions import PermissionDenied, Unauthenticated
        except ImportError as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        generation_config: dict = {"temperature": temperature, "max_output_tokens": max_tokens}
        if json_output:
            generation_config["response_mime_type"] = "application/json"

        start = time.monotonic()
        try:
            logger.info("vertex_generate_start model=%s", model_name)
            init(project=project, location=location)
            model = GenerativeModel(model_name)
            response = await model.generate_content_async(
                self._format_messages(messages),
                generation_config=generation_config,
            )
        except (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated) as exc:
            record_external_call(
                integration="llm.vertex",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ProviderAuthError(
                "Vertex auth error: run `gcloud auth application-default login`."
            ) from exc
        except Exception as exc:
            record_external_call(
                integration="llm.vertex",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.error("vertex_generate_error model=%s", model_name)
            status_code = getattr(exc, "code", None)
            raise GenerationTransportError(
                f"Vertex AI request failed: {exc}",
                status_code=status_code if isinstance(status_code, int) else None,
            ) from exc

        record_external_call(
            integration="llm.vertex",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        try:
            return response.text
        except ValueError:
            # Blocked or empty candidates raise on .text; report as no content.
            return None
