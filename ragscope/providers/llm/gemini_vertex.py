from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from ragscope.core.config import get_settings
from ragscope.core.errors import (
    LanguageModelAuthError,
    LanguageModelError,
    LanguageModelTimeoutError,
    ProviderConfigError,
)
from ragscope.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class GeminiVertexModel:
    def __init__(self, request_id: str | None = None) -> None:
        self._settings = get_settings()
        self._request_id = request_id

    def _format_messages(self, messages: list[dict]) -> str:
        # Preserve roles so the model sees the conversation in order.
        lines: list[str] = []
        for msg in messages:
            role = msg.get("role", "user")
            content = msg.get("content", "")
            lines.append(f"{role.upper()}: {content}")
        return "\n".join(lines)

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
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
        return project, location, model

    async def complete(
        self,
        system_prompt: str,
        messages: list[dict],
        schema: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> dict | str:
        project, location, model_name = self._validate_config()
        timeout = timeout_s or self._settings.llm_timeout_ms / 1000.0

        try:
            from vertexai import init
            from vertexai.generative_models import GenerationConfig, GenerativeModel
            from google.auth.exceptions import DefaultCredentialsError, RefreshError
            from google.api_core.exceptions import PermissionDenied, Unauthenticated
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError("Vertex AI SDK not available. Install google-cloud-aiplatform.") from exc

        generation_config = None
        if schema is not None:
            generation_config = GenerationConfig(
                response_mime_type="application/json",
                response_schema=schema,
            )

        start = time.monotonic()
        try:
            logger.info("vertex_complete_start request_id=%s model=%s", self._request_id, model_name)
            init(project=project, location=location)
            model = GenerativeModel(model_name, system_instruction=system_prompt)
            response = await asyncio.wait_for(
                model.generate_content_async(
                    self._format_messages(messages),
                    generation_config=generation_config,
                ),
                timeout=timeout,
            )
        except (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated) as exc:
            logger.warning("vertex_complete_auth_error request_id=%s", self._request_id)
            record_external_call(
                integration="llm.gemini_vertex",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise LanguageModelAuthError(
                "Vertex auth error: run `gcloud auth application-default login`."
            ) from exc
        except asyncio.TimeoutError as exc:
            logger.warning("vertex_complete_timeout request_id=%s", self._request_id)
            record_external_call(
                integration="llm.gemini_vertex",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise LanguageModelTimeoutError("Vertex completion timed out.") from exc
        except asyncio.CancelledError:
            # Allow caller cancellation to bubble up for disconnect handling.
            raise
        except Exception as exc:
            logger.error("vertex_complete_error request_id=%s", self._request_id)
            record_external_call(
                integration="llm.gemini_vertex",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise LanguageModelError("Vertex AI request failed. Check credentials and model access.") from exc

        record_external_call(
            integration="llm.gemini_vertex",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        text = getattr(response, "text", "") or ""
        if schema is None:
            return text
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # Hand the raw text back; the analyzer owns repair of malformed output.
            return text
