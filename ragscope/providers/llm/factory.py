from __future__ import annotations

from ragscope.core.config import get_settings
from ragscope.providers.llm.fake import FakeLanguageModel
from ragscope.providers.llm.gemini_vertex import GeminiVertexModel


def get_language_model(request_id: str | None = None):
    settings = get_settings()
    provider = (settings.llm_provider or "vertex").lower()

    if provider == "fake":
        return FakeLanguageModel()
    return GeminiVertexModel(request_id=request_id)
