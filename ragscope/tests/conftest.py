from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

import pytest

from ragscope.core.config import ConfigurationSource, Settings
from ragscope.providers.embeddings.hashing import embed_text
from ragscope.providers.vectorstore.memory import InMemoryVectorStore
from ragscope.services import telemetry


@pytest.fixture(autouse=True)
def reset_telemetry() -> None:
    # Counters are process-global; isolate them per test.
    telemetry.reset()
    yield
    telemetry.reset()


@pytest.fixture
def settings() -> Settings:
    # Ignore local .env files and keep every scoped record searchable by default.
    return Settings(_env_file=None, min_relevance_score=0.0)


@pytest.fixture
def config(settings: Settings) -> ConfigurationSource:
    return ConfigurationSource(settings)


@pytest.fixture
def store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def seed() -> Callable[..., None]:
    def _seed(
        target: InMemoryVectorStore,
        collection: str,
        external_id: str,
        content: str,
        **metadata: Any,
    ) -> None:
        metadata.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        target.upsert(collection, external_id, content, embed_text(content), metadata)

    return _seed
