from __future__ import annotations

import types

import pytest

from ragscope.agent.orchestrator import RAGOrchestrator
from ragscope.core.config import ConfigurationSource
from ragscope.core.errors import FatalConfigurationError, IntegrationUnavailableError, TotalRetrievalFailure
from ragscope.providers.llm.fake import FakeLanguageModel
import scripts.provider_smoke as provider_smoke


class FailingRetriever:
    async def retrieve(self, *_args, **_kwargs):
        # Trigger a controlled error to validate mapping in the smoke script.
        raise TotalRetrievalFailure("all searches failed", (("q", "docs"),))


def _args(**overrides) -> types.SimpleNamespace:
    values = {
        "principal": "u1",
        "tenant": "t1",
        "workspace": None,
        "tier": "basic",
        "collection": ["docs"],
        "query": "quarterly report",
    }
    values.update(overrides)
    return types.SimpleNamespace(**values)


@pytest.mark.asyncio
async def test_provider_smoke_prints_scoped_results(monkeypatch, capsys, config: ConfigurationSource, store, seed) -> None:
    seed(store, "docs", "d1", "quarterly report", tenant_id="t1")
    seed(store, "docs", "d2", "quarterly report", tenant_id="t2")
    orchestrator = RAGOrchestrator(config, store=store, llm=FakeLanguageModel())
    monkeypatch.setattr(provider_smoke, "build_orchestrator", lambda *_args, **_kwargs: orchestrator)

    assert await provider_smoke._run(_args()) == 0

    out = capsys.readouterr().out
    assert "# docs: access=tenant" in out
    assert "id=d1" in out
    assert "id=d2" not in out


@pytest.mark.asyncio
async def test_provider_smoke_surfaces_retrieval_failure(monkeypatch, config: ConfigurationSource, store) -> None:
    orchestrator = RAGOrchestrator(config, store=store, llm=FakeLanguageModel(), retriever=FailingRetriever())
    monkeypatch.setattr(provider_smoke, "build_orchestrator", lambda *_args, **_kwargs: orchestrator)

    with pytest.raises(TotalRetrievalFailure):
        # _run should surface the underlying error for main() to map.
        await provider_smoke._run(_args())

    code, message = provider_smoke._format_error(TotalRetrievalFailure("down"))
    assert code == 4
    assert "RETRIEVAL_FAILED" in message


def test_error_mapping() -> None:
    assert provider_smoke._format_error(FatalConfigurationError("bad"))[0] == 2
    assert provider_smoke._format_error(IntegrationUnavailableError("open"))[0] == 3
    code, message = provider_smoke._format_error(ValueError("odd"))
    assert code == 1
    assert message.startswith("UNKNOWN_ERROR")
