from __future__ import annotations

import pytest

from ragscope.core.config import ConfigurationSource, Settings, validate_settings
from ragscope.core.errors import FatalConfigurationError


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults_are_valid() -> None:
    validate_settings(_settings())


@pytest.mark.parametrize(
    "overrides",
    [
        {"tier_budgets": {"admin": {"max_results": 1, "max_total_tokens": 1, "max_tokens_per_item": 1}}},
        {
            "tier_budgets": {
                tier: {"max_results": 0, "max_total_tokens": 10, "max_tokens_per_item": 10}
                for tier in ("admin", "premium", "basic", "guest")
            }
        },
        {"band_thresholds": [100, 50, 1000]},
        {"band_thresholds": [100, 1000]},
        {"band_result_factors": {"low": 1.0, "medium": 1.0, "high": 1.0}},
        {"stats_fallback_band": "huge"},
        {"collection_overrides": {"emails": {"max_rows": 3}}},
        {"min_relevance_score": 1.5},
        {"search_max_concurrency": 0},
        {"search_timeout_ms": 0},
        {"owner_field": ""},
        {"tier_time_window_days": {"visitor": 3}},
        {"federated_nodes_json": "{not json"},
    ],
)
def test_invalid_settings_are_fatal(overrides: dict) -> None:
    with pytest.raises(FatalConfigurationError):
        validate_settings(_settings(**overrides))


def test_source_refuses_invalid_initial_settings() -> None:
    with pytest.raises(FatalConfigurationError):
        ConfigurationSource(_settings(search_max_concurrency=0))


def test_reload_swaps_settings_and_notifies() -> None:
    source = ConfigurationSource(_settings())
    received: list[Settings] = []
    source.subscribe(received.append)

    updated = _settings(min_relevance_score=0.5)
    source.reload(updated)

    assert source.settings is updated
    assert source.version == 2
    assert received == [updated]


def test_bad_reload_keeps_previous_settings() -> None:
    original = _settings()
    source = ConfigurationSource(original)
    received: list[Settings] = []
    source.subscribe(received.append)

    with pytest.raises(FatalConfigurationError):
        source.reload(_settings(band_thresholds=[5, 1, 10]))

    assert source.settings is original
    assert source.version == 1
    assert received == []
