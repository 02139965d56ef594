"""Tests for environment-driven configuration."""

from continuity.utils.config import DEFAULT_RESUMPTION_CUES, load_config


def test_defaults(monkeypatch) -> None:
    for name in ('SIMILARITY_DIRECT_THRESHOLD', 'CIRCUIT_BREAKER_THRESHOLD', 'RESUMPTION_CUES', 'MEMORY_RETENTION_WINDOW'):
        monkeypatch.delenv(name, raising=False)

    loaded = load_config()

    assert loaded.similarity.direct_threshold == 0.75
    assert loaded.similarity.moderate_threshold == 0.40
    assert loaded.circuit_breaker.threshold == 3
    assert loaded.circuit_breaker.cooldown_seconds == 300
    assert loaded.memory.retention_window == 10000
    assert loaded.patterns.cache_ttl_seconds == 1800
    assert loaded.similarity.resumption_cues == DEFAULT_RESUMPTION_CUES


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv('SIMILARITY_DIRECT_THRESHOLD', '0.8')
    monkeypatch.setenv('RESUMPTION_CUES', 'Circle back, revisit ,')
    monkeypatch.setenv('OPENSEARCH_ENABLED', 'yes')

    loaded = load_config()

    assert loaded.similarity.direct_threshold == 0.8
    assert loaded.similarity.resumption_cues == ('circle back', 'revisit')
    assert loaded.opensearch.enabled is True
