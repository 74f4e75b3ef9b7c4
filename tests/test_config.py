from pathlib import Path
from typing import Any

from lingotrainer.config import Settings, get_settings
from lingotrainer.provider import ContentProvider


def test_defaults() -> None:
    settings = Settings(_env_file=None)
    assert settings.data_dir == Path(".lingotrainer")
    assert settings.db_path == Path(".lingotrainer") / "progress.db"
    assert settings.timer_budget_seconds == 120
    assert settings.starting_hearts == 5
    assert settings.streak_freeze_cost == 50


def test_environment_overrides(monkeypatch: Any, tmp_path: Path) -> None:
    monkeypatch.setenv("LINGOTRAINER_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LINGOTRAINER_RETRY_MAX_ATTEMPTS", "2")
    monkeypatch.setenv("LINGOTRAINER_PROVIDER_MODEL", "test-model")
    settings = Settings(_env_file=None)
    assert settings.db_path == tmp_path / "progress.db"
    assert settings.retry_policy().max_attempts == 2
    assert settings.provider_model == "test-model"


def test_retry_policy_from_settings() -> None:
    policy = Settings(
        _env_file=None,
        retry_base_delay_seconds=0.5,
        retry_max_delay_seconds=4.0,
        retry_rate_limit_floor_seconds=8.0,
    ).retry_policy()
    assert policy.base_delay == 0.5
    assert policy.max_delay == 4.0
    assert policy.rate_limit_floor == 8.0


def test_provider_from_settings() -> None:
    settings = Settings(_env_file=None, provider_base_url="https://example.test/v1/", request_timeout_seconds=5.0)
    provider = ContentProvider.from_settings(settings)
    assert provider.base_url == "https://example.test/v1"
    assert provider.timeout == 5.0
    assert provider.retry_policy == settings.retry_policy()


def test_get_settings_is_cached() -> None:
    get_settings.cache_clear()
    assert get_settings() is get_settings()
    get_settings.cache_clear()
