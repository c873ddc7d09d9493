"""Unit tests for settings, dispatch config and the backoff policy."""

import pytest

from formrelay.core.config import DispatchConfig, Settings, settings
from formrelay.core.exceptions import RetryPolicy, compute_backoff_delay


def test_settings_initialization():
    """Test settings are initialized properly."""
    assert settings.APP_NAME == "formrelay"
    assert settings.API_V1_PREFIX == "/api/v1"


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENT", "7")
    monkeypatch.setenv("API_BASE_URL", "http://partner.test/api")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "120")
    s = Settings()
    assert s.MAX_CONCURRENT == 7
    assert s.API_BASE_URL == "http://partner.test/api"
    assert s.RATE_LIMIT_PER_MINUTE == 120


def test_settings_reject_zero_concurrency(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENT", "0")
    with pytest.raises(ValueError):
        Settings()


def test_dispatch_config_from_settings():
    s = settings.model_copy(update={"MAX_WORKERS": 3, "MAX_RETRIES": 1, "RETRY_BASE_DELAY_S": 0.5, "DEFAULT_PRIORITY": 4})
    config = DispatchConfig.from_settings(s)
    assert config.max_workers == 3
    assert config.default_priority == 4
    assert config.retry_policy == RetryPolicy(max_retries=1, base_delay_s=0.5)


def test_dispatch_config_is_frozen():
    config = DispatchConfig()
    with pytest.raises(AttributeError):
        config.max_concurrent = 10


def test_dispatch_config_validates_limits():
    with pytest.raises(ValueError):
        DispatchConfig(max_concurrent=0)
    with pytest.raises(ValueError):
        DispatchConfig(max_workers=0)
    with pytest.raises(ValueError):
        DispatchConfig(default_priority=-1)


class TestBackoff:
    def test_delay_doubles_per_retry(self):
        policy = RetryPolicy(max_retries=3, base_delay_s=1.0)
        assert [compute_backoff_delay(policy, n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_default_policy(self):
        policy = RetryPolicy()
        assert compute_backoff_delay(policy, 1) == 10.0

    def test_delay_cap(self):
        policy = RetryPolicy(base_delay_s=1.0, max_delay_s=3.0)
        assert compute_backoff_delay(policy, 5) == 3.0

    def test_retry_numbers_are_one_based(self):
        with pytest.raises(ValueError):
            compute_backoff_delay(RetryPolicy(), 0)

    def test_allows_retry(self):
        policy = RetryPolicy(max_retries=2)
        assert policy.allows_retry(0)
        assert policy.allows_retry(1)
        assert not policy.allows_retry(2)

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
