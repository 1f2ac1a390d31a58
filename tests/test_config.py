import pytest

from config import ProductionConfig, TestingConfig, get_config, rate_limit_storage_uri


def test_rate_limit_storage_defaults_to_memory(monkeypatch):
    monkeypatch.delenv('REDIS_URL', raising=False)

    assert rate_limit_storage_uri() == 'memory://'


def test_rate_limit_storage_uses_redis_when_configured(monkeypatch):
    monkeypatch.setenv('REDIS_URL', 'redis://cache.internal:6379/1')

    assert rate_limit_storage_uri() == 'redis://cache.internal:6379/1'


def test_production_config_only_uses_redis_when_configured():
    # 沒設定 REDIS_URL 時,production 不應指向不存在的 Redis
    assert ProductionConfig.RATELIMIT_STORAGE_URI == (ProductionConfig.REDIS_URL or 'memory://')


def test_get_config_by_env(monkeypatch):
    monkeypatch.setenv('FLASK_ENV', 'production')
    assert get_config() is ProductionConfig

    monkeypatch.setenv('FLASK_ENV', 'testing')
    assert get_config() is TestingConfig


def test_validate_rejects_default_secret_in_production(monkeypatch):
    from config import Config, DEFAULT_SECRET_KEY

    monkeypatch.setenv('FLASK_ENV', 'production')
    monkeypatch.setenv('SECRET_KEY', DEFAULT_SECRET_KEY)
    monkeypatch.setenv('JWT_SECRET_KEY', 'jwt-secret')
    monkeypatch.setenv('DATABASE_URL', 'postgresql://localhost/asana')

    with pytest.raises(ValueError):
        Config.validate()
