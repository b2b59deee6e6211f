"""Tests for configuration loading."""

from stepflow.config import load_config
from stepflow.credentials import AuthType
from stepflow.queues import get_queue
from stepflow.queues.redis import RedisQueue


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
queue:
  backend: redis
  name: billing
  redis:
    host: testhost
    port: 1234
retry:
  max_attempts: 5
  base_delay: 2
execution:
  default_step_timeout: 30
connections:
  shop:
    base_url: https://shop.example.com
    auth_type: API_KEY
    api_key: k-123
"""
    )
    monkeypatch.setenv("STEPFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("STEPFLOW_QUEUE", raising=False)

    config = load_config()
    assert config.queue.backend == "redis"
    assert config.queue.name == "billing"
    assert config.queue.redis.host == "testhost"
    assert config.queue.redis.port == 1234
    assert config.retry.max_attempts == 5
    assert config.retry.base_delay == 2
    assert config.execution.default_step_timeout == 30
    assert config.connections["shop"].auth_type is AuthType.API_KEY
    assert config.connections["shop"].auth_headers() == {"X-API-Key": "k-123"}


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.delenv("STEPFLOW_QUEUE", raising=False)
    monkeypatch.delenv("STEPFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.queue.backend == "inmemory"
    assert config.retry.max_attempts == 3
    assert config.retry.base_delay == 5.0
    assert config.retry.max_delay == 300.0
    assert config.database_url is None


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPFLOW_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("STEPFLOW_DATABASE_URL", "sqlite:///tmp/stepflow.db")
    monkeypatch.setenv("STEPFLOW_LOG_LEVEL", "debug")

    config = load_config()
    assert config.database_url == "sqlite:///tmp/stepflow.db"
    assert config.log_level == "DEBUG"


def test_get_queue_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
queue:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("STEPFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("STEPFLOW_QUEUE", raising=False)

    queue = get_queue()
    assert isinstance(queue, RedisQueue)
    assert queue.host == "confighost"
    assert queue.port == 6380
