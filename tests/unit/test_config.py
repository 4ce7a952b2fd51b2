"""Tests for configuration loading."""

from durafaas.config import load_config
from durafaas.runtime import create_scheduler
from durafaas.persistence import SQLiteInstanceStore
from durafaas.transports import get_transport
from durafaas.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
scheduler:
  worker_count: 2
  dispatch_max_attempts: 3
http:
  port: 8080
"""
    )
    monkeypatch.setenv("DURAFAAS_CONFIG", str(config_path))
    monkeypatch.delenv("DURAFAAS_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.scheduler.worker_count == 2
    assert config.scheduler.dispatch_max_attempts == 3
    assert config.http.port == 8080
    assert config.database_url is None


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("DURAFAAS_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("DURAFAAS_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.scheduler.worker_count == 4
    assert config.http.host == "127.0.0.1"
    assert config.http.port == 7071


def test_database_url_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from/file.db\n")
    monkeypatch.setenv("DURAFAAS_CONFIG", str(config_path))
    db_url = f"sqlite://{tmp_path / 'env.db'}"
    monkeypatch.setenv("DURAFAAS_DATABASE_URL", db_url)

    config = load_config()
    assert config.database_url == db_url

    scheduler = create_scheduler(config)
    assert isinstance(scheduler.store, SQLiteInstanceStore)
    assert scheduler.registry.has_orchestrator("HelloDurable")


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
    prefix: staging
"""
    )
    monkeypatch.setenv("DURAFAAS_CONFIG", str(config_path))
    monkeypatch.delenv("DURAFAAS_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
    assert transport._queue_name("activities") == "staging:activities"
