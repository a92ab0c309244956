import json

from zapbot.config.loader import (
    camel_to_snake,
    convert_keys,
    convert_to_camel,
    load_config,
    save_config,
    snake_to_camel,
)
from zapbot.config.schema import Config


def test_key_conversion():
    assert camel_to_snake("bridgeUrl") == "bridge_url"
    assert snake_to_camel("history_window") == "historyWindow"
    assert camel_to_snake("redisTimeout") == "redis_timeout"
    assert snake_to_camel("api_key") == "apiKey"
    assert convert_keys({"cache": {"ttlSeconds": 60}}) == {"cache": {"ttl_seconds": 60}}
    assert convert_to_camel({"store": [{"key_prefix": "x"}]}) == {"store": [{"keyPrefix": "x"}]}


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(tmp_path / "missing.json")
    assert config.transport.bridge_url == "ws://localhost:3001"
    assert config.reconnect.base_delay == 3.0
    assert config.cache.backend == "memory"
    assert config.pipeline.history_window == 5


def test_load_camel_case_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "transport": {"bridgeUrl": "ws://bridge:3001", "bridgeToken": "secret"},
        "provider": {"model": "openai/gpt-4o-mini", "apiKey": "sk-test"},
        "cache": {"backend": "redis", "redisUrl": "redis://cache:6379/1"},
        "store": {"path": str(tmp_path / "data" / "store.json")},
    }), encoding="utf-8")

    config = load_config(path)

    assert config.transport.bridge_token == "secret"
    assert config.provider.api_key == "sk-test"
    assert config.cache.redis_url == "redis://cache:6379/1"
    assert config.store_path == tmp_path / "data" / "store.json"
    assert config.credentials_path == tmp_path / "data" / "credentials"


def test_broken_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{broken", encoding="utf-8")
    assert load_config(path).provider.model == Config().provider.model


def test_save_writes_camel_case(tmp_path):
    path = tmp_path / "config.json"
    config = Config()
    config.pipeline.history_window = 8
    save_config(config, path)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["pipeline"]["historyWindow"] == 8
    assert load_config(path).pipeline.history_window == 8


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("ZAPBOT_PROVIDER__MODEL", "anthropic/claude-3-haiku")
    assert Config().provider.model == "anthropic/claude-3-haiku"
