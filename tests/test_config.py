import pytest

from inference_agent.config import load_config, parse_duration
from inference_agent.errors import ConfigError


def test_defaults(monkeypatch):
    monkeypatch.setenv("INFERENCE_AGENT_ID", "agent-1")
    cfg = load_config()
    assert cfg["agent_id"] == "agent-1"
    assert cfg["health_interval"] == 30.0
    assert cfg["poll_interval"] == 2.0
    assert cfg["poll_timeout"] == 300.0
    assert cfg["audit_max_retries"] == 3
    assert cfg["audit_backoff"] == 1.0
    assert cfg["reconnect_delay"] == 2.0
    assert cfg["reconnect_max_attempts"] == 11
    assert cfg["queue_size"] == 16
    assert cfg["chain_id"] == 16602
    assert cfg["encryption_key_id"] == "default"
    assert cfg["encryption_key_bytes"] is None


def test_missing_agent_id():
    with pytest.raises(ConfigError):
        load_config()


def test_yaml_values_overridden_by_env(monkeypatch, tmp_path):
    cfg_file = tmp_path / "agent.yml"
    cfg_file.write_text("agent_id: from-file\nhealth_interval: 10s\npoll_timeout: 1m\n")
    monkeypatch.setenv("INFERENCE_CONFIG", str(cfg_file))
    monkeypatch.setenv("INFERENCE_HEALTH_INTERVAL", "5s")
    cfg = load_config()
    assert cfg["agent_id"] == "from-file"
    assert cfg["health_interval"] == 5.0
    assert cfg["poll_timeout"] == 60.0


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "nope.yml"))


def test_encryption_key(monkeypatch):
    monkeypatch.setenv("INFERENCE_AGENT_ID", "a")
    monkeypatch.setenv("INFERENCE_ENCRYPTION_KEY", "ab" * 32)
    cfg = load_config()
    assert cfg["encryption_key_bytes"] == bytes.fromhex("ab" * 32)


@pytest.mark.parametrize("key", ["zz" * 32, "ab" * 16])
def test_bad_encryption_key(monkeypatch, key):
    monkeypatch.setenv("INFERENCE_AGENT_ID", "a")
    monkeypatch.setenv("INFERENCE_ENCRYPTION_KEY", key)
    with pytest.raises(ConfigError):
        load_config()


def test_token_contract_requires_key_material(monkeypatch):
    monkeypatch.setenv("INFERENCE_AGENT_ID", "a")
    monkeypatch.setenv("INFERENCE_TOKEN_CONTRACT", "0x" + "22" * 20)
    with pytest.raises(ConfigError, match="private_key"):
        load_config()


def test_bool_and_transport(monkeypatch):
    monkeypatch.setenv("INFERENCE_AGENT_ID", "a")
    monkeypatch.setenv("INFERENCE_NATS_JETSTREAM", "no")
    monkeypatch.setenv("INFERENCE_TRANSPORT", "memory")
    cfg = load_config()
    assert cfg["nats_jetstream"] is False
    assert cfg["transport"] == "memory"

    monkeypatch.setenv("INFERENCE_TRANSPORT", "carrier-pigeon")
    with pytest.raises(ConfigError):
        load_config()


def test_parse_duration():
    assert parse_duration("500ms") == 0.5
    assert parse_duration("2s") == 2.0
    assert parse_duration("5m") == 300.0
    assert parse_duration("1h") == 3600.0
    assert parse_duration(3) == 3.0
    assert parse_duration("1.5") == 1.5
    with pytest.raises(ConfigError):
        parse_duration("soon")


def test_non_positive_interval(monkeypatch):
    monkeypatch.setenv("INFERENCE_AGENT_ID", "a")
    monkeypatch.setenv("INFERENCE_POLL_INTERVAL", "0s")
    with pytest.raises(ConfigError):
        load_config()
