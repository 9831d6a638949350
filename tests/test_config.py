"""
Tests for configuration loading.
"""

import json

from fleetgate.config.loader import camel_to_snake, load_config, save_config, snake_to_camel
from fleetgate.config.schema import Config


class TestLoadConfig:

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "config.json")

        assert config.gateway.url == "ws://127.0.0.1:18789"
        assert config.nodes.approval_timeout_ms == 120000
        assert config.nodes.invoke_retries == 0
        assert config.log_path is None

    def test_camel_case_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "gateway": {"url": "wss://gw.example:443", "timeoutMs": 5000},
            "nodes": {"defaultNode": "mac-1", "ask": "always", "invokeRetries": 2},
        }))

        config = load_config(path)

        assert config.gateway.url == "wss://gw.example:443"
        assert config.gateway.timeout_ms == 5000
        assert config.nodes.default_node == "mac-1"
        assert config.nodes.ask == "always"
        assert config.nodes.invoke_retries == 2

    def test_invalid_file_falls_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")

        assert load_config(path).nodes.default_agent_id == "main"

    def test_invalid_values_fall_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"nodes": {"ask": "sometimes"}}))

        assert load_config(path).nodes.ask is None

    def test_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLEETGATE_GATEWAY__TOKEN", "secret")

        assert load_config(tmp_path / "config.json").gateway.token == "secret"

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "gateway": {"url": "wss://gw.example:443", "token": "from-file"},
            "nodes": {"invokeRetries": 2},
        }))
        monkeypatch.setenv("FLEETGATE_GATEWAY__TOKEN", "from-env")
        monkeypatch.setenv("FLEETGATE_NODES__INVOKE_RETRIES", "5")

        config = load_config(path)

        assert config.gateway.token == "from-env"
        assert config.gateway.url == "wss://gw.example:443"
        assert config.nodes.invoke_retries == 5

    def test_save_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "config.json"
        config = Config()
        config.nodes.default_node = "pixel"

        save_config(config, path)

        data = json.loads(path.read_text())
        assert data["nodes"]["defaultNode"] == "pixel"
        assert load_config(path).nodes.default_node == "pixel"


def test_key_conversion():
    assert camel_to_snake("approvalTimeoutMs") == "approval_timeout_ms"
    assert snake_to_camel("approval_timeout_ms") == "approvalTimeoutMs"
