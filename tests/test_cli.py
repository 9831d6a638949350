"""
Tests for the fleetgate CLI.
"""

import json

import pytest
from typer.testing import CliRunner

from fleetgate.cli.commands import app
from fleetgate.config.schema import Config
from fleetgate.gateway.client import RpcClient


runner = CliRunner()


@pytest.fixture(autouse=True)
def fake_environment(monkeypatch, transport):
    """Point the CLI at the fake gateway with default configuration."""
    monkeypatch.setattr("fleetgate.config.loader.load_config", lambda: Config())
    monkeypatch.setattr(
        "fleetgate.gateway.client.create_rpc_client",
        lambda config: RpcClient(transport, default_timeout_ms=2000),
    )


class TestNodesRun:

    def test_success(self, gateway):
        result = runner.invoke(app, ["nodes", "run", "--node", "mac-1", "echo", "hi"])

        assert result.exit_code == 0
        assert "hi" in result.stdout
        assert gateway.delivered == ["system.run"]

    def test_ask_on_miss(self, gateway):
        result = runner.invoke(app, ["nodes", "run", "--node", "mac-1", "--ask", "on-miss", "echo", "hi"])

        assert result.exit_code == 0
        run_params = gateway.calls("node.invoke")[-1].params["params"]
        assert run_params["approved"] is True
        assert run_params["approvalDecision"] == "allow-once"

    def test_denied(self, gateway):
        gateway.decision = "deny"

        result = runner.invoke(app, ["nodes", "run", "--node", "mac-1", "--ask", "always", "echo", "hi"])

        assert result.exit_code == 1
        assert "system.run" not in gateway.invoke_commands()

    def test_invalid_ask(self, gateway):
        result = runner.invoke(app, ["nodes", "run", "--node", "mac-1", "--ask", "sometimes", "echo", "hi"])

        assert result.exit_code == 1
        assert gateway.requests == []

    def test_node_required(self, gateway):
        result = runner.invoke(app, ["nodes", "run", "echo", "hi"])

        assert result.exit_code == 1
        assert gateway.requests == []

    def test_failed_command_exit_code(self, gateway):
        gateway.run_payload = {"payload": {"stdout": "", "stderr": "nope\n", "exitCode": 2, "success": False}}

        result = runner.invoke(app, ["nodes", "run", "--node", "mac-1", "false"])

        assert result.exit_code == 2

    def test_timeout_option(self, gateway):
        result = runner.invoke(app, ["nodes", "run", "--node", "mac-1", "--timeout", "1500", "echo", "hi"])

        assert result.exit_code == 0
        assert gateway.calls("node.invoke")[-1].params["timeoutMs"] == 1500

    def test_json_output(self, gateway):
        result = runner.invoke(app, ["nodes", "run", "--node", "mac-1", "--json", "echo", "hi"])

        assert result.exit_code == 0
        assert json.loads(result.stdout)["exitCode"] == 0


class TestOtherCommands:

    def test_screen_record_over_limit(self, gateway):
        result = runner.invoke(app, ["nodes", "screen-record", "--node", "mac-1", "--duration", "1h"])

        assert result.exit_code == 1
        assert gateway.requests == []

    def test_list_json(self, gateway):
        result = runner.invoke(app, ["nodes", "list", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout)[0]["nodeId"] == "mac-1"

    def test_list_table(self, gateway):
        result = runner.invoke(app, ["nodes", "list"])

        assert result.exit_code == 0
        assert "mac-1" in result.stdout

    def test_invoke_rejects_bad_params(self, gateway):
        result = runner.invoke(app, ["nodes", "invoke", "camera.snap", "--node", "mac-1", "--params", "[1]"])

        assert result.exit_code == 1
        assert gateway.requests == []

    def test_invoke(self, gateway):
        result = runner.invoke(
            app, ["nodes", "invoke", "camera.snap", "--node", "mac-1", "--params", '{"facing": "front"}'],
        )

        assert result.exit_code == 0
        assert gateway.calls("node.invoke")[0].params["params"] == {"facing": "front"}

    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "fleetgate v" in result.stdout
