"""Tests for the custody-policy command line."""

import json

import pytest
from click.testing import CliRunner
from unittest.mock import AsyncMock, patch

from cli.custody_policy_cli import cli
from custody_policy.errors import CustodyApiError, PolicyFormatError
from custody_policy.models.policy import Policy


POLICY = {
    "id": "pol-1",
    "name": "Large transfers",
    "rules": [{
        "id": "large",
        "type": "amount_limit",
        "condition": {"field": "amount", "operator": "gt", "value": 1000},
        "action": "require_approval",
        "priority": 10,
    }],
    "approval_workflow": {"type": "multi", "required_approvers": 2},
    "spending_limits": [{"asset": "ETH", "period": "daily", "max_amount": "100", "current_usage": "90"}],
    "blacklist": ["0xBAD"],
}


@pytest.fixture
def files(tmp_path):
    def write(name, data):
        path = tmp_path / name
        path.write_text(json.dumps(data))
        return str(path)
    return write


@pytest.fixture
def runner():
    return CliRunner()


class TestPolicyCommands:
    def test_evaluate_require_approval(self, runner, files):
        result = runner.invoke(cli, [
            "policy", "evaluate",
            "--policy-file", files("policy.json", POLICY),
            "--transaction-file", files("tx.json", {"amount": "1500", "asset": "ETH", "destination": "0xABC"}),
        ])
        assert result.exit_code == 0
        assert "Action: require_approval" in result.output
        assert "Required approvals: 2" in result.output

    def test_evaluate_deny_exits_1(self, runner, files):
        result = runner.invoke(cli, [
            "policy", "evaluate",
            "--policy-file", files("policy.json", POLICY),
            "--transaction-file", files("tx.json", {"amount": "5", "asset": "ETH", "destination": "0xBAD"}),
        ])
        assert result.exit_code == 1
        assert "Action: deny" in result.output
        assert "[critical] blacklist" in result.output

    def test_evaluate_malformed_transaction(self, runner, files):
        result = runner.invoke(cli, [
            "policy", "evaluate",
            "--policy-file", files("policy.json", POLICY),
            "--transaction-file", files("tx.json", {"asset": "ETH"}),
        ])
        assert result.exit_code != 0
        assert "amount" in result.output

    def test_quorum(self, runner):
        result = runner.invoke(cli, ["policy", "quorum", "5", "supermajority"])
        assert result.exit_code == 0
        assert "Required approvals: 4/5" in result.output

    def test_quorum_threshold(self, runner):
        result = runner.invoke(cli, ["policy", "quorum", "5", "threshold", "--threshold", "2"])
        assert "Required approvals: 2/5" in result.output

    def test_check_limit(self, runner, files):
        path = files("policy.json", POLICY)
        ok = runner.invoke(cli, ["policy", "check-limit", "--policy-file", path, "ETH", "10"])
        assert ok.exit_code == 0
        over = runner.invoke(cli, ["policy", "check-limit", "--policy-file", path, "ETH", "11"])
        assert over.exit_code == 1
        assert "Remaining: 10" in over.output

    def test_merge(self, runner, files):
        other = {"id": "pol-2", "name": "More", "blacklist": ["0xBAD", "0xWORSE"]}
        result = runner.invoke(cli, ["policy", "merge", files("a.json", POLICY), files("b.json", other)])
        assert result.exit_code == 0
        merged = json.loads(result.output)
        assert merged["id"] == "merged"
        assert merged["blacklist"] == ["0xBAD", "0xWORSE"]

    def test_validate_workflow(self, runner, files):
        bad = {**POLICY, "approval_workflow": {"type": "quorum", "required_approvers": 0}}
        result = runner.invoke(cli, ["policy", "validate-workflow", "--policy-file", files("p.json", bad)])
        assert result.exit_code == 1
        assert "Required approvers must be at least 1" in result.output


class TestRemoteCommands:
    def test_remote_evaluate(self, runner, files):
        fake = AsyncMock()
        fake.__aenter__.return_value = fake
        fake.fetch_policy.return_value = Policy(id="remote-1", name="Remote", blacklist=["0xBAD"])
        with patch("cli.custody_policy_cli.CustodyClient.from_settings", return_value=fake):
            result = runner.invoke(cli, [
                "remote", "evaluate", "remote-1",
                "--transaction-file", files("tx.json", {"amount": "1", "destination": "0xBAD"}),
            ])
        assert result.exit_code == 1
        assert "Policy: remote-1" in result.output

    def test_remote_evaluate_malformed_policy(self, runner, files):
        fake = AsyncMock()
        fake.__aenter__.return_value = fake
        fake.fetch_policy.side_effect = PolicyFormatError("whitelist must be a list of addresses")
        with patch("cli.custody_policy_cli.CustodyClient.from_settings", return_value=fake):
            result = runner.invoke(cli, [
                "remote", "evaluate", "remote-1",
                "--transaction-file", files("tx.json", {"amount": "1"}),
            ])
        assert result.exit_code == 1
        assert "Malformed policy from custody API" in result.output

    def test_remote_get_error(self, runner):
        fake = AsyncMock()
        fake.__aenter__.return_value = fake
        fake.get_policy.side_effect = CustodyApiError("Policy not found", status_code=404)
        with patch("cli.custody_policy_cli.CustodyClient.from_settings", return_value=fake):
            result = runner.invoke(cli, ["remote", "get", "nope"])
        assert result.exit_code == 1
        assert "Policy not found (404)" in result.output

    def test_remote_list(self, runner):
        fake = AsyncMock()
        fake.__aenter__.return_value = fake
        fake.get.return_value = {"data": [{"id": "p1", "name": "Treasury", "enabled": False}]}
        with patch("cli.custody_policy_cli.CustodyClient.from_settings", return_value=fake):
            result = runner.invoke(cli, ["remote", "list", "--limit", "5"])
        assert result.exit_code == 0
        assert "p1  Treasury  disabled" in result.output
        fake.get.assert_awaited_once_with("/policies", {"limit": 5})
