"""Custody policy CLI - evaluate transactions and inspect custody policies."""

import asyncio
import json
import sys

import click

from custody_policy.config import settings
from custody_policy.errors import CustodyApiError, MalformedRuleError, PolicyFormatError
from custody_policy.models.policy import RuleAction
from custody_policy.services.custody_client import POLICIES, CustodyClient
from custody_policy.services.policy_codec import (
    format_policy_for_api,
    parse_policy_from_api,
    parse_transaction,
)
from custody_policy.services.policy_engine import (
    calculate_quorum,
    check_spending_limit,
    merge_policies,
    validate_approval_workflow,
    validate_transaction,
)


def load_json(path: str):
    with open(path) as f:
        return json.load(f)


def load_policy(path: str):
    try:
        return parse_policy_from_api(load_json(path))
    except ValueError as e:
        raise click.ClickException(f"{path}: {e}")


def load_transaction(path: str):
    try:
        return parse_transaction(load_json(path))
    except ValueError as e:
        raise click.ClickException(f"{path}: {e}")


def run_remote(coro_factory):
    """Run an async call with a settings-configured client, mapping API errors."""
    async def runner():
        async with CustodyClient.from_settings(settings) as client:
            return await coro_factory(client)

    try:
        return asyncio.run(runner())
    except CustodyApiError as e:
        raise click.ClickException(f"{e.message} ({e.status_code}): {e.description}")
    except PolicyFormatError as e:
        raise click.ClickException(f"Malformed policy from custody API: {e}")


def print_result(result, policy_id: str):
    click.echo(f"Policy: {policy_id}")
    click.echo(f"Action: {result.action}")
    click.echo(f"Valid: {result.valid}")
    if result.required_approvals:
        click.echo(f"Required approvals: {result.required_approvals}")
    if result.matched_rules:
        click.echo(f"Matched rules: {', '.join(r.id for r in result.matched_rules)}")
    for v in result.violations:
        click.echo(f"  [{v.severity}] {v.rule_id}: {v.message}")
    if result.action == RuleAction.deny:
        sys.exit(1)


@click.group()
def cli():
    """Custody Policy - transaction policy evaluation for Ripple Custody"""
    pass


# --- Local policy commands ---


@cli.group()
def policy():
    """Evaluate policies stored in local JSON files."""
    pass


@policy.command("evaluate")
@click.option("--policy-file", required=True, type=click.Path(exists=True), help="Policy JSON (platform format)")
@click.option("--transaction-file", required=True, type=click.Path(exists=True), help="Transaction JSON")
def policy_evaluate(policy_file: str, transaction_file: str):
    """Evaluate a transaction against a policy. Exits 1 on deny."""
    p = load_policy(policy_file)
    tx = load_transaction(transaction_file)
    try:
        result = validate_transaction(tx, p)
    except MalformedRuleError as e:
        raise click.ClickException(str(e))
    print_result(result, p.id)


@policy.command("quorum")
@click.argument("total", type=int)
@click.argument("quorum_type", type=click.Choice(["majority", "supermajority", "unanimous", "threshold"]))
@click.option("--threshold", type=int, default=None)
def policy_quorum(total: int, quorum_type: str, threshold: int | None):
    """Approvals required out of TOTAL approvers."""
    required = calculate_quorum(total, quorum_type, threshold)
    click.echo(f"Required approvals: {required}/{total}")


@policy.command("check-limit")
@click.option("--policy-file", required=True, type=click.Path(exists=True))
@click.argument("asset")
@click.argument("amount")
def policy_check_limit(policy_file: str, asset: str, amount: str):
    """Check AMOUNT of ASSET against the policy's spending limits."""
    p = load_policy(policy_file)
    try:
        check = check_spending_limit(p.spending_limits, asset, amount)
    except ValueError as e:
        raise click.ClickException(str(e))
    if check.allowed:
        click.echo(f"Allowed: {amount} {asset}")
        return
    click.echo(f"Exceeds {check.limit.period} limit of {check.limit.max_amount} {check.limit.asset}")
    click.echo(f"Remaining: {check.remaining}")
    sys.exit(1)


@policy.command("merge")
@click.argument("policy_files", nargs=-1, required=True, type=click.Path(exists=True))
def policy_merge(policy_files: tuple[str, ...]):
    """Merge several policy files and print the result as JSON."""
    merged = merge_policies([load_policy(path) for path in policy_files])
    click.echo(json.dumps(format_policy_for_api(merged), indent=2))


@policy.command("validate-workflow")
@click.option("--policy-file", required=True, type=click.Path(exists=True))
def policy_validate_workflow(policy_file: str):
    """Check the policy's approval workflow settings."""
    p = load_policy(policy_file)
    if p.approval_workflow is None:
        click.echo("No approval workflow configured.")
        return
    check = validate_approval_workflow(p.approval_workflow)
    if check.valid:
        click.echo("Approval workflow is valid.")
        return
    for error in check.errors:
        click.echo(f"  - {error}")
    sys.exit(1)


# --- Remote commands (custody API, configured via CUSTODY_* env) ---


@cli.group()
def remote():
    """Query policies on the custody platform."""
    pass


@remote.command("get")
@click.argument("policy_id")
def remote_get(policy_id: str):
    """Print a policy as stored on the platform."""
    result = run_remote(lambda client: client.get_policy(policy_id))
    click.echo(json.dumps(result, indent=2))


@remote.command("list")
@click.option("--all", "return_all", is_flag=True, help="Walk every page")
@click.option("--limit", type=int, default=50)
def remote_list(return_all: bool, limit: int):
    """List policies."""
    if return_all:
        items = run_remote(lambda client: client.request_all_items("GET", POLICIES))
    else:
        response = run_remote(lambda client: client.get(POLICIES, {"limit": limit}))
        items = response.get("data", []) if isinstance(response, dict) else response
    if not items:
        click.echo("No policies found.")
        return
    for p in items:
        enabled = "enabled" if p.get("enabled", True) else "disabled"
        click.echo(f"  {p.get('id')}  {p.get('name', '')}  {enabled}")


@remote.command("evaluate")
@click.argument("policy_id")
@click.option("--transaction-file", required=True, type=click.Path(exists=True))
def remote_evaluate(policy_id: str, transaction_file: str):
    """Fetch POLICY_ID from the platform and evaluate a transaction locally."""
    tx = load_transaction(transaction_file)
    p = run_remote(lambda client: client.fetch_policy(policy_id))
    try:
        result = validate_transaction(tx, p)
    except MalformedRuleError as e:
        raise click.ClickException(str(e))
    print_result(result, policy_id)


if __name__ == "__main__":
    cli()
