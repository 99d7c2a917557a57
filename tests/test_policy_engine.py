"""Tests for the policy engine - conditions, rule matching, limits, quorum, validation."""

import math
import re

import pytest

from custody_policy.errors import InvalidAmountError, MalformedRuleError
from custody_policy.models.policy import (
    ApprovalWorkflow,
    ConditionOperator,
    Policy,
    PolicyCondition,
    PolicyRule,
    RuleAction,
    RuleType,
    SpendingLimit,
    TransactionContext,
)
from custody_policy.services.policy_engine import (
    add_policy_rule,
    calculate_quorum,
    check_spending_limit,
    create_default_policy,
    evaluate_condition,
    evaluate_rule,
    get_field_value,
    match_rules,
    merge_policies,
    remove_policy_rule,
    sort_rules,
    validate_approval_workflow,
    validate_transaction,
)


def make_tx(**overrides) -> TransactionContext:
    fields = {
        "amount": "1500",
        "asset": "ETH",
        "source_address": "0xSRC",
        "destination_address": "0xABC",
        "blockchain": "ethereum",
        "transaction_type": "transfer",
        "timestamp": 1700000000,
        "metadata": {},
    }
    fields.update(overrides)
    return TransactionContext(**fields)


def make_rule(rule_id="r1", field="amount", operator="gt", value=1000,
              action="require_approval", priority=0, enabled=True, type="amount_limit"):
    return PolicyRule(
        id=rule_id,
        type=type,
        condition=PolicyCondition(field=field, operator=operator, value=value),
        action=action,
        priority=priority,
        enabled=enabled,
    )


def cond(operator, value, field="x"):
    return PolicyCondition(field=field, operator=operator, value=value)


class TestFieldLookup:
    def test_amount_parsed_as_float(self):
        assert get_field_value(make_tx(amount="12.5"), "amount") == 12.5

    def test_unparseable_amount_is_nan(self):
        assert math.isnan(get_field_value(make_tx(amount="lots"), "amount"))

    def test_standard_fields(self):
        tx = make_tx()
        assert get_field_value(tx, "source") == "0xSRC"
        assert get_field_value(tx, "destination") == "0xABC"
        assert get_field_value(tx, "blockchain") == "ethereum"
        assert get_field_value(tx, "type") == "transfer"
        assert get_field_value(tx, "timestamp") == 1700000000
        assert get_field_value(tx, "asset") == "ETH"

    def test_unknown_field_falls_back_to_metadata(self):
        tx = make_tx(metadata={"desk": "otc"})
        assert get_field_value(tx, "desk") == "otc"
        assert get_field_value(tx, "missing") is None

    def test_standard_field_wins_over_metadata(self):
        tx = make_tx(metadata={"asset": "BTC"})
        assert get_field_value(tx, "asset") == "ETH"


class TestConditionOperators:
    def test_eq_is_strict(self):
        assert evaluate_condition("ETH", cond("eq", "ETH")) is True
        assert evaluate_condition(1, cond("eq", "1")) is False
        assert evaluate_condition(True, cond("eq", 1)) is False
        assert evaluate_condition(1.0, cond("eq", 1)) is True

    def test_ne(self):
        assert evaluate_condition("ETH", cond("ne", "BTC")) is True
        assert evaluate_condition("ETH", cond("ne", "ETH")) is False
        assert evaluate_condition(5, cond("ne", "5")) is True

    def test_numeric_comparisons(self):
        assert evaluate_condition(1500.0, cond("gt", 1000)) is True
        assert evaluate_condition(1000.0, cond("gt", 1000)) is False
        assert evaluate_condition(1000.0, cond("gte", 1000)) is True
        assert evaluate_condition(999.0, cond("lt", 1000)) is True
        assert evaluate_condition(1000.0, cond("lte", 1000)) is True

    def test_numeric_string_bound_accepted(self):
        assert evaluate_condition(1500.0, cond("gt", "1000")) is True

    def test_non_numeric_field_never_matches(self):
        assert evaluate_condition("1500", cond("gt", 1000)) is False
        assert evaluate_condition(None, cond("lt", 1000)) is False
        assert evaluate_condition(True, cond("gte", 0)) is False

    def test_nan_amount_never_matches(self):
        nan = float("nan")
        for op in ("gt", "gte", "lt", "lte"):
            assert evaluate_condition(nan, cond(op, 0)) is False

    def test_non_numeric_bound_never_matches(self):
        assert evaluate_condition(5.0, cond("gt", "five")) is False

    def test_in_and_not_in(self):
        assert evaluate_condition("ETH", cond("in", ["BTC", "ETH"])) is True
        assert evaluate_condition("XRP", cond("in", ["BTC", "ETH"])) is False
        assert evaluate_condition("XRP", cond("not_in", ["BTC", "ETH"])) is True
        assert evaluate_condition("ETH", cond("not_in", ["BTC", "ETH"])) is False

    def test_in_requires_list_value(self):
        assert evaluate_condition("ETH", cond("in", "ETH")) is False
        assert evaluate_condition("ETH", cond("not_in", "BTC")) is False

    def test_contains(self):
        assert evaluate_condition("0xABCDEF", cond("contains", "CDE")) is True
        assert evaluate_condition("0xABCDEF", cond("contains", "zzz")) is False
        assert evaluate_condition(12345, cond("contains", "23")) is False

    def test_matches(self):
        assert evaluate_condition("0xdead01", cond("matches", r"^0xdead")) is True
        assert evaluate_condition("0xbeef01", cond("matches", r"^0xdead")) is False
        assert evaluate_condition(42, cond("matches", r"\d+")) is False

    def test_invalid_pattern_raises(self):
        with pytest.raises(MalformedRuleError):
            evaluate_condition("abc", cond("matches", "(unclosed"))

    def test_unknown_operator_is_no_match(self):
        assert evaluate_condition("ETH", cond("approximately", "ETH")) is False


class TestEvaluateRule:
    def test_match_message(self):
        result = evaluate_rule(make_rule(), make_tx())
        assert result.matched is True
        assert result.message == "Rule amount_limit matched: amount gt 1000"

    def test_list_value_in_message(self):
        rule = make_rule(field="asset", operator="in", value=["ETH", "BTC"], type="asset_restriction")
        result = evaluate_rule(rule, make_tx())
        assert result.message == "Rule asset_restriction matched: asset in ETH,BTC"

    def test_enum_tags_render_as_values(self):
        rule = make_rule(type=RuleType.amount_limit, operator=ConditionOperator.gt, action=RuleAction.deny)
        result = evaluate_rule(rule, make_tx())
        assert result.message == "Rule amount_limit matched: amount gt 1000"

        verdict = validate_transaction(make_tx(), Policy(id="p", name="n", rules=[rule]))
        assert verdict.violations[0].rule_name == "Rule amount_limit"

    def test_no_match_has_no_message(self):
        result = evaluate_rule(make_rule(), make_tx(amount="500"))
        assert result.matched is False
        assert result.message is None

    def test_malformed_rule_carries_rule_id(self):
        rule = make_rule(rule_id="bad-regex", field="destination", operator="matches", value="[")
        with pytest.raises(MalformedRuleError) as exc:
            evaluate_rule(rule, make_tx())
        assert exc.value.rule_id == "bad-regex"


class TestRuleMatching:
    def test_sort_by_priority_descending_and_stable(self):
        rules = [
            make_rule("a", priority=1),
            make_rule("b", priority=5),
            make_rule("c", priority=1),
            make_rule("d", priority=5),
        ]
        assert [r.id for r in sort_rules(rules)] == ["b", "d", "a", "c"]

    def test_sort_drops_disabled(self):
        rules = [make_rule("a"), make_rule("b", enabled=False)]
        assert [r.id for r in sort_rules(rules)] == ["a"]

    def test_deny_wins_over_later_allow(self):
        rules = sort_rules([
            make_rule("deny", action="deny", priority=10),
            make_rule("allow", action="allow", priority=1),
        ])
        outcome = match_rules(make_tx(), rules)
        assert outcome.action == "deny"
        assert [r.id for r in outcome.matched_rules] == ["deny", "allow"]
        assert len(outcome.denials) == 1

    def test_require_approval_does_not_override_deny(self):
        rules = sort_rules([
            make_rule("deny", action="deny", priority=10),
            make_rule("approve", action="require_approval", priority=1),
        ])
        outcome = match_rules(make_tx(), rules)
        assert outcome.action == "deny"

    def test_allow_match_keeps_require_approval(self):
        rules = sort_rules([
            make_rule("approve", action="require_approval", priority=10),
            make_rule("allow", action="allow", priority=1),
        ])
        assert match_rules(make_tx(), rules).action == "require_approval"

    def test_all_matches_collected_after_deny(self):
        rules = sort_rules([
            make_rule("d1", action="deny", priority=3),
            make_rule("d2", action="deny", priority=2),
            make_rule("miss", field="asset", operator="eq", value="BTC", action="deny", priority=1),
        ])
        outcome = match_rules(make_tx(), rules)
        assert [r.id for r in outcome.matched_rules] == ["d1", "d2"]
        assert [v.rule_id for v in outcome.denials] == ["d1", "d2"]


class TestValidateTransaction:
    @pytest.fixture
    def approval_policy(self):
        return Policy(
            id="p1",
            name="Large transfers",
            rules=[make_rule("large", priority=10)],
            approval_workflow=ApprovalWorkflow(type="multi", required_approvers=2),
        )

    def test_require_approval_scenario(self, approval_policy):
        result = validate_transaction(make_tx(amount="1500"), approval_policy)
        assert result.valid is True
        assert result.action == "require_approval"
        assert result.required_approvals == 2
        assert [r.id for r in result.matched_rules] == ["large"]
        assert result.violations == []

    def test_allow_scenario(self, approval_policy):
        result = validate_transaction(make_tx(amount="500"), approval_policy)
        assert result.valid is True
        assert result.action == "allow"
        assert result.matched_rules == []
        assert result.violations == []
        assert result.required_approvals is None

    def test_required_approvals_defaults_to_one(self):
        policy = Policy(id="p", name="n", rules=[make_rule()])
        result = validate_transaction(make_tx(), policy)
        assert result.required_approvals == 1

    def test_blacklist_scenario(self):
        policy = Policy(
            id="p", name="n",
            rules=[make_rule("ok", action="allow")],
            blacklist=["0xBAD"],
        )
        result = validate_transaction(make_tx(destination_address="0xBAD"), policy)
        assert result.valid is False
        assert result.action == "deny"
        assert len(result.violations) == 1
        violation = result.violations[0]
        assert violation.rule_id == "blacklist"
        assert violation.severity == "critical"
        assert violation.rule_name == "Blacklist Check"

    def test_whitelist_miss_denies(self):
        policy = Policy(id="p", name="n", whitelist=["0xGOOD"])
        result = validate_transaction(make_tx(destination_address="0xOTHER"), policy)
        assert result.valid is False
        assert result.action == "deny"
        assert result.violations[0].rule_id == "whitelist"
        assert result.violations[0].severity == "error"

    def test_whitelist_hit_allows(self):
        policy = Policy(id="p", name="n", whitelist=["0xABC"])
        result = validate_transaction(make_tx(), policy)
        assert result.valid is True
        assert result.action == "allow"

    def test_whitelist_and_blacklist_both_reported(self):
        policy = Policy(id="p", name="n", whitelist=["0xGOOD"], blacklist=["0xBAD"])
        result = validate_transaction(make_tx(destination_address="0xBAD"), policy)
        assert [v.rule_id for v in result.violations] == ["whitelist", "blacklist"]
        assert [v.severity for v in result.violations] == ["error", "critical"]

    def test_deny_rule_violation(self):
        policy = Policy(id="p", name="n", rules=[
            make_rule("big", action="deny", priority=10),
            make_rule("fine", action="allow", priority=1),
        ])
        result = validate_transaction(make_tx(), policy)
        assert result.valid is False
        assert result.action == "deny"
        assert result.violations[0].rule_id == "big"
        assert result.violations[0].rule_name == "Rule amount_limit"
        assert result.violations[0].severity == "error"
        assert result.violations[0].message == "Rule amount_limit matched: amount gt 1000"

    def test_blacklist_forces_deny_over_require_approval(self, approval_policy):
        approval_policy.blacklist = ["0xABC"]
        result = validate_transaction(make_tx(), approval_policy)
        assert result.action == "deny"
        assert result.valid is False

    def test_disabled_policy_imposes_nothing(self):
        policy = Policy(
            id="p", name="n",
            rules=[make_rule(action="deny")],
            whitelist=["0xGOOD"],
            blacklist=["0xABC"],
            enabled=False,
        )
        result = validate_transaction(make_tx(), policy)
        assert result.valid is True
        assert result.action == "allow"
        assert result.violations == []
        assert result.matched_rules == []

    def test_disabled_rules_ignored(self):
        policy = Policy(id="p", name="n", rules=[make_rule(action="deny", enabled=False)])
        assert validate_transaction(make_tx(), policy).action == "allow"

    def test_to_dict(self, approval_policy):
        data = validate_transaction(make_tx(), approval_policy).to_dict()
        assert data["action"] == "require_approval"
        assert data["required_approvals"] == 2
        assert data["matched_rules"][0]["condition"] == {"field": "amount", "operator": "gt", "value": 1000}


class TestSpendingLimits:
    def test_under_limit_allowed(self):
        limits = [SpendingLimit(asset="ETH", period="daily", max_amount="100", current_usage="20")]
        check = check_spending_limit(limits, "ETH", "50")
        assert check.allowed is True
        assert check.limit is None

    def test_exact_boundary_allowed(self):
        limits = [SpendingLimit(asset="ETH", period="daily", max_amount="0.3", current_usage="0.1")]
        assert check_spending_limit(limits, "ETH", "0.2").allowed is True

    def test_exceeded_reports_remaining(self):
        limit = SpendingLimit(asset="ETH", period="daily", max_amount="100", current_usage="80")
        check = check_spending_limit([limit], "ETH", "30")
        assert check.allowed is False
        assert check.limit is limit
        assert check.remaining == "20"

    def test_wildcard_applies_to_every_asset(self):
        limits = [SpendingLimit(asset="*", period="transaction", max_amount="10")]
        assert check_spending_limit(limits, "BTC", "11").allowed is False

    def test_other_assets_ignored(self):
        limits = [SpendingLimit(asset="BTC", period="daily", max_amount="1")]
        assert check_spending_limit(limits, "ETH", "1000").allowed is True

    def test_first_exceeded_limit_reported(self):
        limits = [
            SpendingLimit(asset="ETH", period="transaction", max_amount="1000"),
            SpendingLimit(asset="*", period="daily", max_amount="50"),
            SpendingLimit(asset="ETH", period="weekly", max_amount="10"),
        ]
        check = check_spending_limit(limits, "ETH", "60")
        assert check.limit.period == "daily"
        assert check.remaining == "50"

    def test_usage_not_mutated(self):
        limit = SpendingLimit(asset="ETH", period="daily", max_amount="100", current_usage="10")
        check_spending_limit([limit], "ETH", "5")
        assert limit.current_usage == "10"

    def test_invalid_amount_raises(self):
        limits = [SpendingLimit(asset="ETH", period="daily", max_amount="100")]
        with pytest.raises(InvalidAmountError):
            check_spending_limit(limits, "ETH", "abc")

    def test_to_dict(self):
        limit = SpendingLimit(asset="ETH", period="daily", max_amount="100", current_usage="99.5")
        data = check_spending_limit([limit], "ETH", "1").to_dict()
        assert data == {
            "allowed": False,
            "limit": {"asset": "ETH", "period": "daily", "max_amount": "100", "current_usage": "99.5"},
            "remaining": "0.5",
        }


class TestQuorum:
    def test_quorum_types(self):
        assert calculate_quorum(5, "majority") == 3
        assert calculate_quorum(5, "supermajority") == 4
        assert calculate_quorum(5, "unanimous") == 5
        assert calculate_quorum(5, "threshold", 2) == 2

    def test_majority_even(self):
        assert calculate_quorum(4, "majority") == 3

    def test_threshold_defaults_to_one(self):
        assert calculate_quorum(5, "threshold") == 1

    def test_threshold_above_total_kept(self):
        assert calculate_quorum(3, "threshold", 7) == 7

    def test_unknown_type_is_one(self):
        assert calculate_quorum(9, "plurality") == 1


class TestApprovalWorkflow:
    def test_valid(self):
        check = validate_approval_workflow(ApprovalWorkflow(type="multi", required_approvers=2))
        assert check.valid is True
        assert check.errors == []

    def test_all_errors_reported(self):
        check = validate_approval_workflow(
            ApprovalWorkflow(type="quorum", required_approvers=0, timeout_hours=0.5)
        )
        assert check.valid is False
        assert check.errors == [
            "Required approvers must be at least 1",
            "Quorum workflow requires approver groups",
            "Timeout must be at least 1 hour",
        ]

    def test_quorum_with_groups(self):
        workflow = ApprovalWorkflow(type="quorum", required_approvers=2, approver_groups=["ops"])
        assert validate_approval_workflow(workflow).valid is True


class TestPolicyHelpers:
    def test_merge_skips_disabled_and_dedupes(self):
        a = Policy(
            id="a", name="A",
            rules=[make_rule("a1", priority=1)],
            whitelist=["0x1", "0x2"],
            blacklist=["0xBAD"],
            spending_limits=[SpendingLimit(asset="ETH", period="daily", max_amount="5")],
        )
        b = Policy(
            id="b", name="B",
            rules=[make_rule("b1", priority=9)],
            whitelist=["0x2", "0x3"],
            blacklist=["0xBAD", "0xWORSE"],
        )
        off = Policy(id="c", name="C", rules=[make_rule("c1", priority=50)], enabled=False)

        merged = merge_policies([a, b, off])
        assert merged.id == "merged"
        assert merged.name == "Merged Policy"
        assert merged.enabled is True
        assert [r.id for r in merged.rules] == ["b1", "a1"]
        assert merged.whitelist == ["0x1", "0x2", "0x3"]
        assert merged.blacklist == ["0xBAD", "0xWORSE"]
        assert len(merged.spending_limits) == 1

    def test_create_default_policy(self):
        policy = create_default_policy("Treasury")
        assert re.fullmatch(r"policy_\d+", policy.id)
        assert policy.name == "Treasury"
        assert policy.rules == []
        assert policy.enabled is True
        assert policy.approval_workflow.type == "single"
        assert policy.approval_workflow.required_approvers == 1

    def test_add_and_remove_rule(self):
        policy = create_default_policy("Treasury")
        updated = add_policy_rule(
            policy, "amount_limit", PolicyCondition("amount", "gt", 10), "deny", priority=3
        )
        assert policy.rules == []
        rule = updated.rules[0]
        assert re.fullmatch(r"rule_\d+_[a-z0-9]{9}", rule.id)
        assert rule.priority == 3

        removed = remove_policy_rule(updated, rule.id)
        assert removed.rules == []
        assert len(updated.rules) == 1
