"""Deterministic policy rule evaluation engine.

All functions are pure -- no side effects, no I/O, no usage tracking.
A transaction is checked against a policy's rules, whitelist and blacklist
and the outcome is returned as a PolicyValidationResult; business-rule
failures are never raised.
"""

import enum
import math
import random
import re
import string
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any

from custody_policy.errors import InvalidAmountError, MalformedRuleError
from custody_policy.models.policy import (
    ApprovalWorkflow,
    ConditionOperator,
    Policy,
    PolicyCondition,
    PolicyRule,
    PolicyValidationResult,
    PolicyViolation,
    QuorumType,
    RuleAction,
    Severity,
    SpendingLimit,
    TransactionContext,
    WorkflowType,
)

WILDCARD_ASSET = "*"


@dataclass
class RuleEvaluation:
    matched: bool
    message: str | None = None


@dataclass
class RuleMatchOutcome:
    action: str
    matched_rules: list[PolicyRule] = field(default_factory=list)
    denials: list[PolicyViolation] = field(default_factory=list)


@dataclass
class SpendingLimitCheck:
    allowed: bool
    limit: SpendingLimit | None = None
    remaining: str | None = None

    def to_dict(self) -> dict:
        result: dict = {"allowed": self.allowed}
        if self.limit is not None:
            result["limit"] = {
                "asset": self.limit.asset,
                "period": self.limit.period,
                "max_amount": self.limit.max_amount,
                "current_usage": self.limit.current_usage,
            }
            result["remaining"] = self.remaining
        return result


@dataclass
class WorkflowCheck:
    valid: bool
    errors: list[str]


# ---------------------------------------------------------------------------
# Condition evaluation
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equals(a: Any, b: Any) -> bool:
    """Equality without coercion: 1 == 1.0, but "1" != 1 and True != 1."""
    if _is_number(a) and _is_number(b):
        return a == b
    return type(a) is type(b) and a == b


def _as_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _tag(value: Any) -> str:
    """Plain text of a tag given either as a string or as one of the model enums."""
    return value.value if isinstance(value, enum.Enum) else str(value)


def _display(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ",".join(_tag(v) for v in value)
    return _tag(value)


def parse_amount(amount: str) -> float:
    """Parse a decimal-string amount; unparseable input becomes NaN."""
    try:
        return float(amount)
    except (TypeError, ValueError):
        return math.nan


def get_field_value(context: TransactionContext, field_name: str) -> Any:
    """Resolve a condition field against the transaction.

    Standard fields win over metadata keys of the same name; anything else
    is looked up in metadata and is None when absent.
    """
    standard = {
        "amount": lambda: parse_amount(context.amount),
        "asset": lambda: context.asset,
        "source": lambda: context.source_address,
        "destination": lambda: context.destination_address,
        "blockchain": lambda: context.blockchain,
        "type": lambda: context.transaction_type,
        "timestamp": lambda: context.timestamp,
    }
    if field_name in standard:
        return standard[field_name]()
    return context.metadata.get(field_name)


def evaluate_condition(field_value: Any, condition: PolicyCondition) -> bool:
    """Compare one field value against one condition. Unknown operators never match."""
    op = condition.operator
    expected = condition.value

    if op == ConditionOperator.eq:
        return _strict_equals(field_value, expected)
    if op == ConditionOperator.ne:
        return not _strict_equals(field_value, expected)

    if op in (ConditionOperator.gt, ConditionOperator.gte, ConditionOperator.lt, ConditionOperator.lte):
        if not _is_number(field_value):
            return False
        bound = _as_number(expected)
        if bound is None:
            return False
        if op == ConditionOperator.gt:
            return field_value > bound
        if op == ConditionOperator.gte:
            return field_value >= bound
        if op == ConditionOperator.lt:
            return field_value < bound
        return field_value <= bound

    if op == ConditionOperator.in_:
        return isinstance(expected, list) and any(_strict_equals(field_value, v) for v in expected)
    if op == ConditionOperator.not_in:
        return isinstance(expected, list) and not any(_strict_equals(field_value, v) for v in expected)

    if op == ConditionOperator.contains:
        return isinstance(field_value, str) and str(expected) in field_value

    if op == ConditionOperator.matches:
        if not isinstance(field_value, str):
            return False
        try:
            pattern = re.compile(str(expected))
        except re.error as e:
            raise MalformedRuleError(f"Invalid pattern {expected!r}: {e}") from e
        return pattern.search(field_value) is not None

    return False


def evaluate_rule(rule: PolicyRule, context: TransactionContext) -> RuleEvaluation:
    """Evaluate a single rule's condition against the transaction."""
    condition = rule.condition
    field_value = get_field_value(context, condition.field)
    try:
        matched = evaluate_condition(field_value, condition)
    except MalformedRuleError as e:
        raise MalformedRuleError(f"Rule {rule.id}: {e}", rule_id=rule.id) from e

    if not matched:
        return RuleEvaluation(matched=False)
    return RuleEvaluation(
        matched=True,
        message=(
            f"Rule {_tag(rule.type)} matched: "
            f"{condition.field} {_tag(condition.operator)} {_display(condition.value)}"
        ),
    )


# ---------------------------------------------------------------------------
# Rule matching
# ---------------------------------------------------------------------------

def sort_rules(rules: list[PolicyRule]) -> list[PolicyRule]:
    """Enabled rules, highest priority first; ties keep input order."""
    return sorted((r for r in rules if r.enabled), key=lambda r: r.priority, reverse=True)


def match_rules(context: TransactionContext, rules: list[PolicyRule]) -> RuleMatchOutcome:
    """Apply already-sorted rules and fold their actions.

    deny is terminal; require_approval only upgrades allow; allow matches
    are recorded without changing the action. Every rule is visited so that
    all matches are reported.
    """
    outcome = RuleMatchOutcome(action=RuleAction.allow.value)

    for rule in rules:
        evaluation = evaluate_rule(rule, context)
        if not evaluation.matched:
            continue

        outcome.matched_rules.append(rule)
        if rule.action == RuleAction.deny:
            outcome.action = RuleAction.deny.value
            outcome.denials.append(PolicyViolation(
                rule_id=rule.id,
                rule_name=f"Rule {_tag(rule.type)}",
                message=evaluation.message or "Policy rule violated",
                severity=Severity.error.value,
            ))
        elif rule.action == RuleAction.require_approval and outcome.action != RuleAction.deny:
            outcome.action = RuleAction.require_approval.value

    return outcome


# ---------------------------------------------------------------------------
# Policy validation
# ---------------------------------------------------------------------------

def validate_transaction(context: TransactionContext, policy: Policy) -> PolicyValidationResult:
    """Run rules, whitelist and blacklist and return the aggregate decision."""
    result = PolicyValidationResult()

    if not policy.enabled:
        return result

    outcome = match_rules(context, sort_rules(policy.rules))
    result.matched_rules = outcome.matched_rules
    result.action = outcome.action
    result.violations.extend(outcome.denials)

    if outcome.action == RuleAction.deny:
        result.valid = False
    elif outcome.action == RuleAction.require_approval:
        workflow = policy.approval_workflow
        result.required_approvals = (workflow.required_approvers if workflow else 0) or 1

    destination = context.destination_address

    if policy.whitelist and destination not in policy.whitelist:
        result.valid = False
        result.action = RuleAction.deny.value
        result.violations.append(PolicyViolation(
            rule_id="whitelist",
            rule_name="Whitelist Check",
            message="Destination address not in whitelist",
            severity=Severity.error.value,
        ))

    if destination in policy.blacklist:
        result.valid = False
        result.action = RuleAction.deny.value
        result.violations.append(PolicyViolation(
            rule_id="blacklist",
            rule_name="Blacklist Check",
            message="Destination address is blacklisted",
            severity=Severity.critical.value,
        ))

    return result


# ---------------------------------------------------------------------------
# Spending limits
# ---------------------------------------------------------------------------

def _to_decimal(value: str | int | float | None, what: str) -> Decimal:
    if value is None or value == "":
        return Decimal(0)
    try:
        parsed = Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidAmountError(f"Invalid {what}: {value!r}") from e
    if not parsed.is_finite():
        raise InvalidAmountError(f"Invalid {what}: {value!r}")
    return parsed


def _format_decimal(value: Decimal) -> str:
    return format(value.normalize(), "f")


def check_spending_limit(
    limits: list[SpendingLimit], asset: str, amount: str
) -> SpendingLimitCheck:
    """Check a requested amount against every limit that applies to the asset.

    Returns the first limit that would be exceeded together with what is
    left under it. Reaching a limit exactly is allowed. Usage is read, never
    updated.
    """
    requested = _to_decimal(amount, "amount")

    for limit in limits:
        if limit.asset != asset and limit.asset != WILDCARD_ASSET:
            continue
        max_amount = _to_decimal(limit.max_amount, "max amount")
        usage = _to_decimal(limit.current_usage, "current usage")
        if usage + requested > max_amount:
            return SpendingLimitCheck(
                allowed=False,
                limit=limit,
                remaining=_format_decimal(max_amount - usage),
            )

    return SpendingLimitCheck(allowed=True)


# ---------------------------------------------------------------------------
# Approval workflows
# ---------------------------------------------------------------------------

def calculate_quorum(total_approvers: int, quorum_type: str, threshold: int | None = None) -> int:
    """Approvals required under a voting scheme.

    A threshold larger than total_approvers is returned as given.
    """
    if quorum_type == QuorumType.majority:
        return total_approvers // 2 + 1
    if quorum_type == QuorumType.supermajority:
        return math.ceil(total_approvers * 0.67)
    if quorum_type == QuorumType.unanimous:
        return total_approvers
    if quorum_type == QuorumType.threshold:
        return threshold or 1
    return 1


def validate_approval_workflow(workflow: ApprovalWorkflow) -> WorkflowCheck:
    errors = []

    if workflow.required_approvers < 1:
        errors.append("Required approvers must be at least 1")

    if workflow.type == WorkflowType.quorum and not workflow.approver_groups:
        errors.append("Quorum workflow requires approver groups")

    if workflow.timeout_hours is not None and workflow.timeout_hours < 1:
        errors.append("Timeout must be at least 1 hour")

    return WorkflowCheck(valid=not errors, errors=errors)


# ---------------------------------------------------------------------------
# Policy construction helpers
# ---------------------------------------------------------------------------

def _now_ms() -> int:
    return int(time.time() * 1000)


def merge_policies(policies: list[Policy]) -> Policy:
    """Flatten a policy hierarchy into one policy.

    Disabled policies are skipped. Rules are concatenated and re-sorted by
    priority, list entries are de-duplicated in first-seen order.
    """
    rules: list[PolicyRule] = []
    limits: list[SpendingLimit] = []
    whitelist: dict[str, None] = {}
    blacklist: dict[str, None] = {}

    for policy in policies:
        if not policy.enabled:
            continue
        rules.extend(policy.rules)
        limits.extend(policy.spending_limits)
        whitelist.update(dict.fromkeys(policy.whitelist))
        blacklist.update(dict.fromkeys(policy.blacklist))

    return Policy(
        id="merged",
        name="Merged Policy",
        rules=sorted(rules, key=lambda r: r.priority, reverse=True),
        spending_limits=limits,
        whitelist=list(whitelist),
        blacklist=list(blacklist),
        enabled=True,
    )


def create_default_policy(name: str) -> Policy:
    return Policy(
        id=f"policy_{_now_ms()}",
        name=name,
        rules=[],
        approval_workflow=ApprovalWorkflow(type=WorkflowType.single.value, required_approvers=1),
        spending_limits=[],
        whitelist=[],
        blacklist=[],
        enabled=True,
    )


def _rule_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"rule_{_now_ms()}_{suffix}"


def add_policy_rule(
    policy: Policy,
    type: str,
    condition: PolicyCondition,
    action: str,
    priority: int = 0,
    enabled: bool = True,
) -> Policy:
    """Return a copy of policy with a new rule appended under a fresh id."""
    rule = PolicyRule(
        id=_rule_id(),
        type=type,
        condition=condition,
        action=action,
        priority=priority,
        enabled=enabled,
    )
    return replace(policy, rules=[*policy.rules, rule])


def remove_policy_rule(policy: Policy, rule_id: str) -> Policy:
    return replace(policy, rules=[r for r in policy.rules if r.id != rule_id])
