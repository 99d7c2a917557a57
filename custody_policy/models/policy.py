"""Policy data model: rules, workflows, limits and validation results."""

import enum
from dataclasses import dataclass, field
from typing import Any


class ConditionOperator(str, enum.Enum):
    eq = "eq"
    ne = "ne"
    gt = "gt"
    gte = "gte"
    lt = "lt"
    lte = "lte"
    in_ = "in"
    not_in = "not_in"
    contains = "contains"
    matches = "matches"


class RuleType(str, enum.Enum):
    amount_limit = "amount_limit"
    velocity_limit = "velocity_limit"
    whitelist = "whitelist"
    blacklist = "blacklist"
    time_window = "time_window"
    approval_required = "approval_required"
    asset_restriction = "asset_restriction"
    destination_restriction = "destination_restriction"


class RuleAction(str, enum.Enum):
    allow = "allow"
    deny = "deny"
    require_approval = "require_approval"


class WorkflowType(str, enum.Enum):
    single = "single"
    multi = "multi"
    quorum = "quorum"
    sequential = "sequential"


class LimitPeriod(str, enum.Enum):
    transaction = "transaction"
    hourly = "hourly"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class QuorumType(str, enum.Enum):
    majority = "majority"
    supermajority = "supermajority"
    unanimous = "unanimous"
    threshold = "threshold"


class Severity(str, enum.Enum):
    warning = "warning"
    error = "error"
    critical = "critical"


# Tags are stored as plain strings so that values the platform adds later
# still parse; the engine treats anything unknown as "no match".


@dataclass(frozen=True)
class TransactionContext:
    amount: str
    asset: str
    source_address: str
    destination_address: str
    blockchain: str = ""
    transaction_type: str = ""
    timestamp: float = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "asset": self.asset,
            "source_address": self.source_address,
            "destination_address": self.destination_address,
            "blockchain": self.blockchain,
            "transaction_type": self.transaction_type,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


@dataclass
class PolicyCondition:
    field: str
    operator: str
    value: Any

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass
class PolicyRule:
    id: str
    type: str
    condition: PolicyCondition
    action: str
    priority: int | float = 0
    enabled: bool = True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "condition": self.condition.to_dict(),
            "action": self.action,
            "priority": self.priority,
            "enabled": self.enabled,
        }


@dataclass
class ApprovalWorkflow:
    type: str
    required_approvers: int
    approver_groups: list[str] | None = None
    timeout_hours: float | None = None
    escalation_policy: str | None = None


@dataclass
class SpendingLimit:
    asset: str
    period: str
    max_amount: str
    current_usage: str | None = None


@dataclass
class Policy:
    id: str
    name: str
    rules: list[PolicyRule] = field(default_factory=list)
    description: str | None = None
    approval_workflow: ApprovalWorkflow | None = None
    spending_limits: list[SpendingLimit] = field(default_factory=list)
    whitelist: list[str] = field(default_factory=list)
    blacklist: list[str] = field(default_factory=list)
    enabled: bool = True


@dataclass
class PolicyViolation:
    rule_id: str
    rule_name: str
    message: str
    severity: str

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "message": self.message,
            "severity": self.severity,
        }


@dataclass
class PolicyValidationResult:
    valid: bool = True
    matched_rules: list[PolicyRule] = field(default_factory=list)
    action: str = RuleAction.allow.value
    violations: list[PolicyViolation] = field(default_factory=list)
    required_approvals: int | None = None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "action": self.action,
            "matched_rules": [r.to_dict() for r in self.matched_rules],
            "violations": [v.to_dict() for v in self.violations],
            "required_approvals": self.required_approvals,
        }
