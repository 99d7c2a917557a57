"""Conversion between Policy objects and the custody platform's wire JSON."""

import math
from collections.abc import Mapping
from typing import Any

from custody_policy.errors import PolicyFormatError
from custody_policy.models.policy import (
    ApprovalWorkflow,
    Policy,
    PolicyCondition,
    PolicyRule,
    SpendingLimit,
    TransactionContext,
)


def _drop_none(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


def format_policy_for_api(policy: Policy) -> dict:
    """Serialize a policy for a create/update request.

    Absent optional fields are left out rather than sent as null, and
    spending-limit usage is never sent since the platform owns it.
    """
    workflow = policy.approval_workflow
    return _drop_none({
        "id": policy.id,
        "name": policy.name,
        "description": policy.description,
        "rules": [
            {
                "id": r.id,
                "type": r.type,
                "condition": r.condition.to_dict(),
                "action": r.action,
                "priority": r.priority,
                "enabled": r.enabled,
            }
            for r in policy.rules
        ],
        "approval_workflow": _drop_none({
            "type": workflow.type,
            "required_approvers": workflow.required_approvers,
            "approver_groups": workflow.approver_groups,
            "timeout_hours": workflow.timeout_hours,
            "escalation_policy": workflow.escalation_policy,
        }) if workflow else None,
        "spending_limits": [
            {"asset": l.asset, "period": l.period, "max_amount": l.max_amount}
            for l in policy.spending_limits
        ],
        "whitelist": list(policy.whitelist),
        "blacklist": list(policy.blacklist),
        "enabled": policy.enabled,
    })


def _number(value: Any, what: str) -> int | float:
    """Accept an int, float or numeric string; bools and non-finite values are rejected."""
    if isinstance(value, bool):
        raise PolicyFormatError(f"Invalid {what}: {value!r}")
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError as e:
            raise PolicyFormatError(f"Invalid {what}: {value!r}") from e
        if number.is_integer():
            number = int(number)
    else:
        raise PolicyFormatError(f"Invalid {what}: {value!r}")
    if isinstance(number, float) and not math.isfinite(number):
        raise PolicyFormatError(f"Invalid {what}: {value!r}")
    return number


def _flag(raw: Mapping, key: str, default: bool = True) -> bool:
    value = raw.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise PolicyFormatError(f"{key} must be true or false, got {value!r}")
    return value


def _address_list(raw: Mapping, key: str) -> list[str]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(a, str) for a in value):
        raise PolicyFormatError(f"{key} must be a list of addresses")
    return list(value)


def _parse_rule(raw: Any) -> PolicyRule:
    if not isinstance(raw, Mapping):
        raise PolicyFormatError(f"Rule must be an object, got {type(raw).__name__}")
    condition = raw.get("condition")
    if not isinstance(condition, Mapping):
        raise PolicyFormatError(f"Rule {raw.get('id')!r} has no condition object")
    priority = raw.get("priority")
    return PolicyRule(
        id=str(raw.get("id", "")),
        type=raw.get("type", ""),
        condition=PolicyCondition(
            field=condition.get("field", ""),
            operator=condition.get("operator", ""),
            value=condition.get("value"),
        ),
        action=raw.get("action", ""),
        priority=0 if priority is None else _number(priority, "priority"),
        enabled=_flag(raw, "enabled"),
    )


def parse_approval_workflow(raw: Any) -> ApprovalWorkflow:
    if not isinstance(raw, Mapping):
        raise PolicyFormatError("Approval workflow must be an object")
    required = raw.get("required_approvers")
    if required is not None:
        required = _number(required, "required_approvers")
        if required != int(required):
            raise PolicyFormatError(f"required_approvers must be a whole number, got {required!r}")
    timeout = raw.get("timeout_hours")
    groups = raw.get("approver_groups")
    if groups is not None and (
        not isinstance(groups, list) or not all(isinstance(g, str) for g in groups)
    ):
        raise PolicyFormatError("approver_groups must be a list of group names")
    return ApprovalWorkflow(
        type=raw.get("type", ""),
        required_approvers=0 if required is None else int(required),
        approver_groups=groups,
        timeout_hours=None if timeout is None else _number(timeout, "timeout_hours"),
        escalation_policy=raw.get("escalation_policy"),
    )


def parse_spending_limit(raw: Any) -> SpendingLimit:
    if not isinstance(raw, Mapping):
        raise PolicyFormatError("Spending limit must be an object")
    usage = raw.get("current_usage")
    return SpendingLimit(
        asset=raw.get("asset", ""),
        period=raw.get("period", ""),
        max_amount=str(raw.get("max_amount", "0")),
        current_usage=str(usage) if usage is not None else None,
    )


def _object_list(data: Mapping, key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise PolicyFormatError(f"{key} must be a list")
    return value


def parse_policy_from_api(data: Any) -> Policy:
    """Build a Policy from a platform response body.

    Missing lists default to empty and a missing enabled flag to True;
    usage reported by the platform on spending limits is kept. Fields of
    the wrong shape raise PolicyFormatError rather than being coerced.
    """
    if not isinstance(data, Mapping):
        raise PolicyFormatError("Policy payload must be a JSON object")

    raw_workflow = data.get("approval_workflow")
    workflow = parse_approval_workflow(raw_workflow) if raw_workflow else None
    limits = [parse_spending_limit(l) for l in _object_list(data, "spending_limits")]

    return Policy(
        id=str(data.get("id", "")),
        name=data.get("name", ""),
        description=data.get("description"),
        rules=[_parse_rule(r) for r in _object_list(data, "rules")],
        approval_workflow=workflow,
        spending_limits=limits,
        whitelist=_address_list(data, "whitelist"),
        blacklist=_address_list(data, "blacklist"),
        enabled=_flag(data, "enabled"),
    )


# Accepted spellings for each TransactionContext field
_TRANSACTION_KEYS = {
    "source_address": ("source_address", "sourceAddress", "source"),
    "destination_address": ("destination_address", "destinationAddress", "destination"),
    "transaction_type": ("transaction_type", "transactionType", "type"),
}


def _pick(data: Mapping, *keys: str, default: Any = "") -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def parse_transaction(data: Any) -> TransactionContext:
    """Build a TransactionContext from snake_case or camelCase JSON."""
    if not isinstance(data, Mapping):
        raise PolicyFormatError("Transaction payload must be a JSON object")
    if "amount" not in data:
        raise PolicyFormatError("Transaction payload requires an amount")

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise PolicyFormatError("Transaction metadata must be an object")

    try:
        timestamp = float(_pick(data, "timestamp", default=0))
    except (TypeError, ValueError) as e:
        raise PolicyFormatError(f"Invalid timestamp: {data.get('timestamp')!r}") from e

    return TransactionContext(
        amount=str(data["amount"]),
        asset=str(_pick(data, "asset")),
        source_address=str(_pick(data, *_TRANSACTION_KEYS["source_address"])),
        destination_address=str(_pick(data, *_TRANSACTION_KEYS["destination_address"])),
        blockchain=str(_pick(data, "blockchain")),
        transaction_type=str(_pick(data, *_TRANSACTION_KEYS["transaction_type"])),
        timestamp=timestamp,
        metadata=dict(metadata),
    )
