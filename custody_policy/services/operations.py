"""Typed requests for the policy resource of the custody API.

Each operation is a pydantic model tagged by ``operation``; the union is
validated once at the boundary and then dispatched to the matching REST
call.
"""

import logging
from typing import Annotated, Any, Literal, Union
from urllib.parse import quote

from pydantic import BaseModel, Field, TypeAdapter

from custody_policy.models.policy import LimitPeriod, RuleAction, RuleType, WorkflowType
from custody_policy.services.custody_client import (
    POLICIES,
    POLICIES_VALIDATE,
    CustodyClient,
    policy_path,
)
from custody_policy.services.policy_codec import parse_transaction
from custody_policy.services.policy_engine import validate_transaction

logger = logging.getLogger(__name__)


class _PolicyScoped(BaseModel):
    policy_id: str = Field(min_length=1)


class _Listing(BaseModel):
    return_all: bool = False
    limit: int = Field(default=50, ge=1, le=100)


class ConditionSpec(BaseModel):
    field: str
    operator: str
    value: Any


class LimitSpec(BaseModel):
    asset: str
    period: LimitPeriod = LimitPeriod.daily
    max_amount: str


class CreatePolicy(BaseModel):
    operation: Literal["create"]
    name: str = Field(min_length=1)
    policy_type: Literal["transaction", "transfer", "signing", "access"] = "transaction"
    description: str | None = None
    enabled: bool | None = None


class GetPolicy(_PolicyScoped):
    operation: Literal["get"]


class GetManyPolicies(_Listing):
    operation: Literal["get_many"]


class UpdatePolicy(_PolicyScoped):
    operation: Literal["update"]
    description: str | None = None
    enabled: bool | None = None


class DeletePolicy(_PolicyScoped):
    operation: Literal["delete"]


class GetRules(_PolicyScoped, _Listing):
    operation: Literal["get_rules"]


class AddRule(_PolicyScoped):
    operation: Literal["add_rule"]
    rule_type: RuleType = RuleType.amount_limit
    condition: ConditionSpec
    action: RuleAction = RuleAction.require_approval


class RemoveRule(_PolicyScoped):
    operation: Literal["remove_rule"]
    rule_id: str = Field(min_length=1)


class GetApprovalWorkflow(_PolicyScoped):
    operation: Literal["get_approval_workflow"]


class SetApprovalWorkflow(_PolicyScoped):
    operation: Literal["set_approval_workflow"]
    workflow_type: WorkflowType = WorkflowType.single
    required_approvers: int = Field(default=1, ge=1)


class GetSpendingLimits(_PolicyScoped):
    operation: Literal["get_spending_limits"]


class SetSpendingLimits(_PolicyScoped):
    operation: Literal["set_spending_limits"]
    limits: list[LimitSpec] = Field(default_factory=list)


class GetWhitelist(_PolicyScoped, _Listing):
    operation: Literal["get_whitelist"]


class AddToWhitelist(_PolicyScoped):
    operation: Literal["add_to_whitelist"]
    address: str = Field(min_length=1)


class RemoveFromWhitelist(_PolicyScoped):
    operation: Literal["remove_from_whitelist"]
    address: str = Field(min_length=1)


class GetBlacklist(_PolicyScoped, _Listing):
    operation: Literal["get_blacklist"]


class AddToBlacklist(_PolicyScoped):
    operation: Literal["add_to_blacklist"]
    address: str = Field(min_length=1)


class RemoveFromBlacklist(_PolicyScoped):
    operation: Literal["remove_from_blacklist"]
    address: str = Field(min_length=1)


class ValidatePolicy(_PolicyScoped):
    """Ask the platform to validate a transaction against one of its policies."""
    operation: Literal["validate"]
    transaction: dict


class ValidateLocally(_PolicyScoped):
    """Fetch the policy and run the local engine instead of the platform."""
    operation: Literal["validate_locally"]
    transaction: dict


PolicyOperation = Annotated[
    Union[
        CreatePolicy, GetPolicy, GetManyPolicies, UpdatePolicy, DeletePolicy,
        GetRules, AddRule, RemoveRule,
        GetApprovalWorkflow, SetApprovalWorkflow,
        GetSpendingLimits, SetSpendingLimits,
        GetWhitelist, AddToWhitelist, RemoveFromWhitelist,
        GetBlacklist, AddToBlacklist, RemoveFromBlacklist,
        ValidatePolicy, ValidateLocally,
    ],
    Field(discriminator="operation"),
]

_adapter = TypeAdapter(PolicyOperation)


def parse_operation(data: dict) -> PolicyOperation:
    """Validate a raw request into its operation model (raises pydantic.ValidationError)."""
    return _adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

async def _list(client: CustodyClient, endpoint: str, op: _Listing):
    if op.return_all:
        return await client.request_all_items("GET", endpoint)
    return await client.get(endpoint, {"limit": op.limit})


def _without_none(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


async def _create(client, op: CreatePolicy):
    return await client.post(POLICIES, _without_none({
        "name": op.name,
        "type": op.policy_type,
        "description": op.description,
        "enabled": op.enabled,
    }))


async def _get(client, op: GetPolicy):
    return await client.get(policy_path(op.policy_id))


async def _get_many(client, op: GetManyPolicies):
    return await _list(client, POLICIES, op)


async def _update(client, op: UpdatePolicy):
    return await client.patch(policy_path(op.policy_id), _without_none({
        "description": op.description,
        "enabled": op.enabled,
    }))


async def _delete(client, op: DeletePolicy):
    await client.delete(policy_path(op.policy_id))
    return {"success": True, "policy_id": op.policy_id}


async def _get_rules(client, op: GetRules):
    return await _list(client, policy_path(op.policy_id, "rules"), op)


async def _add_rule(client, op: AddRule):
    return await client.post(policy_path(op.policy_id, "rules"), {
        "type": op.rule_type.value,
        "condition": op.condition.model_dump(),
        "action": op.action.value,
    })


async def _remove_rule(client, op: RemoveRule):
    await client.delete(policy_path(op.policy_id, "rules") + "/" + quote(op.rule_id, safe=""))
    return {"success": True, "policy_id": op.policy_id, "rule_id": op.rule_id}


async def _get_workflow(client, op: GetApprovalWorkflow):
    return await client.get(policy_path(op.policy_id, "workflow"))


async def _set_workflow(client, op: SetApprovalWorkflow):
    return await client.put(policy_path(op.policy_id, "workflow"), {
        "type": op.workflow_type.value,
        "required_approvers": op.required_approvers,
    })


async def _get_limits(client, op: GetSpendingLimits):
    return await client.get(policy_path(op.policy_id, "limits"))


async def _set_limits(client, op: SetSpendingLimits):
    return await client.put(policy_path(op.policy_id, "limits"), {
        "limits": [l.model_dump(mode="json") for l in op.limits],
    })


def _address_list(name: str):
    async def get_list(client, op):
        return await _list(client, policy_path(op.policy_id, name), op)

    async def add(client, op):
        return await client.post(policy_path(op.policy_id, name), {"address": op.address})

    async def remove(client, op):
        await client.delete(policy_path(op.policy_id, name) + "/" + quote(op.address, safe=""))
        return {"success": True, "policy_id": op.policy_id, "address": op.address}

    return get_list, add, remove


_get_whitelist, _add_whitelist, _remove_whitelist = _address_list("whitelist")
_get_blacklist, _add_blacklist, _remove_blacklist = _address_list("blacklist")


async def _validate(client, op: ValidatePolicy):
    return await client.post(POLICIES_VALIDATE, {"policyId": op.policy_id, **op.transaction})


async def _validate_locally(client, op: ValidateLocally):
    context = parse_transaction(op.transaction)
    policy = await client.fetch_policy(op.policy_id)
    result = validate_transaction(context, policy)
    return {"policy_id": op.policy_id, **result.to_dict()}


HANDLERS = {
    "create": _create,
    "get": _get,
    "get_many": _get_many,
    "update": _update,
    "delete": _delete,
    "get_rules": _get_rules,
    "add_rule": _add_rule,
    "remove_rule": _remove_rule,
    "get_approval_workflow": _get_workflow,
    "set_approval_workflow": _set_workflow,
    "get_spending_limits": _get_limits,
    "set_spending_limits": _set_limits,
    "get_whitelist": _get_whitelist,
    "add_to_whitelist": _add_whitelist,
    "remove_from_whitelist": _remove_whitelist,
    "get_blacklist": _get_blacklist,
    "add_to_blacklist": _add_blacklist,
    "remove_from_blacklist": _remove_blacklist,
    "validate": _validate,
    "validate_locally": _validate_locally,
}


async def execute_operation(client: CustodyClient, op: PolicyOperation):
    """Run one typed policy operation against the custody API."""
    logger.info("Executing policy operation %s", op.operation)
    return await HANDLERS[op.operation](client, op)
