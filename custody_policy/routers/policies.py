"""Policy evaluation endpoints backed by the local engine."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from custody_policy.deps import get_custody_client
from custody_policy.errors import MalformedRuleError, PolicyFormatError
from custody_policy.metrics import POLICY_EVALUATIONS_TOTAL, POLICY_VIOLATIONS_TOTAL
from custody_policy.models.policy import PolicyValidationResult
from custody_policy.services.custody_client import CustodyClient
from custody_policy.services.policy_codec import (
    format_policy_for_api,
    parse_approval_workflow,
    parse_policy_from_api,
    parse_spending_limit,
    parse_transaction,
)
from custody_policy.services.policy_engine import (
    calculate_quorum,
    check_spending_limit,
    merge_policies,
    validate_approval_workflow,
    validate_transaction,
)

router = APIRouter(prefix="/api/policies", tags=["policies"])
logger = logging.getLogger(__name__)


class EvaluateRequest(BaseModel):
    policy: dict
    transaction: dict


class EvaluateStoredRequest(BaseModel):
    transaction: dict


class SpendingLimitRequest(BaseModel):
    limits: list[dict]
    asset: str
    amount: str


class MergeRequest(BaseModel):
    policies: list[dict]


class WorkflowRequest(BaseModel):
    approval_workflow: dict


def _record(policy_id: str, result: PolicyValidationResult) -> dict:
    POLICY_EVALUATIONS_TOTAL.labels(action=result.action).inc()
    for violation in result.violations:
        POLICY_VIOLATIONS_TOTAL.labels(severity=violation.severity).inc()
    logger.info(
        "Policy %s evaluated: action=%s violations=%d",
        policy_id, result.action, len(result.violations),
        extra={"policy_id": policy_id, "action": result.action},
    )
    return {"policy_id": policy_id, **result.to_dict()}


def _evaluate(policy_data: dict, transaction_data: dict) -> dict:
    try:
        policy = parse_policy_from_api(policy_data)
        context = parse_transaction(transaction_data)
        result = validate_transaction(context, policy)
    except MalformedRuleError as e:
        raise HTTPException(422, {"message": str(e), "rule_id": e.rule_id})
    except ValueError as e:
        raise HTTPException(400, str(e))
    return _record(policy.id, result)


@router.post("/evaluate")
async def evaluate(req: EvaluateRequest):
    """Evaluate a transaction against a policy supplied in the request."""
    return _evaluate(req.policy, req.transaction)


@router.post("/{policy_id}/evaluate")
async def evaluate_stored(
    policy_id: str,
    req: EvaluateStoredRequest,
    client: CustodyClient = Depends(get_custody_client),
):
    """Fetch a policy from the custody platform and evaluate locally."""
    try:
        context = parse_transaction(req.transaction)
    except ValueError as e:
        raise HTTPException(400, str(e))

    try:
        policy = await client.fetch_policy(policy_id)
    except PolicyFormatError as e:
        logger.warning("Custody API returned a malformed policy %s: %s", policy_id, e)
        raise HTTPException(502, f"Malformed policy from custody API: {e}")

    try:
        result = validate_transaction(context, policy)
    except MalformedRuleError as e:
        raise HTTPException(422, {"message": str(e), "rule_id": e.rule_id})
    return _record(policy_id, result)


@router.post("/spending-limits/check")
async def spending_limit_check(req: SpendingLimitRequest):
    """Check an amount against caller-supplied limits and usage."""
    try:
        limits = [parse_spending_limit(l) for l in req.limits]
        check = check_spending_limit(limits, req.asset, req.amount)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return check.to_dict()


@router.get("/quorum")
async def quorum(
    total: int = Query(ge=0),
    quorum_type: str = "majority",
    threshold: int | None = None,
):
    """Approvals required for a given approver count and voting scheme."""
    return {
        "total": total,
        "quorum_type": quorum_type,
        "required": calculate_quorum(total, quorum_type, threshold),
    }


@router.post("/merge")
async def merge(req: MergeRequest):
    """Flatten several policies into one, as used for hierarchical evaluation."""
    try:
        policies = [parse_policy_from_api(p) for p in req.policies]
    except ValueError as e:
        raise HTTPException(400, str(e))
    return format_policy_for_api(merge_policies(policies))


@router.post("/workflow/validate")
async def workflow_validate(req: WorkflowRequest):
    try:
        workflow = parse_approval_workflow(req.approval_workflow)
    except ValueError as e:
        raise HTTPException(400, str(e))
    check = validate_approval_workflow(workflow)
    return {"valid": check.valid, "errors": check.errors}
