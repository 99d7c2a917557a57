"""Proxy for typed policy operations against the custody platform."""

import logging

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError

from custody_policy.auth import require_service_key
from custody_policy.deps import get_custody_client
from custody_policy.errors import MalformedRuleError
from custody_policy.services.custody_client import CustodyClient
from custody_policy.services.operations import execute_operation, parse_operation

router = APIRouter(prefix="/api/operations", tags=["operations"])
logger = logging.getLogger(__name__)


@router.post("", dependencies=[Depends(require_service_key)])
async def run_operation(
    payload: dict = Body(...),
    client: CustodyClient = Depends(get_custody_client),
):
    """Validate the operation body, then execute it against the custody API."""
    try:
        op = parse_operation(payload)
    except ValidationError as e:
        logger.info("Rejected operation request: %d validation errors", e.error_count())
        raise HTTPException(422, e.errors(include_url=False, include_context=False))

    try:
        result = await execute_operation(client, op)
    except MalformedRuleError as e:
        raise HTTPException(422, {"message": str(e), "rule_id": e.rule_id})
    except ValueError as e:
        raise HTTPException(400, str(e))

    return {"operation": op.operation, "result": result}
