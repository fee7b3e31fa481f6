"""
Check lifecycle endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_actor, get_idempotency_key, get_treasury_system
from .schemas import (
    AccreditRequest, ApplyToSupplierRequest, ClearRequest, CreateCheckRequest,
    DeliverRequest, DepositRequest, RejectRequest, UpdateCheckRequest, VoidRequest
)
from ..errors import NotFound
from ..treasury import TreasurySystem


router = APIRouter()


def _transition_response(check, message: str) -> dict:
    return {"ok": True, "message": message, "check": check.to_dict()}


def _action_params(request, header_key: Optional[str]) -> dict:
    """Request body as keyword arguments; the Idempotency-Key header wins over the body field"""
    params = request.model_dump()
    if header_key:
        params["idempotency_key"] = header_key
    return params


@router.post("", status_code=status.HTTP_201_CREATED)
def create_check(
    request: CreateCheckRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Register a received or issued check"""
    check = system.checks.create_check(user_id=actor, **request.model_dump())
    return {"ok": True, "message": "Check created", "check": check.to_dict()}


@router.get("")
def list_checks(
    q: Optional[str] = None,
    direction: Optional[str] = None,
    state: Optional[str] = None,
    channel: Optional[str] = None,
    bank_id: Optional[str] = None,
    checkbook_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    supplier_id: Optional[str] = None,
    due_from: Optional[date] = None,
    due_to: Optional[date] = None,
    page: int = 1,
    limit: Optional[int] = None,
    order_by: str = "serial_number",
    order_dir: str = "asc",
    system: TreasurySystem = Depends(get_treasury_system)
):
    """List checks with filters and pagination"""
    result = system.checks.list_checks(
        q=q, direction=direction, state=state, channel=channel, bank_id=bank_id,
        checkbook_id=checkbook_id, customer_id=customer_id, supplier_id=supplier_id,
        due_from=due_from, due_to=due_to, page=page, limit=limit,
        order_by=order_by, order_dir=order_dir,
    )
    return {"data": [c.to_dict() for c in result["items"]], "meta": result["meta"]}


@router.get("/{check_id}")
def get_check(check_id: str, system: TreasurySystem = Depends(get_treasury_system)):
    check = system.checks.get_check(check_id)
    if check is None:
        raise NotFound("check", check_id)
    return check.to_dict()


@router.patch("/{check_id}")
def update_check(
    check_id: str,
    request: UpdateCheckRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Edit a check that is not in a terminal state"""
    check = system.checks.update_check(check_id, request.model_dump(exclude_unset=True), user_id=actor)
    return {"ok": True, "message": "Check updated", "check": check.to_dict()}


@router.delete("/{check_id}")
def delete_check(
    check_id: str,
    force: bool = False,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Delete a check, or void it when forced and it already has history"""
    outcome = system.checks.delete_check(check_id, force=force, user_id=actor)
    return {"ok": True, "outcome": outcome.value}


@router.get("/{check_id}/movements")
def get_check_movements(check_id: str, system: TreasurySystem = Depends(get_treasury_system)):
    movements = system.checks.get_history(check_id)
    return {"data": [m.to_dict() for m in movements]}


@router.get("/{check_id}/projection")
def get_check_projection(check_id: str, system: TreasurySystem = Depends(get_treasury_system)):
    projection = system.cash_flow.get_for_check(check_id)
    return {"projection": projection.to_dict() if projection else None}


@router.get("/{check_id}/ledger")
def get_check_ledger(check_id: str, system: TreasurySystem = Depends(get_treasury_system)):
    entries = system.bank_ledger.entries_for_check(check_id)
    return {"data": [e.to_dict() for e in entries]}


@router.post("/{check_id}/deposit")
def deposit_check(
    check_id: str,
    request: DepositRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key)
):
    check = system.checks.deposit(check_id, user_id=actor, **_action_params(request, idempotency_key))
    return _transition_response(check, "Check deposited")


@router.post("/{check_id}/accredit")
def accredit_check(
    check_id: str,
    request: AccreditRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key)
):
    check = system.checks.accredit(check_id, user_id=actor, **_action_params(request, idempotency_key))
    return _transition_response(check, "Check accredited")


@router.post("/{check_id}/reject")
def reject_check(
    check_id: str,
    request: RejectRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key)
):
    check = system.checks.reject(check_id, user_id=actor, **_action_params(request, idempotency_key))
    return _transition_response(check, "Check rejected")


@router.post("/{check_id}/apply-to-supplier")
def apply_check_to_supplier(
    check_id: str,
    request: ApplyToSupplierRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key)
):
    check = system.checks.apply_to_supplier(check_id, user_id=actor,
                                            **_action_params(request, idempotency_key))
    return _transition_response(check, "Check applied to supplier")


@router.post("/{check_id}/deliver")
def deliver_check(
    check_id: str,
    request: DeliverRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key)
):
    check = system.checks.deliver(check_id, user_id=actor, **_action_params(request, idempotency_key))
    return _transition_response(check, "Check delivered")


@router.post("/{check_id}/clear")
def clear_check(
    check_id: str,
    request: ClearRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key)
):
    check = system.checks.clear(check_id, user_id=actor, **_action_params(request, idempotency_key))
    return _transition_response(check, "Check cleared")


@router.post("/{check_id}/void")
def void_check(
    check_id: str,
    request: VoidRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor),
    idempotency_key: Optional[str] = Depends(get_idempotency_key)
):
    check = system.checks.void(check_id, user_id=actor, **_action_params(request, idempotency_key))
    return _transition_response(check, "Check voided")
