"""
Checkbook endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_actor, get_treasury_system
from .schemas import CreateCheckbookRequest, UpdateCheckbookRequest
from ..errors import NotFound
from ..treasury import TreasurySystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_checkbook(
    request: CreateCheckbookRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Create a checkbook with an explicit or suggested range"""
    checkbook = system.checkbooks.create_checkbook(user_id=actor, **request.model_dump())
    return {"ok": True, "message": "Checkbook created", "checkbook": checkbook.to_dict()}


@router.get("")
def list_checkbooks(
    bank_account_id: Optional[str] = None,
    state: Optional[str] = None,
    q: Optional[str] = None,
    page: int = 1,
    limit: Optional[int] = None,
    system: TreasurySystem = Depends(get_treasury_system)
):
    result = system.checkbooks.list_checkbooks(
        bank_account_id=bank_account_id, state=state, q=q, page=page, limit=limit
    )
    return {"data": [c.to_dict() for c in result["items"]], "meta": result["meta"]}


@router.get("/suggest-range")
def suggest_range(
    bank_account_id: str,
    length: Optional[int] = None,
    preferred_start: Optional[int] = None,
    system: TreasurySystem = Depends(get_treasury_system)
):
    """Suggest a free serial range on a bank account"""
    start, end = system.checkbooks.suggest_range(bank_account_id, length, preferred_start)
    return {"bank_account_id": bank_account_id, "range_start": start, "range_end": end}


@router.get("/{checkbook_id}")
def get_checkbook(checkbook_id: str, system: TreasurySystem = Depends(get_treasury_system)):
    checkbook = system.checkbooks.get_checkbook(checkbook_id)
    if checkbook is None:
        raise NotFound("checkbook", checkbook_id)
    return checkbook.to_dict()


@router.get("/{checkbook_id}/usage")
def get_checkbook_usage(checkbook_id: str, system: TreasurySystem = Depends(get_treasury_system)):
    return system.checkbooks.checkbook_usage(checkbook_id)


@router.get("/{checkbook_id}/checks")
def list_checkbook_checks(checkbook_id: str, system: TreasurySystem = Depends(get_treasury_system)):
    """Checks issued from a checkbook, by serial number"""
    checks = system.checks.list_checks_for_checkbook(checkbook_id)
    return {"data": [c.to_dict() for c in checks]}


@router.patch("/{checkbook_id}")
def update_checkbook(
    checkbook_id: str,
    request: UpdateCheckbookRequest,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor)
):
    checkbook = system.checkbooks.update_checkbook(
        checkbook_id, request.model_dump(exclude_unset=True), user_id=actor
    )
    return {"ok": True, "message": "Checkbook updated", "checkbook": checkbook.to_dict()}


@router.delete("/{checkbook_id}")
def delete_checkbook(
    checkbook_id: str,
    force: bool = False,
    system: TreasurySystem = Depends(get_treasury_system),
    actor: Optional[str] = Depends(get_actor)
):
    """Delete a checkbook, or void it when forced and checks were issued from it"""
    outcome = system.checkbooks.delete_checkbook(checkbook_id, force=force, user_id=actor)
    return {"ok": True, "outcome": outcome.value}
