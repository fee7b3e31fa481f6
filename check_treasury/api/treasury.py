"""
Treasury read endpoints: cash-flow projection, bank ledger, movement log and audit trail
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_treasury_system
from ..audit import AuditEventType
from ..errors import ValidationError
from ..state_machine import FlowSign
from ..treasury import TreasurySystem


router = APIRouter()


@router.get("/cash-flow")
def list_cash_flow(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    sign: Optional[str] = None,
    system: TreasurySystem = Depends(get_treasury_system)
):
    """Projected cash movements of open checks"""
    flow_sign = None
    if sign:
        try:
            flow_sign = FlowSign(sign)
        except ValueError:
            raise ValidationError(f"Invalid sign '{sign}'", field="sign",
                                  details={"allowed": [s.value for s in FlowSign]}) from None
    rows = system.cash_flow.list_projections(date_from, date_to, flow_sign)
    return {"data": [r.to_dict() for r in rows]}


@router.get("/bank-ledger/{bank_account_id}")
def list_bank_ledger(
    bank_account_id: str,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    system: TreasurySystem = Depends(get_treasury_system)
):
    entries = system.bank_ledger.entries_for_account(bank_account_id, date_from, date_to)
    return {"data": [e.to_dict() for e in entries]}


@router.get("/audit/integrity")
def verify_audit_integrity(system: TreasurySystem = Depends(get_treasury_system)):
    result = system.audit_trail.verify_integrity()
    system.audit_trail.log_event(
        AuditEventType.AUDIT_INTEGRITY_CHECK, "audit", "chain",
        {"valid": result["valid"], "total_events": result["total_events"]},
    )
    return result


@router.get("/audit/{entity_type}/{entity_id}")
def list_audit_events(
    entity_type: str,
    entity_id: str,
    limit: Optional[int] = None,
    system: TreasurySystem = Depends(get_treasury_system)
):
    events = system.audit_trail.get_events_for_entity(entity_type, entity_id, limit)
    return {"data": [e.to_dict() for e in events]}


@router.get("/movements")
def list_movements(
    q: Optional[str] = None,
    check_id: Optional[str] = None,
    movement_type: Optional[str] = None,
    channel: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = 1,
    limit: Optional[int] = None,
    order_by: str = "movement_date",
    order_dir: str = "desc",
    system: TreasurySystem = Depends(get_treasury_system)
):
    """Movement log across all checks"""
    result = system.movements.list_movements(
        check_id=check_id, movement_type=movement_type, channel=channel,
        date_from=date_from, date_to=date_to, q=q, page=page, limit=limit,
        order_by=order_by, order_dir=order_dir,
    )
    return {"data": result["items"], "meta": result["meta"]}
