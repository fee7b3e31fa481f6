"""
Cash Flow Projector

Keeps the projected cash impact of open checks. The projection is a
materialized view of check state: ``sync`` re-derives a check's row from
scratch and is called inside every unit of work that mutates a check.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional, TYPE_CHECKING

from .storage import StorageInterface, StorageRecord
from .unit_of_work import UnitOfWork
from .state_machine import CheckDirection, FlowSign, pending_cash_event
from .logging_config import get_logger

if TYPE_CHECKING:
    from .checks import Check


CHECK_ORIGIN = "check"


def projection_id(origin_type: str, origin_id: str) -> str:
    """One row per origin, so the id is derived from it"""
    return f"{origin_type}:{origin_id}"


@dataclass
class CashFlowProjection(StorageRecord):
    origin_type: str
    origin_id: str
    sign: FlowSign
    projected_date: date
    amount: Decimal
    description: str

    _enum_fields = {"sign": FlowSign}
    _date_fields = ("projected_date",)
    _decimal_fields = ("amount",)


class CashFlowProjector:
    """Upserts and deletes the single projection row of each check"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "cash_flow_projections"
        self.logger = get_logger("treasury.cash_flow")

    def upsert(self, uow: UnitOfWork, check_id: str, sign: FlowSign, projected_date: date,
               amount: Decimal, description: str) -> CashFlowProjection:
        record_id = projection_id(CHECK_ORIGIN, check_id)
        now = datetime.now(timezone.utc)
        existing = uow.get(self.table_name, record_id)
        created_at = datetime.fromisoformat(existing["created_at"]) if existing else now

        projection = CashFlowProjection(
            id=record_id,
            created_at=created_at,
            updated_at=now,
            origin_type=CHECK_ORIGIN,
            origin_id=check_id,
            sign=sign,
            projected_date=projected_date,
            amount=amount,
            description=description,
        )
        uow.save(self.table_name, record_id, projection.to_dict())
        return projection

    def delete(self, uow: UnitOfWork, check_id: str) -> bool:
        """Remove the check's row; a no-op when there is none"""
        record_id = projection_id(CHECK_ORIGIN, check_id)
        if uow.get(self.table_name, record_id) is None:
            return False
        uow.delete(self.table_name, record_id)
        return True

    def sync(self, uow: UnitOfWork, check: 'Check') -> Optional[CashFlowProjection]:
        """Re-derive the check's projection from its current state"""
        event = pending_cash_event(check)
        if event is None:
            self.delete(uow, check.id)
            return None

        sign, projected_date = event
        if check.direction is CheckDirection.RECEIVED:
            description = f"Expected collection of check #{check.serial_number}"
        else:
            description = f"Expected debit of issued check #{check.serial_number}"
        if check.payee_name:
            description += f" ({check.payee_name})"
        return self.upsert(uow, check.id, sign, projected_date, check.amount, description)

    def get_for_check(self, check_id: str, uow: Optional[UnitOfWork] = None) -> Optional[CashFlowProjection]:
        record_id = projection_id(CHECK_ORIGIN, check_id)
        if uow is not None:
            data = uow.get(self.table_name, record_id)
        else:
            data = self.storage.load(self.table_name, record_id)
        return CashFlowProjection.from_dict(data) if data else None

    def list_projections(self, date_from: Optional[date] = None, date_to: Optional[date] = None,
                         sign: Optional[FlowSign] = None) -> List[CashFlowProjection]:
        """Projection rows ordered by date; no aggregation"""
        rows = [CashFlowProjection.from_dict(d) for d in self.storage.load_all(self.table_name)]
        if date_from:
            rows = [r for r in rows if r.projected_date >= date_from]
        if date_to:
            rows = [r for r in rows if r.projected_date <= date_to]
        if sign:
            rows = [r for r in rows if r.sign == sign]
        rows.sort(key=lambda r: (r.projected_date, r.origin_id))
        return rows
