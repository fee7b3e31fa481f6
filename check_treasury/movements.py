"""
Check Movement Log

Append-only history of what happened to each check. Rows are inserted in
the same unit of work as the transition they describe and are never updated
or deleted by the engine, except that a check deleted before anything
happened to it takes its creation row with it.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .storage import StorageInterface, StorageRecord
from .unit_of_work import UnitOfWork
from .errors import ValidationError
from .pagination import clamp_page, paginate


class MovementType(Enum):
    CREATED = "created"
    APPLIED = "applied"
    DEPOSITED = "deposited"
    ACCREDITED = "accredited"
    REJECTED = "rejected"
    VOIDED = "voided"
    DELIVERED = "delivered"
    CLEARED = "cleared"


class ReferenceType(Enum):
    SALE = "sale"
    PURCHASE = "purchase"
    PAYMENT = "payment"
    DEPOSIT = "deposit"
    RECONCILIATION = "reconciliation"
    DELIVERY = "delivery"
    OTHER = "other"


@dataclass
class CheckMovement(StorageRecord):
    check_id: str
    movement_type: MovementType
    movement_date: date
    reference_type: ReferenceType
    sequence: int
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    user_id: Optional[str] = None

    _enum_fields = {"movement_type": MovementType, "reference_type": ReferenceType}
    _date_fields = ("movement_date",)


class MovementLog:
    """Append-only store of check movements"""

    ORDERABLE_FIELDS = ("movement_date", "created_at")

    def __init__(self, storage: StorageInterface, default_page_size: int = 20,
                 max_page_size: int = 100):
        self.storage = storage
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.table_name = "check_movements"
        self.checks_table = "checks"

    def append(
        self,
        uow: UnitOfWork,
        check_id: str,
        movement_type: MovementType,
        reference_type: ReferenceType = ReferenceType.OTHER,
        reference_id: Optional[str] = None,
        notes: Optional[str] = None,
        movement_date: Optional[date] = None,
        user_id: Optional[str] = None
    ) -> CheckMovement:
        """Stage one movement row; the caller must hold the check's lease"""
        now = datetime.now(timezone.utc)
        movement = CheckMovement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            check_id=check_id,
            movement_type=movement_type,
            movement_date=movement_date or now.date(),
            reference_type=reference_type,
            reference_id=reference_id,
            notes=notes,
            user_id=user_id or uow.user_id,
            sequence=self.count_for_check(check_id, uow) + 1,
        )
        uow.save(self.table_name, movement.id, movement.to_dict())
        return movement

    def _rows(self, check_id: str, uow: Optional[UnitOfWork]) -> List[dict]:
        source = uow if uow is not None else self.storage
        return source.find(self.table_name, {"check_id": check_id})

    def history(self, check_id: str, uow: Optional[UnitOfWork] = None) -> List[CheckMovement]:
        """All movements of a check, oldest first"""
        movements = [CheckMovement.from_dict(row) for row in self._rows(check_id, uow)]
        movements.sort(key=lambda m: m.sequence)
        return movements

    def count_for_check(self, check_id: str, uow: Optional[UnitOfWork] = None) -> int:
        return len(self._rows(check_id, uow))

    def latest(self, check_id: str, movement_type: MovementType,
               uow: Optional[UnitOfWork] = None) -> Optional[CheckMovement]:
        matching = [m for m in self.history(check_id, uow) if m.movement_type == movement_type]
        return matching[-1] if matching else None

    def remove_for_check(self, uow: UnitOfWork, check_id: str) -> int:
        """
        Stage the removal of every movement of a check.

        Only used when the check itself is physically deleted, which happens
        solely while its history is the single creation row.
        """
        rows = self._rows(check_id, uow)
        for row in rows:
            uow.delete(self.table_name, row["id"])
        return len(rows)

    def list_movements(
        self,
        check_id: Optional[str] = None,
        movement_type: Any = None,
        channel: Optional[str] = None,
        date_from: Any = None,
        date_to: Any = None,
        q: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        order_by: str = "movement_date",
        order_dir: str = "desc"
    ) -> Dict[str, Any]:
        """
        Movements across all checks, newest first by default.

        ``q`` matches the movement notes, the check serial and the payee name.
        Each item is the movement as a dict with a ``check`` summary attached
        (None when the check row no longer exists).
        """
        filters: Dict[str, Any] = {}
        if check_id:
            filters["check_id"] = check_id
        if movement_type:
            try:
                filters["movement_type"] = MovementType(movement_type).value
            except ValueError:
                raise ValidationError(
                    f"Invalid movement type '{movement_type}'", field="movement_type",
                    details={"allowed": [t.value for t in MovementType]},
                ) from None
        date_from = _as_date(date_from, "date_from")
        date_to = _as_date(date_to, "date_to")

        checks: Dict[str, Optional[Dict[str, Any]]] = {}
        items = []
        for movement in (CheckMovement.from_dict(r) for r in self.storage.find(self.table_name, filters)):
            if date_from and movement.movement_date < date_from:
                continue
            if date_to and movement.movement_date > date_to:
                continue
            if movement.check_id not in checks:
                checks[movement.check_id] = self.storage.load(self.checks_table, movement.check_id)
            check = checks[movement.check_id]
            if channel and (check is None or check.get("channel") != channel):
                continue
            if q and not _matches_search(q, movement, check):
                continue
            items.append((movement, check))

        column = order_by if order_by in self.ORDERABLE_FIELDS else "movement_date"
        items.sort(key=lambda pair: (getattr(pair[0], column), pair[0].created_at),
                   reverse=str(order_dir).lower() != "asc")

        page, limit = clamp_page(page, limit, self.default_page_size, self.max_page_size)
        result = paginate(items, page, limit)
        result["items"] = [
            dict(movement.to_dict(), check=_check_summary(check))
            for movement, check in result["items"]
        ]
        return result


def _as_date(value: Any, field: str) -> Optional[date]:
    if isinstance(value, date):
        return value
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"'{field}' must be a date (YYYY-MM-DD)", field=field) from None


def _matches_search(q: str, movement: CheckMovement, check: Optional[Dict[str, Any]]) -> bool:
    needle = q.strip().lower()
    if needle in (movement.notes or "").lower():
        return True
    if check is None:
        return False
    return needle in str(check.get("serial_number", "")) or needle in (check.get("payee_name") or "").lower()


def _check_summary(check: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if check is None:
        return None
    return {key: check.get(key) for key in (
        "direction", "channel", "serial_number", "amount", "state", "bank_id", "payee_name"
    )}
