"""
Checkbooks and Serial Range Allocation

A checkbook is a contiguous block of serial numbers on one bank account.
Ranges on the same account never overlap; creating or editing a checkbook
holds a lease on the account's whole range set while the decision is made.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
import uuid

from .storage import StorageInterface, StorageRecord
from .unit_of_work import UnitOfWork, UnitOfWorkFactory
from .audit import AuditTrail, AuditEventType
from .catalog import CatalogDirectory
from .pagination import clamp_page, paginate
from .errors import (
    Conflict, DependencyBlocked, InvalidStateTransition, NotFound, ValidationError
)
from .logging_config import get_logger, log_action


RANGE_LOCK = "checkbook_ranges"
CHECKBOOK_LOCK = "checkbooks"
MAX_DESCRIPTION_LENGTH = 120


class CheckbookState(Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    BLOCKED = "blocked"
    VOIDED = "voided"


class DeletionOutcome(Enum):
    DELETED = "deleted"
    VOIDED = "voided"


def _as_positive_int(value: Any, field: str) -> int:
    invalid = ValidationError(
        f"'{field}' must be a positive whole number",
        field=field,
        code="INVALID_RANGE",
        tips=["Enter positive numbers for the range start and end"],
    )
    if isinstance(value, bool) or value is None:
        raise invalid
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise invalid from None
    if isinstance(value, float) and value != number:
        raise invalid
    if number <= 0:
        raise invalid
    return number


def validate_range(range_start: Any, range_end: Any,
                   next_number: Any = None) -> Tuple[int, int, int]:
    """
    Check a [start, end] range and its next-to-issue number.

    A missing next number defaults to the start.

    Returns:
        (start, end, next_number) as ints
    """
    start = _as_positive_int(range_start, "range_start")
    end = _as_positive_int(range_end, "range_end")
    if end < start:
        raise ValidationError(
            "Range end cannot be lower than range start",
            field="range_end",
            code="RANGE_INVERTED",
            tips=["Swap the range boundaries"],
            details={"range_start": start, "range_end": end},
        )

    nxt = start if next_number is None else next_number
    try:
        nxt = int(nxt)
    except (TypeError, ValueError):
        nxt = None
    if nxt is None or isinstance(next_number, bool) or not start <= nxt <= end:
        raise ValidationError(
            "The next number must lie inside the range",
            field="next_number",
            code="NEXT_OUT_OF_RANGE",
            tips=["Set the next number between range start and range end"],
            details={"range_start": start, "range_end": end, "next_number": next_number},
        )
    return start, end, nxt


def merge_ranges(ranges: Iterable[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Sort ranges and fuse the ones that overlap or touch"""
    merged: List[List[int]] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1][1] + 1:
            merged[-1][1] = max(merged[-1][1], end)
        else:
            merged.append([start, end])
    return [(a, b) for a, b in merged]


def first_fit(merged: List[Tuple[int, int]], length: int,
              preferred_start: Optional[int] = None) -> Tuple[int, int]:
    """
    First-fit search over a sorted, merged list of occupied ranges.

    The preferred start wins when a window of ``length`` fits there. Otherwise
    the first gap from 1 upward that holds the window is used, falling back to
    the numbers right after the last occupied range.
    """
    def fits_at(candidate: int) -> bool:
        last = candidate + length - 1
        for a, b in merged:
            if last < a:
                return True
            if candidate > b:
                continue
            return False
        return True

    if preferred_start is not None and preferred_start >= 1 and fits_at(preferred_start):
        return preferred_start, preferred_start + length - 1

    cursor = 1
    for a, b in merged:
        if cursor + length - 1 < a:
            return cursor, cursor + length - 1
        cursor = max(cursor, b + 1)
    return cursor, cursor + length - 1


@dataclass
class Checkbook(StorageRecord):
    """
    A block of consecutively numbered checks on one bank account
    """
    bank_account_id: str
    description: str
    range_start: int
    range_end: int
    next_number: int
    state: CheckbookState = CheckbookState.ACTIVE
    version: int = 0
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    _enum_fields = {"state": CheckbookState}

    def __post_init__(self):
        self.range_start, self.range_end, self.next_number = validate_range(
            self.range_start, self.range_end, self.next_number
        )

    @property
    def range_size(self) -> int:
        return self.range_end - self.range_start + 1

    @property
    def available_numbers(self) -> int:
        if self.state is CheckbookState.EXHAUSTED:
            return 0
        return self.range_end - self.next_number + 1


class RangeAllocator:
    """Overlap detection and free-range suggestion for one account's checkbooks"""

    def __init__(self, table_name: str = "checkbooks"):
        self.table_name = table_name

    def ranges_for_account(self, uow: UnitOfWork, bank_account_id: str,
                           exclude_id: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = uow.find(self.table_name, {"bank_account_id": bank_account_id})
        rows = [r for r in rows if r["id"] != exclude_id]
        rows.sort(key=lambda r: (int(r["range_start"]), int(r["range_end"])))
        return rows

    def find_overlapping(self, uow: UnitOfWork, bank_account_id: str, start: int, end: int,
                         exclude_id: Optional[str] = None) -> List[str]:
        return [
            r["id"] for r in self.ranges_for_account(uow, bank_account_id, exclude_id)
            if int(r["range_start"]) <= end and int(r["range_end"]) >= start
        ]

    def overlaps(self, uow: UnitOfWork, bank_account_id: str, start: int, end: int,
                 exclude_id: Optional[str] = None) -> bool:
        return bool(self.find_overlapping(uow, bank_account_id, start, end, exclude_id))

    def suggest_range(self, uow: UnitOfWork, bank_account_id: str, length: Any,
                      preferred_start: Optional[Any] = None) -> Tuple[int, int]:
        length = _as_positive_int(length, "length")
        if preferred_start is not None:
            preferred_start = _as_positive_int(preferred_start, "preferred_start")
        occupied = [
            (int(r["range_start"]), int(r["range_end"]))
            for r in self.ranges_for_account(uow, bank_account_id)
        ]
        return first_fit(merge_ranges(occupied), length, preferred_start)


class CheckbookManager:
    """
    Creates, edits, voids and deletes checkbooks, and hands out serial numbers
    to issued checks.
    """

    EDITABLE_FIELDS = ("bank_account_id", "description", "range_start",
                       "range_end", "next_number", "state")

    def __init__(
        self,
        storage: StorageInterface,
        catalog: CatalogDirectory,
        audit_trail: AuditTrail,
        uow_factory: UnitOfWorkFactory,
        default_length: int = 50,
        default_page_size: int = 20,
        max_page_size: int = 100
    ):
        self.storage = storage
        self.catalog = catalog
        self.audit_trail = audit_trail
        self.uow_factory = uow_factory
        self.default_length = default_length
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.table_name = "checkbooks"
        self.checks_table = "checks"
        self.allocator = RangeAllocator(self.table_name)
        self.logger = get_logger("treasury.checkbooks")

    # Helpers

    def _load(self, uow: UnitOfWork, checkbook_id: str) -> Checkbook:
        data = uow.get(self.table_name, checkbook_id)
        if data is None:
            raise NotFound("checkbook", checkbook_id)
        return Checkbook.from_dict(data)

    def _save(self, uow: UnitOfWork, checkbook: Checkbook) -> None:
        checkbook.version += 1
        checkbook.updated_at = datetime.now(timezone.utc)
        checkbook.updated_by = uow.user_id or checkbook.updated_by
        uow.save(self.table_name, checkbook.id, checkbook.to_dict())

    def _require_account(self, bank_account_id: Optional[str]) -> None:
        if not bank_account_id or self.catalog.find_bank_account(bank_account_id) is None:
            raise ValidationError("Bank account not found", field="bank_account_id",
                                  details={"bank_account_id": bank_account_id})

    @staticmethod
    def _clean_description(description: Optional[str]) -> str:
        text = (description or "").strip()
        if not text or len(text) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(
                f"Description must be between 1 and {MAX_DESCRIPTION_LENGTH} characters",
                field="description",
            )
        return text

    @staticmethod
    def _coerce_state(state: Any) -> CheckbookState:
        if isinstance(state, CheckbookState):
            return state
        try:
            return CheckbookState(state)
        except ValueError:
            raise ValidationError(f"Unknown checkbook state '{state}'", field="state",
                                  details={"allowed": [s.value for s in CheckbookState]}) from None

    def _ensure_no_overlap(self, uow: UnitOfWork, bank_account_id: str, start: int, end: int,
                           exclude_id: Optional[str] = None) -> None:
        conflicting = self.allocator.find_overlapping(uow, bank_account_id, start, end, exclude_id)
        if conflicting:
            raise Conflict(
                "Another checkbook on this bank account overlaps the range",
                code="RANGE_OVERLAP",
                tips=["Pick a different range or ask for a suggested one"],
                details={
                    "bank_account_id": bank_account_id,
                    "range_start": start,
                    "range_end": end,
                    "conflicting_checkbook_ids": conflicting,
                },
            )

    def _audit(self, uow: UnitOfWork, event_type: AuditEventType, checkbook_id: str,
               action: str, description: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        actor = uow.user_id
        uow.after_commit(lambda: self.audit_trail.record(
            actor, "checkbooks", action, description,
            event_type, "checkbook", checkbook_id, metadata,
        ))

    # Operations

    def create_checkbook(
        self,
        bank_account_id: str,
        description: str,
        range_start: Optional[int] = None,
        range_end: Optional[int] = None,
        next_number: Optional[int] = None,
        state: Any = CheckbookState.ACTIVE,
        length: Optional[int] = None,
        user_id: Optional[str] = None
    ) -> Checkbook:
        """
        Create a checkbook with an explicit or suggested range.

        When ``range_end`` is omitted the allocator suggests a free range of
        ``length`` numbers, starting at ``range_start`` if that fits.
        """
        description = self._clean_description(description)
        state = self._coerce_state(state)
        self._require_account(bank_account_id)

        with self.uow_factory("checkbook_create", user_id=user_id) as uow:
            uow.lock(RANGE_LOCK, bank_account_id)

            if range_end is None:
                if next_number is not None and range_start is None:
                    raise ValidationError("next_number needs an explicit range", field="next_number")
                range_start, range_end = self.allocator.suggest_range(
                    uow, bank_account_id, self.default_length if length is None else length, range_start
                )
            elif range_start is None:
                raise ValidationError("range_start is required when range_end is given",
                                      field="range_start")

            start, end, nxt = validate_range(range_start, range_end, next_number)
            self._ensure_no_overlap(uow, bank_account_id, start, end)

            now = datetime.now(timezone.utc)
            checkbook = Checkbook(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                bank_account_id=bank_account_id,
                description=description,
                range_start=start,
                range_end=end,
                next_number=nxt,
                state=state,
                created_by=user_id,
            )
            self._save(uow, checkbook)
            self._audit(
                uow, AuditEventType.CHECKBOOK_CREATED, checkbook.id, "create",
                f"created checkbook \"{description}\" (range {start}-{end})",
                {"bank_account_id": bank_account_id, "range_start": start, "range_end": end},
            )

        log_action(self.logger, "info", f"Checkbook created with range {start}-{end}",
                   user_id=user_id, action="checkbook_create", resource=f"checkbook:{checkbook.id}",
                   extra={"bank_account_id": bank_account_id},
                   checkbook_id=checkbook.id)
        return checkbook

    def update_checkbook(self, checkbook_id: str, changes: Dict[str, Any],
                         user_id: Optional[str] = None) -> Checkbook:
        """Edit a checkbook; range and account changes are re-validated for overlap"""
        unknown = sorted(set(changes) - set(self.EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}",
                                  field=unknown[0], details={"fields": unknown})

        with self.uow_factory("checkbook_update", user_id=user_id) as uow:
            uow.lock(CHECKBOOK_LOCK, checkbook_id)
            before = self._load(uow, checkbook_id)
            if before.state is CheckbookState.VOIDED:
                raise InvalidStateTransition(
                    before.state.value, "update",
                    message="A voided checkbook cannot be edited",
                )

            account_id = changes.get("bank_account_id") or before.bank_account_id
            if account_id != before.bank_account_id:
                self._require_account(account_id)
            uow.lock_many([(RANGE_LOCK, before.bank_account_id), (RANGE_LOCK, account_id)])

            start, end, nxt = validate_range(
                changes.get("range_start", before.range_start),
                changes.get("range_end", before.range_end),
                changes.get("next_number", before.next_number),
            )
            if (account_id, start, end) != (before.bank_account_id, before.range_start, before.range_end):
                self._ensure_no_overlap(uow, account_id, start, end, exclude_id=checkbook_id)
                self._ensure_issued_inside(uow, checkbook_id, start, end)

            after = Checkbook.from_dict(before.to_dict())
            after.bank_account_id = account_id
            after.range_start, after.range_end, after.next_number = start, end, nxt
            if "description" in changes:
                after.description = self._clean_description(changes["description"])
            if "state" in changes:
                after.state = self._coerce_state(changes["state"])

            diff = {
                field: {"from": getattr(before, field), "to": getattr(after, field)}
                for field in self.EDITABLE_FIELDS
                if getattr(before, field) != getattr(after, field)
            }
            self._save(uow, after)
            self._audit(
                uow, AuditEventType.CHECKBOOK_UPDATED, checkbook_id, "update",
                f"updated checkbook \"{before.description}\"",
                {"changes": diff},
            )

        log_action(self.logger, "info", "Checkbook updated", user_id=user_id,
                   action="checkbook_update", resource=f"checkbook:{checkbook_id}",
                   extra={"changed_fields": sorted(diff)},
                   checkbook_id=checkbook_id)
        return after

    def _ensure_issued_inside(self, uow: UnitOfWork, checkbook_id: str, start: int, end: int) -> None:
        outside = sorted(
            int(c["serial_number"]) for c in uow.find(self.checks_table, {"checkbook_id": checkbook_id})
            if not start <= int(c["serial_number"]) <= end
        )
        if outside:
            raise Conflict(
                "Checks already issued from this checkbook fall outside the new range",
                code="ISSUED_OUTSIDE_RANGE",
                details={"serial_numbers": outside},
            )

    def delete_checkbook(self, checkbook_id: str, force: bool = False,
                         user_id: Optional[str] = None) -> DeletionOutcome:
        """
        Delete a checkbook, or void it when checks were issued from it.

        Raises:
            DependencyBlocked: checks exist and ``force`` is not set
        """
        with self.uow_factory("checkbook_delete", user_id=user_id) as uow:
            uow.lock(CHECKBOOK_LOCK, checkbook_id)
            checkbook = self._load(uow, checkbook_id)
            dependents = len(uow.find(self.checks_table, {"checkbook_id": checkbook_id}))

            if dependents and not force:
                raise DependencyBlocked(
                    "This checkbook has checks issued from it; void it instead",
                    details={"checkbook_id": checkbook_id, "dependent_checks": dependents},
                )

            if dependents:
                checkbook.state = CheckbookState.VOIDED
                self._save(uow, checkbook)
                outcome = DeletionOutcome.VOIDED
                self._audit(
                    uow, AuditEventType.CHECKBOOK_VOIDED, checkbook_id, "void",
                    f"voided checkbook \"{checkbook.description}\" (issued checks: {dependents})",
                )
            else:
                uow.delete(self.table_name, checkbook_id)
                outcome = DeletionOutcome.DELETED
                self._audit(
                    uow, AuditEventType.CHECKBOOK_DELETED, checkbook_id, "delete",
                    f"deleted checkbook \"{checkbook.description}\"",
                )

        log_action(self.logger, "info", f"Checkbook {outcome.value}", user_id=user_id,
                   action="checkbook_delete", resource=f"checkbook:{checkbook_id}",
                   extra={"dependent_checks": dependents, "force": force},
                   checkbook_id=checkbook_id)
        return outcome

    def issue_number(self, uow: UnitOfWork, checkbook_id: str,
                     requested: Optional[Any] = None) -> Tuple[Checkbook, int]:
        """
        Take a serial number from an active checkbook inside the caller's unit of work.

        Without ``requested`` the first unissued number from the cursor is
        used. An explicit serial above the cursor is recorded without moving
        it. The cursor skips numbers already issued from the checkbook, and the
        checkbook becomes exhausted once it runs past the end of the range.
        """
        uow.lock(CHECKBOOK_LOCK, checkbook_id)
        data = uow.get(self.table_name, checkbook_id)
        if data is None:
            raise ValidationError("Checkbook not found", field="checkbook_id",
                                  details={"checkbook_id": checkbook_id})
        checkbook = Checkbook.from_dict(data)
        if checkbook.state is not CheckbookState.ACTIVE:
            raise ValidationError(
                f"Checkbook is {checkbook.state.value}; only active checkbooks can issue checks",
                field="checkbook_id",
                code="CHECKBOOK_NOT_ACTIVE",
                details={"checkbook_id": checkbook_id, "state": checkbook.state.value},
            )

        taken = self._issued_serials(uow, checkbook_id)
        if requested is None:
            serial = checkbook.next_number
            while serial in taken:
                serial += 1
            if serial > checkbook.range_end:
                raise ValidationError(
                    "Every serial of the checkbook has already been issued",
                    field="checkbook_id",
                    code="NO_SERIAL_AVAILABLE",
                    details={"checkbook_id": checkbook_id},
                )
        else:
            serial = _as_positive_int(requested, "serial_number")
            if not checkbook.range_start <= serial <= checkbook.range_end:
                raise ValidationError(
                    f"Serial {serial} is outside checkbook range "
                    f"{checkbook.range_start}-{checkbook.range_end}",
                    field="serial_number",
                    code="SERIAL_OUT_OF_RANGE",
                    details={"range_start": checkbook.range_start, "range_end": checkbook.range_end},
                )

        taken.add(serial)
        cursor = checkbook.next_number
        while cursor in taken:
            cursor += 1
        if cursor > checkbook.range_end:
            checkbook.next_number = checkbook.range_end
            checkbook.state = CheckbookState.EXHAUSTED
        else:
            checkbook.next_number = cursor
        self._save(uow, checkbook)
        return checkbook, serial

    def _issued_serials(self, source, checkbook_id: str) -> Set[int]:
        """Serials of the checks drawn from a checkbook; ``source`` is storage or a unit of work"""
        rows = source.find(self.checks_table, {"checkbook_id": checkbook_id})
        return {int(row["serial_number"]) for row in rows}

    # Queries

    def get_checkbook(self, checkbook_id: str) -> Optional[Checkbook]:
        data = self.storage.load(self.table_name, checkbook_id)
        return Checkbook.from_dict(data) if data else None

    def suggest_range(self, bank_account_id: str, length: Optional[int] = None,
                      preferred_start: Optional[int] = None) -> Tuple[int, int]:
        """Read-only suggestion of a free range for an account"""
        self._require_account(bank_account_id)
        uow = self.uow_factory("checkbook_suggest_range")
        try:
            return self.allocator.suggest_range(
                uow, bank_account_id, self.default_length if length is None else length, preferred_start
            )
        finally:
            uow.rollback()

    def checkbook_usage(self, checkbook_id: str) -> Dict[str, Any]:
        checkbook = self.get_checkbook(checkbook_id)
        if checkbook is None:
            raise NotFound("checkbook", checkbook_id)
        serials = self._issued_serials(self.storage, checkbook_id)
        issued = len(self.storage.find(self.checks_table, {"checkbook_id": checkbook_id}))
        available = 0
        if checkbook.state is not CheckbookState.EXHAUSTED:
            available = sum(
                1 for n in range(checkbook.next_number, checkbook.range_end + 1) if n not in serials
            )
        return {
            "checkbook_id": checkbook_id,
            "range_size": checkbook.range_size,
            "issued_checks": issued,
            "available_numbers": available,
            "used_pct": round(100 * issued / checkbook.range_size, 2),
        }

    def list_checkbooks(self, bank_account_id: Optional[str] = None, state: Optional[Any] = None,
                        q: Optional[str] = None, page: Optional[int] = None,
                        limit: Optional[int] = None) -> Dict[str, Any]:
        filters = {}
        if bank_account_id:
            filters["bank_account_id"] = bank_account_id
        if state:
            filters["state"] = self._coerce_state(state).value
        checkbooks = [Checkbook.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        if q:
            needle = q.strip().lower()
            checkbooks = [
                c for c in checkbooks
                if needle in c.description.lower()
                or (needle.isdigit() and c.range_start <= int(needle) <= c.range_end)
            ]
        checkbooks.sort(key=lambda c: (c.bank_account_id, c.range_start))
        page, limit = clamp_page(page, limit, self.default_page_size, self.max_page_size)
        return paginate(checkbooks, page, limit)
