"""
Check Registry

Owns the check entity and its lifecycle. Every mutation runs in one unit of
work: the check row is leased first, the action is validated against the
state the check has *after* the lease is granted, and the movement row,
projection re-derivation and any bank ledger line commit together with the
new state or not at all.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Type
import uuid

from .storage import StorageInterface, StorageRecord
from .unit_of_work import UnitOfWork, UnitOfWorkFactory
from .audit import AuditTrail, AuditEventType
from .catalog import CatalogDirectory
from .checkbooks import CheckbookManager, Checkbook, DeletionOutcome
from .movements import CheckMovement, MovementLog, MovementType, ReferenceType
from .cash_flow import CashFlowProjector
from .bank_ledger import BankLedgerMirror
from .pagination import clamp_page, paginate
from .state_machine import (
    CheckAction, CheckChannel, CheckDirection, CheckFormat, CheckState,
    INITIAL_STATE, ensure_transition, is_terminal
)
from .errors import Conflict, DependencyBlocked, NotFound, ValidationError
from .logging_config import get_logger, log_action, log_transition


CHECK_LOCK = "checks"
SERIAL_LOCK = "check_serials"
IDEMPOTENCY_LOCK = "check_idempotency"
CENTS = Decimal("0.01")
FORCED_DELETE_REASON = "Voided on forced delete"


@dataclass
class Check(StorageRecord):
    """
    A check received from a customer or issued to a supplier
    """
    direction: CheckDirection
    channel: CheckChannel
    check_format: CheckFormat
    bank_id: str
    serial_number: int
    amount: Decimal
    state: CheckState
    checkbook_id: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    expected_collection_date: Optional[date] = None
    customer_id: Optional[str] = None
    supplier_id: Optional[str] = None
    sale_id: Optional[str] = None
    purchase_id: Optional[str] = None
    payee_name: Optional[str] = None
    state_reason: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    version: int = 0

    _enum_fields = {
        "direction": CheckDirection,
        "channel": CheckChannel,
        "check_format": CheckFormat,
        "state": CheckState,
    }
    _date_fields = ("issue_date", "due_date", "expected_collection_date")
    _decimal_fields = ("amount",)

    def __post_init__(self):
        self.amount = _as_amount(self.amount)
        self.serial_number = _as_serial(self.serial_number)
        if (self.direction is CheckDirection.ISSUED
                and self.check_format is CheckFormat.PHYSICAL
                and not self.checkbook_id):
            raise ValidationError("A physical issued check must come from a checkbook",
                                  field="checkbook_id")

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.state)

    @property
    def serial_key(self) -> str:
        return f"{self.bank_id}:{self.serial_number}:{self.check_format.value}"


class MovementPlan(NamedTuple):
    """The single movement a transition appends"""
    movement_type: MovementType
    reference_type: ReferenceType
    reference_id: Optional[str] = None
    notes: Optional[str] = None
    movement_date: Optional[date] = None


@dataclass
class IdempotencyRecord(StorageRecord):
    """
    Outcome of a check action performed under a client idempotency key.
    The record id is the key itself.
    """
    check_id: str
    action: str
    movement_id: str
    result: Dict[str, Any]
    user_id: Optional[str] = None
    version: int = 1


def _as_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Amount must be a decimal number", field="amount") from None
    if not amount.is_finite() or amount < 0:
        raise ValidationError("Amount cannot be negative", field="amount",
                              details={"amount": str(value)})
    return amount.quantize(CENTS)


def _as_serial(value: Any) -> int:
    try:
        serial = int(value)
    except (TypeError, ValueError):
        serial = 0
    if isinstance(value, bool) or (isinstance(value, float) and value != serial) or serial <= 0:
        raise ValidationError("Serial number must be a positive whole number",
                              field="serial_number")
    return serial


def _as_enum(enum_type: Type[Enum], value: Any, field: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field} '{value}'", field=field,
            details={"allowed": [member.value for member in enum_type]},
        ) from None


def _as_date(value: Any, field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"'{field}' must be an ISO date (YYYY-MM-DD)", field=field) from None


def _required_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"'{field}' is required", field=field)
    return text


class CheckRegistry:
    """
    Check creation, editing, deletion and every lifecycle transition
    """

    EDITABLE_FIELDS = (
        "channel", "check_format", "bank_id", "serial_number", "amount",
        "issue_date", "due_date", "expected_collection_date", "customer_id",
        "supplier_id", "sale_id", "purchase_id", "payee_name", "notes",
    )
    SORTABLE_FIELDS = (
        "serial_number", "amount", "state", "created_at", "updated_at",
        "issue_date", "due_date", "expected_collection_date",
    )

    def __init__(
        self,
        storage: StorageInterface,
        catalog: CatalogDirectory,
        checkbooks: CheckbookManager,
        movements: MovementLog,
        cash_flow: CashFlowProjector,
        bank_ledger: BankLedgerMirror,
        audit_trail: AuditTrail,
        uow_factory: UnitOfWorkFactory,
        default_channel: str = "C1",
        default_page_size: int = 20,
        max_page_size: int = 100
    ):
        self.storage = storage
        self.catalog = catalog
        self.checkbooks = checkbooks
        self.movements = movements
        self.cash_flow = cash_flow
        self.bank_ledger = bank_ledger
        self.audit_trail = audit_trail
        self.uow_factory = uow_factory
        self.default_channel = CheckChannel(default_channel)
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.table_name = "checks"
        self.idempotency_table = "check_idempotency_keys"
        self.logger = get_logger("treasury.checks")

    # Persistence helpers

    def _load_for_update(self, uow: UnitOfWork, check_id: str) -> Check:
        """Lease the check row, then read its committed state"""
        uow.lock(CHECK_LOCK, check_id)
        data = uow.get(self.table_name, check_id)
        if data is None:
            raise NotFound("check", check_id)
        return Check.from_dict(data)

    def _save(self, uow: UnitOfWork, check: Check) -> None:
        check.version += 1
        check.updated_at = datetime.now(timezone.utc)
        check.updated_by = uow.user_id or check.updated_by
        uow.save(self.table_name, check.id, check.to_dict())

    def _ensure_unique(self, uow: UnitOfWork, bank_id: str, serial_number: int,
                       check_format: CheckFormat, exclude_id: Optional[str] = None) -> None:
        uow.lock(SERIAL_LOCK, f"{bank_id}:{serial_number}:{check_format.value}")
        existing = [
            row["id"] for row in uow.find(self.table_name, {
                "bank_id": bank_id,
                "serial_number": serial_number,
                "check_format": check_format.value,
            })
            if row["id"] != exclude_id
        ]
        if existing:
            raise Conflict(
                f"A {check_format.value} check #{serial_number} already exists for this bank",
                code="DUPLICATE_CHECK",
                tips=["Check the serial number and bank, or edit the existing check"],
                details={
                    "bank_id": bank_id,
                    "serial_number": serial_number,
                    "check_format": check_format.value,
                    "existing_check_id": existing[0],
                },
            )

    def _require_bank(self, bank_id: Optional[str]) -> str:
        if not bank_id or self.catalog.find_bank(bank_id) is None:
            raise ValidationError("Bank not found", field="bank_id", details={"bank_id": bank_id})
        return bank_id

    def _require_account(self, account_id: Optional[str], field: str = "bank_account_id"):
        account = self.catalog.find_bank_account(account_id)
        if account is None:
            raise ValidationError("Bank account not found", field=field,
                                  details={field: account_id})
        return account

    def _require_supplier(self, supplier_id: Optional[str]):
        supplier = self.catalog.find_supplier(supplier_id)
        if supplier is None:
            raise ValidationError("Supplier not found", field="supplier_id",
                                  details={"supplier_id": supplier_id})
        return supplier

    def _check_counterparties(self, customer_id: Optional[str], supplier_id: Optional[str]) -> None:
        if customer_id and self.catalog.find_customer(customer_id) is None:
            raise ValidationError("Customer not found", field="customer_id",
                                  details={"customer_id": customer_id})
        if supplier_id:
            self._require_supplier(supplier_id)

    def _audit(self, uow: UnitOfWork, event_type: AuditEventType, check: Check,
               action: str, description: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        actor = uow.user_id
        check_id = check.id
        uow.after_commit(lambda: self.audit_trail.record(
            actor, "checks", action, description,
            event_type, "check", check_id, metadata,
        ))

    # Create / update / delete

    def create_check(
        self,
        direction: Any,
        amount: Any,
        serial_number: Optional[int] = None,
        channel: Any = None,
        check_format: Any = CheckFormat.PHYSICAL,
        bank_id: Optional[str] = None,
        checkbook_id: Optional[str] = None,
        issue_date: Any = None,
        due_date: Any = None,
        expected_collection_date: Any = None,
        customer_id: Optional[str] = None,
        supplier_id: Optional[str] = None,
        sale_id: Optional[str] = None,
        purchase_id: Optional[str] = None,
        payee_name: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Check:
        """
        Register a check in its initial state.

        Issued checks drawn from a checkbook take their serial from it (the
        next number unless one is given) and inherit the bank of the
        checkbook's account. Received checks name their bank explicitly.
        """
        direction = _as_enum(CheckDirection, direction, "direction")
        channel = self.default_channel if channel is None else _as_enum(CheckChannel, channel, "channel")
        check_format = _as_enum(CheckFormat, check_format, "check_format")
        amount = _as_amount(amount)
        issue_date = _as_date(issue_date, "issue_date")
        due_date = _as_date(due_date, "due_date")
        expected_collection_date = _as_date(expected_collection_date, "expected_collection_date")
        self._check_counterparties(customer_id, supplier_id)

        if direction is CheckDirection.RECEIVED:
            if checkbook_id:
                raise ValidationError("Received checks do not belong to a checkbook",
                                      field="checkbook_id")
            self._require_bank(bank_id)
        elif not checkbook_id:
            if check_format is CheckFormat.PHYSICAL:
                raise ValidationError("checkbook_id is required for physical issued checks",
                                      field="checkbook_id")
            self._require_bank(bank_id)

        if not checkbook_id and serial_number is None:
            raise ValidationError("serial_number is required", field="serial_number")

        with self.uow_factory("check_create", user_id=user_id) as uow:
            if checkbook_id:
                checkbook, serial_number = self.checkbooks.issue_number(uow, checkbook_id, serial_number)
                bank_id = self._bank_of_checkbook(checkbook, bank_id)

            now = datetime.now(timezone.utc)
            check = Check(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                direction=direction,
                channel=channel,
                check_format=check_format,
                bank_id=bank_id,
                serial_number=serial_number,
                amount=amount,
                state=INITIAL_STATE[direction],
                checkbook_id=checkbook_id,
                issue_date=issue_date,
                due_date=due_date,
                expected_collection_date=expected_collection_date,
                customer_id=customer_id,
                supplier_id=supplier_id,
                sale_id=sale_id,
                purchase_id=purchase_id,
                payee_name=payee_name,
                notes=notes,
                created_by=user_id,
            )
            self._ensure_unique(uow, check.bank_id, check.serial_number, check.check_format)
            uow.lock(CHECK_LOCK, check.id)
            self._save(uow, check)
            self.movements.append(uow, check.id, MovementType.CREATED, ReferenceType.OTHER,
                                  notes="Check created")
            self.cash_flow.sync(uow, check)
            self._audit(uow, AuditEventType.CHECK_CREATED, check, "create",
                        f"created check #{check.serial_number} ({check.direction.value})",
                        {"amount": check.amount, "state": check.state})

        log_action(self.logger, "info", f"Check #{check.serial_number} created",
                   user_id=user_id, action="check_create", resource=f"check:{check.id}",
                   extra={"direction": direction.value, "state": check.state.value,
                          "amount": str(check.amount)},
                   check_id=check.id, serial_number=check.serial_number,
                   to_state=check.state.value)
        return check

    def _bank_of_checkbook(self, checkbook: Checkbook, requested_bank_id: Optional[str]) -> str:
        account = self.catalog.find_bank_account(checkbook.bank_account_id)
        if account is None:
            raise ValidationError("The checkbook's bank account no longer exists",
                                  field="checkbook_id",
                                  details={"bank_account_id": checkbook.bank_account_id})
        if requested_bank_id and requested_bank_id != account.bank_id:
            raise ValidationError("bank_id does not match the checkbook's bank",
                                  field="bank_id",
                                  details={"expected_bank_id": account.bank_id})
        return account.bank_id

    def update_check(self, check_id: str, changes: Dict[str, Any],
                     user_id: Optional[str] = None) -> Check:
        """
        Edit a non-terminal check. The projection is re-derived from the
        edited check; no movement is recorded.
        """
        if "direction" in changes:
            raise ValidationError("The direction of a check cannot be changed", field="direction")
        unknown = sorted(set(changes) - set(self.EDITABLE_FIELDS))
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}",
                                  field=unknown[0], details={"fields": unknown})

        with self.uow_factory("check_update", user_id=user_id) as uow:
            before = self._load_for_update(uow, check_id)
            ensure_transition(before, CheckAction.UPDATE)

            merged = before.to_dict()
            merged.update(self._coerce_changes(changes))
            after = Check.from_dict(merged)

            if after.checkbook_id:
                self._validate_checkbook_serial(uow, before, after)
            elif after.bank_id != before.bank_id:
                self._require_bank(after.bank_id)
            if {"customer_id", "supplier_id"} & set(changes):
                self._check_counterparties(after.customer_id, after.supplier_id)
            if after.serial_key != before.serial_key:
                self._ensure_unique(uow, after.bank_id, after.serial_number,
                                    after.check_format, exclude_id=check_id)

            diff = {
                field: {"from": getattr(before, field), "to": getattr(after, field)}
                for field in self.EDITABLE_FIELDS
                if getattr(before, field) != getattr(after, field)
            }
            self._save(uow, after)
            self.cash_flow.sync(uow, after)
            self._audit(uow, AuditEventType.CHECK_UPDATED, after, "update",
                        f"updated check #{after.serial_number}", {"changes": diff})

        log_action(self.logger, "info", f"Check #{after.serial_number} updated",
                   user_id=user_id, action="check_update", resource=f"check:{check_id}",
                   extra={"changed_fields": sorted(diff)},
                   check_id=check_id, serial_number=after.serial_number)
        return after

    def _coerce_changes(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        coerced = {}
        for field, value in changes.items():
            if field == "channel":
                value = _as_enum(CheckChannel, value, field).value
            elif field == "check_format":
                value = _as_enum(CheckFormat, value, field).value
            elif field == "amount":
                value = str(_as_amount(value))
            elif field in ("issue_date", "due_date", "expected_collection_date"):
                value = _as_date(value, field)
                value = value.isoformat() if value else None
            elif field == "serial_number":
                if value is None:
                    raise ValidationError("serial_number is required", field=field)
            elif field == "bank_id" and not value:
                raise ValidationError("bank_id is required", field=field)
            coerced[field] = value
        return coerced

    def _validate_checkbook_serial(self, uow: UnitOfWork, before: Check, after: Check) -> None:
        if after.bank_id != before.bank_id:
            raise ValidationError("The bank of a checkbook check comes from its checkbook",
                                  field="bank_id")
        if after.serial_number == before.serial_number:
            return
        data = uow.get(self.checkbooks.table_name, after.checkbook_id)
        if data is None:
            raise ValidationError("Checkbook not found", field="checkbook_id")
        checkbook = Checkbook.from_dict(data)
        if not checkbook.range_start <= after.serial_number <= checkbook.range_end:
            raise ValidationError(
                f"Serial {after.serial_number} is outside checkbook range "
                f"{checkbook.range_start}-{checkbook.range_end}",
                field="serial_number",
                code="SERIAL_OUT_OF_RANGE",
            )

    def delete_check(self, check_id: str, force: bool = False,
                     user_id: Optional[str] = None) -> DeletionOutcome:
        """
        Physically delete a check that was never acted upon.

        A check with ledger entries is never deleted. A check with history
        beyond its creation is voided instead, and only when ``force`` is set.
        """
        with self.uow_factory("check_delete", user_id=user_id) as uow:
            check = self._load_for_update(uow, check_id)
            before_state = check.state.value

            ledger_entries = self.bank_ledger.count_for_check(check_id, uow)
            if ledger_entries:
                raise Conflict(
                    "The check has bank ledger entries and cannot be deleted",
                    code="HAS_LEDGER_ENTRIES",
                    tips=["Ledger history is immutable; keep the check as it is"],
                    details={"check_id": check_id, "ledger_entries": ledger_entries},
                )

            movement_count = self.movements.count_for_check(check_id, uow)
            if movement_count > 1:
                if not force:
                    raise DependencyBlocked(
                        "The check has movements; it can only be voided",
                        details={"check_id": check_id, "movements": movement_count},
                    )
                self._apply(uow, check, CheckAction.VOID,
                            lambda u, c: self._void_effect(c, FORCED_DELETE_REASON))
                outcome = DeletionOutcome.VOIDED
            else:
                uow.delete(self.table_name, check_id)
                self.movements.remove_for_check(uow, check_id)
                self.cash_flow.delete(uow, check_id)
                outcome = DeletionOutcome.DELETED
                self._audit(uow, AuditEventType.CHECK_DELETED, check, "delete",
                            f"deleted check #{check.serial_number}")

        log_action(self.logger, "info", f"Check #{check.serial_number} {outcome.value}",
                   user_id=user_id, action="check_delete", resource=f"check:{check_id}",
                   extra={"force": force, "movements": movement_count},
                   check_id=check_id, serial_number=check.serial_number,
                   from_state=before_state,
                   to_state=check.state.value if outcome is DeletionOutcome.VOIDED else None)
        return outcome

    # Transitions

    def _apply(self, uow: UnitOfWork, check: Check, action: CheckAction,
               effect: Callable[[UnitOfWork, Check], MovementPlan]) -> Tuple[CheckState, CheckMovement]:
        """
        Validate and apply one transition to a leased check inside ``uow``.

        ``effect`` performs the action-specific validation and side effects
        and describes the movement to record.

        Returns:
            (state before the transition, the movement appended)
        """
        previous = check.state
        target = ensure_transition(check, action)
        plan = effect(uow, check)
        check.state = target
        self._save(uow, check)
        movement = self.movements.append(
            uow, check.id, plan.movement_type, plan.reference_type,
            reference_id=plan.reference_id, notes=plan.notes,
            movement_date=plan.movement_date,
        )
        self.cash_flow.sync(uow, check)
        self._audit(
            uow, AuditEventType.CHECK_TRANSITIONED, check, action.value,
            f"applied \"{action.value}\" to check #{check.serial_number}: "
            f"{previous.value} -> {target.value}",
            {"from": previous, "to": target},
        )
        return previous, movement

    def _transition(self, check_id: str, action: CheckAction, user_id: Optional[str],
                    effect: Callable[[UnitOfWork, Check], MovementPlan],
                    idempotency_key: Optional[str] = None) -> Check:
        """
        Run one transition in its own unit of work.

        With an ``idempotency_key`` the first outcome is stored next to the
        movement; repeating the same action on the same check with that key
        returns the stored check instead of failing on the new state.
        """
        key = (idempotency_key or "").strip() or None
        with self.uow_factory(f"check_{action.value}", user_id=user_id) as uow:
            if key:
                replayed = self._replay(uow, key, check_id, action)
                if replayed is not None:
                    log_action(self.logger, "info",
                               f"Replayed \"{action.value}\" on check #{replayed.serial_number}",
                               user_id=user_id, action=f"check_{action.value}_replay",
                               resource=f"check:{check_id}", extra={"idempotency_key": key},
                               check_id=check_id, serial_number=replayed.serial_number)
                    return replayed

            check = self._load_for_update(uow, check_id)
            previous, movement = self._apply(uow, check, action, effect)
            if key:
                self._remember(uow, key, check, action, movement)

        log_transition(self.logger, check_id, check.serial_number, previous.value,
                       check.state.value, action.value, user_id=user_id,
                       extra={"movement_id": movement.id, "idempotency_key": key} if key else None)
        return check

    def _replay(self, uow: UnitOfWork, key: str, check_id: str,
                action: CheckAction) -> Optional[Check]:
        uow.lock(IDEMPOTENCY_LOCK, key)
        data = uow.get(self.idempotency_table, key)
        if data is None:
            return None
        record = IdempotencyRecord.from_dict(data)
        if record.check_id != check_id or record.action != action.value:
            raise Conflict(
                "The idempotency key was already used for a different check action",
                code="IDEMPOTENCY_KEY_REUSED",
                tips=["Send a new Idempotency-Key for every distinct action"],
                details={"idempotency_key": key, "check_id": record.check_id,
                         "action": record.action},
            )
        return Check.from_dict(record.result)

    def _remember(self, uow: UnitOfWork, key: str, check: Check, action: CheckAction,
                  movement: CheckMovement) -> None:
        now = datetime.now(timezone.utc)
        record = IdempotencyRecord(
            id=key,
            created_at=now,
            updated_at=now,
            check_id=check.id,
            action=action.value,
            movement_id=movement.id,
            result=check.to_dict(),
            user_id=uow.user_id,
        )
        uow.save(self.idempotency_table, key, record.to_dict())

    def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        data = self.storage.load(self.idempotency_table, key)
        return IdempotencyRecord.from_dict(data) if data else None

    def deposit(self, check_id: str, bank_account_id: Optional[str], deposit_date: Any = None,
                expected_collection_date: Any = None, user_id: Optional[str] = None,
                idempotency_key: Optional[str] = None) -> Check:
        """Deposit a received check into one of our bank accounts"""
        deposit_date = _as_date(deposit_date, "deposit_date")
        expected = _as_date(expected_collection_date, "expected_collection_date")

        def effect(uow: UnitOfWork, check: Check) -> MovementPlan:
            account = self._require_account(bank_account_id)
            if expected:
                check.expected_collection_date = expected
            return MovementPlan(MovementType.DEPOSITED, ReferenceType.DEPOSIT, account.id,
                                f"Deposited into account {account.alias}", deposit_date)

        return self._transition(check_id, CheckAction.DEPOSIT, user_id, effect, idempotency_key)

    def accredit(self, check_id: str, accreditation_date: Any = None,
                 bank_account_id: Optional[str] = None, user_id: Optional[str] = None,
                 idempotency_key: Optional[str] = None) -> Check:
        """
        Confirm a deposited check was credited. The account is the one the
        check was deposited into; ``bank_account_id`` is used only when no
        deposit movement names one.
        """
        accreditation_date = _as_date(accreditation_date, "accreditation_date")

        def effect(uow: UnitOfWork, check: Check) -> MovementPlan:
            deposit = self.movements.latest(check.id, MovementType.DEPOSITED, uow)
            account_id = (deposit.reference_id if deposit and deposit.reference_id
                          else bank_account_id)
            if not account_id:
                raise ValidationError("No destination account is known for this check",
                                      field="bank_account_id")
            account = self._require_account(account_id)
            entry_date = accreditation_date or datetime.now(timezone.utc).date()
            if check.amount > 0:
                self.bank_ledger.append(
                    uow, account.id, entry_date,
                    f"Accreditation of check #{check.serial_number}",
                    debit=Decimal("0"), credit=check.amount, ref_check_id=check.id,
                )
            return MovementPlan(MovementType.ACCREDITED, ReferenceType.DEPOSIT, account.id,
                                f"Credited to account {account.alias}", entry_date)

        return self._transition(check_id, CheckAction.ACCREDIT, user_id, effect, idempotency_key)

    def reject(self, check_id: str, reason: Optional[str], rejection_date: Any = None,
               user_id: Optional[str] = None,
               idempotency_key: Optional[str] = None) -> Check:
        reason = _required_text(reason, "reason")
        rejection_date = _as_date(rejection_date, "rejection_date")

        def effect(uow: UnitOfWork, check: Check) -> MovementPlan:
            deposit = self.movements.latest(check.id, MovementType.DEPOSITED, uow)
            check.state_reason = reason
            return MovementPlan(MovementType.REJECTED, ReferenceType.DEPOSIT,
                                deposit.reference_id if deposit else None,
                                reason, rejection_date)

        return self._transition(check_id, CheckAction.REJECT, user_id, effect, idempotency_key)

    def apply_to_supplier(self, check_id: str, supplier_id: Optional[str] = None,
                          purchase_id: Optional[str] = None, applied_on: Any = None,
                          user_id: Optional[str] = None,
                          idempotency_key: Optional[str] = None) -> Check:
        """
        Apply a check to a supplier purchase. A received check is endorsed to
        the supplier given here; an issued check may fall back to its own
        supplier.
        """
        applied_on = _as_date(applied_on, "applied_on")

        def effect(uow: UnitOfWork, check: Check) -> MovementPlan:
            if check.direction is CheckDirection.RECEIVED:
                target_supplier = supplier_id
                notes = "Endorsed to supplier"
            else:
                target_supplier = supplier_id or check.supplier_id
                notes = "Payment to supplier"
            if not target_supplier:
                raise ValidationError("supplier_id is required", field="supplier_id")
            supplier = self._require_supplier(target_supplier)
            check.supplier_id = supplier.id
            if purchase_id:
                check.purchase_id = purchase_id
            return MovementPlan(MovementType.APPLIED, ReferenceType.PAYMENT,
                                purchase_id or check.purchase_id,
                                f"{notes}: {supplier.name}", applied_on)

        return self._transition(check_id, CheckAction.APPLY_TO_SUPPLIER, user_id, effect, idempotency_key)

    def deliver(self, check_id: str, supplier_id: Optional[str] = None,
                recipient: Optional[str] = None, delivered_on: Any = None,
                user_id: Optional[str] = None,
                idempotency_key: Optional[str] = None) -> Check:
        """
        Hand a check over. Issued checks go to a supplier and are recorded as
        a payment; received checks may go to any named recipient and are
        recorded as a delivery.
        """
        delivered_on = _as_date(delivered_on, "delivered_on")

        def effect(uow: UnitOfWork, check: Check) -> MovementPlan:
            if check.direction is CheckDirection.ISSUED:
                target_supplier = supplier_id or check.supplier_id
                if not target_supplier:
                    raise ValidationError("A supplier is required to deliver an issued check",
                                          field="supplier_id")
                supplier = self._require_supplier(target_supplier)
                check.supplier_id = supplier.id
                check.state_reason = f"Delivered to {supplier.name}"
                return MovementPlan(MovementType.DELIVERED, ReferenceType.PAYMENT, supplier.id,
                                    check.state_reason, delivered_on)

            name = (recipient or "").strip()
            if supplier_id:
                supplier = self._require_supplier(supplier_id)
                check.supplier_id = supplier.id
                name = name or supplier.name
            check.state_reason = f"Delivered to {name}" if name else "Delivered"
            return MovementPlan(MovementType.DELIVERED, ReferenceType.DELIVERY, None,
                                check.state_reason, delivered_on)

        return self._transition(check_id, CheckAction.DELIVER, user_id, effect, idempotency_key)

    def clear(self, check_id: str, clearing_date: Any = None,
              user_id: Optional[str] = None,
              idempotency_key: Optional[str] = None) -> Check:
        """Record that the bank debited an issued check from its checkbook's account"""
        clearing_date = _as_date(clearing_date, "clearing_date")

        def effect(uow: UnitOfWork, check: Check) -> MovementPlan:
            data = uow.get(self.checkbooks.table_name, check.checkbook_id) if check.checkbook_id else None
            if data is None:
                raise ValidationError("The check has no checkbook, so no account to debit",
                                      field="checkbook_id", code="NO_CHECKBOOK_ACCOUNT")
            account = self._require_account(Checkbook.from_dict(data).bank_account_id,
                                            field="checkbook_id")
            entry_date = clearing_date or datetime.now(timezone.utc).date()
            # a zero-amount check moves no money
            if check.amount > 0:
                self.bank_ledger.append(
                    uow, account.id, entry_date,
                    f"Clearing of issued check #{check.serial_number}",
                    debit=check.amount, credit=Decimal("0"), ref_check_id=check.id,
                )
            return MovementPlan(MovementType.CLEARED, ReferenceType.RECONCILIATION, account.id,
                                f"Debited from account {account.alias}", entry_date)

        return self._transition(check_id, CheckAction.CLEAR, user_id, effect, idempotency_key)

    def void(self, check_id: str, reason: Optional[str], user_id: Optional[str] = None,
             idempotency_key: Optional[str] = None) -> Check:
        reason = _required_text(reason, "reason")
        return self._transition(check_id, CheckAction.VOID, user_id,
                                lambda uow, check: self._void_effect(check, reason),
                                idempotency_key)

    @staticmethod
    def _void_effect(check: Check, reason: str) -> MovementPlan:
        check.state_reason = reason
        return MovementPlan(MovementType.VOIDED, ReferenceType.OTHER, None, reason)

    # Queries

    def get_check(self, check_id: str) -> Optional[Check]:
        data = self.storage.load(self.table_name, check_id)
        return Check.from_dict(data) if data else None

    def list_checks_for_checkbook(self, checkbook_id: str) -> List[Check]:
        if self.checkbooks.get_checkbook(checkbook_id) is None:
            raise NotFound("checkbook", checkbook_id)
        checks = [Check.from_dict(d) for d in self.storage.find(self.table_name, {"checkbook_id": checkbook_id})]
        checks.sort(key=lambda c: c.serial_number)
        return checks

    def get_history(self, check_id: str) -> List[CheckMovement]:
        if self.get_check(check_id) is None:
            raise NotFound("check", check_id)
        return self.movements.history(check_id)

    def list_checks(
        self,
        q: Optional[str] = None,
        direction: Any = None,
        state: Any = None,
        channel: Any = None,
        bank_id: Optional[str] = None,
        checkbook_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        supplier_id: Optional[str] = None,
        due_from: Any = None,
        due_to: Any = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        order_by: str = "serial_number",
        order_dir: str = "asc"
    ) -> Dict[str, Any]:
        """Filtered, sorted and paginated check listing"""
        filters: Dict[str, Any] = {}
        if direction:
            filters["direction"] = _as_enum(CheckDirection, direction, "direction").value
        if state:
            filters["state"] = _as_enum(CheckState, state, "state").value
        if channel:
            filters["channel"] = _as_enum(CheckChannel, channel, "channel").value
        for key, value in (("bank_id", bank_id), ("checkbook_id", checkbook_id),
                           ("customer_id", customer_id), ("supplier_id", supplier_id)):
            if value:
                filters[key] = value

        checks = [Check.from_dict(d) for d in self.storage.find(self.table_name, filters)]

        if q:
            needle = q.strip().lower()
            checks = [
                c for c in checks
                if needle == str(c.serial_number)
                or needle in (c.payee_name or "").lower()
                or needle in (c.notes or "").lower()
            ]
        due_from = _as_date(due_from, "due_from")
        due_to = _as_date(due_to, "due_to")
        if due_from:
            checks = [c for c in checks if c.due_date and c.due_date >= due_from]
        if due_to:
            checks = [c for c in checks if c.due_date and c.due_date <= due_to]

        column = order_by if order_by in self.SORTABLE_FIELDS else "serial_number"

        def sort_key(check: Check):
            value = getattr(check, column)
            if isinstance(value, Enum):
                value = value.value
            return (value is None, value if value is not None else 0)

        checks.sort(key=sort_key, reverse=str(order_dir).lower() == "desc")
        page, limit = clamp_page(page, limit, self.default_page_size, self.max_page_size)
        return paginate(checks, page, limit)
