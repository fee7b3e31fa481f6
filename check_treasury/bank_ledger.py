"""
Bank Ledger Mirror

Real bank-account ledger lines produced when a check settles: a credit when
a deposited check is accredited, a debit when an issued check clears. Lines
are immutable once written.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional
import uuid

from .storage import StorageInterface, StorageRecord
from .unit_of_work import UnitOfWork
from .errors import ValidationError


CHECK_REFERENCE = "check"
CENTS = Decimal("0.01")


@dataclass
class BankLedgerEntry(StorageRecord):
    """
    One bank ledger line. Exactly one of debit and credit is positive.
    """
    bank_account_id: str
    entry_date: date
    description: str
    debit: Decimal
    credit: Decimal
    reference_type: str = CHECK_REFERENCE
    reference_id: Optional[str] = None

    _date_fields = ("entry_date",)
    _decimal_fields = ("debit", "credit")

    def __post_init__(self):
        if self.debit < 0 or self.credit < 0:
            raise ValidationError("Debit and credit cannot be negative",
                                  details={"debit": str(self.debit), "credit": str(self.credit)})
        if (self.debit > 0) == (self.credit > 0):
            raise ValidationError(
                "A ledger entry must have either a debit or a credit amount, not both",
                details={"debit": str(self.debit), "credit": str(self.credit)},
            )

    @property
    def amount(self) -> Decimal:
        return self.debit if self.debit > 0 else self.credit

    @property
    def is_credit(self) -> bool:
        return self.credit > 0


class BankLedgerMirror:
    """Appends and reads bank ledger lines linked to checks"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "bank_ledger_entries"

    def append(self, uow: UnitOfWork, account_id: str, entry_date: date, description: str,
               debit: Decimal, credit: Decimal, ref_check_id: str) -> BankLedgerEntry:
        now = datetime.now(timezone.utc)
        entry = BankLedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            bank_account_id=account_id,
            entry_date=entry_date,
            description=description,
            debit=Decimal(debit).quantize(CENTS),
            credit=Decimal(credit).quantize(CENTS),
            reference_type=CHECK_REFERENCE,
            reference_id=ref_check_id,
        )
        uow.save(self.table_name, entry.id, entry.to_dict())
        return entry

    def entries_for_check(self, check_id: str, uow: Optional[UnitOfWork] = None) -> List[BankLedgerEntry]:
        filters = {"reference_type": CHECK_REFERENCE, "reference_id": check_id}
        source = uow if uow is not None else self.storage
        entries = [BankLedgerEntry.from_dict(d) for d in source.find(self.table_name, filters)]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def count_for_check(self, check_id: str, uow: Optional[UnitOfWork] = None) -> int:
        return len(self.entries_for_check(check_id, uow))

    def entries_for_account(self, account_id: str, date_from: Optional[date] = None,
                            date_to: Optional[date] = None) -> List[BankLedgerEntry]:
        entries = [
            BankLedgerEntry.from_dict(d)
            for d in self.storage.find(self.table_name, {"bank_account_id": account_id})
        ]
        if date_from:
            entries = [e for e in entries if e.entry_date >= date_from]
        if date_to:
            entries = [e for e in entries if e.entry_date <= date_to]
        entries.sort(key=lambda e: (e.entry_date, e.created_at))
        return entries
