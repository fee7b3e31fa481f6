"""
Catalog Directory

Minimal read side of the reference data the check engine depends on: banks,
bank accounts, suppliers and customers. Full CRUD for these lives elsewhere;
the engine only looks entities up by id. ``register_*`` helpers exist for
seeding and tests.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import uuid

from .storage import StorageInterface, StorageRecord


class CounterpartyKind(Enum):
    SUPPLIER = "supplier"
    CUSTOMER = "customer"


@dataclass
class Bank(StorageRecord):
    name: str
    code: Optional[str] = None


@dataclass
class BankAccount(StorageRecord):
    bank_id: str
    alias: str
    account_number: Optional[str] = None
    currency: str = "ARS"
    active: bool = True


@dataclass
class Counterparty(StorageRecord):
    kind: CounterpartyKind
    name: str
    tax_id: Optional[str] = None

    _enum_fields = {"kind": CounterpartyKind}


class CatalogDirectory:
    """Lookups by id over the reference tables"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.banks_table = "banks"
        self.accounts_table = "bank_accounts"
        self.counterparties_table = "counterparties"

    def _new_ids(self):
        now = datetime.now(timezone.utc)
        return str(uuid.uuid4()), now, now

    def register_bank(self, name: str, code: Optional[str] = None) -> Bank:
        record_id, created, updated = self._new_ids()
        bank = Bank(id=record_id, created_at=created, updated_at=updated, name=name, code=code)
        self.storage.save(self.banks_table, bank.id, bank.to_dict())
        return bank

    def register_bank_account(self, bank_id: str, alias: str,
                              account_number: Optional[str] = None,
                              currency: str = "ARS") -> BankAccount:
        if self.find_bank(bank_id) is None:
            raise ValueError(f"Bank {bank_id} not found")
        record_id, created, updated = self._new_ids()
        account = BankAccount(
            id=record_id, created_at=created, updated_at=updated,
            bank_id=bank_id, alias=alias, account_number=account_number, currency=currency
        )
        self.storage.save(self.accounts_table, account.id, account.to_dict())
        return account

    def register_supplier(self, name: str, tax_id: Optional[str] = None) -> Counterparty:
        return self._register_counterparty(CounterpartyKind.SUPPLIER, name, tax_id)

    def register_customer(self, name: str, tax_id: Optional[str] = None) -> Counterparty:
        return self._register_counterparty(CounterpartyKind.CUSTOMER, name, tax_id)

    def _register_counterparty(self, kind: CounterpartyKind, name: str,
                               tax_id: Optional[str]) -> Counterparty:
        record_id, created, updated = self._new_ids()
        party = Counterparty(id=record_id, created_at=created, updated_at=updated,
                             kind=kind, name=name, tax_id=tax_id)
        self.storage.save(self.counterparties_table, party.id, party.to_dict())
        return party

    def find_bank(self, bank_id: Optional[str]) -> Optional[Bank]:
        if not bank_id:
            return None
        data = self.storage.load(self.banks_table, bank_id)
        return Bank.from_dict(data) if data else None

    def find_bank_account(self, account_id: Optional[str]) -> Optional[BankAccount]:
        if not account_id:
            return None
        data = self.storage.load(self.accounts_table, account_id)
        return BankAccount.from_dict(data) if data else None

    def find_supplier(self, supplier_id: Optional[str]) -> Optional[Counterparty]:
        return self._find_counterparty(supplier_id, CounterpartyKind.SUPPLIER)

    def find_customer(self, customer_id: Optional[str]) -> Optional[Counterparty]:
        return self._find_counterparty(customer_id, CounterpartyKind.CUSTOMER)

    def _find_counterparty(self, party_id: Optional[str],
                           kind: CounterpartyKind) -> Optional[Counterparty]:
        if not party_id:
            return None
        data = self.storage.load(self.counterparties_table, party_id)
        if not data:
            return None
        party = Counterparty.from_dict(data)
        return party if party.kind == kind else None
