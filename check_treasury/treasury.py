"""
Treasury System Wiring

Builds every component of the check engine over one storage backend.
"""

from typing import Optional

from .config import TreasuryConfig, get_config
from .storage import StorageInterface, create_storage
from .locking import LockManager
from .unit_of_work import UnitOfWorkFactory
from .audit import AuditTrail
from .catalog import CatalogDirectory
from .checkbooks import CheckbookManager
from .movements import MovementLog
from .cash_flow import CashFlowProjector
from .bank_ledger import BankLedgerMirror
from .checks import CheckRegistry


class TreasurySystem:
    """Check treasury engine with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[TreasuryConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.lock_manager = LockManager(default_timeout=self.config.lock_timeout_seconds)
        self.uow_factory = UnitOfWorkFactory(
            self.storage, self.lock_manager, lock_timeout=self.config.lock_timeout_seconds
        )
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.catalog = CatalogDirectory(self.storage)

        self.movements = MovementLog(
            self.storage,
            default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size,
        )
        self.cash_flow = CashFlowProjector(self.storage)
        self.bank_ledger = BankLedgerMirror(self.storage)
        self.checkbooks = CheckbookManager(
            self.storage, self.catalog, self.audit_trail, self.uow_factory,
            default_length=self.config.default_checkbook_length,
            default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size,
        )
        self.checks = CheckRegistry(
            self.storage, self.catalog, self.checkbooks, self.movements,
            self.cash_flow, self.bank_ledger, self.audit_trail, self.uow_factory,
            default_channel=self.config.default_channel,
            default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size,
        )

    def close(self) -> None:
        self.storage.close()
