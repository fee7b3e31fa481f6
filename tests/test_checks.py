"""
Test suite for the check registry

Covers creation of received and issued checks, every lifecycle transition,
the cash-flow projection and ledger side effects of each, editing and
deletion rules.
"""

import random
from datetime import date
from decimal import Decimal

import pytest

from check_treasury.config import TreasuryConfig
from check_treasury.storage import InMemoryStorage
from check_treasury.treasury import TreasurySystem
from check_treasury.checkbooks import DeletionOutcome
from check_treasury.checks import FORCED_DELETE_REASON
from check_treasury.movements import MovementType, ReferenceType
from check_treasury.state_machine import (
    CheckAction, CheckDirection, CheckState, FlowSign, TRANSITIONS, pending_cash_event
)
from check_treasury.errors import (
    Conflict, DependencyBlocked, InvalidStateTransition, NotFound, ValidationError
)


def make_system():
    config = TreasuryConfig(database_url="memory://", lock_timeout_seconds=2.0)
    return TreasurySystem(storage=InMemoryStorage(), config=config)


class CheckTestBase:
    """Seeds a bank, two accounts, a supplier, a customer and a checkbook"""

    def setup_method(self):
        self.system = make_system()
        self.registry = self.system.checks
        catalog = self.system.catalog
        self.bank = catalog.register_bank("Banco Nacion", code="011")
        self.other_bank = catalog.register_bank("Banco Galicia", code="007")
        self.account = catalog.register_bank_account(self.bank.id, "Operating account")
        self.savings = catalog.register_bank_account(self.bank.id, "Savings account")
        self.supplier = catalog.register_supplier("Acme Paper")
        self.customer = catalog.register_customer("Jane Buyer")
        self.checkbook = self.system.checkbooks.create_checkbook(
            self.account.id, "Series A", 100, 150
        )

    def received(self, serial=5001, amount="10000", **kwargs):
        kwargs.setdefault("bank_id", self.other_bank.id)
        return self.registry.create_check(
            direction="received", amount=amount, serial_number=serial, **kwargs
        )

    def issued(self, amount="2500.50", **kwargs):
        kwargs.setdefault("checkbook_id", self.checkbook.id)
        return self.registry.create_check(direction="issued", amount=amount, **kwargs)

    def projection(self, check_id):
        return self.system.cash_flow.get_for_check(check_id)


class TestCreateCheck(CheckTestBase):
    """Test check registration"""

    def test_received_check_starts_in_portfolio(self):
        check = self.received(customer_id=self.customer.id)

        assert check.direction == CheckDirection.RECEIVED
        assert check.state == CheckState.IN_PORTFOLIO
        assert check.amount == Decimal("10000.00")
        assert check.version == 1
        assert self.projection(check.id) is None

        history = self.registry.get_history(check.id)
        assert len(history) == 1
        assert history[0].movement_type == MovementType.CREATED
        assert history[0].sequence == 1

    def test_received_with_collection_date_projects_inflow(self):
        check = self.received(expected_collection_date="2024-07-15")

        projection = self.projection(check.id)
        assert projection.sign == FlowSign.INFLOW
        assert projection.projected_date == date(2024, 7, 15)
        assert projection.amount == Decimal("10000.00")

    def test_issued_check_takes_serial_and_bank_from_checkbook(self):
        check = self.issued(due_date=date(2024, 8, 1), payee_name="Acme")

        assert check.state == CheckState.REGISTERED
        assert check.serial_number == 100
        assert check.bank_id == self.bank.id

        projection = self.projection(check.id)
        assert projection.sign == FlowSign.OUTFLOW
        assert projection.projected_date == date(2024, 8, 1)
        assert projection.description.endswith("(Acme)")

    def test_issued_check_bank_mismatch(self):
        with pytest.raises(ValidationError) as exc_info:
            self.issued(bank_id=self.other_bank.id)
        assert exc_info.value.details["field"] == "bank_id"

    def test_physical_issued_check_needs_checkbook(self):
        with pytest.raises(ValidationError) as exc_info:
            self.registry.create_check(direction="issued", amount="10", serial_number=1,
                                       bank_id=self.bank.id)
        assert exc_info.value.details["field"] == "checkbook_id"

    def test_electronic_issued_check_without_checkbook(self):
        check = self.registry.create_check(
            direction="issued", amount="10", serial_number=9001,
            check_format="electronic", bank_id=self.bank.id,
        )
        assert check.checkbook_id is None
        assert check.state == CheckState.REGISTERED

    def test_received_check_cannot_have_checkbook(self):
        with pytest.raises(ValidationError):
            self.received(checkbook_id=self.checkbook.id)

    def test_received_check_needs_known_bank(self):
        with pytest.raises(ValidationError) as exc_info:
            self.received(bank_id="nope")
        assert exc_info.value.details["field"] == "bank_id"

    @pytest.mark.parametrize("amount", ["-1", "abc", None, "NaN"])
    def test_invalid_amounts(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            self.received(amount=amount)
        assert exc_info.value.details["field"] == "amount"

    def test_invalid_direction(self):
        with pytest.raises(ValidationError) as exc_info:
            self.registry.create_check(direction="sideways", amount="1", serial_number=1,
                                       bank_id=self.bank.id)
        assert "allowed" in exc_info.value.details

    def test_unknown_customer(self):
        with pytest.raises(ValidationError):
            self.received(customer_id="ghost")

    def test_supplier_id_must_be_a_supplier(self):
        with pytest.raises(ValidationError):
            self.received(supplier_id=self.customer.id)

    def test_duplicate_serial_for_bank_and_format(self):
        original = self.received(serial=42)

        with pytest.raises(Conflict) as exc_info:
            self.received(serial=42)
        assert exc_info.value.code == "DUPLICATE_CHECK"
        assert exc_info.value.details["existing_check_id"] == original.id

    def test_same_serial_in_other_format_or_bank_is_allowed(self):
        self.received(serial=42)
        self.received(serial=42, check_format="electronic")
        self.received(serial=42, bank_id=self.bank.id)

        assert self.registry.list_checks(q="42")["meta"]["total"] == 3

    def test_default_channel(self):
        assert self.received().channel.value == "C1"
        assert self.received(serial=2, channel="C2").channel.value == "C2"

    def test_failed_creation_leaves_checkbook_untouched(self):
        self.received(serial=100, bank_id=self.bank.id)

        with pytest.raises(Conflict):
            self.issued()
        assert self.system.checkbooks.get_checkbook(self.checkbook.id).next_number == 100
        assert self.system.storage.count("check_movements") == 1


class TestReceivedLifecycle(CheckTestBase):
    """Test transitions of received checks"""

    def test_deposit_and_accredit_scenario(self):
        check = self.received()
        assert self.projection(check.id) is None

        deposited = self.registry.deposit(check.id, self.account.id,
                                          expected_collection_date="2024-07-15")
        assert deposited.state == CheckState.DEPOSITED
        projection = self.projection(check.id)
        assert (projection.sign, projection.projected_date, projection.amount) == (
            FlowSign.INFLOW, date(2024, 7, 15), Decimal("10000.00")
        )

        accredited = self.registry.accredit(check.id, accreditation_date="2024-07-16")
        assert accredited.state == CheckState.ACCREDITED
        assert self.projection(check.id) is None

        entries = self.system.bank_ledger.entries_for_check(check.id)
        assert len(entries) == 1
        assert entries[0].credit == Decimal("10000.00")
        assert entries[0].debit == Decimal("0.00")
        assert entries[0].bank_account_id == self.account.id
        assert entries[0].entry_date == date(2024, 7, 16)

        types = [m.movement_type for m in self.registry.get_history(check.id)]
        assert types == [MovementType.CREATED, MovementType.DEPOSITED, MovementType.ACCREDITED]

    def test_accredit_twice_is_rejected(self):
        check = self.received()
        self.registry.deposit(check.id, self.account.id)
        self.registry.accredit(check.id)

        with pytest.raises(InvalidStateTransition) as exc_info:
            self.registry.accredit(check.id)
        assert exc_info.value.details["current_state"] == "accredited"
        assert len(self.system.bank_ledger.entries_for_check(check.id)) == 1

    def test_accredit_uses_deposit_account_over_input(self):
        check = self.received()
        self.registry.deposit(check.id, self.savings.id)
        self.registry.accredit(check.id, bank_account_id=self.account.id)

        assert self.system.bank_ledger.entries_for_check(check.id)[0].bank_account_id == self.savings.id

    def test_zero_amount_check_accredits_without_ledger_line(self):
        check = self.received(amount="0", expected_collection_date="2024-07-15")
        self.registry.deposit(check.id, self.account.id)

        accredited = self.registry.accredit(check.id)
        assert accredited.state == CheckState.ACCREDITED
        assert self.projection(check.id) is None
        assert self.system.bank_ledger.entries_for_check(check.id) == []
        assert self.registry.get_history(check.id)[-1].movement_type == MovementType.ACCREDITED

    def test_deposit_requires_known_account(self):
        check = self.received()
        with pytest.raises(ValidationError):
            self.registry.deposit(check.id, None)
        with pytest.raises(ValidationError):
            self.registry.deposit(check.id, "ghost-account")
        assert self.registry.get_check(check.id).state == CheckState.IN_PORTFOLIO

    def test_deposit_keeps_existing_collection_date(self):
        check = self.received(expected_collection_date="2024-07-01")
        self.registry.deposit(check.id, self.account.id)

        assert self.projection(check.id).projected_date == date(2024, 7, 1)

    def test_reject_requires_reason_and_removes_projection(self):
        check = self.received(expected_collection_date="2024-07-01")
        self.registry.deposit(check.id, self.account.id)

        with pytest.raises(ValidationError):
            self.registry.reject(check.id, "  ")

        rejected = self.registry.reject(check.id, "Insufficient funds")
        assert rejected.state == CheckState.REJECTED
        assert rejected.state_reason == "Insufficient funds"
        assert self.projection(check.id) is None
        assert self.system.bank_ledger.entries_for_check(check.id) == []

        last = self.registry.get_history(check.id)[-1]
        assert last.movement_type == MovementType.REJECTED
        assert last.reference_id == self.account.id

    def test_apply_to_supplier_endorses_and_drops_projection(self):
        check = self.received(expected_collection_date="2024-07-01")
        applied = self.registry.apply_to_supplier(check.id, self.supplier.id, purchase_id="PO-77")

        assert applied.state == CheckState.APPLIED_TO_PURCHASE
        assert applied.supplier_id == self.supplier.id
        assert self.projection(check.id) is None

        last = self.registry.get_history(check.id)[-1]
        assert last.reference_type == ReferenceType.PAYMENT
        assert last.reference_id == "PO-77"

    def test_apply_received_without_supplier(self):
        check = self.received()
        with pytest.raises(ValidationError):
            self.registry.apply_to_supplier(check.id)

    def test_deliver_received_to_named_recipient(self):
        check = self.received(expected_collection_date="2024-07-01")
        delivered = self.registry.deliver(check.id, recipient="Landlord")

        assert delivered.state == CheckState.DELIVERED
        assert delivered.state_reason == "Delivered to Landlord"
        assert self.projection(check.id) is None
        last = self.registry.get_history(check.id)[-1]
        assert last.reference_type == ReferenceType.DELIVERY
        assert last.reference_id is None

    def test_clear_does_not_apply_to_received(self):
        check = self.received()
        with pytest.raises(InvalidStateTransition) as exc_info:
            self.registry.clear(check.id)
        assert exc_info.value.details["direction"] == "received"

    def test_void_received(self):
        check = self.received(expected_collection_date="2024-07-01")
        voided = self.registry.void(check.id, "Returned to customer")

        assert voided.state == CheckState.VOIDED
        assert self.projection(check.id) is None


class TestIssuedLifecycle(CheckTestBase):
    """Test transitions of issued checks"""

    def test_deliver_and_clear(self):
        check = self.issued(due_date="2024-08-01")
        delivered = self.registry.deliver(check.id, supplier_id=self.supplier.id)

        assert delivered.state == CheckState.DELIVERED
        assert delivered.state_reason == "Delivered to Acme Paper"
        assert self.projection(check.id).sign == FlowSign.OUTFLOW

        cleared = self.registry.clear(check.id, clearing_date="2024-08-02")
        assert cleared.state == CheckState.CLEARED
        assert self.projection(check.id) is None

        entries = self.system.bank_ledger.entries_for_check(check.id)
        assert len(entries) == 1
        assert entries[0].debit == Decimal("2500.50")
        assert entries[0].credit == Decimal("0.00")
        assert entries[0].bank_account_id == self.account.id

        last = self.registry.get_history(check.id)[-1]
        assert last.reference_type == ReferenceType.RECONCILIATION

    def test_zero_amount_check_clears_without_ledger_line(self):
        check = self.issued(amount="0.00", due_date="2024-08-01", supplier_id=self.supplier.id)
        self.registry.deliver(check.id)

        cleared = self.registry.clear(check.id)
        assert cleared.state == CheckState.CLEARED
        assert self.projection(check.id) is None
        assert self.system.bank_ledger.entries_for_check(check.id) == []

    def test_deliver_issued_needs_supplier(self):
        check = self.issued()
        with pytest.raises(ValidationError) as exc_info:
            self.registry.deliver(check.id, recipient="Someone")
        assert exc_info.value.details["field"] == "supplier_id"

    def test_deliver_issued_uses_linked_supplier(self):
        check = self.issued(supplier_id=self.supplier.id)
        delivered = self.registry.deliver(check.id)

        last = self.registry.get_history(check.id)[-1]
        assert delivered.state == CheckState.DELIVERED
        assert last.reference_type == ReferenceType.PAYMENT
        assert last.reference_id == self.supplier.id

    def test_apply_issued_keeps_projection(self):
        check = self.issued(due_date="2024-08-01", supplier_id=self.supplier.id)
        applied = self.registry.apply_to_supplier(check.id, purchase_id="PO-1")

        assert applied.state == CheckState.APPLIED_TO_PURCHASE
        assert self.projection(check.id).projected_date == date(2024, 8, 1)

        self.registry.deliver(check.id)
        assert self.projection(check.id) is not None

    def test_deposit_does_not_apply_to_issued(self):
        check = self.issued()
        with pytest.raises(InvalidStateTransition):
            self.registry.deposit(check.id, self.account.id)

    def test_clear_requires_delivery(self):
        check = self.issued()
        with pytest.raises(InvalidStateTransition) as exc_info:
            self.registry.clear(check.id)
        assert exc_info.value.details["allowed_from"] == ["delivered"]

    def test_clear_electronic_check_without_checkbook(self):
        check = self.registry.create_check(
            direction="issued", amount="10", serial_number=9001,
            check_format="electronic", bank_id=self.bank.id, supplier_id=self.supplier.id,
        )
        self.registry.deliver(check.id)

        with pytest.raises(ValidationError) as exc_info:
            self.registry.clear(check.id)
        assert exc_info.value.code == "NO_CHECKBOOK_ACCOUNT"
        assert self.registry.get_check(check.id).state == CheckState.DELIVERED

    def test_void_requires_reason(self):
        check = self.issued()
        with pytest.raises(ValidationError):
            self.registry.void(check.id, None)

    def test_void_cleared_check_is_rejected(self):
        check = self.issued(supplier_id=self.supplier.id)
        self.registry.deliver(check.id)
        self.registry.clear(check.id)

        with pytest.raises(InvalidStateTransition):
            self.registry.void(check.id, "Too late")

    def test_transition_on_missing_check(self):
        with pytest.raises(NotFound):
            self.registry.void("missing", "reason")


class TestProjectionInvariant(CheckTestBase):
    """The projection row always matches what the check state implies"""

    def test_random_walks_keep_projection_consistent(self):
        rng = random.Random(1234)
        actions = {
            CheckAction.DEPOSIT: lambda c: self.registry.deposit(
                c.id, self.account.id, expected_collection_date="2024-09-0%d" % rng.randint(1, 9)),
            CheckAction.ACCREDIT: lambda c: self.registry.accredit(c.id),
            CheckAction.REJECT: lambda c: self.registry.reject(c.id, "bounced"),
            CheckAction.APPLY_TO_SUPPLIER: lambda c: self.registry.apply_to_supplier(c.id, self.supplier.id),
            CheckAction.DELIVER: lambda c: self.registry.deliver(c.id, supplier_id=self.supplier.id),
            CheckAction.CLEAR: lambda c: self.registry.clear(c.id),
            CheckAction.VOID: lambda c: self.registry.void(c.id, "cancelled"),
        }

        for i in range(40):
            if rng.random() < 0.5:
                check = self.received(serial=7000 + i, expected_collection_date=rng.choice([None, "2024-09-10"]))
            else:
                check = self.issued(amount="10", due_date=rng.choice([None, "2024-10-10"]))

            for _ in range(5):
                action = rng.choice(list(actions))
                before = self.registry.get_check(check.id)
                rule = TRANSITIONS[action]
                try:
                    actions[action](before)
                    assert rule.allows(before.direction, before.state)
                except InvalidStateTransition:
                    assert not rule.allows(before.direction, before.state)

                current = self.registry.get_check(check.id)
                expected = pending_cash_event(current)
                projection = self.projection(check.id)
                if expected is None:
                    assert projection is None
                else:
                    assert (projection.sign, projection.projected_date) == expected
                    assert projection.amount == current.amount

                settled = current.state in (CheckState.ACCREDITED, CheckState.CLEARED)
                assert len(self.system.bank_ledger.entries_for_check(check.id)) == (1 if settled else 0)


class TestUpdateCheck(CheckTestBase):
    """Test editing checks"""

    def test_update_rederives_projection_without_movement(self):
        check = self.received(expected_collection_date="2024-07-01")
        updated = self.registry.update_check(check.id, {
            "amount": "12500", "expected_collection_date": "2024-07-20", "notes": "renegotiated"
        })

        assert updated.amount == Decimal("12500.00")
        assert updated.version == 2
        projection = self.projection(check.id)
        assert projection.amount == Decimal("12500.00")
        assert projection.projected_date == date(2024, 7, 20)
        assert len(self.registry.get_history(check.id)) == 1

    def test_clearing_date_removes_projection(self):
        check = self.received(expected_collection_date="2024-07-01")
        self.registry.update_check(check.id, {"expected_collection_date": None})
        assert self.projection(check.id) is None

    def test_direction_cannot_change(self):
        check = self.received()
        with pytest.raises(ValidationError) as exc_info:
            self.registry.update_check(check.id, {"direction": "issued"})
        assert exc_info.value.details["field"] == "direction"

    def test_state_is_not_editable(self):
        check = self.received()
        with pytest.raises(ValidationError):
            self.registry.update_check(check.id, {"state": "accredited"})

    def test_terminal_check_cannot_be_edited(self):
        check = self.received()
        self.registry.void(check.id, "mistake")

        with pytest.raises(InvalidStateTransition):
            self.registry.update_check(check.id, {"notes": "too late"})

    def test_serial_change_checks_uniqueness(self):
        self.received(serial=1)
        second = self.received(serial=2)

        with pytest.raises(Conflict):
            self.registry.update_check(second.id, {"serial_number": 1})
        assert self.registry.update_check(second.id, {"serial_number": 3}).serial_number == 3

    def test_checkbook_serial_must_stay_in_range(self):
        check = self.issued()
        with pytest.raises(ValidationError) as exc_info:
            self.registry.update_check(check.id, {"serial_number": 500})
        assert exc_info.value.code == "SERIAL_OUT_OF_RANGE"

    def test_update_missing_check(self):
        with pytest.raises(NotFound):
            self.registry.update_check("missing", {"notes": "x"})


class TestDeleteCheck(CheckTestBase):
    """Test deletion and forced void"""

    def test_delete_untouched_check(self):
        check = self.received(expected_collection_date="2024-07-01")

        assert self.registry.delete_check(check.id) == DeletionOutcome.DELETED
        assert self.registry.get_check(check.id) is None
        assert self.projection(check.id) is None

    def test_deleted_check_takes_its_creation_row_along(self):
        check = self.received()
        kept = self.received(serial=5002)

        self.registry.delete_check(check.id)

        with pytest.raises(NotFound):
            self.registry.get_history(check.id)
        assert self.system.movements.history(check.id) == []
        assert self.system.storage.count("check_movements") == 1
        assert len(self.registry.get_history(kept.id)) == 1

    def test_delivered_check_with_history_needs_force(self):
        check = self.issued(due_date="2024-08-01", supplier_id=self.supplier.id)
        self.registry.deliver(check.id)

        with pytest.raises(DependencyBlocked) as exc_info:
            self.registry.delete_check(check.id)
        assert exc_info.value.details["movements"] == 2

        assert self.registry.delete_check(check.id, force=True) == DeletionOutcome.VOIDED
        voided = self.registry.get_check(check.id)
        assert voided.state == CheckState.VOIDED
        assert voided.state_reason == FORCED_DELETE_REASON
        assert self.projection(check.id) is None
        assert self.registry.get_history(check.id)[-1].movement_type == MovementType.VOIDED

    def test_force_delete_of_unvoidable_check(self):
        check = self.received()
        self.registry.deposit(check.id, self.account.id)

        with pytest.raises(InvalidStateTransition):
            self.registry.delete_check(check.id, force=True)

    def test_check_with_ledger_entries_is_never_deleted(self):
        check = self.received()
        self.registry.deposit(check.id, self.account.id)
        self.registry.accredit(check.id)

        with pytest.raises(Conflict) as exc_info:
            self.registry.delete_check(check.id, force=True)
        assert exc_info.value.code == "HAS_LEDGER_ENTRIES"
        assert self.registry.get_check(check.id).state == CheckState.ACCREDITED

    def test_delete_missing_check(self):
        with pytest.raises(NotFound):
            self.registry.delete_check("missing")


class TestListChecks(CheckTestBase):
    """Test filtering, sorting and pagination"""

    def test_filters_and_sorting(self):
        self.received(serial=3, amount="300", due_date="2024-05-01")
        self.received(serial=1, amount="100", due_date="2024-06-01")
        self.issued(amount="50", due_date="2024-07-01")

        received = self.registry.list_checks(direction="received")
        assert [c.serial_number for c in received["items"]] == [1, 3]

        by_amount = self.registry.list_checks(order_by="amount", order_dir="desc")
        assert [c.amount for c in by_amount["items"]] == [
            Decimal("300.00"), Decimal("100.00"), Decimal("50.00")
        ]

        due = self.registry.list_checks(due_from="2024-05-15", due_to="2024-06-30")
        assert [c.serial_number for c in due["items"]] == [1]

        issued = self.registry.list_checks(checkbook_id=self.checkbook.id)
        assert issued["meta"]["total"] == 1

    def test_pagination(self):
        for serial in range(1, 8):
            self.received(serial=serial)

        page = self.registry.list_checks(page=2, limit=3)
        assert [c.serial_number for c in page["items"]] == [4, 5, 6]
        assert page["meta"]["total_pages"] == 3
        assert page["meta"]["has_next"] is True
        assert page["meta"]["has_prev"] is True

    def test_checks_of_a_checkbook(self):
        self.issued(serial_number=120)
        self.issued()
        self.received()

        serials = [c.serial_number for c in self.registry.list_checks_for_checkbook(self.checkbook.id)]
        assert serials == [100, 120]

        with pytest.raises(NotFound):
            self.registry.list_checks_for_checkbook("missing")

    def test_invalid_state_filter(self):
        with pytest.raises(ValidationError):
            self.registry.list_checks(state="lost")

    def test_history_of_unknown_check(self):
        with pytest.raises(NotFound):
            self.registry.get_history("missing")


class TestIdempotentActions(CheckTestBase):
    """Repeating a check action under the same idempotency key"""

    def test_repeated_deposit_returns_first_result(self):
        check = self.received()

        first = self.registry.deposit(check.id, self.account.id,
                                      expected_collection_date="2024-07-15",
                                      idempotency_key="dep-1")
        again = self.registry.deposit(check.id, self.account.id,
                                      expected_collection_date="2024-07-15",
                                      idempotency_key="dep-1")

        assert again.state == CheckState.DEPOSITED
        assert again.version == first.version
        assert again.to_dict() == first.to_dict()
        assert [m.movement_type for m in self.registry.get_history(check.id)] == [
            MovementType.CREATED, MovementType.DEPOSITED
        ]

        with pytest.raises(InvalidStateTransition):
            self.registry.deposit(check.id, self.account.id)

    def test_replayed_accredit_posts_one_ledger_line(self):
        check = self.received()
        self.registry.deposit(check.id, self.account.id)

        for _ in range(3):
            result = self.registry.accredit(check.id, idempotency_key="acc-1")
            assert result.state == CheckState.ACCREDITED
        assert len(self.system.bank_ledger.entries_for_check(check.id)) == 1

    def test_replay_returns_the_stored_result_not_the_current_state(self):
        check = self.received()
        self.registry.deposit(check.id, self.account.id, idempotency_key="dep-1")
        self.registry.accredit(check.id)

        replayed = self.registry.deposit(check.id, self.account.id, idempotency_key="dep-1")
        assert replayed.state == CheckState.DEPOSITED
        assert self.registry.get_check(check.id).state == CheckState.ACCREDITED

    def test_key_is_bound_to_check_and_action(self):
        check = self.received()
        other = self.received(serial=5002)
        self.registry.deposit(check.id, self.account.id, idempotency_key="key-1")

        with pytest.raises(Conflict) as exc_info:
            self.registry.deposit(other.id, self.account.id, idempotency_key="key-1")
        assert exc_info.value.code == "IDEMPOTENCY_KEY_REUSED"
        assert exc_info.value.details["check_id"] == check.id

        with pytest.raises(Conflict):
            self.registry.accredit(check.id, idempotency_key="key-1")
        assert self.registry.get_check(other.id).state == CheckState.IN_PORTFOLIO

    def test_failed_action_does_not_store_key(self):
        check = self.received()

        with pytest.raises(ValidationError):
            self.registry.deposit(check.id, "ghost-account", idempotency_key="dep-1")
        assert self.registry.get_idempotency_record("dep-1") is None

        self.registry.deposit(check.id, self.account.id, idempotency_key="dep-1")
        record = self.registry.get_idempotency_record("dep-1")
        assert record.check_id == check.id
        assert record.action == "deposit"
        assert record.movement_id == self.registry.get_history(check.id)[-1].id

    def test_blank_key_is_ignored(self):
        check = self.received()
        self.registry.void(check.id, "duplicate", idempotency_key="  ")

        with pytest.raises(InvalidStateTransition):
            self.registry.void(check.id, "duplicate", idempotency_key="  ")
