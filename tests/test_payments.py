"""
Test suite for payment processing

Tests payment allocation order, payment modes, late-fee forgiveness,
per-installment serialization and additional disbursements.
"""

import threading
import pytest
from decimal import Decimal
from datetime import date

from lending_core.audit import AuditTrail
from lending_core.config import LendingConfig
from lending_core.dates import FixedClock
from lending_core.errors import NotFoundError, ReversalNotAllowedError, ValidationError
from lending_core.ledger import LedgerService
from lending_core.loans import LoanManager
from lending_core.models import DueAmount, InstallmentStatus, LedgerCategory, LedgerEntryType
from lending_core.payments import PaymentMode, PaymentProcessor, allocate_payment
from lending_core.storage import InMemoryStorage


def due_amount(principal, interest, late_fee, accrued="0"):
    principal, interest, late_fee = Decimal(principal), Decimal(interest), Decimal(late_fee)
    return DueAmount(
        total=principal + interest + late_fee,
        principal=principal,
        interest=interest,
        late_fee=late_fee,
        base_for_fine=principal + interest,
        days_late=0,
        accrued_interest=Decimal(accrued),
    )


class TestAllocatePayment:
    """Test the late fee -> interest -> principal order"""

    def test_order_of_allocation(self):
        allocation = allocate_payment(Decimal("150"), due_amount("1000", "100", "30"))

        assert allocation.late_fee == Decimal("30.00")
        assert allocation.interest == Decimal("100.00")
        assert allocation.principal == Decimal("20.00")
        assert allocation.advance == Decimal("0.00")
        assert allocation.applied == Decimal("150.00")

    def test_short_payment_stops_at_late_fee(self):
        allocation = allocate_payment(Decimal("10"), due_amount("1000", "100", "30"))
        assert allocation.late_fee == Decimal("10.00")
        assert allocation.interest == Decimal("0.00")
        assert allocation.principal == Decimal("0.00")

    def test_excess_reported_as_advance(self):
        allocation = allocate_payment(Decimal("1200"), due_amount("1000", "100", "0"))
        assert allocation.advance == Decimal("100.00")

    def test_carried_interest_settled_before_accrual(self):
        """Test that day-accrued interest is only reached after carried interest"""
        due = due_amount("1000", "150", "0", accrued="100")

        allocation = allocate_payment(Decimal("40"), due)
        assert allocation.accrued_interest == Decimal("0.00")

        allocation = allocate_payment(Decimal("80"), due)
        assert allocation.interest == Decimal("80.00")
        assert allocation.accrued_interest == Decimal("30.00")

    def test_negative_amount_rejected(self):
        with pytest.raises(ValidationError):
            allocate_payment(Decimal("-1"), due_amount("10", "0", "0"))


class TestPaymentProcessor:
    """Test installment payments on a monthly loan"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.clock = FixedClock(date(2024, 1, 15))
        self.ledger = LedgerService(self.storage, self.audit_trail, clock=self.clock, config=LendingConfig())
        self.manager = LoanManager(self.storage, self.audit_trail, ledger=self.ledger)
        self.processor = PaymentProcessor(self.storage, self.ledger, self.audit_trail)

        self.source = self.manager.create_source("Carteira", balance="5000")
        self.loan = self.manager.issue_loan({
            "debtor_name": "Ana",
            "principal": "1000",
            "interest_rate": "10",
            "fine_percent": "2",
            "daily_interest_percent": "1",
            "billing_cycle": "MONTHLY",
            "start_date": "2024-01-01",
            "source_id": self.source.id,
        })
        self.installment = self.loan.installments[0]

    def balance(self):
        return self.manager.get_source(self.source.id).balance

    def profit(self):
        return self.manager.get_source(self.source.id).profit_balance

    def stored_installment(self):
        return self.manager.get_loan(self.loan.id).installments[0]

    def test_full_payment_on_time(self):
        """Test paying everything before the due date"""
        receipt = self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.FULL)

        assert receipt.entry.entry_type == LedgerEntryType.PAYMENT_FULL
        assert receipt.entry.amount == Decimal("1100.00")
        assert receipt.entry.principal_delta == Decimal("1000.00")
        assert receipt.entry.interest_delta == Decimal("100.00")
        assert receipt.entry.category == LedgerCategory.RECEITA
        assert receipt.installment.status == InstallmentStatus.PAID
        assert receipt.result.completed_steps == [
            "update_installment", "append_ledger_entry", "adjust_source_balance"
        ]

        stored = self.stored_installment()
        assert stored.principal_remaining == Decimal("0.00")
        assert stored.paid_total == Decimal("1100.00")
        assert stored.last_payment_date == date(2024, 1, 15)
        assert self.balance() == Decimal("5000.00")
        assert self.profit() == Decimal("100.00")

    def test_full_payment_late_includes_late_fee(self):
        """Test a late full payment collects fine and daily interest"""
        self.clock.set(date(2024, 2, 10))
        receipt = self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.FULL)

        assert receipt.due.late_fee == Decimal("132.00")
        assert receipt.entry.amount == Decimal("1232.00")
        assert receipt.entry.late_fee_delta == Decimal("132.00")
        assert self.stored_installment().paid_late_fee == Decimal("132.00")

    def test_forgive_penalty(self):
        """Test that a forgiven late fee is left out of the amount charged"""
        self.clock.set(date(2024, 2, 10))
        receipt = self.processor.pay_installment(
            self.loan.id, self.installment.id, PaymentMode.FULL, forgive_penalty=True
        )

        assert receipt.entry.amount == Decimal("1100.00")
        assert receipt.entry.late_fee_delta == Decimal("0.00")
        assert receipt.installment.status == InstallmentStatus.PAID
        assert receipt.installment.late_fee_accrued == Decimal("132.00")

    def test_partial_payment(self):
        """Test a partial payment settles interest before principal"""
        receipt = self.processor.pay_installment(
            self.loan.id, self.installment.id, PaymentMode.PARTIAL, amount=Decimal("500")
        )

        assert receipt.entry.entry_type == LedgerEntryType.PAYMENT_PARTIAL
        assert receipt.allocation.interest == Decimal("100.00")
        assert receipt.allocation.principal == Decimal("400.00")

        stored = self.stored_installment()
        assert stored.principal_remaining == Decimal("600.00")
        assert stored.interest_remaining == Decimal("0.00")
        assert stored.status == InstallmentStatus.PARTIAL

    def test_partial_payment_that_settles_is_full(self):
        """Test that a partial amount covering everything is recorded as full"""
        receipt = self.processor.pay_installment(
            self.loan.id, self.installment.id, PaymentMode.PARTIAL, amount="1100"
        )
        assert receipt.entry.entry_type == LedgerEntryType.PAYMENT_FULL

    def test_interest_only_renews_period(self):
        """Test that paying the interest rolls the installment into its next month"""
        receipt = self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.INTEREST_ONLY)

        assert receipt.entry.entry_type == LedgerEntryType.PAYMENT_INTEREST_ONLY
        assert receipt.entry.amount == Decimal("100.00")
        assert receipt.entry.renewal.previous_due_date == date(2024, 1, 31)
        assert receipt.entry.renewal.due_date == date(2024, 3, 1)
        stored = self.stored_installment()
        assert stored.due_date == date(2024, 3, 1)
        assert stored.interest_remaining == Decimal("100.00")
        assert stored.principal_remaining == Decimal("1000.00")
        assert stored.status == InstallmentStatus.PARTIAL
        assert self.balance() == Decimal("4000.00")
        assert self.profit() == Decimal("100.00")
        self.manager.check_consistency(self.loan.id)

    def test_late_interest_only_keeps_cycle_and_clears_late_fee(self):
        """Test a late interest payment: the cycle stays anchored and the next month is charged"""
        self.clock.set(date(2024, 2, 10))
        receipt = self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.INTEREST_ONLY)

        assert receipt.entry.amount == Decimal("232.00")
        assert receipt.entry.late_fee_delta == Decimal("132.00")
        stored = self.stored_installment()
        assert stored.due_date == date(2024, 3, 1)
        assert stored.interest_remaining == Decimal("100.00")
        assert stored.paid_late_fee == Decimal("0.00")
        assert stored.status == InstallmentStatus.PARTIAL

        self.clock.advance(1)
        due = self.processor.quote(self.loan.id, self.installment.id)
        assert due.late_fee == Decimal("0.00")
        assert due.total == Decimal("1100.00")
        self.manager.check_consistency(self.loan.id)

    def test_interest_only_with_manual_due_date(self):
        receipt = self.processor.pay_installment(
            self.loan.id, self.installment.id, PaymentMode.INTEREST_ONLY, manual_due_date="2024-02-20"
        )

        assert receipt.installment.due_date == date(2024, 3, 21)
        assert self.stored_installment().due_date == date(2024, 3, 21)

    def test_reversing_renewal_restores_period(self):
        self.clock.set(date(2024, 2, 10))
        receipt = self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.INTEREST_ONLY)
        self.ledger.reverse(receipt.entry.id)

        stored = self.stored_installment()
        assert stored.due_date == date(2024, 1, 31)
        assert stored.interest_remaining == Decimal("100.00")
        assert stored.paid_late_fee == Decimal("0.00")
        assert stored.paid_total == Decimal("0.00")
        assert self.processor.quote(self.loan.id, self.installment.id).total == Decimal("1232.00")
        assert self.balance() == Decimal("4000.00")
        assert self.profit() == Decimal("0.00")
        self.manager.check_consistency(self.loan.id)

    def test_renewal_reversal_waits_for_later_payments(self):
        """Test that a renewal cannot be undone while later payments depend on it"""
        first = self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.INTEREST_ONLY)
        second = self.processor.pay_installment(
            self.loan.id, self.installment.id, PaymentMode.PARTIAL, amount="300"
        )

        with pytest.raises(ReversalNotAllowedError, match="later payment"):
            self.ledger.reverse(first.entry.id)

        self.ledger.reverse(second.entry.id)
        self.ledger.reverse(first.entry.id)
        stored = self.stored_installment()
        assert stored.due_date == date(2024, 1, 31)
        assert stored.interest_remaining == Decimal("100.00")
        assert stored.principal_remaining == Decimal("1000.00")
        self.manager.check_consistency(self.loan.id)

    def test_late_fee_collected_once(self):
        """Test that a collected late fee is not owed again the same day"""
        self.clock.set(date(2024, 2, 10))
        self.processor.pay_installment(
            self.loan.id, self.installment.id, PaymentMode.PARTIAL, amount="132"
        )

        due = self.processor.quote(self.loan.id, self.installment.id)
        assert due.late_fee == Decimal("0.00")
        assert due.total == Decimal("1100.00")

    def test_overpayment_rejected(self):
        with pytest.raises(ValidationError, match="exceeds"):
            self.processor.pay_installment(
                self.loan.id, self.installment.id, PaymentMode.PARTIAL, amount="2000"
            )
        assert self.balance() == Decimal("4000.00")

    def test_invalid_amounts_rejected(self):
        with pytest.raises(ValidationError, match="must be positive"):
            self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.PARTIAL, amount="0")
        with pytest.raises(ValidationError, match="need an amount"):
            self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.PARTIAL)

    def test_paid_installment_rejected(self):
        self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.FULL)
        with pytest.raises(ValidationError, match="already paid"):
            self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.FULL)

    def test_unknown_installment(self):
        with pytest.raises(NotFoundError):
            self.processor.pay_installment(self.loan.id, "nope", PaymentMode.FULL)

    def test_payments_default_to_loan_source(self):
        other = self.manager.create_source("Banco", balance="0")
        self.processor.pay_installment(
            self.loan.id, self.installment.id, PaymentMode.PARTIAL, amount="50", source_id=other.id
        )
        other = self.manager.get_source(other.id)
        assert other.balance == Decimal("0.00")
        assert other.profit_balance == Decimal("50.00")
        assert self.balance() == Decimal("4000.00")
        assert self.profit() == Decimal("0.00")

    def test_concurrent_payments_serialised(self):
        """Test that concurrent payments on one installment are all applied exactly once"""
        errors = []

        def pay():
            try:
                self.processor.pay_installment(
                    self.loan.id, self.installment.id, PaymentMode.PARTIAL, amount="100"
                )
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=pay) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        stored = self.stored_installment()
        assert stored.paid_total == Decimal("1000.00")
        assert stored.principal_remaining == Decimal("100.00")
        assert stored.interest_remaining == Decimal("0.00")
        assert self.balance() == Decimal("4900.00")
        assert self.profit() == Decimal("100.00")
        self.manager.check_consistency(self.loan.id)


class TestDailyFreePayments:
    """Test payments against day-accrued interest"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.clock = FixedClock(date(2024, 1, 1))
        self.ledger = LedgerService(self.storage, self.audit_trail, clock=self.clock, config=LendingConfig())
        self.manager = LoanManager(self.storage, self.audit_trail, ledger=self.ledger)
        self.processor = PaymentProcessor(self.storage, self.ledger, self.audit_trail)

        self.loan = self.manager.issue_loan({
            "principal": "1000",
            "interest_rate": "30",
            "billing_cycle": "DAILY_FREE",
            "start_date": "2024-01-01",
        })
        self.installment = self.loan.installments[0]

    def test_interest_payment_settles_accrual(self):
        """Test that paying the accrued interest stops it being owed again"""
        self.clock.set(date(2024, 1, 11))
        receipt = self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.INTEREST_ONLY)

        assert receipt.entry.amount == Decimal("100.00")
        assert receipt.entry.accrued_interest_delta == Decimal("100.00")
        assert self.processor.quote(self.loan.id, self.installment.id).total == Decimal("1000.00")

        self.clock.advance(1)
        assert self.processor.quote(self.loan.id, self.installment.id).total == Decimal("1010.00")

    def test_full_payment_closes_loan(self):
        self.clock.set(date(2024, 1, 11))
        receipt = self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.FULL)

        assert receipt.entry.amount == Decimal("1100.00")
        assert receipt.installment.status == InstallmentStatus.PAID
        self.manager.check_consistency(self.loan.id)

    def test_reversed_accrual_is_owed_again(self):
        self.clock.set(date(2024, 1, 11))
        receipt = self.processor.pay_installment(self.loan.id, self.installment.id, PaymentMode.INTEREST_ONLY)
        self.ledger.reverse(receipt.entry.id)

        assert self.processor.quote(self.loan.id, self.installment.id).total == Decimal("1100.00")
        self.manager.check_consistency(self.loan.id)


class TestLendMore:
    """Test additional disbursements on an open installment"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.clock = FixedClock(date(2024, 1, 10))
        self.ledger = LedgerService(self.storage, self.audit_trail, clock=self.clock, config=LendingConfig())
        self.manager = LoanManager(self.storage, self.audit_trail, ledger=self.ledger)
        self.processor = PaymentProcessor(self.storage, self.ledger, self.audit_trail)

        self.source = self.manager.create_source("Caixa", balance="5000")
        self.loan = self.manager.issue_loan({
            "principal": "1000",
            "interest_rate": "10",
            "start_date": "2024-01-01",
            "source_id": self.source.id,
        })
        self.installment = self.loan.installments[0]

    def test_lend_more_grows_principal(self):
        result = self.processor.lend_more(self.loan.id, self.installment.id, "500")

        assert result.ok
        assert result.value.entry_type == LedgerEntryType.NOVO_APORTE
        assert result.value.category == LedgerCategory.INVESTIMENTO

        loan = self.manager.get_loan(self.loan.id)
        assert loan.principal == Decimal("1500.00")
        assert loan.total_to_receive == Decimal("1600.00")
        assert loan.installments[0].principal_remaining == Decimal("1500.00")
        assert loan.installments[0].scheduled_principal == Decimal("1500.00")
        assert self.manager.get_source(self.source.id).balance == Decimal("3500.00")
        self.manager.check_consistency(self.loan.id)

    def test_source_may_go_negative(self):
        self.processor.lend_more(self.loan.id, self.installment.id, "6000")
        assert self.manager.get_source(self.source.id).balance == Decimal("-2000.00")

    def test_reverse_lend_more(self):
        result = self.processor.lend_more(self.loan.id, self.installment.id, "500")
        self.ledger.reverse(result.value.id)

        loan = self.manager.get_loan(self.loan.id)
        assert loan.principal == Decimal("1000.00")
        assert loan.total_to_receive == Decimal("1100.00")
        assert loan.installments[0].principal_remaining == Decimal("1000.00")
        assert self.manager.get_source(self.source.id).balance == Decimal("4000.00")
        self.manager.check_consistency(self.loan.id)

    def test_non_positive_amount(self):
        with pytest.raises(ValidationError):
            self.processor.lend_more(self.loan.id, self.installment.id, "0")
