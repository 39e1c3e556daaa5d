"""
Payment Processing Module

Applies borrower payments and additional disbursements to a loan's
installments. Each operation is a fixed sequence of persistence steps
(installment, ledger, capital source) recorded in an OperationResult, run
while holding the loan and installment locks so concurrent payments, edits
and agreements on the same loan are applied one at a time, in the order they
are confirmed. An interest-only payment also renews the installment into its
next period when its modality allows it.
"""

from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Optional

from .audit import AuditTrail
from .dates import DateLike, parse_date_only
from .errors import AgreementStateError, NotFoundError, ValidationError
from .ledger import LedgerService
from .logging_config import get_logger, log_action
from .models import (
    DueAmount, Installment, InstallmentStatus, LedgerCategory, LedgerEntry, LedgerEntryType,
)
from .modalities import calculate_due, installment_status, renew_installment
from .money import ZERO, Numeric, require_positive, round_money, to_decimal
from .results import Deadline, OperationResult
from .storage import StorageInterface

logger = get_logger("lending.payments")


class PaymentMode(Enum):
    """What the borrower is paying"""
    FULL = "FULL"                    # Everything due on the installment
    PARTIAL = "PARTIAL"              # A caller-chosen amount
    INTEREST_ONLY = "INTEREST_ONLY"  # Interest (and late fee unless forgiven)


@dataclass(frozen=True)
class PaymentAllocation:
    """How a payment amount splits across an installment's components"""
    late_fee: Decimal
    interest: Decimal
    principal: Decimal
    advance: Decimal                  # Left over once everything due is covered
    accrued_interest: Decimal = ZERO  # Part of ``interest`` that settles day-accrued interest

    @property
    def applied(self) -> Decimal:
        return round_money(self.late_fee + self.interest + self.principal)


def allocate_payment(amount: Numeric, due: DueAmount) -> PaymentAllocation:
    """
    Split a payment: late fee first, then interest, then principal.

    Interest is taken from the carried balance before the day-accrued part.
    Whatever is left after principal is returned as ``advance``.
    """
    remaining = round_money(amount)
    if remaining < 0:
        raise ValidationError(f"Payment amount cannot be negative: {remaining}")

    pay_late_fee = min(remaining, due.late_fee)
    remaining = round_money(remaining - pay_late_fee)

    pay_interest = min(remaining, due.interest)
    remaining = round_money(remaining - pay_interest)

    pay_principal = min(remaining, due.principal)
    remaining = round_money(remaining - pay_principal)

    carried_interest = round_money(due.interest - due.accrued_interest)
    accrued_part = max(ZERO, round_money(pay_interest - carried_interest))

    return PaymentAllocation(
        late_fee=round_money(pay_late_fee),
        interest=round_money(pay_interest),
        principal=round_money(pay_principal),
        advance=remaining,
        accrued_interest=accrued_part,
    )


@dataclass
class PaymentReceipt:
    """Outcome of an installment payment"""
    entry: LedgerEntry
    installment: Installment
    due: DueAmount
    allocation: PaymentAllocation
    result: OperationResult


class PaymentProcessor:
    """
    Applies payments and additional disbursements to loan installments
    """

    def __init__(self, storage: StorageInterface, ledger: LedgerService, audit_trail: AuditTrail):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.loans = ledger.loans
        self.clock = ledger.clock
        self.config = ledger.config
        self.locks = ledger.locks

    def _load_open_installment(self, loan_id: str, installment_id: str):
        loan = self.loans.get(loan_id)
        if loan.is_archived:
            raise ValidationError(f"Loan {loan_id} is archived")
        installment = loan.find_installment(installment_id)
        if installment is None:
            raise NotFoundError(f"Installment {installment_id} not found on loan {loan_id}")
        return loan, installment

    def quote(self, loan_id: str, installment_id: str) -> DueAmount:
        """What the installment owes today"""
        loan, installment = self._load_open_installment(loan_id, installment_id)
        return calculate_due(loan, installment, self.clock.today(), self.config)

    def pay_installment(
        self,
        loan_id: str,
        installment_id: str,
        mode: PaymentMode = PaymentMode.FULL,
        amount: Optional[Numeric] = None,
        forgive_penalty: bool = False,
        source_id: Optional[str] = None,
        notes: str = "",
        deadline: Optional[Deadline] = None,
        manual_due_date: Optional[DateLike] = None
    ) -> PaymentReceipt:
        """
        Apply a payment to one installment.

        Steps, in order: update the installment, append the ledger entry,
        credit the capital source (principal to its balance, interest and
        late fee to its profit).

        An INTEREST_ONLY payment renews the installment: its due date rolls
        forward and the next period's interest is charged, as the loan's
        modality dictates. The renewal is recorded on the ledger entry.

        Args:
            loan_id: Loan being paid
            installment_id: Installment being paid
            mode: FULL, PARTIAL or INTEREST_ONLY
            amount: Amount paid, required for PARTIAL
            forgive_penalty: Leave the late fee out of what is charged now
            source_id: Capital source receiving the money (defaults to the loan's)
            notes: Free text stored on the ledger entry
            deadline: Caller-supplied deadline checked before each step
            manual_due_date: Due date chosen by the operator for the renewed
                period, overriding the computed one

        Returns:
            PaymentReceipt with the posted entry and updated installment

        Raises:
            ValidationError: Archived loan, paid installment, non-positive or excessive amount
            AgreementStateError: If an active agreement owns the loan's debt
            OperationFailedError: If a persistence step fails part way
        """
        deadline = deadline or Deadline.from_seconds(self.config.persistence_deadline_seconds)
        timeout = max(0.0, deadline.remaining()) if deadline else None

        with self.locks.hold(loan_id, installment_id, timeout=timeout):
            loan, installment = self._load_open_installment(loan_id, installment_id)
            if loan.active_agreement_id:
                raise AgreementStateError(
                    f"Loan {loan_id} is under agreement {loan.active_agreement_id}; pay the agreement instead"
                )
            if installment.status == InstallmentStatus.PAID:
                raise ValidationError(f"Installment {installment_id} is already paid")

            today = self.clock.today()
            due = calculate_due(loan, installment, today, self.config)
            chargeable = replace(due, late_fee=ZERO) if forgive_penalty else due

            if mode == PaymentMode.FULL:
                amount_paid = round_money(chargeable.principal + chargeable.interest + chargeable.late_fee)
            elif mode == PaymentMode.INTEREST_ONLY:
                amount_paid = round_money(chargeable.interest + chargeable.late_fee)
            else:
                if amount is None:
                    raise ValidationError("Partial payments need an amount")
                amount_paid = round_money(to_decimal(amount))
            require_positive(amount_paid, "payment amount")

            allocation = allocate_payment(amount_paid, chargeable)
            if allocation.advance > 0:
                raise ValidationError(
                    f"Payment of {amount_paid} exceeds the {chargeable.total} due on installment {installment_id}"
                )

            updated = self._apply_allocation(installment, allocation, amount_paid, due, today)
            renewal = None
            if mode == PaymentMode.INTEREST_ONLY:
                renewal = renew_installment(
                    loan, updated, allocation.principal, allocation.interest, today,
                    parse_date_only(manual_due_date) if manual_due_date else None, self.config
                )
                if renewal is not None:
                    updated.apply_renewal(renewal)
                    updated.status = installment_status(updated, today, self.config.installment_paid_tolerance)
            entry_type = self._entry_type_for(mode, updated)
            entry = self.ledger.new_entry(
                loan_id=loan.id,
                entry_type=entry_type,
                amount=amount_paid,
                source_id=source_id or loan.source_id,
                installment_id=installment.id,
                principal_delta=allocation.principal,
                interest_delta=allocation.interest,
                late_fee_delta=allocation.late_fee,
                accrued_interest_delta=allocation.accrued_interest,
                category=LedgerCategory.RECEITA,
                notes=notes or f"Pagamento parcela {installment.number}",
                renewal=renewal,
            )
            self.ledger.validate(entry)

            result = OperationResult(operation="payments.pay_installment")
            result.run("update_installment", lambda: self.loans.save_installment(updated), deadline)
            self.ledger.post(entry, deadline=deadline, result=result)

            log_action(
                logger, "info", f"Installment {installment.number} of loan {loan.id} received {amount_paid}",
                action="pay_installment", resource=f"loan:{loan.id}",
                correlation_id=result.correlation_id,
                extra={
                    "installment_id": installment.id,
                    "mode": mode.value,
                    "forgive_penalty": forgive_penalty,
                    "status": updated.status.value,
                    "due_date": updated.due_date.isoformat(),
                    "renewed": renewal is not None,
                }
            )
            result.value = entry
            return PaymentReceipt(entry=entry, installment=updated, due=due,
                                  allocation=allocation, result=result)

    def _apply_allocation(self, installment: Installment, allocation: PaymentAllocation,
                          amount_paid: Decimal, due: DueAmount, today) -> Installment:
        carried = allocation.interest - allocation.accrued_interest
        updated = replace(
            installment,
            principal_remaining=round_money(installment.principal_remaining - allocation.principal),
            interest_remaining=max(ZERO, round_money(installment.interest_remaining - carried)),
            accrued_interest_paid=round_money(installment.accrued_interest_paid + allocation.accrued_interest),
            paid_principal=round_money(installment.paid_principal + allocation.principal),
            paid_interest=round_money(installment.paid_interest + allocation.interest),
            paid_late_fee=round_money(installment.paid_late_fee + allocation.late_fee),
            paid_total=round_money(installment.paid_total + amount_paid),
            late_fee_accrued=max(ZERO, round_money(due.late_fee - allocation.late_fee)),
            last_payment_date=today,
            updated_at=self.clock.now(),
        )
        updated.status = installment_status(updated, today, self.config.installment_paid_tolerance)
        return updated

    @staticmethod
    def _entry_type_for(mode: PaymentMode, updated: Installment) -> LedgerEntryType:
        if mode == PaymentMode.INTEREST_ONLY:
            return LedgerEntryType.PAYMENT_INTEREST_ONLY
        if updated.status == InstallmentStatus.PAID:
            return LedgerEntryType.PAYMENT_FULL
        return LedgerEntryType.PAYMENT_PARTIAL

    def lend_more(
        self,
        loan_id: str,
        installment_id: str,
        amount: Numeric,
        source_id: Optional[str] = None,
        notes: str = "",
        deadline: Optional[Deadline] = None
    ) -> OperationResult:
        """
        Disburse additional principal on an open installment (NOVO_APORTE).

        Steps, in order: grow the installment's principal, grow the loan's
        principal, append the ledger entry, debit the capital source (which
        may go negative).

        Returns:
            OperationResult whose ``value`` is the posted entry
        """
        amount = require_positive(round_money(to_decimal(amount)), "additional principal")
        deadline = deadline or Deadline.from_seconds(self.config.persistence_deadline_seconds)

        timeout = max(0.0, deadline.remaining()) if deadline else None

        with self.locks.hold(loan_id, installment_id, timeout=timeout):
            loan, installment = self._load_open_installment(loan_id, installment_id)
            if loan.active_agreement_id:
                raise AgreementStateError(f"Loan {loan_id} is under agreement {loan.active_agreement_id}")

            today = self.clock.today()
            updated = replace(
                installment,
                principal_remaining=round_money(installment.principal_remaining + amount),
                scheduled_principal=round_money(installment.scheduled_principal + amount),
                updated_at=self.clock.now(),
            )
            updated.status = installment_status(updated, today, self.config.installment_paid_tolerance)

            loan.principal = round_money(loan.principal + amount)
            loan.total_to_receive = round_money(loan.total_to_receive + amount)
            loan.updated_at = self.clock.now()

            entry = self.ledger.new_entry(
                loan_id=loan.id,
                entry_type=LedgerEntryType.NOVO_APORTE,
                amount=amount,
                source_id=source_id or loan.source_id,
                installment_id=installment.id,
                category=LedgerCategory.INVESTIMENTO,
                notes=notes or f"Novo aporte (+ {amount})",
            )
            self.ledger.validate(entry)

            result = OperationResult(operation="payments.lend_more")
            result.run("update_installment", lambda: self.loans.save_installment(updated), deadline)
            result.run("update_loan", lambda: self.loans.save_header(loan), deadline)
            self.ledger.post(entry, deadline=deadline, result=result)

            log_action(
                logger, "info", f"Lent {amount} more on loan {loan.id}",
                action="lend_more", resource=f"loan:{loan.id}",
                correlation_id=result.correlation_id,
                extra={"installment_id": installment.id, "principal": str(loan.principal)}
            )
            result.value = entry
            return result
