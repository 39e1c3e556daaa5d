"""
Agreement Engine Module

Renegotiation of a delinquent loan into a new fixed installment plan.
State machine: ACTIVE -> PAID when the plan is settled (within tolerance),
ACTIVE -> BROKEN on manual cancellation. Agreement payments are posted to the
original loan's ledger so the loan keeps a single audit trail.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple
import uuid

from .audit import AuditEventType, AuditTrail
from .errors import AgreementStateError, NotFoundError, ValidationError
from .ledger import LedgerService
from .logging_config import get_logger, log_action
from .models import (
    Agreement, AgreementFrequency, AgreementInstallment, AgreementStatus, AgreementType,
    InstallmentStatus, LedgerCategory, LedgerEntry, LedgerEntryType,
)
from .modalities import outstanding_debt
from .money import Numeric, percent_of, require_non_negative, require_positive, round_money, split_evenly, to_decimal
from .repositories import AgreementRepository
from .results import Deadline, OperationResult
from .storage import StorageInterface

logger = get_logger("lending.agreements")


@dataclass(frozen=True)
class AgreementTerms:
    """Outcome of an agreement simulation"""
    total_debt: Decimal
    negotiated_total: Decimal
    interest_rate: Decimal
    installments_count: int
    frequency: AgreementFrequency
    agreement_type: AgreementType
    schedule: Tuple[Tuple[int, date, Decimal], ...]  # (number, due date, amount)

    @property
    def installment_amount(self) -> Decimal:
        return self.schedule[0][2]


def simulate_agreement(
    total_debt: Numeric,
    installments_count: int,
    frequency: AgreementFrequency,
    agreement_type: AgreementType,
    interest_rate: Numeric,
    first_due_date: date
) -> AgreementTerms:
    """
    Work out the negotiated total and installment plan for a debt.

    PARCELADO_COM_JUROS applies simple monthly interest over the plan's
    duration in months; PARCELADO_SEM_JUROS keeps the debt as is.
    Installments are equal except the last, which absorbs the rounding.

    Raises:
        ValidationError: On a non-positive debt or installment count, or a negative rate
    """
    debt = round_money(require_positive(total_debt, "total debt"))
    rate = require_non_negative(interest_rate, "interest_rate")
    if installments_count < 1:
        raise ValidationError(f"An agreement needs at least one installment, got {installments_count}")

    if agreement_type == AgreementType.PARCELADO_COM_JUROS:
        months = frequency.months_for(installments_count)
        negotiated = round_money(debt + percent_of(debt, rate) * months)
    else:
        rate = Decimal("0")
        negotiated = debt

    amounts = split_evenly(negotiated, installments_count)
    schedule = tuple(
        (number, first_due_date + timedelta(days=frequency.step_days * (number - 1)), amount)
        for number, amount in enumerate(amounts, start=1)
    )
    return AgreementTerms(
        total_debt=debt,
        negotiated_total=negotiated,
        interest_rate=rate,
        installments_count=installments_count,
        frequency=frequency,
        agreement_type=agreement_type,
        schedule=schedule,
    )


@dataclass
class AgreementPaymentReceipt:
    """Outcome of an agreement installment payment"""
    agreement: Agreement
    installment: AgreementInstallment
    entry: LedgerEntry
    completed: bool
    result: OperationResult


class AgreementEngine:
    """
    Creates, collects and breaks renegotiation agreements
    """

    def __init__(self, storage: StorageInterface, ledger: LedgerService, audit_trail: AuditTrail):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.agreements = AgreementRepository(storage)
        self.loans = ledger.loans
        self.clock = ledger.clock
        self.config = ledger.config
        self.locks = ledger.locks

    def create_agreement(
        self,
        loan_id: str,
        installments_count: int,
        frequency: AgreementFrequency = AgreementFrequency.MONTHLY,
        agreement_type: AgreementType = AgreementType.PARCELADO_COM_JUROS,
        interest_rate: Numeric = 0,
        first_due_date: Optional[date] = None,
        total_debt: Optional[Numeric] = None,
        deadline: Optional[Deadline] = None
    ) -> Agreement:
        """
        Renegotiate a loan's debt into an agreement.

        Header and installments are persisted as one unit, then the loan is
        linked to the new agreement.

        Args:
            loan_id: Loan being renegotiated
            installments_count: Number of agreement installments
            frequency: Spacing of the installments
            agreement_type: With or without simple interest
            interest_rate: Monthly rate for PARCELADO_COM_JUROS
            first_due_date: Defaults to one frequency step from today
            total_debt: Debt being renegotiated; defaults to the loan's outstanding debt today
            deadline: Caller-supplied deadline checked before each step

        Raises:
            AgreementStateError: If the loan already has an ACTIVE agreement
            ValidationError: If the loan is archived or has no debt
        """
        deadline = deadline or Deadline.from_seconds(self.config.persistence_deadline_seconds)

        with self.locks.hold(loan_id):
            loan = self.loans.get(loan_id)
            if loan.is_archived:
                raise ValidationError(f"Loan {loan_id} is archived")
            active = self.agreements.find_active_for_loan(loan_id)
            if loan.active_agreement_id or active is not None:
                raise AgreementStateError(
                    f"Loan {loan_id} already has an active agreement "
                    f"{loan.active_agreement_id or active.id}"
                )

            today = self.clock.today()
            if total_debt is None:
                total_debt = outstanding_debt(loan, today, self.config)
            first_due_date = first_due_date or today + timedelta(days=frequency.step_days)
            terms = simulate_agreement(
                total_debt, installments_count, frequency, agreement_type, interest_rate, first_due_date
            )

            now = self.clock.now()
            agreement_id = str(uuid.uuid4())
            agreement = Agreement(
                id=agreement_id,
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                total_debt_at_negotiation=terms.total_debt,
                negotiated_total=terms.negotiated_total,
                interest_rate=terms.interest_rate,
                installments_count=terms.installments_count,
                frequency=frequency,
                agreement_type=agreement_type,
                status=AgreementStatus.ACTIVE,
                first_due_date=first_due_date,
                installments=[
                    AgreementInstallment(
                        id=str(uuid.uuid4()),
                        created_at=now,
                        updated_at=now,
                        agreement_id=agreement_id,
                        number=number,
                        due_date=due,
                        amount=amount,
                    )
                    for number, due, amount in terms.schedule
                ],
            )

            result = OperationResult(operation="agreements.create")
            result.run("create_agreement", lambda: self.agreements.create(agreement), deadline)

            loan.active_agreement_id = agreement.id
            loan.updated_at = now
            result.run("link_loan", lambda: self.loans.save_header(loan), deadline)

            self.audit_trail.log_event(
                event_type=AuditEventType.AGREEMENT_CREATED,
                entity_type="agreement",
                entity_id=agreement.id,
                metadata={
                    "loan_id": loan.id,
                    "total_debt": str(terms.total_debt),
                    "negotiated_total": str(terms.negotiated_total),
                    "installments_count": terms.installments_count,
                    "frequency": frequency.value,
                },
                correlation_id=result.correlation_id
            )
            log_action(
                logger, "info", f"Agreement {agreement.id} created for loan {loan.id}",
                action="create_agreement", resource=f"loan:{loan.id}",
                correlation_id=result.correlation_id,
                extra={"negotiated_total": str(terms.negotiated_total)}
            )
            return agreement

    def process_payment(
        self,
        agreement_id: str,
        installment_id: str,
        amount: Numeric,
        source_id: Optional[str] = None,
        deadline: Optional[Deadline] = None
    ) -> AgreementPaymentReceipt:
        """
        Record a payment on an agreement installment.

        Steps, in order: update the agreement installment, append an
        AGREEMENT_PAYMENT entry to the original loan's ledger, credit the
        capital source, and, when the plan is settled, close the agreement
        and mark the loan's remaining installments PAID.

        Raises:
            AgreementStateError: If the agreement is not ACTIVE
            NotFoundError: If the installment is not part of the agreement
            ValidationError: On a non-positive amount, a paid installment, or
                an amount above what the installment still owes
            OperationFailedError: If a persistence step fails part way
        """
        amount = round_money(require_positive(to_decimal(amount), "payment amount"))
        deadline = deadline or Deadline.from_seconds(self.config.persistence_deadline_seconds)

        loan_id = self.agreements.get(agreement_id).loan_id

        with self.locks.hold(loan_id, agreement_id, installment_id):
            agreement = self.agreements.get(agreement_id)
            if agreement.status != AgreementStatus.ACTIVE:
                raise AgreementStateError(
                    f"Cannot pay agreement {agreement_id} in status {agreement.status.value}"
                )
            installment = agreement.find_installment(installment_id)
            if installment is None:
                raise NotFoundError(f"Installment {installment_id} not found on agreement {agreement_id}")
            if installment.status == InstallmentStatus.PAID:
                raise ValidationError(f"Agreement installment {installment.number} is already paid")
            if amount > installment.outstanding:
                raise ValidationError(
                    f"Payment of {amount} exceeds the {installment.outstanding} owed on "
                    f"agreement installment {installment.number}"
                )

            loan = self.loans.get(agreement.loan_id)
            today = self.clock.today()
            now = self.clock.now()
            tolerance = self.config.agreement_tolerance

            installment.paid_amount = round_money(installment.paid_amount + amount)
            if installment.paid_amount >= installment.amount - tolerance:
                installment.status = InstallmentStatus.PAID
            else:
                installment.status = InstallmentStatus.PARTIAL
            installment.paid_date = today
            installment.updated_at = now

            entry = self.ledger.new_entry(
                loan_id=agreement.loan_id,
                entry_type=LedgerEntryType.AGREEMENT_PAYMENT,
                amount=amount,
                source_id=source_id or loan.source_id,
                agreement_id=agreement.id,
                category=LedgerCategory.RECUPERACAO,
                notes=f"Pagamento Acordo {installment.number}/{agreement.installments_count}",
            )
            self.ledger.validate(entry)

            result = OperationResult(operation="agreements.process_payment")
            result.run(
                "update_agreement_installment",
                lambda: self.agreements.save_installment(installment),
                deadline
            )
            self.ledger.post(entry, deadline=deadline, result=result)

            self.audit_trail.log_event(
                event_type=AuditEventType.AGREEMENT_PAYMENT_RECORDED,
                entity_type="agreement",
                entity_id=agreement.id,
                metadata={
                    "installment_number": installment.number,
                    "amount": str(amount),
                    "paid_amount": str(installment.paid_amount),
                    "status": installment.status.value,
                    "ledger_entry_id": entry.id,
                },
                correlation_id=result.correlation_id
            )
            log_action(
                logger, "info",
                f"Agreement {agreement.id} installment {installment.number} received {amount}",
                action="agreement_payment", resource=f"loan:{agreement.loan_id}",
                correlation_id=result.correlation_id,
                extra={"status": installment.status.value, "paid_amount": str(installment.paid_amount)}
            )

            completed = self._is_settled(agreement)
            if completed:
                self._complete(agreement, result, deadline)

            result.value = entry
            return AgreementPaymentReceipt(
                agreement=agreement,
                installment=installment,
                entry=entry,
                completed=completed,
                result=result,
            )

    def _is_settled(self, agreement: Agreement) -> bool:
        if all(inst.status == InstallmentStatus.PAID for inst in agreement.installments):
            return True
        return agreement.total_paid >= agreement.negotiated_total - self.config.agreement_tolerance

    def _complete(self, agreement: Agreement, result: OperationResult, deadline: Optional[Deadline]) -> None:
        now = self.clock.now()

        def close_agreement():
            for inst in agreement.installments:
                if inst.status != InstallmentStatus.PAID:
                    inst.status = InstallmentStatus.PAID
                    inst.updated_at = now
                    self.agreements.save_installment(inst)
            agreement.status = AgreementStatus.PAID
            agreement.closed_at = now
            agreement.updated_at = now
            self.agreements.update_status(agreement)

        def settle_loan():
            loan = self.loans.get(agreement.loan_id)
            for inst in loan.installments:
                if inst.status != InstallmentStatus.PAID:
                    inst.status = InstallmentStatus.PAID
                    inst.updated_at = now
            loan.active_agreement_id = None
            loan.settled_by_agreement_id = agreement.id
            loan.updated_at = now
            self.loans.save(loan)

        with self.storage.atomic():
            result.run("close_agreement", close_agreement, deadline)
        result.run("settle_loan_installments", settle_loan, deadline)

        self.audit_trail.log_event(
            event_type=AuditEventType.AGREEMENT_PAID,
            entity_type="agreement",
            entity_id=agreement.id,
            metadata={
                "loan_id": agreement.loan_id,
                "total_paid": str(agreement.total_paid),
                "negotiated_total": str(agreement.negotiated_total),
            },
            correlation_id=result.correlation_id
        )
        log_action(
            logger, "info", f"Agreement {agreement.id} settled, loan {agreement.loan_id} paid",
            action="complete_agreement", resource=f"loan:{agreement.loan_id}",
            correlation_id=result.correlation_id,
            extra={"total_paid": str(agreement.total_paid)}
        )

    def break_agreement(self, agreement_id: str, reason: str = "") -> Agreement:
        """
        Cancel an ACTIVE agreement.

        The loan's own installments become the debt of record again. Agreement
        payments already in the ledger stay there untouched.

        Raises:
            AgreementStateError: If the agreement is PAID or already BROKEN
        """
        loan_id = self.agreements.get(agreement_id).loan_id

        with self.locks.hold(loan_id, agreement_id):
            agreement = self.agreements.get(agreement_id)
            if agreement.status != AgreementStatus.ACTIVE:
                raise AgreementStateError(
                    f"Cannot break agreement {agreement_id} in status {agreement.status.value}"
                )

            now = self.clock.now()
            agreement.status = AgreementStatus.BROKEN
            agreement.closed_at = now
            agreement.updated_at = now

            loan = self.loans.get(agreement.loan_id)
            with self.storage.atomic():
                self.agreements.update_status(agreement)
                if loan.active_agreement_id == agreement.id:
                    loan.active_agreement_id = None
                    loan.updated_at = now
                    self.loans.save_header(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.AGREEMENT_BROKEN,
                entity_type="agreement",
                entity_id=agreement.id,
                metadata={
                    "loan_id": agreement.loan_id,
                    "total_paid": str(agreement.total_paid),
                    "reason": reason,
                }
            )
            log_action(
                logger, "warning", f"Agreement {agreement.id} broken",
                action="break_agreement", resource=f"loan:{agreement.loan_id}",
                extra={"total_paid": str(agreement.total_paid), "reason": reason}
            )
            return agreement

    def get_agreement(self, agreement_id: str) -> Agreement:
        return self.agreements.get(agreement_id)

    def get_active_agreement(self, loan_id: str) -> Optional[Agreement]:
        return self.agreements.find_active_for_loan(loan_id)

    def list_agreements(self, loan_id: str) -> List[Agreement]:
        """Every agreement ever made for a loan, oldest first"""
        agreements = self.agreements.list_for_loan(loan_id)
        agreements.sort(key=lambda a: a.created_at)
        return agreements
