"""
Loan Lifecycle Module

Issuance, edits, late-fee refresh, outstanding debt, archive and restore of
loans, plus capital source creation. Issuance and edits go through the
schedule generator; every cash effect goes through the ledger service.
"""

from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union
import uuid

from pydantic import ValidationError as PydanticValidationError

from .audit import AuditEventType, AuditTrail
from .config import LendingConfig
from .dates import Clock
from .errors import AgreementStateError, ConsistencyError, NotFoundError, ValidationError
from .ledger import LedgerService
from .logging_config import get_logger, log_action
from .models import (
    BillingCycle, CapitalSource, CapitalSourceType, DueAmount, InstallmentStatus, LedgerCategory,
    LedgerEntryType, Loan,
)
from .modalities import calculate_due, installment_status, outstanding_debt
from .money import ZERO, Numeric, money_sum, round_money, to_decimal
from .results import Deadline, OperationResult
from .schedule import LoanFormState, generate_schedule, preserve_existing_due_dates
from .storage import StorageInterface

logger = get_logger("lending.loans")

FormInput = Union[LoanFormState, Dict[str, Any]]


def _as_form(form: FormInput) -> LoanFormState:
    if isinstance(form, LoanFormState):
        return form
    try:
        return LoanFormState(**form)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid loan form: {exc}") from exc


class LoanManager:
    """
    Manages the loan lifecycle
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        ledger: Optional[LedgerService] = None,
        clock: Optional[Clock] = None,
        config: Optional[LendingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.ledger = ledger or LedgerService(storage, audit_trail, clock=clock, config=config)
        self.loans = self.ledger.loans
        self.sources = self.ledger.sources
        self.clock = self.ledger.clock
        self.config = self.ledger.config
        self.locks = self.ledger.locks

    def create_source(
        self,
        name: str,
        source_type: CapitalSourceType = CapitalSourceType.CASH,
        balance: Numeric = 0
    ) -> CapitalSource:
        """Register a capital source with an opening balance"""
        if not name or not name.strip():
            raise ValidationError("Capital source name cannot be empty")
        now = self.clock.now()
        source = CapitalSource(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            source_type=source_type,
            balance=round_money(to_decimal(balance)),
        )
        self.sources.create(source)

        self.audit_trail.log_event(
            event_type=AuditEventType.SOURCE_CREATED,
            entity_type="capital_source",
            entity_id=source.id,
            metadata={"name": source.name, "balance": str(source.balance)}
        )
        return source

    def get_source(self, source_id: str) -> CapitalSource:
        return self.sources.get(source_id)

    def issue_loan(self, form: FormInput, deadline: Optional[Deadline] = None) -> Loan:
        """
        Issue a new loan.

        Steps, in order: save the loan and its schedule, append the LEND_MORE
        disbursement entry, debit the capital source (which may go negative).

        Raises:
            ValidationError: On malformed terms or an unknown billing cycle
            NotFoundError: If the capital source does not exist
            OperationFailedError: If a persistence step fails part way
        """
        form = _as_form(form)
        deadline = deadline or Deadline.from_seconds(self.config.persistence_deadline_seconds)
        if form.source_id:
            self.sources.get(form.source_id)

        now = self.clock.now()
        loan_id = str(uuid.uuid4())
        schedule = generate_schedule(form, loan_id, config=self.config, now=now)

        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            debtor_name=form.debtor_name,
            principal=round_money(form.principal),
            interest_rate=to_decimal(form.interest_rate),
            fine_percent=to_decimal(form.fine_percent),
            daily_interest_percent=to_decimal(form.daily_interest_percent),
            billing_cycle=form.billing_cycle,
            start_date=form.start_date,
            skip_weekends=form.skip_weekends,
            fixed_duration_days=self._duration_for(form),
            source_id=form.source_id,
            total_to_receive=schedule.total_to_receive,
            notes=form.notes,
            installments=schedule.installments,
        )

        entry = self.ledger.new_entry(
            loan_id=loan.id,
            entry_type=LedgerEntryType.LEND_MORE,
            amount=loan.principal,
            source_id=loan.source_id,
            category=LedgerCategory.INVESTIMENTO,
            notes=f"Empréstimo para {loan.debtor_name}".strip(),
        )

        result = OperationResult(operation="loans.issue")
        result.run("save_loan", lambda: self.loans.save(loan), deadline)
        self.ledger.post(entry, deadline=deadline, result=result)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_ISSUED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "principal": str(loan.principal),
                "billing_cycle": loan.billing_cycle,
                "installments": len(loan.installments),
                "total_to_receive": str(loan.total_to_receive),
            },
            correlation_id=result.correlation_id
        )
        log_action(
            logger, "info", f"Loan {loan.id} issued for {loan.principal}",
            action="issue_loan", resource=f"loan:{loan.id}",
            correlation_id=result.correlation_id,
            extra={"billing_cycle": loan.billing_cycle, "source_id": loan.source_id}
        )
        loan.ledger = [entry]
        return loan

    def _duration_for(self, form: LoanFormState) -> Optional[int]:
        if BillingCycle.parse(form.billing_cycle) == BillingCycle.DAILY_FIXED_TERM:
            return form.fixed_duration_days or self.config.default_fixed_term_days
        return form.fixed_duration_days

    def edit_loan(self, loan_id: str, form: FormInput) -> Loan:
        """
        Change a loan's commercial terms.

        The schedule is regenerated (installment ids reused by number),
        previously persisted due dates are kept, and the ledger is replayed
        over the new schedule so payments already made still count.

        Raises:
            AgreementStateError: If the loan is under an ACTIVE agreement
            ValidationError: On malformed terms or an archived loan
            ConsistencyError: If the payments made no longer fit the new schedule
        """
        form = _as_form(form)

        with self.locks.hold(loan_id):
            loan = self.loans.get(loan_id)
            if loan.is_archived:
                raise ValidationError(f"Loan {loan_id} is archived")
            if loan.active_agreement_id:
                raise AgreementStateError(
                    f"Loan {loan_id} is under agreement {loan.active_agreement_id} and cannot be edited"
                )
            previous = loan.installments
            before = self._terms(loan)

            now = self.clock.now()
            schedule = generate_schedule(form, loan.id, previous=previous, config=self.config, now=now)
            baseline = preserve_existing_due_dates(schedule.installments, previous)

            edited = replace(
                loan,
                debtor_name=form.debtor_name or loan.debtor_name,
                principal=round_money(form.principal),
                interest_rate=to_decimal(form.interest_rate),
                fine_percent=to_decimal(form.fine_percent),
                daily_interest_percent=to_decimal(form.daily_interest_percent),
                billing_cycle=form.billing_cycle,
                start_date=form.start_date,
                skip_weekends=form.skip_weekends,
                fixed_duration_days=self._duration_for(form),
                source_id=form.source_id or loan.source_id,
                total_to_receive=schedule.total_to_receive,
                notes=form.notes or loan.notes,
                updated_at=now,
            )
            rebuilt = self.ledger.rebuild_installments(edited, baseline=baseline)
            for inst in rebuilt:
                if inst.principal_remaining < 0 or inst.interest_remaining < 0:
                    raise ConsistencyError(
                        f"Installment {inst.number} has already received more than the new terms allow"
                    )

            # Additional disbursements replayed onto the new schedule stay part of the principal
            aporte = money_sum(inst.scheduled_principal for inst in rebuilt) - money_sum(
                inst.scheduled_principal for inst in baseline
            )
            edited.principal = round_money(edited.principal + aporte)
            edited.total_to_receive = round_money(edited.total_to_receive + aporte)
            edited.installments = rebuilt
            self.loans.save(edited)

            after = self._terms(edited)
            changes = {key: {"from": before[key], "to": after[key]} for key in after if before[key] != after[key]}
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_EDITED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"changes": changes}
            )
            log_action(
                logger, "info", f"Loan {loan.id} edited",
                action="edit_loan", resource=f"loan:{loan.id}",
                extra={"changes": changes}
            )
            return edited

    @staticmethod
    def _terms(loan: Loan) -> Dict[str, str]:
        return {
            "principal": str(loan.principal),
            "interest_rate": str(loan.interest_rate),
            "fine_percent": str(loan.fine_percent),
            "daily_interest_percent": str(loan.daily_interest_percent),
            "billing_cycle": loan.billing_cycle,
            "start_date": loan.start_date.isoformat(),
            "skip_weekends": str(loan.skip_weekends),
            "installments": str(len(loan.installments)),
        }

    def get_loan(self, loan_id: str, with_ledger: bool = True) -> Loan:
        """Load a loan with its installments and, optionally, its ledger"""
        loan = self.loans.get(loan_id)
        if with_ledger:
            loan.ledger = self.ledger.list_entries(loan_id)
        return loan

    def list_loans(self, include_archived: bool = False) -> List[Loan]:
        return self.loans.list_loans(include_archived=include_archived)

    def refresh_loan(self, loan_id: str) -> Loan:
        """
        Recompute each open installment's accrued late fee and status as of today.

        Installments marked PAID (including those settled by an agreement)
        are left alone.
        """
        with self.locks.hold(loan_id):
            loan = self.loans.get(loan_id)
            today = self.clock.today()
            for inst in loan.installments:
                if inst.status == InstallmentStatus.PAID:
                    continue
                due = calculate_due(loan, inst, today, self.config)
                status = installment_status(inst, today, self.config.installment_paid_tolerance)
                if due.late_fee == inst.late_fee_accrued and status == inst.status:
                    continue
                inst.late_fee_accrued = due.late_fee
                inst.status = status
                inst.updated_at = self.clock.now()
                self.loans.save_installment(inst)
            return loan

    def calculate_installment_due(self, loan_id: str, installment_id: str) -> DueAmount:
        """Due amount of one installment as of today"""
        loan = self.loans.get(loan_id)
        installment = loan.find_installment(installment_id)
        if installment is None:
            raise NotFoundError(f"Installment {installment_id} is not part of loan {loan_id}")
        return calculate_due(loan, installment, self.clock.today(), self.config)

    def outstanding_debt(self, loan_id: str) -> Decimal:
        """Total owed today across every installment not yet PAID"""
        loan = self.loans.get(loan_id)
        return outstanding_debt(loan, self.clock.today(), self.config)

    def archive_loan(
        self,
        loan_id: str,
        refund_source: bool = False,
        notes: str = "",
        deadline: Optional[Deadline] = None
    ) -> OperationResult:
        """
        Archive a loan. Loans are never deleted.

        Records a zero-amount ARCHIVE entry. With ``refund_source`` the unpaid
        principal goes back to the loan's capital source as a
        REFUND_SOURCE_CHANGE entry.

        Raises:
            ValidationError: If the loan is already archived
            AgreementStateError: If the loan is under an ACTIVE agreement
        """
        deadline = deadline or Deadline.from_seconds(self.config.persistence_deadline_seconds)

        with self.locks.hold(loan_id):
            loan = self.loans.get(loan_id)
            if loan.is_archived:
                raise ValidationError(f"Loan {loan_id} is already archived")
            if loan.active_agreement_id:
                raise AgreementStateError(
                    f"Loan {loan_id} is under agreement {loan.active_agreement_id}; break it first"
                )

            result = OperationResult(operation="loans.archive")
            loan.is_archived = True
            loan.updated_at = self.clock.now()
            result.run("archive_loan", lambda: self.loans.save_header(loan), deadline)

            archive_entry = self.ledger.new_entry(
                loan_id=loan.id,
                entry_type=LedgerEntryType.ARCHIVE,
                amount=ZERO,
                source_id=loan.source_id,
                category=LedgerCategory.AUDIT,
                notes=notes or "Contrato arquivado",
            )
            self.ledger.post(archive_entry, deadline=deadline, result=result)

            refund = loan.unpaid_principal
            if refund_source and loan.source_id and refund > 0:
                refund_entry = self.ledger.new_entry(
                    loan_id=loan.id,
                    entry_type=LedgerEntryType.REFUND_SOURCE_CHANGE,
                    amount=refund,
                    source_id=loan.source_id,
                    category=LedgerCategory.GERAL,
                    notes=f"Estorno de capital ao arquivar ({refund})",
                )
                self.ledger.post(refund_entry, deadline=deadline, result=result)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_ARCHIVED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"refund_source": refund_source, "unpaid_principal": str(refund)},
                correlation_id=result.correlation_id
            )
            log_action(
                logger, "info", f"Loan {loan.id} archived",
                action="archive_loan", resource=f"loan:{loan.id}",
                correlation_id=result.correlation_id,
                extra={"refund_source": refund_source}
            )
            result.value = loan
            return result

    def restore_loan(self, loan_id: str, deadline: Optional[Deadline] = None) -> OperationResult:
        """Bring an archived loan back, recording a zero-amount RESTORE entry"""
        deadline = deadline or Deadline.from_seconds(self.config.persistence_deadline_seconds)

        with self.locks.hold(loan_id):
            loan = self.loans.get(loan_id)
            if not loan.is_archived:
                raise ValidationError(f"Loan {loan_id} is not archived")

            result = OperationResult(operation="loans.restore")
            loan.is_archived = False
            loan.updated_at = self.clock.now()
            result.run("restore_loan", lambda: self.loans.save_header(loan), deadline)

            entry = self.ledger.new_entry(
                loan_id=loan.id,
                entry_type=LedgerEntryType.RESTORE,
                amount=ZERO,
                source_id=loan.source_id,
                category=LedgerCategory.AUDIT,
                notes="Contrato restaurado",
            )
            self.ledger.post(entry, deadline=deadline, result=result)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_RESTORED,
                entity_type="loan",
                entity_id=loan.id,
                correlation_id=result.correlation_id
            )
            result.value = loan
            return result

    def check_consistency(self, loan_id: str) -> None:
        """
        Raises:
            ConsistencyError: If the stored installments diverge from the ledger replay
        """
        self.ledger.check_consistency(self.loans.get(loan_id))
