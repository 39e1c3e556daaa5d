"""
Ledger Service Module

Append-only record of every cash event on a loan. Entries are never edited
or removed: a reversal appends an ESTORNO entry with inverted amount and
deltas, re-opens the affected installment and compensates the capital source.
Installment balances can always be rebuilt by replaying the ledger over the
scheduled baseline.
"""

from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .config import LendingConfig, get_config
from .dates import Clock, SystemClock
from .errors import ConsistencyError, ReversalNotAllowedError, ValidationError
from .locks import KeyedLockRegistry
from .logging_config import get_logger, log_action
from .models import (
    INSTALLMENT_PAYMENT_TYPES, NON_REVERSIBLE_CATEGORIES, Installment, InstallmentStatus,
    LedgerCategory, LedgerEntry, LedgerEntryType, Loan, Renewal,
)
from .modalities import installment_status
from .money import ZERO, require_positive, round_money, to_decimal
from .repositories import CapitalSourceRepository, LedgerRepository, LoanRepository
from .results import Deadline, OperationResult
from .storage import StorageInterface

logger = get_logger("lending.ledger")

STRUCTURED_NOTE_PREFIXES = ("{", "[", "DIFF")

POSITIVE_AMOUNT_TYPES = (
    LedgerEntryType.PAYMENT,
    LedgerEntryType.PAYMENT_FULL,
    LedgerEntryType.PAYMENT_PARTIAL,
    LedgerEntryType.PAYMENT_INTEREST_ONLY,
    LedgerEntryType.AGREEMENT_PAYMENT,
    LedgerEntryType.LEND_MORE,
    LedgerEntryType.NOVO_APORTE,
    LedgerEntryType.WITHDRAW_PROFIT,
    LedgerEntryType.REFUND_SOURCE_CHANGE,
)

ZERO_AMOUNT_TYPES = (LedgerEntryType.ARCHIVE, LedgerEntryType.RESTORE)


def source_effect(entry: LedgerEntry, original: Optional[LedgerEntry] = None) -> Decimal:
    """
    Signed change an entry makes to its capital source balance.

    Installment payments return only their principal to the source; the
    interest and late fee they carry are profit (see ``profit_effect``).
    Agreement payments flow in whole. Disbursements flow out, adjustments
    carry their own sign, and profit withdrawals leave the capital alone. A
    reversal has exactly the opposite effect of the entry it reverses.
    """
    entry_type = entry.entry_type
    if entry_type == LedgerEntryType.ESTORNO:
        if original is None:
            raise ValidationError(f"Reversal {entry.id} needs its original entry to compute its effect")
        return -source_effect(original)
    if entry_type in INSTALLMENT_PAYMENT_TYPES:
        return entry.principal_delta
    if entry_type.is_payment or entry_type == LedgerEntryType.REFUND_SOURCE_CHANGE:
        return entry.amount
    if entry_type.is_disbursement:
        return -entry.amount
    if entry_type == LedgerEntryType.ADJUSTMENT:
        return entry.amount
    return ZERO


def profit_effect(entry: LedgerEntry, original: Optional[LedgerEntry] = None) -> Decimal:
    """
    Signed change an entry makes to its capital source's accumulated profit.

    Interest and late fees collected on installments are profit; a profit
    withdrawal takes its amount out.
    """
    entry_type = entry.entry_type
    if entry_type == LedgerEntryType.ESTORNO:
        if original is None:
            raise ValidationError(f"Reversal {entry.id} needs its original entry to compute its effect")
        return -profit_effect(original)
    if entry_type in INSTALLMENT_PAYMENT_TYPES:
        return round_money(entry.interest_delta + entry.late_fee_delta)
    if entry_type == LedgerEntryType.WITHDRAW_PROFIT:
        return -entry.amount
    return ZERO


def reversal_block_reason(entry: LedgerEntry) -> Optional[str]:
    """Why an entry cannot be reversed, or None when it can"""
    if entry.entry_type == LedgerEntryType.ESTORNO:
        return "reversal entries cannot themselves be reversed"
    if entry.category in NON_REVERSIBLE_CATEGORIES:
        return f"{entry.category.value} entries are not reversible"
    if entry.notes.lstrip().startswith(STRUCTURED_NOTE_PREFIXES):
        return "entries carrying a structured diff are not reversible"
    if entry.entry_type == LedgerEntryType.AGREEMENT_PAYMENT:
        return "agreement payments are not reversible"
    if not (entry.entry_type.is_payment or entry.entry_type.is_disbursement):
        return f"{entry.entry_type.value} entries are not reversible"
    return None


class LedgerService:
    """
    Posts and reverses ledger entries, keeping installments and capital
    sources in step with the ledger.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        config: Optional[LendingConfig] = None,
        locks: Optional[KeyedLockRegistry] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.locks = locks or KeyedLockRegistry()

        self.loans = LoanRepository(storage)
        self.entries = LedgerRepository(storage)
        self.sources = CapitalSourceRepository(storage)

    def new_entry(
        self,
        loan_id: Optional[str],
        entry_type: LedgerEntryType,
        amount,
        source_id: Optional[str] = None,
        installment_id: Optional[str] = None,
        agreement_id: Optional[str] = None,
        principal_delta=ZERO,
        interest_delta=ZERO,
        late_fee_delta=ZERO,
        accrued_interest_delta=ZERO,
        category: LedgerCategory = LedgerCategory.GERAL,
        notes: str = "",
        entry_date: Optional[datetime] = None,
        renewal: Optional[Renewal] = None
    ) -> LedgerEntry:
        """Build (but do not post) an entry stamped with the service clock"""
        now = self.clock.now()
        return LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            entry_type=entry_type,
            amount=round_money(amount),
            entry_date=entry_date or now,
            principal_delta=round_money(principal_delta),
            interest_delta=round_money(interest_delta),
            late_fee_delta=round_money(late_fee_delta),
            accrued_interest_delta=round_money(accrued_interest_delta),
            source_id=source_id,
            installment_id=installment_id,
            agreement_id=agreement_id,
            category=category,
            notes=notes,
            renewal=renewal,
        )

    def validate(self, entry: LedgerEntry) -> None:
        """
        Check an entry's amount and deltas against its type.

        Raises:
            ValidationError: On an amount whose sign does not fit the type
            ConsistencyError: When a payment's deltas do not add up to its amount
        """
        entry_type = entry.entry_type
        amount = to_decimal(entry.amount)

        if entry_type == LedgerEntryType.ESTORNO:
            if amount >= 0 or not entry.reverses:
                raise ValidationError("Reversal entries must be negative and reference the reversed entry")
        elif entry_type in POSITIVE_AMOUNT_TYPES:
            if amount <= 0:
                raise ValidationError(f"{entry_type.value} amount must be positive, got {amount}")
        elif entry_type in ZERO_AMOUNT_TYPES:
            if amount != 0:
                raise ValidationError(f"{entry_type.value} entries carry no amount, got {amount}")
        elif entry_type == LedgerEntryType.ADJUSTMENT and amount == 0:
            raise ValidationError("Adjustment amount cannot be zero")

        if entry_type in INSTALLMENT_PAYMENT_TYPES:
            deltas = (entry.principal_delta, entry.interest_delta, entry.late_fee_delta)
            if any(delta < 0 for delta in deltas):
                raise ValidationError("Payment deltas cannot be negative")
            if not ZERO <= entry.accrued_interest_delta <= entry.interest_delta:
                raise ValidationError("Accrued interest settled must lie within the interest paid")
            if round_money(sum(deltas)) != round_money(amount):
                raise ConsistencyError(
                    f"Payment deltas {sum(deltas)} do not add up to amount {amount}"
                )
            if not entry.installment_id:
                raise ValidationError(f"{entry_type.value} must reference an installment")

    def post(
        self,
        entry: LedgerEntry,
        adjust_source: bool = True,
        deadline: Optional[Deadline] = None,
        result: Optional[OperationResult] = None
    ) -> LedgerEntry:
        """
        Append an entry and move its capital source accordingly.

        Args:
            entry: Entry built with ``new_entry``
            adjust_source: Apply the entry's effect to its capital source
            deadline: Caller-supplied deadline checked before each step
            result: Result of an enclosing coordinated operation, if any

        Returns:
            The posted entry

        Raises:
            ValidationError: If the entry is malformed or is a reversal
            OperationFailedError: If a persistence step fails; ``result``
                tells whether the entry was recorded
        """
        if entry.entry_type == LedgerEntryType.ESTORNO:
            raise ValidationError("Reversals are created through reverse(), not posted directly")
        self.validate(entry)

        result = result or OperationResult(operation="ledger.post")
        result.run("append_ledger_entry", lambda: self.entries.append(entry), deadline)
        self._log_posted(entry, result.correlation_id)

        capital, profit = source_effect(entry), profit_effect(entry)
        if adjust_source and entry.source_id and (capital != 0 or profit != 0):
            result.run(
                "adjust_source_balance",
                lambda: self._adjust_source(entry.source_id, capital, profit, entry, result.correlation_id),
                deadline
            )
        else:
            result.skipped("adjust_source_balance")

        result.value = entry
        return entry

    def reverse(
        self,
        entry_id: str,
        notes: str = "",
        deadline: Optional[Deadline] = None
    ) -> LedgerEntry:
        """
        Reverse a payment-like entry with a compensating ESTORNO entry.

        The affected installment gets its remaining balances and paid totals
        restored (and, for a payment that renewed it, its previous due date),
        additional disbursements are taken back out of principal, and the
        capital source and its profit are moved by the opposite of the
        original effect. The original entry is never modified.

        Returns:
            The ESTORNO entry

        Raises:
            NotFoundError: If the entry does not exist
            ReversalNotAllowedError: If the entry is not reversible, was already
                reversed, or renewed an installment that has been paid since
            OperationFailedError: If a persistence step fails part way
        """
        original = self.entries.get(entry_id)

        with self.locks.hold(original.loan_id, original.id, original.installment_id):
            reason = reversal_block_reason(original)
            if reason:
                raise ReversalNotAllowedError(f"Entry {entry_id} cannot be reversed: {reason}")
            existing = self.entries.find_reversal_of(original.id)
            if existing is not None:
                raise ReversalNotAllowedError(
                    f"Entry {entry_id} was already reversed by {existing.id}"
                )
            if original.renewal is not None:
                later = self._later_payments(original)
                if later:
                    raise ReversalNotAllowedError(
                        f"Entry {entry_id} renewed installment {original.installment_id}; "
                        f"reverse the later payment(s) {', '.join(e.id for e in later)} first"
                    )

            loan = self.loans.get(original.loan_id)
            reversal = self.new_entry(
                loan_id=original.loan_id,
                entry_type=LedgerEntryType.ESTORNO,
                amount=-original.amount,
                source_id=original.source_id,
                installment_id=original.installment_id,
                agreement_id=original.agreement_id,
                principal_delta=-original.principal_delta,
                interest_delta=-original.interest_delta,
                late_fee_delta=-original.late_fee_delta,
                accrued_interest_delta=-original.accrued_interest_delta,
                category=LedgerCategory.ESTORNO,
                notes=f"{notes or 'Estorno ' + original.entry_type.value}. Ref={original.id}",
            )
            reversal.reverses = original.id
            self.validate(reversal)

            result = OperationResult(operation="ledger.reverse")
            result.run("reopen_installment", lambda: self._undo_on_loan(loan, original), deadline)
            result.run("append_ledger_entry", lambda: self.entries.append(reversal), deadline)

            capital, profit = source_effect(reversal, original), profit_effect(reversal, original)
            if reversal.source_id and (capital != 0 or profit != 0):
                result.run(
                    "adjust_source_balance",
                    lambda: self._adjust_source(reversal.source_id, capital, profit, reversal,
                                                result.correlation_id),
                    deadline
                )
            else:
                result.skipped("adjust_source_balance")

            self.audit_trail.log_event(
                event_type=AuditEventType.LEDGER_ENTRY_REVERSED,
                entity_type="ledger_entry",
                entity_id=original.id,
                metadata={
                    "loan_id": original.loan_id,
                    "reversal_id": reversal.id,
                    "amount": str(original.amount),
                    "entry_type": original.entry_type.value,
                },
                correlation_id=result.correlation_id
            )
            log_action(
                logger, "info", f"Reversed {original.entry_type.value} entry {original.id}",
                action="reverse_entry", resource=f"loan:{original.loan_id}",
                correlation_id=result.correlation_id,
                extra={"reversal_id": reversal.id, "amount": str(original.amount)}
            )

            result.value = reversal
            return reversal

    def _undo_on_loan(self, loan: Loan, original: LedgerEntry) -> None:
        installment = loan.find_installment(original.installment_id) if original.installment_id else None
        today = self.clock.today()

        if original.entry_type.is_payment:
            if installment is None:
                return
            if original.renewal is not None:
                installment.undo_renewal(original.renewal)
            installment.principal_remaining = round_money(installment.principal_remaining + original.principal_delta)
            carried = original.interest_delta - original.accrued_interest_delta
            installment.interest_remaining = round_money(installment.interest_remaining + carried)
            installment.accrued_interest_paid = max(
                ZERO, round_money(installment.accrued_interest_paid - original.accrued_interest_delta)
            )
            installment.paid_principal = max(ZERO, round_money(installment.paid_principal - original.principal_delta))
            installment.paid_interest = max(ZERO, round_money(installment.paid_interest - original.interest_delta))
            installment.paid_late_fee = max(ZERO, round_money(installment.paid_late_fee - original.late_fee_delta))
            installment.paid_total = max(ZERO, round_money(installment.paid_total - original.amount))
            installment.status = installment_status(installment, today, self.config.installment_paid_tolerance)
            installment.updated_at = self.clock.now()
            self.loans.save_installment(installment)
            return

        # Disbursements: take the amount back out of the loan's principal
        if original.entry_type == LedgerEntryType.NOVO_APORTE and installment is not None:
            installment.principal_remaining = max(ZERO, round_money(installment.principal_remaining - original.amount))
            installment.scheduled_principal = max(ZERO, round_money(installment.scheduled_principal - original.amount))
            installment.status = installment_status(installment, today, self.config.installment_paid_tolerance)
            installment.updated_at = self.clock.now()
            self.loans.save_installment(installment)
            loan.total_to_receive = max(ZERO, round_money(loan.total_to_receive - original.amount))

        loan.principal = max(ZERO, round_money(loan.principal - original.amount))
        loan.updated_at = self.clock.now()
        self.loans.save_header(loan)

    def _later_payments(self, original: LedgerEntry) -> List[LedgerEntry]:
        """Unreversed payments on the same installment posted after ``original``"""
        entries = self.entries.list_for_loan(original.loan_id)
        reversed_ids = {entry.reverses for entry in entries if entry.reverses}
        seen = False
        later = []
        for entry in entries:
            if entry.id == original.id:
                seen = True
                continue
            if (seen and entry.installment_id == original.installment_id
                    and entry.entry_type.is_payment and entry.id not in reversed_ids):
                later.append(entry)
        return later

    def _adjust_source(self, source_id: str, capital_delta: Decimal, profit_delta: Decimal,
                       entry: LedgerEntry, correlation_id: Optional[str] = None) -> Decimal:
        with self.storage.atomic():
            source = self.sources.get(source_id)
            new_balance = source.balance
            new_profit = source.profit_balance
            if capital_delta != 0:
                new_balance = self.sources.adjust_balance(source_id, capital_delta)
            if profit_delta != 0:
                new_profit = self.sources.adjust_profit(source_id, profit_delta)

        self.audit_trail.log_event(
            event_type=AuditEventType.SOURCE_BALANCE_ADJUSTED,
            entity_type="capital_source",
            entity_id=source_id,
            metadata={
                "delta": str(capital_delta),
                "balance": str(new_balance),
                "profit_delta": str(profit_delta),
                "profit_balance": str(new_profit),
                "ledger_entry_id": entry.id,
            },
            correlation_id=correlation_id
        )
        log_action(
            logger, "info", f"Source {source_id} adjusted by {capital_delta} capital, {profit_delta} profit",
            action="adjust_source", resource=f"capital_source:{source_id}",
            correlation_id=correlation_id,
            extra={
                "delta": str(capital_delta),
                "balance": str(new_balance),
                "profit_delta": str(profit_delta),
                "profit_balance": str(new_profit),
                "entry_id": entry.id,
            }
        )
        return new_balance

    def withdraw_profit(
        self,
        source_id: str,
        amount,
        target_source_id: Optional[str] = None,
        notes: str = "",
        deadline: Optional[Deadline] = None
    ) -> OperationResult:
        """
        Take accumulated profit out of a capital source.

        Records a WITHDRAW_PROFIT entry that lowers the source's profit. With
        ``target_source_id`` the money is reinvested: an ADJUSTMENT entry adds
        it to the target's capital balance.

        Returns:
            OperationResult whose ``value`` is the WITHDRAW_PROFIT entry

        Raises:
            ValidationError: On a non-positive amount or one above the profit available
            NotFoundError: If either source does not exist
            OperationFailedError: If a persistence step fails part way
        """
        amount = require_positive(round_money(to_decimal(amount)), "profit withdrawal")
        deadline = deadline or Deadline.from_seconds(self.config.persistence_deadline_seconds)
        timeout = max(0.0, deadline.remaining()) if deadline else None

        with self.locks.hold(source_id, timeout=timeout):
            source = self.sources.get(source_id)
            if amount > source.profit_balance:
                raise ValidationError(
                    f"Insufficient profit on source {source_id}: {source.profit_balance} available, {amount} requested"
                )
            target = self.sources.get(target_source_id) if target_source_id else None

            entry = self.new_entry(
                loan_id=None,
                entry_type=LedgerEntryType.WITHDRAW_PROFIT,
                amount=amount,
                source_id=source_id,
                category=LedgerCategory.SISTEMA,
                notes=notes or "Saque de lucro",
            )
            result = OperationResult(operation="ledger.withdraw_profit")
            self.post(entry, deadline=deadline, result=result)

            if target is not None:
                reinvestment = self.new_entry(
                    loan_id=None,
                    entry_type=LedgerEntryType.ADJUSTMENT,
                    amount=amount,
                    source_id=target.id,
                    category=LedgerCategory.SISTEMA,
                    notes=f"Reinvestimento de lucro. Ref={entry.id}",
                )
                reinvest_result = OperationResult(
                    operation="ledger.reinvest_profit", correlation_id=result.correlation_id
                )
                self.post(reinvestment, deadline=deadline, result=reinvest_result)
                result.steps.extend(reinvest_result.steps)
            else:
                result.skipped("reinvest_profit", "no target source")

            self.audit_trail.log_event(
                event_type=AuditEventType.PROFIT_WITHDRAWN,
                entity_type="capital_source",
                entity_id=source_id,
                metadata={
                    "amount": str(amount),
                    "ledger_entry_id": entry.id,
                    "target_source_id": target_source_id,
                },
                correlation_id=result.correlation_id
            )
            log_action(
                logger, "info", f"Withdrew {amount} profit from source {source_id}",
                action="withdraw_profit", resource=f"capital_source:{source_id}",
                correlation_id=result.correlation_id,
                extra={"target_source_id": target_source_id}
            )
            result.value = entry
            return result

    def _log_posted(self, entry: LedgerEntry, correlation_id: str) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.LEDGER_ENTRY_POSTED,
            entity_type="ledger_entry",
            entity_id=entry.id,
            metadata={
                "loan_id": entry.loan_id,
                "entry_type": entry.entry_type.value,
                "amount": str(entry.amount),
                "installment_id": entry.installment_id,
                "agreement_id": entry.agreement_id,
            },
            correlation_id=correlation_id
        )
        log_action(
            logger, "info", f"Posted {entry.entry_type.value} of {entry.amount}",
            action="post_entry", resource=f"loan:{entry.loan_id}",
            correlation_id=correlation_id,
            extra={"entry_id": entry.id, "amount": str(entry.amount)}
        )

    def list_entries(self, loan_id: str) -> List[LedgerEntry]:
        """Ledger of a loan ordered by date"""
        return self.entries.list_for_loan(loan_id)

    def list_source_entries(self, source_id: str) -> List[LedgerEntry]:
        """Every entry that moved a capital source, loan-level or not"""
        return self.entries.list_for_source(source_id)

    def is_reversible(self, entry: LedgerEntry) -> bool:
        return reversal_block_reason(entry) is None and self.entries.find_reversal_of(entry.id) is None

    def rebuild_installments(self, loan: Loan, baseline: Optional[List[Installment]] = None) -> List[Installment]:
        """
        Recompute installment balances by replaying the ledger.

        Args:
            loan: Loan whose ledger is replayed
            baseline: Scheduled installments to replay onto; defaults to the
                loan's installments with every effect of the ledger removed

        Returns:
            New Installment objects; nothing is persisted
        """
        entries = self.entries.list_for_loan(loan.id)
        by_id = {entry.id: entry for entry in entries}
        if baseline is None:
            baseline = [self._scheduled_baseline(inst, entries, by_id) for inst in loan.installments]

        # Renewals move due dates; replay starts from the date before the first one
        first_due: Dict[str, date] = {}
        for entry in entries:
            if entry.renewal is not None and entry.installment_id not in first_due:
                first_due[entry.installment_id] = entry.renewal.previous_due_date

        rebuilt: Dict[str, Installment] = {}
        for inst in baseline:
            rebuilt[inst.id] = replace(
                inst,
                due_date=first_due.get(inst.id, inst.due_date),
                late_fee_accrued=ZERO if inst.id in first_due else inst.late_fee_accrued,
                principal_remaining=inst.scheduled_principal,
                interest_remaining=inst.scheduled_interest,
                paid_principal=ZERO,
                paid_interest=ZERO,
                paid_late_fee=ZERO,
                paid_total=ZERO,
                accrued_interest_paid=ZERO,
            )

        for entry in entries:
            inst = rebuilt.get(entry.installment_id) if entry.installment_id else None
            if inst is None:
                continue
            effective_type = entry.entry_type
            original = None
            if effective_type == LedgerEntryType.ESTORNO and entry.reverses in by_id:
                original = by_id[entry.reverses]
                effective_type = original.entry_type

            if effective_type in INSTALLMENT_PAYMENT_TYPES:
                if original is not None and original.renewal is not None:
                    inst.undo_renewal(original.renewal)
                inst.principal_remaining = round_money(inst.principal_remaining - entry.principal_delta)
                carried = entry.interest_delta - entry.accrued_interest_delta
                inst.interest_remaining = round_money(inst.interest_remaining - carried)
                inst.accrued_interest_paid = round_money(inst.accrued_interest_paid + entry.accrued_interest_delta)
                inst.paid_principal = round_money(inst.paid_principal + entry.principal_delta)
                inst.paid_interest = round_money(inst.paid_interest + entry.interest_delta)
                inst.paid_late_fee = round_money(inst.paid_late_fee + entry.late_fee_delta)
                inst.paid_total = round_money(inst.paid_total + entry.amount)
                if entry.renewal is not None:
                    inst.apply_renewal(entry.renewal)
            elif effective_type == LedgerEntryType.NOVO_APORTE:
                inst.principal_remaining = round_money(inst.principal_remaining + entry.amount)
                inst.scheduled_principal = round_money(inst.scheduled_principal + entry.amount)

        today = self.clock.today()
        result = []
        for inst in baseline:
            item = rebuilt[inst.id]
            # Agreement settlement marks installments PAID without moving balances
            if loan.settled_by_agreement_id and inst.status == InstallmentStatus.PAID:
                item.status = InstallmentStatus.PAID
            else:
                item.status = installment_status(item, today, self.config.installment_paid_tolerance)
            result.append(item)
        return result

    @staticmethod
    def _scheduled_baseline(inst: Installment, entries: List[LedgerEntry],
                            by_id: Dict[str, LedgerEntry]) -> Installment:
        net_aporte = ZERO
        for entry in entries:
            if entry.installment_id != inst.id:
                continue
            if entry.entry_type == LedgerEntryType.NOVO_APORTE:
                net_aporte += entry.amount
            elif entry.entry_type == LedgerEntryType.ESTORNO:
                original = by_id.get(entry.reverses)
                if original is not None and original.entry_type == LedgerEntryType.NOVO_APORTE:
                    net_aporte += entry.amount
        return replace(inst, scheduled_principal=round_money(inst.scheduled_principal - net_aporte))

    def check_consistency(self, loan: Loan) -> None:
        """
        Compare stored installments with the ledger replay.

        Raises:
            ConsistencyError: Listing every installment field that diverges
        """
        problems = []
        for stored, rebuilt in zip(loan.installments, self.rebuild_installments(loan)):
            for name in ("principal_remaining", "interest_remaining", "paid_principal",
                         "paid_interest", "paid_late_fee", "paid_total"):
                if round_money(getattr(stored, name)) != round_money(getattr(rebuilt, name)):
                    problems.append(
                        f"installment {stored.number} {name}: stored {getattr(stored, name)}, "
                        f"ledger {getattr(rebuilt, name)}"
                    )
        if problems:
            log_action(
                logger, "error", f"Loan {loan.id} diverges from its ledger",
                action="check_consistency", resource=f"loan:{loan.id}",
                extra={"problems": problems}
            )
            raise ConsistencyError(f"Loan {loan.id} diverges from its ledger: " + "; ".join(problems))
