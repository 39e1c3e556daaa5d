"""
Lending Data Model Module

Loans, installments, ledger entries, agreements and capital sources as
dataclass records, plus the enums that tag them and the value objects
(LoanPolicy, DueAmount) that flow through the modality calculators.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .dates import parse_date_only
from .money import ZERO, money_sum
from .storage import StorageRecord


class BillingCycle(Enum):
    """Billing modality tags"""
    MONTHLY = "MONTHLY"                    # "Giro": flat interest per 30-day period
    DAILY_FREE = "DAILY_FREE"              # Open-ended, interest accrues per day late
    DAILY_FIXED_TERM = "DAILY_FIXED_TERM"  # Fixed number of days, flat interest

    # Legacy tags still present on older loans
    DAILY = "DAILY"
    DAILY_30_INTEREST = "DAILY_30_INTEREST"
    DAILY_30_CAPITAL = "DAILY_30_CAPITAL"
    DAILY_FIXED = "DAILY_FIXED"

    @classmethod
    def parse(cls, tag: Union["BillingCycle", str]) -> Optional["BillingCycle"]:
        """Return the enum member for a tag, or None when unrecognized"""
        if isinstance(tag, cls):
            return tag
        try:
            return cls(str(tag).strip().upper())
        except ValueError:
            return None


LEGACY_DAILY_CYCLES = (
    BillingCycle.DAILY,
    BillingCycle.DAILY_30_INTEREST,
    BillingCycle.DAILY_30_CAPITAL,
    BillingCycle.DAILY_FIXED,
)


class InstallmentStatus(Enum):
    """Installment (and agreement installment) payment states"""
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    LATE = "LATE"


class LedgerEntryType(Enum):
    """Cash and system events recorded in the ledger"""
    PAYMENT = "PAYMENT"
    PAYMENT_FULL = "PAYMENT_FULL"
    PAYMENT_PARTIAL = "PAYMENT_PARTIAL"
    PAYMENT_INTEREST_ONLY = "PAYMENT_INTEREST_ONLY"
    AGREEMENT_PAYMENT = "AGREEMENT_PAYMENT"
    LEND_MORE = "LEND_MORE"                    # Disbursement
    NOVO_APORTE = "NOVO_APORTE"                # Additional disbursement on an open loan
    WITHDRAW_PROFIT = "WITHDRAW_PROFIT"
    ADJUSTMENT = "ADJUSTMENT"
    ARCHIVE = "ARCHIVE"
    RESTORE = "RESTORE"
    REFUND_SOURCE_CHANGE = "REFUND_SOURCE_CHANGE"
    ESTORNO = "ESTORNO"                        # Compensating reversal

    @property
    def is_payment(self) -> bool:
        return "PAYMENT" in self.value

    @property
    def is_disbursement(self) -> bool:
        return self in (LedgerEntryType.LEND_MORE, LedgerEntryType.NOVO_APORTE)


INSTALLMENT_PAYMENT_TYPES = (
    LedgerEntryType.PAYMENT,
    LedgerEntryType.PAYMENT_FULL,
    LedgerEntryType.PAYMENT_PARTIAL,
    LedgerEntryType.PAYMENT_INTEREST_ONLY,
)


class LedgerCategory(Enum):
    """Reporting category of a ledger entry"""
    RECEITA = "RECEITA"              # Revenue from installment payments
    INVESTIMENTO = "INVESTIMENTO"    # Capital lent out
    RECUPERACAO = "RECUPERACAO"      # Recovery through agreements
    ESTORNO = "ESTORNO"
    GERAL = "GERAL"
    AUDIT = "AUDIT"
    SISTEMA = "SISTEMA"


NON_REVERSIBLE_CATEGORIES = (LedgerCategory.AUDIT, LedgerCategory.SISTEMA)


class AgreementStatus(Enum):
    """Agreement lifecycle states"""
    ACTIVE = "ACTIVE"
    PAID = "PAID"
    BROKEN = "BROKEN"


class AgreementFrequency(Enum):
    """Spacing of agreement installments"""
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"

    @property
    def step_days(self) -> int:
        return {
            AgreementFrequency.WEEKLY: 7,
            AgreementFrequency.BIWEEKLY: 15,
            AgreementFrequency.MONTHLY: 30,
        }[self]

    def months_for(self, installments_count: int) -> Decimal:
        """Plan duration in months for simple-interest agreements"""
        count = Decimal(installments_count)
        if self == AgreementFrequency.WEEKLY:
            return count / Decimal("4")
        if self == AgreementFrequency.BIWEEKLY:
            return count / Decimal("2")
        return count


class AgreementType(Enum):
    """How the negotiated total is derived from the debt"""
    PARCELADO_COM_JUROS = "PARCELADO_COM_JUROS"  # Installments with simple interest
    PARCELADO_SEM_JUROS = "PARCELADO_SEM_JUROS"  # Installments without interest


class CapitalSourceType(Enum):
    """Kinds of funding pool"""
    CASH = "CASH"
    CARD = "CARD"
    WALLET = "WALLET"
    BANK = "BANK"


def _dec(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else ZERO


def _opt_date(value: Any) -> Optional[date]:
    return parse_date_only(value) if value else None


def _opt_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class LoanPolicy:
    """Snapshot of a loan's commercial terms handed to the calculators"""
    billing_cycle: str
    interest_rate: Decimal
    fine_percent: Decimal
    daily_interest_percent: Decimal
    start_date: date
    skip_weekends: bool = False
    fixed_duration_days: Optional[int] = None


@dataclass(frozen=True)
class DueAmount:
    """What is owed on one installment as of a given date"""
    total: Decimal
    principal: Decimal
    interest: Decimal
    late_fee: Decimal
    base_for_fine: Decimal
    days_late: int
    fine_part: Decimal = ZERO     # Fixed fine portion of late_fee
    mora_part: Decimal = ZERO     # Per-day late interest portion of late_fee
    accrued_interest: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": str(self.total),
            "principal": str(self.principal),
            "interest": str(self.interest),
            "late_fee": str(self.late_fee),
            "base_for_fine": str(self.base_for_fine),
            "days_late": self.days_late,
            "fine_part": str(self.fine_part),
            "mora_part": str(self.mora_part),
            "accrued_interest": str(self.accrued_interest),
        }


@dataclass(frozen=True)
class Renewal:
    """
    Roll-over of an installment into a new billing period.

    Recorded on the interest-only payment that triggered it so the ledger
    replay, and a reversal, can redo or undo it exactly.
    """
    previous_due_date: date
    due_date: date
    interest_added: Decimal              # Interest seeded for the new period
    late_fee_paid_cleared: Decimal       # paid_late_fee of the closed period
    accrued_interest_paid_cleared: Decimal

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Renewal"]:
        if not data:
            return None
        return cls(
            previous_due_date=parse_date_only(data["previous_due_date"]),
            due_date=parse_date_only(data["due_date"]),
            interest_added=_dec(data.get("interest_added")),
            late_fee_paid_cleared=_dec(data.get("late_fee_paid_cleared")),
            accrued_interest_paid_cleared=_dec(data.get("accrued_interest_paid_cleared")),
        )


@dataclass
class Installment(StorageRecord):
    """
    One scheduled repayment of a loan.

    ``paid_late_fee`` and ``accrued_interest_paid`` count what was collected in
    the current billing period and are cleared when the installment is renewed;
    the other ``paid_*`` fields are lifetime totals.
    """
    loan_id: str
    number: int
    due_date: date
    scheduled_principal: Decimal
    scheduled_interest: Decimal
    principal_remaining: Decimal
    interest_remaining: Decimal
    late_fee_accrued: Decimal = ZERO
    paid_principal: Decimal = ZERO
    paid_interest: Decimal = ZERO
    paid_late_fee: Decimal = ZERO
    paid_total: Decimal = ZERO
    accrued_interest_paid: Decimal = ZERO  # Day-accrued interest collected beyond interest_remaining
    status: InstallmentStatus = InstallmentStatus.PENDING
    last_payment_date: Optional[date] = None
    version: int = 0

    def apply_renewal(self, renewal: Renewal) -> None:
        self.due_date = renewal.due_date
        self.interest_remaining = money_sum([self.interest_remaining, renewal.interest_added])
        self.paid_late_fee = ZERO
        self.accrued_interest_paid = ZERO
        self.late_fee_accrued = ZERO

    def undo_renewal(self, renewal: Renewal) -> None:
        self.due_date = renewal.previous_due_date
        self.interest_remaining = money_sum([self.interest_remaining, -renewal.interest_added])
        self.paid_late_fee = renewal.late_fee_paid_cleared
        self.accrued_interest_paid = renewal.accrued_interest_paid_cleared

    @property
    def scheduled_amount(self) -> Decimal:
        return money_sum([self.scheduled_principal, self.scheduled_interest])

    @property
    def remaining_amount(self) -> Decimal:
        return money_sum([self.principal_remaining, self.interest_remaining])

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Installment":
        data = cls._parse_timestamps(data)
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            loan_id=data["loan_id"],
            number=int(data["number"]),
            due_date=parse_date_only(data["due_date"]),
            scheduled_principal=_dec(data["scheduled_principal"]),
            scheduled_interest=_dec(data["scheduled_interest"]),
            principal_remaining=_dec(data["principal_remaining"]),
            interest_remaining=_dec(data["interest_remaining"]),
            late_fee_accrued=_dec(data.get("late_fee_accrued")),
            paid_principal=_dec(data.get("paid_principal")),
            paid_interest=_dec(data.get("paid_interest")),
            paid_late_fee=_dec(data.get("paid_late_fee")),
            paid_total=_dec(data.get("paid_total")),
            accrued_interest_paid=_dec(data.get("accrued_interest_paid")),
            status=InstallmentStatus(data.get("status", "PENDING")),
            last_payment_date=_opt_date(data.get("last_payment_date")),
            version=int(data.get("version", 0)),
        )


@dataclass
class LedgerEntry(StorageRecord):
    """
    Immutable record of one cash or system event on a loan.

    Deltas are what the event did to the installment: a payment carries
    positive principal/interest/late-fee deltas, its reversal carries the
    same values negated. Source-level entries (profit withdrawals and the
    reinvestments they fund) carry no loan.
    """
    loan_id: Optional[str]
    entry_type: LedgerEntryType
    amount: Decimal
    entry_date: datetime
    principal_delta: Decimal = ZERO
    interest_delta: Decimal = ZERO
    late_fee_delta: Decimal = ZERO
    accrued_interest_delta: Decimal = ZERO  # Part of interest_delta that settled day-accrued interest
    source_id: Optional[str] = None
    installment_id: Optional[str] = None
    agreement_id: Optional[str] = None
    category: LedgerCategory = LedgerCategory.GERAL
    notes: str = ""
    reverses: Optional[str] = None  # Id of the entry this ESTORNO compensates
    renewal: Optional[Renewal] = None

    @property
    def is_reversal(self) -> bool:
        return self.entry_type == LedgerEntryType.ESTORNO

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        data = cls._parse_timestamps(data)
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            loan_id=data.get("loan_id"),
            entry_type=LedgerEntryType(data["entry_type"]),
            amount=_dec(data["amount"]),
            entry_date=_opt_datetime(data["entry_date"]),
            principal_delta=_dec(data.get("principal_delta")),
            interest_delta=_dec(data.get("interest_delta")),
            late_fee_delta=_dec(data.get("late_fee_delta")),
            accrued_interest_delta=_dec(data.get("accrued_interest_delta")),
            source_id=data.get("source_id"),
            installment_id=data.get("installment_id"),
            agreement_id=data.get("agreement_id"),
            category=LedgerCategory(data.get("category", "GERAL")),
            notes=data.get("notes") or "",
            reverses=data.get("reverses"),
            renewal=Renewal.from_dict(data.get("renewal")),
        )


@dataclass
class Loan(StorageRecord):
    """A loan, its terms and (loaded alongside it) its installments and ledger"""
    debtor_name: str
    principal: Decimal
    interest_rate: Decimal
    fine_percent: Decimal
    daily_interest_percent: Decimal
    billing_cycle: str
    start_date: date
    skip_weekends: bool = False
    fixed_duration_days: Optional[int] = None
    source_id: Optional[str] = None
    total_to_receive: Decimal = ZERO
    active_agreement_id: Optional[str] = None
    settled_by_agreement_id: Optional[str] = None  # Agreement whose completion settled the loan
    is_archived: bool = False
    notes: str = ""
    installments: List[Installment] = field(default_factory=list)
    ledger: List[LedgerEntry] = field(default_factory=list)

    _transient_fields = ("installments", "ledger")

    @property
    def policy(self) -> LoanPolicy:
        return LoanPolicy(
            billing_cycle=self.billing_cycle,
            interest_rate=self.interest_rate,
            fine_percent=self.fine_percent,
            daily_interest_percent=self.daily_interest_percent,
            start_date=self.start_date,
            skip_weekends=self.skip_weekends,
            fixed_duration_days=self.fixed_duration_days,
        )

    @property
    def unpaid_principal(self) -> Decimal:
        """Sum of all installments' remaining principal"""
        return money_sum(inst.principal_remaining for inst in self.installments)

    @property
    def open_installments(self) -> List[Installment]:
        return [inst for inst in self.installments if not inst.is_paid]

    @property
    def has_active_agreement(self) -> bool:
        return self.active_agreement_id is not None

    def find_installment(self, installment_id: str) -> Optional[Installment]:
        for inst in self.installments:
            if inst.id == installment_id:
                return inst
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Loan":
        data = cls._parse_timestamps(data)
        duration = data.get("fixed_duration_days")
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            debtor_name=data.get("debtor_name", ""),
            principal=_dec(data["principal"]),
            interest_rate=_dec(data["interest_rate"]),
            fine_percent=_dec(data.get("fine_percent")),
            daily_interest_percent=_dec(data.get("daily_interest_percent")),
            billing_cycle=data["billing_cycle"],
            start_date=parse_date_only(data["start_date"]),
            skip_weekends=bool(data.get("skip_weekends", False)),
            fixed_duration_days=int(duration) if duration is not None else None,
            source_id=data.get("source_id"),
            total_to_receive=_dec(data.get("total_to_receive")),
            active_agreement_id=data.get("active_agreement_id"),
            settled_by_agreement_id=data.get("settled_by_agreement_id"),
            is_archived=bool(data.get("is_archived", False)),
            notes=data.get("notes") or "",
        )


@dataclass
class AgreementInstallment(StorageRecord):
    """One installment of a renegotiated plan"""
    agreement_id: str
    number: int
    due_date: date
    amount: Decimal
    paid_amount: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None

    @property
    def outstanding(self) -> Decimal:
        return money_sum([self.amount, -self.paid_amount])

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgreementInstallment":
        data = cls._parse_timestamps(data)
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            agreement_id=data["agreement_id"],
            number=int(data["number"]),
            due_date=parse_date_only(data["due_date"]),
            amount=_dec(data["amount"]),
            paid_amount=_dec(data.get("paid_amount")),
            status=InstallmentStatus(data.get("status", "PENDING")),
            paid_date=_opt_date(data.get("paid_date")),
        )


@dataclass
class Agreement(StorageRecord):
    """Renegotiated payment plan replacing a defaulted loan's schedule"""
    loan_id: str
    total_debt_at_negotiation: Decimal
    negotiated_total: Decimal
    interest_rate: Decimal
    installments_count: int
    frequency: AgreementFrequency
    agreement_type: AgreementType = AgreementType.PARCELADO_COM_JUROS
    status: AgreementStatus = AgreementStatus.ACTIVE
    first_due_date: Optional[date] = None
    closed_at: Optional[datetime] = None
    installments: List[AgreementInstallment] = field(default_factory=list)

    _transient_fields = ("installments",)

    @property
    def is_active(self) -> bool:
        return self.status == AgreementStatus.ACTIVE

    @property
    def total_paid(self) -> Decimal:
        return money_sum(inst.paid_amount for inst in self.installments)

    @property
    def pending_installments(self) -> List[AgreementInstallment]:
        return [inst for inst in self.installments if inst.status != InstallmentStatus.PAID]

    def find_installment(self, installment_id: str) -> Optional[AgreementInstallment]:
        for inst in self.installments:
            if inst.id == installment_id:
                return inst
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Agreement":
        data = cls._parse_timestamps(data)
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            loan_id=data["loan_id"],
            total_debt_at_negotiation=_dec(data["total_debt_at_negotiation"]),
            negotiated_total=_dec(data["negotiated_total"]),
            interest_rate=_dec(data.get("interest_rate")),
            installments_count=int(data["installments_count"]),
            frequency=AgreementFrequency(data["frequency"]),
            agreement_type=AgreementType(data.get("agreement_type", "PARCELADO_COM_JUROS")),
            status=AgreementStatus(data.get("status", "ACTIVE")),
            first_due_date=_opt_date(data.get("first_due_date")),
            closed_at=_opt_datetime(data.get("closed_at")),
        )


@dataclass
class CapitalSource(StorageRecord):
    """
    Pool of funds loans are disbursed from and repaid into.

    ``balance`` is lent capital: disbursements draw on it and repaid principal
    returns to it. It may go negative, since disbursements are allowed to
    overdraw. ``profit_balance`` collects the interest and late fees earned
    on the source's loans until they are withdrawn.
    """
    name: str
    source_type: CapitalSourceType
    balance: Decimal = ZERO
    profit_balance: Decimal = ZERO

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CapitalSource":
        data = cls._parse_timestamps(data)
        return cls(
            id=data["id"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            name=data["name"],
            source_type=CapitalSourceType(data.get("source_type", "CASH")),
            balance=_dec(data.get("balance")),
            profit_balance=_dec(data.get("profit_balance")),
        )
