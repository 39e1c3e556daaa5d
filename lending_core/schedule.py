"""
Installment Schedule Module

Builds the ordered installments of a new or edited loan from its form state:
principal split, baked-in interest, due dates (fixed-term dates may skip
weekends), fixed-term day counts. On edit, previously persisted due dates win
over freshly computed ones.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional
import uuid

from pydantic import BaseModel, Field, field_validator

from .config import LendingConfig, get_config
from .dates import add_business_days, parse_date_only
from .errors import ValidationError
from .models import BillingCycle, Installment, InstallmentStatus, LEGACY_DAILY_CYCLES
from .modalities import validate_billing_cycle
from .money import (
    ZERO, money_sum, percent_of, require_non_negative, require_positive, round_money,
    split_evenly,
)


class LoanFormState(BaseModel):
    """Commercial terms of a loan as captured at issuance or edit"""
    debtor_name: str = ""
    principal: Decimal
    interest_rate: Decimal
    fine_percent: Decimal = Field(default_factory=lambda: get_config().default_fine_percent)
    daily_interest_percent: Decimal = Field(
        default_factory=lambda: get_config().default_daily_interest_percent
    )
    billing_cycle: str = BillingCycle.MONTHLY.value
    start_date: date
    skip_weekends: bool = False
    fixed_duration_days: Optional[int] = None
    installments_count: int = Field(1, ge=1)
    source_id: Optional[str] = None
    notes: str = ""

    @field_validator("start_date", mode="before")
    @classmethod
    def _parse_start_date(cls, value):
        return parse_date_only(value)

    @field_validator("billing_cycle", mode="before")
    @classmethod
    def _normalize_billing_cycle(cls, value):
        if isinstance(value, BillingCycle):
            return value.value
        return str(value).strip().upper()


@dataclass
class ScheduleResult:
    """Generated installments and the total the loan is expected to return"""
    installments: List[Installment]
    total_to_receive: Decimal


def _new_installment(loan_id: str, number: int, due: date, principal: Decimal,
                     interest: Decimal, now: datetime, previous: Optional[Installment]) -> Installment:
    return Installment(
        id=previous.id if previous else str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_id=loan_id,
        number=number,
        due_date=due,
        scheduled_principal=principal,
        scheduled_interest=interest,
        principal_remaining=principal,
        interest_remaining=interest,
        status=InstallmentStatus.PENDING,
        version=previous.version if previous else 0,
    )


def _monthly(form: LoanFormState, principal: Decimal, config: LendingConfig) -> List[tuple]:
    shares = split_evenly(principal, form.installments_count)
    rows = []
    for index, share in enumerate(shares, start=1):
        # Monthly periods are calendar days; weekend skipping only moves fixed-term dates
        due = add_business_days(form.start_date, config.monthly_period_days * index)
        rows.append((due, share, round_money(percent_of(share, form.interest_rate))))
    return rows


def _daily_free(form: LoanFormState, principal: Decimal, config: LendingConfig) -> List[tuple]:
    # Weekend skipping never applies to open-ended daily accrual
    due = add_business_days(form.start_date, 0, False)
    return [(due, round_money(principal), ZERO)]


def _daily_fixed_term(form: LoanFormState, principal: Decimal, config: LendingConfig) -> List[tuple]:
    duration = form.fixed_duration_days or config.default_fixed_term_days
    if duration < 1:
        raise ValidationError(f"Fixed term must be at least one day, got {duration}")
    count = form.installments_count
    if count > duration:
        raise ValidationError(f"Cannot split {duration} days into {count} installments")

    # Flat fee: the rate applies once to the principal whatever the term length
    total_interest = round_money(percent_of(principal, form.interest_rate))
    principals = split_evenly(principal, count)
    interests = split_evenly(total_interest, count)

    rows = []
    for index in range(1, count + 1):
        offset = int((Decimal(duration) * index / count).to_integral_value())
        due = add_business_days(form.start_date, offset, form.skip_weekends)
        rows.append((due, principals[index - 1], interests[index - 1]))
    return rows


def generate_schedule(
    form: LoanFormState,
    loan_id: str,
    previous: Optional[List[Installment]] = None,
    config: Optional[LendingConfig] = None,
    now: Optional[datetime] = None
) -> ScheduleResult:
    """
    Generate the installment schedule for a loan.

    Args:
        form: Loan terms
        loan_id: Id of the loan the installments belong to
        previous: Persisted installments of the loan being edited; their ids
            are reused by sequence number so installment identity survives edits,
            and their versions carry over so the save still sees concurrent writes
        config: Engine configuration (defaults to the global one)
        now: Creation timestamp for the records

    Returns:
        ScheduleResult with installments ordered by number

    Raises:
        ValidationError: On non-positive principal, negative rates or an
            unknown billing cycle
    """
    config = config or get_config()
    now = now or datetime.now(timezone.utc)

    principal = require_positive(form.principal, "principal")
    require_non_negative(form.interest_rate, "interest_rate")
    require_non_negative(form.fine_percent, "fine_percent")
    require_non_negative(form.daily_interest_percent, "daily_interest_percent")
    cycle = validate_billing_cycle(form.billing_cycle)

    if cycle == BillingCycle.MONTHLY:
        rows = _monthly(form, principal, config)
    elif cycle == BillingCycle.DAILY_FIXED_TERM:
        rows = _daily_fixed_term(form, principal, config)
    elif cycle == BillingCycle.DAILY_FREE or cycle in LEGACY_DAILY_CYCLES:
        rows = _daily_free(form, principal, config)
    else:
        raise ValidationError(f"No schedule generator for billing cycle {cycle.value}")

    previous_by_number = {inst.number: inst for inst in (previous or [])}
    installments = [
        _new_installment(loan_id, number, due, inst_principal, inst_interest, now,
                         previous_by_number.get(number))
        for number, (due, inst_principal, inst_interest) in enumerate(rows, start=1)
    ]

    total = money_sum(inst.scheduled_principal + inst.scheduled_interest for inst in installments)
    return ScheduleResult(installments=installments, total_to_receive=total)


def preserve_existing_due_dates(
    installments: List[Installment],
    previous: List[Installment]
) -> List[Installment]:
    """
    Carry persisted due dates over onto a regenerated schedule.

    Each new installment takes the due date of the previous installment with
    the same id, or failing that the same sequence number. Installments with
    no counterpart keep their computed date.
    """
    by_id: Dict[str, date] = {inst.id: inst.due_date for inst in previous}
    by_number: Dict[int, date] = {inst.number: inst.due_date for inst in previous}

    preserved = []
    for inst in installments:
        if inst.id in by_id:
            preserved.append(replace(inst, due_date=by_id[inst.id]))
        elif inst.number in by_number:
            preserved.append(replace(inst, due_date=by_number[inst.number]))
        else:
            preserved.append(inst)
    return preserved
