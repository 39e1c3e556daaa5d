"""
Modality Calculation Module

One pure function per billing regime computing what an installment owes on a
given day, and the lookup-table dispatcher that routes a loan's billing-cycle
tag to its calculator. Calculators never mutate their inputs and never read
the wall clock: "today" is always passed in.
"""

from datetime import date
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple, Union

from .config import LendingConfig, get_config
from .dates import add_business_days, days_between, days_late as raw_days_late
from .errors import ValidationError
from .logging_config import get_logger, log_action
from .models import (
    BillingCycle, DueAmount, Installment, InstallmentStatus, LEGACY_DAILY_CYCLES,
    Loan, LoanPolicy, Renewal,
)
from .money import ZERO, percent_of, require_non_negative, round_money

logger = get_logger("lending.modalities")

Calculator = Callable[[LoanPolicy, Installment, date], DueAmount]
Renewer = Callable[..., Optional[Renewal]]

THIRTY = Decimal("30")


def _validated_balances(policy: LoanPolicy, installment: Installment) -> Tuple[Decimal, Decimal]:
    principal = require_non_negative(installment.principal_remaining, "principal_remaining")
    interest = require_non_negative(installment.interest_remaining, "interest_remaining")
    require_non_negative(policy.interest_rate, "interest_rate")
    require_non_negative(policy.fine_percent, "fine_percent")
    require_non_negative(policy.daily_interest_percent, "daily_interest_percent")
    return principal, interest


def _net_of_paid(charged: Decimal, already_paid: Decimal) -> Decimal:
    """Part of a cumulative charge not yet collected"""
    return max(ZERO, round_money(charged - already_paid))


def _interest_only(interest: Decimal, days: int) -> DueAmount:
    """Result for an installment whose principal is fully repaid"""
    interest = round_money(interest)
    return DueAmount(
        total=interest,
        principal=ZERO,
        interest=interest,
        late_fee=ZERO,
        base_for_fine=ZERO,
        days_late=days,
    )


def calculate_monthly(policy: LoanPolicy, installment: Installment, today: date) -> DueAmount:
    """
    Monthly ("Giro") regime.

    Interest for the period is already baked into ``interest_remaining``.
    Once the due date has passed, a fixed fine of ``fine_percent`` plus a
    daily late interest of ``daily_interest_percent`` per day late are charged
    over principal + interest. The late fee is cumulative, so what was already
    collected (``paid_late_fee``) is netted out.
    """
    principal, interest = _validated_balances(policy, installment)
    days = max(0, raw_days_late(installment.due_date, today))

    if principal == 0:
        return _interest_only(interest, days)

    base = principal + interest
    fine_part = ZERO
    mora_part = ZERO
    if days > 0 and base > 0:
        fine_part = round_money(percent_of(base, policy.fine_percent))
        mora_part = round_money(percent_of(base, policy.daily_interest_percent) * days)
    late_fee = _net_of_paid(round_money(fine_part + mora_part), installment.paid_late_fee)

    return DueAmount(
        total=round_money(principal + interest + late_fee),
        principal=round_money(principal),
        interest=round_money(interest),
        late_fee=late_fee,
        base_for_fine=round_money(base),
        days_late=days,
        fine_part=fine_part,
        mora_part=mora_part,
    )


def calculate_daily_free(policy: LoanPolicy, installment: Installment, today: date) -> DueAmount:
    """
    Daily free regime.

    Every day late costs ``interest_rate / 30`` percent of the remaining
    principal. There is no separate late fee; the accrued interest is the
    penalty.
    """
    principal, interest = _validated_balances(policy, installment)
    days = max(0, raw_days_late(installment.due_date, today))

    if principal == 0:
        return _interest_only(interest, days)

    daily_cost = round_money(principal * (policy.interest_rate / THIRTY) / Decimal("100"))
    accrued = round_money(daily_cost * days) if days > 0 else ZERO
    accrued = _net_of_paid(accrued, installment.accrued_interest_paid)
    total_interest = round_money(interest + accrued)

    return DueAmount(
        total=round_money(principal + total_interest),
        principal=round_money(principal),
        interest=total_interest,
        late_fee=ZERO,
        base_for_fine=ZERO,
        days_late=days,
        accrued_interest=accrued,
    )


def calculate_daily_fixed_term(policy: LoanPolicy, installment: Installment, today: date) -> DueAmount:
    """
    Daily fixed-term regime (also the legacy "Daily 30" cost model).

    Once the installment is past due, interest is charged for every day since
    the loan's start date at ``(interest_rate / 100) / 30`` of the remaining
    principal, plus a single flat late fee of ``fine_percent`` of principal
    that does not grow with further days late.
    """
    principal, interest = _validated_balances(policy, installment)
    days = max(0, raw_days_late(installment.due_date, today))

    if principal == 0:
        return _interest_only(interest, days)

    accrued = ZERO
    late_fee = ZERO
    if days > 0:
        active_days = max(0, days_between(policy.start_date, today))
        accrued = round_money(principal * (policy.interest_rate / Decimal("100")) / THIRTY * active_days)
        accrued = _net_of_paid(accrued, installment.accrued_interest_paid)
        late_fee = _net_of_paid(round_money(percent_of(principal, policy.fine_percent)), installment.paid_late_fee)
    total_interest = round_money(interest + accrued)

    return DueAmount(
        total=round_money(principal + total_interest + late_fee),
        principal=round_money(principal),
        interest=total_interest,
        late_fee=late_fee,
        base_for_fine=round_money(principal),
        days_late=days,
        fine_part=late_fee,
        accrued_interest=accrued,
    )


def _renewal(installment: Installment, due_date: date, next_interest: Decimal) -> Renewal:
    return Renewal(
        previous_due_date=installment.due_date,
        due_date=due_date,
        interest_added=round_money(next_interest - installment.interest_remaining),
        late_fee_paid_cleared=round_money(installment.paid_late_fee),
        accrued_interest_paid_cleared=round_money(installment.accrued_interest_paid),
    )


def renew_monthly(
    policy: LoanPolicy,
    installment: Installment,
    principal_paid: Decimal,
    interest_paid: Decimal,
    today: date,
    manual_due_date: Optional[date] = None,
    config: Optional[LendingConfig] = None
) -> Optional[Renewal]:
    """
    Roll a Monthly installment into its next period.

    The new period starts on the current due date, so paying early or late
    keeps the monthly cycle in place. A manual date replaces that start; a
    late payment that also repaid principal restarts the cycle today. The
    new period owes the flat rate over the principal still outstanding.
    """
    config = config or get_config()
    if installment.principal_remaining <= 0:
        return None

    if manual_due_date is not None:
        start = manual_due_date
    elif raw_days_late(installment.due_date, today) > 0 and principal_paid > 0:
        start = today
    else:
        start = installment.due_date

    next_interest = round_money(percent_of(installment.principal_remaining, policy.interest_rate))
    return _renewal(installment, add_business_days(start, config.monthly_period_days), next_interest)


def renew_daily_free(
    policy: LoanPolicy,
    installment: Installment,
    principal_paid: Decimal,
    interest_paid: Decimal,
    today: date,
    manual_due_date: Optional[date] = None,
    config: Optional[LendingConfig] = None
) -> Optional[Renewal]:
    """
    Move a daily free installment's paid-until date.

    Each full day's interest paid buys one more calendar day; a manual date
    wins outright. Pending interest is cleared.
    """
    principal_before = round_money(installment.principal_remaining + principal_paid)
    if installment.principal_remaining <= 0:
        return None

    if manual_due_date is not None:
        return _renewal(installment, manual_due_date, ZERO)

    daily_cost = round_money(principal_before * (policy.interest_rate / THIRTY) / Decimal("100"))
    if daily_cost <= 0:
        return None
    days = int(interest_paid // daily_cost)
    if days <= 0:
        return None
    return _renewal(installment, add_business_days(installment.due_date, days), ZERO)


def renew_daily_fixed_term(
    policy: LoanPolicy,
    installment: Installment,
    principal_paid: Decimal,
    interest_paid: Decimal,
    today: date,
    manual_due_date: Optional[date] = None,
    config: Optional[LendingConfig] = None
) -> Optional[Renewal]:
    """Fixed-term due dates never move; payments only reduce the balance"""
    return None


STRATEGIES: Dict[BillingCycle, Calculator] = {
    BillingCycle.MONTHLY: calculate_monthly,
    BillingCycle.DAILY_FREE: calculate_daily_free,
    BillingCycle.DAILY_FIXED_TERM: calculate_monthly,
}
for _legacy in LEGACY_DAILY_CYCLES:
    STRATEGIES[_legacy] = calculate_monthly

# Renewal follows whichever calculator a tag resolves to
RENEWALS: Dict[Calculator, Renewer] = {
    calculate_monthly: renew_monthly,
    calculate_daily_free: renew_daily_free,
    calculate_daily_fixed_term: renew_daily_fixed_term,
}


def resolve_strategy(
    billing_cycle: Union[BillingCycle, str],
    config: Optional[LendingConfig] = None
) -> Tuple[Calculator, bool]:
    """
    Pick the calculator for a billing-cycle tag.

    DAILY_FIXED_TERM goes to the Monthly calculator unless
    ``route_fixed_term_to_dedicated_strategy`` is enabled. Unrecognized tags
    fall back to Monthly and are logged.

    Returns:
        Tuple of (calculator, fell_back) where ``fell_back`` is True when the
        tag was not recognized
    """
    config = config or get_config()
    cycle = BillingCycle.parse(billing_cycle)

    if cycle is None:
        log_action(
            logger, "warning",
            f"Unrecognized billing cycle {billing_cycle!r}, using monthly calculator",
            action="dispatch_fallback",
            extra={"billing_cycle": str(billing_cycle)}
        )
        return calculate_monthly, True

    if cycle == BillingCycle.DAILY_FIXED_TERM and config.route_fixed_term_to_dedicated_strategy:
        return calculate_daily_fixed_term, False

    return STRATEGIES[cycle], False


def dispatch(billing_cycle: Union[BillingCycle, str], config: Optional[LendingConfig] = None) -> Calculator:
    """Calculator for a billing-cycle tag"""
    strategy, _ = resolve_strategy(billing_cycle, config)
    return strategy


def calculate_due(
    loan: Union[Loan, LoanPolicy],
    installment: Installment,
    today: date,
    config: Optional[LendingConfig] = None
) -> DueAmount:
    """Dispatch on the loan's billing cycle and compute the installment's due amount"""
    policy = loan.policy if isinstance(loan, Loan) else loan
    return dispatch(policy.billing_cycle, config)(policy, installment, today)


def renew_installment(
    loan: Union[Loan, LoanPolicy],
    installment: Installment,
    principal_paid: Decimal,
    interest_paid: Decimal,
    today: date,
    manual_due_date: Optional[date] = None,
    config: Optional[LendingConfig] = None
) -> Optional[Renewal]:
    """
    Work out how an interest-only payment renews an installment.

    ``installment`` is the installment with the payment already applied.

    Returns:
        The Renewal to apply, or None when the modality keeps its dates
    """
    policy = loan.policy if isinstance(loan, Loan) else loan
    renewer = RENEWALS[dispatch(policy.billing_cycle, config)]
    return renewer(policy, installment, principal_paid, interest_paid, today, manual_due_date, config)


def installment_status(
    installment: Installment,
    today: date,
    tolerance: Optional[Decimal] = None
) -> InstallmentStatus:
    """
    Status implied by an installment's balances.

    PAID when remaining principal + interest is within ``tolerance``, LATE
    when past due, PARTIAL when something was paid, otherwise PENDING.
    """
    if tolerance is None:
        tolerance = get_config().installment_paid_tolerance
    if installment.principal_remaining + installment.interest_remaining <= tolerance:
        return InstallmentStatus.PAID
    if raw_days_late(installment.due_date, today) > 0:
        return InstallmentStatus.LATE
    if installment.paid_total > 0:
        return InstallmentStatus.PARTIAL
    return InstallmentStatus.PENDING


def validate_billing_cycle(billing_cycle: Union[BillingCycle, str]) -> BillingCycle:
    """Strict tag check used when a loan is created or edited"""
    cycle = BillingCycle.parse(billing_cycle)
    if cycle is None:
        raise ValidationError(f"Unknown billing cycle: {billing_cycle!r}")
    return cycle


def outstanding_debt(loan: Loan, today: date, config: Optional[LendingConfig] = None) -> Decimal:
    """Sum of the due totals of every installment not yet PAID"""
    total = ZERO
    for installment in loan.installments:
        if installment.status == InstallmentStatus.PAID:
            continue
        total += calculate_due(loan, installment, today, config).total
    return round_money(total)
