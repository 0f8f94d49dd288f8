"""
Expected-vs-counted computation for a day

Merges system totals and the direct expense summary into expected
collections after expenses, then compares them to the counted drawers.
Pure: no I/O and no state.

Expenses rule: the larger of the system figure and the direct summary is
trusted, so expenses the system has not picked up yet are never dropped.
Diffs keep their sign; the tolerance only decides the "balanced" label.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from till_engine.common.validators import ZERO
from till_engine.modules.reconciliation.schemas import (
    Channel, ChannelReconciliation, CountedFigures, DiffStatus,
    ExpenseSummary, ReconciliationResult, SystemTotals,
)

DEFAULT_TOLERANCE = Decimal("1")


def diff_status(diff: Decimal, tolerance: Decimal = DEFAULT_TOLERANCE) -> DiffStatus:
    if abs(diff) < tolerance:
        return DiffStatus.BALANCED
    return DiffStatus.SURPLUS if diff > 0 else DiffStatus.SHORTAGE


def effective_expenses(system: SystemTotals, summary: ExpenseSummary) -> Decimal:
    return max(system.expenses_total, summary.expenses_total)


def expected_after_expenses_total(system: SystemTotals, effective: Decimal,
                                  tolerance: Decimal = DEFAULT_TOLERANCE) -> Decimal:
    """Backend figure when its embedded expenses match the effective ones"""
    backend = system.expected_after_expenses_total
    if backend is not None and abs(system.expenses_total - effective) < tolerance:
        return backend
    return system.expected_collections - effective


def channel_after_expenses(system: SystemTotals, summary: ExpenseSummary, channel: Channel,
                           tolerance: Decimal = DEFAULT_TOLERANCE) -> Decimal:
    """
    Backend per-channel figure unless it under-reports the channel's
    expenses by a whole unit or more; otherwise expected minus the
    expenses paid from that channel.
    """
    expected = system.expected_for(channel)
    direct = summary.for_channel(channel)
    backend = system.after_expenses_for(channel)
    if backend is not None and (expected - backend) > direct - tolerance:
        return backend
    return expected - direct


def reconcile(
    closure_date: date,
    system: Optional[SystemTotals],
    summary: Optional[ExpenseSummary],
    counted: CountedFigures,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> ReconciliationResult:
    """Missing inputs count as all-zero figures"""
    has_system = system is not None
    system = system or SystemTotals()
    summary = summary or ExpenseSummary()

    effective = effective_expenses(system, summary)

    channels = {}
    for channel in Channel:
        expected = system.expected_for(channel)
        after = channel_after_expenses(system, summary, channel, tolerance)
        counted_value = counted.for_channel(channel)
        diff = counted_value - after
        channels[channel] = ChannelReconciliation(
            channel=channel,
            expected=expected,
            expenses=expected - after,
            expected_after_expenses=after,
            counted=counted_value,
            diff=diff,
            status=diff_status(diff, tolerance),
        )

    after_total = expected_after_expenses_total(system, effective, tolerance)
    diff_total = counted.total - after_total

    return ReconciliationResult(
        closure_date=closure_date,
        channels=channels,
        expected_total=system.expected_collections,
        system_expenses_total=system.expenses_total,
        summary_expenses_total=summary.expenses_total,
        effective_expenses_total=effective,
        expected_after_expenses_total=after_total,
        counted_total=counted.total,
        diff_total=diff_total,
        status_total=diff_status(diff_total, tolerance),
        total_sold_amount=system.total_sold_amount,
        profit_realized=system.total_profit_realized_today,
        remaining_profit=system.total_profit_realized_today - effective,
        credit_created=system.credit_created_today,
        credit_paid=system.credit_paid_today,
        credit_payers_count=system.credit_payers_count_today,
        system_missing_expenses=summary.expenses_total > 0 and system.expenses_total == ZERO,
        has_system_totals=has_system,
    )
