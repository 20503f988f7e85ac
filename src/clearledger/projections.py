"""
Clear Ledger - Ledger Projections

Balances and progress figures are never stored. They are projections computed
on read from ledger sums. This module holds the pure arithmetic so the same
rules apply whether the sums come from SQL aggregates (FinanceEngine) or from
rows already in memory.

Balance identity:
    balance = initial + income - debits + transfers_in - (transfers_out + fees)

Debit definitions (both are used, on purpose):
    NARROW_DEBIT  - 'expense' only. Per-account card view: what was spent.
    ALL_OUTFLOW   - every type that takes money out of the account. Dashboard
                    view: how much money is actually in the account.

Money arithmetic runs on Decimal (floats enter through str(), so 0.1 stays
0.1) and results leave as floats rounded to whole cents, which is what
SQLite REAL columns and the JSON API carry.

License: MIT
"""

import math
from decimal import ROUND_HALF_UP, Decimal

from .periods import days_until, months_between

CENTS = Decimal("0.01")

TRANSACTION_TYPES = ('income', 'expense', 'debt_payment', 'goal_contribution', 'loan_payment')

NARROW_DEBIT = 'narrow_debit'
ALL_OUTFLOW = 'all_outflow'

DEBIT_TYPES = {
    NARROW_DEBIT: ('expense',),
    ALL_OUTFLOW: ('expense', 'debt_payment', 'goal_contribution', 'loan_payment'),
}


def debit_types(mode):
    try:
        return DEBIT_TYPES[mode]
    except KeyError:
        raise ValueError(f"Unknown balance mode: {mode!r}")


# =============================================================================
# MONEY
# =============================================================================

def to_money(value):
    """Convert a stored or computed amount to Decimal for calculations"""
    if value is None or value == '':
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def cents(value):
    """Round a money value to whole cents (half up) and return it as a float"""
    return float(to_money(value).quantize(CENTS, rounding=ROUND_HALF_UP))


def money_sum(values):
    return cents(sum((to_money(v) for v in values), Decimal('0')))


# =============================================================================
# AGGREGATES
# =============================================================================

def empty_aggregate():
    return {'total': 0.0, 'count': 0}


def aggregate_rows(rows, predicate=None, value=None):
    """
    Sum rows in memory with the same shape as the SQL aggregator.

    Args:
        rows (iterable): dict-like rows
        predicate (callable, optional): keep a row when predicate(row) is true
        value (callable, optional): amount extractor, defaults to row['amount']

    Returns:
        dict: {'total': float, 'count': int}; {'total': 0.0, 'count': 0} when
              nothing matches
    """
    total = Decimal('0')
    count = 0
    for row in rows:
        if predicate is not None and not predicate(row):
            continue
        total += to_money(value(row) if value else row['amount'])
        count += 1
    return {'total': cents(total), 'count': count}


# =============================================================================
# BALANCE PROJECTOR
# =============================================================================

def project_balance(initial_balance, income=0.0, debits=0.0, transfers_in=0.0,
                    transfers_out=0.0, transfer_fees=0.0):
    balance = (to_money(initial_balance) + to_money(income) - to_money(debits)
               + to_money(transfers_in) - (to_money(transfers_out) + to_money(transfer_fees)))
    return cents(balance)


def project_account_balance(account, entries, transfers, mode=NARROW_DEBIT):
    """
    Project one account's balance from in-memory ledger rows.

    Only rows owned by the account's owner are considered, so a mixed list of
    rows from several users can never leak into another ledger.

    Returns:
        dict: {'balance', 'stats': {total_income, total_expense, transfers_in,
              transfers_out, transfer_fees}}
    """
    owner = account['user_id']
    account_id = account['id']
    debit_set = debit_types(mode)

    def on_account(row):
        return row['user_id'] == owner and row['account_id'] == account_id

    income = aggregate_rows(entries, lambda r: on_account(r) and r['type'] == 'income')
    debits = aggregate_rows(entries, lambda r: on_account(r) and r['type'] in debit_set)

    incoming = aggregate_rows(
        transfers, lambda r: r['user_id'] == owner and r['to_account_id'] == account_id)
    outgoing = [r for r in transfers if r['user_id'] == owner and r['from_account_id'] == account_id]
    transfers_out = aggregate_rows(outgoing)
    fees = aggregate_rows(outgoing, value=lambda r: r.get('fee') or 0)

    balance = project_balance(
        account.get('initial_balance'),
        income['total'],
        debits['total'],
        incoming['total'],
        transfers_out['total'],
        fees['total'],
    )
    return {
        'balance': balance,
        'stats': {
            'total_income': income['total'],
            'total_expense': debits['total'],
            'transfers_in': incoming['total'],
            'transfers_out': money_sum([transfers_out['total'], fees['total']]),
            'transfer_fees': fees['total'],
        },
    }


def share_percent(part, total):
    """Whole-number share of a total, rounded half up. 0 for an empty total."""
    if not total or total <= 0:
        return 0
    return int(math.floor(float(part) / float(total) * 100 + 0.5))


def counts_toward_total(account, account_ids=None):
    """Active, included in totals, and inside the configured subset if any."""
    if not account.get('is_active') or not account.get('include_in_total'):
        return False
    if account_ids:
        return account['id'] in account_ids
    return True


# =============================================================================
# PROGRESS PROJECTOR
# =============================================================================

def project_progress(target, accumulated):
    """
    Target-vs-accumulated projection shared by goals, debts and loans.

    Args:
        target (float): Goal target or principal, > 0 (checked at creation)
        accumulated (float): Sum of the linked ledger entries

    Returns:
        dict: {'current', 'remaining', 'progress'} where remaining is never
              negative and progress lies in [0, 100], reaching exactly 100
              only when accumulated >= target
    """
    target = to_money(target)
    current = to_money(accumulated)
    remaining = max(Decimal('0'), target - current)

    if current >= target:
        progress = 100.0
    else:
        progress = max(0.0, float(current * 100 / target))
        if progress >= 100.0:
            # float rounding must not report completion before the target
            progress = math.nextafter(100.0, 0.0)

    return {'current': float(current), 'remaining': float(remaining), 'progress': progress}


def project_goal(goal, contributed, today):
    projected = project_progress(goal['target_amount'], contributed)

    suggested = None
    days_remaining = None
    if goal.get('target_date'):
        days_remaining = days_until(goal['target_date'], today)
        if not goal.get('is_completed'):
            months = max(1, months_between(today, goal['target_date']))
            suggested = cents(to_money(projected['remaining']) / months)

    result = dict(goal)
    result.update({
        'current_amount': projected['current'],
        'remaining_amount': projected['remaining'],
        'progress': projected['progress'],
        'suggested_monthly_amount': suggested,
        'days_remaining': days_remaining,
    })
    return result


def project_debt(debt, paid):
    projected = project_progress(debt['principal_amount'], paid)
    result = dict(debt)
    result.update({
        'paid_amount': projected['current'],
        'remaining_amount': projected['remaining'],
        'progress': projected['progress'],
    })
    return result


def project_loan(loan, received):
    projected = project_progress(loan['principal_amount'], received)
    result = dict(loan)
    result.update({
        'received_amount': projected['current'],
        'remaining_amount': projected['remaining'],
        'progress': projected['progress'],
    })
    return result
