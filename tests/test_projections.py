import itertools
import random
import unittest

from clearledger.projections import (
    ALL_OUTFLOW,
    NARROW_DEBIT,
    aggregate_rows,
    cents,
    counts_toward_total,
    money_sum,
    project_account_balance,
    project_balance,
    project_debt,
    project_goal,
    project_progress,
    share_percent,
)

ACCOUNT = {'id': 'acc-1', 'user_id': 'alice', 'initial_balance': 1000.0,
           'is_active': True, 'include_in_total': True}

ENTRIES = [
    {'user_id': 'alice', 'account_id': 'acc-1', 'type': 'income', 'amount': 500.0},
    {'user_id': 'alice', 'account_id': 'acc-1', 'type': 'expense', 'amount': 120.0},
    {'user_id': 'alice', 'account_id': 'acc-1', 'type': 'goal_contribution', 'amount': 80.0},
    {'user_id': 'alice', 'account_id': 'acc-2', 'type': 'expense', 'amount': 999.0},
    # same account id under another owner must never count
    {'user_id': 'bob', 'account_id': 'acc-1', 'type': 'income', 'amount': 7000.0},
]

TRANSFERS = [
    {'user_id': 'alice', 'from_account_id': 'acc-1', 'to_account_id': 'acc-2', 'amount': 100.0, 'fee': 2.5},
    {'user_id': 'alice', 'from_account_id': 'acc-2', 'to_account_id': 'acc-1', 'amount': 40.0, 'fee': 0},
    {'user_id': 'bob', 'from_account_id': 'acc-9', 'to_account_id': 'acc-1', 'amount': 300.0, 'fee': 0},
]


class AggregateTests(unittest.TestCase):

    def test_empty_input(self):
        self.assertEqual(aggregate_rows([]), {'total': 0.0, 'count': 0})

    def test_predicate_and_value(self):
        result = aggregate_rows(TRANSFERS, lambda r: r['user_id'] == 'alice', lambda r: r['fee'])
        self.assertEqual(result, {'total': 2.5, 'count': 2})

    def test_fractional_amounts_sum_exactly(self):
        rows = [{'amount': 0.1}, {'amount': 0.2}]
        self.assertEqual(aggregate_rows(rows), {'total': 0.3, 'count': 2})
        self.assertEqual(aggregate_rows([{'amount': 0.1}] * 10)['total'], 1.0)


class MoneyTests(unittest.TestCase):

    def test_cents_rounds_half_up(self):
        self.assertEqual(cents(10.005), 10.01)
        self.assertEqual(cents('2.675'), 2.68)
        self.assertEqual(cents(None), 0.0)

    def test_money_sum(self):
        self.assertEqual(money_sum([0.1, 0.2, None]), 0.3)
        self.assertEqual(money_sum([]), 0.0)


class BalanceTests(unittest.TestCase):

    def test_identity(self):
        self.assertEqual(project_balance(100, 50, 30, 20, 10, 1), 129.0)

    def test_identity_is_exact_for_fractional_amounts(self):
        self.assertEqual(project_balance(0.1, 0.2), 0.3)
        self.assertEqual(project_balance(0, 0.3, 0.1, 0, 0.1, 0.1), 0.0)

    def test_balance_does_not_depend_on_entry_order(self):
        entries = ENTRIES + [
            {'user_id': 'alice', 'account_id': 'acc-1', 'type': 'income', 'amount': 0.1},
            {'user_id': 'alice', 'account_id': 'acc-1', 'type': 'expense', 'amount': 0.7},
            {'user_id': 'alice', 'account_id': 'acc-1', 'type': 'income', 'amount': 0.2},
        ]
        expected = project_account_balance(ACCOUNT, entries, TRANSFERS, ALL_OUTFLOW)
        for transfers in itertools.permutations(TRANSFERS):
            self.assertEqual(project_account_balance(ACCOUNT, entries, list(transfers), ALL_OUTFLOW),
                             expected)

        shuffler = random.Random(7)
        for _ in range(50):
            shuffled = list(entries)
            shuffler.shuffle(shuffled)
            self.assertEqual(project_account_balance(ACCOUNT, shuffled, TRANSFERS, ALL_OUTFLOW), expected)
        # 1000 + 500.3 - (120 + 80 + 0.7) + 40 - (100 + 2.5)
        self.assertEqual(expected['balance'], 1237.1)

    def test_narrow_debit_counts_expenses_only(self):
        result = project_account_balance(ACCOUNT, ENTRIES, TRANSFERS, NARROW_DEBIT)
        # 1000 + 500 - 120 + 40 - (100 + 2.5)
        self.assertAlmostEqual(result['balance'], 1317.5)
        self.assertEqual(result['stats']['total_expense'], 120.0)
        self.assertEqual(result['stats']['transfers_out'], 102.5)
        self.assertEqual(result['stats']['transfer_fees'], 2.5)

    def test_all_outflow_counts_every_debit(self):
        result = project_account_balance(ACCOUNT, ENTRIES, TRANSFERS, ALL_OUTFLOW)
        self.assertAlmostEqual(result['balance'], 1237.5)
        self.assertEqual(result['stats']['total_expense'], 200.0)

    def test_other_owner_rows_are_ignored(self):
        result = project_account_balance(ACCOUNT, ENTRIES, TRANSFERS)
        self.assertEqual(result['stats']['total_income'], 500.0)
        self.assertEqual(result['stats']['transfers_in'], 40.0)

    def test_unknown_mode(self):
        with self.assertRaises(ValueError):
            project_account_balance(ACCOUNT, ENTRIES, TRANSFERS, 'everything')

    def test_share_percent(self):
        self.assertEqual(share_percent(1, 3), 33)
        self.assertEqual(share_percent(1, 8), 13)
        self.assertEqual(share_percent(10, 0), 0)

    def test_counts_toward_total(self):
        self.assertTrue(counts_toward_total(ACCOUNT))
        self.assertTrue(counts_toward_total(ACCOUNT, ['acc-1']))
        self.assertFalse(counts_toward_total(ACCOUNT, ['acc-2']))
        self.assertFalse(counts_toward_total(dict(ACCOUNT, include_in_total=False)))
        self.assertFalse(counts_toward_total(dict(ACCOUNT, is_active=False)))


class ProgressTests(unittest.TestCase):

    def test_partial(self):
        self.assertEqual(project_progress(1000, 250),
                         {'current': 250.0, 'remaining': 750.0, 'progress': 25.0})

    def test_overpaid_clamps(self):
        result = project_progress(1000, 1200)
        self.assertEqual(result['remaining'], 0.0)
        self.assertEqual(result['progress'], 100.0)

    def test_hundred_only_when_target_reached(self):
        self.assertLess(project_progress(1000, 999.9999999999999)['progress'], 100.0)
        self.assertEqual(project_progress(1000, 1000)['progress'], 100.0)

    def test_nothing_accumulated(self):
        self.assertEqual(project_progress(500, None)['progress'], 0.0)

    def test_goal_suggestion(self):
        goal = {'id': 'g', 'target_amount': 1200.0, 'target_date': '2025-12-15', 'is_completed': False}
        result = project_goal(goal, 300.0, '2025-03-10')
        self.assertEqual(result['remaining_amount'], 900.0)
        self.assertEqual(result['suggested_monthly_amount'], 100.0)
        self.assertEqual(result['days_remaining'], 280)

    def test_goal_without_date(self):
        goal = {'id': 'g', 'target_amount': 1200.0, 'target_date': None, 'is_completed': False}
        result = project_goal(goal, 0, '2025-03-10')
        self.assertIsNone(result['suggested_monthly_amount'])
        self.assertIsNone(result['days_remaining'])

    def test_debt(self):
        result = project_debt({'id': 'd', 'principal_amount': 1200.0}, 100.0)
        self.assertEqual(result['paid_amount'], 100.0)
        self.assertEqual(result['remaining_amount'], 1100.0)


if __name__ == '__main__':
    unittest.main()
