import threading
import unittest
from unittest import mock

from clearledger.errors import INVALID_AMOUNT, INVALID_INPUT, INVALID_TRANSITION, NOT_FOUND

from tests.helpers import EngineTestCase


class ScheduledPaymentLifecycleTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.account = self.make_account('Checking', 2000)
        self.housing = self.category_id('Housing')

    def schedule(self, name='Rent', amount=800, due_date='2025-03-20', **options):
        return self.ok(self.engine.create_scheduled_payment(self.user, name, amount, due_date, **options))

    def ledger_entries(self, payment_id):
        conn, cursor = self.engine._get_db_connection()
        try:
            cursor.execute("SELECT * FROM transactions WHERE scheduled_payment_id = ?", (payment_id,))
            return cursor.fetchall()
        finally:
            conn.close()

    def test_create_defaults(self):
        payment = self.schedule()
        self.assertEqual(payment['status'], 'pending')
        self.assertEqual(payment['priority'], 'medium')
        self.assertEqual(payment['reminder_days'], 3)
        self.assertFalse(payment['is_recurring'])
        self.assertFalse(payment['is_overdue'])
        self.assertEqual(payment['days_until_due'], 5)

    def test_create_validation(self):
        self.fails(self.engine.create_scheduled_payment(self.user, 'Rent', 0, '2025-03-20'), INVALID_AMOUNT)
        self.fails(self.engine.create_scheduled_payment(self.user, 'Rent', 10, '2025-03-20',
                                                        priority='critical'), INVALID_INPUT)
        self.fails(self.engine.create_scheduled_payment(self.user, 'Rent', 10, '2025-03-20',
                                                        is_recurring=True), INVALID_INPUT)
        self.fails(self.engine.create_scheduled_payment(self.user, 'Rent', 10, '2025-03-20',
                                                        reminder_days=45), INVALID_INPUT)

    def test_tags_list_is_stored_as_text(self):
        payment = self.schedule(tags=['home', 'fixed'])
        self.assertEqual(payment['tags'], 'home,fixed')

    def test_overdue_sweep_is_idempotent(self):
        past = self.schedule('Phone', 40, '2025-03-10')
        today = self.schedule('Gym', 30, '2025-03-15')
        future = self.schedule('Rent', 800, '2025-03-20')

        first = {p['id']: p['status'] for p in self.engine.list_scheduled_payments(self.user)}
        second = {p['id']: p['status'] for p in self.engine.list_scheduled_payments(self.user)}
        self.assertEqual(first, second)
        self.assertEqual(first[past['id']], 'overdue')
        self.assertEqual(first[today['id']], 'overdue')
        self.assertEqual(first[future['id']], 'pending')

    def test_list_orders_by_due_date_then_priority(self):
        self.schedule('Low', 10, '2025-03-20', priority='low')
        self.schedule('Urgent', 10, '2025-03-20', priority='urgent')
        self.schedule('Early', 10, '2025-03-18', priority='low')
        names = [p['name'] for p in self.engine.list_scheduled_payments(self.user)]
        self.assertEqual(names, ['Early', 'Urgent', 'Low'])

    def test_list_filters(self):
        self.schedule('Phone', 40, '2025-03-10')
        self.schedule('Rent', 800, '2025-03-20', priority='urgent')
        self.assertEqual(len(self.engine.list_scheduled_payments(self.user, status='overdue')), 1)
        self.assertEqual(len(self.engine.list_scheduled_payments(self.user, include_overdue=False)), 1)
        self.assertEqual(len(self.engine.list_scheduled_payments(self.user, priority='urgent')), 1)

    def test_settle_posts_one_expense(self):
        payment = self.schedule(account_id=self.account['id'], category_id=self.housing)
        result = self.ok(self.engine.settle_scheduled_payment(self.user, payment['id']))

        self.assertEqual(result['payment']['status'], 'paid')
        self.assertEqual(result['payment']['paid_date'], '2025-03-15')
        self.assertEqual(result['payment']['paid_amount'], 800.0)
        self.assertIsNone(result['next_payment'])
        self.assertEqual(result['transaction']['type'], 'expense')
        self.assertEqual(result['transaction']['description'], 'Rent')
        self.assertEqual(result['transaction']['category_id'], self.housing)
        self.assertEqual(len(self.ledger_entries(payment['id'])), 1)
        self.assertEqual(self.engine.get_account(self.user, self.account['id'])['balance'], 1200.0)

    def test_settle_with_custom_amount_and_date(self):
        payment = self.schedule(account_id=self.account['id'])
        result = self.ok(self.engine.settle_scheduled_payment(
            self.user, payment['id'], paid_date='2025-03-12', paid_amount=750))
        self.assertEqual(result['transaction']['amount'], 750.0)
        self.assertEqual(result['transaction']['date'], '2025-03-12')
        self.fails(self.engine.settle_scheduled_payment(self.user, self.schedule()['id'], paid_amount=-1),
                   INVALID_AMOUNT)

    def test_settle_without_account_posts_nothing(self):
        payment = self.schedule()
        result = self.ok(self.engine.settle_scheduled_payment(self.user, payment['id']))
        self.assertIsNone(result['transaction'])
        self.assertEqual(self.ledger_entries(payment['id']), [])

    def test_second_settlement_is_rejected(self):
        payment = self.schedule(account_id=self.account['id'], is_recurring=True,
                                recurring_frequency='monthly')
        self.ok(self.engine.settle_scheduled_payment(self.user, payment['id']))
        error = self.fails(self.engine.settle_scheduled_payment(self.user, payment['id']), INVALID_TRANSITION)
        self.assertEqual(error.details, {'reason': 'already_paid'})

        # still exactly one ledger entry and one clone
        self.assertEqual(len(self.ledger_entries(payment['id'])), 1)
        rents = [p for p in self.engine.list_scheduled_payments(self.user) if p['name'] == 'Rent']
        self.assertEqual(len(rents), 2)

    def test_recurring_settlement_clones_next_occurrence(self):
        payment = self.schedule(due_date='2025-01-31', account_id=self.account['id'],
                                is_recurring=True, recurring_frequency='monthly', priority='high',
                                tags='home')
        result = self.ok(self.engine.settle_scheduled_payment(self.user, payment['id']))
        clone = result['next_payment']
        self.assertEqual(clone['due_date'], '2025-02-28')
        self.assertEqual(clone['status'], 'pending')
        self.assertEqual(clone['amount'], 800.0)
        self.assertEqual(clone['priority'], 'high')
        self.assertEqual(clone['tags'], 'home')
        self.assertTrue(clone['is_recurring'])
        self.assertIsNone(clone['paid_date'])

    def test_recurrence_can_be_stopped(self):
        payment = self.schedule(is_recurring=True, recurring_frequency='weekly')
        result = self.ok(self.engine.settle_scheduled_payment(self.user, payment['id'],
                                                              create_next_recurrence=False))
        self.assertIsNone(result['next_payment'])
        self.assertEqual(len(self.engine.list_scheduled_payments(self.user)), 1)

    def test_overdue_payment_can_be_settled(self):
        payment = self.schedule(due_date='2025-03-01')
        self.engine.list_scheduled_payments(self.user)
        self.assertEqual(self.engine.get_scheduled_payment(self.user, payment['id'])['status'], 'overdue')
        result = self.ok(self.engine.settle_scheduled_payment(self.user, payment['id']))
        self.assertEqual(result['payment']['status'], 'paid')

    def test_cancel(self):
        payment = self.schedule()
        cancelled = self.ok(self.engine.cancel_scheduled_payment(self.user, payment['id']))
        self.assertEqual(cancelled['status'], 'cancelled')
        # cancelling again is a no-op
        self.assertEqual(self.ok(self.engine.cancel_scheduled_payment(self.user, payment['id']))['status'],
                         'cancelled')
        error = self.fails(self.engine.settle_scheduled_payment(self.user, payment['id']), INVALID_TRANSITION)
        self.assertEqual(error.details, {'reason': 'cancelled'})

    def test_paid_payment_cannot_be_cancelled(self):
        payment = self.schedule()
        self.ok(self.engine.settle_scheduled_payment(self.user, payment['id']))
        self.fails(self.engine.cancel_scheduled_payment(self.user, payment['id']), INVALID_TRANSITION)

    def test_cancel_of_payment_deleted_mid_call_is_not_found(self):
        real_fetch = self.engine._fetch_owned
        calls = []

        def pending_then_gone(cursor, table, user_id, record_id):
            # first lookup sees a pending row; by the guarded UPDATE it is gone
            calls.append(record_id)
            if len(calls) == 1:
                return {'id': record_id, 'status': 'pending', 'amount': 800.0}
            return real_fetch(cursor, table, user_id, record_id)

        with mock.patch.object(self.engine, '_fetch_owned', side_effect=pending_then_gone):
            self.fails(self.engine.cancel_scheduled_payment(self.user, 'deleted-payment'), NOT_FOUND)
            calls.clear()
            self.fails(self.engine.settle_scheduled_payment(self.user, 'deleted-payment'), NOT_FOUND)

    def test_status_patch_follows_transitions(self):
        payment = self.schedule()
        error = self.fails(self.engine.update_scheduled_payment(self.user, payment['id'], {'status': 'paid'}),
                           INVALID_TRANSITION)
        self.assertEqual(error.details, {'reason': 'requires_settlement'})

        self.ok(self.engine.update_scheduled_payment(self.user, payment['id'], {'status': 'cancelled'}))
        self.fails(self.engine.update_scheduled_payment(self.user, payment['id'], {'status': 'pending'}),
                   INVALID_TRANSITION)

    def test_patch_fields(self):
        payment = self.schedule()
        updated = self.ok(self.engine.update_scheduled_payment(
            self.user, payment['id'], {'amount': 850, 'priority': 'urgent', 'notes': 'raised'}))
        self.assertEqual(updated['amount'], 850.0)
        self.assertEqual(updated['priority'], 'urgent')
        self.fails(self.engine.update_scheduled_payment(self.user, payment['id'], {'user_id': 'bob'}),
                   INVALID_INPUT)

    def test_upcoming_summary(self):
        self.schedule('Phone', 40, '2025-03-10', priority='high')
        self.schedule('Gym', 30, '2025-03-15', priority='low')
        self.schedule('Rent', 800, '2025-03-20', priority='urgent')
        self.schedule('Insurance', 200, '2025-04-30')

        upcoming = self.engine.get_upcoming_payments(self.user, days=7)
        self.assertEqual([p['name'] for p in upcoming['payments']], ['Phone', 'Gym', 'Rent'])
        summary = upcoming['summary']
        self.assertEqual(summary['total'], 3)
        self.assertEqual(summary['total_amount'], 870.0)
        self.assertEqual(summary['overdue'], 2)
        self.assertEqual(summary['overdue_amount'], 70.0)
        self.assertEqual(summary['due_today'], 1)
        self.assertEqual(summary['by_priority'], {'urgent': 1, 'high': 1, 'medium': 0, 'low': 1})

    def test_other_owner_cannot_touch_payment(self):
        payment = self.schedule()
        self.engine.ensure_user('bob')
        self.assertIsNone(self.engine.get_scheduled_payment('bob', payment['id']))
        self.fails(self.engine.settle_scheduled_payment('bob', payment['id']), NOT_FOUND)
        self.fails(self.engine.cancel_scheduled_payment('bob', payment['id']), NOT_FOUND)
        self.fails(self.engine.delete_scheduled_payment('bob', payment['id']), NOT_FOUND)
        self.assertEqual(self.engine.list_scheduled_payments('bob'), [])

    def test_cannot_link_other_owner_account(self):
        self.engine.ensure_user('bob')
        bob_account = self.make_account('Bob', 10, user='bob')
        self.fails(self.engine.create_scheduled_payment(self.user, 'Rent', 800, '2025-03-20',
                                                        account_id=bob_account['id']), NOT_FOUND)


class ConcurrentSettlementTests(EngineTestCase):
    """Racing settlements of one payment, each on its own connection."""

    ROUNDS = 20
    THREADS = 4

    def setUp(self):
        super().setUp()
        self.account = self.make_account('Checking', 100000)

    def race(self, payment_id):
        barrier = threading.Barrier(self.THREADS)
        lock = threading.Lock()
        results = []

        def settle():
            barrier.wait()
            result = self.engine.settle_scheduled_payment(self.user, payment_id)
            with lock:
                results.append(result)

        workers = [threading.Thread(target=settle) for _ in range(self.THREADS)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()
        return results

    def test_exactly_one_settlement_wins(self):
        for round_number in range(self.ROUNDS):
            name = f'Rent {round_number}'
            payment = self.ok(self.engine.create_scheduled_payment(
                self.user, name, 800, '2025-03-20', account_id=self.account['id'],
                is_recurring=True, recurring_frequency='monthly'))

            results = self.race(payment['id'])

            self.assertEqual(len(results), self.THREADS)
            winners = [payload for success, payload in results if success]
            losers = [payload for success, payload in results if not success]
            self.assertEqual(len(winners), 1, round_number)
            self.assertEqual({error.code for error in losers}, {INVALID_TRANSITION})
            self.assertEqual({error.details['reason'] for error in losers}, {'already_paid'})

            conn, cursor = self.engine._get_db_connection()
            try:
                cursor.execute("SELECT COUNT(*) FROM transactions WHERE scheduled_payment_id = ?",
                               (payment['id'],))
                self.assertEqual(cursor.fetchone()[0], 1)
                cursor.execute("SELECT COUNT(*) FROM scheduled_payments WHERE user_id = ? AND name = ?",
                               (self.user, name))
                # the settled payment plus its single next occurrence
                self.assertEqual(cursor.fetchone()[0], 2)
            finally:
                conn.close()


class GenerateFromDebtTests(EngineTestCase):

    def test_one_payment_per_installment(self):
        debt = self.ok(self.engine.create_debt(self.user, 'Bank', 1200, start_date='2025-04-10',
                                               total_installments=12))
        payments = self.ok(self.engine.generate_payments_from_debt(self.user, debt['id']))

        self.assertEqual(len(payments), 12)
        self.assertEqual({p['amount'] for p in payments}, {100.0})
        self.assertEqual({p['priority'] for p in payments}, {'high'})
        self.assertEqual({p['status'] for p in payments}, {'pending'})
        self.assertEqual([p['due_date'] for p in payments[:2]], ['2025-04-10', '2025-05-10'])
        self.assertEqual(payments[0]['name'], 'Bank - Installment 1/12')
        self.assertTrue(all(p['debt_id'] == debt['id'] for p in payments))
        self.assertTrue(all(p['debt_installment_id'] is None for p in payments))

    def test_debt_without_installments_gives_one_payment(self):
        debt = self.ok(self.engine.create_debt(self.user, 'Friend', 300, start_date='2025-04-01',
                                               due_date='2025-06-01'))
        payments = self.ok(self.engine.generate_payments_from_debt(self.user, debt['id']))
        self.assertEqual(len(payments), 1)
        self.assertEqual(payments[0]['amount'], 300.0)
        self.assertEqual(payments[0]['due_date'], '2025-06-01')

    def test_installments_due_on_the_first_of_each_month(self):
        debt = self.ok(self.engine.create_debt(self.user, 'Bank', 1200, start_date='2025-01-01',
                                               total_installments=12))
        payments = self.ok(self.engine.generate_payments_from_debt(self.user, debt['id']))
        self.assertEqual([p['due_date'] for p in payments[:3]], ['2025-01-01', '2025-02-01', '2025-03-01'])
        self.assertEqual(payments[-1]['due_date'], '2025-12-01')
        self.assertEqual({p['amount'] for p in payments}, {100.0})

    def test_uneven_split_is_rounded_to_cents(self):
        debt = self.ok(self.engine.create_debt(self.user, 'Store', 100, start_date='2025-04-01',
                                               total_installments=3))
        payments = self.ok(self.engine.generate_payments_from_debt(self.user, debt['id']))
        self.assertEqual({p['amount'] for p in payments}, {33.33})

    def test_unknown_debt(self):
        self.fails(self.engine.generate_payments_from_debt(self.user, 'missing'), NOT_FOUND)


if __name__ == '__main__':
    unittest.main()
