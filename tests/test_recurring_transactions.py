import unittest

from clearledger.errors import INVALID_AMOUNT, INVALID_INPUT, INVALID_TRANSITION, NOT_FOUND

from tests.helpers import EngineTestCase


class RecurringTransactionTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.account = self.make_account('Checking', 1000)
        self.salary = self.category_id('Salary')

    def template(self, amount=1500, frequency='biweekly', start_date='2025-03-01', **options):
        options.setdefault('category_id', self.salary)
        options.setdefault('description', 'Paycheck')
        return self.ok(self.engine.create_recurring_transaction(
            self.user, self.account['id'], options.pop('transaction_type', 'income'), amount, frequency,
            start_date=start_date, **options))

    def test_create(self):
        paycheck = self.template()
        self.assertEqual(paycheck['next_due_date'], '2025-03-01')
        self.assertEqual(paycheck['account_name'], 'Checking')
        self.assertEqual(paycheck['category_name'], 'Salary')
        self.assertTrue(paycheck['is_active'])
        self.assertTrue(paycheck['is_due'])
        self.assertFalse(self.template(start_date='2025-04-01')['is_due'])

    def test_create_validation(self):
        create = self.engine.create_recurring_transaction
        account_id = self.account['id']
        self.fails(create(self.user, account_id, 'income', 10, 'hourly'), INVALID_INPUT)
        self.fails(create(self.user, account_id, 'debt_payment', 10, 'monthly'), INVALID_INPUT)
        self.fails(create(self.user, account_id, 'income', 0, 'monthly'), INVALID_AMOUNT)
        self.fails(create(self.user, account_id, 'income', 10, 'monthly', start_date='2025-03-01',
                          end_date='2025-02-01'), INVALID_INPUT)
        self.fails(create(self.user, account_id, 'income', 10, 'monthly', day_of_week=7), INVALID_INPUT)
        self.fails(create(self.user, None, 'income', 10, 'monthly'), INVALID_INPUT)

    def test_start_defaults_to_today(self):
        daily = self.ok(self.engine.create_recurring_transaction(
            self.user, self.account['id'], 'expense', 5, 'daily'))
        self.assertEqual(daily['start_date'], '2025-03-15')
        self.assertEqual(daily['next_due_date'], '2025-03-15')

    def test_post_creates_linked_entry_and_advances(self):
        paycheck = self.template()
        result = self.ok(self.engine.post_recurring_transaction(self.user, paycheck['id']))

        entry = result['transaction']
        self.assertEqual(entry['type'], 'income')
        self.assertEqual(entry['amount'], 1500.0)
        self.assertEqual(entry['date'], '2025-03-01')
        self.assertEqual(entry['description'], 'Paycheck')
        self.assertEqual(entry['category_id'], self.salary)
        self.assertEqual(entry['recurring_transaction_id'], paycheck['id'])
        self.assertEqual(result['recurring_transaction']['next_due_date'], '2025-03-15')
        self.assertIsNotNone(result['recurring_transaction']['last_processed_at'])

        second = self.ok(self.engine.post_recurring_transaction(self.user, paycheck['id']))
        self.assertEqual(second['transaction']['date'], '2025-03-15')
        self.assertEqual(second['recurring_transaction']['next_due_date'], '2025-03-29')
        self.assertFalse(second['recurring_transaction']['is_due'])

        self.assertEqual(self.engine.get_account(self.user, self.account['id'])['balance'], 4000.0)

    def test_post_with_explicit_date(self):
        paycheck = self.template()
        result = self.ok(self.engine.post_recurring_transaction(self.user, paycheck['id'], date='2025-03-02'))
        self.assertEqual(result['transaction']['date'], '2025-03-02')
        self.assertEqual(result['recurring_transaction']['next_due_date'], '2025-03-15')
        self.fails(self.engine.post_recurring_transaction(self.user, paycheck['id'], date='soon'),
                   INVALID_INPUT)

    def test_listing_filters_by_template(self):
        paycheck = self.template()
        rent = self.template(800, 'monthly', transaction_type='expense',
                             category_id=self.category_id('Housing'), description='Rent')
        self.ok(self.engine.post_recurring_transaction(self.user, paycheck['id']))
        self.ok(self.engine.post_recurring_transaction(self.user, paycheck['id']))
        self.ok(self.engine.post_recurring_transaction(self.user, rent['id']))
        self.ok(self.engine.create_transaction(self.user, self.account['id'], 'income', 50))

        page = self.engine.get_transactions(self.user, recurring_transaction_id=paycheck['id'])
        self.assertEqual(page['pagination']['total'], 2)
        self.assertEqual(page['summary']['total_income'], 3000.0)
        self.assertEqual(page['summary']['total_expense'], 0.0)

        detail = self.engine.get_recurring_transaction(self.user, paycheck['id'])
        self.assertEqual([t['date'] for t in detail['transactions']], ['2025-03-15', '2025-03-01'])

    def test_end_date_deactivates(self):
        rent = self.template(800, 'monthly', start_date='2025-01-31', end_date='2025-02-28',
                             transaction_type='expense', category_id=None)
        first = self.ok(self.engine.post_recurring_transaction(self.user, rent['id']))
        self.assertEqual(first['recurring_transaction']['next_due_date'], '2025-02-28')
        self.assertTrue(first['recurring_transaction']['is_active'])

        last = self.ok(self.engine.post_recurring_transaction(self.user, rent['id']))
        self.assertFalse(last['recurring_transaction']['is_active'])
        self.assertFalse(last['recurring_transaction']['is_due'])

        error = self.fails(self.engine.post_recurring_transaction(self.user, rent['id']), INVALID_TRANSITION)
        self.assertEqual(error.details, {'reason': 'inactive'})
        self.assertEqual(self.engine.get_recurring_transactions(self.user, active_only=True), [])
        self.assertEqual(len(self.engine.get_recurring_transactions(self.user)), 1)

    def test_paused_template_cannot_post(self):
        paycheck = self.template()
        paused = self.ok(self.engine.update_recurring_transaction(self.user, paycheck['id'],
                                                                  {'is_active': False}))
        self.assertFalse(paused['is_active'])
        self.fails(self.engine.post_recurring_transaction(self.user, paycheck['id']), INVALID_TRANSITION)

    def test_update(self):
        paycheck = self.template()
        raised = self.ok(self.engine.update_recurring_transaction(self.user, paycheck['id'], {'amount': 1650}))
        self.assertEqual(raised['amount'], 1650.0)
        self.fails(self.engine.update_recurring_transaction(self.user, paycheck['id'], {'frequency': 'daily'}),
                   INVALID_INPUT)
        self.fails(self.engine.update_recurring_transaction(self.user, paycheck['id'],
                                                            {'end_date': '2025-01-01'}), INVALID_INPUT)
        self.fails(self.engine.update_recurring_transaction(self.user, 'missing', {'amount': 1}), NOT_FOUND)

    def test_delete_unlinks_entries(self):
        paycheck = self.template()
        entry = self.ok(self.engine.post_recurring_transaction(self.user, paycheck['id']))['transaction']
        self.ok(self.engine.delete_recurring_transaction(self.user, paycheck['id']))

        kept = self.engine.get_transaction(self.user, entry['id'])
        self.assertIsNone(kept['recurring_transaction_id'])
        self.assertEqual(kept['amount'], 1500.0)
        self.assertIsNone(self.engine.get_recurring_transaction(self.user, paycheck['id']))
        self.fails(self.engine.delete_recurring_transaction(self.user, paycheck['id']), NOT_FOUND)

    def test_other_owner_template_is_not_found(self):
        self.engine.ensure_user('bob')
        bob_account = self.make_account('Bob Checking', 0, user='bob')
        bob_template = self.ok(self.engine.create_recurring_transaction(
            'bob', bob_account['id'], 'income', 100, 'weekly', start_date='2025-03-01'))

        self.assertIsNone(self.engine.get_recurring_transaction(self.user, bob_template['id']))
        self.fails(self.engine.post_recurring_transaction(self.user, bob_template['id']), NOT_FOUND)
        self.fails(self.engine.create_transaction(self.user, self.account['id'], 'income', 100,
                                                  recurring_transaction_id=bob_template['id']), NOT_FOUND)
        self.fails(self.engine.create_recurring_transaction(self.user, bob_account['id'], 'income', 10,
                                                            'weekly'), NOT_FOUND)


if __name__ == '__main__':
    unittest.main()
