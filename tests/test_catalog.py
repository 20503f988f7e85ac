import unittest

from clearledger.errors import INVALID_INPUT, NOT_FOUND

from tests.helpers import EngineTestCase


class AccountTypeTests(EngineTestCase):

    def type_id(self, name, user=None):
        for account_type in self.engine.get_account_types(user or self.user):
            if account_type['name'] == name:
                return account_type['id']
        raise AssertionError(f"No account type {name}")

    def test_new_user_gets_default_types(self):
        types = self.engine.get_account_types(self.user)
        self.assertEqual(len(types), 7)
        self.assertEqual(types[0]['name'], 'Bank')
        self.assertTrue(all(t['is_default'] for t in types))

    def test_custom_type_lifecycle(self):
        brokerage = self.ok(self.engine.create_account_type(self.user, 'Brokerage', icon='chart'))
        self.assertFalse(brokerage['is_default'])

        updated = self.ok(self.engine.update_account_type(self.user, brokerage['id'], {'icon': 'line-chart'}))
        self.assertEqual(updated['icon'], 'line-chart')
        self.fails(self.engine.update_account_type(self.user, brokerage['id'], {'is_default': True}),
                   INVALID_INPUT)

        self.ok(self.engine.delete_account_type(self.user, brokerage['id']))
        self.assertIsNone(self.engine.get_account_type(self.user, brokerage['id']))
        self.fails(self.engine.delete_account_type(self.user, brokerage['id']), NOT_FOUND)

    def test_default_type_cannot_be_deleted(self):
        self.fails(self.engine.delete_account_type(self.user, self.type_id('Cash')), INVALID_INPUT)
        self.fails(self.engine.create_account_type(self.user, ''), INVALID_INPUT)

    def test_account_with_type(self):
        savings = self.type_id('Savings')
        account = self.make_account('Rainy Day', 500, account_type_id=savings)
        self.assertEqual(account['account_type_id'], savings)

    def test_other_owner_type_is_not_found(self):
        self.engine.ensure_user('bob')
        bob_cash = self.type_id('Cash', user='bob')
        self.fails(self.engine.create_account(self.user, 'Wallet', account_type_id=bob_cash), NOT_FOUND)
        account = self.make_account()
        self.fails(self.engine.update_account(self.user, account['id'], {'account_type_id': bob_cash}),
                   NOT_FOUND)

    def test_deleting_type_clears_account_link(self):
        custom = self.ok(self.engine.create_account_type(self.user, 'Brokerage'))
        account = self.make_account('Stocks', 100, account_type_id=custom['id'])
        self.ok(self.engine.delete_account_type(self.user, custom['id']))
        self.assertIsNone(self.engine.get_account(self.user, account['id'])['account_type_id'])


class CategoryTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.food = self.category_id('Food & Dining')
        self.groceries = self.ok(self.engine.create_category(
            self.user, 'Groceries', 'expense', parent_id=self.food))

    def test_get_with_parent_and_subcategories(self):
        food = self.engine.get_category(self.user, self.food)
        self.assertIsNone(food['parent'])
        self.assertEqual([c['name'] for c in food['subcategories']], ['Groceries'])

        groceries = self.engine.get_category(self.user, self.groceries['id'])
        self.assertEqual(groceries['parent']['name'], 'Food & Dining')
        self.assertEqual(groceries['subcategories'], [])
        self.assertIsNone(self.engine.get_category(self.user, 'missing'))

    def test_update(self):
        updated = self.ok(self.engine.update_category(self.user, self.groceries['id'],
                                                      {'name': 'Supermarket', 'color': '#000000'}))
        self.assertEqual(updated['name'], 'Supermarket')
        self.assertEqual(updated['color'], '#000000')
        self.fails(self.engine.update_category(self.user, self.groceries['id'], {'name': ''}), INVALID_INPUT)
        self.fails(self.engine.update_category(self.user, self.groceries['id'], {'type': 'income'}),
                   INVALID_INPUT)
        self.fails(self.engine.update_category(self.user, 'missing', {'name': 'x'}), NOT_FOUND)

    def test_parent_rules(self):
        salary = self.category_id('Salary')
        transport = self.category_id('Transportation')
        self.fails(self.engine.update_category(self.user, self.groceries['id'],
                                               {'parent_id': self.groceries['id']}), INVALID_INPUT)
        error = self.fails(self.engine.update_category(self.user, self.groceries['id'],
                                                       {'parent_id': salary}), INVALID_INPUT)
        self.assertIn('same type', error.message)

        self.engine.ensure_user('bob')
        bob_food = self.category_id('Food & Dining', user='bob')
        self.fails(self.engine.update_category(self.user, self.groceries['id'], {'parent_id': bob_food}),
                   NOT_FOUND)

        moved = self.ok(self.engine.update_category(self.user, self.groceries['id'], {'parent_id': transport}))
        self.assertEqual(moved['parent_id'], transport)

    def test_delete_deactivates_with_subcategories(self):
        hobbies = self.ok(self.engine.create_category(self.user, 'Hobbies', 'expense'))
        climbing = self.ok(self.engine.create_category(self.user, 'Climbing', 'expense',
                                                       parent_id=hobbies['id']))
        self.ok(self.engine.delete_category(self.user, hobbies['id']))

        active = {c['name'] for c in self.engine.get_categories(self.user)}
        self.assertNotIn('Hobbies', active)
        self.assertNotIn('Climbing', active)

        everything = {c['id']: c for c in self.engine.get_categories(self.user, include_inactive=True)}
        self.assertFalse(everything[hobbies['id']]['is_active'])
        self.assertFalse(everything[climbing['id']]['is_active'])

    def test_delete_keeps_ledger_link(self):
        account = self.make_account()
        entry = self.ok(self.engine.create_transaction(self.user, account['id'], 'expense', 20,
                                                       category_id=self.groceries['id']))
        self.ok(self.engine.delete_category(self.user, self.groceries['id']))
        self.assertEqual(self.engine.get_transaction(self.user, entry['id'])['category_id'],
                         self.groceries['id'])

    def test_default_category_cannot_be_deleted(self):
        self.fails(self.engine.delete_category(self.user, self.food), INVALID_INPUT)
        self.fails(self.engine.delete_category(self.user, 'missing'), NOT_FOUND)


class MerchantTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.account = self.make_account()
        self.food = self.category_id('Food & Dining')

    def test_lifecycle(self):
        merchant = self.ok(self.engine.create_merchant(self.user, 'Corner Deli', category_id=self.food))
        self.assertEqual(merchant['category_name'], 'Food & Dining')
        self.assertEqual([m['name'] for m in self.engine.get_merchants(self.user)], ['Corner Deli'])

        updated = self.ok(self.engine.update_merchant(self.user, merchant['id'], {'name': 'Deli'}))
        self.assertEqual(updated['name'], 'Deli')
        self.fails(self.engine.update_merchant(self.user, merchant['id'], {'logo': 'x'}), INVALID_INPUT)

        self.ok(self.engine.delete_merchant(self.user, merchant['id']))
        self.assertIsNone(self.engine.get_merchant(self.user, merchant['id']))
        self.fails(self.engine.delete_merchant(self.user, merchant['id']), NOT_FOUND)

    def test_validation_and_ownership(self):
        self.fails(self.engine.create_merchant(self.user, ''), INVALID_INPUT)
        self.engine.ensure_user('bob')
        bob_food = self.category_id('Food & Dining', user='bob')
        self.fails(self.engine.create_merchant(self.user, 'Deli', category_id=bob_food), NOT_FOUND)
        bob_merchant = self.ok(self.engine.create_merchant('bob', 'Bob Shop'))
        self.fails(self.engine.create_transaction(self.user, self.account['id'], 'expense', 5,
                                                  merchant_id=bob_merchant['id']), NOT_FOUND)

    def test_entry_copies_merchant_name(self):
        merchant = self.ok(self.engine.create_merchant(self.user, 'Corner Deli'))
        copied = self.ok(self.engine.create_transaction(self.user, self.account['id'], 'expense', 12,
                                                        merchant_id=merchant['id']))
        self.assertEqual(copied['merchant_name'], 'Corner Deli')
        explicit = self.ok(self.engine.create_transaction(self.user, self.account['id'], 'expense', 8,
                                                          merchant_id=merchant['id'],
                                                          merchant_name='Deli (airport)'))
        self.assertEqual(explicit['merchant_name'], 'Deli (airport)')

        self.ok(self.engine.create_transaction(self.user, self.account['id'], 'expense', 30))
        page = self.engine.get_transactions(self.user, merchant_id=merchant['id'])
        self.assertEqual(page['pagination']['total'], 2)
        self.assertEqual(page['summary']['total_expense'], 20.0)

    def test_deleted_merchant_leaves_name_on_entries(self):
        merchant = self.ok(self.engine.create_merchant(self.user, 'Corner Deli'))
        entry = self.ok(self.engine.create_transaction(self.user, self.account['id'], 'expense', 12,
                                                       merchant_id=merchant['id']))
        self.ok(self.engine.delete_merchant(self.user, merchant['id']))
        kept = self.engine.get_transaction(self.user, entry['id'])
        self.assertIsNone(kept['merchant_id'])
        self.assertEqual(kept['merchant_name'], 'Corner Deli')


class SubcategoryEntryTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.account = self.make_account()
        self.food = self.category_id('Food & Dining')
        self.groceries = self.ok(self.engine.create_category(
            self.user, 'Groceries', 'expense', parent_id=self.food))['id']

    def test_entry_with_subcategory(self):
        entry = self.ok(self.engine.create_transaction(self.user, self.account['id'], 'expense', 40,
                                                       category_id=self.food, subcategory_id=self.groceries))
        self.assertEqual(entry['subcategory_id'], self.groceries)
        self.assertEqual(entry['subcategory_name'], 'Groceries')
        self.assertEqual(entry['category_name'], 'Food & Dining')

    def test_subcategory_must_belong_to_category(self):
        transport = self.category_id('Transportation')
        self.fails(self.engine.create_transaction(self.user, self.account['id'], 'expense', 40,
                                                  category_id=transport, subcategory_id=self.groceries),
                   INVALID_INPUT)
        self.fails(self.engine.create_transaction(self.user, self.account['id'], 'expense', 40,
                                                  category_id=self.food, subcategory_id='missing'),
                   NOT_FOUND)


if __name__ == '__main__':
    unittest.main()
