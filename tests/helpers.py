import datetime
import os
import shutil
import tempfile
import unittest

from clearledger.engine import FinanceEngine
from clearledger.setup_sqlite import create_database

TODAY = datetime.date(2025, 3, 15)


class EngineTestCase(unittest.TestCase):
    """Fresh database per test, engine clock pinned to TODAY."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.tmpdir, 'ledger.db')
        create_database(self.db_path, quiet=True)
        self.engine = FinanceEngine(self.db_path, today_provider=lambda: TODAY)
        self.user = 'alice'
        self.engine.ensure_user(self.user, name='Alice')

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def ok(self, result):
        success, payload = result
        self.assertTrue(success, payload)
        return payload

    def fails(self, result, code):
        success, payload = result
        self.assertFalse(success, payload)
        self.assertEqual(payload.code, code)
        return payload

    def make_account(self, name='Checking', initial_balance=1000, user=None, **kwargs):
        return self.ok(self.engine.create_account(user or self.user, name,
                                                  initial_balance=initial_balance, **kwargs))

    def category_id(self, name, user=None):
        for category in self.engine.get_categories(user or self.user):
            if category['name'] == name:
                return category['id']
        raise AssertionError(f"No category {name}")
