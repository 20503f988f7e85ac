"""
Clear Ledger - Personal Finance Engine

This module contains the FinanceEngine class: a stateless engine over SQLite
that owns every read and write of the Clear Ledger data model.

The engine provides:
- Ledger aggregation (owner-scoped sums over transactions and transfers)
- Derived balances for accounts (two named debit modes, see projections.py)
- Derived progress for goals, debts and loans
- The scheduled payment lifecycle (overdue sweep, settlement, cancellation,
  recurrence, generation from a debt)
- CRUD for accounts, account types, categories, merchants, transactions,
  transfers, recurring transaction templates, goals, debts, loans, scheduled
  payments and user settings
- Posting recurring transaction templates to the ledger
- Dashboard composition

Key Design Principles:
- **Stateless Architecture**: All state is stored in SQLite; one connection
  per call, committed once and closed
- **User Segregation**: Every query is scoped by user_id. A record owned by
  someone else is reported exactly like a missing one
- **Derived State**: Balances and progress are never stored, they are
  recomputed from the ledger on every read
- **Typed Results**: Writes return (True, payload) or (False, DomainError)

License: MIT
"""

import datetime
import logging
import math
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path

from .errors import ConsistencyViolation, DomainError
from .periods import (
    DATE_FORMAT,
    TEMPLATE_STEPS,
    advance_date,
    days_until,
    monthly_schedule,
    percent_change,
    previous_period,
    resolve_period,
    to_date,
    to_date_str,
    trend_direction,
)
from .projections import (
    ALL_OUTFLOW,
    NARROW_DEBIT,
    TRANSACTION_TYPES,
    cents,
    counts_toward_total,
    debit_types,
    empty_aggregate,
    money_sum,
    project_balance,
    project_debt,
    project_goal,
    project_loan,
    share_percent,
    to_money,
)
from .settings import (
    SETTINGS_FIELDS,
    UserSettings,
    default_dashboard_config,
    dump_dashboard_config,
    load_dashboard_config,
    merge_dashboard_config,
    merge_user_settings,
)
from .setup_sqlite import get_db_path

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = 'PEN'

DEBT_STATUSES = ('active', 'paid', 'overdue', 'partial')
LOAN_STATUSES = ('active', 'paid', 'overdue', 'partial', 'forgiven')
INSTALLMENT_STATUSES = ('pending', 'paid', 'overdue')
PAYMENT_STATUSES = ('pending', 'paid', 'cancelled', 'overdue')
PRIORITIES = ('low', 'medium', 'high', 'urgent')
FREQUENCIES = ('weekly', 'biweekly', 'monthly', 'quarterly', 'yearly')
TEMPLATE_FREQUENCIES = ('daily',) + FREQUENCIES
TEMPLATE_TYPES = ('income', 'expense')
CATEGORY_TYPES = ('income', 'expense')

# Scheduled payment state machine. 'paid' is only reached through settlement.
PAYMENT_TRANSITIONS = {
    'pending': ('paid', 'cancelled', 'overdue'),
    'overdue': ('paid', 'cancelled'),
    'paid': (),
    'cancelled': (),
}
SETTLEABLE_STATUSES = ('pending', 'overdue')

PRIORITY_RANK_SQL = (
    "CASE priority WHEN 'urgent' THEN 0 WHEN 'high' THEN 1 "
    "WHEN 'medium' THEN 2 ELSE 3 END"
)

BOOL_COLUMNS = {
    'is_active', 'include_in_total', 'is_default', 'is_completed', 'is_recurring',
    'notify_on_due_payments', 'notify_on_goal_progress', 'notify_on_recurring',
    'show_cents_in_amounts',
}
POSITIVE_AMOUNT_COLUMNS = {'amount', 'principal_amount', 'target_amount', 'paid_amount'}
NON_NEGATIVE_COLUMNS = {'fee', 'interest_rate'}
DATE_COLUMNS = {'date', 'due_date', 'start_date', 'end_date', 'next_due_date', 'loan_date',
                'target_date', 'paid_date'}
INT_RANGES = {
    'total_installments': (1, 600),
    'reminder_days': (0, 30),
    'day_of_month': (1, 31),
    'day_of_week': (0, 6),
}

# Foreign key column -> (table, label) for ownership checks
LINK_TABLES = {
    'account_id': ('accounts', 'Account'),
    'from_account_id': ('accounts', 'Account'),
    'to_account_id': ('accounts', 'Account'),
    'default_account_id': ('accounts', 'Account'),
    'account_type_id': ('account_types', 'Account type'),
    'category_id': ('categories', 'Category'),
    'parent_id': ('categories', 'Category'),
    'subcategory_id': ('categories', 'Category'),
    'merchant_id': ('merchants', 'Merchant'),
    'recurring_transaction_id': ('recurring_transactions', 'Recurring transaction'),
    'goal_id': ('goals', 'Goal'),
    'debt_id': ('debts', 'Debt'),
    'loan_id': ('loans', 'Loan'),
}

ACCOUNT_FIELDS = ('name', 'description', 'currency', 'initial_balance', 'color', 'icon',
                  'is_active', 'include_in_total', 'account_type_id')
ACCOUNT_TYPE_FIELDS = ('name', 'icon')
CATEGORY_FIELDS = ('name', 'icon', 'color', 'parent_id', 'is_active')
MERCHANT_FIELDS = ('name', 'category_id', 'icon')
TRANSACTION_EDITABLE = ('description', 'amount', 'category_id', 'notes')
GOAL_FIELDS = ('name', 'description', 'target_amount', 'currency', 'target_date', 'icon',
               'color', 'is_active')
DEBT_FIELDS = ('creditor', 'description', 'principal_amount', 'interest_rate', 'currency',
               'due_date', 'status', 'notes')
LOAN_FIELDS = ('borrower', 'borrower_contact', 'description', 'principal_amount',
               'interest_rate', 'currency', 'due_date', 'status', 'notes')
PAYMENT_FIELDS = ('name', 'description', 'amount', 'currency', 'due_date', 'status',
                  'category_id', 'account_id', 'debt_id', 'loan_id', 'debt_installment_id',
                  'is_recurring', 'recurring_frequency', 'priority', 'tags', 'notes',
                  'reminder_days')
RECURRING_FIELDS = ('account_id', 'category_id', 'amount', 'description', 'end_date', 'is_active')

# (name, icon)
DEFAULT_ACCOUNT_TYPES = [
    ('Cash', 'banknote'),
    ('Debit', 'credit-card'),
    ('Credit', 'credit-card'),
    ('Bank', 'building'),
    ('Savings', 'piggy-bank'),
    ('Investment', 'trending-up'),
    ('Digital Wallet', 'wallet'),
]

# (name, type, icon, color); the first expense row is the fallback category
DEFAULT_CATEGORIES = [
    ('Food & Dining', 'expense', 'utensils', '#ef4444'),
    ('Transportation', 'expense', 'car', '#f97316'),
    ('Housing', 'expense', 'home', '#eab308'),
    ('Utilities', 'expense', 'zap', '#22c55e'),
    ('Healthcare', 'expense', 'heart-pulse', '#06b6d4'),
    ('Entertainment', 'expense', 'gamepad-2', '#8b5cf6'),
    ('Education', 'expense', 'graduation-cap', '#3b82f6'),
    ('Shopping', 'expense', 'shirt', '#ec4899'),
    ('Subscriptions', 'expense', 'repeat', '#14b8a6'),
    ('Travel', 'expense', 'plane', '#0ea5e9'),
    ('Other Expenses', 'expense', 'more-horizontal', '#71717a'),
    ('Salary', 'income', 'briefcase', '#22c55e'),
    ('Freelance', 'income', 'laptop', '#10b981'),
    ('Investments', 'income', 'trending-up', '#059669'),
    ('Business', 'income', 'store', '#047857'),
    ('Refunds', 'income', 'rotate-ccw', '#166534'),
    ('Other Income', 'income', 'more-horizontal', '#71717a'),
]

DASHBOARD_GOALS_LIMIT = 5
DASHBOARD_PAYMENTS_LIMIT = 10
CATEGORY_BREAKDOWN_LIMIT = 6
SUMMARY_PENDING_DAYS = 7


class FinanceEngine:
    """
    Stateless personal finance engine for Clear Ledger.

    Every public method takes the owner's user_id first and never reads or
    writes another owner's rows.

    Read methods return data (dicts / lists) or None when the record is not
    visible. Write methods return (True, payload) or (False, DomainError).
    Unexpected sqlite3 errors are rolled back, logged and re-raised.

    Example:
        engine = FinanceEngine('/tmp/ledger.db')
        engine.ensure_user('user-1')
        ok, account = engine.create_account('user-1', 'Wallet', initial_balance=100)
        engine.get_account('user-1', account['id'])['balance']  # 100.0
    """

    def __init__(self, db_path=None, today_provider=None, default_currency=DEFAULT_CURRENCY):
        """
        Args:
            db_path (str|Path, optional): SQLite file, defaults to get_db_path()
            today_provider (callable, optional): Returns the current date; a
                fixed clock for tests and demos
            default_currency (str): Currency for new users and records
        """
        self.db_path = Path(db_path) if db_path else get_db_path()
        self.today_provider = today_provider
        self.default_currency = default_currency

    # =============================================================================
    # SQLITE HELPER METHODS
    # =============================================================================

    @staticmethod
    def _row_to_dict(row):
        """Convert sqlite3.Row to dictionary, restoring 0/1 flags as booleans"""
        if row is None:
            return None
        data = dict(row)
        for key in BOOL_COLUMNS.intersection(data):
            if data[key] is not None:
                data[key] = bool(data[key])
        return data

    @classmethod
    def _rows_to_dicts(cls, rows):
        return [cls._row_to_dict(row) for row in rows]

    @staticmethod
    def _new_id():
        return str(uuid.uuid4())

    @staticmethod
    def _now():
        return datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    def today(self):
        """Current date as YYYY-MM-DD, from today_provider when one is set"""
        if self.today_provider:
            return to_date_str(self.today_provider())
        return datetime.date.today().strftime(DATE_FORMAT)

    @staticmethod
    def _to_amount(value):
        try:
            value = float(value)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(value):
            return None
        return value

    @classmethod
    def _to_money(cls, value):
        """Money columns are stored rounded to whole cents"""
        value = cls._to_amount(value)
        return None if value is None else cents(value)

    @staticmethod
    def _to_date_value(value):
        try:
            return to_date_str(value)
        except (TypeError, ValueError):
            return None

    def _normalize_fields(self, data, enums=None):
        """
        Coerce and validate column values before they reach SQL.

        Returns:
            tuple: (clean dict, None) or (None, DomainError)
        """
        clean = {}
        for column, value in data.items():
            if column in POSITIVE_AMOUNT_COLUMNS:
                value = self._to_money(value)
                if value is None or value <= 0:
                    return None, DomainError.invalid_amount(f"'{column}' must be a positive number.")
            elif column in NON_NEGATIVE_COLUMNS:
                convert = self._to_money if column == 'fee' else self._to_amount
                value = convert(0 if value is None else value)
                if value is None or value < 0:
                    return None, DomainError.invalid_amount(f"'{column}' must be zero or greater.")
            elif column == 'initial_balance':
                value = self._to_money(0 if value is None else value)
                if value is None:
                    return None, DomainError.invalid_amount("'initial_balance' must be a number.")
            elif column in DATE_COLUMNS:
                if value is not None:
                    value = self._to_date_value(value)
                    if value is None:
                        return None, DomainError.invalid_input(f"'{column}' must be a YYYY-MM-DD date.")
            elif column in BOOL_COLUMNS:
                value = 1 if value else 0
            elif column == 'tags' and isinstance(value, (list, tuple)):
                value = ','.join(str(tag) for tag in value)
            elif column in INT_RANGES:
                if value is not None:
                    low, high = INT_RANGES[column]
                    try:
                        value = int(value)
                    except (TypeError, ValueError):
                        return None, DomainError.invalid_input(f"'{column}' must be an integer.")
                    if not low <= value <= high:
                        return None, DomainError.invalid_input(
                            f"'{column}' must be between {low} and {high}.")

            if enums and column in enums and value not in enums[column]:
                return None, DomainError.invalid_input(
                    f"'{column}' must be one of: {', '.join(enums[column])}.")
            clean[column] = value
        return clean, None

    @staticmethod
    def _reject_unknown(changes, allowed):
        unknown = sorted(set(changes) - set(allowed))
        if unknown:
            return DomainError.invalid_input(
                f"Fields cannot be changed: {', '.join(unknown)}.", {'fields': unknown})
        return None

    # =============================================================================
    # DATABASE CONNECTION
    # =============================================================================

    def _get_db_connection(self):
        """
        Establish a new database connection.

        Returns:
            tuple: (connection, cursor) - SQLite connection and cursor
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), timeout=10)

        # Enable foreign key constraints (CRITICAL for data integrity)
        conn.execute("PRAGMA foreign_keys = ON;")

        conn.row_factory = sqlite3.Row

        return conn, conn.cursor()

    @contextmanager
    def _session(self, operation):
        """One connection per call; storage errors roll back, get logged, propagate."""
        conn, cursor = self._get_db_connection()
        try:
            yield conn, cursor
        except sqlite3.Error:
            conn.rollback()
            logger.exception("[ENGINE] %s failed", operation)
            raise
        finally:
            cursor.close()
            conn.close()

    def _fetch_owned(self, cursor, table, user_id, record_id):
        cursor.execute(f"SELECT * FROM {table} WHERE id = ? AND user_id = ?", (record_id, user_id))
        return self._row_to_dict(cursor.fetchone())

    def _check_links(self, cursor, user_id, values):
        """Every linked record must belong to the same owner."""
        for column, (table, label) in LINK_TABLES.items():
            record_id = values.get(column)
            if record_id and not self._fetch_owned(cursor, table, user_id, record_id):
                return DomainError.not_found(label)
        installment_id = values.get('debt_installment_id')
        if installment_id:
            cursor.execute("""
                SELECT i.id FROM debt_installments i
                JOIN debts d ON d.id = i.debt_id
                WHERE i.id = ? AND d.user_id = ?
            """, (installment_id, user_id))
            if not cursor.fetchone():
                return DomainError.not_found('Debt installment')
        return None

    def _insert(self, cursor, table, values):
        columns = list(values)
        placeholders = ', '.join('?' for _ in columns)
        cursor.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            [values[column] for column in columns]
        )

    def _apply_patch(self, cursor, table, user_id, record_id, fields, touch=True):
        """Build and run a dynamic UPDATE for the given columns."""
        assignments = [f"{column} = ?" for column in fields]
        params = list(fields.values())
        if touch:
            assignments.append("updated_at = ?")
            params.append(self._now())
        if not assignments:
            return
        params.extend([record_id, user_id])
        cursor.execute(
            f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ? AND user_id = ?",
            params
        )

    # =============================================================================
    # USERS & CATEGORIES
    # =============================================================================

    def ensure_user(self, user_id, name=None, currency=None):
        """
        Return the user row, creating it on first sight.

        A new user gets the default account types and income/expense
        categories in the same transaction.
        """
        with self._session('ensure_user') as (conn, cursor):
            cursor.execute(
                "INSERT OR IGNORE INTO users (id, name, currency) VALUES (?, ?, ?)",
                (user_id, name, currency or self.default_currency)
            )
            if cursor.rowcount == 1:
                self._seed_default_account_types(cursor, user_id)
                self._seed_default_categories(cursor, user_id)
                logger.info("[ENGINE] Provisioned user %s", user_id)
            conn.commit()
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            return self._row_to_dict(cursor.fetchone())

    def get_user(self, user_id):
        with self._session('get_user') as (conn, cursor):
            cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
            return self._row_to_dict(cursor.fetchone())

    def _seed_default_account_types(self, cursor, user_id):
        cursor.executemany(
            "INSERT INTO account_types (id, user_id, name, icon, is_default) VALUES (?, ?, ?, ?, 1)",
            [(self._new_id(), user_id, name, icon) for name, icon in DEFAULT_ACCOUNT_TYPES]
        )

    def _seed_default_categories(self, cursor, user_id):
        cursor.executemany(
            "INSERT INTO categories (id, user_id, name, type, icon, color, is_default) "
            "VALUES (?, ?, ?, ?, ?, ?, 1)",
            [(self._new_id(), user_id, name, cat_type, icon, color)
             for name, cat_type, icon, color in DEFAULT_CATEGORIES]
        )

    # =============================================================================
    # ACCOUNT TYPES
    # =============================================================================

    def get_account_types(self, user_id):
        with self._session('get_account_types') as (conn, cursor):
            cursor.execute("SELECT * FROM account_types WHERE user_id = ? ORDER BY name", (user_id,))
            return self._rows_to_dicts(cursor.fetchall())

    def get_account_type(self, user_id, type_id):
        with self._session('get_account_type') as (conn, cursor):
            return self._fetch_owned(cursor, 'account_types', user_id, type_id)

    def create_account_type(self, user_id, name, icon=None):
        if not name:
            return False, DomainError.invalid_input("Account type name is required.")
        with self._session('create_account_type') as (conn, cursor):
            type_id = self._new_id()
            self._insert(cursor, 'account_types', {
                'id': type_id,
                'user_id': user_id,
                'name': name,
                'icon': icon,
            })
            conn.commit()
            return True, self._fetch_owned(cursor, 'account_types', user_id, type_id)

    def update_account_type(self, user_id, type_id, changes):
        error = self._reject_unknown(changes, ACCOUNT_TYPE_FIELDS)
        if error:
            return False, error
        if 'name' in changes and not changes['name']:
            return False, DomainError.invalid_input("Account type name is required.")

        with self._session('update_account_type') as (conn, cursor):
            if not self._fetch_owned(cursor, 'account_types', user_id, type_id):
                return False, DomainError.not_found('Account type')
            if changes:
                self._apply_patch(cursor, 'account_types', user_id, type_id, dict(changes), touch=False)
                conn.commit()
            return True, self._fetch_owned(cursor, 'account_types', user_id, type_id)

    def delete_account_type(self, user_id, type_id):
        """Delete a custom account type; accounts using it keep no type."""
        with self._session('delete_account_type') as (conn, cursor):
            account_type = self._fetch_owned(cursor, 'account_types', user_id, type_id)
            if not account_type:
                return False, DomainError.not_found('Account type')
            if account_type['is_default']:
                return False, DomainError.invalid_input("Default account types cannot be deleted.")
            cursor.execute("DELETE FROM account_types WHERE id = ? AND user_id = ?", (type_id, user_id))
            conn.commit()
            return True, "Account type deleted."

    # =============================================================================
    # CATEGORIES
    # =============================================================================

    def get_categories(self, user_id, category_type=None, include_inactive=False):
        with self._session('get_categories') as (conn, cursor):
            query = "SELECT * FROM categories WHERE user_id = ?"
            params = [user_id]
            if not include_inactive:
                query += " AND is_active = 1"
            if category_type:
                query += " AND type = ?"
                params.append(category_type)
            cursor.execute(query + " ORDER BY type, name", params)
            return self._rows_to_dicts(cursor.fetchall())

    def get_category(self, user_id, category_id):
        """A category with its parent and its subcategories."""
        with self._session('get_category') as (conn, cursor):
            category = self._fetch_owned(cursor, 'categories', user_id, category_id)
            if not category:
                return None
            category['parent'] = (self._fetch_owned(cursor, 'categories', user_id, category['parent_id'])
                                  if category['parent_id'] else None)
            cursor.execute(
                "SELECT * FROM categories WHERE user_id = ? AND parent_id = ? ORDER BY name",
                (user_id, category_id)
            )
            category['subcategories'] = self._rows_to_dicts(cursor.fetchall())
            return category

    def create_category(self, user_id, name, category_type, icon=None, color=None, parent_id=None):
        if not name:
            return False, DomainError.invalid_input("Category name is required.")
        if category_type not in CATEGORY_TYPES:
            return False, DomainError.invalid_input("Category type must be 'income' or 'expense'.")

        with self._session('create_category') as (conn, cursor):
            if parent_id:
                parent = self._fetch_owned(cursor, 'categories', user_id, parent_id)
                if not parent:
                    return False, DomainError.not_found('Category')
                if parent['type'] != category_type:
                    return False, DomainError.invalid_input("Parent category must have the same type.")

            category_id = self._new_id()
            self._insert(cursor, 'categories', {
                'id': category_id,
                'user_id': user_id,
                'name': name,
                'type': category_type,
                'icon': icon,
                'color': color or '#6366f1',
                'parent_id': parent_id,
            })
            conn.commit()
            return True, self._fetch_owned(cursor, 'categories', user_id, category_id)

    def update_category(self, user_id, category_id, changes):
        """Patch a category; a new parent must be another category of the same type."""
        error = self._reject_unknown(changes, CATEGORY_FIELDS)
        if error:
            return False, error
        if 'name' in changes and not changes['name']:
            return False, DomainError.invalid_input("Category name is required.")
        fields, error = self._normalize_fields(changes)
        if error:
            return False, error

        with self._session('update_category') as (conn, cursor):
            category = self._fetch_owned(cursor, 'categories', user_id, category_id)
            if not category:
                return False, DomainError.not_found('Category')

            parent_id = fields.get('parent_id')
            if parent_id:
                if parent_id == category_id:
                    return False, DomainError.invalid_input("A category cannot be its own parent.")
                parent = self._fetch_owned(cursor, 'categories', user_id, parent_id)
                if not parent:
                    return False, DomainError.not_found('Category')
                if parent['type'] != category['type']:
                    return False, DomainError.invalid_input("Parent category must have the same type.")

            if fields:
                self._apply_patch(cursor, 'categories', user_id, category_id, fields, touch=False)
                conn.commit()
            return True, self._fetch_owned(cursor, 'categories', user_id, category_id)

    def delete_category(self, user_id, category_id):
        """
        Soft delete: the category and its subcategories are deactivated.

        Default categories cannot be deleted. Ledger entries keep their
        category link.
        """
        with self._session('delete_category') as (conn, cursor):
            category = self._fetch_owned(cursor, 'categories', user_id, category_id)
            if not category:
                return False, DomainError.not_found('Category')
            if category['is_default']:
                return False, DomainError.invalid_input("Default categories cannot be deleted.")

            cursor.execute(
                "UPDATE categories SET is_active = 0 WHERE user_id = ? AND parent_id = ?",
                (user_id, category_id)
            )
            self._apply_patch(cursor, 'categories', user_id, category_id, {'is_active': 0}, touch=False)
            conn.commit()
            return True, "Category deactivated."

    # =============================================================================
    # MERCHANTS
    # =============================================================================

    def _query_merchants(self, cursor, user_id, merchant_id=None):
        clauses = ["m.user_id = ?"]
        params = [user_id]
        if merchant_id:
            clauses.append("m.id = ?")
            params.append(merchant_id)
        cursor.execute(f"""
            SELECT m.*, c.name AS category_name
            FROM merchants m
            LEFT JOIN categories c ON c.id = m.category_id
            WHERE {' AND '.join(clauses)}
            ORDER BY m.name
        """, params)
        return self._rows_to_dicts(cursor.fetchall())

    def get_merchants(self, user_id):
        with self._session('get_merchants') as (conn, cursor):
            return self._query_merchants(cursor, user_id)

    def get_merchant(self, user_id, merchant_id):
        with self._session('get_merchant') as (conn, cursor):
            rows = self._query_merchants(cursor, user_id, merchant_id)
            return rows[0] if rows else None

    def create_merchant(self, user_id, name, category_id=None, icon=None):
        if not name:
            return False, DomainError.invalid_input("Merchant name is required.")
        with self._session('create_merchant') as (conn, cursor):
            values = {'category_id': category_id}
            error = self._check_links(cursor, user_id, values)
            if error:
                return False, error
            merchant_id = self._new_id()
            values.update({'id': merchant_id, 'user_id': user_id, 'name': name, 'icon': icon})
            self._insert(cursor, 'merchants', values)
            conn.commit()
            return True, self._query_merchants(cursor, user_id, merchant_id)[0]

    def update_merchant(self, user_id, merchant_id, changes):
        error = self._reject_unknown(changes, MERCHANT_FIELDS)
        if error:
            return False, error
        if 'name' in changes and not changes['name']:
            return False, DomainError.invalid_input("Merchant name is required.")

        with self._session('update_merchant') as (conn, cursor):
            if not self._fetch_owned(cursor, 'merchants', user_id, merchant_id):
                return False, DomainError.not_found('Merchant')
            error = self._check_links(cursor, user_id, changes)
            if error:
                return False, error
            if changes:
                self._apply_patch(cursor, 'merchants', user_id, merchant_id, dict(changes), touch=False)
                conn.commit()
            return True, self._query_merchants(cursor, user_id, merchant_id)[0]

    def delete_merchant(self, user_id, merchant_id):
        """Delete a merchant; ledger entries keep the merchant_name they were posted with."""
        with self._session('delete_merchant') as (conn, cursor):
            cursor.execute("DELETE FROM merchants WHERE id = ? AND user_id = ?", (merchant_id, user_id))
            if cursor.rowcount == 0:
                return False, DomainError.not_found('Merchant')
            conn.commit()
            return True, "Merchant deleted."

    # =============================================================================
    # LEDGER AGGREGATOR
    # =============================================================================

    def aggregate_transactions(self, cursor, user_id, account_id=None, category_id=None,
                               types=None, date_range=None, goal_id=None, debt_id=None,
                               loan_id=None, merchant_id=None, recurring_transaction_id=None):
        """
        Sum ledger entries matching the criteria.

        Args:
            cursor: Open cursor (the caller owns the connection)
            user_id (str): Owner scope, mandatory
            types (iterable, optional): Entry types to include; an empty
                iterable matches nothing
            date_range (tuple, optional): Inclusive (start, end) date strings

        Returns:
            dict: {'total': float, 'count': int}; {'total': 0.0, 'count': 0}
                  when nothing matches

        Raises:
            ConsistencyViolation: No owner id given
        """
        if not user_id:
            raise ConsistencyViolation("Ledger aggregation requires an owner id.")

        clauses = ["user_id = ?"]
        params = [user_id]
        for column, value in (('account_id', account_id), ('category_id', category_id),
                              ('goal_id', goal_id), ('debt_id', debt_id), ('loan_id', loan_id),
                              ('merchant_id', merchant_id),
                              ('recurring_transaction_id', recurring_transaction_id)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if types is not None:
            types = tuple(types)
            if not types:
                return empty_aggregate()
            clauses.append(f"type IN ({', '.join('?' for _ in types)})")
            params.extend(types)
        self._date_clauses(clauses, params, 'date', date_range)

        cursor.execute(
            "SELECT COALESCE(SUM(amount), 0) AS total, COUNT(*) AS count "
            f"FROM transactions WHERE {' AND '.join(clauses)}",
            params
        )
        row = cursor.fetchone()
        return {'total': cents(row['total']), 'count': int(row['count'])}

    def aggregate_transfers(self, cursor, user_id, from_account_id=None, to_account_id=None,
                            include_fee=False, date_range=None):
        """Sum transfers; include_fee adds each transfer's fee to its amount."""
        if not user_id:
            raise ConsistencyViolation("Transfer aggregation requires an owner id.")

        clauses = ["user_id = ?"]
        params = [user_id]
        if from_account_id is not None:
            clauses.append("from_account_id = ?")
            params.append(from_account_id)
        if to_account_id is not None:
            clauses.append("to_account_id = ?")
            params.append(to_account_id)
        self._date_clauses(clauses, params, 'date', date_range)

        value = "amount + COALESCE(fee, 0)" if include_fee else "amount"
        cursor.execute(
            f"SELECT COALESCE(SUM({value}), 0) AS total, COUNT(*) AS count "
            f"FROM transfers WHERE {' AND '.join(clauses)}",
            params
        )
        row = cursor.fetchone()
        return {'total': cents(row['total']), 'count': int(row['count'])}

    @staticmethod
    def _date_clauses(clauses, params, column, date_range):
        if not date_range:
            return
        start, end = date_range
        if start:
            clauses.append(f"{column} >= ?")
            params.append(start)
        if end:
            clauses.append(f"{column} <= ?")
            params.append(end)

    # =============================================================================
    # BALANCES
    # =============================================================================

    def account_balance(self, cursor, user_id, account, mode=NARROW_DEBIT):
        """
        Project an account's balance from the ledger.

        NARROW_DEBIT counts only expenses as debits (account card view).
        ALL_OUTFLOW also counts debt payments, goal contributions and loan
        payments (dashboard cash position).
        """
        account_id = account['id']
        income = self.aggregate_transactions(cursor, user_id, account_id=account_id, types=('income',))
        debits = self.aggregate_transactions(cursor, user_id, account_id=account_id,
                                             types=debit_types(mode))
        incoming = self.aggregate_transfers(cursor, user_id, to_account_id=account_id)
        outgoing = self.aggregate_transfers(cursor, user_id, from_account_id=account_id)
        outgoing_with_fees = self.aggregate_transfers(cursor, user_id, from_account_id=account_id,
                                                      include_fee=True)
        fees = cents(to_money(outgoing_with_fees['total']) - to_money(outgoing['total']))

        balance = project_balance(
            account['initial_balance'],
            income['total'],
            debits['total'],
            incoming['total'],
            outgoing['total'],
            fees,
        )
        return {
            'balance': balance,
            'stats': {
                'total_income': income['total'],
                'total_expense': debits['total'],
                'transfers_in': incoming['total'],
                'transfers_out': outgoing_with_fees['total'],
                'transfer_fees': fees,
            },
        }

    def _portfolio_balance(self, cursor, user_id, mode, account_ids=None):
        """Per-account balances plus the total of the accounts that count."""
        cursor.execute(
            "SELECT * FROM accounts WHERE user_id = ? AND is_active = 1 ORDER BY created_at, name",
            (user_id,)
        )
        accounts = self._rows_to_dicts(cursor.fetchall())

        counted = []
        listed = []
        for account in accounts:
            balance = self.account_balance(cursor, user_id, account, mode)['balance']
            included = counts_toward_total(account, account_ids)
            if included:
                counted.append(balance)
            listed.append({
                'id': account['id'],
                'name': account['name'],
                'currency': account['currency'],
                'color': account['color'],
                'icon': account['icon'],
                'balance': balance,
                'counts_toward_total': included,
            })
        return money_sum(counted), listed

    # =============================================================================
    # ACCOUNTS
    # =============================================================================

    def get_accounts(self, user_id, include_inactive=False):
        """
        List accounts with their NARROW_DEBIT balance and ledger stats.

        Returns:
            dict: {'accounts': [...], 'total_balance': float, 'count': int}
        """
        with self._session('get_accounts') as (conn, cursor):
            query = "SELECT * FROM accounts WHERE user_id = ?"
            if not include_inactive:
                query += " AND is_active = 1"
            cursor.execute(query + " ORDER BY created_at DESC, name", (user_id,))
            accounts = self._rows_to_dicts(cursor.fetchall())

            for account in accounts:
                account.update(self.account_balance(cursor, user_id, account, NARROW_DEBIT))

            total_balance = money_sum(a['balance'] for a in accounts if counts_toward_total(a))
            return {'accounts': accounts, 'total_balance': total_balance, 'count': len(accounts)}

    def get_account(self, user_id, account_id):
        with self._session('get_account') as (conn, cursor):
            account = self._fetch_owned(cursor, 'accounts', user_id, account_id)
            if not account:
                return None
            account.update(self.account_balance(cursor, user_id, account, NARROW_DEBIT))
            account['recent_transactions'] = self._query_transactions(
                cursor, user_id, {'account_id': account_id}, limit=10)
            return account

    def create_account(self, user_id, name, initial_balance=0, currency=None, description=None,
                       color=None, icon=None, include_in_total=True, account_type_id=None):
        if not name:
            return False, DomainError.invalid_input("Account name is required.")

        values, error = self._normalize_fields({
            'initial_balance': initial_balance,
            'include_in_total': include_in_total,
        })
        if error:
            return False, error

        with self._session('create_account') as (conn, cursor):
            if account_type_id and not self._fetch_owned(cursor, 'account_types', user_id, account_type_id):
                return False, DomainError.not_found('Account type')
            account_id = self._new_id()
            values.update({
                'id': account_id,
                'user_id': user_id,
                'account_type_id': account_type_id,
                'name': name,
                'description': description,
                'currency': currency or self.default_currency,
                'color': color or '#3b82f6',
                'icon': icon,
            })
            self._insert(cursor, 'accounts', values)
            conn.commit()
            logger.info("[ENGINE] Account %s created for %s", account_id, user_id)

            account = self._fetch_owned(cursor, 'accounts', user_id, account_id)
            account.update(self.account_balance(cursor, user_id, account, NARROW_DEBIT))
            return True, account

    def update_account(self, user_id, account_id, changes):
        error = self._reject_unknown(changes, ACCOUNT_FIELDS)
        if error:
            return False, error
        if 'name' in changes and not changes['name']:
            return False, DomainError.invalid_input("Account name is required.")
        fields, error = self._normalize_fields(changes)
        if error:
            return False, error

        with self._session('update_account') as (conn, cursor):
            if not self._fetch_owned(cursor, 'accounts', user_id, account_id):
                return False, DomainError.not_found('Account')
            error = self._check_links(cursor, user_id, fields)
            if error:
                return False, error
            if fields:
                self._apply_patch(cursor, 'accounts', user_id, account_id, fields)
                conn.commit()
            account = self._fetch_owned(cursor, 'accounts', user_id, account_id)
            account.update(self.account_balance(cursor, user_id, account, NARROW_DEBIT))
            return True, account

    def delete_account(self, user_id, account_id):
        """Soft delete: the account is deactivated, its ledger history stays."""
        with self._session('delete_account') as (conn, cursor):
            if not self._fetch_owned(cursor, 'accounts', user_id, account_id):
                return False, DomainError.not_found('Account')
            self._apply_patch(cursor, 'accounts', user_id, account_id, {'is_active': 0})
            conn.commit()
            return True, "Account deactivated."

    # =============================================================================
    # TRANSACTIONS (LEDGER WRITE PATH)
    # =============================================================================

    def _insert_transaction(self, cursor, user_id, values):
        transaction_id = self._new_id()
        row = {
            'id': transaction_id,
            'user_id': user_id,
            'account_id': values['account_id'],
            'category_id': values.get('category_id'),
            'subcategory_id': values.get('subcategory_id'),
            'type': values['type'],
            'amount': values['amount'],
            'description': values.get('description'),
            'notes': values.get('notes'),
            'date': values.get('date') or self.today(),
            'merchant_id': values.get('merchant_id'),
            'merchant_name': values.get('merchant_name'),
            'debt_id': values.get('debt_id'),
            'loan_id': values.get('loan_id'),
            'goal_id': values.get('goal_id'),
            'recurring_transaction_id': values.get('recurring_transaction_id'),
            'scheduled_payment_id': values.get('scheduled_payment_id'),
        }
        self._insert(cursor, 'transactions', row)
        return transaction_id

    def _get_transaction_row(self, cursor, user_id, transaction_id):
        rows = self._query_transactions(cursor, user_id, {'id': transaction_id}, limit=1)
        return rows[0] if rows else None

    def _query_transactions(self, cursor, user_id, filters=None, limit=50, offset=0):
        filters = filters or {}
        clauses = ["t.user_id = ?"]
        params = [user_id]
        for column in ('id', 'account_id', 'category_id', 'type', 'goal_id', 'debt_id',
                       'loan_id', 'merchant_id', 'recurring_transaction_id', 'scheduled_payment_id'):
            if filters.get(column) is not None:
                clauses.append(f"t.{column} = ?")
                params.append(filters[column])
        self._date_clauses(clauses, params, 't.date',
                           (filters.get('start_date'), filters.get('end_date')))

        params.extend([limit, offset])
        cursor.execute(f"""
            SELECT t.*, a.name AS account_name, c.name AS category_name,
                   c.icon AS category_icon, c.color AS category_color,
                   s.name AS subcategory_name
            FROM transactions t
            JOIN accounts a ON a.id = t.account_id
            LEFT JOIN categories c ON c.id = t.category_id
            LEFT JOIN categories s ON s.id = t.subcategory_id
            WHERE {' AND '.join(clauses)}
            ORDER BY t.date DESC, t.created_at DESC
            LIMIT ? OFFSET ?
        """, params)
        return self._rows_to_dicts(cursor.fetchall())

    def create_transaction(self, user_id, account_id, transaction_type, amount, date=None,
                           category_id=None, description=None, notes=None, goal_id=None,
                           debt_id=None, loan_id=None, subcategory_id=None, merchant_id=None,
                           merchant_name=None, recurring_transaction_id=None):
        """
        Post a ledger entry.

        A subcategory must be a child of the given category. A merchant's
        name is copied onto the entry unless merchant_name is given.

        Returns:
            tuple: (True, transaction dict) or (False, DomainError)
        """
        if not account_id:
            return False, DomainError.invalid_input("'account_id' is required.")
        if transaction_type not in TRANSACTION_TYPES:
            return False, DomainError.invalid_input(
                f"Transaction type must be one of: {', '.join(TRANSACTION_TYPES)}.")

        values, error = self._normalize_fields({'amount': amount, 'date': date})
        if error:
            return False, error
        values.update({
            'account_id': account_id,
            'type': transaction_type,
            'category_id': category_id,
            'subcategory_id': subcategory_id,
            'description': description,
            'notes': notes,
            'merchant_id': merchant_id,
            'merchant_name': merchant_name,
            'goal_id': goal_id,
            'debt_id': debt_id,
            'loan_id': loan_id,
            'recurring_transaction_id': recurring_transaction_id,
        })

        with self._session('create_transaction') as (conn, cursor):
            error = self._check_links(cursor, user_id, values)
            if error:
                return False, error
            if subcategory_id:
                subcategory = self._fetch_owned(cursor, 'categories', user_id, subcategory_id)
                if category_id and subcategory['parent_id'] != category_id:
                    return False, DomainError.invalid_input(
                        "Subcategory must belong to the selected category.")
            if merchant_id and not merchant_name:
                values['merchant_name'] = self._fetch_owned(cursor, 'merchants', user_id, merchant_id)['name']

            transaction_id = self._insert_transaction(cursor, user_id, values)
            conn.commit()
            return True, self._get_transaction_row(cursor, user_id, transaction_id)

    def get_transactions(self, user_id, account_id=None, category_id=None, transaction_type=None,
                         start_date=None, end_date=None, limit=50, offset=0, merchant_id=None,
                         recurring_transaction_id=None):
        """
        Filtered, paginated ledger listing with a summary over the same filter.

        Returns:
            dict: {'transactions', 'pagination': {total, limit, offset, has_more},
                   'summary': {total_income, total_expense, count}}
        """
        filters = {
            'account_id': account_id,
            'category_id': category_id,
            'type': transaction_type,
            'merchant_id': merchant_id,
            'recurring_transaction_id': recurring_transaction_id,
            'start_date': start_date,
            'end_date': end_date,
        }
        scope = {
            'account_id': account_id,
            'category_id': category_id,
            'merchant_id': merchant_id,
            'recurring_transaction_id': recurring_transaction_id,
            'date_range': (start_date, end_date),
        }
        with self._session('get_transactions') as (conn, cursor):
            rows = self._query_transactions(cursor, user_id, filters, limit=limit, offset=offset)
            matched = self.aggregate_transactions(
                cursor, user_id, types=(transaction_type,) if transaction_type else None, **scope)
            income = self.aggregate_transactions(cursor, user_id, types=('income',), **scope)
            expense = self.aggregate_transactions(cursor, user_id, types=('expense',), **scope)

            return {
                'transactions': rows,
                'pagination': {
                    'total': matched['count'],
                    'limit': limit,
                    'offset': offset,
                    'has_more': offset + len(rows) < matched['count'],
                },
                'summary': {
                    'total_income': income['total'],
                    'total_expense': expense['total'],
                    'count': matched['count'],
                },
            }

    def get_transaction(self, user_id, transaction_id):
        with self._session('get_transaction') as (conn, cursor):
            return self._get_transaction_row(cursor, user_id, transaction_id)

    def update_transaction(self, user_id, transaction_id, changes):
        """Correct an entry; only description, amount, category and notes can change."""
        error = self._reject_unknown(changes, TRANSACTION_EDITABLE)
        if error:
            return False, error
        fields, error = self._normalize_fields(changes)
        if error:
            return False, error

        with self._session('update_transaction') as (conn, cursor):
            if not self._fetch_owned(cursor, 'transactions', user_id, transaction_id):
                return False, DomainError.not_found('Transaction')
            error = self._check_links(cursor, user_id, fields)
            if error:
                return False, error
            if fields:
                self._apply_patch(cursor, 'transactions', user_id, transaction_id, fields)
                conn.commit()
            return True, self._get_transaction_row(cursor, user_id, transaction_id)

    def delete_transaction(self, user_id, transaction_id):
        with self._session('delete_transaction') as (conn, cursor):
            cursor.execute("DELETE FROM transactions WHERE id = ? AND user_id = ?",
                           (transaction_id, user_id))
            if cursor.rowcount == 0:
                return False, DomainError.not_found('Transaction')
            conn.commit()
            return True, "Transaction deleted."

    def get_category_summary(self, user_id, transaction_type='expense', start_date=None,
                             end_date=None, limit=None):
        with self._session('get_category_summary') as (conn, cursor):
            return self._category_breakdown(cursor, user_id, transaction_type,
                                            (start_date, end_date), limit)

    def _category_breakdown(self, cursor, user_id, transaction_type, date_range, limit=None):
        """Totals per category, largest first, with each category's share of the total."""
        clauses = ["t.user_id = ?", "t.type = ?"]
        params = [user_id, transaction_type]
        self._date_clauses(clauses, params, 't.date', date_range)
        query = f"""
            SELECT t.category_id, c.name AS category_name, c.icon AS category_icon,
                   c.color AS category_color, SUM(t.amount) AS total, COUNT(*) AS count
            FROM transactions t
            LEFT JOIN categories c ON c.id = t.category_id
            WHERE {' AND '.join(clauses)}
            GROUP BY t.category_id, c.name, c.icon, c.color
            ORDER BY total DESC
        """
        if limit:
            query += " LIMIT ?"
            params.append(limit)
        cursor.execute(query, params)
        rows = self._rows_to_dicts(cursor.fetchall())

        period_total = self.aggregate_transactions(
            cursor, user_id, types=(transaction_type,), date_range=date_range)['total']
        for row in rows:
            row['total'] = cents(row['total'])
            row['percentage'] = share_percent(row['total'], period_total)
        return rows

    # =============================================================================
    # TRANSFERS
    # =============================================================================

    def create_transfer(self, user_id, from_account_id, to_account_id, amount, fee=0,
                        description=None, date=None):
        if not from_account_id or not to_account_id:
            return False, DomainError.invalid_input("Both accounts are required.")
        if from_account_id == to_account_id:
            return False, DomainError.invalid_input("Cannot transfer to the same account.")

        values, error = self._normalize_fields({'amount': amount, 'fee': fee, 'date': date})
        if error:
            return False, error

        with self._session('create_transfer') as (conn, cursor):
            values.update({'from_account_id': from_account_id, 'to_account_id': to_account_id})
            error = self._check_links(cursor, user_id, values)
            if error:
                return False, error

            transfer_id = self._new_id()
            values.update({
                'id': transfer_id,
                'user_id': user_id,
                'description': description,
                'date': values['date'] or self.today(),
            })
            self._insert(cursor, 'transfers', values)
            conn.commit()
            return True, self._get_transfer_row(cursor, user_id, transfer_id)

    def _get_transfer_row(self, cursor, user_id, transfer_id):
        rows = self._query_transfers(cursor, user_id, transfer_id=transfer_id)
        return rows[0] if rows else None

    def _query_transfers(self, cursor, user_id, transfer_id=None, account_id=None,
                         start_date=None, end_date=None, limit=50, offset=0):
        clauses = ["t.user_id = ?"]
        params = [user_id]
        if transfer_id:
            clauses.append("t.id = ?")
            params.append(transfer_id)
        if account_id:
            clauses.append("(t.from_account_id = ? OR t.to_account_id = ?)")
            params.extend([account_id, account_id])
        self._date_clauses(clauses, params, 't.date', (start_date, end_date))
        params.extend([limit, offset])
        cursor.execute(f"""
            SELECT t.*, fa.name AS from_account_name, ta.name AS to_account_name
            FROM transfers t
            JOIN accounts fa ON fa.id = t.from_account_id
            JOIN accounts ta ON ta.id = t.to_account_id
            WHERE {' AND '.join(clauses)}
            ORDER BY t.date DESC, t.created_at DESC
            LIMIT ? OFFSET ?
        """, params)
        return self._rows_to_dicts(cursor.fetchall())

    def get_transfers(self, user_id, account_id=None, start_date=None, end_date=None,
                      limit=50, offset=0):
        with self._session('get_transfers') as (conn, cursor):
            return self._query_transfers(cursor, user_id, account_id=account_id,
                                         start_date=start_date, end_date=end_date,
                                         limit=limit, offset=offset)

    def get_transfer(self, user_id, transfer_id):
        with self._session('get_transfer') as (conn, cursor):
            return self._get_transfer_row(cursor, user_id, transfer_id)

    def delete_transfer(self, user_id, transfer_id):
        with self._session('delete_transfer') as (conn, cursor):
            cursor.execute("DELETE FROM transfers WHERE id = ? AND user_id = ?", (transfer_id, user_id))
            if cursor.rowcount == 0:
                return False, DomainError.not_found('Transfer')
            conn.commit()
            return True, "Transfer deleted."

    # =============================================================================
    # RECURRING TRANSACTIONS
    # =============================================================================

    def _query_recurring(self, cursor, user_id, clauses=None, params=None):
        clauses = ["r.user_id = ?"] + list(clauses or [])
        params = [user_id] + list(params or [])
        cursor.execute(f"""
            SELECT r.*, a.name AS account_name, c.name AS category_name
            FROM recurring_transactions r
            JOIN accounts a ON a.id = r.account_id
            LEFT JOIN categories c ON c.id = r.category_id
            WHERE {' AND '.join(clauses)}
            ORDER BY r.next_due_date, r.created_at
        """, params)
        return self._rows_to_dicts(cursor.fetchall())

    @staticmethod
    def _decorate_recurring(template, today):
        template['is_due'] = bool(template['is_active']) and template['next_due_date'] <= today
        return template

    def _get_recurring_row(self, cursor, user_id, recurring_id, today):
        rows = self._query_recurring(cursor, user_id, ["r.id = ?"], [recurring_id])
        return self._decorate_recurring(rows[0], today) if rows else None

    def get_recurring_transactions(self, user_id, active_only=False):
        today = self.today()
        with self._session('get_recurring_transactions') as (conn, cursor):
            clauses = ["r.is_active = 1"] if active_only else []
            return [self._decorate_recurring(row, today)
                    for row in self._query_recurring(cursor, user_id, clauses)]

    def get_recurring_transaction(self, user_id, recurring_id):
        """A template with the ledger entries it has posted, newest first."""
        with self._session('get_recurring_transaction') as (conn, cursor):
            template = self._get_recurring_row(cursor, user_id, recurring_id, self.today())
            if not template:
                return None
            template['transactions'] = self._query_transactions(
                cursor, user_id, {'recurring_transaction_id': recurring_id}, limit=100)
            return template

    def create_recurring_transaction(self, user_id, account_id, transaction_type, amount, frequency,
                                     start_date=None, end_date=None, category_id=None,
                                     description=None, day_of_month=None, day_of_week=None):
        """
        Create an income or expense template. Its first occurrence is due on
        start_date (today when omitted).
        """
        if not account_id:
            return False, DomainError.invalid_input("'account_id' is required.")

        values, error = self._normalize_fields({
            'type': transaction_type,
            'amount': amount,
            'frequency': frequency,
            'start_date': start_date or self.today(),
            'end_date': end_date,
            'day_of_month': day_of_month,
            'day_of_week': day_of_week,
        }, {'type': TEMPLATE_TYPES, 'frequency': TEMPLATE_FREQUENCIES})
        if error:
            return False, error
        if values['end_date'] and values['end_date'] < values['start_date']:
            return False, DomainError.invalid_input("'end_date' cannot be before 'start_date'.")

        today = self.today()
        with self._session('create_recurring_transaction') as (conn, cursor):
            values.update({'account_id': account_id, 'category_id': category_id})
            error = self._check_links(cursor, user_id, values)
            if error:
                return False, error

            recurring_id = self._new_id()
            values.update({
                'id': recurring_id,
                'user_id': user_id,
                'description': description,
                'next_due_date': values['start_date'],
            })
            self._insert(cursor, 'recurring_transactions', values)
            conn.commit()
            return True, self._get_recurring_row(cursor, user_id, recurring_id, today)

    def update_recurring_transaction(self, user_id, recurring_id, changes):
        error = self._reject_unknown(changes, RECURRING_FIELDS)
        if error:
            return False, error
        if 'account_id' in changes and not changes['account_id']:
            return False, DomainError.invalid_input("'account_id' is required.")
        fields, error = self._normalize_fields(changes)
        if error:
            return False, error

        today = self.today()
        with self._session('update_recurring_transaction') as (conn, cursor):
            template = self._fetch_owned(cursor, 'recurring_transactions', user_id, recurring_id)
            if not template:
                return False, DomainError.not_found('Recurring transaction')
            if fields.get('end_date') and fields['end_date'] < template['start_date']:
                return False, DomainError.invalid_input("'end_date' cannot be before 'start_date'.")
            error = self._check_links(cursor, user_id, fields)
            if error:
                return False, error
            if fields:
                self._apply_patch(cursor, 'recurring_transactions', user_id, recurring_id, fields)
                conn.commit()
            return True, self._get_recurring_row(cursor, user_id, recurring_id, today)

    def delete_recurring_transaction(self, user_id, recurring_id):
        """Delete a template; entries it posted stay in the ledger, unlinked."""
        with self._session('delete_recurring_transaction') as (conn, cursor):
            cursor.execute("DELETE FROM recurring_transactions WHERE id = ? AND user_id = ?",
                           (recurring_id, user_id))
            if cursor.rowcount == 0:
                return False, DomainError.not_found('Recurring transaction')
            conn.commit()
            return True, "Recurring transaction deleted."

    def post_recurring_transaction(self, user_id, recurring_id, date=None):
        """
        Post a template's due occurrence to the ledger and advance it.

        The entry is dated `date` (default: the occurrence's due date) and
        linked by recurring_transaction_id. next_due_date moves one frequency
        step; a template whose next occurrence falls after its end_date is
        deactivated. The advance is guarded on the old due date, so two
        concurrent posts of the same occurrence produce one entry.

        Returns:
            tuple: (True, {'transaction', 'recurring_transaction'}) or
                   (False, DomainError)
        """
        if date is not None:
            date = self._to_date_value(date)
            if date is None:
                return False, DomainError.invalid_input("'date' must be a YYYY-MM-DD date.")

        today = self.today()
        with self._session('post_recurring_transaction') as (conn, cursor):
            template = self._fetch_owned(cursor, 'recurring_transactions', user_id, recurring_id)
            if not template:
                return False, DomainError.not_found('Recurring transaction')
            if not template['is_active']:
                return False, DomainError.invalid_transition(
                    "Recurring transaction is inactive.", 'inactive')

            due_date = template['next_due_date']
            next_due = advance_date(due_date, template['frequency'], TEMPLATE_STEPS)
            fields = {'next_due_date': next_due, 'last_processed_at': self._now()}
            if template['end_date'] and next_due > template['end_date']:
                fields['is_active'] = 0

            assignments = ', '.join(f"{column} = ?" for column in fields)
            cursor.execute(
                f"UPDATE recurring_transactions SET {assignments}, updated_at = ? "
                "WHERE id = ? AND user_id = ? AND is_active = 1 AND next_due_date = ?",
                list(fields.values()) + [self._now(), recurring_id, user_id, due_date]
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return False, DomainError.invalid_transition(
                    "This occurrence was already posted.", 'already_posted')

            transaction_id = self._insert_transaction(cursor, user_id, {
                'account_id': template['account_id'],
                'category_id': template['category_id'],
                'type': template['type'],
                'amount': template['amount'],
                'description': template['description'],
                'date': date or due_date,
                'recurring_transaction_id': recurring_id,
            })
            conn.commit()
            logger.info("[ENGINE] Recurring transaction %s posted for %s", recurring_id, user_id)

            return True, {
                'transaction': self._get_transaction_row(cursor, user_id, transaction_id),
                'recurring_transaction': self._get_recurring_row(cursor, user_id, recurring_id, today),
            }

    # =============================================================================
    # GOALS
    # =============================================================================

    def _project_goal(self, cursor, user_id, goal, today):
        contributed = self.aggregate_transactions(
            cursor, user_id, goal_id=goal['id'], types=('goal_contribution',))
        projected = project_goal(goal, contributed['total'], today)
        projected['contribution_count'] = contributed['count']
        return projected

    def get_goals(self, user_id, include_completed=True, active_only=False):
        today = self.today()
        with self._session('get_goals') as (conn, cursor):
            query = "SELECT * FROM goals WHERE user_id = ?"
            if not include_completed:
                query += " AND is_completed = 0"
            if active_only:
                query += " AND is_active = 1"
            cursor.execute(
                query + " ORDER BY is_completed, target_date IS NULL, target_date, name",
                (user_id,)
            )
            goals = self._rows_to_dicts(cursor.fetchall())
            return [self._project_goal(cursor, user_id, goal, today) for goal in goals]

    def get_goal(self, user_id, goal_id):
        with self._session('get_goal') as (conn, cursor):
            goal = self._fetch_owned(cursor, 'goals', user_id, goal_id)
            if not goal:
                return None
            projected = self._project_goal(cursor, user_id, goal, self.today())
            projected['contributions'] = self._query_transactions(
                cursor, user_id, {'goal_id': goal_id, 'type': 'goal_contribution'}, limit=100)
            return projected

    def create_goal(self, user_id, name, target_amount, target_date=None, description=None,
                    currency=None, icon=None, color=None):
        if not name:
            return False, DomainError.invalid_input("Goal name is required.")
        values, error = self._normalize_fields({'target_amount': target_amount,
                                                'target_date': target_date})
        if error:
            return False, error

        with self._session('create_goal') as (conn, cursor):
            goal_id = self._new_id()
            values.update({
                'id': goal_id,
                'user_id': user_id,
                'name': name,
                'description': description,
                'currency': currency or self.default_currency,
                'icon': icon,
                'color': color or '#10b981',
            })
            self._insert(cursor, 'goals', values)
            conn.commit()
            goal = self._fetch_owned(cursor, 'goals', user_id, goal_id)
            return True, self._project_goal(cursor, user_id, goal, self.today())

    def update_goal(self, user_id, goal_id, changes):
        error = self._reject_unknown(changes, GOAL_FIELDS)
        if error:
            return False, error
        fields, error = self._normalize_fields(changes)
        if error:
            return False, error

        with self._session('update_goal') as (conn, cursor):
            if not self._fetch_owned(cursor, 'goals', user_id, goal_id):
                return False, DomainError.not_found('Goal')
            if fields:
                self._apply_patch(cursor, 'goals', user_id, goal_id, fields)
                conn.commit()
            goal = self._fetch_owned(cursor, 'goals', user_id, goal_id)
            return True, self._project_goal(cursor, user_id, goal, self.today())

    def delete_goal(self, user_id, goal_id):
        """Delete a goal; its contributions stay in the ledger, unlinked."""
        with self._session('delete_goal') as (conn, cursor):
            cursor.execute("DELETE FROM goals WHERE id = ? AND user_id = ?", (goal_id, user_id))
            if cursor.rowcount == 0:
                return False, DomainError.not_found('Goal')
            conn.commit()
            return True, "Goal deleted."

    def complete_goal(self, user_id, goal_id):
        with self._session('complete_goal') as (conn, cursor):
            if not self._fetch_owned(cursor, 'goals', user_id, goal_id):
                return False, DomainError.not_found('Goal')
            self._apply_patch(cursor, 'goals', user_id, goal_id,
                              {'is_completed': 1, 'completed_at': self._now()})
            conn.commit()
            goal = self._fetch_owned(cursor, 'goals', user_id, goal_id)
            return True, self._project_goal(cursor, user_id, goal, self.today())

    def contribute_to_goal(self, user_id, goal_id, account_id, amount, date=None, description=None):
        """
        Move money from an account into a goal by posting a goal_contribution.

        The goal is marked completed once its contributions reach the target.
        """
        values, error = self._normalize_fields({'amount': amount, 'date': date})
        if error:
            return False, error

        with self._session('contribute_to_goal') as (conn, cursor):
            goal = self._fetch_owned(cursor, 'goals', user_id, goal_id)
            if not goal:
                return False, DomainError.not_found('Goal')
            if not self._fetch_owned(cursor, 'accounts', user_id, account_id):
                return False, DomainError.not_found('Account')

            values.update({
                'account_id': account_id,
                'type': 'goal_contribution',
                'goal_id': goal_id,
                'description': description or f"Contribution: {goal['name']}",
            })
            transaction_id = self._insert_transaction(cursor, user_id, values)

            projected = self._project_goal(cursor, user_id, goal, self.today())
            if projected['progress'] >= 100 and not goal['is_completed']:
                self._apply_patch(cursor, 'goals', user_id, goal_id,
                                  {'is_completed': 1, 'completed_at': self._now()})
                goal = self._fetch_owned(cursor, 'goals', user_id, goal_id)
                projected = self._project_goal(cursor, user_id, goal, self.today())
            conn.commit()

            return True, {
                'transaction': self._get_transaction_row(cursor, user_id, transaction_id),
                'goal': projected,
            }

    # =============================================================================
    # DEBTS
    # =============================================================================

    def _project_debt(self, cursor, user_id, debt):
        paid = self.aggregate_transactions(cursor, user_id, debt_id=debt['id'], types=('debt_payment',))
        return project_debt(debt, paid['total'])

    def _debt_installments(self, cursor, debt_id):
        cursor.execute(
            "SELECT * FROM debt_installments WHERE debt_id = ? ORDER BY installment_number",
            (debt_id,)
        )
        return self._rows_to_dicts(cursor.fetchall())

    def get_debts(self, user_id, status=None):
        with self._session('get_debts') as (conn, cursor):
            query = "SELECT * FROM debts WHERE user_id = ?"
            params = [user_id]
            if status:
                query += " AND status = ?"
                params.append(status)
            cursor.execute(query + " ORDER BY created_at DESC", params)
            debts = []
            for debt in self._rows_to_dicts(cursor.fetchall()):
                projected = self._project_debt(cursor, user_id, debt)
                projected['installments'] = self._debt_installments(cursor, debt['id'])
                debts.append(projected)
            return debts

    def get_debt(self, user_id, debt_id):
        with self._session('get_debt') as (conn, cursor):
            debt = self._fetch_owned(cursor, 'debts', user_id, debt_id)
            if not debt:
                return None
            projected = self._project_debt(cursor, user_id, debt)
            projected['installments'] = self._debt_installments(cursor, debt_id)
            projected['payments'] = self._query_transactions(
                cursor, user_id, {'debt_id': debt_id, 'type': 'debt_payment'}, limit=100)
            return projected

    def create_debt(self, user_id, creditor, principal_amount, start_date=None,
                    total_installments=None, due_date=None, interest_rate=0, currency=None,
                    description=None, notes=None):
        """
        Create a debt, and its installment plan when total_installments is given.

        Installment n (1-based) is due n months after start_date, for
        principal / total_installments rounded to cents.
        """
        if not creditor:
            return False, DomainError.invalid_input("Creditor is required.")
        values, error = self._normalize_fields({
            'principal_amount': principal_amount,
            'interest_rate': interest_rate,
            'start_date': start_date or self.today(),
            'due_date': due_date,
            'total_installments': total_installments,
        })
        if error:
            return False, error

        with self._session('create_debt') as (conn, cursor):
            debt_id = self._new_id()
            values.update({
                'id': debt_id,
                'user_id': user_id,
                'creditor': creditor,
                'description': description,
                'currency': currency or self.default_currency,
                'notes': notes,
            })
            self._insert(cursor, 'debts', values)

            count = values['total_installments']
            if count:
                amount = cents(to_money(values['principal_amount']) / count)
                dates = monthly_schedule(values['start_date'], count, offset=1)
                cursor.executemany(
                    "INSERT INTO debt_installments (id, debt_id, installment_number, amount, due_date) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [(self._new_id(), debt_id, number, amount, due)
                     for number, due in enumerate(dates, start=1)]
                )
            conn.commit()

            debt = self._fetch_owned(cursor, 'debts', user_id, debt_id)
            projected = self._project_debt(cursor, user_id, debt)
            projected['installments'] = self._debt_installments(cursor, debt_id)
            return True, projected

    def update_debt(self, user_id, debt_id, changes):
        error = self._reject_unknown(changes, DEBT_FIELDS)
        if error:
            return False, error
        fields, error = self._normalize_fields(changes, {'status': DEBT_STATUSES})
        if error:
            return False, error

        with self._session('update_debt') as (conn, cursor):
            if not self._fetch_owned(cursor, 'debts', user_id, debt_id):
                return False, DomainError.not_found('Debt')
            if fields:
                self._apply_patch(cursor, 'debts', user_id, debt_id, fields)
                conn.commit()
            debt = self._fetch_owned(cursor, 'debts', user_id, debt_id)
            projected = self._project_debt(cursor, user_id, debt)
            projected['installments'] = self._debt_installments(cursor, debt_id)
            return True, projected

    def delete_debt(self, user_id, debt_id):
        with self._session('delete_debt') as (conn, cursor):
            cursor.execute("DELETE FROM debts WHERE id = ? AND user_id = ?", (debt_id, user_id))
            if cursor.rowcount == 0:
                return False, DomainError.not_found('Debt')
            conn.commit()
            return True, "Debt deleted."

    def update_installment(self, user_id, debt_id, installment_id, status='paid', paid_date=None):
        """Mark an installment paid (or back to pending/overdue)."""
        if status not in INSTALLMENT_STATUSES:
            return False, DomainError.invalid_input(
                f"Installment status must be one of: {', '.join(INSTALLMENT_STATUSES)}.")
        paid_date_value = None
        if status == 'paid':
            paid_date_value = self._to_date_value(paid_date or self.today())
            if paid_date_value is None:
                return False, DomainError.invalid_input("'paid_date' must be a YYYY-MM-DD date.")

        with self._session('update_installment') as (conn, cursor):
            if not self._fetch_owned(cursor, 'debts', user_id, debt_id):
                return False, DomainError.not_found('Debt')
            cursor.execute(
                "UPDATE debt_installments SET status = ?, paid_date = ? WHERE id = ? AND debt_id = ?",
                (status, paid_date_value, installment_id, debt_id)
            )
            if cursor.rowcount == 0:
                return False, DomainError.not_found('Debt installment')
            conn.commit()
            cursor.execute("SELECT * FROM debt_installments WHERE id = ?", (installment_id,))
            return True, self._row_to_dict(cursor.fetchone())

    def make_debt_payment(self, user_id, debt_id, account_id, amount, date=None,
                          description=None, category_id=None, installment_id=None):
        """
        Pay toward a debt by posting a debt_payment entry.

        The debt moves to 'paid' once payments cover the principal, otherwise
        to 'partial'. A given installment is marked paid on the same date.
        """
        if not account_id:
            return False, DomainError.invalid_input("'account_id' is required.")
        values, error = self._normalize_fields({'amount': amount, 'date': date})
        if error:
            return False, error

        with self._session('make_debt_payment') as (conn, cursor):
            debt = self._fetch_owned(cursor, 'debts', user_id, debt_id)
            if not debt:
                return False, DomainError.not_found('Debt')
            values.update({
                'account_id': account_id,
                'category_id': category_id,
                'type': 'debt_payment',
                'debt_id': debt_id,
                'description': description or f"Debt payment: {debt['creditor']}",
            })
            error = self._check_links(cursor, user_id, values)
            if error:
                return False, error

            transaction_id = self._insert_transaction(cursor, user_id, values)
            if installment_id:
                cursor.execute(
                    "UPDATE debt_installments SET status = 'paid', paid_date = ? "
                    "WHERE id = ? AND debt_id = ?",
                    (values['date'] or self.today(), installment_id, debt_id)
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return False, DomainError.not_found('Debt installment')

            projected = self._project_debt(cursor, user_id, debt)
            status = 'paid' if projected['progress'] >= 100 else 'partial'
            self._apply_patch(cursor, 'debts', user_id, debt_id, {'status': status})
            conn.commit()
            projected['status'] = status

            return True, {
                'transaction': self._get_transaction_row(cursor, user_id, transaction_id),
                'debt': projected,
            }

    # =============================================================================
    # LOANS
    # =============================================================================

    def _project_loan(self, cursor, user_id, loan):
        received = self.aggregate_transactions(cursor, user_id, loan_id=loan['id'], types=('loan_payment',))
        return project_loan(loan, received['total'])

    def get_loans(self, user_id, status=None):
        with self._session('get_loans') as (conn, cursor):
            query = "SELECT * FROM loans WHERE user_id = ?"
            params = [user_id]
            if status:
                query += " AND status = ?"
                params.append(status)
            cursor.execute(query + " ORDER BY created_at DESC", params)
            return [self._project_loan(cursor, user_id, loan)
                    for loan in self._rows_to_dicts(cursor.fetchall())]

    def get_loan(self, user_id, loan_id):
        with self._session('get_loan') as (conn, cursor):
            loan = self._fetch_owned(cursor, 'loans', user_id, loan_id)
            if not loan:
                return None
            projected = self._project_loan(cursor, user_id, loan)
            projected['payments'] = self._query_transactions(
                cursor, user_id, {'loan_id': loan_id, 'type': 'loan_payment'}, limit=100)
            return projected

    def create_loan(self, user_id, borrower, principal_amount, loan_date=None, due_date=None,
                    interest_rate=0, currency=None, borrower_contact=None, description=None,
                    notes=None):
        if not borrower:
            return False, DomainError.invalid_input("Borrower is required.")
        values, error = self._normalize_fields({
            'principal_amount': principal_amount,
            'interest_rate': interest_rate,
            'loan_date': loan_date or self.today(),
            'due_date': due_date,
        })
        if error:
            return False, error

        with self._session('create_loan') as (conn, cursor):
            loan_id = self._new_id()
            values.update({
                'id': loan_id,
                'user_id': user_id,
                'borrower': borrower,
                'borrower_contact': borrower_contact,
                'description': description,
                'currency': currency or self.default_currency,
                'notes': notes,
            })
            self._insert(cursor, 'loans', values)
            conn.commit()
            loan = self._fetch_owned(cursor, 'loans', user_id, loan_id)
            return True, self._project_loan(cursor, user_id, loan)

    def update_loan(self, user_id, loan_id, changes):
        error = self._reject_unknown(changes, LOAN_FIELDS)
        if error:
            return False, error
        fields, error = self._normalize_fields(changes, {'status': LOAN_STATUSES})
        if error:
            return False, error

        with self._session('update_loan') as (conn, cursor):
            if not self._fetch_owned(cursor, 'loans', user_id, loan_id):
                return False, DomainError.not_found('Loan')
            if fields:
                self._apply_patch(cursor, 'loans', user_id, loan_id, fields)
                conn.commit()
            loan = self._fetch_owned(cursor, 'loans', user_id, loan_id)
            return True, self._project_loan(cursor, user_id, loan)

    def delete_loan(self, user_id, loan_id):
        with self._session('delete_loan') as (conn, cursor):
            cursor.execute("DELETE FROM loans WHERE id = ? AND user_id = ?", (loan_id, user_id))
            if cursor.rowcount == 0:
                return False, DomainError.not_found('Loan')
            conn.commit()
            return True, "Loan deleted."

    def forgive_loan(self, user_id, loan_id):
        with self._session('forgive_loan') as (conn, cursor):
            loan = self._fetch_owned(cursor, 'loans', user_id, loan_id)
            if not loan:
                return False, DomainError.not_found('Loan')
            if loan['status'] == 'paid':
                return False, DomainError.invalid_transition("A paid loan cannot be forgiven.", 'already_paid')
            self._apply_patch(cursor, 'loans', user_id, loan_id, {'status': 'forgiven'})
            conn.commit()
            loan = self._fetch_owned(cursor, 'loans', user_id, loan_id)
            return True, self._project_loan(cursor, user_id, loan)

    def record_loan_payment(self, user_id, loan_id, account_id, amount, date=None,
                            description=None, category_id=None):
        """Record a repayment on a loan as a loan_payment entry."""
        if not account_id:
            return False, DomainError.invalid_input("'account_id' is required.")
        values, error = self._normalize_fields({'amount': amount, 'date': date})
        if error:
            return False, error

        with self._session('record_loan_payment') as (conn, cursor):
            loan = self._fetch_owned(cursor, 'loans', user_id, loan_id)
            if not loan:
                return False, DomainError.not_found('Loan')
            if loan['status'] == 'forgiven':
                return False, DomainError.invalid_transition(
                    "Payments cannot be recorded on a forgiven loan.", 'forgiven')
            values.update({
                'account_id': account_id,
                'category_id': category_id,
                'type': 'loan_payment',
                'loan_id': loan_id,
                'description': description or f"Loan payment: {loan['borrower']}",
            })
            error = self._check_links(cursor, user_id, values)
            if error:
                return False, error

            transaction_id = self._insert_transaction(cursor, user_id, values)
            projected = self._project_loan(cursor, user_id, loan)
            status = 'paid' if projected['progress'] >= 100 else 'partial'
            self._apply_patch(cursor, 'loans', user_id, loan_id, {'status': status})
            conn.commit()
            projected['status'] = status

            return True, {
                'transaction': self._get_transaction_row(cursor, user_id, transaction_id),
                'loan': projected,
            }

    # =============================================================================
    # SCHEDULED PAYMENTS
    # =============================================================================

    def sweep_overdue(self, cursor, user_id, today):
        """
        Move the owner's pending payments due on or before today to 'overdue'.

        Idempotent; the caller commits. Returns the number of rows moved.
        """
        cursor.execute(
            "UPDATE scheduled_payments SET status = 'overdue', updated_at = ? "
            "WHERE user_id = ? AND status = 'pending' AND due_date <= ?",
            (self._now(), user_id, to_date_str(today))
        )
        if cursor.rowcount:
            logger.info("[ENGINE] %s scheduled payment(s) marked overdue for %s", cursor.rowcount, user_id)
        return cursor.rowcount

    @staticmethod
    def _decorate_payment(payment, today):
        payment['is_overdue'] = payment['status'] == 'overdue'
        payment['days_until_due'] = days_until(payment['due_date'], today)
        return payment

    def _query_payments(self, cursor, user_id, clauses=None, params=None):
        clauses = ["p.user_id = ?"] + list(clauses or [])
        params = [user_id] + list(params or [])
        cursor.execute(f"""
            SELECT p.*, c.name AS category_name, c.icon AS category_icon, c.color AS category_color,
                   a.name AS account_name
            FROM scheduled_payments p
            LEFT JOIN categories c ON c.id = p.category_id
            LEFT JOIN accounts a ON a.id = p.account_id
            WHERE {' AND '.join(clauses)}
            ORDER BY p.due_date ASC, {PRIORITY_RANK_SQL.replace('priority', 'p.priority')} ASC
        """, params)
        return self._rows_to_dicts(cursor.fetchall())

    def _get_payment_row(self, cursor, user_id, payment_id, today):
        rows = self._query_payments(cursor, user_id, ["p.id = ?"], [payment_id])
        return self._decorate_payment(rows[0], today) if rows else None

    def list_scheduled_payments(self, user_id, status=None, priority=None, start_date=None,
                                end_date=None, include_overdue=True):
        """
        List scheduled payments, sweeping overdue ones first.

        Without a status filter, include_overdue=False restricts the list to
        pending and paid payments.
        """
        today = self.today()
        with self._session('list_scheduled_payments') as (conn, cursor):
            self.sweep_overdue(cursor, user_id, today)
            conn.commit()

            clauses, params = [], []
            if status:
                clauses.append("p.status = ?")
                params.append(status)
            elif not include_overdue:
                clauses.append("p.status IN ('pending', 'paid')")
            if priority:
                clauses.append("p.priority = ?")
                params.append(priority)
            self._date_clauses(clauses, params, 'p.due_date', (start_date, end_date))

            rows = self._query_payments(cursor, user_id, clauses, params)
            return [self._decorate_payment(row, today) for row in rows]

    def _upcoming(self, cursor, user_id, today, days):
        horizon = to_date_str(to_date(today) + datetime.timedelta(days=days))
        rows = self._query_payments(
            cursor, user_id, ["p.status IN ('pending', 'overdue')", "p.due_date <= ?"], [horizon])
        return [self._decorate_payment(row, today) for row in rows]

    def get_upcoming_payments(self, user_id, days=7):
        """
        Pending and overdue payments due within `days`, with a summary.

        Returns:
            dict: {'payments': [...], 'summary': {total, total_amount, overdue,
                   overdue_amount, due_today, by_priority}}
        """
        today = self.today()
        with self._session('get_upcoming_payments') as (conn, cursor):
            self.sweep_overdue(cursor, user_id, today)
            conn.commit()
            payments = self._upcoming(cursor, user_id, today, days)

        overdue = [p for p in payments if p['is_overdue']]
        summary = {
            'total': len(payments),
            'total_amount': money_sum(p['amount'] for p in payments),
            'overdue': len(overdue),
            'overdue_amount': money_sum(p['amount'] for p in overdue),
            'due_today': len([p for p in payments if p['days_until_due'] == 0]),
            'by_priority': {
                level: len([p for p in payments if p['priority'] == level])
                for level in reversed(PRIORITIES)
            },
        }
        return {'payments': payments, 'summary': summary}

    def get_scheduled_payment(self, user_id, payment_id):
        today = self.today()
        with self._session('get_scheduled_payment') as (conn, cursor):
            self.sweep_overdue(cursor, user_id, today)
            conn.commit()
            return self._get_payment_row(cursor, user_id, payment_id, today)

    def create_scheduled_payment(self, user_id, name, amount, due_date, **options):
        """
        Create a pending scheduled payment.

        Options: description, currency, category_id, account_id, debt_id,
        loan_id, debt_installment_id, is_recurring, recurring_frequency,
        priority, tags, notes, reminder_days.
        """
        if not name:
            return False, DomainError.invalid_input("Payment name is required.")
        if not due_date:
            return False, DomainError.invalid_input("'due_date' is required.")
        error = self._reject_unknown(options, set(PAYMENT_FIELDS) - {'name', 'amount', 'due_date', 'status'})
        if error:
            return False, error

        data = dict(options, name=name, amount=amount, due_date=due_date)
        data.setdefault('priority', 'medium')
        data.setdefault('reminder_days', 3)
        data.setdefault('is_recurring', False)
        values, error = self._normalize_fields(data, {
            'priority': PRIORITIES,
            'recurring_frequency': FREQUENCIES + (None,),
        })
        if error:
            return False, error
        if values['is_recurring'] and not values.get('recurring_frequency'):
            return False, DomainError.invalid_input("Recurring payments need a 'recurring_frequency'.")

        today = self.today()
        with self._session('create_scheduled_payment') as (conn, cursor):
            error = self._check_links(cursor, user_id, values)
            if error:
                return False, error

            payment_id = self._new_id()
            values.update({
                'id': payment_id,
                'user_id': user_id,
                'status': 'pending',
                'currency': values.get('currency') or self.default_currency,
            })
            self._insert(cursor, 'scheduled_payments', values)
            conn.commit()
            return True, self._get_payment_row(cursor, user_id, payment_id, today)

    def update_scheduled_payment(self, user_id, payment_id, changes):
        """
        Patch a scheduled payment.

        A status change must be a legal transition; 'paid' is only reachable
        through settle_scheduled_payment.
        """
        error = self._reject_unknown(changes, PAYMENT_FIELDS)
        if error:
            return False, error
        fields, error = self._normalize_fields(changes, {
            'status': PAYMENT_STATUSES,
            'priority': PRIORITIES,
            'recurring_frequency': FREQUENCIES + (None,),
        })
        if error:
            return False, error
        if 'name' in fields and not fields['name']:
            return False, DomainError.invalid_input("Payment name is required.")

        today = self.today()
        with self._session('update_scheduled_payment') as (conn, cursor):
            payment = self._fetch_owned(cursor, 'scheduled_payments', user_id, payment_id)
            if not payment:
                return False, DomainError.not_found('Scheduled payment')

            new_status = fields.get('status')
            if new_status and new_status != payment['status']:
                if new_status == 'paid':
                    return False, DomainError.invalid_transition(
                        "Use the pay operation to settle a payment.", 'requires_settlement')
                if new_status not in PAYMENT_TRANSITIONS[payment['status']]:
                    return False, DomainError.invalid_transition(
                        f"Cannot move a {payment['status']} payment to {new_status}.",
                        payment['status'])

            recurring = fields.get('is_recurring', payment['is_recurring'])
            frequency = fields.get('recurring_frequency', payment['recurring_frequency'])
            if recurring and not frequency:
                return False, DomainError.invalid_input("Recurring payments need a 'recurring_frequency'.")

            error = self._check_links(cursor, user_id, fields)
            if error:
                return False, error
            if fields:
                self._apply_patch(cursor, 'scheduled_payments', user_id, payment_id, fields)
                conn.commit()
            return True, self._get_payment_row(cursor, user_id, payment_id, today)

    def delete_scheduled_payment(self, user_id, payment_id):
        with self._session('delete_scheduled_payment') as (conn, cursor):
            cursor.execute("DELETE FROM scheduled_payments WHERE id = ? AND user_id = ?",
                           (payment_id, user_id))
            if cursor.rowcount == 0:
                return False, DomainError.not_found('Scheduled payment')
            conn.commit()
            return True, "Scheduled payment deleted."

    def _rejected_settlement(self, status):
        if status == 'paid':
            return DomainError.invalid_transition("Payment is already paid.", 'already_paid')
        return DomainError.invalid_transition("Payment is cancelled.", 'cancelled')

    def settle_scheduled_payment(self, user_id, payment_id, paid_date=None, paid_amount=None,
                                 create_next_recurrence=True):
        """
        Settle (pay) a pending or overdue scheduled payment.

        In one transaction:
        1. Conditionally move the payment to 'paid' (only from pending/overdue,
           so a concurrent second settlement affects no row and is rejected)
        2. Clone the next occurrence when the payment recurs
        3. Post one 'expense' ledger entry when an account is linked

        Args:
            paid_date (str, optional): Defaults to today
            paid_amount (float, optional): Defaults to the scheduled amount
            create_next_recurrence (bool): Set False to stop a recurring series

        Returns:
            tuple: (True, {'payment', 'next_payment', 'transaction'}) or
                   (False, DomainError)
        """
        today = self.today()
        paid_date = self._to_date_value(paid_date or today)
        if paid_date is None:
            return False, DomainError.invalid_input("'paid_date' must be a YYYY-MM-DD date.")

        with self._session('settle_scheduled_payment') as (conn, cursor):
            payment = self._fetch_owned(cursor, 'scheduled_payments', user_id, payment_id)
            if not payment:
                return False, DomainError.not_found('Scheduled payment')
            if payment['status'] not in SETTLEABLE_STATUSES:
                return False, self._rejected_settlement(payment['status'])

            amount = payment['amount'] if paid_amount is None else self._to_money(paid_amount)
            if amount is None or amount <= 0:
                return False, DomainError.invalid_amount("'paid_amount' must be a positive number.")

            cursor.execute(
                "UPDATE scheduled_payments SET status = 'paid', paid_date = ?, paid_amount = ?, "
                "updated_at = ? WHERE id = ? AND user_id = ? AND status IN ('pending', 'overdue')",
                (paid_date, amount, self._now(), payment_id, user_id)
            )
            if cursor.rowcount == 0:
                # Lost the race: someone else settled or cancelled it first
                conn.rollback()
                current = self._fetch_owned(cursor, 'scheduled_payments', user_id, payment_id)
                if not current:
                    return False, DomainError.not_found('Scheduled payment')
                return False, self._rejected_settlement(current['status'])

            next_id = None
            if payment['is_recurring'] and payment['recurring_frequency'] and create_next_recurrence:
                next_id = self._new_id()
                self._insert(cursor, 'scheduled_payments', {
                    'id': next_id,
                    'user_id': user_id,
                    'name': payment['name'],
                    'description': payment['description'],
                    'amount': payment['amount'],
                    'currency': payment['currency'],
                    'due_date': advance_date(payment['due_date'], payment['recurring_frequency']),
                    'status': 'pending',
                    'category_id': payment['category_id'],
                    'account_id': payment['account_id'],
                    'debt_id': payment['debt_id'],
                    'loan_id': payment['loan_id'],
                    'debt_installment_id': None,
                    'is_recurring': 1,
                    'recurring_frequency': payment['recurring_frequency'],
                    'priority': payment['priority'],
                    'tags': payment['tags'],
                    'notes': payment['notes'],
                    'reminder_days': payment['reminder_days'],
                })

            transaction_id = None
            if payment['account_id']:
                transaction_id = self._insert_transaction(cursor, user_id, {
                    'account_id': payment['account_id'],
                    'category_id': payment['category_id'],
                    'type': 'expense',
                    'amount': amount,
                    'description': payment['name'],
                    'date': paid_date,
                    'scheduled_payment_id': payment_id,
                })

            conn.commit()
            logger.info("[ENGINE] Scheduled payment %s settled for %s", payment_id, user_id)

            return True, {
                'payment': self._get_payment_row(cursor, user_id, payment_id, today),
                'next_payment': self._get_payment_row(cursor, user_id, next_id, today) if next_id else None,
                'transaction': (self._get_transaction_row(cursor, user_id, transaction_id)
                                if transaction_id else None),
            }

    def cancel_scheduled_payment(self, user_id, payment_id):
        """Cancel a pending or overdue payment. Cancelling twice is a no-op success."""
        today = self.today()
        with self._session('cancel_scheduled_payment') as (conn, cursor):
            payment = self._fetch_owned(cursor, 'scheduled_payments', user_id, payment_id)
            if not payment:
                return False, DomainError.not_found('Scheduled payment')
            if payment['status'] == 'paid':
                return False, DomainError.invalid_transition(
                    "A paid payment cannot be cancelled.", 'already_paid')

            if payment['status'] != 'cancelled':
                cursor.execute(
                    "UPDATE scheduled_payments SET status = 'cancelled', updated_at = ? "
                    "WHERE id = ? AND user_id = ? AND status IN ('pending', 'overdue')",
                    (self._now(), payment_id, user_id)
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    current = self._fetch_owned(cursor, 'scheduled_payments', user_id, payment_id)
                    if not current:
                        return False, DomainError.not_found('Scheduled payment')
                    if current['status'] == 'paid':
                        return False, DomainError.invalid_transition(
                            "A paid payment cannot be cancelled.", 'already_paid')
                conn.commit()

            return True, self._get_payment_row(cursor, user_id, payment_id, today)

    def generate_payments_from_debt(self, user_id, debt_id):
        """
        Create one scheduled payment per installment of a debt.

        n = total_installments (1 when unset), each for principal / n in cents, due
        monthly from the debt's due date (or start date), priority high.
        All rows are inserted in a single batch.
        """
        with self._session('generate_payments_from_debt') as (conn, cursor):
            debt = self._fetch_owned(cursor, 'debts', user_id, debt_id)
            if not debt:
                return False, DomainError.not_found('Debt')

            count = debt['total_installments'] or 1
            amount = cents(to_money(debt['principal_amount']) / count)
            dates = monthly_schedule(debt['due_date'] or debt['start_date'], count)

            payment_ids = [self._new_id() for _ in dates]
            cursor.executemany("""
                INSERT INTO scheduled_payments
                    (id, user_id, name, description, amount, currency, due_date, status,
                     debt_id, priority, is_recurring, reminder_days)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, 'high', 0, 3)
            """, [
                (payment_id, user_id, f"{debt['creditor']} - Installment {i + 1}/{count}",
                 f"Debt payment: {debt['creditor']}", amount, debt['currency'], due, debt_id)
                for i, (payment_id, due) in enumerate(zip(payment_ids, dates))
            ])
            conn.commit()
            logger.info("[ENGINE] Generated %s payment(s) from debt %s", count, debt_id)

            today = self.today()
            return True, [self._get_payment_row(cursor, user_id, pid, today) for pid in payment_ids]

    # =============================================================================
    # USER SETTINGS
    # =============================================================================

    def _settings_row(self, cursor, user_id, create=True):
        cursor.execute("SELECT * FROM user_settings WHERE user_id = ?", (user_id,))
        row = self._row_to_dict(cursor.fetchone())
        if row or not create:
            return row
        values = UserSettings().model_dump()
        values.update({
            'id': self._new_id(),
            'user_id': user_id,
            'dashboard_config': dump_dashboard_config(default_dashboard_config()),
        })
        self._insert(cursor, 'user_settings', values)
        cursor.execute("SELECT * FROM user_settings WHERE user_id = ?", (user_id,))
        return self._row_to_dict(cursor.fetchone())

    @staticmethod
    def _settings_payload(row):
        payload = {key: row[key] for key in ('id', 'user_id') + SETTINGS_FIELDS}
        payload['dashboard_config'] = load_dashboard_config(row['dashboard_config']).model_dump()
        return payload

    def _dashboard_config(self, cursor, user_id):
        row = self._settings_row(cursor, user_id, create=False)
        if not row:
            return default_dashboard_config()
        return load_dashboard_config(row['dashboard_config'])

    def get_settings(self, user_id):
        """Return the user's settings, creating the defaults on first read."""
        with self._session('get_settings') as (conn, cursor):
            row = self._settings_row(cursor, user_id)
            conn.commit()
            return self._settings_payload(row)

    def update_settings(self, user_id, changes):
        """
        Partial update of the user settings.

        A nested 'dashboard_config' object is merged into the stored
        configuration with the same rules as update_dashboard_config.
        """
        if not isinstance(changes, dict):
            return False, DomainError.invalid_input("Settings must be an object.")
        changes = dict(changes)
        dashboard_patch = changes.pop('dashboard_config', None)

        with self._session('update_settings') as (conn, cursor):
            row = self._settings_row(cursor, user_id)

            ok, settings = merge_user_settings(row, changes)
            if not ok:
                return False, settings
            fields = {key: settings.model_dump()[key] for key in changes}
            for key in BOOL_COLUMNS.intersection(fields):
                fields[key] = 1 if fields[key] else 0

            if dashboard_patch is not None:
                ok, config = merge_dashboard_config(load_dashboard_config(row['dashboard_config']),
                                                    dashboard_patch)
                if not ok:
                    return False, config
                fields['dashboard_config'] = dump_dashboard_config(config)

            error = self._check_links(cursor, user_id, fields)
            if error:
                return False, error

            self._apply_patch(cursor, 'user_settings', user_id, row['id'], fields)
            conn.commit()
            return True, self._settings_payload(self._settings_row(cursor, user_id))

    def update_dashboard_config(self, user_id, changes):
        """Merge a partial patch into the dashboard configuration; unknown keys are rejected."""
        with self._session('update_dashboard_config') as (conn, cursor):
            row = self._settings_row(cursor, user_id)
            ok, config = merge_dashboard_config(load_dashboard_config(row['dashboard_config']), changes)
            if not ok:
                return False, config
            self._apply_patch(cursor, 'user_settings', user_id, row['id'],
                              {'dashboard_config': dump_dashboard_config(config)})
            conn.commit()
            return True, config.model_dump()

    def reset_settings(self, user_id):
        with self._session('reset_settings') as (conn, cursor):
            row = self._settings_row(cursor, user_id)
            fields = UserSettings().model_dump()
            for key in BOOL_COLUMNS.intersection(fields):
                fields[key] = 1 if fields[key] else 0
            fields['dashboard_config'] = dump_dashboard_config(default_dashboard_config())
            self._apply_patch(cursor, 'user_settings', user_id, row['id'], fields)
            conn.commit()
            return True, self._settings_payload(self._settings_row(cursor, user_id))

    # =============================================================================
    # DASHBOARD
    # =============================================================================

    def _debts_summary(self, cursor, user_id):
        cursor.execute("SELECT * FROM debts WHERE user_id = ?", (user_id,))
        debts = [self._project_debt(cursor, user_id, d) for d in self._rows_to_dicts(cursor.fetchall())]
        active = [d for d in debts if d['status'] == 'active']
        return {
            'total': len(debts),
            'active': len(active),
            'total_owed': money_sum(d['remaining_amount'] for d in active),
        }

    def _loans_summary(self, cursor, user_id):
        cursor.execute("SELECT * FROM loans WHERE user_id = ?", (user_id,))
        loans = [self._project_loan(cursor, user_id, l) for l in self._rows_to_dicts(cursor.fetchall())]
        active = [l for l in loans if l['status'] == 'active']
        return {
            'total': len(loans),
            'active': len(active),
            'total_to_receive': money_sum(l['remaining_amount'] for l in active),
        }

    def _dashboard_goals(self, cursor, user_id, config, today):
        cursor.execute("""
            SELECT * FROM goals
            WHERE user_id = ? AND is_active = 1 AND is_completed = 0
            ORDER BY target_date IS NULL, target_date, name
        """, (user_id,))
        goals = self._rows_to_dicts(cursor.fetchall())
        if config.dashboard_goal_ids:
            goals = [g for g in goals if g['id'] in config.dashboard_goal_ids]
        if config.featured_goal_id:
            goals.sort(key=lambda g: g['id'] != config.featured_goal_id)

        projected = []
        for goal in goals[:DASHBOARD_GOALS_LIMIT]:
            goal = self._project_goal(cursor, user_id, goal, today)
            goal['is_featured'] = goal['id'] == config.featured_goal_id
            projected.append(goal)
        return projected

    def _period_totals(self, cursor, user_id, transaction_type, period, today):
        date_range = resolve_period(period, today)
        result = self.aggregate_transactions(cursor, user_id, types=(transaction_type,),
                                             date_range=date_range)
        return {
            'total': result['total'],
            'count': result['count'],
            'period': period,
            'date_range': {'start': date_range[0], 'end': date_range[1]},
        }

    def get_dashboard(self, user_id):
        """
        Compose the dashboard from the user's configuration.

        Balances use ALL_OUTFLOW: every outflow type reduces the cash position.
        """
        today = self.today()
        with self._session('get_dashboard') as (conn, cursor):
            self.sweep_overdue(cursor, user_id, today)
            conn.commit()
            config = self._dashboard_config(cursor, user_id)

            total_balance, accounts = self._portfolio_balance(
                cursor, user_id, ALL_OUTFLOW, config.balance_account_ids)
            expenses = self._period_totals(cursor, user_id, 'expense', config.expenses_period, today)
            income = self._period_totals(cursor, user_id, 'income', config.income_period, today)
            net = cents(to_money(income['total']) - to_money(expenses['total']))

            scheduled = None
            if config.show_scheduled_payments:
                upcoming = self._upcoming(cursor, user_id, today,
                                          config.scheduled_payments_days)[:DASHBOARD_PAYMENTS_LIMIT]
                scheduled = {
                    'upcoming': upcoming,
                    'overdue_count': len([p for p in upcoming if p['is_overdue']]),
                    'total_due': money_sum(p['amount'] for p in upcoming),
                }

            breakdown_range = resolve_period(config.category_breakdown_period, today)
            breakdown = self._category_breakdown(cursor, user_id, config.category_breakdown_type,
                                                 breakdown_range, CATEGORY_BREAKDOWN_LIMIT)

            return {
                'balance': {'total': total_balance, 'accounts': accounts},
                'expenses': expenses,
                'income': income,
                'net': {'amount': net, 'is_positive': net >= 0},
                'recent_transactions': self._query_transactions(
                    cursor, user_id, limit=config.recent_transactions_limit),
                'goals': self._dashboard_goals(cursor, user_id, config, today),
                'scheduled_payments': scheduled,
                'debts': self._debts_summary(cursor, user_id),
                'loans': self._loans_summary(cursor, user_id),
                'category_breakdown': breakdown,
                'config': config.model_dump(),
            }

    def get_summary(self, user_id, period='month'):
        """Lightweight widget: balance, period income/expenses and pending payments."""
        today = self.today()
        with self._session('get_summary') as (conn, cursor):
            self.sweep_overdue(cursor, user_id, today)
            conn.commit()
            config = self._dashboard_config(cursor, user_id)

            total_balance, _ = self._portfolio_balance(
                cursor, user_id, ALL_OUTFLOW, config.balance_account_ids)
            expenses = self._period_totals(cursor, user_id, 'expense', period, today)
            income = self._period_totals(cursor, user_id, 'income', period, today)
            pending = self._upcoming(cursor, user_id, today, SUMMARY_PENDING_DAYS)

            return {
                'balance': total_balance,
                'expenses': expenses['total'],
                'income': income['total'],
                'net': cents(to_money(income['total']) - to_money(expenses['total'])),
                'pending_payments': {
                    'count': len(pending),
                    'total': money_sum(p['amount'] for p in pending),
                },
                'period': expenses['period'],
                'date_range': expenses['date_range'],
            }

    def get_trends(self, user_id, period='month'):
        """Compare income and expenses with the previous period of equal length."""
        today = self.today()
        current_range = resolve_period(period, today)
        previous_range = previous_period(*current_range)

        with self._session('get_trends') as (conn, cursor):
            trends = {}
            for key, transaction_type in (('expenses', 'expense'), ('income', 'income')):
                current = self.aggregate_transactions(cursor, user_id, types=(transaction_type,),
                                                      date_range=current_range)['total']
                previous = self.aggregate_transactions(cursor, user_id, types=(transaction_type,),
                                                       date_range=previous_range)['total']
                change = percent_change(current, previous)
                trends[key] = {
                    'current': current,
                    'previous': previous,
                    'change': change,
                    'trend': trend_direction(change),
                }

        trends.update({
            'period': period,
            'current_range': {'start': current_range[0], 'end': current_range[1]},
            'previous_range': {'start': previous_range[0], 'end': previous_range[1]},
        })
        return trends
