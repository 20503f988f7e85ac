"""
Clear Ledger - SQLite Database Setup & Initialization

This module creates and initializes the Clear Ledger SQLite database schema.
It creates all tables with proper foreign key relationships and indexes.

Database Schema Overview:
------------------------
- users: Owners, provisioned on first request from the identity gateway
- account_types: Labels for accounts (seeded defaults per user)
- categories: Income / expense categorization with subcategories (parent_id)
- merchants: Stores and payees a transaction can name
- accounts: Money containers; balance is derived, never stored
- recurring_transactions: Income / expense templates posted on a frequency
- transactions: The ledger (income, expense, debt/goal/loan links)
- transfers: Account-to-account movements with an optional fee
- debts / debt_installments: Money owed, with an optional installment plan
- loans: Money lent to others
- goals: Savings targets fed by goal contributions
- scheduled_payments: Future obligations (pending -> overdue -> paid/cancelled)
- user_settings: Per-user preferences and the dashboard configuration

Key Design Features:
- Foreign key constraints for referential integrity
- Every row carries user_id and every query is scoped by it
- Indexes on (user_id, ...) for the ledger aggregation scans
- Ledger links use ON DELETE SET NULL so history survives its source record
- Dates stored as 'YYYY-MM-DD' TEXT and compared as strings

License: MIT
"""

import os
import sqlite3
from pathlib import Path

EXPECTED_TABLES = [
    'users',
    'account_types',
    'categories',
    'merchants',
    'accounts',
    'recurring_transactions',
    'transactions',
    'transfers',
    'debts',
    'debt_installments',
    'loans',
    'goals',
    'scheduled_payments',
    'user_settings',
]

SCHEMA = [
    # =================================================================
    # TABLE 1: users
    # =================================================================
    ('users', """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            name TEXT,
            currency TEXT NOT NULL DEFAULT 'PEN',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        )
    """, []),

    # =================================================================
    # TABLE 2: account_types
    # =================================================================
    ('account_types', """
        CREATE TABLE IF NOT EXISTS account_types (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            icon TEXT,
            is_default INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_account_types_user ON account_types(user_id);",
    ]),

    # =================================================================
    # TABLE 3: categories
    # =================================================================
    ('categories', """
        CREATE TABLE IF NOT EXISTS categories (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            type TEXT CHECK(type IN ('income', 'expense')) NOT NULL,
            icon TEXT,
            color TEXT DEFAULT '#6366f1',
            parent_id TEXT DEFAULT NULL,
            is_default INTEGER DEFAULT 0,
            is_active INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (parent_id) REFERENCES categories(id) ON DELETE SET NULL
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_categories_user_type ON categories(user_id, type);",
        "CREATE INDEX IF NOT EXISTS idx_categories_parent ON categories(parent_id);",
    ]),

    # =================================================================
    # TABLE 4: merchants
    # =================================================================
    ('merchants', """
        CREATE TABLE IF NOT EXISTS merchants (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            category_id TEXT DEFAULT NULL,
            icon TEXT,
            is_default INTEGER DEFAULT 0,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_merchants_user_name ON merchants(user_id, name);",
    ]),

    # =================================================================
    # TABLE 5: accounts
    # =================================================================
    ('accounts', """
        CREATE TABLE IF NOT EXISTS accounts (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            account_type_id TEXT DEFAULT NULL,
            name TEXT NOT NULL,
            description TEXT,
            currency TEXT NOT NULL DEFAULT 'PEN',
            initial_balance REAL NOT NULL DEFAULT 0,
            color TEXT DEFAULT '#3b82f6',
            icon TEXT,
            is_active INTEGER DEFAULT 1,
            include_in_total INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (account_type_id) REFERENCES account_types(id) ON DELETE SET NULL
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_accounts_user ON accounts(user_id);",
    ]),

    # =================================================================
    # TABLE 6: debts
    # =================================================================
    ('debts', """
        CREATE TABLE IF NOT EXISTS debts (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            creditor TEXT NOT NULL,
            description TEXT,
            principal_amount REAL NOT NULL CHECK(principal_amount > 0),
            interest_rate REAL DEFAULT 0 CHECK(interest_rate >= 0),
            currency TEXT NOT NULL DEFAULT 'PEN',
            total_installments INTEGER DEFAULT NULL,
            start_date TEXT NOT NULL,
            due_date TEXT DEFAULT NULL,
            status TEXT CHECK(status IN ('active', 'paid', 'overdue', 'partial')) NOT NULL DEFAULT 'active',
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_debts_user_status ON debts(user_id, status);",
    ]),

    # =================================================================
    # TABLE 7: debt_installments
    # =================================================================
    ('debt_installments', """
        CREATE TABLE IF NOT EXISTS debt_installments (
            id TEXT PRIMARY KEY,
            debt_id TEXT NOT NULL,
            installment_number INTEGER NOT NULL,
            amount REAL NOT NULL,
            due_date TEXT NOT NULL,
            status TEXT CHECK(status IN ('pending', 'paid', 'overdue')) NOT NULL DEFAULT 'pending',
            paid_date TEXT DEFAULT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (debt_id) REFERENCES debts(id) ON DELETE CASCADE,
            UNIQUE(debt_id, installment_number)
        )
    """, []),

    # =================================================================
    # TABLE 8: loans
    # =================================================================
    ('loans', """
        CREATE TABLE IF NOT EXISTS loans (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            borrower TEXT NOT NULL,
            borrower_contact TEXT,
            description TEXT,
            principal_amount REAL NOT NULL CHECK(principal_amount > 0),
            interest_rate REAL DEFAULT 0,
            currency TEXT NOT NULL DEFAULT 'PEN',
            loan_date TEXT NOT NULL,
            due_date TEXT DEFAULT NULL,
            status TEXT CHECK(status IN ('active', 'paid', 'overdue', 'partial', 'forgiven')) NOT NULL DEFAULT 'active',
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_loans_user_status ON loans(user_id, status);",
    ]),

    # =================================================================
    # TABLE 9: goals
    # =================================================================
    ('goals', """
        CREATE TABLE IF NOT EXISTS goals (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            target_amount REAL NOT NULL CHECK(target_amount > 0),
            currency TEXT NOT NULL DEFAULT 'PEN',
            target_date TEXT DEFAULT NULL,
            icon TEXT,
            color TEXT DEFAULT '#10b981',
            is_active INTEGER DEFAULT 1,
            is_completed INTEGER DEFAULT 0,
            completed_at TEXT DEFAULT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_goals_user ON goals(user_id);",
    ]),

    # =================================================================
    # TABLE 10: scheduled_payments
    # =================================================================
    ('scheduled_payments', """
        CREATE TABLE IF NOT EXISTS scheduled_payments (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            amount REAL NOT NULL CHECK(amount > 0),
            currency TEXT NOT NULL DEFAULT 'PEN',
            due_date TEXT NOT NULL,
            status TEXT CHECK(status IN ('pending', 'paid', 'cancelled', 'overdue')) NOT NULL DEFAULT 'pending',
            category_id TEXT DEFAULT NULL,
            account_id TEXT DEFAULT NULL,
            debt_id TEXT DEFAULT NULL,
            loan_id TEXT DEFAULT NULL,
            debt_installment_id TEXT DEFAULT NULL,
            is_recurring INTEGER DEFAULT 0,
            recurring_frequency TEXT CHECK(recurring_frequency IN ('weekly', 'biweekly', 'monthly', 'quarterly', 'yearly')),
            priority TEXT CHECK(priority IN ('low', 'medium', 'high', 'urgent')) NOT NULL DEFAULT 'medium',
            tags TEXT,
            notes TEXT,
            reminder_days INTEGER DEFAULT 3 CHECK(reminder_days BETWEEN 0 AND 30),
            paid_date TEXT DEFAULT NULL,
            paid_amount REAL DEFAULT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL,
            FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE SET NULL,
            FOREIGN KEY (debt_id) REFERENCES debts(id) ON DELETE SET NULL,
            FOREIGN KEY (loan_id) REFERENCES loans(id) ON DELETE SET NULL,
            FOREIGN KEY (debt_installment_id) REFERENCES debt_installments(id) ON DELETE SET NULL
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_scheduled_user_status_due ON scheduled_payments(user_id, status, due_date);",
    ]),

    # =================================================================
    # TABLE 11: recurring_transactions
    # =================================================================
    ('recurring_transactions', """
        CREATE TABLE IF NOT EXISTS recurring_transactions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            category_id TEXT DEFAULT NULL,
            type TEXT CHECK(type IN ('income', 'expense')) NOT NULL,
            amount REAL NOT NULL CHECK(amount > 0),
            description TEXT,
            frequency TEXT CHECK(frequency IN ('daily', 'weekly', 'biweekly', 'monthly', 'quarterly', 'yearly')) NOT NULL,
            start_date TEXT NOT NULL,
            end_date TEXT DEFAULT NULL,
            next_due_date TEXT NOT NULL,
            day_of_month INTEGER DEFAULT NULL CHECK(day_of_month BETWEEN 1 AND 31),
            day_of_week INTEGER DEFAULT NULL CHECK(day_of_week BETWEEN 0 AND 6),
            is_active INTEGER DEFAULT 1,
            last_processed_at TEXT DEFAULT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_recurring_user_active ON recurring_transactions(user_id, is_active);",
        "CREATE INDEX IF NOT EXISTS idx_recurring_next_due ON recurring_transactions(next_due_date);",
    ]),

    # =================================================================
    # TABLE 12: transactions - the ledger
    # =================================================================
    ('transactions', """
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            account_id TEXT NOT NULL,
            category_id TEXT DEFAULT NULL,
            subcategory_id TEXT DEFAULT NULL,
            type TEXT CHECK(type IN ('income', 'expense', 'debt_payment', 'goal_contribution', 'loan_payment')) NOT NULL,
            amount REAL NOT NULL CHECK(amount > 0),
            description TEXT,
            notes TEXT,
            date TEXT NOT NULL,
            merchant_id TEXT DEFAULT NULL,
            merchant_name TEXT,
            debt_id TEXT DEFAULT NULL,
            loan_id TEXT DEFAULT NULL,
            goal_id TEXT DEFAULT NULL,
            recurring_transaction_id TEXT DEFAULT NULL,
            scheduled_payment_id TEXT DEFAULT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (account_id) REFERENCES accounts(id) ON DELETE CASCADE,
            FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE SET NULL,
            FOREIGN KEY (subcategory_id) REFERENCES categories(id) ON DELETE SET NULL,
            FOREIGN KEY (merchant_id) REFERENCES merchants(id) ON DELETE SET NULL,
            FOREIGN KEY (debt_id) REFERENCES debts(id) ON DELETE SET NULL,
            FOREIGN KEY (loan_id) REFERENCES loans(id) ON DELETE SET NULL,
            FOREIGN KEY (goal_id) REFERENCES goals(id) ON DELETE SET NULL,
            FOREIGN KEY (recurring_transaction_id) REFERENCES recurring_transactions(id) ON DELETE SET NULL,
            FOREIGN KEY (scheduled_payment_id) REFERENCES scheduled_payments(id) ON DELETE SET NULL
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_date ON transactions(user_id, date DESC);",
        "CREATE INDEX IF NOT EXISTS idx_transactions_user_account_type ON transactions(user_id, account_id, type);",
        "CREATE INDEX IF NOT EXISTS idx_transactions_goal ON transactions(goal_id);",
        "CREATE INDEX IF NOT EXISTS idx_transactions_debt ON transactions(debt_id);",
        "CREATE INDEX IF NOT EXISTS idx_transactions_loan ON transactions(loan_id);",
        "CREATE INDEX IF NOT EXISTS idx_transactions_merchant ON transactions(merchant_id);",
        "CREATE INDEX IF NOT EXISTS idx_transactions_recurring ON transactions(recurring_transaction_id);",
    ]),

    # =================================================================
    # TABLE 13: transfers
    # =================================================================
    ('transfers', """
        CREATE TABLE IF NOT EXISTS transfers (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            from_account_id TEXT NOT NULL,
            to_account_id TEXT NOT NULL,
            amount REAL NOT NULL CHECK(amount > 0),
            fee REAL NOT NULL DEFAULT 0 CHECK(fee >= 0),
            description TEXT,
            date TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (from_account_id) REFERENCES accounts(id) ON DELETE CASCADE,
            FOREIGN KEY (to_account_id) REFERENCES accounts(id) ON DELETE CASCADE,
            CHECK(from_account_id != to_account_id)
        )
    """, [
        "CREATE INDEX IF NOT EXISTS idx_transfers_user_from ON transfers(user_id, from_account_id);",
        "CREATE INDEX IF NOT EXISTS idx_transfers_user_to ON transfers(user_id, to_account_id);",
    ]),

    # =================================================================
    # TABLE 14: user_settings
    # =================================================================
    ('user_settings', """
        CREATE TABLE IF NOT EXISTS user_settings (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL UNIQUE,
            theme TEXT CHECK(theme IN ('light', 'dark', 'system')) DEFAULT 'system',
            language TEXT DEFAULT 'es',
            date_format TEXT DEFAULT 'DD/MM/YYYY',
            number_format TEXT DEFAULT 'es-PE',
            notify_on_due_payments INTEGER DEFAULT 1,
            notify_on_goal_progress INTEGER DEFAULT 1,
            notify_on_recurring INTEGER DEFAULT 0,
            show_cents_in_amounts INTEGER DEFAULT 1,
            default_account_id TEXT DEFAULT NULL,
            start_of_week INTEGER DEFAULT 1,
            fiscal_month_start INTEGER DEFAULT 1,
            dashboard_config TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
            FOREIGN KEY (default_account_id) REFERENCES accounts(id) ON DELETE SET NULL
        )
    """, []),
]


def get_db_path():
    """Return the path to the SQLite database file (CLEARLEDGER_DB_PATH overrides)"""
    env_path = os.getenv('CLEARLEDGER_DB_PATH')
    if env_path:
        return Path(env_path)
    return Path(__file__).parent / "data" / "clearledger.db"


def create_database(db_path=None, quiet=False):
    """
    Create the Clear Ledger SQLite database with all tables.

    [WARNING]  WARNING: If the database already exists, this will NOT drop it.
    Use reset_database() if you want to start fresh.

    Args:
        db_path (str|Path, optional): Target file, defaults to get_db_path()
        quiet (bool): Suppress the console progress output

    Returns:
        bool: True when every table and index was created
    """
    db_path = Path(db_path) if db_path else get_db_path()
    say = (lambda *a, **k: None) if quiet else print

    # Create data directory if it doesn't exist
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(db_path))
    cursor = conn.cursor()

    # Enable foreign key constraints (CRITICAL for data integrity)
    cursor.execute("PRAGMA foreign_keys = ON;")

    say("--- Creating Clear Ledger Database ---")
    say(f"Location: {db_path}")
    say()

    try:
        for table, ddl, indexes in SCHEMA:
            say(f"Creating table '{table}'...", end=" ")
            cursor.execute(ddl)
            for index in indexes:
                cursor.execute(index)
            say("OK")

        conn.commit()
        say()
        say("[OK] Database schema created successfully!")
        say(f"[OK] Database file: {db_path}")

        return True

    except sqlite3.Error as err:
        print(f"\n[ERROR] Error creating database: {err}")
        conn.rollback()
        return False

    finally:
        conn.close()


def reset_database(db_path=None):
    """
    [WARNING]  DANGER: Delete the existing database and create a fresh one.
    All data will be permanently lost!
    """
    db_path = Path(db_path) if db_path else get_db_path()

    if db_path.exists():
        print(f"[WARNING]  WARNING: Deleting existing database at {db_path}")
        db_path.unlink()
        print("[OK] Old database deleted")

    return create_database(db_path)


def verify_schema(db_path=None):
    """Verify that all tables exist"""
    db_path = Path(db_path) if db_path else get_db_path()

    if not db_path.exists():
        print("[ERROR] Database does not exist")
        return False

    conn = sqlite3.connect(str(db_path))
    cursor = conn.cursor()

    print("Verifying database schema...")
    print()

    try:
        for table in EXPECTED_TABLES:
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,))
            if cursor.fetchone():
                print(f"[OK] Table '{table}' exists")
            else:
                print(f"[ERROR] Table '{table}' MISSING")
                return False
    finally:
        conn.close()

    print()
    print("[OK] Schema verification complete")
    return True


def get_table_info(table_name, db_path=None):
    """Display schema information for a specific table"""
    db_path = Path(db_path) if db_path else get_db_path()

    if table_name not in EXPECTED_TABLES:
        print(f"[ERROR] Unknown table '{table_name}'")
        return

    if not db_path.exists():
        print("[ERROR] Database does not exist")
        return

    conn = sqlite3.connect(str(db_path))
    cursor = conn.cursor()

    cursor.execute(f"PRAGMA table_info({table_name});")
    columns = cursor.fetchall()

    print(f"\nTable: {table_name}")
    print("=" * 80)
    print(f"{'Column':<25} {'Type':<15} {'NotNull':<10} {'Default':<20}")
    print("-" * 80)

    for col in columns:
        cid, name, col_type, notnull, default_val, pk = col
        print(f"{name:<25} {col_type:<15} {str(bool(notnull)):<10} {str(default_val):<20}")

    cursor.execute(f"PRAGMA index_list({table_name});")
    indexes = cursor.fetchall()

    if indexes:
        print()
        print("Indexes:")
        for idx in indexes:
            seq, name, unique, origin, partial = idx
            print(f"  - {name} {'(UNIQUE)' if unique else ''}")

    conn.close()


if __name__ == "__main__":
    print("=" * 80)
    print("Clear Ledger - SQLite Database Setup")
    print("=" * 80)
    print()

    db_path = get_db_path()

    if db_path.exists():
        print(f"Database already exists at: {db_path}")
        print()
        choice = input("Choose an option:\n  1. Verify existing schema\n  2. Reset database ([WARNING]  DELETES ALL DATA)\n  3. Show table info\n  4. Cancel\n\nChoice: ")

        if choice == '1':
            verify_schema()
        elif choice == '2':
            confirm = input("\n[WARNING]  WARNING: This will DELETE ALL DATA. Type 'DELETE' to confirm: ")
            if confirm == 'DELETE':
                reset_database()
                verify_schema()
            else:
                print("Reset cancelled.")
        elif choice == '3':
            for table in EXPECTED_TABLES:
                get_table_info(table)
        else:
            print("Cancelled.")
    else:
        print("No existing database found. Creating new database...")
        print()
        create_database()
        verify_schema()
