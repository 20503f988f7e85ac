"""
Clear Ledger - Demo Data Generator

Generates realistic fake financial data for demo mode.
Creates a persona with ~4 months of ledger history plus goals, a debt with
an installment plan, a personal loan and upcoming scheduled payments.
"""

import logging
import random
from datetime import timedelta

from faker import Faker

from .periods import to_date

logger = logging.getLogger(__name__)

fake = Faker()

EXPENSE_TEMPLATES = [
    # Groceries (weekly-ish)
    {"category": "Food & Dining", "descriptions": ["Whole Foods", "Trader Joe's", "Farmers Market"], "min": 40, "max": 120, "frequency": 7},
    # Dining (2-3x per week)
    {"category": "Food & Dining", "descriptions": ["Chipotle", "Local Bistro", "Thai Restaurant", "Coffee Shop"], "min": 12, "max": 65, "frequency": 3},
    # Gas (weekly)
    {"category": "Transportation", "descriptions": ["Shell Gas Station", "Chevron"], "min": 35, "max": 55, "frequency": 7},
    # Shopping (occasional)
    {"category": "Shopping", "descriptions": ["Amazon", "Target", "Best Buy"], "min": 25, "max": 200, "frequency": 10},
    # Entertainment (occasional)
    {"category": "Entertainment", "descriptions": ["Movie Theater", "Concert Tickets", "Bowling"], "min": 20, "max": 80, "frequency": 14},
    # Health (occasional)
    {"category": "Healthcare", "descriptions": ["Pharmacy", "Doctor Copay", "Dentist"], "min": 15, "max": 150, "frequency": 30},
]

RECURRING_BILLS = [
    {"name": "Rent", "amount": 1450, "day": 1, "category": "Housing", "priority": "urgent"},
    {"name": "Electric Bill", "amount": 85, "day": 15, "category": "Utilities", "priority": "high"},
    {"name": "Internet", "amount": 60, "day": 10, "category": "Utilities", "priority": "medium"},
    {"name": "Netflix", "amount": 15.99, "day": 5, "category": "Subscriptions", "priority": "low"},
]


def _check(result, what):
    success, payload = result
    if not success:
        raise RuntimeError(f"[DEMO] Could not create {what}: {payload}")
    return payload


def generate_demo_data(engine, user_id, seed=None):
    """
    Generate realistic demo data for a user.

    Creates:
    - Checking, savings and cash accounts
    - ~4 months of bi-weekly paychecks (posted from a recurring template)
      and random expenses
    - Monthly transfers to savings (with a small fee now and then)
    - An emergency-fund goal with contributions
    - A debt with an installment plan and its scheduled payments
    - A loan to a friend with one repayment
    - Recurring monthly bills as scheduled payments

    Args:
        engine: FinanceEngine instance
        user_id: Owner to generate data for
        seed (int, optional): Seed for reproducible output

    Returns:
        dict: Summary of what was generated
    """
    if seed is not None:
        random.seed(seed)
        Faker.seed(seed)

    engine.ensure_user(user_id, name=fake.name())
    current_date = to_date(engine.today())
    start_date = current_date - timedelta(days=120)

    logger.info("[DEMO] Generating demo data from %s to %s for %s", start_date, current_date, user_id)

    category_map = {cat['name']: cat['id'] for cat in engine.get_categories(user_id)}
    type_map = {kind['name']: kind['id'] for kind in engine.get_account_types(user_id)}

    # ===== ACCOUNTS =====

    checking = _check(engine.create_account(user_id, "Checking", initial_balance=2500,
                                            color="#3b82f6", icon="building",
                                            account_type_id=type_map.get("Bank")), "checking account")
    savings = _check(engine.create_account(user_id, "Savings", initial_balance=5000,
                                           color="#10b981", icon="piggy-bank",
                                           account_type_id=type_map.get("Savings")), "savings account")
    cash = _check(engine.create_account(user_id, "Wallet", initial_balance=150,
                                        color="#f59e0b", icon="banknote",
                                        account_type_id=type_map.get("Cash")), "cash account")

    # ===== PAYCHECKS =====

    employer = fake.company()
    paycheck = _check(engine.create_recurring_transaction(
        user_id, checking['id'], 'income', 2100.00, 'biweekly',
        start_date=start_date.isoformat(),
        category_id=category_map.get('Salary'),
        description=f"Paycheck - {employer}",
    ), "paycheck template")
    paycheck_count = 0
    while to_date(paycheck['next_due_date']) <= current_date:
        paycheck = _check(engine.post_recurring_transaction(user_id, paycheck['id']),
                          "paycheck")['recurring_transaction']
        paycheck_count += 1

    logger.info("[DEMO] Generated %s paychecks", paycheck_count)

    # ===== RANDOM EXPENSES =====

    expense_date = start_date
    expense_count = 0
    while expense_date <= current_date:
        for template in EXPENSE_TEMPLATES:
            if random.random() < (1.0 / template['frequency']):
                # 85% checking, 15% cash
                account_id = checking['id'] if random.random() < 0.85 else cash['id']
                _check(engine.create_transaction(
                    user_id, account_id, 'expense',
                    round(random.uniform(template['min'], template['max']), 2),
                    date=expense_date.isoformat(),
                    category_id=category_map.get(template['category']),
                    description=random.choice(template['descriptions']),
                ), "expense")
                expense_count += 1
        expense_date += timedelta(days=1)

    logger.info("[DEMO] Generated %s expenses", expense_count)

    # ===== TRANSFERS =====

    transfer_date = start_date + timedelta(days=15)
    while transfer_date <= current_date:
        _check(engine.create_transfer(
            user_id, checking['id'], savings['id'], random.randint(200, 500),
            fee=random.choice([0, 0, 1.5]),
            description="Monthly Savings",
            date=transfer_date.isoformat(),
        ), "transfer")
        transfer_date += timedelta(days=30)

    # ===== GOAL =====

    goal = _check(engine.create_goal(
        user_id, "Emergency Fund", 6000,
        target_date=(current_date + timedelta(days=365)).isoformat(),
        icon="shield", color="#10b981",
    ), "goal")
    for months_ago in (3, 2, 1):
        _check(engine.contribute_to_goal(
            user_id, goal['id'], savings['id'], random.choice([250, 300, 400]),
            date=(current_date - timedelta(days=30 * months_ago)).isoformat(),
        ), "goal contribution")

    # ===== DEBT =====

    debt = _check(engine.create_debt(
        user_id, f"{fake.last_name()} Credit Union", 2400,
        start_date=(current_date - timedelta(days=60)).isoformat(),
        total_installments=12, interest_rate=9.5,
        description="Laptop financing",
    ), "debt")
    _check(engine.make_debt_payment(
        user_id, debt['id'], checking['id'], 200,
        date=debt['installments'][0]['due_date'],
        installment_id=debt['installments'][0]['id'],
    ), "debt payment")
    _check(engine.generate_payments_from_debt(user_id, debt['id']), "debt payments")

    # ===== LOAN =====

    loan = _check(engine.create_loan(
        user_id, fake.first_name(), 300,
        loan_date=(current_date - timedelta(days=45)).isoformat(),
        borrower_contact=fake.phone_number(),
    ), "loan")
    _check(engine.record_loan_payment(
        user_id, loan['id'], cash['id'], 100,
        date=(current_date - timedelta(days=10)).isoformat(),
    ), "loan payment")

    # ===== RECURRING BILLS =====

    for bill in RECURRING_BILLS:
        due = current_date.replace(day=bill['day'])
        if due < current_date:
            due = (due + timedelta(days=31)).replace(day=bill['day'])
        _check(engine.create_scheduled_payment(
            user_id, bill['name'], bill['amount'], due.isoformat(),
            account_id=checking['id'],
            category_id=category_map.get(bill['category']),
            is_recurring=True,
            recurring_frequency='monthly',
            priority=bill['priority'],
        ), "scheduled payment")

    return {
        "accounts_created": 3,
        "paychecks": paycheck_count,
        "expenses": expense_count,
        "date_range": f"{start_date} to {current_date}",
        "persona": "Young Professional (~$54k/year)",
    }
