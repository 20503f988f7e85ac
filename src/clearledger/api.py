"""
Clear Ledger - Flask REST API

This module provides the JSON API for Clear Ledger. It exposes the
FinanceEngine over HTTP:

Ledger:
- Accounts (with derived balances), account types, categories, merchants
- Transactions, transfers, recurring transaction templates

Planning:
- Goals with contributions, debts with installments, loans
- Scheduled payments: list, upcoming, pay, cancel, generate from a debt

Dashboard & Settings:
- Configurable dashboard, summary widget, period-over-period trends
- User settings and the dashboard configuration document

Identity:
- The upstream gateway authenticates the user and forwards its id in a
  trusted header (X-User-Id by default). Flask-Login's request_loader turns
  that header into current_user; unknown users are provisioned on first
  sight.

Errors:
- Engine DomainErrors map to HTTP: not_found 404, invalid_transition 409,
  invalid_amount / invalid_input / invalid_config 400

License: MIT
"""

import datetime
import logging
import os
import sqlite3
from decimal import Decimal

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask.json.provider import DefaultJSONProvider
from flask_cors import CORS
from flask_login import LoginManager, UserMixin, current_user, login_required

from .engine import DEFAULT_CURRENCY, FinanceEngine
from .errors import (
    INVALID_AMOUNT,
    INVALID_CONFIG,
    INVALID_INPUT,
    INVALID_TRANSITION,
    NOT_FOUND,
    ConsistencyViolation,
)
from .setup_sqlite import create_database, get_db_path

# Load environment variables (for SECRET_KEY, CLEARLEDGER_*, etc.)
load_dotenv()

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

ERROR_STATUS = {
    NOT_FOUND: 404,
    INVALID_TRANSITION: 409,
    INVALID_AMOUNT: 400,
    INVALID_INPUT: 400,
    INVALID_CONFIG: 400,
}


class CustomJSONProvider(DefaultJSONProvider):
    """Serialize Decimal as float and dates as ISO 8601 strings."""

    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (datetime.datetime, datetime.date)):
            return obj.isoformat()
        return super().default(obj)


class User(UserMixin):
    def __init__(self, id, name=None, currency=None):
        self.id = id
        self.name = name
        self.currency = currency


def error_response(error):
    """Turn a DomainError into a JSON response with its mapped status."""
    return jsonify(error.to_dict()), ERROR_STATUS.get(error.code, 400)


def result_response(result, status=200):
    """Unpack an engine (success, payload) tuple."""
    success, payload = result
    if not success:
        return error_response(payload)
    if isinstance(payload, str):
        return jsonify({"success": True, "message": payload}), status
    return jsonify({"success": True, "data": payload}), status


def not_found(entity):
    return jsonify({"success": False, "error": NOT_FOUND, "message": f"{entity} not found."}), 404


def bad_request(message):
    return jsonify({"success": False, "error": INVALID_INPUT, "message": message}), 400


def get_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def arg_flag(name, default):
    value = request.args.get(name)
    if value is None:
        return default
    return value.strip().lower() not in ('false', '0', 'no')


def page_limit(default=50):
    """Page size from ?limit=, clamped to 1..MAX_PAGE_SIZE"""
    return max(1, min(request.args.get('limit', default, type=int), MAX_PAGE_SIZE))


def create_app(config=None):
    """
    Build the Flask application.

    Args:
        config (dict, optional): Overrides. DATABASE_PATH selects the SQLite
            file, TODAY pins the engine clock (date or 'YYYY-MM-DD').

    Returns:
        Flask: Configured application; the engine is at app.config['ENGINE']
    """
    app = Flask(__name__)
    app.json = CustomJSONProvider(app)

    app.config.update(
        SECRET_KEY=os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production'),
        DATABASE_PATH=os.getenv('CLEARLEDGER_DB_PATH') or str(get_db_path()),
        USER_HEADER=os.getenv('CLEARLEDGER_USER_HEADER', 'X-User-Id'),
        DEFAULT_CURRENCY=os.getenv('CLEARLEDGER_DEFAULT_CURRENCY', DEFAULT_CURRENCY),
        CORS_ORIGINS=os.getenv('CLEARLEDGER_CORS_ORIGINS', '*'),
        TODAY=None,
    )
    if config:
        app.config.update(config)

    origins = app.config['CORS_ORIGINS']
    if isinstance(origins, str) and origins != '*':
        origins = [origin.strip() for origin in origins.split(',') if origin.strip()]
    CORS(app, resources={r"/api/*": {"origins": origins}})

    # Create the schema on first start (no-op when it already exists)
    create_database(app.config['DATABASE_PATH'], quiet=True)

    today_provider = (lambda: app.config['TODAY']) if app.config['TODAY'] else None
    engine = FinanceEngine(
        db_path=app.config['DATABASE_PATH'],
        today_provider=today_provider,
        default_currency=app.config['DEFAULT_CURRENCY'],
    )
    app.config['ENGINE'] = engine
    logger.info("[API] Using database %s", app.config['DATABASE_PATH'])

    # --- FLASK-LOGIN SETUP ---
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify(success=False, message="Authorization required."), 401

    @login_manager.request_loader
    def load_user_from_request(req):
        user_id = (req.headers.get(app.config['USER_HEADER']) or '').strip()
        if not user_id:
            return None
        user = engine.ensure_user(user_id, name=req.headers.get('X-User-Name'))
        return User(user['id'], user['name'], user['currency'])

    # --- ERROR HANDLERS ---
    @app.errorhandler(sqlite3.Error)
    def database_error(e):
        logger.error("[API] Database error on %s %s: %s", request.method, request.path, e)
        return jsonify(success=False, message="Database error."), 500

    @app.errorhandler(ConsistencyViolation)
    def consistency_error(e):
        logger.error("[API] Consistency violation on %s %s: %s", request.method, request.path, e)
        return jsonify(success=False, message="Internal error."), 500

    # --- HEALTH ---
    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({"status": "ok", "timestamp": datetime.datetime.now().isoformat()})

    # --- ACCOUNTS API ROUTES ---
    @app.route('/api/accounts', methods=['GET'])
    @login_required
    def list_accounts():
        return jsonify(engine.get_accounts(current_user.id,
                                           include_inactive=arg_flag('include_inactive', False)))

    @app.route('/api/accounts', methods=['POST'])
    @login_required
    def create_account():
        data = get_body()
        if data is None or not data.get('name'):
            return bad_request("Missing required field: name.")
        result = engine.create_account(
            current_user.id,
            name=data['name'],
            initial_balance=data.get('initial_balance', 0),
            currency=data.get('currency') or current_user.currency,
            description=data.get('description'),
            color=data.get('color'),
            icon=data.get('icon'),
            include_in_total=data.get('include_in_total', True),
            account_type_id=data.get('account_type_id'),
        )
        return result_response(result, 201)

    @app.route('/api/accounts/<account_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_account(account_id):
        if request.method == 'GET':
            account = engine.get_account(current_user.id, account_id)
            return jsonify(account) if account else not_found('Account')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_account(current_user.id, account_id, data))
        return result_response(engine.delete_account(current_user.id, account_id))

    # --- ACCOUNT TYPES API ROUTES ---
    @app.route('/api/account-types', methods=['GET'])
    @login_required
    def list_account_types():
        return jsonify(engine.get_account_types(current_user.id))

    @app.route('/api/account-types', methods=['POST'])
    @login_required
    def create_account_type():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        return result_response(
            engine.create_account_type(current_user.id, name=data.get('name'), icon=data.get('icon')), 201)

    @app.route('/api/account-types/<type_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_account_type(type_id):
        if request.method == 'GET':
            account_type = engine.get_account_type(current_user.id, type_id)
            return jsonify(account_type) if account_type else not_found('Account type')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_account_type(current_user.id, type_id, data))
        return result_response(engine.delete_account_type(current_user.id, type_id))

    # --- CATEGORIES API ROUTES ---
    @app.route('/api/categories', methods=['GET'])
    @login_required
    def list_categories():
        return jsonify(engine.get_categories(current_user.id, request.args.get('type'),
                                             include_inactive=arg_flag('include_inactive', False)))

    @app.route('/api/categories', methods=['POST'])
    @login_required
    def create_category():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.create_category(
            current_user.id,
            name=data.get('name'),
            category_type=data.get('type'),
            icon=data.get('icon'),
            color=data.get('color'),
            parent_id=data.get('parent_id'),
        )
        return result_response(result, 201)

    @app.route('/api/categories/<category_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_category(category_id):
        if request.method == 'GET':
            category = engine.get_category(current_user.id, category_id)
            return jsonify(category) if category else not_found('Category')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_category(current_user.id, category_id, data))
        return result_response(engine.delete_category(current_user.id, category_id))

    # --- MERCHANTS API ROUTES ---
    @app.route('/api/merchants', methods=['GET'])
    @login_required
    def list_merchants():
        return jsonify(engine.get_merchants(current_user.id))

    @app.route('/api/merchants', methods=['POST'])
    @login_required
    def create_merchant():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.create_merchant(
            current_user.id,
            name=data.get('name'),
            category_id=data.get('category_id'),
            icon=data.get('icon'),
        )
        return result_response(result, 201)

    @app.route('/api/merchants/<merchant_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_merchant(merchant_id):
        if request.method == 'GET':
            merchant = engine.get_merchant(current_user.id, merchant_id)
            return jsonify(merchant) if merchant else not_found('Merchant')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_merchant(current_user.id, merchant_id, data))
        return result_response(engine.delete_merchant(current_user.id, merchant_id))

    # --- TRANSACTIONS API ROUTES ---
    @app.route('/api/transactions', methods=['GET'])
    @login_required
    def list_transactions():
        return jsonify(engine.get_transactions(
            current_user.id,
            account_id=request.args.get('account_id'),
            category_id=request.args.get('category_id'),
            transaction_type=request.args.get('type'),
            start_date=request.args.get('start_date'),
            end_date=request.args.get('end_date'),
            limit=page_limit(),
            offset=max(request.args.get('offset', 0, type=int), 0),
            merchant_id=request.args.get('merchant_id'),
            recurring_transaction_id=request.args.get('recurring_transaction_id'),
        ))

    @app.route('/api/transactions', methods=['POST'])
    @login_required
    def create_transaction():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.create_transaction(
            current_user.id,
            account_id=data.get('account_id'),
            transaction_type=data.get('type'),
            amount=data.get('amount'),
            date=data.get('date'),
            category_id=data.get('category_id'),
            description=data.get('description'),
            notes=data.get('notes'),
            goal_id=data.get('goal_id'),
            debt_id=data.get('debt_id'),
            loan_id=data.get('loan_id'),
            subcategory_id=data.get('subcategory_id'),
            merchant_id=data.get('merchant_id'),
            merchant_name=data.get('merchant_name'),
            recurring_transaction_id=data.get('recurring_transaction_id'),
        )
        return result_response(result, 201)

    @app.route('/api/transactions/summary/by-category', methods=['GET'])
    @login_required
    def transactions_by_category():
        return jsonify(engine.get_category_summary(
            current_user.id,
            transaction_type=request.args.get('type', 'expense'),
            start_date=request.args.get('start_date'),
            end_date=request.args.get('end_date'),
        ))

    @app.route('/api/transactions/<transaction_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_transaction(transaction_id):
        if request.method == 'GET':
            transaction = engine.get_transaction(current_user.id, transaction_id)
            return jsonify(transaction) if transaction else not_found('Transaction')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_transaction(current_user.id, transaction_id, data))
        return result_response(engine.delete_transaction(current_user.id, transaction_id))

    # --- TRANSFERS API ROUTES ---
    @app.route('/api/transfers', methods=['GET'])
    @login_required
    def list_transfers():
        return jsonify(engine.get_transfers(
            current_user.id,
            account_id=request.args.get('account_id'),
            start_date=request.args.get('start_date'),
            end_date=request.args.get('end_date'),
            limit=page_limit(),
            offset=max(request.args.get('offset', 0, type=int), 0),
        ))

    @app.route('/api/transfers', methods=['POST'])
    @login_required
    def create_transfer():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.create_transfer(
            current_user.id,
            from_account_id=data.get('from_account_id'),
            to_account_id=data.get('to_account_id'),
            amount=data.get('amount'),
            fee=data.get('fee', 0),
            description=data.get('description'),
            date=data.get('date'),
        )
        return result_response(result, 201)

    @app.route('/api/transfers/<transfer_id>', methods=['GET', 'DELETE'])
    @login_required
    def manage_transfer(transfer_id):
        if request.method == 'GET':
            transfer = engine.get_transfer(current_user.id, transfer_id)
            return jsonify(transfer) if transfer else not_found('Transfer')
        return result_response(engine.delete_transfer(current_user.id, transfer_id))

    # --- RECURRING TRANSACTIONS API ROUTES ---
    @app.route('/api/recurring-transactions', methods=['GET'])
    @login_required
    def list_recurring_transactions():
        return jsonify(engine.get_recurring_transactions(
            current_user.id, active_only=arg_flag('active_only', False)))

    @app.route('/api/recurring-transactions', methods=['POST'])
    @login_required
    def create_recurring_transaction():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.create_recurring_transaction(
            current_user.id,
            account_id=data.get('account_id'),
            transaction_type=data.get('type'),
            amount=data.get('amount'),
            frequency=data.get('frequency'),
            start_date=data.get('start_date'),
            end_date=data.get('end_date'),
            category_id=data.get('category_id'),
            description=data.get('description'),
            day_of_month=data.get('day_of_month'),
            day_of_week=data.get('day_of_week'),
        )
        return result_response(result, 201)

    @app.route('/api/recurring-transactions/<recurring_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_recurring_transaction(recurring_id):
        if request.method == 'GET':
            template = engine.get_recurring_transaction(current_user.id, recurring_id)
            return jsonify(template) if template else not_found('Recurring transaction')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_recurring_transaction(current_user.id, recurring_id, data))
        return result_response(engine.delete_recurring_transaction(current_user.id, recurring_id))

    @app.route('/api/recurring-transactions/<recurring_id>/post', methods=['POST'])
    @login_required
    def post_recurring_transaction(recurring_id):
        data = get_body() or {}
        return result_response(engine.post_recurring_transaction(
            current_user.id, recurring_id, date=data.get('date')), 201)

    # --- GOALS API ROUTES ---
    @app.route('/api/goals', methods=['GET'])
    @login_required
    def list_goals():
        return jsonify(engine.get_goals(
            current_user.id,
            include_completed=arg_flag('include_completed', True),
            active_only=arg_flag('active_only', False),
        ))

    @app.route('/api/goals', methods=['POST'])
    @login_required
    def create_goal():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.create_goal(
            current_user.id,
            name=data.get('name'),
            target_amount=data.get('target_amount'),
            target_date=data.get('target_date'),
            description=data.get('description'),
            currency=data.get('currency') or current_user.currency,
            icon=data.get('icon'),
            color=data.get('color'),
        )
        return result_response(result, 201)

    @app.route('/api/goals/<goal_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_goal(goal_id):
        if request.method == 'GET':
            goal = engine.get_goal(current_user.id, goal_id)
            return jsonify(goal) if goal else not_found('Goal')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_goal(current_user.id, goal_id, data))
        return result_response(engine.delete_goal(current_user.id, goal_id))

    @app.route('/api/goals/<goal_id>/contribute', methods=['POST'])
    @login_required
    def contribute_to_goal(goal_id):
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.contribute_to_goal(
            current_user.id,
            goal_id,
            account_id=data.get('account_id'),
            amount=data.get('amount'),
            date=data.get('date'),
            description=data.get('description'),
        )
        return result_response(result, 201)

    @app.route('/api/goals/<goal_id>/complete', methods=['POST'])
    @login_required
    def complete_goal(goal_id):
        return result_response(engine.complete_goal(current_user.id, goal_id))

    # --- DEBTS API ROUTES ---
    @app.route('/api/debts', methods=['GET'])
    @login_required
    def list_debts():
        return jsonify(engine.get_debts(current_user.id, status=request.args.get('status')))

    @app.route('/api/debts', methods=['POST'])
    @login_required
    def create_debt():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.create_debt(
            current_user.id,
            creditor=data.get('creditor'),
            principal_amount=data.get('principal_amount'),
            start_date=data.get('start_date'),
            total_installments=data.get('total_installments'),
            due_date=data.get('due_date'),
            interest_rate=data.get('interest_rate', 0),
            currency=data.get('currency') or current_user.currency,
            description=data.get('description'),
            notes=data.get('notes'),
        )
        return result_response(result, 201)

    @app.route('/api/debts/<debt_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_debt(debt_id):
        if request.method == 'GET':
            debt = engine.get_debt(current_user.id, debt_id)
            return jsonify(debt) if debt else not_found('Debt')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_debt(current_user.id, debt_id, data))
        return result_response(engine.delete_debt(current_user.id, debt_id))

    @app.route('/api/debts/<debt_id>/payments', methods=['POST'])
    @login_required
    def pay_debt(debt_id):
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.make_debt_payment(
            current_user.id,
            debt_id,
            account_id=data.get('account_id'),
            amount=data.get('amount'),
            date=data.get('date'),
            description=data.get('description'),
            category_id=data.get('category_id'),
            installment_id=data.get('installment_id'),
        )
        return result_response(result, 201)

    @app.route('/api/debts/<debt_id>/installments/<installment_id>', methods=['PATCH'])
    @login_required
    def update_installment(debt_id, installment_id):
        data = get_body() or {}
        result = engine.update_installment(
            current_user.id,
            debt_id,
            installment_id,
            status=data.get('status', 'paid'),
            paid_date=data.get('paid_date'),
        )
        return result_response(result)

    # --- LOANS API ROUTES ---
    @app.route('/api/loans', methods=['GET'])
    @login_required
    def list_loans():
        return jsonify(engine.get_loans(current_user.id, status=request.args.get('status')))

    @app.route('/api/loans', methods=['POST'])
    @login_required
    def create_loan():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.create_loan(
            current_user.id,
            borrower=data.get('borrower'),
            principal_amount=data.get('principal_amount'),
            loan_date=data.get('loan_date'),
            due_date=data.get('due_date'),
            interest_rate=data.get('interest_rate', 0),
            currency=data.get('currency') or current_user.currency,
            borrower_contact=data.get('borrower_contact'),
            description=data.get('description'),
            notes=data.get('notes'),
        )
        return result_response(result, 201)

    @app.route('/api/loans/<loan_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_loan(loan_id):
        if request.method == 'GET':
            loan = engine.get_loan(current_user.id, loan_id)
            return jsonify(loan) if loan else not_found('Loan')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_loan(current_user.id, loan_id, data))
        return result_response(engine.delete_loan(current_user.id, loan_id))

    @app.route('/api/loans/<loan_id>/payments', methods=['POST'])
    @login_required
    def record_loan_payment(loan_id):
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        result = engine.record_loan_payment(
            current_user.id,
            loan_id,
            account_id=data.get('account_id'),
            amount=data.get('amount'),
            date=data.get('date'),
            description=data.get('description'),
            category_id=data.get('category_id'),
        )
        return result_response(result, 201)

    @app.route('/api/loans/<loan_id>/forgive', methods=['POST'])
    @login_required
    def forgive_loan(loan_id):
        return result_response(engine.forgive_loan(current_user.id, loan_id))

    # --- SCHEDULED PAYMENTS API ROUTES ---
    @app.route('/api/scheduled-payments', methods=['GET'])
    @login_required
    def list_scheduled_payments():
        return jsonify(engine.list_scheduled_payments(
            current_user.id,
            status=request.args.get('status'),
            priority=request.args.get('priority'),
            start_date=request.args.get('start_date'),
            end_date=request.args.get('end_date'),
            include_overdue=arg_flag('include_overdue', True),
        ))

    @app.route('/api/scheduled-payments', methods=['POST'])
    @login_required
    def create_scheduled_payment():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        options = {k: v for k, v in data.items() if k not in ('user_id', 'name', 'amount', 'due_date')}
        options.setdefault('currency', current_user.currency)
        result = engine.create_scheduled_payment(
            current_user.id,
            name=data.get('name'),
            amount=data.get('amount'),
            due_date=data.get('due_date'),
            **options
        )
        return result_response(result, 201)

    @app.route('/api/scheduled-payments/upcoming', methods=['GET'])
    @login_required
    def upcoming_payments():
        days = request.args.get('days', 7, type=int)
        return jsonify(engine.get_upcoming_payments(current_user.id, days=max(0, min(days, 365))))

    @app.route('/api/scheduled-payments/from-debt/<debt_id>', methods=['POST'])
    @login_required
    def payments_from_debt(debt_id):
        return result_response(engine.generate_payments_from_debt(current_user.id, debt_id), 201)

    @app.route('/api/scheduled-payments/<payment_id>', methods=['GET', 'PATCH', 'DELETE'])
    @login_required
    def manage_scheduled_payment(payment_id):
        if request.method == 'GET':
            payment = engine.get_scheduled_payment(current_user.id, payment_id)
            return jsonify(payment) if payment else not_found('Scheduled payment')
        if request.method == 'PATCH':
            data = get_body()
            if data is None:
                return bad_request("Expected a JSON object.")
            return result_response(engine.update_scheduled_payment(current_user.id, payment_id, data))
        return result_response(engine.delete_scheduled_payment(current_user.id, payment_id))

    @app.route('/api/scheduled-payments/<payment_id>/pay', methods=['POST'])
    @login_required
    def pay_scheduled_payment(payment_id):
        data = get_body() or {}
        result = engine.settle_scheduled_payment(
            current_user.id,
            payment_id,
            paid_date=data.get('paid_date'),
            paid_amount=data.get('paid_amount'),
            create_next_recurrence=data.get('create_next_recurrence', True) is not False,
        )
        return result_response(result)

    @app.route('/api/scheduled-payments/<payment_id>/cancel', methods=['POST'])
    @login_required
    def cancel_scheduled_payment(payment_id):
        return result_response(engine.cancel_scheduled_payment(current_user.id, payment_id))

    # --- SETTINGS API ROUTES ---
    @app.route('/api/settings', methods=['GET', 'PATCH'])
    @login_required
    def settings():
        if request.method == 'GET':
            return jsonify(engine.get_settings(current_user.id))
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        return result_response(engine.update_settings(current_user.id, data))

    @app.route('/api/settings/dashboard', methods=['PATCH'])
    @login_required
    def dashboard_settings():
        data = get_body()
        if data is None:
            return bad_request("Expected a JSON object.")
        return result_response(engine.update_dashboard_config(current_user.id, data))

    @app.route('/api/settings/reset', methods=['POST'])
    @login_required
    def reset_settings():
        return result_response(engine.reset_settings(current_user.id))

    # --- DASHBOARD API ROUTES ---
    @app.route('/api/dashboard', methods=['GET'])
    @login_required
    def dashboard():
        return jsonify(engine.get_dashboard(current_user.id))

    @app.route('/api/dashboard/summary', methods=['GET'])
    @login_required
    def dashboard_summary():
        return jsonify(engine.get_summary(current_user.id, request.args.get('period', 'month')))

    @app.route('/api/dashboard/trends', methods=['GET'])
    @login_required
    def dashboard_trends():
        return jsonify(engine.get_trends(current_user.id, request.args.get('period', 'month')))

    return app
