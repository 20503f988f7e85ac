"""
Clear Ledger - personal finance ledger with derived balances, goals, debts,
loans and scheduled payments.
"""

from .api import create_app
from .engine import FinanceEngine

__version__ = '1.0.0'

__all__ = ['create_app', 'FinanceEngine', '__version__']
