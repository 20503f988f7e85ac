"""
Clear Ledger - User Settings & Dashboard Configuration

The dashboard configuration is stored as a JSON document inside the
user_settings row, but it is never handled as a free-form map: it is parsed
into a versioned DashboardConfig model with enumerated values and bounds, and
unknown keys are rejected.

License: MIT
"""

import json
import logging
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import INVALID_CONFIG, DomainError

logger = logging.getLogger(__name__)

CONFIG_VERSION = 1

Period = Literal['today', 'week', 'month', 'quarter', 'year']
BreakdownPeriod = Literal['week', 'month', 'quarter', 'year']
Widget = Literal[
    'balance', 'expenses', 'income', 'transactions', 'goals',
    'scheduled_payments', 'debts_summary', 'category_breakdown',
]

DEFAULT_WIDGETS_ORDER = ['balance', 'expenses', 'income', 'transactions', 'goals', 'scheduled_payments']


class DashboardConfig(BaseModel):
    model_config = ConfigDict(extra='forbid')

    version: Literal[1] = CONFIG_VERSION
    expenses_period: Period = 'month'
    income_period: Period = 'month'
    recent_transactions_limit: int = Field(5, ge=3, le=20)
    balance_account_ids: Optional[List[str]] = None
    dashboard_goal_ids: Optional[List[str]] = None
    featured_goal_id: Optional[str] = None
    show_scheduled_payments: bool = True
    scheduled_payments_days: int = Field(7, ge=1, le=30)
    widgets_order: List[Widget] = Field(default_factory=lambda: list(DEFAULT_WIDGETS_ORDER))
    category_breakdown_period: BreakdownPeriod = 'month'
    category_breakdown_type: Literal['income', 'expense'] = 'expense'


class UserSettings(BaseModel):
    """Per-user preferences. Column-backed; dashboard_config is kept separately."""

    model_config = ConfigDict(extra='forbid')

    theme: Literal['light', 'dark', 'system'] = 'system'
    language: str = Field('es', min_length=2, max_length=10)
    date_format: str = Field('DD/MM/YYYY', max_length=20)
    number_format: str = Field('es-PE', max_length=20)
    notify_on_due_payments: bool = True
    notify_on_goal_progress: bool = True
    notify_on_recurring: bool = False
    show_cents_in_amounts: bool = True
    default_account_id: Optional[str] = None
    start_of_week: int = Field(1, ge=0, le=6)
    fiscal_month_start: int = Field(1, ge=1, le=28)


SETTINGS_FIELDS = tuple(UserSettings.model_fields)


def _error_details(exc):
    return [
        {'field': '.'.join(str(part) for part in err['loc']), 'message': err['msg']}
        for err in exc.errors()
    ]


def default_dashboard_config():
    return DashboardConfig()


def load_dashboard_config(raw):
    """
    Parse the stored JSON document.

    A missing document yields the defaults. A stored document that no longer
    validates is logged and replaced by the defaults so reads never fail on
    bad persisted state.
    """
    if not raw:
        return DashboardConfig()
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
        return DashboardConfig.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.warning("[SETTINGS] Stored dashboard config is invalid, using defaults: %s", e)
        return DashboardConfig()


def dump_dashboard_config(config):
    return json.dumps(config.model_dump())


def merge_dashboard_config(current, patch):
    """
    Apply a partial patch to a dashboard configuration.

    Args:
        current (DashboardConfig): Configuration currently stored
        patch (dict): Keys to change

    Returns:
        tuple: (True, DashboardConfig) or (False, DomainError) when the patch
               has unknown keys or out-of-range values
    """
    if not isinstance(patch, dict):
        return False, DomainError(INVALID_CONFIG, "Dashboard configuration must be an object.")

    merged = current.model_dump()
    merged.update(patch)
    try:
        return True, DashboardConfig.model_validate(merged)
    except ValidationError as e:
        return False, DomainError(INVALID_CONFIG, "Invalid dashboard configuration.", _error_details(e))


def merge_user_settings(current, patch):
    """Same contract as merge_dashboard_config, for the column-backed settings."""
    if not isinstance(patch, dict):
        return False, DomainError(INVALID_CONFIG, "Settings must be an object.")

    merged = {key: current.get(key) for key in SETTINGS_FIELDS if key in current}
    merged.update(patch)
    try:
        return True, UserSettings.model_validate(merged)
    except ValidationError as e:
        return False, DomainError(INVALID_CONFIG, "Invalid settings.", _error_details(e))
