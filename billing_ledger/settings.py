"""Ledger rule settings, read from the active Flask app when there is one."""
from decimal import Decimal
from flask import current_app, has_app_context

DEFAULTS = {
    'LEDGER_DUPLICATE_WINDOW_SECONDS': 120,
    'LEDGER_AMOUNT_TOLERANCE': '0.01',
    'LEDGER_DEFAULT_PAGE_SIZE': 10,
    'LEDGER_MAX_PAGE_SIZE': 100,
}


def get_setting(name: str):
    """Return a ledger setting, falling back to DEFAULTS outside an app context."""
    if has_app_context():
        return current_app.config.get(name, DEFAULTS[name])
    return DEFAULTS[name]


def amount_tolerance() -> Decimal:
    """Rounding tolerance for overpayment and balance mismatch checks."""
    return Decimal(str(get_setting('LEDGER_AMOUNT_TOLERANCE')))


def duplicate_window_seconds() -> int:
    """Window in which a same-amount payment on one invoice counts as a double submit."""
    return int(get_setting('LEDGER_DUPLICATE_WINDOW_SECONDS'))
