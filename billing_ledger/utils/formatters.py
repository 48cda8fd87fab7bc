"""
Money and date helpers shared by the ledger services.
All ledger arithmetic happens on Decimal quantized to cents.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from datetime import date, datetime
from typing import Union, Optional

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def to_money(value: Union[int, float, Decimal, str, None]) -> Decimal:
    """
    Convert a numeric value to a Decimal rounded to cents.

    None and empty strings become 0.00. Floats go through str() so 0.1
    stays 0.10 instead of 0.1000000000000000055.

    Raises:
        InvalidOperation: If the value is not numeric
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, str):
        value = value.strip()
    num = value if isinstance(value, Decimal) else Decimal(str(value))
    if not num.is_finite():
        raise InvalidOperation(f'Non-finite amount: {value}')
    return num.quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value: Union[int, float, Decimal, str, None]) -> Optional[str]:
    """
    Plain 2-decimal string used in JSON responses and audit details.

    Examples:
        money_str(1000) -> "1000.00"
        money_str(None) -> None
    """
    if value is None:
        return None
    return f"{to_money(value):.2f}"


def money_display(value: Union[int, float, Decimal, str, None]) -> str:
    """
    Format an amount with thousands separators and exactly 2 decimals, for messages.

    Returns:
        Formatted string (e.g. 1,500.00). Returns "-" if the value is invalid.
    """
    if value is None or value == "":
        return "-"

    try:
        num = to_money(value)
    except (InvalidOperation, ValueError, TypeError):
        return "-"

    return f"{num:,.2f}"


def iso_datetime(value: Union[date, datetime, None]) -> Optional[str]:
    """ISO-8601 text for a date/datetime, None stays None."""
    if value is None:
        return None
    return value.isoformat()
