"""
Placeholder rendering for reminder templates.

Templates use ``{key}`` placeholders. Keys missing from the variables pass
through untouched; keys mapped to an empty value are blanked, and a line that
held nothing but such a placeholder is dropped entirely.
"""
import re
from datetime import date
from decimal import Decimal
from typing import Mapping, Optional

CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
}

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)


def render_template(template: str, variables: Mapping[str, Optional[str]]) -> str:
    result = template
    for key, value in variables.items():
        placeholder = re.escape("{" + key + "}")
        if value is None or value == "":
            result = re.sub(rf"^[ \t]*{placeholder}[ \t]*(\n|$)", "", result, flags=re.MULTILINE)
            result = re.sub(placeholder, "", result)
        else:
            result = re.sub(placeholder, lambda _: value, result)
    result = re.sub(r"\n\n\n+", "\n\n", result)
    return result.strip()


def format_amount(amount: Decimal, currency: str) -> str:
    """Format ``amount`` the way en-US invoices show it: $1,234.50."""
    code = (currency or "").upper()
    quantized = Decimal(amount).quantize(Decimal("0.01"))
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{symbol}{quantized:,.2f}"
    return f"{code} {quantized:,.2f}".strip()


def format_date(value: date) -> str:
    """Long en-US date, e.g. 'March 5, 2025'."""
    return f"{MONTH_NAMES[value.month - 1]} {value.day}, {value.year}"
