from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union


def parse_amount(value: Union[str, int, float, Decimal], *, allow_negative: bool = False) -> int:
    """Convert a human-entered amount ("1 234,50", "$12.3", 9.99) to cents."""
    if isinstance(value, Decimal):
        amount = value
    else:
        clean = str(value).strip().replace("€", "").replace("$", "").replace(" ", "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
        try:
            amount = Decimal(clean)
        except InvalidOperation as exc:
            raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def format_cents(cents: int, *, include_cents: bool = True) -> str:
    if include_cents:
        return f"{cents / 100:,.2f}"
    return f"{cents / 100:,.0f}"
