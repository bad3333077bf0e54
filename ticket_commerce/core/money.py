"""
Exact integer money helpers.

Every amount in the pipeline is an ``int`` number of cents and every quantity
an ``int`` number of units. Nothing here rounds silently: the only rounding
is the documented floor in ``percentage_of``.
"""
from ticket_commerce.core.exceptions import ReconciliationError, ValidationError


def require_int(value, field: str) -> int:
    # bool is an int subclass; a flag is never an amount
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", {"field": field, "value": repr(value)})
    return value


def require_non_negative(value: int, field: str) -> int:
    require_int(value, field)
    if value < 0:
        raise ValidationError(f"{field} must not be negative", {"field": field, "value": value})
    return value


def line_total(quantity: int, unit_price_in_cents: int) -> int:
    """Signed total of one line: quantity times unit price"""
    return require_int(quantity, "quantity") * require_int(unit_price_in_cents, "unit_price_in_cents")


def percentage_of(amount_in_cents: int, percent: int) -> int:
    """Floor of ``percent``% of a non-negative amount"""
    require_non_negative(amount_in_cents, "amount_in_cents")
    if not 0 <= percent <= 100:
        raise ValidationError("percent must be between 0 and 100", {"percent": percent})
    return amount_in_cents * percent // 100


def prorate(amount: int, part: int, whole: int) -> int:
    """
    ``amount * part / whole`` when that is an exact integer.

    Used to split child quantities across a partial refund; a remainder
    means the tree cannot be refunded consistently, which is an internal
    error rather than something to round away.
    """
    if whole <= 0:
        raise ReconciliationError("Cannot prorate against an empty whole", {"whole": whole})
    share, remainder = divmod(amount * part, whole)
    if remainder:
        raise ReconciliationError(
            "Proportional share is not a whole number",
            {"amount": amount, "part": part, "whole": whole}
        )
    return share
