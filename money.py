from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Union

MONEY_QUANT = Decimal("0.01")
PCT_QUANT = Decimal("0.01")

Number = Union[Decimal, int, float, str]


def money(value: Number) -> Decimal:
    return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Number]) -> Decimal:
    total = Decimal("0")
    for value in values:
        total += money(value)
    return money(total)


def percent(part: Number, whole: Number) -> Decimal:
    """Share of ``part`` in ``whole`` as a 0-100 percentage; 0 when ``whole`` is 0."""
    whole_dec = Decimal(str(whole))
    if whole_dec == 0:
        return Decimal("0.00")
    ratio = Decimal(str(part)) * Decimal("100") / whole_dec
    return ratio.quantize(PCT_QUANT, rounding=ROUND_HALF_UP)
