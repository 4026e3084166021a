from decimal import Decimal
from typing import Sequence

from money import Number, money


def _validate_weights(weights: Sequence[Decimal]) -> None:
    for weight in weights:
        if weight < 0:
            raise ValueError("weights must be >= 0.")


def split(total: Number, weights: Sequence[Number]) -> list[Decimal]:
    """Split ``total`` into ``len(weights)`` parts proportional to the weights.

    Each part is rounded half-up to cents on its own; whatever rounding
    residual is left over goes to the first part so the parts always sum to
    ``total`` exactly. All-zero weights give all-zero parts.
    """
    total_amount = money(total)
    weight_values = [Decimal(str(w)) for w in weights]
    _validate_weights(weight_values)

    if not weight_values:
        return []
    if len(weight_values) == 1:
        return [total_amount]

    weight_sum = sum(weight_values, Decimal("0"))
    if weight_sum == 0:
        return [money(0) for _ in weight_values]

    parts = [money(total_amount * w / weight_sum) for w in weight_values]
    residual = total_amount - sum(parts, Decimal("0"))
    parts[0] = money(parts[0] + residual)
    return parts
