"""Currency normalization to the canonical currency"""

import math
from datetime import date, datetime
from typing import Optional, Union

from gastos_analytics.models.rates import RateTable


def normalize_currency_code(currency: Optional[str], rates: RateTable) -> str:
    """Absent codes mean the canonical currency"""
    if not currency or not str(currency).strip():
        return rates.canonical_currency
    return str(currency).strip().upper()


def convert_to_canonical(
    amount: float,
    currency: Optional[str],
    rates: RateTable,
    on_date: Optional[Union[date, datetime]] = None
) -> Optional[float]:
    """
    Express an amount in the canonical currency.

    Uses the closest rate on or before on_date when the table carries
    per-day history, otherwise the latest rate.

    Args:
        amount: Finite, non-negative amount
        currency: Currency code (absent means canonical)
        rates: Rate table for the run
        on_date: Transaction date

    Returns:
        Converted amount, or None when no rate exists for the currency

    Raises:
        ValueError: If amount is negative or not finite
    """
    if amount is None or not math.isfinite(amount) or amount < 0:
        raise ValueError(f"Amount must be finite and non-negative, got {amount!r}")

    code = normalize_currency_code(currency, rates)
    if rates.is_canonical(code):
        return amount

    rate = rates.rate_for(code, on_date)
    if rate is None:
        return None
    return amount * rate
