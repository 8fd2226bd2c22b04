"""Exchange rate table passed explicitly into every conversion"""

from bisect import bisect_right
from pydantic import BaseModel, Field
from datetime import datetime, date
from typing import Optional, Dict, List, Tuple, Union

from gastos_analytics.constants import CANONICAL_CURRENCY, CANONICAL_ALIASES, INDEXED_UNIT_CODES


class DatedRate(BaseModel):
    """Rate effective from a given day"""

    effective: date = Field(..., description="First day the rate applies")
    rate: float = Field(..., gt=0, description="Canonical units per unit of currency")


class RateTable(BaseModel):
    """Point-in-time rates: canonical-currency units per unit of each currency"""

    canonical_currency: str = Field(CANONICAL_CURRENCY, description="Reference currency")
    canonical_aliases: Tuple[str, ...] = Field(CANONICAL_ALIASES, description="Codes equivalent to the canonical currency")
    indexed_unit_codes: Tuple[str, ...] = Field(INDEXED_UNIT_CODES, description="Codes of the indexed unit")
    rates: Dict[str, float] = Field(default_factory=dict, description="Latest rate per currency")
    indexed_unit_rate: Optional[float] = Field(None, description="Latest indexed unit rate")
    history: Dict[str, List[DatedRate]] = Field(default_factory=dict, description="Optional per-day rates")
    as_of: Optional[datetime] = Field(None, description="When the latest rates were published")

    class Config:
        frozen = True

    def is_canonical(self, currency: str) -> bool:
        return currency == self.canonical_currency or currency in self.canonical_aliases

    def is_indexed_unit(self, currency: str) -> bool:
        return currency in self.indexed_unit_codes

    def rate_for(self, currency: str, on_date: Optional[Union[date, datetime]] = None) -> Optional[float]:
        """
        Closest rate on or before on_date, falling back to the latest rate.

        Returns None when the currency has no rate at all.
        """
        if self.is_canonical(currency):
            return 1.0

        history = self.history.get(currency)
        if history and on_date is not None:
            day = on_date.date() if isinstance(on_date, datetime) else on_date
            ordered = sorted(history, key=lambda entry: entry.effective)
            position = bisect_right([entry.effective for entry in ordered], day)
            if position > 0:
                return ordered[position - 1].rate

        if self.is_indexed_unit(currency):
            return self.indexed_unit_rate
        return self.rates.get(currency)
