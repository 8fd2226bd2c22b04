"""Amount summary data model (derived, attached 1:1 to a procurement record)"""

from pydantic import Field
from datetime import datetime
from typing import Optional, Dict, List

from gastos_analytics.constants import AMOUNT_CALCULATION_VERSION, CANONICAL_CURRENCY
from gastos_analytics.models.base import DocumentModel

# Fields that describe the call site rather than the computation
AUDIT_FIELDS = {"was_version_update", "previous_amount"}


class AmountSummary(DocumentModel):
    """Currency-normalized monetary totals of a procurement record"""

    total_amounts: Dict[str, float] = Field(default_factory=dict, description="Totals per original currency")
    total_items: int = Field(0, description="Items seen across all awards")
    valid_items: int = Field(0, description="Items that contributed an amount")
    skipped_items: int = Field(0, description="Items with negative or non-numeric amounts")
    currencies: List[str] = Field(default_factory=list, description="Currencies observed, in encounter order")
    has_amounts: bool = Field(False, description="Whether any amount was found")
    primary_amount: float = Field(0.0, description="Total converted to the canonical currency")
    primary_currency: str = Field(CANONICAL_CURRENCY, description="Canonical currency code")
    original_canonical_amount: float = Field(0.0, description="Amount originally expressed in the canonical currency")
    excluded_currencies: List[str] = Field(default_factory=list, description="Currencies left out of the primary total for lack of a rate")
    has_converted_amounts: bool = Field(False, description="Whether a non-canonical currency contributed to the primary total")
    exchange_rate_date: Optional[datetime] = Field(None, description="As-of date of the rate table used")
    indexed_unit_rate: Optional[float] = Field(None, description="Indexed unit rate used")
    version: int = Field(AMOUNT_CALCULATION_VERSION, description="Calculation logic version")
    source_fingerprint: Optional[str] = Field(None, description="Hash of the awards the summary was computed from")
    was_version_update: bool = Field(False, description="Whether this computation replaced a prior summary")
    previous_amount: Optional[float] = Field(None, description="Primary amount of the replaced summary")

    class Config:
        json_schema_extra = {
            "example": {
                "totalAmounts": {"USD": 2000, "UYU": 500, "EUR": 2000},
                "totalItems": 2,
                "validItems": 2,
                "skippedItems": 0,
                "currencies": ["USD", "UYU", "EUR"],
                "hasAmounts": True,
                "primaryAmount": 168500.0,
                "primaryCurrency": "UYU",
                "originalCanonicalAmount": 500,
                "hasConvertedAmounts": True,
                "version": 2,
                "wasVersionUpdate": False
            }
        }

    def computation_fields(self) -> Dict:
        """Fields that must be identical for identical inputs"""
        return self.model_dump(exclude=AUDIT_FIELDS)
