"""Procurement record data model (source-of-truth ledger entries)

Source documents are loosely shaped: any nested field may be missing or
carry the wrong type. Validators here apply the documented defaults at the
boundary so the computations never see raw, untyped data.
"""

import math
from pydantic import Field, field_validator, model_validator
from datetime import datetime
from typing import Optional, List, Any

from gastos_analytics.constants import UNKNOWN_DESCRIPTION, UNKNOWN_SCHEME
from gastos_analytics.models.base import DocumentModel
from gastos_analytics.models.amount_summary import AmountSummary


def _coerce_identifier(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class MonetaryValue(DocumentModel):
    """Amount with its currency code"""

    amount: Optional[float] = Field(None, description="Amount; None when absent or non-numeric")
    currency: Optional[str] = Field(None, description="ISO-like currency code")
    malformed: bool = Field(False, description="True when the source amount was present but not a number")

    @model_validator(mode="before")
    @classmethod
    def flag_non_numeric_amount(cls, data: Any) -> Any:
        if isinstance(data, MonetaryValue):
            return data
        if not isinstance(data, dict):
            return {}
        data = dict(data)
        amount = data.get("amount")
        if amount is not None and not _is_number(amount):
            data["amount"] = None
            data["malformed"] = True
        currency = data.get("currency")
        data["currency"] = currency.strip().upper() if isinstance(currency, str) and currency.strip() else None
        return data

    @property
    def is_valid(self) -> bool:
        """Finite, non-negative amount"""
        return self.amount is not None and math.isfinite(self.amount) and self.amount >= 0


class Unit(DocumentModel):
    id: Optional[str] = None
    name: Optional[str] = None
    value: Optional[MonetaryValue] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Optional[str]:
        return _coerce_identifier(value)


class Classification(DocumentModel):
    id: Optional[str] = None
    scheme: Optional[str] = None
    description: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Optional[str]:
        return _coerce_identifier(value)


class Identity(DocumentModel):
    """Supplier or buyer identity"""

    id: Optional[str] = None
    name: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Optional[str]:
        return _coerce_identifier(value)


class Item(DocumentModel):
    """Awarded line item"""

    id: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[float] = Field(None, description="Quantity; None when absent or malformed")
    classification: Optional[Classification] = None
    unit: Optional[Unit] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Optional[str]:
        return _coerce_identifier(value)

    @field_validator("quantity", mode="before")
    @classmethod
    def drop_malformed_quantity(cls, value: Any) -> Optional[float]:
        if not _is_number(value) or not math.isfinite(value) or value < 0:
            return None
        return value

    @property
    def value(self) -> Optional[MonetaryValue]:
        return self.unit.value if self.unit else None

    @property
    def effective_quantity(self) -> float:
        """Quantity with the missing-quantity default of 1"""
        return self.quantity if self.quantity is not None else 1

    @property
    def group_description(self) -> str:
        if self.classification and self.classification.description:
            return self.classification.description
        return UNKNOWN_DESCRIPTION

    @property
    def scheme(self) -> str:
        if self.classification and self.classification.scheme:
            return self.classification.scheme
        return UNKNOWN_SCHEME


class Award(DocumentModel):
    """Award inside a procurement record"""

    id: Optional[str] = None
    items: List[Item] = Field(default_factory=list)
    suppliers: List[Identity] = Field(default_factory=list)
    value: Optional[MonetaryValue] = Field(None, description="Award-level direct value")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Optional[str]:
        return _coerce_identifier(value)

    @field_validator("items", "suppliers", mode="before")
    @classmethod
    def list_or_empty(cls, value: Any) -> list:
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, (dict, DocumentModel))]


class ProcurementRecord(DocumentModel):
    """Procurement release with buyer, awards and derived amount summary"""

    id: str = Field(..., description="Globally unique release id")
    date: Optional[datetime] = Field(None, description="Publication date")
    source_year: Optional[int] = Field(None, description="Year derived from the publication date")
    buyer: Optional[Identity] = None
    awards: List[Award] = Field(default_factory=list)
    amount: Optional[AmountSummary] = Field(None, description="Derived amount summary")

    class Config:
        json_schema_extra = {
            "example": {
                "id": "adjudicacion-1034567",
                "date": "2023-05-04T00:00:00Z",
                "sourceYear": 2023,
                "buyer": {"id": "6-1", "name": "Ministerio de Salud"},
                "awards": [{
                    "id": "award-1",
                    "suppliers": [{"id": "210000000019", "name": "Proveedora SA"}],
                    "items": [{
                        "quantity": 10,
                        "classification": {"scheme": "CATALOGO", "id": "1234", "description": "Guantes"},
                        "unit": {"name": "Caja", "value": {"amount": 250.5, "currency": "UYU"}}
                    }]
                }]
            }
        }

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Optional[str]:
        return _coerce_identifier(value)

    @field_validator("date", mode="wrap")
    @classmethod
    def unparseable_date_is_missing(cls, value: Any, handler) -> Optional[datetime]:
        try:
            return handler(value)
        except ValueError:
            return None

    @field_validator("source_year", mode="before")
    @classmethod
    def numeric_year(cls, value: Any) -> Optional[int]:
        if _is_number(value) and float(value).is_integer():
            return int(value)
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return None

    @field_validator("awards", mode="before")
    @classmethod
    def awards_list(cls, value: Any) -> list:
        if not isinstance(value, list):
            return []
        return [award for award in value if isinstance(award, (dict, Award))]

    @field_validator("buyer", "amount", mode="before")
    @classmethod
    def mapping_or_none(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, DocumentModel)) else None

    @model_validator(mode="after")
    def year_follows_date(self) -> "ProcurementRecord":
        if self.date is not None:
            self.source_year = self.date.year
        return self

    @property
    def buyer_id(self) -> Optional[str]:
        return self.buyer.id if self.buyer else None

    @classmethod
    def from_document(cls, document: dict) -> "ProcurementRecord":
        """Build a record from a raw store document, falling back to the buyer party"""
        data = dict(document)
        if not isinstance(data.get("buyer"), dict):
            for party in data.get("parties") or []:
                if isinstance(party, dict) and "buyer" in (party.get("roles") or []):
                    data["buyer"] = {"id": party.get("id"), "name": party.get("name")}
                    break
        return cls.model_validate(data)
