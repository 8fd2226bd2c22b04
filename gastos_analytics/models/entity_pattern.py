"""Entity pattern data model (supplier or buyer rollup profile)"""

from pydantic import Field
from datetime import datetime
from typing import Optional, List

from gastos_analytics.constants import EntityRole
from gastos_analytics.models.base import DocumentModel


class ItemAggregate(DocumentModel):
    """Purchased-item rollup inside a profile"""

    description: str = Field(..., description="Classification description (grouping key)")
    total_amount: float = Field(0.0, description="Summed item amounts")
    total_quantity: float = Field(0.0, description="Summed quantities")
    contract_count: int = Field(0, description="Item occurrences merged into this entry")
    avg_price: float = Field(0.0, description="total_amount / total_quantity, 0 when quantity is 0")
    currency: Optional[str] = Field(None, description="Currency of the first merged item")
    unit_name: Optional[str] = Field(None, description="Unit of the first merged item")


class CategoryAggregate(DocumentModel):
    """Classification-scheme rollup inside a profile"""

    category: str
    total_amount: float = 0.0
    contract_count: int = 0


class EntityPattern(DocumentModel):
    """Behavioral profile of a supplier or buyer"""

    entity_id: str = Field(..., description="Supplier or buyer id")
    role: EntityRole = Field(..., description="Profiled role")
    name: str = Field(..., description="Display name")
    total_contracts: int = Field(0, description="Distinct procurement records")
    total_value: float = Field(0.0, description="Summed item amounts")
    total_canonical_amount: float = Field(0.0, description="Summed canonical totals of the distinct records")
    avg_contract_value: float = Field(0.0, description="total_value / total_contracts")
    years: List[int] = Field(default_factory=list, description="Source years with activity")
    year_count: int = 0
    counterparts: List[str] = Field(default_factory=list, description="Buyer ids for suppliers, supplier ids for buyers")
    counterpart_count: int = 0
    items: List[ItemAggregate] = Field(default_factory=list, description="Top purchased items by amount")
    top_categories: List[CategoryAggregate] = Field(default_factory=list)
    data_version: int = Field(..., description="Data version of the run that produced the profile")
    last_updated: Optional[datetime] = Field(None, description="Set when persisted")

    class Config:
        json_schema_extra = {
            "example": {
                "entityId": "210000000019",
                "role": "supplier",
                "name": "Proveedora SA",
                "totalContracts": 42,
                "totalValue": 1520000.0,
                "avgContractValue": 36190.48,
                "years": [2021, 2022, 2023],
                "yearCount": 3,
                "counterparts": ["6-1", "12-4"],
                "counterpartCount": 2,
                "items": [{"description": "Guantes", "totalAmount": 5000.0, "totalQuantity": 20,
                           "contractCount": 4, "avgPrice": 250.0}],
                "dataVersion": 4
            }
        }

    def natural_key(self) -> dict:
        """Store filter identifying this profile"""
        id_field = "supplierId" if self.role == EntityRole.SUPPLIER else "buyerId"
        return {id_field: self.entity_id}

    def to_document(self) -> dict:
        document = super().to_document()
        document.update(self.natural_key())
        document["role"] = EntityRole(self.role).value
        return document
