"""Yearly expense insight data model"""

from pydantic import Field
from typing import List, Optional

from gastos_analytics.models.base import DocumentModel


class RankedEntity(DocumentModel):
    id: str
    name: str
    total_amount: float
    transaction_count: int


class RankedCategory(DocumentModel):
    description: str
    total_amount: float
    transaction_count: int


class ExpenseInsight(DocumentModel):
    """Spending rollup for one source year"""

    year: int = Field(..., description="Source year")
    total_amount: float = Field(..., description="Summed positive item amounts")
    total_transactions: int = Field(..., description="Items counted")
    average_amount: float = Field(..., description="total_amount / total_transactions")
    currency: str = Field(..., description="Currency of the first item seen for the year")
    top_suppliers: List[RankedEntity] = Field(default_factory=list)
    top_buyers: List[RankedEntity] = Field(default_factory=list)
    top_categories: List[RankedCategory] = Field(default_factory=list)
    data_version: Optional[int] = None
