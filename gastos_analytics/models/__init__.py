"""Data models for the analytics pipeline"""

from .amount_summary import AmountSummary
from .record import ProcurementRecord, Award, Item, Classification, Identity, MonetaryValue, Unit
from .rates import RateTable, DatedRate
from .entity_pattern import EntityPattern, ItemAggregate, CategoryAggregate
from .anomaly import Anomaly, ExpectedRange
from .expense_insight import ExpenseInsight, RankedEntity, RankedCategory

__all__ = [
    "AmountSummary",
    "ProcurementRecord", "Award", "Item", "Classification", "Identity", "MonetaryValue", "Unit",
    "RateTable", "DatedRate",
    "EntityPattern", "ItemAggregate", "CategoryAggregate",
    "Anomaly", "ExpectedRange",
    "ExpenseInsight", "RankedEntity", "RankedCategory",
]
