"""Anomaly data model"""

from pydantic import Field
from datetime import datetime
from typing import Optional, Dict, Any

from gastos_analytics.constants import AnomalyType, AnomalyStatus, SeverityLevel
from gastos_analytics.models.base import DocumentModel


class ExpectedRange(DocumentModel):
    min: float
    max: float


class Anomaly(DocumentModel):
    """Detected pricing anomaly for human review"""

    type: AnomalyType = Field(AnomalyType.PRICE_SPIKE, description="Anomaly type")
    severity: SeverityLevel = Field(..., description="Severity tier")
    release_id: str = Field(..., description="Originating procurement record id")
    award_id: Optional[str] = Field(None, description="Originating award id")
    description: str = Field(..., description="Human-readable explanation")
    detected_value: float = Field(..., description="Offending amount")
    expected_range: ExpectedRange = Field(..., description="Expected [min, max] for the group")
    confidence: float = Field(..., ge=0, le=1, description="Static heuristic confidence")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Item, supplier, buyer and year details")
    status: AnomalyStatus = Field(AnomalyStatus.ACTIVE, description="Active or superseded by a later run")
    detection_run_id: Optional[str] = Field(None, description="Run that last detected this anomaly")
    detected_at: Optional[datetime] = Field(None, description="Set when persisted")

    class Config:
        json_schema_extra = {
            "example": {
                "type": "price_spike",
                "severity": "high",
                "releaseId": "adjudicacion-1034567",
                "awardId": "award-1",
                "description": "Unusual price detected for Guantes: 30000000 UYU (avg: 1642500.0 UYU)",
                "detectedValue": 30000000,
                "expectedRange": {"min": 821250.0, "max": 3285000.0},
                "confidence": 0.8,
                "metadata": {"supplierName": "Proveedora SA", "buyerName": "Ministerio de Salud",
                             "itemDescription": "Guantes", "year": 2023, "currency": "UYU"}
            }
        }

    def natural_key(self) -> Dict[str, Optional[str]]:
        """Uniqueness key: (record id, award id, type). A null award id only matches award-less anomalies."""
        return {
            "releaseId": self.release_id,
            "awardId": self.award_id,
            "type": AnomalyType(self.type).value,
        }
