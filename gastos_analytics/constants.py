"""Constants and enums for the analytics pipeline"""

from enum import Enum


class EntityRole(str, Enum):
    """Profiled entity roles"""
    SUPPLIER = "supplier"
    BUYER = "buyer"


class AnomalyType(str, Enum):
    """Detected anomaly types"""
    PRICE_SPIKE = "price_spike"


class SeverityLevel(str, Enum):
    """Anomaly severity tiers"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AnomalyStatus(str, Enum):
    """Lifecycle state of a stored anomaly"""
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class RunStatus(str, Enum):
    """Population run status"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class Stage(str, Enum):
    """Pipeline stages in execution order"""
    AMOUNTS = "amounts"
    ANOMALIES = "anomalies"
    INSIGHTS = "insights"
    SUPPLIERS = "suppliers"
    BUYERS = "buyers"
    REPORT = "report"


DEFAULT_STAGE_ORDER = [stage.value for stage in Stage]

# Currency defaults
CANONICAL_CURRENCY = "UYU"
CANONICAL_ALIASES = ("UYU", "UUYI")
INDEXED_UNIT_CODES = ("UYI", "UI")
FALLBACK_RATES = {
    "USD": 40.0,
    "EUR": 44.0,
    "ARS": 0.045,
    "BRL": 8.0,
}
FALLBACK_INDEXED_UNIT_RATE = 6.36

# Amount summary calculation logic version
AMOUNT_CALCULATION_VERSION = 2

# Entity pattern data version
DATA_VERSION = 4
DEFAULT_TOP_ITEMS = 15
DEFAULT_TOP_CATEGORIES = 20
DEFAULT_TOP_INSIGHTS = 10

# Input defect sentinels
UNKNOWN_DESCRIPTION = "Unknown"
UNKNOWN_SCHEME = "Unknown"
UNCATEGORIZED = "Uncategorized"
UNKNOWN_NAME = "Unknown"

# Price spike detection
DEFAULT_HIGH_VALUE_THRESHOLD = 100000
DEFAULT_MIN_GROUP_SIZE = 5
DEFAULT_SPIKE_MULTIPLIER = 10
DEFAULT_OUTLIER_MULTIPLIER = 5
PRICE_SPIKE_CONFIDENCE = 0.8
SEVERITY_MULTIPLIERS = [
    (SeverityLevel.CRITICAL, 20),
    (SeverityLevel.HIGH, 15),
    (SeverityLevel.MEDIUM, 10),
]
EXPECTED_RANGE_FACTORS = (0.5, 2)

# Batching and budgets
DEFAULT_BATCH_SIZE = 1000
DEFAULT_WRITE_BATCH_SIZE = 1000
BATCH_TIMEOUT_SECONDS = 300     # 5 minutes per batch
RUN_TIMEOUT_SECONDS = 14400     # 4 hours per run
