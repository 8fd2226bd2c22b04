"""Collection validators and indexes for the analytics store.

Validators are JSON Schema documents accepted both by MongoDB's
$jsonSchema operator and by the jsonschema library (the in-memory store
validates with Draft7Validator). Date fields carry no type constraint
because JSON Schema has no datetime type.
"""

from typing import Dict, Any, List, Tuple

from pymongo import ASCENDING, DESCENDING

from gastos_analytics.constants import SeverityLevel, AnomalyStatus, AnomalyType

NUMBER = {"type": "number"}
STRING = {"type": "string"}

# Procurement records - only the derived amount summary is written here
RELEASES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["id"],
    "properties": {
        "id": STRING,
        "sourceYear": {"type": ["number", "null"]},
        "amount": {
            "type": "object",
            "required": ["totalAmounts", "primaryAmount", "version"],
            "properties": {
                "totalAmounts": {"type": "object", "additionalProperties": NUMBER},
                "primaryAmount": {"type": "number", "minimum": 0},
                "primaryCurrency": STRING,
                "totalItems": {"type": "number", "minimum": 0},
                "validItems": {"type": "number", "minimum": 0},
                "skippedItems": {"type": "number", "minimum": 0},
                "currencies": {"type": "array", "items": STRING},
                "hasAmounts": {"type": "boolean"},
                "hasConvertedAmounts": {"type": "boolean"},
                "version": {"type": "number", "minimum": 1},
                "wasVersionUpdate": {"type": "boolean"},
            },
        },
    },
}

_ITEM_AGGREGATE = {
    "type": "object",
    "required": ["description", "totalAmount", "totalQuantity", "avgPrice"],
    "properties": {
        "description": STRING,
        "totalAmount": NUMBER,
        "totalQuantity": NUMBER,
        "contractCount": NUMBER,
        "avgPrice": NUMBER,
    },
}


def _pattern_schema(id_field: str) -> Dict[str, Any]:
    return {
        "type": "object",
        "required": [id_field, "name", "totalContracts", "totalValue", "dataVersion"],
        "properties": {
            id_field: STRING,
            "name": STRING,
            "role": {"enum": ["supplier", "buyer"]},
            "totalContracts": {"type": "number", "minimum": 0},
            "totalValue": {"type": "number", "minimum": 0},
            "totalCanonicalAmount": {"type": "number", "minimum": 0},
            "avgContractValue": {"type": "number", "minimum": 0},
            "years": {"type": "array", "items": NUMBER},
            "yearCount": NUMBER,
            "counterparts": {"type": "array", "items": STRING},
            "items": {"type": "array", "items": _ITEM_AGGREGATE},
            "topCategories": {"type": "array"},
            "dataVersion": NUMBER,
        },
    }


SUPPLIER_PATTERNS_SCHEMA = _pattern_schema("supplierId")
BUYER_PATTERNS_SCHEMA = _pattern_schema("buyerId")

ANOMALIES_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["type", "severity", "releaseId", "description", "detectedValue", "expectedRange", "confidence"],
    "properties": {
        "type": {"enum": [t.value for t in AnomalyType]},
        "severity": {"enum": [s.value for s in SeverityLevel]},
        "status": {"enum": [s.value for s in AnomalyStatus]},
        "releaseId": STRING,
        "awardId": {"type": ["string", "null"]},
        "description": STRING,
        "detectedValue": NUMBER,
        "expectedRange": {
            "type": "object",
            "required": ["min", "max"],
            "properties": {"min": NUMBER, "max": NUMBER},
        },
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "metadata": {"type": "object"},
        "detectionRunId": STRING,
    },
}

EXPENSE_INSIGHTS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["year", "totalAmount", "totalTransactions"],
    "properties": {
        "year": NUMBER,
        "totalAmount": {"type": "number", "minimum": 0},
        "totalTransactions": {"type": "number", "minimum": 0},
        "averageAmount": NUMBER,
        "currency": STRING,
        "topSuppliers": {"type": "array"},
        "topBuyers": {"type": "array"},
        "topCategories": {"type": "array"},
    },
}

# (keys, options) per collection
IndexSpec = Tuple[List[Tuple[str, int]], Dict[str, Any]]

COLLECTION_INDEXES: Dict[str, List[IndexSpec]] = {
    "releases": [
        ([("id", ASCENDING)], {"unique": True}),
        ([("sourceYear", DESCENDING)], {}),
        ([("amount.version", ASCENDING)], {}),
        ([("awards.suppliers.id", ASCENDING)], {}),
        ([("buyer.id", ASCENDING)], {}),
    ],
    "supplier_patterns": [
        ([("supplierId", ASCENDING)], {"unique": True}),
        ([("totalValue", DESCENDING)], {}),
    ],
    "buyer_patterns": [
        ([("buyerId", ASCENDING)], {"unique": True}),
        ([("totalValue", DESCENDING)], {}),
    ],
    "anomalies": [
        ([("releaseId", ASCENDING), ("awardId", ASCENDING), ("type", ASCENDING)], {"unique": True}),
        ([("severity", ASCENDING), ("detectedAt", DESCENDING)], {}),
        ([("status", ASCENDING), ("detectionRunId", ASCENDING)], {}),
    ],
    "expense_insights": [
        ([("year", DESCENDING)], {"unique": True}),
    ],
}

COLLECTION_VALIDATORS: Dict[str, Dict[str, Any]] = {
    "releases": RELEASES_SCHEMA,
    "supplier_patterns": SUPPLIER_PATTERNS_SCHEMA,
    "buyer_patterns": BUYER_PATTERNS_SCHEMA,
    "anomalies": ANOMALIES_SCHEMA,
    "expense_insights": EXPENSE_INSIGHTS_SCHEMA,
}


def create_all_collections(db) -> None:
    """
    Create collections with validators and indexes.

    Existing collections get their validator refreshed through collMod.

    Args:
        db: pymongo Database
    """
    existing = set(db.list_collection_names())
    for name, schema in COLLECTION_VALIDATORS.items():
        validator = {"$jsonSchema": schema}
        if name in existing:
            db.command("collMod", name, validator=validator, validationLevel="moderate")
        else:
            db.create_collection(name, validator=validator, validationLevel="moderate")

        for keys, options in COLLECTION_INDEXES.get(name, []):
            db[name].create_index(keys, **options)
