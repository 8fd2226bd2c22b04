"""Flatten procurement records into one row per awarded item"""

import math
import pandas as pd
from typing import Iterable, List, Dict, Any, Optional

from gastos_analytics.constants import CANONICAL_CURRENCY
from gastos_analytics.models.record import ProcurementRecord

ITEM_COLUMNS = [
    'record_id', 'award_id', 'year', 'buyer_id', 'buyer_name',
    'supplier_ids', 'supplier_names', 'description', 'scheme',
    'classification_id', 'item_description', 'amount', 'currency', 'quantity', 'unit_name',
    'canonical_amount',
]


def flatten_items(records: Iterable[ProcurementRecord], canonical_currency: str = CANONICAL_CURRENCY) -> pd.DataFrame:
    """
    Build the item frame used by the aggregation stages.

    One row per (record, award, item). Input defects are resolved here:
    missing classification gives the "Unknown" description, missing
    quantity gives 1, missing currency gives the canonical currency.
    Amounts that are absent, negative or non-numeric become NaN.

    Args:
        records: Validated procurement records
        canonical_currency: Currency assumed when an item has none

    Returns:
        DataFrame with ITEM_COLUMNS
    """
    rows: List[Dict[str, Any]] = []

    for record in records:
        canonical_amount = record.amount.primary_amount if record.amount else math.nan
        buyer_name = record.buyer.name if record.buyer else None

        for award in record.awards:
            suppliers = {}
            for supplier in award.suppliers:
                if supplier.id and supplier.id not in suppliers:
                    suppliers[supplier.id] = supplier.name
            supplier_ids = list(suppliers.keys())
            supplier_names = list(suppliers.values())

            for item in award.items:
                value = item.value
                amount = value.amount if value is not None and value.is_valid else math.nan
                currency = value.currency if value is not None and value.currency else canonical_currency
                rows.append({
                    'record_id': record.id,
                    'award_id': award.id,
                    'year': record.source_year,
                    'buyer_id': record.buyer_id,
                    'buyer_name': buyer_name,
                    'supplier_ids': supplier_ids,
                    'supplier_names': supplier_names,
                    'description': item.group_description,
                    'scheme': item.scheme,
                    'classification_id': item.classification.id if item.classification else None,
                    'item_description': item.description,
                    'amount': amount,
                    'currency': currency,
                    'quantity': item.effective_quantity,
                    'unit_name': item.unit.name if item.unit and item.unit.name else None,
                    'canonical_amount': canonical_amount,
                })

    frame = pd.DataFrame(rows, columns=ITEM_COLUMNS)
    frame['amount'] = frame['amount'].astype(float)
    frame['quantity'] = frame['quantity'].astype(float)
    frame['canonical_amount'] = frame['canonical_amount'].astype(float)
    frame['year'] = frame['year'].astype('Int64')
    return frame


def explode_suppliers(items: pd.DataFrame) -> pd.DataFrame:
    """One row per (item, supplier); items without suppliers are dropped"""
    if items.empty:
        return items.assign(supplier_id=pd.Series(dtype=object), supplier_name=pd.Series(dtype=object))

    paired = items.assign(
        supplier=[list(zip(ids, names)) for ids, names in zip(items['supplier_ids'], items['supplier_names'])]
    ).explode('supplier')
    paired = paired[paired['supplier'].notna()].copy()
    paired['supplier_id'] = paired['supplier'].map(lambda pair: pair[0])
    paired['supplier_name'] = paired['supplier'].map(lambda pair: pair[1])
    return paired.drop(columns=['supplier']).reset_index(drop=True)


def fold(current: Optional[pd.DataFrame], partial: pd.DataFrame, keys: List[str], **aggregations) -> Optional[pd.DataFrame]:
    """
    Merge one batch's partial aggregates into the running ones.

    With aggregations, rows sharing keys are combined with them (partial
    sums add up, 'first' keeps the earliest batch's value). Without, the
    frames hold distinct key tuples and are deduplicated.
    """
    if partial.empty:
        return current
    if current is None:
        return partial.reset_index(drop=True)

    combined = pd.concat([current, partial], ignore_index=True)
    if not aggregations:
        return combined.drop_duplicates(keys, ignore_index=True)
    return combined.groupby(keys, sort=False).agg(**aggregations).reset_index()


def name_counts(rows: pd.DataFrame, keys: List[str], name_column: str) -> pd.DataFrame:
    """Occurrences of each non-empty name per key"""
    named = rows[rows[name_column].map(lambda name: isinstance(name, str) and bool(name))]
    if named.empty:
        return pd.DataFrame(columns=keys + ['name', 'occurrences'])
    counts = named.groupby(keys + [name_column], sort=False).size().reset_index(name='occurrences')
    return counts.rename(columns={name_column: 'name'})


def preferred_names(counts: Optional[pd.DataFrame], keys: List[str]) -> pd.Series:
    """Most frequent name per key; ties go to the alphabetically first name"""
    if counts is None or counts.empty:
        return pd.Series(dtype=object)
    ranked = counts.sort_values(
        keys + ['occurrences', 'name'],
        ascending=[True] * len(keys) + [False, True],
        kind='mergesort'
    )
    return ranked.drop_duplicates(keys).set_index(keys)['name']
