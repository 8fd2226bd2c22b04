"""Price spike detection over high-value items"""

import numpy as np
import pandas as pd
from typing import List, Union, Iterable, Dict, Any

from gastos_analytics.constants import (
    AnomalyType,
    SeverityLevel,
    DEFAULT_HIGH_VALUE_THRESHOLD,
    DEFAULT_MIN_GROUP_SIZE,
    DEFAULT_SPIKE_MULTIPLIER,
    DEFAULT_OUTLIER_MULTIPLIER,
    PRICE_SPIKE_CONFIDENCE,
    SEVERITY_MULTIPLIERS,
    EXPECTED_RANGE_FACTORS,
    UNKNOWN_NAME,
)
from gastos_analytics.models.anomaly import Anomaly, ExpectedRange
from gastos_analytics.models.record import ProcurementRecord
from gastos_analytics.tools.item_frame import ITEM_COLUMNS, flatten_items
from gastos_analytics.utils.logging import get_logger

logger = get_logger(__name__)

GROUP_KEY = ['description', 'scheme']


class SpikeCandidates:
    """
    Keeps only the item rows above the high-value threshold as batches
    stream in. Items at or below the threshold never take part in spike
    detection, so dropping them per batch leaves the result unchanged.
    """

    def __init__(self, high_value_threshold: float = DEFAULT_HIGH_VALUE_THRESHOLD):
        self.high_value_threshold = high_value_threshold
        self._frames: List[pd.DataFrame] = []

    def add(self, items: pd.DataFrame) -> None:
        kept = items[items['record_id'].notna() & (items['amount'] > self.high_value_threshold)]
        if not kept.empty:
            self._frames.append(kept)

    def frame(self) -> pd.DataFrame:
        if not self._frames:
            return pd.DataFrame(columns=ITEM_COLUMNS)
        return pd.concat(self._frames, ignore_index=True)


def _format_number(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else str(value)


def classify_severity(amounts: pd.Series, means: pd.Series) -> pd.Series:
    """Severity tier per amount, evaluated from the highest multiplier down"""
    conditions = [amounts > means * multiplier for _, multiplier in SEVERITY_MULTIPLIERS]
    choices = [SeverityLevel(level).value for level, _ in SEVERITY_MULTIPLIERS]
    return pd.Series(
        np.select(conditions, choices, default=SeverityLevel.LOW.value),
        index=amounts.index
    )


def _text(value: Any, default: str = UNKNOWN_NAME) -> str:
    return value if isinstance(value, str) and value else default


def _metadata(row: Any) -> Dict[str, Any]:
    supplier_names = [name for name in row.supplier_names if isinstance(name, str) and name]
    metadata = {
        'supplierName': supplier_names[0] if supplier_names else UNKNOWN_NAME,
        'buyerName': _text(row.buyer_name),
        'itemDescription': _text(row.item_description),
        'itemClassification': {
            'description': row.description,
            'scheme': row.scheme,
            'id': _text(row.classification_id),
        },
        'itemUnit': {
            'name': _text(row.unit_name, 'unit'),
            'currency': row.currency,
        },
        'itemQuantity': float(row.quantity),
        'amount': float(row.amount),
        'currency': row.currency,
        'groupMean': float(row.group_mean),
        'groupSize': int(row.group_size),
    }
    if not pd.isna(row.year):
        metadata['year'] = int(row.year)
    return metadata


def detect_price_spikes(
    items: Union[pd.DataFrame, Iterable[ProcurementRecord]],
    high_value_threshold: float = DEFAULT_HIGH_VALUE_THRESHOLD,
    min_group_size: int = DEFAULT_MIN_GROUP_SIZE,
    spike_multiplier: float = DEFAULT_SPIKE_MULTIPLIER,
    outlier_multiplier: float = DEFAULT_OUTLIER_MULTIPLIER,
    confidence: float = PRICE_SPIKE_CONFIDENCE
) -> List[Anomaly]:
    """
    Flag items priced far above their peers.

    Items above high_value_threshold are grouped by (description, scheme).
    A group of at least min_group_size items whose max exceeds
    mean x spike_multiplier is a spike group; each of its items above
    mean x outlier_multiplier is an outlier. Group statistics come from
    the whole filtered population in one pass, so reruns over the same
    items reproduce the same severities.

    When several outliers share a (record, award) key, the highest amount
    is kept (first in stream order on ties).

    Args:
        items: Item frame from flatten_items, or procurement records
        high_value_threshold: Amount an item must exceed to be compared
        min_group_size: Smallest group that is evaluated
        spike_multiplier: Max-to-mean ratio that marks a spike group
        outlier_multiplier: Amount-to-mean ratio that marks an outlier
        confidence: Confidence stamped on every anomaly

    Returns:
        List of Anomaly, ordered by amount descending
    """
    frame = items if isinstance(items, pd.DataFrame) else flatten_items(items)
    candidates = frame[frame['record_id'].notna() & (frame['amount'] > high_value_threshold)].copy()

    if candidates.empty:
        logger.info("No high-value items to compare", threshold=high_value_threshold)
        return []

    grouped = candidates.groupby(GROUP_KEY, sort=False)['amount']
    candidates['group_size'] = grouped.transform('size')
    candidates['group_mean'] = grouped.transform('mean')
    candidates['group_max'] = grouped.transform('max')

    spike_groups = candidates[
        (candidates['group_size'] >= min_group_size)
        & (candidates['group_max'] > candidates['group_mean'] * spike_multiplier)
    ]
    outliers = spike_groups[spike_groups['amount'] > spike_groups['group_mean'] * outlier_multiplier].copy()

    if outliers.empty:
        logger.info("No price spikes detected", candidates=len(candidates))
        return []

    outliers['severity'] = classify_severity(outliers['amount'], outliers['group_mean'])
    outliers['stream_order'] = np.arange(len(outliers))
    outliers['award_key'] = outliers['award_id'].fillna('')
    outliers = (
        outliers.sort_values(['amount', 'stream_order'], ascending=[False, True], kind='mergesort')
        .drop_duplicates(['record_id', 'award_key'], keep='first')
    )

    low_factor, high_factor = EXPECTED_RANGE_FACTORS
    anomalies: List[Anomaly] = []
    for row in outliers.itertuples(index=False):
        mean = float(row.group_mean)
        anomalies.append(Anomaly(
            type=AnomalyType.PRICE_SPIKE,
            severity=str(row.severity),
            release_id=row.record_id,
            award_id=row.award_id if isinstance(row.award_id, str) else None,
            description=(
                f"Unusual price detected for {row.description}: "
                f"{_format_number(row.amount)} {row.currency} "
                f"(avg: {_format_number(round(mean, 2))} {row.currency})"
            ),
            detected_value=float(row.amount),
            expected_range=ExpectedRange(min=mean * low_factor, max=mean * high_factor),
            confidence=confidence,
            metadata=_metadata(row),
        ))

    logger.info(
        f"Detected {len(anomalies)} price spikes",
        candidates=len(candidates),
        spike_groups=int(spike_groups.groupby(GROUP_KEY, sort=False).ngroups)
    )
    return anomalies
