"""Amount summary calculation for procurement records"""

import hashlib
import json
import math
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence, Union

from gastos_analytics.constants import AMOUNT_CALCULATION_VERSION
from gastos_analytics.models.amount_summary import AmountSummary
from gastos_analytics.models.rates import RateTable
from gastos_analytics.models.record import Award, MonetaryValue, ProcurementRecord
from gastos_analytics.tools.currency_tools import convert_to_canonical, normalize_currency_code
from gastos_analytics.utils.logging import get_logger

logger = get_logger(__name__)


def awards_fingerprint(awards: Sequence[Award]) -> str:
    """Stable hash of the award data an amount summary depends on"""
    payload = [award.model_dump(by_alias=True, mode="json", exclude_none=True) for award in awards]
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def compute_amount_summary(
    awards: Sequence[Award],
    rates: RateTable,
    previous_summary: Optional[AmountSummary] = None,
    on_date: Optional[Union[date, datetime]] = None
) -> AmountSummary:
    """
    Sum every item's amount x quantity, plus award-level direct values,
    per currency and in the canonical currency.

    The result depends only on awards, rates and on_date; first ingest and
    backfill call sites get identical numbers.

    Args:
        awards: Awards of one procurement record
        rates: Rate table for the run
        previous_summary: Summary being replaced, if any (audit only)
        on_date: Transaction date for per-day rate lookup

    Returns:
        AmountSummary for the record
    """
    totals: Dict[str, float] = {}
    excluded: List[str] = []
    primary_amount = 0.0
    has_converted = False
    total_items = valid_items = skipped_items = 0

    def accumulate(value: MonetaryValue, multiplier: float) -> bool:
        """Add one line; False when it overflows and must be skipped"""
        nonlocal primary_amount, has_converted
        code = normalize_currency_code(value.currency, rates)
        line_total = value.amount * multiplier
        currency_total = totals.get(code, 0.0) + line_total
        if not math.isfinite(currency_total):
            return False

        converted = convert_to_canonical(line_total, code, rates, on_date)
        if converted is not None and not math.isfinite(primary_amount + converted):
            return False

        totals[code] = currency_total
        if converted is None:
            if code not in excluded:
                excluded.append(code)
            return True
        primary_amount += converted
        if not rates.is_canonical(code):
            has_converted = True
        return True

    for award in awards:
        for item in award.items:
            total_items += 1
            value = item.value
            if value is None or (value.amount is None and not value.malformed):
                continue
            if not value.is_valid:
                skipped_items += 1
                continue
            if value.amount == 0:
                continue
            if accumulate(value, item.effective_quantity):
                valid_items += 1
            else:
                skipped_items += 1
                logger.warning(
                    "Skipping item whose total overflows",
                    amount=value.amount, quantity=item.effective_quantity, currency=value.currency
                )

        direct = award.value
        if direct is not None and direct.is_valid and direct.amount > 0:
            if not accumulate(direct, 1):
                logger.warning("Skipping award value whose total overflows", award_id=award.id, amount=direct.amount)

    return AmountSummary(
        total_amounts=totals,
        total_items=total_items,
        valid_items=valid_items,
        skipped_items=skipped_items,
        currencies=list(totals.keys()),
        has_amounts=bool(totals),
        primary_amount=primary_amount,
        primary_currency=rates.canonical_currency,
        original_canonical_amount=sum(
            amount for code, amount in totals.items() if rates.is_canonical(code)
        ),
        excluded_currencies=excluded,
        has_converted_amounts=has_converted,
        exchange_rate_date=rates.as_of,
        indexed_unit_rate=rates.indexed_unit_rate,
        version=AMOUNT_CALCULATION_VERSION,
        source_fingerprint=awards_fingerprint(awards),
        was_version_update=previous_summary is not None,
        previous_amount=previous_summary.primary_amount if previous_summary is not None else None,
    )


def needs_amount_update(record: ProcurementRecord, version: int = AMOUNT_CALCULATION_VERSION) -> bool:
    """True when the record has no summary, an outdated one, or changed awards"""
    summary = record.amount
    if summary is None or summary.version != version:
        return True
    return summary.source_fingerprint != awards_fingerprint(record.awards)


def summarize_record(record: ProcurementRecord, rates: RateTable) -> AmountSummary:
    """Summary for a record, replacing whatever summary it carries"""
    return compute_amount_summary(record.awards, rates, previous_summary=record.amount, on_date=record.date)
