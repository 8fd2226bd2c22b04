"""Yearly expense insights"""

import pandas as pd
from typing import List, Union, Iterable, Optional

from gastos_analytics.constants import DEFAULT_TOP_INSIGHTS, UNKNOWN_NAME, UNCATEGORIZED
from gastos_analytics.models.expense_insight import ExpenseInsight, RankedEntity, RankedCategory
from gastos_analytics.models.record import ProcurementRecord
from gastos_analytics.tools.item_frame import flatten_items, explode_suppliers, fold, name_counts, preferred_names
from gastos_analytics.utils.logging import get_logger

logger = get_logger(__name__)

RANKING_SUMS = dict(
    total_amount=('total_amount', 'sum'),
    transaction_count=('transaction_count', 'sum'),
)


def _ranking_partial(rows: pd.DataFrame, key: str) -> pd.DataFrame:
    return rows.groupby(['year', key], sort=False).agg(
        total_amount=('amount', 'sum'),
        transaction_count=('amount', 'size'),
    ).reset_index()


def _with_names(frame: Optional[pd.DataFrame], counts: Optional[pd.DataFrame], keys: List[str]) -> Optional[pd.DataFrame]:
    if frame is None:
        return None
    names = preferred_names(counts, keys)
    if names.empty:
        return frame.assign(name=None)
    return frame.merge(names.reset_index(), on=keys, how='left')


def _top(frame: Optional[pd.DataFrame], year, top_n: int) -> pd.DataFrame:
    if frame is None:
        return pd.DataFrame()
    year_rows = frame[frame['year'] == year]
    return year_rows.sort_values('total_amount', ascending=False, kind='mergesort').head(top_n)


class YearlyInsightAccumulator:
    """
    Folds item batches into per-year partial sums.

    Keeps per-year totals plus per-(year, supplier), per-(year, buyer) and
    per-(year, category) sums and counts; rankings are cut at build time.
    """

    def __init__(self):
        self.rows_seen = 0
        self._years: Optional[pd.DataFrame] = None
        self._suppliers: Optional[pd.DataFrame] = None
        self._supplier_names: Optional[pd.DataFrame] = None
        self._buyers: Optional[pd.DataFrame] = None
        self._buyer_names: Optional[pd.DataFrame] = None
        self._categories: Optional[pd.DataFrame] = None

    def add(self, items: pd.DataFrame) -> None:
        """Fold one batch of item rows"""
        rows = items[items['year'].notna() & (items['amount'] > 0)]
        if rows.empty:
            return
        self.rows_seen += len(rows)

        self._years = fold(
            self._years,
            rows.groupby('year', sort=False).agg(
                total_amount=('amount', 'sum'),
                total_transactions=('amount', 'size'),
                currency=('currency', 'first'),
            ).reset_index(),
            ['year'],
            total_amount=('total_amount', 'sum'),
            total_transactions=('total_transactions', 'sum'),
            currency=('currency', 'first'),
        )

        supplier_rows = explode_suppliers(rows)
        supplier_rows = supplier_rows[supplier_rows['supplier_id'].notna()]
        self._suppliers = fold(
            self._suppliers, _ranking_partial(supplier_rows, 'supplier_id'), ['year', 'supplier_id'], **RANKING_SUMS
        )
        self._supplier_names = fold(
            self._supplier_names,
            name_counts(supplier_rows, ['year', 'supplier_id'], 'supplier_name'),
            ['year', 'supplier_id', 'name'],
            occurrences=('occurrences', 'sum'),
        )

        buyer_rows = rows[rows['buyer_id'].notna()]
        self._buyers = fold(
            self._buyers, _ranking_partial(buyer_rows, 'buyer_id'), ['year', 'buyer_id'], **RANKING_SUMS
        )
        self._buyer_names = fold(
            self._buyer_names,
            name_counts(buyer_rows, ['year', 'buyer_id'], 'buyer_name'),
            ['year', 'buyer_id', 'name'],
            occurrences=('occurrences', 'sum'),
        )

        categorized = rows.assign(category=rows['description'].fillna(UNCATEGORIZED))
        self._categories = fold(
            self._categories, _ranking_partial(categorized, 'category'), ['year', 'category'], **RANKING_SUMS
        )

    def insights(self, top_n: int = DEFAULT_TOP_INSIGHTS, data_version: Optional[int] = None) -> List[ExpenseInsight]:
        """Build one insight per year, most recent first"""
        if self._years is None:
            logger.info("No items with a year to summarize")
            return []

        suppliers = _with_names(self._suppliers, self._supplier_names, ['year', 'supplier_id'])
        buyers = _with_names(self._buyers, self._buyer_names, ['year', 'buyer_id'])

        insights: List[ExpenseInsight] = []
        for row in self._years.sort_values('year', ascending=False).itertuples(index=False):
            total_amount = float(row.total_amount)
            total_transactions = int(row.total_transactions)

            insights.append(ExpenseInsight(
                year=int(row.year),
                total_amount=total_amount,
                total_transactions=total_transactions,
                average_amount=total_amount / total_transactions if total_transactions > 0 else 0.0,
                currency=row.currency,
                top_suppliers=_ranked_entities(_top(suppliers, row.year, top_n), 'supplier_id'),
                top_buyers=_ranked_entities(_top(buyers, row.year, top_n), 'buyer_id'),
                top_categories=[
                    RankedCategory(
                        description=str(category.category),
                        total_amount=float(category.total_amount),
                        transaction_count=int(category.transaction_count),
                    )
                    for category in _top(self._categories, row.year, top_n).itertuples(index=False)
                ],
                data_version=data_version,
            ))

        logger.info(f"Computed {len(insights)} yearly insights", years=[insight.year for insight in insights])
        return insights


def _ranked_entities(ranked: pd.DataFrame, id_column: str) -> List[RankedEntity]:
    return [
        RankedEntity(
            id=str(getattr(entry, id_column)),
            name=entry.name if isinstance(entry.name, str) and entry.name else UNKNOWN_NAME,
            total_amount=float(entry.total_amount),
            transaction_count=int(entry.transaction_count),
        )
        for entry in ranked.itertuples(index=False)
    ]


def compute_yearly_insights(
    records: Union[pd.DataFrame, Iterable[ProcurementRecord]],
    top_n: int = DEFAULT_TOP_INSIGHTS,
    data_version: Optional[int] = None
) -> List[ExpenseInsight]:
    """
    Spending rollup per source year

    Counts every item with a positive amount in a record that has a source
    year. Rankings cover the top_n suppliers, buyers and categories by summed
    amount. Each ranked supplier or buyer takes its most frequent name.

    Returns:
        Insights sorted by year, most recent first
    """
    accumulator = YearlyInsightAccumulator()
    accumulator.add(records if isinstance(records, pd.DataFrame) else flatten_items(records))
    return accumulator.insights(top_n, data_version)
