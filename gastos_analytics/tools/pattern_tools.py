"""Supplier and buyer pattern aggregation"""

import pandas as pd
from typing import List, Optional, Union, Iterable

from gastos_analytics.constants import (
    EntityRole,
    DATA_VERSION,
    DEFAULT_TOP_ITEMS,
    DEFAULT_TOP_CATEGORIES,
    UNKNOWN_NAME,
)
from gastos_analytics.models.entity_pattern import EntityPattern, ItemAggregate, CategoryAggregate
from gastos_analytics.models.record import ProcurementRecord
from gastos_analytics.tools.item_frame import (
    flatten_items,
    explode_suppliers,
    fold,
    name_counts,
    preferred_names,
)
from gastos_analytics.utils.logging import get_logger

logger = get_logger(__name__)


def _entity_rows(items: pd.DataFrame, role: EntityRole) -> pd.DataFrame:
    """Item rows keyed by the profiled entity, with positive amounts only"""
    if role == EntityRole.SUPPLIER:
        rows = explode_suppliers(items)
        rows = rows.rename(columns={'supplier_id': 'entity_id', 'supplier_name': 'entity_name'})
    else:
        rows = items.rename(columns={'buyer_id': 'entity_id', 'buyer_name': 'entity_name'})

    rows = rows[rows['entity_id'].notna() & (rows['amount'] > 0)]
    return rows.reset_index(drop=True)


def _counterpart_pairs(rows: pd.DataFrame, role: EntityRole) -> pd.DataFrame:
    if role == EntityRole.SUPPLIER:
        pairs = rows[['entity_id', 'buyer_id']].rename(columns={'buyer_id': 'counterpart_id'})
    else:
        pairs = rows[['entity_id', 'supplier_ids']].explode('supplier_ids').rename(columns={'supplier_ids': 'counterpart_id'})
    return pairs.dropna().drop_duplicates()


def _top_per_entity(frame: pd.DataFrame, label: str, limit: int) -> pd.DataFrame:
    ranked = frame.sort_values(
        ['entity_id', 'total_amount', label],
        ascending=[True, False, True],
        kind='mergesort'
    )
    return ranked.groupby('entity_id', sort=False).head(limit)


class EntityAccumulator:
    """
    Folds item batches into per-entity partial aggregates.

    Between batches only summable partials (amounts, quantities, counts)
    and distinct key pairs (entity/record, entity/year, entity/counterpart)
    are kept, so memory follows the number of entities and their distinct
    items rather than the number of item rows read. Top-N lists are cut
    only when the profiles are built.
    """

    def __init__(self, role: Union[EntityRole, str]):
        self.role = EntityRole(role)
        self.rows_seen = 0
        self._totals: Optional[pd.DataFrame] = None
        self._names: Optional[pd.DataFrame] = None
        self._records: Optional[pd.DataFrame] = None
        self._years: Optional[pd.DataFrame] = None
        self._counterparts: Optional[pd.DataFrame] = None
        self._items: Optional[pd.DataFrame] = None
        self._categories: Optional[pd.DataFrame] = None
        self._category_records: Optional[pd.DataFrame] = None

    def add(self, items: pd.DataFrame) -> None:
        """Fold one batch of item rows"""
        rows = _entity_rows(items, self.role)
        if rows.empty:
            return
        self.rows_seen += len(rows)

        self._totals = fold(
            self._totals,
            rows.groupby('entity_id', sort=False).agg(total_value=('amount', 'sum')).reset_index(),
            ['entity_id'],
            total_value=('total_value', 'sum'),
        )
        self._names = fold(
            self._names,
            name_counts(rows, ['entity_id'], 'entity_name'),
            ['entity_id', 'name'],
            occurrences=('occurrences', 'sum'),
        )
        self._records = fold(
            self._records,
            rows[['entity_id', 'record_id', 'canonical_amount']].drop_duplicates(['entity_id', 'record_id']),
            ['entity_id', 'record_id'],
        )
        self._years = fold(
            self._years,
            rows[['entity_id', 'year']].dropna().drop_duplicates(),
            ['entity_id', 'year'],
        )
        self._counterparts = fold(
            self._counterparts,
            _counterpart_pairs(rows, self.role),
            ['entity_id', 'counterpart_id'],
        )
        self._items = fold(
            self._items,
            rows.groupby(['entity_id', 'description'], sort=False).agg(
                total_amount=('amount', 'sum'),
                total_quantity=('quantity', 'sum'),
                contract_count=('amount', 'size'),
                currency=('currency', 'first'),
                unit_name=('unit_name', 'first'),
            ).reset_index(),
            ['entity_id', 'description'],
            total_amount=('total_amount', 'sum'),
            total_quantity=('total_quantity', 'sum'),
            contract_count=('contract_count', 'sum'),
            currency=('currency', 'first'),
            unit_name=('unit_name', 'first'),
        )
        self._categories = fold(
            self._categories,
            rows.groupby(['entity_id', 'scheme'], sort=False).agg(total_amount=('amount', 'sum')).reset_index(),
            ['entity_id', 'scheme'],
            total_amount=('total_amount', 'sum'),
        )
        self._category_records = fold(
            self._category_records,
            rows[['entity_id', 'scheme', 'record_id']].dropna().drop_duplicates(),
            ['entity_id', 'scheme', 'record_id'],
        )

    def _item_breakdown(self, top_items: int) -> pd.DataFrame:
        merged = self._items.copy()
        quantity = merged['total_quantity']
        merged['avg_price'] = (merged['total_amount'] / quantity.where(quantity > 0)).fillna(0.0)
        return _top_per_entity(merged, 'description', top_items)

    def _category_breakdown(self, top_categories: int) -> pd.DataFrame:
        if self._categories is None or self._category_records is None:
            return pd.DataFrame(columns=['entity_id', 'scheme', 'total_amount', 'contract_count'])
        contracts = self._category_records.groupby(['entity_id', 'scheme']).size().rename('contract_count')
        merged = self._categories.join(contracts, on=['entity_id', 'scheme'])
        merged['contract_count'] = merged['contract_count'].fillna(0)
        return _top_per_entity(merged, 'scheme', top_categories)

    def patterns(
        self,
        data_version: int = DATA_VERSION,
        top_items: int = DEFAULT_TOP_ITEMS,
        top_categories: int = DEFAULT_TOP_CATEGORIES
    ) -> List[EntityPattern]:
        """Build one profile per entity, sorted by total value descending"""
        if self._totals is None:
            logger.info("No items to aggregate", role=self.role.value)
            return []

        summary = self._totals.set_index('entity_id')
        records = self._records.groupby('entity_id')
        summary['total_contracts'] = records.size()
        summary['total_canonical_amount'] = records['canonical_amount'].sum()
        summary['name'] = preferred_names(self._names, ['entity_id'])
        summary = summary.sort_values('total_value', ascending=False, kind='mergesort')

        years = (
            self._years.groupby('entity_id')['year'].agg(lambda values: sorted(int(y) for y in values))
            if self._years is not None else pd.Series(dtype=object)
        )
        counterparts = (
            self._counterparts.groupby('entity_id')['counterpart_id'].agg(lambda ids: sorted(str(i) for i in ids))
            if self._counterparts is not None else pd.Series(dtype=object)
        )
        item_groups = {
            entity_id: group
            for entity_id, group in self._item_breakdown(top_items).groupby('entity_id', sort=False)
        }
        category_groups = {
            entity_id: group
            for entity_id, group in self._category_breakdown(top_categories).groupby('entity_id', sort=False)
        }

        patterns: List[EntityPattern] = []
        for entity_id, entry in summary.iterrows():
            entity_items = item_groups.get(entity_id, pd.DataFrame())
            entity_categories = category_groups.get(entity_id, pd.DataFrame())
            entity_years = years.get(entity_id, [])
            entity_counterparts = counterparts.get(entity_id, [])
            total_contracts = int(entry['total_contracts'])
            total_value = float(entry['total_value'])

            patterns.append(EntityPattern(
                entity_id=str(entity_id),
                role=self.role,
                name=entry['name'] if isinstance(entry['name'], str) and entry['name'] else UNKNOWN_NAME,
                total_contracts=total_contracts,
                total_value=total_value,
                total_canonical_amount=float(entry['total_canonical_amount']),
                avg_contract_value=total_value / total_contracts if total_contracts > 0 else 0.0,
                years=entity_years,
                year_count=len(entity_years),
                counterparts=entity_counterparts,
                counterpart_count=len(entity_counterparts),
                items=[
                    ItemAggregate(
                        description=row.description,
                        total_amount=float(row.total_amount),
                        total_quantity=float(row.total_quantity),
                        contract_count=int(row.contract_count),
                        avg_price=float(row.avg_price),
                        currency=row.currency,
                        unit_name=row.unit_name if isinstance(row.unit_name, str) else None,
                    )
                    for row in entity_items.itertuples(index=False)
                ],
                top_categories=[
                    CategoryAggregate(
                        category=row.scheme,
                        total_amount=float(row.total_amount),
                        contract_count=int(row.contract_count),
                    )
                    for row in entity_categories.itertuples(index=False)
                ],
                data_version=data_version,
            ))

        logger.info(f"Aggregated {len(patterns)} {self.role.value} patterns", role=self.role.value, items=self.rows_seen)
        return patterns


def aggregate_entities(
    records: Union[pd.DataFrame, Iterable[ProcurementRecord]],
    role: Union[EntityRole, str],
    data_version: int = DATA_VERSION,
    top_items: int = DEFAULT_TOP_ITEMS,
    top_categories: int = DEFAULT_TOP_CATEGORIES
) -> List[EntityPattern]:
    """
    Roll item rows up into one profile per supplier or buyer.

    Every profile is recomputed from the full input, never patched. A record
    with several awards or items counts once toward total_contracts.
    Item breakdowns are merged by description through a keyed groupby and
    cut to the top N by amount; avg_price is 0 when the merged quantity is 0.
    An entity seen under several names takes the most frequent one (ties:
    alphabetical), so the name does not depend on record order.

    Args:
        records: Item frame from flatten_items, or procurement records
        role: EntityRole.SUPPLIER or EntityRole.BUYER
        data_version: Version stamped on every profile
        top_items: Maximum item breakdown entries per profile
        top_categories: Maximum category entries per profile

    Returns:
        Profiles sorted by total value, descending
    """
    accumulator = EntityAccumulator(role)
    accumulator.add(records if isinstance(records, pd.DataFrame) else flatten_items(records))
    return accumulator.patterns(data_version, top_items, top_categories)
