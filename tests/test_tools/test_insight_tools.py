"""Tests for yearly expense insights"""

from gastos_analytics.models import ProcurementRecord
from gastos_analytics.tools.insight_tools import YearlyInsightAccumulator, compute_yearly_insights
from gastos_analytics.tools.item_frame import flatten_items


def record(record_id, year, buyer_id, supplier_id, amounts, description="Guantes"):
    return ProcurementRecord.model_validate({
        "id": record_id,
        "date": f"{year}-06-01T00:00:00",
        "buyer": {"id": buyer_id, "name": f"Buyer {buyer_id}"},
        "awards": [{
            "id": "a1",
            "suppliers": [{"id": supplier_id, "name": f"Supplier {supplier_id}"}],
            "items": [
                {"classification": {"description": description}, "unit": {"value": {"amount": amount}}}
                for amount in amounts
            ],
        }],
    })


def test_yearly_totals_and_rankings():
    records = [
        record("r1", 2022, "b1", "s1", [100, 300]),
        record("r2", 2022, "b2", "s2", [1000], description="Gasas"),
        record("r3", 2023, "b1", "s1", [50, 0]),
    ]

    insights = compute_yearly_insights(records, top_n=10, data_version=4)

    assert [insight.year for insight in insights] == [2023, 2022]
    year_2022 = insights[1]
    assert year_2022.total_amount == 1400
    assert year_2022.total_transactions == 3
    assert year_2022.average_amount == 1400 / 3
    assert year_2022.currency == "UYU"
    assert [s.id for s in year_2022.top_suppliers] == ["s2", "s1"]
    assert year_2022.top_suppliers[1].transaction_count == 2
    assert [b.id for b in year_2022.top_buyers] == ["b2", "b1"]
    assert [c.description for c in year_2022.top_categories] == ["Gasas", "Guantes"]

    # Zero amounts are not transactions
    assert insights[0].total_transactions == 1


def test_top_n_limit():
    records = [record(f"r{n}", 2022, f"b{n}", f"s{n}", [100 + n]) for n in range(15)]

    insight = compute_yearly_insights(records, top_n=10)[0]

    assert len(insight.top_suppliers) == 10
    assert insight.top_suppliers[0].id == "s14"


def test_records_without_year_are_ignored():
    undated = ProcurementRecord.model_validate({
        "id": "r1",
        "awards": [{"items": [{"unit": {"value": {"amount": 10}}}]}],
    })

    assert compute_yearly_insights([undated]) == []


def test_batches_fold_to_the_single_pass_result():
    records = [
        record("r1", 2022, "b1", "s1", [100, 300]),
        record("r2", 2022, "b2", "s2", [1000], description="Gasas"),
        record("r3", 2023, "b1", "s1", [50]),
        record("r4", 2022, "b1", "s2", [20], description="Gasas"),
    ]

    accumulator = YearlyInsightAccumulator()
    accumulator.add(flatten_items(records[:2]))
    accumulator.add(flatten_items(records[2:]))

    batched = [insight.to_document() for insight in accumulator.insights(top_n=10, data_version=4)]
    single = [insight.to_document() for insight in compute_yearly_insights(records, top_n=10, data_version=4)]

    assert batched == single
    year_2022 = batched[1]
    assert year_2022["totalAmount"] == 1420
    assert year_2022["totalTransactions"] == 4
    assert [s["id"] for s in year_2022["topSuppliers"]] == ["s2", "s1"]
    assert year_2022["topSuppliers"][0]["transactionCount"] == 2


def test_ranked_names_use_the_most_frequent_spelling():
    renamed = record("r1", 2022, "b1", "s1", [10])
    renamed.awards[0].suppliers[0].name = "Old Name"
    records = [renamed, record("r2", 2022, "b1", "s1", [10]), record("r3", 2022, "b1", "s1", [10])]

    insight = compute_yearly_insights(records)[0]

    assert insight.top_suppliers[0].name == "Supplier s1"
