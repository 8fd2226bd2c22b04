"""Tests for supplier and buyer pattern aggregation"""

from gastos_analytics.constants import EntityRole
from gastos_analytics.models import ProcurementRecord
from gastos_analytics.tools.item_frame import flatten_items
from gastos_analytics.tools.pattern_tools import EntityAccumulator, aggregate_entities


def record(record_id, year, buyer_id, awards):
    return ProcurementRecord.model_validate({
        "id": record_id,
        "date": f"{year}-03-01T00:00:00",
        "buyer": {"id": buyer_id, "name": f"Buyer {buyer_id}"},
        "awards": awards,
    })


def award(award_id, supplier_ids, items):
    return {
        "id": award_id,
        "suppliers": [{"id": s, "name": f"Supplier {s}"} for s in supplier_ids],
        "items": items,
    }


def item(description, amount, quantity=1, scheme="CATALOGO"):
    data = {"quantity": quantity, "unit": {"name": "Unidad", "value": {"amount": amount, "currency": "UYU"}}}
    if description is not None:
        data["classification"] = {"scheme": scheme, "description": description}
    return data


def test_multi_award_record_counts_once():
    records = [
        record("r1", 2022, "b1", [
            award("a1", ["s1"], [item("Guantes", 100), item("Gasas", 50)]),
            award("a2", ["s1"], [item("Guantes", 200)]),
        ]),
        record("r2", 2023, "b2", [award("a1", ["s1"], [item("Guantes", 300)])]),
    ]

    patterns = aggregate_entities(records, EntityRole.SUPPLIER)

    assert len(patterns) == 1
    supplier = patterns[0]
    assert supplier.entity_id == "s1"
    assert supplier.name == "Supplier s1"
    assert supplier.total_contracts == 2
    assert supplier.total_value == 650
    assert supplier.avg_contract_value == 325
    assert supplier.years == [2022, 2023]
    assert supplier.counterparts == ["b1", "b2"]
    assert supplier.counterpart_count == 2

    guantes = supplier.items[0]
    assert guantes.description == "Guantes"
    assert guantes.total_amount == 600
    assert guantes.contract_count == 3
    assert guantes.avg_price == 200


def test_avg_price_is_zero_when_quantity_sums_to_zero():
    records = [record("r1", 2022, "b1", [award("a1", ["s1"], [item("Servicio", 500, quantity=0)])])]

    patterns = aggregate_entities(records, EntityRole.SUPPLIER)

    assert patterns[0].items[0].total_quantity == 0
    assert patterns[0].items[0].avg_price == 0


def test_missing_classification_uses_unknown_description():
    records = [record("r1", 2022, "b1", [award("a1", ["s1"], [item(None, 80), item("Gasas", 20)])])]

    patterns = aggregate_entities(records, EntityRole.SUPPLIER)

    assert patterns[0].total_value == 100
    assert [entry.description for entry in patterns[0].items] == ["Unknown", "Gasas"]


def test_top_items_limit_and_ordering():
    items = [item(f"Item {n:02d}", 1000 + n) for n in range(20)]
    records = [record("r1", 2022, "b1", [award("a1", ["s1"], items)])]

    patterns = aggregate_entities(records, EntityRole.SUPPLIER, top_items=15)

    breakdown = patterns[0].items
    assert len(breakdown) == 15
    assert breakdown[0].description == "Item 19"
    assert [entry.total_amount for entry in breakdown] == sorted((entry.total_amount for entry in breakdown), reverse=True)


def test_description_merge_is_case_sensitive():
    records = [record("r1", 2022, "b1", [award("a1", ["s1"], [item("Guantes", 10), item("guantes", 10)])])]

    patterns = aggregate_entities(records, EntityRole.SUPPLIER)

    assert len(patterns[0].items) == 2


def test_buyer_profiles_list_suppliers_and_sort_by_value():
    records = [
        record("r1", 2022, "b1", [award("a1", ["s1", "s2"], [item("Guantes", 100)])]),
        record("r2", 2022, "b2", [award("a1", ["s3"], [item("Gasas", 900)])]),
    ]

    patterns = aggregate_entities(records, "buyer")

    assert [p.entity_id for p in patterns] == ["b2", "b1"]
    b1 = patterns[1]
    assert b1.counterparts == ["s1", "s2"]
    # A shared item is not double counted for the buyer
    assert b1.total_value == 100
    assert b1.to_document()["buyerId"] == "b1"
    assert b1.to_document()["role"] == "buyer"


def test_items_without_positive_amount_are_ignored():
    records = [record("r1", 2022, "b1", [award("a1", ["s1"], [item("Guantes", 0)])])]

    assert aggregate_entities(records, EntityRole.SUPPLIER) == []


def test_rerun_converges():
    records = [
        record("r1", 2021, "b1", [award("a1", ["s1"], [item("Guantes", 100, 2), item("Gasas", 40)])]),
        record("r2", 2022, "b1", [award("a1", ["s2"], [item("Guantes", 70)])]),
    ]
    frame = flatten_items(records)

    first = aggregate_entities(frame, EntityRole.SUPPLIER, data_version=4)
    second = aggregate_entities(frame, EntityRole.SUPPLIER, data_version=4)

    assert [p.to_document() for p in first] == [p.to_document() for p in second]


def named_record(record_id, supplier_name):
    return ProcurementRecord.model_validate({
        "id": record_id,
        "date": "2022-03-01T00:00:00",
        "buyer": {"id": "b1", "name": "Buyer b1"},
        "awards": [{
            "id": "a1",
            "suppliers": [{"id": "s1", "name": supplier_name}],
            "items": [item("Guantes", 100)],
        }],
    })


def test_most_frequent_name_wins_regardless_of_order():
    records = [
        named_record("r1", "Proveedora Vieja SA"),
        named_record("r2", "Proveedora Nueva SA"),
        named_record("r3", "Proveedora Nueva SA"),
    ]

    forward = aggregate_entities(records, EntityRole.SUPPLIER)
    backward = aggregate_entities(list(reversed(records)), EntityRole.SUPPLIER)

    assert forward[0].name == "Proveedora Nueva SA"
    assert backward[0].name == "Proveedora Nueva SA"


def test_name_ties_are_alphabetical():
    records = [named_record("r1", "Zeta SA"), named_record("r2", "Alfa SA")]

    assert aggregate_entities(records, EntityRole.SUPPLIER)[0].name == "Alfa SA"


def test_batches_fold_to_the_single_pass_result():
    records = [
        record("r1", 2021, "b1", [award("a1", ["s1"], [item("Guantes", 100, 2), item("Gasas", 40)])]),
        record("r2", 2022, "b1", [award("a1", ["s1", "s2"], [item("Guantes", 70), item(None, 5)])]),
        record("r3", 2022, "b2", [award("a1", ["s2"], [item("Gasas", 900, 0, scheme="OTRO")])]),
        record("r4", 2023, "b2", [award("a1", ["s1"], [item("Guantes", 30)]), award("a2", ["s1"], [item("Gasas", 1)])]),
    ]

    for role in (EntityRole.SUPPLIER, EntityRole.BUYER):
        accumulator = EntityAccumulator(role)
        accumulator.add(flatten_items(records[:1]))
        accumulator.add(flatten_items(records[1:3]))
        accumulator.add(flatten_items(records[3:]))

        batched = accumulator.patterns(data_version=4)
        single = aggregate_entities(records, role, data_version=4)

        assert [p.to_document() for p in batched] == [p.to_document() for p in single]

    by_id = {p.entity_id: p for p in aggregate_entities(records, EntityRole.SUPPLIER)}
    s1 = by_id["s1"]
    assert by_id["s2"].total_value == 975
    assert s1.total_contracts == 3
    assert s1.years == [2021, 2022, 2023]
    assert s1.counterparts == ["b1", "b2"]
