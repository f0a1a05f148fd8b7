import pytest

from rebalancer.audit.service import AuditService
from rebalancer.core.exceptions import ConflictError, NotFoundError, ValidationError
from rebalancer.models.enums import ScopeMode, Strategy
from rebalancer.services.allocation_store import (
    AllocationSnapshot, AllocationStore, normalize_allocation_payload,
)
from rebalancer.services.planner import plan
from rebalancer.services.policy import ScopeFilter
from rebalancer.services.sku_aggregator import aggregate_by_sku
from rebalancer.services.transfer_orders import TransferLeg


# ============================================================================
# Payload normalisation
# ============================================================================

@pytest.mark.parametrize("raw", [
    {"skuId": 3, "locationId": 7, "onHand": 12},
    {"sku_id": "3", "location_id": 7, "stock": 12},
    {"sku": {"_id": 3}, "storeId": 7, "on_hand": 12},
    {"sku": {"id": 3, "code": "MILK"}, "location": "7", "onHandQty": 12},
])
def test_normalize_field_name_variants(raw):
    record = normalize_allocation_payload(raw)

    assert (record.sku_id, record.location_id) == (3, 7)
    assert record.quantity_fields() == {"on_hand": 12}


def test_normalize_accepts_codes():
    record = normalize_allocation_payload({"skuCode": "MILK-1L", "locationCode": "WH", "target": 5})

    assert record.sku_id is None
    assert (record.sku_code, record.location_code) == ("MILK-1L", "WH")
    assert record.quantity_fields() == {"target": 5}


def test_normalize_rejects_missing_location():
    with pytest.raises(ValidationError):
        normalize_allocation_payload({"skuId": 3, "onHand": 1})


def test_normalize_rejects_negative_quantity():
    with pytest.raises(ValidationError) as exc:
        normalize_allocation_payload({"skuId": 3, "locationId": 1, "onHand": -4})
    assert "on_hand" in exc.value.message


# ============================================================================
# Reads
# ============================================================================

def test_get_returns_snapshots_with_versions(db_session, network):
    rows = AllocationStore(db_session).get(network["sku"].id)

    assert [r.on_hand for r in rows] == [120, 30, 90]
    assert all(isinstance(r, AllocationSnapshot) and r.version == 1 for r in rows)
    assert rows[0].sku_code == "MILK-1L"
    assert rows[0].role == "central_warehouse"


def test_get_unknown_sku(db_session):
    with pytest.raises(NotFoundError):
        AllocationStore(db_session).get(404)


def test_snapshot_fills_missing_reference_data(db_session, make_sku, make_location, make_allocation):
    sku = make_sku(code="NO-REGION")
    location = make_location(region=None)
    make_allocation(sku, location, on_hand=5, target=5)

    row = AllocationStore(db_session).get(sku.id)[0]
    assert row.region == "Unknown"


def test_aggregate_by_sku_groups_and_totals(db_session, network, make_sku, make_allocation):
    other = make_sku(code="YOG-500")
    make_allocation(other, network["a"], on_hand=7, target=10)

    skus = aggregate_by_sku(AllocationStore(db_session).list_all())

    assert [s.sku_code for s in skus] == ["MILK-1L", "YOG-500"]
    assert skus[0].total_stock == 240
    assert [loc.location_code for loc in skus[0].locations] == ["WH", "ST-A", "ST-B"]
    assert skus[1].total_stock == 7


def test_aggregate_keeps_first_seen_order():
    def row(sku_id, location_id, on_hand):
        return AllocationSnapshot(location_id, sku_id, location_id, 0, 0, on_hand, 0, 0, 1)

    skus = aggregate_by_sku([row(9, 1, 4), row(2, 1, 1), row(9, 2, 6)])

    assert [s.sku_id for s in skus] == [9, 2]
    assert skus[0].total_stock == 10
    assert skus[0].sku_name == "Unknown"


# ============================================================================
# Versioned writes
# ============================================================================

def test_update_with_current_version(db_session, network):
    store = AllocationStore(db_session)
    row = store.get(network["sku"].id)[1]

    updated = store.update(row.allocation_id, {"target": 60}, expected_version=row.version, actor="planner")

    assert updated.target == 60
    assert updated.version == row.version + 1
    entries = AuditService(db_session).recent(entity="allocation", record_key=str(row.allocation_id))
    assert entries[0]["changed_columns"] == ["target"]
    assert entries[0]["changed_by"] == "planner"


def test_update_with_stale_version_is_rejected(db_session, network):
    store = AllocationStore(db_session)
    row = store.get(network["sku"].id)[1]
    store.update(row.allocation_id, {"target": 60}, expected_version=row.version, actor="planner")

    with pytest.raises(ConflictError) as exc:
        store.update(row.allocation_id, {"target": 70}, expected_version=row.version, actor="planner")

    assert exc.value.data["current_version"] == row.version + 1
    assert store.get_row(network["sku"].id, network["a"].id).target == 60


def test_concurrent_sessions_cannot_both_write(session_factory, network):
    """
    GIVEN two sessions that read the same row at the same version
    THEN only the first write commits; the second gets ConflictError
    """
    sku_id, location_id = network["sku"].id, network["a"].id
    with session_factory() as first, session_factory() as second:
        row_a = AllocationStore(first).get_row(sku_id, location_id)
        row_b = AllocationStore(second).get_row(sku_id, location_id)

        row_a.target = 55
        first.commit()

        row_b.target = 65
        with pytest.raises(ConflictError):
            AllocationStore(second).commit(allocation_id=row_b.id)

    with session_factory() as check:
        assert AllocationStore(check).get_row(sku_id, location_id).target == 55


def test_update_rejects_unknown_and_negative_fields(db_session, network):
    store = AllocationStore(db_session)
    row = store.get(network["sku"].id)[0]

    with pytest.raises(ValidationError):
        store.update(row.allocation_id, {"colour": 3}, expected_version=1, actor="planner")
    with pytest.raises(ValidationError):
        store.update(row.allocation_id, {"on_hand": -1}, expected_version=1, actor="planner")
    with pytest.raises(ValidationError):
        store.update(row.allocation_id, {}, expected_version=1, actor="planner")


def test_update_unknown_allocation(db_session):
    with pytest.raises(NotFoundError):
        AllocationStore(db_session).update(999, {"target": 1}, expected_version=1, actor="planner")


# ============================================================================
# Rebalance commit
# ============================================================================

def test_apply_rebalance_is_one_transaction(db_session, network):
    store = AllocationStore(db_session)
    sku_id = network["sku"].id
    rows = store.get(sku_id)
    sku_plan = plan(rows, Strategy.EQUAL_SPLIT)
    legs = [TransferLeg(network["wh"].id, network["a"].id, 40), TransferLeg(network["b"].id, network["a"].id, 10)]

    orders = store.apply_rebalance(sku_plan, legs, actor="planner", reference="RB_TEST")

    assert len(orders) == 2
    after = store.get(sku_id)
    assert [r.target for r in after] == [80, 80, 80]
    assert [r.allocated for r in after] == [80, 80, 80]
    assert all(r.version == 2 for r in after)
    assert {o.reference for o in store.list_transfers(sku_id=sku_id)} == {"RB_TEST"}


def test_apply_rebalance_with_stale_plan_writes_nothing(db_session, network):
    store = AllocationStore(db_session)
    sku_id = network["sku"].id
    rows = store.get(sku_id)
    stale_plan = plan(rows, Strategy.EQUAL_SPLIT)
    store.update(rows[2].allocation_id, {"on_hand": 95}, expected_version=rows[2].version, actor="ops")

    with pytest.raises(ConflictError):
        store.apply_rebalance(stale_plan, [TransferLeg(network["wh"].id, network["a"].id, 40)], actor="planner")

    assert [r.target for r in store.get(sku_id)] == [100, 100, 40]
    assert store.list_transfers(sku_id=sku_id) == []


def test_apply_rebalance_bumps_unchanged_rows(db_session, make_sku, make_location, make_allocation):
    sku = make_sku()
    a, b = make_location(), make_location()
    make_allocation(sku, a, on_hand=50, target=50)
    make_allocation(sku, b, on_hand=50, target=50)
    store = AllocationStore(db_session)
    rows = store.get(sku.id)
    first = plan(rows, Strategy.EQUAL_SPLIT)
    second = plan(rows, Strategy.EQUAL_SPLIT)

    store.apply_rebalance(first, [], actor="planner")
    with pytest.raises(ConflictError):
        store.apply_rebalance(second, [], actor="planner")


# ============================================================================
# Import
# ============================================================================

def test_import_creates_then_updates(db_session, network, make_location):
    store = AllocationStore(db_session)
    new_store = make_location(code="ST-NEW")

    counts = store.import_allocations(
        [
            {"skuCode": "MILK-1L", "locationCode": "ST-NEW", "onHand": 12, "target": 20},
            {"sku_id": network["sku"].id, "storeId": network["a"].id, "stock": 33},
        ],
        actor="erp",
    )

    assert counts == {"created": 1, "updated": 1}
    assert store.get_row(network["sku"].id, new_store.id).on_hand == 12
    updated = store.get_row(network["sku"].id, network["a"].id)
    assert (updated.on_hand, updated.target) == (33, 100)


def test_import_is_all_or_nothing(db_session, network):
    store = AllocationStore(db_session)

    with pytest.raises(NotFoundError):
        store.import_allocations(
            [
                {"skuId": network["sku"].id, "locationId": network["a"].id, "onHand": 1},
                {"skuCode": "NOPE", "locationId": network["a"].id, "onHand": 1},
            ],
            actor="erp",
        )

    assert store.get_row(network["sku"].id, network["a"].id).on_hand == 30


def test_import_reports_bad_record_index(db_session):
    with pytest.raises(ValidationError) as exc:
        AllocationStore(db_session).import_allocations([{"skuId": 1, "locationId": 1}, {"onHand": 3}], actor="erp")
    assert exc.value.data["index"] == 1


# ============================================================================
# Scope
# ============================================================================

@pytest.fixture
def catalogue(make_sku, make_location, make_allocation):
    north = make_location(region="North", code="N1")
    south = make_location(region="South", code="S1", role="hub")
    dairy = make_sku(category="Dairy", code="D1")
    staples = make_sku(category="Staples", code="P1")
    short = make_sku(category="Dairy", code="D2")
    retired = make_sku(category="Dairy", code="D3", is_active=False)
    make_allocation(dairy, north, on_hand=10, target=10)
    make_allocation(staples, south, on_hand=10, target=10)
    make_allocation(short, north, on_hand=10, target=100, allocated=50)
    make_allocation(retired, north, on_hand=10, target=10)
    return {"north": north, "south": south, "dairy": dairy, "staples": staples, "short": short, "retired": retired}


def test_scope_all_skips_inactive_skus(db_session, catalogue):
    sku_ids = AllocationStore(db_session).list_for_scope(ScopeFilter())

    assert sku_ids == sorted([catalogue["dairy"].id, catalogue["staples"].id, catalogue["short"].id])


def test_scope_category(db_session, catalogue):
    sku_ids = AllocationStore(db_session).list_for_scope(ScopeFilter(mode=ScopeMode.CATEGORY, category="Staples"))

    assert sku_ids == [catalogue["staples"].id]


def test_scope_high_priority(db_session, catalogue):
    sku_ids = AllocationStore(db_session).list_for_scope(
        ScopeFilter(mode=ScopeMode.HIGH_PRIORITY, high_priority_ratio=0.8)
    )

    assert sku_ids == [catalogue["short"].id]


def test_scope_explicit_keeps_order_and_dedupes(db_session, catalogue):
    ids = (catalogue["staples"].id, catalogue["dairy"].id, catalogue["staples"].id)
    sku_ids = AllocationStore(db_session).list_for_scope(ScopeFilter(mode=ScopeMode.EXPLICIT, sku_ids=ids))

    assert sku_ids == [catalogue["staples"].id, catalogue["dairy"].id]


def test_scope_explicit_logs_inactive_skus(db_session, catalogue, log_messages):
    ids = (catalogue["retired"].id, catalogue["dairy"].id)
    sku_ids = AllocationStore(db_session).list_for_scope(ScopeFilter(mode=ScopeMode.EXPLICIT, sku_ids=ids))

    assert sku_ids == [catalogue["dairy"].id]
    assert any(f"inactive SKUs skipped: [{catalogue['retired'].id}]" in m for m in log_messages)


def test_scope_explicit_unknown_sku(db_session, catalogue):
    with pytest.raises(NotFoundError):
        AllocationStore(db_session).list_for_scope(ScopeFilter(mode=ScopeMode.EXPLICIT, sku_ids=(404,)))


def test_scope_geography_restricts_skus(db_session, catalogue):
    store = AllocationStore(db_session)

    assert store.list_for_scope(ScopeFilter(regions=("South",))) == [catalogue["staples"].id]
    assert store.list_for_scope(ScopeFilter(roles=("hub",))) == [catalogue["staples"].id]
    assert store.locations_in_scope(ScopeFilter(regions=("North",))) == [catalogue["north"].id]
    assert store.locations_in_scope(ScopeFilter()) is None


def test_scope_requires_its_parameters():
    with pytest.raises(ValidationError):
        ScopeFilter(mode=ScopeMode.EXPLICIT)
    with pytest.raises(ValidationError):
        ScopeFilter(mode=ScopeMode.CATEGORY)
