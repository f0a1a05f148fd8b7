from datetime import date, timedelta

import pytest

from rebalancer.audit.service import AuditService
from rebalancer.core.exceptions import ConflictError, InvalidTransitionError, ValidationError
from rebalancer.models import SalesVelocity
from rebalancer.models.enums import Objective, RunState, ScopeMode, Strategy
from rebalancer.services.allocation_store import AllocationStore
from rebalancer.services.orchestrator import RebalanceOrchestrator, RebalanceWizard, WizardStep
from rebalancer.services.policy import CostModel, RebalanceConstraints, ScopeFilter
from rebalancer.services.transfer_orders import TransferOrderGenerator

CONSTRAINTS = RebalanceConstraints(max_transfers_per_sku=5, min_transfer_quantity=10)


@pytest.fixture
def orchestrator(session_factory):
    return RebalanceOrchestrator(
        session_factory,
        cost_model=CostModel(per_leg=5.0, per_unit=0.1),
        max_retries=3,
        workers=2,
    )


@pytest.fixture
def two_skus(network, make_sku, make_allocation):
    """MILK-1L (needs moving) plus a second SKU already balanced."""
    balanced = make_sku(code="RICE-5K", category="Staples")
    make_allocation(balanced, network["wh"], on_hand=50, target=50)
    make_allocation(balanced, network["a"], on_hand=50, target=50)
    return {**network, "balanced": balanced}


def targets(db_session, sku_id):
    return [r.target for r in AllocationStore(db_session).get(sku_id)]


# ============================================================================
# Scope & preview
# ============================================================================

def test_scope_maps_objective_to_strategy(orchestrator, two_skus):
    run = orchestrator.scope(ScopeFilter(), CONSTRAINTS, "planner", objective=Objective.BALANCE_FORECAST)

    assert run.state == RunState.SCOPED
    assert run.strategy == Strategy.PROPORTIONAL_TO_SALES
    assert set(run.sku_ids) == {two_skus["sku"].id, two_skus["balanced"].id}
    assert run.run_code.startswith("RB_")


def test_scope_requires_objective_or_strategy(orchestrator, two_skus):
    with pytest.raises(ValidationError):
        orchestrator.scope(ScopeFilter(), CONSTRAINTS, "planner")


def test_preview_summarises_without_writing(orchestrator, db_session, two_skus):
    run = orchestrator.scope(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)

    previewed = orchestrator.preview(run)

    summary = previewed.preview["summary"]
    assert previewed.state == RunState.PREVIEWED
    assert run.state == RunState.SCOPED
    assert summary["skus_in_scope"] == 2
    assert summary["skus_planned"] == 2
    assert summary["skus_changed"] == 1
    assert summary["estimated_transfers"] == 2
    assert summary["estimated_units"] == 50
    assert summary["estimated_cost"] == pytest.approx(2 * 5.0 + 50 * 0.1)
    assert summary["units_by_category"] == {"Dairy": 50, "Staples": 0}
    assert targets(db_session, two_skus["sku"].id) == [100, 100, 40]
    assert AllocationStore(db_session).list_transfers() == []


def test_preview_counts_prevented_stockouts(orchestrator, network):
    run = orchestrator.scope(ScopeFilter(), CONSTRAINTS, "planner", objective=Objective.MINIMIZE_STOCKOUTS)

    summary = orchestrator.preview(run).preview["summary"]

    # A (30 vs target 100) is short before and the plan sends it 96 units
    assert summary["stockouts_prevented"] == 1


def test_execute_requires_preview(orchestrator, network):
    run = orchestrator.scope(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)

    with pytest.raises(InvalidTransitionError):
        orchestrator.execute(run)


# ============================================================================
# Execute
# ============================================================================

def test_execute_commits_each_sku(orchestrator, db_session, two_skus):
    run = orchestrator.run(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)

    assert run.state == RunState.COMPLETED
    by_sku = {r.sku_id: r for r in run.results}
    assert by_sku[two_skus["sku"].id].status == "committed"
    assert len(by_sku[two_skus["sku"].id].transfer_ids) == 2
    assert by_sku[two_skus["balanced"].id].status == "unchanged"
    assert targets(db_session, two_skus["sku"].id) == [80, 80, 80]

    transfers = AllocationStore(db_session).list_transfers(sku_id=two_skus["sku"].id)
    assert {t.reference for t in transfers} == {run.run_code}
    assert sum(t.quantity for t in transfers) == 50

    audit = AuditService(db_session).recent(entity="rebalance_run", record_key=run.run_code)
    assert audit[0]["new_data"]["committed"] == 1


def test_execute_replans_against_fresh_state(orchestrator, db_session, network):
    run = orchestrator.preview(
        orchestrator.scope(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)
    )
    store = AllocationStore(db_session)
    row = store.get_row(network["sku"].id, network["b"].id)
    store.update(row.id, {"on_hand": 150}, expected_version=row.version, actor="ops")

    finished = orchestrator.execute(run)

    assert finished.state == RunState.COMPLETED
    assert targets(db_session, network["sku"].id) == [100, 100, 100]


def test_conflicts_are_retried_with_a_fresh_read(orchestrator, db_session, network, monkeypatch):
    original = AllocationStore.apply_rebalance
    calls = {"n": 0}

    def flaky(self, plan, legs, actor, reference=None):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConflictError(sku_id=plan.sku_id)
        return original(self, plan, legs, actor, reference=reference)

    monkeypatch.setattr(AllocationStore, "apply_rebalance", flaky)

    run = orchestrator.run(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)

    assert run.state == RunState.COMPLETED
    assert run.results[0].attempts == 2
    assert targets(db_session, network["sku"].id) == [80, 80, 80]


def test_persistent_conflict_fails_after_retry_limit(orchestrator, network, monkeypatch):
    def always_conflicts(self, plan, legs, actor, reference=None):
        raise ConflictError(sku_id=plan.sku_id)

    monkeypatch.setattr(AllocationStore, "apply_rebalance", always_conflicts)

    run = orchestrator.run(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)

    assert run.state == RunState.FAILED
    assert run.results[0].attempts == 3
    assert run.results[0].error_code == ConflictError.code


def open_units(db_session, sku_id):
    return sum(
        t.quantity for t in AllocationStore(db_session).list_transfers(sku_id=sku_id)
        if t.status in ("requested", "in_transit")
    )


def test_repeated_execute_does_not_ship_twice(orchestrator, db_session, network):
    sku_id = network["sku"].id

    first = orchestrator.run(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)
    second = orchestrator.run(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)

    assert first.results[0].status == "committed"
    assert second.results[0].status == "unchanged"
    assert second.results[0].transfer_ids == ()
    assert open_units(db_session, sku_id) == 50

    generator = TransferOrderGenerator(db_session)
    for transfer_id in [t.id for t in AllocationStore(db_session).list_transfers(sku_id=sku_id)]:
        generator.dispatch(transfer_id, actor="warehouse")
        generator.receive(transfer_id, actor="store")

    rows = AllocationStore(db_session).get(sku_id)
    assert [(r.on_hand, r.in_transit, r.target) for r in rows] == [(80, 0, 80)] * 3

    settled = orchestrator.run(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)
    assert settled.results[0].status == "unchanged"


def test_two_previewed_runs_commit_once(orchestrator, db_session, network):
    def previewed():
        return orchestrator.preview(
            orchestrator.scope(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)
        )

    first, second = previewed(), previewed()
    assert first.preview["summary"]["estimated_units"] == second.preview["summary"]["estimated_units"] == 50

    done_first = orchestrator.execute(first)
    done_second = orchestrator.execute(second)

    assert done_first.results[0].status == "committed"
    assert done_second.results[0].status == "unchanged"
    assert open_units(db_session, network["sku"].id) == 50
    assert targets(db_session, network["sku"].id) == [80, 80, 80]


def test_competing_commit_forces_replan(orchestrator, db_session, network, monkeypatch):
    """
    GIVEN another run commits the same SKU between this run's read and its write
    THEN this run's write is rejected on version, it re-reads, finds the work
    already scheduled and commits nothing more
    """
    real_apply = AllocationStore.apply_rebalance
    competitor = {}

    def apply_after_competitor(self, plan, legs, actor, reference=None):
        if not competitor:
            competitor["started"] = True
            competitor["run"] = orchestrator.run(ScopeFilter(), CONSTRAINTS, "other", strategy=Strategy.EQUAL_SPLIT)
        return real_apply(self, plan, legs, actor, reference=reference)

    monkeypatch.setattr(AllocationStore, "apply_rebalance", apply_after_competitor)

    run = orchestrator.run(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)

    assert competitor["run"].results[0].status == "committed"
    assert run.state == RunState.COMPLETED
    assert run.results[0].status == "unchanged"
    assert run.results[0].attempts == 2
    assert open_units(db_session, network["sku"].id) == 50
    assert targets(db_session, network["sku"].id) == [80, 80, 80]


def test_one_failing_sku_does_not_block_the_rest(orchestrator, db_session, network, make_sku, make_allocation, monkeypatch):
    second = make_sku(code="YOG-500")
    make_allocation(second, network["wh"], on_hand=100, target=10)
    make_allocation(second, network["a"], on_hand=0, target=10)
    original = AllocationStore.apply_rebalance

    def broken_for_yogurt(self, plan, legs, actor, reference=None):
        if plan.sku_id == second.id:
            raise RuntimeError("disk full")
        return original(self, plan, legs, actor, reference=reference)

    monkeypatch.setattr(AllocationStore, "apply_rebalance", broken_for_yogurt)

    run = orchestrator.run(ScopeFilter(), CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)

    assert run.state == RunState.PARTIALLY_COMPLETED
    by_sku = {r.sku_id: r for r in run.results}
    assert by_sku[network["sku"].id].status == "committed"
    assert by_sku[second.id].status == "failed"
    assert by_sku[second.id].error_code == "INTERNAL_ERROR"
    assert targets(db_session, second.id) == [10, 10]
    assert run.as_dict()["summary"]["failed"] == 1


def test_geography_limits_planned_locations(orchestrator, db_session, network):
    scope = ScopeFilter(regions=("North",))

    run = orchestrator.run(scope, CONSTRAINTS, "planner", strategy=Strategy.EQUAL_SPLIT)

    assert run.state == RunState.COMPLETED
    # WH and ST-A are North; ST-B (South) keeps its target
    assert targets(db_session, network["sku"].id) == [75, 75, 40]


def test_proportional_strategy_uses_sales_history(orchestrator, db_session, network):
    week = date.today() - timedelta(days=3)
    for location, units in ((network["wh"], 0), (network["a"], 30), (network["b"], 10)):
        db_session.add(SalesVelocity(
            sku_id=network["sku"].id, location_id=location.id, week_start=week, units_sold=units,
        ))
    db_session.commit()

    run = orchestrator.run(ScopeFilter(), CONSTRAINTS, "planner", objective=Objective.BALANCE_FORECAST)

    assert run.state == RunState.COMPLETED
    assert targets(db_session, network["sku"].id) == [0, 180, 60]


def test_execute_single(orchestrator, db_session, network):
    run = orchestrator.execute_single(network["sku"].id, Strategy.MINIMIZE_STOCKOUTS, CONSTRAINTS, "planner")

    assert run.state == RunState.COMPLETED
    assert run.scope.mode == ScopeMode.EXPLICIT
    assert sum(targets(db_session, network["sku"].id)) == 240


# ============================================================================
# Wizard
# ============================================================================

def test_wizard_walks_forward_and_back(orchestrator, db_session, network):
    wizard = RebalanceWizard()
    at_objective = wizard.choose_scope(ScopeFilter())
    at_constraints = at_objective.choose_objective(Objective.MINIMIZE_STOCKOUTS)
    at_preview = at_constraints.set_constraints(CONSTRAINTS)

    assert wizard.step == WizardStep.SCOPE
    assert at_preview.step == WizardStep.PREVIEW
    assert at_preview.back().step == WizardStep.CONSTRAINTS
    assert at_preview.back().constraints == CONSTRAINTS

    previewed = at_preview.preview(orchestrator, "planner")
    assert previewed.run.state == RunState.PREVIEWED
    assert targets(db_session, network["sku"].id) == [100, 100, 40]

    finished = previewed.execute(orchestrator)
    assert finished.state == RunState.COMPLETED


def test_wizard_rejects_out_of_order_steps():
    with pytest.raises(InvalidTransitionError):
        RebalanceWizard().choose_objective(Objective.MINIMIZE_STOCKOUTS)


def test_wizard_execute_needs_preview(orchestrator):
    wizard = (
        RebalanceWizard()
        .choose_scope(ScopeFilter())
        .choose_objective(Objective.PROMO_PRIORITY)
        .set_constraints(CONSTRAINTS)
    )

    with pytest.raises(InvalidTransitionError):
        wizard.execute(orchestrator)
