"""
Auto-Rebalance Orchestrator
============================
Runs a rebalance across a set of SKUs:

    scoped → previewed → executing → completed | partially_completed | failed

- Scope resolves the SKU set (explicit list, category, high-priority, all)
  plus an optional geography filter.
- Preview plans every SKU in scope and summarises counts, transfers and
  estimated cost without writing anything.
- Execute handles each SKU on its own session: re-read, re-plan against the
  fresh snapshot, generate transfer legs, commit in one transaction.
  Version conflicts are retried with a fresh read up to the retry limit;
  any other failure is recorded against that SKU only.

A RebalanceRun is an immutable value; every step returns a new one.
RebalanceWizard is the same flow as an interactive, step-by-step state
machine (scope → objective → constraints → preview).
"""
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd
from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from rebalancer.audit.service import AuditService
from rebalancer.core.exceptions import ConflictError, EngineError, InvalidTransitionError, ValidationError
from rebalancer.models.enums import OBJECTIVE_STRATEGY, Objective, RunState, ScopeMode, Strategy
from rebalancer.services.allocation_store import AllocationSnapshot, AllocationStore
from rebalancer.services.planner import RebalancePlan, plan
from rebalancer.services.policy import CostModel, PlanSignals, RebalanceConstraints, ScopeFilter
from rebalancer.services.signals import margin_weights, weekly_demand
from rebalancer.services.transfer_orders import TransferOrderGenerator, TransferProposal


# ============================================================================
# Shared single-SKU planning
# ============================================================================

def plan_signals(db: Session, sku_id: int, strategy: Strategy, demand_weeks: int) -> PlanSignals:
    if strategy == Strategy.PROPORTIONAL_TO_SALES:
        return PlanSignals(demand=weekly_demand(db, sku_id, demand_weeks))
    if strategy == Strategy.MARGIN_PRIORITY:
        return PlanSignals(margin=margin_weights(db, sku_id, demand_weeks))
    return PlanSignals()


def plan_for_sku(
    db: Session,
    sku_id: int,
    strategy: Strategy,
    constraints: RebalanceConstraints,
    demand_weeks: int,
    location_ids: Optional[List[int]] = None,
) -> Tuple[List[AllocationSnapshot], RebalancePlan, TransferProposal]:
    """Read one SKU, plan it and work out the transfer legs. Writes nothing."""
    rows = AllocationStore(db).get(sku_id, location_ids)
    if not rows:
        raise ValidationError(f"SKU {sku_id} has no allocations in scope", sku_id=sku_id)
    sku_plan = plan(rows, strategy, constraints, plan_signals(db, sku_id, strategy, demand_weeks))
    proposal = TransferOrderGenerator(db).from_plan(sku_plan, rows, constraints)
    return rows, sku_plan, proposal


# ============================================================================
# Run value objects
# ============================================================================

@dataclass(frozen=True)
class SkuResult:
    sku_id: int
    status: str                       # committed, unchanged, failed
    attempts: int = 1
    transfer_ids: Tuple[str, ...] = ()
    units: int = 0
    unscheduled_units: int = 0
    error_code: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sku_id": self.sku_id,
            "status": self.status,
            "attempts": self.attempts,
            "transfer_ids": list(self.transfer_ids),
            "units": self.units,
            "unscheduled_units": self.unscheduled_units,
            "error_code": self.error_code,
            "error": self.error,
        }


@dataclass(frozen=True)
class RebalanceRun:
    run_code: str
    state: RunState
    scope: ScopeFilter
    strategy: Strategy
    constraints: RebalanceConstraints
    actor: str
    objective: Optional[Objective] = None
    sku_ids: Tuple[int, ...] = ()
    preview: Optional[Dict[str, Any]] = None
    results: Tuple[SkuResult, ...] = ()
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        data = {
            "run_code": self.run_code,
            "state": self.state.value,
            "objective": self.objective.value if self.objective else None,
            "strategy": self.strategy.value,
            "constraints": {
                "max_transfers_per_sku": self.constraints.max_transfers_per_sku,
                "min_transfer_quantity": self.constraints.min_transfer_quantity,
            },
            "sku_ids": list(self.sku_ids),
            "preview": self.preview,
        }
        if self.results:
            data["results"] = [r.as_dict() for r in self.results]
            data["summary"] = {
                "skus": len(self.results),
                "committed": sum(1 for r in self.results if r.status == "committed"),
                "unchanged": sum(1 for r in self.results if r.status == "unchanged"),
                "failed": sum(1 for r in self.results if r.status == "failed"),
                "transfers": sum(len(r.transfer_ids) for r in self.results),
                "units": sum(r.units for r in self.results),
            }
        return data


def new_run_code() -> str:
    return f"RB_{datetime.now().strftime('%Y%m%d')}_{uuid.uuid4().hex[:6].upper()}"


# ============================================================================
# Orchestrator
# ============================================================================

class RebalanceOrchestrator:

    def __init__(
        self,
        session_factory: sessionmaker,
        cost_model: CostModel,
        max_retries: int = 3,
        workers: int = 4,
        demand_weeks: int = 4,
    ):
        self.session_factory = session_factory
        self.cost_model = cost_model
        self.max_retries = max(max_retries, 1)
        self.workers = max(workers, 1)
        self.demand_weeks = demand_weeks

    # ------------------------------------------------------------------ scope

    def scope(
        self,
        scope: ScopeFilter,
        constraints: RebalanceConstraints,
        actor: str,
        objective: Optional[Objective] = None,
        strategy: Optional[Strategy] = None,
    ) -> RebalanceRun:
        if strategy is None:
            if objective is None:
                raise ValidationError("An objective or a strategy is required")
            strategy = OBJECTIVE_STRATEGY[Objective(objective)]

        with self.session_factory() as db:
            sku_ids = AllocationStore(db).list_for_scope(scope)

        run = RebalanceRun(
            run_code=new_run_code(),
            state=RunState.SCOPED,
            scope=scope,
            strategy=Strategy(strategy),
            constraints=constraints,
            actor=actor,
            objective=Objective(objective) if objective else None,
            sku_ids=tuple(sku_ids),
        )
        logger.info(
            f"[{run.run_code}] Scoped {len(sku_ids)} SKU(s) | mode={scope.mode.value} "
            f"strategy={run.strategy.value} by {actor}"
        )
        return run

    # ---------------------------------------------------------------- preview

    def preview(self, run: RebalanceRun) -> RebalanceRun:
        if run.state not in (RunState.SCOPED, RunState.PREVIEWED):
            raise InvalidTransitionError(f"Cannot preview a run in state {run.state.value}")

        rows: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        with self.session_factory() as db:
            geography = AllocationStore(db).locations_in_scope(run.scope)
            for sku_id in run.sku_ids:
                try:
                    snapshot, sku_plan, proposal = plan_for_sku(
                        db, sku_id, run.strategy, run.constraints, self.demand_weeks, geography
                    )
                except EngineError as e:
                    errors.append({"sku_id": sku_id, **e.as_dict()})
                    continue
                rows.append(self._preview_row(snapshot, sku_plan, proposal))

        preview = {"summary": self._summarise(rows, len(run.sku_ids)), "skus": rows, "errors": errors}
        logger.info(
            f"[{run.run_code}] Preview: {preview['summary']['estimated_transfers']} transfer(s), "
            f"{preview['summary']['estimated_units']} unit(s), cost {preview['summary']['estimated_cost']}"
        )
        return replace(run, state=RunState.PREVIEWED, preview=preview)

    def _preview_row(
        self,
        snapshot: List[AllocationSnapshot],
        sku_plan: RebalancePlan,
        proposal: TransferProposal,
    ) -> Dict[str, Any]:
        coverage = {c["location_id"]: c for c in proposal.coverage}
        short = [line for line in sku_plan.lines if line.on_hand < line.current_target]

        def arriving(line) -> int:
            c = coverage.get(line.location_id)
            if c is None:
                # nothing left to schedule: open orders already cover the delta
                return line.delta
            # delta - planned is the net of orders already open
            return line.delta - c["planned"] + c["scheduled"]

        # short locations whose open and scheduled inbound brings them back to target
        covered = sum(1 for line in short if line.on_hand + arriving(line) >= line.current_target)
        return {
            "sku_id": sku_plan.sku_id,
            "sku_code": snapshot[0].sku_code,
            "category": snapshot[0].category,
            "locations": len(sku_plan.lines),
            "total_on_hand": sku_plan.total_on_hand,
            "changed": sku_plan.changed,
            "transfers": len(proposal.legs),
            "units": proposal.units,
            "dropped": len(proposal.dropped),
            "merged": proposal.merged,
            "unscheduled_units": proposal.unscheduled_units,
            "estimated_cost": self.cost_model.estimate(len(proposal.legs), proposal.units),
            "short_locations": len(short),
            "short_covered": covered,
            "plan": sku_plan.as_dict()["lines"],
            "legs": [leg.as_dict() for leg in proposal.legs],
        }

    @staticmethod
    def _summarise(rows: List[Dict[str, Any]], in_scope: int) -> Dict[str, Any]:
        if not rows:
            return {
                "skus_in_scope": in_scope, "skus_planned": 0, "skus_changed": 0,
                "estimated_transfers": 0, "estimated_units": 0, "estimated_cost": 0.0,
                "unscheduled_units": 0, "stockouts_prevented": 0, "units_by_category": {},
            }
        df = pd.DataFrame(rows)
        by_category = df.groupby("category")["units"].sum()
        return {
            "skus_in_scope": in_scope,
            "skus_planned": int(len(df)),
            "skus_changed": int(df["changed"].sum()),
            "estimated_transfers": int(df["transfers"].sum()),
            "estimated_units": int(df["units"].sum()),
            "estimated_cost": round(float(df["estimated_cost"].sum()), 2),
            "unscheduled_units": int(df["unscheduled_units"].sum()),
            "stockouts_prevented": int(df["short_covered"].sum()),
            "units_by_category": {str(k): int(v) for k, v in by_category.items()},
        }

    # ---------------------------------------------------------------- execute

    def execute(self, run: RebalanceRun) -> RebalanceRun:
        if run.state != RunState.PREVIEWED:
            raise InvalidTransitionError(
                f"Run {run.run_code} must be previewed before execution (state {run.state.value})"
            )
        executing = replace(run, state=RunState.EXECUTING, started_at=datetime.utcnow())
        logger.info(f"[{run.run_code}] Executing {len(run.sku_ids)} SKU(s) on {self.workers} worker(s)")

        if run.sku_ids:
            with ThreadPoolExecutor(max_workers=min(self.workers, len(run.sku_ids))) as pool:
                results = tuple(pool.map(lambda sku_id: self._execute_sku(executing, sku_id), run.sku_ids))
        else:
            results = ()

        succeeded = sum(1 for r in results if r.ok)
        if succeeded == len(results):
            state = RunState.COMPLETED
        elif succeeded == 0:
            state = RunState.FAILED
        else:
            state = RunState.PARTIALLY_COMPLETED

        finished = replace(executing, state=state, results=results, finished_at=datetime.utcnow())
        self._audit_run(finished)
        log = logger.info if state == RunState.COMPLETED else logger.warning
        log(f"[{run.run_code}] Finished {state.value}: {succeeded}/{len(results)} SKU(s) succeeded")
        return finished

    def _execute_sku(self, run: RebalanceRun, sku_id: int) -> SkuResult:
        last_conflict: Optional[ConflictError] = None
        for attempt in range(1, self.max_retries + 1):
            with self.session_factory() as db:
                try:
                    return self._commit_sku(db, run, sku_id, attempt)
                except ConflictError as e:
                    last_conflict = e
                    logger.warning(
                        f"[{run.run_code}] [sku={sku_id}] Conflict on attempt {attempt}/{self.max_retries}, re-reading"
                    )
                except EngineError as e:
                    logger.error(f"[{run.run_code}] [sku={sku_id}] Failed: {e.code} {e.message}")
                    return SkuResult(sku_id, "failed", attempt, error_code=e.code, error=e.message)
                except Exception as e:
                    logger.error(f"[{run.run_code}] [sku={sku_id}] Unexpected failure: {e}")
                    return SkuResult(sku_id, "failed", attempt, error_code="INTERNAL_ERROR", error=str(e))

        logger.error(f"[{run.run_code}] [sku={sku_id}] Gave up after {self.max_retries} conflicting attempt(s)")
        return SkuResult(
            sku_id, "failed", self.max_retries,
            error_code=last_conflict.code, error=last_conflict.message,
        )

    def _commit_sku(self, db: Session, run: RebalanceRun, sku_id: int, attempt: int) -> SkuResult:
        store = AllocationStore(db)
        _, sku_plan, proposal = plan_for_sku(
            db, sku_id, run.strategy, run.constraints, self.demand_weeks,
            store.locations_in_scope(run.scope),
        )
        if not sku_plan.changed and not proposal.legs:
            logger.info(f"[{run.run_code}] [sku={sku_id}] Already balanced, nothing to commit")
            return SkuResult(sku_id, "unchanged", attempt)

        orders = store.apply_rebalance(sku_plan, proposal.legs, run.actor, reference=run.run_code)
        return SkuResult(
            sku_id,
            "committed",
            attempt,
            transfer_ids=tuple(o.id for o in orders),
            units=proposal.units,
            unscheduled_units=proposal.unscheduled_units,
        )

    def _audit_run(self, run: RebalanceRun) -> None:
        with self.session_factory() as db:
            AuditService(db).log(
                entity="rebalance_run",
                action_type="EXECUTE",
                changed_by=run.actor,
                record_key=run.run_code,
                new_data=run.as_dict().get("summary"),
                source="REBALANCE",
                batch_id=run.run_code,
                notes=f"{run.state.value}; strategy={run.strategy.value}",
            )
            db.commit()

    # ------------------------------------------------------------ shortcuts

    def run(
        self,
        scope: ScopeFilter,
        constraints: RebalanceConstraints,
        actor: str,
        objective: Optional[Objective] = None,
        strategy: Optional[Strategy] = None,
    ) -> RebalanceRun:
        """scope → preview → execute in one call."""
        return self.execute(self.preview(self.scope(scope, constraints, actor, objective, strategy)))

    def execute_single(
        self,
        sku_id: int,
        strategy: Strategy,
        constraints: RebalanceConstraints,
        actor: str,
    ) -> RebalanceRun:
        return self.run(ScopeFilter(mode=ScopeMode.EXPLICIT, sku_ids=(sku_id,)), constraints, actor, strategy=strategy)


# ============================================================================
# Wizard
# ============================================================================

class WizardStep(str, Enum):
    SCOPE = "scope"
    OBJECTIVE = "objective"
    CONSTRAINTS = "constraints"
    PREVIEW = "preview"


_STEP_ORDER = [WizardStep.SCOPE, WizardStep.OBJECTIVE, WizardStep.CONSTRAINTS, WizardStep.PREVIEW]


@dataclass(frozen=True)
class RebalanceWizard:
    """
    Step-by-step rebalance setup. Each transition returns a new wizard;
    the current one is never modified, so any step can be replayed.
    """
    step: WizardStep = WizardStep.SCOPE
    scope: Optional[ScopeFilter] = None
    objective: Optional[Objective] = None
    constraints: Optional[RebalanceConstraints] = None
    run: Optional[RebalanceRun] = field(default=None, compare=False)

    def _expect(self, step: WizardStep) -> None:
        if self.step != step:
            raise InvalidTransitionError(
                f"Wizard is at '{self.step.value}', not '{step.value}'",
                step=self.step.value,
            )

    def choose_scope(self, scope: ScopeFilter) -> "RebalanceWizard":
        self._expect(WizardStep.SCOPE)
        return replace(self, scope=scope, step=WizardStep.OBJECTIVE)

    def choose_objective(self, objective: Objective) -> "RebalanceWizard":
        self._expect(WizardStep.OBJECTIVE)
        return replace(self, objective=Objective(objective), step=WizardStep.CONSTRAINTS)

    def set_constraints(self, constraints: RebalanceConstraints) -> "RebalanceWizard":
        self._expect(WizardStep.CONSTRAINTS)
        return replace(self, constraints=constraints, step=WizardStep.PREVIEW)

    def back(self) -> "RebalanceWizard":
        index = _STEP_ORDER.index(self.step)
        if index == 0:
            return self
        return replace(self, step=_STEP_ORDER[index - 1], run=None)

    def preview(self, orchestrator: RebalanceOrchestrator, actor: str) -> "RebalanceWizard":
        self._expect(WizardStep.PREVIEW)
        run = orchestrator.scope(self.scope, self.constraints, actor, objective=self.objective)
        return replace(self, run=orchestrator.preview(run))

    def execute(self, orchestrator: RebalanceOrchestrator) -> RebalanceRun:
        self._expect(WizardStep.PREVIEW)
        if self.run is None:
            raise InvalidTransitionError("Preview the rebalance before executing it")
        return orchestrator.execute(self.run)
