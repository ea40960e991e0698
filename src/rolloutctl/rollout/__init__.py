"""Deployment state reconciliation."""

from rolloutctl.rollout.coordinator import RolloutCoordinator
from rolloutctl.rollout.models import (
    Artifact,
    FailureKind,
    HealthStatus,
    PlanStatus,
    ReconciliationRecord,
    RolloutReport,
    Target,
    TargetResult,
    TargetState,
)
from rolloutctl.rollout.plans import PlanStore
from rolloutctl.rollout.reconciler import ReconcileOptions, Reconciler
from rolloutctl.rollout.registry import TargetRegistry
from rolloutctl.rollout.schema import DeploymentPlan, RolloutPolicy, load_plan, plan_batches

__all__ = [
    "Artifact",
    "DeploymentPlan",
    "FailureKind",
    "HealthStatus",
    "PlanStatus",
    "PlanStore",
    "ReconcileOptions",
    "Reconciler",
    "ReconciliationRecord",
    "RolloutCoordinator",
    "RolloutPolicy",
    "RolloutReport",
    "Target",
    "TargetRegistry",
    "TargetResult",
    "TargetState",
    "load_plan",
    "plan_batches",
]
