"""Deployment plan schema validation."""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from rolloutctl.core.exceptions import PlanValidationError
from rolloutctl.core.utils import chunks, merge_dicts


class TimeoutPolicy(BaseModel):
    """Bounds, in seconds, on every external call made during a rollout."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    resolve: float = Field(default=30.0, gt=0)
    install: float = Field(default=600.0, gt=0)
    probe: float = Field(default=10.0, gt=0)


class RolloutPolicy(BaseModel):
    """How a plan is split into batches and when it gives up.

    Every recognized option is listed here; unknown keys are rejected.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    batch_size: int = Field(default=5, ge=1)
    max_parallel: int = Field(default=5, ge=1)
    failure_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    canary_size: int = Field(default=1, ge=1)
    canary: tuple[str, ...] | None = None
    attempt_budget: int = Field(default=3, ge=1)
    resolve_attempts: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=1.0, ge=0.0)
    backoff_max: float = Field(default=30.0, ge=0.0)
    timeouts: TimeoutPolicy = Field(default_factory=TimeoutPolicy)

    @field_validator("failure_threshold", mode="before")
    @classmethod
    def parse_percentage(cls, v: Any) -> Any:
        # "10%" -> 0.10
        if isinstance(v, str) and v.strip().endswith("%"):
            try:
                return float(v.strip()[:-1]) / 100.0
            except ValueError:
                raise ValueError(f"invalid percentage: {v!r}")
        return v

    @field_validator("canary")
    @classmethod
    def validate_canary(cls, v: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if v is None:
            return v
        if not v:
            raise ValueError("canary must list at least one target when given")
        if len(set(v)) != len(v):
            raise ValueError("canary contains duplicate target ids")
        return v

    @model_validator(mode="after")
    def validate_backoff(self) -> "RolloutPolicy":
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")
        return self


class DeploymentPlan(BaseModel):
    """Desired version, targets and policy for one rollout invocation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    version: str
    targets: tuple[str, ...]
    policy: RolloutPolicy = Field(default_factory=RolloutPolicy)
    force: bool = False
    description: str = ""

    @field_validator("version", mode="before")
    @classmethod
    def validate_version(cls, v: Any) -> Any:
        # YAML reads an unquoted 2.5 as a float
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str):
            return v
        v = v.strip()
        if not v:
            raise ValueError("version must not be empty")
        return v

    @field_validator("targets")
    @classmethod
    def validate_targets(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise ValueError("plan must list at least one target")
        if any(not t or not t.strip() for t in v):
            raise ValueError("target ids must not be empty")
        seen: set[str] = set()
        duplicates: set[str] = set()
        for target_id in v:
            if target_id in seen:
                duplicates.add(target_id)
            seen.add(target_id)
        if duplicates:
            raise ValueError(f"duplicate target ids: {', '.join(sorted(duplicates))}")
        return v

    @model_validator(mode="after")
    def validate_canary_subset(self) -> "DeploymentPlan":
        if self.policy.canary:
            unknown = [t for t in self.policy.canary if t not in self.targets]
            if unknown:
                raise ValueError(f"canary targets not in plan: {', '.join(unknown)}")
        return self


def plan_batches(plan: DeploymentPlan) -> list[list[str]]:
    """Split plan targets into the ordered batch sequence.

    The canary batch comes first, then the remaining targets in
    ``batch_size`` chunks. Plan order is preserved within every batch.
    """
    policy = plan.policy
    if policy.canary:
        canary_ids = set(policy.canary)
        canary = [t for t in plan.targets if t in canary_ids]
    else:
        canary = list(plan.targets[: policy.canary_size])

    chosen = set(canary)
    rest = [t for t in plan.targets if t not in chosen]

    return [canary] + chunks(rest, policy.batch_size)


def _format_errors(error: PydanticValidationError) -> list[str]:
    messages = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"]) or "plan"
        messages.append(f"{location}: {err['msg']}")
    return messages


def validate_plan(
    plan_dict: dict[str, Any],
    policy_defaults: dict[str, Any] | None = None,
) -> DeploymentPlan:
    """Validate a plan dictionary against the schema.

    Args:
        plan_dict: Dictionary representation of the plan
        policy_defaults: Profile policy values applied under the plan's own policy

    Returns:
        Validated DeploymentPlan

    Raises:
        PlanValidationError: If validation fails
    """
    if not isinstance(plan_dict, dict):
        raise PlanValidationError("Plan must be a mapping", errors=["plan: expected a mapping"])

    data = dict(plan_dict)
    if policy_defaults:
        policy = data.get("policy") or {}
        if not isinstance(policy, dict):
            raise PlanValidationError("Invalid plan", errors=["policy: expected a mapping"])
        data["policy"] = merge_dicts(policy_defaults, policy)

    try:
        return DeploymentPlan.model_validate(data)
    except PydanticValidationError as e:
        raise PlanValidationError("Invalid plan", errors=_format_errors(e))


def load_plan(
    path: str | Path,
    policy_defaults: dict[str, Any] | None = None,
) -> DeploymentPlan:
    """Load and validate a plan file (YAML or JSON)."""
    plan_path = Path(path)
    try:
        text = plan_path.read_text()
    except OSError as e:
        raise PlanValidationError(f"Cannot read plan file {plan_path}", errors=[str(e)])

    try:
        if plan_path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise PlanValidationError(f"Cannot parse plan file {plan_path}", errors=[str(e)])

    return validate_plan(data or {}, policy_defaults)
