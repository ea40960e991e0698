"""Tests for deployment plan validation and batching."""

import json
from pathlib import Path

import pytest
import yaml

from rolloutctl.core.exceptions import PlanValidationError
from rolloutctl.rollout.schema import (
    DeploymentPlan,
    RolloutPolicy,
    load_plan,
    plan_batches,
    validate_plan,
)


class TestValidatePlan:
    """Tests for validate_plan."""

    def test_minimal_plan(self):
        plan = validate_plan({"version": "2.0", "targets": ["a", "b"]})

        assert plan.version == "2.0"
        assert plan.targets == ("a", "b")
        assert plan.policy.failure_threshold == 0.0
        assert plan.policy.canary_size == 1
        assert plan.force is False
        assert len(plan.id) == 8

    def test_numeric_version_coerced(self):
        plan = validate_plan({"version": 2.5, "targets": ["a"]})

        assert plan.version == "2.5"

    def test_percentage_threshold(self):
        plan = validate_plan(
            {"version": "2.0", "targets": ["a"], "policy": {"failure_threshold": "10%"}}
        )

        assert plan.policy.failure_threshold == pytest.approx(0.10)

    @pytest.mark.parametrize(
        "data",
        [
            {"targets": ["a"]},
            {"version": "", "targets": ["a"]},
            {"version": "2.0", "targets": []},
            {"version": "2.0", "targets": ["a", "a"]},
            {"version": "2.0", "targets": ["a"], "policy": {"batch_size": 0}},
            {"version": "2.0", "targets": ["a"], "policy": {"failure_threshold": 1.5}},
            {"version": "2.0", "targets": ["a"], "policy": {"failure_threshold": "abc%"}},
            {"version": "2.0", "targets": ["a"], "policy": {"parallelism": 4}},
            {"version": "2.0", "targets": ["a"], "policy": {"backoff_base": 5, "backoff_max": 1}},
            {"version": "2.0", "targets": ["a"], "extra": True},
        ],
    )
    def test_invalid_plans(self, data):
        with pytest.raises(PlanValidationError) as exc_info:
            validate_plan(data)

        assert exc_info.value.errors

    def test_errors_name_the_field(self):
        with pytest.raises(PlanValidationError) as exc_info:
            validate_plan({"version": "2.0", "targets": ["a"], "policy": {"max_parallel": 0}})

        assert any(e.startswith("policy.max_parallel") for e in exc_info.value.errors)

    def test_canary_must_be_subset(self):
        with pytest.raises(PlanValidationError) as exc_info:
            validate_plan({"version": "2.0", "targets": ["a"], "policy": {"canary": ["z"]}})

        assert "z" in str(exc_info.value)

    def test_not_a_mapping(self):
        with pytest.raises(PlanValidationError):
            validate_plan(["version", "2.0"])

    def test_policy_defaults_merge_under_plan(self):
        defaults = {"batch_size": 10, "failure_threshold": 0.2, "timeouts": {"install": 120, "probe": 3}}
        plan = validate_plan(
            {"version": "2.0", "targets": ["a"], "policy": {"batch_size": 2, "timeouts": {"probe": 5}}},
            policy_defaults=defaults,
        )

        assert plan.policy.batch_size == 2
        assert plan.policy.failure_threshold == pytest.approx(0.2)
        assert plan.policy.timeouts.install == 120
        assert plan.policy.timeouts.probe == 5

    def test_plan_is_immutable(self):
        plan = validate_plan({"version": "2.0", "targets": ["a"]})

        with pytest.raises(Exception):
            plan.version = "3.0"


class TestPlanBatches:
    """Tests for plan_batches."""

    def _plan(self, targets, **policy) -> DeploymentPlan:
        return DeploymentPlan(version="2.0", targets=tuple(targets), policy=RolloutPolicy(**policy))

    def test_canary_then_chunks(self):
        targets = [f"t{i}" for i in range(8)]

        batches = plan_batches(self._plan(targets, canary_size=2, batch_size=3))

        assert batches == [["t0", "t1"], ["t2", "t3", "t4"], ["t5", "t6", "t7"]]

    def test_explicit_canary_keeps_plan_order(self):
        batches = plan_batches(self._plan(["a", "b", "c", "d"], canary=("d", "b"), batch_size=5))

        assert batches == [["b", "d"], ["a", "c"]]

    def test_canary_covers_whole_plan(self):
        assert plan_batches(self._plan(["a", "b"], canary_size=5)) == [["a", "b"]]

    def test_every_target_once(self):
        targets = [f"t{i}" for i in range(23)]

        batches = plan_batches(self._plan(targets, canary_size=3, batch_size=4))

        flat = [t for batch in batches for t in batch]
        assert flat == targets


class TestLoadPlan:
    """Tests for load_plan."""

    def test_load_yaml(self, tmp_path: Path):
        path = tmp_path / "plan.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "version": "1.4.2",
                    "description": "spring release",
                    "targets": ["site-a", "site-b"],
                    "policy": {"batch_size": 1, "timeouts": {"install": 60}},
                }
            )
        )

        plan = load_plan(path)

        assert plan.description == "spring release"
        assert plan.policy.timeouts.install == 60
        assert plan.policy.timeouts.resolve == 30.0

    def test_load_json(self, tmp_path: Path):
        path = tmp_path / "plan.json"
        path.write_text(json.dumps({"version": "2.0", "targets": ["a"], "force": True}))

        plan = load_plan(path)

        assert plan.force is True

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(PlanValidationError):
            load_plan(tmp_path / "missing.yaml")

    def test_unparseable_file(self, tmp_path: Path):
        path = tmp_path / "plan.yaml"
        path.write_text("version: [2.0\n")

        with pytest.raises(PlanValidationError):
            load_plan(path)
