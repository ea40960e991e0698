"""Tests for plan run persistence."""

from unittest.mock import patch

import pytest

from rolloutctl.core.exceptions import PlanNotFoundError, RolloutError
from rolloutctl.rollout.models import PlanStatus, RolloutReport
from rolloutctl.rollout.plans import PlanStore
from rolloutctl.rollout.schema import DeploymentPlan


@pytest.fixture
def store(state_dir) -> PlanStore:
    return PlanStore(state_dir)


def make_plan(plan_id: str = "abc12345") -> DeploymentPlan:
    return DeploymentPlan(id=plan_id, version="2.0", targets=("a", "b"))


class TestPlanStore:
    """Tests for PlanStore."""

    def test_save_and_load(self, store):
        plan = make_plan()

        store.save(plan)
        run = store.load(plan.id)

        assert run.status == PlanStatus.PENDING
        assert run.plan == plan
        assert run.abort_requested is False
        assert run.report is None

    def test_save_twice_rejected(self, store):
        store.save(make_plan())

        with pytest.raises(RolloutError):
            store.save(make_plan())

    def test_load_missing(self, store):
        with pytest.raises(PlanNotFoundError):
            store.load("nope")

    def test_set_status_with_report(self, store):
        plan = make_plan()
        store.save(plan)
        report = RolloutReport(plan_id=plan.id, version="2.0", status=PlanStatus.SUCCEEDED)

        store.set_status(plan.id, PlanStatus.SUCCEEDED, report)

        run = store.load(plan.id)
        assert run.status == PlanStatus.SUCCEEDED
        assert run.report["status"] == "succeeded"
        assert run.updated_at >= run.created_at

    def test_request_abort(self, store):
        plan = make_plan()
        store.save(plan)

        assert store.abort_requested(plan.id) is False
        store.request_abort(plan.id)

        assert store.abort_requested(plan.id) is True
        assert store.abort_requested("unknown") is False

    def test_request_abort_ignored_when_complete(self, store):
        plan = make_plan()
        store.save(plan)
        store.set_status(plan.id, PlanStatus.ABORTED)

        run = store.request_abort(plan.id)

        assert run.abort_requested is False
        assert store.abort_requested(plan.id) is False

    def test_list_filters_and_limits(self, store):
        for i in range(3):
            store.save(make_plan(f"plan{i}"))
        store.set_status("plan1", PlanStatus.RUNNING)

        assert len(store.list()) == 3
        assert [r.id for r in store.list(status=PlanStatus.RUNNING)] == ["plan1"]
        assert len(store.list(limit=2)) == 2

    def test_list_skips_corrupt_files(self, store, state_dir):
        store.save(make_plan())
        (state_dir / "plans" / "broken.json").write_text("{")

        assert [r.id for r in store.list()] == ["abc12345"]

    def test_abort_from_other_process_survives_status_write(self, store, state_dir):
        plan = make_plan()
        store.save(plan)
        other = PlanStore(state_dir)
        read_run = store.load

        def load_then_abort(plan_id):
            run = read_run(plan_id)
            other.request_abort(plan_id)
            return run

        with patch.object(store, "load", side_effect=load_then_abort):
            store.set_status(plan.id, PlanStatus.RUNNING)

        run = store.load(plan.id)
        assert run.status == PlanStatus.RUNNING
        assert run.abort_requested is True
        assert other.abort_requested(plan.id) is True

    def test_final_status_kept_after_abort(self, store, state_dir):
        plan = make_plan()
        store.save(plan)
        PlanStore(state_dir).request_abort(plan.id)
        report = RolloutReport(plan_id=plan.id, version="2.0", status=PlanStatus.ABORTED)

        store.set_status(plan.id, PlanStatus.ABORTED, report)

        run = PlanStore(state_dir).load(plan.id)
        assert run.status == PlanStatus.ABORTED
        assert run.report["status"] == "aborted"
        assert [r.id for r in store.list()] == [plan.id]
