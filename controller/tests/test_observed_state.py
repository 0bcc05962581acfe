"""
Tests for the Observed-State Tracker.

Covers status monotonicity, polling, staleness and drift notification.
"""

import pytest

from converge.errors import TrackerStaleError
from converge.models import (
    HealthState,
    ObservedAttributes,
    ReconcileReason,
    ResourceId,
    ResourceStatus,
)
from converge.services.observed_state import ObservedStateTracker, health_from_observation
from converge.services.work_queue import WorkQueue

WEB = ResourceId(name="web")

RUNNING = ObservedAttributes(exists=True, replicas=3, ready_replicas=3, image="nginx:1.25")


@pytest.fixture
def queue():
    return WorkQueue()


@pytest.fixture
def tracker(managed_system, queue):
    return ObservedStateTracker(managed_system, queue=queue, failure_threshold=3)


class TestHealth:
    """Health derived from an observation."""

    def test_missing_workload_is_unknown(self):
        assert health_from_observation(ObservedAttributes()) == HealthState.UNKNOWN

    def test_all_ready_is_healthy(self):
        assert health_from_observation(RUNNING) == HealthState.HEALTHY

    def test_partially_ready_is_degraded(self):
        observed = RUNNING.model_copy(update={"ready_replicas": 1})
        assert health_from_observation(observed) == HealthState.DEGRADED

    def test_scaled_to_zero_is_healthy(self):
        observed = ObservedAttributes(exists=True, replicas=0, ready_replicas=0)
        assert health_from_observation(observed) == HealthState.HEALTHY


class TestRecord:
    """Status writes."""

    def test_older_generation_is_ignored(self, tracker):
        newer = ResourceStatus.empty(WEB).model_copy(update={"last_reconciled_generation": 2})
        older = ResourceStatus.empty(WEB).model_copy(update={"last_reconciled_generation": 1})

        assert tracker.record(WEB, newer) is True
        assert tracker.record(WEB, older) is False
        assert tracker.get(WEB).last_reconciled_generation == 2

    def test_update_keeps_other_fields(self, tracker):
        tracker.update(WEB, last_reconciled_generation=3, health=HealthState.HEALTHY)
        tracker.update(WEB, message="scaling")

        status = tracker.get(WEB)
        assert status.last_reconciled_generation == 3
        assert status.health == HealthState.HEALTHY
        assert status.message == "scaling"

    def test_get_returns_a_copy(self, tracker):
        tracker.update(WEB, message="original")
        copy = tracker.get(WEB)
        copy.message = "changed"

        assert tracker.get(WEB).message == "original"

    def test_forget(self, tracker):
        tracker.update(WEB, message="x")
        tracker.track(WEB)

        tracker.forget(WEB)

        assert tracker.get(WEB) is None
        assert not tracker.is_tracked(WEB)

    def test_forget_drops_idle_ownership_token(self, tracker):
        token = tracker.ownership(WEB)

        tracker.forget(WEB)

        assert WEB not in tracker._ownership
        assert tracker.ownership(WEB) is not token

    @pytest.mark.asyncio
    async def test_forget_keeps_held_ownership_token(self, tracker):
        token = tracker.ownership(WEB)

        async with token:
            tracker.forget(WEB)
            assert tracker.ownership(WEB) is token


class TestPolling:
    """poll_once against the managed system."""

    @pytest.mark.asyncio
    async def test_poll_records_observation(self, tracker, managed_system):
        managed_system.seed(WEB, RUNNING)

        status = await tracker.poll_once(WEB)

        assert status.observed == RUNNING
        assert status.health == HealthState.HEALTHY
        assert status.consecutive_poll_failures == 0

    @pytest.mark.asyncio
    async def test_poll_keeps_reconciled_generation(self, tracker, managed_system):
        managed_system.seed(WEB, RUNNING)
        tracker.update(WEB, last_reconciled_generation=4)

        status = await tracker.poll_once(WEB)

        assert status.last_reconciled_generation == 4

    @pytest.mark.asyncio
    async def test_three_failures_mark_unknown(self, tracker, managed_system):
        managed_system.seed(WEB, RUNNING)
        await tracker.poll_once(WEB)
        managed_system.poll_error = ConnectionError("apiserver unreachable")

        assert await tracker.poll_once(WEB) is None
        assert await tracker.poll_once(WEB) is None
        assert tracker.get(WEB).health == HealthState.HEALTHY

        with pytest.raises(TrackerStaleError) as exc_info:
            await tracker.poll_once(WEB)

        assert exc_info.value.consecutive_failures == 3
        status = tracker.get(WEB)
        assert status.health == HealthState.UNKNOWN
        assert status.consecutive_poll_failures == 3
        # Last known observation is kept
        assert status.observed == RUNNING

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, tracker, managed_system):
        managed_system.seed(WEB, RUNNING)
        managed_system.poll_error = TimeoutError("slow")
        await tracker.poll_once(WEB)
        await tracker.poll_once(WEB)

        managed_system.poll_error = None
        status = await tracker.poll_once(WEB)

        assert status.consecutive_poll_failures == 0
        assert status.health == HealthState.HEALTHY

    @pytest.mark.asyncio
    async def test_poll_is_skipped_while_reconciling(self, tracker, managed_system):
        managed_system.seed(WEB, RUNNING)

        async with tracker.ownership(WEB):
            assert await tracker.poll_once(WEB) is None

        assert managed_system.polls == 0


class TestDrift:
    """Observed changes queue an external-drift reconcile."""

    @pytest.mark.asyncio
    async def test_changed_observation_enqueues_drift(self, tracker, managed_system, queue):
        managed_system.seed(WEB, RUNNING)
        await tracker.poll_once(WEB)
        queue.discard(WEB)

        managed_system.mutate(WEB, replicas=1)
        await tracker.poll_once(WEB)

        assert queue.pending_reason(WEB) == ReconcileReason.EXTERNAL_DRIFT

    @pytest.mark.asyncio
    async def test_readiness_change_is_not_drift(self, tracker, managed_system, queue):
        managed_system.seed(WEB, RUNNING)
        await tracker.poll_once(WEB)
        queue.discard(WEB)

        managed_system.mutate(WEB, ready_replicas=2)
        status = await tracker.poll_once(WEB)

        assert not queue.is_pending(WEB)
        assert status.health == HealthState.DEGRADED

    @pytest.mark.asyncio
    async def test_unchanged_observation_enqueues_nothing(self, tracker, managed_system, queue):
        await tracker.poll_once(WEB)
        assert queue.depth == 0


class TestSchedule:
    """Per-resource poll intervals."""

    def test_tracked_resource_is_due_immediately_then_on_interval(self, managed_system):
        now = [100.0]
        tracker = ObservedStateTracker(managed_system, clock=lambda: now[0])

        tracker.track(WEB, 5.0)
        assert tracker._due() == [WEB]
        assert tracker._due() == []

        now[0] = 105.0
        assert tracker._due() == [WEB]

    def test_default_interval_is_used(self, managed_system):
        now = [0.0]
        tracker = ObservedStateTracker(managed_system, default_poll_interval=10.0, clock=lambda: now[0])
        tracker.track(WEB)
        tracker._due()

        now[0] = 9.0
        assert tracker._due() == []
        now[0] = 10.0
        assert tracker._due() == [WEB]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
