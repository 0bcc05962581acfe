"""
Tests for the differ.

Covers:
- Creation plans for never-observed resources
- Determinism and idempotence (applying the plan yields an empty diff)
- Ordering: additive before destructive, then ACTION_PRIORITY, then key
"""

import pytest

from converge.models import (
    Action,
    ActionType,
    ObservedAttributes,
    ResourceSpec,
    ResourceStatus,
)
from converge.services.differ import ACTION_PRIORITY, apply_action, diff

from conftest import web_spec


def status_with(spec: ResourceSpec, **observed) -> ResourceStatus:
    return ResourceStatus(
        namespace=spec.namespace,
        kind=spec.kind,
        name=spec.name,
        observed=ObservedAttributes(**observed),
    )


def converged_status(spec: ResourceSpec) -> ResourceStatus:
    return status_with(
        spec,
        exists=True,
        replicas=spec.replicas,
        ready_replicas=spec.replicas,
        image=spec.image,
        labels=dict(spec.labels),
        env=dict(spec.env),
        limits=dict(spec.limits),
    )


class TestCreation:
    """Resources that do not exist yet."""

    def test_empty_status_produces_create_first(self):
        spec = ResourceSpec(**web_spec())

        actions = diff(spec, None)

        assert actions
        assert actions[0].type == ActionType.CREATE
        assert actions[0].value == {"image": "nginx:1.25"}

    def test_create_plan_is_deterministic(self):
        spec = ResourceSpec(**web_spec())

        assert diff(spec, None) == diff(spec, None)
        assert diff(spec, None) == diff(spec, ResourceStatus.empty(spec.id))

    def test_create_plan_fills_in_every_field(self):
        spec = ResourceSpec(**web_spec())

        types = [action.type for action in diff(spec, None)]

        assert types == [
            ActionType.CREATE,
            ActionType.SET_LABEL,
            ActionType.SET_ENV,
            ActionType.SET_LIMIT,
            ActionType.SET_LIMIT,
            ActionType.SET_REPLICAS,
        ]
        # Image is set by create itself
        assert ActionType.SET_IMAGE not in types

    def test_create_plan_has_nothing_destructive(self):
        spec = ResourceSpec(**web_spec())
        assert not any(action.destructive for action in diff(spec, None))

    def test_zero_replicas_needs_no_scale(self):
        spec = ResourceSpec(**web_spec(replicas=0, labels={}, env={}, limits={}))

        actions = diff(spec, None)

        assert [action.type for action in actions] == [ActionType.CREATE]


class TestIdempotence:
    """Applying a plan converges the observation."""

    def test_converged_status_has_empty_diff(self):
        spec = ResourceSpec(**web_spec())
        assert diff(spec, converged_status(spec)) == []

    def test_applying_the_plan_yields_empty_diff(self):
        spec = ResourceSpec(**web_spec())

        observed = ObservedAttributes()
        for action in diff(spec, None):
            observed = apply_action(observed, action)

        status = ResourceStatus(namespace="default", kind="Deployment", name="web", observed=observed)
        assert diff(spec, status) == []

    def test_applying_a_drift_plan_yields_empty_diff(self):
        spec = ResourceSpec(**web_spec())
        status = status_with(
            spec,
            exists=True,
            replicas=7,
            image="nginx:1.24",
            labels={"app": "web", "team": "ops"},
            env={"MODE": "dev", "DEBUG": "1"},
            limits={"cpu": "1"},
        )

        observed = status.observed
        for action in diff(spec, status):
            observed = apply_action(observed, action)

        assert diff(spec, status.model_copy(update={"observed": observed})) == []

    def test_unmanaged_image_is_left_alone(self):
        spec = ResourceSpec(**web_spec(image=None))
        status = converged_status(spec).model_copy(
            update={"observed": converged_status(spec).observed.model_copy(update={"image": "whatever:1"})}
        )

        assert diff(spec, status) == []

    @pytest.mark.parametrize("submitted,reported", [
        ({"cpu": "0.5"}, {"cpu": "500m"}),
        ({"memory": "1024Mi"}, {"memory": "1Gi"}),
        ({"cpu": "1000m", "memory": "1.5Gi"}, {"cpu": "1", "memory": "1536Mi"}),
    ])
    def test_equivalent_quantities_have_empty_diff(self, submitted, reported):
        spec = ResourceSpec(**web_spec(limits=submitted))
        status = status_with(
            spec,
            exists=True,
            replicas=spec.replicas,
            ready_replicas=spec.replicas,
            image=spec.image,
            labels=dict(spec.labels),
            env=dict(spec.env),
            limits=reported,
        )

        assert diff(spec, status) == []


class TestOrdering:
    """Deterministic, additive-first ordering."""

    def test_scale_up_is_a_single_additive_action(self):
        spec = ResourceSpec(**web_spec(replicas=3))
        status = converged_status(spec)
        status = status.model_copy(update={"observed": status.observed.model_copy(update={"replicas": 2})})

        assert diff(spec, status) == [Action(type=ActionType.SET_REPLICAS, value=3)]

    def test_scale_down_is_destructive_and_last(self):
        spec = ResourceSpec(**web_spec(replicas=1, image="nginx:1.26"))
        status = converged_status(ResourceSpec(**web_spec(replicas=3)))

        actions = diff(spec, status)

        assert [a.type for a in actions] == [ActionType.SET_IMAGE, ActionType.SET_REPLICAS]
        assert actions[0].destructive is False
        assert actions[1].destructive is True
        assert actions[1].value == 1

    def test_removals_follow_additions(self):
        spec = ResourceSpec(**web_spec(labels={"app": "web", "tier": "frontend"}))
        status = converged_status(spec)
        status = status.model_copy(update={
            "observed": status.observed.model_copy(update={"labels": {"app": "web", "stale": "x"}})
        })

        actions = diff(spec, status)

        assert actions == [
            Action(type=ActionType.SET_LABEL, key="tier", value="frontend"),
            Action(type=ActionType.REMOVE_LABEL, key="stale", destructive=True),
        ]

    def test_ties_are_broken_by_key(self):
        spec = ResourceSpec(**web_spec(env={"B": "2", "A": "1", "C": "3"}))
        status = converged_status(spec)
        status = status.model_copy(update={"observed": status.observed.model_copy(update={"env": {}})})

        keys = [action.key for action in diff(spec, status)]

        assert keys == ["A", "B", "C"]

    def test_every_action_type_has_a_priority(self):
        assert set(ACTION_PRIORITY) == set(ActionType)

    def test_additive_group_follows_priority_order(self):
        spec = ResourceSpec(**web_spec(replicas=5, image="nginx:1.26"))
        status = status_with(spec, exists=True, replicas=3, image="nginx:1.25")

        actions = diff(spec, status)
        indexes = [ACTION_PRIORITY.index(action.type) for action in actions]

        assert indexes == sorted(indexes)
        assert actions[-1] == Action(type=ActionType.SET_REPLICAS, value=5)


class TestApplyAction:
    """Projection of actions onto observations."""

    def test_create_starts_empty(self):
        observed = apply_action(ObservedAttributes(), Action(type=ActionType.CREATE, value={"image": "redis:7"}))

        assert observed.exists is True
        assert observed.replicas == 0
        assert observed.image == "redis:7"
        assert observed.labels == {}

    def test_remove_missing_key_is_noop(self):
        before = ObservedAttributes(exists=True, replicas=1, env={"A": "1"})
        after = apply_action(before, Action(type=ActionType.REMOVE_ENV, key="B", destructive=True))

        assert after.env == {"A": "1"}

    def test_projection_does_not_mutate_input(self):
        before = ObservedAttributes(exists=True, replicas=1, labels={"app": "web"})
        apply_action(before, Action(type=ActionType.SET_LABEL, key="tier", value="db"))

        assert before.labels == {"app": "web"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
