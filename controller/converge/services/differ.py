"""
Differ

Compares a ResourceSpec with the last known ResourceStatus and produces the
ordered list of corrective actions that closes the gap.

Ordering is deterministic:
1. Additive actions before destructive ones (scale-down, removals)
2. Within each group, the fixed ACTION_PRIORITY order
3. Then by key
"""

from typing import Dict, List, Optional

from ..models import (
    Action,
    ActionType,
    ObservedAttributes,
    ResourceSpec,
    ResourceStatus,
)

ACTION_PRIORITY: List[ActionType] = [
    ActionType.CREATE,
    ActionType.SET_LABEL,
    ActionType.SET_ENV,
    ActionType.SET_LIMIT,
    ActionType.SET_IMAGE,
    ActionType.SET_REPLICAS,
    ActionType.REMOVE_LIMIT,
    ActionType.REMOVE_ENV,
    ActionType.REMOVE_LABEL,
]

_PRIORITY_INDEX = {action_type: index for index, action_type in enumerate(ACTION_PRIORITY)}

# (set action, remove action, ObservedAttributes/ResourceSpec field)
_MAPPED_FIELDS = (
    (ActionType.SET_LABEL, ActionType.REMOVE_LABEL, "labels"),
    (ActionType.SET_ENV, ActionType.REMOVE_ENV, "env"),
    (ActionType.SET_LIMIT, ActionType.REMOVE_LIMIT, "limits"),
)


def action_sort_key(action: Action):
    return (action.destructive, _PRIORITY_INDEX[action.type], action.key or "")


def _diff_mapping(
    desired: Dict[str, str],
    observed: Dict[str, str],
    set_type: ActionType,
    remove_type: ActionType,
) -> List[Action]:
    actions = []
    for key, value in desired.items():
        if observed.get(key) != value:
            actions.append(Action(type=set_type, key=key, value=value))
    for key in observed:
        if key not in desired:
            actions.append(Action(type=remove_type, key=key, destructive=True))
    return actions


def diff(spec: ResourceSpec, status: Optional[ResourceStatus]) -> List[Action]:
    """
    Compute the actions that drive `status` toward `spec`.

    Args:
        spec: Accepted desired state
        status: Last known status, or None if the resource was never observed

    Returns:
        Ordered list of actions; empty when nothing needs to change
    """
    observed = status.observed if status is not None else ObservedAttributes()
    actions: List[Action] = []

    if not observed.exists:
        # A freshly created workload starts empty; the field actions below fill it in
        actions.append(Action(type=ActionType.CREATE, value={"image": spec.image}))
        observed = apply_action(observed, actions[0])

    for set_type, remove_type, field_name in _MAPPED_FIELDS:
        actions.extend(
            _diff_mapping(
                getattr(spec, field_name),
                getattr(observed, field_name),
                set_type,
                remove_type,
            )
        )

    if spec.image is not None and observed.image != spec.image:
        actions.append(Action(type=ActionType.SET_IMAGE, value=spec.image))

    if observed.replicas != spec.replicas:
        scaling_down = observed.replicas is not None and spec.replicas < observed.replicas
        actions.append(
            Action(type=ActionType.SET_REPLICAS, value=spec.replicas, destructive=scaling_down)
        )

    return sorted(actions, key=action_sort_key)


def apply_action(observed: ObservedAttributes, action: Action) -> ObservedAttributes:
    """Project the effect of a successful action onto an observation."""
    if action.type == ActionType.CREATE:
        payload = action.value or {}
        return ObservedAttributes(exists=True, replicas=0, ready_replicas=0, image=payload.get("image"))

    if action.type == ActionType.SET_IMAGE:
        return observed.model_copy(update={"image": action.value})

    if action.type == ActionType.SET_REPLICAS:
        return observed.model_copy(update={"replicas": action.value})

    for set_type, remove_type, field_name in _MAPPED_FIELDS:
        if action.type in (set_type, remove_type):
            mapping = dict(getattr(observed, field_name))
            if action.type == set_type:
                mapping[action.key] = action.value
            else:
                mapping.pop(action.key, None)
            return observed.model_copy(update={field_name: mapping})

    raise ValueError(f"Unknown action type: {action.type}")
