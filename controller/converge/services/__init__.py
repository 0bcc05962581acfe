"""
Controller services, leaves first:

- DesiredStateStore: latest accepted spec per resource
- ObservedStateTracker: last known status per resource, refreshed by polling
- diff: spec + status -> ordered actions
- Reconciler: applies actions with retry/backoff
- SchedulerLoop + WorkQueue: worker pool, coalescing, periodic resync
- Controller: the wired-up whole
"""

from .controller import Controller, get_controller
from .desired_state import DesiredStateStore, validate_spec
from .differ import ACTION_PRIORITY, apply_action, diff
from .manifests import load_manifests, spec_from_manifest
from .metrics import ControllerMetrics
from .observed_state import ObservedStateTracker
from .reconciler import ReconcileRecord, Reconciler
from .scheduler import SchedulerLoop
from .work_queue import WorkQueue

__all__ = [
    "Controller",
    "get_controller",
    "DesiredStateStore",
    "validate_spec",
    "ACTION_PRIORITY",
    "apply_action",
    "diff",
    "load_manifests",
    "spec_from_manifest",
    "ControllerMetrics",
    "ObservedStateTracker",
    "ReconcileRecord",
    "Reconciler",
    "SchedulerLoop",
    "WorkQueue",
]
