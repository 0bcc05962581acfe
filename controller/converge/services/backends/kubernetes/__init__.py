"""
Kubernetes Backend

- KubernetesManagedSystem: applies actions to Deployments/StatefulSets
- Helpers: manifest construction, attribute extraction, error classification
"""

from .client import KubernetesManagedSystem, get_k8s_managed_system
from .helpers import (
    create_workload_manifest,
    get_standard_labels,
    is_transient_status,
    observed_from_workload,
)

__all__ = [
    "KubernetesManagedSystem",
    "get_k8s_managed_system",
    "create_workload_manifest",
    "get_standard_labels",
    "is_transient_status",
    "observed_from_workload",
]
