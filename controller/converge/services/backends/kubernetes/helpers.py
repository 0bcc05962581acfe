"""
Kubernetes Helper Functions

Manifest construction, attribute extraction and error classification for the
Kubernetes backend. Kept free of API calls so they can be unit tested without
a cluster.
"""

from typing import Dict, Optional

from kubernetes import client

from ....models import ObservedAttributes, ResourceId

# Status codes worth retrying: conflicts (stale resourceVersion), throttling,
# and server-side/transport failures. Everything else is a problem with the
# request itself and will not go away on its own.
TRANSIENT_STATUS_CODES = frozenset({0, 408, 409, 429, 500, 502, 503, 504})


def is_transient_status(status: Optional[int]) -> bool:
    """Classify an ApiException status code."""
    if status is None:
        return True
    return status in TRANSIENT_STATUS_CODES or status >= 500


def get_standard_labels(name: str, managed_by: str = "converge") -> Dict[str, str]:
    """
    Get standard selector labels for a workload created by the controller.

    Args:
        name: Workload name
        managed_by: Value for app.kubernetes.io/managed-by

    Returns:
        Dict of labels
    """
    return {
        "app.kubernetes.io/name": name,
        "app.kubernetes.io/managed-by": managed_by,
    }


def create_workload_manifest(
    resource_id: ResourceId,
    image: str,
    container_name: Optional[str] = None,
    managed_by: str = "converge",
):
    """
    Create a minimal Deployment or StatefulSet manifest.

    The workload starts with zero replicas and no metadata labels; the
    reconciler's follow-up actions set labels, env, limits and replicas, so
    creation and every later edit go through the same code paths.

    Args:
        resource_id: Target resource (kind selects the manifest type)
        image: Container image
        container_name: Container name (defaults to the workload name)
        managed_by: Value for app.kubernetes.io/managed-by on pod labels

    Returns:
        V1Deployment or V1StatefulSet manifest
    """
    pod_labels = get_standard_labels(resource_id.name, managed_by)
    selector_labels = {"app.kubernetes.io/name": resource_id.name}

    template = client.V1PodTemplateSpec(
        metadata=client.V1ObjectMeta(labels=pod_labels),
        spec=client.V1PodSpec(
            containers=[
                client.V1Container(
                    name=container_name or resource_id.name,
                    image=image,
                )
            ]
        ),
    )
    metadata = client.V1ObjectMeta(name=resource_id.name, namespace=resource_id.namespace)

    if resource_id.kind == "StatefulSet":
        return client.V1StatefulSet(
            api_version="apps/v1",
            kind="StatefulSet",
            metadata=metadata,
            spec=client.V1StatefulSetSpec(
                replicas=0,
                service_name=resource_id.name,
                selector=client.V1LabelSelector(match_labels=selector_labels),
                template=template,
            ),
        )

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=metadata,
        spec=client.V1DeploymentSpec(
            replicas=0,
            selector=client.V1LabelSelector(match_labels=selector_labels),
            template=template,
        ),
    )


def select_container(workload, container_name: Optional[str] = None):
    """Return the managed container of a workload, or None."""
    containers = workload.spec.template.spec.containers or []
    if not containers:
        return None
    if container_name is None:
        return containers[0]
    for container in containers:
        if container.name == container_name:
            return container
    return None


def observed_from_workload(workload, container_name: Optional[str] = None) -> ObservedAttributes:
    """
    Extract observed attributes from a Deployment/StatefulSet object.

    Args:
        workload: V1Deployment or V1StatefulSet as returned by the API
        container_name: Managed container (None = first)

    Returns:
        ObservedAttributes with exists=True
    """
    container = select_container(workload, container_name)

    limits: Dict[str, str] = {}
    env: Dict[str, str] = {}
    image = None
    if container is not None:
        image = container.image
        if container.resources is not None and container.resources.limits:
            limits = {k: str(v) for k, v in container.resources.limits.items()}
        # Only literal values are comparable; valueFrom entries are left alone
        env = {e.name: e.value for e in (container.env or []) if e.value is not None}

    ready = 0
    if workload.status is not None and workload.status.ready_replicas:
        ready = workload.status.ready_replicas

    return ObservedAttributes(
        exists=True,
        replicas=workload.spec.replicas,
        ready_replicas=ready,
        image=image,
        limits=limits,
        labels=dict(workload.metadata.labels or {}),
        env=env,
    )


def set_container_env(container, name: str, value: Optional[str]) -> None:
    """Set (value) or remove (None) one literal environment variable."""
    env = [e for e in (container.env or []) if e.name != name]
    if value is not None:
        env.append(client.V1EnvVar(name=name, value=value))
    container.env = env or None


def set_container_limit(container, resource: str, quantity: Optional[str]) -> None:
    """Set (quantity) or remove (None) one resource limit."""
    if container.resources is None:
        container.resources = client.V1ResourceRequirements()
    limits = dict(container.resources.limits or {})
    if quantity is None:
        limits.pop(resource, None)
    else:
        limits[resource] = quantity
    container.resources.limits = limits or None
