"""
Kubernetes Managed System

Applies reconciler actions to Deployments and StatefulSets through the
Kubernetes API server and reads their live state back.

Blocking client calls run in worker threads (asyncio.to_thread) so one slow
API request never stalls the event loop.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from ....errors import BackendError
from ....models import Action, ActionResult, ActionType, ObservedAttributes, ResourceId
from ..backend_mode import BackendMode
from ..base import ManagedSystem
from .helpers import (
    create_workload_manifest,
    is_transient_status,
    observed_from_workload,
    select_container,
    set_container_env,
    set_container_limit,
)

logger = logging.getLogger(__name__)

_CONTAINER_ACTIONS = {
    ActionType.SET_IMAGE,
    ActionType.SET_ENV,
    ActionType.REMOVE_ENV,
    ActionType.SET_LIMIT,
    ActionType.REMOVE_LIMIT,
}


class KubernetesManagedSystem(ManagedSystem):
    """
    Reconciles workloads on a Kubernetes cluster.

    Action mapping:
    - create: create the workload with zero replicas (409 counts as success)
    - set_replicas: patch the scale subresource
    - set_label/remove_label: strategic merge patch of metadata.labels
    - image/env/limit actions: read, edit the managed container, replace
      (a stale resourceVersion surfaces as 409 and is retried)
    """

    def __init__(self, settings=None, apps_v1: Optional[client.AppsV1Api] = None):
        """Initialize Kubernetes client with in-cluster or kubeconfig."""
        if settings is None:
            from ....config import get_settings
            settings = get_settings()
        self.settings = settings

        if apps_v1 is None:
            try:
                # Try in-cluster config first (for production)
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes configuration")
            except config.ConfigException:
                try:
                    # Fall back to kubeconfig (for development)
                    config.load_kube_config()
                    logger.info("Loaded kubeconfig for development")
                except config.ConfigException as e:
                    logger.error(f"Failed to load Kubernetes config: {e}")
                    raise BackendError("Cannot load Kubernetes configuration") from e
            apps_v1 = client.AppsV1Api()

        self.apps_v1 = apps_v1
        self.container_name = settings.k8s_container_name
        self.field_manager = settings.k8s_field_manager
        self.managed_by = settings.k8s_managed_by_label

        logger.info(f"[K8S] Kubernetes managed system initialized - field manager: {self.field_manager}")

    @property
    def backend_mode(self) -> BackendMode:
        return BackendMode.KUBERNETES

    def _api(self, kind: str) -> Dict[str, Callable[..., Any]]:
        """API methods for a workload kind."""
        if kind == "StatefulSet":
            return {
                "read": self.apps_v1.read_namespaced_stateful_set,
                "create": self.apps_v1.create_namespaced_stateful_set,
                "patch": self.apps_v1.patch_namespaced_stateful_set,
                "replace": self.apps_v1.replace_namespaced_stateful_set,
                "scale": self.apps_v1.patch_namespaced_stateful_set_scale,
            }
        return {
            "read": self.apps_v1.read_namespaced_deployment,
            "create": self.apps_v1.create_namespaced_deployment,
            "patch": self.apps_v1.patch_namespaced_deployment,
            "replace": self.apps_v1.replace_namespaced_deployment,
            "scale": self.apps_v1.patch_namespaced_deployment_scale,
        }

    # =========================================================================
    # ACTIONS
    # =========================================================================

    async def apply_action(self, resource_id: ResourceId, action: Action) -> ActionResult:
        started = time.monotonic()
        try:
            result = await self._dispatch(resource_id, action)
        except ApiException as e:
            message = f"{action.describe()} on {resource_id} failed: {e.status} {e.reason}"
            if is_transient_status(e.status):
                logger.warning(f"[K8S] {message} (transient)")
                result = ActionResult.transient(message)
            else:
                logger.error(f"[K8S] {message}")
                result = ActionResult.permanent(message)
        except (Urllib3HTTPError, ConnectionError, TimeoutError) as e:
            message = f"{action.describe()} on {resource_id} failed: {type(e).__name__}: {e}"
            logger.warning(f"[K8S] {message} (transient)")
            result = ActionResult.transient(message)

        result.latency_seconds = time.monotonic() - started
        return result

    async def _dispatch(self, resource_id: ResourceId, action: Action) -> ActionResult:
        api = self._api(resource_id.kind)

        if action.type == ActionType.CREATE:
            return await self._create(resource_id, action, api)

        if action.type == ActionType.SET_REPLICAS:
            await asyncio.to_thread(
                api["scale"],
                name=resource_id.name,
                namespace=resource_id.namespace,
                body={"spec": {"replicas": action.value}},
                field_manager=self.field_manager,
            )
            logger.info(f"[K8S] Scaled {resource_id} to {action.value} replicas")
            return ActionResult.success()

        if action.type in (ActionType.SET_LABEL, ActionType.REMOVE_LABEL):
            # None removes the key under strategic merge patch
            value = action.value if action.type == ActionType.SET_LABEL else None
            await asyncio.to_thread(
                api["patch"],
                name=resource_id.name,
                namespace=resource_id.namespace,
                body={"metadata": {"labels": {action.key: value}}},
                field_manager=self.field_manager,
            )
            logger.info(f"[K8S] {action.describe()} on {resource_id}")
            return ActionResult.success()

        if action.type in _CONTAINER_ACTIONS:
            return await self._edit_container(resource_id, action, api)

        return ActionResult.permanent(f"Unsupported action: {action.type.value}")

    async def _create(self, resource_id: ResourceId, action: Action, api) -> ActionResult:
        image = (action.value or {}).get("image")
        if not image:
            return ActionResult.permanent(
                f"Cannot create {resource_id}: an image is required to create a workload"
            )

        manifest = create_workload_manifest(
            resource_id,
            image=image,
            container_name=self.container_name,
            managed_by=self.managed_by,
        )
        try:
            created = await asyncio.to_thread(
                api["create"],
                namespace=resource_id.namespace,
                body=manifest,
                field_manager=self.field_manager,
            )
            logger.info(f"[K8S] ✅ Created {resource_id}")
            return ActionResult.success(observed=observed_from_workload(created, self.container_name))
        except ApiException as e:
            if e.status == 409:
                # Idempotent: an earlier attempt (or someone else) already created it
                logger.info(f"[K8S] {resource_id} already exists")
                return ActionResult.success(message="already exists")
            raise

    async def _edit_container(self, resource_id: ResourceId, action: Action, api) -> ActionResult:
        workload = await asyncio.to_thread(
            api["read"],
            name=resource_id.name,
            namespace=resource_id.namespace,
        )
        container = select_container(workload, self.container_name)
        if container is None:
            return ActionResult.permanent(
                f"{resource_id} has no container named '{self.container_name or '<first>'}'"
            )

        if action.type == ActionType.SET_IMAGE:
            container.image = action.value
        elif action.type == ActionType.SET_ENV:
            set_container_env(container, action.key, action.value)
        elif action.type == ActionType.REMOVE_ENV:
            set_container_env(container, action.key, None)
        elif action.type == ActionType.SET_LIMIT:
            set_container_limit(container, action.key, action.value)
        elif action.type == ActionType.REMOVE_LIMIT:
            set_container_limit(container, action.key, None)

        replaced = await asyncio.to_thread(
            api["replace"],
            name=resource_id.name,
            namespace=resource_id.namespace,
            body=workload,
            field_manager=self.field_manager,
        )
        logger.info(f"[K8S] {action.describe()} on {resource_id}")
        return ActionResult.success(observed=observed_from_workload(replaced, self.container_name))

    # =========================================================================
    # OBSERVATION
    # =========================================================================

    async def poll_status(self, resource_id: ResourceId) -> ObservedAttributes:
        api = self._api(resource_id.kind)
        try:
            workload = await asyncio.to_thread(
                api["read"],
                name=resource_id.name,
                namespace=resource_id.namespace,
            )
        except ApiException as e:
            if e.status == 404:
                return ObservedAttributes(exists=False)
            raise
        return observed_from_workload(workload, self.container_name)


# Global instance - lazily initialized
_k8s_managed_system: Optional[KubernetesManagedSystem] = None


def get_k8s_managed_system() -> KubernetesManagedSystem:
    """Get or create the global Kubernetes managed system instance."""
    global _k8s_managed_system
    if _k8s_managed_system is None:
        _k8s_managed_system = KubernetesManagedSystem()
    return _k8s_managed_system
