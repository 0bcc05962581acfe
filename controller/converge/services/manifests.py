"""
Workload Manifest Loading

Turns Deployment/StatefulSet YAML into ResourceSpecs with every default made
explicit, so implicit Kubernetes defaulting never leaks into the differ.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

import yaml

from ..errors import ValidationError
from ..models import SUPPORTED_KINDS, ResourceSpec
from .desired_state import validate_spec

logger = logging.getLogger(__name__)

# Kubernetes defaults spec.replicas to 1 when omitted
DEFAULT_REPLICAS = 1


def _mapping(value: Any, where: str) -> Mapping[str, Any]:
    """An optional mapping node; absent means empty."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"Manifest field '{where}' must be a mapping, got {type(value).__name__}")
    return value


def _sequence(value: Any, where: str) -> List[Any]:
    """An optional list node; absent means empty."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"Manifest field '{where}' must be a list, got {type(value).__name__}")
    return value


def _pick_container(containers: List[Any], container_name: Optional[str]) -> Mapping[str, Any]:
    for index, container in enumerate(containers):
        if not isinstance(container, Mapping):
            raise ValidationError(
                f"Manifest field 'spec.template.spec.containers[{index}]' must be a mapping, "
                f"got {type(container).__name__}"
            )
    if not containers:
        return {}
    if container_name is None:
        return containers[0]
    for container in containers:
        if container.get("name") == container_name:
            return container
    raise ValidationError(f"No container named '{container_name}' in manifest")


def spec_from_manifest(
    doc: Mapping[str, Any],
    default_namespace: str = "default",
    container_name: Optional[str] = None,
) -> ResourceSpec:
    """
    Convert one workload manifest into a ResourceSpec.

    Args:
        doc: Parsed manifest (a single YAML document)
        default_namespace: Namespace used when metadata.namespace is absent
        container_name: Container whose image/env/limits are managed (None = first)

    Returns:
        Validated ResourceSpec (generation 0, not yet submitted)

    Raises:
        ValidationError: If the document is not a supported workload or is malformed
    """
    if not isinstance(doc, Mapping):
        raise ValidationError("Manifest must be a mapping")

    kind = doc.get("kind")
    if not isinstance(kind, str) or kind.lower() not in SUPPORTED_KINDS:
        valid = ", ".join(SUPPORTED_KINDS.values())
        raise ValidationError(f"Unsupported manifest kind '{kind}'. Supported kinds: {valid}")

    metadata = _mapping(doc.get("metadata"), "metadata")
    spec = _mapping(doc.get("spec"), "spec")
    template = _mapping(spec.get("template"), "spec.template")
    pod_spec = _mapping(template.get("spec"), "spec.template.spec")
    container = _pick_container(_sequence(pod_spec.get("containers"), "spec.template.spec.containers"), container_name)

    resources = _mapping(container.get("resources"), "container.resources")
    limits = _mapping(resources.get("limits"), "container.resources.limits")
    env: Dict[str, str] = {}
    for index, entry in enumerate(_sequence(container.get("env"), "container.env")):
        if not isinstance(entry, Mapping):
            raise ValidationError(f"Manifest field 'container.env[{index}]' must be a mapping, got {type(entry).__name__}")
        # valueFrom entries are not managed
        if "value" in entry and entry.get("name"):
            env[entry["name"]] = str(entry["value"])

    fields = {
        "name": metadata.get("name"),
        "namespace": metadata.get("namespace") or default_namespace,
        "kind": kind,
        "replicas": spec.get("replicas", DEFAULT_REPLICAS),
        "image": container.get("image"),
        "limits": {k: str(v) for k, v in limits.items()},
        "labels": {k: str(v) for k, v in _mapping(metadata.get("labels"), "metadata.labels").items()},
        "env": env,
    }
    return validate_spec(fields)


def load_manifests(
    text: str,
    default_namespace: str = "default",
    container_name: Optional[str] = None,
    skip_unsupported: bool = True,
) -> List[ResourceSpec]:
    """
    Parse a multi-document YAML stream into ResourceSpecs.

    Args:
        text: YAML text (may contain several documents and v1 List objects)
        default_namespace: Namespace used when a manifest omits one
        container_name: Managed container (None = first)
        skip_unsupported: Skip non-workload kinds (Service, ConfigMap, ...)
            instead of rejecting the whole stream

    Raises:
        ValidationError: On YAML syntax errors or invalid workload manifests
    """
    try:
        documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML: {e}") from e

    expanded: List[Any] = []
    for doc in documents:
        if isinstance(doc, Mapping) and doc.get("kind") == "List":
            expanded.extend(_sequence(doc.get("items"), "items"))
        else:
            expanded.append(doc)

    specs = []
    for doc in expanded:
        kind = doc.get("kind") if isinstance(doc, Mapping) else None
        if skip_unsupported and (not isinstance(kind, str) or kind.lower() not in SUPPORTED_KINDS):
            logger.debug(f"[MANIFESTS] Skipping unsupported kind: {kind}")
            continue
        specs.append(spec_from_manifest(doc, default_namespace, container_name))
    return specs
