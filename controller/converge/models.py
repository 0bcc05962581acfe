"""
Controller data model.

Desired state (ResourceSpec) is owned by callers and frozen once accepted.
Observed state (ResourceStatus) is owned by the tracker and reconciler.
Actions are the minimal idempotent units the differ emits.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_CEILING
from enum import Enum
from typing import Any, Dict, Optional

from kubernetes.utils import parse_quantity
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Kubernetes naming rules
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_LABEL_NAME = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_QUANTITY = re.compile(r"^[+]?([0-9]+(\.[0-9]*)?|\.[0-9]+)([eE][-+]?[0-9]+|[mkMGTPE]|[KMGTPE]i)?$")
_EXPONENT = re.compile(r"[eE][-+]?[0-9]+$")
_ENV_NAME = re.compile(r"^[-._a-zA-Z][-._a-zA-Z0-9]*$")

SUPPORTED_KINDS = {
    "deployment": "Deployment",
    "statefulset": "StatefulSet",
}

SUPPORTED_LIMITS = ("cpu", "memory")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Quantities are compared in nano units
_NANO = 10 ** 9
_BINARY_SUFFIXES = (("Ei", 1024 ** 6), ("Pi", 1024 ** 5), ("Ti", 1024 ** 4),
                    ("Gi", 1024 ** 3), ("Mi", 1024 ** 2), ("Ki", 1024))
_DECIMAL_SUFFIXES = (("E", 18), ("P", 15), ("T", 12), ("G", 9), ("M", 6),
                     ("k", 3), ("", 0), ("m", -3), ("u", -6), ("n", -9))


def canonical_quantity(quantity: str) -> str:
    """
    Render a resource quantity the way the Kubernetes API server stores it.

    The suffix family of the input is kept (binary, decimal or exponent) and
    the largest suffix giving a whole number is used, e.g. "0.5" -> "500m",
    "1024Mi" -> "1Gi", "1.5Gi" -> "1536Mi", "1000m" -> "1". Binary values that
    are not whole multiples of 1Ki fall back to plain decimal.

    Raises:
        ValueError: If the quantity is malformed
    """
    text = str(quantity).strip()
    if not _QUANTITY.match(text):
        raise ValueError(f"invalid quantity '{quantity}'")

    value = parse_quantity(text)
    nanos = int((value * _NANO).to_integral_value(rounding=ROUND_CEILING))
    if nanos == 0:
        return "0"

    if text.endswith("i") and nanos % _NANO == 0:
        whole = nanos // _NANO
        for suffix, factor in _BINARY_SUFFIXES:
            if whole % factor == 0:
                return f"{whole // factor}{suffix}"

    exponent_form = _EXPONENT.search(text) is not None
    for suffix, power in _DECIMAL_SUFFIXES:
        factor = 10 ** (power + 9)
        if nanos % factor == 0:
            mantissa = nanos // factor
            if exponent_form:
                return f"{mantissa}e{power}" if power else str(mantissa)
            return f"{mantissa}{suffix}"
    raise ValueError(f"invalid quantity '{quantity}'")


class HealthState(str, Enum):
    """Health reported on a ResourceStatus."""
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"


class ReconcilePhase(str, Enum):
    """Per-resource reconcile state machine."""
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    CONVERGED = "Converged"
    DEGRADED = "Degraded"


class ReconcileReason(str, Enum):
    """Why a reconcile was queued. Lower priority value is dequeued first."""
    SPEC_CHANGED = "spec-changed"
    EXTERNAL_DRIFT = "external-drift"
    PERIODIC = "periodic"

    @property
    def priority(self) -> int:
        return _REASON_PRIORITY[self]


_REASON_PRIORITY = {
    ReconcileReason.SPEC_CHANGED: 0,
    ReconcileReason.EXTERNAL_DRIFT: 1,
    ReconcileReason.PERIODIC: 2,
}


class ResourceId(BaseModel):
    """Identifier of a managed resource."""
    model_config = ConfigDict(frozen=True)

    namespace: str = "default"
    kind: str = "Deployment"
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.kind}/{self.name}"

    def __str__(self) -> str:
        return self.key


class ResourceSpec(BaseModel):
    """Desired state for one workload, as submitted by a caller."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Workload name (DNS-1123 subdomain)")
    namespace: str = Field(default="default", description="Namespace (DNS-1123 label)")
    kind: str = Field(default="Deployment", description="Deployment or StatefulSet")
    replicas: int = Field(default=1, ge=0, description="Desired replica count")
    image: Optional[str] = Field(None, description="Container image; None leaves the image unmanaged")
    limits: Dict[str, str] = Field(default_factory=dict, description="Resource limits (cpu, memory)")
    labels: Dict[str, str] = Field(default_factory=dict, description="Workload metadata labels")
    env: Dict[str, str] = Field(default_factory=dict, description="Container environment variables")
    poll_interval_seconds: Optional[float] = Field(None, gt=0, description="Poll interval override")
    generation: int = Field(default=0, ge=0, description="Assigned by the store on every accepted edit")

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if len(value) > 253 or not _DNS_SUBDOMAIN.match(value):
            raise ValueError(f"invalid resource name '{value}': must be a DNS-1123 subdomain")
        return value

    @field_validator("namespace")
    @classmethod
    def _validate_namespace(cls, value: str) -> str:
        if len(value) > 63 or not _DNS_LABEL.match(value):
            raise ValueError(f"invalid namespace '{value}': must be a DNS-1123 label")
        return value

    @field_validator("kind")
    @classmethod
    def _validate_kind(cls, value: str) -> str:
        normalized = SUPPORTED_KINDS.get(value.lower().strip())
        if normalized is None:
            valid = ", ".join(SUPPORTED_KINDS.values())
            raise ValueError(f"unsupported kind '{value}'. Supported kinds: {valid}")
        return normalized

    @field_validator("image")
    @classmethod
    def _validate_image(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and (not value.strip() or any(c.isspace() for c in value)):
            raise ValueError(f"invalid image reference '{value}'")
        return value

    @field_validator("limits")
    @classmethod
    def _validate_limits(cls, value: Dict[str, str]) -> Dict[str, str]:
        for resource, quantity in value.items():
            if resource not in SUPPORTED_LIMITS:
                raise ValueError(
                    f"unsupported limit '{resource}'. Supported limits: {', '.join(SUPPORTED_LIMITS)}"
                )
            if not _QUANTITY.match(str(quantity).strip()):
                raise ValueError(f"invalid quantity '{quantity}' for limit '{resource}'")
        # Stored canonically so the API server's rendering compares equal
        return {k: canonical_quantity(v) for k, v in value.items()}

    @field_validator("labels")
    @classmethod
    def _validate_labels(cls, value: Dict[str, str]) -> Dict[str, str]:
        for key, label_value in value.items():
            prefix, _, name = key.rpartition("/")
            if prefix and (len(prefix) > 253 or not _DNS_SUBDOMAIN.match(prefix)):
                raise ValueError(f"invalid label prefix in '{key}'")
            if len(name) > 63 or not _LABEL_NAME.match(name):
                raise ValueError(f"invalid label key '{key}'")
            if label_value and (len(label_value) > 63 or not _LABEL_NAME.match(label_value)):
                raise ValueError(f"invalid value for label '{key}'")
        return value

    @field_validator("env")
    @classmethod
    def _validate_env(cls, value: Dict[str, str]) -> Dict[str, str]:
        for key in value:
            if not _ENV_NAME.match(key):
                raise ValueError(f"invalid environment variable name '{key}'")
        return {k: str(v) for k, v in value.items()}

    @property
    def id(self) -> ResourceId:
        return ResourceId(namespace=self.namespace, kind=self.kind, name=self.name)

    def desired_attributes(self) -> Dict[str, Any]:
        """Everything a caller can change, i.e. what counts as an edit."""
        return self.model_dump(exclude={"generation"})


class ObservedAttributes(BaseModel):
    """Live attributes of a workload as reported by the managed system."""
    model_config = ConfigDict(frozen=True)

    exists: bool = False
    replicas: Optional[int] = None
    ready_replicas: Optional[int] = None
    image: Optional[str] = None
    limits: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("limits")
    @classmethod
    def _canonical_limits(cls, value: Dict[str, str]) -> Dict[str, str]:
        # Whatever the system reports is kept; only well-formed quantities are rewritten
        return {
            k: canonical_quantity(v) if _QUANTITY.match(str(v).strip()) else str(v)
            for k, v in value.items()
        }

    def same_shape(self, other: "ObservedAttributes") -> bool:
        """Compare everything except readiness, which settles asynchronously."""
        return self.model_dump(exclude={"ready_replicas"}) == other.model_dump(exclude={"ready_replicas"})


class ResourceStatus(BaseModel):
    """Observed state of one resource. Never written by callers."""
    namespace: str
    kind: str
    name: str
    observed: ObservedAttributes = Field(default_factory=ObservedAttributes)
    last_reconciled_generation: int = 0
    health: HealthState = HealthState.UNKNOWN
    phase: ReconcilePhase = ReconcilePhase.PENDING
    message: Optional[str] = None
    consecutive_poll_failures: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def empty(cls, resource_id: ResourceId) -> "ResourceStatus":
        return cls(namespace=resource_id.namespace, kind=resource_id.kind, name=resource_id.name)


class ActionType(str, Enum):
    """Corrective action kinds."""
    CREATE = "create"
    SET_LABEL = "set_label"
    SET_ENV = "set_env"
    SET_LIMIT = "set_limit"
    SET_IMAGE = "set_image"
    SET_REPLICAS = "set_replicas"
    REMOVE_LIMIT = "remove_limit"
    REMOVE_ENV = "remove_env"
    REMOVE_LABEL = "remove_label"


class Action(BaseModel):
    """A single idempotent corrective action."""
    model_config = ConfigDict(frozen=True)

    type: ActionType
    key: Optional[str] = None
    value: Any = None
    destructive: bool = False

    def describe(self) -> str:
        target = f"{self.key}=" if self.key else ""
        return f"{self.type.value}({target}{self.value!r})"


class ActionOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class ActionResult(BaseModel):
    """Outcome of applying one action against the managed system."""
    outcome: ActionOutcome
    message: Optional[str] = None
    observed: Optional[ObservedAttributes] = None
    latency_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome == ActionOutcome.SUCCESS

    @classmethod
    def success(cls, observed: Optional[ObservedAttributes] = None, message: Optional[str] = None) -> "ActionResult":
        return cls(outcome=ActionOutcome.SUCCESS, observed=observed, message=message)

    @classmethod
    def transient(cls, message: str) -> "ActionResult":
        return cls(outcome=ActionOutcome.TRANSIENT_FAILURE, message=message)

    @classmethod
    def permanent(cls, message: str) -> "ActionResult":
        return cls(outcome=ActionOutcome.PERMANENT_FAILURE, message=message)


@dataclass
class ReconcileTask:
    """A queued unit of reconcile work for one resource."""
    resource_id: ResourceId
    reason: ReconcileReason
    enqueued_at: float = field(default_factory=time.monotonic)
    seq: int = 0
    superseded: asyncio.Event = field(default_factory=asyncio.Event)
