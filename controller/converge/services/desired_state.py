"""
Desired-State Store

Holds the latest accepted ResourceSpec per resource and notifies the
scheduler (through the work queue) whenever a spec changes.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Union

import pydantic

from ..errors import ValidationError
from ..models import ReconcileReason, ResourceId, ResourceSpec
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


def validate_spec(spec: Union[ResourceSpec, Mapping[str, Any]]) -> ResourceSpec:
    """
    Validate a submission into a ResourceSpec.

    Raises:
        ValidationError: If required fields are missing or malformed
    """
    try:
        if isinstance(spec, ResourceSpec):
            # Re-validate so specs built with model_construct() cannot bypass the rules
            return ResourceSpec.model_validate(spec.model_dump())
        return ResourceSpec.model_validate(dict(spec))
    except pydantic.ValidationError as e:
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
        raise ValidationError(f"Invalid resource spec: {summary}", errors=errors) from e
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid resource spec: {e}") from e


class DesiredStateStore:
    """
    Latest desired state per resource.

    Submissions for distinct resources proceed independently; submissions for
    the same resource are serialized and the later one always gets the higher
    generation. Generations keep counting up across remove and re-submit, so a reconcile
    still finishing for a removed spec never reports a generation above the
    one now accepted.
    """

    def __init__(self, queue: Optional[WorkQueue] = None):
        self._specs: Dict[ResourceId, ResourceSpec] = {}
        self._generations: Dict[ResourceId, int] = {}
        self._locks: Dict[ResourceId, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._queue = queue

    async def submit(self, spec: Union[ResourceSpec, Mapping[str, Any]]) -> ResourceSpec:
        """
        Accept a new desired state.

        Args:
            spec: ResourceSpec or plain mapping (e.g. a parsed request body)

        Returns:
            The accepted spec with its generation assigned

        Raises:
            ValidationError: If the submission is rejected
        """
        candidate = validate_spec(spec)
        resource_id = candidate.id

        async with self._locks[resource_id]:
            current = self._specs.get(resource_id)
            if current is not None and current.desired_attributes() == candidate.desired_attributes():
                logger.debug(f"[STORE] {resource_id} unchanged at generation {current.generation}")
                return current

            generation = self._generations.get(resource_id, 0) + 1
            self._generations[resource_id] = generation
            accepted = candidate.model_copy(update={"generation": generation})
            self._specs[resource_id] = accepted

        logger.info(f"[STORE] Accepted {resource_id} generation {generation}")
        if self._queue is not None:
            self._queue.add(resource_id, ReconcileReason.SPEC_CHANGED)
        return accepted

    def get(self, resource_id: ResourceId) -> Optional[ResourceSpec]:
        """Get the accepted spec for a resource, or None."""
        return self._specs.get(resource_id)

    def ids(self) -> List[ResourceId]:
        """All managed resource identifiers."""
        return list(self._specs.keys())

    def __len__(self) -> int:
        return len(self._specs)

    async def remove(self, resource_id: ResourceId) -> Optional[ResourceSpec]:
        """Stop managing a resource. Nothing is deleted in the managed system."""
        async with self._locks[resource_id]:
            removed = self._specs.pop(resource_id, None)
        self._locks.pop(resource_id, None)
        if removed is not None:
            logger.info(f"[STORE] Removed {resource_id} at generation {removed.generation}")
            if self._queue is not None:
                self._queue.discard(resource_id)
        return removed
