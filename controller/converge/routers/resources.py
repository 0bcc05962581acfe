"""
Resource API
Endpoints for submitting desired state and reading reconcile status.
"""
from fastapi import APIRouter, Body, Depends, HTTPException, Request
from typing import Any, Dict, List
import logging

from ..errors import ResourceNotFoundError, ValidationError
from ..models import SUPPORTED_KINDS, ResourceId
from ..services.controller import Controller, get_controller
from ..services.manifests import load_manifests

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/resources", tags=["resources"])


def _resource_id(namespace: str, kind: str, name: str) -> ResourceId:
    normalized = SUPPORTED_KINDS.get(kind.lower())
    if normalized is None:
        raise HTTPException(status_code=404, detail=f"Unsupported kind: {kind}")
    return ResourceId(namespace=namespace, kind=normalized, name=name)


def _validation_error(e: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})


def _describe(controller: Controller, resource_id: ResourceId) -> Dict[str, Any]:
    spec = controller.get_spec(resource_id)
    status = controller.get_status(resource_id)
    record = controller.reconciler.get_record(resource_id)
    return {
        "spec": spec.model_dump(mode="json"),
        "status": status.model_dump(mode="json"),
        "reconcile": record.to_dict() if record else None,
    }


@router.post("", status_code=202)
async def submit_resource(
    payload: Dict[str, Any] = Body(...),
    controller: Controller = Depends(get_controller),
):
    """Submit desired state for one resource"""
    try:
        accepted = await controller.submit(payload)
    except ValidationError as e:
        logger.info(f"[API] Rejected submission: {e}")
        raise _validation_error(e)

    return {
        "spec": accepted.model_dump(mode="json"),
        "status": controller.get_status(accepted.id).model_dump(mode="json"),
    }


@router.post("/manifests", status_code=202)
async def submit_manifests(
    request: Request,
    controller: Controller = Depends(get_controller),
):
    """Submit every Deployment/StatefulSet in a YAML manifest stream"""
    body = (await request.body()).decode("utf-8", errors="replace")
    try:
        specs = load_manifests(body, default_namespace=controller.settings.k8s_namespace)
        accepted = [await controller.submit(spec) for spec in specs]
    except ValidationError as e:
        logger.info(f"[API] Rejected manifests: {e}")
        raise _validation_error(e)

    return {"accepted": [spec.model_dump(mode="json") for spec in accepted]}


@router.get("")
async def list_resources(controller: Controller = Depends(get_controller)) -> List[Dict[str, Any]]:
    """Status of every managed resource"""
    return [status.model_dump(mode="json") for status in controller.list_statuses()]


@router.get("/{namespace}/{kind}/{name}")
async def get_resource(
    namespace: str,
    kind: str,
    name: str,
    controller: Controller = Depends(get_controller),
):
    """Spec, status and reconcile bookkeeping for one resource"""
    resource_id = _resource_id(namespace, kind, name)
    try:
        return _describe(controller, resource_id)
    except ResourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{namespace}/{kind}/{name}")
async def remove_resource(
    namespace: str,
    kind: str,
    name: str,
    controller: Controller = Depends(get_controller),
):
    """Stop managing a resource (the workload itself is left in place)"""
    resource_id = _resource_id(namespace, kind, name)
    try:
        removed = await controller.remove(resource_id)
    except ResourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {"message": "Resource no longer managed", "resource": resource_id.key, "generation": removed.generation}
