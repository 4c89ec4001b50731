from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from moana.api.common import get_orchestrator, get_registry, task_accepted, to_http
from moana.errors import MoanaError
from moana.models import VolumeType
from moana.registry import Registry
from moana.services.task_orchestrator import TaskOrchestrator

router = APIRouter(prefix="/clusters/{cluster_id}/volumes", tags=["volumes"])


class VolumeCreate(BaseModel):
    name: str = Field(min_length=1)
    type: VolumeType = VolumeType.DISTRIBUTE
    replica_count: int = Field(default=1, ge=1)
    distribute_count: int = Field(default=1, ge=1)
    redundancy_count: int = Field(default=0, ge=0)
    size_bytes: int = Field(default=0, ge=0)
    devices: Dict[int, str] = Field(default_factory=dict)


class VolumeExpand(BaseModel):
    add_distribute_count: int = Field(default=1, ge=1)
    devices: Dict[int, str] = Field(default_factory=dict)


class OptionsSet(BaseModel):
    options: Dict[str, str]


class OptionsReset(BaseModel):
    keys: List[str]


def _volume_dict(volume, bricks=None) -> dict:
    data = {
        "id": volume.id,
        "cluster_id": volume.cluster_id,
        "name": volume.name,
        "type": volume.type.value,
        "replica_count": volume.replica_count,
        "redundancy_count": volume.redundancy_count,
        "distribute_count": volume.distribute_count,
        "brick_size_bytes": volume.brick_size_bytes,
        "state": volume.state.value,
        "active_task_id": volume.active_task_id,
    }
    if bricks is not None:
        data["bricks"] = [
            {
                "id": b.id,
                "index": b.brick_index,
                "node_id": b.node_id,
                "path": b.path,
                "port": b.port,
                "size_bytes": b.size_bytes,
                "device": b.device,
                "status": b.status.value,
            }
            for b in bricks
        ]
    return data


def _volume_in_cluster(registry: Registry, cluster_id: int, volume_id: int):
    volume = registry.get_volume(volume_id)
    if volume.cluster_id != cluster_id:
        raise HTTPException(status_code=404, detail=f"Volume {volume_id} not in cluster {cluster_id}")
    return volume


def _submit(orchestrator: TaskOrchestrator, cluster_id: int, volume_id: int, operation: str, request=None):
    try:
        _volume_in_cluster(orchestrator.registry, cluster_id, volume_id)
        task = orchestrator.submit(operation, volume_id, request)
    except MoanaError as e:
        raise to_http(e)
    return task_accepted(task)


@router.get("")
def list_volumes(cluster_id: int, registry: Registry = Depends(get_registry)):
    try:
        registry.get_cluster(cluster_id)
    except MoanaError as e:
        raise to_http(e)
    return [_volume_dict(v) for v in registry.list_volumes(cluster_id)]


@router.post("", status_code=202)
def create_volume(cluster_id: int, body: VolumeCreate, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    """Validate and plan synchronously; bricks and volfiles are built by the task."""
    request = body.model_dump()
    request["type"] = body.type.value
    try:
        task = orchestrator.submit("create_volume", cluster_id, request)
    except MoanaError as e:
        raise to_http(e)
    return task_accepted(task)


@router.get("/{volume_id}")
def get_volume(cluster_id: int, volume_id: int, registry: Registry = Depends(get_registry)):
    try:
        volume = _volume_in_cluster(registry, cluster_id, volume_id)
    except MoanaError as e:
        raise to_http(e)
    return _volume_dict(volume, registry.list_bricks(volume_id=volume_id))


@router.post("/{volume_id}/start", status_code=202)
def start_volume(cluster_id: int, volume_id: int, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return _submit(orchestrator, cluster_id, volume_id, "start_volume")


@router.post("/{volume_id}/stop", status_code=202)
def stop_volume(cluster_id: int, volume_id: int, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return _submit(orchestrator, cluster_id, volume_id, "stop_volume")


@router.post("/{volume_id}/expand", status_code=202)
def expand_volume(
    cluster_id: int,
    volume_id: int,
    body: VolumeExpand,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
):
    return _submit(orchestrator, cluster_id, volume_id, "expand_volume", body.model_dump())


@router.post("/{volume_id}/rebalance", status_code=202)
def rebalance_volume(cluster_id: int, volume_id: int, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return _submit(orchestrator, cluster_id, volume_id, "rebalance_volume")


@router.delete("/{volume_id}", status_code=202)
def delete_volume(cluster_id: int, volume_id: int, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    return _submit(orchestrator, cluster_id, volume_id, "delete_volume")


# ============================================================================
# OPTIONS
# ============================================================================

@router.get("/{volume_id}/options")
def get_options(cluster_id: int, volume_id: int, registry: Registry = Depends(get_registry)):
    try:
        _volume_in_cluster(registry, cluster_id, volume_id)
        return registry.list_options(volume_id)
    except MoanaError as e:
        raise to_http(e)


@router.post("/{volume_id}/options/set")
def set_options(cluster_id: int, volume_id: int, body: OptionsSet, registry: Registry = Depends(get_registry)):
    """Store options; they take effect on the next compile (start, expand or rebalance)."""
    try:
        _volume_in_cluster(registry, cluster_id, volume_id)
        return registry.set_options(volume_id, body.options)
    except MoanaError as e:
        raise to_http(e)


@router.post("/{volume_id}/options/reset")
def reset_options(cluster_id: int, volume_id: int, body: OptionsReset, registry: Registry = Depends(get_registry)):
    try:
        _volume_in_cluster(registry, cluster_id, volume_id)
        return registry.reset_options(volume_id, body.keys)
    except MoanaError as e:
        raise to_http(e)
