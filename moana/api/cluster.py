from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from moana.api.common import get_orchestrator, get_registry, task_accepted, to_http
from moana.errors import MoanaError
from moana.models import NodeState
from moana.registry import Registry
from moana.services.task_orchestrator import TaskOrchestrator

router = APIRouter(prefix="/clusters", tags=["clusters"])


class ClusterCreate(BaseModel):
    name: str = Field(min_length=1)


class NodeAdd(BaseModel):
    hostname: str = Field(min_length=1)
    capacity_bytes: int = Field(default=0, ge=0)
    brick_root: str = "/bricks"
    zone: str | None = None
    agent_port: int | None = Field(default=None, ge=1, le=65535)


def _node_dict(node) -> dict:
    return {
        "id": node.id,
        "cluster_id": node.cluster_id,
        "hostname": node.hostname,
        "status": node.status.value,
        "capacity_bytes": node.capacity_bytes,
        "brick_root": node.brick_root,
        "zone": node.zone,
        "agent_port": node.agent_port,
        "active_task_id": node.active_task_id,
    }


@router.post("")
def create_cluster(body: ClusterCreate, registry: Registry = Depends(get_registry)):
    cluster = registry.bootstrap_cluster(body.name)
    return {"id": cluster.id, "name": cluster.name}


@router.get("")
def list_clusters(registry: Registry = Depends(get_registry)):
    return [{"id": c.id, "name": c.name} for c in registry.list_clusters()]


@router.get("/{cluster_id}")
def get_cluster(cluster_id: int, registry: Registry = Depends(get_registry)):
    try:
        cluster = registry.get_cluster(cluster_id)
    except MoanaError as e:
        raise to_http(e)
    return {
        "id": cluster.id,
        "name": cluster.name,
        "nodes": len(registry.list_nodes(cluster_id)),
        "volumes": len(registry.list_volumes(cluster_id)),
    }


@router.get("/{cluster_id}/nodes")
def list_nodes(cluster_id: int, status: NodeState | None = None, registry: Registry = Depends(get_registry)):
    try:
        registry.get_cluster(cluster_id)
    except MoanaError as e:
        raise to_http(e)
    return [_node_dict(n) for n in registry.list_nodes(cluster_id, status=status)]


@router.post("/{cluster_id}/nodes", status_code=202)
def add_node(cluster_id: int, body: NodeAdd, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    """Register a node; it turns online once its agent answers the probe."""
    try:
        task = orchestrator.submit("add_node", cluster_id, body.model_dump())
    except MoanaError as e:
        raise to_http(e)
    return task_accepted(task)


@router.get("/{cluster_id}/nodes/{node_id}")
def get_node(cluster_id: int, node_id: int, registry: Registry = Depends(get_registry)):
    try:
        node = registry.get_node(node_id)
    except MoanaError as e:
        raise to_http(e)
    if node.cluster_id != cluster_id:
        raise HTTPException(status_code=404, detail=f"Node {node_id} not in cluster {cluster_id}")
    return _node_dict(node)


@router.delete("/{cluster_id}/nodes/{node_id}", status_code=202)
def remove_node(cluster_id: int, node_id: int, orchestrator: TaskOrchestrator = Depends(get_orchestrator)):
    try:
        node = orchestrator.registry.get_node(node_id)
        if node.cluster_id != cluster_id:
            raise HTTPException(status_code=404, detail=f"Node {node_id} not in cluster {cluster_id}")
        task = orchestrator.submit("remove_node", node_id)
    except MoanaError as e:
        raise to_http(e)
    return task_accepted(task)
