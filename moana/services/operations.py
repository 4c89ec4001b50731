"""
Task Operations
Step sequences for every operation the orchestrator runs.

Each operation has:
- prepare(): synchronous validation (and a dry-run plan where the operation
  places bricks), then creation of the task and its target claim
- steps: ordered (name, fn) pairs; each fn takes the StepContext and is safe
  to re-run after a partial failure

Steps return SKIPPED when there is nothing to do for the current state.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from moana.errors import ConflictError, NotFoundError, ValidationError
from moana.models import BrickState, NodeState, TargetType, TaskOperation, VolumeState, VolumeType
from moana.services.launch_config import build_launch_configs
from moana.services.volfile_store import digest
from moana.services.topology_planner import (
    PlacementPlan,
    VolumeRequest,
    brick_size_for,
    load_node_capacities,
    validate_request,
)

logger = logging.getLogger(__name__)

SKIPPED = object()


# ============================================================================
# TYPED REQUESTS
# ============================================================================

@dataclass
class ExpandRequest:
    add_distribute_count: int = 1
    devices: Dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"add_distribute_count": self.add_distribute_count, "devices": {str(k): v for k, v in self.devices.items()}}

    @classmethod
    def from_dict(cls, data: dict) -> "ExpandRequest":
        return cls(
            add_distribute_count=int(data.get("add_distribute_count", 1)),
            devices={int(k): v for k, v in (data.get("devices") or {}).items()},
        )


@dataclass
class NodeRequest:
    hostname: str
    capacity_bytes: int = 0
    brick_root: str = "/bricks"
    zone: Optional[str] = None
    agent_port: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "NodeRequest":
        return cls(
            hostname=data["hostname"],
            capacity_bytes=int(data.get("capacity_bytes", 0) or 0),
            brick_root=data.get("brick_root") or "/bricks",
            zone=data.get("zone"),
            agent_port=data.get("agent_port"),
        )


def _coerce(request_cls, request):
    if request is None:
        return None
    if isinstance(request, request_cls):
        return request
    if isinstance(request, dict):
        try:
            return request_cls.from_dict(request)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed {request_cls.__name__}: {e}") from e
    raise ValidationError(f"Expected {request_cls.__name__}, got {type(request).__name__}")


# ============================================================================
# SHARED STEP HELPERS
# ============================================================================

def _volume(ctx):
    return ctx.registry.get_volume(ctx.task.target_id)


def _nodes_by_id(ctx, bricks) -> Dict[int, object]:
    return {node_id: ctx.registry.get_node(node_id) for node_id in sorted({b.node_id for b in bricks})}


def compile_volfiles(ctx):
    volume = _volume(ctx)
    bricks = ctx.registry.list_bricks(volume_id=volume.id)
    nodes = _nodes_by_id(ctx, bricks)
    hostnames = {node_id: node.hostname for node_id, node in nodes.items()}
    compiled = ctx.compiler.compile(volume, bricks, hostnames, ctx.registry.list_options(volume.id))
    ctx.store.write_volfiles(volume.name, compiled, hostnames)


def materialize_launch_configs(ctx):
    volume = _volume(ctx)
    bricks = ctx.registry.list_bricks(volume_id=volume.id)
    configs = build_launch_configs(bricks, _nodes_by_id(ctx, bricks), volume.name)
    ctx.store.write_launch_configs(volume.name, configs)


def _push_volfiles(ctx, only_changed: bool):
    """
    Push server volfiles to their nodes, recording each digest once its agent acks.

    With only_changed, a node is skipped when its agent already acked the
    volfile on disk, so a push that failed earlier is retried by the next
    compile-and-push.
    """
    volume = _volume(ctx)
    bricks = ctx.registry.list_bricks(volume_id=volume.id)
    nodes = _nodes_by_id(ctx, bricks)
    deployed = ctx.registry.deployed_volfiles(volume.id) if only_changed else {}
    pushes = []
    for node_id, node in nodes.items():
        path = ctx.store.server_volfile_path(volume.name, node.hostname)
        content = path.read_text(encoding="utf-8")
        if only_changed and deployed.get(node_id) == digest(content):
            continue
        pushes.append((node, path.name, content))
    if not pushes:
        return SKIPPED
    for node, filename, content in pushes:
        ctx.channel.push_volfile(node, volume.name, filename, content)
        ctx.registry.record_volfile_deployed(volume.id, node.id, digest(content))


def push_all_volfiles(ctx):
    return _push_volfiles(ctx, only_changed=False)


def push_changed_volfiles(ctx):
    return _push_volfiles(ctx, only_changed=True)


def _launch(ctx, bricks):
    """Launch bricks not yet online; each brick is marked online as soon as its agent acks."""
    volume = _volume(ctx)
    nodes = _nodes_by_id(ctx, bricks)
    pending = [b for b in bricks if b.status != BrickState.ONLINE]
    if not pending:
        return SKIPPED
    for config, brick in zip(build_launch_configs(pending, nodes, volume.name), sorted(pending, key=lambda b: b.brick_index)):
        ctx.channel.launch_brick(nodes[brick.node_id], config)
        ctx.registry.set_brick_status([brick.id], BrickState.ONLINE)


def launch_bricks(ctx):
    return _launch(ctx, ctx.registry.list_bricks(volume_id=ctx.task.target_id))


# ============================================================================
# CREATE VOLUME
# ============================================================================

def prepare_create_volume(orchestrator, cluster_id, request, step_names):
    request = _coerce(VolumeRequest, request)
    if request is None:
        raise ValidationError("create_volume needs a volume request")
    validate_request(request)
    registry = orchestrator.registry
    registry.get_cluster(cluster_id)
    if registry.find_volume(cluster_id, request.name) is not None:
        raise ConflictError(f"Volume name '{request.name}' already exists")

    # Dry run: planning errors surface before any record exists
    orchestrator.planner.plan(request, load_node_capacities(registry, cluster_id))

    _, task = registry.open_volume_task(
        TaskOperation.CREATE_VOLUME,
        {"cluster_id": cluster_id, **request.to_dict()},
        step_names,
        cluster_id=cluster_id,
        name=request.name,
        type=request.type,
        replica_count=request.replica_count,
        distribute_count=request.distribute_count,
        redundancy_count=request.redundancy_count,
        brick_size_bytes=brick_size_for(request),
        state=VolumeState.CREATING,
    )
    return task


def _plan_for_task(ctx) -> PlacementPlan:
    volume = _volume(ctx)
    if ctx.task.operation == TaskOperation.EXPAND_VOLUME:
        return _expansion_plan(ctx, volume, ExpandRequest.from_dict(ctx.request))
    request = VolumeRequest.from_dict(ctx.request)
    return ctx.planner.plan(request, load_node_capacities(ctx.registry, volume.cluster_id))


def plan_topology(ctx):
    if "plan" in ctx.data:
        return SKIPPED
    plan = _plan_for_task(ctx)
    ctx.data["plan"] = plan.to_dict()
    ctx.save()
    logger.info(f"Volume '{plan.volume_name}': planned {len(plan.bricks)} brick(s)")


def create_bricks(ctx):
    plan = PlacementPlan.from_dict(ctx.data["plan"])
    try:
        ctx.registry.add_bricks(ctx.task.target_id, plan.bricks)
    except ConflictError:
        # A concurrent task took a planned port; the retry places a fresh plan
        ctx.data["plan"] = _plan_for_task(ctx).to_dict()
        ctx.save()
        raise


def mark_volume_created(ctx):
    ctx.registry.transition_volume(ctx.task.target_id, VolumeState.CREATED)


# ============================================================================
# EXPAND VOLUME
# ============================================================================

def _require_idle_volume(registry, volume_id):
    volume = registry.get_volume(volume_id)
    if volume.active_task_id is not None:
        raise ConflictError(f"task already active for volume {volume_id}")
    return volume


def _expansion_plan(orchestrator, volume, expand: ExpandRequest) -> PlacementPlan:
    registry = orchestrator.registry
    return orchestrator.planner.plan_expansion(
        volume_name=volume.name,
        replica_count=volume.replica_count,
        add_distribute_count=expand.add_distribute_count,
        brick_size=volume.brick_size_bytes,
        existing=registry.list_bricks(volume_id=volume.id),
        nodes=load_node_capacities(registry, volume.cluster_id),
        devices=expand.devices,
    )


def prepare_expand_volume(orchestrator, volume_id, request, step_names):
    expand = _coerce(ExpandRequest, request) or ExpandRequest()
    volume = _require_idle_volume(orchestrator.registry, volume_id)
    if volume.state not in (VolumeState.CREATED, VolumeState.STARTED, VolumeState.STOPPED):
        raise ValidationError(f"Volume '{volume.name}' cannot be expanded while {volume.state.value}")
    _expansion_plan(orchestrator, volume, expand)
    return orchestrator.registry.open_task(
        TaskOperation.EXPAND_VOLUME, TargetType.VOLUME, volume_id, expand.to_dict(), step_names
    )


def plan_expansion(ctx):
    if "plan" in ctx.data:
        return SKIPPED
    volume = _volume(ctx)
    plan = _plan_for_task(ctx)
    ctx.data["plan"] = plan.to_dict()
    ctx.data["distribute_count"] = volume.distribute_count + ExpandRequest.from_dict(ctx.request).add_distribute_count
    ctx.save()
    logger.info(f"Volume '{volume.name}': planned {len(plan.bricks)} additional brick(s)")


def update_layout(ctx):
    volume = _volume(ctx)
    distribute_count = int(ctx.data["distribute_count"])
    volume_type = volume.type
    if volume_type == VolumeType.REPLICATE and distribute_count > 1:
        volume_type = VolumeType.DISTRIBUTE_REPLICATE
    ctx.registry.update_volume_layout(volume.id, volume_type, distribute_count)


def _only_if_started(fn):
    def step(ctx):
        if _volume(ctx).state != VolumeState.STARTED:
            return SKIPPED
        return fn(ctx)
    return step


# ============================================================================
# START / STOP VOLUME
# ============================================================================

def prepare_start_volume(orchestrator, volume_id, request, step_names):
    volume = _require_idle_volume(orchestrator.registry, volume_id)
    if volume.state not in (VolumeState.CREATED, VolumeState.STOPPED):
        raise ValidationError(f"Volume '{volume.name}' cannot be started while {volume.state.value}")
    return orchestrator.registry.open_task(TaskOperation.START_VOLUME, TargetType.VOLUME, volume_id, {}, step_names)


def mark_volume_started(ctx):
    ctx.registry.transition_volume(ctx.task.target_id, VolumeState.STARTED)


def prepare_stop_volume(orchestrator, volume_id, request, step_names):
    volume = _require_idle_volume(orchestrator.registry, volume_id)
    if volume.state not in (VolumeState.STARTED, VolumeState.STOPPING):
        raise ValidationError(f"Volume '{volume.name}' is not started")
    return orchestrator.registry.open_task(TaskOperation.STOP_VOLUME, TargetType.VOLUME, volume_id, {}, step_names)


def mark_volume_stopping(ctx):
    ctx.registry.transition_volume(ctx.task.target_id, VolumeState.STOPPING)


def stop_bricks(ctx):
    volume = _volume(ctx)
    bricks = [b for b in ctx.registry.list_bricks(volume_id=volume.id) if b.status != BrickState.OFFLINE]
    if not bricks:
        return SKIPPED
    nodes = _nodes_by_id(ctx, bricks)
    for config, brick in zip(build_launch_configs(bricks, nodes, volume.name), bricks):
        ctx.channel.stop_brick(nodes[brick.node_id], config)
        ctx.registry.set_brick_status([brick.id], BrickState.OFFLINE)


def mark_volume_stopped(ctx):
    ctx.registry.transition_volume(ctx.task.target_id, VolumeState.STOPPED)


# ============================================================================
# DELETE VOLUME
# ============================================================================

def prepare_delete_volume(orchestrator, volume_id, request, step_names):
    volume = _require_idle_volume(orchestrator.registry, volume_id)
    # A volume whose create task failed stays in creating; deleting it frees the name
    if volume.state not in (VolumeState.CREATING, VolumeState.CREATED, VolumeState.STOPPED, VolumeState.DELETING):
        raise ValidationError(f"Volume '{volume.name}' cannot be deleted while {volume.state.value}")
    return orchestrator.registry.open_task(TaskOperation.DELETE_VOLUME, TargetType.VOLUME, volume_id, {}, step_names)


def mark_volume_deleting(ctx):
    ctx.registry.transition_volume(ctx.task.target_id, VolumeState.DELETING)


def remove_artifacts(ctx):
    ctx.store.remove_volume(_volume(ctx).name)


def delete_bricks(ctx):
    ctx.registry.delete_bricks(ctx.task.target_id)


def delete_volume_record(ctx):
    ctx.registry.delete_volume(ctx.task.target_id)


# ============================================================================
# REBALANCE VOLUME
# ============================================================================

def prepare_rebalance_volume(orchestrator, volume_id, request, step_names):
    volume = _require_idle_volume(orchestrator.registry, volume_id)
    if volume.state not in (VolumeState.CREATED, VolumeState.STARTED, VolumeState.STOPPED):
        raise ValidationError(f"Volume '{volume.name}' cannot be rebalanced while {volume.state.value}")
    return orchestrator.registry.open_task(TaskOperation.REBALANCE_VOLUME, TargetType.VOLUME, volume_id, {}, step_names)


def request_rebalance(ctx):
    volume = _volume(ctx)
    if volume.state != VolumeState.STARTED:
        return SKIPPED
    bricks = ctx.registry.list_bricks(volume_id=volume.id)
    for node in _nodes_by_id(ctx, bricks).values():
        ctx.channel.rebalance(node, volume.name)


# ============================================================================
# NODE MEMBERSHIP
# ============================================================================

def prepare_add_node(orchestrator, cluster_id, request, step_names):
    node_request = _coerce(NodeRequest, request)
    if node_request is None or not str(node_request.hostname or "").strip():
        raise ValidationError("add_node needs a hostname")
    if node_request.capacity_bytes < 0:
        raise ValidationError("capacity_bytes must not be negative")
    registry = orchestrator.registry
    registry.get_cluster(cluster_id)
    _, task = registry.open_node_task(
        TaskOperation.ADD_NODE,
        {"cluster_id": cluster_id, **node_request.to_dict()},
        step_names,
        cluster_id=cluster_id,
        hostname=node_request.hostname.strip(),
        capacity_bytes=node_request.capacity_bytes,
        brick_root=node_request.brick_root,
        zone=node_request.zone,
        agent_port=node_request.agent_port,
        status=NodeState.OFFLINE,
    )
    return task


def probe_agent(ctx):
    ctx.channel.probe(ctx.registry.get_node(ctx.task.target_id))


def mark_node_online(ctx):
    ctx.registry.set_node_status(ctx.task.target_id, NodeState.ONLINE)


def prepare_remove_node(orchestrator, node_id, request, step_names):
    registry = orchestrator.registry
    node = registry.get_node(node_id)
    if node.active_task_id is not None:
        raise ConflictError(f"task already active for node {node_id}")
    bricks = registry.list_bricks(node_id=node_id)
    if bricks:
        raise ValidationError(f"Node '{node.hostname}' still hosts {len(bricks)} brick(s)")
    return registry.open_task(TaskOperation.REMOVE_NODE, TargetType.NODE, node_id, {}, step_names)


def mark_node_offline(ctx):
    try:
        ctx.registry.set_node_status(ctx.task.target_id, NodeState.OFFLINE)
    except NotFoundError:
        return SKIPPED


def delete_node_record(ctx):
    ctx.registry.remove_node(ctx.task.target_id)


# ============================================================================
# OPERATION TABLE
# ============================================================================

StepFn = Callable[[object], object]


@dataclass(frozen=True)
class Operation:
    name: TaskOperation
    target_type: TargetType
    prepare: Callable
    steps: Tuple[Tuple[str, StepFn], ...]

    @property
    def step_names(self) -> List[str]:
        return [name for name, _ in self.steps]


OPERATIONS: Dict[TaskOperation, Operation] = {
    TaskOperation.CREATE_VOLUME: Operation(
        TaskOperation.CREATE_VOLUME, TargetType.VOLUME, prepare_create_volume, (
            ("plan topology", plan_topology),
            ("create bricks", create_bricks),
            ("compile volfiles", compile_volfiles),
            ("materialize launch configs", materialize_launch_configs),
            ("mark volume created", mark_volume_created),
        ),
    ),
    TaskOperation.EXPAND_VOLUME: Operation(
        TaskOperation.EXPAND_VOLUME, TargetType.VOLUME, prepare_expand_volume, (
            ("plan expansion", plan_expansion),
            ("create bricks", create_bricks),
            ("update layout", update_layout),
            ("compile volfiles", compile_volfiles),
            ("materialize launch configs", materialize_launch_configs),
            ("push volfiles", _only_if_started(push_changed_volfiles)),
            ("launch new bricks", _only_if_started(launch_bricks)),
        ),
    ),
    TaskOperation.START_VOLUME: Operation(
        TaskOperation.START_VOLUME, TargetType.VOLUME, prepare_start_volume, (
            ("compile volfiles", compile_volfiles),
            ("materialize launch configs", materialize_launch_configs),
            ("push volfiles", push_all_volfiles),
            ("launch bricks", launch_bricks),
            ("mark volume started", mark_volume_started),
        ),
    ),
    TaskOperation.STOP_VOLUME: Operation(
        TaskOperation.STOP_VOLUME, TargetType.VOLUME, prepare_stop_volume, (
            ("mark volume stopping", mark_volume_stopping),
            ("stop bricks", stop_bricks),
            ("mark volume stopped", mark_volume_stopped),
        ),
    ),
    TaskOperation.DELETE_VOLUME: Operation(
        TaskOperation.DELETE_VOLUME, TargetType.VOLUME, prepare_delete_volume, (
            ("mark volume deleting", mark_volume_deleting),
            ("remove artifacts", remove_artifacts),
            ("delete bricks", delete_bricks),
            ("delete volume", delete_volume_record),
        ),
    ),
    TaskOperation.REBALANCE_VOLUME: Operation(
        TaskOperation.REBALANCE_VOLUME, TargetType.VOLUME, prepare_rebalance_volume, (
            ("compile volfiles", compile_volfiles),
            ("push volfiles", _only_if_started(push_changed_volfiles)),
            ("request rebalance", request_rebalance),
        ),
    ),
    TaskOperation.ADD_NODE: Operation(
        TaskOperation.ADD_NODE, TargetType.NODE, prepare_add_node, (
            ("probe agent", probe_agent),
            ("mark node online", mark_node_online),
        ),
    ),
    TaskOperation.REMOVE_NODE: Operation(
        TaskOperation.REMOVE_NODE, TargetType.NODE, prepare_remove_node, (
            ("mark node offline", mark_node_offline),
            ("delete node", delete_node_record),
        ),
    ),
}
