"""
Registry: Cluster, Node, Volume, Brick, Task records

Every mutation runs in its own session and transaction, serialized by a
registry-wide lock, and is checked for referential integrity before commit.
Readers get frozen snapshot records, never live ORM rows.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from moana.database import Database
from moana.errors import ConflictError, NotFoundError
from moana.models import (
    Brick,
    BrickState,
    Cluster,
    Node,
    NodeState,
    StepState,
    TargetType,
    Task,
    TaskOperation,
    TaskState,
    TaskStep,
    Volume,
    VolumeOption,
    VolumeState,
    VolumeType,
)

logger = logging.getLogger(__name__)

ACTIVE_TASK_STATES = (TaskState.PENDING, TaskState.RUNNING)


# ============================================================================
# SNAPSHOT RECORDS
# ============================================================================

@dataclass(frozen=True)
class ClusterRecord:
    id: int
    name: str


@dataclass(frozen=True)
class NodeRecord:
    id: int
    cluster_id: int
    hostname: str
    status: NodeState
    capacity_bytes: int
    brick_root: str
    zone: Optional[str]
    agent_port: Optional[int]
    active_task_id: Optional[int]


@dataclass(frozen=True)
class VolumeRecord:
    id: int
    cluster_id: int
    name: str
    type: VolumeType
    replica_count: int
    redundancy_count: int
    distribute_count: int
    brick_size_bytes: int
    state: VolumeState
    active_task_id: Optional[int]


@dataclass(frozen=True)
class BrickRecord:
    id: int
    volume_id: int
    node_id: int
    brick_index: int
    path: str
    port: int
    size_bytes: int
    device: str
    mountdir: str
    status: BrickState


@dataclass(frozen=True)
class StepRecord:
    position: int
    name: str
    state: StepState
    attempts: int
    error_kind: Optional[str]
    error_message: Optional[str]


@dataclass(frozen=True)
class TaskRecord:
    id: int
    operation: TaskOperation
    target_type: TargetType
    target_id: int
    state: TaskState
    request: dict
    context: dict
    cancel_requested: bool
    error_step: Optional[int]
    error_kind: Optional[str]
    error_message: Optional[str]
    steps: Tuple[StepRecord, ...]

    @property
    def active(self) -> bool:
        return self.state in ACTIVE_TASK_STATES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation.value,
            "target_type": self.target_type.value,
            "target_id": self.target_id,
            "state": self.state.value,
            "request": self.request,
            "error_step": self.error_step,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "steps": [
                {
                    "position": s.position,
                    "name": s.name,
                    "state": s.state.value,
                    "attempts": s.attempts,
                    "error_kind": s.error_kind,
                    "error_message": s.error_message,
                }
                for s in self.steps
            ],
        }


def _cluster_record(cluster: Cluster) -> ClusterRecord:
    return ClusterRecord(id=cluster.id, name=cluster.name)


def _node_record(node: Node) -> NodeRecord:
    return NodeRecord(
        id=node.id,
        cluster_id=node.cluster_id,
        hostname=node.hostname,
        status=node.status,
        capacity_bytes=int(node.capacity_bytes or 0),
        brick_root=node.brick_root or "/bricks",
        zone=node.zone,
        agent_port=node.agent_port,
        active_task_id=node.active_task_id,
    )


def _volume_record(volume: Volume) -> VolumeRecord:
    return VolumeRecord(
        id=volume.id,
        cluster_id=volume.cluster_id,
        name=volume.name,
        type=volume.type,
        replica_count=int(volume.replica_count or 1),
        redundancy_count=int(volume.redundancy_count or 0),
        distribute_count=int(volume.distribute_count or 1),
        brick_size_bytes=int(volume.brick_size_bytes or 0),
        state=volume.state,
        active_task_id=volume.active_task_id,
    )


def _brick_record(brick: Brick) -> BrickRecord:
    return BrickRecord(
        id=brick.id,
        volume_id=brick.volume_id,
        node_id=brick.node_id,
        brick_index=brick.brick_index,
        path=brick.path,
        port=brick.port,
        size_bytes=int(brick.size_bytes or 0),
        device=brick.device or "",
        mountdir=brick.mountdir or "",
        status=brick.status,
    )


def _task_record(task: Task) -> TaskRecord:
    return TaskRecord(
        id=task.id,
        operation=task.operation,
        target_type=task.target_type,
        target_id=task.target_id,
        state=task.state,
        request=json.loads(task.request_json or "{}"),
        context=json.loads(task.context_json or "{}"),
        cancel_requested=bool(task.cancel_requested),
        error_step=task.error_step,
        error_kind=task.error_kind,
        error_message=task.error_message,
        steps=tuple(
            StepRecord(
                position=step.position,
                name=step.name,
                state=step.state,
                attempts=int(step.attempts or 0),
                error_kind=step.error_kind,
                error_message=step.error_message,
            )
            for step in task.steps
        ),
    )


# Legal volume state transitions: to_state -> allowed from_states
VOLUME_TRANSITIONS: Dict[VolumeState, Tuple[VolumeState, ...]] = {
    VolumeState.CREATED: (VolumeState.CREATING,),
    VolumeState.STARTED: (VolumeState.CREATED, VolumeState.STOPPED),
    VolumeState.STOPPING: (VolumeState.STARTED,),
    VolumeState.STOPPED: (VolumeState.STOPPING,),
    VolumeState.DELETING: (VolumeState.CREATING, VolumeState.CREATED, VolumeState.STOPPED),
}


class Registry:
    """
    Single shared mutable store of cluster topology and task state.

    Constructed once per process around an explicit Database handle and
    passed to the planner helpers and the orchestrator.
    """

    def __init__(self, database: Database):
        self.database = database
        self._lock = threading.RLock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock:
            db = self.database.SessionLocal()
            try:
                yield db
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError(f"Constraint violated: {e.orig}") from e
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    @staticmethod
    def _require(db: Session, model, entity_id: int, label: str):
        entity = db.get(model, entity_id)
        if entity is None:
            raise NotFoundError(f"{label} {entity_id} not found")
        return entity

    # ========================================================================
    # CLUSTERS
    # ========================================================================

    def bootstrap_cluster(self, name: str) -> ClusterRecord:
        """Create the named cluster, or return it if it already exists."""
        with self._session() as db:
            cluster = db.scalars(select(Cluster).where(Cluster.name == name)).first()
            if cluster is None:
                cluster = Cluster(name=name)
                db.add(cluster)
                db.flush()
                logger.info(f"Bootstrapped cluster '{name}' (id={cluster.id})")
            return _cluster_record(cluster)

    def get_cluster(self, cluster_id: int) -> ClusterRecord:
        with self._session() as db:
            return _cluster_record(self._require(db, Cluster, cluster_id, "Cluster"))

    def list_clusters(self) -> List[ClusterRecord]:
        with self._session() as db:
            return [_cluster_record(c) for c in db.scalars(select(Cluster).order_by(Cluster.id)).all()]

    # ========================================================================
    # NODES
    # ========================================================================

    def _insert_node(
        self,
        db: Session,
        cluster_id: int,
        hostname: str,
        capacity_bytes: int = 0,
        brick_root: str = "/bricks",
        zone: Optional[str] = None,
        agent_port: Optional[int] = None,
        status: NodeState = NodeState.OFFLINE,
    ) -> Node:
        self._require(db, Cluster, cluster_id, "Cluster")
        existing = db.scalars(select(Node).where(
            Node.cluster_id == cluster_id, Node.hostname == hostname
        )).first()
        if existing:
            raise ConflictError(f"Node '{hostname}' already exists in cluster {cluster_id}")

        node = Node(
            cluster_id=cluster_id,
            hostname=hostname,
            capacity_bytes=capacity_bytes,
            brick_root=brick_root,
            zone=zone,
            agent_port=agent_port,
            status=status,
        )
        db.add(node)
        db.flush()
        return node

    def add_node(self, cluster_id: int, hostname: str, **fields) -> NodeRecord:
        with self._session() as db:
            node = self._insert_node(db, cluster_id, hostname, **fields)
            logger.info(f"Node '{hostname}' joined cluster {cluster_id} (id={node.id})")
            return _node_record(node)

    def get_node(self, node_id: int) -> NodeRecord:
        with self._session() as db:
            return _node_record(self._require(db, Node, node_id, "Node"))

    def find_node(self, cluster_id: int, hostname: str) -> Optional[NodeRecord]:
        with self._session() as db:
            node = db.scalars(select(Node).where(
                Node.cluster_id == cluster_id, Node.hostname == hostname
            )).first()
            return _node_record(node) if node else None

    def list_nodes(self, cluster_id: int, status: Optional[NodeState] = None) -> List[NodeRecord]:
        with self._session() as db:
            stmt = select(Node).where(Node.cluster_id == cluster_id)
            if status is not None:
                stmt = stmt.where(Node.status == status)
            return [_node_record(n) for n in db.scalars(stmt.order_by(Node.id)).all()]

    def set_node_status(self, node_id: int, status: NodeState) -> NodeRecord:
        with self._session() as db:
            node = self._require(db, Node, node_id, "Node")
            if node.status != status:
                node.status = status
                node.state_last_change = datetime.utcnow()
                logger.info(f"Node '{node.hostname}' is now {status.value}")
            return _node_record(node)

    def remove_node(self, node_id: int) -> None:
        with self._session() as db:
            node = self._require(db, Node, node_id, "Node")
            bricks = db.scalars(select(Brick).where(Brick.node_id == node_id)).all()
            online = [b for b in bricks if b.status == BrickState.ONLINE]
            if online:
                raise ConflictError(f"Node '{node.hostname}' owns {len(online)} online brick(s)")
            if bricks:
                raise ConflictError(
                    f"Node '{node.hostname}' still hosts {len(bricks)} brick(s); release them first"
                )
            db.delete(node)
            logger.info(f"Node '{node.hostname}' removed from cluster {node.cluster_id}")

    def used_ports(self, node_id: int) -> Set[int]:
        with self._session() as db:
            return set(db.scalars(select(Brick.port).where(Brick.node_id == node_id)).all())

    def reserved_bytes(self, node_id: int) -> int:
        with self._session() as db:
            total = db.scalar(select(func.coalesce(func.sum(Brick.size_bytes), 0)).where(Brick.node_id == node_id))
            return int(total or 0)

    # ========================================================================
    # VOLUMES
    # ========================================================================

    def _insert_volume(
        self,
        db: Session,
        cluster_id: int,
        name: str,
        type: VolumeType,
        replica_count: int = 1,
        distribute_count: int = 1,
        redundancy_count: int = 0,
        brick_size_bytes: int = 0,
        state: VolumeState = VolumeState.CREATING,
    ) -> Volume:
        self._require(db, Cluster, cluster_id, "Cluster")
        existing = db.scalars(select(Volume).where(
            Volume.cluster_id == cluster_id, Volume.name == name
        )).first()
        if existing:
            raise ConflictError(f"Volume name '{name}' already exists")

        volume = Volume(
            cluster_id=cluster_id,
            name=name,
            type=type,
            replica_count=replica_count,
            distribute_count=distribute_count,
            redundancy_count=redundancy_count,
            brick_size_bytes=brick_size_bytes,
            state=state,
        )
        db.add(volume)
        db.flush()
        return volume

    def create_volume(self, cluster_id: int, name: str, type: VolumeType, **fields) -> VolumeRecord:
        with self._session() as db:
            return _volume_record(self._insert_volume(db, cluster_id, name, type, **fields))

    def get_volume(self, volume_id: int) -> VolumeRecord:
        with self._session() as db:
            return _volume_record(self._require(db, Volume, volume_id, "Volume"))

    def find_volume(self, cluster_id: int, name: str) -> Optional[VolumeRecord]:
        with self._session() as db:
            volume = db.scalars(select(Volume).where(
                Volume.cluster_id == cluster_id, Volume.name == name
            )).first()
            return _volume_record(volume) if volume else None

    def list_volumes(self, cluster_id: int) -> List[VolumeRecord]:
        with self._session() as db:
            stmt = select(Volume).where(Volume.cluster_id == cluster_id).order_by(Volume.id)
            return [_volume_record(v) for v in db.scalars(stmt).all()]

    def transition_volume(self, volume_id: int, to_state: VolumeState) -> VolumeRecord:
        """
        Move a volume to a new lifecycle state.

        Re-applying the current state is a no-op so a retried step does not fail.

        Raises:
            ConflictError: if the transition is not legal from the current state
        """
        with self._session() as db:
            volume = self._require(db, Volume, volume_id, "Volume")
            if volume.state == to_state:
                return _volume_record(volume)
            allowed = VOLUME_TRANSITIONS.get(to_state, ())
            if volume.state not in allowed:
                raise ConflictError(
                    f"Volume '{volume.name}' cannot move from {volume.state.value} to {to_state.value}"
                )
            logger.info(f"Volume '{volume.name}': {volume.state.value} -> {to_state.value}")
            volume.state = to_state
            volume.state_last_change = datetime.utcnow()
            return _volume_record(volume)

    def update_volume_layout(self, volume_id: int, type: VolumeType, distribute_count: int) -> VolumeRecord:
        with self._session() as db:
            volume = self._require(db, Volume, volume_id, "Volume")
            volume.type = type
            volume.distribute_count = distribute_count
            return _volume_record(volume)

    def deployed_volfiles(self, volume_id: int) -> Dict[int, str]:
        """Digest of the server volfile each node's agent last acknowledged."""
        with self._session() as db:
            volume = self._require(db, Volume, volume_id, "Volume")
            return {int(k): v for k, v in json.loads(volume.deployed_volfiles_json or "{}").items()}

    def record_volfile_deployed(self, volume_id: int, node_id: int, digest: str) -> None:
        with self._session() as db:
            volume = self._require(db, Volume, volume_id, "Volume")
            deployed = json.loads(volume.deployed_volfiles_json or "{}")
            deployed[str(node_id)] = digest
            volume.deployed_volfiles_json = json.dumps(deployed, sort_keys=True)

    def delete_volume(self, volume_id: int) -> None:
        with self._session() as db:
            volume = self._require(db, Volume, volume_id, "Volume")
            if volume.state == VolumeState.STARTED:
                raise ConflictError(f"Volume '{volume.name}' is started; stop it before deleting")
            brick_count = db.scalar(select(func.count(Brick.id)).where(Brick.volume_id == volume_id))
            if brick_count:
                raise ConflictError(f"Volume '{volume.name}' still has {brick_count} brick(s)")
            db.delete(volume)
            logger.info(f"Volume '{volume.name}' deleted")

    # ========================================================================
    # BRICKS
    # ========================================================================

    def add_bricks(self, volume_id: int, placements: Iterable) -> List[BrickRecord]:
        """
        Create brick records for a volume, all or nothing.

        A placement whose (brick_index, node_id, path) already exists for the
        volume is skipped, so re-running the step after a partial retry is safe.

        Args:
            volume_id: Owning volume
            placements: objects with brick_index, node_id, path, port,
                size_bytes, device and mountdir attributes

        Returns:
            All bricks of the volume, ordered by brick_index
        """
        with self._session() as db:
            self._require(db, Volume, volume_id, "Volume")
            existing = {
                b.brick_index: b
                for b in db.scalars(select(Brick).where(Brick.volume_id == volume_id)).all()
            }
            for placement in placements:
                current = existing.get(placement.brick_index)
                if current is not None:
                    if current.node_id == placement.node_id and current.path == placement.path:
                        continue
                    raise ConflictError(
                        f"Brick index {placement.brick_index} of volume {volume_id} is already placed elsewhere"
                    )
                self._require(db, Node, placement.node_id, "Node")
                port_holder = db.scalars(select(Brick).where(
                    Brick.node_id == placement.node_id, Brick.port == placement.port
                )).first()
                if port_holder is not None:
                    raise ConflictError(f"Port {placement.port} already in use on node {placement.node_id}")
                brick = Brick(
                    volume_id=volume_id,
                    node_id=placement.node_id,
                    brick_index=placement.brick_index,
                    path=placement.path,
                    port=placement.port,
                    size_bytes=placement.size_bytes,
                    device=placement.device or "",
                    mountdir=placement.mountdir or "",
                    status=BrickState.PENDING,
                )
                db.add(brick)
                db.flush()
                existing[brick.brick_index] = brick
            return [_brick_record(existing[i]) for i in sorted(existing)]

    def list_bricks(self, volume_id: Optional[int] = None, node_id: Optional[int] = None) -> List[BrickRecord]:
        with self._session() as db:
            stmt = select(Brick)
            if volume_id is not None:
                stmt = stmt.where(Brick.volume_id == volume_id)
            if node_id is not None:
                stmt = stmt.where(Brick.node_id == node_id)
            stmt = stmt.order_by(Brick.volume_id, Brick.brick_index)
            return [_brick_record(b) for b in db.scalars(stmt).all()]

    def set_brick_status(self, brick_ids: Iterable[int], status: BrickState) -> None:
        ids = list(brick_ids)
        if not ids:
            return
        with self._session() as db:
            db.execute(update(Brick).where(Brick.id.in_(ids)).values(status=status))

    def delete_bricks(self, volume_id: int) -> int:
        with self._session() as db:
            volume = self._require(db, Volume, volume_id, "Volume")
            if volume.state == VolumeState.STARTED:
                raise ConflictError(f"Volume '{volume.name}' is started; its bricks are in use")
            result = db.execute(delete(Brick).where(Brick.volume_id == volume_id))
            return result.rowcount or 0

    # ========================================================================
    # OPTIONS
    # ========================================================================

    def list_options(self, volume_id: int) -> Dict[str, str]:
        with self._session() as db:
            self._require(db, Volume, volume_id, "Volume")
            rows = db.scalars(select(VolumeOption).where(VolumeOption.volume_id == volume_id)).all()
            return {row.key: row.value for row in sorted(rows, key=lambda r: r.key)}

    def set_options(self, volume_id: int, options: Dict[str, str]) -> Dict[str, str]:
        with self._session() as db:
            self._require(db, Volume, volume_id, "Volume")
            current = {
                row.key: row
                for row in db.scalars(select(VolumeOption).where(VolumeOption.volume_id == volume_id)).all()
            }
            for key, value in options.items():
                if key in current:
                    current[key].value = value
                else:
                    db.add(VolumeOption(volume_id=volume_id, key=key, value=value))
        return self.list_options(volume_id)

    def reset_options(self, volume_id: int, keys: Iterable[str]) -> Dict[str, str]:
        with self._session() as db:
            self._require(db, Volume, volume_id, "Volume")
            db.execute(delete(VolumeOption).where(
                VolumeOption.volume_id == volume_id, VolumeOption.key.in_(list(keys))
            ))
        return self.list_options(volume_id)

    # ========================================================================
    # TASKS & CLAIMS
    # ========================================================================

    @staticmethod
    def _target_model(target_type: TargetType):
        return Volume if target_type == TargetType.VOLUME else Node

    def _insert_task(
        self,
        db: Session,
        operation: TaskOperation,
        target_type: TargetType,
        target_id: int,
        request: dict,
        step_names: List[str],
    ) -> Task:
        task = Task(
            operation=operation,
            target_type=target_type,
            target_id=target_id,
            state=TaskState.PENDING,
            request_json=json.dumps(request, sort_keys=True),
            context_json="{}",
        )
        db.add(task)
        db.flush()
        for position, name in enumerate(step_names):
            db.add(TaskStep(task_id=task.id, position=position, name=name, state=StepState.PENDING))
        db.flush()
        return task

    def _claim(self, db: Session, target_type: TargetType, target_id: int, task_id: int) -> None:
        model = self._target_model(target_type)
        result = db.execute(
            update(model)
            .where(model.id == target_id, model.active_task_id.is_(None))
            .values(active_task_id=task_id)
        )
        if result.rowcount != 1:
            self._require(db, model, target_id, target_type.value.capitalize())
            raise ConflictError(f"task already active for {target_type.value} {target_id}")

    def open_task(
        self,
        operation: TaskOperation,
        target_type: TargetType,
        target_id: int,
        request: dict,
        step_names: List[str],
    ) -> TaskRecord:
        """
        Create a pending task and claim its target in one transaction.

        Raises:
            ConflictError: another task holds the target ("task already active")
            NotFoundError: the target does not exist
        """
        with self._session() as db:
            task = self._insert_task(db, operation, target_type, target_id, request, step_names)
            self._claim(db, target_type, target_id, task.id)
            db.flush()
            logger.info(f"Task {task.id} ({operation.value}) claimed {target_type.value} {target_id}")
            return _task_record(task)

    def open_volume_task(
        self,
        operation: TaskOperation,
        request: dict,
        step_names: List[str],
        **volume_fields,
    ) -> Tuple[VolumeRecord, TaskRecord]:
        """Create a volume in 'creating' state together with its claiming task."""
        with self._session() as db:
            volume = self._insert_volume(db, **volume_fields)
            task = self._insert_task(db, operation, TargetType.VOLUME, volume.id, request, step_names)
            self._claim(db, TargetType.VOLUME, volume.id, task.id)
            db.refresh(volume)
            logger.info(f"Task {task.id} ({operation.value}) claimed new volume '{volume.name}'")
            return _volume_record(volume), _task_record(task)

    def open_node_task(
        self,
        operation: TaskOperation,
        request: dict,
        step_names: List[str],
        **node_fields,
    ) -> Tuple[NodeRecord, TaskRecord]:
        """Register an offline node together with its claiming task."""
        with self._session() as db:
            node = self._insert_node(db, **node_fields)
            task = self._insert_task(db, operation, TargetType.NODE, node.id, request, step_names)
            self._claim(db, TargetType.NODE, node.id, task.id)
            db.refresh(node)
            logger.info(f"Task {task.id} ({operation.value}) claimed new node '{node.hostname}'")
            return _node_record(node), _task_record(task)

    def get_task(self, task_id: int) -> TaskRecord:
        with self._session() as db:
            return _task_record(self._require(db, Task, task_id, "Task"))

    def list_tasks(
        self,
        target_type: Optional[TargetType] = None,
        target_id: Optional[int] = None,
        states: Optional[Iterable[TaskState]] = None,
    ) -> List[TaskRecord]:
        with self._session() as db:
            stmt = select(Task)
            if target_type is not None:
                stmt = stmt.where(Task.target_type == target_type)
            if target_id is not None:
                stmt = stmt.where(Task.target_id == target_id)
            if states is not None:
                stmt = stmt.where(Task.state.in_(list(states)))
            return [_task_record(t) for t in db.scalars(stmt.order_by(Task.id)).all()]

    def start_task(self, task_id: int) -> TaskRecord:
        with self._session() as db:
            task = self._require(db, Task, task_id, "Task")
            if task.state == TaskState.PENDING:
                task.state = TaskState.RUNNING
                task.started_at = datetime.utcnow()
            return _task_record(task)

    def save_task_context(self, task_id: int, context: dict) -> None:
        with self._session() as db:
            task = self._require(db, Task, task_id, "Task")
            task.context_json = json.dumps(context, sort_keys=True)

    def request_cancel(self, task_id: int) -> TaskRecord:
        with self._session() as db:
            task = self._require(db, Task, task_id, "Task")
            if task.state in ACTIVE_TASK_STATES:
                task.cancel_requested = True
            return _task_record(task)

    def mark_step(
        self,
        task_id: int,
        position: int,
        state: StepState,
        attempts: Optional[int] = None,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._session() as db:
            step = db.scalars(select(TaskStep).where(
                TaskStep.task_id == task_id, TaskStep.position == position
            )).first()
            if step is None:
                raise NotFoundError(f"Step {position} of task {task_id} not found")
            step.state = state
            if attempts is not None:
                step.attempts = attempts
            if state == StepState.RUNNING and step.started_at is None:
                step.started_at = datetime.utcnow()
            if state in (StepState.SUCCEEDED, StepState.FAILED, StepState.SKIPPED):
                step.completed_at = datetime.utcnow()
            step.error_kind = error_kind
            step.error_message = error_message

    def complete_task(
        self,
        task_id: int,
        state: TaskState,
        error_step: Optional[int] = None,
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> TaskRecord:
        """Record the terminal state and release the target claim atomically."""
        with self._session() as db:
            task = self._require(db, Task, task_id, "Task")
            task.state = state
            task.completed_at = datetime.utcnow()
            task.error_step = error_step
            task.error_kind = error_kind
            task.error_message = error_message
            model = self._target_model(task.target_type)
            # The target may be gone after a successful delete
            db.execute(
                update(model)
                .where(model.id == task.target_id, model.active_task_id == task_id)
                .values(active_task_id=None)
            )
            logger.info(f"Task {task_id} ({task.operation.value}) {state.value}, claim released")
            return _task_record(task)
