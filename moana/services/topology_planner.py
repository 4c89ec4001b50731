"""
Topology Planner
Brick placement across nodes for volume creation and expansion.

Placement rules:
1. Bricks are grouped into replica sets of size R (disperse count for disperse)
2. The members of one replica set always land on R distinct online nodes
3. Within a set, prefer nodes in a zone not yet used by that set
4. Spread sets across the pool: fewest bricks of this volume first
5. Ties break on lowest node id so the same inputs give the same plan
6. Each brick takes the lowest free port >= the base port on its node

The planner is a pure function of its inputs; it never touches the Registry,
so a plan can be computed for dry validation and recomputed inside a task.
"""

from __future__ import annotations

import math
import re
from dataclasses import asdict, dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from moana.errors import PlanningError, ValidationError
from moana.models import NodeState, VolumeType

VOLUME_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")

INSUFFICIENT_NODES = "insufficient nodes"
INSUFFICIENT_CAPACITY = "insufficient capacity"
PORT_EXHAUSTION = "port exhaustion"


@dataclass
class VolumeRequest:
    """Typed volume creation request."""
    name: str
    type: VolumeType
    replica_count: int = 1
    distribute_count: int = 1
    redundancy_count: int = 0
    size_bytes: int = 0
    devices: Dict[int, str] = field(default_factory=dict)  # node_id -> block device

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["devices"] = {str(k): v for k, v in self.devices.items()}
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "VolumeRequest":
        return cls(
            name=data["name"],
            type=VolumeType(data["type"]),
            replica_count=int(data.get("replica_count", 1)),
            distribute_count=int(data.get("distribute_count", 1)),
            redundancy_count=int(data.get("redundancy_count", 0)),
            size_bytes=int(data.get("size_bytes", 0)),
            devices={int(k): v for k, v in (data.get("devices") or {}).items()},
        )


@dataclass(frozen=True)
class NodeCapacity:
    """Planner view of one node."""
    id: int
    hostname: str
    status: NodeState = NodeState.ONLINE
    capacity_bytes: int = 0  # 0 = not reported, unbounded
    reserved_bytes: int = 0
    used_ports: FrozenSet[int] = frozenset()
    brick_root: str = "/bricks"
    zone: Optional[str] = None

    @property
    def free_bytes(self) -> Optional[int]:
        if not self.capacity_bytes:
            return None
        return self.capacity_bytes - self.reserved_bytes


@dataclass(frozen=True)
class BrickPlacement:
    brick_index: int
    replica_set: int
    node_id: int
    hostname: str
    path: str
    port: int
    size_bytes: int
    device: str = ""
    mountdir: str = ""


@dataclass(frozen=True)
class PlacementPlan:
    volume_name: str
    replica_count: int
    bricks: Tuple[BrickPlacement, ...]

    def replica_sets(self) -> List[List[BrickPlacement]]:
        sets: Dict[int, List[BrickPlacement]] = {}
        for brick in self.bricks:
            sets.setdefault(brick.replica_set, []).append(brick)
        return [sets[i] for i in sorted(sets)]

    def to_dict(self) -> dict:
        return {
            "volume_name": self.volume_name,
            "replica_count": self.replica_count,
            "bricks": [asdict(b) for b in self.bricks],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlacementPlan":
        return cls(
            volume_name=data["volume_name"],
            replica_count=int(data["replica_count"]),
            bricks=tuple(BrickPlacement(**b) for b in data["bricks"]),
        )


def validate_request(request: VolumeRequest) -> None:
    """
    Reject malformed layouts before any planning happens.

    Raises:
        ValidationError: naming the violated rule
    """
    if not VOLUME_NAME_PATTERN.match(request.name or ""):
        raise ValidationError(f"Invalid volume name: {request.name!r}")
    if request.distribute_count < 1:
        raise ValidationError("distribute_count must be at least 1")
    if request.size_bytes < 0:
        raise ValidationError("size_bytes must not be negative")

    r = request.replica_count
    if request.type == VolumeType.DISTRIBUTE:
        if r != 1:
            raise ValidationError("distribute volumes have replica_count 1")
    elif request.type == VolumeType.REPLICATE:
        if r < 2:
            raise ValidationError("replicate volumes need replica_count >= 2")
        if request.distribute_count != 1:
            raise ValidationError("replicate volumes have distribute_count 1; use distribute-replicate")
    elif request.type == VolumeType.DISTRIBUTE_REPLICATE:
        if r < 2:
            raise ValidationError("distribute-replicate volumes need replica_count >= 2")
        if request.distribute_count < 2:
            raise ValidationError("distribute-replicate volumes need distribute_count >= 2")
    elif request.type == VolumeType.DISPERSE:
        if r < 3:
            raise ValidationError("disperse volumes need a disperse count (replica_count) >= 3")
        if request.redundancy_count < 1 or 2 * request.redundancy_count >= r:
            raise ValidationError("disperse redundancy must be >= 1 and less than half the disperse count")


def brick_size_for(request: VolumeRequest) -> int:
    if not request.size_bytes:
        return 0
    if request.type == VolumeType.DISPERSE:
        data_bricks = request.replica_count - request.redundancy_count
        return math.ceil(request.size_bytes / (request.distribute_count * data_bricks))
    return math.ceil(request.size_bytes / request.distribute_count)


def brick_path(brick_root: str, volume_name: str, brick_index: int) -> str:
    return f"{brick_root.rstrip('/')}/{volume_name}/brick{brick_index}"


class TopologyPlanner:
    """
    Computes brick placement plans.

    Args:
        base_port: lowest port a brick daemon may listen on
        max_port: highest port a brick daemon may listen on
    """

    def __init__(self, base_port: int = 49152, max_port: int = 65535):
        self.base_port = base_port
        self.max_port = max_port

    def plan(self, request: VolumeRequest, nodes: Sequence[NodeCapacity]) -> PlacementPlan:
        """Plan every brick of a new volume."""
        validate_request(request)
        return self._place(
            volume_name=request.name,
            replica_count=request.replica_count,
            set_count=request.distribute_count,
            brick_size=brick_size_for(request),
            nodes=nodes,
            devices=request.devices,
        )

    def plan_expansion(
        self,
        volume_name: str,
        replica_count: int,
        add_distribute_count: int,
        brick_size: int,
        existing: Sequence,
        nodes: Sequence[NodeCapacity],
        devices: Optional[Dict[int, str]] = None,
    ) -> PlacementPlan:
        """
        Plan additional replica sets for an existing volume.

        Brick indices continue after the existing bricks; nodes already
        carrying bricks of the volume are considered more loaded.
        """
        if add_distribute_count < 1:
            raise ValidationError("add_distribute_count must be at least 1")
        first_index = max((b.brick_index for b in existing), default=-1) + 1
        load: Dict[int, int] = {}
        for brick in existing:
            load[brick.node_id] = load.get(brick.node_id, 0) + 1
        return self._place(
            volume_name=volume_name,
            replica_count=replica_count,
            set_count=add_distribute_count,
            brick_size=brick_size,
            nodes=nodes,
            devices=devices or {},
            first_index=first_index,
            initial_load=load,
        )

    def _place(
        self,
        volume_name: str,
        replica_count: int,
        set_count: int,
        brick_size: int,
        nodes: Sequence[NodeCapacity],
        devices: Dict[int, str],
        first_index: int = 0,
        initial_load: Optional[Dict[int, int]] = None,
    ) -> PlacementPlan:
        online = sorted((n for n in nodes if n.status == NodeState.ONLINE), key=lambda n: n.id)
        if len(online) < replica_count:
            raise PlanningError(
                INSUFFICIENT_NODES,
                f"need {replica_count} online nodes per replica set, have {len(online)}",
            )

        load: Dict[int, int] = dict(initial_load or {})
        planned_bytes: Dict[int, int] = {n.id: 0 for n in online}
        ports: Dict[int, set] = {n.id: set(n.used_ports) for n in online}
        first_set = first_index // replica_count

        placements: List[BrickPlacement] = []
        brick_index = first_index
        for set_offset in range(set_count):
            replica_set = first_set + set_offset
            chosen: List[NodeCapacity] = []
            zones_used = set()
            for _member in range(replica_count):
                candidates = [
                    n for n in online
                    if n not in chosen and self._has_room(n, planned_bytes[n.id], brick_size)
                ]
                if not candidates:
                    raise PlanningError(
                        INSUFFICIENT_CAPACITY,
                        f"no remaining node has {brick_size} free bytes for replica set {replica_set}",
                    )

                candidates.sort(key=lambda n: (
                    n.zone is not None and n.zone in zones_used,
                    load.get(n.id, 0),
                    n.id,
                ))
                node = candidates[0]
                port = self._lowest_free_port(ports[node.id])
                if port is None:
                    raise PlanningError(PORT_EXHAUSTION, f"no free port left on node {node.hostname}")

                path = brick_path(node.brick_root, volume_name, brick_index)
                device = devices.get(node.id, "")
                placements.append(BrickPlacement(
                    brick_index=brick_index,
                    replica_set=replica_set,
                    node_id=node.id,
                    hostname=node.hostname,
                    path=path,
                    port=port,
                    size_bytes=brick_size,
                    device=device,
                    mountdir=path if device else "",
                ))

                chosen.append(node)
                if node.zone is not None:
                    zones_used.add(node.zone)
                ports[node.id].add(port)
                planned_bytes[node.id] += brick_size
                load[node.id] = load.get(node.id, 0) + 1
                brick_index += 1

        return PlacementPlan(volume_name=volume_name, replica_count=replica_count, bricks=tuple(placements))

    @staticmethod
    def _has_room(node: NodeCapacity, planned: int, brick_size: int) -> bool:
        free = node.free_bytes
        if free is None:
            return True
        return free - planned >= brick_size

    def _lowest_free_port(self, taken: set) -> Optional[int]:
        port = self.base_port
        while port <= self.max_port:
            if port not in taken:
                return port
            port += 1
        return None


def load_node_capacities(registry, cluster_id: int) -> List[NodeCapacity]:
    """Snapshot the planner inputs for every node of a cluster."""
    capacities = []
    for node in registry.list_nodes(cluster_id):
        capacities.append(NodeCapacity(
            id=node.id,
            hostname=node.hostname,
            status=node.status,
            capacity_bytes=node.capacity_bytes,
            reserved_bytes=registry.reserved_bytes(node.id),
            used_ports=frozenset(registry.used_ports(node.id)),
            brick_root=node.brick_root,
            zone=node.zone,
        ))
    return capacities
