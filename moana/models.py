from sqlalchemy import Column, Integer, BigInteger, String, Enum, ForeignKey, Boolean, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime
import enum

Base = declarative_base()

# ============================================================================
# ENUM DEFINITIONS
# ============================================================================

class NodeState(str, enum.Enum):
    """Node membership state"""
    ONLINE = "online"
    OFFLINE = "offline"

class VolumeType(str, enum.Enum):
    """Brick layout of a volume"""
    DISTRIBUTE = "distribute"
    REPLICATE = "replicate"
    DISTRIBUTE_REPLICATE = "distribute-replicate"
    DISPERSE = "disperse"

class VolumeState(str, enum.Enum):
    """Volume lifecycle state"""
    CREATING = "creating"
    CREATED = "created"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    DELETING = "deleting"

class BrickState(str, enum.Enum):
    """Brick daemon state as last reported through a task"""
    PENDING = "pending"
    ONLINE = "online"
    OFFLINE = "offline"

class TaskState(str, enum.Enum):
    """Task lifecycle state"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

class StepState(str, enum.Enum):
    """Outcome of one step in a task's step log"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

class TaskOperation(str, enum.Enum):
    """Operations the orchestrator knows how to run"""
    CREATE_VOLUME = "create_volume"
    EXPAND_VOLUME = "expand_volume"
    START_VOLUME = "start_volume"
    STOP_VOLUME = "stop_volume"
    DELETE_VOLUME = "delete_volume"
    REBALANCE_VOLUME = "rebalance_volume"
    ADD_NODE = "add_node"
    REMOVE_NODE = "remove_node"

class TargetType(str, enum.Enum):
    """Kind of entity a task is claimed against"""
    VOLUME = "volume"
    NODE = "node"

# ============================================================================
# CORE MODEL DEFINITIONS
# ============================================================================

class Cluster(Base):
    """Top-level container for nodes and volumes"""
    __tablename__ = "clusters"

    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    nodes = relationship("Node", back_populates="cluster")
    volumes = relationship("Volume", back_populates="cluster")


class Node(Base):
    """Storage node hosting bricks"""
    __tablename__ = "nodes"
    __table_args__ = (UniqueConstraint("cluster_id", "hostname"),)

    id = Column(Integer, primary_key=True)
    cluster_id = Column(Integer, ForeignKey("clusters.id"), nullable=False)
    hostname = Column(String, nullable=False)

    # Capacity hints (0 = not reported, treated as unbounded)
    capacity_bytes = Column(BigInteger, default=0)
    brick_root = Column(String, default="/bricks")
    zone = Column(String)  # Fault domain: rack, chassis, etc.
    agent_port = Column(Integer)

    # State
    status = Column(Enum(NodeState), default=NodeState.OFFLINE)
    active_task_id = Column(Integer)  # Claim marker, compare-and-set only

    created_at = Column(DateTime, default=datetime.utcnow)
    state_last_change = Column(DateTime, default=datetime.utcnow)

    # Relationships
    cluster = relationship("Cluster", back_populates="nodes")
    bricks = relationship("Brick", back_populates="node")


class Volume(Base):
    """Logical volume composed of bricks"""
    __tablename__ = "volumes"
    __table_args__ = (UniqueConstraint("cluster_id", "name"),)

    id = Column(Integer, primary_key=True)
    cluster_id = Column(Integer, ForeignKey("clusters.id"), nullable=False)
    name = Column(String, nullable=False)

    # Layout
    type = Column(Enum(VolumeType), nullable=False)
    replica_count = Column(Integer, default=1)  # Disperse count for disperse volumes
    redundancy_count = Column(Integer, default=0)
    distribute_count = Column(Integer, default=1)
    brick_size_bytes = Column(BigInteger, default=0)

    # State
    state = Column(Enum(VolumeState), default=VolumeState.CREATING)
    active_task_id = Column(Integer)
    deployed_volfiles_json = Column(Text, default="{}")  # node_id -> digest of the volfile its agent acked

    created_at = Column(DateTime, default=datetime.utcnow)
    state_last_change = Column(DateTime, default=datetime.utcnow)

    # Relationships
    cluster = relationship("Cluster", back_populates="volumes")
    bricks = relationship("Brick", back_populates="volume", order_by="Brick.brick_index")
    options = relationship("VolumeOption", back_populates="volume", cascade="all, delete-orphan")


class Brick(Base):
    """Export directory on a node serving one unit of a volume"""
    __tablename__ = "bricks"
    __table_args__ = (
        UniqueConstraint("node_id", "port"),
        UniqueConstraint("node_id", "path"),
        UniqueConstraint("volume_id", "brick_index"),
    )

    id = Column(Integer, primary_key=True)
    volume_id = Column(Integer, ForeignKey("volumes.id"), nullable=False)
    node_id = Column(Integer, ForeignKey("nodes.id"), nullable=False)
    brick_index = Column(Integer, nullable=False)

    path = Column(String, nullable=False)
    port = Column(Integer, nullable=False)
    size_bytes = Column(BigInteger, default=0)
    device = Column(String, default="")
    mountdir = Column(String, default="")

    status = Column(Enum(BrickState), default=BrickState.PENDING)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    volume = relationship("Volume", back_populates="bricks")
    node = relationship("Node", back_populates="bricks")


class VolumeOption(Base):
    """Per-volume key/value option consumed by the volfile compiler"""
    __tablename__ = "volume_options"
    __table_args__ = (UniqueConstraint("volume_id", "key"),)

    id = Column(Integer, primary_key=True)
    volume_id = Column(Integer, ForeignKey("volumes.id"), nullable=False)
    key = Column(String, nullable=False)
    value = Column(Text, nullable=False)

    # Relationships
    volume = relationship("Volume", back_populates="options")


class Task(Base):
    """Tracked execution of a multi-step cluster operation"""
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True)
    operation = Column(Enum(TaskOperation), nullable=False)
    target_type = Column(Enum(TargetType), nullable=False)
    target_id = Column(Integer, nullable=False)

    state = Column(Enum(TaskState), default=TaskState.PENDING)
    request_json = Column(Text, default="{}")
    context_json = Column(Text, default="{}")  # Step outputs, read back on resume
    cancel_requested = Column(Boolean, default=False)

    # Failure attribution
    error_step = Column(Integer)
    error_kind = Column(String)
    error_message = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    steps = relationship("TaskStep", back_populates="task", order_by="TaskStep.position", cascade="all, delete-orphan")


class TaskStep(Base):
    """One entry in a task's ordered step log"""
    __tablename__ = "task_steps"
    __table_args__ = (UniqueConstraint("task_id", "position"),)

    id = Column(Integer, primary_key=True)
    task_id = Column(Integer, ForeignKey("tasks.id"), nullable=False)
    position = Column(Integer, nullable=False)
    name = Column(String, nullable=False)

    state = Column(Enum(StepState), default=StepState.PENDING)
    attempts = Column(Integer, default=0)
    error_kind = Column(String)
    error_message = Column(Text)

    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    task = relationship("Task", back_populates="steps")
