"""End-to-end tests of task execution against the in-memory agent channel."""

import threading

import pytest

from moana.errors import ConflictError, ExternalTimeoutError, NotFoundError, PlanningError, ValidationError
from moana.models import BrickState, NodeState, StepState, TargetType, TaskOperation, TaskState, VolumeState, VolumeType
from moana.services.agent_channel import AgentAck
from moana.services.operations import OPERATIONS
from moana.services.topology_planner import INSUFFICIENT_NODES

pytestmark = pytest.mark.integration

WAIT = 10.0


def _replica3():
    return {"name": "gv0", "type": "replicate", "replica_count": 3}


def _step(task, name):
    return next(s for s in task.steps if s.name == name)


@pytest.fixture
def created_volume(orchestrator, registry, cluster, make_nodes):
    """A replica-2 volume in 'created' state on a 4-node cluster."""
    make_nodes(4)
    task = orchestrator.submit("create_volume", cluster.id, {"name": "gv0", "type": "replicate", "replica_count": 2})
    assert orchestrator.wait(task.id, WAIT).state == TaskState.SUCCEEDED
    return registry.get_volume(task.target_id)


@pytest.fixture
def started_volume(orchestrator, registry, created_volume):
    task = orchestrator.submit("start_volume", created_volume.id)
    assert orchestrator.wait(task.id, WAIT).state == TaskState.SUCCEEDED
    return registry.get_volume(created_volume.id)


class TestCreateVolume:
    def test_replica3_on_three_nodes(self, orchestrator, registry, cluster, make_nodes):
        make_nodes(3)
        task = orchestrator.submit("create_volume", cluster.id, _replica3())
        done = orchestrator.wait(task.id, WAIT)

        assert done.state == TaskState.SUCCEEDED
        assert all(s.state in (StepState.SUCCEEDED, StepState.SKIPPED) for s in done.steps)
        volume = registry.get_volume(task.target_id)
        assert volume.state == VolumeState.CREATED
        assert volume.active_task_id is None

        bricks = registry.list_bricks(volume_id=volume.id)
        assert len({b.node_id for b in bricks}) == 3
        assert len({(b.node_id, b.port) for b in bricks}) == 3

        volfiles = orchestrator.store.read_volfiles("gv0")
        assert sorted(volfiles) == ["client.vol", "node1.vol", "node2.vol", "node3.vol"]
        for hostname in ("node1", "node2", "node3"):
            assert volfiles[f"{hostname}.vol"].count("transport.socket.listen-port") == 1

        for brick in bricks:
            node = registry.get_node(brick.node_id)
            assert orchestrator.store.launch_config_path("gv0", node.hostname, brick.path).exists()

    def test_insufficient_nodes_rejected_synchronously(self, orchestrator, registry, cluster, make_nodes):
        make_nodes(2)
        with pytest.raises(PlanningError) as exc:
            orchestrator.submit("create_volume", cluster.id, _replica3())
        assert exc.value.constraint == INSUFFICIENT_NODES
        assert registry.list_volumes(cluster.id) == []
        assert registry.list_tasks() == []

    def test_invalid_request_rejected(self, orchestrator, cluster, make_nodes):
        make_nodes(3)
        with pytest.raises(ValidationError):
            orchestrator.submit("create_volume", cluster.id, {"name": "gv0", "type": "replicate", "replica_count": 1})

    def test_duplicate_name_rejected(self, orchestrator, created_volume, cluster):
        with pytest.raises(ConflictError):
            orchestrator.submit("create_volume", cluster.id, {"name": "gv0", "type": "distribute"})

    def test_unknown_operation(self, orchestrator):
        with pytest.raises(ValidationError):
            orchestrator.submit("format_disk", 1)


class TestClaims:
    def test_second_task_on_busy_volume_rejected(self, orchestrator, channel, created_volume):
        channel.ack_timeout_seconds = WAIT
        gate = threading.Event()
        channel.set_gate("volfiles", gate)
        first = orchestrator.submit("start_volume", created_volume.id)
        try:
            with pytest.raises(ConflictError, match="task already active"):
                orchestrator.submit("expand_volume", created_volume.id, {"add_distribute_count": 1})
        finally:
            gate.set()
        assert orchestrator.wait(first.id, WAIT).state == TaskState.SUCCEEDED

    def test_concurrent_submits_single_active(self, orchestrator, registry, channel, created_volume):
        channel.ack_timeout_seconds = WAIT
        gate = threading.Event()
        channel.set_gate("volfiles", gate)
        accepted, rejected = [], []

        def submit():
            try:
                accepted.append(orchestrator.submit("start_volume", created_volume.id))
            except ConflictError:
                rejected.append(True)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        active = registry.list_tasks(target_type=TargetType.VOLUME, target_id=created_volume.id,
                                     states=[TaskState.PENDING, TaskState.RUNNING])
        gate.set()

        assert len(accepted) == 1
        assert len(rejected) == 7
        assert len(active) == 1
        assert orchestrator.wait(accepted[0].id, WAIT).state == TaskState.SUCCEEDED


class TestRetries:
    def test_launch_timeouts_then_success(self, orchestrator, registry, channel, created_volume):
        channel.script("bricks/launch", ExternalTimeoutError("no ack"), ExternalTimeoutError("no ack"))
        task = orchestrator.submit("start_volume", created_volume.id)
        done = orchestrator.wait(task.id, WAIT)

        assert done.state == TaskState.SUCCEEDED
        launch = _step(done, "launch bricks")
        assert launch.state == StepState.SUCCEEDED
        assert launch.attempts == 3
        assert registry.get_volume(created_volume.id).state == VolumeState.STARTED

    def test_retries_exhausted(self, orchestrator, registry, channel, created_volume):
        channel.script("bricks/launch", *[ExternalTimeoutError("no ack")] * 3)
        task = orchestrator.submit("start_volume", created_volume.id)
        done = orchestrator.wait(task.id, WAIT)

        assert done.state == TaskState.FAILED
        assert done.error_kind == "ExternalTimeoutError"
        assert done.error_step == _step(done, "launch bricks").position
        assert _step(done, "launch bricks").attempts == 3
        volume = registry.get_volume(created_volume.id)
        assert volume.active_task_id is None
        # no rollback: the volume stays where the failure left it
        assert volume.state == VolumeState.CREATED

    def test_already_mounted_is_success(self, orchestrator, registry, channel, created_volume):
        channel.script("bricks/launch", AgentAck(status="already_mounted"))
        task = orchestrator.submit("start_volume", created_volume.id)
        done = orchestrator.wait(task.id, WAIT)

        assert done.state == TaskState.SUCCEEDED
        assert _step(done, "launch bricks").attempts == 1
        assert all(b.status == BrickState.ONLINE for b in registry.list_bricks(volume_id=created_volume.id))

    def test_launcher_failure_is_permanent(self, orchestrator, registry, channel, created_volume):
        channel.script("bricks/launch", AgentAck(status="failed", exit_code=1, message="missing field 'port'"))
        task = orchestrator.submit("start_volume", created_volume.id)
        done = orchestrator.wait(task.id, WAIT)

        assert done.state == TaskState.FAILED
        assert done.error_kind == "LauncherError"
        assert "missing field" in done.error_message
        assert _step(done, "launch bricks").attempts == 1
        assert _step(done, "mark volume started").state == StepState.PENDING
        assert registry.get_volume(created_volume.id).active_task_id is None

    def test_relaunch_skips_online_bricks(self, orchestrator, channel, created_volume):
        # first brick acks, second times out once
        channel.script("bricks/launch", AgentAck(status="ready"), ExternalTimeoutError("no ack"))
        task = orchestrator.submit("start_volume", created_volume.id)
        assert orchestrator.wait(task.id, WAIT).state == TaskState.SUCCEEDED
        names = [payload["name"] for _, payload in channel.calls_for("bricks/launch")]
        assert len(names) == 3
        assert names[1] == names[2]


class TestCancel:
    def test_cancel_between_steps(self, orchestrator, registry, channel, created_volume):
        channel.ack_timeout_seconds = WAIT
        gate = threading.Event()
        channel.set_gate("volfiles", gate)
        task = orchestrator.submit("start_volume", created_volume.id)
        orchestrator.cancel(task.id)
        gate.set()
        done = orchestrator.wait(task.id, WAIT)

        assert done.state == TaskState.FAILED
        assert done.error_kind == "TaskCancelled"
        assert _step(done, "mark volume started").state == StepState.PENDING
        assert registry.get_volume(created_volume.id).active_task_id is None

    def test_cancel_finished_task_is_noop(self, orchestrator, created_volume, registry):
        task = registry.list_tasks(target_id=created_volume.id)[0]
        assert orchestrator.cancel(task.id).state == TaskState.SUCCEEDED


class TestLifecycle:
    def test_start_pushes_volfiles_and_launches(self, orchestrator, registry, channel, started_volume):
        assert started_volume.state == VolumeState.STARTED
        pushed = channel.calls_for("volfiles")
        assert sorted(host for host, _ in pushed) == ["node1", "node2"]
        assert all(payload["content"].startswith("volume gv0-brick") for _, payload in pushed)
        assert len(channel.calls_for("bricks/launch")) == 2

    def test_stop_then_delete(self, orchestrator, registry, channel, started_volume):
        with pytest.raises(ValidationError):
            orchestrator.submit("delete_volume", started_volume.id)

        stop = orchestrator.submit("stop_volume", started_volume.id)
        assert orchestrator.wait(stop.id, WAIT).state == TaskState.SUCCEEDED
        assert registry.get_volume(started_volume.id).state == VolumeState.STOPPED
        assert all(b.status == BrickState.OFFLINE for b in registry.list_bricks(volume_id=started_volume.id))
        assert len(channel.calls_for("bricks/stop")) == 2

        delete = orchestrator.submit("delete_volume", started_volume.id)
        assert orchestrator.wait(delete.id, WAIT).state == TaskState.SUCCEEDED
        with pytest.raises(NotFoundError):
            registry.get_volume(started_volume.id)
        assert registry.list_bricks() == []
        assert orchestrator.store.read_volfiles("gv0") == {}

    def test_failed_create_can_be_deleted_and_name_reused(self, orchestrator, registry, cluster, make_nodes,
                                                         monkeypatch):
        make_nodes(3)

        def disk_full(*args, **kwargs):
            raise OSError("No space left on device")

        monkeypatch.setattr(orchestrator.store, "write_volfiles", disk_full)
        task = orchestrator.submit("create_volume", cluster.id, _replica3())
        done = orchestrator.wait(task.id, WAIT)
        assert done.state == TaskState.FAILED
        assert done.error_kind == "OSError"
        assert registry.get_volume(task.target_id).state == VolumeState.CREATING
        monkeypatch.undo()

        delete = orchestrator.submit("delete_volume", task.target_id)
        assert orchestrator.wait(delete.id, WAIT).state == TaskState.SUCCEEDED
        with pytest.raises(NotFoundError):
            registry.get_volume(task.target_id)
        assert registry.list_bricks() == []

        again = orchestrator.submit("create_volume", cluster.id, _replica3())
        assert orchestrator.wait(again.id, WAIT).state == TaskState.SUCCEEDED
        assert registry.get_volume(again.target_id).state == VolumeState.CREATED

    def test_start_requires_created_or_stopped(self, orchestrator, started_volume):
        with pytest.raises(ValidationError):
            orchestrator.submit("start_volume", started_volume.id)

    def test_unknown_volume(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.submit("start_volume", 999)

    def test_stop_requires_started(self, orchestrator, created_volume):
        with pytest.raises(ValidationError):
            orchestrator.submit("stop_volume", created_volume.id)


class TestExpandAndRebalance:
    def test_expand_started_volume(self, orchestrator, registry, channel, started_volume):
        task = orchestrator.submit("expand_volume", started_volume.id, {"add_distribute_count": 1})
        done = orchestrator.wait(task.id, WAIT)

        assert done.state == TaskState.SUCCEEDED
        volume = registry.get_volume(started_volume.id)
        assert volume.type == VolumeType.DISTRIBUTE_REPLICATE
        assert volume.distribute_count == 2
        bricks = registry.list_bricks(volume_id=volume.id)
        assert [b.brick_index for b in bricks] == [0, 1, 2, 3]
        assert len({b.node_id for b in bricks[2:]}) == 2
        assert all(b.status == BrickState.ONLINE for b in bricks)
        assert len(channel.calls_for("bricks/launch")) == 4
        assert "gv0-dht" in orchestrator.store.read_volfiles("gv0")["client.vol"]

    def test_expand_created_volume_skips_launch(self, orchestrator, registry, channel, created_volume):
        task = orchestrator.submit("expand_volume", created_volume.id, {"add_distribute_count": 1})
        done = orchestrator.wait(task.id, WAIT)
        assert done.state == TaskState.SUCCEEDED
        assert _step(done, "launch new bricks").state == StepState.SKIPPED
        assert channel.calls_for("bricks/launch") == []

    def test_rebalance_pushes_changed_volfiles(self, orchestrator, registry, channel, started_volume):
        registry.set_options(started_volume.id, {"performance.io-threads.thread-count": "32"})
        before = len(channel.calls_for("volfiles"))
        task = orchestrator.submit("rebalance_volume", started_volume.id)
        done = orchestrator.wait(task.id, WAIT)

        assert done.state == TaskState.SUCCEEDED
        pushed = channel.calls_for("volfiles")[before:]
        assert len(pushed) == 2
        assert all("option thread-count 32" in payload["content"] for _, payload in pushed)
        assert sorted(host for host, _ in channel.calls_for("rebalance")) == ["node1", "node2"]

    def test_rebalance_without_changes_skips_push(self, orchestrator, channel, started_volume):
        before = len(channel.calls_for("volfiles"))
        task = orchestrator.submit("rebalance_volume", started_volume.id)
        done = orchestrator.wait(task.id, WAIT)
        assert _step(done, "push volfiles").state == StepState.SKIPPED
        assert len(channel.calls_for("volfiles")) == before

    def test_failed_push_is_retried_by_next_rebalance(self, orchestrator, registry, channel, started_volume):
        registry.set_options(started_volume.id, {"performance.io-threads.thread-count": "32"})
        channel.script("volfiles", *[ExternalTimeoutError("no ack")] * 3)
        first = orchestrator.wait(orchestrator.submit("rebalance_volume", started_volume.id).id, WAIT)
        assert first.state == TaskState.FAILED
        assert first.error_kind == "ExternalTimeoutError"

        before = len(channel.calls_for("volfiles"))
        second = orchestrator.wait(orchestrator.submit("rebalance_volume", started_volume.id).id, WAIT)
        assert second.state == TaskState.SUCCEEDED
        assert _step(second, "push volfiles").state == StepState.SUCCEEDED
        pushed = channel.calls_for("volfiles")[before:]
        assert sorted(host for host, _ in pushed) == ["node1", "node2"]
        assert all("option thread-count 32" in payload["content"] for _, payload in pushed)


class TestNodeMembership:
    def test_add_node(self, orchestrator, registry, channel, cluster):
        task = orchestrator.submit("add_node", cluster.id, {"hostname": "node9", "zone": "rack-a"})
        assert orchestrator.wait(task.id, WAIT).state == TaskState.SUCCEEDED
        node = registry.get_node(task.target_id)
        assert node.status == NodeState.ONLINE
        assert node.zone == "rack-a"
        assert [host for host, _ in channel.calls_for("probe")] == ["node9"]

    def test_unreachable_node_stays_offline(self, orchestrator, registry, channel, cluster):
        channel.script("probe", *[ExternalTimeoutError("unreachable")] * 3)
        task = orchestrator.submit("add_node", cluster.id, {"hostname": "node9"})
        done = orchestrator.wait(task.id, WAIT)
        assert done.state == TaskState.FAILED
        assert registry.get_node(task.target_id).status == NodeState.OFFLINE

    def test_remove_node(self, orchestrator, registry, cluster, make_nodes):
        node = make_nodes(1)[0]
        task = orchestrator.submit("remove_node", node.id)
        assert orchestrator.wait(task.id, WAIT).state == TaskState.SUCCEEDED
        with pytest.raises(NotFoundError):
            registry.get_node(node.id)

    def test_remove_node_hosting_bricks_rejected(self, orchestrator, registry, created_volume):
        brick = registry.list_bricks(volume_id=created_volume.id)[0]
        with pytest.raises(ValidationError):
            orchestrator.submit("remove_node", brick.node_id)


class TestResume:
    def test_resume_skips_finished_steps(self, orchestrator, registry, created_volume):
        operation = OPERATIONS[TaskOperation.START_VOLUME]
        task = registry.open_task(
            TaskOperation.START_VOLUME, TargetType.VOLUME, created_volume.id, {}, operation.step_names
        )
        registry.start_task(task.id)
        registry.mark_step(task.id, 0, StepState.SUCCEEDED)

        assert orchestrator.resume() == [task.id]
        done = orchestrator.wait(task.id, WAIT)

        assert done.state == TaskState.SUCCEEDED
        assert done.steps[0].attempts == 0
        assert all(s.attempts == 1 for s in done.steps[1:])
        assert registry.get_volume(created_volume.id).state == VolumeState.STARTED


class TestWorkers:
    def test_finished_workers_are_released(self, orchestrator, created_volume):
        for operation in ("start_volume", "stop_volume"):
            task = orchestrator.submit(operation, created_volume.id)
            assert orchestrator.wait(task.id, WAIT).state == TaskState.SUCCEEDED
        assert orchestrator._workers == {}
