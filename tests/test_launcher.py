"""Tests for the brick launcher and the node agent API."""

import json
import subprocess
import threading
import time
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from moana.errors import LauncherError
from moana_agent import launcher
from moana_agent.control_app import BrickSupervisor, create_agent_app
from moana_agent.launcher import BrickProcess, LaunchConfig, LaunchResult

pytestmark = pytest.mark.unit


class FakeProcess:
    """Stands in for a Popen child: alive until terminated, or exits at once with exit_code."""

    def __init__(self, exit_code=None):
        self.returncode = exit_code
        self._exited = threading.Event()
        self.signals = []
        if exit_code is not None:
            self._exited.set()

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired("glusterfsd", timeout)
        return self.returncode

    def terminate(self):
        self.returncode = -15
        self._exited.set()

    def kill(self):
        self.terminate()

    def send_signal(self, signum):
        self.signals.append(signum)


def _config_dict(tmp_path, **overrides):
    data = {
        "path": str(tmp_path / "bricks" / "gv0" / "brick0"),
        "node": {"id": 1, "hostname": "node1"},
        "volume": {"name": "gv0"},
        "name": "node1:bricks-gv0-brick0",
        "port": 49152,
        "device": "",
        "mountdir": "",
    }
    data.update(overrides)
    return data


class TestLaunchConfig:
    @pytest.mark.parametrize("missing", ["path", "name", "port"])
    def test_missing_top_level_field(self, tmp_path, missing):
        data = _config_dict(tmp_path)
        del data[missing]
        with pytest.raises(LauncherError) as exc:
            LaunchConfig.from_dict(data)
        assert exc.value.exit_code == 1
        assert missing in str(exc.value)

    def test_missing_nested_field(self, tmp_path):
        data = _config_dict(tmp_path, node={"id": 1})
        with pytest.raises(LauncherError, match="node.hostname"):
            LaunchConfig.from_dict(data)

    def test_main_exits_1_on_missing_field(self, tmp_path, capsys):
        data = _config_dict(tmp_path)
        del data["volume"]
        config_file = tmp_path / "brick.json"
        config_file.write_text(json.dumps(data))

        assert launcher.main([str(config_file)]) == 1
        ack = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert ack["status"] == "failed"
        assert ack["exit_code"] == 1

    def test_unreadable_config(self, tmp_path):
        with pytest.raises(LauncherError) as exc:
            launcher.load_config(str(tmp_path / "missing.json"))
        assert exc.value.exit_code == 1


class TestMount:
    def _config(self, tmp_path, device="/dev/sdb"):
        mountdir = str(tmp_path / "mnt" / "brick0")
        return LaunchConfig.from_dict(_config_dict(tmp_path, path=mountdir, device=device, mountdir=mountdir))

    def test_no_device_creates_directory(self, tmp_path):
        config = LaunchConfig.from_dict(_config_dict(tmp_path))
        assert launcher.mount_brick(config) == "no_device"
        assert (tmp_path / "bricks" / "gv0" / "brick0").is_dir()

    def test_already_in_mount_table(self, tmp_path):
        config = self._config(tmp_path)
        mounts = tmp_path / "mounts"
        mounts.write_text(f"/dev/sdb {config.mountdir} xfs rw 0 0\n")

        def runner(*args, **kwargs):
            raise AssertionError("mount must not run")

        assert launcher.mount_brick(config, runner=runner, mounts_file=str(mounts)) == "already_mounted"

    def test_mount_reports_already_mounted(self, tmp_path):
        config = self._config(tmp_path)
        runner = lambda *a, **k: SimpleNamespace(returncode=32, stderr=f"mount: {config.mountdir}: /dev/sdb already mounted")
        assert launcher.mount_brick(config, runner=runner, mounts_file=str(tmp_path / "none")) == "already_mounted"

    def test_mount_failure(self, tmp_path):
        config = self._config(tmp_path)
        runner = lambda *a, **k: SimpleNamespace(returncode=32, stderr="wrong fs type")
        with pytest.raises(LauncherError) as exc:
            launcher.mount_brick(config, runner=runner, mounts_file=str(tmp_path / "none"))
        assert exc.value.exit_code == launcher.EXIT_MOUNT

    def test_mount_success(self, tmp_path):
        config = self._config(tmp_path)
        calls = []

        def runner(cmd, **kwargs):
            calls.append(cmd)
            return SimpleNamespace(returncode=0, stderr="")

        assert launcher.mount_brick(config, runner=runner, mounts_file=str(tmp_path / "none")) == "mounted"
        assert calls == [["mount", "/dev/sdb", config.mountdir]]


class TestLaunch:
    def test_ready_when_listening(self, tmp_path):
        config = LaunchConfig.from_dict(_config_dict(tmp_path))
        commands = []

        def popen(cmd):
            commands.append(cmd)
            return FakeProcess()

        result = launcher.launch(config, workdir=str(tmp_path), popen=popen, port_check=lambda port: True)
        assert result.status == "ready"
        assert result.exit_code == 0
        assert commands[0][0] == "glusterfsd"
        assert "--brick-port" in commands[0] and "49152" in commands[0]
        assert str(tmp_path / "volfiles" / "gv0" / "node1.vol") in commands[0]

    def test_already_mounted_ack(self, tmp_path):
        mountdir = str(tmp_path / "brick0")
        config = LaunchConfig.from_dict(_config_dict(tmp_path, path=mountdir, device="/dev/sdb", mountdir=mountdir))
        mounts = tmp_path / "mounts"
        mounts.write_text(f"/dev/sdb {mountdir} xfs rw 0 0\n")
        result = launcher.launch(config, workdir=str(tmp_path), popen=lambda cmd: FakeProcess(),
                                 port_check=lambda port: True, mounts_file=str(mounts))
        assert result.status == "already_mounted"

    def test_child_dies_before_ready(self, tmp_path):
        config = LaunchConfig.from_dict(_config_dict(tmp_path))
        result = launcher.launch(config, workdir=str(tmp_path), popen=lambda cmd: FakeProcess(exit_code=1),
                                 port_check=lambda port: False)
        assert result.status == "failed"
        assert result.exit_code == launcher.EXIT_DAEMON

    def test_missing_daemon_binary(self, tmp_path):
        config = LaunchConfig.from_dict(_config_dict(tmp_path))

        def popen(cmd):
            raise FileNotFoundError(cmd[0])

        result = launcher.launch(config, workdir=str(tmp_path), popen=popen)
        assert result.status == "failed"


class TestSupervision:
    def test_restart_budget(self, tmp_path):
        config = LaunchConfig.from_dict(_config_dict(tmp_path))
        started = []

        def popen(cmd):
            started.append(cmd)
            return FakeProcess(exit_code=1)

        brick = BrickProcess(config, ["glusterfsd"], max_restarts=2, popen=popen)
        brick.start()
        assert brick.supervise() == 1
        assert len(started) == 3

    def test_stop_ends_supervision(self, tmp_path):
        config = LaunchConfig.from_dict(_config_dict(tmp_path))
        brick = BrickProcess(config, ["glusterfsd"], popen=lambda cmd: FakeProcess())
        brick.start()
        result = []
        thread = threading.Thread(target=lambda: result.append(brick.supervise()))
        thread.start()
        brick.stop()
        thread.join(5)
        assert result == [0]
        assert brick.restarts == 0

    def test_stop_during_restart_terminates_new_child(self, tmp_path):
        config = LaunchConfig.from_dict(_config_dict(tmp_path))
        children = []
        stoppers = []

        def popen(cmd):
            if children:
                # stop() arrives while the restart is in progress
                stopper = threading.Thread(target=brick.stop)
                stopper.start()
                stoppers.append(stopper)
                time.sleep(0.05)
            child = FakeProcess(exit_code=None if children else 1)
            children.append(child)
            return child

        brick = BrickProcess(config, ["glusterfsd"], max_restarts=5, popen=popen)
        brick.start()
        result = []
        supervisor = threading.Thread(target=lambda: result.append(brick.supervise()))
        supervisor.start()
        supervisor.join(5)
        stoppers[0].join(5)

        assert result == [0]
        assert len(children) == 2
        assert children[1].returncode == -15


class TestAgentApi:
    @pytest.fixture
    def launches(self):
        return []

    @pytest.fixture
    def client(self, tmp_path, launches):
        def fake_launch(config, workdir, daemon):
            brick = BrickProcess(config, [daemon], popen=lambda cmd: FakeProcess())
            brick.start()
            launches.append(config.name)
            return LaunchResult("ready", 0, f"{config.name} listening on {config.port}", brick)

        supervisor = BrickSupervisor(workdir=str(tmp_path), launcher=fake_launch)
        with TestClient(create_agent_app(supervisor)) as client:
            yield client

    def test_probe(self, client):
        assert client.post("/agent/probe", json={"hostname": "node1"}).json()["status"] == "ready"

    def test_volfile_stored(self, client, tmp_path):
        body = {"volume": "gv0", "name": "node1.vol", "content": "volume gv0-brick0-posix\n"}
        assert client.post("/agent/volfiles", json=body).json()["status"] == "ready"
        assert (tmp_path / "volfiles" / "gv0" / "node1.vol").read_text() == "volume gv0-brick0-posix\n"

    def test_volfile_name_checked(self, client):
        body = {"volume": "gv0", "name": "../escape.vol", "content": ""}
        assert client.post("/agent/volfiles", json=body).json()["status"] == "failed"

    def test_launch_missing_field(self, client, tmp_path, launches):
        data = _config_dict(tmp_path)
        del data["port"]
        ack = client.post("/agent/bricks/launch", json=data).json()
        assert ack == {"status": "failed", "exit_code": 1, "message": "launch config missing required field 'port'"}
        assert launches == []

    def test_launch_stop_cycle(self, client, tmp_path, launches):
        data = _config_dict(tmp_path)
        assert client.post("/agent/bricks/launch", json=data).json()["status"] == "ready"
        # relaunch of a running brick does not start a second daemon
        assert client.post("/agent/bricks/launch", json=data).json()["status"] == "ready"
        assert launches == ["node1:bricks-gv0-brick0"]
        assert [b["alive"] for b in client.get("/agent/bricks").json()] == [True]

        assert client.post("/agent/rebalance", json={"volume": "gv0"}).json()["message"] == "1 brick(s) reloaded"
        assert client.post("/agent/bricks/stop", json=data).json()["status"] == "ready"
        assert client.get("/agent/bricks").json() == []
