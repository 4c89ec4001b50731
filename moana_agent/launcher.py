"""
Brick Launcher

Turns one launch config into a running brick daemon:
1. Validate the config (exit 1 on a missing required field)
2. Mount the device on its mount directory when one is given; a device that
   is already mounted there is not an error
3. Start the brick daemon as a child process
4. Report ready once the child is alive and listening on its port
5. Supervise it: restart on unexpected exit, up to max_restarts times

Usage:
    moana-brick-launcher /var/lib/moana/bricks/gv0/node1/bricks-gv0-brick0.json
"""

import argparse
import json
import logging
import os
import signal
import socket
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from moana.config import BRICK_DAEMON, WORKDIR
from moana.errors import LauncherError
from moana.services.launch_config import process_name, sanitize_path
from shared.logging_config import setup_logging

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("path", "node.id", "node.hostname", "volume.name", "name", "port")

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_MOUNT = 2
EXIT_DAEMON = 3

STATUS_READY = "ready"
STATUS_ALREADY_MOUNTED = "already_mounted"
STATUS_FAILED = "failed"


# ============================================================================
# CONFIG
# ============================================================================

@dataclass(frozen=True)
class LaunchConfig:
    path: str
    node_id: int
    hostname: str
    volume: str
    name: str
    port: int
    device: str = ""
    mountdir: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "LaunchConfig":
        """
        Raises:
            LauncherError: exit code 1, naming the first missing required field
        """
        for dotted in REQUIRED_FIELDS:
            value = data
            for part in dotted.split("."):
                value = value.get(part) if isinstance(value, dict) else None
            if value is None or value == "":
                raise LauncherError(f"launch config missing required field '{dotted}'", exit_code=EXIT_CONFIG)
        try:
            port = int(data["port"])
        except (TypeError, ValueError) as e:
            raise LauncherError(f"launch config has invalid port {data['port']!r}", exit_code=EXIT_CONFIG) from e

        return cls(
            path=data["path"],
            node_id=int(data["node"]["id"]),
            hostname=data["node"]["hostname"],
            volume=data["volume"]["name"],
            name=data["name"],
            port=port,
            device=data.get("device") or "",
            mountdir=data.get("mountdir") or "",
        )


def load_config(config_path: str) -> LaunchConfig:
    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise LauncherError(f"launch config not found: {config_path}", exit_code=EXIT_CONFIG) from e
    except json.JSONDecodeError as e:
        raise LauncherError(f"launch config is not valid JSON: {e}", exit_code=EXIT_CONFIG) from e
    if not isinstance(data, dict):
        raise LauncherError("launch config must be a JSON object", exit_code=EXIT_CONFIG)
    return LaunchConfig.from_dict(data)


# ============================================================================
# MOUNT
# ============================================================================

def is_mounted(mountdir: str, mounts_file: str = "/proc/mounts") -> bool:
    target = os.path.normpath(mountdir)
    try:
        with open(mounts_file, "r") as f:
            for line in f:
                fields = line.split()
                if len(fields) >= 2 and os.path.normpath(fields[1]) == target:
                    return True
    except FileNotFoundError:
        return False
    return False


def mount_brick(config: LaunchConfig, runner: Callable = subprocess.run, mounts_file: str = "/proc/mounts") -> str:
    """
    Prepare the brick directory, mounting the device when the config has one.

    Returns:
        "mounted", "already_mounted" or "no_device"

    Raises:
        LauncherError: exit code 2 when mount fails for any other reason
    """
    if not config.device:
        Path(config.path).mkdir(parents=True, exist_ok=True)
        return "no_device"

    mountdir = config.mountdir or config.path
    if is_mounted(mountdir, mounts_file):
        logger.info(f"{config.device} already mounted on {mountdir}")
        return STATUS_ALREADY_MOUNTED

    Path(mountdir).mkdir(parents=True, exist_ok=True)
    result = runner(["mount", config.device, mountdir], capture_output=True, text=True)
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        if "already mounted" in stderr.lower():
            logger.info(f"{config.device} already mounted on {mountdir}")
            return STATUS_ALREADY_MOUNTED
        raise LauncherError(f"mount {config.device} on {mountdir} failed: {stderr}", exit_code=EXIT_MOUNT)

    logger.info(f"Mounted {config.device} on {mountdir}")
    return "mounted"


# ============================================================================
# DAEMON
# ============================================================================

def port_open(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        return sock.connect_ex((host, port)) == 0
    except OSError:
        return False
    finally:
        sock.close()


def volfile_path(config: LaunchConfig, workdir: str = WORKDIR) -> Path:
    return Path(workdir) / "volfiles" / config.volume / f"{config.hostname}.vol"


def daemon_command(config: LaunchConfig, volfile: Path, daemon: str = BRICK_DAEMON) -> List[str]:
    return [
        daemon,
        "-N",
        "--volfile", str(volfile),
        "--volfile-id", f"{config.volume}.{config.hostname}.{sanitize_path(config.path)}",
        "--brick-name", config.path,
        "--brick-port", str(config.port),
        "--process-name", process_name(config.hostname, config.path),
    ]


class BrickProcess:
    """
    One supervised brick daemon.

    Args:
        config: validated launch config
        command: argv of the daemon
        max_restarts: unexpected exits tolerated before giving up
        ready_timeout: seconds to wait for the port to accept connections
    """

    def __init__(
        self,
        config: LaunchConfig,
        command: List[str],
        max_restarts: int = 3,
        ready_timeout: float = 10.0,
        poll_interval: float = 0.2,
        popen: Callable = subprocess.Popen,
        port_check: Callable[[int], bool] = port_open,
    ):
        self.config = config
        self.command = command
        self.max_restarts = max_restarts
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self._popen = popen
        self._port_check = port_check

        self.process = None
        self.restarts = 0
        self.stopping = False
        self._lock = threading.Lock()

    def start(self):
        logger.info(f"Starting {self.config.name}: {' '.join(self.command)}")
        self.process = self._popen(self.command)

    def alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def wait_ready(self) -> bool:
        """True once the child is alive and its port accepts connections."""
        deadline = time.monotonic() + self.ready_timeout
        while time.monotonic() < deadline:
            if not self.alive():
                return False
            if self._port_check(self.config.port):
                logger.info(f"{self.config.name} ready on port {self.config.port}")
                return True
            time.sleep(self.poll_interval)
        return False

    def supervise(self) -> int:
        """Block until stopped or the restart budget is spent; returns the exit code."""
        while True:
            returncode = self.process.wait()
            # Decide and restart under the lock so stop() either sees the new child or prevents it
            with self._lock:
                if self.stopping:
                    return EXIT_OK
                self.restarts += 1
                if self.restarts > self.max_restarts:
                    logger.error(f"{self.config.name} exited ({returncode}); restart budget spent")
                    return returncode or EXIT_DAEMON
                logger.warning(
                    f"{self.config.name} exited ({returncode}); restart {self.restarts}/{self.max_restarts}"
                )
                self.start()

    def reload(self):
        """Ask the daemon to re-read its volfile."""
        if self.alive():
            self.process.send_signal(signal.SIGHUP)

    def stop(self, timeout: float = 10.0):
        with self._lock:
            self.stopping = True
            process = self.process
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.config.name} did not exit in {timeout}s; killing")
            process.kill()
            process.wait()
        logger.info(f"Stopped {self.config.name}")


@dataclass
class LaunchResult:
    status: str
    exit_code: int = EXIT_OK
    message: str = ""
    brick: Optional[BrickProcess] = None

    def ack(self) -> dict:
        return {"status": self.status, "exit_code": self.exit_code, "message": self.message}


def launch(
    config: LaunchConfig,
    workdir: str = WORKDIR,
    daemon: str = BRICK_DAEMON,
    runner: Callable = subprocess.run,
    popen: Callable = subprocess.Popen,
    port_check: Callable[[int], bool] = port_open,
    mounts_file: str = "/proc/mounts",
    ready_timeout: float = 10.0,
) -> LaunchResult:
    """Mount, start and wait for the brick daemon; never raises for launch failures."""
    try:
        mount_state = mount_brick(config, runner=runner, mounts_file=mounts_file)
    except LauncherError as e:
        logger.error(str(e))
        return LaunchResult(STATUS_FAILED, e.exit_code, str(e))

    brick = BrickProcess(
        config,
        daemon_command(config, volfile_path(config, workdir), daemon),
        ready_timeout=ready_timeout,
        popen=popen,
        port_check=port_check,
    )
    try:
        brick.start()
    except OSError as e:
        message = f"cannot start {daemon}: {e}"
        logger.error(message)
        return LaunchResult(STATUS_FAILED, EXIT_DAEMON, message)

    if not brick.wait_ready():
        brick.stop()
        message = f"{config.name} did not become ready on port {config.port}"
        logger.error(message)
        return LaunchResult(STATUS_FAILED, EXIT_DAEMON, message)

    status = STATUS_ALREADY_MOUNTED if mount_state == STATUS_ALREADY_MOUNTED else STATUS_READY
    return LaunchResult(status, EXIT_OK, f"{config.name} listening on {config.port}", brick)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Launch and supervise one Moana brick daemon")
    parser.add_argument("config", help="Path to the brick launch config (JSON)")
    parser.add_argument("--workdir", default=WORKDIR, help="Directory holding volfiles/<volume>/<host>.vol")
    parser.add_argument("--daemon", default=BRICK_DAEMON, help="Brick daemon executable")
    parser.add_argument("--ready-timeout", type=float, default=10.0)
    parser.add_argument("--no-supervise", action="store_true", help="Exit once the daemon is ready")
    args = parser.parse_args(argv)

    setup_logging("launcher")

    try:
        config = load_config(args.config)
    except LauncherError as e:
        logger.error(str(e))
        print(json.dumps({"status": STATUS_FAILED, "exit_code": e.exit_code, "message": str(e)}))
        return e.exit_code

    result = launch(config, workdir=args.workdir, daemon=args.daemon, ready_timeout=args.ready_timeout)
    print(json.dumps(result.ack()), flush=True)
    if result.status == STATUS_FAILED or args.no_supervise:
        return result.exit_code

    signal.signal(signal.SIGTERM, lambda signum, frame: result.brick.stop())
    return result.brick.supervise()


if __name__ == "__main__":
    sys.exit(main())
