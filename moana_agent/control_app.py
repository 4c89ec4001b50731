"""
Agent Control API

HTTP/JSON API the control plane calls on every node.
Listens on MOANA_AGENT_PORT (8012).

Every endpoint answers with an ack: {"status", "exit_code", "message"}.
- probe: node is reachable and ready to host bricks
- volfiles: store a pushed server volfile under the work directory
- bricks/launch: mount and start a brick daemon, wait until it listens
- bricks/stop: stop the brick daemon named in the launch config
- rebalance: ask the brick daemons of a volume to reload their volfiles
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, Request
from pydantic import BaseModel, Field

from moana.config import BRICK_DAEMON, WORKDIR
from moana.errors import LauncherError
from moana_agent.launcher import (
    STATUS_FAILED,
    STATUS_READY,
    BrickProcess,
    LaunchConfig,
    launch,
)

logger = logging.getLogger(__name__)


class VolfilePush(BaseModel):
    volume: str = Field(min_length=1)
    name: str = Field(min_length=1)
    content: str


class RebalanceRequest(BaseModel):
    volume: str = Field(min_length=1)


def _ack(status: str = STATUS_READY, exit_code: int = 0, message: str = "") -> dict:
    return {"status": status, "exit_code": exit_code, "message": message}


class BrickSupervisor:
    """
    Keeps one BrickProcess per brick name and a supervision thread for each.

    Args:
        workdir: agent work directory (volfiles are stored below it)
        launcher: launch function, injectable for tests
    """

    def __init__(self, workdir: str = WORKDIR, daemon: str = BRICK_DAEMON, launcher: Callable = launch):
        self.workdir = Path(workdir)
        self.daemon = daemon
        self._launch = launcher
        self._lock = threading.Lock()
        self.bricks: Dict[str, BrickProcess] = {}

    def store_volfile(self, volume: str, name: str, content: str) -> Path:
        if "/" in name or name.startswith("."):
            raise LauncherError(f"invalid volfile name {name!r}")
        path = self.workdir / "volfiles" / volume / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.info(f"Stored volfile {path}")
        return path

    def launch(self, config: LaunchConfig) -> dict:
        with self._lock:
            running = self.bricks.get(config.name)
            if running is not None and running.alive():
                return _ack(message=f"{config.name} already running")

            result = self._launch(config, workdir=str(self.workdir), daemon=self.daemon)
            if result.brick is not None:
                self.bricks[config.name] = result.brick
                threading.Thread(
                    target=result.brick.supervise,
                    name=f"supervise-{config.name}",
                    daemon=True,
                ).start()
            return result.ack()

    def stop(self, config: LaunchConfig) -> dict:
        with self._lock:
            brick = self.bricks.pop(config.name, None)
        if brick is None:
            return _ack(message=f"{config.name} not running")
        brick.stop()
        return _ack(message=f"{config.name} stopped")

    def rebalance(self, volume: str) -> dict:
        with self._lock:
            bricks = [b for b in self.bricks.values() if b.config.volume == volume]
        for brick in bricks:
            brick.reload()
        logger.info(f"Rebalance of '{volume}': reloaded {len(bricks)} brick daemon(s)")
        return _ack(message=f"{len(bricks)} brick(s) reloaded")

    def status(self) -> list:
        with self._lock:
            return [
                {"name": name, "volume": b.config.volume, "port": b.config.port, "alive": b.alive(), "restarts": b.restarts}
                for name, b in sorted(self.bricks.items())
            ]

    def stop_all(self):
        with self._lock:
            bricks = list(self.bricks.values())
            self.bricks.clear()
        for brick in bricks:
            brick.stop()


router = APIRouter(prefix="/agent", tags=["agent"])


def _supervisor(request: Request) -> BrickSupervisor:
    return request.app.state.supervisor


@router.post("/probe")
def probe(request: Request, body: Optional[dict] = None):
    return _ack(message=f"agent ready, workdir {_supervisor(request).workdir}")


@router.post("/volfiles")
def push_volfile(body: VolfilePush, request: Request):
    try:
        _supervisor(request).store_volfile(body.volume, body.name, body.content)
    except LauncherError as e:
        return _ack(STATUS_FAILED, e.exit_code, str(e))
    return _ack()


def _parse_config(body: dict):
    try:
        return LaunchConfig.from_dict(body), None
    except LauncherError as e:
        logger.error(str(e))
        return None, _ack(STATUS_FAILED, e.exit_code, str(e))


@router.post("/bricks/launch")
def launch_brick(body: dict, request: Request):
    config, failure = _parse_config(body)
    if failure:
        return failure
    return _supervisor(request).launch(config)


@router.post("/bricks/stop")
def stop_brick(body: dict, request: Request):
    config, failure = _parse_config(body)
    if failure:
        return failure
    return _supervisor(request).stop(config)


@router.post("/rebalance")
def rebalance(body: RebalanceRequest, request: Request):
    return _supervisor(request).rebalance(body.volume)


@router.get("/bricks")
def list_bricks(request: Request):
    return _supervisor(request).status()


def create_agent_app(supervisor: Optional[BrickSupervisor] = None) -> FastAPI:
    app = FastAPI(title="Moana Node Agent", version="1.0.0")
    app.state.supervisor = supervisor or BrickSupervisor()
    app.include_router(router)

    @app.on_event("shutdown")
    def shutdown_bricks():
        app.state.supervisor.stop_all()

    return app


app = create_agent_app()
