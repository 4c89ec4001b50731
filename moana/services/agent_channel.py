"""
Node Agent Channel
Pushes rendered artifacts to node agents and waits for their acknowledgment.

Ack classification:
- "ready"            -> success
- "already_mounted"  -> success (a repeated launch is a no-op on the node)
- "failed"           -> LauncherError (permanent)
- no answer in time  -> ExternalTimeoutError (transient, retried by the task)
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple, Union

import requests

from moana.errors import ExternalTimeoutError, LauncherError

logger = logging.getLogger(__name__)

ACK_READY = "ready"
ACK_ALREADY_MOUNTED = "already_mounted"
ACK_FAILED = "failed"


@dataclass(frozen=True)
class AgentAck:
    status: str
    exit_code: int = 0
    message: str = ""

    @classmethod
    def from_json(cls, payload: dict) -> "AgentAck":
        return cls(
            status=str(payload.get("status", ACK_FAILED)),
            exit_code=int(payload.get("exit_code", 0) or 0),
            message=str(payload.get("message", "") or ""),
        )


def check_ack(ack: AgentAck, action: str, hostname: str) -> AgentAck:
    if ack.status == ACK_READY:
        return ack
    if ack.status == ACK_ALREADY_MOUNTED:
        logger.info(f"{action} on {hostname}: device already mounted, treated as success")
        return ack
    raise LauncherError(
        f"{action} on {hostname} failed (exit {ack.exit_code}): {ack.message or ack.status}",
        exit_code=ack.exit_code or 1,
    )


class AgentChannel:
    """Base channel: every call blocks until the agent acks or the timeout passes."""

    def __init__(self, ack_timeout_seconds: float = 30.0):
        self.ack_timeout_seconds = ack_timeout_seconds

    def _call(self, node, action: str, payload: dict) -> AgentAck:
        raise NotImplementedError

    def probe(self, node) -> AgentAck:
        return check_ack(self._call(node, "probe", {"hostname": node.hostname}), "probe", node.hostname)

    def push_volfile(self, node, volume_name: str, filename: str, content: str) -> AgentAck:
        payload = {"volume": volume_name, "name": filename, "content": content}
        return check_ack(self._call(node, "volfiles", payload), "push volfile", node.hostname)

    def launch_brick(self, node, config: dict) -> AgentAck:
        return check_ack(self._call(node, "bricks/launch", config), f"launch {config['name']}", node.hostname)

    def stop_brick(self, node, config: dict) -> AgentAck:
        return check_ack(self._call(node, "bricks/stop", config), f"stop {config['name']}", node.hostname)

    def rebalance(self, node, volume_name: str) -> AgentAck:
        return check_ack(self._call(node, "rebalance", {"volume": volume_name}), "rebalance", node.hostname)


Outcome = Union[AgentAck, Exception]


class InMemoryAgentChannel(AgentChannel):
    """
    Channel for single-host setups and tests.

    Every call is recorded. Outcomes can be scripted per action (optionally
    per hostname) and are consumed in order; unscripted calls ack "ready".
    A gate makes an action block until the event is set or the ack timeout
    passes, which then raises ExternalTimeoutError.
    """

    def __init__(self, ack_timeout_seconds: float = 30.0):
        super().__init__(ack_timeout_seconds)
        self._lock = threading.Lock()
        self._scripts: Dict[Tuple[str, Optional[str]], Deque[Outcome]] = defaultdict(deque)
        self._gates: Dict[str, threading.Event] = {}
        self.calls: List[Tuple[str, str, dict]] = []

    def script(self, action: str, *outcomes: Outcome, hostname: Optional[str] = None) -> None:
        with self._lock:
            self._scripts[(action, hostname)].extend(outcomes)

    def set_gate(self, action: str, gate: threading.Event) -> None:
        with self._lock:
            self._gates[action] = gate

    def calls_for(self, action: str) -> List[Tuple[str, dict]]:
        with self._lock:
            return [(host, payload) for (a, host, payload) in self.calls if a == action]

    def _next_outcome(self, action: str, hostname: str) -> Optional[Outcome]:
        for key in ((action, hostname), (action, None)):
            queue = self._scripts.get(key)
            if queue:
                return queue.popleft()
        return None

    def _call(self, node, action: str, payload: dict) -> AgentAck:
        with self._lock:
            self.calls.append((action, node.hostname, dict(payload)))
            gate = self._gates.get(action)
        if gate is not None and not gate.wait(self.ack_timeout_seconds):
            raise ExternalTimeoutError(f"{action} on {node.hostname}: no ack within {self.ack_timeout_seconds}s")

        with self._lock:
            outcome = self._next_outcome(action, node.hostname)
        if outcome is None:
            return AgentAck(status=ACK_READY)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class HttpAgentChannel(AgentChannel):
    """Talks to moana_agent.control_app over HTTP/JSON."""

    def __init__(self, ack_timeout_seconds: float = 30.0, default_port: int = 8012, session: Optional[requests.Session] = None):
        super().__init__(ack_timeout_seconds)
        self.default_port = default_port
        self.session = session or requests.Session()

    def _url(self, node, action: str) -> str:
        port = node.agent_port or self.default_port
        return f"http://{node.hostname}:{port}/agent/{action}"

    def _call(self, node, action: str, payload: dict) -> AgentAck:
        url = self._url(node, action)
        try:
            response = self.session.post(url, json=payload, timeout=self.ack_timeout_seconds)
        except requests.Timeout as e:
            raise ExternalTimeoutError(f"{action} on {node.hostname}: no ack within {self.ack_timeout_seconds}s") from e
        except requests.ConnectionError as e:
            raise ExternalTimeoutError(f"{action} on {node.hostname}: agent unreachable ({e})") from e

        if response.status_code >= 500:
            raise ExternalTimeoutError(f"{action} on {node.hostname}: agent error HTTP {response.status_code}")
        if response.status_code != 200:
            raise LauncherError(f"{action} on {node.hostname} rejected: HTTP {response.status_code} {response.text[:200]}")
        return AgentAck.from_json(response.json())
