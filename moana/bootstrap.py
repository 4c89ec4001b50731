"""
Cluster bootstrap from a YAML topology file.

Creates the cluster, adds each node (waiting for its add_node task), then
creates and optionally starts the listed volumes, all through the HTTP API.

Usage:
    moana-bootstrap deployment/cluster_topology.yaml --base-url http://127.0.0.1:8011

Topology file:
    cluster: prod
    nodes:
      - hostname: node1.example.com
        capacity_bytes: 1099511627776
        zone: rack-a
    volumes:
      - name: gv0
        type: replicate
        replica_count: 3
        start: true
"""

import argparse
import json
import logging
import sys
import time
from typing import Dict, List, Optional

import requests
import yaml

from moana.config import API_PREFIX
from moana.errors import ValidationError
from moana.models import VolumeType
from shared.logging_config import setup_logging

logger = logging.getLogger(__name__)

NODE_FIELDS = ("hostname", "capacity_bytes", "brick_root", "zone", "agent_port")
VOLUME_FIELDS = ("name", "type", "replica_count", "distribute_count", "redundancy_count", "size_bytes", "devices")


def load_topology(config_path: str) -> Dict:
    """
    Load and validate a topology file.

    Raises:
        ValidationError: unreadable file or missing/invalid entries
    """
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ValidationError(f"Topology file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML: {e}") from e

    if not isinstance(config, dict) or not config.get("cluster"):
        raise ValidationError("Topology needs a 'cluster' name")

    nodes = config.get("nodes") or []
    for i, node in enumerate(nodes):
        if not isinstance(node, dict) or not node.get("hostname"):
            raise ValidationError(f"nodes[{i}] needs a hostname")

    volumes = config.get("volumes") or []
    valid_types = {t.value for t in VolumeType}
    for i, volume in enumerate(volumes):
        if not isinstance(volume, dict) or not volume.get("name"):
            raise ValidationError(f"volumes[{i}] needs a name")
        if volume.get("type", VolumeType.DISTRIBUTE.value) not in valid_types:
            raise ValidationError(f"volumes[{i}] has unknown type {volume.get('type')!r}")

    return {"cluster": str(config["cluster"]), "nodes": nodes, "volumes": volumes}


class BootstrapClient:
    """Thin requests wrapper around the control-plane API."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10.0,
                 poll_interval: float = 0.5, task_timeout: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.task_timeout = task_timeout

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{API_PREFIX}{path}"
        response = self.session.request(method, url, json=payload, timeout=self.timeout)
        if response.status_code >= 400:
            raise RuntimeError(f"{method} {path} -> {response.status_code}: {response.text}")
        return response.json()

    def wait_task(self, task_id: int) -> dict:
        deadline = time.monotonic() + self.task_timeout
        while True:
            task = self._request("GET", f"/tasks/{task_id}")
            if task["state"] not in ("pending", "running"):
                return task
            if time.monotonic() > deadline:
                raise TimeoutError(f"Task {task_id} still {task['state']} after {self.task_timeout}s")
            time.sleep(self.poll_interval)

    def run_task(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        accepted = self._request(method, path, payload)
        task = self.wait_task(accepted["task_id"])
        logger.info(f"{method} {path}: task {task['id']} {task['state']}")
        if task["state"] != "succeeded":
            raise RuntimeError(f"Task {task['id']} failed at step {task['error_step']}: "
                               f"{task['error_kind']}: {task['error_message']}")
        return task


def bootstrap(client: BootstrapClient, topology: Dict) -> Dict:
    cluster = client._request("POST", "/clusters", {"name": topology["cluster"]})
    cluster_id = cluster["id"]
    logger.info(f"Cluster '{cluster['name']}' id={cluster_id}")

    known = {n["hostname"] for n in client._request("GET", f"/clusters/{cluster_id}/nodes")}
    for node in topology["nodes"]:
        if node["hostname"] in known:
            logger.info(f"Node {node['hostname']} already registered")
            continue
        payload = {k: node[k] for k in NODE_FIELDS if k in node}
        client.run_task("POST", f"/clusters/{cluster_id}/nodes", payload)

    created: List[str] = []
    existing = {v["name"]: v for v in client._request("GET", f"/clusters/{cluster_id}/volumes")}
    for volume in topology["volumes"]:
        current = existing.get(volume["name"])
        if current is None:
            payload = {k: volume[k] for k in VOLUME_FIELDS if k in volume}
            task = client.run_task("POST", f"/clusters/{cluster_id}/volumes", payload)
            current = {"id": task["target_id"], "state": "created"}
            created.append(volume["name"])
        if volume.get("start") and current["state"] in ("created", "stopped"):
            client.run_task("POST", f"/clusters/{cluster_id}/volumes/{current['id']}/start")

    return {"cluster_id": cluster_id, "created_volumes": created}


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Bootstrap a Moana cluster from a YAML topology")
    parser.add_argument("topology", help="Path to the topology YAML file")
    parser.add_argument("--base-url", default="http://127.0.0.1:8011", help="API base URL")
    args = parser.parse_args(argv)

    setup_logging("bootstrap")
    try:
        topology = load_topology(args.topology)
        summary = bootstrap(BootstrapClient(args.base_url), topology)
    except (ValidationError, RuntimeError, TimeoutError, requests.RequestException) as e:
        logger.error(str(e))
        return 1
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
