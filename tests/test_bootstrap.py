"""Tests for YAML topology bootstrap."""

import pytest
from fastapi.testclient import TestClient

from moana.bootstrap import BootstrapClient, bootstrap, load_topology
from moana.errors import ValidationError
from moana.service import create_app

TOPOLOGY = """
cluster: prod
nodes:
  - hostname: node1
    zone: rack-a
  - hostname: node2
    zone: rack-b
volumes:
  - name: gv0
    type: replicate
    replica_count: 2
    start: true
"""


@pytest.mark.unit
class TestLoadTopology:
    def test_valid(self, tmp_path):
        path = tmp_path / "topology.yaml"
        path.write_text(TOPOLOGY)
        topology = load_topology(str(path))
        assert topology["cluster"] == "prod"
        assert [n["hostname"] for n in topology["nodes"]] == ["node1", "node2"]
        assert topology["volumes"][0]["start"] is True

    @pytest.mark.parametrize("content", [
        "nodes: []\n",
        "cluster: prod\nnodes:\n  - zone: a\n",
        "cluster: prod\nvolumes:\n  - name: gv0\n    type: striped\n",
        "cluster: [unclosed\n",
    ])
    def test_invalid(self, tmp_path, content):
        path = tmp_path / "topology.yaml"
        path.write_text(content)
        with pytest.raises(ValidationError):
            load_topology(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_topology(str(tmp_path / "nope.yaml"))


@pytest.mark.integration
def test_bootstrap_against_api(tmp_path, settings, channel):
    path = tmp_path / "topology.yaml"
    path.write_text(TOPOLOGY)
    topology = load_topology(str(path))

    with TestClient(create_app(settings=settings, channel=channel)) as client:
        api = BootstrapClient("http://testserver", session=client, poll_interval=0.01, task_timeout=10)
        summary = bootstrap(api, topology)
        assert summary["created_volumes"] == ["gv0"]

        volumes = client.get(f"/api/v1/clusters/{summary['cluster_id']}/volumes").json()
        assert [(v["name"], v["state"]) for v in volumes] == [("gv0", "started")]

        # second run is a no-op
        assert bootstrap(api, topology)["created_volumes"] == []
