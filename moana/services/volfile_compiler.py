"""
Volfile Compiler
Renders a volume's brick topology into translator-graph text.

Server side, one file per node hosting bricks of the volume, each brick gets:
    storage/posix -> features/locks -> performance/io-threads -> protocol/server

Client side, one file per volume:
    protocol/client per brick
    -> cluster/replicate or cluster/disperse per replica set (when R > 1)
    -> cluster/distribute over the sets (when more than one set)
    -> debug/io-stats named after the volume

Output is a pure function of the bricks, node hostnames and options: every
collection is iterated in sorted order and nothing time-dependent is rendered,
so unchanged inputs give byte-identical text.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

from moana.models import VolumeType

# Option key prefix routed to each translator type
OPTION_PREFIXES = {
    "storage/posix": "storage.",
    "features/locks": "locks.",
    "performance/io-threads": "performance.io-threads.",
    "protocol/server": "server.",
    "protocol/client": "client.",
    "cluster/distribute": "cluster.distribute.",
    "cluster/replicate": "cluster.replicate.",
    "cluster/disperse": "cluster.disperse.",
    "debug/io-stats": "diagnostics.",
}


@dataclass
class Translator:
    name: str
    type: str
    options: Dict[str, str] = field(default_factory=dict)
    subvolumes: List[str] = field(default_factory=list)

    def render(self) -> str:
        lines = [f"volume {self.name}", f"    type {self.type}"]
        for key, value in self.options.items():
            lines.append(f"    option {key} {value}")
        if self.subvolumes:
            lines.append(f"    subvolumes {' '.join(self.subvolumes)}")
        lines.append("end-volume")
        return "\n".join(lines)


@dataclass(frozen=True)
class CompiledVolfiles:
    server: Dict[int, str]  # node_id -> server volfile text
    client: str

    def digests(self) -> Dict[str, str]:
        result = {
            f"server/{node_id}": hashlib.sha256(text.encode("utf-8")).hexdigest()
            for node_id, text in sorted(self.server.items())
        }
        result["client"] = hashlib.sha256(self.client.encode("utf-8")).hexdigest()
        return result


def _render_graph(translators: Sequence[Translator]) -> str:
    return "\n\n".join(t.render() for t in translators) + "\n"


def _with_options(translator: Translator, options: Mapping[str, str]) -> Translator:
    prefix = OPTION_PREFIXES.get(translator.type)
    if prefix is None:
        return translator
    for key in sorted(options):
        if key.startswith(prefix) and len(key) > len(prefix):
            translator.options[key[len(prefix):]] = str(options[key])
    return translator


class VolfileCompiler:
    """Deterministic renderer of server and client volfiles."""

    def compile(
        self,
        volume,
        bricks: Sequence,
        hostnames: Mapping[int, str],
        options: Mapping[str, str] | None = None,
    ) -> CompiledVolfiles:
        """
        Compile every volfile of a volume.

        Args:
            volume: record with name, type, replica_count, redundancy_count
            bricks: records with node_id, brick_index, path, port
            hostnames: node_id -> hostname for every node hosting a brick
            options: volume options, key -> value

        Returns:
            CompiledVolfiles with one server text per hosting node and the client text
        """
        options = dict(options or {})
        ordered = sorted(bricks, key=lambda b: b.brick_index)

        by_node: Dict[int, List] = {}
        for brick in ordered:
            by_node.setdefault(brick.node_id, []).append(brick)

        server = {
            node_id: self.compile_server(volume.name, by_node[node_id], options)
            for node_id in sorted(by_node)
        }
        client = self.compile_client(volume, ordered, hostnames, options)
        return CompiledVolfiles(server=server, client=client)

    def compile_server(self, volume_name: str, bricks: Sequence, options: Mapping[str, str]) -> str:
        translators: List[Translator] = []
        for brick in sorted(bricks, key=lambda b: b.brick_index):
            prefix = f"{volume_name}-brick{brick.brick_index}"
            posix = Translator(f"{prefix}-posix", "storage/posix", {"directory": brick.path})
            locks = Translator(f"{prefix}-locks", "features/locks", subvolumes=[posix.name])
            io_threads = Translator(f"{prefix}-io-threads", "performance/io-threads", subvolumes=[locks.name])
            server = Translator(
                f"{prefix}-server",
                "protocol/server",
                {
                    "transport-type": "tcp",
                    "transport.socket.listen-port": str(brick.port),
                    f"auth.addr.{io_threads.name}.allow": "*",
                },
                subvolumes=[io_threads.name],
            )
            translators.extend(_with_options(t, options) for t in (posix, locks, io_threads, server))
        return _render_graph(translators)

    def compile_client(
        self,
        volume,
        bricks: Sequence,
        hostnames: Mapping[int, str],
        options: Mapping[str, str],
    ) -> str:
        name = volume.name
        translators: List[Translator] = []
        clients: List[str] = []
        for brick in sorted(bricks, key=lambda b: b.brick_index):
            client = Translator(
                f"{name}-client-{brick.brick_index}",
                "protocol/client",
                {
                    "transport-type": "tcp",
                    "remote-host": hostnames[brick.node_id],
                    "remote-port": str(brick.port),
                    "remote-subvolume": f"{name}-brick{brick.brick_index}-io-threads",
                },
            )
            translators.append(_with_options(client, options))
            clients.append(client.name)

        set_size = max(1, int(volume.replica_count or 1))
        roots = clients
        if set_size > 1 and len(clients) > 1:
            roots = []
            for set_index, start in enumerate(range(0, len(clients), set_size)):
                members = clients[start:start + set_size]
                if volume.type == VolumeType.DISPERSE:
                    cluster = Translator(
                        f"{name}-disperse-{set_index}",
                        "cluster/disperse",
                        {"redundancy": str(volume.redundancy_count)},
                        subvolumes=members,
                    )
                else:
                    cluster = Translator(f"{name}-replicate-{set_index}", "cluster/replicate", subvolumes=members)
                translators.append(_with_options(cluster, options))
                roots.append(cluster.name)

        if len(roots) > 1:
            dht = Translator(f"{name}-dht", "cluster/distribute", subvolumes=roots)
            translators.append(_with_options(dht, options))
            roots = [dht.name]

        top = Translator(name, "debug/io-stats", subvolumes=roots)
        translators.append(_with_options(top, options))
        return _render_graph(translators)
