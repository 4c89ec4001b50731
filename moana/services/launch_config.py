"""Brick launch configs: the JSON artifact the node agent's launcher consumes."""

from typing import List, Mapping


def sanitize_path(path: str) -> str:
    """'/bricks/gv0/brick1' -> 'bricks-gv0-brick1'"""
    return path.strip("/").replace("/", "-")


def process_name(hostname: str, path: str) -> str:
    return f"{hostname}:{sanitize_path(path)}"


def build_launch_config(brick, node, volume_name: str) -> dict:
    """
    Build the launch config for one brick.

    Required fields: path, node.id, node.hostname, volume.name, name, port.
    Optional fields device and mountdir are always present, empty when unset.
    """
    return {
        "path": brick.path,
        "node": {"id": node.id, "hostname": node.hostname},
        "volume": {"name": volume_name},
        "name": process_name(node.hostname, brick.path),
        "port": int(brick.port),
        "device": brick.device or "",
        "mountdir": brick.mountdir or "",
    }


def build_launch_configs(bricks, nodes: Mapping[int, object], volume_name: str) -> List[dict]:
    return [
        build_launch_config(brick, nodes[brick.node_id], volume_name)
        for brick in sorted(bricks, key=lambda b: b.brick_index)
    ]
