"""
Moana: brick-cluster control plane

Moana is the single source of truth for cluster topology.
Responsibilities:
- Cluster/Node/Volume/Brick registry
- Brick placement planning across nodes
- Task orchestration (create/expand/start/stop/rebalance/delete, node join/leave)
- Volfile compilation for server and client daemon stacks
- Launch config generation for node agents
"""
