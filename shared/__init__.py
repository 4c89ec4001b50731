"""
Shared utilities for Moana components.

This package contains functionality used by the control plane, the node agent
and the brick launcher:
- logging_config: one logging setup for every process
"""
