"""
Logging configuration for Moana processes.

Shared by the control-plane service, the node agent and the brick launcher.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def resolve_level(level=None) -> int:
    """Accept a logging level, its name, or fall back to MOANA_LOG_LEVEL (default INFO)."""
    if level is None:
        level = os.getenv("MOANA_LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    component_name: str,
    level=None,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None
):
    """
    Configure logging for a Moana component.

    Args:
        component_name: Component identifier (e.g., 'moana', 'agent', 'launcher')
        level: Logging level or its name; MOANA_LOG_LEVEL when omitted
        log_file: Optional file path for log output (MOANA_LOG_FILE when omitted)
        format_string: Custom format string (default provided)
    """
    level = resolve_level(level)
    log_file = log_file or os.getenv("MOANA_LOG_FILE") or None
    if format_string is None:
        format_string = f'[%(asctime)s] [{component_name.upper()}] %(levelname)s %(name)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    logging.basicConfig(level=level, format=format_string, datefmt=DATE_FORMAT, handlers=handlers, force=True)

    logger = logging.getLogger(component_name)
    logger.info(f"{component_name.upper()} logging initialized (level={logging.getLevelName(level)})")

    return logger
