"""
Moana Service Launcher

Starts the control-plane API (moana.service:app).

This service provides:
- Cluster and node membership
- Volume create/expand/start/stop/delete/rebalance as tracked tasks
- Volume options
- Task status and cancellation

Usage:
    python scripts/run_moana_service.py --host 0.0.0.0 --port 8011

Environment Variables:
    MOANA_API_PORT: API port (default: 8011)
    MOANA_BIND_HOST: Bind address (default: 0.0.0.0)
    MOANA_WORKDIR: Database, volfiles and launch configs (default: .)
"""
import argparse
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import uvicorn

from shared.logging_config import setup_logging


def main() -> None:
    parser = argparse.ArgumentParser(description="Run Moana control-plane service")
    parser.add_argument("--host", default=os.getenv("MOANA_BIND_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("MOANA_API_PORT", "8011")))
    parser.add_argument("--workdir", default=os.getenv("MOANA_WORKDIR", "."))
    parser.add_argument("--log-level", default=os.getenv("MOANA_LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    # Settings are read from the environment when moana.config is imported
    os.environ["MOANA_WORKDIR"] = args.workdir
    os.environ["MOANA_API_PORT"] = str(args.port)
    os.environ["MOANA_BIND_HOST"] = args.host

    logger = setup_logging("moana", level=args.log_level)
    logger.info(f"API address: {args.host}:{args.port}, workdir: {args.workdir}")

    uvicorn.run("moana.service:app", host=args.host, port=args.port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
