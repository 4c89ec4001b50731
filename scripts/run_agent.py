"""
Moana Node Agent Launcher

Starts the node agent API (moana_agent.control_app:app) on a storage node.

Usage:
    python scripts/run_agent.py --host 0.0.0.0 --port 8012 --workdir /var/lib/moana

Environment Variables:
    MOANA_AGENT_PORT: Agent port (default: 8012)
    MOANA_WORKDIR: Where pushed volfiles are stored (default: .)
    MOANA_BRICK_DAEMON: Brick daemon executable (default: glusterfsd)
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
    parser = argparse.ArgumentParser(description="Run Moana node agent")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=int(os.getenv("MOANA_AGENT_PORT", "8012")))
    parser.add_argument("--workdir", default=os.getenv("MOANA_WORKDIR", "."))
    parser.add_argument("--log-level", default=os.getenv("MOANA_LOG_LEVEL", "INFO"))
    args = parser.parse_args()

    os.environ["MOANA_WORKDIR"] = args.workdir
    os.environ["MOANA_AGENT_PORT"] = str(args.port)

    logger = setup_logging("agent", level=args.log_level)
    logger.info(f"Agent address: {args.host}:{args.port}, workdir: {args.workdir}")

    uvicorn.run("moana_agent.control_app:app", host=args.host, port=args.port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
