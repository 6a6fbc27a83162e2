"""Launcher for the dashboard API (runs the rebalancer inside the server).

Dev:
  python -m liquidai.ui.serve --reload

Prod:
  python -m liquidai.ui.serve --host 0.0.0.0 --port $PORT
"""

from __future__ import annotations

import argparse
import os

import uvicorn


def main() -> None:
    p = argparse.ArgumentParser(description="Serve the LiquidAI dashboard API (FastAPI)")
    p.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    p.add_argument("--reload", action="store_true")
    p.add_argument("--env-file", default=os.getenv("ENV_FILE", ".env"))
    args = p.parse_args()

    env_file = str(args.env_file) if args.env_file and os.path.exists(args.env_file) else None
    uvicorn.run(
        "liquidai.ui.api:create_app_from_env",
        factory=True,
        host=str(args.host),
        port=int(args.port),
        reload=bool(args.reload),
        env_file=env_file,
        log_level=os.getenv("LOG_LEVEL", "info"),
    )


if __name__ == "__main__":
    main()
