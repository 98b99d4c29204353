#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import pathlib
import sys

import uvicorn

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main() -> int:
    parser = argparse.ArgumentParser(description="Serve the pipeline HTTP API.")
    parser.add_argument("--host", default=os.environ.get("VELOCITY_API_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("VELOCITY_API_PORT", "8000")))
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only).")
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("VELOCITY_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run("velocity.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
