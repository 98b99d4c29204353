#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from velocity.pipeline import build_services  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the parse/analyze pipeline as a resident loop.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N ticks (0 means run forever).",
    )
    parser.add_argument(
        "--poll-interval-ms",
        type=int,
        default=None,
        help="Sleep between idle ticks (defaults to VELOCITY_POLL_INTERVAL_MS).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("VELOCITY_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    driver = build_services().driver
    stats = driver.run_forever(
        stop_after_iterations=args.iterations if args.iterations > 0 else None,
        poll_interval_ms=args.poll_interval_ms,
    )
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
