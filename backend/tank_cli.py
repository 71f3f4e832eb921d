"""
tank_cli.py — Evaluate tanks once from the command line.

Usage:
  # Tanks from a YAML plant file, historian over HTTP
  export HISTORIAN_URL=http://historian.local/api
  python tank_cli.py --config plant.yaml

  # Single tank from the environment, SQL tag history, fixed time
  export TANK_NAME=T-101 SENSOR1_TAG=LT101A SENSOR2_TAG=LT101B MAX_FILL_RATE=20
  python tank_cli.py --at 2026-10-18T08:00:00+00:00 -v

plant.yaml:
  tanks:
    - name: T-101
      sensor1_tag: LT101A
      sensor2_tag: LT101B
      max_fill_rate: 20
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

from historian import HISTORIAN_URL, make_historian
from models import SessionLocal
from tank_engine import PlantConfig, TankConfig, evaluate_tank


def main(argv=None) -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="LevelGuard one-shot tank evaluation")
    parser.add_argument("--config", "-c", help="Path to YAML plant file")
    parser.add_argument("--at", help="Evaluation time, ISO 8601 (default: now, UTC)")
    parser.add_argument("--historian", default=HISTORIAN_URL,
                        help="REST historian base URL (default: HISTORIAN_URL, empty = SQL tag history)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.config:
        tanks = PlantConfig.from_yaml(args.config).tanks
    else:
        tanks = [TankConfig.from_env()]

    at = datetime.fromisoformat(args.at) if args.at else datetime.now(timezone.utc)

    db = None if args.historian else SessionLocal()
    historian = None
    try:
        historian = make_historian(db, url=args.historian)
        results = [evaluate_tank(historian, t, at).to_dict() for t in tanks]
    finally:
        if historian is not None and hasattr(historian, "close"):
            historian.close()
        if db is not None:
            db.close()

    json.dump(results, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0 if all(r["status"] == "ok" for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
