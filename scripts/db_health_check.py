#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenderflow.config import Settings
from tenderflow.engine import Engine
from tenderflow.errors import ConnectionUnavailable


def main() -> int:
    parser = argparse.ArgumentParser(description="Check the tenderflow database connection and report tender stats")
    parser.add_argument("--stats", action="store_true", help="include tender counts by status")
    args = parser.parse_args()

    engine = Engine.build(Settings.from_env())
    try:
        engine.manager.open()
    except ConnectionUnavailable as exc:
        print(json.dumps({"success": False, "error": exc.as_dict()}, ensure_ascii=True, sort_keys=True))
        return 1
    try:
        report: dict[str, object] = {"success": True, "health": engine.manager.health()}
        if args.stats:
            report["tenders"] = engine.tender_service.stats()
    finally:
        engine.shutdown()
    print(json.dumps(report, ensure_ascii=True, sort_keys=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
