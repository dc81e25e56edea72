#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tenderflow.config import Settings
from tenderflow.db.schema import initialize_schema
from tenderflow.engine import Engine


def main() -> int:
    parser = argparse.ArgumentParser(description="Create tenderflow tables and seed the default categories")
    parser.add_argument(
        "--skip-categories",
        action="store_true",
        help="only apply the schema; do not insert default categories",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    settings = Settings.from_env()
    engine = Engine.build(settings)
    engine.manager.open()
    try:
        applied = initialize_schema(engine.manager)
        categories = {} if args.skip_categories else engine.categories.ensure_defaults()
    finally:
        engine.shutdown()
    print(
        json.dumps(
            {"backend": settings.db_backend, "statements": len(applied), "categories": categories},
            ensure_ascii=True,
            sort_keys=True,
            indent=2,
        )
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
