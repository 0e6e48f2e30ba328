#!/usr/bin/env python3
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

DEFAULT_DB = Path(__file__).resolve().parents[1] / "data" / "marketplace.sqlite3"


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed the marketplace database with the demo catalogue.")
    parser.add_argument("--db", default=os.getenv("MARKETPLACE_DB_PATH", str(DEFAULT_DB)), help="SQLite file to seed")
    parser.add_argument("--reset", action="store_true", help="Delete all existing rows before seeding")
    return parser.parse_args(argv)


def run(db_path: str, reset: bool = False) -> Dict[str, Any]:
    # The store module builds its default instance at import time.
    os.environ["MARKETPLACE_DB_PATH"] = db_path
    os.environ["MARKETPLACE_SEED"] = "false"
    from servicoja.services.marketplace_store import MarketplaceStore

    store = MarketplaceStore(db_path=db_path, seed=False)
    if reset:
        store.reset(reseed=True)
        seeded = True
    else:
        seeded = store.seed_if_needed()
    providers = store.list_providers(limit=100)
    return {
        "db_path": store.db_path,
        "seeded": seeded,
        "categories": len(store.list_categories()),
        "providers": len(providers),
    }


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    args = _parse_args(argv)
    summary = run(args.db, reset=args.reset)
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
