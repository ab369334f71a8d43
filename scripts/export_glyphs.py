#!/usr/bin/env python
"""Write a JSON snapshot of the Glyphs game data without starting the bot."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from glyphbot.engine import RoundEngine
from glyphbot.leaderboard import LeaderboardAggregator
from glyphbot.ledger import BalanceLedger
from glyphbot.state import StateStore

logger = logging.getLogger("export_glyphs")


def parse_args() -> argparse.Namespace:
    load_dotenv()
    parser = argparse.ArgumentParser(description="Export balances, history and leaderboard to JSON.")
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=Path(os.getenv("GLYPHBOT_DATA_DIR") or "data"),
        help="Directory holding state.json and balances.json (defaults to GLYPHBOT_DATA_DIR or ./data).",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Where to write the export (defaults to <data-dir>/exports).",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(message)s")

    if not args.data_dir.exists():
        raise SystemExit(f"Data directory {args.data_dir} not found.")

    store = StateStore(args.data_dir)
    store.load()
    ledger = BalanceLedger(store)
    aggregator = LeaderboardAggregator(RoundEngine(store, ledger), ledger)
    result = aggregator.export_to(args.output_dir or args.data_dir / "exports")
    summary = result.payload["summary"]
    logger.info(
        "Exported %d accounts (%d GLYPHS) and %d blocks to %s",
        summary["totalAccounts"],
        summary["totalGlyphs"],
        summary["totalBlockHistoryEntries"],
        result.path,
    )


if __name__ == "__main__":
    main()
