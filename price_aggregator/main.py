#!/usr/bin/env python3
"""Multi-Source Price Aggregator.

Loads a deployment file, reads every source of an asset pair over RPC and
prints the aggregated price as JSON.

The deployment file format is documented in src/config.py.
"""

import argparse
import asyncio
import dataclasses
import json
import logging
import os
import sys
from typing import Any

from web3 import Web3

from .src.PriceAggregator import PriceAggregator
from .src.adapters import SourceType, get_available_adapters
from .src.adapters.contracts import ContractConnector
from .src.config import load_deployment
from .src.errors import AggregatorError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

MODES = ("median", "weighted", "aggregated", "all", "status", "disputes")


def _to_json(value: Any) -> Any:
    """Convert query results into JSON-serializable values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: _to_json(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_json(v) for k, v in value.items()}
    if isinstance(value, SourceType):
        return value.name.lower()
    return value


async def run_query(aggregator: PriceAggregator, pair: str, mode: str) -> Any:
    """Run one query against the aggregator.

    :param aggregator: Configured aggregator.
    :param pair: Pair symbol to query.
    :param mode: One of ``MODES``.
    :returns: The query result.
    """
    if mode == "median":
        return await aggregator.get_median_price(pair)
    if mode == "weighted":
        return await aggregator.get_weighted_price(pair)
    if mode == "aggregated":
        return await aggregator.get_aggregated_price(pair)
    if mode == "all":
        return await aggregator.get_all_prices(pair)
    if mode == "status":
        return await aggregator.get_all_prices_with_status(pair)
    if mode == "disputes":
        return await aggregator.check_disputes(pair)
    raise ValueError(f"Unknown mode {mode!r}")


def main() -> None:
    """Main entry point for the price aggregator CLI."""
    parser = argparse.ArgumentParser(
        description="Multi-Source Price Aggregator: manipulation-resistant pair prices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available source types:
  {', '.join(get_available_adapters())}

Examples:
  # Median ETH/USD price from every source in the deployment file
  python -m price_aggregator.main --config deployment.json --pair ETH/USD

  # Both statistics, requiring at least two valid sources
  python -m price_aggregator.main --config deployment.json --pair ETH/USD \\
      --mode aggregated --min-responses 2

  # Per-source prices with dispute flags
  python -m price_aggregator.main --config deployment.json --pair ETH/USD --mode status

Environment variables (CLI args take precedence):
  CONFIG, RPC_URL, PAIR, MODE, MIN_RESPONSES, FETCH_TIMEOUT
""",
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Path to the deployment file",
        default=os.environ.get("CONFIG") or "deployment.json",
    )

    parser.add_argument(
        "--rpc-url",
        dest="rpc_url",
        type=str,
        help="JSON-RPC endpoint used to read the source contracts",
        default=os.environ.get("RPC_URL") or "http://localhost:8545",
    )

    parser.add_argument(
        "--pair",
        type=str,
        help="Asset pair symbol to query (e.g., ETH/USD)",
        default=os.environ.get("PAIR"),
    )

    parser.add_argument(
        "--mode",
        type=str,
        choices=MODES,
        help="Query to run (default: median)",
        default=os.environ.get("MODE") or "median",
    )

    parser.add_argument(
        "--min-responses",
        dest="min_responses",
        type=int,
        help="Minimum valid sources required (overrides the deployment file)",
        default=int(os.environ["MIN_RESPONSES"]) if os.environ.get("MIN_RESPONSES") else None,
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Cap on the per-source read timeout in seconds (overrides the deployment file)",
        default=float(os.environ["FETCH_TIMEOUT"]) if os.environ.get("FETCH_TIMEOUT") else None,
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if not args.pair:
        parser.error("An asset pair must be specified (--pair or PAIR)")

    if args.min_responses is not None and args.min_responses < 1:
        parser.error("--min-responses must be at least 1")

    if args.fetch_timeout is not None and args.fetch_timeout <= 0:
        parser.error("--fetch-timeout must be positive")

    try:
        deployment = load_deployment(args.config)
        overrides = {
            "minimum_responses": args.min_responses,
            "fetch_timeout": args.fetch_timeout,
        }
        deployment.config = dataclasses.replace(
            deployment.config, **{k: v for k, v in overrides.items() if v is not None}
        )

        # Log configuration
        logger.info("=" * 60)
        logger.info("Multi-Source Price Aggregator")
        logger.info("=" * 60)
        logger.info(f"Config:            {args.config}")
        logger.info(f"RPC URL:           {args.rpc_url}")
        logger.info(f"Pair:              {args.pair}")
        logger.info(f"Mode:              {args.mode}")
        logger.info(f"Min Responses:     {deployment.config.minimum_responses}")
        logger.info(f"Default Heartbeat: {deployment.config.default_heartbeat_seconds}s")
        logger.info("=" * 60)

        w3 = Web3(Web3.HTTPProvider(args.rpc_url))
        aggregator = deployment.build(ContractConnector(w3))
        result = asyncio.run(run_query(aggregator, args.pair, args.mode))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return
    except AggregatorError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)

    print(json.dumps(_to_json(result), indent=2))


if __name__ == "__main__":
    main()
