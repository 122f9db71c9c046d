#!/usr/bin/env python3
"""
YieldSync CLI

Commands:
- serve: run the settlement API with the background workers (window sweep,
  plus task creation and the challenge monitor when enabled in config)
- evaluate: run consensus over a JSON file of submissions
- shift: compute an adjusted tick range and IL estimate
"""

import argparse
import json
import logging
import logging.handlers
import sys
import time
from typing import Optional

from yieldsync.core.economics.constants import IL_PREVENTION_FACTOR, TICK_SHIFT_FACTOR
from yieldsync.version import __version__


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger: stdout, or a rotating file (5 MB x 2) when given."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    if log_file:
        handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    root_logger.addHandler(handler)


def cmd_serve(args) -> int:
    import uvicorn

    from yieldsync.api import create_app
    from yieldsync.config import load_config
    from yieldsync.service import YieldSyncService
    from yieldsync.storage.store import LedgerStore

    config = load_config(args.config)
    setup_logging(args.log_level or config.log_level, args.log_file)

    store = LedgerStore.from_url(config.database_url) if config.database_url else None
    service = YieldSyncService(config, store=store)
    service.start()
    try:
        uvicorn.run(create_app(service), host=args.host or config.host, port=args.port or config.port)
    finally:
        service.stop()
    return 0


def cmd_evaluate(args) -> int:
    """
    Input file:
        {"asset": "stETH", "operators": 10,
         "submissions": [{"operator": "op-1", "yield_bps": 350}, ...],
         "tolerance_bps": 500, "quorum_bps": 6700}
    """
    from yieldsync.core.consensus.yield_consensus import ConsensusEngine
    from yieldsync.core.economics.constants import CLUSTER_TOLERANCE_BPS, QUORUM_THRESHOLD_BPS
    from yieldsync.core.errors import YieldSyncError
    from yieldsync.core.interfaces import InMemoryOperatorRegistry
    from yieldsync.core.lst import default_assets

    with open(args.file) as f:
        data = json.load(f)

    asset = data.get("asset", "stETH")
    submissions = data.get("submissions", [])
    registry = InMemoryOperatorRegistry()
    operators = {s["operator"] for s in submissions}
    total = max(int(data.get("operators", len(operators))), len(operators))
    for op in sorted(operators):
        registry.register(op, stake=1.0)
    for i in range(total - len(operators)):
        registry.register(f"silent-{i}", stake=1.0)

    assets = default_assets()
    if asset not in assets:
        print(f"Unknown asset: {asset} (known: {sorted(assets)})")
        return 1

    engine = ConsensusEngine(
        registry,
        assets,
        cluster_tolerance_bps=int(data.get("tolerance_bps", CLUSTER_TOLERANCE_BPS)),
        quorum_threshold_bps=int(data.get("quorum_bps", QUORUM_THRESHOLD_BPS)),
    )
    now = time.time()
    for s in submissions:
        try:
            engine.submit(asset, s["operator"], int(s["yield_bps"]), evidence={"source": asset}, timestamp=now, now=now)
        except YieldSyncError as e:
            print(f"Rejected {s['operator']}: {type(e).__name__}: {e}")

    print(json.dumps(engine.evaluate(asset).to_dict(), indent=2))
    return 0


def cmd_shift(args) -> int:
    from yieldsync.core.errors import ValidationError
    from yieldsync.core.positions.adjustment import (
        LinearTickShift,
        QuadraticILEstimate,
        compute_new_range,
        estimate_impermanent_loss_prevented,
    )

    try:
        lower, upper = compute_new_range(
            args.lower, args.upper, args.drift, not args.lst_secondary, LinearTickShift(args.factor))
        il = estimate_impermanent_loss_prevented(args.liquidity, args.drift, QuadraticILEstimate(args.il_factor))
    except ValidationError as e:
        print(f"Error: {e}")
        return 1

    print(f"  Old range:     [{args.lower}, {args.upper}]")
    print(f"  New range:     [{lower}, {upper}]")
    print(f"  Drift:         {args.drift} bps")
    print(f"  IL prevented:  {il:.6f}")
    return 0


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="YieldSync CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the settlement API
  yieldsync serve --config yieldsync.json --port 8000

  # Run consensus over recorded submissions
  yieldsync evaluate submissions.json

  # Shift a range by 60 bps of drift
  yieldsync shift --lower -600 --upper 600 --drift 60 --liquidity 1000000
        """
    )
    parser.add_argument("--version", action="version", version=f"YieldSync {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the settlement API")
    serve_parser.add_argument("--config", type=str, help="JSON config file")
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port")
    serve_parser.add_argument("--log-level", type=str, help="Logging level")
    serve_parser.add_argument("--log-file", type=str, help="Rotating log file")

    evaluate_parser = subparsers.add_parser("evaluate", help="Evaluate consensus over submissions")
    evaluate_parser.add_argument("file", type=str, help="JSON file with submissions")

    shift_parser = subparsers.add_parser("shift", help="Compute an adjusted tick range")
    shift_parser.add_argument("--lower", type=int, required=True, help="Current tick lower")
    shift_parser.add_argument("--upper", type=int, required=True, help="Current tick upper")
    shift_parser.add_argument("--drift", type=int, required=True, help="Drift in bps")
    shift_parser.add_argument("--liquidity", type=int, default=0, help="Position liquidity")
    shift_parser.add_argument("--lst-secondary", action="store_true", help="LST is not the primary asset")
    shift_parser.add_argument("--factor", type=int, default=TICK_SHIFT_FACTOR, help="Ticks per bps of drift")
    shift_parser.add_argument("--il-factor", type=float, default=IL_PREVENTION_FACTOR, help="IL prevention factor")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    commands = {
        'serve': cmd_serve,
        'evaluate': cmd_evaluate,
        'shift': cmd_shift,
    }

    handler = commands.get(args.command)
    if handler:
        return handler(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
