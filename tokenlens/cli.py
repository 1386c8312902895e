from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import List, Optional

from .analysis import SECTIONS, TokenAnalyzer
from .config import load_config
from .errors import TokenlensError
from .failover import FailoverExecutor
from .provider_pool import ProviderPool
from .risk import SourcifyVerifier


def _read_tokens(path: str) -> List[str]:
    with open(path, "r", encoding="utf-8") as f:
        return [line.strip() for line in f if line.strip() and not line.strip().startswith("#")]


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Token analytics over EVM event logs")
    p.add_argument("--config", type=str, default=None, help="Path to YAML config to override defaults")
    p.add_argument("--chain", required=True, help="chain id, e.g. ethereum, bsc, base")
    src = p.add_mutually_exclusive_group()
    src.add_argument("--token", help="token contract address")
    src.add_argument("--tokens", help="file with token addresses (one per line)")
    p.add_argument("--mode", choices=["approximate", "accurate"], default="approximate", help="holder scan mode")
    p.add_argument("--holder-depth", type=int, default=None, help="blocks to scan for holders")
    p.add_argument("--dapp-depth", type=int, default=None, help="blocks to scan for DApp activity")
    p.add_argument(
        "--section",
        action="append",
        choices=list(SECTIONS) + ["all"],
        help="section to compute (repeatable, default all)",
    )
    p.add_argument("--price", type=float, default=None, help="token price in USD for flow values")
    p.add_argument("--liquidity", type=float, default=None, help="pool liquidity in USD for the risk check")
    p.add_argument("--verify", action="store_true", help="look up source verification on Sourcify")
    p.add_argument("--providers", action="store_true", help="print provider health for the chain and exit")
    p.add_argument("--log-level", default="INFO")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        stream=sys.stderr,
    )
    logger = logging.getLogger("CLI")

    cfg = load_config(Path(args.config) if args.config else None)
    pool = ProviderPool.from_config(cfg)

    if args.providers:
        try:
            print(json.dumps(pool.health_status(args.chain), indent=2))
        except TokenlensError as e:
            logger.error("%s", e)
            return 2
        return 0

    if not args.token and not args.tokens:
        logger.error("one of --token / --tokens is required")
        return 2

    sections = SECTIONS if not args.section or "all" in args.section else tuple(args.section)
    analyzer = TokenAnalyzer(
        cfg,
        executor=FailoverExecutor.from_config(cfg, pool),
        verifier=SourcifyVerifier() if args.verify else None,
    )
    tokens = [args.token] if args.token else _read_tokens(args.tokens)
    cancel = threading.Event()
    status = 0
    for t in tokens:
        try:
            report = analyzer.analyze(
                t,
                args.chain,
                mode=args.mode,
                holder_depth=args.holder_depth,
                dapp_depth=args.dapp_depth,
                sections=sections,
                price=args.price,
                liquidity_usd=args.liquidity,
                cancel=cancel,
            )
        except KeyboardInterrupt:
            cancel.set()
            logger.warning("Interrupted, cancelling scans")
            return 130
        except TokenlensError as e:
            logger.error("%s: %s", t, e)
            print(json.dumps({"token": t, "chain": args.chain, "error": str(e)}, ensure_ascii=False))
            status = 1
            continue
        # single token: pretty document; batch: one JSON line per token
        indent = 2 if args.token else None
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=indent))
    return status


if __name__ == "__main__":
    raise SystemExit(main())
