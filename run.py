"""Run the LiquidAI rebalancer.

Defaults:
- Simulated in-process ledger (set LEDGER_MODE=web3 for a deployed vault).
- Proposals only; execution needs AUTO_EXECUTE=true (or --auto-execute).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from dataclasses import replace

import uvicorn
from dotenv import load_dotenv

from liquidai.config import LEDGER_MODES, AppConfig, ConfigError, load_config, validate_config
from liquidai.data.mongo import MongoManager
from liquidai.orchestrator.main_loop import build_runner, run_once
from liquidai.ui.api import create_app


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="LiquidAI liquidity-pool rebalancer")
    p.add_argument("--once", action="store_true", help="Run exactly one cycle and exit")
    p.add_argument("--status", action="store_true", help="Print resolved configuration/status and exit")
    p.add_argument("--interval-s", type=int, default=None, help="Cycle interval in seconds (default from env)")
    p.add_argument("--initial-delay-s", type=int, default=None, help="Delay before the first cycle")
    p.add_argument("--auto-execute", action="store_true", help="Execute proposals right after creating them")
    p.add_argument("--min-confidence", type=float, default=None, help="Confidence gate in [0, 1]")
    p.add_argument("--ledger-mode", choices=list(LEDGER_MODES), default=None, help="simulated or web3")
    p.add_argument("--db-name", default=os.getenv("MONGODB_DB", "liquidai"), help="MongoDB database name")
    p.add_argument("--serve-api", action="store_true", help="Also serve the dashboard API")
    p.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    return p


def _apply_overrides(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    scheduler = cfg.scheduler
    if args.interval_s is not None:
        scheduler = replace(scheduler, interval_s=int(args.interval_s))
    if args.initial_delay_s is not None:
        scheduler = replace(scheduler, initial_delay_s=int(args.initial_delay_s))

    execution = cfg.execution
    if args.auto_execute:
        execution = replace(execution, auto_execute=True)
    if args.min_confidence is not None:
        execution = replace(execution, min_confidence_threshold=float(args.min_confidence))

    ledger = cfg.ledger
    if args.ledger_mode:
        ledger = replace(ledger, mode=str(args.ledger_mode))
    return replace(cfg, scheduler=scheduler, execution=execution, ledger=ledger)


async def _amain() -> int:
    load_dotenv()
    args = _build_arg_parser().parse_args()

    try:
        cfg = _apply_overrides(load_config(), args)
        validate_config(cfg)
    except ConfigError as e:
        print(f"[ERROR] {e}")
        return 2

    mongo = None
    if cfg.mongodb_uri:
        mongo = MongoManager(db_name=args.db_name, uri=cfg.mongodb_uri)
        await mongo.connect()
        await mongo.ensure_indexes()

    runner = build_runner(cfg, mongo=mongo)

    print("[INFO] Starting LiquidAI rebalancer")
    print(f"[INFO] ledger_mode={cfg.ledger.mode} contract={cfg.ledger.contract_address}")
    print(f"[INFO] interval_s={cfg.scheduler.interval_s} initial_delay_s={cfg.scheduler.initial_delay_s}")
    print(
        f"[INFO] auto_execute={cfg.execution.auto_execute} "
        f"min_confidence={cfg.execution.min_confidence_threshold}"
    )
    print(f"[INFO] pools={','.join(cfg.observer.pools)}")

    try:
        if args.status:
            print(json.dumps(runner.status(), indent=2, default=str))
            return 0

        if args.once:
            result = await run_once(runner)
            print("[INFO] cycle:", json.dumps(result.summary(), default=str))
            return 0

        if args.serve_api:
            app = create_app(runner, manage_runner=True)
            server = uvicorn.Server(uvicorn.Config(app, host=str(args.host), port=int(args.port)))
            await server.serve()
            return 0

        await runner.run_forever()
        return 0
    finally:
        await runner.ledger_client.close()
        if mongo is not None:
            await mongo.close()


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
