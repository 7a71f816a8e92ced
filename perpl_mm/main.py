"""
Entry point wiring configuration, collaborators and the orchestrator.

Usage:
    perpl-mm bbo --order-size 0.5
    perpl-mm spread --orders-per-side 3 --order-size 0.1 --max-matches 4 --leverage 2
    perpl-mm taker --order-size 1 --leverage 3

Exit status: 0 on signal shutdown, 1 on a fatal strategy setup error,
2 on invalid configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from decimal import Decimal, InvalidOperation
from logging import ERROR, INFO
from typing import List, Optional

from perpl_mm import __version__
from perpl_mm.config.config import Settings
from perpl_mm.errors import ConfigError, StrategySetupError
from perpl_mm.exchange.info_client import AsyncInfo, GatewayEventStream, GatewaySnapshotBuilder
from perpl_mm.exchange.submitter import JsonRpcClient, RpcTransactionSubmitter
from perpl_mm.infra.logging_cfg import build_logger, log_event
from perpl_mm.monitoring.health import HealthChecker, start_metrics_server
from perpl_mm.monitoring.metrics_rich import BotMetrics
from perpl_mm.orchestrator.bot_orchestrator import BotOrchestrator, OrchestratorConfig, RestartReason
from perpl_mm.strategy.base import BaseStrategy
from perpl_mm.strategy.strategy_factory import StrategyFactory

EXIT_OK = 0
EXIT_SETUP = 1
EXIT_CONFIG = 2


def _decimal(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid decimal value: {raw!r}")
    if not value.is_finite() or value <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive number: {raw!r}")
    return value


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer value: {raw!r}")
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1: {raw!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="perpl-mm", description="Perpl market making bot")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--env-file", default=None, help="Path to a .env file (default: search from cwd)")
    sub = parser.add_subparsers(dest="strategy", required=True, metavar="{bbo,spread,taker}")

    bbo = sub.add_parser("bbo", help="Quote one order at the best bid and one at the best ask")
    bbo.add_argument("--order-size", type=_decimal, required=True, help="Size of each order")

    spread = sub.add_parser("spread", help="Ladder of orders around the mark price")
    spread.add_argument("--orders-per-side", type=_positive_int, required=True,
                        help="Number of orders to place on each side of the spread")
    spread.add_argument("--order-size", type=_decimal, required=True, help="Size of each order")
    spread.add_argument("--max-matches", type=_positive_int, default=None, help="Max matches per order")
    spread.add_argument("--leverage", type=_decimal, default=Decimal(1), help="Leverage for each order")

    taker = sub.add_parser("taker", help="Random immediate-or-cancel flow")
    taker.add_argument("--order-size", type=_decimal, required=True, help="Maximum size of each order")
    taker.add_argument("--leverage", type=_decimal, default=Decimal(1), help="Leverage for each order")
    return parser


def build_strategy(args: argparse.Namespace, perpetual_id: int) -> BaseStrategy:
    params = {"order_size": args.order_size}
    if args.strategy == "spread":
        params.update(
            orders_per_side=args.orders_per_side,
            max_matches=args.max_matches,
            leverage=args.leverage,
        )
    elif args.strategy == "taker":
        params.update(leverage=args.leverage)
    return StrategyFactory.create(args.strategy, perpetual_id, **params)


async def run_bot(cfg: Settings, strategy: BaseStrategy, log: logging.Logger) -> int:
    signer = cfg.resolve_signer()
    info = AsyncInfo(cfg.state_url, timeout=cfg.http_timeout)
    rpc = JsonRpcClient(cfg.node_rpc_url, timeout=cfg.http_timeout)
    submitter = RpcTransactionSubmitter(rpc, signer, cfg.address, cfg.chain_id)
    metrics = BotMetrics()
    health = HealthChecker()
    health.set_component_health("config", True)

    orchestrator = BotOrchestrator(
        snapshot_builder=GatewaySnapshotBuilder(info),
        stream_factory=GatewayEventStream(
            info, poll_interval=cfg.poll_interval_sec, min_block=cfg.deployed_at_block
        ),
        submitter=submitter,
        strategy=strategy,
        accounts=[signer.address],
        config=OrchestratorConfig(timeout_sec=cfg.timeout_seconds),
        metrics=metrics,
        health=health,
    )

    srv = None
    if cfg.metrics_port:
        srv = await start_metrics_server(metrics, cfg.metrics_port, health)

    log_event(
        log, "startup", INFO,
        strategy=strategy.name, config=repr(strategy.config), wallet=signer.address,
        exchange=cfg.address, collateral=cfg.collateral_token_address, chain_id=cfg.chain_id,
    )

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(orchestrator.run())

    def stop_all() -> None:
        orchestrator.stop()
        if not run_task.done():
            run_task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    try:
        reason = await run_task
        return EXIT_OK if reason is RestartReason.STOPPED else EXIT_SETUP
    except asyncio.CancelledError:
        log.info("Shutdown signal received, cleaning up...")
        return EXIT_OK
    except StrategySetupError as exc:
        log_event(log, "strategy_setup_failed", ERROR, strategy=strategy.name, err=str(exc))
        return EXIT_SETUP
    finally:
        log.info("Closing servers and connections...")
        if srv is not None:
            srv.close()
            await srv.wait_closed()
        await submitter.close()
        await info.close()
        log.info("Shutdown complete")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        cfg = Settings.load(args.env_file)
    except ConfigError as exc:
        log_event(build_logger("perpl_mm"), "config_invalid", ERROR, err=str(exc))
        return EXIT_CONFIG

    log = build_logger(
        "perpl_mm",
        level=cfg.log_level_no,
        file_path=cfg.log_file,
        console="json" if cfg.log_json else "rich",
    )
    log_event(log, "config_loaded", INFO, **cfg.dump())

    try:
        strategy = build_strategy(args, cfg.perpetual_id)
    except ConfigError as exc:
        log_event(log, "config_invalid", ERROR, err=str(exc))
        return EXIT_CONFIG

    try:
        return asyncio.run(run_bot(cfg, strategy, log))
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
