"""LevelTrade — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
paper (live prices, simulated fills) and replay (recorded ticks) modes.
"""

import logging

from fastapi import FastAPI

from leveltrade.api.routers import router

app = FastAPI(title="LevelTrade Internal API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("leveltrade")


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio

    from leveltrade.config import load_config

    parser = argparse.ArgumentParser(description="LevelTrade support/resistance bot")
    parser.add_argument(
        "--mode",
        choices=["paper", "replay"],
        default="paper",
        help="Trading mode (default: paper)",
    )
    parser.add_argument("--replay-file", help="CSV of token,price,time ticks (replay mode)")
    parser.add_argument(
        "--replay-speed",
        type=float,
        default=0.0,
        help="Replay speed multiplier; 0 replays as fast as possible",
    )
    parser.add_argument("--env-file", help="Path to the .env file")
    parser.add_argument(
        "--engine-only",
        action="store_true",
        help="Run the trading engine without the API server",
    )
    args = parser.parse_args()

    if args.mode == "replay" and not args.replay_file:
        parser.error("--replay-file is required in replay mode")

    config = load_config(args.env_file)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    asyncio.run(_main(config, args))


async def _main(config, args) -> None:
    import asyncio
    import signal

    from leveltrade.api.routers import configure_routers
    from leveltrade.repos.trade_repo import TradeRepo

    manager, feed = await _build(config, args.mode, args.replay_file, args.replay_speed)
    configure_routers(trade_repo=TradeRepo(config.db_path), engine_manager=manager, mode=args.mode)

    def handle_shutdown():
        logger.info("Shutdown signal received — squaring off and stopping.")
        manager.stop_all()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, handle_shutdown)

    if args.engine_only:
        await _run_engine_only(manager, feed, args.mode)
    else:
        await _run_engine_manager(manager, feed, args.mode, config.health_port)


async def _build(config, mode: str, replay_file=None, replay_speed: float = 0.0):
    """Wire repositories, broker, feed, notifier and the engine manager."""
    import httpx

    from leveltrade.broker.feed import LtpPollingFeed, ReplayFeed
    from leveltrade.broker.instruments import ScripMaster
    from leveltrade.broker.smartapi_client import SmartApiClient
    from leveltrade.engine_manager import EngineManager
    from leveltrade.execution.position_manager import PositionManager
    from leveltrade.models.strategy_config import load_strategies
    from leveltrade.notify.base import LogNotifier
    from leveltrade.notify.telegram import TelegramNotifier
    from leveltrade.repos.db import init_db
    from leveltrade.repos.position_store import PositionStore
    from leveltrade.repos.trade_repo import TradeRepo
    from leveltrade.risk.risk_manager import RiskManager

    init_db(config.db_path)
    trade_repo = TradeRepo(config.db_path)
    strategies = load_strategies(config.strategies_path)

    try:
        resolver = await ScripMaster.load(config.scrip_master_path)
    except httpx.HTTPError as exc:
        logger.error("Instrument master unavailable (%s); option strategies disabled", exc)
        resolver = None

    client = SmartApiClient(config)
    if mode == "replay":
        feed = ReplayFeed(replay_file, speed=replay_speed)
    else:
        feed = LtpPollingFeed(client)

    if config.telegram_enabled:
        notifier = TelegramNotifier(config.telegram_bot_token, config.telegram_chat_id)
    else:
        notifier = LogNotifier()

    risk = RiskManager(
        max_daily_loss=config.max_daily_loss,
        max_daily_profit=config.max_daily_profit,
        halt_on_limit=config.halt_on_limit,
        cooldown_minutes=config.trade_cooldown_minutes,
    )
    store = PositionStore(config.positions_path)
    positions = PositionManager(risk, trade_log=trade_repo, store=store)
    saved_positions, saved_pending = store.load()
    positions.restore(saved_positions, saved_pending)

    manager = EngineManager(
        config=config,
        history=client,
        strategies=strategies,
        positions=positions,
        risk=risk,
        notifier=notifier,
        feed=feed,
        resolver=resolver,
        trade_log=trade_repo,
    )
    manager.build_engine()
    return manager, feed


async def _run_engine_manager(manager, feed, mode: str, port: int = 8080) -> None:
    """Start the API server and the trading engine concurrently."""
    import asyncio

    import uvicorn

    logger.info(
        "Starting LevelTrade in %s mode with %d strategy(ies).",
        mode, len(manager.strategy_names),
    )

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)

    async def _run_server():
        await server.serve()
        # uvicorn owns SIGINT while serving
        if manager.engine.running:
            manager.stop_all()

    async def _run_engine():
        try:
            await _run_engine_only(manager, feed, mode)
        finally:
            server.should_exit = True

    logger.info("API available at http://localhost:%d", port)
    results = await asyncio.gather(_run_server(), _run_engine(), return_exceptions=True)
    logger.info("LevelTrade stopped. Results: %s", results)


async def _run_engine_only(manager, feed, mode: str) -> None:
    """Run the engine; a replay stops itself once every tick is processed."""
    import asyncio

    if mode != "replay":
        await manager.run_all()
        return

    async def _stop_after_replay():
        await feed.finished.wait()
        await manager.engine.wait_idle()
        logger.info("Replay finished.")
        manager.stop_all()

    watcher = asyncio.create_task(_stop_after_replay())
    try:
        await manager.run_all(with_clock=False)
    finally:
        watcher.cancel()


if __name__ == "__main__":
    _run_cli()
