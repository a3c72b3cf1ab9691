"""
Entry point wiring all components.

    python -m botdesk.main
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path

import httpx
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info

from botdesk.app import build_engine, run_all
from botdesk.config.config import Settings
from botdesk.gateway.hyperliquid import HyperliquidGateway
from botdesk.infra.async_execution import AsyncExchange
from botdesk.infra.async_info import AsyncInfo
from botdesk.infra.logging_cfg import build_logger
from botdesk.infra.nonce import NonceCoordinator
from botdesk.monitoring.metrics import start_metrics_server


async def main() -> None:
    cfg = Settings.load()
    log = build_logger("botdesk", level=cfg.log_level, file_path=str(Path(cfg.log_dir) / "botdesk.log"))
    log.info(json.dumps({"event": "settings", **cfg.dump()}, default=str))

    ctx = cfg.connection_context()
    wallet = cfg.resolve_signer()
    perp_dexs = [cfg.dex] if cfg.dex else None
    info = Info(ctx.base_url, skip_ws=False, perp_dexs=perp_dexs)
    # One shared HTTP/2 client for every Info read.
    shared_client = httpx.AsyncClient(base_url=ctx.base_url.rstrip("/"), http2=True, timeout=cfg.http_timeout)
    async_info = AsyncInfo(ctx.base_url, timeout=cfg.http_timeout, client=shared_client)
    base_exchange = Exchange(wallet, ctx.base_url, account_address=ctx.account_address, perp_dexs=perp_dexs)
    async_exchange = AsyncExchange(base_exchange, timeout=cfg.http_timeout)
    nonce_lock = await NonceCoordinator().get_lock(ctx.account_address)
    gateway = HyperliquidGateway(ctx, info, async_info, async_exchange, nonce_lock, leverage=cfg.leverage)

    engine = build_engine(cfg, gateway)
    engine.health.set_component_health("config", True, f"environment={ctx.environment}")
    srv = await start_metrics_server(
        engine.metrics,
        cfg.metrics_port,
        engine.status_board,
        auth_token=cfg.metrics_token,
        health_checker=engine.health,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await run_all(engine, cfg.symbols, stop)
    finally:
        log.info(json.dumps({"event": "shutdown"}))
        srv.close()
        await srv.wait_closed()
        await gateway.close()
        await shared_client.aclose()
        log.info(json.dumps({"event": "shutdown_complete"}))


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped by user")
    sys.exit(0)
