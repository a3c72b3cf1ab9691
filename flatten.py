"""Cancel resting orders and close positions for the given symbols (default: every symbol with either).

    python flatten.py                 # show, ask, flatten everything
    python flatten.py BTC ETH --yes   # flatten BTC and ETH without asking
"""

import argparse
import asyncio
import sys

import httpx
from hyperliquid.exchange import Exchange
from hyperliquid.info import Info

from botdesk.config.config import Settings
from botdesk.execution.order_protocol import OrderProtocol
from botdesk.gateway.hyperliquid import HyperliquidGateway
from botdesk.infra.async_execution import AsyncExchange
from botdesk.infra.async_info import AsyncInfo
from botdesk.infra.logging_cfg import build_logger
from botdesk.state.account_views import AccountViews


async def flatten(symbols, assume_yes: bool) -> int:
    cfg = Settings.load()
    build_logger("botdesk", level=cfg.log_level, file_path=None)
    ctx = cfg.connection_context()
    perp_dexs = [cfg.dex] if cfg.dex else None
    client = httpx.AsyncClient(base_url=ctx.base_url.rstrip("/"), http2=True, timeout=cfg.http_timeout)
    info = Info(ctx.base_url, skip_ws=True, perp_dexs=perp_dexs)
    exchange = Exchange(cfg.resolve_signer(), ctx.base_url, account_address=ctx.account_address, perp_dexs=perp_dexs)
    gateway = HyperliquidGateway(
        ctx, info, AsyncInfo(ctx.base_url, client=client), AsyncExchange(exchange, timeout=cfg.http_timeout),
        asyncio.Lock(), leverage=cfg.leverage,
    )
    try:
        views = AccountViews(gateway)
        await views.refresh_all()
        print(f"=== {ctx.environment.upper()} {ctx.base_url} ({ctx.account_address}) ===")
        for p in views.positions:
            print(f"  {p.instrument.symbol}: size={p.quantity}, entry={p.avg_entry_price}")
        for o in views.open_orders:
            print(f"  {o.symbol}: {o.side.value} {o.quantity} @ {o.limit_price} (oid {o.order_id})")
        targets = sorted(symbols or views.position_and_open_order_instruments())
        if not targets:
            print("Nothing to flatten.")
            return 0
        if not assume_yes:
            confirm = input(f"\nFlatten {', '.join(targets)}? Type 'yes' to confirm: ")
            if confirm.strip().lower() != "yes":
                print("Cancelled.")
                return 1
        orders = OrderProtocol(gateway)
        failed = 0
        for symbol in targets:
            instrument = await gateway.resolve_instrument(symbol)
            if instrument is None:
                print(f"  {symbol}: unknown symbol")
                failed += 1
                continue
            result = await orders.flatten(instrument)
            closed = result.closed.order_id if result.closed else "-"
            print(f"  {symbol}: cancelled {result.cancelled} orders, close order {closed}")
            for err in result.errors:
                print(f"  {symbol}: {err}")
            if not result.ok:
                failed += 1
        return 1 if failed else 0
    finally:
        await gateway.close()
        await client.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Flatten positions and cancel orders")
    parser.add_argument("symbols", nargs="*", help="Symbols to flatten (default: all with a position or order)")
    parser.add_argument("--yes", action="store_true", help="Skip confirmation")
    args = parser.parse_args()
    sys.exit(asyncio.run(flatten(args.symbols, args.yes)))


if __name__ == "__main__":
    main()
