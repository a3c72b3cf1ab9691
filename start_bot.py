#!/usr/bin/env python3
"""
Safe startup script.

1. Checks that .env exists and carries credentials
2. Checks the optional per-instrument YAML parses
3. Prepares the log directory
4. Shows which environment (live/paper) will be traded and asks to confirm
5. Runs botdesk.main
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

import yaml
from dotenv import load_dotenv


def check_env_file() -> bool:
    env_file = Path(".env")
    if not env_file.exists():
        print("ERROR: .env file not found")
        print("\nCreate .env with at least one of:")
        print("  HL_PRIVATE_KEY=0x...  (full wallet control)")
        print("  HL_AGENT_KEY=0x... and HL_USER_ADDRESS=0x... (agent key)")
        return False
    content = env_file.read_text()
    has_private = "HL_PRIVATE_KEY" in content
    has_agent = "HL_AGENT_KEY" in content and "HL_USER_ADDRESS" in content
    if not has_private and not has_agent:
        print("ERROR: Missing credentials in .env")
        print("  Need either HL_PRIVATE_KEY or (HL_AGENT_KEY + HL_USER_ADDRESS)")
        return False
    print("OK   .env present with credentials")
    return True


def check_instrument_config() -> bool:
    path = Path(os.getenv("BOT_INSTRUMENT_CONFIG", "configs/instruments.yaml"))
    if not path.exists():
        print(f"OK   no per-instrument overrides ({path} not found)")
        return True
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        print(f"ERROR: {path} is not valid YAML: {exc}")
        return False
    if data is not None and not isinstance(data, dict):
        print(f"ERROR: {path} must map symbol -> overrides")
        return False
    print(f"OK   per-instrument overrides for {len(data or {})} symbols")
    return True


def check_logs_directory() -> bool:
    Path(os.getenv("BOT_LOG_DIR", "logs")).mkdir(parents=True, exist_ok=True)
    print("OK   log directory ready")
    return True


def show_environment() -> bool:
    """Print the trading environment; returns True for paper (testnet)."""
    environment = os.getenv("HL_ENVIRONMENT", "paper").strip().lower()
    symbols = os.getenv("BOT_SYMBOLS", os.getenv("BOT_SYMBOL", "BTC"))
    paper = environment != "live"
    print(f"\nEnvironment: {'PAPER (testnet)' if paper else 'LIVE (mainnet, real money)'}")
    print(f"Symbols:     {symbols}")
    print(f"Strategy:    {os.getenv('BOT_STRATEGY', 'scalper')}")
    return paper


def confirm_startup(auto_confirm: bool = False) -> bool:
    load_dotenv()
    print("=" * 60)
    print("PRE-FLIGHT CHECKS")
    print("=" * 60)
    checks = [check_env_file, check_instrument_config, check_logs_directory]
    if not all([check() for check in checks]):
        print("\nPre-flight checks FAILED")
        return False

    paper = show_environment()
    if auto_confirm:
        print("\nAuto-confirm enabled (--no-confirm)")
        return True
    if not paper:
        print("\nReal money is at risk. Each loop cancels resting orders and closes")
        print("the position of its symbol before its first tick.")
    response = input("\nType 'START' to continue: ").strip().upper()
    if response != "START":
        print("Startup cancelled")
        return False
    return True


def main() -> None:
    parser = argparse.ArgumentParser(description="botdesk strategy loops")
    parser.add_argument("--no-confirm", action="store_true", help="Skip startup confirmation (systemd/automation)")
    args = parser.parse_args()

    if not confirm_startup(auto_confirm=args.no_confirm):
        sys.exit(1)

    from botdesk.main import main as bot_main

    try:
        asyncio.run(bot_main())
    except KeyboardInterrupt:
        print("\nShutdown requested (Ctrl+C)")
    except Exception as e:
        print(f"\nError: {e}")
        print("Check logs/botdesk.log for details")
        sys.exit(1)


if __name__ == "__main__":
    main()
