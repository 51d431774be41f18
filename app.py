#!/usr/bin/env python3
"""Glue Lock cloud monitor – Main Entry Point.

Keeps a local view of a Glue smart lock in sync with the Glue cloud and
serves it on a small web dashboard.

Usage:
    glue-lock                     # Run polling + dashboard
    glue-lock --status            # Reconcile once, print state, and exit
    glue-lock --lock / --unlock   # Send an operation and confirm the result
    glue-lock --list-locks        # List the locks the API key can access
    glue-lock --setup             # Interactive setup wizard

Environment:
    GLUE_API_KEY    Glue API key (overrides config)
    GLUE_LOCK_ID    Lock ID (overrides config)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys

from api_client import GlueApiClient
from config import SETTING_API_KEY, Config
from dashboard import Dashboard
from errors import GlueApiError, OperationError
from reconciler import LockReconciler
from state import CAPABILITY_BATTERY, CAPABILITY_LOCKED, StateManager

_LOGGER = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def build_reconciler(config: Config, state_mgr: StateManager) -> LockReconciler:
    return LockReconciler(
        config.lock_id,
        state_mgr,
        settings=config.device_settings(),
        api_config=config.api,
        poll_config=config.poll,
    )


def _print_state(state_mgr: StateManager, reconciler: LockReconciler) -> None:
    locked = state_mgr.get(CAPABILITY_LOCKED)
    battery = state_mgr.get(CAPABILITY_BATTERY)
    firmware = reconciler.firmware
    print(f"   Lock:      {reconciler.lock_id}")
    if locked is None:
        print("   State:     Unknown")
    else:
        print(f"   State:     {'Locked' if locked else 'Unlocked'}")
    print(f"   Battery:   {battery}%" if battery is not None else "   Battery:   Unknown")
    if firmware is not None:
        print(f"   Firmware:  {firmware.firmware_version or 'unknown'} ({firmware.policy_name} policy)")
    if reconciler.observed is not None:
        print(f"   Last event: {reconciler.observed.timestamp}")
    print()


def _check_configured(config: Config) -> bool:
    if not config.get(SETTING_API_KEY):
        print("❌ No API key configured. Run with --setup or set GLUE_API_KEY.")
        return False
    if not config.lock_id:
        print("❌ No lock configured. Run --list-locks, then --setup.")
        return False
    return True


async def cmd_list_locks(config: Config) -> int:
    """List the locks available to the API key."""
    api_key = config.get(SETTING_API_KEY)
    if not api_key:
        print("❌ No API key configured. Run with --setup or set GLUE_API_KEY.")
        return 1

    async with GlueApiClient(api_key, config.api) as client:
        try:
            locks = await client.list_locks()
        except GlueApiError as e:
            print(f"❌ Failed to load locks: {e}")
            return 1

    if not locks:
        print("No locks found for this API key.")
        return 0
    print(f"\n✅ Found {len(locks)} lock(s):\n")
    for lock in locks:
        print(f"   Name:     {lock.display_name}")
        print(f"   ID:       {lock.id}")
        print(f"   Firmware: {lock.firmware_version}")
        print(f"   Battery:  {lock.battery_status}%")
        print(f"   Status:   {lock.connection_status}")
        print()
    return 0


async def cmd_status(config: Config) -> int:
    """Reconcile once, print the state, and exit."""
    if not _check_configured(config):
        return 1

    state_mgr = StateManager()
    reconciler = build_reconciler(config, state_mgr)
    try:
        await reconciler.initialize(config.get(SETTING_API_KEY))
        print("\n📡 Lock state:\n")
        _print_state(state_mgr, reconciler)
        return 0 if reconciler.observed is not None else 1
    finally:
        await reconciler.teardown()


async def cmd_operate(config: Config, locked: bool) -> int:
    """Send a lock/unlock operation and print the confirmed state."""
    if not _check_configured(config):
        return 1

    state_mgr = StateManager(config.events_file)
    reconciler = build_reconciler(config, state_mgr)
    try:
        await reconciler.initialize(config.get(SETTING_API_KEY))
        print(f"\n🔐 Sending {'lock' if locked else 'unlock'}...\n")
        try:
            await reconciler.handle_user_operation(locked)
        except OperationError as e:
            print(f"❌ {e}")
            _print_state(state_mgr, reconciler)
            return 1
        _print_state(state_mgr, reconciler)
        return 0
    finally:
        await reconciler.teardown()


async def cmd_setup(config: Config) -> int:
    """Interactive setup wizard."""
    print("\n🔧 Glue Lock monitor – Setup\n")

    print("Step 1: Glue API key")
    api_key = input(f"  API key [{'*****' if config.api_key else 'none'}]: ").strip()
    if api_key:
        config.api_key = api_key

    if config.api_key:
        await cmd_list_locks(config)

    print("Step 2: Lock")
    lock_id = input(f"  Lock ID [{config.lock_id or 'none'}]: ").strip()
    if lock_id:
        config.lock_id = lock_id

    print("\nStep 3: Polling")
    interval = input(
        f"  Polling interval in minutes (1-60) "
        f"[{config.polling_interval or config.poll.default_interval_min}]: "
    ).strip()
    if interval.isdigit():
        config.polling_interval = int(interval)

    print("\nStep 4: Web dashboard")
    port = input(f"  Dashboard port [{config.web_port}]: ").strip()
    if port.isdigit():
        config.web_port = int(port)

    config.save()
    print(f"\n✅ Configuration saved to {config.config_file}\n")
    return 0


async def run_app(config: Config) -> int:
    """Run polling and the dashboard until interrupted."""
    if not _check_configured(config):
        return 1

    state_mgr = StateManager(config.events_file)
    reconciler = build_reconciler(config, state_mgr)
    dashboard = Dashboard(
        state_mgr, reconciler, host=config.web_host, port=config.web_port
    )

    shutdown_event = asyncio.Event()

    def handle_signal():
        _LOGGER.info("Shutdown signal received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    _LOGGER.info("Starting Glue Lock monitor for %s...", config.lock_id)
    await dashboard.start()
    await reconciler.initialize(config.get(SETTING_API_KEY))
    _LOGGER.info(
        "App running. Dashboard: http://%s:%d", config.web_host, config.web_port
    )

    await shutdown_event.wait()

    _LOGGER.info("Shutting down...")
    await reconciler.teardown()
    await dashboard.stop()
    _LOGGER.info("Shutdown complete.")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Glue Lock cloud monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", "-c", help="Path to config file", default=None)
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--status", action="store_true", help="Reconcile once and exit")
    group.add_argument("--lock", action="store_true", help="Lock and exit")
    group.add_argument("--unlock", action="store_true", help="Unlock and exit")
    group.add_argument("--list-locks", action="store_true", help="List available locks")
    group.add_argument("--setup", action="store_true", help="Interactive setup wizard")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    parser.add_argument("--port", "-p", type=int, help="Override dashboard port")

    args = parser.parse_args()
    setup_logging(args.verbose)

    config = Config.load(args.config)

    # Environment variable overrides
    if os.environ.get("GLUE_API_KEY"):
        config.api_key = os.environ["GLUE_API_KEY"]
    if os.environ.get("GLUE_LOCK_ID"):
        config.lock_id = os.environ["GLUE_LOCK_ID"]
    if args.port:
        config.web_port = args.port

    if args.list_locks:
        code = asyncio.run(cmd_list_locks(config))
    elif args.status:
        code = asyncio.run(cmd_status(config))
    elif args.lock or args.unlock:
        code = asyncio.run(cmd_operate(config, locked=args.lock))
    elif args.setup:
        code = asyncio.run(cmd_setup(config))
    else:
        code = asyncio.run(run_app(config))
    sys.exit(code)


if __name__ == "__main__":
    main()
