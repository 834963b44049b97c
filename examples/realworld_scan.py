#!/usr/bin/env python3
"""Real-world integration demo for pyYeeLAN.

This script walks through the full lifecycle against real bulbs on the
local network (LAN control must be enabled in the Yeelight app):

  1. Start a YeeServer with persistence enabled.
  2. Broadcast a search request and collect announcements.
  3. Connect to every bulb found and refresh its properties.
  4. Toggle each bulb off and on again.
  5. Shut down and persist the registry.
  6. Start a second server from the persisted state only (no
     discovery) and confirm the bulbs were restored.

Run from the project root::

    python examples/realworld_scan.py
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

# ---------------------------------------------------------------------------
# Ensure the package is importable when running from the repo root.
# ---------------------------------------------------------------------------
_project_root = Path(__file__).resolve().parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

from pyYeeLAN import YeeConfig, YeeError, YeeServer  # noqa: E402

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

#: Persistence file, kept in /tmp.
STATE_FILE = Path("/tmp/pyYeeLAN_demo_state.yaml")

#: Seconds to listen for announcements after the scan.
SCAN_WINDOW = 5

#: Pause between switching a bulb off and on again.
TOGGLE_PAUSE = 2

# ---------------------------------------------------------------------------
# Logging: colourful, timestamped, to stdout
# ---------------------------------------------------------------------------

BOLD = "\033[1m"
GREEN = "\033[32m"
CYAN = "\033[36m"
YELLOW = "\033[33m"
RED = "\033[31m"
RESET = "\033[0m"


class ColourFormatter(logging.Formatter):
    LEVEL_COLOURS = {
        logging.DEBUG: CYAN,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: RED + BOLD,
    }

    def format(self, record: logging.LogRecord) -> str:
        colour = self.LEVEL_COLOURS.get(record.levelno, "")
        ts = self.formatTime(record, "%H:%M:%S")
        return (
            f"{BOLD}{ts}{RESET} "
            f"{colour}{record.levelname:<8s}{RESET} "
            f"{record.name}: {record.getMessage()}"
        )


def setup_logging() -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColourFormatter())
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    root.addHandler(handler)
    # Per-line wire traffic is too chatty for a demo.
    logging.getLogger("pyYeeLAN.connection").setLevel(logging.INFO)


def banner(text: str) -> None:
    """Print a prominent banner to the console."""
    width = 60
    print()
    print(f"{BOLD}{CYAN}{'=' * width}{RESET}")
    print(f"{BOLD}{CYAN} {text.center(width - 2)} {RESET}")
    print(f"{BOLD}{CYAN}{'=' * width}{RESET}")
    print()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def main() -> None:
    setup_logging()
    logger = logging.getLogger("demo")

    # ==================================================================
    # PHASE 1: Discover
    # ==================================================================
    banner("PHASE 1: Discovery")

    config = YeeConfig(
        state_path=STATE_FILE,
        auto_connect=False,
        start_connect=False,
        reconnect_attempts=3,
        reconnect_delay=2.0,
        save_delay=1.0,
    )
    server = YeeServer(config)

    try:
        await server.start()
    except YeeError as exc:
        logger.error("Cannot start discovery: %s", exc)
        return

    logger.info("Listening for %ds...", SCAN_WINDOW)
    await asyncio.sleep(SCAN_WINDOW)

    bulbs = server.registry.find_bulbs("*")
    if not bulbs:
        logger.error("No bulbs found — is LAN control enabled?")
        await server.stop()
        return
    for bulb in bulbs:
        logger.info(
            "  %-20s %-32s %s",
            bulb.display_name,
            bulb.properties.location,
            bulb.properties.model,
        )

    # ==================================================================
    # PHASE 2: Connect, refresh, toggle
    # ==================================================================
    banner("PHASE 2: Control")

    result = await server.registry.connect_all()
    logger.info(
        "Connected %d, failed %d, ignored %d",
        result.success,
        result.failed,
        result.ignored,
    )

    for bulb in server.registry.find_bulbs("*"):
        if not bulb.connected:
            continue
        try:
            props = await bulb.refresh()
            logger.info(
                "%s: power=%s bright=%s ct=%s",
                bulb.display_name,
                props.power,
                props.bright,
                props.ct,
            )
            await bulb.turn_off()
            await asyncio.sleep(TOGGLE_PAUSE)
            await bulb.turn_on()
        except YeeError as exc:
            logger.error("%s: %s", bulb.display_name, exc)

    # ==================================================================
    # PHASE 3: Shut down and restore
    # ==================================================================
    banner("PHASE 3: Restart from persistence")

    await server.stop()
    known = {bulb.id for bulb in bulbs}

    restored = YeeServer(config)
    await restored.start(discover=False)
    restored_ids = set(restored.registry.bulbs)
    assert known <= restored_ids, f"Missing bulbs: {known - restored_ids}"
    logger.info("Restored %d bulb(s) from %s", len(restored_ids), STATE_FILE)
    await restored.stop()

    banner("DEMO COMPLETE")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print(f"\n{YELLOW}Interrupted by user.{RESET}")
