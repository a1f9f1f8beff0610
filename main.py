#!/usr/bin/env python3
"""
FocusFlow - Main Entry Point

Focus-session lifecycle and score aggregation backend: sessions are
scored from screen content, credited minutes roll up into user levels,
group tree health and leaderboards.

Usage:
    python main.py serve        # Run the HTTP API (default)
    python main.py reconcile    # Re-apply stats that failed to roll up
"""

import argparse
import asyncio
import logging
import sys

import config

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format=config.LOG_FORMAT
)
logger = logging.getLogger(__name__)

# Suppress noisy third-party library logs (HTTP requests, etc.)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("openai").setLevel(logging.WARNING)
logging.getLogger("hpack").setLevel(logging.WARNING)


def run_server(host: str, port: int) -> None:
    """Serve the FastAPI app with uvicorn."""
    import uvicorn
    from api import create_app

    logger.info(f"Starting FocusFlow API on {host}:{port} "
                f"(store: {config.STORE_BACKEND}, classifier: {config.SCORE_PROVIDER})")
    uvicorn.run(create_app(), host=host, port=port, log_level=config.LOG_LEVEL.lower())


async def run_reconcile(refresh_health: bool) -> dict:
    """
    Run one reconciliation sweep against the configured store.

    Args:
        refresh_health: Also recompute tree health for every group.

    Returns:
        Sweep counts, plus health refresh counts when requested.
    """
    from core import create_engine

    engine = await create_engine()
    counts = await engine.reconcile_pending()
    if refresh_health:
        health = await engine.refresh_all_group_health()
        counts.update({"healthRefreshed": health["refreshed"], "healthFailed": health["failed"]})
    return counts


def main():
    """
    Main entry point: parses arguments and runs the selected command.

    Default command is serve.
    """
    parser = argparse.ArgumentParser(
        description="FocusFlow - Focus Session Backend",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --port 8080      Run the HTTP API
  python main.py reconcile              Re-apply failed stats rollups
  python main.py reconcile --refresh-health
        """
    )
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=config.API_HOST, help="Bind address")
    serve.add_argument("--port", type=int, default=config.API_PORT, help="Bind port")

    reconcile = subparsers.add_parser("reconcile", help="Re-apply stats for sessions whose rollup failed")
    reconcile.add_argument(
        "--refresh-health",
        action="store_true",
        help="Also recompute tree health for every group",
    )

    args = parser.parse_args()

    try:
        if args.command == "reconcile":
            counts = asyncio.run(run_reconcile(args.refresh_health))
            print("Reconciliation complete: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
        else:
            run_server(getattr(args, "host", config.API_HOST), getattr(args, "port", config.API_PORT))
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\nFatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
