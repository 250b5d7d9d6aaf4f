# =============================================================================
# PIPEWATCH OBSERVABILITY PIPELINE - MAIN ENTRY POINT
# =============================================================================
"""
Pipewatch Main Module

Entry point for running pipewatch as a standalone service. Loads the
configuration, starts every periodic task and logs a status line until
SIGINT/SIGTERM, then stops gracefully with a final flush.

Usage:
    python -m pipewatch.main
    python -m pipewatch.main --config config/pipewatch.yaml
    python -m pipewatch.main --debug --status-interval 30
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from pipewatch.config import PipewatchConfig, load_config
from pipewatch.logger import configure_logging
from pipewatch.service import PipewatchService


logger = logging.getLogger(__name__)


# =============================================================================
# RUNNER
# =============================================================================

class PipewatchRunner:
    """Runs a PipewatchService until asked to stop."""

    def __init__(self, service: PipewatchService, status_interval: float = 60.0):
        self.service = service
        self.status_interval = status_interval
        self._shutdown_event: Optional[asyncio.Event] = None

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()
        self.service.start()
        logger.info("Pipewatch running")

        try:
            while True:
                try:
                    self._log_status()
                except Exception as e:
                    logger.error(f"Error building status: {e}", exc_info=True)

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.status_interval)
                    break
                except asyncio.TimeoutError:
                    continue
        finally:
            self.service.stop()

        logger.info("Pipewatch stopped")

    def _log_status(self) -> None:
        status = self.service.status()
        events = status["stats"]["events"]
        logger.info(
            f"Status: healthy={status['health']['healthy']} "
            f"pipelines={len(status['active_pipelines'])} "
            f"alerts={len(status['active_alerts'])} "
            f"bottlenecks={len(status['bottlenecks'])} "
            f"errors={status['errors']['total_records']} "
            f"buffered={events['buffered']}"
        )

    def request_stop(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Pipewatch - observability and alerting pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--config",
        default="config/pipewatch.yaml",
        help="Path to configuration file (default: config/pipewatch.yaml)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Process log level (overrides the config file)",
    )
    parser.add_argument(
        "--status-interval",
        type=float,
        default=60.0,
        help="Seconds between status lines (default: 60)",
    )

    return parser.parse_args(argv)


# =============================================================================
# SIGNAL HANDLING
# =============================================================================

def setup_signal_handlers(runner: PipewatchRunner, loop: asyncio.AbstractEventLoop) -> None:
    """Setup signal handlers for graceful shutdown."""

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, initiating shutdown...")
        loop.call_soon_threadsafe(runner.request_stop)

    if sys.platform != "win32":
        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

async def async_main(args: argparse.Namespace) -> None:
    raw = load_config(args.config)
    config = PipewatchConfig.from_dict(raw)

    configure_logging(config.logging, debug=args.debug, level=args.log_level)

    logger.info("=" * 60)
    logger.info("Pipewatch - Observability Pipeline")
    logger.info("=" * 60)

    runner = PipewatchRunner(PipewatchService(config), status_interval=args.status_interval)
    setup_signal_handlers(runner, asyncio.get_running_loop())
    await runner.run()


def main() -> None:
    """Main entry point."""
    args = parse_args()

    try:
        asyncio.run(async_main(args))
    except KeyboardInterrupt:
        logger.info("Pipewatch stopped by user")
    except Exception as e:
        logger.critical(f"Pipewatch failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
