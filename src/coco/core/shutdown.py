"""
GracefulShutdown - SIGINT/SIGTERM handling for a clean stop.

- First SIGINT (Ctrl+C): warn the user and set the cancellation event.
  The turn loop, the executor and the coordinator check the event and
  stop at their next checkpoint, keeping the work already done.
- Second SIGINT: exit immediately with code 130.
- SIGTERM: same as the first SIGINT (CI/Docker environments).
"""

import asyncio
import signal
import sys

import structlog

logger = structlog.get_logger()

EXIT_INTERRUPTED = 130  # POSIX: 128 + SIGINT(2)


class GracefulShutdown:
    """Turns shutdown signals into the cancellation event of a run.

    Usage:
        shutdown = GracefulShutdown()
        result = await execute_turn(..., TurnOptions(signal=shutdown.event))
    """

    def __init__(self, event: asyncio.Event | None = None, install: bool = True) -> None:
        self.event = event or asyncio.Event()
        self._interrupted = False
        if install:
            signal.signal(signal.SIGINT, self._handler)
            signal.signal(signal.SIGTERM, self._handler)
            logger.debug("graceful_shutdown.installed")

    def _handler(self, signum: int, frame) -> None:
        signal_name = "SIGINT" if signum == signal.SIGINT else "SIGTERM"

        if self._interrupted:
            logger.warning("graceful_shutdown.forced", signal=signal_name)
            sys.exit(EXIT_INTERRUPTED)

        self._interrupted = True
        self.event.set()
        logger.warning(
            "graceful_shutdown.requested",
            signal=signal_name,
            message="Stopping at the next checkpoint. Ctrl+C again to exit now.",
        )
        sys.stderr.write(
            f"\n{signal_name} received. Stopping cleanly...\n"
            "   (Ctrl+C again to exit immediately)\n"
        )
        sys.stderr.flush()

    @property
    def should_stop(self) -> bool:
        return self._interrupted

    def reset(self) -> None:
        self._interrupted = False
        self.event.clear()

    def restore_defaults(self) -> None:
        signal.signal(signal.SIGINT, signal.SIG_DFL)
        signal.signal(signal.SIGTERM, signal.SIG_DFL)
        logger.debug("graceful_shutdown.restored_defaults")
