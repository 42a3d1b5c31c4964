import logging
import signal
import threading
from typing import Optional

from .processor import QueueProcessor

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers():
    def _handler(signum, frame):
        logger.info("worker.signal signum=%s, stopping after the current tick", signum)
        _stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not the main thread (e.g. embedded in a test runner)
            logger.debug("worker.signal_unavailable sig=%s", sig)


def request_stop():
    _stop.set()


def run_scheduler(processor: QueueProcessor, interval_seconds: float,
                  max_ticks: Optional[int] = None, install_signals: bool = True) -> int:
    """
    Call processor.tick() every `interval_seconds` until stopped.

    Returns the number of ticks run. A tick that raises is logged and the loop
    carries on with the next one.
    """
    if install_signals:
        setup_signal_handlers()
    _stop.clear()

    ticks = 0
    logger.info("worker.started interval_s=%s batch_size=%s", interval_seconds, processor.config.batch_size)
    while not _stop.is_set():
        try:
            processor.tick()
        except Exception:
            logger.exception("worker.tick_failed")
        ticks += 1
        if max_ticks is not None and ticks >= max_ticks:
            break
        _stop.wait(interval_seconds)

    logger.info("worker.stopped ticks=%s", ticks)
    return ticks
