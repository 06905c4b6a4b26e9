from __future__ import annotations

import logging

from engine.rest_client import HtxRestClient

from .scalping_signal import ScalpingSignalGenerator
from .simple_signal import SimpleSignalGenerator

logger = logging.getLogger(__name__)

SIGNAL_MODES = {
    "simple": SimpleSignalGenerator,
    "scalping": ScalpingSignalGenerator,
}


def make_signal_generator(mode: str, rest: HtxRestClient):
    """Generator for `quantConfig.signalMode`; unknown modes fall back to simple."""
    cls = SIGNAL_MODES.get(str(mode or "").strip().lower())
    if cls is None:
        logger.warning("⚠️ unknown signalMode %r; using simple", mode)
        cls = SimpleSignalGenerator
    logger.info("📊 signal generator: %s", cls.__name__)
    return cls(rest)
