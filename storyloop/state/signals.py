"""Agent signal polling.

The coding agent reports its outcome out of band (`storyloop signal
complete <id>`), so after the subprocess exits the orchestrator polls the
store for a bounded window.
"""

import logging
import threading
import time
from typing import Optional

from storyloop.lib.constants import DEFAULT_SIGNAL_POLL_INTERVAL, DEFAULT_SIGNAL_TIMEOUT
from storyloop.lib.types import Signal, SignalKind
from storyloop.state.store import StateStore

logger = logging.getLogger(__name__)

# Outcomes the poller waits for; progress signals keep it waiting
TERMINAL_KINDS = (SignalKind.COMPLETE, SignalKind.BLOCKED)


def _terminal_signal(store: StateStore, item_id: str) -> Optional[Signal]:
    signal = store.get_signal(item_id)
    if signal is not None and signal.kind in TERMINAL_KINDS:
        return signal
    return None


def wait_for_signal(
    store: StateStore,
    item_id: str,
    timeout: float = DEFAULT_SIGNAL_TIMEOUT,
    interval: float = DEFAULT_SIGNAL_POLL_INTERVAL,
    cancel: threading.Event | None = None,
) -> Optional[Signal]:
    """Poll for a complete or blocked signal.

    Checks every interval seconds until timeout elapses, then makes exactly
    one final check. A set cancel event ends the wait early (the final check
    still runs).

    Returns:
        The Signal, or None if none arrived
    """
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        signal = _terminal_signal(store, item_id)
        if signal is not None:
            return signal

        remaining = deadline - time.monotonic()
        pause = max(0.0, min(interval, remaining))
        if cancel is not None:
            if cancel.wait(pause):
                logger.info(f"[SIGNAL] Wait for {item_id} cancelled")
                break
        else:
            time.sleep(pause)

    signal = _terminal_signal(store, item_id)
    if signal is None:
        logger.warning(f"[SIGNAL] No signal from {item_id} within {timeout}s")
    return signal
