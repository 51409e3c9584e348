"""
Cooperative shutdown for the indexer loop.

SIGTERM/SIGINT only set a process-wide flag; the runner checks it between
ledgers and sleeps through `wait_or_shutdown` so a pending signal cuts a poll
or backoff wait short. Handlers already installed (e.g. by uvicorn) are
still called after the flag is set.
"""

from __future__ import annotations

import signal
import threading
from types import FrameType
from typing import Any, Optional

_STOP = threading.Event()
_installed = False
_install_lock = threading.Lock()


def request_shutdown() -> None:
    _STOP.set()


def shutdown_requested() -> bool:
    return _STOP.is_set()


def reset_shutdown() -> None:
    """Clear the flag (tests)."""
    _STOP.clear()


def wait_or_shutdown(timeout_s: float) -> bool:
    """Sleep up to `timeout_s`; returns True as soon as shutdown is requested."""
    return _STOP.wait(timeout=max(0.0, timeout_s))


def _chained(previous: Any):
    def _on_signal(signum: int, frame: Optional[FrameType]) -> Any:
        request_shutdown()
        if callable(previous):
            return previous(signum, frame)
        return None

    return _on_signal


def install_signal_handlers_once() -> None:
    global _installed
    # signal.signal() only works from the main thread.
    if threading.current_thread() is not threading.main_thread():
        return
    with _install_lock:
        if _installed:
            return
        for signum in (signal.SIGTERM, signal.SIGINT):
            signal.signal(signum, _chained(signal.getsignal(signum)))
        _installed = True
