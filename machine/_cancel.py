# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import threading
from typing import Optional

from machine._exceptions import Cancelled

_logger = logging.getLogger(__name__)

_lock = threading.Lock()
_reason: Optional[str] = None
_timer: Optional[threading.Timer] = None


def cancel(reason: str = "cancelled"):
    """Make running and further commands fail with Cancelled.

    Safe to call from a signal handler or another thread: running commands
    notice it within a second.
    """
    global _reason
    with _lock:
        if _reason is None:
            _reason = reason
    _logger.warning("Cancel: %s", reason)


def cancel_after(timeout_sec: float):
    global _timer
    with _lock:
        if _timer is not None:
            _timer.cancel()
        _timer = threading.Timer(
            timeout_sec, cancel, args=[f"deadline of {timeout_sec} seconds exceeded"])
        _timer.daemon = True
        _timer.start()


def reset_cancellation():
    global _reason, _timer
    with _lock:
        if _timer is not None:
            _timer.cancel()
            _timer = None
        _reason = None


def cancellation_reason() -> Optional[str]:
    return _reason


def raise_if_cancelled(args):
    reason = _reason
    if reason is not None:
        raise Cancelled(args, reason)
