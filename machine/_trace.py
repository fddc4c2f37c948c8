# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
"""Process-wide echo of the commands being run.

The sink is a callable receiving a shell-like line per spawned process.
None discards the lines. Only executors that actually spawn processes
call trace(), so a command delegated through several layers is echoed
once, in its final form.
"""
import logging
import sys
from contextlib import contextmanager
from typing import Callable
from typing import Optional
from typing import Sequence

from machine._posix import command_to_script

_logger = logging.getLogger(__name__)

TraceSink = Callable[[str], None]


def log_trace(line: str):
    _logger.info("Run: %s", line)


def shell_trace(line: str):
    """Mimic `sh -x`."""
    print('+ ' + line, file=sys.stderr, flush=True)


_sink: Optional[TraceSink] = log_trace


def get_trace() -> Optional[TraceSink]:
    return _sink


def set_trace(sink: Optional[TraceSink]):
    global _sink
    _sink = sink


def is_discarded() -> bool:
    return _sink is None


@contextmanager
def trace_discarded():
    """Hide the enclosed invocations, e.g. ones carrying a password."""
    saved = get_trace()
    set_trace(None)
    try:
        yield
    finally:
        set_trace(saved)


def trace(args: Sequence[str]):
    sink = _sink
    if sink is None:
        _logger.debug("Run: %s <redacted>", args[0])
        return
    sink(command_to_script(args))


def shown_args(args: Sequence[str]) -> Sequence[str]:
    """Args safe to put into an error message."""
    if is_discarded():
        return [args[0], '<redacted>']
    return args
