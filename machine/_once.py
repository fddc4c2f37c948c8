# Copyright 2018-present Network Optix, Inc. Licensed under MPL 2.0: www.mozilla.org/MPL/2.0/
import logging
import threading
from typing import Callable
from typing import Generic
from typing import Optional
from typing import TypeVar

_logger = logging.getLogger(__name__)

_T = TypeVar('_T')


class Once(Generic[_T]):
    """Call a function at most once; replay its value or its exception.

    Concurrent first callers wait for the one doing the work
    and get the same outcome.
    """

    def __init__(self, func: Callable[[], _T]):
        self._func = func
        self._lock = threading.Lock()
        self._done = False
        self._value: Optional[_T] = None
        self._error: Optional[Exception] = None

    def __repr__(self):
        state = 'done' if self._done else 'pending'
        return f'<{self.__class__.__name__} {self._func.__qualname__} {state}>'

    def __call__(self) -> _T:
        with self._lock:
            if not self._done:
                _logger.debug("%r: call", self)
                try:
                    self._value = self._func()
                except Exception as e:
                    _logger.debug("%r: failed: %s", self, e)
                    self._error = e
                self._done = True
        if self._error is not None:
            raise self._error
        return self._value
