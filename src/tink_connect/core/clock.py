"""Clock abstraction for testable time handling in the connect core.

This module defines a `Clock` protocol representing callables that return the
current UNIX timestamp as ``float``.  Every time-based decision inside
``tink_connect.core`` (state-token age, claim TTLs, webhook skew) MUST depend
on an injected ``Clock`` instance rather than calling ``time.time()``
directly.

Example
-------
>>> from tink_connect.core.clock import default_clock, to_millis
>>> isinstance(to_millis(default_clock), int)
True
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable protocol returning *seconds* since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    """Default implementation that delegates to ``time.time()``."""
    return time.time()


def to_millis(clock: Clock) -> int:
    """Return the clock's current reading as integer milliseconds."""
    return int(clock() * 1000)
