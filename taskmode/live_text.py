"""
Live reply text for the "typing" indicator.

While the report is still streaming the buffer is not parseable JSON, but
the generator writes `replyText` first, so the human-readable summary can
be shown long before the sheets arrive.
"""

import re
import time
from typing import Callable, Optional


# Key, then the opening quote; the value group stops at the first unescaped
# quote or at the end of the buffer (a trailing lone backslash is left out).
_REPLY_VALUE = re.compile(r'"replyText"\s*:\s*"([^"\\]*(?:\\.[^"\\]*)*)')

DEFAULT_INTERVAL_SECONDS = 0.1


def extract_live_text(buffer: str) -> Optional[str]:
    """Best available fragment of the replyText value, or None if the key has not arrived.

    Only `\\n` and `\\"` are unescaped; the result is for display and is never
    fed back into parsing.
    """
    if not buffer:
        return None
    match = _REPLY_VALUE.search(buffer)
    if not match:
        return None
    return match.group(1).replace("\\n", "\n").replace('\\"', '"')


class LiveTextThrottle:
    """Time-based gate: allow at most one extraction per interval."""

    def __init__(self, interval: float = DEFAULT_INTERVAL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.clock = clock
        self._last: Optional[float] = None

    def ready(self) -> bool:
        """True (and the window restarts) when the last run was at least `interval` ago."""
        now = self.clock()
        if self._last is not None and now - self._last < self.interval:
            return False
        self._last = now
        return True
