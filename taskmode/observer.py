"""
Per-request checkpoint log.

A RequestObserver lives for exactly one request: the caller creates it,
hands it to the stream consumer, parser and exporters, and reads the
collected checkpoints afterwards. Every entry is mirrored to the stdlib
logger so nothing is lost when the caller never looks at the list.
"""

import json
import logging
import time
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, List, Optional


logger = logging.getLogger(__name__)

# Longest data preview written to the log line
DATA_PREVIEW_CHARS = 500


@dataclass
class Checkpoint:
    """One recorded step of a request."""
    elapsed: float
    checkpoint: str
    message: str
    level: str = "INFO"
    data: Any = None

    def to_dict(self) -> dict:
        return asdict(self)


def _preview(data: Any) -> str:
    if isinstance(data, str):
        return data[:DATA_PREVIEW_CHARS]
    try:
        return json.dumps(data, default=str)[:DATA_PREVIEW_CHARS]
    except (TypeError, ValueError):
        return repr(data)[:DATA_PREVIEW_CHARS]


@dataclass
class RequestObserver:
    """Collects checkpoints for a single request and mirrors them to logging."""
    name: str = "request"
    clock: Callable[[], float] = time.monotonic
    log_to: Optional[logging.Logger] = None
    checkpoints: List[Checkpoint] = field(default_factory=list)

    def __post_init__(self):
        self._started = self.clock()
        if self.log_to is None:
            self.log_to = logger

    def _record(self, level: str, checkpoint: str, message: str, data: Any) -> Checkpoint:
        elapsed = round(self.clock() - self._started, 3)
        entry = Checkpoint(elapsed=elapsed, checkpoint=checkpoint, message=message, level=level, data=data)
        self.checkpoints.append(entry)

        log_level = getattr(logging, level, logging.INFO)
        if data is None:
            self.log_to.log(log_level, "[%s %.2fs] %s: %s", self.name, elapsed, checkpoint, message)
        else:
            self.log_to.log(
                log_level, "[%s %.2fs] %s: %s | %s",
                self.name, elapsed, checkpoint, message, _preview(data)
            )
        return entry

    def log(self, checkpoint: str, message: str, data: Any = None) -> Checkpoint:
        return self._record("INFO", checkpoint, message, data)

    def debug(self, checkpoint: str, message: str, data: Any = None) -> Checkpoint:
        return self._record("DEBUG", checkpoint, message, data)

    def warn(self, checkpoint: str, message: str, data: Any = None) -> Checkpoint:
        return self._record("WARNING", checkpoint, message, data)

    def error(self, checkpoint: str, message: str, data: Any = None) -> Checkpoint:
        return self._record("ERROR", checkpoint, message, data)

    @property
    def warnings(self) -> List[Checkpoint]:
        """Entries at WARNING level or above."""
        return [c for c in self.checkpoints if c.level in ("WARNING", "ERROR")]

    def find(self, checkpoint: str) -> List[Checkpoint]:
        return [c for c in self.checkpoints if c.checkpoint == checkpoint]


def ensure_observer(observer: Optional[RequestObserver], name: str = "request") -> RequestObserver:
    """Return the caller's observer, or a fresh one scoped to this call."""
    return observer if observer is not None else RequestObserver(name=name)
