from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

Clock = Callable[[], float]
Sleeper = Callable[[float], None]

_SECRET_FLAG_RE = re.compile(r"^(-{1,2}(?:api-token|token)=).+$")


@dataclass
class Deadline:
    """The one authoritative timer of a bounded wait.

    Whichever of "condition met" and ``expired()`` a wait loop observes first
    decides the outcome; the loop never consults a second timer.
    """

    timeout: float
    clock: Clock = time.monotonic
    started: float = field(init=False)

    def __post_init__(self) -> None:
        self.started = self.clock()

    def remaining(self) -> float:
        return max(0.0, self.timeout - (self.clock() - self.started))

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def nap(self, interval: float, sleep: Sleeper = time.sleep) -> None:
        """Sleep for ``interval`` or until the deadline, whichever is shorter."""
        sleep(min(interval, self.remaining()))


def redact_argv(argv: Iterable[str]) -> list[str]:
    """Return ``argv`` with credential flag values masked for logging."""
    return [_SECRET_FLAG_RE.sub(r"\1***", arg) for arg in argv]
