from __future__ import annotations

import time

from .errors import ChainSockError, ErrorKind

MIN_WAIT = 0.001


class Deadline:
    """A fixed point on the monotonic clock shared by every step of one request."""

    def __init__(self, seconds: float):
        self.seconds = float(seconds)
        self.expires_at = time.monotonic() + self.seconds

    def left(self) -> float:
        return self.expires_at - time.monotonic()

    def remaining(self) -> float:
        # socket.settimeout(0) would switch to non-blocking mode, never hand that out
        return max(self.left(), MIN_WAIT)

    def expired(self) -> bool:
        return self.left() <= 0

    def check(self, what: str = "request") -> None:
        if self.expired():
            raise ChainSockError(ErrorKind.TIMEOUT, f"{what}: deadline of {self.seconds:g}s exceeded")

    def __repr__(self) -> str:
        return f"Deadline(left={self.left():.3f}s)"
