from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass(frozen=True)
class Deadline:
    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(expires_at=time.monotonic() + max(0.0, seconds))

    @classmethod
    def from_header(cls, header_value: str | None, cap_seconds: float) -> "Deadline":
        """Deadline from an ``X-Request-Timeout-Ms`` value, never longer than ``cap_seconds``."""
        seconds = cap_seconds
        if header_value:
            try:
                requested = int(header_value) / 1000.0
            except ValueError:
                requested = cap_seconds
            if requested > 0:
                seconds = min(cap_seconds, requested)
        return cls.after(seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def clamp(self, timeout: float) -> float:
        return min(timeout, self.remaining())
