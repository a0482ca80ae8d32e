"""
SOS auto-trigger countdowns.

A user arms a countdown from the SOS screen; unless they cancel or disable it
before it runs out, the background ticker fires an automatic SOS for them.
Pure state, no I/O: callers pass `now` in.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from common.errors import NotFoundError


@dataclass
class Countdown:
    user_id: str
    seconds: int
    armed_at: datetime
    lat: float
    lon: float
    address: Optional[str] = None
    enabled: bool = True
    triggered: bool = False

    def elapsed(self, now: datetime) -> float:
        return max(0.0, (now - self.armed_at).total_seconds())

    def remaining(self, now: datetime) -> int:
        if not self.enabled or self.triggered:
            return 0
        return max(0, math.ceil(self.seconds - self.elapsed(now)))

    def is_due(self, now: datetime) -> bool:
        return self.enabled and not self.triggered and self.elapsed(now) >= self.seconds

    def arm(self, now: datetime, seconds: Optional[int] = None) -> None:
        """Restart from the full length."""
        if seconds is not None:
            self.seconds = seconds
        self.armed_at = now
        self.enabled = True
        self.triggered = False

    def toggle(self, now: datetime) -> bool:
        if self.enabled:
            self.enabled = False
        else:
            self.arm(now)
        return self.enabled


class CountdownRegistry:
    """Armed countdowns, one per user."""

    def __init__(self, default_seconds: int = 10):
        self.default_seconds = default_seconds
        self._countdowns: Dict[str, Countdown] = {}

    def __len__(self) -> int:
        return len(self._countdowns)

    def get(self, user_id: str) -> Optional[Countdown]:
        return self._countdowns.get(user_id)

    def require(self, user_id: str) -> Countdown:
        countdown = self.get(user_id)
        if countdown is None:
            raise NotFoundError("No SOS countdown armed")
        return countdown

    def arm(
        self,
        user_id: str,
        now: datetime,
        lat: float,
        lon: float,
        address: Optional[str] = None,
        seconds: Optional[int] = None,
    ) -> Countdown:
        countdown = self.get(user_id)
        if countdown is None:
            countdown = Countdown(
                user_id=user_id,
                seconds=seconds or self.default_seconds,
                armed_at=now,
                lat=lat,
                lon=lon,
                address=address,
            )
            self._countdowns[user_id] = countdown
        else:
            countdown.lat, countdown.lon, countdown.address = lat, lon, address
            countdown.arm(now, seconds or self.default_seconds)
        return countdown

    def toggle(self, user_id: str, now: datetime) -> Countdown:
        countdown = self.require(user_id)
        countdown.toggle(now)
        return countdown

    def cancel(self, user_id: str) -> bool:
        return self._countdowns.pop(user_id, None) is not None

    def take_due(self, now: datetime) -> List[Countdown]:
        """Mark every due countdown triggered and return them."""
        due = [c for c in self._countdowns.values() if c.is_due(now)]
        for countdown in due:
            countdown.triggered = True
        return due
