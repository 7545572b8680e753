"""
Anti-flapping: minimum time a phase must be held before the next change.
Used by both the live transition engine and the backtest.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class DwellRule:
    min_dwell_days: float = 7.0

    @property
    def min_dwell(self) -> timedelta:
        return timedelta(days=self.min_dwell_days)

    def allows(self, last_transition: Optional[datetime], now: datetime) -> bool:
        """True when no transition is on record or the dwell has elapsed."""
        if last_transition is None or self.min_dwell_days <= 0:
            return True
        return now - last_transition >= self.min_dwell

    def remaining(self, last_transition: Optional[datetime], now: datetime) -> timedelta:
        if self.allows(last_transition, now):
            return timedelta(0)
        return self.min_dwell - (now - last_transition)
