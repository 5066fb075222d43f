"""Stats service — time-windowed revenue / count rollups for the dashboard.

Windows: today (local midnight -> now), week (last 7 days), month (last
30 days), total (all time). Every window counts completed sales only;
refunded, pending and cancelled rows never contribute revenue.

No caching: each call re-reads the sale store.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

logger = logging.getLogger(__name__)

REVENUE_STATUS = "completed"

WINDOWS = ("today", "week", "month", "total")


@dataclass
class WindowStat:
    revenue: Decimal = Decimal("0")
    count: int = 0

    def to_dict(self):
        return {"revenue": float(self.revenue), "count": self.count}


@dataclass
class StatsSnapshot:
    today: WindowStat = field(default_factory=WindowStat)
    week: WindowStat = field(default_factory=WindowStat)
    month: WindowStat = field(default_factory=WindowStat)
    total: WindowStat = field(default_factory=WindowStat)

    def to_dict(self):
        return {name: getattr(self, name).to_dict() for name in WINDOWS}

    @classmethod
    def empty(cls):
        return cls()


def _local_midnight(now):
    """Start of the current day in the server's local timezone, as UTC."""
    local_now = now.astimezone()
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


class StatsAggregator:
    """Computes a StatsSnapshot from a SaleStore."""

    def __init__(self, sale_store, now=None):
        self.sale_store = sale_store
        self._now = now

    def now(self):
        if self._now is not None:
            return self._now() if callable(self._now) else self._now
        return datetime.now(timezone.utc)

    def window_bounds(self, now=None):
        """Return {window: (start, end)}; start None means unbounded."""
        now = now or self.now()
        # end is exclusive in SaleStore.query, so nudge it past "now"
        end = now + timedelta(microseconds=1)
        return {
            "today": (_local_midnight(now), end),
            "week": (now - timedelta(days=7), end),
            "month": (now - timedelta(days=30), end),
            "total": (None, None),
        }

    def _window(self, start, end):
        rows, count = self.sale_store.query(start=start, end=end, status=REVENUE_STATUS)
        revenue = sum((Decimal(str(row.amount or 0)) for row in rows), Decimal("0"))
        return WindowStat(revenue=revenue.quantize(Decimal("0.01")), count=count)

    def compute_stats(self):
        """Recompute all four windows from current storage state."""
        bounds = self.window_bounds()
        snapshot = StatsSnapshot(
            **{name: self._window(*bounds[name]) for name in WINDOWS}
        )
        logger.debug(f"Computed stats: {snapshot.to_dict()}")
        return snapshot
