"""
Buy box history tracking.

Keeps a bounded list of snapshots per (marketplace, sku) and derives:
- win percentage over a rolling window (30 days by default)
- the last win and last loss transitions with the prices involved
- the average difference between the buy box price and our own price
- an estimate of the lowest price that wins the buy box

The window is measured back from the newest snapshot, not from the wall
clock, so replaying old checks gives the same numbers.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Deque, Dict, Any, Optional, Tuple

from buybox_repricer.core.models import MonitoringResult, BuyBoxOwnership
from buybox_repricer.utils.logger import get_logger


logger = get_logger(__name__)

DEFAULT_WINDOW = timedelta(days=30)
DEFAULT_MAX_SNAPSHOTS = 2000


@dataclass(frozen=True)
class BuyBoxSnapshot:
    """One buy box observation."""
    timestamp: datetime
    ownership: BuyBoxOwnership
    own_price: Optional[int]
    buybox_price: Optional[int]
    competitor_count: int

    @classmethod
    def from_result(cls, result: MonitoringResult) -> "BuyBoxSnapshot":
        return cls(
            timestamp=result.checked_at,
            ownership=result.ownership,
            own_price=result.own_price,
            buybox_price=result.buybox_price,
            competitor_count=len(result.competitor_prices),
        )


@dataclass(frozen=True)
class BuyBoxTransition:
    """A change into or out of buy box ownership."""
    timestamp: datetime
    previous_price: Optional[int]
    competitor_price: Optional[int]


@dataclass
class BuyBoxHistory:
    """Snapshot history and derived statistics for one SKU."""

    marketplace_id: str
    sku: str
    snapshots: Deque[BuyBoxSnapshot] = field(default_factory=deque)
    last_win: Optional[BuyBoxTransition] = None
    last_loss: Optional[BuyBoxTransition] = None

    @property
    def last_snapshot(self) -> Optional[BuyBoxSnapshot]:
        return self.snapshots[-1] if self.snapshots else None

    def recent(self, window: timedelta):
        latest = self.last_snapshot
        if latest is None:
            return []
        cutoff = latest.timestamp - window
        return [snap for snap in self.snapshots if snap.timestamp >= cutoff]

    def win_percentage(self, window: timedelta = DEFAULT_WINDOW) -> Optional[float]:
        """Share of known-status snapshots in the window where we held the buy box."""
        recent = [s for s in self.recent(window) if s.ownership != BuyBoxOwnership.UNKNOWN]
        if not recent:
            return None
        wins = sum(1 for s in recent if s.ownership == BuyBoxOwnership.OWNED)
        return round(wins / len(recent) * 100, 2)

    def average_price_difference(self, window: timedelta = DEFAULT_WINDOW) -> Optional[float]:
        """Mean of (buy box price - own price) in minor units; positive means we are cheaper."""
        diffs = [
            s.buybox_price - s.own_price
            for s in self.recent(window)
            if s.buybox_price and s.own_price
        ]
        if not diffs:
            return None
        return round(sum(diffs) / len(diffs), 2)

    def lowest_price_to_win(self, window: timedelta = DEFAULT_WINDOW) -> Optional[int]:
        """
        Estimated price that would take the buy box, in minor units.

        The highest buy box price seen in the window, less the smallest margin
        by which a winning snapshot sat relative to the buy box. None until we
        have won at least once with both prices known.
        """
        relevant = [s for s in self.recent(window) if s.buybox_price and s.own_price]
        winning = [s for s in relevant if s.ownership == BuyBoxOwnership.OWNED]
        if not winning:
            return None
        lowest_difference = min(s.own_price - s.buybox_price for s in winning)
        highest_buybox = max(s.buybox_price for s in relevant)
        return highest_buybox - abs(lowest_difference)

    def to_dict(self, window: timedelta = DEFAULT_WINDOW) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        def transition(t: Optional[BuyBoxTransition]):
            if t is None:
                return None
            return {
                "timestamp": t.timestamp.isoformat(),
                "previous_price": t.previous_price,
                "competitor_price": t.competitor_price,
            }

        last = self.last_snapshot
        return {
            "marketplace_id": self.marketplace_id,
            "sku": self.sku,
            "snapshot_count": len(self.snapshots),
            "current_status": last.ownership.value if last else None,
            "win_percentage": self.win_percentage(window),
            "average_price_difference": self.average_price_difference(window),
            "lowest_price_to_win": self.lowest_price_to_win(window),
            "last_win": transition(self.last_win),
            "last_loss": transition(self.last_loss),
        }


class BuyBoxHistoryTracker:
    """In-memory buy box history for every monitored SKU."""

    def __init__(self, max_snapshots: int = DEFAULT_MAX_SNAPSHOTS,
                 window: timedelta = DEFAULT_WINDOW):
        if max_snapshots < 1:
            raise ValueError("max_snapshots must be positive")
        self.max_snapshots = max_snapshots
        self.window = window
        self._histories: Dict[Tuple[str, str], BuyBoxHistory] = {}

    def record(self, result: MonitoringResult) -> BuyBoxHistory:
        """Add a check result and update win/loss transitions."""
        key = (result.marketplace_id, result.sku)
        history = self._histories.get(key)
        if history is None:
            history = BuyBoxHistory(
                marketplace_id=result.marketplace_id,
                sku=result.sku,
                snapshots=deque(maxlen=self.max_snapshots),
            )
            self._histories[key] = history

        snapshot = BuyBoxSnapshot.from_result(result)
        previous = history.last_snapshot

        if previous is not None and previous.ownership != snapshot.ownership:
            transition = BuyBoxTransition(
                timestamp=snapshot.timestamp,
                previous_price=previous.own_price,
                competitor_price=snapshot.buybox_price,
            )
            if snapshot.ownership == BuyBoxOwnership.OWNED:
                history.last_win = transition
                logger.info(f"Buy box won for {result.sku} on {result.marketplace_id}")
            elif previous.ownership == BuyBoxOwnership.OWNED:
                history.last_loss = transition
                logger.info(f"Buy box lost for {result.sku} on {result.marketplace_id}")

        history.snapshots.append(snapshot)
        return history

    def get(self, marketplace_id: str, sku: str) -> Optional[BuyBoxHistory]:
        return self._histories.get((marketplace_id, sku))

    def summary(self, marketplace_id: str, sku: str) -> Optional[Dict[str, Any]]:
        history = self.get(marketplace_id, sku)
        return history.to_dict(self.window) if history else None

    def __len__(self) -> int:
        return len(self._histories)
