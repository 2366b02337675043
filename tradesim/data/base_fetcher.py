"""
Abstract base class for live price fetchers.

Defines the interface every asset-class adapter implements so the price
resolver can fan out to equities, crypto and FX the same way.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class PriceObservation:
    """One price observation for an asset, in the reporting currency."""

    asset_type: str
    symbol: str
    price: float
    timestamp: datetime
    change: float = 0.0
    change_percent: float = 0.0
    volume: float = 0.0
    source: str = ""
    metadata: Dict = field(default_factory=dict)

    def __post_init__(self):
        """Normalise the timestamp to timezone-aware UTC."""
        if self.timestamp.tzinfo is None:
            self.timestamp = self.timestamp.replace(tzinfo=timezone.utc)
        else:
            self.timestamp = self.timestamp.astimezone(timezone.utc)

    def to_dict(self) -> Dict:
        """Convert to the collaborator contract shape."""
        return {
            "price": self.price,
            "change": self.change,
            "change_percent": self.change_percent,
            "volume": self.volume,
            "timestamp": self.timestamp.isoformat(),
        }


class LiveFetcher(ABC):
    """
    Abstract base class for a live price feed.

    Implementations fetch one symbol on demand (fetch) and optionally the
    whole tracked universe (refresh_all). When given an asset store they
    record what they fetch; persistence is the adapter's job, never the
    resolver's.
    """

    asset_type: str = ""

    def __init__(self, asset_store=None, timeout: Optional[float] = None):
        """
        Initialize the fetcher.

        Args:
            asset_store: Optional AssetStore to record observations into
            timeout: Per-request timeout in seconds
        """
        self.asset_store = asset_store
        self.timeout = timeout

    @abstractmethod
    def normalize_symbol(self, symbol: str) -> str:
        """Canonical form of a user-supplied symbol."""
        pass

    @abstractmethod
    def fetch(self, symbol: str) -> PriceObservation:
        """
        Fetch the latest price for one symbol from the upstream feed.

        Raises:
            Exception: Any network or parsing failure; the resolver turns
                it into PriceUnavailable
        """
        pass

    def refresh_all(self) -> List[PriceObservation]:
        """
        Fetch the tracked universe and record it.

        Default: not supported for this feed.
        """
        return []

    def _record(self, observations: List[PriceObservation]) -> None:
        """Persist observations to the asset store, if one is attached."""
        if self.asset_store is not None and observations:
            self.asset_store.record_many(observations)
