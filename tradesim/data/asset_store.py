"""
Unified asset price store.

Holds every price observation the adapters have ingested, for all asset
classes, in one pandas DataFrame persisted as Parquet. The price resolver
reads the latest observation from here before going to a live feed.
"""

import logging
import threading
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd

from ..config import ASSET_STORE_PATH
from .base_fetcher import PriceObservation

logger = logging.getLogger(__name__)

COLUMNS = [
    "asset_type",
    "symbol",
    "timestamp",
    "price",
    "change",
    "change_percent",
    "volume",
    "source",
    "seq",
]


class AssetStore:
    """
    Append-only store of price observations.

    Observations are ordered by market timestamp; observations sharing a
    timestamp are ordered by write sequence, so the most recently written
    one wins (ingestion order reflects scrape completion).

    Example:
        store = AssetStore(path="data/cache/asset_prices.parquet")
        store.record(observation)
        latest = store.get_latest_price("crypto", "BTCUSDT")
        store.save()
    """

    def __init__(self, path: Optional[Path] = None, load: bool = False):
        """
        Initialize the store.

        Args:
            path: Parquet file for persistence (default from config)
            load: Load existing observations from path on start-up
        """
        self.path = Path(path) if path else ASSET_STORE_PATH
        self._lock = threading.Lock()
        self._frame = pd.DataFrame(columns=COLUMNS)
        self._next_seq = 0

        if load and self.path.exists():
            self.load()

    def __len__(self) -> int:
        return len(self._frame)

    def record(self, observation: PriceObservation) -> None:
        """Append one observation."""
        self.record_many([observation])

    def record_many(self, observations: Iterable[PriceObservation]) -> int:
        """
        Append a batch of observations.

        Returns:
            Number of observations written
        """
        observations = list(observations)
        if not observations:
            return 0

        with self._lock:
            rows = []
            for obs in observations:
                rows.append({
                    "asset_type": obs.asset_type,
                    "symbol": obs.symbol,
                    "timestamp": obs.timestamp,
                    "price": float(obs.price),
                    "change": float(obs.change),
                    "change_percent": float(obs.change_percent),
                    "volume": float(obs.volume),
                    "source": obs.source,
                    "seq": self._next_seq,
                })
                self._next_seq += 1

            new = pd.DataFrame(rows, columns=COLUMNS)
            new["timestamp"] = pd.to_datetime(new["timestamp"], utc=True)

            if self._frame.empty:
                self._frame = new
            else:
                self._frame = pd.concat([self._frame, new], ignore_index=True)

        logger.debug(f"Recorded {len(rows)} price observations")
        return len(rows)

    def _select(self, asset_type: str, symbol: str) -> pd.DataFrame:
        """Observations for one asset in (timestamp, seq) order."""
        df = self._frame
        if df.empty:
            return df
        rows = df[(df["asset_type"] == asset_type) & (df["symbol"] == symbol)]
        return rows.sort_values(["timestamp", "seq"], kind="mergesort")

    @staticmethod
    def _to_observation(row: pd.Series) -> PriceObservation:
        """Convert a stored row back to an observation."""
        return PriceObservation(
            asset_type=row["asset_type"],
            symbol=row["symbol"],
            price=float(row["price"]),
            timestamp=row["timestamp"].to_pydatetime(),
            change=float(row["change"]),
            change_percent=float(row["change_percent"]),
            volume=float(row["volume"]),
            source=row["source"],
        )

    def get_latest_price(self, asset_type: str, symbol: str) -> Optional[PriceObservation]:
        """
        Latest observation for an asset.

        Returns:
            PriceObservation, or None if the asset was never recorded
        """
        with self._lock:
            rows = self._select(asset_type, symbol)
            if rows.empty:
                return None
            return self._to_observation(rows.iloc[-1])

    def get_symbols(self, asset_type: str) -> List[str]:
        """Sorted symbols recorded for an asset class."""
        with self._lock:
            if self._frame.empty:
                return []
            rows = self._frame[self._frame["asset_type"] == asset_type]
            return sorted(rows["symbol"].unique().tolist())

    def save(self, path: Optional[Path] = None) -> Path:
        """
        Persist all observations to Parquet.

        Returns:
            Path to the saved file
        """
        filepath = Path(path) if path else self.path
        filepath.parent.mkdir(parents=True, exist_ok=True)

        with self._lock:
            self._frame.to_parquet(filepath, index=False)
            count = len(self._frame)

        logger.info(f"Saved {count} price observations: {filepath}")
        return filepath

    def load(self, path: Optional[Path] = None) -> None:
        """Replace the in-memory observations with a Parquet file."""
        filepath = Path(path) if path else self.path
        df = pd.read_parquet(filepath)
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)

        with self._lock:
            self._frame = df[COLUMNS].reset_index(drop=True)
            self._next_seq = int(df["seq"].max()) + 1 if not df.empty else 0

        logger.info(f"Loaded {len(df)} price observations from {filepath}")
