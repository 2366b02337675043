"""
Account, holding and trade persistence.

Keeps accounts, holdings and the append-only trade ledger for a single node.
Every balance/holding/trade mutation for a user goes through apply(), which
runs as one unit of work under that user's lock: the prior state is
snapshotted, each write is performed, and the snapshot is restored if any
write fails. Optionally persisted per user as a JSON snapshot plus a JSON-lines trade
ledger.
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import quote

from ..config import ACCOUNTS_FILE, DEFAULT_STARTING_BALANCE, TRADES_FILE
from ..errors import (
    AccountNotFound,
    PersistenceConflict,
    PersistenceFailure,
    ReconciliationError,
    ValidationError,
)
from .fee_calculator import FeeBreakdown, ZERO, to_decimal
from .position_manager import Holding, HoldingKey

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Account:
    """A user's cash account."""

    user_id: str
    balance: Decimal
    version: int = 0
    created_at: str = ""

    def to_dict(self) -> Dict:
        return {
            "user_id": self.user_id,
            "balance": str(self.balance),
            "version": self.version,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Account":
        return cls(
            user_id=data["user_id"],
            balance=to_decimal(data["balance"]),
            version=int(data.get("version", 0)),
            created_at=data.get("created_at", ""),
        )


@dataclass(frozen=True)
class Trade:
    """One executed trade. Immutable once written."""

    id: str
    user_id: str
    asset_type: str
    symbol: str
    side: str
    quantity: Decimal
    price: Decimal
    fees: FeeBreakdown
    timestamp: datetime
    balance_after: Decimal
    price_source: str = ""

    @property
    def trade_amount(self) -> Decimal:
        return self.fees.trade_amount

    @property
    def total_cost(self) -> Decimal:
        return self.fees.total_cost

    @property
    def net_amount(self) -> Decimal:
        return self.fees.net_amount

    def to_dict(self) -> Dict:
        """Display form with float amounts."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "asset_type": self.asset_type,
            "symbol": self.symbol,
            "side": self.side,
            "quantity": float(self.quantity),
            "price": float(self.price),
            "fees": self.fees.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "balance_after": float(self.balance_after),
            "price_source": self.price_source,
        }

    def to_record(self) -> Dict:
        """Lossless ledger form."""
        return {
            **self.to_dict(),
            "quantity": str(self.quantity),
            "price": str(self.price),
            "fees": self.fees.to_record(),
            "balance_after": str(self.balance_after),
        }

    @classmethod
    def from_record(cls, record: Dict) -> "Trade":
        return cls(
            id=record["id"],
            user_id=record["user_id"],
            asset_type=record["asset_type"],
            symbol=record["symbol"],
            side=record["side"],
            quantity=to_decimal(record["quantity"]),
            price=to_decimal(record["price"]),
            fees=FeeBreakdown.from_record(record["fees"]),
            timestamp=datetime.fromisoformat(record["timestamp"]),
            balance_after=to_decimal(record["balance_after"]),
            price_source=record.get("price_source", ""),
        )


class AccountStore:
    """
    In-process account/holding/trade store with per-user atomicity.

    Each user has their own lock, and their own holdings, trade list and
    files on disk, so unrelated users never contend. A registry lock only
    guards creation of per-user locks. Accounts also carry a version that
    apply() checks, so a writer holding a stale read is refused with
    PersistenceConflict.

    On disk each user gets a directory under store_dir holding a JSON
    snapshot of the account and holdings plus a JSON-lines trade ledger.

    Example:
        store = AccountStore(store_dir="data/store")
        store.open_account("alice", 100000)
        with store.user_lock("alice"):
            account = store.get_account("alice")
            store.apply(account.version, new_balance, key, holding, trade)
    """

    def __init__(self, store_dir: Optional[Path] = None, load: bool = True):
        """
        Initialize the store.

        Args:
            store_dir: Directory for the per-user snapshots and trade
                ledgers; in-memory only when omitted
            load: Load existing state from store_dir on start-up
        """
        self.store_dir = Path(store_dir) if store_dir else None

        self._registry_lock = threading.Lock()
        self._user_locks: Dict[str, threading.RLock] = {}

        # Keyed by user; each inner dict/list is only touched under that user's lock
        self._accounts: Dict[str, Account] = {}
        self._holdings: Dict[str, Dict[HoldingKey, Holding]] = {}
        self._trades: Dict[str, List[Trade]] = {}
        self._last_trade_at: Dict[HoldingKey, datetime] = {}

        if self.store_dir is not None:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            if load:
                self.load()

    def user_dir(self, user_id: str) -> Optional[Path]:
        """Directory holding one user's snapshot and ledger."""
        if self.store_dir is None:
            return None
        return self.store_dir / quote(user_id, safe="")

    def accounts_path(self, user_id: str) -> Optional[Path]:
        user_dir = self.user_dir(user_id)
        return user_dir / ACCOUNTS_FILE if user_dir else None

    def trades_path(self, user_id: str) -> Optional[Path]:
        user_dir = self.user_dir(user_id)
        return user_dir / TRADES_FILE if user_dir else None

    # =========================================================================
    # Locking
    # =========================================================================

    def user_lock(self, user_id: str) -> threading.RLock:
        """The exclusive lock for one user's account, holdings and trades."""
        with self._registry_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._user_locks[user_id] = lock
            return lock

    # =========================================================================
    # Reads
    # =========================================================================

    def open_account(self, user_id: str, starting_balance=DEFAULT_STARTING_BALANCE) -> Account:
        """
        Register a new account.

        Raises:
            ValidationError: Empty or reserved user id, existing account or
                negative balance
        """
        if not user_id or not user_id.strip("."):
            raise ValidationError(f"Invalid user id: {user_id!r}")
        balance = to_decimal(starting_balance)
        if balance < ZERO:
            raise ValidationError(f"Starting balance must not be negative: {balance}")

        with self.user_lock(user_id):
            if user_id in self._accounts:
                raise ValidationError(f"Account already exists: {user_id}")
            account = Account(user_id=user_id, balance=balance, created_at=_utcnow().isoformat())
            self._holdings[user_id] = {}
            self._trades[user_id] = []
            self._accounts[user_id] = account
            self._save_snapshot(user_id)

        logger.info(f"Opened account {user_id} with balance {balance:,.2f}")
        return account

    def get_account(self, user_id: str) -> Account:
        """
        Raises:
            AccountNotFound: No account for the user
        """
        account = self._accounts.get(user_id)
        if account is None:
            raise AccountNotFound(user_id)
        return account

    def get_holding(self, user_id: str, asset_type: str, symbol: str) -> Optional[Holding]:
        return self._holdings.get(user_id, {}).get((user_id, asset_type, symbol))

    def get_holdings(self, user_id: str) -> List[Holding]:
        """Open holdings for a user, ordered by asset type then symbol."""
        with self.user_lock(user_id):
            holdings = list(self._holdings.get(user_id, {}).values())
        return sorted(holdings, key=lambda h: (h.asset_type, h.symbol))

    def get_trades(
        self,
        user_id: str,
        asset_type: Optional[str] = None,
        symbol: Optional[str] = None,
        side: Optional[str] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> List[Trade]:
        """
        Trades for a user in chronological order.

        Args:
            user_id: Account owner
            asset_type: Optional asset class filter
            symbol: Optional symbol filter
            side: Optional 'buy'/'sell' filter
            limit: Maximum number of trades returned
            newest_first: Reverse the ordering before applying limit

        Returns:
            List of Trade
        """
        with self.user_lock(user_id):
            trades = list(self._trades.get(user_id, []))
        trades = [
            t for t in trades
            if (asset_type is None or t.asset_type == asset_type)
            and (symbol is None or t.symbol == symbol)
            and (side is None or t.side == side)
        ]
        trades.sort(key=lambda t: t.timestamp)
        if newest_first:
            trades.reverse()
        if limit is not None:
            trades = trades[:limit]
        return trades

    def next_trade_timestamp(self, key: HoldingKey, now: datetime) -> datetime:
        """
        Timestamp for the next trade on a holding key.

        Strictly later than the previous trade on the same key even if the
        clock stands still or steps backwards. Call under the user's lock.
        """
        last = self._last_trade_at.get(key)
        if last is not None and now <= last:
            return last + timedelta(microseconds=1)
        return now

    @staticmethod
    def new_trade_id() -> str:
        return uuid.uuid4().hex

    # =========================================================================
    # Unit of work
    # =========================================================================

    def apply(
        self,
        expected_version: int,
        new_balance,
        holding_key: HoldingKey,
        new_holding: Optional[Holding],
        trade: Trade,
    ) -> Account:
        """
        Atomically write the balance, the holding and the trade.

        Args:
            expected_version: Account version the caller read
            new_balance: Balance after the trade
            holding_key: (user_id, asset_type, symbol)
            new_holding: Holding after the trade; None deletes it
            trade: Trade to append

        Returns:
            The updated Account (version incremented)

        Raises:
            PersistenceConflict: Account version changed since it was read
            PersistenceFailure: A write failed; prior state was restored
            ReconciliationError: A write failed and restoring also failed
        """
        user_id = trade.user_id
        new_balance = to_decimal(new_balance)

        with self.user_lock(user_id):
            account = self.get_account(user_id)
            if account.version != expected_version:
                raise PersistenceConflict(user_id, expected_version, account.version)
            if new_balance < ZERO:
                raise PersistenceFailure(f"Refusing negative balance {new_balance} for {user_id}")

            snapshot = (
                account,
                self.get_holding(*holding_key),
                trade.id,
                self._last_trade_at.get(holding_key),
            )
            updated = replace(account, balance=new_balance, version=account.version + 1)

            try:
                self._write_account(updated)
                self._write_holding(holding_key, new_holding)
                self._append_trade(trade)
                self._persist(trade)
            except Exception as e:
                logger.error(f"Write failed for {user_id} trade {trade.id}, restoring: {e}")
                try:
                    self._restore(holding_key, snapshot)
                except Exception as restore_error:
                    logger.critical(
                        f"RECONCILIATION REQUIRED: could not restore {user_id} "
                        f"after failed trade {trade.id}: {restore_error}"
                    )
                    raise ReconciliationError(
                        f"Account {user_id} may be inconsistent after trade {trade.id}"
                    ) from restore_error
                raise PersistenceFailure(f"Trade {trade.id} not applied: {e}") from e

            return updated

    def _write_account(self, account: Account) -> None:
        self._accounts[account.user_id] = account

    def _write_holding(self, key: HoldingKey, holding: Optional[Holding]) -> None:
        holdings = self._holdings.setdefault(key[0], {})
        if holding is None:
            holdings.pop(key, None)
        else:
            holdings[key] = holding

    def _append_trade(self, trade: Trade) -> None:
        key = (trade.user_id, trade.asset_type, trade.symbol)
        last = self._last_trade_at.get(key)
        if last is not None and trade.timestamp <= last:
            raise PersistenceFailure(f"Trade {trade.id} is not later than the previous trade on {key}")
        self._trades.setdefault(trade.user_id, []).append(trade)
        self._last_trade_at[key] = trade.timestamp

    def _persist(self, trade: Trade) -> None:
        """Write the user's snapshot, then append the trade to their ledger file."""
        if self.store_dir is None:
            return
        self._save_snapshot(trade.user_id)
        with open(self.trades_path(trade.user_id), "a") as f:
            f.write(json.dumps(trade.to_record()) + "\n")

    def _restore(self, key: HoldingKey, snapshot) -> None:
        account, holding, trade_id, last_at = snapshot
        user_id = account.user_id
        self._accounts[user_id] = account
        self._write_holding(key, holding)
        self._trades[user_id] = [t for t in self._trades.get(user_id, []) if t.id != trade_id]
        if last_at is None:
            self._last_trade_at.pop(key, None)
        else:
            self._last_trade_at[key] = last_at
        self._save_snapshot(user_id)
        logger.warning(f"Restored {user_id} to version {account.version}")

    # =========================================================================
    # Persistence
    # =========================================================================

    def _save_snapshot(self, user_id: str) -> None:
        """Write one user's account and holdings to their JSON snapshot. Call under the user's lock."""
        if self.store_dir is None:
            return
        data = {
            "saved_at": _utcnow().isoformat(),
            "account": self._accounts[user_id].to_dict(),
            "holdings": [h.to_dict() for h in self._holdings.get(user_id, {}).values()],
        }
        path = self.accounts_path(user_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        tmp.replace(path)

    def load(self) -> None:
        """Load every user's snapshot and trade ledger from store_dir."""
        self._accounts = {}
        self._holdings = {}
        self._trades = {}
        self._last_trade_at = {}

        for path in sorted(self.store_dir.glob(f"*/{ACCOUNTS_FILE}")):
            with open(path) as f:
                data = json.load(f)
            account = Account.from_dict(data["account"])
            user_id = account.user_id
            self._accounts[user_id] = account
            self._holdings[user_id] = {}
            for h in data.get("holdings", []):
                holding = Holding.from_dict(h)
                self._holdings[user_id][holding.key] = holding

            trades = []
            trades_path = self.trades_path(user_id)
            if trades_path.exists():
                with open(trades_path) as f:
                    for line in f:
                        if not line.strip():
                            continue
                        trade = Trade.from_record(json.loads(line))
                        trades.append(trade)
                        key = (trade.user_id, trade.asset_type, trade.symbol)
                        if key not in self._last_trade_at or trade.timestamp > self._last_trade_at[key]:
                            self._last_trade_at[key] = trade.timestamp
            self._trades[user_id] = trades

        logger.info(
            f"Loaded {len(self._accounts)} accounts, "
            f"{sum(len(h) for h in self._holdings.values())} holdings, "
            f"{sum(len(t) for t in self._trades.values())} trades from {self.store_dir}"
        )
