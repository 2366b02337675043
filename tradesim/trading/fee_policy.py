"""
Fee policy provider.

Serves the admin-configured fee policy from a YAML settings file through a
short-TTL cache shared by all trade workers. Reads are eventually consistent
with writes for at most the TTL; each trade takes one snapshot and keeps it.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

import yaml

from ..config import FEE_POLICY_CACHE_TTL
from ..errors import InvalidFeePolicy
from .fee_calculator import FeePolicy

logger = logging.getLogger(__name__)


class FeePolicyProvider:
    """
    Supplies the current fee policy.

    With no settings path the policy lives in memory only (useful in tests
    and for one-off previews).

    Example:
        provider = FeePolicyProvider(settings_path="data/settings.yaml")
        policy = provider.get_policy()
        provider.update_settings({"min_fee": 5}, updated_by="admin")
    """

    def __init__(
        self,
        settings_path: Optional[Path] = None,
        ttl: float = FEE_POLICY_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
        initial_policy: Optional[FeePolicy] = None,
    ):
        """
        Initialize the provider.

        Args:
            settings_path: YAML file holding the fee settings
            ttl: Seconds a loaded policy is served before re-reading
            clock: Monotonic clock (injectable for tests)
            initial_policy: Policy to use before/without a settings file
        """
        self.settings_path = Path(settings_path) if settings_path else None
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()

        self._policy: FeePolicy = initial_policy or FeePolicy.default()
        self._loaded_at: Optional[float] = None
        self.updated_by: Optional[str] = None
        self.last_updated: Optional[str] = None

    def get_policy(self) -> FeePolicy:
        """
        Get a snapshot of the current fee policy.

        Served from cache while younger than the TTL.
        """
        with self._lock:
            now = self._clock()
            if self._loaded_at is not None and now - self._loaded_at < self.ttl:
                return self._policy

            if self.settings_path is not None:
                self._load()
            self._loaded_at = now
            return self._policy

    def _load(self) -> None:
        """Re-read the settings file, keeping the last good policy on error."""
        if not self.settings_path.exists():
            logger.info(f"No fee settings at {self.settings_path}, writing defaults")
            self._save(self._policy, self.updated_by, self.last_updated)
            return

        try:
            with open(self.settings_path) as f:
                data = yaml.safe_load(f) or {}
            self._policy = FeePolicy.from_dict(data.get("fee_policy", {}))
            self.updated_by = data.get("updated_by")
            self.last_updated = data.get("last_updated")
        except (yaml.YAMLError, InvalidFeePolicy, OSError) as e:
            logger.error(f"Failed to load fee settings, keeping previous policy: {e}")

    def _save(self, policy: FeePolicy, updated_by: Optional[str], last_updated: Optional[str]) -> None:
        """Write a policy and its audit fields to the settings file."""
        self.settings_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "fee_policy": policy.to_dict(),
            "updated_by": updated_by,
            "last_updated": last_updated,
        }
        with open(self.settings_path, "w") as f:
            yaml.safe_dump(data, f, sort_keys=False)

    def get_settings(self) -> Dict:
        """Current settings with audit fields."""
        policy = self.get_policy()
        return {
            **policy.to_dict(),
            "updated_by": self.updated_by,
            "last_updated": self.last_updated,
        }

    def update_settings(self, updates: Dict, updated_by: Optional[str] = None) -> FeePolicy:
        """
        Apply a partial settings update.

        Args:
            updates: Subset of fee policy fields to change
            updated_by: Identity of the admin making the change

        Returns:
            The new policy

        Raises:
            InvalidFeePolicy: Unknown key or out-of-range value
        """
        current = self.get_policy()
        merged = {**current.to_dict(), **updates}
        policy = FeePolicy.from_dict(merged)

        last_updated = datetime.now(timezone.utc).isoformat()
        with self._lock:
            # Written before the swap so a failed write leaves the old policy in force
            if self.settings_path is not None:
                self._save(policy, updated_by, last_updated)
            self._policy = policy
            self.updated_by = updated_by
            self.last_updated = last_updated
            self._loaded_at = self._clock()

        logger.info(f"Fee settings updated by {updated_by or 'unknown'}: {updates}")
        return policy

    def invalidate(self) -> None:
        """Force the next read to reload the settings file."""
        with self._lock:
            self._loaded_at = None
