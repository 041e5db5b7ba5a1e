"""
Per-chain rule cache.

Caches each chain's chain-scoped rules and the search results computed over
them. Entries expire lazily on read; there is no background sweep.
Subscribers are notified synchronously after every write to a chain's list.
"""

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from exception_rules.config import settings
from exception_rules.config.logging_config import get_logger
from exception_rules.data.models import ExceptionRule, RuleScope
from exception_rules.utils.error_handling import safe_execute
from exception_rules.utils.normalization import normalize_name

logger = get_logger(__name__)

SubscriberType = Callable[[str, List[ExceptionRule]], None]
SearchKey = Tuple[str, str]


@dataclass
class CacheEntry:
    """A cached value and when it stops being valid."""

    data: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now > self.stored_at + self.ttl


def _belongs_to_chain(rule: ExceptionRule, chain_id: str) -> bool:
    return (
        getattr(rule, "scope", None) == RuleScope.CHAIN
        and getattr(rule, "chain_id", None) == chain_id
    )


class ExceptionRuleCache:
    """
    TTL cache of chain rule lists and chain search results.

    The clock is injectable so expiry can be tested without sleeping.
    """

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        search_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the cache.

        Args:
            default_ttl: Lifetime of chain rule lists, in seconds
            search_ttl: Lifetime of search results, in seconds
            clock: Returns the current time in seconds
        """
        self.default_ttl = settings.cache.default_ttl if default_ttl is None else default_ttl
        self.search_ttl = settings.cache.search_ttl if search_ttl is None else search_ttl
        self._clock = clock

        self._chains: Dict[str, CacheEntry] = {}
        self._searches: Dict[SearchKey, CacheEntry] = {}
        self._subscribers: List[SubscriberType] = []

        self._hit_count = 0
        self._miss_count = 0

    def get_chain_rules(self, chain_id: str) -> Optional[List[ExceptionRule]]:
        """
        Return a chain's cached rules.

        Returns:
            Optional[List[ExceptionRule]]: The rules, or None when absent or expired
        """
        data = self._read(self._chains, chain_id)
        return list(data) if data is not None else None

    def set_chain_rules(
        self,
        chain_id: str,
        rules: List[ExceptionRule],
        ttl: Optional[float] = None
    ) -> None:
        """
        Cache a chain's rules and notify subscribers.

        Rules that are not chain-scoped to ``chain_id`` are dropped.

        Args:
            chain_id: Chain identifier
            rules: Rules to cache
            ttl: Lifetime in seconds, defaults to ``default_ttl``
        """
        chain_rules = [rule for rule in rules if _belongs_to_chain(rule, chain_id)]
        dropped = len(rules) - len(chain_rules)
        if dropped:
            logger.warning(f"Dropped {dropped} rules not scoped to chain {chain_id}")

        self._chains[chain_id] = CacheEntry(
            data=chain_rules,
            stored_at=self._clock(),
            ttl=self.default_ttl if ttl is None else ttl
        )
        self._invalidate_chain_searches(chain_id)
        self._notify_subscribers(chain_id, chain_rules)

    def add_rule_to_chain(self, chain_id: str, rule: ExceptionRule) -> None:
        """Append a rule to a chain's cached list."""
        if not _belongs_to_chain(rule, chain_id):
            logger.warning(f"Ignoring rule {getattr(rule, 'id', None)}: not scoped to chain {chain_id}")
            return

        existing = self.get_chain_rules(chain_id) or []
        existing = [r for r in existing if r.id != rule.id]
        self.set_chain_rules(chain_id, existing + [rule])

    def remove_rule_from_chain(self, chain_id: str, rule_id: str) -> None:
        """Remove a rule from a chain's cached list."""
        existing = self.get_chain_rules(chain_id) or []
        self.set_chain_rules(chain_id, [r for r in existing if r.id != rule_id])

    def update_rule_in_chain(self, chain_id: str, rule: ExceptionRule) -> None:
        """Replace a rule in a chain's cached list, if present."""
        if not _belongs_to_chain(rule, chain_id):
            logger.warning(f"Ignoring rule {getattr(rule, 'id', None)}: not scoped to chain {chain_id}")
            return

        existing = self.get_chain_rules(chain_id)
        if not existing or all(r.id != rule.id for r in existing):
            return
        self.set_chain_rules(chain_id, [rule if r.id == rule.id else r for r in existing])

    def get_search_results(self, chain_id: str, query: Any) -> Optional[List[ExceptionRule]]:
        """Return cached search results for a chain query, if any."""
        data = self._read(self._searches, (chain_id, normalize_name(query)))
        return list(data) if data is not None else None

    def set_search_results(
        self,
        chain_id: str,
        query: Any,
        results: List[ExceptionRule],
        ttl: Optional[float] = None
    ) -> None:
        """Cache search results for a chain query."""
        self._searches[(chain_id, normalize_name(query))] = CacheEntry(
            data=list(results),
            stored_at=self._clock(),
            ttl=self.search_ttl if ttl is None else ttl
        )

    def subscribe(self, callback: SubscriberType) -> Callable[[], None]:
        """
        Register a callback for chain list writes.

        Args:
            callback: Called with ``(chain_id, rules)``

        Returns:
            Callable[[], None]: Removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def preload_chain_data(
        self,
        chain_id: str,
        loader: Callable[[str], Awaitable[List[ExceptionRule]]]
    ) -> None:
        """
        Load and cache a chain's rules unless they are already cached.

        A failing loader is logged; the cache is left unchanged.
        """
        if self.get_chain_rules(chain_id) is not None:
            return

        try:
            rules = await loader(chain_id)
        except Exception as e:
            logger.error(f"Failed to preload rules for chain {chain_id}: {e}")
            return

        self.set_chain_rules(chain_id, rules)

    def invalidate_chain(self, chain_id: str) -> None:
        """Drop a chain's rule list and search results."""
        self._chains.pop(chain_id, None)
        self._invalidate_chain_searches(chain_id)
        logger.debug(f"Invalidated cache for chain {chain_id}")

    def clear(self) -> None:
        """Drop every entry and reset the hit counters."""
        self._chains.clear()
        self._searches.clear()
        self._hit_count = 0
        self._miss_count = 0

    def clear_expired(self) -> int:
        """
        Drop every expired entry.

        Returns:
            int: Number of entries dropped
        """
        now = self._clock()
        cleared = 0
        for store in (self._chains, self._searches):
            expired = [key for key, entry in store.items() if entry.is_expired(now)]
            for key in expired:
                del store[key]
            cleared += len(expired)
        return cleared

    def get_cache_stats(self) -> Dict[str, Any]:
        """Entry counts and hit statistics."""
        total = self._hit_count + self._miss_count
        return {
            "total_entries": len(self._chains) + len(self._searches),
            "chain_entries": len(self._chains),
            "search_entries": len(self._searches),
            "hit_count": self._hit_count,
            "miss_count": self._miss_count,
            "hit_rate": round(self._hit_count / total, 2) if total else 0.0,
            "subscribers": len(self._subscribers),
        }

    def get_chain_cache_info(self, chain_id: str) -> Dict[str, Any]:
        """Describe a chain's cache entry without counting a hit or miss."""
        entry = self._chains.get(chain_id)
        if entry is None or entry.is_expired(self._clock()):
            return {"rules_count": 0, "cached": False, "stored_at": None}
        return {
            "rules_count": len(entry.data),
            "cached": True,
            "stored_at": entry.stored_at,
        }

    def _read(self, store: Dict[Any, CacheEntry], key: Any) -> Optional[Any]:
        entry = store.get(key)
        if entry is None:
            self._miss_count += 1
            return None

        if entry.is_expired(self._clock()):
            del store[key]
            self._miss_count += 1
            return None

        self._hit_count += 1
        return entry.data

    def _invalidate_chain_searches(self, chain_id: str) -> None:
        for key in [k for k in self._searches if k[0] == chain_id]:
            del self._searches[key]

    def _notify_subscribers(self, chain_id: str, rules: List[ExceptionRule]) -> None:
        for callback in list(self._subscribers):
            safe_execute(
                callback, chain_id, list(rules),
                error_message=f"Cache subscriber failed for chain {chain_id}"
            )
