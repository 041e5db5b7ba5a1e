"""
Rule search index for the exception rule engine.

This module provides ranked exact/prefix/substring search over rule names,
debounced search for type-ahead input, autocomplete suggestions and
alternate-name generation. Malformed rule names never make a search fail;
they are normalized like everything else.
"""

from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from exception_rules.config import settings
from exception_rules.config.logging_config import get_logger
from exception_rules.data.models import ExceptionRule, ExceptionRuleType, parse_enum
from exception_rules.utils.async_helpers import Debouncer
from exception_rules.utils.normalization import display_name, normalize_name

logger = get_logger(__name__)


class MatchType(Enum):
    """How a rule name matched a query."""

    EXACT = "exact"
    PREFIX = "prefix"
    CONTAINS = "contains"


# Lower sorts first
MATCH_PRIORITY: Dict[MatchType, int] = {
    MatchType.EXACT: 0,
    MatchType.PREFIX: 1,
    MatchType.CONTAINS: 2,
}

MATCH_SCORES: Dict[MatchType, int] = {
    MatchType.EXACT: 1000,
    MatchType.PREFIX: 800,
    MatchType.CONTAINS: 600,
}

USAGE_BONUS_PER_USE = 10
MAX_USAGE_BONUS = 200

COMMON_PATTERNS: Dict[ExceptionRuleType, List[str]] = {
    ExceptionRuleType.PAUSE_ONLY: [
        "上厕所", "喝水", "接电话", "休息", "吃饭", "开会",
        "紧急事务", "家庭事务", "健康问题", "技术故障",
    ],
    ExceptionRuleType.EARLY_COMPLETION_ONLY: [
        "任务完成", "提前结束", "目标达成", "紧急情况",
        "优先级变更", "资源不足", "外部依赖", "计划调整",
    ],
}


@dataclass(frozen=True)
class SearchResult:
    """A rule matched by a search, with how it matched."""

    rule: ExceptionRule
    match_type: MatchType


@dataclass(frozen=True)
class SearchSuggestion:
    """An autocomplete entry."""

    text: str
    rule_id: str
    match_type: MatchType
    score: int


def _usage_count(rule: Any) -> int:
    try:
        return max(int(getattr(rule, "usage_count", 0) or 0), 0)
    except (TypeError, ValueError):
        return 0


def _rule_key(rule: Any) -> str:
    return normalize_name(getattr(rule, "name", None))


def classify_match(name_key: str, query_key: str) -> Optional[MatchType]:
    """Classify how a normalized name matches a normalized query."""
    if not query_key:
        return None
    if name_key == query_key:
        return MatchType.EXACT
    if name_key.startswith(query_key):
        return MatchType.PREFIX
    if query_key in name_key:
        return MatchType.CONTAINS
    return None


class RuleSearchOptimizer:
    """
    In-memory search index over a rule set.

    One instance keeps one debounce slot: each debounced call replaces the
    pending one, so only the last call of a burst delivers results.
    """

    def __init__(
        self,
        debounce_delay: Optional[float] = None,
        max_prefix_length: Optional[int] = None,
        suggestion_limit: Optional[int] = None,
        history_size: Optional[int] = None,
    ):
        """
        Initialize the search index.

        Args:
            debounce_delay: Quiescence window for debounced searches, in seconds
            max_prefix_length: Longest prefix stored in the prefix index
            suggestion_limit: Default cap for suggestions
            history_size: Number of recent queries remembered
        """
        config = settings.search
        self.max_prefix_length = (
            config.max_prefix_length if max_prefix_length is None else max_prefix_length
        )
        self.suggestion_limit = (
            config.suggestion_limit if suggestion_limit is None else suggestion_limit
        )

        self._exact_index: Dict[str, List[ExceptionRule]] = {}
        self._prefix_index: Dict[str, List[ExceptionRule]] = {}
        self._rules_by_id: Dict[str, ExceptionRule] = {}

        self._search_history: Deque[str] = deque(
            maxlen=config.history_size if history_size is None else history_size
        )
        self._query_counts: Counter = Counter()

        delay = config.debounce_delay if debounce_delay is None else debounce_delay
        self._debouncer = Debouncer(delay, name="rule-search")

    def update_index(self, rules: Iterable[ExceptionRule]) -> None:
        """
        Rebuild the index from a rule set.

        Rules whose names normalize to ``''`` are still indexed, under the
        empty key, and stay reachable by id.

        Args:
            rules: Rules to index
        """
        self._exact_index.clear()
        self._prefix_index.clear()
        self._rules_by_id.clear()

        for rule in rules or []:
            key = _rule_key(rule)
            self._exact_index.setdefault(key, []).append(rule)
            self._rules_by_id[getattr(rule, "id", None)] = rule

            for length in range(1, min(len(key), self.max_prefix_length) + 1):
                self._prefix_index.setdefault(key[:length], []).append(rule)

        logger.debug(
            f"Indexed {len(self._rules_by_id)} rules under {len(self._exact_index)} names"
        )

    def find_exact(self, query: Any) -> List[ExceptionRule]:
        """Indexed rules whose normalized name equals the query."""
        key = normalize_name(query)
        if not key:
            return []
        return list(self._exact_index.get(key, []))

    def find_by_prefix(self, query: Any) -> List[ExceptionRule]:
        """Indexed rules whose normalized name starts with the query."""
        key = normalize_name(query)
        if not key:
            return []
        if len(key) <= self.max_prefix_length:
            return list(self._prefix_index.get(key, []))

        candidates = self._prefix_index.get(key[:self.max_prefix_length], [])
        return [rule for rule in candidates if _rule_key(rule).startswith(key)]

    def get_indexed_rule(self, rule_id: str) -> Optional[ExceptionRule]:
        """Look up an indexed rule by id, whatever its name."""
        return self._rules_by_id.get(rule_id)

    def is_name_taken(self, name: Any) -> bool:
        """Whether a non-empty name collides with an indexed name."""
        key = normalize_name(name)
        return bool(key) and key in self._exact_index

    def search_rules(self, rules: Iterable[ExceptionRule], query: Any) -> List[SearchResult]:
        """
        Return the rules matching a query, best first.

        An empty query matches nothing. Results are ordered by match type
        (exact, prefix, contains), then by usage count descending, then by name.

        Args:
            rules: Rules to search
            query: Free-text query

        Returns:
            List[SearchResult]: Ranked matches
        """
        query_key = normalize_name(query)
        if not query_key:
            return []

        results = self._match(rules, query_key)
        self._record_search(query_key)
        return results

    def search_rules_debounced(
        self,
        rules: Iterable[ExceptionRule],
        query: Any,
        callback: Callable[[List[SearchResult]], None]
    ) -> None:
        """
        Search after the input has been quiet for the debounce window.

        Cancels any pending debounced search. Must be called from a running
        event loop. If the search fails the failure is logged and
        ``callback`` is not invoked.

        Args:
            rules: Rules to search
            query: Free-text query
            callback: Receives the results of the last call in a burst
        """
        self._debouncer.call(self._run_debounced_search, list(rules or []), query, callback)

    def cancel_pending_search(self) -> bool:
        """Cancel the pending debounced search, if any."""
        return self._debouncer.cancel()

    @property
    def has_pending_search(self) -> bool:
        return self._debouncer.pending

    def _run_debounced_search(
        self,
        rules: List[ExceptionRule],
        query: Any,
        callback: Callable[[List[SearchResult]], None]
    ) -> None:
        try:
            results = self.search_rules(rules, query)
        except Exception as e:
            logger.error(f"Debounced search for {query!r} failed: {e}")
            return
        callback(results)

    def _match(self, rules: Iterable[ExceptionRule], query_key: str) -> List[SearchResult]:
        results = []
        for rule in rules or []:
            match_type = classify_match(_rule_key(rule), query_key)
            if match_type is not None:
                results.append(SearchResult(rule=rule, match_type=match_type))

        results.sort(key=lambda r: (
            MATCH_PRIORITY[r.match_type],
            -_usage_count(r.rule),
            _rule_key(r.rule)
        ))
        return results

    def get_search_suggestions(
        self,
        query: Any,
        rules: Iterable[ExceptionRule],
        limit: Optional[int] = None
    ) -> List[SearchSuggestion]:
        """
        Autocomplete entries for a partial query.

        Uses the same matching as ``search_rules``; frequently used rules
        get a score bonus so they surface first.

        Args:
            query: Partial input
            rules: Rules to suggest from
            limit: Maximum number of suggestions

        Returns:
            List[SearchSuggestion]: Suggestions, best first
        """
        query_key = normalize_name(query)
        if not query_key:
            return []

        if limit is None:
            limit = self.suggestion_limit
        suggestions = []
        for result in self._match(rules, query_key):
            bonus = min(_usage_count(result.rule) * USAGE_BONUS_PER_USE, MAX_USAGE_BONUS)
            suggestions.append(SearchSuggestion(
                text=display_name(result.rule.name),
                rule_id=getattr(result.rule, "id", ""),
                match_type=result.match_type,
                score=MATCH_SCORES[result.match_type] + bonus
            ))

        suggestions.sort(key=lambda s: (-s.score, normalize_name(s.text)))

        unique: List[SearchSuggestion] = []
        seen = set()
        for suggestion in suggestions:
            key = normalize_name(suggestion.text)
            if key in seen:
                continue
            seen.add(key)
            unique.append(suggestion)
        return unique[:limit]

    def generate_name_suggestions(
        self,
        base_name: Any,
        rule_type: Any = None,
        limit: Optional[int] = None
    ) -> List[str]:
        """
        Alternate names for a name that is already taken.

        The first entry is ``"<base> N"`` for the smallest N >= 2 that does
        not collide with an indexed name. Common patterns for ``rule_type``
        that contain the base follow, then further numeric suffixes. No
        returned name collides with the indexed rule set.

        Args:
            base_name: The colliding name
            rule_type: Type of the rule being created
            limit: Maximum number of suggestions

        Returns:
            List[str]: Non-colliding names
        """
        base = display_name(base_name)
        if not base:
            return []

        if limit is None:
            limit = self.suggestion_limit
        suggestions: List[str] = []
        taken = set(self._exact_index)

        def accept(candidate: str) -> None:
            key = normalize_name(candidate)
            if key and key not in taken:
                taken.add(key)
                suggestions.append(candidate)

        # The taken set is finite, so a free suffix is always found
        suffix = 2
        while not suggestions:
            accept(f"{base} {suffix}")
            suffix += 1

        base_key = normalize_name(base)
        for pattern in COMMON_PATTERNS.get(parse_enum(ExceptionRuleType, rule_type), []):
            if len(suggestions) >= limit:
                break
            if base_key in normalize_name(pattern) and normalize_name(pattern) != base_key:
                accept(pattern)

        while len(suggestions) < limit:
            accept(f"{base} {suffix}")
            suffix += 1

        return suggestions[:limit]

    def _record_search(self, query_key: str) -> None:
        if query_key in self._search_history:
            self._search_history.remove(query_key)
        self._search_history.appendleft(query_key)
        self._query_counts[query_key] += 1

    def get_search_stats(self) -> Dict[str, Any]:
        """Index size and search history summary."""
        return {
            "indexed_rules": len(self._rules_by_id),
            "indexed_names": len(self._exact_index),
            "history_size": len(self._search_history),
            "recent_searches": list(self._search_history),
            "popular_searches": [
                {"query": query, "count": count}
                for query, count in self._query_counts.most_common(10)
            ],
        }

    def clear_history(self) -> None:
        """Forget recorded searches."""
        self._search_history.clear()
        self._query_counts.clear()
