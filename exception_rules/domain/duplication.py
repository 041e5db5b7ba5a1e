"""
Duplicate rule name detection.

Exact duplicates (same normalized name among active rules) block rule
creation until the caller resolves them. Near-duplicates ("上厕所" vs
"去厕所") are advisory and only produce warnings.
"""

import difflib
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

from exception_rules.config import settings
from exception_rules.config.logging_config import get_logger
from exception_rules.data.models import ExceptionRule
from exception_rules.utils.normalization import compact_name, display_name, normalize_name

logger = get_logger(__name__)

# Names longer than this are truncated before similarity scoring
MAX_SIMILARITY_LENGTH = 100

DESCRIPTIVE_SUFFIXES = ["(紧急)", "(短暂)", "(必要)", "(临时)", "(重要)"]


@dataclass(frozen=True)
class SimilarMatch:
    """A near-duplicate rule and how similar its name is."""

    rule: ExceptionRule
    similarity: float


@dataclass
class DuplicationReport:
    """Result of checking a name against a rule set."""

    name: str
    exact_matches: List[ExceptionRule] = field(default_factory=list)
    similar_matches: List[SimilarMatch] = field(default_factory=list)
    suggestion: Optional[ExceptionRule] = None

    @property
    def has_exact_match(self) -> bool:
        return bool(self.exact_matches)

    @property
    def has_similar_matches(self) -> bool:
        return bool(self.similar_matches)


def name_similarity(first: Any, second: Any) -> float:
    """Similarity ratio (0.0-1.0) of two rule names.

    Whitespace and punctuation are ignored. Empty names are never similar
    to anything.
    """
    a = compact_name(first)[:MAX_SIMILARITY_LENGTH]
    b = compact_name(second)[:MAX_SIMILARITY_LENGTH]
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return difflib.SequenceMatcher(None, a, b).ratio()


class RuleDuplicationDetector:
    """Detects exact and near-duplicate rule names."""

    def __init__(
        self,
        similarity_threshold: Optional[float] = None,
        strong_similarity_threshold: Optional[float] = None,
    ):
        """
        Initialize the detector.

        Args:
            similarity_threshold: Minimum ratio for a similar match
            strong_similarity_threshold: Minimum ratio for suggesting reuse
        """
        config = settings.duplication
        self.similarity_threshold = (
            config.similarity_threshold if similarity_threshold is None else similarity_threshold
        )
        self.strong_similarity_threshold = (
            config.strong_similarity_threshold if strong_similarity_threshold is None
            else strong_similarity_threshold
        )

    def detect_duplicates(
        self,
        name: Any,
        rules: Iterable[ExceptionRule],
        exclude_id: Optional[str] = None
    ) -> DuplicationReport:
        """
        Check a name against a rule set.

        Only active rules are considered. Never raises for malformed rule
        names.

        Args:
            name: Candidate rule name
            rules: Existing rules
            exclude_id: Rule to ignore, e.g. the rule being renamed

        Returns:
            DuplicationReport: Exact and similar matches
        """
        key = normalize_name(name)
        report = DuplicationReport(name=display_name(name))
        if not key:
            return report

        similar: List[SimilarMatch] = []
        for rule in rules or []:
            if not getattr(rule, "is_active", False) or getattr(rule, "id", None) == exclude_id:
                continue

            rule_key = normalize_name(getattr(rule, "name", None))
            if rule_key == key:
                report.exact_matches.append(rule)
                continue

            if not self._within_length_bound(key, rule_key):
                continue

            similarity = name_similarity(key, rule_key)
            if similarity >= self.similarity_threshold:
                similar.append(SimilarMatch(rule=rule, similarity=similarity))

        similar.sort(key=lambda m: m.similarity, reverse=True)
        report.similar_matches = similar

        if report.exact_matches:
            report.suggestion = report.exact_matches[0]
        elif similar and similar[0].similarity >= self.strong_similarity_threshold:
            report.suggestion = similar[0].rule

        if report.has_exact_match or report.has_similar_matches:
            logger.debug(
                f"Name {report.name!r}: {len(report.exact_matches)} exact, "
                f"{len(similar)} similar matches"
            )
        return report

    def _within_length_bound(self, first: str, second: str) -> bool:
        # A ratio of 2*M/T can't reach the threshold when lengths differ too much
        shorter, longer = sorted((len(first), len(second)))
        if longer == 0:
            return False
        return 2 * shorter / (shorter + longer) >= self.similarity_threshold

    def generate_name_suggestions(
        self,
        base_name: Any,
        existing_names: Iterable[Any],
        limit: int = 5
    ) -> List[str]:
        """
        Alternate names that do not collide with ``existing_names``.

        Args:
            base_name: The colliding name
            existing_names: Names already in use
            limit: Maximum number of suggestions

        Returns:
            List[str]: Numeric-suffix names first, then descriptive suffixes
        """
        base = display_name(base_name)
        if not base:
            return []

        taken = {normalize_name(n) for n in existing_names}
        suggestions: List[str] = []

        candidates = [f"{base} {i}" for i in range(2, 11)]
        candidates += [f"{base}{suffix}" for suffix in DESCRIPTIVE_SUFFIXES]

        for candidate in candidates:
            key = normalize_name(candidate)
            if key not in taken:
                taken.add(key)
                suggestions.append(candidate)
            if len(suggestions) >= limit:
                break

        suffix = 11
        while len(suggestions) < limit:
            candidate = f"{base} {suffix}"
            if normalize_name(candidate) not in taken:
                taken.add(normalize_name(candidate))
                suggestions.append(candidate)
            suffix += 1

        return suggestions
