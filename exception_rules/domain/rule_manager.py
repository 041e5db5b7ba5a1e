"""
Exception rule manager.

The manager is the entry point for UI and orchestration code. It owns rule
writes, enforces the rule type / action table and coordinates the search
index, duplication detector, chain cache and usage tracker.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from exception_rules.config import settings
from exception_rules.config.logging_config import get_logger
from exception_rules.data.base_repository import RuleRepository
from exception_rules.data.models import (
    PERMITTED_ACTIONS, RULE_TYPE_FOR_ACTION, ActionType, ExceptionRule, ExceptionRuleType,
    PauseOptions, RuleScope, RuleUsageRecord, SessionContext, parse_enum
)
from exception_rules.domain.cache import ExceptionRuleCache
from exception_rules.domain.duplication import DuplicationReport, RuleDuplicationDetector
from exception_rules.domain.search import RuleSearchOptimizer
from exception_rules.domain.usage_tracker import (
    OverallUsageStats, RuleEfficiencyAnalysis, RuleUsageStats, RuleUsageTracker, RuleUsageTrend
)
from exception_rules.events.event_interface import EventEmitter, EventType, RuleEvent, event_bus
from exception_rules.utils.error_handling import (
    ExceptionRuleError, ExceptionRuleException, storage_errors
)
from exception_rules.utils.normalization import display_name, normalize_name

logger = get_logger(__name__)

# Only these fields can be changed through update_rule
UPDATABLE_FIELDS = ("name", "type", "description")


class ResolutionChoice(Enum):
    """How to proceed when a new rule's name is already taken."""

    USE_EXISTING = "use_existing"
    MODIFY_NAME = "modify_name"
    CREATE_ANYWAY = "create_anyway"


class CreationAction(Enum):
    """What create_rule actually did."""

    CREATED = "created"
    USED_EXISTING = "used_existing"
    RENAMED = "renamed"
    CREATED_ANYWAY = "created_anyway"


@dataclass
class RuleCreationResult:
    """The rule returned by create_rule and any non-fatal warnings."""

    rule: ExceptionRule
    warnings: List[str] = field(default_factory=list)
    action: CreationAction = CreationAction.CREATED


@dataclass
class RuleUpdateResult:
    """The updated rule and any non-fatal warnings."""

    rule: ExceptionRule
    warnings: List[str] = field(default_factory=list)


@dataclass
class RuleUsageResult:
    """The stored usage record and the rule with its new usage count."""

    rule: ExceptionRule
    record: RuleUsageRecord


@dataclass
class ImportResult:
    """Per-item outcome of a rule import."""

    imported: List[ExceptionRule] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class RuleExport:
    """Exported rules; usage_records is None when usage was not requested."""

    rules: List[ExceptionRule]
    usage_records: Optional[List[RuleUsageRecord]]
    exported_at: datetime
    summary: Dict[str, int]


@dataclass
class DuplicationSuggestions:
    """A duplication report plus alternate names for the candidate."""

    report: DuplicationReport
    name_suggestions: List[str]


@dataclass
class RuleUsageSuggestions:
    """Rules to offer first when the user picks a rule for an action."""

    most_used: List[ExceptionRule]
    recently_used: List[ExceptionRule]
    suggested: List[ExceptionRule]


@dataclass
class SystemHealth:
    """Health summary of the rule system."""

    status: str
    total_rules: int = 0
    active_rules: int = 0
    total_usage_records: int = 0
    last_used_at: Optional[datetime] = None
    issues: List[str] = field(default_factory=list)


def _item_value(item: Any, key: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(key)
    return getattr(item, key, None)


class ExceptionRuleManager:
    """
    Facade over rule storage, search, duplication checks, caching and usage
    tracking.

    Collaborators are created with default settings unless injected.
    """

    def __init__(
        self,
        repository: RuleRepository,
        cache: Optional[ExceptionRuleCache] = None,
        search: Optional[RuleSearchOptimizer] = None,
        detector: Optional[RuleDuplicationDetector] = None,
        tracker: Optional[RuleUsageTracker] = None,
        events: Optional[EventEmitter] = None,
        now: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize the manager.

        Args:
            repository: Rule storage
            cache: Chain rule cache
            search: Search index
            detector: Duplicate name detector
            tracker: Usage tracker
            events: Emitter for rule lifecycle events, defaults to the global bus
            now: Returns the current time
        """
        self.repository = repository
        self.cache = cache or ExceptionRuleCache()
        self.search = search or RuleSearchOptimizer()
        self.detector = detector or RuleDuplicationDetector()
        self.tracker = tracker or RuleUsageTracker(repository, now=now)
        self.events = events if events is not None else event_bus
        self._now = now

    async def create_rule(
        self,
        name: Any,
        rule_type: Any,
        description: Optional[str] = None,
        resolution_choice: Any = None,
        chain_id: Optional[str] = None
    ) -> RuleCreationResult:
        """
        Create a rule, checking its name against rules of the same scope.

        Args:
            name: Rule name
            rule_type: ExceptionRuleType or its wire string
            description: Optional description
            resolution_choice: How to resolve an exact name collision
            chain_id: Chain the rule belongs to; global when omitted

        Returns:
            RuleCreationResult: The resulting rule, warnings and what was done

        Raises:
            ExceptionRuleException: VALIDATION_ERROR or INVALID_RULE_TYPE for bad
                input, RULE_NAME_EXISTS for an unresolved collision
        """
        name = self._validate_name(name)
        rule_type = self._validate_type(rule_type)
        choice = self._parse_choice(resolution_choice)

        async with storage_errors("create rule", name=name, chain_id=chain_id):
            scope_rules = await self._get_scope_rules(chain_id)

        report = self.detector.detect_duplicates(name, scope_rules)
        warnings: List[str] = []
        action = CreationAction.CREATED

        if report.has_exact_match:
            if choice is None:
                raise ExceptionRuleException(
                    ExceptionRuleError.RULE_NAME_EXISTS,
                    f'Rule name "{name}" already exists',
                    details={
                        "name": name,
                        "chain_id": chain_id,
                        "existing_rules": [rule.to_dict() for rule in report.exact_matches],
                        "suggestions": self._alternate_names(name, rule_type, scope_rules),
                    }
                )

            if choice is ResolutionChoice.USE_EXISTING:
                existing = next(
                    (rule for rule in report.exact_matches if rule.type == rule_type),
                    report.exact_matches[0]
                )
                logger.info(f"Reusing existing rule {existing.id} for name {name!r}")
                return RuleCreationResult(
                    rule=existing,
                    warnings=[f'Using existing rule "{display_name(existing.name)}"'],
                    action=CreationAction.USED_EXISTING
                )

            if choice is ResolutionChoice.MODIFY_NAME:
                new_name = self._alternate_names(name, rule_type, scope_rules, limit=1)[0]
                warnings.append(f'Name "{name}" is taken, created as "{new_name}"')
                name = new_name
                action = CreationAction.RENAMED
            else:
                warnings.append(f'Created despite an existing rule named "{name}"')
                action = CreationAction.CREATED_ANYWAY

        elif report.has_similar_matches:
            similar = ", ".join(display_name(m.rule.name) for m in report.similar_matches)
            warnings.append(f"Similar rules exist: {similar}")

        rule = ExceptionRule(
            name=name,
            type=rule_type,
            scope=RuleScope.CHAIN if chain_id else RuleScope.GLOBAL,
            chain_id=chain_id,
            description=description,
            created_at=self._now()
        )
        async with storage_errors("create rule", name=name, chain_id=chain_id):
            stored = await self.repository.create_rule(rule)

        self._sync_cached_rule(stored)
        self._emit(EventType.RULE_CREATED, stored, action=action.value)
        logger.info(f"Created rule {stored.id} ({name!r}, {rule_type.value})")
        return RuleCreationResult(rule=stored, warnings=warnings, action=action)

    async def validate_rule_for_action(self, rule_id: str, action_type: Any) -> bool:
        """
        Whether a rule may be used for an action.

        Missing or inactive rules, rules without a valid type and unknown
        actions are never valid.
        """
        action = parse_enum(ActionType, action_type)
        if action is None:
            return False

        rule = await self.get_rule_by_id(rule_id)
        if rule is None or not rule.is_active:
            return False

        rule_type = parse_enum(ExceptionRuleType, rule.type)
        return rule_type is not None and PERMITTED_ACTIONS[rule_type] is action

    async def use_rule(
        self,
        rule_id: str,
        session_context: SessionContext,
        action_type: Any,
        pause_options: Optional[PauseOptions] = None
    ) -> RuleUsageResult:
        """
        Use a rule to justify pausing or early-completing a task.

        Nothing is recorded when the rule does not permit the action.

        Args:
            rule_id: Rule being used
            session_context: Session the rule is used in
            action_type: ActionType or its wire string
            pause_options: Pause duration and auto-resume choice

        Returns:
            RuleUsageResult: The updated rule and the stored usage record

        Raises:
            ExceptionRuleException: RULE_NOT_FOUND, INVALID_RULE_TYPE,
                RULE_TYPE_MISMATCH, VALIDATION_ERROR or STORAGE_ERROR
        """
        action = parse_enum(ActionType, action_type)
        if action is None:
            raise ExceptionRuleException(
                ExceptionRuleError.VALIDATION_ERROR,
                f"Unknown action type: {action_type!r}",
                details={"rule_id": rule_id, "action_type": str(action_type)}
            )

        rule = await self._require_rule(rule_id, active_only=True)
        rule_type = parse_enum(ExceptionRuleType, rule.type)
        if rule_type is None:
            raise ExceptionRuleException(
                ExceptionRuleError.INVALID_RULE_TYPE,
                f'Rule "{display_name(rule.name)}" has no valid type',
                details={"rule_id": rule_id, "type": str(rule.type)}
            )

        if PERMITTED_ACTIONS[rule_type] is not action:
            raise ExceptionRuleException(
                ExceptionRuleError.RULE_TYPE_MISMATCH,
                f'Rule "{display_name(rule.name)}" is a {rule_type.value} rule '
                f'and cannot be used for {action.value}',
                details={
                    "rule_id": rule_id,
                    "rule_type": rule_type.value,
                    "action_type": action.value,
                }
            )

        record = await self.tracker.record_usage(rule_id, session_context, action, pause_options)

        async with storage_errors("update rule usage", rule_id=rule_id):
            await self.repository.increment_usage(rule_id, record.used_at)
            updated = await self.repository.get_rule_by_id(rule_id)

        self._sync_cached_rule(updated)
        self._emit(
            EventType.RULE_USED, updated,
            action_type=action.value,
            session_id=session_context.session_id,
            usage_count=updated.usage_count
        )
        return RuleUsageResult(rule=updated, record=record)

    async def update_rule(self, rule_id: str, patch: Dict[str, Any]) -> RuleUpdateResult:
        """
        Change a rule's name, type or description.

        Other keys in ``patch``, usage fields included, are ignored.

        Raises:
            ExceptionRuleException: RULE_NOT_FOUND, RULE_NAME_EXISTS when the new
                name collides, VALIDATION_ERROR or INVALID_RULE_TYPE for bad values
        """
        ignored = [key for key in patch if key not in UPDATABLE_FIELDS]
        if ignored:
            logger.debug(f"Ignoring non-updatable fields for rule {rule_id}: {ignored}")

        rule = await self._require_rule(rule_id, active_only=True)
        warnings: List[str] = []
        changes: Dict[str, Any] = {}

        if "name" in patch:
            name = self._validate_name(patch["name"])
            async with storage_errors("update rule", rule_id=rule_id):
                scope_rules = await self._get_scope_rules(rule.chain_id)

            report = self.detector.detect_duplicates(name, scope_rules, exclude_id=rule_id)
            if report.has_exact_match:
                raise ExceptionRuleException(
                    ExceptionRuleError.RULE_NAME_EXISTS,
                    f'Rule name "{name}" already exists',
                    details={
                        "rule_id": rule_id,
                        "name": name,
                        "existing_rules": [r.to_dict() for r in report.exact_matches],
                    }
                )
            if report.has_similar_matches:
                similar = ", ".join(display_name(m.rule.name) for m in report.similar_matches)
                warnings.append(f"Similar rules exist: {similar}")
            changes["name"] = name

        if "type" in patch:
            changes["type"] = self._validate_type(patch["type"])

        if "description" in patch:
            changes["description"] = patch["description"]

        if not changes:
            return RuleUpdateResult(rule=rule, warnings=warnings)

        async with storage_errors("update rule", rule_id=rule_id):
            updated = await self.repository.update_rule(rule_id, changes)

        self._sync_cached_rule(updated)
        self._emit(EventType.RULE_UPDATED, updated, fields=sorted(changes))
        return RuleUpdateResult(rule=updated, warnings=warnings)

    async def delete_rule(self, rule_id: str) -> None:
        """
        Soft-delete a rule. Its usage history is kept.

        Raises:
            ExceptionRuleException: RULE_NOT_FOUND when the rule does not exist
        """
        rule = await self._require_rule(rule_id)

        async with storage_errors("delete rule", rule_id=rule_id):
            await self.repository.delete_rule(rule_id)

        if rule.chain_id:
            self.cache.invalidate_chain(rule.chain_id)
        self._emit(EventType.RULE_DELETED, rule)
        logger.info(f"Deleted rule {rule_id}")

    async def get_rule_by_id(self, rule_id: str) -> Optional[ExceptionRule]:
        async with storage_errors("get rule", rule_id=rule_id):
            return await self.repository.get_rule_by_id(rule_id)

    async def get_all_rules(self) -> List[ExceptionRule]:
        """All active rules."""
        async with storage_errors("get rules"):
            return await self.repository.get_rules({"is_active": True})

    async def get_rules_by_type(self, rule_type: Any) -> List[ExceptionRule]:
        """Active rules of one type."""
        rule_type = self._validate_type(rule_type)
        return [rule for rule in await self.get_all_rules() if rule.type is rule_type]

    async def get_rules_for_action(self, action_type: Any) -> List[ExceptionRule]:
        """Active rules that permit an action."""
        action = self._validate_action(action_type)
        return await self.get_rules_by_type(RULE_TYPE_FOR_ACTION[action])

    async def get_chain_rules(self, chain_id: str) -> List[ExceptionRule]:
        """A chain's active rules, served from the cache when fresh."""
        cached = self.cache.get_chain_rules(chain_id)
        if cached is not None:
            return cached

        async with storage_errors("get chain rules", chain_id=chain_id):
            rules = await self._get_scope_rules(chain_id)
        self.cache.set_chain_rules(chain_id, rules)
        return rules

    async def search_chain_rules(self, chain_id: str, query: Any) -> List[ExceptionRule]:
        """Ranked name search over a chain's rules, with result caching."""
        cached = self.cache.get_search_results(chain_id, query)
        if cached is not None:
            return cached

        rules = await self.get_chain_rules(chain_id)
        results = [result.rule for result in self.search.search_rules(rules, query)]
        self.cache.set_search_results(chain_id, query, results)
        return results

    async def search_rules(
        self,
        text: Any,
        rule_type: Any = None,
        action_type: Any = None
    ) -> List[ExceptionRule]:
        """
        Search active rules by name, then by description.

        An empty query returns every candidate, most used first.

        Args:
            text: Free-text query
            rule_type: Restrict to one rule type
            action_type: Restrict to rules permitting this action, ignored when
                rule_type is given

        Raises:
            ExceptionRuleException: INVALID_RULE_TYPE or VALIDATION_ERROR for an
                unknown filter value
        """
        wanted = None
        if rule_type is not None:
            wanted = self._validate_type(rule_type)
        elif action_type is not None:
            wanted = RULE_TYPE_FOR_ACTION[self._validate_action(action_type)]

        rules = await self.get_all_rules()
        if wanted is not None:
            rules = [rule for rule in rules if rule.type is wanted]

        query = normalize_name(text)
        if not query:
            return sorted(rules, key=lambda r: (-r.usage_count, r.normalized_name))

        by_name = [result.rule for result in self.search.search_rules(rules, query)]
        matched = {rule.id for rule in by_name}
        by_description = [
            rule for rule in rules
            if rule.id not in matched and query in normalize_name(rule.description)
        ]
        return by_name + by_description

    async def get_duplication_suggestions(
        self,
        name: Any,
        exclude_id: Optional[str] = None,
        chain_id: Optional[str] = None
    ) -> DuplicationSuggestions:
        """Check a candidate name while the user types it."""
        async with storage_errors("get duplication suggestions", name=str(name)):
            scope_rules = await self._get_scope_rules(chain_id)

        report = self.detector.detect_duplicates(name, scope_rules, exclude_id=exclude_id)
        names = self.detector.generate_name_suggestions(name, [rule.name for rule in scope_rules])
        return DuplicationSuggestions(report=report, name_suggestions=names)

    async def get_rule_usage_suggestions(self, action_type: Any) -> RuleUsageSuggestions:
        """Most used, recently used and best-scored rules for an action."""
        rules = await self.get_rules_for_action(action_type)
        now = self._now()

        most_used = sorted(rules, key=lambda r: r.usage_count, reverse=True)[:3]
        recently_used = sorted(
            (rule for rule in rules if rule.last_used_at),
            key=lambda r: r.last_used_at,
            reverse=True
        )[:3]
        suggested = sorted(rules, key=lambda r: self._suggestion_score(r, now), reverse=True)[:5]

        return RuleUsageSuggestions(
            most_used=most_used,
            recently_used=recently_used,
            suggested=suggested
        )

    @staticmethod
    def _suggestion_score(rule: ExceptionRule, now: datetime) -> float:
        # Weighted mix of frequency, recency, age and brevity
        score = rule.usage_count * 0.4
        if rule.last_used_at:
            days_since_use = (now - rule.last_used_at).total_seconds() / 86400
            score += max(0.0, 30 - days_since_use) * 0.3
        days_since_creation = (now - rule.created_at).total_seconds() / 86400
        score += max(0.0, 365 - days_since_creation) / 365 * 20 * 0.2
        score += max(0, 50 - len(display_name(rule.name))) / 50 * 10 * 0.1
        return score

    async def get_rule_type_stats(self) -> Dict[str, Any]:
        """Active rule counts per type and which type dominates."""
        rules = await self.get_all_rules()
        pause = [r for r in rules if r.type is ExceptionRuleType.PAUSE_ONLY]
        completion = [r for r in rules if r.type is ExceptionRuleType.EARLY_COMPLETION_ONLY]

        most_used = None
        if len(pause) != len(completion):
            most_used = (
                ExceptionRuleType.PAUSE_ONLY if len(pause) > len(completion)
                else ExceptionRuleType.EARLY_COMPLETION_ONLY
            )
        else:
            pause_usage = sum(r.usage_count for r in pause)
            completion_usage = sum(r.usage_count for r in completion)
            if pause_usage != completion_usage:
                most_used = (
                    ExceptionRuleType.PAUSE_ONLY if pause_usage > completion_usage
                    else ExceptionRuleType.EARLY_COMPLETION_ONLY
                )

        least_used = None
        if most_used is not None:
            least_used = next(t for t in ExceptionRuleType if t is not most_used)

        return {
            "total": len(pause) + len(completion),
            "pause_only": len(pause),
            "early_completion_only": len(completion),
            "most_used_type": most_used,
            "least_used_type": least_used,
        }

    async def get_recommended_rule_type(self, based_on_usage: bool = True) -> ExceptionRuleType:
        """The type to preselect for a new rule."""
        if not based_on_usage:
            return ExceptionRuleType.PAUSE_ONLY
        stats = await self.get_rule_type_stats()
        return stats["most_used_type"] or ExceptionRuleType.PAUSE_ONLY

    async def get_rule_stats(self, rule_id: str) -> RuleUsageStats:
        return await self.tracker.get_rule_usage_stats(rule_id)

    async def get_overall_stats(self) -> OverallUsageStats:
        return await self.tracker.get_overall_usage_stats()

    async def get_rule_usage_history(self, rule_id: str, limit: Optional[int] = None) -> List[RuleUsageRecord]:
        return await self.tracker.get_rule_usage_history(rule_id, limit)

    async def get_rule_usage_trend(self, rule_id: str, days: int = 30) -> RuleUsageTrend:
        return await self.tracker.get_rule_usage_trend(rule_id, days)

    async def get_rule_efficiency_analysis(self, rule_id: str) -> RuleEfficiencyAnalysis:
        return await self.tracker.get_rule_efficiency_analysis(rule_id)

    async def import_rules(
        self,
        items: Iterable[Any],
        skip_duplicates: bool = False,
        update_existing: bool = False
    ) -> ImportResult:
        """
        Import rules one by one.

        Every item ends up in exactly one of ``imported``, ``skipped`` or
        ``errors``; a failing item never aborts the batch. Items without a
        type are imported as PAUSE_ONLY.

        Args:
            items: Mappings or objects with name, type, description and
                optionally chain_id
            skip_duplicates: Skip items whose name already exists
            update_existing: Update the existing rule's type and description instead

        Returns:
            ImportResult: Per-item outcomes
        """
        result = ImportResult()

        for item in items:
            name = display_name(_item_value(item, "name"))
            try:
                chain_id = _item_value(item, "chain_id")
                rule_type = _item_value(item, "type") or ExceptionRuleType.PAUSE_ONLY
                description = _item_value(item, "description")

                async with storage_errors("import rule", name=name):
                    scope_rules = await self._get_scope_rules(chain_id)
                exact = self.detector.detect_duplicates(name, scope_rules).exact_matches

                if exact:
                    if skip_duplicates:
                        result.skipped.append({"name": name, "reason": "Rule name already exists"})
                    elif update_existing:
                        patch = {"type": rule_type}
                        if description is not None:
                            patch["description"] = description
                        updated = await self.update_rule(exact[0].id, patch)
                        result.imported.append(updated.rule)
                    else:
                        result.errors.append({"name": name, "error": "Rule name already exists"})
                    continue

                created = await self.create_rule(name, rule_type, description, chain_id=chain_id)
                result.imported.append(created.rule)

            except ExceptionRuleException as e:
                result.errors.append({"name": name, "error": e.message})
            except Exception as e:
                logger.error(f"Unexpected error importing rule {name!r}: {e}")
                result.errors.append({"name": name, "error": str(e)})

        logger.info(
            f"Imported {len(result.imported)} rules, skipped {len(result.skipped)}, "
            f"{len(result.errors)} errors"
        )
        self.events.emit(RuleEvent(
            type=EventType.RULES_IMPORTED,
            data={
                "imported": len(result.imported),
                "skipped": len(result.skipped),
                "errors": len(result.errors),
            }
        ))
        return result

    async def export_rules(self, include_usage: bool = False) -> RuleExport:
        """
        Export active rules, and optionally all usage records.

        ``usage_records`` is None when usage was not requested.
        """
        rules = await self.get_all_rules()

        usage_records = None
        if include_usage:
            async with storage_errors("export usage records"):
                usage_records = await self.repository.get_usage_records()

        return RuleExport(
            rules=rules,
            usage_records=usage_records,
            exported_at=self._now(),
            summary={
                "total_rules": len(rules),
                "total_usage_records": len(usage_records) if usage_records is not None else 0,
            }
        )

    async def cleanup_data(self, retention_days: Optional[int] = None) -> Dict[str, Any]:
        """Delete expired usage records and drop expired cache entries."""
        removed = await self.tracker.cleanup_expired_records(retention_days)
        expired_entries = self.cache.clear_expired()

        if removed:
            self.events.emit(RuleEvent(
                type=EventType.USAGE_RECORDS_CLEANED,
                data={"removed_records": removed}
            ))
        return {
            "removed_records": removed,
            "expired_cache_entries": expired_entries,
            "cleaned_at": self._now(),
        }

    async def get_system_health(self) -> SystemHealth:
        """
        Summarize the rule system's state.

        Never raises; a repository failure is reported as status "error".
        """
        try:
            async with storage_errors("check system health"):
                all_rules = await self.repository.get_rules()
                records = await self.repository.get_usage_records()
        except ExceptionRuleException as e:
            return SystemHealth(status="error", issues=[f"System check failed: {e}"])

        active = [rule for rule in all_rules if rule.is_active]
        last_used_at = max((r.used_at for r in records), default=None)
        issues: List[str] = []

        if not active:
            issues.append("no active rules")
        elif not records:
            issues.append("rules exist but unused")

        stale_days = settings.usage.stale_usage_days
        if last_used_at and self._now() - last_used_at > timedelta(days=stale_days):
            issues.append(f"no rule used for more than {stale_days} days")

        seen = set()
        duplicates = set()
        for rule in active:
            key = (rule.chain_id, rule.normalized_name)
            if key in seen:
                duplicates.add(display_name(rule.name))
            seen.add(key)
        if duplicates:
            issues.append(f"duplicate rule names: {', '.join(sorted(duplicates))}")

        return SystemHealth(
            status="warning" if issues else "healthy",
            total_rules=len(all_rules),
            active_rules=len(active),
            total_usage_records=len(records),
            last_used_at=last_used_at,
            issues=issues
        )

    async def _get_scope_rules(self, chain_id: Optional[str]) -> List[ExceptionRule]:
        if chain_id:
            return await self.repository.get_rules({
                "scope": RuleScope.CHAIN, "chain_id": chain_id, "is_active": True
            })
        return await self.repository.get_rules({"scope": RuleScope.GLOBAL, "is_active": True})

    async def _require_rule(self, rule_id: str, active_only: bool = False) -> ExceptionRule:
        rule = await self.get_rule_by_id(rule_id)
        if rule is None or (active_only and not rule.is_active):
            raise ExceptionRuleException(
                ExceptionRuleError.RULE_NOT_FOUND,
                f"Rule {rule_id} does not exist",
                details={"rule_id": rule_id}
            )
        return rule

    def _alternate_names(
        self,
        name: str,
        rule_type: ExceptionRuleType,
        scope_rules: List[ExceptionRule],
        limit: Optional[int] = None
    ) -> List[str]:
        self.search.update_index(scope_rules)
        return self.search.generate_name_suggestions(name, rule_type, limit)

    def _sync_cached_rule(self, rule: ExceptionRule) -> None:
        # Only chains already in the cache are patched; others load on demand
        if rule.scope is not RuleScope.CHAIN or not rule.chain_id:
            return
        cached = self.cache.get_chain_rules(rule.chain_id)
        if cached is None:
            return
        if any(r.id == rule.id for r in cached):
            self.cache.update_rule_in_chain(rule.chain_id, rule)
        else:
            self.cache.add_rule_to_chain(rule.chain_id, rule)

    def _emit(self, event_type: EventType, rule: ExceptionRule, **data: Any) -> None:
        self.events.emit(RuleEvent(
            type=event_type,
            data={"name": display_name(rule.name), **data},
            rule_id=rule.id,
            chain_id=rule.chain_id
        ))

    @staticmethod
    def _validate_name(name: Any) -> str:
        value = display_name(name)
        if not value:
            raise ExceptionRuleException(
                ExceptionRuleError.VALIDATION_ERROR,
                "Rule name must not be empty",
                details={"name": value}
            )
        max_length = settings.duplication.max_name_length
        if len(value) > max_length:
            raise ExceptionRuleException(
                ExceptionRuleError.VALIDATION_ERROR,
                f"Rule name must be at most {max_length} characters",
                details={"name": value, "length": len(value)}
            )
        return value

    @staticmethod
    def _validate_type(rule_type: Any) -> ExceptionRuleType:
        parsed = parse_enum(ExceptionRuleType, rule_type)
        if parsed is None:
            raise ExceptionRuleException(
                ExceptionRuleError.INVALID_RULE_TYPE,
                f"Invalid rule type: {rule_type!r}",
                details={"type": str(rule_type)}
            )
        return parsed

    @staticmethod
    def _validate_action(action_type: Any) -> ActionType:
        action = parse_enum(ActionType, action_type)
        if action is None:
            raise ExceptionRuleException(
                ExceptionRuleError.VALIDATION_ERROR,
                f"Unknown action type: {action_type!r}",
                details={"action_type": str(action_type)}
            )
        return action

    @staticmethod
    def _parse_choice(choice: Any) -> Optional[ResolutionChoice]:
        if choice is None:
            return None
        parsed = parse_enum(ResolutionChoice, choice)
        if parsed is None:
            raise ExceptionRuleException(
                ExceptionRuleError.VALIDATION_ERROR,
                f"Invalid resolution choice: {choice!r}",
                details={"resolution_choice": str(choice)}
            )
        return parsed
