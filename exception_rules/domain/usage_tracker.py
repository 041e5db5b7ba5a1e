"""
Rule usage tracking and analysis.

The tracker is the only writer of usage records. Every statistic it reports
is derived from those records; nothing is cached.
"""

import csv
import io
import json
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from exception_rules.config import settings
from exception_rules.config.logging_config import get_logger
from exception_rules.data.base_repository import RuleRepository
from exception_rules.data.models import (
    ActionType, ExceptionRule, PauseOptions, RuleUsageRecord, SessionContext, parse_enum
)
from exception_rules.utils.error_handling import (
    ExceptionRuleError, ExceptionRuleException, storage_errors
)
from exception_rules.utils.normalization import display_name

logger = get_logger(__name__)

# Progress bucket edges: early < EARLY_PROGRESS <= mid <= LATE_PROGRESS < late
EARLY_PROGRESS = 0.25
LATE_PROGRESS = 0.75

LOW_AVERAGE_PROGRESS = 0.3
HIGH_AVERAGE_PROGRESS = 0.8

INSUFFICIENT_DATA = "Not enough data to analyze this rule"
MOSTLY_EARLY = "This rule is mostly used early in tasks; task planning may need work"
MOSTLY_LATE = "This rule is mostly used late in tasks; check whether task time estimates are realistic"
LOW_PROGRESS = "Tasks are usually barely started when this rule is used; consider streamlining task start-up"
HIGH_PROGRESS = "Tasks are usually nearly finished when this rule is used; there may be time pressure"
NORMAL_PATTERN = "Usage pattern looks normal, no specific advice"

CSV_HEADER = [
    "Date", "Rule Name", "Action Type", "Task Elapsed Time", "Task Remaining Time", "Chain ID"
]


@dataclass
class RuleUsageStats:
    """Usage totals for one rule."""

    rule_id: str
    total_usage: int
    pause_usage: int
    early_completion_usage: int
    last_used_at: Optional[datetime]
    average_task_elapsed_time: float
    most_used_with_chains: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class OverallUsageStats:
    """Usage totals across all active rules."""

    total_rules: int
    active_rules: int
    total_usage: int
    pause_usage: int
    early_completion_usage: int
    most_used_rules: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class TimeRangeUsageStats:
    """Usage inside a date range, bucketed per calendar day."""

    total_usage: int
    pause_usage: int
    early_completion_usage: int
    daily_usage: List[Dict[str, Any]] = field(default_factory=list)
    top_rules: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class RuleUsageTrend:
    """Daily usage of one rule over the last ``days`` days, today included."""

    rule_id: str
    days: int
    trend: List[Dict[str, Any]]
    total_usage: int
    average_daily_usage: float
    peak_usage_date: Optional[str]


@dataclass
class RuleEfficiencyAnalysis:
    """Where in a task's progress a rule tends to be used."""

    rule_id: str
    has_sufficient_data: bool
    average_task_progress: Optional[float]
    early_usage: int = 0
    mid_usage: int = 0
    late_usage: int = 0
    recommendations: List[str] = field(default_factory=list)


def _count_actions(records: List[RuleUsageRecord]) -> Counter:
    return Counter(record.action_type for record in records)


def task_progress(record: RuleUsageRecord) -> Optional[float]:
    """Fraction of the task done when the rule was used, if known."""
    if record.task_remaining_time is None:
        return None
    elapsed = max(record.task_elapsed_time, 0.0)
    total = elapsed + max(record.task_remaining_time, 0.0)
    return elapsed / total if total > 0 else 0.0


def _non_negative(seconds: Optional[float], label: str) -> Optional[float]:
    if seconds is not None and seconds < 0:
        logger.warning(f"Negative task {label} time {seconds} stored as 0")
        return 0.0
    return seconds


def _daily_buckets(records: List[RuleUsageRecord], first: date, last: date) -> List[Dict[str, Any]]:
    counts = Counter(record.used_at.date() for record in records)
    buckets = []
    day = first
    while day <= last:
        buckets.append({"date": day.isoformat(), "count": counts.get(day, 0)})
        day += timedelta(days=1)
    return buckets


class RuleUsageTracker:
    """Records rule usage and derives statistics from the usage records."""

    def __init__(
        self,
        repository: RuleRepository,
        now: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize the tracker.

        Args:
            repository: Rule storage
            now: Returns the current time, used for timestamps and day buckets
        """
        self.repository = repository
        self._now = now

    async def record_usage(
        self,
        rule_id: str,
        session_context: SessionContext,
        action_type: Any,
        pause_options: Optional[PauseOptions] = None
    ) -> RuleUsageRecord:
        """
        Persist one use of a rule.

        Negative elapsed or remaining times are stored as 0.

        Args:
            rule_id: Rule being used
            session_context: Session the rule is used in
            action_type: ActionType or its wire string
            pause_options: Pause duration and auto-resume choice, for pauses

        Returns:
            RuleUsageRecord: The stored record

        Raises:
            ExceptionRuleException: VALIDATION_ERROR for an unknown action,
                RULE_NOT_FOUND for a missing or inactive rule,
                STORAGE_ERROR when the repository fails
        """
        action = parse_enum(ActionType, action_type)
        if action is None:
            raise ExceptionRuleException(
                ExceptionRuleError.VALIDATION_ERROR,
                f"Unknown action type: {action_type!r}",
                details={"rule_id": rule_id, "action_type": str(action_type)}
            )

        async with storage_errors("record rule usage", rule_id=rule_id):
            rule = await self.repository.get_rule_by_id(rule_id)
            if rule is None or not rule.is_active:
                raise ExceptionRuleException(
                    ExceptionRuleError.RULE_NOT_FOUND,
                    f"Rule {rule_id} does not exist",
                    details={"rule_id": rule_id}
                )

            record = RuleUsageRecord(
                rule_id=rule_id,
                chain_id=session_context.chain_id,
                session_id=session_context.session_id,
                action_type=action,
                task_elapsed_time=_non_negative(session_context.elapsed_time, "elapsed"),
                task_remaining_time=_non_negative(session_context.remaining_time, "remaining"),
                pause_duration=pause_options.duration if pause_options else None,
                auto_resume=pause_options.auto_resume if pause_options else None,
                rule_scope=rule.scope,
                used_at=self._now()
            )
            stored = await self.repository.create_usage_record(record)

        logger.debug(f"Recorded {action.value} usage of rule {rule_id}")
        return stored

    async def get_rule_usage_stats(self, rule_id: str) -> RuleUsageStats:
        """
        Usage totals for one rule.

        Raises:
            ExceptionRuleException: RULE_NOT_FOUND when the rule does not exist
        """
        async with storage_errors("get rule usage stats", rule_id=rule_id):
            rule = await self.repository.get_rule_by_id(rule_id)
            if rule is None:
                raise ExceptionRuleException(
                    ExceptionRuleError.RULE_NOT_FOUND,
                    f"Rule {rule_id} does not exist",
                    details={"rule_id": rule_id}
                )
            records = await self.repository.get_usage_records_by_rule_id(rule_id)

        actions = _count_actions(records)
        total = len(records)
        chain_counts = Counter(record.chain_id for record in records)

        return RuleUsageStats(
            rule_id=rule_id,
            total_usage=total,
            pause_usage=actions[ActionType.PAUSE],
            early_completion_usage=actions[ActionType.EARLY_COMPLETION],
            last_used_at=rule.last_used_at,
            average_task_elapsed_time=(
                sum(r.task_elapsed_time for r in records) / total if total else 0.0
            ),
            most_used_with_chains=[
                {"chain_id": chain_id, "count": count}
                for chain_id, count in chain_counts.most_common(5)
            ]
        )

    async def get_overall_usage_stats(self) -> OverallUsageStats:
        """Usage totals across all active rules, with the ten most used."""
        async with storage_errors("get overall usage stats"):
            rules = await self.repository.get_rules({"is_active": True})
            records = await self.repository.get_usage_records()

        active = {rule.id: rule for rule in rules}
        actions = _count_actions(records)
        rule_counts = Counter(r.rule_id for r in records if r.rule_id in active)

        return OverallUsageStats(
            total_rules=len(active),
            active_rules=len(active),
            total_usage=len(records),
            pause_usage=actions[ActionType.PAUSE],
            early_completion_usage=actions[ActionType.EARLY_COMPLETION],
            most_used_rules=[
                {"rule_id": rule_id, "rule_name": display_name(active[rule_id].name), "count": count}
                for rule_id, count in rule_counts.most_common(10)
            ]
        )

    async def get_usage_stats_in_time_range(self, start: datetime, end: datetime) -> TimeRangeUsageStats:
        """
        Usage between ``start`` and ``end`` inclusive.

        ``daily_usage`` has one bucket for every calendar day in the range,
        including days without usage.
        """
        async with storage_errors("get usage stats in time range", start=str(start), end=str(end)):
            records = await self.repository.get_usage_records()
            rules = await self.repository.get_rules()

        in_range = [r for r in records if start <= r.used_at <= end]
        actions = _count_actions(in_range)
        names = {rule.id: display_name(rule.name) for rule in rules}
        rule_counts = Counter(r.rule_id for r in in_range)

        return TimeRangeUsageStats(
            total_usage=len(in_range),
            pause_usage=actions[ActionType.PAUSE],
            early_completion_usage=actions[ActionType.EARLY_COMPLETION],
            daily_usage=_daily_buckets(in_range, start.date(), end.date()),
            top_rules=[
                {"rule_id": rule_id, "rule_name": names.get(rule_id, "Unknown rule"), "count": count}
                for rule_id, count in rule_counts.most_common(5)
            ]
        )

    async def get_rule_usage_trend(self, rule_id: str, days: int = 30) -> RuleUsageTrend:
        """
        Daily usage of a rule from ``today - days`` to today.

        The trend always has exactly ``days + 1`` buckets.

        Args:
            rule_id: Rule identifier
            days: Number of days to look back

        Returns:
            RuleUsageTrend: Buckets, total, average and peak day
        """
        if days < 0:
            raise ExceptionRuleException(
                ExceptionRuleError.VALIDATION_ERROR,
                "days must not be negative",
                details={"rule_id": rule_id, "days": days}
            )

        async with storage_errors("get rule usage trend", rule_id=rule_id, days=days):
            records = await self.repository.get_usage_records_by_rule_id(rule_id)

        today = self._now().date()
        first = today - timedelta(days=days)
        in_range = [r for r in records if first <= r.used_at.date() <= today]
        trend = _daily_buckets(in_range, first, today)

        total = sum(bucket["count"] for bucket in trend)
        peak = max(bucket["count"] for bucket in trend)
        peak_date = next(b["date"] for b in trend if b["count"] == peak) if peak > 0 else None

        return RuleUsageTrend(
            rule_id=rule_id,
            days=days,
            trend=trend,
            total_usage=total,
            average_daily_usage=total / max(days, 1),
            peak_usage_date=peak_date
        )

    async def get_rule_efficiency_analysis(self, rule_id: str) -> RuleEfficiencyAnalysis:
        """
        Bucket a rule's uses by task progress and derive recommendations.

        Only records with a known remaining time count. Without any, the
        result is flagged as insufficient data instead of reporting zeros.
        """
        async with storage_errors("get rule efficiency analysis", rule_id=rule_id):
            records = await self.repository.get_usage_records_by_rule_id(rule_id)

        progress = [p for p in (task_progress(r) for r in records) if p is not None]
        if not progress:
            return RuleEfficiencyAnalysis(
                rule_id=rule_id,
                has_sufficient_data=False,
                average_task_progress=None,
                recommendations=[INSUFFICIENT_DATA]
            )

        average = sum(progress) / len(progress)
        early = sum(1 for p in progress if p < EARLY_PROGRESS)
        late = sum(1 for p in progress if p > LATE_PROGRESS)
        mid = len(progress) - early - late

        recommendations = []
        if early > mid + late:
            recommendations.append(MOSTLY_EARLY)
        if late > early + mid:
            recommendations.append(MOSTLY_LATE)
        if average < LOW_AVERAGE_PROGRESS:
            recommendations.append(LOW_PROGRESS)
        if average > HIGH_AVERAGE_PROGRESS:
            recommendations.append(HIGH_PROGRESS)
        if not recommendations:
            recommendations.append(NORMAL_PATTERN)

        return RuleEfficiencyAnalysis(
            rule_id=rule_id,
            has_sufficient_data=True,
            average_task_progress=average,
            early_usage=early,
            mid_usage=mid,
            late_usage=late,
            recommendations=recommendations
        )

    async def get_rule_usage_history(self, rule_id: str, limit: Optional[int] = None) -> List[RuleUsageRecord]:
        """A rule's usage records, most recent first."""
        async with storage_errors("get rule usage history", rule_id=rule_id):
            return await self.repository.get_usage_records_by_rule_id(rule_id, limit)

    async def get_session_usage_history(self, session_id: str) -> List[RuleUsageRecord]:
        """The usage records of one task session."""
        async with storage_errors("get session usage history", session_id=session_id):
            return await self.repository.get_usage_records_by_session_id(session_id)

    async def get_last_usage_time(self) -> Optional[datetime]:
        """Time of the most recent use of any rule."""
        async with storage_errors("get last usage time"):
            records = await self.repository.get_usage_records()
        return max((r.used_at for r in records), default=None)

    async def count_usage_records(self) -> int:
        """Number of stored usage records."""
        async with storage_errors("count usage records"):
            return len(await self.repository.get_usage_records())

    async def cleanup_expired_records(self, retention_days: Optional[int] = None) -> int:
        """
        Delete usage records older than the retention window.

        Args:
            retention_days: Days of history to keep, defaults to settings

        Returns:
            int: Number of deleted records
        """
        if retention_days is None:
            retention_days = settings.usage.retention_days
        cutoff = self._now() - timedelta(days=retention_days)

        async with storage_errors("clean up expired usage records", retention_days=retention_days):
            removed = await self.repository.delete_usage_records_before(cutoff)

        if removed:
            logger.info(f"Removed {removed} usage records older than {cutoff.isoformat()}")
        return removed

    async def export_usage_data(self, format: str = "json") -> str:
        """
        Export active rules and all usage records.

        Args:
            format: "json" for a full document, "csv" for one row per record

        Returns:
            str: The serialized export
        """
        if format not in ("json", "csv"):
            raise ExceptionRuleException(
                ExceptionRuleError.VALIDATION_ERROR,
                f"Unsupported export format: {format}",
                details={"format": format}
            )

        overall = await self.get_overall_usage_stats()
        async with storage_errors("export usage data", format=format):
            rules = await self.repository.get_rules()
            records = await self.repository.get_usage_records()

        if format == "csv":
            return self._to_csv(rules, records)

        active = [rule for rule in rules if rule.is_active]
        used_at = [r.used_at for r in records]
        export = {
            "exported_at": self._now().isoformat(),
            "overall_stats": asdict(overall),
            "rules": [rule.to_dict() for rule in active],
            "usage_records": [record.to_dict() for record in records],
            "summary": {
                "total_rules": len(active),
                "total_records": len(records),
                "date_range": {
                    "earliest": min(used_at).isoformat() if used_at else None,
                    "latest": max(used_at).isoformat() if used_at else None,
                },
            },
        }
        return json.dumps(export, indent=2, ensure_ascii=False, default=str)

    @staticmethod
    def _to_csv(rules: List[ExceptionRule], records: List[RuleUsageRecord]) -> str:
        names = {rule.id: display_name(rule.name) for rule in rules}
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for record in records:
            writer.writerow([
                record.used_at.isoformat(),
                names.get(record.rule_id, "Unknown"),
                record.action_type.value,
                record.task_elapsed_time,
                "" if record.task_remaining_time is None else record.task_remaining_time,
                record.chain_id,
            ])
        return buffer.getvalue()

