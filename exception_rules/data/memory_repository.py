"""
In-memory rule repository for development and testing.
"""
import dataclasses
from datetime import datetime
from typing import Any, Dict, List, Optional

from exception_rules.config.logging_config import get_logger
from exception_rules.data.base_repository import RuleRepository
from exception_rules.data.models import ExceptionRule, RuleUsageRecord

logger = get_logger(__name__)

# Fields a rule patch may never touch
PROTECTED_RULE_FIELDS = frozenset({"id", "created_at"})


class InMemoryRuleRepository(RuleRepository):
    """In-memory rule repository.

    Rules are handed out as copies so callers cannot mutate the store
    behind the repository's back. No method awaits between reading and
    writing state, which makes every operation atomic on the event loop.
    """

    def __init__(self, connection_config: Optional[Dict[str, Any]] = None):
        """Initialize the repository with empty stores.

        Args:
            connection_config: Not used for in-memory repository
        """
        super().__init__(connection_config)
        self._rules: Dict[str, ExceptionRule] = {}
        self._records: List[RuleUsageRecord] = []
        self._is_connected = False

    async def connect(self) -> bool:
        """Simulate connecting to a store.

        Returns:
            bool: Always returns True
        """
        self._is_connected = True
        logger.info("Connected to in-memory rule repository")
        return True

    async def disconnect(self) -> None:
        """Simulate disconnecting from a store."""
        self._is_connected = False
        logger.info("Disconnected from in-memory rule repository")

    async def get_rule_by_id(self, rule_id: str) -> Optional[ExceptionRule]:
        self._check_connection()
        rule = self._rules.get(rule_id)
        return dataclasses.replace(rule) if rule else None

    async def get_rules(self, filter_params: Optional[Dict[str, Any]] = None) -> List[ExceptionRule]:
        self._check_connection()

        if not filter_params:
            return [dataclasses.replace(rule) for rule in self._rules.values()]

        result = []
        for rule in self._rules.values():
            match = True
            for key, value in filter_params.items():
                if getattr(rule, key, None) != value:
                    match = False
                    break
            if match:
                result.append(dataclasses.replace(rule))

        return result

    async def create_rule(self, rule: ExceptionRule) -> ExceptionRule:
        self._check_connection()

        if rule.id in self._rules:
            raise ValueError(f"Rule with ID {rule.id} already exists")

        self._rules[rule.id] = dataclasses.replace(rule)
        return dataclasses.replace(rule)

    async def update_rule(self, rule_id: str, patch: Dict[str, Any]) -> ExceptionRule:
        self._check_connection()

        rule = self._get_stored_rule(rule_id)
        changes = {k: v for k, v in patch.items() if k not in PROTECTED_RULE_FIELDS}
        unknown = [k for k in changes if not hasattr(rule, k)]
        if unknown:
            raise ValueError(f"Unknown rule fields: {unknown}")

        updated = dataclasses.replace(rule, **changes)
        self._rules[rule_id] = updated
        return dataclasses.replace(updated)

    async def delete_rule(self, rule_id: str) -> None:
        self._check_connection()

        rule = self._get_stored_rule(rule_id)
        rule.is_active = False

    async def increment_usage(self, rule_id: str, used_at: datetime) -> int:
        self._check_connection()

        rule = self._get_stored_rule(rule_id)
        rule.usage_count += 1
        rule.last_used_at = used_at
        return rule.usage_count

    async def create_usage_record(self, record: RuleUsageRecord) -> RuleUsageRecord:
        self._check_connection()
        self._records.append(record)
        return record

    async def get_usage_records_by_rule_id(
        self,
        rule_id: str,
        limit: Optional[int] = None
    ) -> List[RuleUsageRecord]:
        self._check_connection()

        records = sorted(
            (r for r in self._records if r.rule_id == rule_id),
            key=lambda r: r.used_at,
            reverse=True
        )
        return records[:limit] if limit is not None else records

    async def get_usage_records_by_session_id(self, session_id: str) -> List[RuleUsageRecord]:
        self._check_connection()
        return [r for r in self._records if r.session_id == session_id]

    async def get_usage_records(self) -> List[RuleUsageRecord]:
        self._check_connection()
        return list(self._records)

    async def delete_usage_records_before(self, cutoff: datetime) -> int:
        self._check_connection()

        kept = [r for r in self._records if r.used_at >= cutoff]
        removed = len(self._records) - len(kept)
        self._records = kept
        return removed

    def _get_stored_rule(self, rule_id: str) -> ExceptionRule:
        rule = self._rules.get(rule_id)
        if rule is None:
            logger.warning(f"Rule with ID {rule_id} not found")
            raise KeyError(rule_id)
        return rule

    def _check_connection(self) -> None:
        """Check if the repository is connected.

        Raises:
            RuntimeError: If not connected
        """
        if not self._is_connected:
            raise RuntimeError("Repository is not connected")
