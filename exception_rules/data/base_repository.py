"""
Base repository interface for rule storage.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from exception_rules.config.logging_config import get_logger
from exception_rules.data.models import ExceptionRule, RuleUsageRecord

logger = get_logger(__name__)


class RuleRepository(ABC):
    """Base class for rule repository implementations.

    This abstract class defines the storage interface the rule engine
    consumes: CRUD for rules, append-only usage records, and an atomic
    usage counter. Implementations raise on connectivity or permission
    failures; the engine wraps those as storage errors.
    """

    def __init__(self, connection_config: Optional[Dict[str, Any]] = None):
        """Initialize the repository with connection configuration.

        Args:
            connection_config: Storage connection parameters
        """
        self.connection_config = connection_config or {}

    @abstractmethod
    async def connect(self) -> bool:
        """Establish connection to the store.

        Returns:
            bool: True if connection successful, False otherwise
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Disconnect from the store."""
        pass

    @abstractmethod
    async def get_rule_by_id(self, rule_id: str) -> Optional[ExceptionRule]:
        """Retrieve a rule by its ID, including soft-deleted rules.

        Args:
            rule_id: Rule identifier

        Returns:
            Optional[ExceptionRule]: Rule if found, None otherwise
        """
        pass

    @abstractmethod
    async def get_rules(self, filter_params: Optional[Dict[str, Any]] = None) -> List[ExceptionRule]:
        """Retrieve all rules matching the filter.

        Args:
            filter_params: Attribute values the rules must equal

        Returns:
            List[ExceptionRule]: Matching rules
        """
        pass

    @abstractmethod
    async def create_rule(self, rule: ExceptionRule) -> ExceptionRule:
        """Persist a new rule.

        Args:
            rule: Rule to create

        Returns:
            ExceptionRule: The stored rule
        """
        pass

    @abstractmethod
    async def update_rule(self, rule_id: str, patch: Dict[str, Any]) -> ExceptionRule:
        """Apply a partial update to a rule.

        Args:
            rule_id: Rule identifier
            patch: Field values to change

        Returns:
            ExceptionRule: The updated rule

        Raises:
            KeyError: If the rule does not exist
        """
        pass

    @abstractmethod
    async def delete_rule(self, rule_id: str) -> None:
        """Soft-delete a rule by marking it inactive.

        Args:
            rule_id: Rule identifier

        Raises:
            KeyError: If the rule does not exist
        """
        pass

    @abstractmethod
    async def increment_usage(self, rule_id: str, used_at: datetime) -> int:
        """Atomically increment a rule's usage count and set its last use.

        Args:
            rule_id: Rule identifier
            used_at: Time of the use

        Returns:
            int: The new usage count

        Raises:
            KeyError: If the rule does not exist
        """
        pass

    @abstractmethod
    async def create_usage_record(self, record: RuleUsageRecord) -> RuleUsageRecord:
        """Persist a new usage record.

        Args:
            record: Usage record to store

        Returns:
            RuleUsageRecord: The stored record
        """
        pass

    @abstractmethod
    async def get_usage_records_by_rule_id(
        self,
        rule_id: str,
        limit: Optional[int] = None
    ) -> List[RuleUsageRecord]:
        """Retrieve a rule's usage records, most recent first.

        Args:
            rule_id: Rule identifier
            limit: Maximum number of records to return

        Returns:
            List[RuleUsageRecord]: Usage records
        """
        pass

    @abstractmethod
    async def get_usage_records_by_session_id(self, session_id: str) -> List[RuleUsageRecord]:
        """Retrieve the usage records of one task session.

        Args:
            session_id: Session identifier

        Returns:
            List[RuleUsageRecord]: Usage records
        """
        pass

    @abstractmethod
    async def get_usage_records(self) -> List[RuleUsageRecord]:
        """Retrieve every usage record.

        Returns:
            List[RuleUsageRecord]: Usage records
        """
        pass

    @abstractmethod
    async def delete_usage_records_before(self, cutoff: datetime) -> int:
        """Remove usage records older than ``cutoff``.

        Only the retention sweep calls this.

        Args:
            cutoff: Records used strictly before this time are removed

        Returns:
            int: Number of removed records
        """
        pass

    def handle_storage_error(self, error: Exception, operation: str) -> Dict[str, Any]:
        """Log a storage error in a consistent way.

        Args:
            error: The exception that occurred
            operation: Name of the storage operation that failed

        Returns:
            Dict[str, Any]: Error information
        """
        error_info = {
            "repository": self.__class__.__name__,
            "operation": operation,
            "error_type": type(error).__name__,
            "error_message": str(error)
        }

        logger.error(f"Storage error: {error_info}")
        return error_info
