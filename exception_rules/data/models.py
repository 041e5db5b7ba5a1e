"""
Data models for persistence and business logic.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from exception_rules.utils.normalization import normalize_name


class RuleScope(Enum):
    """Whether a rule applies to one chain or to all chains."""

    CHAIN = "chain"
    GLOBAL = "global"


class ExceptionRuleType(Enum):
    """Which kind of action a rule may justify."""

    PAUSE_ONLY = "PAUSE_ONLY"
    EARLY_COMPLETION_ONLY = "EARLY_COMPLETION_ONLY"


class ActionType(Enum):
    """Actions a rule can be used for."""

    PAUSE = "pause"
    EARLY_COMPLETION = "early_completion"


# The only permitted action for each rule type
PERMITTED_ACTIONS: Dict[ExceptionRuleType, ActionType] = {
    ExceptionRuleType.PAUSE_ONLY: ActionType.PAUSE,
    ExceptionRuleType.EARLY_COMPLETION_ONLY: ActionType.EARLY_COMPLETION,
}

RULE_TYPE_FOR_ACTION: Dict[ActionType, ExceptionRuleType] = {
    action: rule_type for rule_type, action in PERMITTED_ACTIONS.items()
}


def parse_enum(enum_cls, value: Any):
    """Return the enum member for ``value`` or None if it is not one."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except (ValueError, TypeError):
        return None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def _parse_count(value: Any) -> int:
    try:
        count = int(value)
    except (ValueError, TypeError):
        return 0
    return max(count, 0)


def new_id() -> str:
    """Generate an opaque identifier."""
    return str(uuid.uuid4())


@dataclass
class ExceptionRule:
    """Model representing a user-defined exception rule.

    ``name`` is whatever the store handed back and may not be a string;
    compare it through ``normalized_name`` only.
    """

    name: Any = ""
    type: Optional[ExceptionRuleType] = ExceptionRuleType.PAUSE_ONLY
    scope: RuleScope = RuleScope.GLOBAL
    chain_id: Optional[str] = None
    description: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    is_active: bool = True

    @property
    def normalized_name(self) -> str:
        """Comparison key of the rule name."""
        return normalize_name(self.name)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the model to a dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value if self.type else None,
            "scope": self.scope.value,
            "chain_id": self.chain_id,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "usage_count": self.usage_count,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "is_active": self.is_active
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExceptionRule':
        """Create a model from a dictionary, recovering malformed fields."""
        chain_id = data.get("chain_id")
        scope = parse_enum(RuleScope, data.get("scope"))
        if scope is None:
            scope = RuleScope.CHAIN if chain_id else RuleScope.GLOBAL

        return cls(
            id=data.get("id") or new_id(),
            name=data.get("name"),
            type=parse_enum(ExceptionRuleType, data.get("type")),
            scope=scope,
            chain_id=chain_id,
            description=data.get("description"),
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(),
            usage_count=_parse_count(data.get("usage_count", 0)),
            last_used_at=_parse_datetime(data.get("last_used_at")),
            is_active=bool(data.get("is_active", True))
        )


@dataclass(frozen=True)
class RuleUsageRecord:
    """Model representing one use of a rule. Immutable once created."""

    rule_id: str
    chain_id: str
    session_id: str
    action_type: ActionType
    task_elapsed_time: float
    rule_scope: RuleScope
    task_remaining_time: Optional[float] = None
    pause_duration: Optional[float] = None
    auto_resume: Optional[bool] = None
    id: str = field(default_factory=new_id)
    used_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the model to a dictionary."""
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "chain_id": self.chain_id,
            "session_id": self.session_id,
            "action_type": self.action_type.value,
            "task_elapsed_time": self.task_elapsed_time,
            "task_remaining_time": self.task_remaining_time,
            "pause_duration": self.pause_duration,
            "auto_resume": self.auto_resume,
            "rule_scope": self.rule_scope.value,
            "used_at": self.used_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RuleUsageRecord':
        """Create a model from a dictionary."""
        return cls(
            id=data["id"],
            rule_id=data["rule_id"],
            chain_id=data["chain_id"],
            session_id=data["session_id"],
            action_type=ActionType(data["action_type"]),
            task_elapsed_time=data["task_elapsed_time"],
            task_remaining_time=data.get("task_remaining_time"),
            pause_duration=data.get("pause_duration"),
            auto_resume=data.get("auto_resume"),
            rule_scope=RuleScope(data.get("rule_scope", "global")),
            used_at=_parse_datetime(data["used_at"]) or datetime.now()
        )


@dataclass(frozen=True)
class SessionContext:
    """Caller-supplied snapshot of the task session a rule is used in."""

    session_id: str
    chain_id: str
    chain_name: str
    started_at: datetime
    elapsed_time: float
    remaining_time: Optional[float] = None
    is_durationless: bool = False


@dataclass(frozen=True)
class PauseOptions:
    """Options chosen when a rule is used to pause a task."""

    duration: Optional[float] = None
    auto_resume: bool = False
