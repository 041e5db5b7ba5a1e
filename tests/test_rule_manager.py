# tests/test_rule_manager.py
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from exception_rules.data.base_repository import RuleRepository
from exception_rules.data.models import (
    ActionType, ExceptionRule, ExceptionRuleType, PauseOptions, RuleScope, RuleUsageRecord,
    SessionContext
)
from exception_rules.domain.rule_manager import CreationAction, ExceptionRuleManager
from exception_rules.events.event_interface import EventType
from exception_rules.utils.error_handling import ExceptionRuleError, ExceptionRuleException

PAUSE = ExceptionRuleType.PAUSE_ONLY
EARLY = ExceptionRuleType.EARLY_COMPLETION_ONLY
FIXED_NOW = datetime(2024, 3, 15, 12, 0, 0)


async def create(manager, name, rule_type=PAUSE, **kwargs):
    result = await manager.create_rule(name, rule_type, **kwargs)
    return result.rule


@pytest.mark.asyncio
async def test_create_rule(manager, repository):
    """Test creating a global rule"""
    result = await manager.create_rule("  喝水 ", "PAUSE_ONLY", description="drink water")

    assert result.action is CreationAction.CREATED
    assert result.warnings == []
    assert result.rule.name == "喝水"
    assert result.rule.type is PAUSE
    assert result.rule.scope is RuleScope.GLOBAL
    assert await repository.get_rule_by_id(result.rule.id) == result.rule


@pytest.mark.asyncio
@pytest.mark.parametrize("name", [None, "", "   ", "x" * 101])
async def test_create_rule_validates_name(manager, name):
    """Test that empty and overlong names are rejected"""
    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.create_rule(name, PAUSE)
    assert exc_info.value.kind is ExceptionRuleError.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_create_rule_validates_type(manager):
    """Test that unknown rule types are rejected"""
    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.create_rule("喝水", "PAUSE")
    assert exc_info.value.kind is ExceptionRuleError.INVALID_RULE_TYPE


@pytest.mark.asyncio
async def test_duplicate_name_without_choice(manager):
    """Test that an exact collision fails with alternates"""
    existing = await create(manager, "喝水")

    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.create_rule(" 喝水", PAUSE)

    error = exc_info.value
    assert error.kind is ExceptionRuleError.RULE_NAME_EXISTS
    assert error.details["existing_rules"][0]["id"] == existing.id
    assert "喝水 2" in error.details["suggestions"]


@pytest.mark.asyncio
async def test_resolution_use_existing(manager, repository):
    """Test reusing the existing rule"""
    existing = await create(manager, "喝水")

    result = await manager.create_rule("喝水", PAUSE, resolution_choice="use_existing")

    assert result.action is CreationAction.USED_EXISTING
    assert result.rule.id == existing.id
    assert len(await repository.get_rules()) == 1


@pytest.mark.asyncio
async def test_resolution_modify_name(manager):
    """Test creating under a generated alternate name"""
    await create(manager, "喝水")

    result = await manager.create_rule("喝水", PAUSE, resolution_choice="modify_name")

    assert result.action is CreationAction.RENAMED
    assert result.rule.name == "喝水 2"
    assert result.warnings


@pytest.mark.asyncio
async def test_resolution_create_anyway(manager, repository):
    """Test forcing creation despite a collision"""
    await create(manager, "喝水")

    result = await manager.create_rule("喝水", PAUSE, resolution_choice="create_anyway")

    assert result.action is CreationAction.CREATED_ANYWAY
    assert len(await repository.get_rules()) == 2


@pytest.mark.asyncio
async def test_invalid_resolution_choice(manager):
    """Test that unknown resolution choices are rejected"""
    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.create_rule("喝水", PAUSE, resolution_choice="merge")
    assert exc_info.value.kind is ExceptionRuleError.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_similar_name_creates_with_warning(manager):
    """Test that near-duplicates only warn"""
    await create(manager, "上厕所")

    result = await manager.create_rule("去厕所", PAUSE)

    assert result.action is CreationAction.CREATED
    assert "上厕所" in result.warnings[0]


@pytest.mark.asyncio
async def test_duplicates_are_checked_per_scope(manager):
    """Test that chain rules and global rules do not collide"""
    await create(manager, "喝水")

    chain_rule = await create(manager, "喝水", chain_id="chain-1")
    other_chain_rule = await create(manager, "喝水", chain_id="chain-2")

    assert chain_rule.scope is RuleScope.CHAIN
    assert other_chain_rule.chain_id == "chain-2"
    with pytest.raises(ExceptionRuleException):
        await manager.create_rule("喝水", PAUSE, chain_id="chain-1")


@pytest.mark.asyncio
async def test_deleted_rule_name_can_be_reused(manager):
    """Test that soft-deleted rules are not duplicates"""
    rule = await create(manager, "喝水")
    await manager.delete_rule(rule.id)

    result = await manager.create_rule("喝水", PAUSE)

    assert result.action is CreationAction.CREATED


@pytest.mark.asyncio
async def test_use_rule_and_type_mismatch(manager, session_context, repository):
    """Test that a mismatched action is refused without recording usage"""
    rule = await create(manager, "喝水", PAUSE)

    result = await manager.use_rule(rule.id, session_context, "pause")
    assert result.rule.usage_count == 1
    assert result.rule.last_used_at == result.record.used_at

    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.use_rule(rule.id, session_context, "early_completion")

    error = exc_info.value
    assert error.kind is ExceptionRuleError.RULE_TYPE_MISMATCH
    assert "喝水" in error.message
    assert "early_completion" in error.message
    assert (await repository.get_rule_by_id(rule.id)).usage_count == 1
    assert len(await repository.get_usage_records()) == 1


@pytest.mark.asyncio
async def test_use_rule_records_pause_options(manager, session_context):
    """Test that pause options are copied into the usage record"""
    rule = await create(manager, "接电话", PAUSE)

    result = await manager.use_rule(
        rule.id, session_context, ActionType.PAUSE, PauseOptions(duration=120.0, auto_resume=True)
    )

    assert result.record.pause_duration == 120.0
    assert result.record.auto_resume is True


@pytest.mark.asyncio
async def test_use_rule_with_negative_elapsed_time(manager):
    """Test that a negative elapsed time is stored as zero and counted as early usage"""
    rule = await create(manager, "喝水", PAUSE)
    context = SessionContext(
        session_id="session-2",
        chain_id="chain-1",
        chain_name="Deep work",
        started_at=FIXED_NOW,
        elapsed_time=-50.0,
        remaining_time=20.0
    )

    result = await manager.use_rule(rule.id, context, "pause")
    analysis = await manager.get_rule_efficiency_analysis(rule.id)

    assert result.record.task_elapsed_time == 0.0
    assert (analysis.early_usage, analysis.late_usage) == (1, 0)


@pytest.mark.asyncio
async def test_use_missing_rule(manager, session_context):
    """Test using a rule that does not exist"""
    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.use_rule("nope", session_context, "pause")
    assert exc_info.value.kind is ExceptionRuleError.RULE_NOT_FOUND


@pytest.mark.asyncio
async def test_use_rule_without_valid_type(manager, session_context, repository):
    """Test using a stored rule whose type was lost"""
    rule = await repository.create_rule(ExceptionRule.from_dict({"id": "broken", "name": "坏规则", "type": "???"}))

    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.use_rule(rule.id, session_context, "pause")
    assert exc_info.value.kind is ExceptionRuleError.INVALID_RULE_TYPE


@pytest.mark.asyncio
async def test_use_rule_with_unknown_action(manager, session_context):
    """Test using a rule for an unknown action"""
    rule = await create(manager, "喝水")

    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.use_rule(rule.id, session_context, "resume")
    assert exc_info.value.kind is ExceptionRuleError.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_concurrent_use_keeps_exact_count(manager, session_context, repository):
    """Test that concurrent uses of one rule lose no increments"""
    rule = await create(manager, "喝水")

    await asyncio.gather(*[manager.use_rule(rule.id, session_context, "pause") for _ in range(20)])

    assert (await repository.get_rule_by_id(rule.id)).usage_count == 20
    assert len(await repository.get_usage_records()) == 20


@pytest.mark.asyncio
async def test_validate_rule_for_action(manager):
    """Test the strict type / action table"""
    pause_rule = await create(manager, "喝水", PAUSE)
    early_rule = await create(manager, "任务完成", EARLY)

    assert await manager.validate_rule_for_action(pause_rule.id, "pause") is True
    assert await manager.validate_rule_for_action(pause_rule.id, "early_completion") is False
    assert await manager.validate_rule_for_action(early_rule.id, ActionType.EARLY_COMPLETION) is True
    assert await manager.validate_rule_for_action(early_rule.id, "PAUSE") is False
    assert await manager.validate_rule_for_action("nope", "pause") is False

    await manager.delete_rule(pause_rule.id)
    assert await manager.validate_rule_for_action(pause_rule.id, "pause") is False


@pytest.mark.asyncio
async def test_update_rule_ignores_usage_fields(manager, session_context):
    """Test that usage fields cannot be patched"""
    rule = await create(manager, "喝水")
    await manager.use_rule(rule.id, session_context, "pause")

    result = await manager.update_rule(rule.id, {
        "description": "hydrate",
        "usage_count": 99,
        "last_used_at": None,
        "id": "hijack",
    })

    assert result.rule.id == rule.id
    assert result.rule.description == "hydrate"
    assert result.rule.usage_count == 1
    assert result.rule.last_used_at is not None


@pytest.mark.asyncio
async def test_update_rule_rename_checks_duplicates(manager):
    """Test that renaming checks other rules but not the rule itself"""
    rule = await create(manager, "喝水")
    await create(manager, "开会")

    renamed = await manager.update_rule(rule.id, {"name": " 喝水 "})
    assert renamed.rule.name == "喝水"

    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.update_rule(rule.id, {"name": "开会"})
    assert exc_info.value.kind is ExceptionRuleError.RULE_NAME_EXISTS


@pytest.mark.asyncio
async def test_update_rule_changes_type(manager):
    """Test changing a rule's type"""
    rule = await create(manager, "喝水")

    result = await manager.update_rule(rule.id, {"type": "EARLY_COMPLETION_ONLY"})

    assert result.rule.type is EARLY


@pytest.mark.asyncio
async def test_delete_rule_keeps_history(manager, session_context, repository):
    """Test that soft deletion keeps usage records"""
    rule = await create(manager, "喝水")
    await manager.use_rule(rule.id, session_context, "pause")

    await manager.delete_rule(rule.id)

    assert (await repository.get_rule_by_id(rule.id)).is_active is False
    assert await manager.get_all_rules() == []
    assert len(await manager.get_rule_usage_history(rule.id)) == 1

    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.delete_rule("nope")
    assert exc_info.value.kind is ExceptionRuleError.RULE_NOT_FOUND


@pytest.mark.asyncio
async def test_chain_cache_follows_writes(manager):
    """Test that chain reads go through the cache and stay current"""
    rule = await create(manager, "喝水", chain_id="chain-1")
    assert [r.id for r in await manager.get_chain_rules("chain-1")] == [rule.id]

    added = await create(manager, "开会", chain_id="chain-1")
    assert {r.id for r in manager.cache.get_chain_rules("chain-1")} == {rule.id, added.id}

    await manager.delete_rule(rule.id)
    assert manager.cache.get_chain_rules("chain-1") is None
    assert [r.id for r in await manager.get_chain_rules("chain-1")] == [added.id]


@pytest.mark.asyncio
async def test_search_chain_rules_uses_search_cache(manager):
    """Test that chain searches are cached and invalidated on writes"""
    await create(manager, "喝水", chain_id="chain-1")

    first = await manager.search_chain_rules("chain-1", "喝")
    assert [r.name for r in first] == ["喝水"]
    assert manager.cache.get_search_results("chain-1", "喝") is not None

    await manager.get_chain_rules("chain-1")
    await create(manager, "喝咖啡", chain_id="chain-1")
    assert manager.cache.get_search_results("chain-1", "喝") is None

    second = await manager.search_chain_rules("chain-1", "喝")
    assert {r.name for r in second} == {"喝水", "喝咖啡"}


@pytest.mark.asyncio
async def test_search_rules_by_action_and_description(manager):
    """Test filtering by action and matching descriptions"""
    await create(manager, "喝水", PAUSE)
    await create(manager, "休息", PAUSE, description="喝水 and stretch")
    await create(manager, "喝水完成", EARLY)

    results = await manager.search_rules("喝水", action_type="pause")

    assert [r.name for r in results] == ["喝水", "休息"]
    assert len(await manager.search_rules("", rule_type=EARLY)) == 1


@pytest.mark.asyncio
async def test_search_rules_rejects_unknown_filters(manager):
    """Test that unknown type or action filters raise instead of matching everything"""
    await create(manager, "喝水", PAUSE)

    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.search_rules("喝水", rule_type="BOGUS")
    assert exc_info.value.kind is ExceptionRuleError.INVALID_RULE_TYPE

    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.search_rules("喝水", action_type="BOGUS")
    assert exc_info.value.kind is ExceptionRuleError.VALIDATION_ERROR


@pytest.mark.asyncio
@pytest.mark.parametrize("name", [None, 123, "", "   "])
async def test_malformed_stored_names(manager, repository, name):
    """Test that malformed stored names never break manager searches"""
    await repository.create_rule(ExceptionRule(name=name))
    await create(manager, "喝水")

    await manager.search_rules("喝水")
    await manager.get_duplication_suggestions("喝水")
    result = await manager.create_rule("开会", PAUSE)

    assert result.rule.name == "开会"


@pytest.mark.asyncio
async def test_get_duplication_suggestions(manager):
    """Test the duplication check offered while typing"""
    await create(manager, "喝水")

    suggestions = await manager.get_duplication_suggestions("喝水")

    assert suggestions.report.has_exact_match
    assert suggestions.name_suggestions[0] == "喝水 2"


@pytest.mark.asyncio
async def test_rules_for_action_and_usage_suggestions(manager, session_context):
    """Test action filtering and usage-based suggestions"""
    water = await create(manager, "喝水", PAUSE)
    await create(manager, "开会", PAUSE)
    await create(manager, "任务完成", EARLY)
    await manager.use_rule(water.id, session_context, "pause")

    assert len(await manager.get_rules_for_action("pause")) == 2

    suggestions = await manager.get_rule_usage_suggestions("pause")
    assert suggestions.most_used[0].id == water.id
    assert [r.id for r in suggestions.recently_used] == [water.id]
    assert suggestions.suggested[0].id == water.id

    with pytest.raises(ExceptionRuleException):
        await manager.get_rules_for_action("resume")


@pytest.mark.asyncio
async def test_rule_type_stats_and_recommendation(manager):
    """Test type counts and the recommended type"""
    await create(manager, "任务完成", EARLY)
    await create(manager, "目标达成", EARLY)
    await create(manager, "喝水", PAUSE)

    stats = await manager.get_rule_type_stats()

    assert stats["total"] == 3
    assert stats["most_used_type"] is EARLY
    assert stats["least_used_type"] is PAUSE
    assert await manager.get_recommended_rule_type() is EARLY
    assert await manager.get_recommended_rule_type(based_on_usage=False) is PAUSE


@pytest.mark.asyncio
async def test_import_skips_duplicates(manager):
    """Test that a repeated name is skipped, not failed"""
    result = await manager.import_rules([{"name": "A"}, {"name": "A"}], skip_duplicates=True)

    assert len(result.imported) == 1
    assert len(result.skipped) == 1
    assert result.errors == []
    assert result.imported[0].type is PAUSE


@pytest.mark.asyncio
async def test_import_isolates_failures(manager):
    """Test that failing items do not abort the batch"""
    result = await manager.import_rules([
        {"name": "喝水", "type": "PAUSE_ONLY"},
        {"name": "", "type": "PAUSE_ONLY"},
        {"name": "开会", "type": "bogus"},
        {"name": "喝水"},
        {"name": "任务完成", "type": "EARLY_COMPLETION_ONLY"},
    ])

    assert [r.name for r in result.imported] == ["喝水", "任务完成"]
    assert len(result.errors) == 3
    assert result.skipped == []


@pytest.mark.asyncio
async def test_import_updates_existing(manager):
    """Test updating existing rules on import"""
    existing = await create(manager, "喝水", PAUSE)

    result = await manager.import_rules(
        [{"name": "喝水", "type": "EARLY_COMPLETION_ONLY", "description": "imported"}],
        update_existing=True
    )

    assert result.imported[0].id == existing.id
    assert result.imported[0].type is EARLY
    assert result.imported[0].description == "imported"


@pytest.mark.asyncio
async def test_import_update_keeps_description_when_missing(manager):
    """Test that an imported item without a description keeps the existing one"""
    existing = await create(manager, "喝水", PAUSE, description="drink water")

    result = await manager.import_rules(
        [{"name": "喝水", "type": "EARLY_COMPLETION_ONLY"}],
        update_existing=True
    )

    assert result.imported[0].id == existing.id
    assert result.imported[0].type is EARLY
    assert result.imported[0].description == "drink water"


@pytest.mark.asyncio
async def test_export_rules(manager, session_context):
    """Test that usage records are only exported on request"""
    rule = await create(manager, "喝水")
    deleted = await create(manager, "开会")
    await manager.delete_rule(deleted.id)
    await manager.use_rule(rule.id, session_context, "pause")

    without_usage = await manager.export_rules()
    assert without_usage.usage_records is None
    assert [r.id for r in without_usage.rules] == [rule.id]
    assert without_usage.summary == {"total_rules": 1, "total_usage_records": 0}

    with_usage = await manager.export_rules(include_usage=True)
    assert len(with_usage.usage_records) == 1
    assert with_usage.summary["total_usage_records"] == 1


@pytest.mark.asyncio
async def test_system_health(manager, session_context):
    """Test health states derived from counts"""
    health = await manager.get_system_health()
    assert health.status == "warning"
    assert health.issues == ["no active rules"]

    rule = await create(manager, "喝水")
    health = await manager.get_system_health()
    assert health.status == "warning"
    assert health.issues == ["rules exist but unused"]

    await manager.use_rule(rule.id, session_context, "pause")
    health = await manager.get_system_health()
    assert health.status == "healthy"
    assert health.issues == []
    assert health.total_usage_records == 1


@pytest.mark.asyncio
async def test_system_health_flags_stale_usage(manager, repository):
    """Test the stale-usage warning"""
    rule = await create(manager, "喝水")
    await repository.create_usage_record(RuleUsageRecord(
        rule_id=rule.id,
        chain_id="chain-1",
        session_id="old",
        action_type=ActionType.PAUSE,
        task_elapsed_time=10.0,
        rule_scope=RuleScope.GLOBAL,
        used_at=FIXED_NOW - timedelta(days=45)
    ))

    health = await manager.get_system_health()

    assert health.status == "warning"
    assert "30 days" in health.issues[0]


@pytest.mark.asyncio
async def test_system_health_reports_storage_failure(events):
    """Test that repository failures produce an error status"""
    repo = MagicMock(spec=RuleRepository)
    repo.get_rules = AsyncMock(side_effect=ConnectionError("offline"))
    manager = ExceptionRuleManager(repo, events=events)

    health = await manager.get_system_health()

    assert health.status == "error"
    assert "offline" in health.issues[0]


@pytest.mark.asyncio
async def test_storage_failure_is_wrapped(events):
    """Test that repository failures surface as storage errors"""
    repo = MagicMock(spec=RuleRepository)
    repo.get_rules = AsyncMock(side_effect=PermissionError("denied"))
    manager = ExceptionRuleManager(repo, events=events)

    with pytest.raises(ExceptionRuleException) as exc_info:
        await manager.create_rule("喝水", PAUSE)

    assert exc_info.value.kind is ExceptionRuleError.STORAGE_ERROR
    assert exc_info.value.details["name"] == "喝水"


@pytest.mark.asyncio
async def test_lifecycle_events(manager, events, session_context):
    """Test that rule changes are published"""
    received = []
    events.on_any(received.append)

    rule = await create(manager, "喝水")
    await manager.use_rule(rule.id, session_context, "pause")
    await manager.update_rule(rule.id, {"description": "hydrate"})
    await manager.delete_rule(rule.id)
    await manager.import_rules([{"name": "开会"}])

    assert [e.type for e in received] == [
        EventType.RULE_CREATED,
        EventType.RULE_USED,
        EventType.RULE_UPDATED,
        EventType.RULE_DELETED,
        EventType.RULE_CREATED,
        EventType.RULES_IMPORTED,
    ]
    assert received[1].rule_id == rule.id
    assert received[1].data["usage_count"] == 1


@pytest.mark.asyncio
async def test_stats_accessors(manager, session_context):
    """Test the statistics pass-throughs"""
    rule = await create(manager, "喝水")
    await manager.use_rule(rule.id, session_context, "pause")

    assert (await manager.get_rule_stats(rule.id)).total_usage == 1
    assert (await manager.get_overall_stats()).total_usage == 1
    assert len((await manager.get_rule_usage_trend(rule.id, 7)).trend) == 8
    analysis = await manager.get_rule_efficiency_analysis(rule.id)
    assert analysis.mid_usage == 1


@pytest.mark.asyncio
async def test_cleanup_data(manager, repository, events):
    """Test removing expired usage records"""
    received = []
    events.on(EventType.USAGE_RECORDS_CLEANED, received.append)
    rule = await create(manager, "喝水")
    await repository.create_usage_record(RuleUsageRecord(
        rule_id=rule.id,
        chain_id="chain-1",
        session_id="old",
        action_type=ActionType.PAUSE,
        task_elapsed_time=10.0,
        rule_scope=RuleScope.GLOBAL,
        used_at=FIXED_NOW - timedelta(days=120)
    ))

    result = await manager.cleanup_data(retention_days=90)

    assert result["removed_records"] == 1
    assert len(received) == 1
