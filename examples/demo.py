# demo.py - Walk through the rule lifecycle against the in-memory store
import asyncio
from datetime import datetime

from exception_rules.config.logging_config import setup_logging
from exception_rules.data.memory_repository import InMemoryRuleRepository
from exception_rules.data.models import ActionType, PauseOptions, SessionContext
from exception_rules.domain.rule_manager import ExceptionRuleManager, ResolutionChoice
from exception_rules.events.event_interface import event_bus
from exception_rules.utils.error_handling import ExceptionRuleError, ExceptionRuleException

# Set up logging
logger = setup_logging("INFO")


async def main():
    repository = InMemoryRuleRepository()
    await repository.connect()
    manager = ExceptionRuleManager(repository)

    event_bus.on_any(lambda event: print(f"[event] {event.type.value} {event.data}"))

    try:
        toilet = (await manager.create_rule("上厕所", "PAUSE_ONLY", description="Short break")).rule
        await manager.create_rule("完成会议", "EARLY_COMPLETION_ONLY")

        # A near-duplicate is accepted with a warning
        result = await manager.create_rule("去厕所", "PAUSE_ONLY")
        print(f"Warnings: {result.warnings}")

        # An exact duplicate needs a resolution choice
        try:
            await manager.create_rule(" 上厕所 ", "PAUSE_ONLY")
        except ExceptionRuleException as e:
            if e.kind is not ExceptionRuleError.RULE_NAME_EXISTS:
                raise
            print(f"Collision: {e.message}, suggestions: {e.details['suggestions']}")

        renamed = await manager.create_rule("上厕所", "PAUSE_ONLY", resolution_choice=ResolutionChoice.MODIFY_NAME)
        print(f"Created as: {renamed.rule.name}")

        session = SessionContext(
            session_id="demo-session",
            chain_id="demo-chain",
            chain_name="Deep work",
            started_at=datetime.now(),
            elapsed_time=900.0,
            remaining_time=2700.0
        )
        used = await manager.use_rule(toilet.id, session, ActionType.PAUSE, PauseOptions(duration=300.0))
        print(f"{used.rule.name} used {used.rule.usage_count} time(s)")

        try:
            await manager.use_rule(toilet.id, session, ActionType.EARLY_COMPLETION)
        except ExceptionRuleException as e:
            print(f"Rejected: {e.message}")

        for match in await manager.search_rules("厕所"):
            print(f"Search hit: {match.name}")

        health = await manager.get_system_health()
        print(f"Health: {health.status} {health.issues}")
    finally:
        await repository.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
