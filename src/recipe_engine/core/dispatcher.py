"""
调度触发

到期扫描、事件触发和手动触发。扫描本身由外部周期性调用。
"""
import logging
from typing import Any, Dict, List, Optional

from ..integrations import event_bus as topics
from ..integrations.event_bus import EventBus
from ..models.execution import Execution
from ..models.membership import Role
from ..utils import utcnow, ensure_utc, isoformat
from .access import ResourceType
from .cron import is_valid_expression
from .engine import ExecutionEngine
from .schedule_registry import ScheduleRegistry


logger = logging.getLogger(__name__)


class ScheduleDispatcher:
    """根据调度规则启动执行"""

    def __init__(
        self,
        registry: ScheduleRegistry,
        engine: ExecutionEngine,
        event_bus: EventBus = None,
        clock=None,
    ):
        self.registry = registry
        self.engine = engine
        self.event_bus = event_bus
        self.clock = clock or utcnow

    async def process_due_schedules(self, now=None) -> List[Execution]:
        """
        触发所有到期的 cron 规则

        每条规则先通过比较并交换认领本次触发，并发扫描时同一时刻只会触发一次。
        单条规则出错只记录日志，不影响其余规则。

        Returns:
            本次扫描启动的执行列表
        """
        now = ensure_utc(now or self.clock())
        due = await self.registry.list_due(now)
        started = []

        for schedule in due:
            try:
                if not is_valid_expression(schedule.cron):
                    logger.warning(
                        f"Skipping schedule {schedule.id}: malformed cron '{schedule.cron}'"
                    )
                    await self.registry.schedule_repository.compare_and_set_next_run(
                        schedule.id,
                        expected=schedule.next_run_at,
                        next_run_at=None,
                        last_run_at=schedule.last_run_at,
                    )
                    continue

                if not await self.registry.claim(schedule, now):
                    logger.info(f"Schedule {schedule.id} already claimed by another sweep")
                    continue

                execution = await self.engine.start_execution_internal(
                    schedule.recipe_id,
                    {
                        "triggered_by": "cron",
                        "schedule_id": schedule.id,
                        "scheduled_for": isoformat(schedule.next_run_at),
                    },
                )
                started.append(execution)
                await self._publish(schedule.id, execution, "cron")
            except Exception as e:
                logger.error(f"Failed to process schedule {schedule.id}: {e}", exc_info=True)

        if due:
            logger.info(f"Processed {len(due)} due schedules, started {len(started)} executions")
        return started

    async def emit_event(self, event_name: str, payload: Dict[str, Any] = None) -> List[Execution]:
        """触发所有订阅该事件的已启用规则"""
        schedules = await self.registry.list_by_event(event_name)
        started = []

        for schedule in schedules:
            try:
                execution = await self.engine.start_execution_internal(
                    schedule.recipe_id,
                    {
                        "triggered_by": "event",
                        "schedule_id": schedule.id,
                        "event_name": event_name,
                        "payload": payload or {},
                    },
                )
                await self.registry.record_run(schedule.id, self.clock())
                started.append(execution)
                await self._publish(schedule.id, execution, "event")
            except Exception as e:
                logger.error(
                    f"Failed to trigger schedule {schedule.id} for event '{event_name}': {e}",
                    exc_info=True,
                )

        logger.info(f"Event '{event_name}' triggered {len(started)} executions")
        return started

    async def trigger_schedule(self, schedule_id: str, user_id: str) -> Execution:
        """手动触发一条规则，要求 editor 角色"""
        schedule = await self.registry.authorizer.require(
            ResourceType.SCHEDULE, schedule_id, user_id, Role.EDITOR
        )
        execution = await self.engine.start_execution_internal(
            schedule.recipe_id,
            {
                "triggered_by": "manual",
                "schedule_id": schedule.id,
                "actor_user_id": user_id,
            },
        )
        await self.registry.record_run(schedule.id, self.clock())
        await self._publish(schedule.id, execution, "manual")
        return execution

    async def _publish(self, schedule_id: str, execution: Execution, trigger: str):
        if self.event_bus is None:
            return
        await self.event_bus.publish(topics.SCHEDULE_FIRED, {
            "schedule_id": schedule_id,
            "execution_id": execution.id,
            "trigger": trigger,
        })
