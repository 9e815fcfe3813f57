"""
调度规则注册表

只维护规则及其下次触发时间，不负责触发。
"""
import logging
from typing import Dict, Any, Optional, List

from ..config import DEFAULT_SEARCH_HORIZON_DAYS
from ..exceptions import ValidationError
from ..models.membership import Role
from ..models.schedule import Schedule
from ..storage.repository import ScheduleRepository
from ..utils import utcnow, ensure_utc
from .access import Authorizer, ResourceType
from .cron import compute_next_run, is_valid_expression


logger = logging.getLogger(__name__)


UPDATABLE_FIELDS = ("name", "cron", "event_trigger", "enabled")


def _clean(value: Optional[str]) -> Optional[str]:
    """空字符串视为未设置"""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ScheduleRegistry:
    """调度规则的创建、修改与查询"""

    def __init__(
        self,
        schedule_repository: ScheduleRepository,
        authorizer: Authorizer,
        clock=None,
        horizon_days: int = DEFAULT_SEARCH_HORIZON_DAYS,
    ):
        self.schedule_repository = schedule_repository
        self.authorizer = authorizer
        self.clock = clock or utcnow
        self.horizon_days = horizon_days

    def next_run(self, cron: Optional[str], from_time=None):
        """计算下次触发时间，无 cron 时为 None"""
        if not cron:
            return None
        return compute_next_run(cron, from_time or self.clock(), self.horizon_days)

    @staticmethod
    def _check_cron(cron: Optional[str]):
        if cron and not is_valid_expression(cron):
            raise ValidationError(f"Invalid cron expression: '{cron}'")

    async def create(
        self,
        user_id: str,
        recipe_id: str,
        name: str,
        cron: Optional[str] = None,
        event_trigger: Optional[str] = None,
        enabled: bool = True,
    ) -> Schedule:
        """创建规则，cron 与 event_trigger 必须且只能提供一个"""
        await self.authorizer.require(ResourceType.RECIPE, recipe_id, user_id, Role.EDITOR)

        cron, event_trigger = _clean(cron), _clean(event_trigger)
        if not name or not str(name).strip():
            raise ValidationError("Schedule name must not be empty")
        if not cron and not event_trigger:
            raise ValidationError("Either cron or event_trigger is required")
        if cron and event_trigger:
            raise ValidationError("Only one of cron or event_trigger may be set")
        self._check_cron(cron)

        schedule = Schedule(
            recipe_id=recipe_id,
            name=name,
            cron=cron,
            event_trigger=event_trigger,
            enabled=bool(enabled),
            created_at=self.clock(),
        )
        if schedule.enabled:
            schedule.next_run_at = self.next_run(cron)

        await self.schedule_repository.save(schedule)
        logger.info(
            f"Created schedule {schedule.id} for recipe {recipe_id} "
            f"[cron={cron}, event={event_trigger}, next_run_at={schedule.next_run_at}]"
        )
        return schedule

    async def get(self, schedule_id: str, user_id: str) -> Schedule:
        return await self.authorizer.require(ResourceType.SCHEDULE, schedule_id, user_id, Role.VIEWER)

    async def list(self, user_id: str, recipe_id: str) -> List[Schedule]:
        """列出某配方的全部规则"""
        await self.authorizer.require(ResourceType.RECIPE, recipe_id, user_id, Role.VIEWER)
        return await self.schedule_repository.list_by_recipe(recipe_id)

    async def update(self, schedule_id: str, user_id: str, changes: Dict[str, Any]) -> Schedule:
        """
        更新规则

        未出现的字段保持原值。cron 传空字符串表示清除，同时清空 next_run_at；
        cron 变化或重新启用时从当前时间重新计算 next_run_at；禁用时清空。
        """
        schedule = await self.authorizer.require(ResourceType.SCHEDULE, schedule_id, user_id, Role.EDITOR)

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown schedule fields: {', '.join(sorted(unknown))}")

        recompute = False
        if "name" in changes:
            if not changes["name"] or not str(changes["name"]).strip():
                raise ValidationError("Schedule name must not be empty")
            schedule.name = changes["name"]
        if "cron" in changes:
            cron = _clean(changes["cron"])
            self._check_cron(cron)
            recompute = recompute or cron != schedule.cron
            schedule.cron = cron
        if "event_trigger" in changes:
            schedule.event_trigger = _clean(changes["event_trigger"])
        if "enabled" in changes:
            if not isinstance(changes["enabled"], bool):
                raise ValidationError("Schedule enabled must be true or false")
            enabled = changes["enabled"]
            recompute = recompute or (enabled and not schedule.enabled)
            schedule.enabled = enabled

        if not schedule.cron or not schedule.enabled:
            schedule.next_run_at = None
        elif recompute or schedule.next_run_at is None:
            schedule.next_run_at = self.next_run(schedule.cron)

        await self.schedule_repository.update(schedule)
        logger.info(
            f"Updated schedule {schedule.id}: {', '.join(sorted(changes)) or 'no changes'} "
            f"[next_run_at={schedule.next_run_at}]"
        )
        return schedule

    async def enable(self, schedule_id: str, user_id: str) -> Schedule:
        return await self.update(schedule_id, user_id, {"enabled": True})

    async def disable(self, schedule_id: str, user_id: str) -> Schedule:
        return await self.update(schedule_id, user_id, {"enabled": False})

    async def delete(self, schedule_id: str, user_id: str) -> bool:
        """删除规则，要求 owner 角色"""
        await self.authorizer.require(ResourceType.SCHEDULE, schedule_id, user_id, Role.OWNER)
        deleted = await self.schedule_repository.delete(schedule_id)
        logger.info(f"Deleted schedule {schedule_id}")
        return deleted

    async def list_due(self, now=None) -> List[Schedule]:
        return await self.schedule_repository.list_due(ensure_utc(now or self.clock()))

    async def list_by_event(self, event_name: str) -> List[Schedule]:
        return await self.schedule_repository.list_by_event(event_name)

    async def claim(self, schedule: Schedule, fired_at) -> bool:
        """
        认领一次到期触发

        以当前 next_run_at 作为期望值做比较并交换，成功后 next_run_at
        从触发时间向后推进，last_run_at 记为触发时间。
        """
        fired_at = ensure_utc(fired_at)
        return await self.schedule_repository.compare_and_set_next_run(
            schedule.id,
            expected=schedule.next_run_at,
            next_run_at=self.next_run(schedule.cron, fired_at),
            last_run_at=fired_at,
        )

    async def record_run(self, schedule_id: str, fired_at=None) -> Optional[Schedule]:
        """记录一次非 cron 驱动的触发（手动或事件），next_run_at 不变"""
        schedule = await self.schedule_repository.get(schedule_id)
        if schedule is None:
            return None
        fired_at = ensure_utc(fired_at or self.clock())
        schedule.last_run_at = fired_at
        await self.schedule_repository.update(schedule)
        return schedule
