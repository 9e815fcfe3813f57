"""
存储仓库接口定义
"""
import copy
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Iterable
from datetime import datetime

from ..models.recipe import Recipe
from ..models.execution import Execution, Artifact
from ..models.schedule import Schedule
from ..models.membership import Role, Membership
from ..utils import ensure_utc


class RecipeRepository(ABC):
    """配方存储仓库接口"""

    @abstractmethod
    async def save(self, recipe: Recipe) -> str:
        """保存配方"""
        pass

    @abstractmethod
    async def get(self, recipe_id: str) -> Optional[Recipe]:
        """获取配方"""
        pass

    @abstractmethod
    async def list(self, scope_ids: Optional[Iterable[Optional[str]]] = None) -> List[Recipe]:
        """
        列出配方

        Args:
            scope_ids: 作用域过滤，None 表示不过滤；集合中的 None 匹配无作用域配方
        """
        pass

    @abstractmethod
    async def update(self, recipe: Recipe) -> bool:
        """更新配方"""
        pass

    @abstractmethod
    async def delete(self, recipe_id: str) -> bool:
        """删除配方"""
        pass


class ExecutionRepository(ABC):
    """执行实例存储仓库接口"""

    @abstractmethod
    async def save(self, execution: Execution) -> str:
        """保存执行实例"""
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[Execution]:
        """获取执行实例"""
        pass

    @abstractmethod
    async def list_by_recipe(self, recipe_id: str) -> List[Execution]:
        """按配方列出执行实例，最新的在前"""
        pass

    @abstractmethod
    async def update(self, execution: Execution) -> bool:
        """更新执行实例"""
        pass


class ArtifactRepository(ABC):
    """执行产物仓库接口（只追加）"""

    @abstractmethod
    async def add(self, artifact: Artifact) -> str:
        """追加产物"""
        pass

    @abstractmethod
    async def list_by_execution(self, execution_id: str) -> List[Artifact]:
        """按创建顺序列出执行产物"""
        pass


class ScheduleRepository(ABC):
    """调度规则存储仓库接口"""

    @abstractmethod
    async def save(self, schedule: Schedule) -> str:
        pass

    @abstractmethod
    async def get(self, schedule_id: str) -> Optional[Schedule]:
        pass

    @abstractmethod
    async def update(self, schedule: Schedule) -> bool:
        pass

    @abstractmethod
    async def delete(self, schedule_id: str) -> bool:
        pass

    @abstractmethod
    async def list_by_recipe(self, recipe_id: Optional[str] = None) -> List[Schedule]:
        """列出规则，recipe_id 为 None 时返回全部"""
        pass

    @abstractmethod
    async def list_due(self, now: datetime) -> List[Schedule]:
        """启用、有 cron 且 next_run_at <= now 的规则"""
        pass

    @abstractmethod
    async def list_by_event(self, event_name: str) -> List[Schedule]:
        """启用且事件触发器匹配的规则"""
        pass

    @abstractmethod
    async def compare_and_set_next_run(
        self,
        schedule_id: str,
        expected: Optional[datetime],
        next_run_at: Optional[datetime],
        last_run_at: Optional[datetime],
    ) -> bool:
        """
        仅当当前 next_run_at 等于 expected 时写入新值

        Returns:
            是否写入成功；失败说明已被其他扫描者认领
        """
        pass

    @abstractmethod
    async def delete_by_recipe(self, recipe_id: str) -> int:
        pass


class MembershipRepository(ABC):
    """作用域成员仓库接口"""

    @abstractmethod
    async def get_role(self, scope_id: str, user_id: str) -> Optional[Role]:
        pass

    @abstractmethod
    async def add(self, membership: Membership) -> None:
        pass

    @abstractmethod
    async def list_scopes(self, user_id: str) -> List[str]:
        pass


# 内存实现（用于测试）
# 保存与读取都做深拷贝，调用方拿到的是快照，行为与数据库一致

class InMemoryRecipeRepository(RecipeRepository):
    """内存配方仓库实现"""

    def __init__(self):
        self.recipes: Dict[str, Recipe] = {}

    async def save(self, recipe: Recipe) -> str:
        self.recipes[recipe.id] = copy.deepcopy(recipe)
        return recipe.id

    async def get(self, recipe_id: str) -> Optional[Recipe]:
        recipe = self.recipes.get(recipe_id)
        return copy.deepcopy(recipe) if recipe else None

    async def list(self, scope_ids: Optional[Iterable[Optional[str]]] = None) -> List[Recipe]:
        recipes = list(self.recipes.values())
        if scope_ids is not None:
            allowed = set(scope_ids)
            recipes = [r for r in recipes if r.scope_id in allowed]
        return [copy.deepcopy(r) for r in recipes]

    async def update(self, recipe: Recipe) -> bool:
        if recipe.id not in self.recipes:
            return False
        self.recipes[recipe.id] = copy.deepcopy(recipe)
        return True

    async def delete(self, recipe_id: str) -> bool:
        return self.recipes.pop(recipe_id, None) is not None


class InMemoryExecutionRepository(ExecutionRepository):
    """内存执行实例仓库实现"""

    def __init__(self):
        self.executions: Dict[str, Execution] = {}

    async def save(self, execution: Execution) -> str:
        self.executions[execution.id] = copy.deepcopy(execution)
        return execution.id

    async def get(self, execution_id: str) -> Optional[Execution]:
        execution = self.executions.get(execution_id)
        return copy.deepcopy(execution) if execution else None

    async def list_by_recipe(self, recipe_id: str) -> List[Execution]:
        executions = [e for e in self.executions.values() if e.recipe_id == recipe_id]
        executions.sort(key=lambda e: e.started_at, reverse=True)
        return [copy.deepcopy(e) for e in executions]

    async def update(self, execution: Execution) -> bool:
        if execution.id not in self.executions:
            return False
        self.executions[execution.id] = copy.deepcopy(execution)
        return True


class InMemoryArtifactRepository(ArtifactRepository):
    """内存产物仓库实现"""

    def __init__(self):
        self.artifacts: List[Artifact] = []

    async def add(self, artifact: Artifact) -> str:
        self.artifacts.append(artifact)
        return artifact.id

    async def list_by_execution(self, execution_id: str) -> List[Artifact]:
        return [a for a in self.artifacts if a.execution_id == execution_id]


class InMemoryScheduleRepository(ScheduleRepository):
    """内存调度规则仓库实现"""

    def __init__(self):
        self.schedules: Dict[str, Schedule] = {}

    async def save(self, schedule: Schedule) -> str:
        self.schedules[schedule.id] = copy.deepcopy(schedule)
        return schedule.id

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        schedule = self.schedules.get(schedule_id)
        return copy.deepcopy(schedule) if schedule else None

    async def update(self, schedule: Schedule) -> bool:
        if schedule.id not in self.schedules:
            return False
        self.schedules[schedule.id] = copy.deepcopy(schedule)
        return True

    async def delete(self, schedule_id: str) -> bool:
        return self.schedules.pop(schedule_id, None) is not None

    async def list_by_recipe(self, recipe_id: Optional[str] = None) -> List[Schedule]:
        schedules = [
            s for s in self.schedules.values()
            if recipe_id is None or s.recipe_id == recipe_id
        ]
        schedules.sort(key=lambda s: s.created_at)
        return [copy.deepcopy(s) for s in schedules]

    async def list_due(self, now: datetime) -> List[Schedule]:
        now = ensure_utc(now)
        due = [
            s for s in self.schedules.values()
            if s.enabled and s.cron and s.next_run_at is not None and s.next_run_at <= now
        ]
        due.sort(key=lambda s: s.next_run_at)
        return [copy.deepcopy(s) for s in due]

    async def list_by_event(self, event_name: str) -> List[Schedule]:
        return [
            copy.deepcopy(s) for s in self.schedules.values()
            if s.enabled and s.event_trigger == event_name
        ]

    async def compare_and_set_next_run(
        self,
        schedule_id: str,
        expected: Optional[datetime],
        next_run_at: Optional[datetime],
        last_run_at: Optional[datetime],
    ) -> bool:
        schedule = self.schedules.get(schedule_id)
        if schedule is None or schedule.next_run_at != expected:
            return False
        schedule.next_run_at = next_run_at
        schedule.last_run_at = last_run_at
        return True

    async def delete_by_recipe(self, recipe_id: str) -> int:
        doomed = [sid for sid, s in self.schedules.items() if s.recipe_id == recipe_id]
        for schedule_id in doomed:
            del self.schedules[schedule_id]
        return len(doomed)


class InMemoryMembershipRepository(MembershipRepository):
    """内存成员仓库实现"""

    def __init__(self):
        self.roles: Dict[tuple, Role] = {}

    async def get_role(self, scope_id: str, user_id: str) -> Optional[Role]:
        return self.roles.get((scope_id, user_id))

    async def add(self, membership: Membership) -> None:
        self.roles[(membership.scope_id, membership.user_id)] = membership.role

    async def list_scopes(self, user_id: str) -> List[str]:
        return sorted({scope for scope, user in self.roles if user == user_id})
