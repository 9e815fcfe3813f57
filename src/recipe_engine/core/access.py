"""
访问控制

所有拒绝都表现为"不存在或无权访问"，调用方无法区分资源是否存在。
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple

from ..exceptions import NotFoundError
from ..models.membership import Role
from ..storage.repository import (
    RecipeRepository, ExecutionRepository, ScheduleRepository, MembershipRepository
)


logger = logging.getLogger(__name__)


class ResourceType(Enum):
    """受保护的资源类型"""
    SCOPE = "scope"
    RECIPE = "recipe"
    EXECUTION = "execution"
    SCHEDULE = "schedule"


@dataclass
class AccessResult:
    """访问检查结果"""
    allowed: bool
    resource: Any = None


class Authorizer(ABC):
    """授权接口"""

    @abstractmethod
    async def check_access(
        self,
        resource_type: ResourceType,
        resource_id: str,
        user_id: str,
        required_role: Role,
    ) -> AccessResult:
        """检查用户对资源是否具有所需角色"""
        pass

    async def accessible_scopes(self, user_id: str) -> Optional[List[str]]:
        """用户可见的作用域，None 表示不限"""
        return None

    async def require(
        self,
        resource_type: ResourceType,
        resource_id: str,
        user_id: str,
        required_role: Role,
    ) -> Any:
        """检查访问权限，失败抛出 NotFoundError，成功返回资源"""
        result = await self.check_access(resource_type, resource_id, user_id, required_role)
        if not result.allowed:
            logger.debug(
                f"Access denied: user={user_id} {resource_type.value}={resource_id} "
                f"required={required_role.value}"
            )
            raise NotFoundError(resource_type.value, resource_id)
        return result.resource


class RepositoryAuthorizer(Authorizer):
    """从仓库加载资源并解析其所属作用域的授权基类"""

    def __init__(
        self,
        recipe_repository: RecipeRepository,
        execution_repository: ExecutionRepository = None,
        schedule_repository: ScheduleRepository = None,
    ):
        self.recipe_repository = recipe_repository
        self.execution_repository = execution_repository
        self.schedule_repository = schedule_repository

    async def _resolve(self, resource_type: ResourceType, resource_id: str) -> Tuple[bool, Any, Optional[str]]:
        """返回 (是否存在, 资源, 所属作用域ID)"""
        if resource_type == ResourceType.SCOPE:
            return bool(resource_id), resource_id, resource_id

        if resource_type == ResourceType.RECIPE:
            recipe = await self.recipe_repository.get(resource_id)
            if recipe is None:
                return False, None, None
            return True, recipe, recipe.scope_id

        if resource_type == ResourceType.EXECUTION:
            if self.execution_repository is None:
                return False, None, None
            execution = await self.execution_repository.get(resource_id)
            if execution is None:
                return False, None, None
            found, _, scope_id = await self._resolve(ResourceType.RECIPE, execution.recipe_id)
            return found, execution, scope_id

        if resource_type == ResourceType.SCHEDULE:
            if self.schedule_repository is None:
                return False, None, None
            schedule = await self.schedule_repository.get(resource_id)
            if schedule is None:
                return False, None, None
            found, _, scope_id = await self._resolve(ResourceType.RECIPE, schedule.recipe_id)
            return found, schedule, scope_id

        return False, None, None

    async def check_access(
        self,
        resource_type: ResourceType,
        resource_id: str,
        user_id: str,
        required_role: Role,
    ) -> AccessResult:
        found, resource, scope_id = await self._resolve(resource_type, resource_id)
        if not found:
            return AccessResult(allowed=False)
        if not await self._has_role(user_id, scope_id, required_role):
            return AccessResult(allowed=False)
        return AccessResult(allowed=True, resource=resource)

    async def _has_role(self, user_id: str, scope_id: Optional[str], required_role: Role) -> bool:
        return True


class AllowAllAuthorizer(RepositoryAuthorizer):
    """只检查资源是否存在（CLI 与内部调用）"""
    pass


class MembershipAuthorizer(RepositoryAuthorizer):
    """基于作用域成员角色的授权"""

    def __init__(
        self,
        recipe_repository: RecipeRepository,
        membership_repository: MembershipRepository,
        execution_repository: ExecutionRepository = None,
        schedule_repository: ScheduleRepository = None,
    ):
        super().__init__(recipe_repository, execution_repository, schedule_repository)
        self.membership_repository = membership_repository

    async def _has_role(self, user_id: str, scope_id: Optional[str], required_role: Role) -> bool:
        if not user_id:
            return False
        # 无作用域的配方对所有已认证用户开放
        if scope_id is None:
            return True
        role = await self.membership_repository.get_role(scope_id, user_id)
        return role is not None and role.satisfies(required_role)

    async def accessible_scopes(self, user_id: str) -> Optional[List[str]]:
        if not user_id:
            return []
        return await self.membership_repository.list_scopes(user_id)
