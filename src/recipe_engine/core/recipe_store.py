"""
配方存储服务
"""
import logging
from typing import Dict, Any, Optional, List

from ..exceptions import ValidationError
from ..models.recipe import Recipe, RecipeStep
from ..models.membership import Role
from ..storage.repository import RecipeRepository, ScheduleRepository
from ..utils import utcnow
from .access import Authorizer, AllowAllAuthorizer, ResourceType


logger = logging.getLogger(__name__)


# 可通过 update 修改的字段
UPDATABLE_FIELDS = ("name", "description", "steps")


def build_steps(raw_steps: List[Any]) -> List[RecipeStep]:
    """把字典或步骤对象列表规范化为 RecipeStep 列表"""
    steps = []
    for index, raw in enumerate(raw_steps or []):
        if isinstance(raw, RecipeStep):
            steps.append(raw)
            continue
        if not isinstance(raw, dict):
            raise ValidationError(f"Step #{index} must be an object")
        try:
            steps.append(RecipeStep.from_dict(raw))
        except ValueError as e:
            raise ValidationError(f"Step #{index} is invalid: {e}")
    return steps


class RecipeStore:
    """配方的增删改查，授权委托给 Authorizer"""

    def __init__(
        self,
        recipe_repository: RecipeRepository,
        authorizer: Authorizer = None,
        schedule_repository: ScheduleRepository = None,
        clock=None,
    ):
        self.recipe_repository = recipe_repository
        self.authorizer = authorizer or AllowAllAuthorizer(recipe_repository)
        self.schedule_repository = schedule_repository
        self.clock = clock or utcnow

    def _validate(self, recipe: Recipe):
        errors = recipe.validate()
        if errors:
            raise ValidationError("; ".join(errors))

    async def create(
        self,
        user_id: str,
        name: str,
        scope_id: Optional[str] = None,
        description: str = "",
        steps: List[Any] = None,
    ) -> Recipe:
        """创建配方，有作用域时要求 editor 角色"""
        if scope_id:
            await self.authorizer.require(ResourceType.SCOPE, scope_id, user_id, Role.EDITOR)

        now = self.clock()
        recipe = Recipe(
            name=name,
            scope_id=scope_id or None,
            description=description or "",
            steps=build_steps(steps),
            created_at=now,
            updated_at=now,
        )
        self._validate(recipe)

        await self.recipe_repository.save(recipe)
        logger.info(f"Created recipe {recipe.id} ({recipe.name}) with {len(recipe.steps)} steps")
        return recipe

    async def get(self, recipe_id: str, user_id: str) -> Recipe:
        return await self.authorizer.require(ResourceType.RECIPE, recipe_id, user_id, Role.VIEWER)

    async def update(self, recipe_id: str, user_id: str, changes: Dict[str, Any]) -> Recipe:
        """
        更新配方

        未出现在 changes 中的字段保持原值；steps 出现时整体替换。
        description 传空字符串表示清空。
        """
        recipe = await self.authorizer.require(ResourceType.RECIPE, recipe_id, user_id, Role.EDITOR)

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown recipe fields: {', '.join(sorted(unknown))}")

        if "name" in changes:
            recipe.name = changes["name"] or ""
        if "description" in changes:
            recipe.description = changes["description"] or ""
        if "steps" in changes:
            if changes["steps"] is None:
                raise ValidationError("Recipe steps must be a list, use [] to clear them")
            recipe.steps = build_steps(changes["steps"])

        self._validate(recipe)
        recipe.updated_at = self.clock()

        await self.recipe_repository.update(recipe)
        logger.info(f"Updated recipe {recipe.id}: {', '.join(sorted(changes)) or 'no changes'}")
        return recipe

    async def delete(self, recipe_id: str, user_id: str) -> bool:
        """删除配方及其调度规则，要求 owner 角色；历史执行与产物保留"""
        await self.authorizer.require(ResourceType.RECIPE, recipe_id, user_id, Role.OWNER)

        if self.schedule_repository is not None:
            removed = await self.schedule_repository.delete_by_recipe(recipe_id)
            if removed:
                logger.info(f"Removed {removed} schedules of recipe {recipe_id}")

        deleted = await self.recipe_repository.delete(recipe_id)
        logger.info(f"Deleted recipe {recipe_id}")
        return deleted

    async def list(self, user_id: str, scope_id: Optional[str] = None) -> List[Recipe]:
        """
        列出配方，按更新时间倒序

        指定 scope_id 时要求 viewer 角色；否则返回无作用域配方
        以及用户所属全部作用域下的配方。
        """
        if scope_id:
            await self.authorizer.require(ResourceType.SCOPE, scope_id, user_id, Role.VIEWER)
            recipes = await self.recipe_repository.list(scope_ids=[scope_id])
        else:
            scopes = await self.authorizer.accessible_scopes(user_id)
            if scopes is None:
                recipes = await self.recipe_repository.list()
            else:
                recipes = await self.recipe_repository.list(scope_ids=[None, *scopes])

        recipes.sort(key=lambda r: r.updated_at, reverse=True)
        return recipes
