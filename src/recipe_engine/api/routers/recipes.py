"""
配方 API 路由
"""
from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
import logging

from ..models import (
    RecipeCreateRequest, RecipeUpdateRequest, RecipeResponse,
    ExecutionStartRequest, ExecutionResponse, ScheduleResponse, SuccessResponse
)
from ..dependencies import (
    get_recipe_store, get_execution_engine, get_schedule_registry, get_current_user
)


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=RecipeResponse, status_code=status.HTTP_201_CREATED)
async def create_recipe(
    request: RecipeCreateRequest,
    store = Depends(get_recipe_store),
    current_user = Depends(get_current_user)
) -> RecipeResponse:
    """创建配方"""
    recipe = await store.create(
        user_id=current_user["id"],
        name=request.name,
        scope_id=request.scope_id,
        description=request.description,
        steps=[step.model_dump(mode="json") for step in request.steps],
    )
    return RecipeResponse(**recipe.to_dict())


@router.get("", response_model=List[RecipeResponse])
async def list_recipes(
    scope_id: Optional[str] = Query(None, description="作用域ID"),
    store = Depends(get_recipe_store),
    current_user = Depends(get_current_user)
) -> List[RecipeResponse]:
    """列出配方"""
    recipes = await store.list(current_user["id"], scope_id=scope_id)
    return [RecipeResponse(**r.to_dict()) for r in recipes]


@router.get("/{recipe_id}", response_model=RecipeResponse)
async def get_recipe(
    recipe_id: str,
    store = Depends(get_recipe_store),
    current_user = Depends(get_current_user)
) -> RecipeResponse:
    """获取配方"""
    recipe = await store.get(recipe_id, current_user["id"])
    return RecipeResponse(**recipe.to_dict())


@router.patch("/{recipe_id}", response_model=RecipeResponse)
async def update_recipe(
    recipe_id: str,
    request: RecipeUpdateRequest,
    store = Depends(get_recipe_store),
    current_user = Depends(get_current_user)
) -> RecipeResponse:
    """更新配方，仅修改请求中出现的字段"""
    changes = request.model_dump(mode="json", exclude_unset=True)
    recipe = await store.update(recipe_id, current_user["id"], changes)
    return RecipeResponse(**recipe.to_dict())


@router.delete("/{recipe_id}", response_model=SuccessResponse)
async def delete_recipe(
    recipe_id: str,
    store = Depends(get_recipe_store),
    current_user = Depends(get_current_user)
) -> SuccessResponse:
    """删除配方"""
    await store.delete(recipe_id, current_user["id"])
    return SuccessResponse(message=f"Recipe {recipe_id} deleted")


@router.post(
    "/{recipe_id}/executions",
    response_model=ExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def start_execution(
    recipe_id: str,
    request: ExecutionStartRequest,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> ExecutionResponse:
    """启动配方执行"""
    execution = await engine.start_execution(recipe_id, current_user["id"], request.context)
    return ExecutionResponse(**execution.to_dict())


@router.get("/{recipe_id}/executions", response_model=List[ExecutionResponse])
async def list_executions(
    recipe_id: str,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> List[ExecutionResponse]:
    """列出配方的执行实例"""
    executions = await engine.list_executions(recipe_id, current_user["id"])
    return [ExecutionResponse(**e.to_dict()) for e in executions]


@router.get("/{recipe_id}/schedules", response_model=List[ScheduleResponse])
async def list_schedules(
    recipe_id: str,
    registry = Depends(get_schedule_registry),
    current_user = Depends(get_current_user)
) -> List[ScheduleResponse]:
    """列出配方的调度规则"""
    schedules = await registry.list(current_user["id"], recipe_id)
    return [ScheduleResponse(**s.to_dict()) for s in schedules]
