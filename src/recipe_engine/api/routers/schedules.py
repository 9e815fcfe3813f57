"""
调度规则 API 路由
"""
from fastapi import APIRouter, Depends, status
import logging

from ..models import (
    ScheduleCreateRequest, ScheduleUpdateRequest, ScheduleResponse,
    ExecutionResponse, TriggeredExecutionsResponse, SuccessResponse
)
from ..dependencies import get_schedule_registry, get_dispatcher, get_current_user


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=ScheduleResponse, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    request: ScheduleCreateRequest,
    registry = Depends(get_schedule_registry),
    current_user = Depends(get_current_user)
) -> ScheduleResponse:
    """创建调度规则"""
    schedule = await registry.create(
        user_id=current_user["id"],
        recipe_id=request.recipe_id,
        name=request.name,
        cron=request.cron,
        event_trigger=request.event_trigger,
        enabled=request.enabled,
    )
    return ScheduleResponse(**schedule.to_dict())


@router.post("/sweep", response_model=TriggeredExecutionsResponse)
async def process_due_schedules(
    dispatcher = Depends(get_dispatcher),
    current_user = Depends(get_current_user)
) -> TriggeredExecutionsResponse:
    """触发所有到期规则（供外部定时器调用）"""
    executions = await dispatcher.process_due_schedules()
    return TriggeredExecutionsResponse(execution_ids=[e.id for e in executions])


@router.get("/{schedule_id}", response_model=ScheduleResponse)
async def get_schedule(
    schedule_id: str,
    registry = Depends(get_schedule_registry),
    current_user = Depends(get_current_user)
) -> ScheduleResponse:
    """获取调度规则"""
    schedule = await registry.get(schedule_id, current_user["id"])
    return ScheduleResponse(**schedule.to_dict())


@router.patch("/{schedule_id}", response_model=ScheduleResponse)
async def update_schedule(
    schedule_id: str,
    request: ScheduleUpdateRequest,
    registry = Depends(get_schedule_registry),
    current_user = Depends(get_current_user)
) -> ScheduleResponse:
    """更新调度规则，仅修改请求中出现的字段"""
    changes = request.model_dump(exclude_unset=True)
    schedule = await registry.update(schedule_id, current_user["id"], changes)
    return ScheduleResponse(**schedule.to_dict())


@router.delete("/{schedule_id}", response_model=SuccessResponse)
async def delete_schedule(
    schedule_id: str,
    registry = Depends(get_schedule_registry),
    current_user = Depends(get_current_user)
) -> SuccessResponse:
    """删除调度规则"""
    await registry.delete(schedule_id, current_user["id"])
    return SuccessResponse(message=f"Schedule {schedule_id} deleted")


@router.post("/{schedule_id}/enable", response_model=ScheduleResponse)
async def enable_schedule(
    schedule_id: str,
    registry = Depends(get_schedule_registry),
    current_user = Depends(get_current_user)
) -> ScheduleResponse:
    schedule = await registry.enable(schedule_id, current_user["id"])
    return ScheduleResponse(**schedule.to_dict())


@router.post("/{schedule_id}/disable", response_model=ScheduleResponse)
async def disable_schedule(
    schedule_id: str,
    registry = Depends(get_schedule_registry),
    current_user = Depends(get_current_user)
) -> ScheduleResponse:
    schedule = await registry.disable(schedule_id, current_user["id"])
    return ScheduleResponse(**schedule.to_dict())


@router.post(
    "/{schedule_id}/trigger",
    response_model=ExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def trigger_schedule(
    schedule_id: str,
    dispatcher = Depends(get_dispatcher),
    current_user = Depends(get_current_user)
) -> ExecutionResponse:
    """手动触发调度规则"""
    execution = await dispatcher.trigger_schedule(schedule_id, current_user["id"])
    return ExecutionResponse(**execution.to_dict())
