"""
事件触发 API 路由
"""
from fastapi import APIRouter, Depends, status
import logging

from ..models import EventRequest, TriggeredExecutionsResponse
from ..dependencies import get_dispatcher, get_current_user


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post(
    "/{event_name}",
    response_model=TriggeredExecutionsResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def emit_event(
    event_name: str,
    request: EventRequest,
    dispatcher = Depends(get_dispatcher),
    current_user = Depends(get_current_user)
) -> TriggeredExecutionsResponse:
    """发出事件，启动所有订阅该事件的调度规则"""
    logger.info(f"Event '{event_name}' emitted by {current_user['id']}")
    executions = await dispatcher.emit_event(event_name, request.payload)
    return TriggeredExecutionsResponse(execution_ids=[e.id for e in executions])
