"""
FastAPI 依赖注入
"""
from fastapi import Depends, HTTPException, Request, status
from typing import Dict, Any
import logging

from .state import get_app_state
from ..services import EngineServices


logger = logging.getLogger(__name__)


def get_services() -> EngineServices:
    """获取引擎组件"""
    services = get_app_state().get("services")

    if not services:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Recipe engine not initialized"
            }
        )

    return services


def get_recipe_store(services: EngineServices = Depends(get_services)):
    return services.recipe_store


def get_execution_engine(services: EngineServices = Depends(get_services)):
    return services.engine


def get_schedule_registry(services: EngineServices = Depends(get_services)):
    return services.registry


def get_dispatcher(services: EngineServices = Depends(get_services)):
    return services.dispatcher


def get_current_user(request: Request) -> Dict[str, Any]:
    """获取当前用户（由认证中间件写入）"""
    user = getattr(request.state, "user", None)
    if not user or not user.get("id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "unauthorized",
                "message": "Authentication required"
            }
        )
    return user
