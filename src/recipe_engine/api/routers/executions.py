"""
执行实例 API 路由
"""
from fastapi import APIRouter, Depends, status
import logging

from ..models import (
    ExecutionResponse, ExecutionDetailResponse, ArtifactResponse, ArtifactCreateRequest,
    ExecutionCompleteRequest, ApprovalRequest, RejectionRequest
)
from ..dependencies import get_execution_engine, get_current_user
from ...core.access import ResourceType
from ...models.membership import Role


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(
    execution_id: str,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> ExecutionDetailResponse:
    """获取执行详情及产物"""
    execution, artifacts = await engine.get_execution(execution_id, current_user["id"])
    return ExecutionDetailResponse(
        **execution.to_dict(),
        artifacts=[ArtifactResponse(**a.to_dict()) for a in artifacts]
    )


@router.post("/{execution_id}/pause", response_model=ExecutionResponse)
async def pause_execution(
    execution_id: str,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> ExecutionResponse:
    """暂停执行"""
    execution = await engine.pause_execution(execution_id, current_user["id"])
    return ExecutionResponse(**execution.to_dict())


@router.post("/{execution_id}/resume", response_model=ExecutionResponse)
async def resume_execution(
    execution_id: str,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> ExecutionResponse:
    """恢复执行"""
    execution = await engine.resume_execution(execution_id, current_user["id"])
    return ExecutionResponse(**execution.to_dict())


@router.post("/{execution_id}/cancel", response_model=ExecutionResponse)
async def cancel_execution(
    execution_id: str,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> ExecutionResponse:
    """取消执行"""
    execution = await engine.cancel_execution(execution_id, current_user["id"])
    return ExecutionResponse(**execution.to_dict())


@router.post("/{execution_id}/approve", response_model=ExecutionResponse)
async def approve_execution(
    execution_id: str,
    request: ApprovalRequest,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> ExecutionResponse:
    """审批通过"""
    execution = await engine.approve_execution(execution_id, current_user["id"], request.comment)
    return ExecutionResponse(**execution.to_dict())


@router.post("/{execution_id}/reject", response_model=ExecutionResponse)
async def reject_execution(
    execution_id: str,
    request: RejectionRequest,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> ExecutionResponse:
    """审批拒绝"""
    execution = await engine.reject_execution(execution_id, current_user["id"], request.reason)
    return ExecutionResponse(**execution.to_dict())


@router.post("/{execution_id}/complete", response_model=ExecutionResponse)
async def complete_execution(
    execution_id: str,
    request: ExecutionCompleteRequest,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> ExecutionResponse:
    """结束执行（外部驱动的执行使用）"""
    await engine.authorizer.require(
        ResourceType.EXECUTION, execution_id, current_user["id"], Role.EDITOR
    )
    execution = await engine.complete_execution(execution_id, request.error)
    return ExecutionResponse(**execution.to_dict())


@router.post(
    "/{execution_id}/artifacts",
    response_model=ArtifactResponse,
    status_code=status.HTTP_201_CREATED
)
async def add_artifact(
    execution_id: str,
    request: ArtifactCreateRequest,
    engine = Depends(get_execution_engine),
    current_user = Depends(get_current_user)
) -> ArtifactResponse:
    """追加执行产物"""
    await engine.authorizer.require(
        ResourceType.EXECUTION, execution_id, current_user["id"], Role.EDITOR
    )
    artifact = await engine.add_artifact(
        execution_id, request.step_id, request.type.value, request.name, request.content
    )
    return ArtifactResponse(**artifact.to_dict())
