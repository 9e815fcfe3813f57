"""
API 请求和响应模型
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class StepTypeEnum(str, Enum):
    """步骤类型枚举（API）"""
    RUN_AGENT = "run_agent"
    WAIT = "wait"
    BRANCH = "branch"
    NOTIFY = "notify"
    HUMAN_APPROVAL = "human_approval"


class ErrorPolicyEnum(str, Enum):
    """失败策略枚举（API）"""
    FAIL = "fail"
    RETRY = "retry"
    SKIP = "skip"


class ExecutionStatusEnum(str, Enum):
    """执行状态枚举（API）"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"


class ArtifactTypeEnum(str, Enum):
    """产物类型枚举（API）"""
    FILE = "file"
    LOG = "log"
    SUMMARY = "summary"
    OUTPUT = "output"


# 配方相关模型

class RecipeStepDefinition(BaseModel):
    """步骤定义"""
    id: str = Field(..., min_length=1, description="步骤ID")
    type: StepTypeEnum = Field(..., description="步骤类型")
    name: str = Field("", description="步骤名称")
    config: Dict[str, Any] = Field(default_factory=dict, description="步骤配置")
    next_step_id: Optional[str] = Field(None, description="下一步骤ID")
    on_error: ErrorPolicyEnum = Field(ErrorPolicyEnum.FAIL, description="失败策略")
    branches: Dict[str, str] = Field(default_factory=dict, description="分支标签到步骤ID的映射")
    retry_policy: Optional[Dict[str, Any]] = Field(None, description="重试策略")


class RecipeCreateRequest(BaseModel):
    """创建配方请求"""
    name: str = Field(..., min_length=1, description="配方名称")
    scope_id: Optional[str] = Field(None, description="所属作用域，为空表示全局")
    description: str = Field("", description="配方描述")
    steps: List[RecipeStepDefinition] = Field(default_factory=list, description="步骤列表")


class RecipeUpdateRequest(BaseModel):
    """更新配方请求，未提供的字段保持不变"""
    name: Optional[str] = Field(None, description="配方名称")
    description: Optional[str] = Field(None, description="配方描述，空字符串表示清空")
    steps: Optional[List[RecipeStepDefinition]] = Field(None, description="整体替换的步骤列表")


class RecipeResponse(BaseModel):
    """配方响应"""
    id: str
    scope_id: Optional[str]
    name: str
    description: str
    steps: List[RecipeStepDefinition]
    created_at: datetime
    updated_at: datetime


# 执行相关模型

class ExecutionStartRequest(BaseModel):
    """启动执行请求"""
    context: Dict[str, Any] = Field(default_factory=dict, description="执行上下文")


class ArtifactResponse(BaseModel):
    """产物响应"""
    id: str
    execution_id: str
    step_id: Optional[str]
    type: ArtifactTypeEnum
    name: str
    content: str
    created_at: datetime


class ArtifactCreateRequest(BaseModel):
    """追加产物请求"""
    step_id: Optional[str] = Field(None, description="关联步骤ID")
    type: ArtifactTypeEnum = Field(..., description="产物类型")
    name: str = Field(..., min_length=1, description="产物名称")
    content: Any = Field("", description="产物内容，非字符串按JSON序列化")


class ExecutionResponse(BaseModel):
    """执行响应"""
    id: str
    recipe_id: str
    status: ExecutionStatusEnum
    current_step_id: Optional[str]
    context: Dict[str, Any]
    started_at: datetime
    completed_at: Optional[datetime]
    error: Optional[str]


class ExecutionDetailResponse(ExecutionResponse):
    """执行详情（含产物）"""
    artifacts: List[ArtifactResponse] = Field(default_factory=list)


class ExecutionCompleteRequest(BaseModel):
    """结束执行请求"""
    error: Optional[str] = Field(None, description="错误信息，为空表示成功")


class ApprovalRequest(BaseModel):
    """审批通过请求"""
    comment: Optional[str] = Field(None, description="审批意见")


class RejectionRequest(BaseModel):
    """审批拒绝请求"""
    reason: Optional[str] = Field(None, description="拒绝原因")


# 调度相关模型

class ScheduleCreateRequest(BaseModel):
    """创建调度规则请求"""
    recipe_id: str = Field(..., description="配方ID")
    name: str = Field(..., min_length=1, description="规则名称")
    cron: Optional[str] = Field(None, description="cron 表达式（UTC）")
    event_trigger: Optional[str] = Field(None, description="触发事件名")
    enabled: bool = Field(True, description="是否启用")


class ScheduleUpdateRequest(BaseModel):
    """更新调度规则请求，未提供的字段保持不变"""
    name: Optional[str] = None
    cron: Optional[str] = Field(None, description="空字符串表示清除")
    event_trigger: Optional[str] = None
    enabled: Optional[bool] = None


class ScheduleResponse(BaseModel):
    """调度规则响应"""
    id: str
    recipe_id: str
    name: str
    cron: Optional[str]
    event_trigger: Optional[str]
    enabled: bool
    last_run_at: Optional[datetime]
    next_run_at: Optional[datetime]
    created_at: datetime


class EventRequest(BaseModel):
    """事件触发请求"""
    payload: Dict[str, Any] = Field(default_factory=dict, description="事件负载")


class TriggeredExecutionsResponse(BaseModel):
    """触发结果"""
    execution_ids: List[str]


# 通用响应

class SuccessResponse(BaseModel):
    """成功响应"""
    success: bool = True
    message: str = ""
