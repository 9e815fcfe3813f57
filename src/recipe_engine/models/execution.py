"""
配方执行模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from enum import Enum
from datetime import datetime

from ..utils import utcnow, new_id, isoformat


class ExecutionStatus(Enum):
    """执行状态"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class ArtifactType(Enum):
    """产物类型"""
    FILE = "file"
    LOG = "log"
    SUMMARY = "summary"
    OUTPUT = "output"


@dataclass
class Execution:
    """配方的一次执行"""
    recipe_id: str
    id: str = field(default_factory=new_id)
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipe_id": self.recipe_id,
            "status": self.status.value,
            "current_step_id": self.current_step_id,
            "context": self.context,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "error": self.error,
        }


@dataclass(frozen=True)
class Artifact:
    """执行产物（创建后不可变）"""
    execution_id: str
    step_id: Optional[str]
    type: ArtifactType
    name: str
    content: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "step_id": self.step_id,
            "type": self.type.value,
            "name": self.name,
            "content": self.content,
            "created_at": isoformat(self.created_at),
        }


@dataclass
class StepResult:
    """单个步骤的执行结果"""
    success: bool
    output: Any = None
    error: Optional[str] = None
    # 分支步骤给出的结果标签
    outcome: Optional[str] = None
    # 为真时执行挂起等待人工审批
    suspend: bool = False

    @classmethod
    def ok(cls, output: Any = None, outcome: str = None) -> "StepResult":
        return cls(success=True, output=output, outcome=outcome)

    @classmethod
    def failed(cls, error: str) -> "StepResult":
        return cls(success=False, error=error)

    @classmethod
    def suspended(cls, output: Any = None) -> "StepResult":
        return cls(success=True, output=output, suspend=True)
