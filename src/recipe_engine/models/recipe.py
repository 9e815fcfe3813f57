"""
配方定义模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from enum import Enum
from datetime import datetime

from ..utils import utcnow, new_id, isoformat, parse_datetime


class StepType(Enum):
    """步骤类型"""
    RUN_AGENT = "run_agent"
    WAIT = "wait"
    BRANCH = "branch"
    NOTIFY = "notify"
    HUMAN_APPROVAL = "human_approval"


class ErrorPolicy(Enum):
    """步骤失败处理策略"""
    FAIL = "fail"      # 执行立即失败
    RETRY = "retry"    # 有限次数重试
    SKIP = "skip"      # 跳过，继续下一步


@dataclass
class RecipeStep:
    """配方步骤"""
    id: str
    type: StepType
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    next_step_id: Optional[str] = None
    on_error: ErrorPolicy = ErrorPolicy.FAIL
    # 分支结果标签 -> 后继步骤ID
    branches: Dict[str, str] = field(default_factory=dict)
    retry_policy: Optional[Dict[str, Any]] = None

    def successor_for(self, outcome: Optional[str]) -> Optional[str]:
        """根据分支结果选择后继步骤，未命中时退回 next_step_id"""
        if outcome is not None and outcome in self.branches:
            return self.branches[outcome]
        return self.next_step_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "config": dict(self.config),
            "next_step_id": self.next_step_id,
            "on_error": self.on_error.value,
            "branches": dict(self.branches),
            "retry_policy": dict(self.retry_policy) if self.retry_policy else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecipeStep":
        """从字典构建步骤，类型或策略非法时抛出 ValueError"""
        return cls(
            id=str(data.get("id", "")),
            type=StepType(data.get("type")),
            name=data.get("name") or "",
            config=dict(data.get("config") or {}),
            next_step_id=data.get("next_step_id") or None,
            on_error=ErrorPolicy(data.get("on_error") or ErrorPolicy.FAIL.value),
            branches={str(k): v for k, v in (data.get("branches") or {}).items()},
            retry_policy=data.get("retry_policy"),
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _retry_policy_errors(step: RecipeStep) -> List[str]:
    """校验重试策略，规则与定义文件的 schema 一致"""
    policy = step.retry_policy
    if not isinstance(policy, dict):
        return [f"Step '{step.id}' retry_policy must be an object"]

    errors = []
    max_retries = policy.get("max_retries", 0)
    if not isinstance(max_retries, int) or isinstance(max_retries, bool) or max_retries < 0:
        errors.append(f"Step '{step.id}' has invalid retry_policy.max_retries")
    for key in ("retry_delay", "max_delay"):
        if key in policy and (not _is_number(policy[key]) or policy[key] < 0):
            errors.append(f"Step '{step.id}' has invalid retry_policy.{key}")
    if "backoff_factor" in policy and (
        not _is_number(policy["backoff_factor"]) or policy["backoff_factor"] < 1
    ):
        errors.append(f"Step '{step.id}' has invalid retry_policy.backoff_factor")
    if "jitter" in policy and not isinstance(policy["jitter"], bool):
        errors.append(f"Step '{step.id}' has invalid retry_policy.jitter")
    return errors


@dataclass
class Recipe:
    """配方：可复用的步骤序列定义"""
    name: str
    id: str = field(default_factory=new_id)
    scope_id: Optional[str] = None
    description: str = ""
    steps: List[RecipeStep] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def first_step_id(self) -> Optional[str]:
        return self.steps[0].id if self.steps else None

    def get_step(self, step_id: str) -> Optional[RecipeStep]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def validate(self) -> List[str]:
        """
        验证配方结构

        Returns:
            错误信息列表，为空表示合法
        """
        errors = []
        if not self.name or not self.name.strip():
            errors.append("Recipe name must not be empty")

        step_ids = set()
        for step in self.steps:
            if not step.id:
                errors.append("Step id must not be empty")
            elif step.id in step_ids:
                errors.append(f"Duplicate step id: {step.id}")
            step_ids.add(step.id)

        for step in self.steps:
            if step.next_step_id and step.next_step_id not in step_ids:
                errors.append(
                    f"Step '{step.id}' references unknown next step '{step.next_step_id}'"
                )
            for label, target in step.branches.items():
                if target not in step_ids:
                    errors.append(
                        f"Step '{step.id}' branch '{label}' references unknown step '{target}'"
                    )
            if step.branches and step.type != StepType.BRANCH:
                errors.append(f"Step '{step.id}' of type '{step.type.value}' cannot declare branches")
            if step.type == StepType.BRANCH and not step.branches and not step.next_step_id:
                errors.append(f"Branch step '{step.id}' needs branches or a next_step_id")
            if step.retry_policy is not None:
                errors.extend(_retry_policy_errors(step))

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scope_id": self.scope_id,
            "name": self.name,
            "description": self.description,
            "steps": [step.to_dict() for step in self.steps],
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recipe":
        recipe = cls(
            name=data.get("name", ""),
            scope_id=data.get("scope_id"),
            description=data.get("description") or "",
            steps=[RecipeStep.from_dict(s) for s in data.get("steps") or []],
        )
        if data.get("id"):
            recipe.id = data["id"]
        if data.get("created_at"):
            recipe.created_at = parse_datetime(data["created_at"])
        if data.get("updated_at"):
            recipe.updated_at = parse_datetime(data["updated_at"])
        return recipe
