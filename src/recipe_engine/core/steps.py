"""
步骤执行器

每种步骤类型一个执行器，统一返回 StepResult。
执行器内部抛出的异常由引擎捕获，并按步骤的 on_error 策略处理。
"""
import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

import yaml

from ..config import DEFAULT_MAX_WAIT_MS, DEFAULT_WAIT_MS
from ..models.recipe import RecipeStep, StepType
from ..models.execution import StepResult


logger = logging.getLogger(__name__)


_MISSING = object()
_TEMPLATE_RE = re.compile(r"\$\{([^}]+)\}")
_CONDITION_RE = re.compile(
    r"^\s*(?P<path>[A-Za-z_][\w.]*)\s*(?:(?P<op>==|!=|>=|<=|>|<)\s*(?P<literal>.+?))?\s*$"
)


def resolve_path(context: Dict[str, Any], path: str, default: Any = None) -> Any:
    """按点分路径读取上下文中的值，支持列表下标"""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def render_value(value: Any, context: Dict[str, Any]) -> Any:
    """
    渲染 ${path} 模板

    整个字符串就是一个模板时保留原始类型，否则做字符串替换。
    """
    if isinstance(value, dict):
        return {k: render_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, context) for v in value]
    if not isinstance(value, str):
        return value

    whole = _TEMPLATE_RE.fullmatch(value.strip())
    if whole:
        return resolve_path(context, whole.group(1).strip())
    return _TEMPLATE_RE.sub(
        lambda m: str(resolve_path(context, m.group(1).strip(), "")), value
    )


def _parse_literal(text: str) -> Any:
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def evaluate_condition(condition: str, context: Dict[str, Any]) -> bool:
    """
    计算分支条件

    支持 ``path`` （真值判断）和 ``path <op> literal``，
    op 为 == != > >= < <=，literal 按 YAML 标量解析。
    """
    match = _CONDITION_RE.match(condition or "")
    if not match:
        raise ValueError(f"Unsupported condition: {condition!r}")

    left = resolve_path(context, match.group("path"))
    op = match.group("op")
    if op is None:
        return bool(left)

    right = _parse_literal(match.group("literal"))
    if op == "==":
        return left == right
    if op == "!=":
        return left != right

    try:
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
        if op == "<":
            return left < right
        return left <= right
    except TypeError:
        raise ValueError(f"Cannot compare {left!r} {op} {right!r} in condition {condition!r}")


def outcome_label(value: Any) -> str:
    """把任意值转换为分支结果标签"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


class AgentRunner(ABC):
    """智能体运行接口"""

    @abstractmethod
    async def run(self, agent_id: Optional[str], input_data: Dict[str, Any], context: Dict[str, Any]) -> Any:
        pass


class SimulatedAgentRunner(AgentRunner):
    """模拟智能体运行（本地与测试）"""

    async def run(self, agent_id: Optional[str], input_data: Dict[str, Any], context: Dict[str, Any]) -> Any:
        logger.info(f"Simulating agent run: {agent_id}")
        return {"message": "Agent step simulated", "agent_id": agent_id, "input": input_data}


class Notifier(ABC):
    """通知发送接口"""

    @abstractmethod
    async def send(self, channel: Optional[str], message: str, context: Dict[str, Any]) -> None:
        pass


class LoggingNotifier(Notifier):
    """把通知写入日志"""

    async def send(self, channel: Optional[str], message: str, context: Dict[str, Any]) -> None:
        logger.info(f"Notification [{channel or 'default'}]: {message}")


class StepExecutor:
    """步骤执行器基类"""

    async def execute(self, step: RecipeStep, context: Dict[str, Any]) -> StepResult:
        """执行步骤"""
        raise NotImplementedError


class RunAgentStepExecutor(StepExecutor):
    """智能体步骤执行器"""

    def __init__(self, agent_runner: AgentRunner = None):
        self.agent_runner = agent_runner or SimulatedAgentRunner()

    async def execute(self, step: RecipeStep, context: Dict[str, Any]) -> StepResult:
        agent_input = render_value(step.config.get("input", {}), context)
        output = await self.agent_runner.run(step.config.get("agent_id"), agent_input, context)
        return StepResult.ok(output)


class WaitStepExecutor(StepExecutor):
    """等待步骤执行器，等待时长不超过 max_wait_ms"""

    def __init__(
        self,
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        default_wait_ms: int = DEFAULT_WAIT_MS,
        sleep: Callable[[float], Awaitable[Any]] = None,
    ):
        self.max_wait_ms = max_wait_ms
        self.default_wait_ms = default_wait_ms
        self.sleep = sleep or asyncio.sleep

    def effective_duration_ms(self, step: RecipeStep) -> int:
        configured = step.config.get("duration_ms", step.config.get("durationMs"))
        try:
            duration = int(configured) if configured is not None else self.default_wait_ms
        except (TypeError, ValueError):
            raise ValueError(f"Invalid wait duration: {configured!r}")
        return max(0, min(duration, self.max_wait_ms))

    async def execute(self, step: RecipeStep, context: Dict[str, Any]) -> StepResult:
        duration_ms = self.effective_duration_ms(step)
        await self.sleep(duration_ms / 1000)
        return StepResult.ok({"waited_ms": duration_ms})


class BranchStepExecutor(StepExecutor):
    """分支步骤执行器"""

    async def execute(self, step: RecipeStep, context: Dict[str, Any]) -> StepResult:
        if "switch" in step.config:
            label = outcome_label(resolve_path(context, str(step.config["switch"])))
        elif step.config.get("condition"):
            label = outcome_label(evaluate_condition(step.config["condition"], context))
        else:
            label = "true"
        return StepResult.ok({"branch": label}, outcome=label)


class NotifyStepExecutor(StepExecutor):
    """通知步骤执行器，发送一次，失败直接抛出"""

    def __init__(self, notifier: Notifier = None):
        self.notifier = notifier or LoggingNotifier()

    async def execute(self, step: RecipeStep, context: Dict[str, Any]) -> StepResult:
        message = render_value(step.config.get("message", ""), context)
        channel = step.config.get("channel")
        await self.notifier.send(channel, message, context)
        return StepResult.ok({"notified": True, "message": message, "channel": channel})


class HumanApprovalStepExecutor(StepExecutor):
    """人工审批步骤执行器"""

    async def execute(self, step: RecipeStep, context: Dict[str, Any]) -> StepResult:
        if step.config.get("auto_approve"):
            return StepResult.ok({"approved": True, "auto_approved": True})
        return StepResult.suspended({
            "approval_requested": True,
            "approvers": list(step.config.get("approvers", [])),
            "prompt": render_value(step.config.get("prompt", ""), context),
        })


class StepExecutorRegistry:
    """按步骤类型分发的执行器注册表"""

    def __init__(
        self,
        agent_runner: AgentRunner = None,
        notifier: Notifier = None,
        max_wait_ms: int = DEFAULT_MAX_WAIT_MS,
        default_wait_ms: int = DEFAULT_WAIT_MS,
        sleep: Callable[[float], Awaitable[Any]] = None,
    ):
        self.executors: Dict[StepType, StepExecutor] = {
            StepType.RUN_AGENT: RunAgentStepExecutor(agent_runner),
            StepType.WAIT: WaitStepExecutor(max_wait_ms, default_wait_ms, sleep),
            StepType.BRANCH: BranchStepExecutor(),
            StepType.NOTIFY: NotifyStepExecutor(notifier),
            StepType.HUMAN_APPROVAL: HumanApprovalStepExecutor(),
        }

    def register(self, step_type: StepType, executor: StepExecutor):
        self.executors[step_type] = executor

    async def execute(self, step: RecipeStep, context: Dict[str, Any]) -> StepResult:
        step_type = step.type.value if isinstance(step.type, StepType) else step.type
        executor = self.executors.get(step.type)
        if executor is None:
            return StepResult.failed(f"Unknown step type: {step_type}")
        return await executor.execute(step, context)
