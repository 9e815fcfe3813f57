"""
配方执行引擎

同一执行实例的所有状态转换都在该实例的 asyncio.Lock 内完成；
步骤本身在锁外运行，因此暂停、取消可以在步骤执行期间到达，
并在步骤边界生效。不同执行实例之间互不阻塞。
"""
import asyncio
import copy
import json
import logging
import random
from typing import Dict, Any, Optional, List, Tuple, Iterable

from ..config import EngineSettings
from ..exceptions import NotFoundError, StateTransitionError, ValidationError
from ..models.recipe import Recipe, RecipeStep, ErrorPolicy
from ..models.execution import Execution, ExecutionStatus, Artifact, ArtifactType, StepResult
from ..models.membership import Role
from ..storage.repository import RecipeRepository, ExecutionRepository, ArtifactRepository
from ..integrations import event_bus as topics
from ..integrations.event_bus import EventBus
from ..utils import utcnow
from .access import Authorizer, AllowAllAuthorizer, ResourceType
from .steps import StepExecutorRegistry


logger = logging.getLogger(__name__)


# 上下文中保存各步骤输出的键
STEP_OUTPUTS_KEY = "step_outputs"


def _serialize(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str, ensure_ascii=False)


class ExecutionEngine:
    """配方执行引擎"""

    def __init__(
        self,
        recipe_repository: RecipeRepository,
        execution_repository: ExecutionRepository,
        artifact_repository: ArtifactRepository,
        authorizer: Authorizer = None,
        step_executor: StepExecutorRegistry = None,
        event_bus: EventBus = None,
        settings: EngineSettings = None,
        clock=None,
        sleep=None,
    ):
        self.recipe_repository = recipe_repository
        self.execution_repository = execution_repository
        self.artifact_repository = artifact_repository
        self.settings = settings or EngineSettings()
        self.authorizer = authorizer or AllowAllAuthorizer(recipe_repository, execution_repository)
        self.step_executor = step_executor or StepExecutorRegistry(
            max_wait_ms=self.settings.max_wait_ms,
            default_wait_ms=self.settings.default_wait_ms,
        )
        self.event_bus = event_bus
        self.clock = clock or utcnow
        # 仅用于重试退避
        self.sleep = sleep or asyncio.sleep
        self.auto_run = self.settings.auto_run

        self._locks: Dict[str, asyncio.Lock] = {}
        self._drivers: Dict[str, asyncio.Task] = {}
        # (execution_id, step_id) -> 已重试次数，不持久化
        self._attempts: Dict[Tuple[str, str], int] = {}

    # ------------------------------------------------------------------
    # 创建与查询
    # ------------------------------------------------------------------

    async def start_execution(
        self,
        recipe_id: str,
        user_id: str,
        context: Dict[str, Any] = None,
    ) -> Execution:
        """用户触发执行，要求 editor 角色"""
        recipe = await self.authorizer.require(ResourceType.RECIPE, recipe_id, user_id, Role.EDITOR)

        context = dict(context or {})
        context.setdefault("triggered_by", "manual")
        context["actor_user_id"] = user_id
        return await self._create(recipe, context)

    async def start_execution_internal(
        self,
        recipe_id: str,
        context: Dict[str, Any] = None,
    ) -> Execution:
        """调用方已完成授权的执行入口（调度扫描、事件触发）"""
        recipe = await self.recipe_repository.get(recipe_id)
        if recipe is None:
            raise NotFoundError("recipe", recipe_id)
        return await self._create(recipe, dict(context or {}))

    async def _create(self, recipe: Recipe, context: Dict[str, Any]) -> Execution:
        now = self.clock()
        execution = Execution(
            recipe_id=recipe.id,
            status=ExecutionStatus.RUNNING,
            current_step_id=recipe.first_step_id,
            context=context,
            started_at=now,
        )
        # 空配方直接完成
        if execution.current_step_id is None:
            self._finish(execution, None)

        await self.execution_repository.save(execution)
        logger.info(
            f"Started execution {execution.id} of recipe {recipe.id} "
            f"[triggered_by={context.get('triggered_by', 'unknown')}]"
        )

        await self._publish(topics.EXECUTION_STARTED, execution)
        if execution.is_terminal:
            await self._publish(topics.EXECUTION_COMPLETED, execution)
        else:
            self._schedule_driver(execution.id)
        return execution

    async def get_execution(self, execution_id: str, user_id: str) -> Tuple[Execution, List[Artifact]]:
        """获取执行实例与其产物的快照"""
        execution = await self.authorizer.require(
            ResourceType.EXECUTION, execution_id, user_id, Role.VIEWER
        )
        artifacts = await self.artifact_repository.list_by_execution(execution_id)
        return execution, artifacts

    async def list_executions(self, recipe_id: str, user_id: str) -> List[Execution]:
        await self.authorizer.require(ResourceType.RECIPE, recipe_id, user_id, Role.VIEWER)
        return await self.execution_repository.list_by_recipe(recipe_id)

    async def add_artifact(
        self,
        execution_id: str,
        step_id: Optional[str],
        artifact_type: Any,
        name: str,
        content: Any,
    ) -> Artifact:
        """追加产物，终态执行也可以追加"""
        execution = await self.execution_repository.get(execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        try:
            artifact_type = ArtifactType(artifact_type)
        except ValueError:
            raise ValidationError(f"Unknown artifact type: {artifact_type}")
        if not name:
            raise ValidationError("Artifact name must not be empty")

        artifact = Artifact(
            execution_id=execution_id,
            step_id=step_id,
            type=artifact_type,
            name=name,
            content=_serialize(content),
            created_at=self.clock(),
        )
        await self.artifact_repository.add(artifact)
        return artifact

    # ------------------------------------------------------------------
    # 状态转换
    # ------------------------------------------------------------------

    def _lock(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = self._locks[execution_id] = asyncio.Lock()
        return lock

    async def _load(self, execution_id: str) -> Execution:
        execution = await self.execution_repository.get(execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        return execution

    @staticmethod
    def _guard(execution: Execution, allowed: Iterable[ExecutionStatus], target: ExecutionStatus):
        allowed = tuple(allowed)
        if execution.status not in allowed:
            required = " or ".join(f"'{s.value}'" for s in allowed)
            raise StateTransitionError(
                execution.status.value,
                target.value,
                f"execution must be {required}",
                required_state=",".join(s.value for s in allowed),
            )

    def _finish(self, execution: Execution, error: Optional[str]):
        execution.status = ExecutionStatus.FAILED if error else ExecutionStatus.COMPLETED
        execution.error = error
        execution.completed_at = self.clock()

    async def _transition(
        self,
        execution_id: str,
        allowed: Iterable[ExecutionStatus],
        target: ExecutionStatus,
        error: Optional[str] = None,
    ) -> Execution:
        async with self._lock(execution_id):
            execution = await self._load(execution_id)
            self._guard(execution, allowed, target)
            if target.is_terminal:
                self._finish(execution, error)
            else:
                execution.status = target
            await self.execution_repository.update(execution)

        logger.info(f"Execution {execution_id} -> {execution.status.value}")
        return execution

    async def pause_execution(self, execution_id: str, user_id: str) -> Execution:
        """暂停执行，仅 running 状态可暂停"""
        await self.authorizer.require(ResourceType.EXECUTION, execution_id, user_id, Role.EDITOR)
        execution = await self._transition(
            execution_id, [ExecutionStatus.RUNNING], ExecutionStatus.PAUSED
        )
        await self._publish(topics.EXECUTION_PAUSED, execution)
        return execution

    async def resume_execution(self, execution_id: str, user_id: str) -> Execution:
        """恢复执行，仅 paused 状态可恢复"""
        await self.authorizer.require(ResourceType.EXECUTION, execution_id, user_id, Role.EDITOR)
        execution = await self._transition(
            execution_id, [ExecutionStatus.PAUSED], ExecutionStatus.RUNNING
        )
        await self._publish(topics.EXECUTION_RESUMED, execution)
        self._schedule_driver(execution_id)
        return execution

    async def cancel_execution(self, execution_id: str, user_id: str) -> Execution:
        """取消执行，进行中的步骤结果将被丢弃"""
        await self.authorizer.require(ResourceType.EXECUTION, execution_id, user_id, Role.EDITOR)
        execution = await self._transition(
            execution_id,
            [ExecutionStatus.RUNNING, ExecutionStatus.PAUSED, ExecutionStatus.AWAITING_APPROVAL],
            ExecutionStatus.FAILED,
            error="cancelled",
        )
        self._forget(execution_id)
        await self._publish(topics.EXECUTION_FAILED, execution)
        return execution

    async def complete_execution(self, execution_id: str, error: Optional[str] = None) -> Execution:
        """以成功或错误结束一个 running 状态的执行"""
        target = ExecutionStatus.FAILED if error else ExecutionStatus.COMPLETED
        execution = await self._transition(
            execution_id, [ExecutionStatus.RUNNING], target, error=error
        )
        self._forget(execution_id)
        await self._publish_terminal(execution)
        return execution

    async def approve_execution(
        self,
        execution_id: str,
        user_id: str,
        comment: Optional[str] = None,
    ) -> Execution:
        """批准等待审批的执行，继续到审批步骤的下一步"""
        await self.authorizer.require(ResourceType.EXECUTION, execution_id, user_id, Role.EDITOR)

        async with self._lock(execution_id):
            execution = await self._load(execution_id)
            self._guard(execution, [ExecutionStatus.AWAITING_APPROVAL], ExecutionStatus.RUNNING)

            step_id = execution.current_step_id
            recipe = await self.recipe_repository.get(execution.recipe_id)
            step = recipe.get_step(step_id) if recipe and step_id else None
            output = {"approved": True, "approved_by": user_id, "comment": comment}

            execution.status = ExecutionStatus.RUNNING
            execution.current_step_id = step.next_step_id if step else None
            execution.context.setdefault(STEP_OUTPUTS_KEY, {})[step_id] = output
            await self.execution_repository.update(execution)
            await self._record(execution, step_id, ArtifactType.OUTPUT, f"{step_id} approval", output)

        logger.info(f"Execution {execution_id} approved by {user_id}")
        await self._publish(topics.EXECUTION_RESUMED, execution, approved_by=user_id)
        self._schedule_driver(execution_id)
        return execution

    async def reject_execution(
        self,
        execution_id: str,
        user_id: str,
        reason: Optional[str] = None,
    ) -> Execution:
        """拒绝等待审批的执行，执行失败"""
        await self.authorizer.require(ResourceType.EXECUTION, execution_id, user_id, Role.EDITOR)
        error = f"Rejected by {user_id}" + (f": {reason}" if reason else "")

        async with self._lock(execution_id):
            execution = await self._load(execution_id)
            self._guard(execution, [ExecutionStatus.AWAITING_APPROVAL], ExecutionStatus.FAILED)
            self._finish(execution, error)
            await self.execution_repository.update(execution)
            await self._record(
                execution, execution.current_step_id, ArtifactType.LOG, "approval rejected", error
            )

        logger.info(f"Execution {execution_id} rejected by {user_id}")
        self._forget(execution_id)
        await self._publish(topics.EXECUTION_FAILED, execution)
        return execution

    # ------------------------------------------------------------------
    # 驱动
    # ------------------------------------------------------------------

    def _schedule_driver(self, execution_id: str):
        """auto_run 开启时在后台驱动执行，每个执行最多一个驱动任务"""
        if not self.auto_run:
            return
        existing = self._drivers.get(execution_id)
        if existing is not None and not existing.done():
            return
        task = asyncio.create_task(self.run_execution(execution_id))
        self._drivers[execution_id] = task
        task.add_done_callback(lambda t: self._on_driver_done(execution_id, t))

    def _on_driver_done(self, execution_id: str, task: asyncio.Task):
        if self._drivers.get(execution_id) is task:
            del self._drivers[execution_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Driver for execution {execution_id} crashed: {exc}", exc_info=exc)

    def _forget(self, execution_id: str):
        """清理终态执行的瞬时状态"""
        for key in [k for k in self._attempts if k[0] == execution_id]:
            del self._attempts[key]
        lock = self._locks.get(execution_id)
        if lock is not None and not lock.locked():
            del self._locks[execution_id]

    async def run_execution(self, execution_id: str) -> Execution:
        """
        驱动执行直到停止点

        停止点：终态、暂停、等待审批。

        Returns:
            停止时的执行快照
        """
        while True:
            execution, step, context = await self._prepare_step(execution_id)
            if step is None:
                return execution

            result = await self._invoke(step, context)
            delay = await self._apply_result(execution_id, step, result)
            if delay:
                logger.info(f"Retrying step {step.id} of execution {execution_id} in {delay:.2f}s")
                await self.sleep(delay)

    async def wait_for_execution(self, execution_id: str, timeout: float = None) -> Execution:
        """等待后台驱动任务结束，返回最新快照"""
        while True:
            task = self._drivers.get(execution_id)
            if task is None or task.done():
                break
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                break
        return await self._load(execution_id)

    async def shutdown(self):
        """取消全部后台驱动任务"""
        tasks = [t for t in self._drivers.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._drivers.clear()

    async def _prepare_step(self, execution_id: str) -> Tuple[Execution, Optional[RecipeStep], Optional[Dict[str, Any]]]:
        async with self._lock(execution_id):
            execution = await self._load(execution_id)
            if execution.status != ExecutionStatus.RUNNING:
                return execution, None, None

            if execution.current_step_id is None:
                self._finish(execution, None)
            else:
                recipe = await self.recipe_repository.get(execution.recipe_id)
                step = recipe.get_step(execution.current_step_id) if recipe else None
                if step is not None:
                    return execution, step, copy.deepcopy(execution.context)
                self._finish(
                    execution,
                    f"Step '{execution.current_step_id}' not found in recipe {execution.recipe_id}",
                )
            await self.execution_repository.update(execution)

        self._forget(execution_id)
        await self._publish_terminal(execution)
        return execution, None, None

    async def _invoke(self, step: RecipeStep, context: Dict[str, Any]) -> StepResult:
        try:
            return await self.step_executor.execute(step, context)
        except Exception as e:
            logger.warning(f"Step {step.id} ({step.type.value}) raised: {e}", exc_info=True)
            return StepResult.failed(str(e) or e.__class__.__name__)

    def _retry_policy(self, step: RecipeStep) -> Dict[str, Any]:
        policy = {
            "max_retries": self.settings.max_retries,
            "retry_delay": self.settings.retry_delay,
            "backoff_factor": self.settings.backoff_factor,
            "max_delay": self.settings.max_retry_delay,
            "jitter": False,
        }
        policy.update(step.retry_policy or {})
        return policy

    @staticmethod
    def _retry_delay(policy: Dict[str, Any], attempt: int) -> float:
        delay = policy["retry_delay"] * (policy["backoff_factor"] ** (attempt - 1))
        delay = min(delay, policy["max_delay"])
        if policy.get("jitter"):
            delay *= random.uniform(0.5, 1.0)
        return max(0.0, delay)

    async def _apply_result(self, execution_id: str, step: RecipeStep, result: StepResult) -> Optional[float]:
        """
        根据步骤结果推进执行

        Returns:
            需要重试时返回退避秒数
        """
        events: List[str] = []
        delay = None
        key = (execution_id, step.id)

        async with self._lock(execution_id):
            execution = await self._load(execution_id)
            if execution.is_terminal or execution.current_step_id != step.id:
                logger.info(
                    f"Discarding result of step {step.id} for execution {execution_id} "
                    f"[status={execution.status.value}]"
                )
                return None

            paused = execution.status == ExecutionStatus.PAUSED

            if result.success and result.suspend:
                # 暂停期间不进入审批，恢复后重新执行该步骤
                if paused:
                    return None
                execution.status = ExecutionStatus.AWAITING_APPROVAL
                await self._record(execution, step.id, ArtifactType.LOG, f"{step.id} approval requested", result.output)
                events.append(topics.EXECUTION_AWAITING_APPROVAL)

            elif result.success:
                self._attempts.pop(key, None)
                if result.output is not None:
                    execution.context.setdefault(STEP_OUTPUTS_KEY, {})[step.id] = result.output
                    await self._record(execution, step.id, ArtifactType.OUTPUT, f"{step.name or step.id} output", result.output)
                events.append(topics.STEP_COMPLETED)
                execution.current_step_id = step.successor_for(result.outcome)
                if execution.current_step_id is None and not paused:
                    self._finish(execution, None)

            else:
                error = result.error or "Step failed"
                await self._record(execution, step.id, ArtifactType.LOG, f"{step.name or step.id} error", error)
                events.append(topics.STEP_FAILED)
                logger.warning(
                    f"Step {step.id} of execution {execution_id} failed "
                    f"[on_error={step.on_error.value}]: {error}"
                )

                if step.on_error == ErrorPolicy.SKIP:
                    self._attempts.pop(key, None)
                    execution.current_step_id = step.next_step_id
                    if execution.current_step_id is None and not paused:
                        self._finish(execution, None)
                elif step.on_error == ErrorPolicy.RETRY:
                    policy = self._retry_policy(step)
                    attempt = self._attempts.get(key, 0) + 1
                    if attempt > policy["max_retries"]:
                        logger.error(
                            f"Retry budget exhausted for step {step.id} of execution {execution_id} "
                            f"after {attempt - 1} retries"
                        )
                        self._attempts.pop(key, None)
                        self._finish(execution, error)
                    else:
                        self._attempts[key] = attempt
                        delay = self._retry_delay(policy, attempt)
                else:
                    self._finish(execution, error)

            await self.execution_repository.update(execution)

        for topic in events:
            await self._publish(topic, execution, step_id=step.id)
        if execution.is_terminal:
            self._forget(execution_id)
            await self._publish_terminal(execution)
        return delay

    async def _record(self, execution: Execution, step_id: Optional[str], artifact_type: ArtifactType, name: str, content: Any):
        if content is None:
            return
        await self.artifact_repository.add(Artifact(
            execution_id=execution.id,
            step_id=step_id,
            type=artifact_type,
            name=name,
            content=_serialize(content),
            created_at=self.clock(),
        ))

    async def _publish(self, topic: str, execution: Execution, **extra):
        if self.event_bus is None:
            return
        await self.event_bus.publish(topic, {
            "execution_id": execution.id,
            "recipe_id": execution.recipe_id,
            "status": execution.status.value,
            **extra,
        })

    async def _publish_terminal(self, execution: Execution):
        if execution.status == ExecutionStatus.COMPLETED:
            await self._publish(topics.EXECUTION_COMPLETED, execution)
        else:
            await self._publish(topics.EXECUTION_FAILED, execution, error=execution.error)
