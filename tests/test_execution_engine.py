"""
执行引擎测试
"""
import asyncio
import json
import pytest

from recipe_engine.core import ExecutionEngine, StepExecutorRegistry
from recipe_engine.core.steps import AgentRunner
from recipe_engine.config import EngineSettings
from recipe_engine.exceptions import NotFoundError, StateTransitionError, ValidationError
from recipe_engine.models import ExecutionStatus, ArtifactType

from conftest import SCOPE, RecordingAgentRunner


async def create_recipe(recipe_store, steps, name="Recipe"):
    return await recipe_store.create("bob", name, scope_id=SCOPE, steps=steps)


def artifact_types(artifacts):
    return [(a.step_id, a.type) for a in artifacts]


class TestExecutionLifecycle:
    """执行创建与推进"""

    async def test_start_moves_directly_to_running(self, engine, recipe_store, linear_steps, published):
        recipe = await create_recipe(recipe_store, linear_steps)

        execution = await engine.start_execution(recipe.id, "bob", {"topic": "sales"})

        assert execution.status == ExecutionStatus.RUNNING
        assert execution.current_step_id == "collect"
        assert execution.context["triggered_by"] == "manual"
        assert execution.context["actor_user_id"] == "bob"
        assert published == ["execution.started"]

    async def test_empty_recipe_completes_immediately(self, engine, recipe_store):
        recipe = await create_recipe(recipe_store, [])

        execution = await engine.start_execution(recipe.id, "bob")

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.current_step_id is None
        assert execution.completed_at is not None

    async def test_linear_recipe_runs_to_completion(self, engine, recipe_store, linear_steps, agent_runner):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob", {"topic": "sales"})

        finished = await engine.run_execution(execution.id)

        assert finished.status == ExecutionStatus.COMPLETED
        assert finished.current_step_id is None
        assert finished.error is None
        assert agent_runner.calls == [("collector", {"topic": "sales"})]
        assert finished.context["step_outputs"]["announce"]["message"] == "Collected sales"

        _, artifacts = await engine.get_execution(execution.id, "carol")
        assert artifact_types(artifacts) == [
            ("collect", ArtifactType.OUTPUT),
            ("announce", ArtifactType.OUTPUT),
        ]

    async def test_branch_selects_successor_by_outcome(self, engine, recipe_store):
        steps = [
            {
                "id": "triage",
                "type": "branch",
                "config": {"condition": "priority == high"},
                "branches": {"true": "page", "false": "queue"},
            },
            {"id": "page", "type": "notify", "config": {"message": "page"}},
            {"id": "queue", "type": "notify", "config": {"message": "queue"}},
        ]
        recipe = await create_recipe(recipe_store, steps)

        urgent = await engine.start_execution(recipe.id, "bob", {"priority": "high"})
        routine = await engine.start_execution(recipe.id, "bob", {"priority": "low"})
        urgent = await engine.run_execution(urgent.id)
        routine = await engine.run_execution(routine.id)

        assert set(urgent.context["step_outputs"]) == {"triage", "page"}
        assert set(routine.context["step_outputs"]) == {"triage", "queue"}
        assert urgent.status == routine.status == ExecutionStatus.COMPLETED

    async def test_unmatched_branch_falls_back_to_next_step(self, engine, recipe_store):
        steps = [
            {
                "id": "route",
                "type": "branch",
                "config": {"switch": "region"},
                "branches": {"eu": "eu"},
                "next_step_id": "default",
            },
            {"id": "eu", "type": "notify"},
            {"id": "default", "type": "notify"},
        ]
        recipe = await create_recipe(recipe_store, steps)
        execution = await engine.start_execution(recipe.id, "bob", {"region": "apac"})

        finished = await engine.run_execution(execution.id)

        assert set(finished.context["step_outputs"]) == {"route", "default"}

    async def test_wait_step_uses_injected_sleep(self, engine, recipe_store, sleeper):
        recipe = await create_recipe(recipe_store, [
            {"id": "pause", "type": "wait", "config": {"duration_ms": 60_000}},
        ])
        execution = await engine.start_execution(recipe.id, "bob")

        finished = await engine.run_execution(execution.id)

        assert finished.status == ExecutionStatus.COMPLETED
        assert sleeper.calls == [10.0]

    async def test_list_executions_newest_first(self, engine, recipe_store, linear_steps, clock):
        recipe = await create_recipe(recipe_store, linear_steps)
        first = await engine.start_execution(recipe.id, "bob")
        clock.advance(minutes=1)
        second = await engine.start_execution(recipe.id, "bob")

        listed = await engine.list_executions(recipe.id, "carol")

        assert [e.id for e in listed] == [second.id, first.id]

    async def test_snapshots_are_stable(self, engine, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob", {"topic": "x"})
        await engine.run_execution(execution.id)

        first = await engine.get_execution(execution.id, "carol")
        second = await engine.get_execution(execution.id, "carol")

        assert first == second

    async def test_start_on_deleted_recipe_fails(self, engine, recipe_store):
        recipe = await create_recipe(recipe_store, [])
        await recipe_store.delete(recipe.id, "alice")

        with pytest.raises(NotFoundError):
            await engine.start_execution_internal(recipe.id)


class TestStepFailures:
    """步骤失败策略"""

    async def test_fail_policy_keeps_step_error(self, engine, recipe_store, agent_runner, linear_steps, published):
        agent_runner.results = [RuntimeError("upstream timeout")]
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")

        finished = await engine.run_execution(execution.id)

        assert finished.status == ExecutionStatus.FAILED
        assert finished.error == "upstream timeout"
        assert finished.current_step_id == "collect"
        _, artifacts = await engine.get_execution(execution.id, "bob")
        assert artifact_types(artifacts) == [("collect", ArtifactType.LOG)]
        assert "upstream timeout" in artifacts[0].content
        assert published[-2:] == ["step.failed", "execution.failed"]

    async def test_skip_policy_advances_without_output(self, engine, recipe_store, agent_runner, linear_steps):
        agent_runner.results = [RuntimeError("flaky")]
        linear_steps[0]["on_error"] = "skip"
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")

        finished = await engine.run_execution(execution.id)

        assert finished.status == ExecutionStatus.COMPLETED
        assert "collect" not in finished.context["step_outputs"]
        _, artifacts = await engine.get_execution(execution.id, "bob")
        assert artifact_types(artifacts) == [
            ("collect", ArtifactType.LOG),
            ("announce", ArtifactType.OUTPUT),
        ]

    async def test_retry_policy_retries_with_backoff(self, engine, recipe_store, agent_runner, linear_steps, sleeper):
        agent_runner.results = [RuntimeError("one"), RuntimeError("two"), {"ok": True}]
        linear_steps[0]["on_error"] = "retry"
        linear_steps[0]["retry_policy"] = {"max_retries": 3}
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")

        finished = await engine.run_execution(execution.id)

        assert finished.status == ExecutionStatus.COMPLETED
        assert finished.context["step_outputs"]["collect"] == {"ok": True}
        assert len(agent_runner.calls) == 3
        assert sleeper.calls == [1.0, 2.0]

    async def test_retry_budget_is_bounded(self, engine, recipe_store, agent_runner, linear_steps, sleeper):
        agent_runner.results = [RuntimeError(f"attempt {i}") for i in range(1, 10)]
        linear_steps[0]["on_error"] = "retry"
        linear_steps[0]["retry_policy"] = {"max_retries": 2, "retry_delay": 0.5, "max_delay": 0.75}
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")

        finished = await engine.run_execution(execution.id)

        assert finished.status == ExecutionStatus.FAILED
        assert finished.error == "attempt 3"
        assert len(agent_runner.calls) == 3
        assert sleeper.calls == [0.5, 0.75]

    async def test_invalid_condition_fails_step(self, engine, recipe_store):
        recipe = await create_recipe(recipe_store, [
            {"id": "check", "type": "branch", "config": {"condition": "?? nope"}, "next_step_id": "end"},
            {"id": "end", "type": "notify"},
        ])
        execution = await engine.start_execution(recipe.id, "bob")

        finished = await engine.run_execution(execution.id)

        assert finished.status == ExecutionStatus.FAILED
        assert "Unsupported condition" in finished.error


class TestStateTransitions:
    """状态转换守卫"""

    async def test_pause_and_resume(self, engine, recipe_store, linear_steps, published):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")

        paused = await engine.pause_execution(execution.id, "bob")
        assert paused.status == ExecutionStatus.PAUSED

        # 暂停状态下驱动不会推进
        stalled = await engine.run_execution(execution.id)
        assert stalled.status == ExecutionStatus.PAUSED
        assert stalled.current_step_id == "collect"

        resumed = await engine.resume_execution(execution.id, "bob")
        assert resumed.status == ExecutionStatus.RUNNING
        finished = await engine.run_execution(execution.id)
        assert finished.status == ExecutionStatus.COMPLETED
        assert published[:3] == ["execution.started", "execution.paused", "execution.resumed"]

    async def test_pause_non_running_conflicts_without_mutation(self, engine, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")
        await engine.pause_execution(execution.id, "bob")
        before, _ = await engine.get_execution(execution.id, "bob")

        with pytest.raises(StateTransitionError) as exc_info:
            await engine.pause_execution(execution.id, "bob")

        after, _ = await engine.get_execution(execution.id, "bob")
        assert after == before
        assert exc_info.value.status_code == 409
        assert exc_info.value.current_state == "paused"
        assert exc_info.value.required_state == "running"

    async def test_resume_non_paused_conflicts_without_mutation(self, engine, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")
        before, _ = await engine.get_execution(execution.id, "bob")

        with pytest.raises(StateTransitionError, match="'running' to 'running'"):
            await engine.resume_execution(execution.id, "bob")

        after, _ = await engine.get_execution(execution.id, "bob")
        assert after == before

    async def test_complete_execution(self, engine, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        ok = await engine.start_execution(recipe.id, "bob")
        broken = await engine.start_execution(recipe.id, "bob")

        ok = await engine.complete_execution(ok.id)
        broken = await engine.complete_execution(broken.id, error="external failure")

        assert ok.status == ExecutionStatus.COMPLETED
        assert broken.status == ExecutionStatus.FAILED
        assert broken.error == "external failure"
        with pytest.raises(StateTransitionError):
            await engine.complete_execution(ok.id)

    async def test_cancel(self, engine, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")
        await engine.pause_execution(execution.id, "bob")

        cancelled = await engine.cancel_execution(execution.id, "bob")

        assert cancelled.status == ExecutionStatus.FAILED
        assert cancelled.error == "cancelled"
        with pytest.raises(StateTransitionError):
            await engine.cancel_execution(execution.id, "bob")

    async def test_transitions_require_editor(self, engine, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")

        with pytest.raises(NotFoundError):
            await engine.start_execution(recipe.id, "carol")
        with pytest.raises(NotFoundError):
            await engine.pause_execution(execution.id, "carol")
        with pytest.raises(NotFoundError):
            await engine.get_execution(execution.id, "dave")

        # 查看者可以读取
        snapshot, _ = await engine.get_execution(execution.id, "carol")
        assert snapshot.id == execution.id


class TestHumanApproval:
    """人工审批"""

    @pytest.fixture
    def approval_steps(self):
        return [
            {"id": "draft", "type": "run_agent", "next_step_id": "review"},
            {"id": "review", "type": "human_approval", "config": {"approvers": ["alice"]}, "next_step_id": "publish"},
            {"id": "publish", "type": "notify", "config": {"message": "published"}},
        ]

    async def test_approve_continues(self, engine, recipe_store, approval_steps):
        recipe = await create_recipe(recipe_store, approval_steps)
        execution = await engine.start_execution(recipe.id, "bob")

        waiting = await engine.run_execution(execution.id)
        assert waiting.status == ExecutionStatus.AWAITING_APPROVAL
        assert waiting.current_step_id == "review"

        approved = await engine.approve_execution(execution.id, "alice", "looks good")
        assert approved.status == ExecutionStatus.RUNNING
        assert approved.current_step_id == "publish"
        assert approved.context["step_outputs"]["review"]["approved_by"] == "alice"

        finished = await engine.run_execution(execution.id)
        assert finished.status == ExecutionStatus.COMPLETED

    async def test_reject_fails(self, engine, recipe_store, approval_steps):
        recipe = await create_recipe(recipe_store, approval_steps)
        execution = await engine.start_execution(recipe.id, "bob")
        await engine.run_execution(execution.id)

        rejected = await engine.reject_execution(execution.id, "alice", "not yet")

        assert rejected.status == ExecutionStatus.FAILED
        assert rejected.error == "Rejected by alice: not yet"
        _, artifacts = await engine.get_execution(execution.id, "bob")
        assert artifacts[-1].name == "approval rejected"

    async def test_approve_requires_awaiting_state(self, engine, recipe_store, approval_steps):
        recipe = await create_recipe(recipe_store, approval_steps)
        execution = await engine.start_execution(recipe.id, "bob")

        with pytest.raises(StateTransitionError):
            await engine.approve_execution(execution.id, "alice")
        with pytest.raises(StateTransitionError):
            await engine.reject_execution(execution.id, "alice")

    async def test_pause_does_not_apply_to_awaiting_approval(self, engine, recipe_store, approval_steps):
        recipe = await create_recipe(recipe_store, approval_steps)
        execution = await engine.start_execution(recipe.id, "bob")
        await engine.run_execution(execution.id)

        with pytest.raises(StateTransitionError):
            await engine.pause_execution(execution.id, "bob")


class GatedAgentRunner(AgentRunner):
    """在外部放行前阻塞的智能体"""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, agent_id, input_data, context):
        self.started.set()
        await self.release.wait()
        return {"agent_id": agent_id}


class TestInFlightSteps:
    """步骤执行期间到达的状态变更"""

    @pytest.fixture
    def gate(self):
        return GatedAgentRunner()

    @pytest.fixture
    def gated_engine(self, repositories, authorizer, clock, sleeper, gate):
        return ExecutionEngine(
            recipe_repository=repositories["recipes"],
            execution_repository=repositories["executions"],
            artifact_repository=repositories["artifacts"],
            authorizer=authorizer,
            step_executor=StepExecutorRegistry(agent_runner=gate, sleep=sleeper),
            settings=EngineSettings(auto_run=False),
            clock=clock,
            sleep=sleeper,
        )

    async def test_cancel_discards_in_flight_result(self, gated_engine, gate, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await gated_engine.start_execution(recipe.id, "bob")

        driver = asyncio.create_task(gated_engine.run_execution(execution.id))
        await gate.started.wait()
        await gated_engine.cancel_execution(execution.id, "bob")
        gate.release.set()
        finished = await driver

        assert finished.status == ExecutionStatus.FAILED
        assert finished.error == "cancelled"
        _, artifacts = await gated_engine.get_execution(execution.id, "bob")
        assert artifacts == []

    async def test_pause_takes_effect_at_step_boundary(self, gated_engine, gate, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await gated_engine.start_execution(recipe.id, "bob")

        driver = asyncio.create_task(gated_engine.run_execution(execution.id))
        await gate.started.wait()
        await gated_engine.pause_execution(execution.id, "bob")
        gate.release.set()
        stopped = await driver

        assert stopped.status == ExecutionStatus.PAUSED
        assert stopped.current_step_id == "announce"
        assert "collect" in stopped.context["step_outputs"]

        await gated_engine.resume_execution(execution.id, "bob")
        finished = await gated_engine.run_execution(execution.id)
        assert finished.status == ExecutionStatus.COMPLETED

    async def test_wait_blocks_only_its_own_execution(self, gated_engine, gate, recipe_store, linear_steps):
        blocked = await create_recipe(recipe_store, linear_steps, name="Blocked")
        free = await create_recipe(recipe_store, [{"id": "only", "type": "notify"}], name="Free")
        blocked_execution = await gated_engine.start_execution(blocked.id, "bob")
        free_execution = await gated_engine.start_execution(free.id, "bob")

        driver = asyncio.create_task(gated_engine.run_execution(blocked_execution.id))
        await gate.started.wait()
        finished = await gated_engine.run_execution(free_execution.id)

        assert finished.status == ExecutionStatus.COMPLETED
        gate.release.set()
        assert (await driver).status == ExecutionStatus.COMPLETED


class TestArtifacts:
    """产物追加"""

    async def test_add_artifact_serializes_content(self, engine, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")
        await engine.complete_execution(execution.id)

        # 终态执行也允许追加
        artifact = await engine.add_artifact(execution.id, None, "summary", "report", {"rows": 3})

        assert artifact.type == ArtifactType.SUMMARY
        assert json.loads(artifact.content) == {"rows": 3}
        _, artifacts = await engine.get_execution(execution.id, "bob")
        assert artifacts == [artifact]

    async def test_add_artifact_validation(self, engine, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")

        with pytest.raises(ValidationError):
            await engine.add_artifact(execution.id, None, "video", "clip", "...")
        with pytest.raises(ValidationError):
            await engine.add_artifact(execution.id, None, "log", "", "...")
        with pytest.raises(NotFoundError):
            await engine.add_artifact("missing", None, "log", "x", "...")

    async def test_artifacts_are_immutable(self, engine, recipe_store, linear_steps):
        recipe = await create_recipe(recipe_store, linear_steps)
        execution = await engine.start_execution(recipe.id, "bob")
        artifact = await engine.add_artifact(execution.id, None, "log", "note", "text")

        with pytest.raises(AttributeError):
            artifact.content = "changed"


class TestBackgroundDriver:
    """auto_run 模式下的后台驱动"""

    async def test_auto_run_drives_to_completion(self, repositories, authorizer, recipe_store, linear_steps):
        engine = ExecutionEngine(
            recipe_repository=repositories["recipes"],
            execution_repository=repositories["executions"],
            artifact_repository=repositories["artifacts"],
            authorizer=authorizer,
            step_executor=StepExecutorRegistry(agent_runner=RecordingAgentRunner()),
        )
        recipe = await create_recipe(recipe_store, linear_steps)

        execution = await engine.start_execution(recipe.id, "bob")
        finished = await engine.wait_for_execution(execution.id, timeout=5)

        assert finished.status == ExecutionStatus.COMPLETED
        await engine.shutdown()
