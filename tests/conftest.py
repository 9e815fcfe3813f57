"""
Pytest 配置和公共 fixtures
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, List

from recipe_engine.config import EngineSettings
from recipe_engine.core import (
    ExecutionEngine, RecipeStore, ScheduleRegistry, ScheduleDispatcher,
    MembershipAuthorizer, StepExecutorRegistry
)
from recipe_engine.integrations import EventBus
from recipe_engine.models import Membership, Role
from recipe_engine.storage.repository import (
    InMemoryRecipeRepository, InMemoryExecutionRepository, InMemoryArtifactRepository,
    InMemoryScheduleRepository, InMemoryMembershipRepository
)
from recipe_engine.storage.sqlalchemy_repository import DatabaseManager


# 2024-01-15 是星期一
FIXED_NOW = datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)

SCOPE = "team-a"
OTHER_SCOPE = "team-b"


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class SleepRecorder:
    """记录等待时长，不真正等待"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float):
        self.calls.append(seconds)


class RecordingAgentRunner:
    """按调用顺序返回预设结果的智能体运行器，结果为异常时抛出"""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def run(self, agent_id, input_data, context):
        self.calls.append((agent_id, input_data))
        if self.results:
            result = self.results.pop(0)
        else:
            result = {"agent_id": agent_id}
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def repositories():
    """全部内存仓库"""
    return {
        "recipes": InMemoryRecipeRepository(),
        "executions": InMemoryExecutionRepository(),
        "artifacts": InMemoryArtifactRepository(),
        "schedules": InMemoryScheduleRepository(),
        "memberships": InMemoryMembershipRepository(),
    }


@pytest.fixture
async def authorizer(repositories) -> MembershipAuthorizer:
    """alice=owner, bob=editor, carol=viewer（team-a）；dave=owner（team-b）"""
    memberships = repositories["memberships"]
    await memberships.add(Membership(SCOPE, "alice", Role.OWNER))
    await memberships.add(Membership(SCOPE, "bob", Role.EDITOR))
    await memberships.add(Membership(SCOPE, "carol", Role.VIEWER))
    await memberships.add(Membership(OTHER_SCOPE, "dave", Role.OWNER))
    return MembershipAuthorizer(
        repositories["recipes"],
        memberships,
        execution_repository=repositories["executions"],
        schedule_repository=repositories["schedules"],
    )


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
async def published(event_bus) -> List[str]:
    """收集事件总线上发布的全部主题"""
    topics = []

    async def collect(event):
        topics.append(event.topic)

    await event_bus.subscribe("*", collect)
    return topics


@pytest.fixture
def agent_runner() -> RecordingAgentRunner:
    return RecordingAgentRunner()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(auto_run=False, retry_delay=1.0, backoff_factor=2.0)


@pytest.fixture
def recipe_store(repositories, authorizer, clock) -> RecipeStore:
    return RecipeStore(
        repositories["recipes"],
        authorizer,
        schedule_repository=repositories["schedules"],
        clock=clock,
    )


@pytest.fixture
def engine(repositories, authorizer, event_bus, settings, clock, sleeper, agent_runner) -> ExecutionEngine:
    """不自动驱动的引擎，测试中显式调用 run_execution"""
    return ExecutionEngine(
        recipe_repository=repositories["recipes"],
        execution_repository=repositories["executions"],
        artifact_repository=repositories["artifacts"],
        authorizer=authorizer,
        step_executor=StepExecutorRegistry(agent_runner=agent_runner, sleep=sleeper),
        event_bus=event_bus,
        settings=settings,
        clock=clock,
        sleep=sleeper,
    )


@pytest.fixture
def registry(repositories, authorizer, clock) -> ScheduleRegistry:
    return ScheduleRegistry(repositories["schedules"], authorizer, clock=clock)


@pytest.fixture
def dispatcher(registry, engine, event_bus, clock) -> ScheduleDispatcher:
    return ScheduleDispatcher(registry, engine, event_bus=event_bus, clock=clock)


@pytest.fixture
def linear_steps() -> list:
    """两步线性配方"""
    return [
        {
            "id": "collect",
            "type": "run_agent",
            "config": {"agent_id": "collector", "input": {"topic": "${topic}"}},
            "next_step_id": "announce",
        },
        {
            "id": "announce",
            "type": "notify",
            "config": {"channel": "ops", "message": "Collected ${topic}"},
        },
    ]


@pytest.fixture
async def test_database() -> AsyncGenerator[DatabaseManager, None]:
    """创建测试数据库"""
    # 使用 SQLite 内存数据库进行测试
    db_manager = DatabaseManager("sqlite+aiosqlite:///:memory:")
    await db_manager.initialize()

    yield db_manager

    await db_manager.close()
