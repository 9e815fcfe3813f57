"""
组件装配

API 与 CLI 共用，根据配置选择内存或数据库存储。
"""
import logging
from dataclasses import dataclass
from typing import Optional

from .config import EngineSettings
from .core.access import Authorizer, MembershipAuthorizer
from .core.dispatcher import ScheduleDispatcher
from .core.engine import ExecutionEngine
from .core.recipe_store import RecipeStore
from .core.schedule_registry import ScheduleRegistry
from .core.steps import StepExecutorRegistry, AgentRunner, Notifier
from .integrations.event_bus import EventBus
from .storage.repository import (
    RecipeRepository, ExecutionRepository, ArtifactRepository,
    ScheduleRepository, MembershipRepository,
    InMemoryRecipeRepository, InMemoryExecutionRepository, InMemoryArtifactRepository,
    InMemoryScheduleRepository, InMemoryMembershipRepository,
)
from .storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemyRecipeRepository, SQLAlchemyExecutionRepository,
    SQLAlchemyArtifactRepository, SQLAlchemyScheduleRepository, SQLAlchemyMembershipRepository,
)


logger = logging.getLogger(__name__)


@dataclass
class EngineServices:
    """装配好的引擎组件"""
    settings: EngineSettings
    recipes: RecipeRepository
    executions: ExecutionRepository
    artifacts: ArtifactRepository
    schedules: ScheduleRepository
    memberships: MembershipRepository
    authorizer: Authorizer
    event_bus: EventBus
    recipe_store: RecipeStore
    engine: ExecutionEngine
    registry: ScheduleRegistry
    dispatcher: ScheduleDispatcher
    db_manager: Optional[DatabaseManager] = None

    async def close(self):
        await self.engine.shutdown()
        if self.db_manager is not None:
            await self.db_manager.close()


async def build_services(
    settings: EngineSettings = None,
    authorizer: Authorizer = None,
    agent_runner: AgentRunner = None,
    notifier: Notifier = None,
    clock=None,
) -> EngineServices:
    """按配置创建全部组件，DATABASE_URL 未设置时使用内存存储"""
    settings = settings or EngineSettings.from_env()
    db_manager = None

    if settings.database_url:
        db_manager = DatabaseManager(settings.database_url)
        await db_manager.initialize()
        recipes = SQLAlchemyRecipeRepository(db_manager)
        executions = SQLAlchemyExecutionRepository(db_manager)
        artifacts = SQLAlchemyArtifactRepository(db_manager)
        schedules = SQLAlchemyScheduleRepository(db_manager)
        memberships = SQLAlchemyMembershipRepository(db_manager)
    else:
        logger.warning("DATABASE_URL not set, using in-memory storage")
        recipes = InMemoryRecipeRepository()
        executions = InMemoryExecutionRepository()
        artifacts = InMemoryArtifactRepository()
        schedules = InMemoryScheduleRepository()
        memberships = InMemoryMembershipRepository()

    authorizer = authorizer or MembershipAuthorizer(
        recipes, memberships, execution_repository=executions, schedule_repository=schedules
    )
    event_bus = EventBus()

    engine = ExecutionEngine(
        recipe_repository=recipes,
        execution_repository=executions,
        artifact_repository=artifacts,
        authorizer=authorizer,
        step_executor=StepExecutorRegistry(
            agent_runner=agent_runner,
            notifier=notifier,
            max_wait_ms=settings.max_wait_ms,
            default_wait_ms=settings.default_wait_ms,
        ),
        event_bus=event_bus,
        settings=settings,
        clock=clock,
    )
    registry = ScheduleRegistry(
        schedules, authorizer, clock=clock, horizon_days=settings.search_horizon_days
    )

    return EngineServices(
        settings=settings,
        recipes=recipes,
        executions=executions,
        artifacts=artifacts,
        schedules=schedules,
        memberships=memberships,
        authorizer=authorizer,
        event_bus=event_bus,
        recipe_store=RecipeStore(recipes, authorizer, schedule_repository=schedules, clock=clock),
        engine=engine,
        registry=registry,
        dispatcher=ScheduleDispatcher(registry, engine, event_bus=event_bus, clock=clock),
        db_manager=db_manager,
    )
