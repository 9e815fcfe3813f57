"""
SQLAlchemy 仓库实现
"""
import logging
from typing import Optional, List, Iterable
from datetime import datetime
from contextlib import asynccontextmanager

from sqlalchemy import select, update, delete, and_, or_, false
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ..models.recipe import Recipe, RecipeStep
from ..models.execution import Execution, ExecutionStatus, Artifact, ArtifactType
from ..models.schedule import Schedule
from ..models.membership import Role, Membership
from .repository import (
    RecipeRepository, ExecutionRepository, ArtifactRepository,
    ScheduleRepository, MembershipRepository
)
from .sqlalchemy_models import (
    RecipeRecord, ExecutionRecord, ArtifactRecord, ScheduleRecord, MembershipRecord, Base
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    def _engine_options(self) -> dict:
        if self.database_url.startswith("sqlite"):
            # 内存库需要共享同一个连接
            if ":memory:" in self.database_url or "mode=memory" in self.database_url:
                return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
            return {}
        return {"pool_size": 20, "max_overflow": 10, "pool_pre_ping": True}

    async def initialize(self):
        """初始化数据库连接"""
        self.engine = create_async_engine(
            self.database_url,
            echo=self.echo,
            **self._engine_options()
        )

        self.async_session_maker = sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # 创建表（开发环境）
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info(f"Database initialized: {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self):
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """获取数据库会话"""
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


class SQLAlchemyRecipeRepository(RecipeRepository):
    """SQLAlchemy 配方仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, recipe: Recipe) -> str:
        async with self.db.get_session() as session:
            session.add(RecipeRecord(
                id=recipe.id,
                scope_id=recipe.scope_id,
                name=recipe.name,
                description=recipe.description,
                steps=[step.to_dict() for step in recipe.steps],
                created_at=recipe.created_at,
                updated_at=recipe.updated_at,
            ))
        return recipe.id

    async def get(self, recipe_id: str) -> Optional[Recipe]:
        async with self.db.get_session() as session:
            record = await session.get(RecipeRecord, recipe_id)
            return self._to_recipe(record) if record else None

    async def list(self, scope_ids: Optional[Iterable[Optional[str]]] = None) -> List[Recipe]:
        query = select(RecipeRecord)
        if scope_ids is not None:
            scope_ids = list(scope_ids)
            named = [s for s in scope_ids if s is not None]
            conditions = []
            if named:
                conditions.append(RecipeRecord.scope_id.in_(named))
            if None in scope_ids:
                conditions.append(RecipeRecord.scope_id.is_(None))
            query = query.where(or_(*conditions) if conditions else false())

        async with self.db.get_session() as session:
            result = await session.execute(query.order_by(RecipeRecord.updated_at.desc()))
            return [self._to_recipe(r) for r in result.scalars().all()]

    async def update(self, recipe: Recipe) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(RecipeRecord)
                .where(RecipeRecord.id == recipe.id)
                .values(
                    name=recipe.name,
                    description=recipe.description,
                    steps=[step.to_dict() for step in recipe.steps],
                    updated_at=recipe.updated_at,
                )
            )
            return result.rowcount > 0

    async def delete(self, recipe_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(delete(RecipeRecord).where(RecipeRecord.id == recipe_id))
            return result.rowcount > 0

    def _to_recipe(self, record: RecipeRecord) -> Recipe:
        return Recipe(
            id=record.id,
            scope_id=record.scope_id,
            name=record.name,
            description=record.description or "",
            steps=[RecipeStep.from_dict(s) for s in record.steps or []],
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class SQLAlchemyExecutionRepository(ExecutionRepository):
    """SQLAlchemy 执行实例仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, execution: Execution) -> str:
        async with self.db.get_session() as session:
            session.add(ExecutionRecord(
                id=execution.id,
                recipe_id=execution.recipe_id,
                status=execution.status.value,
                current_step_id=execution.current_step_id,
                context=execution.context,
                started_at=execution.started_at,
                completed_at=execution.completed_at,
                error=execution.error,
            ))
        return execution.id

    async def get(self, execution_id: str) -> Optional[Execution]:
        async with self.db.get_session() as session:
            record = await session.get(ExecutionRecord, execution_id)
            return self._to_execution(record) if record else None

    async def list_by_recipe(self, recipe_id: str) -> List[Execution]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ExecutionRecord)
                .where(ExecutionRecord.recipe_id == recipe_id)
                .order_by(ExecutionRecord.started_at.desc())
            )
            return [self._to_execution(r) for r in result.scalars().all()]

    async def update(self, execution: Execution) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ExecutionRecord)
                .where(ExecutionRecord.id == execution.id)
                .values(
                    status=execution.status.value,
                    current_step_id=execution.current_step_id,
                    context=execution.context,
                    completed_at=execution.completed_at,
                    error=execution.error,
                )
            )
            return result.rowcount > 0

    def _to_execution(self, record: ExecutionRecord) -> Execution:
        return Execution(
            id=record.id,
            recipe_id=record.recipe_id,
            status=ExecutionStatus(record.status),
            current_step_id=record.current_step_id,
            context=dict(record.context or {}),
            started_at=record.started_at,
            completed_at=record.completed_at,
            error=record.error,
        )


class SQLAlchemyArtifactRepository(ArtifactRepository):
    """SQLAlchemy 产物仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def add(self, artifact: Artifact) -> str:
        async with self.db.get_session() as session:
            session.add(ArtifactRecord(
                id=artifact.id,
                execution_id=artifact.execution_id,
                step_id=artifact.step_id,
                type=artifact.type.value,
                name=artifact.name,
                content=artifact.content,
                created_at=artifact.created_at,
            ))
        return artifact.id

    async def list_by_execution(self, execution_id: str) -> List[Artifact]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ArtifactRecord)
                .where(ArtifactRecord.execution_id == execution_id)
                .order_by(ArtifactRecord.created_at, ArtifactRecord.id)
            )
            return [
                Artifact(
                    id=r.id,
                    execution_id=r.execution_id,
                    step_id=r.step_id,
                    type=ArtifactType(r.type),
                    name=r.name,
                    content=r.content,
                    created_at=r.created_at,
                )
                for r in result.scalars().all()
            ]


class SQLAlchemyScheduleRepository(ScheduleRepository):
    """SQLAlchemy 调度规则仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, schedule: Schedule) -> str:
        async with self.db.get_session() as session:
            session.add(ScheduleRecord(
                id=schedule.id,
                recipe_id=schedule.recipe_id,
                name=schedule.name,
                cron=schedule.cron,
                event_trigger=schedule.event_trigger,
                enabled=schedule.enabled,
                last_run_at=schedule.last_run_at,
                next_run_at=schedule.next_run_at,
                created_at=schedule.created_at,
            ))
        return schedule.id

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        async with self.db.get_session() as session:
            record = await session.get(ScheduleRecord, schedule_id)
            return self._to_schedule(record) if record else None

    async def update(self, schedule: Schedule) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(ScheduleRecord)
                .where(ScheduleRecord.id == schedule.id)
                .values(
                    name=schedule.name,
                    cron=schedule.cron,
                    event_trigger=schedule.event_trigger,
                    enabled=schedule.enabled,
                    last_run_at=schedule.last_run_at,
                    next_run_at=schedule.next_run_at,
                )
            )
            return result.rowcount > 0

    async def delete(self, schedule_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(delete(ScheduleRecord).where(ScheduleRecord.id == schedule_id))
            return result.rowcount > 0

    async def list_by_recipe(self, recipe_id: Optional[str] = None) -> List[Schedule]:
        query = select(ScheduleRecord).order_by(ScheduleRecord.created_at)
        if recipe_id is not None:
            query = query.where(ScheduleRecord.recipe_id == recipe_id)
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return [self._to_schedule(r) for r in result.scalars().all()]

    async def list_due(self, now: datetime) -> List[Schedule]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ScheduleRecord)
                .where(
                    and_(
                        ScheduleRecord.enabled.is_(True),
                        ScheduleRecord.cron.isnot(None),
                        ScheduleRecord.next_run_at.isnot(None),
                        ScheduleRecord.next_run_at <= now,
                    )
                )
                .order_by(ScheduleRecord.next_run_at)
            )
            return [self._to_schedule(r) for r in result.scalars().all()]

    async def list_by_event(self, event_name: str) -> List[Schedule]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ScheduleRecord).where(
                    and_(
                        ScheduleRecord.enabled.is_(True),
                        ScheduleRecord.event_trigger == event_name,
                    )
                )
            )
            return [self._to_schedule(r) for r in result.scalars().all()]

    async def compare_and_set_next_run(
        self,
        schedule_id: str,
        expected: Optional[datetime],
        next_run_at: Optional[datetime],
        last_run_at: Optional[datetime],
    ) -> bool:
        if expected is None:
            guard = ScheduleRecord.next_run_at.is_(None)
        else:
            guard = ScheduleRecord.next_run_at == expected

        async with self.db.get_session() as session:
            result = await session.execute(
                update(ScheduleRecord)
                .where(and_(ScheduleRecord.id == schedule_id, guard))
                .values(next_run_at=next_run_at, last_run_at=last_run_at)
            )
            return result.rowcount == 1

    async def delete_by_recipe(self, recipe_id: str) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(ScheduleRecord).where(ScheduleRecord.recipe_id == recipe_id)
            )
            return result.rowcount

    def _to_schedule(self, record: ScheduleRecord) -> Schedule:
        return Schedule(
            id=record.id,
            recipe_id=record.recipe_id,
            name=record.name,
            cron=record.cron,
            event_trigger=record.event_trigger,
            enabled=bool(record.enabled),
            last_run_at=record.last_run_at,
            next_run_at=record.next_run_at,
            created_at=record.created_at,
        )


class SQLAlchemyMembershipRepository(MembershipRepository):
    """SQLAlchemy 成员仓库实现"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def get_role(self, scope_id: str, user_id: str) -> Optional[Role]:
        async with self.db.get_session() as session:
            record = await session.get(MembershipRecord, (scope_id, user_id))
            return Role(record.role) if record else None

    async def add(self, membership: Membership) -> None:
        async with self.db.get_session() as session:
            await session.merge(MembershipRecord(
                scope_id=membership.scope_id,
                user_id=membership.user_id,
                role=membership.role.value,
            ))

    async def list_scopes(self, user_id: str) -> List[str]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MembershipRecord.scope_id)
                .where(MembershipRecord.user_id == user_id)
                .order_by(MembershipRecord.scope_id)
            )
            return list(result.scalars().all())
