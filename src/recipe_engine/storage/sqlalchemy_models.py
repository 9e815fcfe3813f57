"""
SQLAlchemy 数据库模型定义
"""
from datetime import timezone

from sqlalchemy import (
    Column, String, Text, Boolean, DateTime, JSON, Index, CheckConstraint, PrimaryKeyConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator


Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """以无时区 UTC 存储，读取时补回 UTC 时区"""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class RecipeRecord(Base):
    """配方表"""
    __tablename__ = 'recipes'

    id = Column(String(64), primary_key=True)
    scope_id = Column(String(255), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, default="")
    steps = Column(JSON, nullable=False, default=list)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index('idx_recipes_scope_id', 'scope_id'),
        Index('idx_recipes_updated_at', 'updated_at'),
    )


class ExecutionRecord(Base):
    """执行实例表，配方删除后仍保留"""
    __tablename__ = 'recipe_executions'

    id = Column(String(64), primary_key=True)
    recipe_id = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False)
    current_step_id = Column(String(255), nullable=True)
    context = Column(JSON, default=dict)
    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime, nullable=True)
    error = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'paused', 'awaiting_approval', 'completed', 'failed')",
            name='check_execution_status'
        ),
        Index('idx_executions_recipe_id', 'recipe_id'),
        Index('idx_executions_status', 'status'),
    )


class ArtifactRecord(Base):
    """执行产物表（只插入）"""
    __tablename__ = 'execution_artifacts'

    id = Column(String(64), primary_key=True)
    execution_id = Column(String(64), nullable=False)
    step_id = Column(String(255), nullable=True)
    type = Column(String(32), nullable=False)
    name = Column(String(255), nullable=False)
    content = Column(Text, nullable=False, default="")
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        CheckConstraint("type IN ('file', 'log', 'summary', 'output')", name='check_artifact_type'),
        Index('idx_artifacts_execution_id', 'execution_id'),
    )


class ScheduleRecord(Base):
    """调度规则表"""
    __tablename__ = 'recipe_schedules'

    id = Column(String(64), primary_key=True)
    recipe_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    cron = Column(String(255), nullable=True)
    event_trigger = Column(String(255), nullable=True)
    enabled = Column(Boolean, nullable=False, default=True)
    last_run_at = Column(UTCDateTime, nullable=True)
    next_run_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index('idx_schedules_recipe_id', 'recipe_id'),
        Index('idx_schedules_due', 'enabled', 'next_run_at'),
        Index('idx_schedules_event', 'event_trigger'),
    )


class MembershipRecord(Base):
    """作用域成员表"""
    __tablename__ = 'scope_memberships'

    scope_id = Column(String(255), nullable=False)
    user_id = Column(String(255), nullable=False)
    role = Column(String(32), nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint('scope_id', 'user_id'),
        CheckConstraint("role IN ('viewer', 'editor', 'owner')", name='check_membership_role'),
        Index('idx_memberships_user_id', 'user_id'),
    )
