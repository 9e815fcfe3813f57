"""
核心组件
"""
from .cron import parse_field, parse_expression, compute_next_run, CronExpression
from .access import Authorizer, AllowAllAuthorizer, MembershipAuthorizer, AccessResult, ResourceType
from .steps import StepExecutor, StepExecutorRegistry, AgentRunner, Notifier
from .engine import ExecutionEngine
from .recipe_store import RecipeStore
from .schedule_registry import ScheduleRegistry
from .dispatcher import ScheduleDispatcher
from .parser import RecipeParser

__all__ = [
    "parse_field",
    "parse_expression",
    "compute_next_run",
    "CronExpression",
    "Authorizer",
    "AllowAllAuthorizer",
    "MembershipAuthorizer",
    "AccessResult",
    "ResourceType",
    "StepExecutor",
    "StepExecutorRegistry",
    "AgentRunner",
    "Notifier",
    "ExecutionEngine",
    "RecipeStore",
    "ScheduleRegistry",
    "ScheduleDispatcher",
    "RecipeParser",
]
