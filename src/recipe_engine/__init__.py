"""
Recipe Workflow Engine - 配方调度与执行引擎
"""

__version__ = "0.1.0"

from .core.engine import ExecutionEngine
from .core.recipe_store import RecipeStore
from .core.schedule_registry import ScheduleRegistry
from .core.dispatcher import ScheduleDispatcher
from .core.parser import RecipeParser
from .core.cron import parse_field, compute_next_run
from .models import Recipe, RecipeStep, Execution, Artifact, Schedule

__all__ = [
    "ExecutionEngine",
    "RecipeStore",
    "ScheduleRegistry",
    "ScheduleDispatcher",
    "RecipeParser",
    "parse_field",
    "compute_next_run",
    "Recipe",
    "RecipeStep",
    "Execution",
    "Artifact",
    "Schedule",
]
