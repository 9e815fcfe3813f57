"""
数据模型
"""
from .recipe import Recipe, RecipeStep, StepType, ErrorPolicy
from .execution import Execution, ExecutionStatus, Artifact, ArtifactType, StepResult
from .schedule import Schedule
from .membership import Role, Membership

__all__ = [
    "Recipe",
    "RecipeStep",
    "StepType",
    "ErrorPolicy",
    "Execution",
    "ExecutionStatus",
    "Artifact",
    "ArtifactType",
    "StepResult",
    "Schedule",
    "Role",
    "Membership",
]
