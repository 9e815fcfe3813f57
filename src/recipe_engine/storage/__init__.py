"""
存储层
"""
from .repository import (
    RecipeRepository, ExecutionRepository, ArtifactRepository,
    ScheduleRepository, MembershipRepository,
    InMemoryRecipeRepository, InMemoryExecutionRepository, InMemoryArtifactRepository,
    InMemoryScheduleRepository, InMemoryMembershipRepository,
)

__all__ = [
    "RecipeRepository",
    "ExecutionRepository",
    "ArtifactRepository",
    "ScheduleRepository",
    "MembershipRepository",
    "InMemoryRecipeRepository",
    "InMemoryExecutionRepository",
    "InMemoryArtifactRepository",
    "InMemoryScheduleRepository",
    "InMemoryMembershipRepository",
]
