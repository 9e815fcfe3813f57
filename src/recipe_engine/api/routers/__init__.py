"""
API 路由
"""
from . import recipes, executions, schedules, events

__all__ = ["recipes", "executions", "schedules", "events"]
