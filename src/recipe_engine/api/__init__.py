"""
Recipe Workflow Engine REST API
"""
from .app import app

__all__ = ["app"]
