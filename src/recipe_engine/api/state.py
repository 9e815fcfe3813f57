"""
应用全局状态
"""
from typing import Dict, Any


app_state: Dict[str, Any] = {}


def get_app_state() -> Dict[str, Any]:
    """获取应用状态"""
    return app_state
