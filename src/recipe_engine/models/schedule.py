"""
调度规则模型
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from datetime import datetime

from ..utils import utcnow, new_id, isoformat


@dataclass
class Schedule:
    """基于cron或事件触发配方执行的规则"""
    recipe_id: str
    name: str
    id: str = field(default_factory=new_id)
    cron: Optional[str] = None
    event_trigger: Optional[str] = None
    enabled: bool = True
    last_run_at: Optional[datetime] = None
    # 派生字段，仅在 cron 非空且启用时有值
    next_run_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipe_id": self.recipe_id,
            "name": self.name,
            "cron": self.cron,
            "event_trigger": self.event_trigger,
            "enabled": self.enabled,
            "last_run_at": isoformat(self.last_run_at),
            "next_run_at": isoformat(self.next_run_at),
            "created_at": isoformat(self.created_at),
        }
