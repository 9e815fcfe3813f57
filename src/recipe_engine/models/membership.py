"""
作用域成员与角色模型
"""
from dataclasses import dataclass
from enum import Enum


class Role(Enum):
    """作用域内角色，owner > editor > viewer"""
    VIEWER = "viewer"
    EDITOR = "editor"
    OWNER = "owner"

    @property
    def level(self) -> int:
        return ROLE_LEVELS[self]

    def satisfies(self, required: "Role") -> bool:
        return self.level >= required.level


ROLE_LEVELS = {
    Role.VIEWER: 1,
    Role.EDITOR: 2,
    Role.OWNER: 3,
}


@dataclass
class Membership:
    """用户在某作用域中的角色"""
    scope_id: str
    user_id: str
    role: Role
