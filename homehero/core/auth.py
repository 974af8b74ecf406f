from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    CONSUMER = "CONSUMER"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True)
class Principal:
    user_id: int
    role: Role
    email_verified: bool = False

    def require_role(self, *allowed: Role) -> None:
        if self.role not in allowed:
            names = sorted(role.value for role in allowed)
            raise PermissionError(f"role {self.role.value} not permitted; requires one of {names}")


def parse_role(value: object) -> Role:
    if isinstance(value, str):
        try:
            return Role(value.strip().upper())
        except ValueError:
            return Role.UNKNOWN
    return Role.UNKNOWN
