from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from ._fields import as_int, pick


@dataclass(frozen=True, slots=True)
class EnrolledUser:
    """A user enrolled on the terminal."""

    user_id: int
    name: str
    role: int = 0

    @classmethod
    def from_raw(cls, raw: Any) -> "EnrolledUser":
        """Build from a pyzk ``User`` or a ``{userId, name, role}`` mapping."""
        user_id = pick(raw, "user_id", "userId", "uid")
        if user_id is None:
            raise ValueError("user record has no user id")
        return cls(
            user_id=as_int(user_id),
            name=str(pick(raw, "name", default="")),
            role=as_int(pick(raw, "role", "privilege", default=0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "name": self.name, "role": self.role}
