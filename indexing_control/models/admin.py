"""Authenticated operator model."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class AdminUser:
    """An operator already verified against the ``admin_users`` allowlist."""

    id: str
    access_token: str
    email: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email}
