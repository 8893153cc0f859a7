"""User table — the subset of the account record the billing engine reads."""
from __future__ import annotations

import uuid

from sqlalchemy import Column, String

from src.db.tables import Base, UTCDateTime, utcnow


class UserRow(Base):
    """Customer account. Created by the auth flow; billing only reads it."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), nullable=True, unique=True, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(40), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)

    @property
    def full_name(self) -> str | None:
        if self.first_name and self.last_name:
            return f"{self.first_name} {self.last_name}"
        return None
