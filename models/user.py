from sqlalchemy import Column, String

from database import Base
from models._types import UTCDateTime, utcnow


class User(Base):
    """Identity created on first authentication or first resolvable purchase."""

    __tablename__ = "users"
    __table_args__ = {"extend_existing": True}

    npub = Column(String(96), primary_key=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
