"""
Client State Tables
SQLAlchemy 2.0 models for the persisted sync-client cache: session row,
confirmed entity records and the bounded notification list.
"""

from typing import Optional
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, Float, Boolean, JSON, Index, func
from .base import Base


class ClientSessionState(Base):
    """Single-row table holding the session credential and the schema version of the cache."""
    __tablename__ = "client_session_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False)
    credential: Mapped[Optional[str]] = mapped_column(String(2048))
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    saved_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f'<ClientSessionState v{self.schema_version} user={self.user_id}>'


class CachedEntity(Base):
    """Last confirmed server state of one entity. Optimistic values are never cached."""
    __tablename__ = "cached_entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    revision: Mapped[float] = mapped_column(Float, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)  # collection order, 0 = head
    fields: Mapped[dict] = mapped_column(JSON, default=dict)

    __table_args__ = (
        Index('ix_cached_entities_kind_entity', 'kind', 'entity_id', unique=True),
    )

    def __repr__(self):
        return f'<CachedEntity {self.kind}:{self.entity_id} rev={self.revision}>'


class CachedNotification(Base):
    __tablename__ = "cached_notifications"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)

    def __repr__(self):
        return f'<CachedNotification {self.id} read={self.read}>'
