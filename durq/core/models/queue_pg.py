from __future__ import annotations
from datetime import datetime
from functools import lru_cache
from typing import Any, Optional
from sqlalchemy import (
    String,
    Text,
    DateTime,
    Integer,
    Index,
    Enum as SQLAlchemyEnum,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from durq.core.defaults import DEFAULT_EVENT_QUEUE_TABLE, DEFAULT_QUEUE_TABLE
from durq.core.types.status import QueueItemStatus
from durq.core.utils.db import is_valid_identifier


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for PostgreSQL models"""

    pass


class QueueItemMixin:
    """
    Columns shared by every queue table.

    - id: str # caller-supplied unique identifier
    - type: str # discriminates the handler that processes the item
    - payload: dict # opaque JSON document, handler-specific
    - status: QueueItemStatus # pending, processing, completed, dead
    - retry_count: int # bumped on every claim, not only on failure
    - max_retries: int # set at enqueue time, never changed
    - visibility_timeout_secs: int # lease length granted on each claim
    - visible_at: datetime # claimable only once NOW() >= visible_at; lease expiry while processing
    - worker_id: str # current lease holder, the fencing token
    - started_at: datetime # last claim
    - completed_at: datetime # completion
    - failed_at: datetime # last failure
    - error_message: str # last failure reason
    - created_at: datetime # insert time
    - updated_at: datetime # last transition
    """

    @declared_attr.directive
    def __table_args__(cls) -> tuple[Any, ...]:
        table = cls.__tablename__  # type: ignore[attr-defined]
        return (
            # candidate scan for claim_next
            Index(f'idx_{table}_status_visible_at', 'status', 'visible_at'),
            # list_by_type, newest first
            Index(f'idx_{table}_type_created_at', 'type', text('created_at DESC')),
        )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb"),
    )

    status: Mapped[QueueItemStatus] = mapped_column(
        SQLAlchemyEnum(
            QueueItemStatus,
            native_enum=False,
            length=20,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=QueueItemStatus.PENDING,
        server_default=text("'pending'"),
    )

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, server_default=text('3'),
    )

    # Lease
    visibility_timeout_secs: Mapped[int] = mapped_column(
        Integer, nullable=False, default=300, server_default=text('300'),
    )
    visible_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    worker_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Transition audit trail
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Metadata; always set by the database clock
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )


class QueueItemModel(QueueItemMixin, Base):
    """General-purpose work queue."""

    __tablename__ = DEFAULT_QUEUE_TABLE


class EventQueueItemModel(QueueItemMixin, Base):
    """Domain event fan-out queue (audit entries, notifications)."""

    __tablename__ = DEFAULT_EVENT_QUEUE_TABLE


@lru_cache(maxsize=None)
def queue_model_for(table_name: str) -> type[QueueItemMixin]:
    """
    Return the mapped model for a queue table, declaring it on first use.

    Every queue shares one schema, so additional queues are new subclasses
    of the mixin registered on the same metadata.
    """
    if not is_valid_identifier(table_name):
        raise ValueError(f'invalid queue table name: {table_name!r}')
    for model in (QueueItemModel, EventQueueItemModel):
        if model.__tablename__ == table_name:
            return model
    class_name = ''.join(part.capitalize() for part in table_name.split('_') if part)
    return type(
        f'{class_name or "Queue"}ItemModel',
        (QueueItemMixin, Base),
        {'__tablename__': table_name},
    )
