"""Base model and mixins for all SQLAlchemy models.

Provides:
- Base: Declarative base class for all models
- IntegrationMixin: UUID primary key, indexed integration_id, and timestamps

Every model inherits from Base. The integration_id column is indexed for
efficient per-integration queries.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, String, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all InvoiceSync models."""
    pass


class IntegrationMixin:
    """Mixin providing per-integration scoping and standard audit columns.

    Adds:
    - id: UUID primary key (auto-generated)
    - integration_id: Indexed string identifying the connected platform account
    - created_at: Timestamp set on insert
    - updated_at: Timestamp updated on every change
    """

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    integration_id: Mapped[str] = mapped_column(
        String(64),
        index=True,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
