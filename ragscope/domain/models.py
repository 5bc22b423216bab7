from __future__ import annotations

from datetime import datetime
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import DateTime, Index, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ragscope.core.config import EMBED_DIM


class Base(DeclarativeBase):
    pass


class VectorRecord(Base):
    __tablename__ = "vector_records"
    __table_args__ = (
        UniqueConstraint("collection", "external_id", name="uq_vector_records_collection_external"),
        # Scope filters hit JSONB keys; GIN keeps containment checks index-backed.
        Index("ix_vector_records_metadata", "metadata_json", postgresql_using="gin"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String, index=True)
    external_id: Mapped[str] = mapped_column(String)
    content: Mapped[str] = mapped_column(Text)
    # Scope fields (tenant_id, workspace_id, user_id, ...) live alongside display metadata.
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBED_DIM))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
