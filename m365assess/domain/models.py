from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres; plain JSON keeps the models usable on SQLite test databases.
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_name: Mapped[str] = mapped_column(String)
    # Stored lowercased. Migration 0001 adds a unique index on lower(tenant_domain)
    # for non-deleted rows; POST /customers checks first to answer 409.
    tenant_domain: Mapped[str] = mapped_column(String, index=True)
    # Resolved tenant GUID, or the domain when discovery could not resolve it.
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    contact_email: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # active | inactive | deleted
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    # pending | consented | denied
    consent_status: Mapped[str] = mapped_column(String, default="pending")
    consented_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    deleted_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_assessment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    total_assessments: Mapped[int] = mapped_column(Integer, default=0)
    # Raw payload; historical rows may hold a JSON string instead of an object.
    app_registration: Mapped[Any | None] = mapped_column(JsonType, nullable=True)


class Assessment(Base):
    __tablename__ = "assessments"
    __table_args__ = (Index("ix_assessments_customer_created", "customer_id", "created_date"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    customer_id: Mapped[str] = mapped_column(String, ForeignKey("customers.id", ondelete="CASCADE"))
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # completed | partial | failed
    status: Mapped[str] = mapped_column(String, default="completed")
    score: Mapped[float] = mapped_column(Float, default=0.0)
    categories: Mapped[list[str]] = mapped_column(JsonType, default=list)
    metrics: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    recommendations: Mapped[list[str]] = mapped_column(JsonType, default=list)
    created_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now
    )
