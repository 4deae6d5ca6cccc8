"""
SQLAlchemy ORM models.

Only two relational tables back the pipeline: the folio counters (the single
source of truth for invoice numbering across all worker processes) and the
read-only tenant customer directory. Column types stay portable so the same
models run on PostgreSQL in production and SQLite in tests.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.models.database import Base


# ────────────────────────────────────────────────────────────
# FOLIO COUNTERS
# ────────────────────────────────────────────────────────────
class FolioCounter(Base):
    """Last issued folio per (tenant, series). Only ever incremented."""
    __tablename__ = "folio_counters"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    series: Mapped[str] = mapped_column(String(8), primary_key=True)
    last_issued: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


# ────────────────────────────────────────────────────────────
# TENANT CUSTOMERS
# ────────────────────────────────────────────────────────────
class TenantCustomer(Base):
    __tablename__ = "tenant_customers"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    legal_name: Mapped[str] = mapped_column(Text, nullable=False)
    short_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    provider_customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    withholding_eligible: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_customer_id", name="uq_customer_provider_id"),
        Index("idx_customers_tenant", "tenant_id"),
    )
