"""
Read-only customer directory over the tenant_customers table.
"""

from typing import Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.tables import TenantCustomer

logger = structlog.get_logger(__name__)


class CustomerRecord(BaseModel):
    customer_id: str
    legal_name: str
    withholding_eligible: bool = False


class CustomerDirectory:
    """Resolve an extracted customer reference to a provider customer."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def resolve(self, tenant_id: str, customer_ref: str) -> Optional[CustomerRecord]:
        """
        Exact short code or legal name first (case-insensitive), then a
        contains match on the legal name. None when nothing matches.
        """
        ref = customer_ref.strip()
        if not ref:
            return None

        async with self.session_factory() as session:
            exact = await session.execute(
                select(TenantCustomer)
                .where(
                    TenantCustomer.tenant_id == tenant_id,
                    or_(
                        func.upper(TenantCustomer.short_code) == ref.upper(),
                        func.upper(TenantCustomer.legal_name) == ref.upper(),
                    ),
                )
                .order_by(TenantCustomer.created_at)
                .limit(1)
            )
            customer = exact.scalars().first()

            if customer is None:
                partial = await session.execute(
                    select(TenantCustomer)
                    .where(
                        TenantCustomer.tenant_id == tenant_id,
                        TenantCustomer.legal_name.ilike(f"%{ref}%"),
                    )
                    .order_by(TenantCustomer.created_at)
                    .limit(1)
                )
                customer = partial.scalars().first()

        if customer is None:
            logger.info("customer_not_found", tenant_id=tenant_id, customer_ref=ref)
            return None

        return CustomerRecord(
            customer_id=customer.provider_customer_id,
            legal_name=customer.legal_name,
            withholding_eligible=customer.withholding_eligible,
        )
