"""
Tenant gate and tenant status persistence.

The gate is not a service: it is a SQL predicate joined into the claim
query so the liveness check and the claim happen in one statement.
"""

import logging

from sqlalchemy import ColumnElement, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.constants import TenantStatus
from jobcore.db.models import Job, Tenant
from jobcore.utils import utcnow

logger = logging.getLogger(__name__)


def tenant_join_condition(job=Job) -> ColumnElement[bool]:
    """Join condition between jobs (or an alias of the table) and their tenant row."""
    return Tenant.id == job.tenant_id


def tenant_is_active() -> ColumnElement[bool]:
    """Predicate admitting only jobs whose tenant is active."""
    return Tenant.status == TenantStatus.ACTIVE


class TenantRepository:
    """
    Minimal tenant persistence.

    Account management is owned elsewhere; this exists so that system can
    mirror tenant status changes into the table the gate reads.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, tenant_id: str) -> Tenant | None:
        stmt = (
            select(Tenant)
            .where(Tenant.id == tenant_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        tenant_id: str,
        status: TenantStatus = TenantStatus.ACTIVE,
        name: str | None = None,
    ) -> Tenant:
        """Create the tenant row or update its status and name."""
        tenant = await self.get(tenant_id)
        if tenant is None:
            tenant = Tenant(id=tenant_id, status=status, name=name)
            self._session.add(tenant)
        else:
            tenant.status = status
            if name is not None:
                tenant.name = name
        await self._session.flush()
        return tenant

    async def set_status(self, tenant_id: str, status: TenantStatus) -> bool:
        """
        Change a tenant's status.

        Suspending a tenant pauses its pending jobs in place; reactivating
        makes them claimable again with no re-enqueue.

        Returns:
            True if the tenant exists.
        """
        stmt = (
            update(Tenant)
            .where(Tenant.id == tenant_id)
            .values(status=status, updated_at=utcnow())
        )
        result = await self._session.execute(stmt)
        if result.rowcount:
            logger.info(
                "Tenant status changed",
                extra={"tenant_id": tenant_id, "status": status.value},
            )
        return result.rowcount > 0
