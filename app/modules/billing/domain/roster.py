"""Doctor roster lookup used as the lower bound for renewal seat counts."""

from typing import Protocol
from uuid import UUID

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.hospital import Doctor


class DoctorRosterQuery(Protocol):
    async def count_active_doctors(self, tenant_id: UUID) -> int:
        """How many doctors are currently provisioned for this tenant."""
        ...


class SqlDoctorRoster:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def count_active_doctors(self, tenant_id: UUID) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(Doctor)
            .where(Doctor.hospital_id == tenant_id, Doctor.is_active.is_(True))
        )
        return int(result.scalar_one())
