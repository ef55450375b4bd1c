"""Live usage aggregation per academy.

Usage is counted from the operational tables on every call and never
cached, because limit enforcement must see what exists right now.
"""

import logging
import uuid
from dataclasses import asdict, dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from academy_billing.modules.academy.models import (
    Classroom,
    ClassroomAttachment,
    Manager,
    Parent,
    Student,
    Teacher,
)

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 ** 3


@dataclass(frozen=True)
class UsageSnapshot:
    """Point-in-time consumption of one academy."""
    students: int = 0
    teachers: int = 0
    managers: int = 0
    parents: int = 0
    classrooms: int = 0
    storage_bytes: int = 0

    @property
    def storage_gb(self) -> float:
        return self.storage_bytes / BYTES_PER_GB

    @property
    def total_users(self) -> int:
        """Billable seats: students plus teachers."""
        return self.students + self.teachers

    def get(self, resource: str) -> float:
        """Current value for a limit resource (students, teachers, classrooms, storage_gb)."""
        if resource == "storage_gb":
            return self.storage_gb
        return getattr(self, resource)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["storage_gb"] = round(self.storage_gb, 2)
        data["total_users"] = self.total_users
        return data


class UsageAggregator:
    """Counts active members, classrooms and attachment storage for a tenant."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def usage(self, academy_id: uuid.UUID) -> UsageSnapshot:
        snapshot = UsageSnapshot(
            students=await self._count_active(Student, academy_id),
            teachers=await self._count_active(Teacher, academy_id),
            managers=await self._count_active(Manager, academy_id),
            parents=await self._count_active(Parent, academy_id),
            classrooms=await self._count_active(Classroom, academy_id),
            storage_bytes=await self._storage_bytes(academy_id),
        )
        logger.debug(
            "Computed academy usage",
            extra={"academy_id": str(academy_id), **snapshot.to_dict()},
        )
        return snapshot

    async def _count_active(self, model, academy_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(model)
            .where(model.academy_id == academy_id, model.active.is_(True))
        )
        return int(result.scalar_one())

    async def _storage_bytes(self, academy_id: uuid.UUID) -> int:
        """Sum of attachment sizes across every classroom of the academy.

        Attachments of deactivated classrooms still occupy storage.
        """
        result = await self.session.execute(
            select(func.coalesce(func.sum(ClassroomAttachment.file_size), 0))
            .join(Classroom, ClassroomAttachment.classroom_id == Classroom.id)
            .where(Classroom.academy_id == academy_id)
        )
        return int(result.scalar_one())
