# planche/infrastructure/database/repository.py
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from planche.delivery.schemas.body import SubjectPortrait, TemplateData
from planche.infrastructure.database.models import Student, Template

class TemplateRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_planche(self, planche: str) -> Optional[TemplateData]:
        result = await self.session.execute(select(Template).where(Template.planche == planche))
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return TemplateData(
            planche=row.planche,
            format=row.format,
            background=row.background,
            background_url=row.background_url,
            price=row.price or 0,
            order=row.order or 0,
            rotation_web=row.rotation_web,
            photos=row.photos or [],
            photo_web=row.photo_web or None,
        )

class StudentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_portrait(self, student_id: str) -> Optional[SubjectPortrait]:
        try:
            key = uuid.UUID(student_id)
            query = select(Student).where(Student.id == key)
        except ValueError:
            query = select(Student).where(Student.student_id == student_id)
        result = await self.session.execute(query.limit(1))
        row = result.scalar_one_or_none()
        if row is None:
            return None
        name = " ".join(part for part in (row.first_name, row.last_name) if part)
        return SubjectPortrait(student_id=str(row.id), portrait_url=row.thumbnail_url, display_name=name)
