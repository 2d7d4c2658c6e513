"""Read-only directory lookups used when building a charge."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.core.exceptions import NotFoundError, ValidationError
from src.modules.families.models import Family, Student


class FamilyDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_family(self, family_id: int) -> Family:
        family = await self.db.get(Family, family_id)
        if family is None:
            raise NotFoundError("Family", family_id)
        return family

    async def resolve_students(self, family_id: int, student_ids: list[int]) -> list[Student]:
        """
        Students of the family in the requested order.

        Unknown ids and students of another family are rejected together so the
        caller cannot probe other households.
        """
        if not student_ids:
            return []
        unique_ids = list(dict.fromkeys(student_ids))
        result = await self.db.execute(select(Student).where(Student.id.in_(unique_ids)))
        by_id = {s.id: s for s in result.scalars().all()}

        missing = [sid for sid in unique_ids if sid not in by_id or by_id[sid].family_id != family_id]
        if missing:
            raise ValidationError(
                f"Students not found for this family: {', '.join(str(m) for m in missing)}",
                field="student_ids",
            )
        return [by_id[sid] for sid in unique_ids]
