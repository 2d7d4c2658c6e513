"""Family and Student records as seen by billing."""

from datetime import date

from sqlalchemy import Boolean, Date, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.database.base import BaseModel, BigIntPK


class Family(BaseModel):
    """Paying household. Maintained by the family portal; billing only reads it."""

    __tablename__ = "families"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    students: Mapped[list["Student"]] = relationship("Student", back_populates="family")


class Student(BaseModel):
    __tablename__ = "students"

    family_id: Mapped[int] = mapped_column(
        BigIntPK, ForeignKey("families.id"), nullable=False, index=True
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    family: Mapped["Family"] = relationship("Family", back_populates="students")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
