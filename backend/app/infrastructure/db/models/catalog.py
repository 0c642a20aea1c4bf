"""
Exam Catalog SQLModels (read-only)

Mappings for tables owned by the rest of the product: exam papers, grade
levels, subjects and tutor conversations. They are excluded from Alembic
autogenerate and only queried here.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class GradeLevel(SQLModel, table=True):
    __tablename__ = "grade_levels"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str


class Subject(SQLModel, table=True):
    __tablename__ = "subjects"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str


class ExamPaper(SQLModel, table=True):
    __tablename__ = "exam_papers"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    title: str
    year: Optional[int] = None
    month: Optional[str] = None
    grade_level_id: Optional[UUID] = Field(default=None, foreign_key="grade_levels.id")
    subject_id: Optional[UUID] = Field(default=None, foreign_key="subjects.id")


class Conversation(SQLModel, table=True):
    """Tutor chat about one exam paper; updated_at moves on every message."""

    __tablename__ = "conversations"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(..., index=True)
    exam_paper_id: UUID = Field(..., foreign_key="exam_papers.id")
    updated_at: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)


EXTERNAL_TABLES = {
    GradeLevel.__tablename__,
    Subject.__tablename__,
    ExamPaper.__tablename__,
    Conversation.__tablename__,
}
