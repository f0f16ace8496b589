from __future__ import annotations

from typing import TYPE_CHECKING
from sqlalchemy import Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fastapi_users_db_sqlalchemy import SQLAlchemyBaseUserTable

from app.core.db.base import Base

if TYPE_CHECKING:
    from .quiz import Quiz, QuizSession


class User(SQLAlchemyBaseUserTable[int], Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # Relationships
    quizzes: Mapped[list["Quiz"]] = relationship(
        "Quiz", back_populates="owner", cascade="all, delete-orphan"
    )
    hosted_sessions: Mapped[list["QuizSession"]] = relationship(
        "QuizSession", back_populates="host"
    )


__all__ = ["User"]
