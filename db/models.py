"""
Stagewise - SQLAlchemy ORM Models

Persistence model for applied migrations.
"""
from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class MigrationHistory(Base):
    """One applied migration; (name, stage) is never recorded twice."""
    __tablename__ = "migration_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    stage: Mapped[str] = mapped_column(String(20), index=True)  # PreInit, CoreInit, AppInit
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("name", "stage", name="uq_migration_history_name_stage"),
    )

    def __repr__(self) -> str:
        return f"<MigrationHistory {self.stage}:{self.name}>"
