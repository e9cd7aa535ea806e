from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter
from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    Boolean,
    Dialect,
    Integer,
    String,
    TypeDecorator,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.schema import Index

from sluice.model import WorkflowTemplate

ModelT = TypeVar("ModelT", bound=BaseModel)


class PydanticType(TypeDecorator[ModelT]):
    """SQLAlchemy type for storing Pydantic models (JSONB on PostgreSQL, JSON elsewhere)."""

    cache_ok = True
    impl = JSON

    def __init__(
        self,
        pydantic_type: type[ModelT],
    ) -> None:
        super().__init__()
        self._pydantic_type = pydantic_type
        self._adapter = TypeAdapter(pydantic_type)

    def load_dialect_impl(self, dialect: Dialect) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value: ModelT | None, _dialect: Dialect) -> Any:
        if value is None:
            return None
        return self._adapter.dump_python(value, mode="json")

    def process_result_value(self, value: Any, _dialect: Dialect) -> ModelT | None:
        if value is None:
            return None
        return self._adapter.validate_python(value)


class Base(DeclarativeBase):
    pass


class ApplicationStateRecord(Base):
    """Current stage per application; the history lives in StageHistoryRecord."""

    __tablename__ = "sluice_application_state"

    application_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    template_id: Mapped[str] = mapped_column(String(256), nullable=False)
    template_version: Mapped[int] = mapped_column(Integer, nullable=False)
    current_stage_id: Mapped[str] = mapped_column(String(256), nullable=False)
    entered_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    history_length: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index(
            "idx_sluice_state_template_stage",
            "template_id",
            "template_version",
            "current_stage_id",
        ),
    )


class StageHistoryRecord(Base):
    """Append-only stage entries; ``exited_at`` is the only column ever updated."""

    __tablename__ = "sluice_stage_history"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    application_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    stage_id: Mapped[str] = mapped_column(String(256), nullable=False)
    entered_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    exited_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    transition_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(256), nullable=False)

    __table_args__ = (UniqueConstraint("application_id", "position"),)


class LeaseRecord(Base):
    __tablename__ = "sluice_leases"

    application_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    holder: Mapped[str] = mapped_column(String(256), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, index=True
    )


class NotificationDedupeRecord(Base):
    __tablename__ = "sluice_notification_dedupe"

    dedupe_key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    application_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    template_key: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )


class WorkflowTemplateRecord(Base):
    """Published template versions; only ``is_active`` changes after insert."""

    __tablename__ = "sluice_workflow_templates"

    template_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    application_type: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    body: Mapped[WorkflowTemplate] = mapped_column(
        PydanticType(WorkflowTemplate), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )
