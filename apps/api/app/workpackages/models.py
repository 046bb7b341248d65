from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.crm.models import CRMAccount, CRMContact


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkPackage(Base):
    __tablename__ = "work_package"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    contact_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_contact.id", ondelete="RESTRICT"),
        nullable=False,
    )
    company_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crm_account.id", ondelete="SET NULL"),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_cost: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    effective_start_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft", server_default="draft")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    contact: Mapped[CRMContact] = relationship("CRMContact")
    company: Mapped[CRMAccount | None] = relationship("CRMAccount")
    phases: Mapped[list[WorkPackagePhase]] = relationship(
        "WorkPackagePhase",
        back_populates="work_package",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="WorkPackagePhase.position",
    )

    __table_args__ = (
        Index("ix_work_package_contact_id", "contact_id"),
        Index("ix_work_package_company_id", "company_id"),
    )


class WorkPackagePhase(Base):
    __tablename__ = "work_package_phase"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    work_package_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_package.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_estimated_hours: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    phase_total_duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    estimated_start_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    estimated_end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    actual_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="not_started", server_default="not_started")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    work_package: Mapped[WorkPackage] = relationship("WorkPackage", back_populates="phases")
    items: Mapped[list[WorkPackageItem]] = relationship(
        "WorkPackageItem",
        back_populates="phase",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="[WorkPackageItem.created_at, WorkPackageItem.deliverable_label]",
    )

    __table_args__ = (
        UniqueConstraint("work_package_id", "position", name="uq_work_package_phase_position"),
        Index("ix_work_package_phase_identity", "work_package_id", "name", "position"),
    )


class WorkPackageItem(Base):
    __tablename__ = "work_package_item"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    work_package_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_package.id", ondelete="CASCADE"),
        nullable=False,
    )
    phase_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_package_phase.id", ondelete="CASCADE"),
        nullable=False,
    )
    deliverable_type: Mapped[str] = mapped_column(String(128), nullable=False)
    deliverable_label: Mapped[str] = mapped_column(Text, nullable=False)
    deliverable_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_of_measure: Mapped[str] = mapped_column(String(32), nullable=False, default="day", server_default="day")
    estimated_hours_each: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="NOT_STARTED", server_default="NOT_STARTED")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    phase: Mapped[WorkPackagePhase] = relationship("WorkPackagePhase", back_populates="items")
    collateral: Mapped[list[WorkCollateral]] = relationship(
        "WorkCollateral",
        back_populates="item",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="[WorkCollateral.created_at, WorkCollateral.id]",
    )

    __table_args__ = (
        UniqueConstraint("phase_id", "deliverable_label", name="uq_work_package_item_label"),
        Index("ix_work_package_item_identity", "work_package_id", "phase_id", "deliverable_label"),
    )


class WorkCollateral(Base):
    __tablename__ = "work_collateral"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    item_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("work_package_item.id", ondelete="CASCADE"),
        nullable=False,
    )
    collateral_type: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="IN_PROGRESS", server_default="IN_PROGRESS")
    review_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    item: Mapped[WorkPackageItem] = relationship("WorkPackageItem", back_populates="collateral")

    __table_args__ = (Index("ix_work_collateral_item_status", "item_id", "status"),)


class PhaseTemplate(Base):
    __tablename__ = "phase_template"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("name", name="uq_phase_template_name"),)


class DeliverableTemplate(Base):
    __tablename__ = "deliverable_template"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deliverable_type: Mapped[str] = mapped_column(String(128), nullable=False)
    deliverable_label: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    default_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    default_unit_of_measure: Mapped[str] = mapped_column(String(32), nullable=False, default="day", server_default="day")
    default_estimated_hours_each: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("8"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("deliverable_type", name="uq_deliverable_template_type"),)
