from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER primary keys.
_BIGINT_PK = BigInteger().with_variant(Integer, 'sqlite')
_ID = String(32)


class Base(DeclarativeBase):
    pass


class WorkflowStatus(str, Enum):
    DRAFT = 'DRAFT'
    IN_PROGRESS = 'IN_PROGRESS'
    CLOSED = 'CLOSED'


class RiaStatus(str, Enum):
    NONE = 'NONE'
    CREATED = 'CREATED'
    TO_REGISTER = 'TO_REGISTER'
    SIGNING = 'SIGNING'
    PERFECTED = 'PERFECTED'


class EditMode(str, Enum):
    WORKFLOW = 'workflow'
    RECONCILIATION = 'reconciliation'


class Supplier(Base):
    __tablename__ = 'suppliers'

    id: Mapped[str] = mapped_column(_ID, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    contract_number: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    contract_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    contract_start: Mapped[date | None] = mapped_column(Date)
    contract_end: Mapped[date | None] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Course(Base):
    __tablename__ = 'courses'

    id: Mapped[str] = mapped_column(_ID, primary_key=True)
    supplier_id: Mapped[str] = mapped_column(_ID, ForeignKey('suppliers.id', ondelete='CASCADE'), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    lms_element_id: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    sif_code: Mapped[str | None] = mapped_column(Text)


class ServiceItem(Base):
    __tablename__ = 'service_items'

    id: Mapped[str] = mapped_column(_ID, primary_key=True)
    supplier_id: Mapped[str] = mapped_column(_ID, ForeignKey('suppliers.id', ondelete='CASCADE'), nullable=False)
    # NULL means the price applies to every course of the supplier.
    course_id: Mapped[str | None] = mapped_column(_ID, ForeignKey('courses.id', ondelete='CASCADE'))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'), server_default='0')
    unit_type: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')


class CourseEdition(Base):
    __tablename__ = 'course_editions'

    id: Mapped[str] = mapped_column(_ID, primary_key=True)
    course_id: Mapped[str] = mapped_column(_ID, ForeignKey('courses.id', ondelete='CASCADE'), nullable=False)
    lms_lesson_id: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    run_id: Mapped[str] = mapped_column(Text, nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date)


class PurchaseOrder(Base):
    __tablename__ = 'purchase_orders'

    id: Mapped[str] = mapped_column(_ID, primary_key=True)
    # No FK: orders survive as plain references, supplier deletion is blocked instead.
    supplier_id: Mapped[str] = mapped_column(_ID, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[WorkflowStatus] = mapped_column(
        SQLEnum(WorkflowStatus, name='workflow_status'),
        nullable=False,
        default=WorkflowStatus.DRAFT,
        server_default='DRAFT',
    )
    is_generic: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    planned_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    actual_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    rda_code: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    ria_code: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    ria_status: Mapped[RiaStatus] = mapped_column(
        SQLEnum(RiaStatus, name='ria_status'),
        nullable=False,
        default=RiaStatus.NONE,
        server_default='NONE',
    )
    oda_code: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PurchaseLineItem(Base):
    __tablename__ = 'purchase_line_items'
    __table_args__ = (
        CheckConstraint('planned_qty >= 0', name='purchase_line_items_planned_qty_check'),
        CheckConstraint('actual_qty >= 0', name='purchase_line_items_actual_qty_check'),
    )

    id: Mapped[str] = mapped_column(_ID, primary_key=True)
    purchase_order_id: Mapped[str] = mapped_column(_ID, ForeignKey('purchase_orders.id', ondelete='CASCADE'), nullable=False)
    edition_id: Mapped[str] = mapped_column(_ID, nullable=False)
    service_item_id: Mapped[str | None] = mapped_column(_ID)
    planned_qty: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    actual_qty: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    unit_price_override: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'))
    planned_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    actual_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class PurchaseEm(Base):
    __tablename__ = 'purchase_ems'

    id: Mapped[str] = mapped_column(_ID, primary_key=True)
    purchase_order_id: Mapped[str] = mapped_column(_ID, ForeignKey('purchase_orders.id', ondelete='CASCADE'), nullable=False)
    code: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'))
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class PurchaseEmEdition(Base):
    __tablename__ = 'purchase_em_editions'

    purchase_em_id: Mapped[str] = mapped_column(_ID, ForeignKey('purchase_ems.id', ondelete='CASCADE'), primary_key=True)
    course_edition_id: Mapped[str] = mapped_column(_ID, primary_key=True)


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    purchase_order_id: Mapped[str | None] = mapped_column(_ID)
    mode: Mapped[str | None] = mapped_column(Text)
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
