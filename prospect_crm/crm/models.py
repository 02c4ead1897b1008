from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from prospect_crm.core.database import Base


CUSTOMER_LEVELS = ("L1", "L2", "L3", "L4", "L5")
CONVERTED_LEVELS = ("L4", "L5")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "crm_user"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    customers: Mapped[list[Customer]] = relationship("Customer", back_populates="owner")

    __table_args__ = (
        UniqueConstraint("username", name="uq_crm_user_username"),
    )


class Category(Base):
    __tablename__ = "crm_category"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    customers: Mapped[list[Customer]] = relationship("Customer", back_populates="category")

    __table_args__ = (
        UniqueConstraint("name", name="uq_crm_category_name"),
    )


class Customer(Base):
    __tablename__ = "crm_customer"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company: Mapped[str] = mapped_column(String(100), nullable=False)
    address: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    level: Mapped[str] = mapped_column(String(2), nullable=False, default="L1", server_default="L1")
    other_sales: Mapped[str | None] = mapped_column(String(50), nullable=True)
    next_time: Mapped[date | None] = mapped_column(Date(), nullable=True)
    category_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_category.id", ondelete="RESTRICT"),
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_user.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    owner: Mapped[User] = relationship("User", back_populates="customers")
    category: Mapped[Category] = relationship("Category", back_populates="customers")
    contacts: Mapped[list[Contact]] = relationship(
        "Contact",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Contact.id",
    )
    logs: Mapped[list[DevelopmentLog]] = relationship(
        "DevelopmentLog",
        back_populates="customer",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by=lambda: (DevelopmentLog.log_date.desc(), DevelopmentLog.id.desc()),
    )

    __table_args__ = (
        Index("ix_crm_customer_user_id", "user_id"),
        Index("ix_crm_customer_user_next_time", "user_id", "next_time"),
        Index("ix_crm_customer_user_company_address", "user_id", "company", "address"),
        Index("ix_crm_customer_category_id", "category_id"),
    )


class Contact(Base):
    __tablename__ = "crm_contact"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_customer.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    customer: Mapped[Customer] = relationship("Customer", back_populates="contacts")

    __table_args__ = (
        Index("ix_crm_contact_customer_id", "customer_id"),
    )


class DevelopmentLog(Base):
    __tablename__ = "crm_development_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("crm_customer.id", ondelete="CASCADE"),
        nullable=False,
    )
    log_date: Mapped[date] = mapped_column(Date(), nullable=False)
    method: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    customer: Mapped[Customer] = relationship("Customer", back_populates="logs")

    __table_args__ = (
        Index("ix_crm_development_log_customer_date", "customer_id", "log_date"),
    )
