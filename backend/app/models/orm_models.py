"""ORM Models for the ASC readiness engine — SQLAlchemy 2.0

The facility, user, case, catalog, inventory, requirement and attestation tables are
owned by the surrounding CRUD application; the engine only reads them. The engine
owns ``catalog_substitute`` and ``case_readiness_cache``.
"""
import uuid
from datetime import datetime, date, time
from typing import Optional
from sqlalchemy import (
    String, Text, Boolean, Integer, DateTime, Date, Time,
    ForeignKey, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from app.db import Base


def gen_uuid():
    return str(uuid.uuid4())


# ── FACILITY / USERS ─────────────────────────────────────────────────────────
class Facility(Base):
    __tablename__ = "facility"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AppUser(Base):
    __tablename__ = "app_user"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    facility_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("facility.id"), nullable=False)
    username: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(50), nullable=False)
    display_color: Mapped[Optional[str]] = mapped_column(String(10))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("facility_id", "username", name="uq_app_user_facility_username"),
    )


class Room(Base):
    __tablename__ = "room"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    facility_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("facility.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)


# ── CASES ─────────────────────────────────────────────────────────────────────
class SurgicalCase(Base):
    __tablename__ = "surgical_case"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    facility_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("facility.id"), nullable=False)
    case_number: Mapped[Optional[str]] = mapped_column(String(50))
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date)
    scheduled_time: Mapped[Optional[time]] = mapped_column(Time)
    surgeon_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("app_user.id"), nullable=False)
    procedure_name: Mapped[str] = mapped_column(String(255), nullable=False)
    laterality: Mapped[Optional[str]] = mapped_column(String(20))
    room_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("room.id"))
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="DRAFT")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    surgeon: Mapped["AppUser"] = relationship("AppUser")
    room: Mapped[Optional["Room"]] = relationship("Room")
    requirements: Mapped[list["CaseRequirementRow"]] = relationship(
        "CaseRequirementRow", back_populates="case"
    )

    __table_args__ = (
        # Day-before query: cases for one facility/date/status
        Index("idx_case_scheduled_date", "facility_id", "scheduled_date", "status"),
    )


# ── CATALOG / INVENTORY ───────────────────────────────────────────────────────
class ItemCatalog(Base):
    __tablename__ = "item_catalog"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    facility_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("facility.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(50))
    manufacturer: Mapped[Optional[str]] = mapped_column(String(255))
    catalog_number: Mapped[Optional[str]] = mapped_column(String(255))
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Risk-intent properties consumed by readiness evaluation
    requires_lot_tracking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_serial_tracking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requires_expiration_tracking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    criticality: Mapped[str] = mapped_column(String(20), nullable=False, default="ROUTINE")
    readiness_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    expiration_warning_days: Mapped[Optional[int]] = mapped_column(Integer)
    substitutable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_catalog_readiness", "facility_id", "active", "readiness_required"),
    )


class InventoryItem(Base):
    __tablename__ = "inventory_item"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    facility_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("facility.id"), nullable=False)
    catalog_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("item_catalog.id"), nullable=False)
    serial_number: Mapped[Optional[str]] = mapped_column(String(255))
    lot_number: Mapped[Optional[str]] = mapped_column(String(255))
    barcode: Mapped[Optional[str]] = mapped_column(String(255))
    sterility_status: Mapped[str] = mapped_column(String(20), nullable=False, default="UNKNOWN")
    sterility_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    availability_status: Mapped[str] = mapped_column(String(20), nullable=False, default="AVAILABLE")
    reserved_for_case_id: Mapped[Optional[str]] = mapped_column(
        UUID(as_uuid=False), ForeignKey("surgical_case.id")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_inventory_readiness", "facility_id", "catalog_id", "availability_status"),
    )


class CaseRequirementRow(Base):
    __tablename__ = "case_requirement"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    case_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("surgical_case.id"), nullable=False)
    catalog_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("item_catalog.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    is_surgeon_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    case: Mapped["SurgicalCase"] = relationship("SurgicalCase", back_populates="requirements")

    __table_args__ = (
        UniqueConstraint("case_id", "catalog_id", name="uq_case_requirement_case_catalog"),
        CheckConstraint("quantity > 0", name="ck_case_requirement_quantity_positive"),
    )


class CatalogSubstitute(Base):
    """Facility-scoped substitution table; consulted only when the primary item is substitutable."""
    __tablename__ = "catalog_substitute"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    facility_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("facility.id"), nullable=False)
    catalog_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("item_catalog.id"), nullable=False)
    substitute_catalog_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("item_catalog.id"), nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    created_by_user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("app_user.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "facility_id", "catalog_id", "substitute_catalog_id", name="uq_catalog_substitute_pair"
        ),
        CheckConstraint("catalog_id <> substitute_catalog_id", name="ck_catalog_substitute_not_self"),
    )


# ── ATTESTATIONS (append-only; voiding flags, never deletes) ──────────────────
class AttestationRow(Base):
    __tablename__ = "attestation"
    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=gen_uuid)
    facility_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("facility.id"), nullable=False)
    case_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("surgical_case.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    attested_by_user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("app_user.id"), nullable=False)
    readiness_state_at_time: Mapped[str] = mapped_column(String(10), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    voided_by_user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), ForeignKey("app_user.id"))

    __table_args__ = (
        Index("idx_attestation_type", "case_id", "type"),
    )


# ── READINESS CACHE (derived, disposable) ─────────────────────────────────────
class CaseReadinessCache(Base):
    __tablename__ = "case_readiness_cache"
    case_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("surgical_case.id"), primary_key=True)
    scheduled_date: Mapped[date] = mapped_column(Date, primary_key=True)
    facility_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("facility.id"), nullable=False)
    procedure_name: Mapped[str] = mapped_column(String(255), nullable=False)
    surgeon_name: Mapped[str] = mapped_column(String(255), nullable=False)
    readiness_state: Mapped[str] = mapped_column(String(10), nullable=False)
    missing_items: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    total_required_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_verified_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    has_attestation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    attested_by_name: Mapped[Optional[str]] = mapped_column(String(255))
    attestation_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False))
    attestation_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_surgeon_acknowledgment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    surgeon_acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    surgeon_acknowledgment_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False))
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_readiness_cache_facility_date", "facility_id", "scheduled_date"),
        Index("idx_readiness_cache_state", "facility_id", "readiness_state"),
    )
