import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, BigInteger, String, Text, DateTime, ForeignKey

from database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(255), unique=True)
    role: Mapped[str] = mapped_column(String(32))
    actor_address: Mapped[Optional[str]] = mapped_column(String(42), unique=True, index=True, nullable=True)


class Batch(Base):
    __tablename__ = "batches"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    batch_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    product_name: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), default="PENDING")
    farmer_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    verified_by_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    rejection_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)
    events: Mapped[list["ProductEvent"]] = relationship("ProductEvent", back_populates="batch", cascade="all, delete-orphan")
    certificates: Mapped[list["Certificate"]] = relationship("Certificate", back_populates="batch")


class ProductEvent(Base):
    __tablename__ = "product_events"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    batch_ref_id: Mapped[str] = mapped_column(String(36), ForeignKey("batches.id"), index=True)
    batch_id: Mapped[str] = mapped_column(String(64), index=True)
    event_type: Mapped[int] = mapped_column(Integer)
    content_address: Mapped[str] = mapped_column(String(128))
    actor_address: Mapped[str] = mapped_column(String(42))
    actor_user_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    tx_hash: Mapped[str] = mapped_column(String(66), unique=True, index=True)
    block_number: Mapped[int] = mapped_column(BigInteger)
    log_index: Mapped[int] = mapped_column(Integer, default=0)
    block_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    batch: Mapped[Batch] = relationship("Batch", back_populates="events")
    actor_user: Mapped[Optional[User]] = relationship("User")
    shipment_log: Mapped[Optional["ShipmentLog"]] = relationship("ShipmentLog", back_populates="product_event", uselist=False)


class ShipmentLog(Base):
    __tablename__ = "shipment_logs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    batch_ref_id: Mapped[str] = mapped_column(String(36), ForeignKey("batches.id"), index=True)
    product_event_id: Mapped[str] = mapped_column(String(36), ForeignKey("product_events.id"), unique=True)
    status: Mapped[str] = mapped_column(String(16))
    gps_coordinates: Mapped[str] = mapped_column(String(64))
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    product_event: Mapped[ProductEvent] = relationship("ProductEvent", back_populates="shipment_log")


class Certificate(Base):
    __tablename__ = "certificates"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    batch_ref_id: Mapped[str] = mapped_column(String(36), ForeignKey("batches.id"), index=True)
    cert_name: Mapped[str] = mapped_column(String(255))
    expiry_date: Mapped[str] = mapped_column(String(32))
    cert_hash: Mapped[str] = mapped_column(String(128))
    issued_by_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"))
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)
    batch: Mapped[Batch] = relationship("Batch", back_populates="certificates")
    issued_by: Mapped[User] = relationship("User")
