from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from tagshop.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True)
    firstname = Column(String)
    lastname = Column(String)
    petname = Column(String)
    phone = Column(String)
    email = Column(String, nullable=True)
    address_line_1 = Column(String)
    address_line_2 = Column(String)
    address_line_3 = Column(String)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), index=True)
    payment_reference = Column(String, nullable=True, index=True)  # Stripe PaymentIntent ID
    amount = Column(Integer, nullable=False)                       # minor units
    currency = Column(String, nullable=False, default="usd")
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True, index=True)
    front_line_1 = Column(String)
    front_line_2 = Column(String)
    front_line_3 = Column(String)
    back_line_1 = Column(String)
    back_line_2 = Column(String)
    back_line_3 = Column(String)
    has_qr_code = Column(Boolean, default=False)
    qr_content = Column(String, nullable=True)
    notes = Column(Text, nullable=True)


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    event_id = Column(String, primary_key=True)  # Stripe evt_... id
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), default=utcnow, index=True)
