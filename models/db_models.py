"""
SQLAlchemy ORM models for the transit store.

Purpose:
- Define users, terminals, routes, route stops, buses, bookings, feedbacks,
  reports, notifications, payments and discount applications
- Use SQLAlchemy async-compatible models with string UUID keys

Notes:
- Check constraints mirror the hosted schema enumerations
- notifications.recipient_id is indexed; the realtime hub filters on it
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, JSON, String, Text, Float,
)
from sqlalchemy.orm import relationship
from core.db import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


NOTIFICATION_TYPES = ("delay", "route_change", "traffic", "general", "announcement", "maintenance")
NOTIFICATION_PRIORITIES = ("low", "normal", "high", "urgent")
USER_ROLES = ("client", "admin", "employee", "driver", "conductor")
USER_STATUSES = ("active", "inactive", "suspended", "pending")
BUS_STATUSES = ("active", "inactive", "maintenance")
BOOKING_STATUSES = ("pending", "confirmed", "cancelled")
REPORT_TYPES = ("maintenance", "violation", "delay")
PAYMENT_STATUSES = ("pending", "paid", "expired", "failed")
DISCOUNT_TYPES = ("student", "senior", "pwd")
DISCOUNT_STATUSES = ("pending", "approved", "rejected")


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


class User(Base):
    """
    Represents a platform account (client, admin, employee, driver, conductor).
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    role = Column(String(20), nullable=False, index=True)
    username = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=True)
    profile = Column(JSON, nullable=True)
    employee_id = Column(String(50), unique=True, nullable=True)
    assigned_bus_id = Column(String(36), ForeignKey("buses.id", use_alter=True), nullable=True)
    status = Column(String(20), default="active", index=True)
    created_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint(_in("role", USER_ROLES), name="ck_users_role"),
        CheckConstraint(_in("status", USER_STATUSES), name="ck_users_status"),
    )


class Terminal(Base):
    __tablename__ = "terminals"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=False)
    lat = Column(Float, nullable=True)
    lon = Column(Float, nullable=True)


class Route(Base):
    """
    Represents a bus route between two terminals with ordered stops.
    """
    __tablename__ = "routes"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    start_terminal_id = Column(String(36), ForeignKey("terminals.id"), nullable=True)
    end_terminal_id = Column(String(36), ForeignKey("terminals.id"), nullable=True)
    fare_cents = Column(Integer, default=0, nullable=False)

    stops = relationship("RouteStop", back_populates="route", lazy="selectin", order_by="RouteStop.stop_order")


class RouteStop(Base):
    __tablename__ = "route_stops"

    id = Column(String(36), primary_key=True, default=new_id)
    route_id = Column(String(36), ForeignKey("routes.id"), index=True)
    terminal_id = Column(String(36), ForeignKey("terminals.id"))
    stop_order = Column(Integer, nullable=False)

    route = relationship("Route", back_populates="stops")
    terminal = relationship("Terminal", lazy="joined")


class Bus(Base):
    """
    Represents a bus in the fleet.

    current_location is a JSON object: {"lat": .., "lon": .., "speed_kmph": .., "updated_at": ..}
    """
    __tablename__ = "buses"

    id = Column(String(36), primary_key=True, default=new_id)
    bus_number = Column(String(50), nullable=False, unique=True)
    current_location = Column(JSON, nullable=True)
    status = Column(String(20), default="active", index=True)
    available_seats = Column(Integer, default=0)
    total_seats = Column(Integer, nullable=False)
    driver_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    conductor_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    terminal_id = Column(String(36), ForeignKey("terminals.id"), nullable=True)
    route_id = Column(String(36), ForeignKey("routes.id"), nullable=True, index=True)

    __table_args__ = (
        CheckConstraint(_in("status", BUS_STATUSES), name="ck_buses_status"),
    )

    route = relationship("Route", lazy="selectin")
    driver = relationship("User", foreign_keys=[driver_id], lazy="selectin")
    conductor = relationship("User", foreign_keys=[conductor_id], lazy="selectin")


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True)
    bus_id = Column(String(36), ForeignKey("buses.id"), index=True)
    status = Column(String(20), default="pending", index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint(_in("status", BOOKING_STATUSES), name="ck_bookings_status"),
    )


class Feedback(Base):
    __tablename__ = "feedbacks"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"))
    bus_id = Column(String(36), ForeignKey("buses.id"))
    rating = Column(Integer)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_feedbacks_rating"),
    )


class Report(Base):
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=new_id)
    employee_id = Column(String(36), ForeignKey("users.id"))
    bus_id = Column(String(36), ForeignKey("buses.id"))
    type = Column(String(20), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint(_in("type", REPORT_TYPES), name="ck_reports_type"),
    )


class Notification(Base):
    """
    A notification addressed to one recipient.

    type, message and recipient_id never change after insert; only the read
    state (is_read/read_at) is mutated.
    """
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_id)
    recipient_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    priority = Column(String(10), default="normal", nullable=False, index=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint(_in("type", NOTIFICATION_TYPES), name="ck_notifications_type"),
        CheckConstraint(_in("priority", NOTIFICATION_PRIORITIES), name="ck_notifications_priority"),
    )


class Payment(Base):
    """Hosted checkout session for a booking."""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), index=True, nullable=False)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    session_id = Column(String(255), unique=True, index=True, nullable=False)
    checkout_url = Column(String(1000), nullable=True)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(20), default="pending", index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(_in("status", PAYMENT_STATUSES), name="ck_payments_status"),
    )


class DiscountApplication(Base):
    """Fare discount request (student / senior / pwd) awaiting admin review."""
    __tablename__ = "discount_applications"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), index=True, nullable=False)
    discount_type = Column(String(20), nullable=False)
    document_url = Column(String(1000), nullable=False)
    status = Column(String(20), default="pending", index=True)
    reviewer_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    review_note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    decided_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(_in("discount_type", DISCOUNT_TYPES), name="ck_discount_type"),
        CheckConstraint(_in("status", DISCOUNT_STATUSES), name="ck_discount_status"),
    )
