"""Database models for the SafePath API.

This module defines SQLAlchemy ORM models used by the application:
users, their emergency contacts and device tokens, and emergency
incidents together with their notification log, location trail,
notes and media.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    update,
)
from sqlalchemy.orm import relationship

from .database import Base


EMERGENCY_TYPES = ("SOS", "Medical", "Fire", "Police", "Natural Disaster", "Other")
EMERGENCY_STATUSES = ("Active", "Resolved", "Cancelled", "False Alarm")
TERMINAL_STATUSES = ("Resolved", "Cancelled")
PRIORITIES = ("Low", "Medium", "High", "Critical")
RELATIONSHIPS = ("Spouse", "Parent", "Child", "Sibling", "Friend", "Doctor", "Other")
NOTIFY_METHODS = ("SMS", "Email", "Push", "Call")
DELIVERY_STATUSES = ("Sent", "Delivered", "Failed", "Acknowledged")
BLOOD_TYPES = ("A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-", "Unknown")
PLATFORMS = ("ios", "android", "web")
MEDIA_TYPES = ("image", "video", "audio")


class User(Base):
    """
    SQLAlchemy model representing an application user.

    A user owns emergency contacts, registered push devices and the
    emergencies they trigger. Medical info and settings are stored as
    flat columns and exposed as dictionaries for the API layer.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    phone = Column(String(20), nullable=False)
    profile_image = Column(String(500), nullable=True)

    blood_type = Column(String(10), default="Unknown", nullable=False)
    allergies = Column(JSON, default=list, nullable=False)
    medications = Column(JSON, default=list, nullable=False)
    medical_conditions = Column(JSON, default=list, nullable=False)
    emergency_medical_info = Column(Text, nullable=True)

    notifications_enabled = Column(Boolean, default=True, nullable=False)
    location_enabled = Column(Boolean, default=True, nullable=False)
    emergency_mode_enabled = Column(Boolean, default=False, nullable=False)
    auto_call_emergency_services = Column(Boolean, default=False, nullable=False)

    last_latitude = Column(Float, nullable=True)
    last_longitude = Column(Float, nullable=True)
    last_accuracy = Column(Float, nullable=True)
    last_location_at = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    last_seen = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    #: Every contact ever created by the user, including soft-deleted ones
    contacts = relationship(
        "EmergencyContact",
        back_populates="owner",
        cascade="all, delete",
    )

    #: Registered push notification devices
    device_tokens = relationship(
        "DeviceToken",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    emergencies = relationship(
        "Emergency",
        back_populates="user",
        foreign_keys="Emergency.user_id",
        cascade="all, delete",
    )

    @property
    def medical_info(self) -> dict:
        return {
            "blood_type": self.blood_type or "Unknown",
            "allergies": list(self.allergies or []),
            "medications": list(self.medications or []),
            "medical_conditions": list(self.medical_conditions or []),
            "emergency_medical_info": self.emergency_medical_info,
        }

    @property
    def settings(self) -> dict:
        return {
            "notifications_enabled": self.notifications_enabled,
            "location_enabled": self.location_enabled,
            "emergency_mode_enabled": self.emergency_mode_enabled,
            "auto_call_emergency_services": self.auto_call_emergency_services,
        }

    @property
    def last_location(self) -> dict | None:
        if self.last_latitude is None or self.last_longitude is None:
            return None
        return {
            "latitude": self.last_latitude,
            "longitude": self.last_longitude,
            "accuracy": self.last_accuracy,
            "timestamp": self.last_location_at,
        }


class DeviceToken(Base):
    """Push notification token registered from one of the user's devices."""

    __tablename__ = "device_tokens"
    __table_args__ = (UniqueConstraint("user_id", "token", name="uq_user_token"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token = Column(String(500), nullable=False)
    platform = Column(String(10), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="device_tokens")


class EmergencyContact(Base):
    """
    SQLAlchemy model representing an emergency contact.

    Each contact belongs to exactly one user. Deleting a contact only
    clears ``is_active``. At most one contact of a user carries
    ``is_primary``.
    """

    __tablename__ = "emergency_contacts"

    id = Column(Integer, primary_key=True, index=True)

    #: Identifier of the owning user
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    #: Reference to the owning User object
    owner = relationship("User", back_populates="contacts")

    name = Column(String(50), nullable=False)
    phone = Column(String(20), nullable=False, index=True)
    email = Column(String(255), nullable=True)
    relationship = Column(String(20), nullable=False)
    is_primary = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    notify_sms = Column(Boolean, default=True, nullable=False)
    notify_email = Column(Boolean, default=True, nullable=False)
    notify_call = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    @property
    def notification_preferences(self) -> dict:
        return {
            "sms": self.notify_sms,
            "email": self.notify_email,
            "call": self.notify_call,
        }


@event.listens_for(EmergencyContact, "before_insert")
@event.listens_for(EmergencyContact, "before_update")
def clear_other_primary_contacts(mapper, connection, target):
    """Unset ``is_primary`` on the owner's other contacts before saving a primary."""
    if not target.is_primary:
        return
    table = EmergencyContact.__table__
    stmt = update(table).where(
        table.c.user_id == target.user_id,
        table.c.is_primary.is_(True),
    )
    if target.id is not None:
        stmt = stmt.where(table.c.id != target.id)
    connection.execute(stmt.values(is_primary=False))


class Emergency(Base):
    """
    SQLAlchemy model representing an emergency incident.

    The current location is stored inline; every later position is
    appended to ``location_history``. ``resolved_at``/``resolved_by``
    are only filled for Resolved or Cancelled incidents.
    """

    __tablename__ = "emergencies"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type = Column(String(20), default="SOS", nullable=False)
    status = Column(String(20), default="Active", nullable=False, index=True)
    priority = Column(String(10), default="High", nullable=False)

    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String(500), nullable=True)
    accuracy = Column(Float, nullable=True)

    description = Column(String(500), nullable=True)
    emergency_services_contacted = Column(Boolean, default=False, nullable=False)
    emergency_services_contacted_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    user = relationship("User", back_populates="emergencies", foreign_keys=[user_id])

    contacts_notified = relationship(
        "ContactNotification",
        back_populates="emergency",
        cascade="all, delete-orphan",
        order_by="ContactNotification.id",
    )
    location_history = relationship(
        "LocationPoint",
        back_populates="emergency",
        cascade="all, delete-orphan",
        order_by="LocationPoint.id",
    )
    notes = relationship(
        "EmergencyNote",
        back_populates="emergency",
        cascade="all, delete-orphan",
        order_by="EmergencyNote.id",
    )
    media = relationship(
        "EmergencyMedia",
        back_populates="emergency",
        cascade="all, delete-orphan",
        order_by="EmergencyMedia.id",
    )

    @property
    def location(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "accuracy": self.accuracy,
        }


class ContactNotification(Base):
    """One delivery attempt record per contact for an emergency."""

    __tablename__ = "contact_notifications"

    id = Column(Integer, primary_key=True, index=True)
    emergency_id = Column(
        Integer,
        ForeignKey("emergencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    contact_id = Column(
        Integer,
        ForeignKey("emergency_contacts.id", ondelete="SET NULL"),
        nullable=True,
    )
    method = Column(String(10), nullable=False)
    status = Column(String(15), default="Sent", nullable=False)
    notified_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    emergency = relationship("Emergency", back_populates="contacts_notified")
    contact = relationship("EmergencyContact")


class LocationPoint(Base):
    __tablename__ = "emergency_locations"

    id = Column(Integer, primary_key=True, index=True)
    emergency_id = Column(
        Integer,
        ForeignKey("emergencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    emergency = relationship("Emergency", back_populates="location_history")


class EmergencyNote(Base):
    __tablename__ = "emergency_notes"

    id = Column(Integer, primary_key=True, index=True)
    emergency_id = Column(
        Integer,
        ForeignKey("emergencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    content = Column(Text, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    emergency = relationship("Emergency", back_populates="notes")


class EmergencyMedia(Base):
    __tablename__ = "emergency_media"

    id = Column(Integer, primary_key=True, index=True)
    emergency_id = Column(
        Integer,
        ForeignKey("emergencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type = Column(String(10), nullable=False)
    url = Column(String(500), nullable=False)
    uploaded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    emergency = relationship("Emergency", back_populates="media")
