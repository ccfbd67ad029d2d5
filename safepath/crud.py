"""CRUD operations for users, emergency contacts and emergencies.

This module contains database interaction logic for SafePath entities,
isolated from FastAPI route handlers.
"""

import math
from datetime import datetime, timedelta

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from . import models, schemas


# Users


def create_user(
    db: Session, user_in: schemas.UserCreate, hashed_password: str
) -> models.User:
    """
    Create and persist a new user.

    Args:
        db (Session): SQLAlchemy database session.
        user_in (UserCreate): Incoming user data.
        hashed_password (str): Securely hashed password.

    Raises:
        HTTPException: If a user with the same email already exists.

    Returns:
        User: Newly created user instance.
    """
    existing = get_user_by_email(db, user_in.email)
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already exists",
        )

    user = models.User(
        name=user_in.name,
        email=user_in.email,
        phone=user_in.phone,
        hashed_password=hashed_password,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user_by_email(db: Session, email: str) -> models.User | None:
    """
    Retrieve a user by email address.

    Args:
        db (Session): Database session.
        email (str): User email.

    Returns:
        User | None: User if found, otherwise ``None``.
    """
    return db.execute(
        select(models.User).where(models.User.email == email.lower())
    ).scalar_one_or_none()


def get_user_by_id(db: Session, user_id: int) -> models.User | None:
    """
    Retrieve a user by primary key.

    Args:
        db (Session): Database session.
        user_id (int): User identifier.

    Returns:
        User | None: User if found, otherwise ``None``.
    """
    return db.execute(
        select(models.User).where(models.User.id == user_id)
    ).scalar_one_or_none()


def touch_last_seen(db: Session, user: models.User) -> models.User:
    """Record that the user was just seen."""
    user.last_seen = datetime.utcnow()
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def update_user_profile(
    db: Session, user: models.User, changes: schemas.UserUpdate
) -> models.User:
    """
    Apply profile changes to a user.

    Only fields present in the request are written. Medical info and
    settings are merged key by key rather than replaced.

    Args:
        db (Session): Database session.
        user (User): Target user.
        changes (UserUpdate): Requested changes.

    Returns:
        User: Updated user instance.
    """
    data = changes.model_dump(exclude_unset=True)
    medical = data.pop("medical_info", None) or {}
    settings = data.pop("settings", None) or {}

    for key, value in data.items():
        if value is not None:
            setattr(user, key, value)
    for key, value in medical.items():
        if value is not None:
            setattr(user, key, list(value) if isinstance(value, list) else value)
    for key, value in settings.items():
        if value is not None:
            setattr(user, key, value)

    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def update_user_avatar(db: Session, user: models.User, avatar_url: str) -> models.User:
    """
    Update profile image URL for a user.

    Args:
        db (Session): Database session.
        user (User): Target user.
        avatar_url (str): URL of uploaded image.

    Returns:
        User: Updated user instance.
    """
    user.profile_image = avatar_url
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def update_user_password(
    db: Session, user: models.User, hashed_password: str
) -> models.User:
    """
    Update user's hashed password.

    Args:
        db (Session): Database session.
        user (User): Target user.
        hashed_password (str): New hashed password.

    Returns:
        User: Updated user instance.
    """
    user.hashed_password = hashed_password
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def register_device_token(
    db: Session, user: models.User, token_in: schemas.DeviceTokenCreate
) -> models.DeviceToken:
    """
    Store a push token for the user, updating the platform if it is known.

    Args:
        db (Session): Database session.
        user (User): Token owner.
        token_in (DeviceTokenCreate): Token and platform.

    Returns:
        DeviceToken: Stored token row.
    """
    device = db.execute(
        select(models.DeviceToken).where(
            models.DeviceToken.user_id == user.id,
            models.DeviceToken.token == token_in.token,
        )
    ).scalar_one_or_none()
    if device is None:
        device = models.DeviceToken(user_id=user.id, token=token_in.token)
    device.platform = token_in.platform
    db.add(device)
    db.commit()
    db.refresh(device)
    return device


def get_device_tokens(db: Session, user: models.User) -> list[str]:
    return list(
        db.scalars(
            select(models.DeviceToken.token).where(
                models.DeviceToken.user_id == user.id
            )
        ).all()
    )


# Emergency contacts


def count_active_contacts(db: Session, user: models.User) -> int:
    return db.scalar(
        select(func.count(models.EmergencyContact.id)).where(
            models.EmergencyContact.user_id == user.id,
            models.EmergencyContact.is_active.is_(True),
        )
    )


def find_active_contact_by_phone(
    db: Session, user: models.User, phone: str, exclude_id: int | None = None
) -> models.EmergencyContact | None:
    stmt = select(models.EmergencyContact).where(
        models.EmergencyContact.user_id == user.id,
        models.EmergencyContact.phone == phone,
        models.EmergencyContact.is_active.is_(True),
    )
    if exclude_id is not None:
        stmt = stmt.where(models.EmergencyContact.id != exclude_id)
    return db.execute(stmt).scalars().first()


def create_contact(
    db: Session,
    contact_in: schemas.ContactCreate,
    user: models.User,
    max_contacts: int = 10,
) -> models.EmergencyContact:
    """
    Create a new emergency contact owned by the given user.

    Preferences default to SMS on, email on only when an address is
    given, and calls off; supplied preferences override the defaults.

    Args:
        db (Session): Database session.
        contact_in (ContactCreate): Contact data.
        user (User): Owner of the contact.
        max_contacts (int): Maximum number of active contacts.

    Raises:
        HTTPException: If the contact limit is reached or an active
            contact already uses the phone number.

    Returns:
        EmergencyContact: Newly created contact.
    """
    if count_active_contacts(db, user) >= max_contacts:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum of {max_contacts} emergency contacts allowed",
        )

    if find_active_contact_by_phone(db, user, contact_in.phone):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Contact with this phone number already exists",
        )

    preferences = {"sms": True, "email": bool(contact_in.email), "call": False}
    if contact_in.notification_preferences:
        preferences.update(
            contact_in.notification_preferences.model_dump(exclude_none=True)
        )

    contact = models.EmergencyContact(
        user_id=user.id,
        name=contact_in.name,
        phone=contact_in.phone,
        email=contact_in.email,
        relationship=contact_in.relationship,
        is_primary=contact_in.is_primary,
        notify_sms=preferences["sms"],
        notify_email=preferences["email"],
        notify_call=preferences["call"],
    )
    db.add(contact)
    db.commit()
    db.refresh(contact)
    return contact


def get_contact(db: Session, contact_id: int, user: models.User):
    """
    Retrieve a single active contact owned by the given user.

    Args:
        db (Session): Database session.
        contact_id (int): Contact identifier.
        user (User): Contact owner.

    Returns:
        EmergencyContact | None: Contact if found, otherwise ``None``.
    """
    return db.execute(
        select(models.EmergencyContact).where(
            models.EmergencyContact.id == contact_id,
            models.EmergencyContact.user_id == user.id,
            models.EmergencyContact.is_active.is_(True),
        )
    ).scalar_one_or_none()


def get_active_contacts(db: Session, user: models.User):
    """
    Retrieve the user's active contacts, primary first and newest next.

    Args:
        db (Session): Database session.
        user (User): Contact owner.

    Returns:
        list[EmergencyContact]: Active contacts.
    """
    stmt = (
        select(models.EmergencyContact)
        .where(
            models.EmergencyContact.user_id == user.id,
            models.EmergencyContact.is_active.is_(True),
        )
        .order_by(
            models.EmergencyContact.is_primary.desc(),
            models.EmergencyContact.created_at.desc(),
            models.EmergencyContact.id.desc(),
        )
    )
    return db.scalars(stmt).all()


def update_contact(
    db: Session, contact: models.EmergencyContact, changes: schemas.ContactUpdate
):
    """
    Update mutable fields of a contact.

    Notification preferences are merged into the stored ones.

    Args:
        db (Session): Database session.
        contact (EmergencyContact): Contact instance.
        changes (ContactUpdate): Fields to update.

    Raises:
        HTTPException: If the new phone number is used by another
            active contact of the same user.

    Returns:
        EmergencyContact: Updated contact.
    """
    data = changes.model_dump(exclude_unset=True)

    new_phone = data.get("phone")
    if new_phone and new_phone != contact.phone:
        if find_active_contact_by_phone(
            db, contact.owner, new_phone, exclude_id=contact.id
        ):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Contact with this phone number already exists",
            )

    preferences = data.pop("notification_preferences", None) or {}
    for key, value in data.items():
        if value is None and key != "email":
            continue
        setattr(contact, key, value)
    for key, value in preferences.items():
        if value is not None:
            setattr(contact, f"notify_{key}", value)

    db.add(contact)
    db.commit()
    db.refresh(contact)
    return contact


def deactivate_contact(db: Session, contact: models.EmergencyContact):
    """
    Soft-delete a contact so it no longer appears anywhere.

    Args:
        db (Session): Database session.
        contact (EmergencyContact): Contact to deactivate.
    """
    contact.is_active = False
    db.add(contact)
    db.commit()
    return None


# Emergencies


def _emergency_query():
    return select(models.Emergency).options(
        selectinload(models.Emergency.contacts_notified).selectinload(
            models.ContactNotification.contact
        ),
        selectinload(models.Emergency.location_history),
        selectinload(models.Emergency.notes),
        selectinload(models.Emergency.media),
    )


def priority_for(emergency_type: str) -> str:
    return "Critical" if emergency_type == "Medical" else "High"


def find_recent_duplicate(
    db: Session, user: models.User, emergency_type: str, window_seconds: int
) -> models.Emergency | None:
    """
    Return the user's active emergency of the same type created within
    the last ``window_seconds``, if any.
    """
    if window_seconds <= 0:
        return None
    since = datetime.utcnow() - timedelta(seconds=window_seconds)
    return db.execute(
        select(models.Emergency)
        .where(
            models.Emergency.user_id == user.id,
            models.Emergency.type == emergency_type,
            models.Emergency.status == "Active",
            models.Emergency.created_at >= since,
        )
        .order_by(models.Emergency.created_at.desc(), models.Emergency.id.desc())
    ).scalars().first()


def create_emergency(
    db: Session,
    user: models.User,
    trigger: schemas.EmergencyTrigger,
    address: str,
) -> models.Emergency:
    """
    Persist a new emergency and the user's last location in one commit.

    Args:
        db (Session): Database session.
        user (User): User raising the alert.
        trigger (EmergencyTrigger): Validated trigger payload.
        address (str): Resolved address or raw coordinates.

    Returns:
        Emergency: Newly created emergency.
    """
    location = trigger.location
    now = datetime.utcnow()
    emergency = models.Emergency(
        user_id=user.id,
        type=trigger.type,
        status="Active",
        priority=priority_for(trigger.type),
        latitude=location.latitude,
        longitude=location.longitude,
        accuracy=location.accuracy,
        address=address,
        description=trigger.description,
        created_at=now,
    )
    user.last_latitude = location.latitude
    user.last_longitude = location.longitude
    user.last_accuracy = location.accuracy
    user.last_location_at = now

    db.add(emergency)
    db.add(user)
    db.commit()
    db.refresh(emergency)
    return emergency


def record_notifications(
    db: Session, emergency: models.Emergency, entries: list[dict]
) -> models.Emergency:
    """
    Append one delivery record per contact and persist them.

    Args:
        db (Session): Database session.
        emergency (Emergency): Emergency being reported.
        entries (list[dict]): ``contact_id``, ``method`` and ``status``
            for each contact.

    Returns:
        Emergency: Refreshed emergency.
    """
    for entry in entries:
        emergency.contacts_notified.append(models.ContactNotification(**entry))
    db.add(emergency)
    db.commit()
    db.refresh(emergency)
    return emergency


def get_emergency(
    db: Session,
    emergency_id: int,
    user: models.User,
    active_only: bool = False,
) -> models.Emergency | None:
    """
    Retrieve an emergency owned by the given user.

    Args:
        db (Session): Database session.
        emergency_id (int): Emergency identifier.
        user (User): Emergency owner.
        active_only (bool): Only match emergencies still Active.

    Returns:
        Emergency | None: Emergency if found, otherwise ``None``.
    """
    stmt = _emergency_query().where(
        models.Emergency.id == emergency_id,
        models.Emergency.user_id == user.id,
    )
    if active_only:
        stmt = stmt.where(models.Emergency.status == "Active")
    return db.execute(stmt).scalar_one_or_none()


def emergency_belongs_to(db: Session, emergency_id, user_id: int) -> bool:
    """Return True when ``emergency_id`` names an emergency owned by ``user_id``."""
    try:
        emergency_id = int(emergency_id)
    except (TypeError, ValueError):
        return False
    found = db.scalar(
        select(models.Emergency.id).where(
            models.Emergency.id == emergency_id,
            models.Emergency.user_id == user_id,
        )
    )
    return found is not None


def get_emergency_history(
    db: Session, user: models.User, page: int = 1, limit: int = 10
) -> tuple[list[models.Emergency], dict]:
    """
    Retrieve a page of the user's emergencies, newest first.

    Args:
        db (Session): Database session.
        user (User): Emergency owner.
        page (int): 1-based page number.
        limit (int): Page size.

    Returns:
        tuple[list[Emergency], dict]: Emergencies and pagination info.
    """
    total = db.scalar(
        select(func.count(models.Emergency.id)).where(
            models.Emergency.user_id == user.id
        )
    )
    stmt = (
        _emergency_query()
        .where(models.Emergency.user_id == user.id)
        .order_by(models.Emergency.created_at.desc(), models.Emergency.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    emergencies = db.scalars(stmt).all()
    pagination = {
        "current": page,
        "pages": math.ceil(total / limit) if total else 0,
        "total": total,
    }
    return emergencies, pagination


def set_emergency_status(
    db: Session, emergency: models.Emergency, new_status: str, user: models.User
) -> models.Emergency:
    """
    Change the status of an emergency.

    Resolved and Cancelled stamp ``resolved_at`` and ``resolved_by``;
    other statuses leave them untouched.
    """
    emergency.status = new_status
    if new_status in models.TERMINAL_STATUSES:
        emergency.resolved_at = datetime.utcnow()
        emergency.resolved_by = user.id
    db.add(emergency)
    db.commit()
    db.refresh(emergency)
    return emergency


def append_location(
    db: Session, emergency: models.Emergency, location_in: schemas.LocationUpdate
) -> models.LocationPoint:
    """
    Append a point to the location trail and move the current location.

    Args:
        db (Session): Database session.
        emergency (Emergency): Active emergency.
        location_in (LocationUpdate): New position.

    Returns:
        LocationPoint: The stored trail point.
    """
    point = models.LocationPoint(
        latitude=location_in.latitude,
        longitude=location_in.longitude,
        accuracy=location_in.accuracy,
        timestamp=datetime.utcnow(),
    )
    emergency.location_history.append(point)
    emergency.latitude = location_in.latitude
    emergency.longitude = location_in.longitude
    emergency.accuracy = location_in.accuracy
    db.add(emergency)
    db.commit()
    db.refresh(point)
    return point


def add_note(
    db: Session, emergency: models.Emergency, content: str, user: models.User
) -> models.EmergencyNote:
    note = models.EmergencyNote(content=content, created_by=user.id)
    emergency.notes.append(note)
    db.add(emergency)
    db.commit()
    db.refresh(note)
    return note


def add_media(
    db: Session, emergency: models.Emergency, media_type: str, url: str
) -> models.EmergencyMedia:
    media = models.EmergencyMedia(type=media_type, url=url)
    emergency.media.append(media)
    db.add(emergency)
    db.commit()
    db.refresh(media)
    return media
