"""Emergency contact routes: CRUD plus a test notification."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from . import crud, schemas
from .auth import get_current_user
from .core import get_settings
from .database import get_db
from .models import User
from .notifications import Notifier, Recipient, get_notifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/contacts", tags=["contacts"])
settings = get_settings()


def _get_owned_contact(db: Session, contact_id: int, user: User):
    contact = crud.get_contact(db, contact_id, user)
    if not contact:
        raise HTTPException(status_code=404, detail="Contact not found")
    return contact


@router.get("", response_model=schemas.ContactListResponse)
def list_contacts(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Retrieve the active contacts of the current user.

    Primary contact first, then the most recently added.

    Args:
        db (Session): Database session.
        current_user (User): Authenticated user.

    Returns:
        ContactListResponse: List of contacts.
    """
    contacts = crud.get_active_contacts(db, current_user)
    return {"success": True, "contacts": contacts}


@router.post(
    "", response_model=schemas.ContactResponse, status_code=status.HTTP_201_CREATED
)
def create_contact(
    contact_in: schemas.ContactCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Create a new emergency contact owned by the current user.

    Marking the contact as primary clears the flag on every other
    contact of the user.

    Args:
        contact_in (ContactCreate): Contact input data.
        db (Session): Database session.
        current_user (User): Authenticated user.

    Raises:
        HTTPException: If the contact limit is reached or the phone
            number is already used by another active contact.

    Returns:
        ContactResponse: Created contact.
    """
    contact = crud.create_contact(
        db, contact_in, current_user, max_contacts=settings.MAX_CONTACTS
    )
    logger.info("Contact %s added for user %s", contact.id, current_user.id)
    return {
        "success": True,
        "message": "Emergency contact added successfully",
        "contact": contact,
    }


@router.get("/{contact_id}", response_model=schemas.ContactResponse)
def get_contact(
    contact_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Retrieve a single active contact by ID.

    Raises:
        HTTPException: If contact is not found.
    """
    return {"success": True, "contact": _get_owned_contact(db, contact_id, current_user)}


@router.put("/{contact_id}", response_model=schemas.ContactResponse)
def update_contact(
    contact_id: int,
    contact_in: schemas.ContactUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Update an existing contact.

    Args:
        contact_id (int): Contact identifier.
        contact_in (ContactUpdate): Fields to update.
        db (Session): Database session.
        current_user (User): Authenticated user.

    Raises:
        HTTPException: If contact is not found.
        HTTPException: If the new phone number is already taken.

    Returns:
        ContactResponse: Updated contact.
    """
    contact = _get_owned_contact(db, contact_id, current_user)
    contact = crud.update_contact(db, contact, contact_in)
    return {
        "success": True,
        "message": "Emergency contact updated successfully",
        "contact": contact,
    }


@router.delete("/{contact_id}", response_model=schemas.MessageResponse)
def delete_contact(
    contact_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Deactivate a contact. The record is kept for emergency history.

    Raises:
        HTTPException: If contact is not found.
    """
    contact = _get_owned_contact(db, contact_id, current_user)
    crud.deactivate_contact(db, contact)
    logger.info("Contact %s removed for user %s", contact_id, current_user.id)
    return {"success": True, "message": "Emergency contact removed successfully"}


@router.post(
    "/{contact_id}/test",
    response_model=schemas.ContactTestResponse,
    dependencies=[
        Depends(
            RateLimiter(
                times=settings.RATE_LIMIT_TIMES, seconds=settings.RATE_LIMIT_SECONDS
            )
        )
    ],
)
async def test_contact(
    contact_id: int,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Send a test notification to a contact.

    SMS is always attempted, email only when the contact has an
    address. Responds with 500 when every channel failed.

    Returns:
        ContactTestResponse: Per-channel results.
    """
    contact = _get_owned_contact(db, contact_id, current_user)
    recipient = Recipient.from_contact(contact)
    report = await notifier.send_test_notification(recipient, current_user.name)

    if not report.success:
        response.status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return {
            "success": False,
            "message": "Failed to send test notification",
            "channels": report.as_dicts(),
        }
    return {
        "success": True,
        "message": "Test notification sent successfully",
        "channels": report.as_dicts(),
    }
