"""Emergency routes: trigger, status, live location, history and extras."""

import logging

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Query,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from . import crud, schemas
from .assistant import AssistantError, FirstAidAssistant, get_assistant
from .auth import get_current_user
from .core import get_settings
from .database import get_db
from .location import LocationService, get_location_service
from .models import User
from .notifications import (
    Alert,
    Notifier,
    Recipient,
    fan_out,
    get_notifier,
    notify_status_change,
)
from .realtime import ConnectionManager, get_event_bus
from .storage import upload_file

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/emergency", tags=["emergency"])
settings = get_settings()


def _summary(emergency) -> dict:
    return {
        "id": emergency.id,
        "type": emergency.type,
        "status": emergency.status,
        "location": emergency.location,
        "created_at": emergency.created_at,
        "contacts_notified": len(emergency.contacts_notified),
    }


def _get_owned_emergency(db: Session, emergency_id: int, user: User):
    emergency = crud.get_emergency(db, emergency_id, user)
    if not emergency:
        raise HTTPException(status_code=404, detail="Emergency not found")
    return emergency


@router.post(
    "/trigger",
    response_model=schemas.TriggerResponse,
    status_code=status.HTTP_201_CREATED,
)
async def trigger_emergency(
    trigger: schemas.EmergencyTrigger,
    response: Response,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    locator: LocationService = Depends(get_location_service),
    notifier: Notifier = Depends(get_notifier),
    bus: ConnectionManager = Depends(get_event_bus),
):
    """
    Raise an emergency and alert every active contact.

    The address is resolved first (falling back to raw coordinates),
    the emergency and the user's last location are stored together,
    then contacts are notified in parallel. One delivery record is
    kept per contact whatever the outcome, and an ``emergency-alert``
    event is broadcast.

    A repeat of the same type within ``TRIGGER_DEDUP_SECONDS`` returns
    the still active emergency with status 200 and ``duplicate`` set.

    Args:
        trigger (EmergencyTrigger): Location, type and description.
        response (Response): Used to downgrade the status for repeats.
        db (Session): Database session.
        current_user (User): Authenticated user.
        locator (LocationService): Reverse geocoder.
        notifier (Notifier): Notification dispatcher.
        bus (ConnectionManager): Real-time event channel.

    Raises:
        HTTPException: On any persistence or provider failure.

    Returns:
        TriggerResponse: Emergency summary and per-contact deliveries.
    """
    user_id = current_user.id
    user_name = current_user.name
    try:
        existing = crud.find_recent_duplicate(
            db, current_user, trigger.type, settings.TRIGGER_DEDUP_SECONDS
        )
        if existing:
            logger.info("Duplicate trigger by user %s, reusing %s", user_id, existing.id)
            response.status_code = status.HTTP_200_OK
            return {
                "success": True,
                "message": "Emergency alert already active",
                "duplicate": True,
                "emergency": _summary(existing),
                "deliveries": [],
            }

        location = trigger.location
        address = await locator.reverse_geocode(location.latitude, location.longitude)
        emergency = crud.create_emergency(db, current_user, trigger, address)

        recipients = [
            Recipient.from_contact(contact)
            for contact in crud.get_active_contacts(db, current_user)
        ]
        alert = Alert(
            user_name=user_name,
            type=emergency.type,
            latitude=location.latitude,
            longitude=location.longitude,
            address=address,
            time=emergency.created_at,
        )
        reports = await fan_out(
            recipients, lambda recipient: notifier.send_emergency_alert(recipient, alert)
        )

        entries = []
        deliveries = []
        for recipient, report in reports:
            chosen = report.summary()
            delivery_status = "Sent" if chosen.success else "Failed"
            entries.append(
                {"contact_id": recipient.id, "method": chosen.method, "status": delivery_status}
            )
            deliveries.append(
                {
                    "contact_id": recipient.id,
                    "method": chosen.method,
                    "status": delivery_status,
                    "channels": report.as_dicts(),
                }
            )
        emergency = crud.record_notifications(db, emergency, entries)

        await bus.emit(
            "emergency-alert",
            {
                "emergencyId": emergency.id,
                "userId": user_id,
                "userName": user_name,
                "type": emergency.type,
                "location": emergency.location,
                "timestamp": emergency.created_at,
                "emergencyContacts": [recipient.id for recipient in recipients],
            },
        )
    except HTTPException:
        raise
    except Exception:
        logger.exception("Emergency trigger failed for user %s", user_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to trigger emergency alert",
        )

    logger.info("Emergency triggered by user %s: %s", user_id, emergency.id)
    return {
        "success": True,
        "message": "Emergency alert triggered successfully",
        "duplicate": False,
        "emergency": _summary(emergency),
        "deliveries": deliveries,
    }


@router.get("/history", response_model=schemas.HistoryResponse)
def emergency_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Retrieve the user's emergencies, newest first.

    Args:
        page (int): 1-based page number.
        limit (int): Page size.
        db (Session): Database session.
        current_user (User): Authenticated user.

    Returns:
        HistoryResponse: Emergencies with notified contacts and pagination.
    """
    emergencies, pagination = crud.get_emergency_history(db, current_user, page, limit)
    return {
        "success": True,
        "emergencies": [schemas.EmergencyOut.model_validate(item) for item in emergencies],
        "pagination": pagination,
    }


@router.post(
    "/ai-assist",
    response_model=schemas.AIAssistResponse,
    dependencies=[
        Depends(
            RateLimiter(
                times=settings.RATE_LIMIT_TIMES, seconds=settings.RATE_LIMIT_SECONDS
            )
        )
    ],
)
async def ai_assist(
    payload: schemas.AIAssistRequest,
    current_user: User = Depends(get_current_user),
    assistant: FirstAidAssistant = Depends(get_assistant),
):
    """
    Ask the AI assistant for first-aid guidance.

    Returns:
        AIAssistResponse: First-aid steps, safety tips and what to do
        before help arrives.
    """
    description = (payload.description or "").strip()
    if not description:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": "Emergency description is required"},
        )

    logger.info("Processing AI assistance request for user %s", current_user.id)
    try:
        guidance = await assistant.guidance(description)
    except AssistantError as exc:
        logger.error("AI assistance error: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Failed to get AI assistance",
                "details": str(exc),
            },
        )
    return {"success": True, **guidance}


@router.get("/{emergency_id}", response_model=schemas.EmergencyDetailResponse)
def get_emergency(
    emergency_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Retrieve full details of one of the user's emergencies.

    Raises:
        HTTPException: If the emergency is not found.
    """
    emergency = _get_owned_emergency(db, emergency_id, current_user)
    return {"success": True, "emergency": schemas.EmergencyOut.model_validate(emergency)}


@router.put("/{emergency_id}/status", response_model=schemas.StatusResponse)
async def update_status(
    emergency_id: int,
    payload: schemas.StatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_notifier),
    bus: ConnectionManager = Depends(get_event_bus),
):
    """
    Change the status of an emergency.

    Resolved and Cancelled record when and by whom. Contacts are told
    about the change in the background; delivery failures are only
    logged. An ``emergency-status-update`` event is broadcast.

    Raises:
        HTTPException: If the emergency is not found.
        HTTPException: On a persistence failure.

    Returns:
        StatusResponse: New status and resolution time.
    """
    user_id = current_user.id
    user_name = current_user.name
    emergency = _get_owned_emergency(db, emergency_id, current_user)
    try:
        emergency = crud.set_emergency_status(db, emergency, payload.status, current_user)
        recipients = [
            Recipient.from_contact(contact)
            for contact in crud.get_active_contacts(db, current_user)
        ]
        message = f"Emergency alert from {user_name} has been {payload.status.lower()}"
        background_tasks.add_task(notify_status_change, notifier, recipients, message)

        await bus.emit(
            "emergency-status-update",
            {
                "emergencyId": emergency.id,
                "status": emergency.status,
                "resolvedAt": emergency.resolved_at,
            },
        )
    except Exception:
        logger.exception("Status update failed for emergency %s", emergency_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update emergency status",
        )

    logger.info(
        "Emergency %s status updated to %s by user %s", emergency_id, payload.status, user_id
    )
    return {
        "success": True,
        "message": "Emergency status updated successfully",
        "emergency": {
            "id": emergency.id,
            "status": emergency.status,
            "resolved_at": emergency.resolved_at,
        },
    }


@router.post("/{emergency_id}/location", response_model=schemas.LocationUpdateResponse)
async def update_location(
    emergency_id: int,
    location_in: schemas.LocationUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    bus: ConnectionManager = Depends(get_event_bus),
):
    """
    Record a new position for an active emergency.

    The point is appended to the trail, becomes the current location
    and is pushed to the ``emergency-<id>`` room only.

    Raises:
        HTTPException: If there is no active emergency with this ID.
    """
    emergency = crud.get_emergency(db, emergency_id, current_user, active_only=True)
    if not emergency:
        raise HTTPException(status_code=404, detail="Active emergency not found")
    try:
        point = crud.append_location(db, emergency, location_in)
        await bus.emit(
            "location-updated",
            {
                "emergencyId": emergency_id,
                "location": {
                    "latitude": point.latitude,
                    "longitude": point.longitude,
                    "accuracy": point.accuracy,
                },
                "timestamp": point.timestamp,
            },
            room=f"emergency-{emergency_id}",
        )
    except Exception:
        logger.exception("Location update failed for emergency %s", emergency_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update location",
        )
    return {
        "success": True,
        "message": "Location updated successfully",
        "location": schemas.LocationPointOut.model_validate(point),
    }


@router.post(
    "/{emergency_id}/notes",
    response_model=schemas.NoteOut,
    status_code=status.HTTP_201_CREATED,
)
def add_note(
    emergency_id: int,
    note_in: schemas.NoteCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Attach a free-text note to an emergency."""
    emergency = _get_owned_emergency(db, emergency_id, current_user)
    return crud.add_note(db, emergency, note_in.content, current_user)


@router.post(
    "/{emergency_id}/media",
    response_model=schemas.MediaOut,
    status_code=status.HTTP_201_CREATED,
)
def add_media(
    emergency_id: int,
    type: schemas.MediaType = Form("image"),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Upload a photo, video or audio clip for an emergency.

    Raises:
        HTTPException: If the emergency is not found.
        HTTPException: If Cloudinary is not configured or the upload fails.

    Returns:
        MediaOut: Stored media record.
    """
    emergency = _get_owned_emergency(db, emergency_id, current_user)
    url = upload_file(file.file, folder="safepath_emergencies", resource_type="auto")
    return crud.add_media(db, emergency, type, url)
