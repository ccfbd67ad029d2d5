"""User profile routes: profile data, password, avatar and push devices."""

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from . import crud, schemas
from .auth import get_current_user, get_password_hash, verify_password
from .core import get_settings
from .database import get_db
from .notifications import Notifier, get_notifier
from .storage import upload_file

router = APIRouter(prefix="/api/users", tags=["users"])
settings = get_settings()


@router.get("/me", response_model=schemas.UserOut)
def read_me(current_user=Depends(get_current_user)):
    """
    Retrieve details of the currently authenticated user.

    Args:
        current_user (User): Authenticated user obtained from JWT token.

    Returns:
        UserOut: User profile information.
    """
    return current_user


@router.put("/me", response_model=schemas.UserOut)
def update_me(
    changes: schemas.UserUpdate,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Update name, phone, medical info or settings of the current user.

    Args:
        changes (UserUpdate): Fields to change.
        current_user (User): Authenticated user.
        db (Session): Database session.

    Returns:
        UserOut: Updated profile.
    """
    return crud.update_user_profile(db, current_user, changes)


@router.put("/me/password", response_model=schemas.MessageResponse)
def change_password(
    payload: schemas.PasswordChange,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Replace the current user's password after checking the old one.

    Raises:
        HTTPException: If the current password does not match.
    """
    if not verify_password(payload.current_password, current_user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect",
        )
    crud.update_user_password(db, current_user, get_password_hash(payload.new_password))
    return {"success": True, "message": "Password updated"}


@router.put("/me/avatar", response_model=schemas.UserOut)
def update_avatar(
    file: UploadFile = File(...),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Upload a new profile image for the authenticated user.

    Args:
        file (UploadFile): Uploaded image file.
        current_user (User): Authenticated user.
        db (Session): Database session.

    Raises:
        HTTPException: If Cloudinary is not configured.
        HTTPException: If the upload fails.

    Returns:
        UserOut: Updated user profile.
    """
    avatar_url = upload_file(file.file, folder="safepath_profiles")
    return crud.update_user_avatar(db, current_user, avatar_url)


@router.post(
    "/me/device-tokens",
    response_model=schemas.DeviceTokenOut,
    status_code=status.HTTP_201_CREATED,
)
def register_device(
    token_in: schemas.DeviceTokenCreate,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Register (or refresh) a push token for one of the user's devices."""
    return crud.register_device_token(db, current_user, token_in)


@router.post(
    "/me/test-push",
    response_model=schemas.PushResultOut,
    dependencies=[
        Depends(
            RateLimiter(
                times=settings.RATE_LIMIT_TIMES, seconds=settings.RATE_LIMIT_SECONDS
            )
        )
    ],
)
async def test_push(
    payload: schemas.PushTestRequest,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Send a test push notification to every registered device.

    Returns:
        PushResultOut: Multicast success and failure counts.
    """
    tokens = crud.get_device_tokens(db, current_user)
    result = await notifier.send_push(
        tokens, payload.title, payload.body, data={"type": "test"}
    )
    return result
