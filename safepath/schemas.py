"""Request and response schemas.

Models exchanged with clients inherit from :class:`APIModel`, which
serializes field names in camelCase (``isPrimary``, ``resolvedAt``)
while still accepting snake_case input.
"""

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, constr, field_validator
from pydantic.alias_generators import to_camel


PHONE_PATTERN = r"^\+?[1-9]\d{1,14}$"

EmergencyType = Literal["SOS", "Medical", "Fire", "Police", "Natural Disaster", "Other"]
EmergencyStatus = Literal["Active", "Resolved", "Cancelled", "False Alarm"]
Relationship = Literal[
    "Spouse", "Parent", "Child", "Sibling", "Friend", "Doctor", "Other"
]
BloodType = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-", "Unknown"]
Platform = Literal["ios", "android", "web"]
MediaType = Literal["image", "video", "audio"]

PersonName = constr(strip_whitespace=True, min_length=2, max_length=50)
Phone = constr(strip_whitespace=True, pattern=PHONE_PATTERN)


class APIModel(BaseModel):
    """Base for schemas exposed over the API (camelCase on the wire)."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class MessageResponse(APIModel):
    success: bool = True
    message: str


# Users


class MedicalInfo(APIModel):
    blood_type: BloodType = "Unknown"
    allergies: List[str] = []
    medications: List[str] = []
    medical_conditions: List[str] = []
    emergency_medical_info: Optional[str] = None


class MedicalInfoUpdate(APIModel):
    blood_type: Optional[BloodType] = None
    allergies: Optional[List[str]] = None
    medications: Optional[List[str]] = None
    medical_conditions: Optional[List[str]] = None
    emergency_medical_info: Optional[str] = None


class UserSettings(APIModel):
    notifications_enabled: bool = True
    location_enabled: bool = True
    emergency_mode_enabled: bool = False
    auto_call_emergency_services: bool = False


class UserSettingsUpdate(APIModel):
    notifications_enabled: Optional[bool] = None
    location_enabled: Optional[bool] = None
    emergency_mode_enabled: Optional[bool] = None
    auto_call_emergency_services: Optional[bool] = None


class LastLocation(APIModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: Optional[datetime] = None


class UserCreate(APIModel):
    """Payload for creating a new user."""

    name: PersonName
    email: EmailStr
    password: str = Field(min_length=6)
    phone: Phone

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: str) -> str:
        return value.lower()


class UserOut(APIModel):
    """Response schema for user data."""

    id: int
    name: str
    email: EmailStr
    phone: str
    profile_image: Optional[str] = None
    medical_info: MedicalInfo
    settings: UserSettings
    last_location: Optional[LastLocation] = None
    is_active: bool = True
    last_seen: Optional[datetime] = None
    created_at: Optional[datetime] = None


class UserUpdate(APIModel):
    """Profile changes; nested dictionaries are merged into the stored ones."""

    name: Optional[PersonName] = None
    phone: Optional[Phone] = None
    medical_info: Optional[MedicalInfoUpdate] = None
    settings: Optional[UserSettingsUpdate] = None


class PasswordChange(APIModel):
    current_password: str
    new_password: str = Field(min_length=6)


class DeviceTokenCreate(APIModel):
    token: str = Field(min_length=1, max_length=500)
    platform: Optional[Platform] = None


class DeviceTokenOut(APIModel):
    id: int
    token: str
    platform: Optional[str] = None
    created_at: datetime


class PushTestRequest(APIModel):
    title: str = "SafePath Test Notification"
    body: str = "This is a test push notification from SafePath."


class PushResultOut(APIModel):
    success: bool
    success_count: int = 0
    failure_count: int = 0
    error: Optional[str] = None


# Auth


class Token(BaseModel):
    """JWT token response schema."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenRefresh(APIModel):
    """Schema for requesting a new access token from a refresh token."""

    refresh_token: str


class TokenData(BaseModel):
    """Payload stored inside JWT token."""

    sub: str | None = None
    exp: Optional[datetime] = None
    scope: Optional[str] = None


# Contacts


class NotificationPreferences(APIModel):
    sms: bool = True
    email: bool = True
    call: bool = False


class NotificationPreferencesUpdate(APIModel):
    sms: Optional[bool] = None
    email: Optional[bool] = None
    call: Optional[bool] = None


class ContactCreate(APIModel):
    """Schema for creating a new emergency contact."""

    name: PersonName
    phone: Phone
    email: Optional[EmailStr] = None
    relationship: Relationship
    is_primary: bool = False
    notification_preferences: Optional[NotificationPreferencesUpdate] = None

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else value


class ContactUpdate(APIModel):
    """Schema for updating a contact (all fields optional)."""

    name: Optional[PersonName] = None
    phone: Optional[Phone] = None
    email: Optional[EmailStr] = None
    relationship: Optional[Relationship] = None
    is_primary: Optional[bool] = None
    notification_preferences: Optional[NotificationPreferencesUpdate] = None

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else value


class ContactOut(APIModel):
    """Schema for returning a contact with its ID."""

    id: int
    name: str
    phone: str
    email: Optional[str] = None
    relationship: str
    is_primary: bool
    is_active: bool
    notification_preferences: NotificationPreferences
    created_at: datetime
    updated_at: datetime


class ContactResponse(APIModel):
    success: bool = True
    message: Optional[str] = None
    contact: ContactOut


class ContactListResponse(APIModel):
    success: bool = True
    contacts: List[ContactOut]


class ChannelResultOut(APIModel):
    method: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class ContactTestResponse(APIModel):
    success: bool
    message: str
    channels: List[ChannelResultOut] = []


# Emergencies


class LocationIn(APIModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)


class LocationUpdate(LocationIn):
    """New position reported for an active emergency."""


class LocationOut(APIModel):
    latitude: float
    longitude: float
    address: Optional[str] = None
    accuracy: Optional[float] = None


class EmergencyTrigger(APIModel):
    location: LocationIn
    type: EmergencyType = "SOS"
    description: Optional[str] = Field(default=None, max_length=500)


class StatusUpdate(APIModel):
    status: EmergencyStatus


class ContactBrief(APIModel):
    id: int
    name: str
    phone: str
    relationship: str


class ContactNotificationOut(APIModel):
    contact: Optional[ContactBrief] = None
    method: str
    status: str
    notified_at: datetime


class LocationPointOut(APIModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    timestamp: datetime


class NoteCreate(APIModel):
    content: constr(strip_whitespace=True, min_length=1, max_length=1000)


class NoteOut(APIModel):
    id: int
    content: str
    created_by: Optional[int] = None
    created_at: datetime


class MediaOut(APIModel):
    id: int
    type: str
    url: str
    uploaded_at: datetime


class EmergencyOut(APIModel):
    id: int
    user_id: int
    type: str
    status: str
    priority: str
    location: LocationOut
    description: Optional[str] = None
    contacts_notified: List[ContactNotificationOut] = []
    location_history: List[LocationPointOut] = []
    notes: List[NoteOut] = []
    media: List[MediaOut] = []
    emergency_services_contacted: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class EmergencySummary(APIModel):
    id: int
    type: str
    status: str
    location: LocationOut
    created_at: datetime
    contacts_notified: int


class DeliveryOut(APIModel):
    contact_id: int
    method: str
    status: str
    channels: List[ChannelResultOut] = []


class TriggerResponse(APIModel):
    success: bool = True
    message: str
    duplicate: bool = False
    emergency: EmergencySummary
    deliveries: List[DeliveryOut] = []


class StatusSummary(APIModel):
    id: int
    status: str
    resolved_at: Optional[datetime] = None


class StatusResponse(APIModel):
    success: bool = True
    message: str
    emergency: StatusSummary


class EmergencyDetailResponse(APIModel):
    success: bool = True
    emergency: EmergencyOut


class Pagination(APIModel):
    current: int
    pages: int
    total: int


class HistoryResponse(APIModel):
    success: bool = True
    emergencies: List[EmergencyOut]
    pagination: Pagination


class AIAssistRequest(APIModel):
    description: Optional[str] = None


class AIAssistResponse(APIModel):
    success: bool = True
    first_aid_steps: List[str]
    safety_tips: List[str]
    before_help_arrives: List[str]


# Location lookups


class Coordinates(APIModel):
    latitude: float
    longitude: float


class NearbyPlace(APIModel):
    name: str
    address: Optional[str] = None
    location: Coordinates
    rating: Optional[float] = None
    is_open: Optional[bool] = None
    place_id: Optional[str] = None
    distance_km: Optional[float] = None


class NearbyResponse(APIModel):
    success: bool = True
    places: List[NearbyPlace]


class DirectionsResponse(APIModel):
    success: bool
    route: Optional[dict[str, Any]] = None


class LocationUpdateResponse(APIModel):
    success: bool = True
    message: str
    location: LocationPointOut
