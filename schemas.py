"""
Database Schemas for ShareButes

Each document model corresponds to a MongoDB collection. Collection name is the
lowercased class name:
- User -> "user"
- Donation -> "donation"
- Request -> "request"

Fields are snake_case in Python and camelCase on the wire and in the database
(`food_type` <-> `foodType`). Payload models (`*Create`, `*Update`, `*Payload`)
validate request bodies; document models extend them with the server-owned fields.
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

from utils import to_naive_utc

UserType = Literal['donor', 'ngo']
FoodType = Literal['cooked', 'packaged', 'fresh', 'frozen', 'canned', 'baked', 'other']
QuantityUnit = Literal['meals', 'pounds', 'kilograms', 'pieces', 'servings', 'containers']
Allergen = Literal['dairy', 'eggs', 'fish', 'shellfish', 'tree nuts', 'peanuts', 'wheat', 'soy', 'none']
DietaryRestriction = Literal['vegetarian', 'vegan', 'gluten-free', 'halal', 'kosher', 'none']
DonationStatus = Literal['available', 'claimed', 'picked-up', 'expired', 'cancelled']
RequestStatus = Literal['pending', 'fulfilled', 'cancelled', 'expired']
Urgency = Literal['low', 'medium', 'high', 'critical']
BeneficiaryType = Literal['children', 'adults', 'families', 'elderly', 'homeless', 'refugees', 'other']
PreferredContact = Literal['phone', 'email', 'both']

# Stored as naive UTC so comparisons against database values line up
UtcDatetime = Annotated[datetime, AfterValidator(to_naive_utc)]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        arbitrary_types_allowed=True,
    )


# ===== Shared embedded objects =====

class Quantity(CamelModel):
    amount: float = Field(..., ge=1, description="Quantity must be at least 1")
    unit: QuantityUnit


class Address(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = "United States"


class GeoPoint(CamelModel):
    type: Literal['Point'] = 'Point'
    coordinates: List[float] = Field(..., description="[longitude, latitude]")

    @field_validator('coordinates')
    @classmethod
    def check_lng_lat(cls, v: List[float]) -> List[float]:
        if len(v) != 2:
            raise ValueError("coordinates must be [longitude, latitude]")
        lng, lat = v
        if not (-180 <= lng <= 180 and -90 <= lat <= 90):
            raise ValueError("coordinates out of range")
        return v


class DonationLocation(CamelModel):
    address: Optional[Address] = None
    coordinates: Optional[GeoPoint] = None
    pickup_instructions: Optional[str] = Field(None, max_length=200)


class RequestLocation(CamelModel):
    address: Optional[Address] = None
    coordinates: Optional[GeoPoint] = None
    delivery_instructions: Optional[str] = Field(None, max_length=200)


class TimeWindow(CamelModel):
    start: UtcDatetime
    end: UtcDatetime


class Image(CamelModel):
    url: str
    caption: Optional[str] = None


class Beneficiaries(CamelModel):
    count: int = Field(..., ge=1)
    type: BeneficiaryType
    description: Optional[str] = Field(None, max_length=200)


class ContactInfo(CamelModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    preferred_contact: PreferredContact = 'email'


class Fulfillment(CamelModel):
    donation: ObjectId
    fulfilled_at: UtcDatetime
    quantity: Quantity


# ===== Users =====

class UserStats(CamelModel):
    total_donations: int = 0
    total_meals: float = 0


class RegisterPayload(CamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=6)
    user_type: UserType = 'donor'
    organization: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class User(RegisterPayload):
    """
    users collection
    Collection: "user"
    """
    password: str = Field(..., description="bcrypt hash")
    preferences: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = Field(True, description="Active status")
    stats: UserStats = Field(default_factory=UserStats)
    last_login: Optional[UtcDatetime] = None


class LoginPayload(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ProfileUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    organization: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None


class ChangePasswordPayload(CamelModel):
    current_password: Optional[str] = None
    new_password: Optional[str] = None


class ForgotPasswordPayload(CamelModel):
    email: Optional[str] = None


# ===== Donations =====

class DonationCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    food_type: FoodType
    quantity: Quantity
    allergens: List[Allergen] = Field(default_factory=lambda: ['none'])
    dietary_restrictions: List[DietaryRestriction] = Field(default_factory=lambda: ['none'])
    preparation_time: UtcDatetime
    expiry_time: UtcDatetime
    pickup_time: TimeWindow
    location: DonationLocation
    images: List[Image] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_urgent: bool = False
    estimated_value: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=300)


class DonationUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    food_type: Optional[FoodType] = None
    quantity: Optional[Quantity] = None
    allergens: Optional[List[Allergen]] = None
    dietary_restrictions: Optional[List[DietaryRestriction]] = None
    preparation_time: Optional[UtcDatetime] = None
    expiry_time: Optional[UtcDatetime] = None
    pickup_time: Optional[TimeWindow] = None
    location: Optional[DonationLocation] = None
    images: Optional[List[Image]] = None
    tags: Optional[List[str]] = None
    is_urgent: Optional[bool] = None
    estimated_value: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=300)


class Donation(DonationCreate):
    """
    donations collection
    Collection: "donation"
    """
    donor: ObjectId
    status: DonationStatus = 'available'
    claimed_by: Optional[ObjectId] = None
    claimed: bool = False
    claimed_at: Optional[UtcDatetime] = None
    picked_up_at: Optional[UtcDatetime] = None


# ===== Requests =====

class RequestCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=500)
    food_types: List[FoodType] = Field(default_factory=lambda: ['other'])
    quantity: Quantity
    urgency: Urgency = 'medium'
    needed_by: UtcDatetime
    location: RequestLocation
    beneficiaries: Beneficiaries
    dietary_restrictions: List[DietaryRestriction] = Field(default_factory=lambda: ['none'])
    allergens: List[Allergen] = Field(default_factory=lambda: ['none'])
    tags: List[str] = Field(default_factory=list)
    is_urgent: bool = False
    notes: Optional[str] = Field(None, max_length=300)
    contact_info: Optional[ContactInfo] = None


class RequestUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    food_types: Optional[List[FoodType]] = None
    quantity: Optional[Quantity] = None
    urgency: Optional[Urgency] = None
    needed_by: Optional[UtcDatetime] = None
    location: Optional[RequestLocation] = None
    beneficiaries: Optional[Beneficiaries] = None
    dietary_restrictions: Optional[List[DietaryRestriction]] = None
    allergens: Optional[List[Allergen]] = None
    tags: Optional[List[str]] = None
    is_urgent: Optional[bool] = None
    notes: Optional[str] = Field(None, max_length=300)
    contact_info: Optional[ContactInfo] = None


class Request(RequestCreate):
    """
    requests collection
    Collection: "request"
    """
    requester: ObjectId
    status: RequestStatus = 'pending'
    fulfilled_by: List[Fulfillment] = Field(default_factory=list)
