from datetime import datetime, timezone, date
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    CUSTOMER = "customer"
    CONTRACTOR = "contractor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    PENDING_VERIFICATION = "pending_verification"


class ServiceCategory(str, Enum):
    PLUMBING = "plumbing"
    ELECTRICAL = "electrical"
    HVAC = "hvac"
    CLEANING = "cleaning"
    HANDYMAN = "handyman"
    PAINTING = "painting"
    GARDENING = "gardening"
    PEST_CONTROL = "pest_control"
    APPLIANCE_REPAIR = "appliance_repair"
    CARPENTRY = "carpentry"
    ROOFING = "roofing"
    FLOORING = "flooring"
    SOLAR = "solar"


class BookingStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    WALLET = "wallet"
    CASH = "cash"


class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    EMERGENCY = "emergency"


URGENCY_RANK = {Urgency.EMERGENCY: 0, Urgency.HIGH: 1, Urgency.NORMAL: 2, Urgency.LOW: 3}


class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Address(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=2)
    zipCode: str = Field(..., min_length=3)
    country: str = "US"
    coordinates: Optional[Coordinates] = None

    def one_line(self) -> str:
        return f"{self.street}, {self.city}, {self.state} {self.zipCode}"


class BookingRequest(BaseModel):
    customerId: str = Field(..., min_length=1)
    category: ServiceCategory
    serviceId: Optional[str] = None
    description: str = Field(..., min_length=3, max_length=4000)
    images: List[str] = Field(default_factory=list)
    urgency: Urgency = Urgency.NORMAL
    requestedDate: date
    requestedTimeSlot: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    estimatedDuration: int = Field(60, ge=15, le=720)
    location: Address
    paymentMethod: PaymentMethod = PaymentMethod.CARD
    notes: Optional[str] = None

    @field_validator("requestedDate")
    @classmethod
    def not_in_past(cls, value: date) -> date:
        if value < utcnow().date():
            raise ValueError("requestedDate cannot be in the past")
        return value

    @field_validator("images")
    @classmethod
    def limit_images(cls, value: List[str]) -> List[str]:
        if len(value) > 10:
            raise ValueError("At most 10 images can be attached")
        return value


class BookingRating(BaseModel):
    overall: int = Field(..., ge=1, le=5)
    punctuality: int = Field(..., ge=1, le=5)
    quality: int = Field(..., ge=1, le=5)
    communication: int = Field(..., ge=1, le=5)
    value: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=2000)


class WeeklyAvailability(BaseModel):
    available: bool = True
    start: str = Field("08:00", pattern=r"^([01]\d|2[0-4]):[0-5]\d$")
    end: str = Field("18:00", pattern=r"^([01]\d|2[0-4]):[0-5]\d$")


class TimeSlot(BaseModel):
    start: str
    end: str
    booked: bool = False


class ContractorProfile(BaseModel):
    """Contractor fields the matchers read. Extra Firestore fields are ignored."""

    id: str
    name: str = ""
    services: List[str] = Field(default_factory=list)
    location: Coordinates
    rating: float = Field(0, ge=0, le=5)
    completedJobs: int = Field(0, ge=0)
    hourlyRate: float = Field(0, ge=0)
    responseTime: float = Field(30, ge=0)
    # keyed by lowercase weekday name
    availability: Dict[str, WeeklyAvailability] = Field(default_factory=dict)
    # keyed by ISO date
    schedule: Dict[str, List[TimeSlot]] = Field(default_factory=dict)
    emergencyAvailable: bool = False
    certifications: List[str] = Field(default_factory=list)
    currentJobs: int = Field(0, ge=0)
    maxConcurrentJobs: int = Field(3, ge=1)
    acceptanceRate: float = Field(1.0, ge=0, le=1)
    autoAccept: bool = False
    tier: str = "growing"

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ContractorProfile":
        profile = doc.get("contractorProfile") or {}
        merged = {**doc, **profile}
        if not merged.get("location") and isinstance(merged.get("address"), dict):
            merged["location"] = merged["address"].get("coordinates")
        return cls.model_validate(merged)
