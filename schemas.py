from datetime import date, datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from services.errors import InvalidWindow
from utils.timeparse import parse_hhmm, to_naive_utc


class RequestModel(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class WindowFields(RequestModel):
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def _utc(cls, value):
        return to_naive_utc(value)


# ---------- auth ----------

class RegisterRequest(RequestModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    full_name: Optional[str] = Field(None, max_length=120)
    phone_number: Optional[str] = Field(None, max_length=30)
    business_name: Optional[str] = Field(None, max_length=160)
    role: Literal["CLIENT", "PROVIDER"] = "CLIENT"

    @field_validator("email")
    @classmethod
    def _email(cls, value):
        value = value.lower()
        if "@" not in value:
            raise ValueError("Invalid email")
        return value


class LoginRequest(RequestModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _email(cls, value):
        return value.lower()


# ---------- resources ----------

class ResourceFields(RequestModel):
    kind: Optional[Literal["service", "venue"]] = None
    title: Optional[str] = Field(None, min_length=1, max_length=160)
    description: Optional[str] = None
    category: Optional[str] = Field(None, max_length=60)
    location: Optional[str] = Field(None, max_length=255)
    price_amount: Optional[int] = Field(None, ge=0)
    price_currency: Optional[str] = Field(None, min_length=3, max_length=10)
    capacity: Optional[int] = Field(None, ge=1)
    min_duration_minutes: Optional[int] = Field(None, ge=1)
    max_duration_minutes: Optional[int] = Field(None, ge=1)
    booking_increment_minutes: Optional[int] = Field(None, ge=1)
    buffer_minutes: Optional[int] = Field(None, ge=0)
    advance_notice_minutes: Optional[int] = Field(None, ge=0)
    max_advance_days: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def _duration_bounds(self):
        if (
            self.min_duration_minutes is not None
            and self.max_duration_minutes is not None
            and self.min_duration_minutes > self.max_duration_minutes
        ):
            raise ValueError("min_duration_minutes cannot exceed max_duration_minutes")
        return self


class ResourceCreate(ResourceFields):
    kind: Literal["service", "venue"] = "service"
    title: str = Field(..., min_length=1, max_length=160)
    price_amount: int = Field(..., ge=0)


class ResourceUpdate(ResourceFields):
    pass


class AvailabilityRuleCreate(RequestModel):
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    specific_date: Optional[date] = None
    start_time: str
    end_time: str
    is_available: bool = True
    reason: Optional[str] = Field(None, max_length=255)

    @field_validator("start_time", "end_time")
    @classmethod
    def _hhmm(cls, value):
        parse_hhmm(value)
        return value

    @model_validator(mode="after")
    def _one_day_key(self):
        if (self.day_of_week is None) == (self.specific_date is None):
            raise ValueError("Provide either day_of_week or specific_date")
        return self

    @property
    def start_minute(self) -> int:
        return parse_hhmm(self.start_time)

    @property
    def end_minute(self) -> int:
        return parse_hhmm(self.end_time)


class HoldCreate(WindowFields):
    hold_type: str = Field("administrative", max_length=40)
    reason: Optional[str] = Field(None, max_length=255)


class AvailabilityQuery(WindowFields):
    @classmethod
    def from_args(cls, args):
        """Build from query-string args; a missing bound is an invalid window."""
        missing = [name for name in ("start_time", "end_time") if not args.get(name)]
        if missing:
            raise InvalidWindow(f"Missing {' and '.join(missing)}")
        return cls.model_validate(dict(args))


# ---------- pets ----------

class PetFields(RequestModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    species: Optional[str] = Field(None, min_length=1, max_length=60)
    breed: Optional[str] = Field(None, max_length=120)
    age_years: Optional[int] = Field(None, ge=0, le=60)
    weight_kg: Optional[float] = Field(None, gt=0)
    special_requirements: Optional[str] = Field(None, max_length=2000)
    notes: Optional[str] = Field(None, max_length=2000)


class PetCreate(PetFields):
    name: str = Field(..., min_length=1, max_length=120)
    species: str = Field("dog", min_length=1, max_length=60)


class PetUpdate(PetFields):
    pass


# ---------- bookings ----------

class BookingCreate(WindowFields):
    resource_id: int
    pet_id: Optional[int] = None
    staff_id: Optional[int] = None
    location: Optional[str] = Field(None, max_length=255)
    client_notes: Optional[str] = Field(None, max_length=2000)
    custom_form_data: Optional[Dict[str, Any]] = None


class BookingUpdate(RequestModel):
    client_notes: Optional[str] = Field(None, max_length=2000)
    provider_notes: Optional[str] = Field(None, max_length=2000)
    internal_notes: Optional[str] = Field(None, max_length=2000)
    assigned_staff_id: Optional[int] = None


class StatusChange(RequestModel):
    status: Literal["confirmed", "cancelled", "completed", "no_show", "rescheduled"]
    reason: Optional[str] = Field(None, max_length=255)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _utc(cls, value):
        return to_naive_utc(value) if value is not None else None


class ReviewCreate(RequestModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


# ---------- widget ----------

class ApiKeyCreate(RequestModel):
    name: Optional[str] = Field(None, max_length=120)


class WidgetTokenRequest(RequestModel):
    api_key: str = Field(..., min_length=1)
    customization: Optional[Dict[str, Any]] = None


class EmbedCodeQuery(RequestModel):
    api_key: str = Field(..., min_length=1)
    primary_color: Optional[str] = Field(None, pattern=r"^#[0-9a-fA-F]{3,8}$")
    layout: Optional[Literal["list", "calendar", "compact"]] = None
