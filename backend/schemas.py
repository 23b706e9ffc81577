from typing import Optional, Literal, Union
from pydantic import AliasChoices, BaseModel, EmailStr, Field, field_validator
from datetime import date, datetime, timezone

# Stored entities. Each one is persisted as a whole collection: users, laptops, bookings

Role = Literal["customer", "admin"]
BookingStatus = Literal["confirmed", "cancelled"]


def _naive_utc(value: datetime) -> datetime:
    # timestamps are compared against a naive UTC clock
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class User(BaseModel):
    id: int
    name: str
    email: EmailStr
    password: str  # hashed
    role: Role = "customer"
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def created_at_as_naive_utc(cls, v: datetime) -> datetime:
        return _naive_utc(v)

    def redacted(self) -> "UserOut":
        return UserOut(**self.model_dump(exclude={"password"}))


class UserOut(BaseModel):
    id: int
    name: str
    email: EmailStr
    role: Role
    created_at: datetime


class Laptop(BaseModel):
    id: int
    brand: str
    model: str
    cpu: Optional[str] = None
    ram: Optional[str] = None
    storage: Optional[str] = None
    daily_price: float = Field(..., gt=0)
    image_url: Optional[str] = None
    available: bool = True


class Booking(BaseModel):
    id: int
    device_id: int = Field(..., validation_alias=AliasChoices("device_id", "laptop_id"))
    user_id: int
    start_date: date
    end_date: date
    status: BookingStatus = "confirmed"
    total_price: float
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def created_at_as_naive_utc(cls, v: datetime) -> datetime:
        return _naive_utc(v)


class Identity(BaseModel):
    """What a verified bearer token tells us about the caller."""
    id: int
    role: Role


# Request bodies

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    otp: str
    newPassword: str = Field(..., min_length=1, validation_alias=AliasChoices("newPassword", "new_password"))

    @field_validator("otp", mode="before")
    @classmethod
    def otp_as_text(cls, v: Union[str, int]) -> str:
        return str(v).strip()


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    role: Optional[Role] = None


class LaptopCreate(BaseModel):
    brand: str
    model: str
    cpu: Optional[str] = None
    ram: Optional[str] = None
    storage: Optional[str] = None
    daily_price: float = Field(..., gt=0)
    image_url: Optional[str] = None


class BookingCreate(BaseModel):
    device_id: int = Field(..., validation_alias=AliasChoices("device_id", "laptop_id"))
    start_date: date
    end_date: date


class BookingUpdate(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: Optional[BookingStatus] = None


# Responses

class Token(BaseModel):
    message: str = "User Login successfully"
    token: str
    token_type: str = "bearer"


class Message(BaseModel):
    message: str


class OTPIssued(BaseModel):
    message: str
    otp: str


class UserEnvelope(BaseModel):
    message: str
    user: UserOut


class LaptopEnvelope(BaseModel):
    message: str
    laptop: Laptop


class BookingEnvelope(BaseModel):
    message: str
    booking: Booking
