from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

NotificationType = Literal["delay", "route_change", "traffic", "general", "announcement", "maintenance"]
StaffRole = Literal["employee", "driver", "conductor", "admin"]


class CamelModel(BaseModel):
    """Accepts both camelCase (web client) and snake_case field names."""
    model_config = ConfigDict(populate_by_name=True)


# ---------------- Auth ----------------

class SignupRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    username: str = Field(..., min_length=2, max_length=100)
    profile: Optional[Dict[str, Any]] = None

class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

class PasswordResetRequest(CamelModel):
    email: EmailStr

class PasswordResetConfirm(CamelModel):
    email: EmailStr
    otp: str = Field(..., min_length=6, max_length=6)
    new_password: str = Field(..., min_length=8, alias="newPassword")

class StaffCreateRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    username: str = Field(..., min_length=2, max_length=100)
    role: StaffRole
    employee_id: Optional[str] = Field(None, alias="employeeId")
    assigned_bus_id: Optional[str] = Field(None, alias="assignedBusId")
    profile: Optional[Dict[str, Any]] = None

class UserStatusUpdate(CamelModel):
    status: Literal["active", "inactive", "suspended", "pending"]


# ---------------- Notifications ----------------

class NotificationCreate(CamelModel):
    recipient_id: str = Field(..., min_length=1, alias="recipientId")
    type: NotificationType
    message: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, max_length=255)

class NotificationBulkCreate(CamelModel):
    recipient_ids: List[str] = Field(..., min_length=1, alias="recipientIds")
    type: NotificationType
    message: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, max_length=255)

class NotificationBroadcast(CamelModel):
    role: Literal["client", "admin", "employee", "driver", "conductor"]
    type: NotificationType
    message: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, max_length=255)


# ---------------- Client ----------------

class BookingCreate(CamelModel):
    bus_id: str = Field(..., min_length=1, alias="busId")

class FeedbackCreate(CamelModel):
    bus_id: str = Field(..., min_length=1, alias="busId")
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)

class DiscountApply(CamelModel):
    discount_type: Literal["student", "senior", "pwd"] = Field(..., alias="discountType")
    document_url: str = Field(..., min_length=1, alias="documentUrl")


# ---------------- Admin ----------------

class BusReassign(CamelModel):
    driver_id: Optional[str] = Field(None, alias="driverId")
    conductor_id: Optional[str] = Field(None, alias="conductorId")
    route_id: Optional[str] = Field(None, alias="route")

class BusStatusUpdate(CamelModel):
    status: Literal["active", "inactive", "maintenance"]
    message: Optional[str] = None

class TerminalCreate(CamelModel):
    name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lon: Optional[float] = Field(None, ge=-180, le=180)

class RouteCreate(CamelModel):
    name: str = Field(..., min_length=1)
    start_terminal_id: Optional[str] = Field(None, alias="startTerminalId")
    end_terminal_id: Optional[str] = Field(None, alias="endTerminalId")
    fare_cents: int = Field(0, ge=0, alias="fareCents")
    stops: List[str] = Field(default_factory=list, description="Ordered terminal ids")

class BusCreate(CamelModel):
    bus_number: str = Field(..., min_length=1, alias="busNumber")
    total_seats: int = Field(..., ge=1, alias="totalSeats")
    route_id: Optional[str] = Field(None, alias="routeId")
    terminal_id: Optional[str] = Field(None, alias="terminalId")

class DiscountDecision(CamelModel):
    approve: bool
    note: Optional[str] = Field(None, max_length=1000)


# ---------------- Employee ----------------

class ReportCreate(CamelModel):
    bus_id: str = Field(..., min_length=1, alias="busId")
    type: Literal["maintenance", "violation", "delay"]
    description: Optional[str] = Field(None, max_length=4000)

class PassengerCountUpdate(CamelModel):
    action: Literal["add", "remove"]

class LocationUpdate(CamelModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    speed_kmph: Optional[float] = Field(None, ge=0, alias="speedKmph")


# ---------------- Payments ----------------

class CheckoutRequest(CamelModel):
    booking_id: str = Field(..., min_length=1, alias="bookingId")
