"""
Pydantic schemas for request/response validation in the workflow service.

These schemas define the structure of data for API requests and responses.
"""
import re
from datetime import date, datetime
from decimal import Decimal
from typing import List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from .statuses import ContractType, JobStatus, JobType, NotificationType, OrderStatus, UserRole


class Coordinates(BaseModel):
    """GPS point."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


# --- Auth & users ---

class LoginRequest(BaseModel):
    """Schema for login. ``identifier`` may be an email, phone number or username."""
    identifier: str = Field(..., min_length=1)
    password: str


class UserCreate(BaseModel):
    """Schema for creating a user. At least one login identifier is required."""
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(default=None, max_length=32)
    username: Optional[str] = Field(default=None, min_length=3, max_length=64)
    password: str = Field(..., min_length=8, description="Password must be at least 8 characters")
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: UserRole = UserRole.CLIENT

    @model_validator(mode="after")
    def require_identifier(self):
        if not (self.email or self.phone_number or self.username):
            raise ValueError("email, phone_number or username is required")
        return self


class User(BaseModel):
    """Schema for user responses; never includes the password hash."""
    id: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    username: Optional[str] = None
    first_name: str
    last_name: str
    role: str
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class Token(BaseModel):
    """Schema for the login response."""
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: User


class UserUpdate(BaseModel):
    """Profile fields a user may edit; role, status and password have their own endpoints."""
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = Field(default=None, max_length=32)
    username: Optional[str] = Field(default=None, min_length=3, max_length=64)
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)


class PasswordChange(BaseModel):
    """
    Schema for changing a password.

    ``current_password`` is required when users change their own password;
    directors and managers resetting someone else's may omit it.
    """
    current_password: Optional[str] = None
    new_password: str = Field(..., min_length=8)

    @field_validator("new_password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
            raise ValueError("Password must contain a lowercase letter, an uppercase letter and a digit")
        return value


class UserRoleUpdate(BaseModel):
    role: UserRole


class UserStatusUpdate(BaseModel):
    is_active: bool


class SessionInfo(BaseModel):
    """One of the caller's live sessions."""
    id: str
    device_name: str
    ip_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    is_current: bool = False

    class Config:
        from_attributes = True


class ClientCreate(BaseModel):
    user_id: str
    company_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    notes: Optional[str] = None


class Client(ClientCreate):
    id: str
    created_at: datetime
    user: Optional[User] = None

    class Config:
        from_attributes = True


# --- Orders ---

class OrderItemCreate(BaseModel):
    """Schema for an order line item."""
    product_name: str = Field(..., min_length=1, max_length=255)
    product_type: Optional[str] = None
    quantity: int = Field(..., ge=1, description="Quantity must be at least 1")
    unit_price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    specifications: Optional[dict] = None


class OrderItemUpdate(BaseModel):
    product_name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    product_type: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1)
    unit_price: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    specifications: Optional[dict] = None


class OrderItem(OrderItemCreate):
    id: str
    order_id: str

    class Config:
        from_attributes = True


class OrderCreate(BaseModel):
    """Schema for creating a new order."""
    client_id: str
    assigned_manager_id: Optional[str] = None
    total_amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    estimated_completion_date: Optional[date] = None
    notes: Optional[str] = None
    crm_order_id: Optional[str] = None
    items: List[OrderItemCreate] = Field(..., min_length=1)


class OrderUpdate(BaseModel):
    """Schema for editing an order. Status is changed through its own endpoint."""
    assigned_manager_id: Optional[str] = None
    total_amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    estimated_completion_date: Optional[date] = None
    actual_completion_date: Optional[date] = None
    notes: Optional[str] = None
    crm_order_id: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: OrderStatus
    notes: Optional[str] = Field(default=None, max_length=1000)


class Order(BaseModel):
    """
    Schema for order responses.

    Attributes:
        status_display (str): Human label for ``status``
        progress_percentage (int): 0..100 display progress for ``status``
    """
    id: str
    order_number: str
    client_id: str
    assigned_manager_id: Optional[str] = None
    status: str
    status_display: str
    progress_percentage: int
    total_amount: Optional[Decimal] = None
    currency: str
    order_date: Optional[datetime] = None
    estimated_completion_date: Optional[date] = None
    actual_completion_date: Optional[date] = None
    notes: Optional[str] = None
    crm_order_id: Optional[str] = None
    created_at: datetime
    items: List[OrderItem] = Field(default_factory=list)

    class Config:
        from_attributes = True


class OrderList(BaseModel):
    orders: List[Order]
    pagination: Pagination


class OrderStatusChange(BaseModel):
    order: Order
    old_status: str
    new_status: str


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event (created, status_changed, updated)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (str): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# --- Jobs ---

TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"


class JobCreate(BaseModel):
    order_id: str
    job_type: JobType
    location_address: str = Field(..., min_length=1)
    location_coordinates: Optional[Coordinates] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    assigned_worker_id: Optional[str] = None
    estimated_duration: Optional[int] = Field(default=None, ge=1, description="Minutes")
    notes: Optional[str] = None


class JobUpdate(BaseModel):
    """Schema for editing job details. All fields are optional; status is not editable here."""
    location_address: Optional[str] = Field(default=None, min_length=1)
    location_coordinates: Optional[Coordinates] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    assigned_worker_id: Optional[str] = None
    estimated_duration: Optional[int] = Field(default=None, ge=1)
    notes: Optional[str] = None


class JobStatusRequest(BaseModel):
    status: JobStatus
    notes: Optional[str] = Field(default=None, max_length=500)
    location_coordinates: Optional[Coordinates] = None


class JobStatusUpdate(BaseModel):
    id: str
    job_id: str
    previous_status: Optional[str] = None
    new_status: str
    updated_by: Optional[str] = None
    notes: Optional[str] = None
    location_coordinates: Optional[Coordinates] = None
    message: str
    created_at: datetime

    class Config:
        from_attributes = True


class Job(BaseModel):
    id: str
    order_id: str
    assigned_worker_id: Optional[str] = None
    job_type: str
    job_type_display: str
    status: str
    status_display: str
    valid_next_statuses: List[str]
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[str] = None
    location_address: str
    location_coordinates: Optional[Coordinates] = None
    estimated_duration: Optional[int] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class JobDetail(Job):
    status_updates: List[JobStatusUpdate] = Field(default_factory=list)


class JobList(BaseModel):
    jobs: List[Job]
    pagination: Pagination


class JobStatusChange(BaseModel):
    """Result of a job transition; ``order_status`` is set when the order status was derived."""
    job: Job
    old_status: str
    new_status: str
    order_status: Optional[str] = None


# --- Contracts ---

class ContractCreate(BaseModel):
    """Schema for creating a contract; the number is allocated by the service."""
    order_id: str
    contract_type: ContractType
    file_url: Optional[str] = Field(default=None, max_length=500)


class Contract(BaseModel):
    id: str
    order_id: str
    contract_number: str
    contract_type: str
    contract_type_display: str
    status_display: str
    file_url: Optional[str] = None
    is_signed: bool
    signed_date: Optional[date] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ContractList(BaseModel):
    contracts: List[Contract]
    pagination: Pagination


# --- Notifications ---

class Notification(BaseModel):
    id: str
    user_id: str
    title: str
    message: str
    type: str
    is_read: bool
    related_job_id: Optional[str] = None
    related_order_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UnreadCount(BaseModel):
    unread_count: int


class NotificationCreate(BaseModel):
    """Schema for a notification written by a director or manager."""
    user_id: str
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=1000)
    type: NotificationType
    related_job_id: Optional[str] = None
    related_order_id: Optional[str] = None


class BroadcastRequest(BaseModel):
    """
    Schema for a broadcast.

    Recipients are the active users holding any of ``target_roles`` plus every
    user in ``target_users``; with neither given, every active user.
    """
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=1000)
    type: Literal["general", "system"] = "general"
    target_roles: List[UserRole] = Field(default_factory=list)
    target_users: List[str] = Field(default_factory=list)


class BroadcastResult(BaseModel):
    sent: int
