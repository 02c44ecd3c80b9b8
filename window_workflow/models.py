"""
SQLAlchemy ORM models for the workflow service.

Defines the database schema for users, clients, orders, jobs, their audit
trails and notifications.
"""
import hashlib
import uuid
from datetime import date, datetime
from sqlalchemy import (
    Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, JSON, Numeric, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, validates

from .database import Base
from . import statuses

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    User model for every person who logs in: staff, field workers and clients.

    Attributes:
        id (str): Primary key, UUID
        email / phone_number / username (str): Login identifiers, each unique when set
        password_hash (str): bcrypt hash
        role (str): One of the seven roles in ``statuses.UserRole``
        is_active (bool): Inactive users cannot authenticate
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_uuid)
    email = Column(String(255), unique=True, index=True, nullable=True)
    phone_number = Column(String(32), unique=True, index=True, nullable=True)
    username = Column(String(64), unique=True, index=True, nullable=True)
    password_hash = Column(String, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    role = Column(String(32), nullable=False, default=statuses.UserRole.CLIENT.value)
    is_active = Column(Boolean, default=True, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)
    phone_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def is_worker(self) -> bool:
        return self.role in statuses.WORKER_ROLES

    def can_view_all_projects(self) -> bool:
        return self.role in statuses.MANAGEMENT_ROLES

    def can_manage_users(self) -> bool:
        return self.role in statuses.ADMIN_ROLES

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


# Login identifiers are unique regardless of case
Index("uq_users_email_lower", func.lower(User.email), unique=True)
Index("uq_users_username_lower", func.lower(User.username), unique=True)


class UserSession(Base):
    """Server-side record of an issued token; a token without a live session is rejected."""
    __tablename__ = "user_sessions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    user_agent = Column(String(500), nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    @staticmethod
    def hash_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def is_valid(self) -> bool:
        return self.is_active and self.expires_at > datetime.utcnow()

    @property
    def device_name(self) -> str:
        agent = (self.user_agent or "").lower()
        for marker, name in (("iphone", "iPhone"), ("ipad", "iPad"), ("android", "Android"),
                             ("windows", "Windows"), ("mac os", "Mac"), ("linux", "Linux")):
            if marker in agent:
                return name
        return "Unknown device"


class Client(Base):
    """Customer profile attached to a user with the ``client`` role."""
    __tablename__ = "clients"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    company_name = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User")
    orders = relationship("Order", back_populates="client")


class Order(Base):
    """
    Order model representing one customer purchase.

    Attributes:
        id (str): Primary key, UUID
        order_number (str): Human-facing number, ``WM-<year>-<sequence>``
        client_id (str): Owning client
        assigned_manager_id (str): Optional responsible manager
        status (str): One of the 15 order statuses; any value may be written directly
        total_amount (Decimal): Order total
        actual_completion_date (date): Stamped when the order is completed
        crm_order_id (str): External CRM reference
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_uuid)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    client_id = Column(String(36), ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_manager_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    status = Column(String(32), nullable=False, default=statuses.OrderStatus.PENDING.value, index=True)
    total_amount = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    order_date = Column(DateTime, default=datetime.utcnow)
    estimated_completion_date = Column(Date, nullable=True)
    actual_completion_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)
    crm_order_id = Column(String(100), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = relationship("Client", back_populates="orders")
    assigned_manager = relationship("User")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    jobs = relationship("Job", back_populates="order", cascade="all, delete-orphan")
    events = relationship("OrderEvent", cascade="all, delete-orphan", order_by="OrderEvent.id")
    contracts = relationship("Contract", back_populates="order", cascade="all, delete-orphan")

    @validates("notes")
    def _trim_notes(self, key, value):
        return value.strip() if value else value

    @validates("currency")
    def _upper_currency(self, key, value):
        return value.upper() if value else value

    @property
    def status_display(self) -> str:
        return statuses.order_status_display(self.status)

    @property
    def progress_percentage(self) -> int:
        return statuses.progress_percentage(self.status)

    def is_active(self) -> bool:
        return self.status not in statuses.TERMINAL_ORDER_STATUSES


class OrderItem(Base):
    """A product line on an order."""
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=new_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_name = Column(String(255), nullable=False)
    product_type = Column(String(100), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(10, 2), nullable=True)
    specifications = Column(JSONType, nullable=True)

    order = relationship("Order", back_populates="items")


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event ("created", "status_changed", "updated")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (str): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Job(Base):
    """
    A measuring, delivery or installation task attached to an order.

    Status changes must follow ``statuses.JOB_STATUS_FLOW``; that rule is
    enforced by ``workflow.transition_job``, not by the table.
    """
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_worker_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    job_type = Column(String(50), nullable=False)
    status = Column(String(32), nullable=False, default=statuses.JobStatus.ASSIGNED.value, index=True)
    scheduled_date = Column(Date, nullable=True)
    scheduled_time = Column(String(5), nullable=True)
    location_address = Column(Text, nullable=False)
    location_coordinates = Column(JSONType, nullable=True)
    estimated_duration = Column(Integer, nullable=True)  # minutes
    actual_start_time = Column(DateTime, nullable=True)
    actual_end_time = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="jobs")
    assigned_worker = relationship("User")
    status_updates = relationship(
        "JobStatusUpdate",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="JobStatusUpdate.created_at",
    )

    @validates("location_address", "notes")
    def _trim(self, key, value):
        return value.strip() if value else value

    @validates("job_type")
    def _lower_job_type(self, key, value):
        return value.lower() if value else value

    @property
    def status_display(self) -> str:
        return statuses.job_status_display(self.status)

    @property
    def job_type_display(self) -> str:
        return statuses.job_type_display(self.job_type)

    @property
    def valid_next_statuses(self):
        return statuses.next_job_statuses(self.status)

    def is_active(self) -> bool:
        return self.status not in statuses.TERMINAL_JOB_STATUSES

    def actual_duration(self):
        """Minutes between start and end, or None while either is missing."""
        if self.actual_start_time and self.actual_end_time:
            return round((self.actual_end_time - self.actual_start_time).total_seconds() / 60)
        return None


class JobStatusUpdate(Base):
    """
    Append-only audit row, one per job status change.

    ``previous_status`` is null only on the row written when the job is created.
    """
    __tablename__ = "job_status_updates"

    id = Column(String(36), primary_key=True, default=new_uuid)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    previous_status = Column(String(32), nullable=True)
    new_status = Column(String(32), nullable=False)
    updated_by = Column(String(36), ForeignKey("users.id"), nullable=True)
    notes = Column(Text, nullable=True)
    location_coordinates = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    job = relationship("Job", back_populates="status_updates")

    @validates("notes")
    def _trim_notes(self, key, value):
        return value.strip() if value else value

    @property
    def message(self) -> str:
        current = statuses.job_status_display(self.new_status)
        if self.previous_status:
            return f"Status changed from {statuses.job_status_display(self.previous_status)} to {current}"
        return f"Status set to {current}"


class Contract(Base):
    """
    Contract attached to an order.

    Attributes:
        contract_number (str): ``CT-<year>-<sequence>``
        contract_type (str): One of ``statuses.ContractType``
        file_url (str): Where the signed-off document lives, if anywhere
        is_signed (bool): Set once by ``mark_as_signed``; signed contracts are never deleted
    """
    __tablename__ = "contracts"

    id = Column(String(36), primary_key=True, default=new_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    contract_number = Column(String(50), unique=True, nullable=False, index=True)
    contract_type = Column(String(50), nullable=False)
    file_url = Column(String(500), nullable=True)
    signed_date = Column(Date, nullable=True)
    is_signed = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = relationship("Order", back_populates="contracts")

    @validates("contract_type")
    def _lower_contract_type(self, key, value):
        return value.lower() if value else value

    @property
    def contract_type_display(self) -> str:
        return statuses.contract_type_display(self.contract_type)

    @property
    def status_display(self) -> str:
        if self.is_signed:
            return f"Signed on {self.signed_date}"
        if self.file_url:
            return "Pending Signature"
        return "Draft"

    def mark_as_signed(self) -> None:
        self.is_signed = True
        self.signed_date = date.today()


class Notification(Base):
    """In-app notification shown to a single user."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(50), nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    related_job_id = Column(String(36), ForeignKey("jobs.id", ondelete="SET NULL"), nullable=True)
    related_order_id = Column(String(36), ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @validates("title", "message")
    def _trim(self, key, value):
        return value.strip() if value else value


class SequenceCounter(Base):
    """
    Per-name, per-year monotonic counter backing human-facing document numbers.

    Rows are only ever incremented under a row lock.
    """
    __tablename__ = "sequence_counters"
    __table_args__ = (UniqueConstraint("name", "year", name="uq_sequence_counters_name_year"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(32), nullable=False)
    year = Column(Integer, nullable=False)
    last_value = Column(Integer, nullable=False, default=0)
