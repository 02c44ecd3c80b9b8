"""
CRUD (Create, Read, Update, Delete) operations for the workflow service.

This module contains the database queries behind the API. Status changes are
not made here; they go through ``workflow``.
"""
import logging
import math
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from . import models, schemas, statuses

# Set up logging
logger = logging.getLogger(__name__)


def paginate(query, page: int, limit: int) -> Tuple[list, schemas.Pagination]:
    """
    Apply page/limit to a query.

    Returns:
        Tuple of (rows, pagination metadata)
    """
    page = max(1, page)
    limit = max(1, min(limit, 100))
    total = query.order_by(None).count()
    rows = query.offset((page - 1) * limit).limit(limit).all()
    pages = math.ceil(total / limit) if total else 0
    return rows, schemas.Pagination(total=total, page=page, limit=limit, pages=pages)


# --- Users ---

def get_user(db: Session, user_id: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_identifier(db: Session, identifier: str) -> Optional[models.User]:
    """
    Find a user by email, phone number or username.

    Args:
        db: Database session
        identifier: Any of the user's login identifiers

    Returns:
        User object or None if no user matches
    """
    identifier = identifier.strip()
    return db.query(models.User).filter(
        or_(
            func.lower(models.User.email) == identifier.lower(),
            models.User.phone_number == identifier,
            func.lower(models.User.username) == identifier.lower(),
        )
    ).first()


def get_users(db: Session, role: Optional[str] = None, skip: int = 0, limit: int = 100) -> List[models.User]:
    query = db.query(models.User)
    if role:
        query = query.filter(models.User.role == role)
    return query.order_by(models.User.last_name, models.User.first_name).offset(skip).limit(limit).all()


def create_user(db: Session, user: schemas.UserCreate, password_hash: str) -> models.User:
    db_user = models.User(
        email=user.email.lower() if user.email else None,
        phone_number=user.phone_number,
        username=user.username,
        password_hash=password_hash,
        first_name=user.first_name.strip(),
        last_name=user.last_name.strip(),
        role=user.role.value,
        is_active=True,
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def find_identifier_conflict(db: Session, user, exclude_user_id: Optional[str] = None) -> Optional[str]:
    """
    Name of the first identifier already taken by another user, if any.

    Login accepts any identifier in any of the three columns and compares
    email and username without case, so each new value is checked against
    all three columns the same way.

    Args:
        db: Database session
        user: Object carrying ``email``, ``phone_number`` and ``username``
        exclude_user_id: User whose own identifiers do not count (for updates)
    """
    for name in ("email", "phone_number", "username"):
        value = getattr(user, name, None)
        if not value:
            continue
        value = value.strip()
        query = db.query(models.User.id).filter(
            or_(
                func.lower(models.User.email) == value.lower(),
                models.User.phone_number == value,
                func.lower(models.User.username) == value.lower(),
            )
        )
        if exclude_user_id:
            query = query.filter(models.User.id != exclude_user_id)
        if query.first():
            return name
    return None


def update_user(db: Session, db_user: models.User, user: schemas.UserUpdate) -> models.User:
    update_data = user.model_dump(exclude_unset=True)
    if update_data.get("email"):
        update_data["email"] = update_data["email"].lower()
    for key in ("first_name", "last_name"):
        if update_data.get(key):
            update_data[key] = update_data[key].strip()
    for key, value in update_data.items():
        setattr(db_user, key, value)
    db.commit()
    db.refresh(db_user)
    return db_user


def set_user_password(db: Session, db_user: models.User, password_hash: str) -> None:
    db_user.password_hash = password_hash
    db.commit()


def set_user_role(db: Session, db_user: models.User, role: str) -> models.User:
    db_user.role = role
    db.commit()
    db.refresh(db_user)
    return db_user


def set_user_active(db: Session, db_user: models.User, is_active: bool) -> models.User:
    """Activate or deactivate a user. Deactivation ends every session the user holds."""
    db_user.is_active = is_active
    if not is_active:
        revoke_all_sessions(db, db_user.id, commit=False)
    db.commit()
    db.refresh(db_user)
    return db_user


def delete_user(db: Session, db_user: models.User) -> None:
    db.delete(db_user)
    db.commit()


# --- Sessions ---

def create_session(
    db: Session,
    user_id: str,
    token: str,
    expires_at: datetime,
    user_agent: Optional[str] = None,
    ip_address: Optional[str] = None,
) -> models.UserSession:
    session = models.UserSession(
        user_id=user_id,
        token_hash=models.UserSession.hash_token(token),
        expires_at=expires_at,
        user_agent=user_agent[:500] if user_agent else None,
        ip_address=ip_address,
    )
    db.add(session)
    db.commit()
    return session


def get_session_by_token(db: Session, token: str) -> Optional[models.UserSession]:
    token_hash = models.UserSession.hash_token(token)
    return db.query(models.UserSession).filter(models.UserSession.token_hash == token_hash).first()


def get_active_sessions(db: Session, user_id: str) -> List[models.UserSession]:
    return db.query(models.UserSession).filter(
        models.UserSession.user_id == user_id,
        models.UserSession.is_active.is_(True),
        models.UserSession.expires_at > datetime.utcnow(),
    ).order_by(models.UserSession.created_at.desc()).all()


def get_user_session(db: Session, user_id: str, session_id: str) -> Optional[models.UserSession]:
    return db.query(models.UserSession).filter(
        models.UserSession.id == session_id,
        models.UserSession.user_id == user_id,
        models.UserSession.is_active.is_(True),
    ).first()


def revoke_session(db: Session, session: models.UserSession) -> None:
    session.is_active = False
    db.commit()


def revoke_all_sessions(db: Session, user_id: str, commit: bool = True) -> int:
    revoked = db.query(models.UserSession).filter(
        models.UserSession.user_id == user_id,
        models.UserSession.is_active.is_(True),
    ).update({models.UserSession.is_active: False}, synchronize_session=False)
    if commit:
        db.commit()
    return revoked


# --- Clients ---

def get_client(db: Session, client_id: str) -> Optional[models.Client]:
    return db.query(models.Client).filter(models.Client.id == client_id).first()


def get_clients(db: Session, skip: int = 0, limit: int = 100) -> List[models.Client]:
    return db.query(models.Client).order_by(models.Client.created_at.desc()).offset(skip).limit(limit).all()


def create_client(db: Session, client: schemas.ClientCreate) -> models.Client:
    db_client = models.Client(**client.model_dump())
    db.add(db_client)
    db.commit()
    db.refresh(db_client)
    return db_client


# --- Orders ---

def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_orders(
    db: Session,
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    client_id: Optional[str] = None,
    assigned_manager_id: Optional[str] = None,
    search: Optional[str] = None,
) -> Tuple[List[models.Order], schemas.Pagination]:
    """
    List orders, newest first, with optional filters and pagination.

    Args:
        db: Database session
        page: 1-based page number
        limit: Page size (capped at 100)
        status / client_id / assigned_manager_id: Exact-match filters
        search: Case-insensitive substring of the order number

    Returns:
        Tuple of (orders, pagination)
    """
    query = db.query(models.Order).options(selectinload(models.Order.items))
    if status:
        query = query.filter(models.Order.status == status)
    if client_id:
        query = query.filter(models.Order.client_id == client_id)
    if assigned_manager_id:
        query = query.filter(models.Order.assigned_manager_id == assigned_manager_id)
    if search:
        query = query.filter(models.Order.order_number.ilike(f"%{search}%"))
    query = query.order_by(models.Order.created_at.desc())
    return paginate(query, page, limit)


def create_order(db: Session, order: schemas.OrderCreate, order_number: str) -> models.Order:
    """
    Stage a new order and its items in the session.

    NOTE: This function does not commit; the caller owns the transaction so
    that the order number and the order row are written together.

    Args:
        db: Database session
        order: Order data to create
        order_number: Pre-allocated order number

    Returns:
        The pending Order object
    """
    db_order = models.Order(
        order_number=order_number,
        client_id=order.client_id,
        assigned_manager_id=order.assigned_manager_id,
        total_amount=order.total_amount,
        currency=order.currency,
        estimated_completion_date=order.estimated_completion_date,
        notes=order.notes,
        crm_order_id=order.crm_order_id,
        status=statuses.OrderStatus.PENDING.value,
    )
    db_order.items = [
        models.OrderItem(
            product_name=item.product_name.strip(),
            product_type=item.product_type,
            quantity=item.quantity,
            unit_price=item.unit_price,
            specifications=item.specifications,
        )
        for item in order.items
    ]
    db.add(db_order)
    db.flush()
    return db_order


def update_order(db: Session, db_order: models.Order, order: schemas.OrderUpdate) -> models.Order:
    """
    Update an existing order's non-status fields.

    Args:
        db: Database session
        db_order: Order to update
        order: Updated order data (only provided fields will be updated)

    Returns:
        Updated Order object
    """
    update_data = order.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(db_order, key, value)
    log_order_event(
        db,
        order_id=db_order.id,
        event_type="updated",
        description="Order details updated",
    )
    db.commit()
    db.refresh(db_order)
    return db_order


def delete_order(db: Session, db_order: models.Order) -> None:
    db.delete(db_order)
    db.commit()


def get_order_item(db: Session, order_id: str, item_id: str) -> Optional[models.OrderItem]:
    return db.query(models.OrderItem).filter(
        models.OrderItem.id == item_id,
        models.OrderItem.order_id == order_id,
    ).first()


def add_order_item(
    db: Session, db_order: models.Order, item: schemas.OrderItemCreate, user_id: Optional[str] = None
) -> models.OrderItem:
    """
    Add a line item to an order and record it on the timeline.

    The order total is left as entered; it is not recomputed from the items.
    """
    db_item = models.OrderItem(
        order_id=db_order.id,
        product_name=item.product_name.strip(),
        product_type=item.product_type,
        quantity=item.quantity,
        unit_price=item.unit_price,
        specifications=item.specifications,
    )
    db.add(db_item)
    log_order_event(
        db,
        order_id=db_order.id,
        event_type="item_added",
        description=f"Item added: {db_item.product_name} x{db_item.quantity}",
        user_id=user_id,
    )
    db.commit()
    db.refresh(db_item)
    return db_item


def update_order_item(
    db: Session, db_item: models.OrderItem, item: schemas.OrderItemUpdate, user_id: Optional[str] = None
) -> models.OrderItem:
    update_data = item.model_dump(exclude_unset=True)
    if update_data.get("product_name"):
        update_data["product_name"] = update_data["product_name"].strip()
    for key, value in update_data.items():
        setattr(db_item, key, value)
    log_order_event(
        db,
        order_id=db_item.order_id,
        event_type="item_updated",
        description=f"Item updated: {db_item.product_name}",
        user_id=user_id,
    )
    db.commit()
    db.refresh(db_item)
    return db_item


def delete_order_item(db: Session, db_item: models.OrderItem, user_id: Optional[str] = None) -> None:
    log_order_event(
        db,
        order_id=db_item.order_id,
        event_type="item_removed",
        description=f"Item removed: {db_item.product_name}",
        user_id=user_id,
    )
    db.delete(db_item)
    db.commit()


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    user_id: Optional[str] = None,
) -> models.OrderEvent:
    """
    Stage an order event for the timeline. The caller commits.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "updated")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id,
    )
    db.add(event)
    return event


def get_order_timeline(db: Session, order_id: str) -> List[models.OrderEvent]:
    return db.query(models.OrderEvent).filter(
        models.OrderEvent.order_id == order_id
    ).order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc()).all()


def get_order_stats(db: Session, start_date: Optional[date] = None, end_date: Optional[date] = None) -> dict:
    """
    Aggregate order counts and revenue.

    Returns:
        dict with an ``overview`` section and a ``status_breakdown`` list
    """
    query = db.query(models.Order)
    if start_date:
        query = query.filter(models.Order.created_at >= datetime.combine(start_date, datetime.min.time()))
    if end_date:
        query = query.filter(models.Order.created_at <= datetime.combine(end_date, datetime.max.time()))

    total_orders = query.count()
    active_orders = query.filter(models.Order.status.notin_(statuses.TERMINAL_ORDER_STATUSES)).count()
    completed_orders = query.filter(models.Order.status == "completed").count()
    cancelled_orders = query.filter(models.Order.status == "cancelled").count()
    total_revenue = query.filter(models.Order.status == "completed").with_entities(
        func.sum(models.Order.total_amount)
    ).scalar() or Decimal(0)

    status_counts = query.with_entities(
        models.Order.status,
        func.count(models.Order.id)
    ).group_by(models.Order.status).all()

    return {
        "overview": {
            "total_orders": total_orders,
            "active_orders": active_orders,
            "completed_orders": completed_orders,
            "cancelled_orders": cancelled_orders,
            "total_revenue": str(total_revenue),
            "completion_rate": round(completed_orders / total_orders * 100, 2) if total_orders else 0,
        },
        "status_breakdown": [{"status": s, "count": c} for s, c in status_counts],
    }


# --- Jobs ---

def get_job(db: Session, job_id: str, for_update: bool = False) -> Optional[models.Job]:
    """
    Retrieve a single job by ID.

    Args:
        db: Database session
        job_id: ID of the job
        for_update: Lock the row until the current transaction ends

    Returns:
        Job object or None if not found
    """
    query = db.query(models.Job).filter(models.Job.id == job_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_jobs(
    db: Session,
    page: int = 1,
    limit: int = 20,
    status: Optional[str] = None,
    job_type: Optional[str] = None,
    assigned_worker_id: Optional[str] = None,
    scheduled_date: Optional[date] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> Tuple[List[models.Job], schemas.Pagination]:
    """
    List jobs ordered by schedule, with optional filters and pagination.

    Returns:
        Tuple of (jobs, pagination)
    """
    query = db.query(models.Job)
    if status:
        query = query.filter(models.Job.status == status)
    if job_type:
        query = query.filter(models.Job.job_type == job_type)
    if assigned_worker_id:
        query = query.filter(models.Job.assigned_worker_id == assigned_worker_id)
    if scheduled_date:
        query = query.filter(models.Job.scheduled_date == scheduled_date)
    if date_from:
        query = query.filter(models.Job.scheduled_date >= date_from)
    if date_to:
        query = query.filter(models.Job.scheduled_date <= date_to)
    query = query.order_by(models.Job.scheduled_date.asc(), models.Job.scheduled_time.asc(), models.Job.created_at.asc())
    return paginate(query, page, limit)


def update_job(db: Session, db_job: models.Job, job: schemas.JobUpdate) -> models.Job:
    """
    Update job details (never its status).

    Args:
        db: Database session
        db_job: Job to update
        job: Updated job data (only provided fields will be updated)

    Returns:
        Updated Job object
    """
    update_data = job.model_dump(exclude_unset=True)
    for key, value in update_data.items():
        setattr(db_job, key, value)
    db.commit()
    db.refresh(db_job)
    return db_job


def delete_job(db: Session, db_job: models.Job) -> None:
    db.delete(db_job)
    db.commit()


def get_job_history(db: Session, job_id: str) -> List[models.JobStatusUpdate]:
    return db.query(models.JobStatusUpdate).filter(
        models.JobStatusUpdate.job_id == job_id
    ).order_by(models.JobStatusUpdate.created_at.asc()).all()


def get_job_stats(db: Session, job_type: Optional[str] = None) -> dict:
    """
    Aggregate job counts for the management dashboard.

    A job is overdue when it is still active and was scheduled before today.
    """
    query = db.query(models.Job)
    if job_type:
        query = query.filter(models.Job.job_type == job_type)

    total_jobs = query.count()
    active = query.filter(models.Job.status.in_(statuses.ACTIVE_JOB_STATUSES))
    active_jobs = active.count()
    completed_jobs = query.filter(models.Job.status == "completed").count()
    overdue_jobs = active.filter(models.Job.scheduled_date < date.today()).count()

    status_counts = query.with_entities(
        models.Job.status, func.count(models.Job.id)
    ).group_by(models.Job.status).all()
    type_counts = query.with_entities(
        models.Job.job_type, func.count(models.Job.id)
    ).group_by(models.Job.job_type).all()

    return {
        "overview": {
            "total_jobs": total_jobs,
            "active_jobs": active_jobs,
            "completed_jobs": completed_jobs,
            "overdue_jobs": overdue_jobs,
            "completion_rate": round(completed_jobs / total_jobs * 100, 2) if total_jobs else 0,
        },
        "status_breakdown": [{"status": s, "count": c} for s, c in status_counts],
        "type_breakdown": [{"job_type": t, "count": c} for t, c in type_counts],
    }


# --- Contracts ---

def get_contract(db: Session, contract_id: str) -> Optional[models.Contract]:
    return db.query(models.Contract).filter(models.Contract.id == contract_id).first()


def get_contracts(
    db: Session,
    page: int = 1,
    limit: int = 20,
    contract_type: Optional[str] = None,
    is_signed: Optional[bool] = None,
    order_id: Optional[str] = None,
    search: Optional[str] = None,
) -> Tuple[List[models.Contract], schemas.Pagination]:
    """
    Retrieve contracts with optional filtering, newest first.

    Args:
        db: Database session
        page: Page number (1-based)
        limit: Page size
        contract_type: Filter by contract type
        is_signed: Filter by signature state
        order_id: Filter by order
        search: Matches the contract number or the order number

    Returns:
        Tuple of (contracts, pagination metadata)
    """
    query = db.query(models.Contract)
    if contract_type:
        query = query.filter(models.Contract.contract_type == contract_type.lower())
    if is_signed is not None:
        query = query.filter(models.Contract.is_signed.is_(is_signed))
    if order_id:
        query = query.filter(models.Contract.order_id == order_id)
    if search:
        pattern = f"%{search.lower()}%"
        query = query.join(models.Order).filter(
            or_(
                func.lower(models.Contract.contract_number).like(pattern),
                func.lower(models.Order.order_number).like(pattern),
            )
        )
    query = query.order_by(models.Contract.created_at.desc())
    return paginate(query, page, limit)


def get_order_contracts(db: Session, order_id: str) -> List[models.Contract]:
    return db.query(models.Contract).filter(
        models.Contract.order_id == order_id
    ).order_by(models.Contract.created_at.desc()).all()


def sign_contract(db: Session, contract: models.Contract, user_id: Optional[str] = None) -> models.Contract:
    contract.mark_as_signed()
    log_order_event(
        db,
        order_id=contract.order_id,
        event_type="contract_signed",
        description=f"Contract {contract.contract_number} signed",
        user_id=user_id,
    )
    db.commit()
    db.refresh(contract)
    return contract


def delete_contract(db: Session, contract: models.Contract) -> None:
    db.delete(contract)
    db.commit()


# --- Notifications ---

def get_notifications(
    db: Session, user_id: str, unread_only: bool = False, page: int = 1, limit: int = 20
) -> Tuple[List[models.Notification], schemas.Pagination]:
    query = db.query(models.Notification).filter(models.Notification.user_id == user_id)
    if unread_only:
        query = query.filter(models.Notification.is_read.is_(False))
    query = query.order_by(models.Notification.created_at.desc())
    return paginate(query, page, limit)


def get_user_notification(db: Session, user_id: str, notification_id: str) -> Optional[models.Notification]:
    return db.query(models.Notification).filter(
        models.Notification.id == notification_id,
        models.Notification.user_id == user_id,
    ).first()


def count_unread_notifications(db: Session, user_id: str) -> int:
    return db.query(models.Notification).filter(
        models.Notification.user_id == user_id,
        models.Notification.is_read.is_(False),
    ).count()


def mark_notification_read(db: Session, notification: models.Notification) -> models.Notification:
    notification.is_read = True
    db.commit()
    db.refresh(notification)
    return notification


def mark_all_notifications_read(db: Session, user_id: str) -> int:
    updated = db.query(models.Notification).filter(
        models.Notification.user_id == user_id,
        models.Notification.is_read.is_(False),
    ).update({models.Notification.is_read: True}, synchronize_session=False)
    db.commit()
    return updated


def delete_notification(db: Session, notification: models.Notification) -> None:
    db.delete(notification)
    db.commit()


def create_notification(db: Session, notification: schemas.NotificationCreate) -> models.Notification:
    db_notification = models.Notification(
        user_id=notification.user_id,
        title=notification.title,
        message=notification.message,
        type=notification.type.value,
        related_job_id=notification.related_job_id,
        related_order_id=notification.related_order_id,
    )
    db.add(db_notification)
    db.commit()
    db.refresh(db_notification)
    return db_notification


def get_broadcast_recipients(db: Session, target_roles: List[str], target_users: List[str]) -> List[str]:
    """
    Resolve a broadcast audience to distinct user IDs.

    Active users holding any of ``target_roles`` plus the listed users; every
    active user when neither is given. Listed IDs that match no user are
    dropped.
    """
    recipients: List[str] = []
    if target_roles:
        recipients.extend(
            row.id for row in db.query(models.User.id).filter(
                models.User.role.in_(target_roles),
                models.User.is_active.is_(True),
            ).order_by(models.User.created_at)
        )
    if target_users:
        known = {row.id for row in db.query(models.User.id).filter(models.User.id.in_(target_users))}
        recipients.extend(user_id for user_id in target_users if user_id in known)
    if not target_roles and not target_users:
        recipients.extend(
            row.id for row in db.query(models.User.id).filter(
                models.User.is_active.is_(True)
            ).order_by(models.User.created_at)
        )
    return list(dict.fromkeys(recipients))


def create_broadcast(db: Session, recipients: List[str], title: str, message: str, type: str) -> int:
    db.add_all(
        models.Notification(user_id=user_id, title=title, message=message, type=type)
        for user_id in recipients
    )
    db.commit()
    return len(recipients)
