"""
Window Workflow Service API

This module implements a FastAPI-based service that tracks clients, orders,
field jobs (measuring, delivery, installation) and notifications for a window
manufacturing company, with PostgreSQL persistence.

Job status changes follow a fixed flow and are audited; order status changes
are recorded on the order timeline. Both are carried out by ``workflow``.

Endpoints:
    /auth: Login, logout, the current user and their sessions
    /users, /clients: Staff-managed user and client records
    /orders: Order CRUD, line items, status updates, timeline and statistics
    /contracts: Order contracts and their signature
    /jobs: Job CRUD, status transitions, history and statistics
    /notifications: The caller's in-app notifications; staff messages and broadcasts
    GET /healthz: Health check endpoint for orchestration systems

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "window-workflow-service"
"""
import logging
from datetime import date
from typing import List, Optional
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import auth, cache, crud, models, schemas, statuses, validators, webhooks, workflow
from .config import COMPANY_NAME, LOG_LEVEL
from .database import engine, get_db
from .exceptions import WorkflowError
from .notifications import DatabaseNotifier, NotificationDispatcher, notify_job_assignment

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="window-workflow-service", description=f"Order and field job workflow for {COMPANY_NAME}")


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    """Render workflow errors as JSON with their mapped status code."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_notifier(db: Session = Depends(get_db)) -> NotificationDispatcher:
    """Dependency providing the notification dispatcher for this request."""
    return DatabaseNotifier(db)


def log_user_action(user: models.User, action: str, **details) -> None:
    """Record a successful mutating action."""
    extra = " ".join(f"{k}={v}" for k, v in details.items())
    logger.info(f"User action: {user.id} ({user.role}) performed {action} {extra}".rstrip())


def get_order_or_404(db: Session, order_id: str) -> models.Order:
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return db_order


def get_job_or_404(db: Session, job_id: str) -> models.Job:
    db_job = crud.get_job(db, job_id=job_id)
    if db_job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return db_job


def require_worker_for_job(db: Session, worker_id: str, job_type: str) -> models.User:
    """
    Check that ``worker_id`` is an active user whose role matches ``job_type``.

    Raises:
        HTTPException: 404 if the worker is missing or holds the wrong role
    """
    worker = crud.get_user(db, worker_id)
    message = f"Worker not found or incorrect role for {job_type} job"
    if worker is None or not worker.is_active:
        raise HTTPException(status_code=404, detail=message)
    is_valid, error_message = validators.validate_worker_for_job(worker.role, job_type)
    if not is_valid:
        raise HTTPException(status_code=404, detail=error_message)
    return worker


def require_manager(db: Session, manager_id: str) -> models.User:
    manager = crud.get_user(db, manager_id)
    if manager is None or manager.role not in statuses.ADMIN_ROLES:
        raise HTTPException(status_code=404, detail="Manager not found")
    return manager


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the workflow service.

    This endpoint is used by orchestration systems (like Kubernetes) to verify
    that the service is running and able to respond to requests.

    Returns:
        dict: A dictionary containing the health status of the service.
            - status (str): Always returns "healthy" when the service is operational.

    Example:
        GET /healthz
        Response: {"status": "healthy"}
    """
    return {"status": "healthy"}


# --- Auth ---

@app.post("/auth/login", response_model=schemas.Token)
def login(credentials: schemas.LoginRequest, request: Request, db: Session = Depends(get_db)):
    """
    Authenticate with an email, phone number or username and a password.

    Returns:
        Bearer token, its expiry, and the user

    Raises:
        HTTPException: 401 if credentials are invalid or the account is inactive
    """
    user = auth.authenticate_user(db, credentials.identifier, credentials.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account is inactive")

    token, expires_at = auth.login(
        db,
        user,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )
    return schemas.Token(access_token=token, expires_at=expires_at, user=schemas.User.model_validate(user))


@app.post("/auth/logout", response_model=dict)
def logout(
    session: models.UserSession = Depends(auth.get_current_session),
    db: Session = Depends(get_db)
):
    """Revoke the session behind the current token."""
    crud.revoke_session(db, session)
    return {"message": "Logged out successfully"}


@app.post("/auth/logout-all", response_model=dict)
def logout_all(
    current_user: models.User = Depends(auth.get_current_user),
    db: Session = Depends(get_db)
):
    """Revoke every session of the caller, the current one included."""
    revoked = crud.revoke_all_sessions(db, current_user.id)
    log_user_action(current_user, "logout_all", sessions=revoked)
    return {"message": "Logged out from all devices", "revoked": revoked}


@app.get("/auth/me", response_model=schemas.User)
def get_current_user_info(current_user: models.User = Depends(auth.get_current_user)):
    """Get current authenticated user information."""
    return current_user


@app.get("/auth/sessions", response_model=List[schemas.SessionInfo])
def list_sessions(
    session: models.UserSession = Depends(auth.get_current_session),
    current_user: models.User = Depends(auth.get_current_user),
    db: Session = Depends(get_db)
):
    """The caller's live sessions, newest first, with the one making this request flagged."""
    return [
        schemas.SessionInfo(
            id=s.id,
            device_name=s.device_name,
            ip_address=s.ip_address,
            created_at=s.created_at,
            expires_at=s.expires_at,
            is_current=s.id == session.id,
        )
        for s in crud.get_active_sessions(db, current_user.id)
    ]


@app.delete("/auth/sessions/{session_id}", response_model=dict)
def revoke_session(
    session_id: str,
    current_user: models.User = Depends(auth.get_current_user),
    db: Session = Depends(get_db)
):
    """
    Revoke one of the caller's sessions.

    Raises:
        HTTPException: 404 if the session does not exist or belongs to someone else
    """
    target = crud.get_user_session(db, current_user.id, session_id)
    if target is None:
        raise HTTPException(status_code=404, detail="Session not found")
    crud.revoke_session(db, target)
    return {"message": "Session revoked successfully"}


# --- Users & clients ---

@app.post("/users", response_model=schemas.User, status_code=status.HTTP_201_CREATED)
def create_user(
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Create a user account (directors and managers only).

    Raises:
        HTTPException: 400 if an identifier is already taken
    """
    conflict = crud.find_identifier_conflict(db, user)
    if conflict:
        raise HTTPException(status_code=400, detail=f"A user with this {conflict} already exists")
    db_user = crud.create_user(db, user, auth.get_password_hash(user.password))
    log_user_action(current_user, "create_user", user_id=db_user.id, role=db_user.role)
    return db_user


@app.get("/users", response_model=List[schemas.User])
def list_users(
    role: Optional[statuses.UserRole] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_management)
):
    """List users, optionally filtered by role (management only)."""
    return crud.get_users(db, role=role.value if role else None, skip=skip, limit=limit)


def get_user_or_404(db: Session, user_id: str) -> models.User:
    db_user = crud.get_user(db, user_id)
    if db_user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return db_user


def require_self_or_admin(current_user: models.User, user_id: str) -> None:
    if current_user.id != user_id and not current_user.can_manage_users():
        raise HTTPException(status_code=403, detail="Access denied: insufficient permissions")


@app.get("/users/{user_id}", response_model=schemas.User)
def get_user(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """Get a user (the user themself, or a director/manager)."""
    require_self_or_admin(current_user, user_id)
    return get_user_or_404(db, user_id)


@app.put("/users/{user_id}", response_model=schemas.User)
def update_user(
    user_id: str,
    user: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Edit a user's profile (the user themself, or a director/manager).

    Raises:
        HTTPException: 400 if a new identifier is already taken by another user
        HTTPException: 403 if not authorized
        HTTPException: 404 if user not found
    """
    require_self_or_admin(current_user, user_id)
    db_user = get_user_or_404(db, user_id)
    conflict = crud.find_identifier_conflict(db, user, exclude_user_id=user_id)
    if conflict:
        raise HTTPException(status_code=400, detail=f"A user with this {conflict} already exists")
    db_user = crud.update_user(db, db_user, user)
    log_user_action(current_user, "update_user", user_id=user_id)
    return db_user


@app.put("/users/{user_id}/password", response_model=dict)
def change_password(
    user_id: str,
    payload: schemas.PasswordChange,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Change a password. Users changing their own must give the current one;
    directors and managers may reset anyone's.

    Raises:
        HTTPException: 400 if the current password is missing or wrong
        HTTPException: 403 if not authorized
        HTTPException: 404 if user not found
    """
    require_self_or_admin(current_user, user_id)
    db_user = get_user_or_404(db, user_id)
    if current_user.id == user_id:
        if not payload.current_password:
            raise HTTPException(status_code=400, detail="Current password is required")
        if not auth.verify_password(payload.current_password, db_user.password_hash):
            raise HTTPException(status_code=400, detail="Current password is incorrect")
    crud.set_user_password(db, db_user, auth.get_password_hash(payload.new_password))
    log_user_action(current_user, "change_password", user_id=user_id)
    return {"message": "Password updated successfully"}


@app.put("/users/{user_id}/role", response_model=schemas.User)
def update_user_role(
    user_id: str,
    payload: schemas.UserRoleUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """Change a user's role (directors and managers only)."""
    db_user = get_user_or_404(db, user_id)
    old_role = db_user.role
    db_user = crud.set_user_role(db, db_user, payload.role.value)
    log_user_action(current_user, "update_user_role", user_id=user_id, old_role=old_role, role=db_user.role)
    return db_user


@app.put("/users/{user_id}/status", response_model=schemas.User)
def update_user_status(
    user_id: str,
    payload: schemas.UserStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """Activate or deactivate a user (directors and managers only). Deactivation ends their sessions."""
    db_user = get_user_or_404(db, user_id)
    db_user = crud.set_user_active(db, db_user, payload.is_active)
    log_user_action(current_user, "update_user_status", user_id=user_id, is_active=db_user.is_active)
    return db_user


@app.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Delete a user (directors and managers only).

    Raises:
        HTTPException: 400 when deleting yourself, or when orders or jobs still reference the user
        HTTPException: 404 if user not found
    """
    if current_user.id == user_id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    db_user = get_user_or_404(db, user_id)
    try:
        crud.delete_user(db, db_user)
    except IntegrityError:
        db.rollback()
        logger.warning(f"User {user_id} is still referenced and was not deleted")
        raise HTTPException(
            status_code=400,
            detail="User is referenced by orders or jobs; deactivate the account instead",
        )
    log_user_action(current_user, "delete_user", user_id=user_id)
    return None


@app.post("/clients", response_model=schemas.Client, status_code=status.HTTP_201_CREATED)
def create_client(
    client: schemas.ClientCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Attach a client profile to a user with the client role.

    Raises:
        HTTPException: 404 if the user is missing or not a client, 400 if a profile exists
    """
    user = crud.get_user(db, client.user_id)
    if user is None or user.role != statuses.UserRole.CLIENT.value:
        raise HTTPException(status_code=404, detail="Client user not found")
    if db.query(models.Client).filter(models.Client.user_id == client.user_id).first():
        raise HTTPException(status_code=400, detail="Client profile already exists")
    db_client = crud.create_client(db, client)
    log_user_action(current_user, "create_client", client_id=db_client.id)
    return db_client


@app.get("/clients", response_model=List[schemas.Client])
def list_clients(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_management)
):
    return crud.get_clients(db, skip=skip, limit=limit)


@app.get("/clients/{client_id}", response_model=schemas.Client)
def get_client(
    client_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_management)
):
    db_client = crud.get_client(db, client_id)
    if db_client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return db_client


# --- Orders ---

@app.get("/orders", response_model=schemas.OrderList)
def list_orders(
    page: int = 1,
    limit: int = 20,
    status: Optional[statuses.OrderStatus] = None,
    client_id: Optional[str] = None,
    assigned_manager_id: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_management)
):
    """
    List orders with pagination and filters (management only).

    Args:
        page: 1-based page number (default: 1)
        limit: Page size (default: 20, max 100)
        status / client_id / assigned_manager_id: Exact-match filters
        search: Substring of the order number

    Returns:
        Orders and pagination metadata
    """
    orders, pagination = crud.get_orders(
        db,
        page=page,
        limit=limit,
        status=status.value if status else None,
        client_id=client_id,
        assigned_manager_id=assigned_manager_id,
        search=search,
    )
    return {"orders": orders, "pagination": pagination}


@app.get("/orders/stats/overview", response_model=dict)
def get_order_stats(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_management)
):
    """
    Order counts, completed revenue and status breakdown (management only).

    Results are cached for a minute and dropped on any status change.
    """
    key = cache.stats_key("orders", start_date, end_date)
    cached = cache.get_cache(key)
    if cached is not None:
        return cached
    stats = crud.get_order_stats(db, start_date=start_date, end_date=end_date)
    cache.set_cache(key, stats)
    return stats


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Get a single order (management or the owning client).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = get_order_or_404(db, order_id)
    if not auth.can_view_order(current_user, db_order):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return db_order


@app.post("/orders", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Create a new order in ``pending`` with an allocated order number.

    Raises:
        HTTPException: 400 if the items or total fail validation
        HTTPException: 404 if the client or manager does not exist
    """
    if crud.get_client(db, order.client_id) is None:
        raise HTTPException(status_code=404, detail="Client not found")
    if order.assigned_manager_id:
        require_manager(db, order.assigned_manager_id)

    is_valid, error_message = validators.validate_order_items(order.items)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_message)
    is_valid, error_message = validators.validate_order_total(order.items, order.total_amount)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_message)

    db_order = workflow.create_order(db, order, actor_id=current_user.id, notifier=notifier)
    cache.invalidate_stats()
    webhooks.notify_order_created(background_tasks, db_order.id, db_order.order_number)
    log_user_action(current_user, "create_order", order_number=db_order.order_number)
    return db_order


@app.put("/orders/{order_id}", response_model=schemas.Order)
def update_order(
    order_id: str,
    order: schemas.OrderUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Edit an order's details; status changes go through ``PUT /orders/{order_id}/status``.

    Raises:
        HTTPException: 404 if the order or manager does not exist
    """
    db_order = get_order_or_404(db, order_id)
    if order.assigned_manager_id:
        require_manager(db, order.assigned_manager_id)
    db_order = crud.update_order(db, db_order, order)
    cache.invalidate_stats()
    log_user_action(current_user, "update_order", order_id=order_id)
    return db_order


@app.put("/orders/{order_id}/status", response_model=schemas.OrderStatusChange)
def update_order_status(
    order_id: str,
    payload: schemas.OrderStatusRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
    current_user: models.User = Depends(auth.require_management)
):
    """
    Set an order's status (management only).

    Any order status is accepted from any current status. Completing an order
    stamps its actual completion date; the client is notified.

    Raises:
        HTTPException: 404 if order not found
    """
    result = workflow.set_order_status(
        db,
        order_id,
        payload.status,
        actor_id=current_user.id,
        notes=payload.notes,
        notifier=notifier,
    )
    cache.invalidate_stats()
    webhooks.notify_order_status_changed(background_tasks, order_id, result.old_status, result.new_status)
    log_user_action(current_user, "update_order_status", order_id=order_id, status=result.new_status)
    return {"order": result.order, "old_status": result.old_status, "new_status": result.new_status}


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Get the timeline of events for an order (management or the owning client).

    Returns:
        List of order events in chronological order

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = get_order_or_404(db, order_id)
    if not auth.can_view_order(current_user, db_order):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to view this order's timeline"
        )
    return crud.get_order_timeline(db, order_id)


@app.post("/orders/{order_id}/items", response_model=schemas.OrderItem, status_code=status.HTTP_201_CREATED)
def add_order_item(
    order_id: str,
    item: schemas.OrderItemCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Add a line item to an order (directors and managers only).

    Raises:
        HTTPException: 400 if the item fails validation
        HTTPException: 404 if order not found
    """
    db_order = get_order_or_404(db, order_id)
    is_valid, error_message = validators.validate_order_items([item])
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_message)
    db_item = crud.add_order_item(db, db_order, item, user_id=current_user.id)
    log_user_action(current_user, "add_order_item", order_id=order_id, item_id=db_item.id)
    return db_item


@app.put("/orders/{order_id}/items/{item_id}", response_model=schemas.OrderItem)
def update_order_item(
    order_id: str,
    item_id: str,
    item: schemas.OrderItemUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    db_item = crud.get_order_item(db, order_id, item_id)
    if db_item is None:
        raise HTTPException(status_code=404, detail="Order item not found")
    db_item = crud.update_order_item(db, db_item, item, user_id=current_user.id)
    log_user_action(current_user, "update_order_item", order_id=order_id, item_id=item_id)
    return db_item


@app.delete("/orders/{order_id}/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order_item(
    order_id: str,
    item_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    db_item = crud.get_order_item(db, order_id, item_id)
    if db_item is None:
        raise HTTPException(status_code=404, detail="Order item not found")
    crud.delete_order_item(db, db_item, user_id=current_user.id)
    log_user_action(current_user, "delete_order_item", order_id=order_id, item_id=item_id)
    return None


@app.delete("/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Delete an order (directors and managers only). Only pending orders can be deleted.

    Raises:
        HTTPException: 400 if the order is no longer pending
        HTTPException: 404 if order not found
    """
    db_order = get_order_or_404(db, order_id)
    if db_order.status != statuses.OrderStatus.PENDING.value:
        raise HTTPException(status_code=400, detail="Only pending orders can be deleted")
    crud.delete_order(db, db_order)
    cache.invalidate_stats()
    log_user_action(current_user, "delete_order", order_id=order_id)
    return None


# --- Contracts ---

def get_contract_or_404(db: Session, contract_id: str) -> models.Contract:
    db_contract = crud.get_contract(db, contract_id)
    if db_contract is None:
        raise HTTPException(status_code=404, detail="Contract not found")
    return db_contract


@app.get("/contracts", response_model=schemas.ContractList)
def list_contracts(
    page: int = 1,
    limit: int = 20,
    contract_type: Optional[statuses.ContractType] = None,
    is_signed: Optional[bool] = None,
    order_id: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_management)
):
    """List contracts, newest first, with filters (management only)."""
    contracts, pagination = crud.get_contracts(
        db,
        page=page,
        limit=limit,
        contract_type=contract_type.value if contract_type else None,
        is_signed=is_signed,
        order_id=order_id,
        search=search,
    )
    return {"contracts": contracts, "pagination": pagination}


@app.get("/contracts/order/{order_id}", response_model=List[schemas.Contract])
def list_order_contracts(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Contracts of one order (management or the owning client).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = get_order_or_404(db, order_id)
    if not auth.can_view_order(current_user, db_order):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return crud.get_order_contracts(db, order_id)


@app.get("/contracts/{contract_id}", response_model=schemas.Contract)
def get_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    db_contract = get_contract_or_404(db, contract_id)
    if not auth.can_view_order(current_user, db_contract.order):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return db_contract


@app.post("/contracts", response_model=schemas.Contract, status_code=status.HTTP_201_CREATED)
def create_contract(
    contract: schemas.ContractCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Create an unsigned contract with a ``CT-<year>-<000001>`` number (directors and managers only).

    Raises:
        HTTPException: 404 if order not found
    """
    db_contract = workflow.create_contract(db, contract, actor_id=current_user.id)
    log_user_action(current_user, "create_contract", contract_number=db_contract.contract_number)
    return db_contract


@app.put("/contracts/{contract_id}/sign", response_model=schemas.Contract)
def sign_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Sign a contract (management or the owning client).

    Raises:
        HTTPException: 400 if the contract is already signed
        HTTPException: 403 if not authorized
        HTTPException: 404 if contract not found
    """
    db_contract = get_contract_or_404(db, contract_id)
    if not auth.can_view_order(current_user, db_contract.order):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    if db_contract.is_signed:
        raise HTTPException(status_code=400, detail="Contract is already signed")
    db_contract = crud.sign_contract(db, db_contract, user_id=current_user.id)
    log_user_action(current_user, "sign_contract", contract_id=contract_id)
    return db_contract


@app.delete("/contracts/{contract_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_contract(
    contract_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Delete a contract (directors and managers only). Signed contracts are kept.

    Raises:
        HTTPException: 400 if the contract is signed
        HTTPException: 404 if contract not found
    """
    db_contract = get_contract_or_404(db, contract_id)
    if db_contract.is_signed:
        raise HTTPException(status_code=400, detail="Signed contracts cannot be deleted")
    crud.delete_contract(db, db_contract)
    log_user_action(current_user, "delete_contract", contract_id=contract_id)
    return None


# --- Jobs ---

@app.get("/jobs", response_model=schemas.JobList)
def list_jobs(
    page: int = 1,
    limit: int = 20,
    status: Optional[statuses.JobStatus] = None,
    job_type: Optional[statuses.JobType] = None,
    assigned_worker_id: Optional[str] = None,
    scheduled_date: Optional[date] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_management)
):
    """List jobs ordered by schedule, with filters (management only)."""
    jobs, pagination = crud.get_jobs(
        db,
        page=page,
        limit=limit,
        status=status.value if status else None,
        job_type=job_type.value if job_type else None,
        assigned_worker_id=assigned_worker_id,
        scheduled_date=scheduled_date,
    )
    return {"jobs": jobs, "pagination": pagination}


@app.get("/jobs/stats/overview", response_model=dict)
def get_job_stats(
    job_type: Optional[statuses.JobType] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_management)
):
    """Job counts, overdue jobs and breakdowns (management only, cached)."""
    job_type_value = job_type.value if job_type else None
    key = cache.stats_key("jobs", job_type_value)
    cached = cache.get_cache(key)
    if cached is not None:
        return cached
    stats = crud.get_job_stats(db, job_type=job_type_value)
    cache.set_cache(key, stats)
    return stats


@app.get("/jobs/worker/{worker_id}", response_model=schemas.JobList)
def list_worker_jobs(
    worker_id: str,
    page: int = 1,
    limit: int = 20,
    status: Optional[statuses.JobStatus] = None,
    job_type: Optional[statuses.JobType] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    List the jobs assigned to one worker (the worker themself, or a director/manager).

    Raises:
        HTTPException: 403 if not authorized
    """
    if current_user.id != worker_id and not current_user.can_manage_users():
        raise HTTPException(status_code=403, detail="Access denied: insufficient permissions")
    jobs, pagination = crud.get_jobs(
        db,
        page=page,
        limit=limit,
        status=status.value if status else None,
        job_type=job_type.value if job_type else None,
        assigned_worker_id=worker_id,
        date_from=date_from,
        date_to=date_to,
    )
    return {"jobs": jobs, "pagination": pagination}


@app.get("/jobs/{job_id}", response_model=schemas.JobDetail)
def get_job(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Get a job with its status history, newest first
    (management, the assigned worker, or the owning client).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if job not found
    """
    db_job = get_job_or_404(db, job_id)
    if not auth.can_view_job(current_user, db_job):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    detail = schemas.JobDetail.model_validate(db_job)
    detail.status_updates = sorted(detail.status_updates, key=lambda u: u.created_at, reverse=True)
    return detail


@app.get("/jobs/{job_id}/history", response_model=List[schemas.JobStatusUpdate])
def get_job_history(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """Status history of a job, oldest first."""
    db_job = get_job_or_404(db, job_id)
    if not auth.can_view_job(current_user, db_job):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")
    return crud.get_job_history(db, job_id)


@app.post("/jobs", response_model=schemas.Job, status_code=status.HTTP_201_CREATED)
def create_job(
    job: schemas.JobCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
    current_user: models.User = Depends(auth.require_management)
):
    """
    Create a job in ``assigned`` for an order (management only).

    Raises:
        HTTPException: 404 if the order does not exist, or the worker is
            missing or holds the wrong role for the job type
    """
    if job.assigned_worker_id:
        require_worker_for_job(db, job.assigned_worker_id, job.job_type.value)

    db_job = workflow.create_job(db, job, actor_id=current_user.id, notifier=notifier)
    cache.invalidate_stats()
    webhooks.notify_job_created(background_tasks, db_job.id, db_job.order_id, db_job.job_type)
    log_user_action(current_user, "create_job", job_id=db_job.id)
    return db_job


@app.put("/jobs/{job_id}", response_model=schemas.Job)
def update_job(
    job_id: str,
    job: schemas.JobUpdate,
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
    current_user: models.User = Depends(auth.require_management)
):
    """
    Edit a job's schedule, location or worker (management only).

    A new worker must hold the role matching the job type and is notified.

    Raises:
        HTTPException: 404 if the job or worker does not exist
    """
    db_job = get_job_or_404(db, job_id)
    previous_worker_id = db_job.assigned_worker_id
    if job.assigned_worker_id:
        require_worker_for_job(db, job.assigned_worker_id, db_job.job_type)

    db_job = crud.update_job(db, db_job, job)
    if db_job.assigned_worker_id and db_job.assigned_worker_id != previous_worker_id:
        notify_job_assignment(notifier, db_job.assigned_worker_id, db_job)
    log_user_action(current_user, "update_job", job_id=job_id)
    return db_job


@app.put("/jobs/{job_id}/status", response_model=schemas.JobStatusChange)
def update_job_status(
    job_id: str,
    payload: schemas.JobStatusRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier: NotificationDispatcher = Depends(get_notifier),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Move a job to its next status (the assigned worker or management).

    Returns:
        The updated job, the old and new status, and the derived order status if any

    Raises:
        HTTPException: 400 on an invalid transition, with ``current_status`` and
            ``valid_next_statuses``
        HTTPException: 403 if not authorized
        HTTPException: 404 if job not found
    """
    result = workflow.transition_job(
        db,
        job_id,
        payload.status,
        actor_id=current_user.id,
        notes=payload.notes,
        location=payload.location_coordinates.model_dump() if payload.location_coordinates else None,
        authorize=auth.job_status_policy(current_user),
        notifier=notifier,
    )
    cache.invalidate_stats()
    webhooks.notify_job_status_changed(
        background_tasks, job_id, result.job.order_id, result.old_status, result.new_status
    )
    if result.order_status:
        webhooks.notify_order_status_changed(
            background_tasks, result.job.order_id, result.order_old_status, result.order_status, derived=True
        )
    log_user_action(current_user, "update_job_status", job_id=job_id, status=result.new_status)
    return {
        "job": result.job,
        "old_status": result.old_status,
        "new_status": result.new_status,
        "order_status": result.order_status,
    }


@app.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job(
    job_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_management)
):
    """
    Delete a job (management only). Only jobs still in ``assigned`` can be deleted.

    Raises:
        HTTPException: 400 if the job has progressed
        HTTPException: 404 if job not found
    """
    db_job = get_job_or_404(db, job_id)
    if db_job.status != statuses.JobStatus.ASSIGNED.value:
        raise HTTPException(status_code=400, detail="Only assigned jobs can be deleted")
    crud.delete_job(db, db_job)
    cache.invalidate_stats()
    log_user_action(current_user, "delete_job", job_id=job_id)
    return None


# --- Notifications ---

@app.get("/notifications", response_model=List[schemas.Notification])
def list_notifications(
    unread_only: bool = False,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """The caller's notifications, newest first."""
    notifications, _ = crud.get_notifications(db, current_user.id, unread_only=unread_only, page=page, limit=limit)
    return notifications


@app.get("/notifications/unread-count", response_model=schemas.UnreadCount)
def unread_notification_count(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    return {"unread_count": crud.count_unread_notifications(db, current_user.id)}


@app.post("/notifications", response_model=schemas.Notification, status_code=status.HTTP_201_CREATED)
def create_notification(
    notification: schemas.NotificationCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Send a notification to one user (directors and managers only).

    Raises:
        HTTPException: 404 if the user, the related job or the related order does not exist
    """
    if crud.get_user(db, notification.user_id) is None:
        raise HTTPException(status_code=404, detail="User not found")
    if notification.related_job_id and crud.get_job(db, notification.related_job_id) is None:
        raise HTTPException(status_code=404, detail="Related job not found")
    if notification.related_order_id and crud.get_order(db, notification.related_order_id) is None:
        raise HTTPException(status_code=404, detail="Related order not found")
    db_notification = crud.create_notification(db, notification)
    log_user_action(current_user, "create_notification", user_id=notification.user_id)
    return db_notification


@app.post("/notifications/broadcast", response_model=schemas.BroadcastResult)
def broadcast_notification(
    payload: schemas.BroadcastRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin)
):
    """
    Send one message to many users (directors and managers only).

    Recipients are the active users in ``target_roles`` plus ``target_users``,
    each once; with neither given, every active user.
    """
    recipients = crud.get_broadcast_recipients(
        db,
        target_roles=[role.value for role in payload.target_roles],
        target_users=payload.target_users,
    )
    sent = crud.create_broadcast(db, recipients, payload.title, payload.message, payload.type)
    log_user_action(current_user, "broadcast_notification", recipients=sent)
    return {"sent": sent}


@app.get("/notifications/{notification_id}", response_model=schemas.Notification)
def get_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Get one of the caller's notifications.

    Raises:
        HTTPException: 404 if the notification does not exist or belongs to someone else
    """
    notification = crud.get_user_notification(db, current_user.id, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


@app.put("/notifications/read-all", response_model=dict)
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    updated = crud.mark_all_notifications_read(db, current_user.id)
    return {"message": "All notifications marked as read", "updated": updated}


@app.put("/notifications/{notification_id}/read", response_model=schemas.Notification)
def mark_notification_read(
    notification_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    """
    Mark one of the caller's notifications as read.

    Raises:
        HTTPException: 404 if the notification does not exist or belongs to someone else
    """
    notification = crud.get_user_notification(db, current_user.id, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return crud.mark_notification_read(db, notification)


@app.delete("/notifications/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user)
):
    notification = crud.get_user_notification(db, current_user.id, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    crud.delete_notification(db, notification)
    return None
