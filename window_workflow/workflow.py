"""
Order and job status workflow.

Every function here owns its transaction: it validates, writes the new state
together with its audit rows, commits, and only then dispatches
notifications. A failed write is rolled back and raised as
``PersistenceFailure``; nothing is half-applied.

Authorization is not decided here. Callers that need it pass an
``authorize(job) -> bool`` policy to ``transition_job``.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional, Tuple
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud, models, notifications, schemas, statuses, validators
from .exceptions import AuthorizationDenied, InvalidTransition, NotFound, PersistenceFailure
from .notifications import NotificationDispatcher
from .statuses import JobStatus, OrderStatus

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "WM"
CONTRACT_NUMBER_PREFIX = "CT"

JobPolicy = Callable[[models.Job], bool]


@dataclass
class JobTransitionResult:
    job: models.Job
    old_status: str
    new_status: str
    order_old_status: Optional[str] = None
    order_status: Optional[str] = None  # set only when the order status was derived


@dataclass
class OrderStatusResult:
    order: models.Order
    old_status: str
    new_status: str


def _value(status) -> str:
    return getattr(status, "value", status)


def next_sequence_value(db: Session, name: str, year: int, max_attempts: int = 3) -> int:
    """
    Atomically allocate the next value of a yearly counter.

    The counter row is locked for the rest of the caller's transaction, so two
    concurrent allocations can never return the same value. When two callers
    race to create the year's first row, the loser retries.

    NOTE: On a lost creation race the session is rolled back, so call this
    before staging any other rows.

    Args:
        db: Database session
        name: Counter name (e.g. "WM")
        year: Counter year
        max_attempts: How many creation races to tolerate

    Returns:
        The allocated value, starting at 1 each year
    """
    for attempt in range(1, max_attempts + 1):
        counter = db.query(models.SequenceCounter).filter(
            models.SequenceCounter.name == name,
            models.SequenceCounter.year == year,
        ).with_for_update().first()

        if counter is None:
            counter = models.SequenceCounter(name=name, year=year, last_value=0)
            db.add(counter)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                logger.warning(f"Sequence {name}/{year} created concurrently, retrying (attempt {attempt})")
                continue

        counter.last_value += 1
        db.flush()
        return counter.last_value

    raise PersistenceFailure(f"Could not allocate a {name} number for {year}")


def next_order_number(db: Session, year: Optional[int] = None) -> str:
    """Allocate an order number of the form ``WM-<year>-<6-digit sequence>``."""
    year = year or datetime.utcnow().year
    value = next_sequence_value(db, ORDER_NUMBER_PREFIX, year)
    return f"{ORDER_NUMBER_PREFIX}-{year}-{value:06d}"


def create_order(
    db: Session,
    order: schemas.OrderCreate,
    actor_id: Optional[str] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> models.Order:
    """
    Create an order in ``pending`` with a freshly allocated order number.

    The number, the order, its items and the ``created`` timeline event are
    committed together.
    """
    try:
        order_number = next_order_number(db)
        db_order = crud.create_order(db, order, order_number)
        crud.log_order_event(
            db,
            order_id=db_order.id,
            event_type="created",
            description=f"Order {order_number} created",
            new_value=db_order.status,
            user_id=actor_id,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create order: {e}")
        raise PersistenceFailure("Failed to create order") from e

    db.refresh(db_order)
    logger.info(f"Order {db_order.order_number} created by {actor_id}")
    notifications.notify_order_created(notifier, db_order)
    return db_order


def create_job(
    db: Session,
    job: schemas.JobCreate,
    actor_id: Optional[str] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> models.Job:
    """
    Create a job in ``assigned`` together with its first audit row.

    Raises:
        NotFound: the order does not exist
        PersistenceFailure: the write failed
    """
    if crud.get_order(db, job.order_id) is None:
        raise NotFound("Order", job.order_id)

    try:
        db_job = models.Job(
            order_id=job.order_id,
            job_type=_value(job.job_type),
            status=JobStatus.ASSIGNED.value,
            location_address=job.location_address,
            location_coordinates=job.location_coordinates.model_dump() if job.location_coordinates else None,
            scheduled_date=job.scheduled_date,
            scheduled_time=job.scheduled_time,
            assigned_worker_id=job.assigned_worker_id,
            estimated_duration=job.estimated_duration,
            notes=job.notes,
        )
        db.add(db_job)
        db.flush()
        db.add(models.JobStatusUpdate(
            job_id=db_job.id,
            previous_status=None,
            new_status=JobStatus.ASSIGNED.value,
            updated_by=actor_id,
            notes="Job created and assigned",
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create job for order {job.order_id}: {e}")
        raise PersistenceFailure("Failed to create job") from e

    db.refresh(db_job)
    logger.info(f"Job {db_job.id} ({db_job.job_type}) created for order {db_job.order_id}")
    if db_job.assigned_worker_id:
        notifications.notify_job_assignment(notifier, db_job.assigned_worker_id, db_job)
    return db_job


def next_contract_number(db: Session, year: Optional[int] = None) -> str:
    """Allocate a contract number of the form ``CT-<year>-<6-digit sequence>``."""
    year = year or datetime.utcnow().year
    value = next_sequence_value(db, CONTRACT_NUMBER_PREFIX, year)
    return f"{CONTRACT_NUMBER_PREFIX}-{year}-{value:06d}"


def create_contract(db: Session, contract: schemas.ContractCreate, actor_id: Optional[str] = None) -> models.Contract:
    """
    Create an unsigned contract for an order with a freshly allocated number.

    The number, the contract and its timeline event are committed together.

    Raises:
        NotFound: the order does not exist
        PersistenceFailure: the write failed
    """
    if crud.get_order(db, contract.order_id) is None:
        raise NotFound("Order", contract.order_id)

    try:
        contract_number = next_contract_number(db)
        db_contract = models.Contract(
            order_id=contract.order_id,
            contract_number=contract_number,
            contract_type=_value(contract.contract_type),
            file_url=contract.file_url,
        )
        db.add(db_contract)
        crud.log_order_event(
            db,
            order_id=contract.order_id,
            event_type="contract_created",
            description=f"Contract {contract_number} created",
            user_id=actor_id,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to create contract for order {contract.order_id}: {e}")
        raise PersistenceFailure("Failed to create contract") from e

    db.refresh(db_contract)
    logger.info(f"Contract {db_contract.contract_number} created for order {db_contract.order_id}")
    return db_contract


def derive_order_status_on_job_completion(job: models.Job) -> Optional[str]:
    """
    Order status implied by a completed job.

    Returns:
        ``measuring_completed``, ``delivered`` or ``installation_completed`` for a
        completed job of the matching type; None for any other job or status
    """
    if job.status != JobStatus.COMPLETED.value:
        return None
    return statuses.derived_order_status(job.job_type)


def _apply_derived_order_status(db: Session, job: models.Job, actor_id: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Move the job's order to the derived status inside the current transaction.

    Completed or cancelled orders are left alone.

    Returns:
        (old_status, new_status) when the order changed, otherwise None
    """
    target = derive_order_status_on_job_completion(job)
    if target is None:
        return None

    order = db.query(models.Order).filter(models.Order.id == job.order_id).with_for_update().first()
    if order is None:
        return None
    if order.status in statuses.TERMINAL_ORDER_STATUSES:
        logger.info(f"Order {order.order_number} is {order.status}; not deriving {target} from job {job.id}")
        return None
    if order.status == target:
        return None

    old_status = order.status
    order.status = target
    crud.log_order_event(
        db,
        order_id=order.id,
        event_type="status_changed",
        description=(
            f"Status changed from '{old_status}' to '{target}' "
            f"after {job.job_type} job completion"
        ),
        old_value=old_status,
        new_value=target,
        user_id=actor_id,
    )
    return old_status, target


def transition_job(
    db: Session,
    job_id: str,
    requested_status,
    actor_id: Optional[str] = None,
    notes: Optional[str] = None,
    location: Optional[dict] = None,
    authorize: Optional[JobPolicy] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> JobTransitionResult:
    """
    Move a job to ``requested_status`` along the job status flow.

    The job row is locked, validated, updated and audited in a single
    transaction. Entering ``in_progress`` stamps ``actual_start_time`` unless it
    is already set; entering ``completed`` stamps ``actual_end_time`` and may
    derive the order status.

    Args:
        db: Database session
        job_id: Job to move
        requested_status: Target job status
        actor_id: User making the change, recorded on the audit row
        notes: Free-text notes for the audit row
        location: Optional ``{"latitude", "longitude"}`` where the change was made
        authorize: Policy deciding whether the caller may change this job
        notifier: Where post-commit notifications go

    Returns:
        JobTransitionResult with the refreshed job

    Raises:
        NotFound: no such job
        AuthorizationDenied: ``authorize`` rejected the job
        InvalidTransition: ``requested_status`` is not reachable from the current status
        PersistenceFailure: the write failed and was rolled back
    """
    requested = _value(requested_status)

    job = crud.get_job(db, job_id, for_update=True)
    if job is None:
        db.rollback()
        raise NotFound("Job", job_id)

    if authorize is not None and not authorize(job):
        db.rollback()
        raise AuthorizationDenied()

    is_valid, error_message = validators.validate_job_status_transition(job.status, requested)
    if not is_valid:
        current, valid_next = job.status, job.valid_next_statuses
        db.rollback()
        logger.info(f"Rejected job {job_id} transition: {error_message}")
        raise InvalidTransition(current, requested, valid_next)

    old_status = job.status
    now = datetime.utcnow()
    try:
        job.status = requested
        if requested == JobStatus.IN_PROGRESS.value and job.actual_start_time is None:
            job.actual_start_time = now
        if requested == JobStatus.COMPLETED.value:
            job.actual_end_time = now

        db.add(models.JobStatusUpdate(
            job_id=job.id,
            previous_status=old_status,
            new_status=requested,
            updated_by=actor_id,
            notes=notes,
            location_coordinates=location,
        ))

        order_change = _apply_derived_order_status(db, job, actor_id)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to move job {job_id} from {old_status} to {requested}: {e}")
        raise PersistenceFailure("Failed to update job status") from e

    db.refresh(job)
    logger.info(f"Job {job.id} moved from {old_status} to {requested} by {actor_id}")

    result = JobTransitionResult(job=job, old_status=old_status, new_status=requested)
    if order_change is not None:
        result.order_old_status, result.order_status = order_change
        logger.info(f"Order {job.order_id} derived status {result.order_status} from job {job.id}")

    notifications.notify_job_status_change(notifier, job, job.order)
    return result


def set_order_status(
    db: Session,
    order_id: str,
    new_status,
    actor_id: Optional[str] = None,
    notes: Optional[str] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> OrderStatusResult:
    """
    Set an order's status directly.

    Any order status is accepted from any current status; this is the
    management override path. Completing an order stamps
    ``actual_completion_date``. Each change is recorded on the order timeline
    and the client is notified.

    Raises:
        NotFound: no such order
        InvalidTransition: ``new_status`` is not an order status at all
        PersistenceFailure: the write failed and was rolled back
    """
    requested = _value(new_status)

    order = db.query(models.Order).filter(models.Order.id == order_id).with_for_update().first()
    if order is None:
        db.rollback()
        raise NotFound("Order", order_id)

    all_statuses = [s.value for s in OrderStatus]
    if requested not in all_statuses:
        current = order.status
        db.rollback()
        raise InvalidTransition(current, requested, all_statuses)

    old_status = order.status
    try:
        order.status = requested
        if notes:
            order.notes = notes
        if requested == OrderStatus.COMPLETED.value:
            order.actual_completion_date = date.today()

        if old_status != requested:
            crud.log_order_event(
                db,
                order_id=order.id,
                event_type="status_changed",
                description=f"Status changed from '{old_status}' to '{requested}'",
                old_value=old_status,
                new_value=requested,
                user_id=actor_id,
            )
        else:
            crud.log_order_event(
                db,
                order_id=order.id,
                event_type="updated",
                description=f"Status confirmed as '{requested}'",
                user_id=actor_id,
            )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to set order {order_id} status to {requested}: {e}")
        raise PersistenceFailure("Failed to update order status") from e

    db.refresh(order)
    logger.info(f"Order {order.order_number} status set from {old_status} to {requested} by {actor_id}")
    notifications.notify_order_status_change(notifier, order)
    return OrderStatusResult(order=order, old_status=old_status, new_status=requested)
