"""
Notification dispatch for workflow events.

A dispatcher is handed to the workflow core and called only after a status
change has been committed. Dispatch failures are logged and swallowed so they
can never undo a transition.
"""
import logging
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, statuses
from .statuses import NotificationType

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Fire-and-forget sink for user notifications."""

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        type: str,
        related_job_id: Optional[str] = None,
        related_order_id: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class DatabaseNotifier(NotificationDispatcher):
    """
    Stores each notification as an in-app Notification row.

    Every call commits on its own; a failed insert is rolled back and logged.
    """

    def __init__(self, db: Session):
        self.db = db

    def notify(self, user_id, title, message, type, related_job_id=None, related_order_id=None) -> None:
        try:
            self.db.add(models.Notification(
                user_id=user_id,
                title=title,
                message=message,
                type=getattr(type, "value", type),
                related_job_id=related_job_id,
                related_order_id=related_order_id,
            ))
            self.db.commit()
            logger.info(f"Notification '{title}' queued for user {user_id}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store notification for user {user_id}: {e}")


def safe_notify(notifier: Optional[NotificationDispatcher], **kwargs) -> None:
    """Call ``notifier.notify`` and log, rather than raise, anything it throws."""
    if notifier is None:
        return
    try:
        notifier.notify(**kwargs)
    except Exception:
        logger.exception(f"Notification dispatch failed for user {kwargs.get('user_id')}")


def notify_job_assignment(notifier: Optional[NotificationDispatcher], worker_id: str, job: models.Job) -> None:
    safe_notify(
        notifier,
        user_id=worker_id,
        title="New Job Assignment",
        message=f"You have been assigned a new {job.job_type_display} job at {job.location_address}",
        type=NotificationType.JOB_ASSIGNMENT.value,
        related_job_id=job.id,
        related_order_id=job.order_id,
    )


def notify_job_status_change(notifier: Optional[NotificationDispatcher], job: models.Job, order: models.Order) -> None:
    """
    Tell the client, and on completion or cancellation the order's manager,
    about a job status change.
    """
    if job.status in statuses.SIGNIFICANT_JOB_STATUSES and order.client is not None:
        safe_notify(
            notifier,
            user_id=order.client.user_id,
            title="Job Status Update",
            message=f"Your {job.job_type_display} job status has been updated to {job.status_display}",
            type=NotificationType.STATUS_UPDATE.value,
            related_job_id=job.id,
            related_order_id=order.id,
        )
    if job.status in statuses.TERMINAL_JOB_STATUSES and order.assigned_manager_id:
        safe_notify(
            notifier,
            user_id=order.assigned_manager_id,
            title="Job Status Update",
            message=f"{job.job_type_display} job for order {order.order_number} is {job.status_display}",
            type=NotificationType.STATUS_UPDATE.value,
            related_job_id=job.id,
            related_order_id=order.id,
        )


def notify_order_status_change(notifier: Optional[NotificationDispatcher], order: models.Order) -> None:
    if order.client is None:
        return
    safe_notify(
        notifier,
        user_id=order.client.user_id,
        title="Order Status Update",
        message=f"Your order {order.order_number} status has been updated to {order.status_display}",
        type=NotificationType.STATUS_UPDATE.value,
        related_order_id=order.id,
    )


def notify_order_created(notifier: Optional[NotificationDispatcher], order: models.Order) -> None:
    if order.client is None:
        return
    safe_notify(
        notifier,
        user_id=order.client.user_id,
        title="New Order Created",
        message=f"Your order {order.order_number} has been created and is being processed.",
        type=NotificationType.GENERAL.value,
        related_order_id=order.id,
    )
