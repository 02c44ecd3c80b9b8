"""
Business-rule validation for orders and jobs.

Provides validation beyond what the request schemas check.
"""
from typing import List, Optional, Tuple
from decimal import Decimal

from . import schemas, statuses


def validate_order_items(items: List[schemas.OrderItemCreate]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "At least one order item is required"

    if len(items) > 100:
        return False, "Order cannot contain more than 100 items"

    for item in items:
        if not item.product_name or not item.product_name.strip():
            return False, "Product name is required"

        if item.quantity <= 0:
            return False, f"Item {item.product_name}: quantity must be at least 1"

        if item.quantity > 10000:
            return False, f"Item {item.product_name}: quantity exceeds maximum (10000)"

        if item.unit_price is not None and item.unit_price < 0:
            return False, f"Item {item.product_name}: price cannot be negative"

        if item.unit_price is not None and item.unit_price > Decimal('1000000'):
            return False, f"Item {item.product_name}: price exceeds maximum (1,000,000)"

    return True, ""


def validate_order_total(items: List[schemas.OrderItemCreate], claimed_total: Optional[Decimal]) -> Tuple[bool, str]:
    """
    Validate that the order total matches the sum of priced items.

    Orders without a total, or with unpriced items, are not checked.

    Args:
        items: List of order items
        claimed_total: The total sent by the caller

    Returns:
        Tuple of (is_valid, error_message)
    """
    if claimed_total is None or any(item.unit_price is None for item in items):
        return True, ""

    calculated_total = sum(
        (Decimal(str(item.unit_price)) * item.quantity for item in items),
        Decimal("0"),
    )

    # Allow small rounding differences (up to 0.01)
    if abs(calculated_total - claimed_total) > Decimal('0.01'):
        return False, f"Order total mismatch: calculated {calculated_total}, claimed {claimed_total}"

    return True, ""


def validate_job_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a job status transition is allowed.

    Unlike order updates, re-submitting the current status is rejected:
    every accepted change produces an audit row.

    Args:
        old_status: Current job status
        new_status: Requested job status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status not in statuses.JOB_STATUS_FLOW:
        return False, f"Unknown status: {old_status}"

    if new_status not in statuses.JOB_STATUS_FLOW:
        return False, f"Unknown status: {new_status}"

    if not statuses.can_transition_job(old_status, new_status):
        return False, f"Invalid status transition: {old_status} -> {new_status}"

    return True, ""


def validate_worker_for_job(worker_role: str, job_type: str) -> Tuple[bool, str]:
    """
    Check that a worker's role matches the job type they are being assigned.

    Returns:
        Tuple of (is_valid, error_message)
    """
    expected = statuses.WORKER_ROLE_FOR_JOB_TYPE.get(job_type)
    if expected is None:
        return False, f"Unknown job type: {job_type}"
    if worker_role != expected:
        return False, f"Worker not found or incorrect role for {job_type} job"
    return True, ""
