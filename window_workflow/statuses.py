"""
Status vocabularies and static lookup tables for orders and jobs.

Every table here is a plain constant; nothing in this module holds state.
"""
from enum import Enum
from typing import Dict, List, Optional, Tuple


class UserRole(str, Enum):
    DIRECTOR = "director"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    MEASURER = "measurer"
    DELIVERY_PERSON = "delivery_person"
    INSTALLER = "installer"
    CLIENT = "client"


ADMIN_ROLES = (UserRole.DIRECTOR.value, UserRole.MANAGER.value)
MANAGEMENT_ROLES = ADMIN_ROLES + (UserRole.SUPERVISOR.value,)
WORKER_ROLES = (UserRole.MEASURER.value, UserRole.DELIVERY_PERSON.value, UserRole.INSTALLER.value)


class JobType(str, Enum):
    MEASURING = "measuring"
    DELIVERY = "delivery"
    INSTALLATION = "installation"


class JobStatus(str, Enum):
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    ARRIVED = "arrived"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderStatus(str, Enum):
    PENDING = "pending"
    MEASURING_SCHEDULED = "measuring_scheduled"
    MEASURING_IN_PROGRESS = "measuring_in_progress"
    MEASURING_COMPLETED = "measuring_completed"
    PRODUCTION_SCHEDULED = "production_scheduled"
    IN_PRODUCTION = "in_production"
    PRODUCTION_COMPLETED = "production_completed"
    DELIVERY_SCHEDULED = "delivery_scheduled"
    IN_DELIVERY = "in_delivery"
    DELIVERED = "delivered"
    INSTALLATION_SCHEDULED = "installation_scheduled"
    INSTALLATION_IN_PROGRESS = "installation_in_progress"
    INSTALLATION_COMPLETED = "installation_completed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ContractType(str, Enum):
    SERVICE_AGREEMENT = "service_agreement"
    INSTALLATION_CONTRACT = "installation_contract"
    WARRANTY = "warranty"
    AMENDMENT = "amendment"


class NotificationType(str, Enum):
    JOB_ASSIGNMENT = "job_assignment"
    STATUS_UPDATE = "status_update"
    GENERAL = "general"
    SYSTEM = "system"
    REMINDER = "reminder"


# Job lifecycle: current status -> statuses reachable in one step
JOB_STATUS_FLOW: Dict[str, Tuple[str, ...]] = {
    "assigned": ("en_route", "cancelled"),
    "en_route": ("arrived", "cancelled"),
    "arrived": ("in_progress", "cancelled"),
    "in_progress": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}

TERMINAL_JOB_STATUSES = ("completed", "cancelled")
ACTIVE_JOB_STATUSES = ("assigned", "en_route", "arrived", "in_progress")
TERMINAL_ORDER_STATUSES = ("completed", "cancelled")

# Job transitions the client is told about
SIGNIFICANT_JOB_STATUSES = ("arrived", "in_progress", "completed", "cancelled")

# Order status an order takes when a job of the given type completes
ORDER_STATUS_ON_JOB_COMPLETION: Dict[str, str] = {
    "measuring": "measuring_completed",
    "delivery": "delivered",
    "installation": "installation_completed",
}

# The only role allowed to be assigned to each job type
WORKER_ROLE_FOR_JOB_TYPE: Dict[str, str] = {
    "measuring": "measurer",
    "delivery": "delivery_person",
    "installation": "installer",
}

# Happy-path order; percentages below are non-decreasing along it
ORDER_STATUS_SEQUENCE: Tuple[str, ...] = (
    "pending",
    "measuring_scheduled",
    "measuring_in_progress",
    "measuring_completed",
    "production_scheduled",
    "in_production",
    "production_completed",
    "delivery_scheduled",
    "in_delivery",
    "delivered",
    "installation_scheduled",
    "installation_in_progress",
    "installation_completed",
    "completed",
)

ORDER_PROGRESS: Dict[str, int] = {
    "pending": 5,
    "measuring_scheduled": 10,
    "measuring_in_progress": 15,
    "measuring_completed": 25,
    "production_scheduled": 30,
    "in_production": 50,
    "production_completed": 70,
    "delivery_scheduled": 75,
    "in_delivery": 80,
    "delivered": 85,
    "installation_scheduled": 90,
    "installation_in_progress": 95,
    "installation_completed": 98,
    "completed": 100,
    "cancelled": 0,
}

ORDER_STATUS_DISPLAY: Dict[str, str] = {
    "pending": "Pending",
    "measuring_scheduled": "Measuring Scheduled",
    "measuring_in_progress": "Measuring in Progress",
    "measuring_completed": "Measuring Completed",
    "production_scheduled": "Production Scheduled",
    "in_production": "In Production",
    "production_completed": "Production Completed",
    "delivery_scheduled": "Delivery Scheduled",
    "in_delivery": "In Delivery",
    "delivered": "Delivered",
    "installation_scheduled": "Installation Scheduled",
    "installation_in_progress": "Installation in Progress",
    "installation_completed": "Installation Completed",
    "completed": "Completed",
    "cancelled": "Cancelled",
}

JOB_STATUS_DISPLAY: Dict[str, str] = {
    "assigned": "Assigned",
    "en_route": "En Route",
    "arrived": "Arrived",
    "in_progress": "In Progress",
    "completed": "Completed",
    "cancelled": "Cancelled",
}

JOB_TYPE_DISPLAY: Dict[str, str] = {
    "measuring": "Measuring",
    "delivery": "Delivery",
    "installation": "Installation",
}

CONTRACT_TYPE_DISPLAY: Dict[str, str] = {
    "service_agreement": "Service Agreement",
    "installation_contract": "Installation Contract",
    "warranty": "Warranty",
    "amendment": "Amendment",
}


def _value(status) -> str:
    return status.value if isinstance(status, Enum) else status


def next_job_statuses(current_status: str) -> List[str]:
    """Statuses a job in ``current_status`` may move to; empty for terminal or unknown states."""
    return list(JOB_STATUS_FLOW.get(_value(current_status), ()))


def can_transition_job(current_status: str, new_status: str) -> bool:
    return _value(new_status) in next_job_statuses(current_status)


def derived_order_status(job_type: str) -> Optional[str]:
    """Order status implied by a completed job of ``job_type``, if any."""
    return ORDER_STATUS_ON_JOB_COMPLETION.get(_value(job_type))


def progress_percentage(order_status: str) -> int:
    """
    Display progress for an order status.

    Args:
        order_status: One of the order statuses

    Returns:
        Integer in 0..100; unknown statuses and ``cancelled`` map to 0
    """
    return ORDER_PROGRESS.get(_value(order_status), 0)


def order_status_display(status: str) -> str:
    return ORDER_STATUS_DISPLAY.get(_value(status), _value(status))


def job_status_display(status: str) -> str:
    return JOB_STATUS_DISPLAY.get(_value(status), _value(status))


def job_type_display(job_type: str) -> str:
    return JOB_TYPE_DISPLAY.get(_value(job_type), _value(job_type))


def contract_type_display(contract_type: str) -> str:
    return CONTRACT_TYPE_DISPLAY.get(_value(contract_type), _value(contract_type))
