import pytest

from window_workflow import statuses
from window_workflow.statuses import JobStatus, OrderStatus


def test_job_flow_covers_every_status():
    assert set(statuses.JOB_STATUS_FLOW) == {s.value for s in JobStatus}


@pytest.mark.parametrize("terminal", ["completed", "cancelled"])
def test_terminal_job_statuses_have_no_successors(terminal):
    assert statuses.next_job_statuses(terminal) == []


def test_active_job_statuses_can_always_be_cancelled():
    for current in statuses.ACTIVE_JOB_STATUSES:
        assert statuses.can_transition_job(current, "cancelled")


def test_job_flow_is_linear():
    assert statuses.next_job_statuses("assigned") == ["en_route", "cancelled"]
    assert statuses.next_job_statuses("en_route") == ["arrived", "cancelled"]
    assert statuses.next_job_statuses("arrived") == ["in_progress", "cancelled"]
    assert statuses.next_job_statuses("in_progress") == ["completed", "cancelled"]


def test_skipping_a_step_is_not_allowed():
    assert not statuses.can_transition_job("assigned", "arrived")
    assert not statuses.can_transition_job("en_route", "in_progress")
    assert not statuses.can_transition_job("in_progress", "in_progress")


def test_enum_members_are_accepted():
    assert statuses.can_transition_job(JobStatus.ASSIGNED, JobStatus.EN_ROUTE)
    assert statuses.progress_percentage(OrderStatus.DELIVERED) == 85


def test_unknown_job_status_has_no_successors():
    assert statuses.next_job_statuses("lost") == []


def test_progress_defined_for_every_order_status():
    assert set(statuses.ORDER_PROGRESS) == {s.value for s in OrderStatus}
    assert all(0 <= value <= 100 for value in statuses.ORDER_PROGRESS.values())


def test_progress_endpoints():
    assert statuses.progress_percentage("pending") == 5
    assert statuses.progress_percentage("completed") == 100
    assert statuses.progress_percentage("cancelled") == 0
    assert statuses.progress_percentage("no_such_status") == 0


def test_progress_never_decreases_along_happy_path():
    values = [statuses.progress_percentage(s) for s in statuses.ORDER_STATUS_SEQUENCE]
    assert values == sorted(values)


def test_happy_path_excludes_cancelled():
    assert "cancelled" not in statuses.ORDER_STATUS_SEQUENCE
    assert len(statuses.ORDER_STATUS_SEQUENCE) == len(OrderStatus) - 1


@pytest.mark.parametrize("job_type,order_status", [
    ("measuring", "measuring_completed"),
    ("delivery", "delivered"),
    ("installation", "installation_completed"),
])
def test_order_status_derived_from_job_type(job_type, order_status):
    assert statuses.derived_order_status(job_type) == order_status


def test_display_labels():
    assert statuses.order_status_display("measuring_in_progress") == "Measuring in Progress"
    assert statuses.job_status_display("en_route") == "En Route"
    assert statuses.job_type_display("delivery") == "Delivery"
    assert statuses.order_status_display("custom") == "custom"
