from datetime import date, datetime, timedelta
from itertools import product

import pytest
from sqlalchemy.exc import SQLAlchemyError

from window_workflow import crud, models, schemas, statuses, workflow
from window_workflow.exceptions import AuthorizationDenied, InvalidTransition, NotFound, PersistenceFailure

from conftest import FailingNotifier

ALL_JOB_STATUSES = [s.value for s in statuses.JobStatus]
VALID_PAIRS = [(current, new) for current, nexts in statuses.JOB_STATUS_FLOW.items() for new in nexts]
INVALID_PAIRS = [pair for pair in product(ALL_JOB_STATUSES, ALL_JOB_STATUSES) if pair not in VALID_PAIRS]


def audit_pairs(db, job_id):
    rows = db.query(models.JobStatusUpdate).filter(models.JobStatusUpdate.job_id == job_id).all()
    return sorted((row.previous_status or "", row.new_status) for row in rows)


@pytest.mark.parametrize("current,requested", VALID_PAIRS)
def test_valid_transition_is_applied_and_audited(db, make_job, current, requested):
    job = make_job(status=current)
    before = audit_pairs(db, job.id)

    result = workflow.transition_job(db, job.id, requested, notes="on it")

    assert result.old_status == current
    assert result.new_status == requested
    db.expire_all()
    assert db.get(models.Job, job.id).status == requested
    assert audit_pairs(db, job.id) == sorted(before + [(current, requested)])


@pytest.mark.parametrize("current,requested", INVALID_PAIRS)
def test_invalid_transition_is_rejected_without_side_effects(db, make_job, current, requested):
    job = make_job(status=current)
    before = audit_pairs(db, job.id)

    with pytest.raises(InvalidTransition) as exc_info:
        workflow.transition_job(db, job.id, requested)

    assert exc_info.value.current_status == current
    assert exc_info.value.requested_status == requested
    assert exc_info.value.valid_next_statuses == list(statuses.JOB_STATUS_FLOW[current])
    db.expire_all()
    assert db.get(models.Job, job.id).status == current
    assert audit_pairs(db, job.id) == before


def test_unknown_requested_status_is_rejected(db, make_job):
    job = make_job()
    with pytest.raises(InvalidTransition):
        workflow.transition_job(db, job.id, "paused")


def test_missing_job(db):
    with pytest.raises(NotFound):
        workflow.transition_job(db, "does-not-exist", "en_route")


def test_policy_denial_leaves_job_untouched(db, make_job):
    job = make_job()
    with pytest.raises(AuthorizationDenied):
        workflow.transition_job(db, job.id, "en_route", authorize=lambda j: False)
    db.expire_all()
    assert db.get(models.Job, job.id).status == "assigned"
    assert len(audit_pairs(db, job.id)) == 1


def test_policy_receives_the_job(db, make_job):
    job = make_job()
    seen = []
    workflow.transition_job(db, job.id, "en_route", authorize=lambda j: seen.append(j.id) or True)
    assert seen == [job.id]


def test_start_time_stamped_on_entering_in_progress(db, make_job):
    job = make_job(status="arrived")
    result = workflow.transition_job(db, job.id, "in_progress")
    assert result.job.actual_start_time is not None
    assert result.job.actual_end_time is None


def test_existing_start_time_is_kept(db, make_job):
    job = make_job(status="arrived")
    started = datetime(2026, 3, 1, 8, 30)
    job.actual_start_time = started
    db.commit()

    result = workflow.transition_job(db, job.id, "in_progress")

    assert result.job.actual_start_time == started


def test_rejected_repeat_of_in_progress_keeps_start_time(db, make_job):
    job = make_job(status="arrived")
    started = workflow.transition_job(db, job.id, "in_progress").job.actual_start_time

    with pytest.raises(InvalidTransition):
        workflow.transition_job(db, job.id, "in_progress")

    db.expire_all()
    assert db.get(models.Job, job.id).actual_start_time == started


def test_end_time_stamped_on_completion(db, make_job):
    job = make_job(status="in_progress")
    result = workflow.transition_job(db, job.id, "completed")
    assert result.job.actual_end_time is not None


def test_location_and_actor_recorded_on_audit_row(db, make_job):
    job = make_job()
    worker = db.get(models.User, job.assigned_worker_id)
    workflow.transition_job(
        db, job.id, "en_route", actor_id=worker.id, notes="leaving depot",
        location={"latitude": 51.5, "longitude": -0.12},
    )
    row = db.query(models.JobStatusUpdate).filter(
        models.JobStatusUpdate.job_id == job.id,
        models.JobStatusUpdate.new_status == "en_route",
    ).one()
    assert row.updated_by == worker.id
    assert row.notes == "leaving depot"
    assert row.location_coordinates == {"latitude": 51.5, "longitude": -0.12}


@pytest.mark.parametrize("job_type,order_status", list(statuses.ORDER_STATUS_ON_JOB_COMPLETION.items()))
def test_completion_derives_order_status(db, make_order, make_job, job_type, order_status):
    order = make_order(status="in_production")
    job = make_job(job_type=job_type, status="in_progress", order=order)

    result = workflow.transition_job(db, job.id, "completed")

    assert result.order_old_status == "in_production"
    assert result.order_status == order_status
    db.expire_all()
    db_order = db.get(models.Order, order.id)
    assert db_order.status == order_status
    assert db_order.events[-1].event_type == "status_changed"
    assert db_order.events[-1].new_value == order_status


@pytest.mark.parametrize("terminal", sorted(statuses.TERMINAL_ORDER_STATUSES))
def test_completion_does_not_reopen_terminal_order(db, make_order, make_job, terminal):
    order = make_order(status=terminal)
    job = make_job(job_type="installation", status="in_progress", order=order)

    result = workflow.transition_job(db, job.id, "completed")

    assert result.order_status is None
    db.expire_all()
    assert db.get(models.Order, order.id).status == terminal
    assert db.get(models.Job, job.id).status == "completed"


def test_cancellation_does_not_touch_order(db, make_order, make_job):
    order = make_order(status="delivery_scheduled")
    job = make_job(job_type="delivery", status="en_route", order=order)

    result = workflow.transition_job(db, job.id, "cancelled")

    assert result.order_status is None
    db.expire_all()
    assert db.get(models.Order, order.id).status == "delivery_scheduled"


def test_derive_order_status_is_pure():
    completed = models.Job(job_type="measuring", status="completed")
    running = models.Job(job_type="measuring", status="in_progress")
    assert workflow.derive_order_status_on_job_completion(completed) == "measuring_completed"
    assert workflow.derive_order_status_on_job_completion(running) is None


def test_notifications_follow_commit(db, make_user, make_order, make_job, notifier):
    manager = make_user("manager")
    order = make_order(manager=manager)
    client_user_id = order.client.user_id
    job = make_job(status="assigned", order=order)

    workflow.transition_job(db, job.id, "en_route", notifier=notifier)
    assert notifier.sent == []

    workflow.transition_job(db, job.id, "arrived", notifier=notifier)
    assert [n["user_id"] for n in notifier.sent] == [client_user_id]

    workflow.transition_job(db, job.id, "in_progress", notifier=notifier)
    workflow.transition_job(db, job.id, "completed", notifier=notifier)
    assert len(notifier.for_user(client_user_id)) == 3
    assert len(notifier.for_user(manager.id)) == 1
    assert notifier.for_user(manager.id)[0]["related_job_id"] == job.id


def test_failing_notifier_does_not_undo_transition(db, make_job):
    job = make_job(status="en_route")

    result = workflow.transition_job(db, job.id, "arrived", notifier=FailingNotifier())

    assert result.new_status == "arrived"
    db.expire_all()
    assert db.get(models.Job, job.id).status == "arrived"


def test_failed_commit_is_rolled_back(db, make_job, monkeypatch):
    job = make_job()

    def broken_commit():
        raise SQLAlchemyError("disk full")

    monkeypatch.setattr(db, "commit", broken_commit)
    with pytest.raises(PersistenceFailure):
        workflow.transition_job(db, job.id, "en_route")
    monkeypatch.undo()

    db.expire_all()
    assert db.get(models.Job, job.id).status == "assigned"
    assert len(audit_pairs(db, job.id)) == 1


def test_create_job_starts_assigned_with_audit_row(db, make_order, make_user, notifier):
    order = make_order()
    measurer = make_user("measurer")
    manager = make_user("manager")

    job = workflow.create_job(
        db,
        schemas.JobCreate(
            order_id=order.id,
            job_type="measuring",
            location_address="3 Mill Lane",
            scheduled_time="09:30",
            assigned_worker_id=measurer.id,
        ),
        actor_id=manager.id,
        notifier=notifier,
    )

    assert job.status == "assigned"
    assert [(u.previous_status, u.new_status, u.updated_by) for u in job.status_updates] == [
        (None, "assigned", manager.id)
    ]
    assert notifier.for_user(measurer.id)[0]["type"] == "job_assignment"


def test_create_job_for_missing_order(db):
    with pytest.raises(NotFound):
        workflow.create_job(db, schemas.JobCreate(order_id="nope", job_type="delivery", location_address="x"))


@pytest.mark.parametrize("old,new", [
    ("completed", "pending"),
    ("cancelled", "in_production"),
    ("pending", "installation_completed"),
])
def test_order_status_override_accepts_any_status(db, make_order, old, new):
    order = make_order(status=old)

    result = workflow.set_order_status(db, order.id, new)

    assert (result.old_status, result.new_status) == (old, new)
    assert result.order.status == new


def test_order_completion_stamps_date(db, make_order):
    order = make_order(status="installation_completed")
    result = workflow.set_order_status(db, order.id, statuses.OrderStatus.COMPLETED)
    assert result.order.actual_completion_date == date.today()


def test_order_status_notes_overwrite_only_when_given(db, make_order):
    order = make_order()
    workflow.set_order_status(db, order.id, "measuring_scheduled", notes="Call before arriving")
    result = workflow.set_order_status(db, order.id, "measuring_in_progress")
    assert result.order.notes == "Call before arriving"


def test_order_status_change_recorded_and_client_notified(db, make_order, make_user, notifier):
    order = make_order()
    director = make_user("director")

    workflow.set_order_status(db, order.id, "in_production", actor_id=director.id, notifier=notifier)

    db.expire_all()
    event = db.get(models.Order, order.id).events[-1]
    assert (event.event_type, event.old_value, event.new_value, event.user_id) == (
        "status_changed", "pending", "in_production", director.id
    )
    assert notifier.for_user(order.client.user_id)[0]["title"] == "Order Status Update"


def test_unknown_order_status_rejected(db, make_order):
    order = make_order()
    with pytest.raises(InvalidTransition):
        workflow.set_order_status(db, order.id, "shipped")


def test_missing_order(db):
    with pytest.raises(NotFound):
        workflow.set_order_status(db, "missing", "completed")


def test_order_numbers_are_sequential(db):
    year = datetime.utcnow().year
    numbers = [workflow.next_order_number(db) for _ in range(3)]
    db.commit()
    assert numbers == [f"WM-{year}-000001", f"WM-{year}-000002", f"WM-{year}-000003"]


def test_order_numbers_restart_each_year(db):
    assert workflow.next_order_number(db, year=2025) == "WM-2025-000001"
    assert workflow.next_order_number(db, year=2025) == "WM-2025-000002"
    assert workflow.next_order_number(db, year=2026) == "WM-2026-000001"
    db.commit()


def test_create_order_allocates_number_and_logs_creation(db, make_user, notifier):
    client_user = make_user("client")
    client = models.Client(user_id=client_user.id)
    db.add(client)
    db.commit()

    order = workflow.create_order(
        db,
        schemas.OrderCreate(
            client_id=client.id,
            items=[schemas.OrderItemCreate(product_name="Bay window", quantity=1)],
        ),
        notifier=notifier,
    )

    assert order.order_number.startswith(f"WM-{datetime.utcnow().year}-")
    assert order.status == "pending"
    assert [e.event_type for e in order.events] == ["created"]
    assert notifier.for_user(client_user.id)[0]["title"] == "New Order Created"


def test_overdue_stats_count_only_active_past_jobs(db, make_job):
    past = make_job()
    past.scheduled_date = date.today() - timedelta(days=2)
    done = make_job(status="completed")
    done.scheduled_date = date.today() - timedelta(days=2)
    db.commit()

    stats = crud.get_job_stats(db)

    assert stats["overview"]["overdue_jobs"] == 1
