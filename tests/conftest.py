"""
Shared fixtures: an in-memory SQLite database, user/order/job factories and
notification recorders.
"""
import itertools
import os

# Must be set before the application modules are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CACHE_ENABLED"] = "false"
os.environ["WEBHOOK_URLS"] = ""

import pytest
from fastapi.testclient import TestClient

from window_workflow import auth, models, schemas, workflow
from window_workflow.database import Base, SessionLocal, engine
from window_workflow.main import app, get_notifier
from window_workflow.notifications import NotificationDispatcher

PASSWORD = "correct-horse-battery"


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        self.sent = []

    def notify(self, user_id, title, message, type, related_job_id=None, related_order_id=None):
        self.sent.append({
            "user_id": user_id,
            "title": title,
            "message": message,
            "type": type,
            "related_job_id": related_job_id,
            "related_order_id": related_order_id,
        })

    def for_user(self, user_id):
        return [n for n in self.sent if n["user_id"] == user_id]


class FailingNotifier(NotificationDispatcher):
    def notify(self, *args, **kwargs):
        raise RuntimeError("push gateway unavailable")


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def recorded_notifier(notifier):
    """Route the API's notifications into a RecordingNotifier."""
    app.dependency_overrides[get_notifier] = lambda: notifier
    return notifier


@pytest.fixture(scope="session")
def password_hash():
    return auth.get_password_hash(PASSWORD)


@pytest.fixture
def make_user(db, password_hash):
    counter = itertools.count(1)

    def _make(role="manager", **overrides):
        n = next(counter)
        fields = dict(
            email=f"{role}{n}@example.com",
            username=f"{role}{n}",
            phone_number=f"+1555000{n:04d}",
            password_hash=password_hash,
            first_name=role.replace("_", " ").title(),
            last_name=f"User{n}",
            role=role,
        )
        fields.update(overrides)
        user = models.User(**fields)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def headers_for(db):
    def _headers(user):
        token, _ = auth.login(db, user)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_order(db, make_user):
    def _make(status="pending", manager=None, client_user=None):
        order_number = workflow.next_order_number(db)
        client_user = client_user or make_user("client")
        client = db.query(models.Client).filter(models.Client.user_id == client_user.id).first()
        if client is None:
            client = models.Client(user_id=client_user.id, company_name="Acme Homes")
            db.add(client)
            db.flush()
        order = models.Order(
            order_number=order_number,
            client_id=client.id,
            status=status,
            assigned_manager_id=manager.id if manager else None,
            total_amount=1500,
        )
        order.items = [models.OrderItem(product_name="Casement window", quantity=3, unit_price=500)]
        db.add(order)
        db.commit()
        db.refresh(order)
        return order
    return _make


@pytest.fixture
def make_job(db, make_order, make_user):
    def _make(job_type="installation", status="assigned", order=None, worker=None):
        order = order or make_order()
        if worker is None:
            worker = make_user(workflow.statuses.WORKER_ROLE_FOR_JOB_TYPE[job_type])
        job = workflow.create_job(
            db,
            schemas.JobCreate(
                order_id=order.id,
                job_type=job_type,
                location_address="12 Harbour Road",
                assigned_worker_id=worker.id,
            ),
        )
        if status != "assigned":
            job.status = status
            db.commit()
            db.refresh(job)
        return job
    return _make
