import asyncio
import inspect

import httpx
import pytest
import redis
from fastapi import BackgroundTasks

from window_workflow import cache, main, webhooks


class BrokenRedis:
    def get(self, key):
        raise redis.ConnectionError("connection refused")

    def setex(self, key, ttl, value):
        raise redis.ConnectionError("connection refused")

    def scan_iter(self, match=None):
        raise redis.ConnectionError("connection refused")


class DictRedis:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value

    def scan_iter(self, match=None):
        prefix = match.rstrip("*")
        return [k for k in self.data if k.startswith(prefix)]

    def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)


def test_cache_disabled_is_a_miss():
    assert cache.redis_client is None
    assert cache.get_cache("stats:orders") is None
    assert cache.set_cache("stats:orders", {"a": 1}) is False


def test_stats_key():
    assert cache.stats_key("orders", None, "2026-01-01") == "stats:orders:-:2026-01-01"


def test_redis_errors_are_cache_misses(monkeypatch):
    monkeypatch.setattr(cache, "redis_client", BrokenRedis())
    assert cache.get_cache("stats:jobs") is None
    assert cache.set_cache("stats:jobs", {}) is False
    assert cache.delete_pattern("stats:*") is False


def test_invalidate_stats_drops_only_stats(monkeypatch):
    fake = DictRedis()
    monkeypatch.setattr(cache, "redis_client", fake)
    cache.set_cache("stats:orders:-:-", {"overview": {"total_orders": 4}})
    fake.data["session:abc"] = "keep"

    assert cache.get_cache("stats:orders:-:-") == {"overview": {"total_orders": 4}}
    cache.invalidate_stats()

    assert fake.data == {"session:abc": "keep"}


def test_cached_stats_are_served(client, monkeypatch, make_user, headers_for):
    fake = DictRedis()
    monkeypatch.setattr(cache, "redis_client", fake)
    headers = headers_for(make_user("manager"))

    first = client.get("/orders/stats/overview", headers=headers).json()
    assert "stats:orders:-:-" in fake.data
    fake.data["stats:orders:-:-"] = '{"overview": {"total_orders": 99}}'

    assert first["overview"]["total_orders"] == 0
    assert client.get("/orders/stats/overview", headers=headers).json()["overview"]["total_orders"] == 99


def test_send_webhooks_to_every_subscriber():
    received = []

    def handler(request):
        received.append((str(request.url), request.read()))
        if "broken" in str(request.url):
            return httpx.Response(500)
        return httpx.Response(204)

    async def deliver():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            ok = await webhooks.send_single_webhook(client, "http://crm.local/hook", {"event": "job.created"})
            failed = await webhooks.send_single_webhook(client, "http://broken.local/hook", {"event": "job.created"})
            return ok, failed

    assert asyncio.run(deliver()) == (True, False)
    assert [url for url, _ in received] == ["http://crm.local/hook", "http://broken.local/hook"]


def test_transport_errors_are_reported_not_raised():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    async def deliver():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await webhooks.send_single_webhook(client, "http://down.local/hook", {})

    assert asyncio.run(deliver()) is False


def test_no_subscribers_means_no_delivery():
    assert webhooks.WEBHOOK_URLS == []
    asyncio.run(webhooks.send_webhook("order.created", {"order_id": "o1"}))
    tasks = BackgroundTasks()
    webhooks.notify_order_created(tasks, "o1", "WM-2026-000001")
    assert tasks.tasks == []


@pytest.fixture
def sent_webhooks(monkeypatch):
    sent = []

    async def record(event_type, data, urls=None):
        sent.append((event_type, data))

    monkeypatch.setattr(webhooks, "WEBHOOK_URLS", ["http://crm.local/hook"])
    monkeypatch.setattr(webhooks, "send_webhook", record)
    return sent


@pytest.mark.parametrize("route", ["create_order", "update_order_status", "create_job", "update_job_status"])
def test_locking_routes_run_in_the_threadpool(route):
    assert not inspect.iscoroutinefunction(getattr(main, route))


def test_job_completion_webhooks_run_after_the_response(client, make_job, make_user, headers_for, sent_webhooks):
    worker = make_user("installer")
    job = make_job("installation", status="in_progress", worker=worker)

    response = client.put(f"/jobs/{job.id}/status", json={"status": "completed"}, headers=headers_for(worker))

    assert response.status_code == 200
    assert [event for event, _ in sent_webhooks] == ["job.status_changed", "order.status_changed"]
    job_event, order_event = (data for _, data in sent_webhooks)
    assert job_event["new_status"] == "completed"
    assert order_event == {
        "order_id": job.order_id,
        "old_status": "pending",
        "new_status": "installation_completed",
        "derived": True,
    }


def test_order_override_sends_webhook(client, make_order, make_user, headers_for, sent_webhooks):
    order = make_order()

    response = client.put(
        f"/orders/{order.id}/status",
        json={"status": "in_production"},
        headers=headers_for(make_user("manager")),
    )

    assert response.status_code == 200
    assert sent_webhooks == [(
        "order.status_changed",
        {"order_id": order.id, "old_status": "pending", "new_status": "in_production", "derived": False},
    )]


def test_editing_an_order_drops_cached_stats(client, monkeypatch, make_order, make_user, headers_for):
    fake = DictRedis()
    monkeypatch.setattr(cache, "redis_client", fake)
    order = make_order()
    headers = headers_for(make_user("manager"))

    client.get("/orders/stats/overview", headers=headers)
    assert "stats:orders:-:-" in fake.data

    response = client.put(f"/orders/{order.id}", json={"total_amount": "1800.00"}, headers=headers)

    assert response.status_code == 200
    assert "stats:orders:-:-" not in fake.data
