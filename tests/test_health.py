import pytest
from datetime import timedelta
from unittest.mock import patch

from storefront.workers.celery_app import SWEEP_TASK_NAME, beat_schedule
from storefront.workers.tasks import sweep_due_stores


def test_health_reports_checks(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "ok"
    assert body["checks"]["database"]["status"] == "ok"
    assert body["checks"]["redis"]["status"] == "skipped"
    assert body["checks"]["stripe"]["status"] == "skipped"


def test_metrics_exposition(client):
    client.get("/api/billing/plans")

    response = client.get("/metrics")

    assert response.status_code == 200
    assert b"http_requests_total" in response.data


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_request_id_is_generated(client):
    response = client.get("/health")

    assert response.headers.get("X-Request-ID")


def test_unknown_route_is_json(client):
    response = client.get("/api/nowhere")

    assert response.status_code == 404
    assert response.get_json()["code"] == "NOT_FOUND"


def test_wrong_method_is_json(client):
    response = client.put("/api/billing/plans")

    assert response.status_code == 405
    assert response.get_json()["code"] == "METHOD_NOT_ALLOWED"


def test_beat_schedule_runs_the_sweep():
    schedule = beat_schedule(5)

    assert schedule["sweep-due-stores"]["task"] == SWEEP_TASK_NAME


@pytest.mark.db
@pytest.mark.automation
def test_sweep_task_body(account, subscription_factory, provisioned_store_factory, now):
    subscription_factory(account)
    provisioned_store_factory(account, provisioned_at=now - timedelta(minutes=1))

    with patch("storefront.automation.sweep.dispatch_claim") as dispatch:
        summary = sweep_due_stores.run()

    assert summary["claimed"] == 1
    dispatch.assert_called_once()
