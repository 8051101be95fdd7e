import pytest
from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import Mock, patch

from storefront.automation.sweep import SWEEP_LOCK_KEY, run_sweep, sweep_due_stores
from storefront.automation.scheduler import AutomationScheduler
from storefront.models import AutomationRun
from storefront.utils.redis_lock import LockNotAcquired

pytestmark = [pytest.mark.db, pytest.mark.automation]


@pytest.fixture()
def dispatched(app):
    """Capture executor dispatches instead of sending them to the broker"""
    calls = []
    with patch("storefront.automation.sweep.dispatch_claim", side_effect=calls.append):
        yield calls


def _claim(store, now):
    scheduler = AutomationScheduler()
    scheduler.mark_due(now)
    return scheduler.claim_for_processing(store.id, now)


class TestSweep:
    def test_due_subscribed_store_is_claimed_and_dispatched(self, account, subscription_factory,
                                                            provisioned_store_factory, reload, now):
        subscription_factory(account, plan="standard")
        store = provisioned_store_factory(account, provisioned_at=now - timedelta(minutes=1))
        dispatch = Mock()

        summary = run_sweep(now=now, dispatch=dispatch)

        assert summary["claimed"] == 1
        assert summary["markedDue"] == 1
        assert summary["failed"] == 0
        claim = dispatch.call_args.args[0]
        assert claim.store_id == store.id
        assert claim.attempt == 1
        assert reload(store).automation_state == "processing"

    def test_store_not_yet_due_is_left_alone(self, account, subscription_factory, provisioned_store_factory,
                                            reload, now):
        subscription_factory(account)
        store = provisioned_store_factory(account, provisioned_at=now + timedelta(hours=2))
        dispatch = Mock()

        summary = run_sweep(now=now, dispatch=dispatch)

        assert summary["total"] == 1
        assert summary["claimed"] == 0
        dispatch.assert_not_called()
        assert reload(store).automation_state == "waiting"

    def test_store_without_active_subscription_is_skipped(self, account, subscription_factory,
                                                         provisioned_store_factory, reload, now):
        subscription_factory(account, status="canceled")
        store = provisioned_store_factory(account, provisioned_at=now - timedelta(hours=1))
        dispatch = Mock()

        summary = run_sweep(now=now, dispatch=dispatch)

        assert summary["skipped"] == 1
        assert summary["reasonBreakdown"] == {"no_active_subscription": 1}
        dispatch.assert_not_called()
        assert reload(store).automation_state == "waiting"

    def test_store_scoped_subscription_makes_store_eligible(self, account, subscription_factory,
                                                           provisioned_store_factory, now):
        store = provisioned_store_factory(account, provisioned_at=now - timedelta(minutes=1))
        subscription_factory(account, plan="turbo", store=store)

        summary = run_sweep(now=now, dispatch=Mock())

        assert summary["claimed"] == 1

    def test_retry_ready_store_is_reclaimed(self, account, subscription_factory, provisioned_store_factory,
                                            now):
        subscription_factory(account)
        store = provisioned_store_factory(account, provisioned_at=now - timedelta(minutes=10))
        claim = _claim(store, now - timedelta(minutes=5))
        AutomationScheduler().record_failure(store.id, claim_token=claim.claim_token,
                                             error="timeout", now=now - timedelta(minutes=5))
        dispatch = Mock()

        summary = run_sweep(now=now, dispatch=dispatch)

        assert summary["claimed"] == 1
        assert dispatch.call_args.args[0].attempt == 2

    def test_dispatch_failure_counts_as_recoverable_failure(self, account, subscription_factory,
                                                            provisioned_store_factory, reload, now):
        subscription_factory(account)
        store = provisioned_store_factory(account, provisioned_at=now - timedelta(minutes=1))

        summary = run_sweep(now=now, dispatch=Mock(side_effect=ConnectionError("broker unreachable")))

        assert summary["failed"] == 1
        assert summary["claimed"] == 0
        assert summary["reasonBreakdown"]["dispatch_failed"] == 1
        store = reload(store)
        assert store.automation_state == "retrying"
        assert "broker unreachable" in store.automation_last_error

    def test_batch_size_limits_claims(self, account, subscription_factory, provisioned_store_factory, now):
        subscription_factory(account, plan="turbo")
        for _ in range(3):
            provisioned_store_factory(account, provisioned_at=now - timedelta(minutes=1))

        summary = run_sweep(now=now, batch_size=2, dispatch=Mock())

        assert summary["markedDue"] == 3
        assert summary["claimed"] == 2

    def test_locked_sweep_is_skipped(self, app, now):
        @contextmanager
        def held(*args, **kwargs):
            raise LockNotAcquired(SWEEP_LOCK_KEY)
            yield

        with patch("storefront.automation.sweep.redis_lock", held):
            summary = sweep_due_stores(now=now, dispatch=Mock())

        assert summary["reasonBreakdown"] == {"sweep_locked": 1}
        assert summary["claimed"] == 0


class TestTickRoute:
    def test_requires_shared_secret(self, client):
        response = client.post("/api/automation/tick")

        assert response.status_code == 401
        assert response.get_json()["code"] == "UNAUTHORIZED"

    def test_wrong_secret_is_rejected(self, client):
        response = client.post("/api/automation/tick", headers={"X-Cron-Secret": "guess"})

        assert response.status_code == 401

    def test_tick_returns_summary(self, client, cron_headers, account, subscription_factory,
                                  provisioned_store_factory, dispatched):
        subscription_factory(account)
        store = provisioned_store_factory(account)

        response = client.post("/api/automation/tick", headers=cron_headers)

        assert response.status_code == 200
        summary = response.get_json()["summary"]
        assert summary["claimed"] == 1
        assert set(summary) == {"total", "claimed", "markedDue", "skipped", "failed", "reasonBreakdown"}
        assert dispatched[0].store_id == store.id

    def test_cron_header_is_accepted(self, client, dispatched):
        response = client.post("/api/automation/tick", headers={"X-Cron-Secret": "test-automation-secret"})

        assert response.status_code == 200


class TestCompleteRoute:
    def test_success_reschedules(self, client, cron_headers, account, provisioned_store_factory, now):
        store = provisioned_store_factory(account, interval_hours=8, provisioned_at=now - timedelta(minutes=1))
        claim = _claim(store, now)

        response = client.post(
            f"/api/automation/stores/{store.id}/complete",
            json={"claimToken": claim.claim_token, "success": True},
            headers=cron_headers,
        )

        assert response.status_code == 200
        automation = response.get_json()["automation"]
        assert automation["automationState"] == "waiting"
        assert automation["automationAttempts"] == 0
        assert automation["lastSuccessfulAutomationAt"] is not None
        assert automation["countdownSeconds"] > 7 * 3600
        assert AutomationRun.query.filter_by(claim_token=claim.claim_token).one().status == "success"

    def test_recoverable_failure_schedules_retry(self, client, cron_headers, account,
                                                 provisioned_store_factory, now):
        store = provisioned_store_factory(account)
        claim = _claim(store, now)

        response = client.post(
            f"/api/automation/stores/{store.id}/complete",
            json={"claimToken": claim.claim_token, "success": False, "error": "upload failed"},
            headers=cron_headers,
        )

        automation = response.get_json()["automation"]
        assert automation["automationState"] == "retrying"
        assert automation["lastError"] == "upload failed"
        assert automation["nextRetryAt"] is not None

    def test_exhausted_retries_report_error_state(self, client, cron_headers, account,
                                                  provisioned_store_factory, now):
        store = provisioned_store_factory(account, automation_attempts=2)
        claim = _claim(store, now)
        assert claim.attempt == 3

        response = client.post(
            f"/api/automation/stores/{store.id}/complete",
            json={"claimToken": claim.claim_token, "success": False, "error": "still failing"},
            headers=cron_headers,
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["code"] == "AUTOMATION_RETRY_EXHAUSTED"
        assert body["attempts"] == 3
        assert body["automation"]["automationState"] == "error"

    def test_stale_claim_token_conflicts(self, client, cron_headers, account, provisioned_store_factory, now):
        store = provisioned_store_factory(account)
        _claim(store, now)

        response = client.post(
            f"/api/automation/stores/{store.id}/complete",
            json={"claimToken": "stale", "success": True},
            headers=cron_headers,
        )

        assert response.status_code == 409
        body = response.get_json()
        assert body["code"] == "CLAIM_CONFLICT"
        assert body["automationState"] == "processing"

    @pytest.mark.parametrize("payload, field", [
        ({"success": True}, "claimToken"),
        ({"claimToken": "t", "success": "yes"}, "success"),
        ({"claimToken": "t", "success": False, "recoverable": "no"}, "recoverable"),
    ])
    def test_payload_validation(self, client, cron_headers, account, provisioned_store_factory, payload, field):
        store = provisioned_store_factory(account)

        response = client.post(f"/api/automation/stores/{store.id}/complete", json=payload, headers=cron_headers)

        assert response.status_code == 400
        assert response.get_json()["field"] == field


class TestResetAndState:
    def test_reset_error_store(self, client, cron_headers, account, provisioned_store_factory):
        store = provisioned_store_factory(account, state="error", automation_attempts=3,
                                          automation_last_error="boom")

        response = client.post(f"/api/automation/stores/{store.id}/reset", headers=cron_headers)

        assert response.status_code == 200
        automation = response.get_json()["automation"]
        assert automation["automationState"] == "waiting"
        assert automation["automationAttempts"] == 0
        assert automation["lastError"] is None

    def test_reset_of_healthy_store_conflicts(self, client, cron_headers, account, provisioned_store_factory):
        store = provisioned_store_factory(account)

        response = client.post(f"/api/automation/stores/{store.id}/reset", headers=cron_headers)

        assert response.status_code == 409

    def test_owner_can_read_state(self, client, account, provisioned_store_factory, auth_headers):
        store = provisioned_store_factory(account, interval_hours=4)

        response = client.get(f"/api/automation/stores/{store.id}/state", headers=auth_headers(account))

        assert response.status_code == 200
        automation = response.get_json()["automation"]
        assert automation["storeId"] == store.id
        assert automation["automationIntervalHours"] == 4
        assert automation["maxAttempts"] == 3

    def test_state_of_foreign_store_is_not_found(self, client, account_factory, provisioned_store_factory,
                                                 auth_headers):
        owner, other = account_factory(), account_factory()
        store = provisioned_store_factory(owner)

        response = client.get(f"/api/automation/stores/{store.id}/state", headers=auth_headers(other))

        assert response.status_code == 404
