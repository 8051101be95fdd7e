"""
Periodic automation sweep.

One pass moves every subscribed store whose run is due from ``waiting`` to
``due``, then claims due and retry-ready stores and hands each claim to the
executor queue. The Redis lock only keeps duplicate beat deliveries from
running overlapping passes; exclusivity of each store still comes from the
scheduler's conditional claim.
"""

import logging
from collections import Counter
from typing import Callable, Dict, Optional

from flask import current_app
from sqlalchemy import select

from storefront.automation.scheduler import Claim, get_scheduler
from storefront.errors import AutomationRetryExhausted, ClaimConflict
from storefront.extensions import db, get_redis_client
from storefront.models import Store, Subscription
from storefront.observability.metrics import SWEEP_RUNS
from storefront.utils.redis_lock import LockNotAcquired, redis_lock
from storefront.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "storefront:automation:sweep"


def dispatch_claim(claim: Claim):
    """Queue the executor task for a claimed store."""
    from storefront.workers.celery_app import celery

    celery.send_task(
        current_app.config["AUTOMATION_DISPATCH_TASK"],
        kwargs={
            "store_id": claim.store_id,
            "claim_token": claim.claim_token,
            "attempt": claim.attempt,
        },
        queue=current_app.config.get("AUTOMATION_DISPATCH_QUEUE", "automation"),
    )


def subscribed_store_ids(session, now) -> Dict[str, list]:
    """Provisioned stores split by whether an active subscription covers them."""
    stores = session.execute(
        select(Store.id, Store.account_id).where(
            Store.automation_interval_hours > 0,
            Store.next_automation_at.isnot(None),
            Store.pending_deletion_at.is_(None),
        )
    ).all()
    if not stores:
        return {"eligible": [], "unsubscribed": []}

    account_ids = {row.account_id for row in stores}
    subscriptions = session.execute(
        select(Subscription).where(Subscription.account_id.in_(account_ids))
    ).scalars().all()

    active_accounts = set()
    active_stores = set()
    for subscription in subscriptions:
        if not subscription.is_active(now):
            continue
        if subscription.store_id:
            active_stores.add(subscription.store_id)
        else:
            active_accounts.add(subscription.account_id)

    eligible, unsubscribed = [], []
    for row in stores:
        if row.account_id in active_accounts or row.id in active_stores:
            eligible.append(row.id)
        else:
            unsubscribed.append(row.id)
    return {"eligible": eligible, "unsubscribed": unsubscribed}


def run_sweep(now=None, batch_size: Optional[int] = None,
              dispatch: Optional[Callable[[Claim], None]] = None) -> dict:
    scheduler = get_scheduler()
    dispatch = dispatch or dispatch_claim
    now = now or utcnow()
    batch_size = batch_size or current_app.config.get("AUTOMATION_SWEEP_BATCH_SIZE", 200)
    reasons = Counter()

    split = subscribed_store_ids(db.session, now)
    eligible = split["eligible"]
    if split["unsubscribed"]:
        reasons["no_active_subscription"] = len(split["unsubscribed"])

    marked_due = scheduler.mark_due(now, store_ids=eligible) if eligible else 0
    candidates = scheduler.claimable_store_ids(now, limit=batch_size, store_ids=eligible) if eligible else []

    claimed = skipped = failed = 0
    for store_id in candidates:
        try:
            claim = scheduler.claim_for_processing(store_id, now)
        except ClaimConflict:
            skipped += 1
            reasons["claim_conflict"] += 1
            continue

        try:
            dispatch(claim)
        except Exception as e:
            failed += 1
            reasons["dispatch_failed"] += 1
            logger.error(
                f"Dispatch failed for store {store_id}: {e}",
                extra={"store_id": store_id, "claim_token": claim.claim_token},
            )
            try:
                scheduler.record_failure(
                    store_id,
                    recoverable=True,
                    claim_token=claim.claim_token,
                    error=f"dispatch failed: {e}",
                    now=now,
                )
            except AutomationRetryExhausted:
                reasons["retry_exhausted"] += 1
            continue

        claimed += 1

    summary = {
        "total": len(eligible) + len(split["unsubscribed"]),
        "claimed": claimed,
        "markedDue": marked_due,
        "skipped": skipped + len(split["unsubscribed"]),
        "failed": failed,
        "reasonBreakdown": dict(reasons),
    }
    SWEEP_RUNS.labels(status="completed").inc()
    logger.info("Automation sweep completed", extra=summary)
    return summary


def sweep_due_stores(now=None, dispatch: Optional[Callable[[Claim], None]] = None) -> dict:
    """Run one sweep under the distributed sweep lock."""
    ttl = current_app.config.get("AUTOMATION_SWEEP_LOCK_TTL", 240)
    try:
        with redis_lock(get_redis_client(), SWEEP_LOCK_KEY, ttl=ttl):
            return run_sweep(now=now, dispatch=dispatch)
    except LockNotAcquired:
        SWEEP_RUNS.labels(status="locked").inc()
        logger.info("Automation sweep already running elsewhere, skipped")
        return {
            "total": 0,
            "claimed": 0,
            "markedDue": 0,
            "skipped": 0,
            "failed": 0,
            "reasonBreakdown": {"sweep_locked": 1},
        }
