"""
Authoritative per-store automation state machine.

This class is the only place where ``Store.automation_state`` changes.
Every transition is a conditional UPDATE on the expected current state, so
concurrent sweeps, executors and deletions can race freely: whoever matches
the row wins and everybody else gets a ``ClaimConflict``.

    waiting --mark_due--> due --claim--> processing --success--> waiting
                                          |    ^
                               recoverable|    |claim (retry ready)
                                          v    |
                                         retrying
    processing/retrying --budget exhausted or fatal--> error --reset--> waiting
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import and_, or_, select, update

from storefront.automation.retry_policy import RetryPolicy
from storefront.automation.states import AutomationState
from storefront.errors import AutomationRetryExhausted, ClaimConflict, StoreNotFound
from storefront.extensions import db
from storefront.models import AutomationRun, Store
from storefront.observability.metrics import AUTOMATION_TRANSITIONS, CLAIM_CONFLICTS
from storefront.utils.timeutils import isoformat, utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class Claim:
    store_id: str
    claim_token: str
    attempt: int
    claimed_at: datetime

    def to_dict(self):
        return {
            "storeId": self.store_id,
            "claimToken": self.claim_token,
            "attempt": self.attempt,
            "claimedAt": isoformat(self.claimed_at),
        }


def _provisioned_clause():
    return and_(
        Store.automation_interval_hours > 0,
        Store.next_automation_at.isnot(None),
        Store.pending_deletion_at.is_(None),
    )


def _claimable_clause(now: datetime):
    return and_(
        _provisioned_clause(),
        or_(
            Store.automation_state == AutomationState.DUE.value,
            and_(
                Store.automation_state == AutomationState.RETRYING.value,
                or_(
                    Store.automation_next_retry_at.is_(None),
                    Store.automation_next_retry_at <= now,
                ),
            ),
        ),
    )


class AutomationScheduler:
    def __init__(self, session=None, policy: RetryPolicy = None, clock=utcnow):
        self.session = session if session is not None else db.session
        self.policy = policy or RetryPolicy()
        self.clock = clock

    # ------------------------------------------------------------------
    # Derived schedule
    # ------------------------------------------------------------------
    @staticmethod
    def compute_next_due(store: Store) -> Optional[datetime]:
        if not store.automation_interval_hours or store.automation_provisioned_at is None:
            return None
        if store.last_successful_automation_at is not None:
            return store.last_successful_automation_at + timedelta(hours=store.automation_interval_hours)
        return store.automation_provisioned_at

    def countdown_seconds(self, store: Store, now: datetime = None) -> Optional[int]:
        """Seconds until the next scheduled run; ``None`` for unprovisioned stores."""
        if not store.is_provisioned:
            return None
        remaining = (store.next_automation_at - (now or self.clock())).total_seconds()
        return max(0, int(remaining))

    def describe(self, store: Store, now: datetime = None) -> dict:
        return {
            "storeId": store.id,
            "automationState": store.automation_state,
            "automationIntervalHours": store.automation_interval_hours,
            "automationAttempts": store.automation_attempts,
            "maxAttempts": self.policy.max_attempts,
            "automationLastRunAt": isoformat(store.automation_last_run_at),
            "lastSuccessfulAutomationAt": isoformat(store.last_successful_automation_at),
            "nextAutomationAt": isoformat(store.next_automation_at),
            "nextRetryAt": isoformat(store.automation_next_retry_at),
            "lastError": store.automation_last_error,
            "countdownSeconds": self.countdown_seconds(store, now),
        }

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    def provision(self, store: Store, plan, now: datetime = None) -> Store:
        """
        Attach the plan's cadence to a store.

        First provisioning makes the store due immediately. Re-provisioning
        (plan change) only re-derives the next run from the new interval.
        The caller owns the transaction.
        """
        now = now or self.clock()
        store.automation_interval_hours = plan.automation_interval_hours
        if store.automation_provisioned_at is None:
            store.automation_provisioned_at = now
            store.automation_state = AutomationState.WAITING.value
            store.automation_attempts = 0
        store.next_automation_at = self.compute_next_due(store)
        self.session.flush()

        logger.info(
            f"Automation provisioned for store {store.id}",
            extra={
                "store_id": store.id,
                "plan": plan.id,
                "interval_hours": plan.automation_interval_hours,
                "next_automation_at": isoformat(store.next_automation_at),
            },
        )
        return store

    # ------------------------------------------------------------------
    # waiting -> due
    # ------------------------------------------------------------------
    def mark_due(self, now: datetime = None, store_ids: Iterable[str] = None) -> int:
        now = now or self.clock()
        stmt = update(Store).where(
            _provisioned_clause(),
            Store.automation_state == AutomationState.WAITING.value,
            Store.next_automation_at <= now,
        )
        if store_ids is not None:
            store_ids = list(store_ids)
            if not store_ids:
                return 0
            stmt = stmt.where(Store.id.in_(store_ids))

        result = self.session.execute(
            stmt.values(automation_state=AutomationState.DUE.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()

        count = result.rowcount or 0
        if count:
            AUTOMATION_TRANSITIONS.labels(state=AutomationState.DUE.value).inc(count)
            logger.info(f"Marked {count} store(s) due", extra={"marked_due": count})
        return count

    def claimable_store_ids(self, now: datetime = None, limit: int = None,
                            store_ids: Iterable[str] = None) -> List[str]:
        now = now or self.clock()
        query = (
            select(Store.id)
            .where(_claimable_clause(now))
            .order_by(Store.next_automation_at.asc())
        )
        if store_ids is not None:
            query = query.where(Store.id.in_(list(store_ids)))
        if limit:
            query = query.limit(limit)
        return list(self.session.execute(query).scalars())

    # ------------------------------------------------------------------
    # due/retrying -> processing
    # ------------------------------------------------------------------
    def claim_for_processing(self, store_id: str, now: datetime = None) -> Claim:
        now = now or self.clock()
        token = str(uuid.uuid4())

        result = self.session.execute(
            update(Store)
            .where(Store.id == store_id, _claimable_clause(now))
            .values(
                automation_state=AutomationState.PROCESSING.value,
                automation_claim_token=token,
                automation_claimed_at=now,
                automation_attempts=Store.automation_attempts + 1,
                automation_next_retry_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            self.session.rollback()
            self._raise_conflict(store_id, "claim")

        attempt = self.session.execute(
            select(Store.automation_attempts).where(Store.id == store_id)
        ).scalar_one()
        self.session.add(AutomationRun(store_id=store_id, claim_token=token, attempt=attempt, started_at=now))
        self.session.commit()

        AUTOMATION_TRANSITIONS.labels(state=AutomationState.PROCESSING.value).inc()
        logger.info(
            f"Store {store_id} claimed for processing",
            extra={"store_id": store_id, "attempt": attempt, "claim_token": token},
        )
        return Claim(store_id=store_id, claim_token=token, attempt=attempt, claimed_at=now)

    # ------------------------------------------------------------------
    # processing -> waiting
    # ------------------------------------------------------------------
    def record_success(self, store_id: str, claim_token: str = None, now: datetime = None) -> Store:
        now = now or self.clock()
        row = self._load_processing(store_id, claim_token, "success")
        next_at = now + timedelta(hours=row.automation_interval_hours or 0)

        result = self.session.execute(
            update(Store)
            .where(
                Store.id == store_id,
                Store.automation_state == AutomationState.PROCESSING.value,
                Store.automation_claim_token == row.automation_claim_token,
            )
            .values(
                automation_state=AutomationState.WAITING.value,
                automation_last_run_at=now,
                last_successful_automation_at=now,
                next_automation_at=next_at,
                automation_attempts=0,
                automation_next_retry_at=None,
                automation_claim_token=None,
                automation_last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            self._raise_conflict(store_id, "success")

        self._finish_run(row.automation_claim_token, AutomationRun.STATUS_SUCCESS, now)
        self.session.commit()

        AUTOMATION_TRANSITIONS.labels(state=AutomationState.WAITING.value).inc()
        logger.info(
            f"Automation succeeded for store {store_id}",
            extra={"store_id": store_id, "next_automation_at": isoformat(next_at)},
        )
        return self.get_store(store_id)

    # ------------------------------------------------------------------
    # processing -> retrying | error
    # ------------------------------------------------------------------
    def record_failure(self, store_id: str, recoverable: bool = True, claim_token: str = None,
                       error: str = None, now: datetime = None) -> Store:
        """
        Record a failed attempt.

        Recoverable failures within the retry budget schedule a retry with
        backoff. Otherwise the store moves to ``error``; when that happens
        because the budget ran out, ``AutomationRetryExhausted`` is raised
        after the state has been committed.
        """
        now = now or self.clock()
        row = self._load_processing(store_id, claim_token, "failure")
        attempts = row.automation_attempts or 1
        message = (error or "")[:MAX_ERROR_LENGTH] or None

        exhausted = recoverable and self.policy.exhausted(attempts)
        if recoverable and not exhausted:
            target = AutomationState.RETRYING
            next_retry_at = now + self.policy.backoff(attempts)
        else:
            target = AutomationState.ERROR
            next_retry_at = None

        result = self.session.execute(
            update(Store)
            .where(
                Store.id == store_id,
                Store.automation_state == AutomationState.PROCESSING.value,
                Store.automation_claim_token == row.automation_claim_token,
            )
            .values(
                automation_state=target.value,
                automation_last_run_at=now,
                automation_next_retry_at=next_retry_at,
                automation_claim_token=None,
                automation_last_error=message,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            self._raise_conflict(store_id, "failure")

        self._finish_run(row.automation_claim_token, AutomationRun.STATUS_FAILED, now, message)
        self.session.commit()

        AUTOMATION_TRANSITIONS.labels(state=target.value).inc()
        log_extra = {
            "store_id": store_id,
            "attempt": attempts,
            "recoverable": recoverable,
            "state": target.value,
            "next_retry_at": isoformat(next_retry_at),
        }
        if target is AutomationState.RETRYING:
            logger.warning(f"Automation attempt {attempts} failed for store {store_id}, retry scheduled", extra=log_extra)
            return self.get_store(store_id)

        logger.error(f"Automation for store {store_id} moved to error", extra=log_extra)
        if exhausted:
            raise AutomationRetryExhausted(store_id, attempts, message)
        return self.get_store(store_id)

    # ------------------------------------------------------------------
    # error -> waiting
    # ------------------------------------------------------------------
    def reset(self, store_id: str, now: datetime = None) -> Store:
        """Operator reset of a store in ``error``; the next run is re-derived from its history."""
        now = now or self.clock()
        store = self.get_store(store_id)
        if store.automation_state != AutomationState.ERROR.value:
            self._raise_conflict(store_id, "reset")

        result = self.session.execute(
            update(Store)
            .where(Store.id == store_id, Store.automation_state == AutomationState.ERROR.value)
            .values(
                automation_state=AutomationState.WAITING.value,
                automation_attempts=0,
                automation_next_retry_at=None,
                automation_claim_token=None,
                automation_last_error=None,
                next_automation_at=self.compute_next_due(store),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.rollback()
            self._raise_conflict(store_id, "reset")
        self.session.commit()

        AUTOMATION_TRANSITIONS.labels(state=AutomationState.WAITING.value).inc()
        logger.info(f"Automation reset for store {store_id}", extra={"store_id": store_id})
        return self.get_store(store_id)

    def current_state(self, store_id: str) -> AutomationState:
        state = self.session.execute(
            select(Store.automation_state).where(Store.id == store_id)
        ).scalar_one_or_none()
        if state is None:
            raise StoreNotFound()
        return AutomationState(state)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def get_store(self, store_id: str) -> Store:
        store = self.session.get(Store, store_id)
        if store is None:
            raise StoreNotFound()
        return store

    def _load_processing(self, store_id, claim_token, operation):
        row = self.session.execute(
            select(
                Store.automation_state,
                Store.automation_claim_token,
                Store.automation_attempts,
                Store.automation_interval_hours,
            ).where(Store.id == store_id)
        ).one_or_none()
        if row is None:
            raise StoreNotFound()
        if row.automation_state != AutomationState.PROCESSING.value or (
            claim_token is not None and claim_token != row.automation_claim_token
        ):
            CLAIM_CONFLICTS.labels(operation=operation).inc()
            logger.info(
                f"Stale automation {operation} for store {store_id}",
                extra={"store_id": store_id, "state": row.automation_state},
            )
            raise ClaimConflict(store_id, row.automation_state)
        return row

    def _raise_conflict(self, store_id, operation):
        state = self.session.execute(
            select(Store.automation_state).where(Store.id == store_id)
        ).scalar_one_or_none()
        if state is None:
            raise StoreNotFound()
        CLAIM_CONFLICTS.labels(operation=operation).inc()
        logger.info(
            f"Automation {operation} conflict for store {store_id}",
            extra={"store_id": store_id, "state": state},
        )
        raise ClaimConflict(store_id, state)

    def _finish_run(self, claim_token, status, now, error_message=None):
        if not claim_token:
            return
        run = self.session.execute(
            select(AutomationRun).where(AutomationRun.claim_token == claim_token)
        ).scalar_one_or_none()
        if run is None:
            return
        run.status = status
        run.finished_at = now
        run.error_message = error_message


def get_scheduler(session=None) -> AutomationScheduler:
    from flask import current_app

    return AutomationScheduler(session=session, policy=RetryPolicy.from_config(current_app.config))
