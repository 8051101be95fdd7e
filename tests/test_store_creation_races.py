import pytest
from unittest.mock import patch

from sqlalchemy.orm import sessionmaker

from storefront.errors import QuotaExceeded
from storefront.extensions import db
from storefront.models import ExtraStoreCredit, Store
from storefront.services.store_service import StoreService

pytestmark = [pytest.mark.db, pytest.mark.concurrency]

PAYLOAD = {"storeName": "Late Shop", "phone": "+15551234567", "currency": "USD"}


def _stale_first(resolver, stale_quota):
    """Resolve returns ``stale_quota`` once, then reads the database again."""
    real = resolver.resolve
    answers = iter([stale_quota])
    return patch.object(resolver, "resolve", side_effect=lambda account_id: next(answers, None) or real(account_id))


@pytest.fixture()
def session_factory(app):
    Session = sessionmaker(bind=db.engine)
    sessions = []

    def make():
        session = Session()
        sessions.append(session)
        return session

    yield make
    for session in sessions:
        session.close()


def test_two_creations_for_the_last_slot(account, subscription_factory, store_factory, session_factory):
    subscription_factory(account, plan="standard")
    for _ in range(3):
        store_factory(account)
    account_id = account.id

    first = StoreService(session=session_factory())
    second = StoreService(session=session_factory())
    first_view = first.resolver.resolve(account_id)
    second_view = second.resolver.resolve(account_id)
    assert first_view.remaining_slots == second_view.remaining_slots == 1

    winner = first.create_store(account_id, PAYLOAD)
    assert winner.slot_number == 4

    # The loser picked slot 4 from the slots it saw before the winner committed.
    with _stale_first(second.resolver, second_view), \
            patch("storefront.services.store_service.lowest_free_slot", side_effect=[4]):
        with pytest.raises(QuotaExceeded) as exc:
            second.create_store(account_id, PAYLOAD)

    assert exc.value.quota.total_stores == 4
    assert exc.value.quota.remaining_slots == 0
    assert exc.value.to_dict()["quota"]["canCreateStore"] is False
    db.session.expire_all()
    assert Store.query.filter_by(account_id=account_id).count() == 4


def test_loser_sees_every_slot_taken(account, subscription_factory, store_factory, credit_factory,
                                     session_factory):
    subscription_factory(account, plan="standard")
    for _ in range(4):
        store_factory(account)
    credit_factory(account)
    account_id = account.id

    first = StoreService(session=session_factory())
    second = StoreService(session=session_factory())
    second_view = second.resolver.resolve(account_id)
    assert second_view.remaining_slots == 1

    first.create_store(account_id, PAYLOAD)

    with _stale_first(second.resolver, second_view):
        with pytest.raises(QuotaExceeded) as exc:
            second.create_store(account_id, PAYLOAD)

    assert exc.value.quota.total_stores == 5
    assert exc.value.quota.purchased_extra_stores == 1
    db.session.expire_all()
    assert Store.query.filter_by(account_id=account_id).count() == 5
    assert ExtraStoreCredit.query.filter(ExtraStoreCredit.store_id.isnot(None)).count() == 1


def test_credit_refunded_between_resolve_and_insert(account, subscription_factory, store_factory,
                                                    credit_factory):
    subscription_factory(account, plan="standard")
    for _ in range(4):
        store_factory(account)
    credit = credit_factory(account)
    account_id = account.id

    service = StoreService()
    stale = service.resolver.resolve(account_id)
    assert stale.remaining_slots == 1

    credit.status = ExtraStoreCredit.STATUS_REFUNDED
    db.session.commit()

    with _stale_first(service.resolver, stale):
        with pytest.raises(QuotaExceeded) as exc:
            service.create_store(account_id, PAYLOAD)

    assert exc.value.quota.purchased_extra_stores == 0
    assert exc.value.quota.remaining_slots == 0
    assert Store.query.filter_by(account_id=account_id).count() == 4
