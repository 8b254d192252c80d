"""Resync adapter: converge a local record onto the processor's subscription truth."""

import logging
from datetime import timedelta

import pytest
from sqlalchemy import select

from ent_api.billing.errors import ProviderError
from ent_api.billing.resync import ResyncAdapter, resync_in_background
from ent_api.db.models import UserSubscription
from ent_api.utils.timeutil import as_utc
from factories import MEDIUM_PRICE, PREMIUM_PRICE, T0, load_record, seed_user, subscription_obj

NOW = T0 + timedelta(days=10)
PERIOD_END = T0 + timedelta(days=30)


@pytest.fixture
def adapter(fake_stripe, classifier, reconciliation_engine) -> ResyncAdapter:
    return ResyncAdapter(fake_stripe.client(), classifier, reconciliation_engine)


def record_of(db, user_id: str = "user_1") -> UserSubscription:
    return db.execute(
        select(UserSubscription)
        .where(UserSubscription.user_id == user_id)
        .execution_options(populate_existing=True)
    ).scalar_one()


@pytest.mark.asyncio
async def test_corrupted_record_converges_to_truth(db_session, adapter: ResyncAdapter, fake_stripe) -> None:
    seed_user(
        db_session,
        tier="enterprise",
        status="past_due",
        subscription="sub_1",
        period_end=T0 + timedelta(days=400),
        last_event_at=T0 + timedelta(days=400),
    )
    fake_stripe.put(subscription_obj("sub_1", price=PREMIUM_PRICE, period_end=PERIOD_END))

    result = await adapter.resync(db_session, "user_1", now=NOW)

    assert result.outcome == "applied"
    record = record_of(db_session)
    assert (record.tier, record.status, as_utc(record.period_end)) == ("premium", "active", PERIOD_END)
    assert (record.external_customer_id, record.external_subscription_id) == ("cus_1", "sub_1")


@pytest.mark.asyncio
async def test_resync_is_idempotent(db_session, adapter: ResyncAdapter, fake_stripe) -> None:
    seed_user(db_session, subscription="sub_1")
    fake_stripe.put(subscription_obj("sub_1", price=MEDIUM_PRICE, period_end=PERIOD_END))

    await adapter.resync(db_session, "user_1", now=NOW)
    second = await adapter.resync(db_session, "user_1", now=NOW)

    assert second.changed is False
    assert record_of(db_session).tier == "medium"


@pytest.mark.asyncio
async def test_missing_subscription_falls_back_to_newest_customer_subscription(
    db_session, adapter: ResyncAdapter, fake_stripe
) -> None:
    seed_user(db_session, subscription="sub_gone")
    fake_stripe.put(subscription_obj("sub_a", price=MEDIUM_PRICE, period_end=PERIOD_END, created=T0))
    fake_stripe.put(
        subscription_obj("sub_b", price=PREMIUM_PRICE, period_end=PERIOD_END, created=T0 + timedelta(days=1))
    )

    await adapter.resync(db_session, "user_1", now=NOW)

    record = record_of(db_session)
    assert (record.tier, record.external_subscription_id) == ("premium", "sub_b")
    assert [r.url.path for r in fake_stripe.requests] == ["/v1/subscriptions"]


@pytest.mark.asyncio
async def test_live_replacement_wins_over_canceled_recorded_subscription(
    db_session, adapter: ResyncAdapter, fake_stripe
) -> None:
    # Webhooks for sub_new were lost; the record still points at sub_old
    seed_user(db_session, tier="medium", subscription="sub_old")
    fake_stripe.put(subscription_obj("sub_old", status="canceled", period_end=T0, created=T0 - timedelta(days=60)))
    fake_stripe.put(
        subscription_obj("sub_new", price=PREMIUM_PRICE, period_end=PERIOD_END, created=T0 + timedelta(days=1))
    )

    await adapter.resync(db_session, "user_1", now=NOW)

    record = record_of(db_session)
    assert (record.tier, record.status, record.external_subscription_id) == ("premium", "active", "sub_new")


@pytest.mark.asyncio
async def test_live_subscription_preferred_over_newer_canceled_one(
    db_session, adapter: ResyncAdapter, fake_stripe
) -> None:
    seed_user(db_session, tier="free", subscription=None)
    fake_stripe.put(subscription_obj("sub_live", price=MEDIUM_PRICE, period_end=PERIOD_END, created=T0))
    fake_stripe.put(
        subscription_obj(
            "sub_dead", status="incomplete_expired", price=PREMIUM_PRICE, created=T0 + timedelta(days=2)
        )
    )

    await adapter.resync(db_session, "user_1", now=NOW)

    record = record_of(db_session)
    assert (record.tier, record.status, record.external_subscription_id) == ("medium", "active", "sub_live")


@pytest.mark.asyncio
async def test_recorded_subscription_used_when_none_is_live(db_session, adapter: ResyncAdapter, fake_stripe) -> None:
    seed_user(db_session, tier="medium", subscription="sub_1")
    fake_stripe.put(subscription_obj("sub_1", status="canceled", period_end=PERIOD_END, created=T0))
    fake_stripe.put(
        subscription_obj("sub_2", status="canceled", price=PREMIUM_PRICE, created=T0 - timedelta(days=90))
    )

    await adapter.resync(db_session, "user_1", now=NOW)

    record = record_of(db_session)
    assert (record.tier, record.status, record.external_subscription_id) == ("medium", "canceled", "sub_1")
    assert [r.url.path for r in fake_stripe.requests] == ["/v1/subscriptions"]


@pytest.mark.asyncio
async def test_no_subscription_at_processor_revokes_immediately(db_session, adapter: ResyncAdapter) -> None:
    seed_user(db_session, tier="premium", subscription="sub_1", period_end=PERIOD_END)

    result = await adapter.resync(db_session, "user_1", now=NOW)

    assert result.new_state.kind == "Canceled"
    record = record_of(db_session)
    assert (record.tier, record.status, record.period_end) == ("free", "canceled", None)


@pytest.mark.asyncio
async def test_canceled_truth_keeps_paid_period(db_session, adapter: ResyncAdapter, fake_stripe) -> None:
    seed_user(db_session, tier="medium", subscription="sub_1")
    fake_stripe.put(subscription_obj("sub_1", status="canceled", period_end=PERIOD_END))

    await adapter.resync(db_session, "user_1", now=NOW)

    record = record_of(db_session)
    assert (record.tier, record.status, as_utc(record.period_end)) == ("medium", "canceled", PERIOD_END)


def test_transition_is_authoritative_with_synthetic_id(db_session, adapter: ResyncAdapter) -> None:
    record = seed_user(db_session, subscription="sub_1")
    transition = adapter.build_transition(record, subscription_obj("sub_1", period_end=PERIOD_END), NOW)

    assert transition.authoritative is True
    assert transition.user_id == "user_1"
    assert transition.event_id == f"resync:user_1:{int(NOW.timestamp())}"


@pytest.mark.asyncio
async def test_processor_error_leaves_record_untouched(db_session, adapter: ResyncAdapter, fake_stripe) -> None:
    seed_user(db_session, tier="medium", subscription="sub_1")
    fake_stripe.fail_with = 500

    with pytest.raises(ProviderError):
        await adapter.resync(db_session, "user_1", now=NOW)

    record = record_of(db_session)
    assert (record.tier, record.version) == ("medium", 0)


@pytest.mark.asyncio
async def test_unknown_user_raises_lookup_error(db_session, adapter: ResyncAdapter) -> None:
    with pytest.raises(LookupError):
        await adapter.resync(db_session, "nobody")


@pytest.mark.asyncio
async def test_background_resync_logs_provider_failure(
    session_factory, adapter: ResyncAdapter, fake_stripe, caplog: pytest.LogCaptureFixture
) -> None:
    with session_factory() as db:
        seed_user(db, tier="medium", subscription="sub_1")
    fake_stripe.fail_with = 503

    with caplog.at_level(logging.ERROR):
        await resync_in_background(session_factory, adapter, "user_1")

    assert "RESYNC_BACKGROUND_FAILED" in caplog.messages
    assert load_record(session_factory).tier == "medium"


@pytest.mark.asyncio
async def test_background_resync_without_adapter_is_skipped(
    session_factory, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING):
        await resync_in_background(session_factory, None, "user_1")

    assert "RESYNC_SKIPPED_NOT_CONFIGURED" in caplog.messages
