"""Tests for the subscription store."""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from rss_subscriptions import db
from rss_subscriptions.models import SubscriptionStatus, SubscriptionType


def _ts(day):
    return datetime(2024, 1, day, tzinfo=timezone.utc)


def _names(rows):
    return [row.name for row in rows]


def test_list_filters_by_type_and_status(session_factory, add_subscription):
    add_subscription(name="rss-active", url="https://a.example.com/feed")
    add_subscription(
        name="rss-gone",
        url="https://b.example.com/feed",
        status=SubscriptionStatus.UNSUBSCRIBED,
    )
    add_subscription(name="news-active", subscription_type=SubscriptionType.NEWSLETTER)
    add_subscription(
        name="news-gone",
        subscription_type=SubscriptionType.NEWSLETTER,
        status=SubscriptionStatus.UNSUBSCRIBED,
    )
    add_subscription(user_id="someone-else", name="other", url="https://a.example.com/feed")

    with session_factory() as session:
        newsletters = db.list_subscriptions(
            session, "user-1", subscription_type=SubscriptionType.NEWSLETTER
        )
        rss = db.list_subscriptions(session, "user-1", subscription_type=SubscriptionType.RSS)
        everything = db.list_subscriptions(session, "user-1")

        assert _names(newsletters) == ["news-active"]
        assert newsletters[0].newsletter_email.address == "news-active@inbox.example.com"
        assert sorted(_names(rss)) == ["rss-active", "rss-gone"]
        assert sorted(_names(everything)) == ["news-active", "rss-active", "rss-gone"]


def test_list_puts_active_first_and_nulls_last(session_factory, add_subscription):
    add_subscription(name="jan-1", url="https://1.example.com", last_fetched_at=_ts(1))
    add_subscription(name="never", url="https://2.example.com")
    add_subscription(name="jan-3", url="https://3.example.com", last_fetched_at=_ts(3))
    add_subscription(
        name="stopped",
        url="https://4.example.com",
        last_fetched_at=_ts(5),
        status=SubscriptionStatus.UNSUBSCRIBED,
    )

    with session_factory() as session:
        descending = db.list_subscriptions(
            session, "user-1", sort_column="last_fetched_at", descending=True
        )
        ascending = db.list_subscriptions(
            session, "user-1", sort_column="last_fetched_at", descending=False
        )

        assert _names(descending) == ["jan-3", "jan-1", "never", "stopped"]
        assert _names(ascending) == ["jan-1", "jan-3", "never", "stopped"]


def test_list_rejects_unknown_sort_column(session_factory):
    with session_factory() as session:
        with pytest.raises(ValueError):
            db.list_subscriptions(session, "user-1", sort_column="password")


def test_insert_with_quota_stops_at_limit(session_factory):
    def insert(url):
        with session_factory() as session:
            rows = db.insert_with_quota(
                session, db.NewSubscription(user_id="user-1", url=url, name=url), 2
            )
            return [db.to_subscription(row) for row in rows]

    first = insert("https://1.example.com")
    second = insert("https://2.example.com")
    third = insert("https://3.example.com")

    assert len(first) == 1
    assert first[0].status == SubscriptionStatus.ACTIVE
    assert first[0].type == SubscriptionType.RSS
    assert first[0].created_at.tzinfo is not None
    assert len(second) == 1
    assert third == []

    with session_factory() as session:
        assert len(db.list_subscriptions(session, "user-1")) == 2


def test_insert_with_quota_ignores_inactive_and_other_users(session_factory, add_subscription):
    add_subscription(url="https://old.example.com", status=SubscriptionStatus.UNSUBSCRIBED)
    add_subscription(user_id="user-2", url="https://x.example.com")
    add_subscription(subscription_type=SubscriptionType.NEWSLETTER, name="Digest")

    with session_factory() as session:
        rows = db.insert_with_quota(
            session,
            db.NewSubscription(user_id="user-1", url="https://new.example.com", name="New"),
            1,
        )
        assert len(rows) == 1
        assert rows[0].url == "https://new.example.com"


def test_insert_with_quota_rejects_duplicate_url(session_factory, add_subscription):
    add_subscription(url="https://dup.example.com", status=SubscriptionStatus.UNSUBSCRIBED)

    with session_factory() as session:
        with pytest.raises(IntegrityError):
            db.insert_with_quota(
                session,
                db.NewSubscription(user_id="user-1", url="https://dup.example.com", name="Dup"),
                150,
            )


def test_reactivate_with_quota_keeps_fetch_state(session_factory, add_subscription):
    subscription_id = add_subscription(
        url="https://back.example.com",
        status=SubscriptionStatus.UNSUBSCRIBED,
        last_fetched_at=_ts(2),
        last_fetched_checksum="abc123",
    )

    with session_factory() as session:
        row = db.reactivate_with_quota(session, subscription_id, "user-1", 150)
        snapshot = db.to_subscription(row)

    assert snapshot.status == SubscriptionStatus.ACTIVE
    assert snapshot.last_fetched_at == _ts(2)
    assert snapshot.last_fetched_checksum == "abc123"

    with session_factory() as session:
        assert db.reactivate_with_quota(session, subscription_id, "user-1", 150) is None


def test_reactivate_with_quota_respects_limit(session_factory, add_subscription):
    add_subscription(url="https://active.example.com")
    subscription_id = add_subscription(
        url="https://back.example.com", status=SubscriptionStatus.UNSUBSCRIBED
    )

    with session_factory() as session:
        assert db.reactivate_with_quota(session, subscription_id, "user-1", 1) is None

    with session_factory() as session:
        row = session.get(db.SubscriptionModel, subscription_id)
        assert row.status == SubscriptionStatus.UNSUBSCRIBED


def test_update_fields_only_touches_given_fields(session_factory, add_subscription):
    subscription_id = add_subscription(url="https://a.example.com", name="Before")
    with session_factory() as session:
        session.get(db.SubscriptionModel, subscription_id).description = "Keep me"
        session.commit()

    with session_factory() as session:
        row = db.update_fields(session, subscription_id, "user-1", {"name": "After"})
        snapshot = db.to_subscription(row)

    assert snapshot.name == "After"
    assert snapshot.description == "Keep me"
    assert snapshot.url == "https://a.example.com"


def test_update_fields_is_scoped_to_owner(session_factory, add_subscription):
    subscription_id = add_subscription(url="https://a.example.com", name="Mine")

    with session_factory() as session:
        with pytest.raises(db.SubscriptionNotFoundError):
            db.update_fields(session, subscription_id, "intruder", {"name": "Stolen"})

    with session_factory() as session:
        assert session.get(db.SubscriptionModel, subscription_id).name == "Mine"


def test_update_fields_rejects_unknown_columns(session_factory, add_subscription):
    subscription_id = add_subscription(url="https://a.example.com")

    with session_factory() as session:
        with pytest.raises(ValueError):
            db.update_fields(session, subscription_id, "user-1", {"favourite": True})


def test_find_subscription_prefers_id_over_name(session_factory, add_subscription):
    first_id = add_subscription(url="https://1.example.com", name="Same")
    second_id = add_subscription(url="https://2.example.com", name="Other")

    with session_factory() as session:
        by_id = db.find_subscription(session, "user-1", subscription_id=second_id, name="Same")
        by_name = db.find_subscription(session, "user-1", name="Same")
        assert by_id.id == second_id
        assert by_name.id == first_id
        assert db.find_subscription(session, "user-1") is None


def test_newsletter_requires_email(session_factory):
    with session_factory() as session:
        session.add(
            db.SubscriptionModel(
                user_id="user-1", name="Orphan", type=SubscriptionType.NEWSLETTER
            )
        )
        with pytest.raises(IntegrityError):
            session.commit()


class SerializationFailure(Exception):
    pgcode = "40001"


def _flaky_execute(monkeypatch, session, failures):
    """Make the session's next ``failures`` statements abort as serialization failures."""
    real_execute = session.execute
    attempts = []

    def execute(statement, *args, **kwargs):
        attempts.append(statement)
        if len(attempts) <= failures:
            raise OperationalError(str(statement), {}, SerializationFailure())
        return real_execute(statement, *args, **kwargs)

    monkeypatch.setattr(session, "execute", execute)
    return attempts


def test_insert_with_quota_retries_serialization_failure(session_factory, monkeypatch):
    with session_factory() as session:
        attempts = _flaky_execute(monkeypatch, session, failures=1)
        rows = db.insert_with_quota(
            session,
            db.NewSubscription(user_id="user-1", url="https://retry.example.com", name="Retry"),
            150,
        )
        assert [row.url for row in rows] == ["https://retry.example.com"]
        # Two insert attempts plus the reload of the new row.
        assert len(attempts) == 3

    with session_factory() as session:
        assert len(db.list_subscriptions(session, "user-1")) == 1


def test_reactivate_with_quota_retries_serialization_failure(
    session_factory, add_subscription, monkeypatch
):
    subscription_id = add_subscription(
        url="https://back.example.com", status=SubscriptionStatus.UNSUBSCRIBED
    )

    with session_factory() as session:
        _flaky_execute(monkeypatch, session, failures=2)
        row = db.reactivate_with_quota(session, subscription_id, "user-1", 150)
        assert row.status == SubscriptionStatus.ACTIVE


def test_insert_with_quota_gives_up_after_retries(session_factory, monkeypatch):
    with session_factory() as session:
        attempts = _flaky_execute(monkeypatch, session, failures=db.SERIALIZATION_RETRIES)
        with pytest.raises(OperationalError):
            db.insert_with_quota(
                session,
                db.NewSubscription(user_id="user-1", url="https://busy.example.com", name="Busy"),
                150,
            )
        assert len(attempts) == db.SERIALIZATION_RETRIES


def test_other_database_errors_are_not_retried(session_factory, add_subscription, monkeypatch):
    add_subscription(url="https://dup.example.com")

    with session_factory() as session:
        real_execute = session.execute
        attempts = []

        def execute(statement, *args, **kwargs):
            attempts.append(statement)
            return real_execute(statement, *args, **kwargs)

        monkeypatch.setattr(session, "execute", execute)
        with pytest.raises(IntegrityError):
            db.insert_with_quota(
                session,
                db.NewSubscription(user_id="user-1", url="https://dup.example.com", name="Dup"),
                150,
            )
        assert len(attempts) == 1


def test_is_serialization_failure():
    class Psycopg3Failure(Exception):
        sqlstate = "40001"

    class DeadlockDetected(Exception):
        pgcode = "40P01"

    assert db.is_serialization_failure(OperationalError("x", {}, Psycopg3Failure()))
    assert db.is_serialization_failure(OperationalError("x", {}, SerializationFailure()))
    assert not db.is_serialization_failure(OperationalError("x", {}, DeadlockDetected()))
    assert not db.is_serialization_failure(ValueError("40001"))
