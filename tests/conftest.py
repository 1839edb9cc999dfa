from datetime import datetime, timezone

import pytest

from rss_subscriptions import db
from rss_subscriptions.models import FeedInfo, SubscriptionStatus, SubscriptionType
from rss_subscriptions.scheduling import QueueFetchScheduler
from rss_subscriptions.subscriptions import SubscriptionService


@pytest.fixture
def session_factory():
    """In-memory SQLite session factory shared by a single test."""
    engine = db.init_engine("sqlite:///:memory:")
    yield db.get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def scheduler():
    return QueueFetchScheduler()


class RecordingTracker:
    def __init__(self):
        self.events = []

    def track(self, user_id, event, properties=None):
        self.events.append((user_id, event, dict(properties or {})))


@pytest.fixture
def tracker():
    return RecordingTracker()


def fake_feed_parser(url):
    return FeedInfo(
        url=url,
        title=f"Feed at {url}",
        description="A test feed",
        thumbnail="https://example.com/icon.png",
    )


@pytest.fixture
def make_service(session_factory, scheduler, tracker):
    def factory(**kwargs):
        kwargs.setdefault("feed_parser", fake_feed_parser)
        kwargs.setdefault("tracker", tracker)
        return SubscriptionService(session_factory, scheduler, **kwargs)

    return factory


@pytest.fixture
def add_subscription(session_factory):
    """Insert a subscription row directly and return its id."""

    def factory(
        user_id="user-1",
        url=None,
        name="Feed",
        subscription_type=SubscriptionType.RSS,
        status=SubscriptionStatus.ACTIVE,
        created_at=None,
        last_fetched_at=None,
        last_fetched_checksum=None,
        newsletter_address=None,
        unsubscribe_mail_to=None,
        unsubscribe_http_url=None,
    ):
        with session_factory() as session:
            row = db.SubscriptionModel(
                user_id=user_id,
                url=url,
                name=name,
                type=subscription_type,
                status=status,
                created_at=created_at or datetime.now(timezone.utc),
                last_fetched_at=last_fetched_at,
                last_fetched_checksum=last_fetched_checksum,
                unsubscribe_mail_to=unsubscribe_mail_to,
                unsubscribe_http_url=unsubscribe_http_url,
            )
            if subscription_type == SubscriptionType.NEWSLETTER:
                row.newsletter_email = db.NewsletterEmailModel(
                    user_id=user_id,
                    address=newsletter_address or f"{name.lower()}@inbox.example.com",
                )
            session.add(row)
            session.commit()
            return row.id

    return factory


@pytest.fixture
def get_row(session_factory):
    def fetch(subscription_id):
        with session_factory() as session:
            row = session.get(db.SubscriptionModel, subscription_id)
            return db.to_subscription(row) if row else None

    return fetch
